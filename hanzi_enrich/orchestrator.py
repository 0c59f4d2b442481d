"""Per-character enrichment: dictionary, interpretation, analysis, audio, image, persistence."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
import openai
import structlog

from .config import CLAIM_WAIT_S, MAX_IMAGE_ATTEMPTS, PROVIDER_TIMEOUT_S
from .database import CardStore, DictionaryStore, select_preferred_entry
from .errors import ProviderChainExhausted, ProviderError, StorageFailure, ValidationRejected
from .image_generator import OpenAIImageGenerator
from .image_validator import ImageValidator, is_crowding_verdict, refine_prompt_for_issues, simplified_prompt
from .media_store import FileMediaStore, MediaStore, media_key
from .models import (
    AssetType,
    EnrichmentRequest,
    EnrichmentResult,
    EnrichmentStage,
    EnrichmentStatus,
    GenerationPolicy,
    ProviderCallAttempt,
    ValidationVerdict,
)
from .openai_client import OPENAI_RETRY_ATTEMPTS, retry_backoff_budget_s, sniff_image_type
from .prompt_synthesizer import PromptSynthesizer
from .providers import ProviderAdapter, build_text_chain
from .rate_limiter import RateLimiter
from .speech import (
    SPEECH_RETRY_ATTEMPTS,
    SPEECH_RETRY_INITIAL_S,
    SPEECH_RETRY_MAX_S,
    AzureSpeechSynthesizer,
)
from .utils import normalize_pinyin, validate_character

log = structlog.get_logger()

# Failures confined to a single field. Anything else propagates to the queue.
FIELD_ERRORS = (
    ProviderError,
    ProviderChainExhausted,
    ValidationRejected,
    openai.OpenAIError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)

ProgressCallback = Callable[[EnrichmentStage, str], None]
Produced = Tuple[bytes, str, Dict[str, str]]


class EnrichmentOrchestrator:
    """Runs one EnrichmentRequest through every stage, strictly in order."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        synthesizer: PromptSynthesizer,
        image_generator,
        validator,
        speech,
        media_store: MediaStore,
        card_store: Optional[CardStore] = None,
        dictionary: Optional[DictionaryStore] = None,
        claim_wait_s: float = CLAIM_WAIT_S,
        claim_poll_s: float = 0.5,
    ):
        self.adapter = adapter
        self.synthesizer = synthesizer
        self.image_generator = image_generator
        self.validator = validator
        self.speech = speech
        self.media_store = media_store
        self.card_store = card_store
        self.dictionary = dictionary
        self.claim_wait_s = claim_wait_s
        self.claim_poll_s = claim_poll_s

    def worst_case_latency_s(self, max_image_attempts: int = MAX_IMAGE_ATTEMPTS) -> float:
        """Upper bound for one request, used to sanity-check queue job timeouts."""
        text_ops = 3  # interpret, analyze, smart prompt
        text = text_ops * self.adapter.chain.worst_case_latency_s()
        intervals = self.adapter.chain.rate_limiter.intervals_ms

        def _spacing(service_id: str) -> float:
            return intervals.get(service_id, 0) / 1000

        # each generate call may also download the image, hence two timeouts
        generate = (OPENAI_RETRY_ATTEMPTS * (2 * PROVIDER_TIMEOUT_S + _spacing(OpenAIImageGenerator.service_id))
                    + retry_backoff_budget_s(OPENAI_RETRY_ATTEMPTS))
        validate = PROVIDER_TIMEOUT_S + _spacing(ImageValidator.service_id)
        image = max_image_attempts * (generate + validate)
        audio = (SPEECH_RETRY_ATTEMPTS * (PROVIDER_TIMEOUT_S + _spacing(AzureSpeechSynthesizer.service_id))
                 + retry_backoff_budget_s(SPEECH_RETRY_ATTEMPTS, initial=SPEECH_RETRY_INITIAL_S,
                                          max_wait=SPEECH_RETRY_MAX_S))
        return text + image + audio + self.claim_wait_s

    async def enrich(self, request: EnrichmentRequest,
                     on_progress: Optional[ProgressCallback] = None) -> EnrichmentResult:
        """Enrich one character. Only storage and unexpected errors escape."""
        character = validate_character(request.character)
        policy = request.policy
        attempts: List[ProviderCallAttempt] = []
        result = EnrichmentResult(character=character)
        stage = EnrichmentStage.PENDING

        def _advance(next_stage: EnrichmentStage):
            nonlocal stage
            stage = next_stage
            log.debug("Enrichment stage", character=character, stage=stage.value)
            if on_progress is not None:
                on_progress(stage, character)

        t0 = time.perf_counter()
        log.info("Starting enrichment", character=character, force=policy.force,
                 source=request.source.value)
        try:
            existing = self.card_store.get_result(character) if self.card_store else None
            if policy.force:
                existing = None

            _advance(EnrichmentStage.DICTIONARY_LOOKUP)
            dictionary_meaning = self._run_dictionary_lookup(character, request, result)

            _advance(EnrichmentStage.INTERPRETING)
            image_context = await self._run_interpretation(
                character, request, result, existing, dictionary_meaning, attempts
            )

            _advance(EnrichmentStage.ANALYZING)
            await self._run_analysis(character, policy, result, existing, attempts)

            _advance(EnrichmentStage.AUDIO_GENERATION)
            await self._run_audio_generation(character, policy, result)

            _advance(EnrichmentStage.IMAGE_GENERATION)
            await self._run_image_generation(character, policy, result, existing, image_context, attempts)

            _advance(EnrichmentStage.PERSISTING)
            missing = result.missing_fields()
            result.status = EnrichmentStatus.PARTIALLY_COMPLETED if missing else EnrichmentStatus.COMPLETED
            if self.card_store is not None:
                result = self.card_store.save_result(result, replace=policy.force)
            else:
                result.updated_at = datetime.now()

        except StorageFailure as e:
            failed_at = stage
            _advance(EnrichmentStage.FAILED)
            log.error("Enrichment failed on storage", character=character,
                      stage=failed_at.value, error=str(e))
            raise

        result.attempts = attempts
        _advance(EnrichmentStage(result.status.value))
        elapsed = 1000 * (time.perf_counter() - t0)
        log.info("Enrichment finished", character=character, status=result.status.value,
                 missing=result.missing_fields(), audio_cached=result.audio_cached,
                 image_cached=result.image_cached, provider_attempts=len(attempts), elapsed_ms=elapsed)
        return result

    def _run_dictionary_lookup(self, character: str, request: EnrichmentRequest,
                               result: EnrichmentResult) -> Optional[str]:
        """Pick a dictionary reading. Returns its meaning for later stages."""
        if request.pinyin_hint:
            result.pinyin = normalize_pinyin(request.pinyin_hint)
        if self.dictionary is None:
            return request.meaning_hint

        entries = self.dictionary.lookup(character)
        entry = select_preferred_entry(character, entries, request.pinyin_hint)
        if entry is None:
            log.info("No dictionary entry", character=character)
            return request.meaning_hint

        if result.pinyin is None:
            result.pinyin = normalize_pinyin(entry.pinyin)
        log.info("Dictionary entry selected", character=character, pinyin=result.pinyin,
                 candidates=len(entries))
        return request.meaning_hint or "; ".join(entry.definitions[:3]) or None

    async def _run_interpretation(self, character, request, result, existing,
                                  dictionary_meaning, attempts) -> Optional[str]:
        """Fill meaning and pinyin. Returns the AI's scene suggestion, if any."""
        if existing is not None and existing.meaning and existing.pinyin:
            log.info("Skipping interpretation, already enriched", character=character)
            result.meaning = request.meaning_hint or existing.meaning
            result.pinyin = result.pinyin or existing.pinyin
            return None

        try:
            interpretation = await self.adapter.interpret(character, dictionary_meaning, attempts)
        except FIELD_ERRORS as e:
            log.warning("Interpretation failed, using dictionary", character=character,
                        attempts=len(attempts), error=str(e))
            result.meaning = dictionary_meaning
            return None

        result.meaning = request.meaning_hint or interpretation.meaning
        if result.pinyin is None and interpretation.pinyin:
            result.pinyin = normalize_pinyin(interpretation.pinyin)
        return interpretation.image_prompt

    async def _run_analysis(self, character, policy: GenerationPolicy, result, existing, attempts):
        if existing is not None and existing.linguistic_analysis is not None:
            log.info("Skipping analysis, already enriched", character=character)
            result.linguistic_analysis = existing.linguistic_analysis
            return

        try:
            analysis = await self.adapter.analyze_linguistics(
                character, policy.user_level, result.pinyin, result.meaning, attempts
            )
        except FIELD_ERRORS as e:
            log.warning("Linguistic analysis failed", character=character,
                        attempts=len(attempts), error=str(e))
            return

        if analysis.is_meaningful():
            result.linguistic_analysis = analysis

    async def _run_audio_generation(self, character, policy, result):
        async def _produce() -> Produced:
            audio = await self.speech.synthesize(character)
            return audio, "audio/mpeg", {
                "source": self.speech.name,
                "voice": getattr(self.speech, "voice", ""),
                "generated_at": datetime.now(timezone.utc).isoformat(),
            }

        url, cached = await self._ensure_asset(character, AssetType.AUDIO, policy, _produce)
        result.audio_url = url
        result.audio_cached = cached

    async def _run_image_generation(self, character, policy, result, existing, image_context, attempts):
        validated: Dict[str, Optional[bool]] = {"value": None}

        async def _produce() -> Optional[Produced]:
            if not result.meaning:
                log.warning("No meaning available, skipping image", character=character)
                return None
            synthesized = await self.synthesizer.synthesize(
                character, result.meaning, result.pinyin,
                smart=policy.smart_prompts, context=image_context, attempts=attempts,
            )
            image, verdict, used = await self._generate_validated_image(
                character, result.meaning, synthesized.prompt, synthesized.negative_prompt,
                policy.max_image_attempts,
            )
            is_validated = verdict.is_valid and verdict.authoritative
            validated["value"] = is_validated
            return image, sniff_image_type(image), {
                "source": getattr(self.image_generator, "name", "image"),
                "validated": str(is_validated).lower(),
                "validation_attempts": str(used),
                "prompt_strategy": synthesized.strategy,
                "generated_at": datetime.now(timezone.utc).isoformat(),
            }

        url, cached = await self._ensure_asset(character, AssetType.IMAGE, policy, _produce)
        result.image_url = url
        result.image_cached = cached
        if cached:
            result.image_validated = existing.image_validated if existing is not None else None
        elif url is not None:
            result.image_validated = validated["value"]

    async def _generate_validated_image(self, character: str, meaning: str, prompt: str,
                                        negative_prompt: str, max_attempts: int
                                        ) -> Tuple[bytes, ValidationVerdict, int]:
        """Generate, validate, refine. Falls back to the last image when nothing passes."""
        current = prompt
        last_image: Optional[bytes] = None
        last_verdict: Optional[ValidationVerdict] = None
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_attempts + 1):
            t0 = time.perf_counter()
            try:
                image = await self.image_generator.generate(current, negative_prompt)
            except FIELD_ERRORS as e:
                last_error = e
                log.warning("Image generation attempt failed", character=character,
                            attempt=attempt, error=str(e))
                continue

            verdict = await self.validator.validate(image, meaning)
            elapsed = 1000 * (time.perf_counter() - t0)
            last_image, last_verdict = image, verdict
            if verdict.is_valid:
                log.info("Image accepted", character=character, attempt=attempt,
                         authoritative=verdict.authoritative, elapsed_ms=elapsed)
                return image, verdict, attempt

            log.info("Image rejected", character=character, attempt=attempt,
                     issues=verdict.issues, elapsed_ms=elapsed)
            if attempt < max_attempts:
                if is_crowding_verdict(verdict):
                    current = simplified_prompt(prompt, meaning)
                else:
                    current = refine_prompt_for_issues(current, verdict.issues)

        if last_image is None:
            raise ProviderError(f"No image produced after {max_attempts} attempts: {last_error}")

        log.warning("Using best-effort image", character=character,
                    attempts=max_attempts, issues=last_verdict.issues)
        best_effort = last_verdict.model_copy(update={"is_valid": False})
        return last_image, best_effort, max_attempts

    async def _ensure_asset(self, character: str, asset_type: AssetType, policy: GenerationPolicy,
                            produce: Callable[[], Awaitable[Optional[Produced]]]
                            ) -> Tuple[Optional[str], bool]:
        """Return (url, cached). Generates only on a miss or when forced."""
        key = media_key(character, asset_type)

        if policy.force:
            await self.media_store.delete(key)
            log.info("Deleted asset before forced regeneration", character=character, key=key)
        elif await self.media_store.exists(key):
            log.info("Using cached asset", character=character, key=key)
            return self.media_store.url_for(key), True

        claimed = await self.media_store.claim(key)
        if not claimed:
            log.info("Asset claimed by another worker, waiting", character=character, key=key)
            if await self._wait_for_asset(key):
                return self.media_store.url_for(key), True
            log.warning("Claim wait expired, generating anyway", character=character, key=key)

        try:
            try:
                produced = await produce()
            except FIELD_ERRORS as e:
                log.warning("Asset generation failed", character=character,
                            asset=asset_type.value, error=str(e))
                return None, False
            if produced is None:
                return None, False

            content, content_type, metadata = produced
            await self.media_store.put(key, content, content_type, metadata)
            return self.media_store.url_for(key), False
        finally:
            if claimed:
                await self.media_store.release(key)

    async def _wait_for_asset(self, key: str) -> bool:
        deadline = time.monotonic() + self.claim_wait_s
        while time.monotonic() < deadline:
            await asyncio.sleep(self.claim_poll_s)
            if await self.media_store.exists(key):
                return True
        return False


def build_orchestrator(
    rate_limiter: Optional[RateLimiter] = None,
    media_store: Optional[MediaStore] = None,
    card_store: Optional[CardStore] = None,
    dictionary: Optional[DictionaryStore] = None,
) -> EnrichmentOrchestrator:
    """Wire the production providers around one shared rate limiter."""
    rate_limiter = rate_limiter or RateLimiter()
    chain = build_text_chain(rate_limiter)
    return EnrichmentOrchestrator(
        adapter=ProviderAdapter(chain),
        synthesizer=PromptSynthesizer(chain),
        image_generator=OpenAIImageGenerator(rate_limiter),
        validator=ImageValidator(rate_limiter),
        speech=AzureSpeechSynthesizer(rate_limiter),
        media_store=media_store or FileMediaStore(),
        card_store=card_store or CardStore(),
        dictionary=dictionary or DictionaryStore(),
    )

