"""Provider chain with retry-then-advance fallback, and the text operations built on it."""

import asyncio
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar

import aiohttp
import openai
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from . import prompts
from .config import (
    OPENAI_API_KEY,
    PRIMARY_TEXT_MODEL,
    PROVIDER_RETRIES,
    PROVIDER_RETRY_DELAY_MS,
    PROVIDER_TIMEOUT_S,
    SECONDARY_API_KEY,
    SECONDARY_BASE_URL,
    SECONDARY_ENABLED,
    SECONDARY_TEXT_MODEL,
    TEMPERATURE,
)
from .errors import LowQualityResult, ProviderChainExhausted, ProviderError, ProviderUnavailable
from .models import AttemptOutcome, DeepAnalysis, Interpretation, ProviderCallAttempt, UserLevel
from .openai_client import call_chat, make_client, parse_json_response, strip_code_fences
from .rate_limiter import RateLimiter

log = structlog.get_logger()

T = TypeVar("T")

# Errors that count as a failed attempt and move the chain along.
RETRYABLE_ERRORS = (
    ProviderError,
    openai.OpenAIError,
    aiohttp.ClientError,
    asyncio.TimeoutError,
)

SKIP_IMAGE = "SKIP_IMAGE"

PLACEHOLDER_MEANINGS = {"unknown", "unknown character", "unknown meaning", "n/a", "none", "?"}


class TextProvider(Protocol):
    name: str
    service_id: str

    def available(self) -> bool: ...

    async def complete(self, messages: List[Dict[str, Any]], *, json_mode: bool = False,
                       temperature: Optional[float] = None) -> str: ...


class OpenAIChatProvider:
    """Chat-completions backend. Works against any OpenAI-compatible endpoint."""

    def __init__(self, name: str, model: str, api_key: Optional[str],
                 base_url: Optional[str] = None, service_id: str = "openai-text",
                 enabled: bool = True, timeout: float = PROVIDER_TIMEOUT_S):
        self.name = name
        self.model = model
        self.service_id = service_id
        self.enabled = enabled
        self.timeout = timeout
        self._client = make_client(api_key, base_url) if enabled else None

    def available(self) -> bool:
        return self.enabled and self._client is not None

    async def complete(self, messages, *, json_mode=False, temperature=None) -> str:
        if self._client is None:
            raise ProviderUnavailable(f"{self.name} has no API key configured")
        return await call_chat(
            self._client, self.model, messages,
            json_mode=json_mode, temperature=temperature, timeout=self.timeout,
        )


class ProviderChain:
    """Ordered providers tried one after another, each with its own retry budget.

    Worst-case latency of one ``run`` is bounded by :meth:`worst_case_latency_s`.
    """

    def __init__(
        self,
        providers: Sequence[TextProvider],
        rate_limiter: RateLimiter,
        retries: int = PROVIDER_RETRIES,
        delay_ms: int = PROVIDER_RETRY_DELAY_MS,
        timeout_s: float = PROVIDER_TIMEOUT_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if retries < 1:
            raise ValueError("retries must be at least 1")
        self.providers = list(providers)
        self.rate_limiter = rate_limiter
        self.retries = retries
        self.delay_ms = delay_ms
        self.timeout_s = timeout_s
        self._sleep = sleep

    def worst_case_latency_s(self) -> float:
        """Upper bound for one operation across the whole chain."""
        total = 0.0
        for provider in self.providers:
            interval = self.rate_limiter.intervals_ms.get(provider.service_id, 0) / 1000
            total += self.retries * (self.timeout_s + interval)
            total += (self.retries - 1) * self.delay_ms / 1000
        return total

    async def run(
        self,
        operation: str,
        call: Callable[[TextProvider], Awaitable[T]],
        attempts: Optional[List[ProviderCallAttempt]] = None,
    ) -> T:
        """Run ``call`` against each provider until one succeeds.

        Raises ProviderChainExhausted when every provider has used its budget.
        """
        attempts = attempts if attempts is not None else []
        last_error: Optional[BaseException] = None

        for provider in self.providers:
            if not provider.available():
                last_error = ProviderUnavailable(f"{provider.name} is disabled or not configured")
                attempts.append(ProviderCallAttempt(
                    provider=provider.name, operation=operation, attempt=0,
                    outcome=AttemptOutcome.SKIPPED, error=str(last_error),
                ))
                log.warning("Provider unavailable, skipping", provider=provider.name, operation=operation)
                continue

            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.retries),
                wait=wait_fixed(self.delay_ms / 1000),
                retry=retry_if_exception_type(RETRYABLE_ERRORS),
                sleep=self._sleep,
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        result = await self._attempt(
                            provider, operation, call, attempts, attempt.retry_state.attempt_number
                        )
                return result
            except RETRYABLE_ERRORS as e:
                last_error = e
                log.warning("Provider exhausted retries, advancing",
                            provider=provider.name, operation=operation,
                            attempts=self.retries, error=str(e))

        log.error("Provider chain exhausted", operation=operation,
                  attempts=len(attempts), error=str(last_error))
        raise ProviderChainExhausted(operation, attempts, last_error)

    async def _attempt(self, provider, operation, call, attempts, number):
        await self.rate_limiter.acquire(provider.service_id)
        t0 = time.perf_counter()
        try:
            result = await asyncio.wait_for(call(provider), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            elapsed = 1000 * (time.perf_counter() - t0)
            attempts.append(ProviderCallAttempt(
                provider=provider.name, operation=operation, attempt=number,
                outcome=AttemptOutcome.TIMEOUT, elapsed_ms=elapsed, error="timeout",
            ))
            log.warning("Provider call timed out", provider=provider.name,
                        operation=operation, attempt=number, elapsed_ms=elapsed)
            raise
        except RETRYABLE_ERRORS as e:
            elapsed = 1000 * (time.perf_counter() - t0)
            attempts.append(ProviderCallAttempt(
                provider=provider.name, operation=operation, attempt=number,
                outcome=AttemptOutcome.ERROR, elapsed_ms=elapsed, error=str(e),
            ))
            log.warning("Provider call failed", provider=provider.name,
                        operation=operation, attempt=number, elapsed_ms=elapsed, error=str(e))
            raise

        elapsed = 1000 * (time.perf_counter() - t0)
        attempts.append(ProviderCallAttempt(
            provider=provider.name, operation=operation, attempt=number,
            outcome=AttemptOutcome.SUCCESS, elapsed_ms=elapsed,
        ))
        log.info("Provider call succeeded", provider=provider.name,
                 operation=operation, attempt=number, elapsed_ms=elapsed)
        return result


def parse_interpretation(text: str) -> Interpretation:
    """Turn a model reply into an Interpretation, rejecting placeholder answers."""
    try:
        data = parse_json_response(text)
    except ValueError:
        match = re.search(r'"meaning"\s*:\s*"([^"]+)"', strip_code_fences(text))
        if not match:
            raise LowQualityResult("Interpretation reply was not JSON and had no meaning field")
        data = {"meaning": match.group(1)}
        pinyin = re.search(r'"pinyin"\s*:\s*"([^"]+)"', text)
        if pinyin:
            data["pinyin"] = pinyin.group(1)

    if not isinstance(data, dict):
        raise LowQualityResult("Interpretation reply was not an object")

    meaning = (data.get("meaning") or "").strip()
    if not meaning or meaning.lower().rstrip(".") in PLACEHOLDER_MEANINGS:
        raise LowQualityResult(f"Placeholder meaning: {meaning!r}")

    return Interpretation(
        meaning=meaning,
        pinyin=(data.get("pinyin") or "").strip() or None,
        image_prompt=(data.get("image_prompt") or data.get("imagePrompt") or "").strip() or None,
    )


def parse_analysis(text: str) -> DeepAnalysis:
    try:
        data = parse_json_response(text)
    except ValueError as e:
        raise LowQualityResult(str(e)) from e
    if not isinstance(data, dict):
        raise LowQualityResult("Analysis reply was not an object")
    analysis = DeepAnalysis.model_validate(data)
    if not analysis.is_meaningful():
        raise LowQualityResult("Analysis has empty etymology, mnemonics or tips")
    return analysis


def first_clause(meaning: str) -> str:
    return re.split(r"[;,]", meaning)[0].strip()


class ProviderAdapter:
    """The three text operations the orchestrator needs, each backed by a chain."""

    def __init__(self, chain: ProviderChain, temperature: float = TEMPERATURE):
        self.chain = chain
        self.temperature = temperature

    async def interpret(self, character: str, context_hint: Optional[str] = None,
                        attempts: Optional[List[ProviderCallAttempt]] = None) -> Interpretation:
        context = prompts.PROMPT_INTERPRETATION_CONTEXT.format(hint=context_hint) if context_hint else ""
        prompt = prompts.PROMPT_INTERPRETATION.format(character=character, context=context)
        messages = [{"role": "user", "content": prompt}]

        async def _call(provider: TextProvider) -> Interpretation:
            reply = await provider.complete(messages, json_mode=True, temperature=self.temperature)
            return parse_interpretation(reply)

        return await self.chain.run("interpret", _call, attempts)

    async def analyze_linguistics(self, character: str, user_level: UserLevel = UserLevel.BEGINNER,
                                  pinyin: Optional[str] = None, meaning: Optional[str] = None,
                                  attempts: Optional[List[ProviderCallAttempt]] = None) -> DeepAnalysis:
        reading = ""
        if pinyin or meaning:
            reading = f" ({', '.join(part for part in (pinyin, meaning) if part)})"
        prompt = prompts.PROMPT_LINGUISTIC_ANALYSIS.format(
            character=character, user_level=user_level.value, reading=reading
        )
        messages = [{"role": "user", "content": prompt}]

        async def _call(provider: TextProvider) -> DeepAnalysis:
            reply = await provider.complete(messages, json_mode=True, temperature=self.temperature)
            return parse_analysis(reply)

        return await self.chain.run("analyze_linguistics", _call, attempts)

    async def query_image_search(self, character: str, meaning: str, pinyin: Optional[str] = None,
                                 attempts: Optional[List[ProviderCallAttempt]] = None) -> str:
        """Return a short search query, SKIP_IMAGE, or the meaning's first clause offline."""
        prompt = prompts.PROMPT_IMAGE_SEARCH_QUERY.format(
            character=character, meaning=meaning, pinyin=pinyin or ""
        )
        messages = [{"role": "user", "content": prompt}]

        async def _call(provider: TextProvider) -> str:
            reply = await provider.complete(messages, json_mode=True, temperature=self.temperature)
            try:
                data = parse_json_response(reply)
                query = data.get("query", "") if isinstance(data, dict) else ""
            except ValueError:
                query = strip_code_fences(reply)
            query = query.strip().strip('"')
            if not query:
                raise LowQualityResult("Empty image search query")
            return SKIP_IMAGE if SKIP_IMAGE in query.upper() else query

        try:
            return await self.chain.run("query_image_search", _call, attempts)
        except ProviderChainExhausted:
            fallback = first_clause(meaning)
            log.info("Using offline image search query", character=character, query=fallback)
            return fallback


def build_text_chain(rate_limiter: RateLimiter) -> ProviderChain:
    """Primary/secondary chat chain from configuration."""
    providers: List[TextProvider] = [
        OpenAIChatProvider("primary", PRIMARY_TEXT_MODEL, OPENAI_API_KEY),
        OpenAIChatProvider(
            "secondary", SECONDARY_TEXT_MODEL, SECONDARY_API_KEY,
            base_url=SECONDARY_BASE_URL, enabled=SECONDARY_ENABLED,
        ),
    ]
    return ProviderChain(providers, rate_limiter)
