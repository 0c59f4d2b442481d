"""Pytest configuration and fixtures."""

import asyncio
import hashlib
import json
import os
import pathlib
from typing import List, Optional

import pytest
import vcr

from hanzi_enrich.database import CardStore, DictionaryStore, JobStore, init_database
from hanzi_enrich.media_store import MemoryMediaStore
from hanzi_enrich.models import DictionaryEntry, ValidationDetails, ValidationVerdict
from hanzi_enrich.orchestrator import EnrichmentOrchestrator
from hanzi_enrich.prompt_synthesizer import PromptSynthesizer
from hanzi_enrich.providers import ProviderAdapter, ProviderChain
from hanzi_enrich.rate_limiter import RateLimiter

# Calculate hash of prompts.py for cassette invalidation
PROMPTS_HASH = hashlib.sha256(
    (pathlib.Path(__file__).parent.parent / "hanzi_enrich" / "prompts.py").read_bytes()
).hexdigest()[:8]

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
MP3_BYTES = b"ID3" + b"\x00" * 32

ANALYSIS_REPLY = json.dumps({
    "etymology": {"origin": "Field radical over thread", "evolution": ["seal script"], "cultural_context": ""},
    "mnemonics": {"visual": "Threads piling up in a field", "story": "", "components": "田 + 糸"},
    "common_errors": {"similar_characters": ["果"], "wrong_contexts": [], "tone_confusions": ["lěi"]},
    "usage": {"common_collocations": ["很累"], "register_level": "neutral", "frequency": "high", "domains": []},
    "learning_tips": {"for_beginners": ["Say 我好累 after a long day"], "for_intermediate": [], "for_advanced": []},
})

SMART_REPLY = json.dumps({
    "prompt": "A hiker sitting on a mountain rock, wiping sweat from the forehead after a long climb",
    "negative_prompt": "text, letters, crowds",
    "cultural_accuracy": 0.9,
    "educational_value": 0.8,
    "clarity": 0.9,
})


def cassette(name: str) -> str:
    """Generate cassette filename with prompt hash."""
    return f"{name}_{PROMPTS_HASH}.yaml"


@pytest.fixture
def my_vcr():
    """VCR fixture for recording/replaying HTTP interactions."""
    return vcr.VCR(
        cassette_library_dir="tests/fixtures",
        filter_headers=[("authorization", "DUMMY"), ("ocp-apim-subscription-key", "DUMMY")],
        record_mode="once",
    )


def live_guard():
    """Check if live testing is enabled."""
    if os.getenv("HANZI_ENRICH_LIVE") != "1":
        pytest.skip("Live LLM disabled (set HANZI_ENRICH_LIVE=1)")


def interpretation_reply(meaning: str = "tired", pinyin: str = "lèi",
                         image_prompt: str = "A hiker resting on a rock after a long climb") -> str:
    return json.dumps({"meaning": meaning, "pinyin": pinyin, "image_prompt": image_prompt})


class ScriptedProvider:
    """Text provider that replays canned replies in order.

    A reply may be a string, an exception instance (raised) or a callable
    taking the messages. ``default`` is used once the script runs out.
    """

    def __init__(self, name: str, replies: Optional[list] = None, default=None,
                 available: bool = True, service_id: str = "openai-text"):
        self.name = name
        self.service_id = service_id
        self.replies = list(replies or [])
        self.default = default
        self._available = available
        self.calls: List[list] = []

    def available(self) -> bool:
        return self._available

    async def complete(self, messages, *, json_mode=False, temperature=None) -> str:
        self.calls.append(messages)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply


def route_by_operation(messages) -> str:
    """Answer interpretation, analysis and smart-prompt requests with sensible replies."""
    if messages[0]["role"] == "system":
        return SMART_REPLY
    content = messages[-1]["content"]
    if "Interpret the character" in content:
        return interpretation_reply()
    if "Analyze" in content:
        return ANALYSIS_REPLY
    return json.dumps({"query": "tired hiker"})


class StubSpeech:
    name = "stub-tts"
    service_id = "azure-tts"
    voice = "zh-TW-Test"

    def __init__(self, fail_with: Optional[BaseException] = None):
        self.fail_with = fail_with
        self.calls: List[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.calls.append(text)
        if self.fail_with is not None:
            raise self.fail_with
        return MP3_BYTES


class StubImageGenerator:
    name = "stub-image"
    service_id = "openai-image"

    def __init__(self, fail_with: Optional[BaseException] = None, delay_s: float = 0.0):
        self.fail_with = fail_with
        self.delay_s = delay_s
        self.prompts: List[str] = []

    async def generate(self, prompt: str, negative_prompt: Optional[str] = None) -> bytes:
        self.prompts.append(prompt)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fail_with is not None:
            raise self.fail_with
        return PNG_BYTES


class StubValidator:
    """Returns queued verdicts, then ``default``."""

    def __init__(self, verdicts: Optional[List[ValidationVerdict]] = None,
                 default: Optional[ValidationVerdict] = None):
        self.verdicts = list(verdicts or [])
        self.default = default or ValidationVerdict(is_valid=True, confidence=0.9)
        self.calls = 0

    async def validate(self, image: bytes, meaning: str) -> ValidationVerdict:
        self.calls += 1
        return self.verdicts.pop(0) if self.verdicts else self.default


def rejected(*issues: str, **details) -> ValidationVerdict:
    return ValidationVerdict(is_valid=False, confidence=0.8, issues=list(issues),
                             details=ValidationDetails(**details))


@pytest.fixture
def rate_limiter():
    return RateLimiter(intervals_ms={})


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "cards.sqlite"
    init_database(path)
    return path


@pytest.fixture
def card_store(db_path):
    return CardStore(db_path)


@pytest.fixture
def job_store(db_path):
    return JobStore(db_path)


@pytest.fixture
def dictionary(db_path):
    store = DictionaryStore(db_path)
    store.add_entries([
        DictionaryEntry(traditional="累", simplified="累", pinyin="lei3", definitions=["to accumulate"]),
        DictionaryEntry(traditional="累", simplified="累", pinyin="lei4", definitions=["tired", "weary"]),
        DictionaryEntry(traditional="累", simplified="累", pinyin="lei2", definitions=["rope", "to bind together"]),
        DictionaryEntry(traditional="好", simplified="好", pinyin="hao3", definitions=["good", "well"]),
    ])
    return store


@pytest.fixture
def media_store():
    return MemoryMediaStore()


def make_orchestrator(rate_limiter, media_store, card_store=None, dictionary=None,
                      text_provider=None, speech=None, image_generator=None, validator=None,
                      claim_wait_s: float = 1.0, claim_poll_s: float = 0.01) -> EnrichmentOrchestrator:
    provider = text_provider or ScriptedProvider("primary", default=route_by_operation)
    chain = ProviderChain([provider], rate_limiter, retries=3, delay_ms=0, timeout_s=5)
    return EnrichmentOrchestrator(
        adapter=ProviderAdapter(chain),
        synthesizer=PromptSynthesizer(chain),
        image_generator=image_generator or StubImageGenerator(),
        validator=validator or StubValidator(),
        speech=speech or StubSpeech(),
        media_store=media_store,
        card_store=card_store,
        dictionary=dictionary,
        claim_wait_s=claim_wait_s,
        claim_poll_s=claim_poll_s,
    )
