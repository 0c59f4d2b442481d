"""Tests for data models and failure classification."""

from hanzi_enrich.errors import (
    JobTimeout,
    LowQualityResult,
    MalformedInput,
    ProviderChainExhausted,
    StorageFailure,
    classify_failure,
)
from hanzi_enrich.models import (
    DeepAnalysis,
    EnrichmentRequest,
    EnrichmentResult,
    FailureClass,
    GenerationPolicy,
    ProviderCallAttempt,
    RequestSource,
    AttemptOutcome,
)


def test_request_defaults():
    """Test EnrichmentRequest creation and default values."""
    request = EnrichmentRequest(character="累")

    assert request.character == "累"
    assert request.meaning_hint is None
    assert request.pinyin_hint is None
    assert request.source == RequestSource.CARD
    assert request.force is False
    assert request.policy.smart_prompts is True
    assert request.policy.max_image_attempts == 3


def test_request_round_trips_through_job_payload():
    """Requests travel through the queue as JSON-safe dicts."""
    request = EnrichmentRequest(character="好", meaning_hint="good",
                                policy=GenerationPolicy(force=True), source=RequestSource.USER)
    restored = EnrichmentRequest.model_validate(request.model_dump(mode="json"))

    assert restored == request
    assert restored.force is True


def test_result_missing_fields():
    """Every content field is tracked independently."""
    result = EnrichmentResult(character="累", meaning="tired", pinyin="lèi")

    assert result.missing_fields() == ["audio_url", "image_url", "linguistic_analysis"]


def test_result_attempts_not_serialized():
    """Provider attempts are an audit trail, not stored content."""
    result = EnrichmentResult(character="累")
    result.attempts = [ProviderCallAttempt(provider="primary", operation="interpret",
                                           attempt=1, outcome=AttemptOutcome.SUCCESS)]

    assert "attempts" not in result.model_dump()
    assert len(result.attempts) == 1


def test_analysis_accepts_camel_case():
    """Model output in camelCase parses into the snake_case fields."""
    analysis = DeepAnalysis.model_validate({
        "etymology": {"origin": "pictograph", "culturalContext": "old"},
        "mnemonics": {"visual": "a field of thread"},
        "learningTips": {"forBeginners": ["practice daily"]},
    })

    assert analysis.etymology.cultural_context == "old"
    assert analysis.learning_tips.for_beginners == ["practice daily"]
    assert analysis.is_meaningful()


def test_empty_analysis_is_not_meaningful():
    assert not DeepAnalysis().is_meaningful()
    assert not DeepAnalysis.model_validate({
        "etymology": {"origin": "pictograph"},
        "mnemonics": {"visual": " "},
        "learningTips": {"forBeginners": ["tip"]},
    }).is_meaningful()


def test_classify_failure():
    """Malformed input never retries; storage and timeouts get one more chance."""
    assert classify_failure(MalformedInput("empty"), 1) == FailureClass.PERMANENT
    assert classify_failure(LowQualityResult("unknown"), 1) == FailureClass.TRANSIENT
    assert classify_failure(ProviderChainExhausted("interpret", []), 2) == FailureClass.TRANSIENT
    assert classify_failure(StorageFailure("down"), 1) == FailureClass.TRANSIENT
    assert classify_failure(StorageFailure("down"), 2) == FailureClass.PERMANENT
    assert classify_failure(JobTimeout("slow"), 1, timeouts=1) == FailureClass.TRANSIENT
    assert classify_failure(JobTimeout("slow"), 2, timeouts=2) == FailureClass.PERMANENT
    assert classify_failure(RuntimeError("boom"), 1) == FailureClass.TRANSIENT
