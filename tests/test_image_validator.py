"""Tests for validator verdicts and issue-driven prompt refinement."""

import asyncio

import pytest

from hanzi_enrich.image_validator import (
    ImageValidator,
    is_crowding_verdict,
    refine_prompt_for_issues,
    simplified_prompt,
    verdict_from_response,
)
from hanzi_enrich.rate_limiter import RateLimiter
from tests.conftest import PNG_BYTES, rejected


def test_clean_image_is_valid():
    verdict = verdict_from_response({
        "is_valid": True, "confidence": 0.92, "issues": [],
        "details": {"person_count": 1},
    })

    assert verdict.is_valid
    assert verdict.authoritative
    assert verdict.confidence == 0.92


def test_hard_limits_override_model_opinion():
    """Four people, or any text, fails even if the model said it was fine."""
    crowded = verdict_from_response({"is_valid": True, "details": {"personCount": 4}})
    texty = verdict_from_response({"isValid": True, "details": {"hasEmbeddedText": True}})

    assert not crowded.is_valid
    assert "too many people" in crowded.issues
    assert not texty.is_valid
    assert "embedded text" in texty.issues


def test_minor_issues_do_not_disqualify():
    verdict = verdict_from_response({
        "is_valid": True, "issues": ["slightly blurry"],
        "details": {"has_floating_objects": True},
    })

    assert verdict.is_valid
    assert "floating objects" in verdict.issues


def test_crowding_detection():
    assert is_crowding_verdict(rejected("crowded scene", crowded_scene=True))
    assert is_crowding_verdict(rejected("x", person_count=5))
    assert not is_crowding_verdict(rejected("anatomical distortion: extra limbs", has_extra_limbs=True))


def test_refine_prompt_names_each_issue():
    refined = refine_prompt_for_issues("A girl kicking a ball", ["extra limbs", "duplicate objects", "embedded text"])

    assert refined.startswith("A girl kicking a ball CRITICAL:")
    assert "exactly 2 arms and 2 legs" in refined
    assert "exactly ONE ball" in refined
    assert "NO text" in refined


def test_refine_prompt_without_known_issue():
    refined = refine_prompt_for_issues("A bowl of rice", ["odd lighting"])

    assert "single clear subject" in refined


def test_simplified_prompt_caps_people():
    sport = simplified_prompt("A stadium full of fans watching soccer", "to play ball")
    general = simplified_prompt("A busy market", "market")

    assert sport.startswith("Exactly two people")
    assert "MAXIMUM 3 people" in sport
    assert general.startswith("A single person or a single object")


def test_validator_without_key_accepts_with_warning():
    validator = ImageValidator(RateLimiter({}), api_key=None)

    verdict = asyncio.run(validator.validate(PNG_BYTES, "tired"))

    assert verdict.is_valid
    assert not verdict.authoritative
    assert "validator unavailable" in verdict.warning


def test_loose_shapes_are_read_leniently():
    verdict = verdict_from_response({
        "is_valid": True, "issues": "slightly blurry",
        "details": {"person_count": "4 people", "other_issues": "odd lighting"},
    })

    assert not verdict.is_valid
    assert verdict.details.person_count == 4
    assert verdict.details.other_issues == ["odd lighting"]
    assert "slightly blurry" in verdict.issues


@pytest.mark.parametrize("reply", [
    {"is_valid": True, "details": {"person_count": "two or three"}},
    {"is_valid": False, "details": ["extra limbs"]},
])
def test_unreadable_verdict_accepts_with_warning(monkeypatch, reply):
    async def fake_vision(*args, **kwargs):
        return reply

    monkeypatch.setattr("hanzi_enrich.image_validator.call_vision_json", fake_vision)
    validator = ImageValidator(RateLimiter({}), api_key="test-key")

    verdict = asyncio.run(validator.validate(PNG_BYTES, "tired"))

    assert verdict.is_valid
    assert not verdict.authoritative
    assert "validator unavailable" in verdict.warning
