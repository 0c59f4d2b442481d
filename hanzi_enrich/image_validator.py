"""Artifact checks for generated images, and prompt fixes driven by the findings."""

import re
from typing import Any, Dict, List, Optional

import structlog

from . import prompts
from .config import OPENAI_API_KEY, PROVIDER_TIMEOUT_S, VISION_MODEL
from .models import ValidationDetails, ValidationVerdict
from .openai_client import call_vision_json, make_client, sniff_image_type
from .rate_limiter import RateLimiter

log = structlog.get_logger()

MAX_PEOPLE = 3

# (pattern matched against an issue string, constraint appended to the prompt)
ISSUE_CONSTRAINTS = [
    (r"limb|arm|leg", "Ensure all people have exactly 2 arms and 2 legs"),
    (r"hand|finger", "Hands must have exactly 5 fingers each, or keep hands out of frame"),
    (r"face", "Faces must be natural and undistorted"),
    (r"float|disconnect", "All objects must be grounded or held naturally, nothing floating"),
    (r"duplicate", "Show only ONE of each object, for example exactly ONE ball"),
    (r"crowd|too many people|more than 3", "MAXIMUM 3 people in the scene"),
    (r"text|letter|character|writing|sign", "Absolutely NO text, letters, numbers, signs or written characters anywhere"),
    (r"deform|distort|melt", "Objects must keep realistic, undeformed shapes"),
]


def _count(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    if not value:
        return 0
    match = re.search(r"\d+", str(value))
    if not match:
        raise ValueError(f"Unreadable person count: {value!r}")
    return int(match.group(0))


def _string_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


def verdict_from_response(data: Dict[str, Any]) -> ValidationVerdict:
    """Build a verdict from the model's JSON, enforcing the hard limits ourselves."""
    raw_details = data.get("details") or {}
    if not isinstance(raw_details, dict):
        raise ValueError(f"Validator details were not an object: {raw_details!r}")
    details = ValidationDetails(
        person_count=_count(raw_details.get("person_count", raw_details.get("personCount", 0))),
        crowded_scene=bool(raw_details.get("crowded_scene", raw_details.get("crowdedScene", False))),
        has_embedded_text=bool(raw_details.get("has_embedded_text", raw_details.get("hasEmbeddedText", False))),
        has_extra_limbs=bool(raw_details.get("has_extra_limbs", raw_details.get("hasExtraLimbs", False))),
        has_distorted_faces=bool(raw_details.get("has_distorted_faces", raw_details.get("hasDistortedFaces", False))),
        has_unrealistic_hands=bool(raw_details.get("has_unrealistic_hands", raw_details.get("hasUnrealisticHands", False))),
        has_floating_objects=bool(raw_details.get("has_floating_objects", raw_details.get("hasFloatingObjects", False))),
        has_duplicate_objects=bool(raw_details.get("has_duplicate_objects", raw_details.get("hasDuplicateObjects", False))),
        other_issues=_string_list(raw_details.get("other_issues", raw_details.get("otherIssues"))),
    )
    issues: List[str] = _string_list(data.get("issues"))

    def _flag(condition: bool, issue: str):
        if condition and issue not in issues:
            issues.append(issue)

    _flag(details.has_embedded_text, "embedded text")
    _flag(details.person_count > MAX_PEOPLE, "too many people")
    _flag(details.crowded_scene, "crowded scene")
    _flag(details.has_extra_limbs, "anatomical distortion: extra limbs")
    _flag(details.has_distorted_faces, "anatomical distortion: distorted faces")
    _flag(details.has_unrealistic_hands, "anatomical distortion: unrealistic hands")
    _flag(details.has_floating_objects, "floating objects")
    _flag(details.has_duplicate_objects, "duplicate objects")

    disqualified = (
        details.has_embedded_text
        or details.person_count > MAX_PEOPLE
        or details.crowded_scene
        or details.has_extra_limbs
        or details.has_distorted_faces
        or details.has_unrealistic_hands
    )
    is_valid = bool(data.get("is_valid", data.get("isValid", True))) and not disqualified
    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    return ValidationVerdict(is_valid=is_valid, confidence=confidence, issues=issues, details=details)


def is_crowding_verdict(verdict: ValidationVerdict) -> bool:
    return (
        verdict.details.crowded_scene
        or verdict.details.person_count > MAX_PEOPLE
        or any(re.search(r"crowd|too many people", issue, re.IGNORECASE) for issue in verdict.issues)
    )


def refine_prompt_for_issues(prompt: str, issues: List[str]) -> str:
    """Append a CRITICAL clause naming a constraint for each reported issue."""
    constraints = []
    for pattern, constraint in ISSUE_CONSTRAINTS:
        if any(re.search(pattern, issue, re.IGNORECASE) for issue in issues) and constraint not in constraints:
            constraints.append(constraint)
    if not constraints:
        constraints.append("Keep the composition simple with a single clear subject")
    return f"{prompt} CRITICAL: {'. '.join(constraints)}."


def simplified_prompt(original: str, meaning: str) -> str:
    """Replace a crowded scene with one that caps the number of subjects."""
    lowered = meaning.lower()
    if re.search(r"\b(play|sport|game|ball)", lowered):
        framing = f"Exactly two people {lowered.removeprefix('to ')} together, simple outdoor setting"
    elif re.search(r"\b(group|team|crowd|together|everyone)", lowered):
        framing = f"Exactly 3 people representing '{meaning}', standing apart with clear space between them"
    else:
        framing = f"A single person or a single object clearly representing '{meaning}'"
    return (f"{framing}. Minimal background, no group framing, MAXIMUM 3 people. "
            "No text anywhere, no letters, numbers or written characters.")


class ImageValidator:
    """Vision-model artifact check. Never authoritative when the check itself fails."""

    service_id = "openai-vision"

    def __init__(self, rate_limiter: RateLimiter, api_key: Optional[str] = OPENAI_API_KEY,
                 model: str = VISION_MODEL, timeout: float = PROVIDER_TIMEOUT_S):
        self.rate_limiter = rate_limiter
        self.model = model
        self.timeout = timeout
        self._client = make_client(api_key)

    async def validate(self, image: bytes, meaning: str) -> ValidationVerdict:
        if self._client is None:
            return self._accept_with_warning("validator not configured")

        await self.rate_limiter.acquire(self.service_id)
        try:
            data = await call_vision_json(
                self._client, self.model,
                prompts.IMAGE_VALIDATION_SYSTEM,
                prompts.IMAGE_VALIDATION_USER.format(meaning=meaning),
                image, sniff_image_type(image), timeout=self.timeout,
            )
            if not isinstance(data, dict):
                raise ValueError("Validator reply was not an object")
            verdict = verdict_from_response(data)
        except Exception as e:
            log.warning("Image validation failed, accepting image", error=str(e), model=self.model)
            return self._accept_with_warning(str(e))

        log.info("Image validated", is_valid=verdict.is_valid, issues=verdict.issues,
                 person_count=verdict.details.person_count, confidence=verdict.confidence)
        return verdict

    @staticmethod
    def _accept_with_warning(reason: str) -> ValidationVerdict:
        return ValidationVerdict(
            is_valid=True, confidence=0.0, authoritative=False,
            warning=f"validator unavailable: {reason}",
        )
