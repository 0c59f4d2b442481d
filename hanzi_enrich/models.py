"""Data models for the character enrichment pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AssetType(str, Enum):
    AUDIO = "audio"
    IMAGE = "image"


class RequestSource(str, Enum):
    """Who asked for the enrichment; drives queue priority."""

    USER = "user"
    CARD = "card"
    DECK = "deck"
    BULK = "bulk"


class EnrichmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially-completed"
    FAILED = "failed"


class EnrichmentStage(str, Enum):
    """States of the per-character enrichment state machine."""

    PENDING = "pending"
    DICTIONARY_LOOKUP = "dictionary-lookup"
    INTERPRETING = "interpreting"
    ANALYZING = "analyzing"
    AUDIO_GENERATION = "audio-generation"
    IMAGE_GENERATION = "image-generation"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially-completed"
    FAILED = "failed"


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class UserLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class PromptCategory(str, Enum):
    PERSON = "person"
    ACTION = "action"
    EMOTION = "emotion"
    OBJECT = "object"
    PLACE = "place"
    FOOD = "food"
    NATURE = "nature"
    GRAMMATICAL = "grammatical"
    ABSTRACT = "abstract"


class QueueName(str, Enum):
    DECK_IMPORT = "deck-import"
    DECK_ENRICHMENT = "deck-enrichment"
    CARD_ENRICHMENT = "card-enrichment"
    BULK_IMPORT = "bulk-import"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


class GenerationPolicy(BaseModel):
    """How aggressively a request may (re)generate content."""

    force: bool = False
    smart_prompts: bool = True
    max_image_attempts: int = 3
    user_level: UserLevel = UserLevel.BEGINNER


class EnrichmentRequest(BaseModel):
    """One unit of pipeline work for a single character."""

    character: str
    meaning_hint: Optional[str] = None
    pinyin_hint: Optional[str] = None
    policy: GenerationPolicy = Field(default_factory=GenerationPolicy)
    source: RequestSource = RequestSource.CARD
    deck_id: Optional[str] = None

    @property
    def force(self) -> bool:
        return self.policy.force


class Interpretation(BaseModel):
    meaning: str
    pinyin: Optional[str] = None
    image_prompt: Optional[str] = None


class _CamelModel(BaseModel):
    """Accepts both snake_case and camelCase keys from model output."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Etymology(_CamelModel):
    origin: str = ""
    evolution: List[str] = Field(default_factory=list)
    cultural_context: str = ""


class Mnemonics(_CamelModel):
    visual: str = ""
    story: str = ""
    components: str = ""


class CommonErrors(_CamelModel):
    similar_characters: List[str] = Field(default_factory=list)
    wrong_contexts: List[str] = Field(default_factory=list)
    tone_confusions: List[str] = Field(default_factory=list)


class Usage(_CamelModel):
    common_collocations: List[str] = Field(default_factory=list)
    register_level: str = ""
    frequency: str = ""
    domains: List[str] = Field(default_factory=list)


class LearningTips(_CamelModel):
    for_beginners: List[str] = Field(default_factory=list)
    for_intermediate: List[str] = Field(default_factory=list)
    for_advanced: List[str] = Field(default_factory=list)


class DeepAnalysis(_CamelModel):
    """Linguistic analysis sub-document stored with a character."""

    etymology: Etymology = Field(default_factory=Etymology)
    mnemonics: Mnemonics = Field(default_factory=Mnemonics)
    common_errors: CommonErrors = Field(default_factory=CommonErrors)
    usage: Usage = Field(default_factory=Usage)
    learning_tips: LearningTips = Field(default_factory=LearningTips)

    def is_meaningful(self) -> bool:
        """True only when the top-level sections actually say something."""
        return bool(
            self.etymology.origin.strip()
            and self.mnemonics.visual.strip()
            and any(tip.strip() for tip in self.learning_tips.for_beginners)
        )


class ProviderCallAttempt(BaseModel):
    """One outbound provider call, kept for fallback decisions and audit logs."""

    provider: str
    operation: str
    attempt: int
    outcome: AttemptOutcome
    elapsed_ms: float = 0.0
    error: Optional[str] = None


class ValidationDetails(BaseModel):
    person_count: int = 0
    crowded_scene: bool = False
    has_embedded_text: bool = False
    has_extra_limbs: bool = False
    has_distorted_faces: bool = False
    has_unrealistic_hands: bool = False
    has_floating_objects: bool = False
    has_duplicate_objects: bool = False
    other_issues: List[str] = Field(default_factory=list)


class ValidationVerdict(BaseModel):
    is_valid: bool
    confidence: float = 0.0
    issues: List[str] = Field(default_factory=list)
    details: ValidationDetails = Field(default_factory=ValidationDetails)
    authoritative: bool = True  # False when the validator itself failed
    warning: Optional[str] = None


class SynthesizedPrompt(BaseModel):
    prompt: str
    negative_prompt: str
    category: Optional[PromptCategory] = None
    strategy: str = "deterministic"  # deterministic | smart
    cultural_accuracy: float = 0.0
    educational_value: float = 0.0
    clarity: float = 0.0
    fixes: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MediaAsset(BaseModel):
    key: str
    asset_type: AssetType
    content: bytes
    content_type: str
    metadata: Dict[str, str] = Field(default_factory=dict)


class DictionaryEntry(BaseModel):
    traditional: str
    simplified: str = ""
    pinyin: str
    definitions: List[str] = Field(default_factory=list)


class EnrichmentResult(BaseModel):
    """Output bundle for a character; every content field is independently nullable."""

    character: str
    meaning: Optional[str] = None
    pinyin: Optional[str] = None
    audio_url: Optional[str] = None
    image_url: Optional[str] = None
    linguistic_analysis: Optional[DeepAnalysis] = None
    audio_cached: bool = False
    image_cached: bool = False
    image_validated: Optional[bool] = None
    status: EnrichmentStatus = EnrichmentStatus.PENDING
    updated_at: Optional[datetime] = None
    attempts: List[ProviderCallAttempt] = Field(default_factory=list, exclude=True)

    def missing_fields(self) -> List[str]:
        fields = ["meaning", "pinyin", "audio_url", "image_url", "linguistic_analysis"]
        return [name for name in fields if getattr(self, name) is None]
