"""Image prompt synthesis: keyword classification plus templates, or an AI-written prompt.

The deterministic path never touches the network. Grammar words and abstract
words get symbolic imagery; concrete words get a photography-style template
with cultural context for people.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import structlog

from . import prompts
from .errors import LowQualityResult, ProviderChainExhausted
from .models import PromptCategory, ProviderCallAttempt, SynthesizedPrompt
from .openai_client import parse_json_response, strip_code_fences
from .providers import ProviderChain, first_clause
from .utils import clean_image_prompt

log = structlog.get_logger()

NO_TEXT_CLAUSE = "No text, letters, numbers, or written characters."
DEFAULT_NEGATIVE_PROMPT = (
    "No text, letters, numbers, or written characters. No stereotypes or inappropriate content."
)
SYMBOLIC_NEGATIVE_PROMPT = (
    "people, human figures, faces, hands, text, letters, numbers, written characters, clutter"
)
PHOTO_NEGATIVE_PROMPT = (
    "text, letters, numbers, written characters, signage, watermark, extra limbs, "
    "distorted faces, crowds, more than three people, cartoon, illustration"
)
MIN_PROMPT_LENGTH = 50
MIN_SMART_PROMPT_LENGTH = 20
CULTURAL_QUALIFIER = re.compile(r"\b(taiwanese|asian|chinese|east asian)\b", re.IGNORECASE)
NO_TEXT_PATTERN = re.compile(r"\bno (embedded |written |visible )?text\b", re.IGNORECASE)


def _words(*terms: str, plural: bool = True) -> re.Pattern:
    suffix = r")s?\b" if plural else r")\b"
    return re.compile(r"\b(" + "|".join(terms) + suffix, re.IGNORECASE)


GRAMMATICAL = _words("particle", "measure word", "classifier", "auxiliary", "suffix", "prefix",
                     "marker", "interjection")
ELDER = _words("grandmother", "grandfather", "grandma", "grandpa", "grandparent", "elder",
               "elderly", "old man", "old woman", "senior")
FAMILY = _words("mother", "father", "mom", "dad", "parent", "brother", "sister", "son",
                "daughter", "aunt", "uncle", "cousin", "wife", "husband", "family", "baby",
                "child", "children")
PERSON = _words("person", "people", "man", "men", "woman", "women", "boy", "girl", "friend",
                "teacher", "student", "doctor", "nurse", "worker", "farmer", "police",
                "guest", "host", "king", "soldier", "owner", "customer")
FOOD = _words("food", "rice", "noodle", "tea", "meat", "pork", "beef", "chicken", "fish",
              "fruit", "vegetable", "egg", "bread", "soup", "dumpling", "apple", "banana",
              "milk", "coffee", "tofu", "meal", "breakfast", "lunch", "dinner", "cake")
PLACE = _words("school", "home", "house", "city", "country", "market", "shop", "store",
               "restaurant", "station", "park", "temple", "room", "hospital", "office",
               "street", "road", "library", "village", "kitchen", "classroom", "airport")
NATURE = _words("mountain", "river", "tree", "flower", "sun", "moon", "rain", "sky", "sea",
                "ocean", "cloud", "wind", "snow", "fire", "stone", "rock", "forest", "grass",
                "star", "lake", "leaf", "leaves", "animal", "dog", "cat", "bird", "horse")
EMOTION = _words("happy", "happiness", "sad", "sadness", "angry", "anger", "afraid", "fear",
                 "love", "joy", "tired", "weary", "worried", "worry", "surprised", "lonely",
                 "excited", "calm", "nervous", "proud", "shy", "bored", "glad", "pleasure",
                 "upset", "jealous", "grateful", "embarrassed")
MODAL = _words("can", "able", "should", "must", "want", "need", "may", "might", "ought",
               "have to", "would like", plural=False)
ACTION = _words("run", "walk", "eat", "drink", "sleep", "read", "write", "speak", "say", "talk",
                "listen", "hear", "see", "look", "watch", "go", "come", "sit", "stand", "play",
                "study", "learn", "work", "buy", "sell", "cook", "swim", "sing", "dance",
                "open", "close", "give", "take", "think", "fly", "jump", "wash", "help",
                "teach", "call", "wait", "climb", "carry", "throw", "catch", "drive", "ride")
PRONOUN = _words("i", "me", "you", "he", "him", "she", "her", "we", "us", "they", "them",
                 "it", "my", "your", "his", "our", "their", "this", "that", "these", "those",
                 "myself", "yourself", "pronoun", plural=False)
CONJUNCTION = _words("and", "or", "but", "because", "therefore", "although", "if", "so",
                     "then", "however", "conjunction", plural=False)
NEGATION = _words("not", "no", "never", "without", "don't", "negative", "negation", plural=False)


@dataclass
class Classification:
    category: PromptCategory
    subtype: Optional[str] = None


def classify_meaning(meaning: str) -> Classification:
    """Map a meaning string to a semantic category. First match wins."""
    text = meaning.lower().strip()

    if GRAMMATICAL.search(text):
        if re.search(r"\b(question|interrogative)\b", text):
            return Classification(PromptCategory.GRAMMATICAL, "question")
        if re.search(r"\b(aspect|completed?|completion|perfective|experienced?|continuous|progressive|change of state)\b", text):
            return Classification(PromptCategory.GRAMMATICAL, "aspect")
        if re.search(r"\b(possessive|possession|of)\b|'s\b", text):
            return Classification(PromptCategory.GRAMMATICAL, "possession")
        if re.search(r"\b(passive|by)\b", text):
            return Classification(PromptCategory.GRAMMATICAL, "passive")
        return Classification(PromptCategory.GRAMMATICAL, "general")

    if ELDER.search(text):
        return Classification(PromptCategory.PERSON, "elder")
    if FAMILY.search(text):
        return Classification(PromptCategory.PERSON, "family")
    if PERSON.search(text):
        return Classification(PromptCategory.PERSON, "general")
    if FOOD.search(text):
        return Classification(PromptCategory.FOOD)
    if PLACE.search(text):
        return Classification(PromptCategory.PLACE)
    if NATURE.search(text):
        return Classification(PromptCategory.NATURE)
    if EMOTION.search(text):
        return Classification(PromptCategory.EMOTION)

    modal = MODAL.search(text)
    if modal:
        word = modal.group(1).lower()
        if word in ("can", "able", "may", "might"):
            return Classification(PromptCategory.ABSTRACT, "modal_permission")
        if word in ("must", "have to"):
            return Classification(PromptCategory.ABSTRACT, "modal_obligation")
        if word in ("should", "ought"):
            return Classification(PromptCategory.ABSTRACT, "modal_advice")
        return Classification(PromptCategory.ABSTRACT, "modal_desire")

    if text.startswith("to ") or ACTION.search(text):
        return Classification(PromptCategory.ACTION)
    if PRONOUN.search(text):
        return Classification(PromptCategory.ABSTRACT, "pronoun")
    if CONJUNCTION.search(text):
        return Classification(PromptCategory.ABSTRACT, "conjunction")
    if NEGATION.search(text):
        return Classification(PromptCategory.ABSTRACT, "negation")
    return Classification(PromptCategory.OBJECT)


SYMBOLS: Dict[str, str] = {
    "question": "A large, three-dimensional question mark symbol floating in space, "
                "glowing softly against a clean gradient background",
    "aspect": "A completed checkmark beside an hourglass whose sand has fully run through, "
              "representing a finished action",
    "possession": "A small brass key tied with a ribbon to a simple wooden box, "
                  "representing belonging and ownership",
    "passive": "A row of dominoes with the last one being tipped over by the one before it, "
               "representing something acted upon",
    "general": "Interlocking wooden puzzle pieces joining two separate shapes together, "
               "representing a grammatical link between ideas",
    "modal_permission": "A glowing green traffic light over an open gate, "
                        "representing permission and possibility",
    "modal_obligation": "A bold red exclamation mark symbol standing upright like a road sign post, "
                        "representing obligation",
    "modal_advice": "A polished brass balance scale beside a compass pointing the way, "
                    "representing advice and the right choice",
    "modal_desire": "A softly glowing star hanging just above an empty open box, "
                    "representing wanting and needing",
    "pronoun": "A bright arrow pointing at one glowing sphere among several plain spheres, "
               "representing reference to a specific one",
    "conjunction": "Two separate stone paths merging into a single bridge, "
                   "representing joining ideas together",
    "negation": "A bold red circle with a diagonal line across it, the universal prohibition symbol",
}

SYMBOLIC_TEMPLATE = (
    "Clean minimalist symbolic image: {symbol}. Purely symbolic, object-only composition, "
    "soft studio lighting, plain background, educational and easy to read at a glance. "
    + NO_TEXT_CLAUSE
)

PHOTO_TEMPLATES: Dict[PromptCategory, str] = {
    PromptCategory.PERSON: "Professional portrait photograph of {subject}, natural friendly expression, "
                           "soft natural lighting, simple uncluttered background, contemporary Taiwan setting.",
    PromptCategory.ACTION: "Dynamic photograph of one person {phrase} in an everyday setting in Taiwan, "
                           "clear body posture showing the action, at most two people, natural lighting.",
    PromptCategory.EMOTION: "Close-up photograph of one person whose face and body language clearly "
                            "express feeling {phrase}, natural lighting, soft neutral background.",
    PromptCategory.FOOD: "Appetizing food photograph of {phrase} as commonly served in Taiwan, in a simple "
                         "bowl or plate on a clean table, soft natural light, shallow depth of field.",
    PromptCategory.PLACE: "Wide photograph of a typical {phrase} in Taiwan, clearly recognizable, "
                          "daytime, few or no people, balanced composition.",
    PromptCategory.NATURE: "Beautiful nature photograph of {phrase}, single clear subject, "
                           "natural light, uncluttered composition, Taiwanese landscape.",
    PromptCategory.OBJECT: "Clear product-style photograph of a single {phrase} on a plain light background, "
                           "centered, soft studio lighting, sharp focus.",
}


def _meaning_phrase(meaning: str) -> str:
    phrase = first_clause(meaning)
    phrase = re.sub(r"\([^)]*\)", "", phrase)
    phrase = re.sub(r"^(to be |to |a |an |the )", "", phrase.strip(), flags=re.IGNORECASE)
    return phrase.strip() or meaning.strip()


def _person_subject(phrase: str, subtype: Optional[str]) -> str:
    if subtype == "elder":
        return f"an elderly Taiwanese person as a {phrase}"
    if subtype == "family":
        return f"a Taiwanese {phrase}"
    return f"a {phrase}, a person from contemporary Taiwan"


def deterministic_prompt(meaning: str) -> SynthesizedPrompt:
    """Build a prompt offline from the meaning alone."""
    classification = classify_meaning(meaning)
    phrase = _meaning_phrase(meaning)

    if classification.category in (PromptCategory.GRAMMATICAL, PromptCategory.ABSTRACT):
        symbol = SYMBOLS.get(classification.subtype or "general", SYMBOLS["general"])
        return SynthesizedPrompt(
            prompt=SYMBOLIC_TEMPLATE.format(symbol=symbol),
            negative_prompt=SYMBOLIC_NEGATIVE_PROMPT,
            category=classification.category,
            strategy="deterministic",
            metadata={"visual_strategy": "symbolic", "subtype": classification.subtype},
        )

    template = PHOTO_TEMPLATES[classification.category]
    if classification.category == PromptCategory.PERSON:
        body = template.format(subject=_person_subject(phrase, classification.subtype))
    else:
        body = template.format(phrase=phrase)
    return SynthesizedPrompt(
        prompt=f"{body} {NO_TEXT_CLAUSE}",
        negative_prompt=PHOTO_NEGATIVE_PROMPT,
        category=classification.category,
        strategy="deterministic",
        metadata={"visual_strategy": "literal", "subtype": classification.subtype},
    )


def apply_quality_gate(prompt: str, meaning: str) -> Tuple[str, List[str]]:
    """Append whatever a prompt is missing. Returns the fixed prompt and what was fixed."""
    fixes = []
    if len(prompt) < MIN_PROMPT_LENGTH:
        prompt = (f"{prompt.rstrip('. ')}. Clear educational image illustrating "
                  f"'{first_clause(meaning)}', simple composition, soft natural lighting.")
        fixes.append("expanded_short_prompt")
    if (ELDER.search(prompt) or FAMILY.search(prompt) or ELDER.search(meaning) or FAMILY.search(meaning)) \
            and not CULTURAL_QUALIFIER.search(prompt):
        prompt = f"{prompt.rstrip()} The person is Taiwanese."
        fixes.append("added_cultural_qualifier")
    if not NO_TEXT_PATTERN.search(prompt):
        prompt = f"{prompt.rstrip()} {NO_TEXT_CLAUSE}"
        fixes.append("added_no_text_clause")
    return prompt, fixes


def analyze_prompt_quality(prompt: str, meaning: str = "") -> Dict[str, object]:
    """Report quality problems without changing the prompt."""
    issues, suggestions = [], []
    lowered = prompt.lower()
    if len(prompt) < MIN_PROMPT_LENGTH:
        issues.append("Prompt too short")
        suggestions.append("Describe the subject, setting and lighting")
    if not NO_TEXT_PATTERN.search(prompt):
        issues.append("Missing no-text instruction")
        suggestions.append(f"Append '{NO_TEXT_CLAUSE}'")
    if (ELDER.search(prompt) or FAMILY.search(prompt) or ELDER.search(meaning)) \
            and not CULTURAL_QUALIFIER.search(prompt):
        issues.append("Missing cultural context for a person")
        suggestions.append("Say the person is Taiwanese")
    if re.search(r"\b(illustration|cartoon|drawing)\b", lowered) and "photograph" not in lowered:
        issues.append("Illustration style instead of photography")
        suggestions.append("Ask for a photograph")
    if re.search(r"close-up of (a |the )?hands?\b", lowered):
        issues.append("Close-up hands are prone to artifacts")
        suggestions.append("Frame the whole person or the object instead")

    quality = ["excellent", "good", "needs_improvement"][len(issues)] if len(issues) < 3 else "poor"
    return {"quality": quality, "issues": issues, "suggestions": suggestions}


def _score(value, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def extract_prompt_from_text(text: str) -> Optional[Dict[str, object]]:
    """Pull a prompt out of a reply that is not clean JSON."""
    try:
        data = parse_json_response(text)
        if isinstance(data, dict) and data.get("prompt"):
            return data
    except ValueError:
        pass

    prompt, negative = None, None
    for line in strip_code_fences(text).splitlines():
        match = re.match(r'^\s*"?(prompt|negative(?:_prompt)?)"?\s*[:=]\s*"?(.*?)"?,?\s*$', line, re.IGNORECASE)
        if not match:
            continue
        if match.group(1).lower() == "prompt":
            prompt = match.group(2)
        else:
            negative = match.group(2)
    if not prompt:
        return None
    return {
        "prompt": prompt,
        "negative_prompt": negative or DEFAULT_NEGATIVE_PROMPT,
        "cultural_accuracy": 0.7,
        "educational_value": 0.7,
        "clarity": 0.7,
    }


def parse_smart_prompt(text: str, category: PromptCategory) -> SynthesizedPrompt:
    data = extract_prompt_from_text(text)
    if data is None:
        raise LowQualityResult("Smart prompt reply had no usable prompt")
    prompt = clean_image_prompt(str(data.get("prompt", "")))
    if len(prompt) < MIN_SMART_PROMPT_LENGTH:
        raise LowQualityResult(f"Smart prompt implausibly short: {prompt!r}")
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    return SynthesizedPrompt(
        prompt=prompt,
        negative_prompt=str(data.get("negative_prompt") or data.get("negativePrompt") or DEFAULT_NEGATIVE_PROMPT),
        category=category,
        strategy="smart",
        cultural_accuracy=_score(data.get("cultural_accuracy", data.get("culturalAccuracy")), 0.7),
        educational_value=_score(data.get("educational_value", data.get("educationalValue")), 0.7),
        clarity=_score(data.get("clarity"), 0.7),
        metadata=metadata,
    )


class PromptSynthesizer:
    """Produces the image prompt for a character.

    ``chain`` is optional; without it only the deterministic strategy is used.
    """

    def __init__(self, chain: Optional[ProviderChain] = None):
        self.chain = chain

    async def synthesize(
        self,
        character: str,
        meaning: str,
        pinyin: Optional[str] = None,
        smart: bool = True,
        context: Optional[str] = None,
        attempts: Optional[List[ProviderCallAttempt]] = None,
    ) -> SynthesizedPrompt:
        if smart and self.chain is not None:
            try:
                result = await self._smart(character, meaning, pinyin, context, attempts)
            except ProviderChainExhausted as e:
                log.warning("Smart prompt failed, using deterministic prompt",
                            character=character, error=str(e.last_error))
                result = deterministic_prompt(meaning)
        else:
            result = deterministic_prompt(meaning)

        prompt, fixes = apply_quality_gate(result.prompt, meaning)
        if fixes:
            log.info("Prompt quality fixes applied", character=character, fixes=fixes)
        result.prompt = prompt
        result.fixes = fixes
        log.info("Image prompt synthesized", character=character, strategy=result.strategy,
                 category=result.category.value if result.category else None, prompt=prompt)
        return result

    async def _smart(self, character, meaning, pinyin, context, attempts) -> SynthesizedPrompt:
        category = classify_meaning(meaning).category
        hint = ""
        if context:
            cleaned = clean_image_prompt(context)
            if len(cleaned) >= 30:
                hint = f"Suggested scene: {cleaned}"
        messages = [
            {"role": "system", "content": prompts.SMART_PROMPT_SYSTEM},
            {"role": "user", "content": prompts.SMART_PROMPT_USER.format(
                character=character, pinyin=pinyin or "", meaning=meaning,
                category=category.value, context=hint,
            )},
        ]

        async def _call(provider) -> SynthesizedPrompt:
            reply = await provider.complete(messages, json_mode=True, temperature=0.4)
            return parse_smart_prompt(reply, category)

        return await self.chain.run("smart_prompt", _call, attempts)
