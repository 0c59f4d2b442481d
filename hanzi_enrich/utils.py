"""Utility functions for input files, pinyin, character validation and prompt text."""

import re
from pathlib import Path
from typing import List

import structlog

from .errors import MalformedInput

log = structlog.get_logger()

TONE_MARKS = {
    "a": "āáǎà",
    "e": "ēéěè",
    "i": "īíǐì",
    "o": "ōóǒò",
    "u": "ūúǔù",
    "ü": "ǖǘǚǜ",
}
_MARKED_VOWELS = {mark for marks in TONE_MARKS.values() for mark in marks + marks.upper()}
_NUMBERED_SYLLABLE = re.compile(r"[A-Za-züÜ:]+[1-5]")

CJK_PATTERN = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff\U00020000-\U0002a6df]")
MAX_CHARACTER_LENGTH = 10

# Characters that only exist in simplified script. Not exhaustive; catches the common ones.
SIMPLIFIED_ONLY = set(
    "这个们来说时会对为发国过还没进动开门问间题东车长马鸟鱼见贝页风飞龙乐书买卖头电话"
    "语读写学习听请谢钱银错难欢爱热办关让认识经济实现"
)


def load_characters_from_file(file_path: Path) -> List[str]:
    """Load characters from a text file, one per line."""
    if not file_path.exists():
        raise FileNotFoundError(f"Input file not found: {file_path}")

    characters = []
    with open(file_path, 'r', encoding='utf-8') as f:
        for line in f:
            character = line.strip()
            if character and not character.startswith('#'):
                characters.append(character)

    log.info("Loaded characters from file", count=len(characters), file=str(file_path))
    return characters


def _mark_syllable(syllable: str) -> str:
    body, tone = syllable[:-1], int(syllable[-1])
    body = body.replace("u:", "ü").replace("U:", "Ü").replace("v", "ü").replace("V", "Ü")
    if tone == 5:
        return body

    lower = body.lower()
    if "a" in lower:
        index = lower.index("a")
    elif "e" in lower:
        index = lower.index("e")
    elif "ou" in lower:
        index = lower.index("o")
    else:
        vowels = [i for i, ch in enumerate(lower) if ch in TONE_MARKS]
        if not vowels:
            return body
        index = vowels[-1]

    vowel = body[index]
    marked = TONE_MARKS[vowel.lower()][tone - 1]
    if vowel.isupper():
        marked = marked.upper()
    return body[:index] + marked + body[index + 1:]


def tone_numbers_to_marks(pinyin: str) -> str:
    """Convert numbered pinyin ("lei4", "nu:3") to tone-marked pinyin ("lèi", "nǚ")."""
    return _NUMBERED_SYLLABLE.sub(lambda m: _mark_syllable(m.group(0)), pinyin)


def has_tone_marks(pinyin: str) -> bool:
    return any(ch in _MARKED_VOWELS for ch in pinyin)


def normalize_pinyin(pinyin: str) -> str:
    return pinyin if has_tone_marks(pinyin) else tone_numbers_to_marks(pinyin)


def validate_character(text: str) -> str:
    """Return the stripped character string or raise MalformedInput."""
    if text is None:
        raise MalformedInput("Character is missing")
    character = text.strip()
    if not character:
        raise MalformedInput("Character is empty")
    if not CJK_PATTERN.search(character):
        raise MalformedInput(f"No Chinese characters in {character!r}")
    if len(character) > MAX_CHARACTER_LENGTH:
        raise MalformedInput(f"Too long ({len(character)} > {MAX_CHARACTER_LENGTH}): {character!r}")
    simplified = [ch for ch in character if ch in SIMPLIFIED_ONLY]
    if simplified:
        raise MalformedInput(f"Simplified characters not supported: {''.join(simplified)}")
    return character


_TEXT_REFERENCE = re.compile(
    r"(?:\b(?:with|showing|displaying|featuring|including)\s+)?"
    r"(?:\bthe\s+)?(?:\bchinese\s+)?"
    r"\b(?:text|characters?|letters?|words?|writing|calligraphy|signs?|labels?|captions?)\b[^,.;]*",
    re.IGNORECASE,
)


def clean_image_prompt(prompt: str) -> str:
    """Strip Chinese characters and references to written text from a scene description."""
    cleaned = CJK_PATTERN.sub("", prompt)
    cleaned = _TEXT_REFERENCE.sub("", cleaned)
    cleaned = re.sub(r"\s*,\s*(?:,\s*)+", ", ", cleaned)
    cleaned = re.sub(r"\s{2,}", " ", cleaned)
    return cleaned.strip(" ,;")
