"""
Text Quality Heuristics
═══════════════════════

Cheap, pure checks that decide whether an extraction strategy's output is
plausible language or garbage that should fall through to a slower strategy.

  alphabetic_ratio              letters / non-whitespace characters
  looks_corrupted               ratio below a severity threshold on long text
  has_character_level_spacing   the "H e l l o" OCR failure mode
  repair_character_spacing      deterministic fix for that failure mode

Letters cover ASCII plus the Latin-1 diacritics used by the supported OCR
languages (Italian, English, French, German, Spanish).

Nothing in this module raises: empty or non-string input is treated as
"no text".
"""

from __future__ import annotations

import re

_LETTER = "A-Za-zÀ-ÖØ-öø-ÿ"   # skips × (U+00D7) and ÷ (U+00F7)

_LETTER_RE = re.compile(f"[{_LETTER}]")
_NON_SPACE_RE = re.compile(r"\S")

# Five or more single letters, each followed by one whitespace character
_CHAR_SPACING_RE = re.compile(f"(?:(?<![{_LETTER}])[{_LETTER}]\\s){{5,}}")

SEVERE_CORRUPTION_RATIO = 0.3
REPAIRABLE_RATIO        = 0.5
MAX_COLLAPSE_ITERATIONS = 10

# ── Repair rules (applied per segment, in this order) ────────────────────
_SEGMENT_SPLIT_RE = re.compile(r"\s{2,}")
_APOSTROPHE_RE    = re.compile(f"([{_LETTER}])\\s?(['’])\\s?([{_LETTER}])")
_PAIR_RE          = re.compile(f"([{_LETTER}0-9]) ([{_LETTER}0-9])")
_ACRONYM_DOT_RE   = re.compile(r"(?<=\b[A-Z]) \.")
_ACRONYM_JOIN_RE  = re.compile(r"(?<=\b[A-Z]\.) (?=[A-Z]\.)")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([.,;:!?)\]}])")
_SPACE_AFTER_OPEN_RE   = re.compile(r"([(\[{])\s+")


def alphabetic_ratio(text: object) -> float:
    """Share of non-whitespace characters that are letters; 0.0 for no text."""
    if not isinstance(text, str):
        return 0.0
    non_space = len(_NON_SPACE_RE.findall(text))
    if non_space == 0:
        return 0.0
    return len(_LETTER_RE.findall(text)) / non_space


def looks_corrupted(
    text:       object,
    min_length: int = 0,
    min_ratio:  float = SEVERE_CORRUPTION_RATIO,
) -> bool:
    """
    True when `text` is longer than `min_length` and fewer than `min_ratio`
    of its visible characters are letters.

    Short text is never judged: a page holding only "3." is legitimate.
    """
    if not isinstance(text, str) or len(text) <= min_length:
        return False
    return alphabetic_ratio(text) < min_ratio


def has_character_level_spacing(text: object) -> bool:
    if not isinstance(text, str):
        return False
    return _CHAR_SPACING_RE.search(text) is not None


def repair_character_spacing(text: object) -> str:
    """
    Undo glyph-per-token OCR output ("H e l l o   w o r l d .").

    Runs of two or more whitespace characters are the only surviving word
    boundaries, so the text is split on them first and every segment is
    collapsed in isolation. Apostrophes are joined before the generic
    letter/digit collapse so contractions such as "l ' a" keep their shape.

    Text too damaged to salvage is returned trimmed and otherwise untouched.
    """
    if not isinstance(text, str):
        return ""
    stripped = text.strip()
    if not stripped or looks_corrupted(stripped, min_ratio=REPAIRABLE_RATIO):
        return stripped

    segments = (_repair_segment(s) for s in _SEGMENT_SPLIT_RE.split(stripped))
    return " ".join(s for s in segments if s)


def _repair_segment(segment: str) -> str:
    segment = _APOSTROPHE_RE.sub(r"\1\2\3", segment)

    for _ in range(MAX_COLLAPSE_ITERATIONS):
        collapsed = _PAIR_RE.sub(r"\1\2", segment)
        if collapsed == segment:
            break
        segment = collapsed

    segment = _ACRONYM_DOT_RE.sub(".", segment)
    segment = _ACRONYM_JOIN_RE.sub("", segment)
    segment = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", segment)
    segment = _SPACE_AFTER_OPEN_RE.sub(r"\1", segment)
    return segment.strip()
