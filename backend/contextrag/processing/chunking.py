"""
Adaptive Chunking  —  Policy Selection + Boundary-Aware Segmentation
════════════════════════════════════════════════════════════════════

Why adaptive?
─────────────
  One chunk size does not fit every document. Contract clauses need long
  chunks so a clause and its exceptions stay together; FAQ pages need short
  chunks so one answer is one retrieval unit. The selector classifies a
  document into a content-type bucket and returns a ChunkingPolicy:

    tag             size  overlap   min    max   retrieval k (min/def/max)
    legal           1500     300    800   2000            3 / 5 / 6
    technical       1200     240    600   1800            3 / 4 / 5
    general         1000     200    500   1500            3 / 4 / 5
    conversational   800     160    300   1200            2 / 3 / 4

  Overlap is 20 % of the target size everywhere. Cues are Italian and
  English, matching the deployment's document mix.

Strategies
──────────
  boundary      window of `chunk_size` chars, cut at the first preferred
                separator whose last occurrence lies past 70 % of the window,
                step back `overlap` chars
  token_approx  the boundary strategy with every size expressed in tokens
                and rescaled by CHARS_PER_TOKEN. This is an approximation,
                not a tokenizer: real token counts vary by ±25 %
  semantic      spaCy rule-based sentence split, greedy packing up to
                `chunk_size`, predecessor's last sentence as overlap

Every strategy drops chunks at or below NOISE_FLOOR_CHARS; non-final chunks
below `min_chunk_size` are dropped too. No chunk exceeds `max_chunk_size`.

Memory considerations:
  - spaCy loads a blank multilingual pipeline once per process (module-level
    singleton, no model download); only the sentencizer runs.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterator, Sequence

from contextrag.core.exceptions import PolicyError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

NOISE_FLOOR_CHARS = 50
BOUNDARY_CUT_RATIO = 0.7
CHARS_PER_TOKEN = 4

PARAGRAPH_FIRST_SEPARATORS = ("\n\n", "\n", ". ", "? ", "! ", " ")
# Legal text prefers sentence and clause breaks over bare line breaks
LEGAL_SEPARATORS = ("\n\n", ". ", "? ", "! ", "; ", "\n")


# ---------------------------------------------------------------------------
# Policy types
# ---------------------------------------------------------------------------

class ContentType(str, Enum):
    LEGAL          = "legal"
    TECHNICAL      = "technical"
    CONVERSATIONAL = "conversational"
    GENERAL        = "general"


class StrategyKind(str, Enum):
    BOUNDARY     = "boundary"
    TOKEN_APPROX = "token_approx"
    SEMANTIC     = "semantic"


@dataclass(frozen=True)
class RetrievalCountRange:
    min:     int
    default: int
    max:     int


@dataclass(frozen=True)
class ChunkingPolicy:
    """
    Value type; token_approx policies express every size in tokens.
    """
    chunk_size:           int
    overlap:              int
    min_chunk_size:       int
    max_chunk_size:       int
    strategy:             StrategyKind
    preferred_separators: tuple[str, ...]
    retrieval_count:      RetrievalCountRange
    content_type:         ContentType = ContentType.GENERAL


@dataclass(frozen=True)
class Segment:
    text:             str
    source_file_name: str
    ordinal_index:    int


POLICIES: dict[ContentType, ChunkingPolicy] = {
    ContentType.LEGAL: ChunkingPolicy(
        chunk_size=1500, overlap=300, min_chunk_size=800, max_chunk_size=2000,
        strategy=StrategyKind.BOUNDARY,
        preferred_separators=LEGAL_SEPARATORS,
        retrieval_count=RetrievalCountRange(min=3, default=5, max=6),
        content_type=ContentType.LEGAL,
    ),
    ContentType.TECHNICAL: ChunkingPolicy(
        chunk_size=1200, overlap=240, min_chunk_size=600, max_chunk_size=1800,
        strategy=StrategyKind.BOUNDARY,
        preferred_separators=PARAGRAPH_FIRST_SEPARATORS,
        retrieval_count=RetrievalCountRange(min=3, default=4, max=5),
        content_type=ContentType.TECHNICAL,
    ),
    ContentType.GENERAL: ChunkingPolicy(
        chunk_size=1000, overlap=200, min_chunk_size=500, max_chunk_size=1500,
        strategy=StrategyKind.BOUNDARY,
        preferred_separators=PARAGRAPH_FIRST_SEPARATORS,
        retrieval_count=RetrievalCountRange(min=3, default=4, max=5),
        content_type=ContentType.GENERAL,
    ),
    ContentType.CONVERSATIONAL: ChunkingPolicy(
        chunk_size=800, overlap=160, min_chunk_size=300, max_chunk_size=1200,
        strategy=StrategyKind.BOUNDARY,
        preferred_separators=PARAGRAPH_FIRST_SEPARATORS,
        retrieval_count=RetrievalCountRange(min=2, default=3, max=4),
        content_type=ContentType.CONVERSATIONAL,
    ),
}

# Sizes in tokens; the chunker multiplies by CHARS_PER_TOKEN
TOKEN_POLICY = ChunkingPolicy(
    chunk_size=512, overlap=100, min_chunk_size=200, max_chunk_size=800,
    strategy=StrategyKind.TOKEN_APPROX,
    preferred_separators=PARAGRAPH_FIRST_SEPARATORS,
    retrieval_count=RetrievalCountRange(min=3, default=4, max=6),
)


# ---------------------------------------------------------------------------
# Policy selection
# ---------------------------------------------------------------------------

_LEGAL_NAME_CUES     = ("contratto", "polizza", "legal", "contract", "policy")
_TECHNICAL_NAME_CUES = ("manual", "doc", "guide")
_CONVERSATIONAL_CUES = ("Domanda:", "FAQ", "Q:", "A:")

_LEGAL_CONTENT_RE = (
    (re.compile(r"\barticol[oi]\b", re.IGNORECASE), re.compile(r"\bcomm[ai]\b", re.IGNORECASE)),
    (re.compile(r"\barticles?\b", re.IGNORECASE), re.compile(r"\bclauses?\b", re.IGNORECASE)),
)
_TECHNICAL_CONTENT_RE = re.compile(r"\bAPI\b|[Cc]onfigurazione|[Cc]onfiguration")


def classify(text: str, file_name: str) -> ContentType:
    """
    Ordered checks: legal → technical → conversational → general.

    The first matching bucket wins, so a contract that also mentions an API
    is still legal.
    """
    name = (file_name or "").lower()
    text = text or ""

    if any(cue in name for cue in _LEGAL_NAME_CUES) or any(
        a.search(text) and b.search(text) for a, b in _LEGAL_CONTENT_RE
    ):
        return ContentType.LEGAL

    if any(cue in name for cue in _TECHNICAL_NAME_CUES) or _TECHNICAL_CONTENT_RE.search(text):
        return ContentType.TECHNICAL

    if any(cue in text for cue in _CONVERSATIONAL_CUES):
        return ContentType.CONVERSATIONAL

    return ContentType.GENERAL


def policy_for(content_type: ContentType) -> ChunkingPolicy:
    try:
        return POLICIES[ContentType(content_type)]
    except (KeyError, ValueError) as exc:
        raise PolicyError(f"No chunking policy for content type {content_type!r}") from exc


def select_policy(
    text:      str,
    file_name: str,
    strategy:  StrategyKind | str | None = None,
) -> ChunkingPolicy:
    """
    classify() + policy_for(), optionally forcing a strategy.

    token_approx swaps in TOKEN_POLICY but keeps the content type's
    retrieval range, so breadth still follows the document kind.
    """
    content_type = classify(text, file_name)
    policy = policy_for(content_type)
    if not strategy:
        return policy

    kind = StrategyKind(strategy)
    if kind is StrategyKind.TOKEN_APPROX:
        return replace(
            TOKEN_POLICY,
            retrieval_count=policy.retrieval_count,
            content_type=content_type,
        )
    return replace(policy, strategy=kind)


# ---------------------------------------------------------------------------
# spaCy sentencizer singleton
# ---------------------------------------------------------------------------

_spacy_nlp = None


def _get_nlp():
    """
    Blank multilingual pipeline + rule-based sentencizer, built once per
    process. Needs no downloaded model.
    """
    global _spacy_nlp
    if _spacy_nlp is None:
        import spacy

        nlp = spacy.blank("xx")
        nlp.add_pipe("sentencizer")
        _spacy_nlp = nlp
        logger.info("spaCy sentencizer loaded (blank 'xx' pipeline)")
    return _spacy_nlp


# ---------------------------------------------------------------------------
# Chunker
# ---------------------------------------------------------------------------

class Chunker:
    """
    Stateless chunker.

    Usage:
        policy = select_policy(text, "contratto.pdf")
        segments = Chunker().chunk(text, policy, file_name="contratto.pdf")

    iter_chunks() yields lazily so a caller can poll for cancellation between
    chunking units.
    """

    def chunk(
        self,
        text:      str,
        policy:    ChunkingPolicy,
        file_name: str = "",
    ) -> list[Segment]:
        segments = list(self.iter_chunks(text, policy, file_name))
        logger.info(
            "Chunker | file=%s strategy=%s content_type=%s chunks=%d avg_chars=%.0f",
            file_name, policy.strategy.value, policy.content_type.value, len(segments),
            sum(len(s.text) for s in segments) / max(1, len(segments)),
        )
        return segments

    def iter_chunks(
        self,
        text:      str,
        policy:    ChunkingPolicy,
        file_name: str = "",
    ) -> Iterator[Segment]:
        text = _normalize_text(text)
        if not text:
            logger.warning("Chunker: empty text for file=%s", file_name)
            return

        if policy.strategy is StrategyKind.SEMANTIC:
            pieces = self._semantic(text, policy)
        elif policy.strategy is StrategyKind.TOKEN_APPROX:
            pieces = _boundary_split(
                text,
                size=policy.chunk_size * CHARS_PER_TOKEN,
                overlap=policy.overlap * CHARS_PER_TOKEN,
                min_size=policy.min_chunk_size * CHARS_PER_TOKEN,
                separators=policy.preferred_separators,
            )
        else:
            pieces = _boundary_split(
                text,
                size=policy.chunk_size,
                overlap=policy.overlap,
                min_size=policy.min_chunk_size,
                separators=policy.preferred_separators,
            )

        for index, piece in enumerate(pieces):
            yield Segment(text=piece, source_file_name=file_name, ordinal_index=index)

    # ------------------------------------------------------------------
    # Semantic strategy
    # ------------------------------------------------------------------

    def _semantic(self, text: str, policy: ChunkingPolicy) -> Iterator[str]:
        groups = self._pack_sentences(self._split_sentences(text), policy)

        previous_last: str | None = None
        for group in groups:
            body = " ".join(group)
            if (
                previous_last is not None
                and len(previous_last) < policy.overlap
                and len(previous_last) + 1 + len(body) <= policy.max_chunk_size
            ):
                body = f"{previous_last} {body}"
            previous_last = group[-1]
            if len(body) > NOISE_FLOOR_CHARS:
                yield body

    def _pack_sentences(
        self, sentences: Sequence[str], policy: ChunkingPolicy,
    ) -> list[list[str]]:
        """
        Greedy packing. A pending group still under `min_chunk_size` may take
        one more sentence as long as it stays within `max_chunk_size`;
        sentences longer than `max_chunk_size` are split with the boundary
        strategy and emitted as groups of their own.
        """
        groups: list[list[str]] = []
        current: list[str] = []
        current_len = 0

        for sentence in sentences:
            if len(sentence) > policy.max_chunk_size:
                if current:
                    groups.append(current)
                    current, current_len = [], 0
                groups.extend(
                    [piece] for piece in _boundary_split(
                        sentence,
                        size=policy.chunk_size,
                        overlap=policy.overlap,
                        min_size=policy.min_chunk_size,
                        separators=policy.preferred_separators,
                    )
                )
                continue

            candidate = current_len + (1 if current else 0) + len(sentence)
            fits = candidate <= policy.chunk_size or (
                current_len < policy.min_chunk_size and candidate <= policy.max_chunk_size
            )
            if current and not fits:
                groups.append(current)
                current, candidate = [], len(sentence)

            current.append(sentence)
            current_len = candidate

        if current:
            groups.append(current)
        return groups

    def _split_sentences(self, text: str) -> list[str]:
        """spaCy sentencizer, regex split if the pipeline cannot be built."""
        try:
            nlp = _get_nlp()
            if len(text) >= nlp.max_length:
                nlp.max_length = len(text) + 1
            return [s.text.strip() for s in nlp(text).sents if s.text.strip()]
        except Exception as exc:
            logger.warning("spaCy sentence split failed: %s — using regex", exc)
        return [s.strip() for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]


# ---------------------------------------------------------------------------
# Boundary strategy
# ---------------------------------------------------------------------------

def _boundary_split(
    text:       str,
    size:       int,
    overlap:    int,
    min_size:   int,
    separators: Sequence[str],
) -> Iterator[str]:
    """
    Fixed window with natural-break cuts and backwards overlap.

    The cut always lands past BOUNDARY_CUT_RATIO of the window and the
    overlap is smaller than that, so every step makes forward progress.
    """
    length = len(text)
    start = 0
    while start < length:
        end = min(start + size, length)
        if end < length:
            window = text[start:end]
            for separator in separators:
                pos = window.rfind(separator)
                if pos > size * BOUNDARY_CUT_RATIO:
                    end = start + pos + len(separator)
                    break

        piece = text[start:end].strip()
        is_final = end >= length
        if len(piece) > NOISE_FLOOR_CHARS and (is_final or len(piece) >= min_size):
            yield piece

        if is_final:
            break
        start = max(start + 1, end - overlap)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _normalize_text(text: str) -> str:
    """
    Normalize Unicode, strip control characters, collapse excess whitespace.
    Preserves paragraph breaks (double newlines).
    """
    text = unicodedata.normalize("NFC", text or "")
    text = re.sub(r"[\u00a0\u200b\u200c\u200d\ufeff]", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    lines = [line.rstrip() for line in text.splitlines()]
    return "\n".join(lines).strip()
