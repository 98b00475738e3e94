from __future__ import annotations

import logging
import re
from collections import Counter, deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from sqlmodel import Session

from .models import Segment
from .raw_result import RawWord

logger = logging.getLogger(__name__)

MIN_WORD_DURATION_SEC = 0.01
MAX_WORD_DURATION_SEC = 10.0
MIN_WORD_CONFIDENCE = 0.3
WORD_OVERLAP_TOLERANCE_SEC = 0.1
MAX_WORD_REPETITIONS = 3
RECENT_WINDOW_SIZE = MAX_WORD_REPETITIONS * 2
SENTENCE_REPEAT_THRESHOLD = 3

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class _WordFoldState:
    last_end: float = -1.0
    recent: deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_WINDOW_SIZE))


def _word_rejection(word: RawWord, state: _WordFoldState) -> str | None:
    duration = word.end - word.start
    if duration < MIN_WORD_DURATION_SEC or duration > MAX_WORD_DURATION_SEC:
        return "invalid_duration"
    if word.confidence is not None and word.confidence < MIN_WORD_CONFIDENCE:
        return "low_confidence"
    if word.start < state.last_end - WORD_OVERLAP_TOLERANCE_SEC:
        return "overlapping"
    if state.recent.count(word.text.strip().lower()) >= MAX_WORD_REPETITIONS:
        return "repetitions"
    return None


def filter_words(words: Iterable[RawWord]) -> tuple[list[RawWord], dict[str, int]]:
    stats = {"invalid_duration": 0, "low_confidence": 0, "overlapping": 0, "repetitions": 0}
    state = _WordFoldState()
    kept: list[RawWord] = []
    for word in sorted(words, key=lambda w: w.start):
        reason = _word_rejection(word, state)
        if reason is not None:
            stats[reason] += 1
            continue
        kept.append(word)
        state.last_end = word.end
        state.recent.append(word.text.strip().lower())
    logger.info(f"Word hallucination filter kept {len(kept)} words, removed {stats}")
    return kept, stats


def normalize_sentence(text: str | None) -> str:
    lowered = _NON_WORD.sub("", (text or "").lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def repeated_sentence_indices(texts: Sequence[str], threshold: int = SENTENCE_REPEAT_THRESHOLD) -> list[int]:
    normalized = [normalize_sentence(text) for text in texts]
    counts = Counter(normalized)
    hallucinated = {text for text, count in counts.items() if count > threshold}
    if hallucinated:
        preview = ", ".join(sorted(text[:30] for text in hallucinated)[:3])
        logger.warning(f"Detected {len(hallucinated)} hallucinated sentences: {preview}")
    seen: set[str] = set()
    doomed: list[int] = []
    for index, text in enumerate(normalized):
        if text not in hallucinated:
            continue
        if text in seen:
            doomed.append(index)
        else:
            seen.add(text)
    return doomed


def filter_sentences(session: Session, sentences: list[Segment]) -> tuple[list[Segment], dict[str, int]]:
    doomed = set(repeated_sentence_indices([sentence.text for sentence in sentences]))
    kept: list[Segment] = []
    for index, sentence in enumerate(sentences):
        if index in doomed:
            session.delete(sentence)
        else:
            kept.append(sentence)
    if doomed:
        session.flush()
    stats = {"repeated_sentences": len(doomed)}
    logger.info(f"Sentence hallucination filter kept {len(kept)} sentences, removed {stats}")
    return kept, stats
