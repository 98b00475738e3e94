from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Sequence

from sqlmodel import Session

from .models import Segment, SegmentKind
from .raw_result import RawWord

logger = logging.getLogger(__name__)

SENTENCE_ENDING = re.compile(r"[.!?]+\s*$")
SPACE_BEFORE_PUNCTUATION = re.compile(r"\s+([.,!?;:])")
MIN_SENTENCE_WORDS = 3
PARAGRAPH_PAUSE_SEC = 2.0


def _mean(values: Sequence[float | None]) -> float | None:
    present = [value for value in values if value is not None]
    if not present:
        return None
    return sum(present) / len(present)


def merge_subwords(tokens: Sequence[RawWord]) -> list[RawWord]:
    """Re-join tokenizer fragments into whole words.

    A token with a leading space (or the first token) opens a new word; any
    other token is glued onto the current word, extending its end time and
    averaging the two confidences.
    """
    merged: list[RawWord] = []
    for token in tokens:
        if not merged or token.text[:1].isspace():
            merged.append(
                RawWord(
                    start=token.start,
                    end=token.end,
                    text=token.text.strip(),
                    confidence=token.confidence,
                    speaker=token.speaker,
                )
            )
            continue
        current = merged[-1]
        merged[-1] = RawWord(
            start=current.start,
            end=max(current.end, token.end),
            text=current.text + token.text.strip(),
            confidence=_mean([current.confidence, token.confidence]),
            speaker=current.speaker or token.speaker,
        )
    return [word for word in merged if word.text]


def join_text(parts: Sequence[str]) -> str:
    text = " ".join(part for part in parts if part).strip()
    return SPACE_BEFORE_PUNCTUATION.sub(r"\1", text)


def dominant_speaker(speakers: Sequence[str | None]) -> str | None:
    labels = [speaker for speaker in speakers if speaker]
    if not labels:
        return None
    return Counter(labels).most_common(1)[0][0]


def group_sentences(words: Sequence[Segment]) -> list[list[Segment]]:
    groups: list[list[Segment]] = []
    current: list[Segment] = []
    for word in words:
        current.append(word)
        if SENTENCE_ENDING.search((word.text or "").strip()) and len(current) >= MIN_SENTENCE_WORDS:
            groups.append(current)
            current = []
    if current:
        groups.append(current)
    return groups


def group_paragraphs(sentences: Sequence[Segment]) -> list[list[Segment]]:
    groups: list[list[Segment]] = []
    current: list[Segment] = []
    for index, sentence in enumerate(sentences):
        current.append(sentence)
        following = sentences[index + 1] if index + 1 < len(sentences) else None
        if following is None or following.start_time - sentence.end_time >= PARAGRAPH_PAUSE_SEC:
            groups.append(current)
            current = []
    return groups


def span_segment(transcript_id: str, kind: SegmentKind, parts: Sequence[Segment]) -> Segment:
    return Segment(
        transcript_id=transcript_id,
        kind=kind.value,
        text=join_text([part.text for part in parts]),
        start_time=parts[0].start_time,
        end_time=parts[-1].end_time,
        confidence=_mean([part.confidence for part in parts]),
        speaker=dominant_speaker([part.speaker for part in parts]),
    )


class SegmentBuilder:
    """Rows are flushed into the caller's session; the caller commits."""

    def __init__(self, session: Session, transcript_id: str) -> None:
        self.session = session
        self.transcript_id = transcript_id

    def persist_words(self, words: Sequence[RawWord]) -> list[Segment]:
        rows = [
            Segment(
                transcript_id=self.transcript_id,
                kind=SegmentKind.WORD.value,
                text=word.text,
                start_time=word.start,
                end_time=word.end,
                confidence=word.confidence,
                speaker=word.speaker,
            )
            for word in words
        ]
        self._save(rows)
        return rows

    def build_sentences(self, words: Sequence[Segment]) -> list[Segment]:
        rows = [span_segment(self.transcript_id, SegmentKind.SENTENCE, group) for group in group_sentences(words)]
        self._save(rows)
        return rows

    def build_paragraphs(self, sentences: Sequence[Segment]) -> list[Segment]:
        rows = [span_segment(self.transcript_id, SegmentKind.PARAGRAPH, group) for group in group_paragraphs(sentences)]
        self._save(rows)
        return rows

    def build_words_and_sentences(self, result_words: Sequence[RawWord], *, subword_tokens: bool) -> tuple[list[Segment], list[Segment]]:
        words = merge_subwords(result_words) if subword_tokens else list(result_words)
        word_rows = self.persist_words(words)
        sentence_rows = self.build_sentences(word_rows)
        logger.info(
            f"Built {len(word_rows)} words and {len(sentence_rows)} sentences for transcript {self.transcript_id}"
        )
        return word_rows, sentence_rows

    def _save(self, rows: list[Segment]) -> None:
        if not rows:
            return
        self.session.add_all(rows)
        self.session.flush()
