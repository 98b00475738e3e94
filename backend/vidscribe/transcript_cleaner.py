from __future__ import annotations

import logging
from collections import defaultdict

from sqlmodel import Session

from .models import Segment, SegmentKind
from .segment_builder import SegmentBuilder
from .segment_store import delete_segment_ids, delete_segments, list_segments

logger = logging.getLogger(__name__)

MIN_WORD_CONFIDENCE = 0.3
MAX_OVERLAP_RATIO = 0.5
CONFIDENCE_MARGIN = 0.1
REPETITION_LOOKAHEAD = 20
MIN_REPETITION_COUNT = 3
MIN_REPEATED_TEXT_LENGTH = 2


def duplicate_ids(words: list[Segment]) -> set[int]:
    groups: dict[tuple[str, float, float], list[int]] = defaultdict(list)
    for word in words:
        groups[(word.text, word.start_time, word.end_time)].append(word.id)
    doomed: set[int] = set()
    for ids in groups.values():
        doomed.update(sorted(ids)[1:])
    return doomed


def _overlap_loser(segment: Segment, other: Segment) -> Segment | None:
    overlap = min(segment.end_time, other.end_time) - max(segment.start_time, other.start_time)
    if overlap <= 0:
        return None
    segment_duration = segment.end_time - segment.start_time
    other_duration = other.end_time - other.start_time
    segment_ratio = overlap / max(segment_duration, 0.01)
    other_ratio = overlap / max(other_duration, 0.01)
    if segment_ratio <= MAX_OVERLAP_RATIO and other_ratio <= MAX_OVERLAP_RATIO:
        return None
    segment_conf = segment.confidence or 0.0
    other_conf = other.confidence or 0.0
    if other_conf > segment_conf + CONFIDENCE_MARGIN:
        return segment
    if segment_conf > other_conf + CONFIDENCE_MARGIN:
        return other
    return segment if other_duration > segment_duration else other


def overlapping_ids(words: list[Segment]) -> set[int]:
    ordered = sorted(words, key=lambda word: (word.start_time, word.id))
    doomed: set[int] = set()
    for index, segment in enumerate(ordered):
        if segment.id in doomed:
            continue
        for other_index in range(index + 1, len(ordered)):
            other = ordered[other_index]
            if other.start_time >= segment.end_time:
                break
            if other.id in doomed or other.end_time <= segment.start_time:
                continue
            loser = _overlap_loser(segment, other)
            if loser is None:
                continue
            doomed.add(loser.id)
            if loser is segment:
                break
    return doomed


def low_confidence_ids(words: list[Segment]) -> set[int]:
    return {word.id for word in words if word.confidence is not None and word.confidence < MIN_WORD_CONFIDENCE}


def repetition_ids(words: list[Segment]) -> set[int]:
    doomed: set[int] = set()
    for index, word in enumerate(words):
        text = word.text or ""
        if len(text) < MIN_REPEATED_TEXT_LENGTH:
            continue
        window = words[index : index + REPETITION_LOOKAHEAD]
        occurrences = [other for other in window if other.text == text]
        if len(occurrences) >= MIN_REPETITION_COUNT:
            doomed.update(other.id for other in occurrences[1:])
    return doomed


def clean_transcript(session: Session, transcript_id: str, *, commit: bool = True) -> dict[str, int]:
    logger.info(f"Starting hallucination cleanup for transcript {transcript_id}")
    stats: dict[str, int] = {}
    passes = (
        ("duplicates", duplicate_ids),
        ("overlapping", overlapping_ids),
        ("low_confidence", low_confidence_ids),
        ("repetitions", repetition_ids),
    )
    for name, find in passes:
        words = list_segments(session, transcript_id, SegmentKind.WORD)
        stats[name] = delete_segment_ids(session, find(words))

    delete_segments(session, transcript_id, [SegmentKind.SENTENCE, SegmentKind.PARAGRAPH])
    session.expire_all()
    words = list_segments(session, transcript_id, SegmentKind.WORD)
    builder = SegmentBuilder(session, transcript_id)
    sentences = builder.build_sentences(words)
    paragraphs = builder.build_paragraphs(sentences)
    stats["words"] = len(words)
    stats["sentences"] = len(sentences)
    stats["paragraphs"] = len(paragraphs)
    if commit:
        session.commit()
    logger.info(f"Cleanup complete for transcript {transcript_id}: {stats}")
    return stats
