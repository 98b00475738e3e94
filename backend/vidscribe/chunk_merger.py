from __future__ import annotations

import logging

from .raw_result import RawSegment, RawTranscriptionResult, RawWord

logger = logging.getLogger(__name__)

SEGMENT_OVERLAP_TOLERANCE_SEC = 1.0
WORD_OVERLAP_TOLERANCE_SEC = 0.1


def merge_segments(segments: list[RawSegment]) -> list[RawSegment]:
    merged: list[RawSegment] = []
    for segment in sorted(segments, key=lambda seg: seg.start):
        if merged and segment.start < merged[-1].end - SEGMENT_OVERLAP_TOLERANCE_SEC:
            # Overlap region transcribed twice; longer text wins, ties keep the earlier one.
            if len(segment.text) > len(merged[-1].text):
                merged[-1] = segment
            continue
        merged.append(segment)
    return merged


def merge_words(words: list[RawWord]) -> list[RawWord]:
    merged: list[RawWord] = []
    for word in sorted(words, key=lambda w: w.start):
        if merged and word.start < merged[-1].end - WORD_OVERLAP_TOLERANCE_SEC:
            continue
        merged.append(word)
    return merged


def merge_chunk_results(results: list[RawTranscriptionResult]) -> RawTranscriptionResult:
    """Stitch per-chunk results (already in absolute time) into one timeline."""
    if not results:
        return RawTranscriptionResult(text="", language=None, duration=0.0)

    all_segments = [segment for result in results for segment in result.segments]
    all_words = [word for result in results for word in result.words]
    segments = merge_segments(all_segments)
    words = merge_words(all_words)

    language = None
    for result in results:
        if result.language:
            language = result.language

    text = " ".join(result.text.strip() for result in results if result.text and result.text.strip())
    duration = max(result.duration for result in results)
    logger.info(
        f"Merged {len(results)} chunks: {len(all_segments)}->{len(segments)} segments, "
        f"{len(all_words)}->{len(words)} words"
    )
    return RawTranscriptionResult(
        text=text,
        language=language,
        duration=duration,
        segments=segments,
        words=words,
        subword_tokens=any(result.subword_tokens for result in results),
    )
