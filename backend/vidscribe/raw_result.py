from __future__ import annotations

from dataclasses import dataclass, field, replace


@dataclass(frozen=True)
class RawSegment:
    start: float
    end: float
    text: str
    confidence: float | None = None
    speaker: str | None = None

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class RawWord:
    start: float
    end: float
    text: str
    confidence: float | None = None
    speaker: str | None = None

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(frozen=True)
class RawTranscriptionResult:
    """Engine-agnostic output of one transcription call.

    ``subword_tokens`` is set by engines whose word list holds tokenizer
    fragments (leading space marks a word start) rather than whole words.
    """

    text: str
    language: str | None
    duration: float
    segments: list[RawSegment] = field(default_factory=list)
    words: list[RawWord] = field(default_factory=list)
    subword_tokens: bool = False


def offset_result(result: RawTranscriptionResult, offset_sec: float) -> RawTranscriptionResult:
    """Shift every timestamp in ``result`` by ``offset_sec`` seconds."""
    if offset_sec == 0:
        return result
    return replace(
        result,
        segments=[replace(seg, start=seg.start + offset_sec, end=seg.end + offset_sec) for seg in result.segments],
        words=[replace(word, start=word.start + offset_sec, end=word.end + offset_sec) for word in result.words],
        duration=result.duration + offset_sec,
    )


def synthesize_words(segment: RawSegment, confidence: float | None) -> list[RawWord]:
    """Spread a segment's whitespace-separated words evenly over its duration."""
    tokens = segment.text.split()
    if not tokens or segment.end <= segment.start:
        return []
    step = (segment.end - segment.start) / len(tokens)
    words: list[RawWord] = []
    for index, token in enumerate(tokens):
        start = segment.start + index * step
        end = segment.end if index == len(tokens) - 1 else start + step
        words.append(RawWord(start=start, end=end, text=token, confidence=confidence, speaker=segment.speaker))
    return words
