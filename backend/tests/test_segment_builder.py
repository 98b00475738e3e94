import pytest

from vidscribe.models import Segment, SegmentKind
from vidscribe.raw_result import RawWord
from vidscribe.segment_builder import (
    SegmentBuilder,
    dominant_speaker,
    group_paragraphs,
    group_sentences,
    join_text,
    merge_subwords,
)
from vidscribe.segment_store import list_segments, segment_counts


def _segment(start: float, end: float, text: str, confidence: float | None = 0.9, speaker: str | None = None) -> Segment:
    return Segment(
        transcript_id="t-1",
        kind=SegmentKind.WORD.value,
        text=text,
        start_time=start,
        end_time=end,
        confidence=confidence,
        speaker=speaker,
    )


def test_merge_subwords_joins_fragments() -> None:
    merged = merge_subwords(
        [
            RawWord(start=1.0, end=1.2, text=" Re", confidence=0.9),
            RawWord(start=1.2, end=1.5, text="iner", confidence=0.8),
        ]
    )

    assert len(merged) == 1
    assert merged[0].text == "Reiner"
    assert merged[0].confidence == pytest.approx(0.85)
    assert merged[0].start == 1.0
    assert merged[0].end == 1.5


def test_merge_subwords_first_token_starts_word_and_punctuation_attaches() -> None:
    merged = merge_subwords(
        [
            RawWord(start=0.0, end=0.3, text="So", confidence=0.9),
            RawWord(start=0.3, end=0.6, text=" we", confidence=0.9),
            RawWord(start=0.6, end=0.7, text=",", confidence=None),
        ]
    )

    assert [word.text for word in merged] == ["So", "we,"]
    assert merged[1].confidence == 0.9
    assert merged[1].end == 0.7


def test_three_word_sentence_closes_two_word_does_not() -> None:
    three = [_segment(0.0, 0.3, "I"), _segment(0.3, 0.6, "am"), _segment(0.6, 0.9, "here.")]
    two = [_segment(0.0, 0.3, "Hi"), _segment(0.3, 0.6, "there."), _segment(0.6, 0.9, "Bye")]

    assert [len(group) for group in group_sentences(three + [_segment(1.0, 1.2, "tail")])] == [3, 1]
    assert [len(group) for group in group_sentences(two)] == [3]


def test_sentence_ending_variants() -> None:
    words = [_segment(0, 0.2, "Wait"), _segment(0.2, 0.4, "what"), _segment(0.4, 0.6, "?!  ")]

    assert [len(group) for group in group_sentences(words)] == [3]


def test_paragraph_gap_threshold() -> None:
    first = _segment(0.0, 2.0, "One two three.")
    near = _segment(3.5, 5.0, "Four five six.")
    far = _segment(7.5, 9.0, "Seven eight nine.")

    assert [len(group) for group in group_paragraphs([first, near, far])] == [2, 1]


def test_join_text_removes_space_before_punctuation() -> None:
    assert join_text(["word", ",", "another", "word", "."]) == "word, another word."


def test_dominant_speaker_ties_go_to_first_seen() -> None:
    assert dominant_speaker(["Speaker 2", "Speaker 1", "Speaker 1", "Speaker 2"]) == "Speaker 2"
    assert dominant_speaker(["A", "B", "B"]) == "B"
    assert dominant_speaker([None, None]) is None


def test_builder_persists_hierarchy(session) -> None:
    builder = SegmentBuilder(session, "t-1")
    tokens = [
        RawWord(start=0.0, end=0.3, text=" The", confidence=0.9, speaker="Speaker 1"),
        RawWord(start=0.3, end=0.6, text=" qu", confidence=0.7, speaker="Speaker 1"),
        RawWord(start=0.6, end=0.8, text="eue", confidence=0.9, speaker="Speaker 1"),
        RawWord(start=0.8, end=1.2, text=" moved.", confidence=0.8, speaker="Speaker 1"),
        RawWord(start=4.0, end=4.3, text=" It", confidence=None, speaker="Speaker 2"),
        RawWord(start=4.3, end=4.6, text=" stopped", confidence=None, speaker="Speaker 2"),
    ]

    words, sentences = builder.build_words_and_sentences(tokens, subword_tokens=True)
    paragraphs = builder.build_paragraphs(sentences)
    session.commit()

    assert [word.text for word in words] == ["The", "queue", "moved.", "It", "stopped"]
    assert [sentence.text for sentence in sentences] == ["The queue moved.", "It stopped"]
    assert sentences[0].confidence == pytest.approx((0.9 + 0.8 + 0.8) / 3)
    assert sentences[1].confidence is None
    assert sentences[1].speaker == "Speaker 2"
    assert len(paragraphs) == 2
    assert segment_counts(session, "t-1") == {"word": 5, "sentence": 2, "paragraph": 2}
    stored = list_segments(session, "t-1", SegmentKind.WORD)
    assert [row.start_time for row in stored] == sorted(row.start_time for row in stored)


def test_builder_keeps_whole_words_when_not_subword(session) -> None:
    builder = SegmentBuilder(session, "t-2")
    tokens = [
        RawWord(start=0.0, end=0.3, text="Hello", confidence=0.95),
        RawWord(start=0.3, end=0.6, text="world", confidence=0.95),
    ]

    words, sentences = builder.build_words_and_sentences(tokens, subword_tokens=False)

    assert [word.text for word in words] == ["Hello", "world"]
    assert [sentence.text for sentence in sentences] == ["Hello world"]
