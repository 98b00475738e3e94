import os
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/vidscribe_test.db")
os.environ.setdefault("TMP_DIR", "/tmp/vidscribe_test_tmp")
os.environ.setdefault("AUDIO_CACHE_DIR", "/tmp/vidscribe_test_tmp/audio_cache")
os.environ.setdefault("TRANSCRIPTION_ENGINE", "whisper")
os.environ.setdefault("TEXT_CLEANUP_ENABLED", "false")

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from vidscribe import models  # noqa: F401
from vidscribe.lifecycle import MediaState
from vidscribe.models import MediaItem
from vidscribe.raw_result import RawSegment, RawTranscriptionResult, RawWord


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(db_engine):
    with Session(db_engine) as db_session:
        yield db_session


@pytest.fixture()
def make_media(session: Session, tmp_path: Path):
    def _make(state: MediaState = MediaState.READY, name: str = "interview.mp4") -> MediaItem:
        source = tmp_path / name
        source.write_bytes(b"fake-video-bytes")
        media = MediaItem(source_path=str(source), filename=name, duration_sec=12.0, state=state.value)
        session.add(media)
        session.commit()
        session.refresh(media)
        return media

    return _make


def sample_result() -> RawTranscriptionResult:
    words = [
        RawWord(start=0.0, end=0.4, text=" Hello", confidence=0.9),
        RawWord(start=0.4, end=0.8, text=" there", confidence=0.9),
        RawWord(start=0.8, end=1.2, text=" friend.", confidence=0.9),
        RawWord(start=4.0, end=4.3, text=" Re", confidence=0.9),
        RawWord(start=4.3, end=4.6, text="iner", confidence=0.8),
        RawWord(start=4.6, end=5.0, text=" is", confidence=0.9),
        RawWord(start=5.0, end=5.4, text=" here.", confidence=0.9),
    ]
    segments = [
        RawSegment(start=0.0, end=1.2, text="Hello there friend.", confidence=0.9),
        RawSegment(start=4.0, end=5.4, text="Reiner is here.", confidence=0.9),
    ]
    return RawTranscriptionResult(
        text="Hello there friend. Reiner is here.",
        language="en",
        duration=5.4,
        segments=segments,
        words=words,
        subword_tokens=True,
    )


class FakePreprocessor:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []

    def extract_audio(self, source_path, cache_key, *, expected_duration=None, reprocess=False):
        self.calls.append(("extract", {"source": source_path, "key": cache_key, "reprocess": reprocess}))
        return f"/tmp/media_{cache_key}.wav"

    def normalize_if_needed(self, audio_path, mode="auto"):
        self.calls.append(("normalize", {"path": audio_path, "mode": getattr(mode, "value", mode)}))
        return audio_path


class FakeEngine:
    name = "whisper"

    def __init__(self, result=None, error: Exception | None = None) -> None:
        self.result = result or sample_result()
        self.error = error
        self.calls: list[str] = []

    @property
    def engine_name(self) -> str:
        return self.name

    def transcribe(self, audio_path: str):
        self.calls.append(audio_path)
        if self.error is not None:
            raise self.error
        return self.result

    def health_check(self) -> bool:
        return True


@pytest.fixture()
def fake_preprocessor() -> FakePreprocessor:
    return FakePreprocessor()


@pytest.fixture()
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def failing_engine_factory():
    return lambda error: FakeEngine(error=error)
