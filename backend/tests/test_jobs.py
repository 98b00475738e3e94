import pytest
from sqlmodel import Session

from vidscribe.errors import EngineConnectionError, TranscriptionError
from vidscribe.jobs import TranscriptionJobQueue, process_media_job
from vidscribe.lifecycle import MediaState
from vidscribe.models import MediaItem
from vidscribe.pipeline import TranscriptionPipeline, get_transcript_for_media
from vidscribe.retry import job_policy


@pytest.fixture()
def run_job(db_engine, fake_preprocessor):
    def _run(media_id: str, engine, sleeps: list[float] | None = None) -> str:
        sleeps = [] if sleeps is None else sleeps
        return process_media_job(
            media_id,
            pipeline_factory=lambda: TranscriptionPipeline(engine, fake_preprocessor, normalize_mode="off"),
            session_factory=lambda: Session(db_engine),
            retry_policy=job_policy(sleep=sleeps.append),
        )

    return _run


def test_ready_media_is_processed(session, make_media, fake_engine, run_job) -> None:
    media = make_media()

    assert run_job(media.id, fake_engine) == "processed"

    session.expire_all()
    assert session.get(MediaItem, media.id).state == "transcribed"
    assert get_transcript_for_media(session, media.id).state == "completed"


def test_failed_media_is_retried(session, make_media, fake_engine, fake_preprocessor, run_job) -> None:
    media = make_media(state=MediaState.ERROR)

    assert run_job(media.id, fake_engine) == "retried"

    extract = [call for call in fake_preprocessor.calls if call[0] == "extract"]
    assert extract[0][1]["reprocess"] is True
    session.expire_all()
    assert session.get(MediaItem, media.id).state == "transcribed"


def test_transcribed_media_is_skipped(make_media, fake_engine, run_job) -> None:
    media = make_media(state=MediaState.TRANSCRIBED)

    assert run_job(media.id, fake_engine) == "skipped"
    assert fake_engine.calls == []


def test_media_in_unexpected_state_is_skipped(make_media, fake_engine, run_job) -> None:
    media = make_media(state=MediaState.IMPORTING)

    assert run_job(media.id, fake_engine) == "skipped"
    assert fake_engine.calls == []


def test_engine_error_discards_job_without_retry(session, make_media, failing_engine_factory, run_job) -> None:
    media = make_media()
    engine = failing_engine_factory(TranscriptionError("Bad request: corrupt audio"))
    sleeps: list[float] = []

    assert run_job(media.id, engine, sleeps) == "discarded"

    assert len(engine.calls) == 1
    assert sleeps == []
    session.expire_all()
    assert session.get(MediaItem, media.id).state == "error"


def test_missing_media_is_discarded(fake_engine, run_job) -> None:
    assert run_job("ghost", fake_engine) == "discarded"


def test_connection_errors_retry_whole_job_then_raise(session, make_media, failing_engine_factory, run_job) -> None:
    media = make_media()
    engine = failing_engine_factory(EngineConnectionError("Cannot connect to Whisper server"))
    sleeps: list[float] = []

    with pytest.raises(EngineConnectionError):
        run_job(media.id, engine, sleeps)

    assert len(engine.calls) == 3
    assert sleeps == [30.0, 30.0]
    session.expire_all()
    transcript = get_transcript_for_media(session, media.id)
    assert transcript.state == "failed"
    assert transcript.error_message.startswith("whisper error: Cannot connect")


def test_job_queue_runs_handler_for_each_item() -> None:
    seen: list[str] = []

    def handler(media_id: str) -> None:
        if media_id == "boom":
            raise RuntimeError("handler failure")
        seen.append(media_id)

    job_queue = TranscriptionJobQueue(2, handler=handler)
    try:
        for media_id in ["a", "boom", "b"]:
            job_queue.enqueue(media_id)
        job_queue.join()
    finally:
        job_queue.stop()

    assert sorted(seen) == ["a", "b"]
    assert job_queue.size() == 0
