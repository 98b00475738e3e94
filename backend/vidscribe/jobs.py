from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

from sqlmodel import Session

from .config import get_settings
from .database import engine
from .errors import EngineConnectionError, PipelineError
from .lifecycle import MediaState, TranscriptState
from .pipeline import TranscriptionPipeline, build_pipeline, get_media, get_transcript_for_media
from .retry import RetryPolicy, job_policy

logger = logging.getLogger(__name__)

settings = get_settings()
_QUEUE_POLL_TIMEOUT_SEC = 0.5
_QUEUE_SENTINEL = object()

PipelineFactory = Callable[[], TranscriptionPipeline]


def _dispatch(session: Session, pipeline: TranscriptionPipeline, media_id: str) -> str:
    media = get_media(session, media_id)
    transcript = get_transcript_for_media(session, media_id)
    if media.state == MediaState.ERROR.value or (
        transcript is not None and transcript.state == TranscriptState.FAILED.value
    ):
        logger.info(f"[transcribe-job] Retrying failed media {media_id}")
        pipeline.retry(session, media_id)
        return "retried"
    if media.state == MediaState.READY.value and transcript is None:
        logger.info(f"[transcribe-job] Processing media {media_id}")
        pipeline.run(session, media_id)
        return "processed"
    if media.state == MediaState.TRANSCRIBED.value:
        logger.info(f"[transcribe-job] Media {media_id} already transcribed, skipping")
        return "skipped"
    logger.warning(f"[transcribe-job] Media {media_id} in unexpected state: {media.state}")
    return "skipped"


def process_media_job(
    media_id: str,
    *,
    pipeline_factory: PipelineFactory = build_pipeline,
    session_factory: Callable[[], Session] = lambda: Session(engine),
    retry_policy: RetryPolicy | None = None,
) -> str:
    """Run the transcription job for one media item.

    Connection failures retry the whole job under ``retry_policy``; any other
    pipeline error is logged and the job is discarded.
    """
    policy = retry_policy or job_policy()
    pipeline = pipeline_factory()

    def attempt() -> str:
        with session_factory() as session:
            return _dispatch(session, pipeline, media_id)

    try:
        return policy.call(attempt)
    except EngineConnectionError:
        raise
    except PipelineError as exc:
        logger.error(f"[transcribe-job] Discarding job for media {media_id}: {exc}")
        return "discarded"


class TranscriptionJobQueue:
    def __init__(self, max_workers: int, handler: Callable[[str], object] = process_media_job) -> None:
        self.max_workers = max(1, max_workers)
        self.handler = handler
        self._queue: queue.Queue[object] = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._started = False
        self._stop_requested = False

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._stop_requested = False
            self._threads = []
            for idx in range(self.max_workers):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"transcribe-worker-{idx + 1}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
            self._started = True

    def stop(self, *, timeout_sec: float = 2.0) -> None:
        with self._lock:
            if not self._started:
                return
            self._stop_requested = True
            threads = list(self._threads)
            for _ in threads:
                self._queue.put(_QUEUE_SENTINEL)
        for thread in threads:
            thread.join(timeout=timeout_sec)
        with self._lock:
            self._threads = []
            self._started = False
            self._stop_requested = False

    def enqueue(self, media_id: str) -> None:
        self.start()
        self._queue.put(media_id)

    def size(self) -> int:
        return self._queue.qsize()

    def join(self) -> None:
        self._queue.join()

    def _worker_loop(self) -> None:
        while True:
            try:
                item = self._queue.get(timeout=_QUEUE_POLL_TIMEOUT_SEC)
            except queue.Empty:
                with self._lock:
                    if self._stop_requested:
                        return
                continue
            try:
                if item is _QUEUE_SENTINEL:
                    return
                self.handler(str(item))
            except Exception:  # noqa: BLE001
                logger.exception(f"[transcribe-job] Job for media {item} failed")
            finally:
                self._queue.task_done()


_transcribe_queue = TranscriptionJobQueue(settings.max_concurrent_transcribe_jobs)


def start_transcribe_workers() -> None:
    _transcribe_queue.start()


def stop_transcribe_workers() -> None:
    _transcribe_queue.stop()


def enqueue_transcription_job(media_id: str) -> None:
    _transcribe_queue.enqueue(media_id)
