from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlmodel import Session, select

from .audio_preprocessor import AudioPreprocessor, NormalizeMode
from .config import Settings, get_settings
from .database import engine as db_engine
from .engines.base import EngineClient
from .engines.factory import build_preprocessor, create_client
from .errors import ConversionError, EngineError, IllegalTransitionError, MediaNotFound, PipelineError
from .hallucination_filter import filter_sentences, filter_words
from .lifecycle import MEDIA_MACHINE, TRANSCRIPT_MACHINE, MediaState, TransitionResult
from .models import MediaItem, Transcript
from .segment_builder import SegmentBuilder
from .segment_store import delete_segments, segment_counts
from .text_cleanup import TextCleanupService

logger = logging.getLogger(__name__)

SegmentsReadyHook = Callable[[str], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_media(session: Session, media_id: str) -> MediaItem:
    media = session.get(MediaItem, media_id)
    if media is None:
        raise MediaNotFound(f"Media item not found: {media_id}")
    return media


def get_transcript_for_media(session: Session, media_id: str) -> Transcript | None:
    return session.exec(select(Transcript).where(Transcript.media_id == media_id)).first()


def delete_transcript(session: Session, media_id: str) -> bool:
    transcript = get_transcript_for_media(session, media_id)
    if transcript is None:
        return False
    delete_segments(session, transcript.id)
    session.delete(transcript)
    session.flush()
    return True


def reset_media(session: Session, media_id: str) -> MediaItem:
    media = get_media(session, media_id)
    MEDIA_MACHINE.fire(media, "reset")
    if delete_transcript(session, media_id):
        logger.info(f"Deleted transcript of media {media_id} for retry")
    session.add(media)
    session.commit()
    session.refresh(media)
    return media


def mark_transcript_completed(session: Session, transcript_id: str) -> TransitionResult:
    transcript = session.get(Transcript, transcript_id)
    if transcript is None:
        raise MediaNotFound(f"Transcript not found: {transcript_id}")
    result = TRANSCRIPT_MACHINE.fire(transcript, "complete")
    if result.ok:
        session.add(transcript)
        session.commit()
    return result


def _failure_message(exc: Exception, engine_name: str) -> str:
    if isinstance(exc, EngineError):
        return f"{engine_name} error: {exc}"
    if isinstance(exc, ConversionError):
        return f"Audio tooling error: {exc}"
    if isinstance(exc, PipelineError):
        return str(exc)
    return f"Unexpected error: {exc}"


class TranscriptionPipeline:
    def __init__(
        self,
        engine: EngineClient,
        preprocessor: AudioPreprocessor,
        *,
        normalize_mode: NormalizeMode | str = NormalizeMode.AUTO,
        text_cleanup: TextCleanupService | None = None,
        on_segments_ready: SegmentsReadyHook | None = None,
    ) -> None:
        self.engine = engine
        self.preprocessor = preprocessor
        self.normalize_mode = NormalizeMode(normalize_mode)
        self.text_cleanup = text_cleanup
        self.on_segments_ready = on_segments_ready

    def run(self, session: Session, media_id: str, *, reprocess: bool = False) -> Transcript:
        media = get_media(session, media_id)
        MEDIA_MACHINE.fire(media, "start_transcription", strict=True)
        logger.info(f"Starting transcription for media {media.filename} ({media.id}) with {self.engine.engine_name}")

        delete_transcript(session, media.id)
        transcript = Transcript(media_id=media.id)
        TRANSCRIPT_MACHINE.fire(transcript, "start_processing", strict=True)
        transcript.engine = self.engine.engine_name
        transcript.transcription_started_at = _utcnow()
        session.add(media)
        session.add(transcript)
        session.commit()
        transcript_id = transcript.id

        try:
            self._process(session, media, transcript, reprocess=reprocess)
        except Exception as exc:
            self._record_failure(session, media_id, transcript_id, exc)
            raise

        if self.on_segments_ready is not None:
            try:
                self.on_segments_ready(transcript_id)
            except Exception as exc:
                self._record_handoff_failure(session, transcript_id, exc)
                raise
        session.refresh(transcript)
        return transcript

    def retry(self, session: Session, media_id: str) -> Transcript:
        media = get_media(session, media_id)
        if media.state == MediaState.TRANSCRIBING.value:
            raise IllegalTransitionError("media item", "retry", media.state)
        reset_media(session, media_id)
        return self.run(session, media_id, reprocess=True)

    def _process(self, session: Session, media: MediaItem, transcript: Transcript, *, reprocess: bool) -> None:
        audio_path = self.preprocessor.extract_audio(
            media.playable_path,
            media.id,
            expected_duration=media.duration_sec,
            reprocess=reprocess,
        )
        audio_path = self.preprocessor.normalize_if_needed(audio_path, self.normalize_mode)
        result = self.engine.transcribe(audio_path)
        logger.info(f"{self.engine.engine_name} returned {len(result.segments)} segments, {len(result.words)} words")

        transcript.raw_text = result.text
        transcript.language = result.language
        TRANSCRIPT_MACHINE.fire(transcript, "start_segmenting", strict=True)

        words, _ = filter_words(result.words)
        builder = SegmentBuilder(session, transcript.id)
        _, sentences = builder.build_words_and_sentences(words, subword_tokens=result.subword_tokens)
        sentences, _ = filter_sentences(session, sentences)
        if self.text_cleanup is not None:
            self.text_cleanup.cleanup_segments(sentences)
        builder.build_paragraphs(sentences)

        TRANSCRIPT_MACHINE.fire(transcript, "start_embedding", strict=True)
        transcript.transcription_completed_at = _utcnow()
        if self.on_segments_ready is None:
            TRANSCRIPT_MACHINE.fire(transcript, "complete", strict=True)
        MEDIA_MACHINE.fire(media, "finish_transcription", strict=True)
        session.add(transcript)
        session.add(media)
        session.commit()
        logger.info(f"Transcript {transcript.id} segments: {segment_counts(session, transcript.id)}")

    def _record_failure(self, session: Session, media_id: str, transcript_id: str, exc: Exception) -> None:
        message = _failure_message(exc, self.engine.engine_name)
        logger.error(f"Transcription failed for media {media_id}: {message}")
        session.rollback()
        transcript = session.get(Transcript, transcript_id)
        if transcript is not None:
            TRANSCRIPT_MACHINE.fire(transcript, "fail")
            transcript.error_message = message
            session.add(transcript)
        media = session.get(MediaItem, media_id)
        if media is not None:
            MEDIA_MACHINE.fire(media, "fail")
            session.add(media)
        session.commit()

    def _record_handoff_failure(self, session: Session, transcript_id: str, exc: Exception) -> None:
        logger.exception(f"Segments-ready hook failed for transcript {transcript_id}")
        session.rollback()
        transcript = session.get(Transcript, transcript_id)
        if transcript is None:
            return
        TRANSCRIPT_MACHINE.fire(transcript, "fail")
        transcript.error_message = f"Embedding hand-off failed: {exc}"
        session.add(transcript)
        session.commit()


def build_pipeline(
    settings: Settings | None = None,
    *,
    engine_name: str | None = None,
    normalize_mode: str | None = None,
    on_segments_ready: SegmentsReadyHook | None = None,
) -> TranscriptionPipeline:
    settings = settings or get_settings()
    preprocessor = build_preprocessor(settings)
    client = create_client(engine_name, settings=settings, preprocessor=preprocessor)
    text_cleanup = None
    if settings.text_cleanup_enabled:
        text_cleanup = TextCleanupService(host=settings.ollama_host, model=settings.ollama_cleanup_model)
    return TranscriptionPipeline(
        client,
        preprocessor,
        normalize_mode=normalize_mode or settings.normalize_mode,
        text_cleanup=text_cleanup,
        on_segments_ready=on_segments_ready,
    )


def run_pipeline(
    media_id: str,
    *,
    pipeline: TranscriptionPipeline | None = None,
    reprocess: bool = False,
) -> Transcript:
    pipeline = pipeline or build_pipeline()
    with Session(db_engine) as session:
        return pipeline.run(session, media_id, reprocess=reprocess)


def retry_media(media_id: str, *, pipeline: TranscriptionPipeline | None = None) -> Transcript:
    pipeline = pipeline or build_pipeline()
    with Session(db_engine) as session:
        return pipeline.retry(session, media_id)
