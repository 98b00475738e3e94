from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session

from ..database import get_session
from ..jobs import enqueue_transcription_job
from ..lifecycle import MediaState, TranscriptState
from ..models import MediaItem, SegmentKind, Transcript
from ..pipeline import get_transcript_for_media
from ..schemas import CleanupResponse, SegmentResponse, TranscribeResponse, TranscriptResponse
from ..segment_store import list_segments, segment_counts
from ..transcript_cleaner import clean_transcript

router = APIRouter(prefix="/api/v1", tags=["transcripts"])


def _get_media_or_404(session: Session, media_id: str) -> MediaItem:
    media = session.get(MediaItem, media_id)
    if not media:
        raise HTTPException(status_code=404, detail="Media item not found")
    return media


def _get_transcript_or_404(session: Session, transcript_id: str) -> Transcript:
    transcript = session.get(Transcript, transcript_id)
    if not transcript:
        raise HTTPException(status_code=404, detail="Transcript not found")
    return transcript


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_response(session: Session, row: Transcript) -> TranscriptResponse:
    return TranscriptResponse(
        id=row.id,
        media_id=row.media_id,
        engine=row.engine,
        language=row.language,
        state=row.state,
        raw_text=row.raw_text,
        error_message=row.error_message,
        transcription_started_at=_isoformat(row.transcription_started_at),
        transcription_completed_at=_isoformat(row.transcription_completed_at),
        segment_counts=segment_counts(session, row.id),
    )


@router.get("/media/{media_id}/transcript", response_model=TranscriptResponse)
def get_media_transcript(media_id: str, session: Session = Depends(get_session)) -> TranscriptResponse:
    _get_media_or_404(session, media_id)
    transcript = get_transcript_for_media(session, media_id)
    if not transcript:
        raise HTTPException(status_code=404, detail="Transcript not found")
    return _to_response(session, transcript)


@router.post("/media/{media_id}/transcribe", response_model=TranscribeResponse, status_code=202)
def request_transcription(media_id: str, session: Session = Depends(get_session)) -> TranscribeResponse:
    media = _get_media_or_404(session, media_id)
    transcript = get_transcript_for_media(session, media_id)
    failed = media.state == MediaState.ERROR.value or (
        transcript is not None and transcript.state == TranscriptState.FAILED.value
    )
    fresh = media.state == MediaState.READY.value and transcript is None
    if not (failed or fresh):
        raise HTTPException(
            status_code=409,
            detail=f"Media item cannot be transcribed in state '{media.state}'",
        )
    enqueue_transcription_job(media.id)
    return TranscribeResponse(media_id=media.id, state=media.state, queued=True, retry=failed)


@router.get("/transcripts/{transcript_id}/segments", response_model=list[SegmentResponse])
def get_transcript_segments(
    transcript_id: str,
    kind: Optional[SegmentKind] = None,
    session: Session = Depends(get_session),
) -> list[SegmentResponse]:
    _get_transcript_or_404(session, transcript_id)
    rows = list_segments(session, transcript_id, kind)
    return [
        SegmentResponse(
            id=row.id,
            kind=row.kind,
            text=row.text,
            start_time=row.start_time,
            end_time=row.end_time,
            confidence=row.confidence,
            speaker=row.speaker,
        )
        for row in rows
    ]


@router.post("/transcripts/{transcript_id}/clean", response_model=CleanupResponse)
def clean_transcript_segments(transcript_id: str, session: Session = Depends(get_session)) -> CleanupResponse:
    transcript = _get_transcript_or_404(session, transcript_id)
    if transcript.state not in {TranscriptState.EMBEDDING.value, TranscriptState.COMPLETED.value}:
        raise HTTPException(
            status_code=409,
            detail=f"Transcript cannot be cleaned in state '{transcript.state}'",
        )
    stats = clean_transcript(session, transcript_id)
    return CleanupResponse(transcript_id=transcript_id, stats=stats)
