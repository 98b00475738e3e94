from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel


class SegmentResponse(BaseModel):
    id: int
    kind: Literal["word", "sentence", "paragraph"]
    text: str
    start_time: float
    end_time: float
    confidence: Optional[float] = None
    speaker: Optional[str] = None


class TranscriptResponse(BaseModel):
    id: str
    media_id: str
    engine: Optional[str] = None
    language: Optional[str] = None
    state: str
    raw_text: Optional[str] = None
    error_message: Optional[str] = None
    transcription_started_at: Optional[str] = None
    transcription_completed_at: Optional[str] = None
    segment_counts: dict[str, int]


class TranscribeResponse(BaseModel):
    media_id: str
    state: str
    queued: bool
    retry: bool


class CleanupResponse(BaseModel):
    transcript_id: str
    stats: dict[str, int]
