from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel

from .lifecycle import MediaState, TranscriptState


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SegmentKind(str, Enum):
    WORD = "word"
    SENTENCE = "sentence"
    PARAGRAPH = "paragraph"


class MediaItem(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    source_path: str = Field(index=True, unique=True)
    proxy_path: Optional[str] = None
    filename: str
    duration_sec: Optional[float] = None
    state: str = Field(default=MediaState.PENDING.value, index=True)
    created_at: datetime = Field(default_factory=_utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=_utcnow, nullable=False)

    @property
    def playable_path(self) -> str:
        return self.proxy_path or self.source_path


class Transcript(SQLModel, table=True):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    media_id: str = Field(index=True, unique=True, foreign_key="mediaitem.id")
    engine: Optional[str] = None
    language: Optional[str] = None
    raw_text: Optional[str] = None
    error_message: Optional[str] = None
    state: str = Field(default=TranscriptState.PENDING.value, index=True)
    transcription_started_at: Optional[datetime] = None
    transcription_completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=_utcnow, nullable=False)


class Segment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    transcript_id: str = Field(index=True, foreign_key="transcript.id")
    kind: str = Field(default=SegmentKind.WORD.value, index=True)
    text: str
    start_time: float = Field(index=True)
    end_time: float
    confidence: Optional[float] = None
    speaker: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow, nullable=False)

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time
