from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from .errors import IllegalTransitionError

logger = logging.getLogger(__name__)


class MediaState(str, Enum):
    PENDING = "pending"
    IMPORTING = "importing"
    READY = "ready"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    ERROR = "error"


class TranscriptState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SEGMENTING = "segmenting"
    EMBEDDING = "embedding"
    COMPLETED = "completed"
    FAILED = "failed"


class _Stateful(Protocol):
    state: str


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    event: str
    from_state: str
    to_state: str
    error: str | None = None


class StateMachine:
    def __init__(self, entity: str, transitions: dict[str, tuple[frozenset[str], str]]) -> None:
        self.entity = entity
        self.transitions = transitions

    def can(self, state: str, event: str) -> bool:
        rule = self.transitions.get(event)
        return rule is not None and str(state) in rule[0]

    def fire(self, target: _Stateful, event: str, *, strict: bool = False) -> TransitionResult:
        current = str(target.state)
        rule = self.transitions.get(event)
        if rule is None:
            raise ValueError(f"Unknown {self.entity} event: {event}")
        sources, destination = rule
        if current not in sources:
            if strict:
                raise IllegalTransitionError(self.entity, event, current)
            logger.warning(f"{self.entity}: ignored '{event}' from state '{current}'")
            return TransitionResult(
                ok=False,
                event=event,
                from_state=current,
                to_state=current,
                error=f"'{event}' is not allowed from '{current}'",
            )
        target.state = destination
        if hasattr(target, "updated_at"):
            target.updated_at = datetime.now(timezone.utc)
        return TransitionResult(ok=True, event=event, from_state=current, to_state=destination)


def _states(*values: Enum) -> frozenset[str]:
    return frozenset(str(value.value) for value in values)


_ALL_MEDIA = _states(*MediaState)

MEDIA_MACHINE = StateMachine(
    "media item",
    {
        "start_import": (_states(MediaState.PENDING), MediaState.IMPORTING.value),
        "mark_ready": (_states(MediaState.PENDING, MediaState.IMPORTING), MediaState.READY.value),
        "start_transcription": (_states(MediaState.READY), MediaState.TRANSCRIBING.value),
        "finish_transcription": (_states(MediaState.TRANSCRIBING), MediaState.TRANSCRIBED.value),
        "fail": (_states(MediaState.IMPORTING, MediaState.TRANSCRIBING), MediaState.ERROR.value),
        "reset": (_ALL_MEDIA, MediaState.READY.value),
    },
)

_TRANSCRIPT_ACTIVE = _states(
    TranscriptState.PENDING,
    TranscriptState.PROCESSING,
    TranscriptState.SEGMENTING,
    TranscriptState.EMBEDDING,
)

TRANSCRIPT_MACHINE = StateMachine(
    "transcript",
    {
        "start_processing": (_states(TranscriptState.PENDING), TranscriptState.PROCESSING.value),
        "start_segmenting": (_states(TranscriptState.PROCESSING), TranscriptState.SEGMENTING.value),
        "start_embedding": (_states(TranscriptState.SEGMENTING), TranscriptState.EMBEDDING.value),
        "complete": (_states(TranscriptState.EMBEDDING), TranscriptState.COMPLETED.value),
        "fail": (_TRANSCRIPT_ACTIVE, TranscriptState.FAILED.value),
    },
)
