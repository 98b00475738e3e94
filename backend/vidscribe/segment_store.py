from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, func
from sqlmodel import Session, select

from .models import Segment, SegmentKind


def _kind_values(kind: SegmentKind | str | Iterable[SegmentKind | str] | None) -> list[str] | None:
    if kind is None:
        return None
    if isinstance(kind, (SegmentKind, str)):
        return [SegmentKind(kind).value]
    return [SegmentKind(item).value for item in kind]


def list_segments(
    session: Session,
    transcript_id: str,
    kind: SegmentKind | str | None = None,
) -> list[Segment]:
    statement = select(Segment).where(Segment.transcript_id == transcript_id)
    kinds = _kind_values(kind)
    if kinds:
        statement = statement.where(Segment.kind.in_(kinds))
    statement = statement.order_by(Segment.start_time.asc(), Segment.id.asc())
    return list(session.exec(statement).all())


def delete_segments(
    session: Session,
    transcript_id: str,
    kind: SegmentKind | str | Iterable[SegmentKind | str] | None = None,
) -> int:
    statement = delete(Segment).where(Segment.transcript_id == transcript_id)
    kinds = _kind_values(kind)
    if kinds:
        statement = statement.where(Segment.kind.in_(kinds))
    result = session.execute(statement)
    return int(result.rowcount or 0)


def delete_segment_ids(session: Session, segment_ids: Iterable[int]) -> int:
    ids = list(segment_ids)
    if not ids:
        return 0
    result = session.execute(delete(Segment).where(Segment.id.in_(ids)))
    return int(result.rowcount or 0)


def segment_counts(session: Session, transcript_id: str) -> dict[str, int]:
    rows = session.exec(
        select(Segment.kind, func.count(Segment.id))
        .where(Segment.transcript_id == transcript_id)
        .group_by(Segment.kind)
    ).all()
    counts = {kind.value: 0 for kind in SegmentKind}
    for kind, count in rows:
        counts[str(kind)] = int(count)
    return counts
