"""
Append-only audit trail.

Writers call ``record`` / ``record_many`` after their business transaction has
committed. A failing audit write is rolled back and logged; it never reaches
the caller and never undoes the business change.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi.encoders import jsonable_encoder
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import AuditEvent
from app.services.clock import Clock, utcnow

logger = logging.getLogger(__name__)

# (actor_id, action, subject_kind, subject_id, metadata)
PendingEvent = Tuple[Optional[int], str, Any, Any, Optional[Dict[str, Any]]]


def _kind(subject_kind: Any) -> str:
    return getattr(subject_kind, "value", subject_kind)


def _next_timestamp(db: Session, subject_kind: str, subject_id: Optional[str], clock: Clock):
    at = clock()
    last = (
        db.query(func.max(AuditEvent.at))
        .filter(AuditEvent.subject_kind == subject_kind, AuditEvent.subject_id == subject_id)
        .scalar()
    )
    if last is not None and at <= last:
        at = last + timedelta(microseconds=1)
    return at


def _build(db: Session, event: PendingEvent, clock: Clock) -> AuditEvent:
    actor_id, action, subject_kind, subject_id, metadata = event
    kind = _kind(subject_kind)
    sid = str(subject_id) if subject_id is not None else None
    return AuditEvent(
        at=_next_timestamp(db, kind, sid, clock),
        actor_id=actor_id,
        action=action,
        subject_kind=kind,
        subject_id=sid,
        event_metadata=jsonable_encoder(metadata) if metadata else None,
    )


def record(
    db: Session,
    actor_id: Optional[int],
    action: str,
    subject_kind: Any,
    subject_id: Any,
    metadata: Optional[Dict[str, Any]] = None,
    clock: Clock = utcnow,
) -> Optional[AuditEvent]:
    return record_many(db, [(actor_id, action, subject_kind, subject_id, metadata)], clock=clock)[0]


def record_many(db: Session, events: Iterable[PendingEvent], clock: Clock = utcnow) -> List[Optional[AuditEvent]]:
    """Persist events in the order given. Returns [None, ...] when the write fails."""
    events = list(events)
    if not events:
        return []
    try:
        rows = []
        for event in events:
            row = _build(db, event, clock)
            db.add(row)
            # flush so the next event on the same subject sees this timestamp
            db.flush()
            rows.append(row)
        db.commit()
        return rows
    except Exception as e:
        db.rollback()
        logger.error(
            "Audit write failed for %s: %s",
            ", ".join(f"{ev[1]}:{_kind(ev[2])}:{ev[3]}" for ev in events),
            e,
        )
        return [None] * len(events)


def events_for(db: Session, subject_kind: Any, subject_id: Any) -> List[AuditEvent]:
    return (
        db.query(AuditEvent)
        .filter(
            AuditEvent.subject_kind == _kind(subject_kind),
            AuditEvent.subject_id == str(subject_id),
        )
        .order_by(AuditEvent.at, AuditEvent.id)
        .all()
    )


def actions_for(db: Session, subject_kind: Any, subject_id: Any) -> List[str]:
    return [e.action for e in events_for(db, subject_kind, subject_id)]
