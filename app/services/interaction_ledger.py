"""
Call outcomes and follow-ups on a lead.

Each interaction appends one CallLog entry and moves the lead's micro-state:

    FOLLOW_UP  pending follow-up completed, new pending one added, status FOLLOW_UP
    REJECT     status REJECTED, unassigned, pending follow-ups cancelled
    REGISTER   status CONVERTING_TO_REG, pending follow-ups completed
    NONE       call log only

A lead never carries more than one PENDING follow-up.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from app.database import commit_or_conflict
from app.errors import InvalidState, MissingRequiredField, NotFound, OwnershipDenied, ValidationError
from app.models import CallLog, FollowUp, FollowUpStatus, Lead, LeadStatus, NextStep, SubjectKind
from app.services import audit_log
from app.services.clock import Clock, utcnow
from app.services.principal import Principal
from app.services.validation import require

logger = logging.getLogger(__name__)


def get_lead(db: Session, lead_id: int, lock: bool = False) -> Lead:
    query = db.query(Lead).filter(Lead.id == lead_id)
    if lock:
        query = query.with_for_update().populate_existing()
    lead = query.first()
    if lead is None:
        raise NotFound("lead", lead_id)
    return lead


def ensure_open(lead: Lead) -> None:
    """Interactions are only recorded on live leads that are still being worked."""
    if lead.is_deleted:
        raise InvalidState("live lead", "deleted")
    if lead.status in (LeadStatus.CONVERTED, LeadStatus.REJECTED):
        raise InvalidState("open lead", lead.status.value)


def ensure_can_work(principal: Principal, lead: Lead) -> None:
    if lead.assigned_to_id and lead.assigned_to_id != principal.actor_id and not principal.can_manage_leads():
        raise OwnershipDenied("lead_assigned_to_other", {"lead_id": lead.id})


def parse_due_date(value: Union[str, datetime, None]) -> datetime:
    if value is None or value == "":
        raise MissingRequiredField("date")
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError("invalid_date", {"date": value})
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _settle_pending(db: Session, lead: Lead, status: FollowUpStatus, now: datetime) -> int:
    settled = 0
    for follow_up in lead.pending_follow_ups:
        follow_up.status = status
        if status == FollowUpStatus.COMPLETED:
            follow_up.completed_at = now
        else:
            follow_up.cancelled_at = now
        settled += 1
    if settled:
        # the partial unique index only allows the new row once the old one is settled
        db.flush()
    return settled


def _add_pending(db: Session, lead: Lead, due_at: datetime, note: Optional[str], actor_id: int, now: datetime) -> FollowUp:
    _settle_pending(db, lead, FollowUpStatus.COMPLETED, now)
    follow_up = FollowUp(
        lead_id=lead.id,
        due_at=due_at,
        note=note,
        scheduled_by_id=actor_id,
        status=FollowUpStatus.PENDING,
        created_at=now,
    )
    lead.follow_ups.append(follow_up)
    return follow_up


def submit_interaction(
    db: Session,
    principal: Principal,
    lead_id: int,
    outcome: str,
    next_step: Union[NextStep, str] = NextStep.NONE,
    payload: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
    clock: Clock = utcnow,
) -> Lead:
    outcome = require(outcome, "outcome").strip()
    try:
        next_step = NextStep(next_step or NextStep.NONE)
    except ValueError:
        raise ValidationError("invalid_next_step", {"next_step": next_step})
    payload = payload or {}

    lead = get_lead(db, lead_id, lock=True)

    if idempotency_key:
        replayed = (
            db.query(CallLog.id)
            .filter(CallLog.lead_id == lead.id, CallLog.idempotency_key == idempotency_key)
            .first()
        )
        if replayed:
            db.rollback()
            logger.info("Interaction %s on lead %s already recorded", idempotency_key, lead_id)
            return get_lead(db, lead_id)

    ensure_open(lead)
    ensure_can_work(principal, lead)

    due_at = parse_due_date(payload.get("date")) if next_step == NextStep.FOLLOW_UP else None
    reason = require(payload.get("reason"), "reason") if next_step == NextStep.REJECT else None

    now = clock()
    lead.call_logs.append(CallLog(
        outcome=outcome,
        next_step=next_step,
        details=payload.get("details") or payload.get("notes"),
        performed_by_id=principal.actor_id,
        at=now,
        idempotency_key=idempotency_key,
    ))

    previous_status = lead.status
    if next_step == NextStep.FOLLOW_UP:
        _add_pending(db, lead, due_at, payload.get("note"), principal.actor_id, now)
        lead.status = LeadStatus.FOLLOW_UP
    elif next_step == NextStep.REJECT:
        _settle_pending(db, lead, FollowUpStatus.CANCELLED, now)
        lead.status = LeadStatus.REJECTED
        lead.is_assigned = False
        lead.rejection_reason = reason
        lead.rejected_by_id = principal.actor_id
        lead.rejected_at = now
    elif next_step == NextStep.REGISTER:
        _settle_pending(db, lead, FollowUpStatus.COMPLETED, now)
        lead.status = LeadStatus.CONVERTING_TO_REG
    lead.updated_at = now

    commit_or_conflict(db)
    db.refresh(lead)

    audit_log.record(db, principal.actor_id, "LEAD_INTERACTION", SubjectKind.LEAD, lead.id, {
        "outcome": outcome,
        "next_step": next_step.value,
        "from_status": previous_status.value,
        "to_status": lead.status.value,
    }, clock=clock)
    return lead


def schedule_follow_up(
    db: Session,
    principal: Principal,
    lead_id: int,
    due_at: Union[str, datetime],
    note: Optional[str] = None,
    clock: Clock = utcnow,
) -> FollowUp:
    """Add a stand-alone follow-up; any pending one is completed first."""
    due = parse_due_date(due_at)
    lead = get_lead(db, lead_id, lock=True)
    ensure_open(lead)
    ensure_can_work(principal, lead)

    now = clock()
    follow_up = _add_pending(db, lead, due, note, principal.actor_id, now)
    lead.status = LeadStatus.FOLLOW_UP
    lead.updated_at = now
    commit_or_conflict(db)
    db.refresh(follow_up)

    audit_log.record(db, principal.actor_id, "FOLLOW_UP_SCHEDULED", SubjectKind.LEAD, lead.id,
                     {"follow_up_id": follow_up.id, "due_at": due}, clock=clock)
    return follow_up
