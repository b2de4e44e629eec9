"""
Round-robin lead assignment.

An employee is eligible when they are ACTIVE, hold a lead-handling role and
carry fewer than ``LEAD_LOAD_CAP`` open leads. The one who was handed a lead
least recently (never-assigned first, then lowest id) gets the next one.
Assignment is best-effort: failures are logged and audited, never raised.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.models import CLOSED_LEAD_STATUSES, Department, Employee, EmployeeRole, EmployeeStatus, Lead, LeadStatus, SubjectKind
from app.services import audit_log
from app.services.clock import Clock, utcnow

logger = logging.getLogger(__name__)

ELIGIBLE_ROLES = (EmployeeRole.COUNSELLOR, EmployeeRole.WFH, EmployeeRole.ADMISSION)


def open_loads(db: Session, employee_ids: List[int]) -> Dict[int, int]:
    """Open lead count per employee (leads not Rejected/Converted and not in the trash)."""
    if not employee_ids:
        return {}
    rows = (
        db.query(Lead.assigned_to_id, func.count(Lead.id))
        .filter(
            Lead.assigned_to_id.in_(employee_ids),
            Lead.status.notin_(CLOSED_LEAD_STATUSES),
            Lead.is_deleted.is_(False),
        )
        .group_by(Lead.assigned_to_id)
        .all()
    )
    return {employee_id: count for employee_id, count in rows}


def eligible_employees(db: Session, department: Optional[Department] = None, lock: bool = False) -> List[Employee]:
    """Eligible employees in selection order."""
    query = db.query(Employee).filter(
        Employee.status == EmployeeStatus.ACTIVE,
        Employee.role.in_(ELIGIBLE_ROLES),
    )
    if department is not None:
        query = query.filter(Employee.department == department)
    if lock:
        # Serialises concurrent assignments over the same candidate set
        query = query.with_for_update()
    candidates = query.order_by(Employee.id).all()

    loads = open_loads(db, [e.id for e in candidates])
    cap = settings.LEAD_LOAD_CAP
    under_cap = [e for e in candidates if loads.get(e.id, 0) < cap]
    return sorted(
        under_cap,
        key=lambda e: (e.last_lead_assigned_at is not None, e.last_lead_assigned_at or datetime.min, e.id),
    )


def assign(db: Session, lead_id: int, department: Optional[Department] = None, clock: Clock = utcnow) -> Optional[Employee]:
    """Assign an unassigned lead. Returns the chosen employee, or None when nothing changed."""
    chosen = None
    try:
        lead = db.query(Lead).filter(Lead.id == lead_id).first()
        if lead is None:
            logger.warning("Auto-assign skipped: lead %s not found", lead_id)
            return None
        if lead.assigned_to_id is not None or lead.is_deleted:
            return None

        candidates = eligible_employees(db, department=department, lock=True)
        if not candidates:
            db.rollback()
            logger.info("No eligible employee for lead %s; leaving it in the general pool", lead_id)
            return None

        chosen = candidates[0]
        now = clock()
        claimed = (
            db.query(Lead)
            .filter(Lead.id == lead_id, Lead.assigned_to_id.is_(None))
            .update(
                {
                    Lead.assigned_to_id: chosen.id,
                    Lead.is_assigned: True,
                    Lead.assigned_at: now,
                    Lead.status: LeadStatus.ASSIGNED,
                    Lead.version: Lead.version + 1,
                },
                synchronize_session=False,
            )
        )
        if not claimed:
            db.rollback()
            return None
        chosen.last_lead_assigned_at = now
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error("Auto-assign failed for lead %s: %s", lead_id, e)
        audit_log.record(db, None, "LEAD_AUTO_ASSIGN_FAILED", SubjectKind.LEAD, lead_id, {"error": str(e)}, clock=clock)
        return None

    db.expire(lead)
    logger.info("Lead %s auto-assigned to employee %s", lead_id, chosen.id)
    audit_log.record(db, None, "LEAD_AUTO_ASSIGNED", SubjectKind.LEAD, lead_id,
                     {"employee_id": chosen.id, "employee_name": chosen.name}, clock=clock)
    return chosen
