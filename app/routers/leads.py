"""
Lead endpoints: public intake, interactions, assignment, conversion and trash
"""
from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, EmailStr, Field
from typing import Any, Dict, List, Optional
from datetime import datetime
import logging
from app.database import get_db, get_session_factory
from app.errors import OwnershipDenied
from app.models import Lead, LeadStatus, NextStep, SubjectKind
from app.routers.auth import get_current_principal
from app.schemas.crm import AuditEventOut, FollowUpOut, LeadDetailOut, LeadOut, RegistrationDetailOut
from app.services import assignment_engine, audit_log, interaction_ledger, lifecycle_engine
from app.services.principal import Principal

logger = logging.getLogger(__name__)

router = APIRouter()

class LeadForm(BaseModel):
    name: str
    phone: str  # 10 digits
    email: Optional[EmailStr] = None
    father_name: Optional[str] = None
    qualification: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    gender: Optional[str] = None
    category: Optional[str] = None
    service_type: Optional[str] = None
    source: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    university: Optional[str] = None
    preferred_country: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_test_data: bool = False

class InteractionRequest(BaseModel):
    outcome: str
    next_step: NextStep = NextStep.NONE
    date: Optional[datetime] = None  # Required for FOLLOW_UP
    note: Optional[str] = None
    reason: Optional[str] = None  # Required for REJECT
    details: Optional[str] = None
    idempotency_key: Optional[str] = None

class FollowUpRequest(BaseModel):
    due_at: datetime
    note: Optional[str] = None

class AssignRequest(BaseModel):
    employee_id: int

class ReopenRequest(BaseModel):
    reassign_to: Optional[int] = None

class InstallmentIn(BaseModel):
    amount: float = Field(..., ge=0)
    kind: Optional[str] = None
    method: Optional[str] = None

class ConversionRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    course: Optional[str] = None
    intake: Optional[str] = None
    preferred_country: Optional[str] = None
    dob: Optional[str] = None
    total_amount: float = Field(0, ge=0)
    paid_amount: float = Field(0, ge=0)
    installments: Optional[List[InstallmentIn]] = None
    payment_method: Optional[str] = None
    loan_required: bool = False
    loan_amount: float = Field(0, ge=0)

def run_auto_assign(session_factory, lead_id: int):
    """Background task: assignment never fails the request that created the lead"""
    db = session_factory()
    try:
        assignment_engine.assign(db, lead_id)
    finally:
        db.close()

@router.post("/intake", response_model=LeadOut, status_code=status.HTTP_201_CREATED)
def intake_lead(
    form: LeadForm,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Public enquiry form"""
    lead = lifecycle_engine.intake_lead(db, form.model_dump())
    background_tasks.add_task(run_auto_assign, session_factory, lead.id)
    return lead

@router.post("", response_model=LeadOut, status_code=status.HTTP_201_CREATED)
def create_lead(
    form: LeadForm,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Manual lead entry by an employee"""
    lead = lifecycle_engine.create_lead(db, principal, form.model_dump())
    if lead.assigned_to_id is None:
        background_tasks.add_task(run_auto_assign, session_factory, lead.id)
    return lead

@router.get("", response_model=List[LeadOut])
def list_leads(
    status_filter: Optional[LeadStatus] = None,
    unassigned: bool = False,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    query = db.query(Lead).filter(Lead.is_deleted.is_(False))
    if not principal.can_manage_leads():
        query = query.filter(Lead.assigned_to_id == principal.actor_id)
    if status_filter:
        query = query.filter(Lead.status == status_filter)
    if unassigned:
        query = query.filter(Lead.assigned_to_id.is_(None))
    return query.order_by(Lead.created_at.desc()).all()

@router.get("/{lead_id}", response_model=LeadDetailOut)
def get_lead(
    lead_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    lead = interaction_ledger.get_lead(db, lead_id)
    if not principal.can_manage_leads() and lead.assigned_to_id != principal.actor_id:
        raise OwnershipDenied("lead_assigned_to_other", {"lead_id": lead_id})
    return lead

@router.post("/{lead_id}/interactions", response_model=LeadDetailOut)
def submit_interaction(
    lead_id: int,
    data: InteractionRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    payload = data.model_dump(exclude={"outcome", "next_step", "idempotency_key"}, exclude_none=True)
    return interaction_ledger.submit_interaction(
        db, principal, lead_id, data.outcome, data.next_step, payload,
        idempotency_key=data.idempotency_key,
    )

@router.post("/{lead_id}/follow-ups", response_model=FollowUpOut, status_code=status.HTTP_201_CREATED)
def schedule_follow_up(
    lead_id: int,
    data: FollowUpRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return interaction_ledger.schedule_follow_up(db, principal, lead_id, data.due_at, data.note)

@router.post("/{lead_id}/assign", response_model=LeadOut)
def assign_lead(
    lead_id: int,
    data: AssignRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.assign_lead(db, principal, lead_id, data.employee_id)

@router.post("/{lead_id}/auto-assign", response_model=LeadOut)
def auto_assign_lead(
    lead_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Re-run round-robin assignment for a lead left in the general pool"""
    if not principal.can_manage_leads():
        raise OwnershipDenied("manage_leads_required")
    lead = interaction_ledger.get_lead(db, lead_id)
    assignment_engine.assign(db, lead.id)
    return interaction_ledger.get_lead(db, lead_id)

@router.post("/{lead_id}/convert", response_model=RegistrationDetailOut, status_code=status.HTTP_201_CREATED)
def convert_lead(
    lead_id: int,
    data: ConversionRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.convert_lead(db, principal, lead_id, data.model_dump(exclude_none=True))

@router.delete("/{lead_id}", response_model=LeadOut)
def soft_delete_lead(
    lead_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.soft_delete_lead(db, principal, lead_id)

@router.post("/{lead_id}/restore", response_model=LeadOut)
def restore_lead(
    lead_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.restore_lead(db, principal, lead_id)

@router.post("/{lead_id}/reopen", response_model=LeadOut)
def reopen_rejected_lead(
    lead_id: int,
    data: ReopenRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.reopen_rejected_lead(db, principal, lead_id, reassign_to=data.reassign_to)

@router.delete("/{lead_id}/purge", status_code=status.HTTP_204_NO_CONTENT)
def purge_lead(
    lead_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    lifecycle_engine.purge_lead(db, principal, lead_id)

@router.get("/{lead_id}/audit", response_model=List[AuditEventOut])
def lead_audit_trail(
    lead_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return audit_log.events_for(db, SubjectKind.LEAD, lead_id)
