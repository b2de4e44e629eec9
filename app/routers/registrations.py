"""
Registration endpoints: ownership hand-offs, admission outcomes, payments and trash
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import List, Optional
from app.config import settings
from app.database import get_db
from app.models import AdmissionStatus, Owner, Registration, SubjectKind
from app.routers.auth import get_current_principal
from app.schemas.crm import AuditEventOut, LeadOut, RegistrationDetailOut, RegistrationOut
from app.services import audit_log, document_gate, lifecycle_engine
from app.services.blob_store import BlobStore, get_optional_blob_store
from app.services.principal import Principal

router = APIRouter()

class PaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)
    method: Optional[str] = None
    kind: Optional[str] = None

class LoanRequirementRequest(BaseModel):
    loan_required: bool

class DeferRequest(BaseModel):
    new_intake: str
    reason: Optional[str] = None

class CancelRequest(BaseModel):
    reason: str

class AdmissionStatusRequest(BaseModel):
    status: AdmissionStatus
    notes: Optional[str] = None

class CompletionRequest(BaseModel):
    completed: bool = True

class TrashResponse(BaseModel):
    leads: List[LeadOut]
    registrations: List[RegistrationOut]

@router.get("", response_model=List[RegistrationOut])
def list_registrations(
    owner: Optional[Owner] = None,
    include_deleted: bool = False,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    query = db.query(Registration)
    if not include_deleted:
        query = query.filter(Registration.is_deleted.is_(False))
    if owner:
        query = query.filter(Registration.current_owner == owner)
    return query.order_by(Registration.created_at.desc()).all()

@router.get("/success-registry", response_model=List[RegistrationOut])
def success_registry(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.success_registry(db)

@router.get("/trash", response_model=TrashResponse)
def trash(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.trash(db, principal)

@router.get("/{registration_id}", response_model=RegistrationDetailOut)
def get_registration(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.get_registration(db, registration_id)

@router.get("/{registration_id}/completeness")
def counsellor_completeness(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Progress of the counsellor document set"""
    registration = lifecycle_engine.get_registration(db, registration_id)
    result = document_gate.completeness(db, SubjectKind.REGISTRATION, registration.id, settings.COUNSELLOR_REQUIRED_DOCS)
    return {
        "required": settings.COUNSELLOR_REQUIRED_DOCS,
        "complete": result.complete,
        "missing": result.missing,
        "progress": result.progress,
    }

@router.post("/{registration_id}/payments", response_model=RegistrationDetailOut)
def record_payment(
    registration_id: int,
    data: PaymentRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.record_registration_payment(db, principal, registration_id, data.amount, data.method, data.kind)

@router.post("/{registration_id}/complete-counsellor-task", response_model=RegistrationOut)
def complete_counsellor_task(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.complete_counsellor_task(db, principal, registration_id)

@router.post("/{registration_id}/claim", response_model=RegistrationOut)
def claim_registration(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.claim_registration(db, principal, registration_id)

@router.put("/{registration_id}/loan-required", response_model=RegistrationDetailOut)
def set_loan_required(
    registration_id: int,
    data: LoanRequirementRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    blob_store: Optional[BlobStore] = Depends(get_optional_blob_store),
):
    return lifecycle_engine.set_loan_required(db, principal, registration_id, data.loan_required, blob_store=blob_store)

@router.post("/{registration_id}/defer", response_model=RegistrationOut)
def defer_intake(
    registration_id: int,
    data: DeferRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.defer_intake(db, principal, registration_id, data.new_intake, data.reason)

@router.post("/{registration_id}/resume", response_model=RegistrationOut)
def resume_intake(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.resume_intake(db, principal, registration_id)

@router.post("/{registration_id}/cancel", response_model=RegistrationOut)
def cancel_admission(
    registration_id: int,
    data: CancelRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.cancel_admission(db, principal, registration_id, data.reason)

@router.put("/{registration_id}/admission-status", response_model=RegistrationOut)
def update_admission_status(
    registration_id: int,
    data: AdmissionStatusRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.update_admission_status(db, principal, registration_id, data.status, data.notes)

@router.post("/{registration_id}/admission-completed", response_model=RegistrationOut)
def mark_admission_completed(
    registration_id: int,
    data: CompletionRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.mark_admission_completed(db, principal, registration_id, data.completed)

@router.post("/{registration_id}/loan-completed", response_model=RegistrationOut)
def mark_loan_completed(
    registration_id: int,
    data: CompletionRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.mark_loan_completed(db, principal, registration_id, data.completed)

@router.delete("/{registration_id}", response_model=RegistrationOut)
def soft_delete_registration(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.soft_delete_registration(db, principal, registration_id)

@router.post("/{registration_id}/restore", response_model=RegistrationOut)
def restore_registration(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.restore_registration(db, principal, registration_id)

@router.delete("/{registration_id}/purge", status_code=status.HTTP_204_NO_CONTENT)
def purge_registration(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
    blob_store: Optional[BlobStore] = Depends(get_optional_blob_store),
):
    """Hard delete of test data (super admin only)"""
    lifecycle_engine.purge_registration(db, principal, registration_id, blob_store=blob_store)

@router.get("/{registration_id}/audit", response_model=List[AuditEventOut])
def registration_audit_trail(
    registration_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return audit_log.events_for(db, SubjectKind.REGISTRATION, registration_id)
