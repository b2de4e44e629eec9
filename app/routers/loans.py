"""
Education loan endpoints (loan department and admission)
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional
from datetime import datetime
from app.database import get_db
from app.models import LoanStatus, SubjectKind
from app.routers.auth import get_current_principal
from app.schemas.crm import AuditEventOut, LoanOut
from app.services import audit_log, lifecycle_engine
from app.services.principal import Principal

router = APIRouter()

class LoanDetails(BaseModel):
    applied_amount: Optional[float] = Field(None, ge=0)
    sanctioned_amount: Optional[float] = Field(None, ge=0)
    disbursed_amount: Optional[float] = Field(None, ge=0)
    bank_name: Optional[str] = None
    branch_name: Optional[str] = None
    loan_type: Optional[str] = None
    applied_through: Optional[str] = None
    application_date: Optional[datetime] = None
    interest_rate: Optional[float] = None
    loan_tenure: Optional[int] = None  # Months
    emi_amount: Optional[float] = Field(None, ge=0)
    disbursement_date: Optional[datetime] = None
    co_applicant_name: Optional[str] = None
    co_applicant_email: Optional[EmailStr] = None
    co_applicant_phone: Optional[str] = None
    co_applicant_relationship: Optional[str] = None
    remarks: Optional[str] = None
    processing_fee: Optional[float] = Field(None, ge=0)
    agent_id: Optional[int] = None

class LoanStatusRequest(BaseModel):
    status: LoanStatus
    remarks: Optional[str] = None

class LoanPaymentRequest(BaseModel):
    amount: float = Field(..., gt=0)
    notes: str

class LoanPaymentReceipt(BaseModel):
    payment_id: int
    new_total_paid: float
    remaining: float

@router.post("/registration/{registration_id}", response_model=LoanOut)
def upsert_loan_application(
    registration_id: int,
    data: LoanDetails,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    """Create the loan record for a registration, or update the existing one"""
    return lifecycle_engine.upsert_loan_application(db, principal, registration_id, data.model_dump(exclude_unset=True))

@router.get("/{loan_id}", response_model=LoanOut)
def get_loan(
    loan_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.get_loan(db, loan_id)

@router.put("/{loan_id}", response_model=LoanOut)
def update_loan_details(
    loan_id: int,
    data: LoanDetails,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.update_loan_details(db, principal, loan_id, data.model_dump(exclude_unset=True))

@router.put("/{loan_id}/status", response_model=LoanOut)
def update_loan_status(
    loan_id: int,
    data: LoanStatusRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.update_loan_status(db, principal, loan_id, data.status, data.remarks)

@router.post("/{loan_id}/payments", response_model=LoanPaymentReceipt)
def record_loan_payment(
    loan_id: int,
    data: LoanPaymentRequest,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return lifecycle_engine.record_loan_payment(db, principal, loan_id, data.amount, data.notes)

@router.get("/{loan_id}/audit", response_model=List[AuditEventOut])
def loan_audit_trail(
    loan_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return audit_log.events_for(db, SubjectKind.LOAN, loan_id)
