"""
Response schemas for the CRM endpoints.
Built from ORM rows with ``model_validate(row)``.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from app.models import (
    AdmissionStatus, ApplicationStatus, Department, EmployeeRole, EmployeeStatus, FollowUpStatus,
    LeadStatus, LoanStatus, NextStep, Owner, PaymentStatus,
)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class EmployeeOut(ORMModel):
    id: int
    employee_code: Optional[str] = None
    name: str
    email: str
    role: EmployeeRole
    department: Optional[Department] = None
    status: EmployeeStatus
    last_lead_assigned_at: Optional[datetime] = None


class CallLogOut(ORMModel):
    id: int
    outcome: str
    next_step: NextStep
    details: Optional[str] = None
    performed_by_id: Optional[int] = Field(None, description="Employee who logged the call")
    at: datetime


class FollowUpOut(ORMModel):
    id: int
    due_at: datetime
    note: Optional[str] = None
    scheduled_by_id: Optional[int] = None
    status: FollowUpStatus
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class LeadOut(ORMModel):
    id: int
    name: str
    email: Optional[str] = None
    phone: str
    source: Optional[str] = None
    service_type: Optional[str] = None
    preferred_country: Optional[str] = None
    status: LeadStatus
    assigned_to_id: Optional[int] = None
    is_assigned: bool
    assigned_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    is_deleted: bool
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class LeadDetailOut(LeadOut):
    father_name: Optional[str] = None
    qualification: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    call_logs: List[CallLogOut] = []
    follow_ups: List[FollowUpOut] = []


class InstallmentOut(ORMModel):
    id: int
    reference: str
    amount: float
    kind: Optional[str] = None
    method: Optional[str] = None
    status: Optional[str] = None
    paid_at: Optional[datetime] = None


class ActivityOut(ORMModel):
    actor_name: Optional[str] = None
    action: str
    notes: Optional[str] = None
    at: Optional[datetime] = None


class ApplicationOut(ORMModel):
    id: int
    registration_id: int
    university: str
    course: str
    intake: Optional[str] = None
    program_name: Optional[str] = None
    tuition_fee: Optional[float] = None
    tuition_fee_currency: Optional[str] = None
    status: ApplicationStatus
    rejection_reason: Optional[str] = None
    offer_letter_path: Optional[str] = None
    updated_at: Optional[datetime] = None


class LoanPaymentOut(ORMModel):
    id: int
    amount: float
    notes: str
    paid_at: Optional[datetime] = None
    created_by_id: Optional[int] = None


class LoanOut(ORMModel):
    id: int
    registration_id: int
    applied_amount: float
    sanctioned_amount: Optional[float] = None
    disbursed_amount: Optional[float] = None
    bank_name: Optional[str] = None
    loan_type: Optional[str] = None
    applied_through: Optional[str] = None
    co_applicant_name: Optional[str] = None
    co_applicant_phone: Optional[str] = None
    co_applicant_relationship: Optional[str] = None
    status: LoanStatus
    processing_fee: float
    total_paid: float
    remaining_amount: float
    payments: List[LoanPaymentOut] = []


class RegistrationOut(ORMModel):
    id: int
    student_id: str
    lead_id: Optional[int] = None
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    course: Optional[str] = None
    intake: Optional[str] = None
    total_amount: float
    paid_amount: float
    payment_status: PaymentStatus
    current_owner: Owner
    origin_counsellor_id: Optional[int] = None
    last_transition_at: Optional[datetime] = None
    loan_required: bool
    admission_completed: bool
    loan_completed: bool
    admission_status: AdmissionStatus
    assigned_admission_id: Optional[int] = None
    cancel_reason: Optional[str] = None
    is_deleted: bool
    deleted_at: Optional[datetime] = None


class RegistrationDetailOut(RegistrationOut):
    installments: List[InstallmentOut] = []
    activities: List[ActivityOut] = []
    applications: List[ApplicationOut] = []
    loan: Optional[LoanOut] = None


class AuditEventOut(ORMModel):
    at: datetime
    actor_id: Optional[int] = None
    action: str
    subject_kind: str
    subject_id: Optional[str] = None
    event_metadata: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
