from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, JSON, Float, Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index, event, text
from sqlalchemy.orm import relationship
from app.database import Base
from app.services.clock import utcnow
from typing import Optional
import enum

class EmployeeRole(str, enum.Enum):
    SUPER_ADMIN = "super_admin"
    ADMISSION_ADMIN = "admission_admin"
    COUNSELLING_ADMIN = "counselling_admin"
    WFH_ADMIN = "wfh_admin"
    COUNSELLOR = "counsellor"
    WFH = "wfh"
    ADMISSION = "admission"
    LOAN_OFFICER = "loan_officer"

    @staticmethod
    def canonicalize(value: Optional[str]) -> Optional["EmployeeRole"]:
        """
        Canonicalize a free-form role label to an EmployeeRole.
        Returns None if the label is not recognized.
        """
        if not value:
            return None

        value_lower = str(value).strip().lower().replace("-", " ").replace("_", " ")

        mapping = {
            "super admin": EmployeeRole.SUPER_ADMIN,
            "super administrator": EmployeeRole.SUPER_ADMIN,
            "superadmin": EmployeeRole.SUPER_ADMIN,
            "admission admin": EmployeeRole.ADMISSION_ADMIN,
            "admission administrator": EmployeeRole.ADMISSION_ADMIN,
            "counselling admin": EmployeeRole.COUNSELLING_ADMIN,
            "counseling admin": EmployeeRole.COUNSELLING_ADMIN,
            "counselling administrator": EmployeeRole.COUNSELLING_ADMIN,
            "wfh admin": EmployeeRole.WFH_ADMIN,
            "wfh administrator": EmployeeRole.WFH_ADMIN,
            "counsellor": EmployeeRole.COUNSELLOR,
            "counselor": EmployeeRole.COUNSELLOR,
            "wfh": EmployeeRole.WFH,
            "work from home": EmployeeRole.WFH,
            "admission": EmployeeRole.ADMISSION,
            "admission officer": EmployeeRole.ADMISSION,
            "loan officer": EmployeeRole.LOAN_OFFICER,
            "loan": EmployeeRole.LOAN_OFFICER,
        }

        return mapping.get(value_lower, None)

class Department(str, enum.Enum):
    COUNSELLOR = "COUNSELLOR"
    WFH = "WFH"
    ADMISSION = "ADMISSION"
    LOAN = "LOAN"
    ADMIN = "ADMIN"

class EmployeeStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"

class LeadStatus(str, enum.Enum):
    ENQUIRY_RECEIVED = "ENQUIRY_RECEIVED"
    ASSIGNED = "ASSIGNED"
    CONTACTED = "CONTACTED"
    FOLLOW_UP = "FOLLOW_UP"
    CONVERTING_TO_REG = "CONVERTING_TO_REG"
    REJECTED = "REJECTED"
    CONVERTED = "CONVERTED"

# Lead statuses that no longer count against an employee's load
CLOSED_LEAD_STATUSES = (LeadStatus.REJECTED, LeadStatus.CONVERTED)

class FollowUpStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

class NextStep(str, enum.Enum):
    FOLLOW_UP = "FOLLOW_UP"
    REJECT = "REJECT"
    REGISTER = "REGISTER"
    NONE = "NONE"

class Owner(str, enum.Enum):
    COUNSELLOR = "COUNSELLOR"
    ADMISSION = "ADMISSION"
    LOAN = "LOAN"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    DEFERRED = "DEFERRED"

class AdmissionStatus(str, enum.Enum):
    AWAITING = "AWAITING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"
    CANCELLED = "CANCELLED"
    DEFERRED = "DEFERRED"

class PaymentStatus(str, enum.Enum):
    PENDING = "Pending"
    PARTIAL = "Partial"
    PAID = "Paid"

class ApplicationStatus(str, enum.Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    WITHDRAWN = "Withdrawn"

class LoanStatus(str, enum.Enum):
    DRAFT = "Draft"
    APPLIED = "Applied"
    APPROVED = "Approved"
    DISBURSED = "Disbursed"
    REJECTED = "Rejected"

class DocumentStatus(str, enum.Enum):
    UPLOADED = "UPLOADED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"

class VerificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"

class VerificationParty(str, enum.Enum):
    COUNSELLOR = "COUNSELLOR"
    ADMISSION = "ADMISSION"

class SubjectKind(str, enum.Enum):
    LEAD = "LEAD"
    REGISTRATION = "REGISTRATION"
    APPLICATION = "APPLICATION"
    LOAN = "LOAN"
    DOCUMENT = "DOCUMENT"
    EMPLOYEE = "EMPLOYEE"

class NotificationStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"

# Employees table
class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    employee_code = Column(String, unique=True, index=True)  # EMP-XXXXXX
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String, nullable=True)
    hashed_password = Column(String, nullable=True)
    role = Column(SQLEnum(EmployeeRole), nullable=False)
    department = Column(SQLEnum(Department), nullable=True)
    status = Column(SQLEnum(EmployeeStatus), default=EmployeeStatus.ACTIVE, nullable=False)
    last_lead_assigned_at = Column(DateTime, nullable=True)  # Round-robin cursor
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, onupdate=utcnow)

    assigned_leads = relationship("Lead", back_populates="assignee", foreign_keys="Lead.assigned_to_id")

# Leads table
class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    father_name = Column(String, nullable=True)
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=False)
    qualification = Column(String, nullable=True)
    district = Column(String, nullable=True)
    state = Column(String, nullable=True)
    pincode = Column(String, nullable=True)
    gender = Column(String, nullable=True)
    category = Column(String, nullable=True)
    service_type = Column(String, nullable=True)
    source = Column(String, default="website")
    details = Column(JSON, nullable=True)  # Free-form intake payload
    university = Column(String, nullable=True)
    preferred_country = Column(String, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    status = Column(SQLEnum(LeadStatus), default=LeadStatus.ENQUIRY_RECEIVED, nullable=False, index=True)
    department = Column(SQLEnum(Department), nullable=True)

    added_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    assigned_to_id = Column(Integer, ForeignKey("employees.id"), nullable=True, index=True)
    is_assigned = Column(Boolean, default=False, nullable=False)
    assigned_at = Column(DateTime, nullable=True)

    rejection_reason = Column(Text, nullable=True)
    rejected_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    rejected_at = Column(DateTime, nullable=True)

    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    is_test_data = Column(Boolean, default=False, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    assignee = relationship("Employee", back_populates="assigned_leads", foreign_keys=[assigned_to_id])
    call_logs = relationship("CallLog", back_populates="lead", order_by="CallLog.id", cascade="all, delete-orphan")
    follow_ups = relationship("FollowUp", back_populates="lead", order_by="FollowUp.id", cascade="all, delete-orphan")

    @property
    def pending_follow_ups(self):
        return [f for f in self.follow_ups if f.status == FollowUpStatus.PENDING]

# Call logs table (ordered interaction history of a lead)
class CallLog(Base):
    __tablename__ = "call_logs"
    __table_args__ = (
        UniqueConstraint("lead_id", "idempotency_key", name="uq_call_logs_idempotency"),
    )

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    outcome = Column(String, nullable=False)
    next_step = Column(SQLEnum(NextStep), default=NextStep.NONE, nullable=False)
    details = Column(Text, nullable=True)
    performed_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    at = Column(DateTime, nullable=False, default=utcnow)
    idempotency_key = Column(String, nullable=True)

    lead = relationship("Lead", back_populates="call_logs")

# Follow ups table - at most one PENDING row per lead
class FollowUp(Base):
    __tablename__ = "follow_ups"
    __table_args__ = (
        Index(
            "uq_follow_ups_one_pending",
            "lead_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    due_at = Column(DateTime, nullable=False)
    note = Column(Text, nullable=True)
    scheduled_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    status = Column(SQLEnum(FollowUpStatus), default=FollowUpStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    lead = relationship("Lead", back_populates="follow_ups")

# Registrations table - a converted lead (committed student)
class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        CheckConstraint("paid_amount <= total_amount", name="ck_registrations_paid_le_total"),
    )

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String, unique=True, index=True, nullable=False)  # STU-YYYY-NNNN
    lead_id = Column(Integer, ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, index=True)
    phone = Column(String, nullable=True)
    course = Column(String, nullable=True)
    intake = Column(String, nullable=True)
    preferred_country = Column(String, nullable=True)
    dob = Column(String, nullable=True)
    status = Column(String, default="Registered")

    # Payment ledger
    total_amount = Column(Float, default=0.0, nullable=False)
    paid_amount = Column(Float, default=0.0, nullable=False)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False)

    # Lifecycle record
    current_owner = Column(SQLEnum(Owner), default=Owner.COUNSELLOR, nullable=False, index=True)
    previous_owner = Column(SQLEnum(Owner), nullable=True)  # Owner to re-enter after DEFERRED
    origin_counsellor_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    last_transition_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    last_transition_at = Column(DateTime, nullable=True)
    counsellor_completed_at = Column(DateTime, nullable=True)
    loan_required = Column(Boolean, default=False, nullable=False)
    admission_completed = Column(Boolean, default=False, nullable=False)
    admission_completed_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    admission_completed_at = Column(DateTime, nullable=True)
    loan_completed = Column(Boolean, default=False, nullable=False)
    loan_completed_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    loan_completed_at = Column(DateTime, nullable=True)

    admission_status = Column(SQLEnum(AdmissionStatus), default=AdmissionStatus.AWAITING, nullable=False)
    assigned_admission_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    admission_assigned_at = Column(DateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime, nullable=True)
    is_test_data = Column(Boolean, default=False, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __mapper_args__ = {"version_id_col": version}

    lead = relationship("Lead", foreign_keys=[lead_id])
    installments = relationship("RegistrationInstallment", back_populates="registration", order_by="RegistrationInstallment.id", cascade="all, delete-orphan")
    activities = relationship("RegistrationActivity", back_populates="registration", order_by="RegistrationActivity.id", cascade="all, delete-orphan")
    applications = relationship("Application", back_populates="registration", order_by="Application.id", cascade="all, delete-orphan")
    offer_letters = relationship("OfferLetter", back_populates="registration", cascade="all, delete-orphan")
    deferrals = relationship("IntakeDeferral", back_populates="registration", order_by="IntakeDeferral.id", cascade="all, delete-orphan")
    loan = relationship("LoanApplication", back_populates="registration", uselist=False, cascade="all, delete-orphan")

    @property
    def balance(self) -> float:
        return self.total_amount - self.paid_amount

    @property
    def acting_owner(self) -> Owner:
        """The department responsible (the prior owner while DEFERRED or CANCELLED)."""
        if self.current_owner in (Owner.DEFERRED, Owner.CANCELLED):
            return self.previous_owner or Owner.COUNSELLOR
        return self.current_owner

    def lifecycle(self) -> dict:
        """Snapshot of the lifecycle record (named fields only)."""
        return {
            "current_owner": self.current_owner,
            "previous_owner": self.previous_owner,
            "origin_counsellor_id": self.origin_counsellor_id,
            "last_transition_by_id": self.last_transition_by_id,
            "last_transition_at": self.last_transition_at,
            "counsellor_completed_at": self.counsellor_completed_at,
            "loan_required": self.loan_required,
            "admission_completed": self.admission_completed,
            "loan_completed": self.loan_completed,
            "deleted_at": self.deleted_at,
        }

# Registration installments (payment ledger entries)
class RegistrationInstallment(Base):
    __tablename__ = "registration_installments"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, index=True)
    reference = Column(String, nullable=False)  # PAY-<epoch ms>
    amount = Column(Float, nullable=False)
    kind = Column(String, default="Registration Fee")
    method = Column(String, default="Cash")
    status = Column(String, default="Success")
    paid_at = Column(DateTime, default=utcnow)
    recorded_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)

    registration = relationship("Registration", back_populates="installments")

# Free-form registration activity log
class RegistrationActivity(Base):
    __tablename__ = "registration_activities"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    actor_name = Column(String, nullable=True)
    action = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    at = Column(DateTime, default=utcnow)

    registration = relationship("Registration", back_populates="activities")

# Admission applications table - one per (university, course) under consideration
class Application(Base):
    __tablename__ = "admission_applications"
    __table_args__ = (
        UniqueConstraint("registration_id", "university", "course", name="uq_applications_university_course"),
    )

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, index=True)
    university = Column(String, nullable=False)
    course = Column(String, nullable=False)
    intake = Column(String, nullable=True)
    program_name = Column(String, nullable=True)
    course_duration = Column(String, nullable=True)
    tuition_fee = Column(Float, nullable=True)
    tuition_fee_currency = Column(String, default="USD")
    fees_structure = Column(Text, nullable=True)
    mode_of_attendance = Column(String, nullable=True)
    start_date = Column(String, nullable=True)
    campus_name = Column(String, nullable=True)
    campus_address = Column(String, nullable=True)
    admission_notes = Column(Text, nullable=True)
    status = Column(SQLEnum(ApplicationStatus), default=ApplicationStatus.DRAFT, nullable=False)
    rejection_reason = Column(Text, nullable=True)  # Mandatory for Rejected / Withdrawn
    offer_letter_path = Column(String, nullable=True)
    assigned_to_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    registration = relationship("Registration", back_populates="applications")

# Offer letter history
class OfferLetter(Base):
    __tablename__ = "offer_letters"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, index=True)
    application_id = Column(Integer, ForeignKey("admission_applications.id", ondelete="CASCADE"), nullable=False)
    university = Column(String, nullable=True)
    status = Column(String, default="Approved")
    file_path = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    uploaded_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    registration = relationship("Registration", back_populates="offer_letters")

# Intake deferrals table
class IntakeDeferral(Base):
    __tablename__ = "intake_deferrals"

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False, index=True)
    old_intake = Column(String, nullable=True)
    new_intake = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    updated_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    registration = relationship("Registration", back_populates="deferrals")

# Loan applications table - at most one per registration
class LoanApplication(Base):
    __tablename__ = "loan_applications"
    __table_args__ = (
        CheckConstraint(
            "sanctioned_amount IS NULL OR sanctioned_amount <= applied_amount",
            name="ck_loans_sanctioned_le_applied",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    registration_id = Column(Integer, ForeignKey("registrations.id", ondelete="CASCADE"), unique=True, nullable=False)
    applied_amount = Column(Float, nullable=False, default=0.0)
    sanctioned_amount = Column(Float, nullable=True)
    disbursed_amount = Column(Float, default=0.0)
    bank_name = Column(String, nullable=True)
    branch_name = Column(String, nullable=True)
    loan_type = Column(String, default="Education Loan")
    applied_through = Column(String, nullable=True)
    application_date = Column(DateTime, nullable=True)
    interest_rate = Column(Float, nullable=True)
    loan_tenure = Column(Integer, nullable=True)  # Months
    emi_amount = Column(Float, nullable=True)
    disbursement_date = Column(DateTime, nullable=True)

    co_applicant_name = Column(String, nullable=True)
    co_applicant_email = Column(String, nullable=True)
    co_applicant_phone = Column(String, nullable=True)
    co_applicant_relationship = Column(String, nullable=True)

    status = Column(SQLEnum(LoanStatus), default=LoanStatus.DRAFT, nullable=False)
    remarks = Column(Text, nullable=True)
    processing_fee = Column(Float, nullable=False, default=57000.0)
    total_paid = Column(Float, nullable=False, default=0.0)
    paid_amount = Column(Float, nullable=False, default=0.0)  # Legacy mirror of total_paid
    agent_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    registration = relationship("Registration", back_populates="loan")
    payments = relationship("LoanPayment", back_populates="loan", order_by="LoanPayment.id", cascade="all, delete-orphan")

    @property
    def has_co_applicant(self) -> bool:
        return bool(self.co_applicant_name and self.co_applicant_name.strip())

    @property
    def remaining_amount(self) -> float:
        return max(0.0, (self.processing_fee or 0.0) - (self.total_paid or 0.0))

# Loan payments table
class LoanPayment(Base):
    __tablename__ = "loan_payments"

    id = Column(Integer, primary_key=True, index=True)
    loan_id = Column(Integer, ForeignKey("loan_applications.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    notes = Column(Text, nullable=False)
    paid_at = Column(DateTime, default=utcnow)
    created_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)

    loan = relationship("LoanApplication", back_populates="payments")

# Documents table - unique per (owner entity, logical doc id)
class Document(Base):
    __tablename__ = "student_documents"
    __table_args__ = (
        UniqueConstraint("subject_kind", "subject_id", "doc_id", name="uq_documents_subject_doc"),
    )

    id = Column(Integer, primary_key=True, index=True)
    subject_kind = Column(SQLEnum(SubjectKind), nullable=False)  # REGISTRATION or LOAN
    subject_id = Column(Integer, nullable=False, index=True)
    doc_id = Column(String, nullable=False)  # e.g. "passport", "graduation_marksheet"
    file_path = Column(String, nullable=False)
    file_name = Column(String, nullable=True)
    status = Column(SQLEnum(DocumentStatus), default=DocumentStatus.UPLOADED, nullable=False)

    counsellor_status = Column(SQLEnum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False)
    counsellor_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    counsellor_at = Column(DateTime, nullable=True)
    counsellor_remarks = Column(Text, nullable=True)

    admission_status = Column(SQLEnum(VerificationStatus), default=VerificationStatus.PENDING, nullable=False)
    admission_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    admission_at = Column(DateTime, nullable=True)
    admission_remarks = Column(Text, nullable=True)

    uploaded_by_id = Column(Integer, ForeignKey("employees.id"), nullable=True)
    uploaded_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

# Audit log - append only
class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_subject", "subject_kind", "subject_id", "at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    at = Column(DateTime, nullable=False)
    actor_id = Column(Integer, nullable=True)  # No FK: events outlive their actors
    action = Column(String, nullable=False, index=True)
    subject_kind = Column(String, nullable=False)
    subject_id = Column(String, nullable=True)
    event_metadata = Column("metadata", JSON, nullable=True)

# Notification outbox - drained out-of-band by the dispatcher
class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String, nullable=False)
    recipient = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    status = Column(SQLEnum(NotificationStatus), default=NotificationStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime, nullable=True)

@event.listens_for(AuditEvent, "before_update")
def _audit_events_are_immutable(mapper, connection, target):
    raise ValueError("Audit events are append-only")

@event.listens_for(AuditEvent, "before_delete")
def _audit_events_are_permanent(mapper, connection, target):
    raise ValueError("Audit events cannot be deleted")
