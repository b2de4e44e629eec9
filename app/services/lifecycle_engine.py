"""
Lead -> registration -> admission -> loan state machine.

A registration is always held by one owner:

    COUNSELLOR -> ADMISSION -> (LOAN, when a loan is required) -> DONE

plus CANCELLED and DEFERRED (which re-enters the owner it left). Every
operation loads the registration with a row lock, checks the owner state and
then the caller's department, writes in one transaction and only then records
audit events and queues notifications.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.database import commit_or_conflict
from app.errors import (
    CoApplicantRequired, Conflict, DocumentsIncomplete, ForbiddenTransition, InvalidState,
    MissingRequiredField, NotFound, NotTestData, OverPaid, OwnershipDenied, PreconditionViolated,
    ProtectedRecord, RejectionReasonRequired, ValidationError,
)
from app.models import (
    AdmissionStatus, Application, ApplicationStatus, Department, Employee, EmployeeStatus,
    IntakeDeferral, Lead, LeadStatus, LoanApplication, LoanPayment, LoanStatus, OfferLetter, Owner,
    PaymentStatus, Registration, RegistrationActivity, RegistrationInstallment, SubjectKind,
)
from app.services import audit_log, document_gate, notifier
from app.services.blob_store import BlobStore
from app.services.clock import Clock, utcnow
from app.services.identifiers import generate_payment_reference, generate_student_id
from app.services.interaction_ledger import ensure_can_work, get_lead
from app.services.principal import Principal
from app.services.validation import ensure_email_available, normalize_email, require, validate_phone

logger = logging.getLogger(__name__)

ACTIVE_OWNERS = (Owner.COUNSELLOR, Owner.ADMISSION, Owner.LOAN)

# Loan status partial order: DRAFT < APPLIED < {REJECTED, APPROVED < DISBURSED}
LOAN_SUCCESSORS = {
    LoanStatus.DRAFT: {LoanStatus.APPLIED, LoanStatus.APPROVED, LoanStatus.DISBURSED, LoanStatus.REJECTED},
    LoanStatus.APPLIED: {LoanStatus.APPROVED, LoanStatus.DISBURSED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.DISBURSED},
    LoanStatus.DISBURSED: set(),
    LoanStatus.REJECTED: set(),
}
CO_APPLICANT_STATUSES = (LoanStatus.APPROVED, LoanStatus.DISBURSED)
REMOVABLE_LOAN_STATUSES = (LoanStatus.DRAFT, LoanStatus.REJECTED)

APPLICATION_REASON_STATUSES = (ApplicationStatus.REJECTED, ApplicationStatus.WITHDRAWN)
ADMISSION_REASON_STATUSES = (AdmissionStatus.REJECTED, AdmissionStatus.WITHDRAWN)
TRASH_ADMISSION_STATUSES = (AdmissionStatus.CANCELLED, AdmissionStatus.REJECTED, AdmissionStatus.WITHDRAWN)

LOAN_DEFAULTS = {
    "loan_type": "Education Loan",
    "applied_through": "Veda Loans & Finance",
}

APPLICATION_FIELDS = (
    "university", "course", "intake", "program_name", "course_duration", "tuition_fee",
    "tuition_fee_currency", "fees_structure", "mode_of_attendance", "start_date",
    "campus_name", "campus_address", "admission_notes", "assigned_to_id",
)
LOAN_FIELDS = (
    "applied_amount", "sanctioned_amount", "disbursed_amount", "bank_name", "branch_name",
    "loan_type", "applied_through", "application_date", "interest_rate", "loan_tenure",
    "emi_amount", "disbursement_date", "co_applicant_name", "co_applicant_email",
    "co_applicant_phone", "co_applicant_relationship", "remarks", "processing_fee", "agent_id",
)
LOAN_AMOUNT_FIELDS = ("applied_amount", "sanctioned_amount", "disbursed_amount", "processing_fee", "emi_amount")

Event = Tuple[Optional[int], str, Any, Any, Optional[Dict[str, Any]]]


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------

def get_registration(db: Session, registration_id: int, lock: bool = False) -> Registration:
    query = db.query(Registration).filter(Registration.id == registration_id)
    if lock:
        query = query.with_for_update().populate_existing()
    registration = query.first()
    if registration is None:
        raise NotFound("registration", registration_id)
    return registration


def get_application(db: Session, application_id: int) -> Application:
    application = db.query(Application).filter(Application.id == application_id).first()
    if application is None:
        raise NotFound("application", application_id)
    return application


def get_loan(db: Session, loan_id: int) -> LoanApplication:
    loan = db.query(LoanApplication).filter(LoanApplication.id == loan_id).first()
    if loan is None:
        raise NotFound("loan", loan_id)
    return loan


def acting_owner(registration: Registration) -> Owner:
    """The department responsible for a registration (the prior owner while parked)."""
    return registration.acting_owner


def guard(principal: Principal, registration: Registration, states, department_of: Optional[Owner] = None) -> None:
    """Owner state first, then the caller's department."""
    if registration.is_deleted:
        raise InvalidState("live registration", "deleted")
    if registration.current_owner not in states:
        raise InvalidState([s.value for s in states], registration.current_owner.value)
    owner = department_of or acting_owner(registration)
    if not principal.can_own(owner):
        raise OwnershipDenied("department_mismatch", {"owner": owner.value})


def _transition(registration: Registration, principal: Principal, owner: Owner, now, events: List[Event]) -> None:
    previous = registration.current_owner
    if previous == owner:
        return
    registration.current_owner = owner
    registration.last_transition_by_id = principal.actor_id
    registration.last_transition_at = now
    events.append((principal.actor_id, "WORKFLOW_TRANSITION", SubjectKind.REGISTRATION, registration.id, {
        "from": previous.value,
        "to": owner.value,
    }))


def _activity(registration: Registration, principal: Optional[Principal], action: str, notes: Optional[str], now) -> None:
    registration.activities.append(RegistrationActivity(
        actor_id=principal.actor_id if principal else None,
        actor_name=principal.name if principal else "System",
        action=action,
        notes=notes,
        at=now,
    ))


def _finish(db: Session, events: List[Event], clock: Clock) -> None:
    commit_or_conflict(db)
    audit_log.record_many(db, events, clock=clock)


def _amount(value: Any, field: str) -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError("invalid_amount", {"field": field, "value": value})
    if amount < 0:
        raise ValidationError("negative_amount", {"field": field, "value": amount})
    return amount


def payment_status(total: float, paid: float) -> PaymentStatus:
    if total > 0 and paid >= total:
        return PaymentStatus.PAID
    if paid > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def is_final(registration: Registration) -> bool:
    return registration.admission_status == AdmissionStatus.SUCCESS or registration.current_owner == Owner.DONE


def _new_loan(registration: Registration, now, amount: float = 0.0) -> LoanApplication:
    loan = LoanApplication(
        applied_amount=amount,
        status=LoanStatus.DRAFT,
        processing_fee=settings.DEFAULT_LOAN_PROCESSING_FEE,
        total_paid=0.0,
        paid_amount=0.0,
        created_at=now,
        updated_at=now,
        **LOAN_DEFAULTS,
    )
    registration.loan = loan
    return loan


# ---------------------------------------------------------------------------
# leads
# ---------------------------------------------------------------------------

def _lead_from_form(form: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": require(form.get("name"), "name").strip(),
        "phone": validate_phone(form.get("phone")),
        "email": normalize_email(form.get("email")),
        "father_name": form.get("father_name"),
        "qualification": form.get("qualification"),
        "district": form.get("district"),
        "state": form.get("state"),
        "pincode": form.get("pincode"),
        "gender": form.get("gender"),
        "category": form.get("category"),
        "service_type": form.get("service_type"),
        "source": form.get("source") or "website",
        "details": form.get("details"),
        "university": form.get("university"),
        "preferred_country": form.get("preferred_country"),
        "latitude": form.get("latitude"),
        "longitude": form.get("longitude"),
        "is_test_data": bool(form.get("is_test_data", False)),
    }


def intake_lead(db: Session, form: Dict[str, Any], clock: Clock = utcnow) -> Lead:
    """Public enquiry. The caller schedules assignment_engine.assign for the new lead."""
    values = _lead_from_form(form)
    now = clock()
    lead = Lead(status=LeadStatus.ENQUIRY_RECEIVED, is_assigned=False, created_at=now, updated_at=now, **values)
    db.add(lead)
    commit_or_conflict(db)
    db.refresh(lead)

    logger.info("Lead %s received from %s", lead.id, lead.source)
    audit_log.record(db, None, "LEAD_CREATED", SubjectKind.LEAD, lead.id, {"source": lead.source}, clock=clock)
    notifier.notify(db, notifier.LEAD_RECEIVED, lead.email, {"name": lead.name})
    return lead


def create_lead(db: Session, principal: Principal, form: Dict[str, Any], clock: Clock = utcnow) -> Lead:
    """Manual add by an employee. Counsellors keep the leads they add."""
    values = _lead_from_form(form)
    now = clock()
    lead = Lead(status=LeadStatus.ENQUIRY_RECEIVED, added_by_id=principal.actor_id,
                created_at=now, updated_at=now, **values)
    if principal.department in (Department.COUNSELLOR, Department.WFH) and not principal.can_manage_leads():
        lead.assigned_to_id = principal.actor_id
        lead.is_assigned = True
        lead.assigned_at = now
        lead.status = LeadStatus.ASSIGNED
        lead.department = principal.department
    db.add(lead)
    commit_or_conflict(db)
    db.refresh(lead)

    audit_log.record(db, principal.actor_id, "LEAD_CREATED", SubjectKind.LEAD, lead.id, {
        "source": lead.source,
        "self_assigned": lead.assigned_to_id == principal.actor_id,
    }, clock=clock)
    return lead


def assign_lead(db: Session, principal: Principal, lead_id: int, employee_id: int, clock: Clock = utcnow) -> Lead:
    if not principal.can_manage_leads():
        raise OwnershipDenied("manage_leads_required")
    employee = db.query(Employee).filter(Employee.id == employee_id).with_for_update().first()
    if employee is None:
        raise NotFound("employee", employee_id)
    if employee.status != EmployeeStatus.ACTIVE:
        raise InvalidState(EmployeeStatus.ACTIVE.value, employee.status.value)

    lead = get_lead(db, lead_id, lock=True)
    if lead.is_deleted:
        raise InvalidState("live lead", "deleted")
    if lead.status == LeadStatus.CONVERTED:
        raise InvalidState("unconverted lead", lead.status.value)

    now = clock()
    previous = lead.assigned_to_id
    lead.assigned_to_id = employee.id
    lead.is_assigned = True
    lead.assigned_at = now
    lead.department = employee.department
    lead.status = LeadStatus.CONTACTED
    lead.updated_at = now
    employee.last_lead_assigned_at = now
    _finish(db, [(principal.actor_id, "LEAD_ASSIGNED", SubjectKind.LEAD, lead.id, {
        "from": previous,
        "to": employee.id,
    })], clock)
    db.refresh(lead)
    return lead


def _can_touch_lead(principal: Principal, lead: Lead) -> None:
    if principal.can_manage_leads():
        return
    if lead.assigned_to_id != principal.actor_id and lead.added_by_id != principal.actor_id:
        raise OwnershipDenied("lead_assigned_to_other", {"lead_id": lead.id})


def soft_delete_lead(db: Session, principal: Principal, lead_id: int, clock: Clock = utcnow) -> Lead:
    lead = get_lead(db, lead_id, lock=True)
    _can_touch_lead(principal, lead)
    if lead.is_deleted:
        return lead
    now = clock()
    lead.is_deleted = True
    lead.deleted_at = now
    _finish(db, [(principal.actor_id, "LEAD_SOFT_DELETED", SubjectKind.LEAD, lead.id, {"status": lead.status.value})], clock)
    db.refresh(lead)
    return lead


def restore_lead(db: Session, principal: Principal, lead_id: int, clock: Clock = utcnow) -> Lead:
    lead = get_lead(db, lead_id, lock=True)
    _can_touch_lead(principal, lead)
    if not lead.is_deleted:
        return lead

    now = clock()
    window = timedelta(days=settings.TRASH_RETENTION_DAYS)
    if lead.deleted_at is not None and now - lead.deleted_at > window:
        raise PreconditionViolated("trash_window_expired", {"deleted_at": lead.deleted_at.isoformat()})
    registered = db.query(Registration.id).filter(Registration.lead_id == lead.id).first()
    if registered:
        raise Conflict("lead_already_registered", {"lead_id": lead.id})

    lead.is_deleted = False
    lead.deleted_at = None
    _finish(db, [(principal.actor_id, "LEAD_RESTORED", SubjectKind.LEAD, lead.id, None)], clock)
    db.refresh(lead)
    return lead


def reopen_rejected_lead(db: Session, principal: Principal, lead_id: int,
                         reassign_to: Optional[int] = None, clock: Clock = utcnow) -> Lead:
    """Bring a rejected lead back to CONTACTED, optionally under a new employee."""
    lead = get_lead(db, lead_id, lock=True)
    _can_touch_lead(principal, lead)
    if lead.is_deleted:
        raise InvalidState("live lead", "deleted")
    if lead.status != LeadStatus.REJECTED:
        raise InvalidState(LeadStatus.REJECTED.value, lead.status.value)

    now = clock()
    if reassign_to is not None:
        if not principal.can_manage_leads():
            raise OwnershipDenied("manage_leads_required")
        employee = db.query(Employee).filter(Employee.id == reassign_to).first()
        if employee is None:
            raise NotFound("employee", reassign_to)
        lead.assigned_to_id = employee.id
        lead.assigned_at = now
        employee.last_lead_assigned_at = now
    lead.is_assigned = lead.assigned_to_id is not None
    lead.status = LeadStatus.CONTACTED
    lead.rejection_reason = None
    lead.rejected_by_id = None
    lead.rejected_at = None
    lead.updated_at = now
    _finish(db, [(principal.actor_id, "LEAD_REOPENED", SubjectKind.LEAD, lead.id, {"assigned_to": lead.assigned_to_id})], clock)
    db.refresh(lead)
    return lead


def purge_lead(db: Session, principal: Principal, lead_id: int, clock: Clock = utcnow) -> None:
    if not principal.can_purge():
        raise OwnershipDenied("purge_requires_super_admin")
    lead = get_lead(db, lead_id, lock=True)
    if not lead.is_test_data:
        raise NotTestData(lead.id)

    for registration in db.query(Registration).filter(Registration.lead_id == lead.id):
        registration.lead_id = None
    metadata = {"name": lead.name, "kind": "lead"}
    db.delete(lead)
    _finish(db, [(principal.actor_id, "TEST_RECORD_DELETED", SubjectKind.LEAD, lead_id, metadata)], clock)


# ---------------------------------------------------------------------------
# conversion
# ---------------------------------------------------------------------------

def _next_student_id(db: Session, year: int) -> str:
    count = db.query(func.count(Registration.id)).scalar() or 0
    student_id = generate_student_id(count, year)
    # purged rows lower the count; skip forward past ids still in use
    while db.query(Registration.id).filter(Registration.student_id == student_id).first():
        count += 1
        student_id = generate_student_id(count, year)
    return student_id


def convert_lead(db: Session, principal: Principal, lead_id: int, draft: Dict[str, Any], clock: Clock = utcnow) -> Registration:
    """Create the registration and mark the lead CONVERTED in one transaction."""
    if not principal.can_own(Owner.COUNSELLOR):
        raise OwnershipDenied("counsellor_capability_required")

    lead = get_lead(db, lead_id)
    if lead.is_deleted:
        raise InvalidState("live lead", "deleted")
    if lead.status != LeadStatus.CONVERTING_TO_REG:
        raise InvalidState(LeadStatus.CONVERTING_TO_REG.value, lead.status.value)
    ensure_can_work(principal, lead)

    total = _amount(draft.get("total_amount", 0), "total_amount")
    installments = draft.get("installments")
    if installments is None:
        initial = _amount(draft.get("paid_amount", 0), "paid_amount")
        installments = [{"amount": initial}] if initial > 0 else []
    amounts = [_amount(i.get("amount"), "installments.amount") for i in installments]
    paid = sum(amounts)
    if paid > total:
        raise OverPaid(total, paid)

    email = ensure_email_available(db, draft.get("email") or lead.email, actor_id=principal.actor_id)

    # re-read under lock; the lead may have moved while we validated
    lead = get_lead(db, lead_id, lock=True)
    if lead.is_deleted or lead.status != LeadStatus.CONVERTING_TO_REG:
        raise InvalidState(LeadStatus.CONVERTING_TO_REG.value, lead.status.value)

    now = clock()
    loan_required = bool(draft.get("loan_required", False))
    registration = Registration(
        student_id=_next_student_id(db, now.year),
        lead_id=lead.id,
        name=(draft.get("name") or lead.name).strip(),
        email=email,
        phone=draft.get("phone") or lead.phone,
        course=draft.get("course"),
        intake=draft.get("intake"),
        preferred_country=draft.get("preferred_country") or lead.preferred_country,
        dob=draft.get("dob"),
        total_amount=total,
        current_owner=Owner.COUNSELLOR,
        origin_counsellor_id=principal.actor_id,
        last_transition_by_id=principal.actor_id,
        last_transition_at=now,
        loan_required=loan_required,
        admission_status=AdmissionStatus.AWAITING,
        is_test_data=lead.is_test_data,
        created_at=now,
        updated_at=now,
    )
    method = draft.get("payment_method") or "Cash"
    for item, amount in zip(installments, amounts):
        registration.installments.append(RegistrationInstallment(
            reference=generate_payment_reference(),
            amount=amount,
            kind=item.get("kind") or "Registration Fee",
            method=item.get("method") or method,
            status="Success",
            paid_at=now,
            recorded_by_id=principal.actor_id,
        ))
    registration.paid_amount = paid
    registration.payment_status = payment_status(total, paid)
    _activity(registration, principal, "Registration created", f"Converted from lead {lead.id}", now)
    if loan_required:
        _new_loan(registration, now, _amount(draft.get("loan_amount", 0), "loan_amount"))
    db.add(registration)

    lead.status = LeadStatus.CONVERTED
    lead.updated_at = now

    try:
        commit_or_conflict(db)
    except Conflict:
        logger.error("Conversion of lead %s failed; nothing was written", lead_id)
        raise
    db.refresh(registration)

    audit_log.record_many(db, [
        (principal.actor_id, "LEAD_CONVERTED", SubjectKind.LEAD, lead_id, {
            "registration_id": registration.id,
            "student_id": registration.student_id,
        }),
        (principal.actor_id, "REGISTRATION_CREATED", SubjectKind.REGISTRATION, registration.id, {
            "student_id": registration.student_id,
            "total_amount": total,
            "paid_amount": paid,
            "loan_required": loan_required,
        }),
    ], clock=clock)
    notifier.notify(db, notifier.REGISTRATION_CONFIRMED, registration.email, {
        "name": registration.name,
        "student_id": registration.student_id,
        "total_amount": registration.total_amount,
        "paid_amount": registration.paid_amount,
    })
    return registration


def record_registration_payment(db: Session, principal: Principal, registration_id: int, amount: Any,
                                method: Optional[str] = None, kind: Optional[str] = None,
                                clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    if registration.is_deleted:
        raise InvalidState("live registration", "deleted")
    if not (principal.can_own(Owner.COUNSELLOR) or principal.can_own(acting_owner(registration))):
        raise OwnershipDenied("department_mismatch", {"owner": acting_owner(registration).value})
    amount = _amount(amount, "amount")
    if amount == 0:
        raise ValidationError("zero_amount", {"field": "amount"})

    paid = sum(i.amount for i in registration.installments) + amount
    if paid > registration.total_amount:
        raise OverPaid(registration.total_amount, paid)

    now = clock()
    registration.installments.append(RegistrationInstallment(
        reference=generate_payment_reference(),
        amount=amount,
        kind=kind or "Registration Fee",
        method=method or "Cash",
        status="Success",
        paid_at=now,
        recorded_by_id=principal.actor_id,
    ))
    registration.paid_amount = paid
    registration.payment_status = payment_status(registration.total_amount, paid)
    registration.updated_at = now
    _finish(db, [(principal.actor_id, "REGISTRATION_PAYMENT_RECORDED", SubjectKind.REGISTRATION, registration.id, {
        "amount": amount,
        "paid_amount": paid,
        "payment_status": registration.payment_status.value,
    })], clock)
    db.refresh(registration)
    return registration


# ---------------------------------------------------------------------------
# counsellor hand-off, claim
# ---------------------------------------------------------------------------

def complete_counsellor_task(db: Session, principal: Principal, registration_id: int, clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, (Owner.COUNSELLOR,))

    result = document_gate.completeness(db, SubjectKind.REGISTRATION, registration.id, settings.COUNSELLOR_REQUIRED_DOCS)
    if not result.complete:
        raise DocumentsIncomplete(result.missing)

    now = clock()
    events: List[Event] = []
    registration.counsellor_completed_at = now
    _transition(registration, principal, Owner.ADMISSION, now, events)
    _activity(registration, principal, "Counsellor task completed", None, now)
    _finish(db, events, clock)
    db.refresh(registration)
    return registration


def claim_registration(db: Session, principal: Principal, registration_id: int, clock: Clock = utcnow) -> Registration:
    """An admission employee takes a registration from the admission queue."""
    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, (Owner.ADMISSION,))
    if registration.assigned_admission_id == principal.actor_id:
        return registration
    if registration.assigned_admission_id and not principal.is_global_admin:
        raise Conflict("already_claimed", {"registration_id": registration.id})

    now = clock()
    registration.assigned_admission_id = principal.actor_id
    registration.admission_assigned_at = now
    registration.admission_status = AdmissionStatus.PROCESSING
    _activity(registration, principal, "Claimed by admission", None, now)
    _finish(db, [(principal.actor_id, "REGISTRATION_CLAIMED", SubjectKind.REGISTRATION, registration.id, None)], clock)
    db.refresh(registration)
    return registration


# ---------------------------------------------------------------------------
# admission outcomes
# ---------------------------------------------------------------------------

def _apply_fields(target, data: Dict[str, Any], fields) -> Dict[str, Any]:
    changes = {}
    for name in fields:
        if name in data and getattr(target, name) != data[name]:
            changes[name] = data[name]
            setattr(target, name, data[name])
    return changes


def create_application(db: Session, principal: Principal, registration_id: int, data: Dict[str, Any],
                       clock: Clock = utcnow) -> Application:
    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, (Owner.ADMISSION,))
    university = require(data.get("university"), "university").strip()
    course = require(data.get("course"), "course").strip()

    duplicate = db.query(Application.id).filter(
        Application.registration_id == registration.id,
        Application.university == university,
        Application.course == course,
    ).first()
    if duplicate:
        raise Conflict("application_exists", {"university": university, "course": course})

    now = clock()
    application = Application(registration_id=registration.id, status=ApplicationStatus.DRAFT,
                              created_at=now, updated_at=now)
    _apply_fields(application, data, APPLICATION_FIELDS)
    application.university = university
    application.course = course
    if application.assigned_to_id is None:
        application.assigned_to_id = principal.actor_id
    registration.applications.append(application)
    _activity(registration, principal, "Application created", f"{university} / {course}", now)
    commit_or_conflict(db)
    db.refresh(application)
    audit_log.record(db, principal.actor_id, "APPLICATION_CREATED", SubjectKind.APPLICATION, application.id, {
        "registration_id": registration.id,
        "university": university,
        "course": course,
    }, clock=clock)
    return application


def update_application(db: Session, principal: Principal, application_id: int, patch: Dict[str, Any],
                       clock: Clock = utcnow) -> Application:
    application = get_application(db, application_id)
    registration = get_registration(db, application.registration_id, lock=True)
    guard(principal, registration, (Owner.ADMISSION,))

    status = application.status
    if patch.get("status") is not None:
        try:
            status = ApplicationStatus(patch["status"])
        except ValueError:
            raise ValidationError("invalid_status", {"status": patch["status"]})

    reason = patch.get("rejection_reason", application.rejection_reason)
    if status in APPLICATION_REASON_STATUSES and not (reason and str(reason).strip()):
        raise RejectionReasonRequired(status.value)

    now = clock()
    changes = _apply_fields(application, patch, APPLICATION_FIELDS)
    previous_status = application.status
    if status != previous_status:
        application.status = status
        changes["status"] = status.value
    if status in APPLICATION_REASON_STATUSES:
        application.rejection_reason = str(reason).strip()
        changes["rejection_reason"] = application.rejection_reason
    elif application.rejection_reason is not None:
        application.rejection_reason = None
        changes["rejection_reason"] = None
    application.updated_at = now

    events: List[Event] = []
    if changes:
        events.append((principal.actor_id, "APPLICATION_UPDATED", SubjectKind.APPLICATION, application.id, {
            "registration_id": registration.id,
            "changes": changes,
            "from_status": previous_status.value,
            "to_status": status.value,
        }))
    _finish(db, events, clock)
    db.refresh(application)
    return application


def upload_offer_letter(db: Session, principal: Principal, application_id: int, blob_path: str,
                        file_name: Optional[str] = None, clock: Clock = utcnow) -> Application:
    """Record an offer letter; the application becomes APPROVED."""
    require(blob_path, "file_path")
    application = get_application(db, application_id)
    registration = get_registration(db, application.registration_id, lock=True)
    guard(principal, registration, (Owner.ADMISSION,))

    now = clock()
    application.offer_letter_path = blob_path
    application.status = ApplicationStatus.APPROVED
    application.updated_at = now
    registration.offer_letters.append(OfferLetter(
        application_id=application.id,
        university=application.university,
        status=ApplicationStatus.APPROVED.value,
        file_path=blob_path,
        file_name=file_name,
        uploaded_by_id=principal.actor_id,
        created_at=now,
    ))
    _activity(registration, principal, "Offer letter uploaded", application.university, now)
    _finish(db, [(principal.actor_id, "OFFER_LETTER_UPLOADED", SubjectKind.APPLICATION, application.id, {
        "registration_id": registration.id,
        "file_path": blob_path,
    })], clock)
    db.refresh(application)
    return application


def set_loan_required(db: Session, principal: Principal, registration_id: int, required: bool,
                      blob_store: Optional[BlobStore] = None, clock: Clock = utcnow) -> Registration:
    """Toggle loan requirement. A loan record exists exactly while one is required."""
    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, (Owner.ADMISSION, Owner.LOAN, Owner.DONE), department_of=Owner.ADMISSION)
    required = bool(required)
    if registration.loan_required == required:
        return registration

    now = clock()
    events: List[Event] = []
    blob_paths: List[str] = []
    if required:
        registration.loan_required = True
        registration.loan_completed = False
        registration.loan_completed_by_id = None
        registration.loan_completed_at = None
        if registration.loan is None:
            _new_loan(registration, now)
    else:
        loan = registration.loan
        if loan is not None:
            if loan.status not in REMOVABLE_LOAN_STATUSES:
                raise PreconditionViolated("loan_in_progress", {"status": loan.status.value})
            blob_paths = document_gate.delete_subject_documents(db, SubjectKind.LOAN, loan.id)
            registration.loan = None
        registration.loan_required = False
        registration.loan_completed = False

    if registration.admission_completed:
        target = Owner.LOAN if registration.loan_required and not registration.loan_completed else Owner.DONE
        _transition(registration, principal, target, now, events)

    events.insert(0, (principal.actor_id, "LOAN_REQUIREMENT_UPDATED", SubjectKind.REGISTRATION, registration.id,
                      {"loan_required": required}))
    _activity(registration, principal, "Loan requirement updated", "Loan opted" if required else "Loan not required", now)
    _finish(db, events, clock)
    if blob_store is not None:
        for path in blob_paths:
            blob_store.delete(path)
    db.refresh(registration)
    return registration


def defer_intake(db: Session, principal: Principal, registration_id: int, new_intake: str,
                 reason: Optional[str] = None, clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, ACTIVE_OWNERS)
    new_intake = require(new_intake, "new_intake").strip()

    now = clock()
    events: List[Event] = []
    registration.deferrals.append(IntakeDeferral(
        old_intake=registration.intake,
        new_intake=new_intake,
        reason=reason,
        updated_by_id=principal.actor_id,
        created_at=now,
    ))
    events.append((principal.actor_id, "INTAKE_DEFERRED", SubjectKind.REGISTRATION, registration.id, {
        "old_intake": registration.intake,
        "new_intake": new_intake,
        "reason": reason,
    }))
    registration.intake = new_intake
    registration.previous_owner = registration.current_owner
    registration.admission_status = AdmissionStatus.DEFERRED
    _transition(registration, principal, Owner.DEFERRED, now, events)
    _activity(registration, principal, "Intake deferred", f"{new_intake}: {reason}" if reason else new_intake, now)
    _finish(db, events, clock)
    db.refresh(registration)
    return registration


def resume_intake(db: Session, principal: Principal, registration_id: int, clock: Clock = utcnow) -> Registration:
    """Re-enter the owner a deferred registration left."""
    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, (Owner.DEFERRED,))

    now = clock()
    events: List[Event] = []
    target = registration.previous_owner or Owner.COUNSELLOR
    registration.previous_owner = None
    registration.admission_status = AdmissionStatus.PROCESSING if registration.assigned_admission_id else AdmissionStatus.AWAITING
    _transition(registration, principal, target, now, events)
    events.insert(0, (principal.actor_id, "INTAKE_RESUMED", SubjectKind.REGISTRATION, registration.id, {"owner": target.value}))
    _activity(registration, principal, "Intake resumed", registration.intake, now)
    _finish(db, events, clock)
    db.refresh(registration)
    return registration


def cancel_admission(db: Session, principal: Principal, registration_id: int, reason: str,
                     clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, ACTIVE_OWNERS + (Owner.DEFERRED,))
    if not (reason and str(reason).strip()):
        raise MissingRequiredField("reason")
    reason = str(reason).strip()

    now = clock()
    events: List[Event] = [(principal.actor_id, "ADMISSION_CANCELLED", SubjectKind.REGISTRATION, registration.id, {"reason": reason})]
    if registration.current_owner != Owner.DEFERRED:
        registration.previous_owner = registration.current_owner
    registration.admission_status = AdmissionStatus.CANCELLED
    registration.cancel_reason = reason
    registration.cancelled_at = now
    _transition(registration, principal, Owner.CANCELLED, now, events)
    _activity(registration, principal, "Admission cancelled", reason, now)
    _finish(db, events, clock)
    db.refresh(registration)
    return registration


def update_admission_status(db: Session, principal: Principal, registration_id: int,
                            status: Union[AdmissionStatus, str], notes: Optional[str] = None,
                            clock: Clock = utcnow) -> Registration:
    """Status board update. SUCCESS, CANCELLED and DEFERRED have their own operations."""
    try:
        status = AdmissionStatus(status)
    except ValueError:
        raise ValidationError("invalid_status", {"status": status})
    if status in (AdmissionStatus.SUCCESS, AdmissionStatus.CANCELLED, AdmissionStatus.DEFERRED):
        raise ValidationError("status_requires_dedicated_operation", {"status": status.value})
    if status in ADMISSION_REASON_STATUSES and not (notes and notes.strip()):
        raise RejectionReasonRequired(status.value)

    registration = get_registration(db, registration_id, lock=True)
    guard(principal, registration, (Owner.ADMISSION,))
    if registration.admission_status == status:
        return registration

    now = clock()
    previous = registration.admission_status
    registration.admission_status = status
    _activity(registration, principal, f"Admission status: {status.value}", notes, now)
    _finish(db, [(principal.actor_id, "ADMISSION_STATUS_UPDATED", SubjectKind.REGISTRATION, registration.id, {
        "from": previous.value,
        "to": status.value,
        "notes": notes,
    })], clock)
    db.refresh(registration)
    return registration


# ---------------------------------------------------------------------------
# admission completed
# ---------------------------------------------------------------------------

def mark_admission_completed(db: Session, principal: Principal, registration_id: int, completed: bool = True,
                             clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    now = clock()
    events: List[Event] = []

    if completed:
        guard(principal, registration, (Owner.ADMISSION,))
        registration.admission_completed = True
        registration.admission_completed_by_id = principal.actor_id
        registration.admission_completed_at = now
        registration.admission_status = AdmissionStatus.SUCCESS
        events.append((principal.actor_id, "ADMISSION_COMPLETED", SubjectKind.REGISTRATION, registration.id, None))
        target = Owner.LOAN if registration.loan_required and not registration.loan_completed else Owner.DONE
        _transition(registration, principal, target, now, events)
        _activity(registration, principal, "Admission completed", None, now)
    else:
        guard(principal, registration, (Owner.LOAN, Owner.DONE), department_of=Owner.ADMISSION)
        if not registration.admission_completed:
            raise InvalidState("admission completed", "admission not completed")
        registration.admission_completed = False
        registration.admission_completed_by_id = None
        registration.admission_completed_at = None
        registration.admission_status = AdmissionStatus.PROCESSING
        events.append((principal.actor_id, "ADMISSION_COMPLETION_REVERSED", SubjectKind.REGISTRATION, registration.id, None))
        _transition(registration, principal, Owner.ADMISSION, now, events)
        _activity(registration, principal, "Admission completion reversed", None, now)

    _finish(db, events, clock)
    db.refresh(registration)
    return registration


# ---------------------------------------------------------------------------
# loan progression
# ---------------------------------------------------------------------------

def _loan_guard(principal: Principal, registration: Registration) -> None:
    guard(principal, registration, (Owner.ADMISSION, Owner.LOAN))
    if not registration.loan_required:
        raise PreconditionViolated("loan_not_required", {"registration_id": registration.id})


def _check_loan(db: Session, loan: LoanApplication) -> None:
    """Loan invariants over the pending changes; the unit of work is discarded on failure."""
    try:
        if loan.sanctioned_amount is not None and loan.sanctioned_amount > (loan.applied_amount or 0):
            raise PreconditionViolated("sanctioned_exceeds_applied", {
                "sanctioned_amount": loan.sanctioned_amount,
                "applied_amount": loan.applied_amount,
            })
        if loan.status in CO_APPLICANT_STATUSES and not loan.has_co_applicant:
            raise CoApplicantRequired()
    except PreconditionViolated:
        db.rollback()
        raise


def _loan_patch(data: Dict[str, Any]) -> Dict[str, Any]:
    patch = {k: v for k, v in data.items() if k in LOAN_FIELDS}
    for name in LOAN_AMOUNT_FIELDS:
        if patch.get(name) is not None:
            patch[name] = _amount(patch[name], name)
    if "co_applicant_phone" in patch and patch["co_applicant_phone"]:
        patch["co_applicant_phone"] = validate_phone(patch["co_applicant_phone"])
    return patch


def _loan_for_update(db: Session, loan_id: int) -> Tuple[LoanApplication, Registration]:
    loan = get_loan(db, loan_id)
    registration = get_registration(db, loan.registration_id, lock=True)
    db.refresh(loan)
    return loan, registration


def upsert_loan_application(db: Session, principal: Principal, registration_id: int, data: Dict[str, Any],
                            clock: Clock = utcnow) -> LoanApplication:
    registration = get_registration(db, registration_id, lock=True)
    _loan_guard(principal, registration)
    patch = _loan_patch(data)

    now = clock()
    loan = registration.loan
    created = loan is None
    if created:
        loan = _new_loan(registration, now)
    changes = _apply_fields(loan, patch, LOAN_FIELDS)
    if loan.application_date is None:
        loan.application_date = now
    _check_loan(db, loan)
    loan.updated_at = now

    commit_or_conflict(db)
    db.refresh(loan)
    audit_log.record(db, principal.actor_id, "LOAN_CREATED" if created else "LOAN_UPDATED", SubjectKind.LOAN, loan.id, {
        "registration_id": registration.id,
        "changes": changes,
    }, clock=clock)
    return loan


def update_loan_details(db: Session, principal: Principal, loan_id: int, patch: Dict[str, Any],
                        clock: Clock = utcnow) -> LoanApplication:
    loan, registration = _loan_for_update(db, loan_id)
    _loan_guard(principal, registration)
    changes = _apply_fields(loan, _loan_patch(patch), LOAN_FIELDS)
    _check_loan(db, loan)
    loan.updated_at = clock()
    _finish(db, [(principal.actor_id, "LOAN_UPDATED", SubjectKind.LOAN, loan.id, {
        "registration_id": registration.id,
        "changes": changes,
    })] if changes else [], clock)
    db.refresh(loan)
    return loan


def update_loan_status(db: Session, principal: Principal, loan_id: int, status: Union[LoanStatus, str],
                       remarks: Optional[str] = None, clock: Clock = utcnow) -> LoanApplication:
    try:
        target = LoanStatus(status)
    except ValueError:
        raise ValidationError("invalid_status", {"status": status})

    loan, registration = _loan_for_update(db, loan_id)
    _loan_guard(principal, registration)
    if loan.status == target:
        return loan
    if target not in LOAN_SUCCESSORS[loan.status]:
        raise ForbiddenTransition(loan.status.value, target.value)
    if target in CO_APPLICANT_STATUSES and not loan.has_co_applicant:
        raise CoApplicantRequired()

    now = clock()
    previous = loan.status
    loan.status = target
    if remarks:
        loan.remarks = remarks
    if target == LoanStatus.DISBURSED and loan.disbursement_date is None:
        loan.disbursement_date = now
    _check_loan(db, loan)
    loan.updated_at = now
    _finish(db, [(principal.actor_id, "LOAN_STATUS_CHANGED", SubjectKind.LOAN, loan.id, {
        "registration_id": registration.id,
        "from": previous.value,
        "to": target.value,
    })], clock)
    db.refresh(loan)
    return loan


def record_loan_payment(db: Session, principal: Principal, loan_id: int, amount: Any, notes: str,
                        clock: Clock = utcnow) -> Dict[str, Any]:
    """Append a processing-fee payment. Returns new_total_paid and remaining."""
    amount = _amount(amount, "amount")
    if amount == 0:
        raise ValidationError("zero_amount", {"field": "amount"})
    notes = require(notes, "notes").strip()

    loan, registration = _loan_for_update(db, loan_id)
    _loan_guard(principal, registration)

    new_total = sum(p.amount for p in loan.payments) + amount
    if not settings.ALLOW_LOAN_OVERPAYMENT and new_total > loan.processing_fee:
        raise OverPaid(loan.processing_fee, new_total)

    now = clock()
    payment = LoanPayment(amount=amount, notes=notes, paid_at=now, created_by_id=principal.actor_id)
    loan.payments.append(payment)
    loan.total_paid = new_total
    loan.paid_amount = new_total
    loan.updated_at = now
    _finish(db, [(principal.actor_id, "LOAN_PAYMENT_RECORDED", SubjectKind.LOAN, loan.id, {
        "amount": amount,
        "new_total_paid": new_total,
    })], clock)
    db.refresh(loan)
    return {
        "payment_id": payment.id,
        "new_total_paid": loan.total_paid,
        "remaining": loan.remaining_amount,
    }


# ---------------------------------------------------------------------------
# loan completed
# ---------------------------------------------------------------------------

def mark_loan_completed(db: Session, principal: Principal, registration_id: int, completed: bool = True,
                        clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    if not registration.loan_required:
        raise PreconditionViolated("loan_not_required", {"registration_id": registration.id})

    now = clock()
    events: List[Event] = []
    if completed:
        guard(principal, registration, (Owner.LOAN,))
        registration.loan_completed = True
        registration.loan_completed_by_id = principal.actor_id
        registration.loan_completed_at = now
        events.append((principal.actor_id, "LOAN_COMPLETED", SubjectKind.REGISTRATION, registration.id, None))
        _transition(registration, principal, Owner.DONE, now, events)
        _activity(registration, principal, "Loan completed", None, now)
    else:
        guard(principal, registration, (Owner.DONE,), department_of=Owner.LOAN)
        if not registration.loan_completed:
            raise InvalidState("loan completed", "loan not completed")
        registration.loan_completed = False
        registration.loan_completed_by_id = None
        registration.loan_completed_at = None
        events.append((principal.actor_id, "LOAN_COMPLETION_REVERSED", SubjectKind.REGISTRATION, registration.id, None))
        _transition(registration, principal, Owner.LOAN, now, events)
        _activity(registration, principal, "Loan completion reversed", None, now)

    _finish(db, events, clock)
    db.refresh(registration)
    return registration


# ---------------------------------------------------------------------------
# soft delete, restore, purge
# ---------------------------------------------------------------------------

def _may_remove(principal: Principal, registration: Registration) -> None:
    if principal.is_global_admin:
        return
    if is_final(registration):
        raise ProtectedRecord("final_record", {"student_id": registration.student_id})
    owner = acting_owner(registration)
    if not principal.can_own(owner):
        raise OwnershipDenied("department_mismatch", {"owner": owner.value})


def soft_delete_registration(db: Session, principal: Principal, registration_id: int, clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    if registration.is_deleted:
        return registration
    _may_remove(principal, registration)

    registration.is_deleted = True
    registration.deleted_at = clock()
    _finish(db, [(principal.actor_id, "REGISTRATION_SOFT_DELETED", SubjectKind.REGISTRATION, registration.id, {
        "student_id": registration.student_id,
    })], clock)
    db.refresh(registration)
    return registration


def restore_registration(db: Session, principal: Principal, registration_id: int, clock: Clock = utcnow) -> Registration:
    registration = get_registration(db, registration_id, lock=True)
    if not registration.is_deleted:
        return registration
    _may_remove(principal, registration)

    registration.is_deleted = False
    registration.deleted_at = None
    _finish(db, [(principal.actor_id, "REGISTRATION_RESTORED", SubjectKind.REGISTRATION, registration.id, {
        "student_id": registration.student_id,
    })], clock)
    db.refresh(registration)
    return registration


def purge_registration(db: Session, principal: Principal, registration_id: int,
                       blob_store: Optional[BlobStore] = None, clock: Clock = utcnow) -> None:
    """Hard delete. Only test data, only by a super admin. Audit rows are kept."""
    if not principal.can_purge():
        raise OwnershipDenied("purge_requires_super_admin")
    registration = get_registration(db, registration_id, lock=True)
    if not registration.is_test_data:
        raise NotTestData(registration.student_id)

    blob_paths = document_gate.delete_subject_documents(db, SubjectKind.REGISTRATION, registration.id)
    if registration.loan is not None:
        blob_paths += document_gate.delete_subject_documents(db, SubjectKind.LOAN, registration.loan.id)
    blob_paths += [letter.file_path for letter in registration.offer_letters]
    metadata = {"student_id": registration.student_id, "name": registration.name, "kind": "registration"}
    db.delete(registration)
    _finish(db, [(principal.actor_id, "TEST_RECORD_DELETED", SubjectKind.REGISTRATION, registration_id, metadata)], clock)

    if blob_store is not None:
        for path in blob_paths:
            blob_store.delete(path)
    logger.info("Test registration %s purged by %s", metadata["student_id"], principal.actor_id)


# ---------------------------------------------------------------------------
# derived views
# ---------------------------------------------------------------------------

def is_in_success_registry(registration: Registration) -> bool:
    return (
        registration.admission_completed
        and (not registration.loan_required or registration.loan_completed)
        and not registration.is_deleted
    )


def success_registry(db: Session) -> List[Registration]:
    return (
        db.query(Registration)
        .filter(
            Registration.admission_completed.is_(True),
            or_(Registration.loan_required.is_(False), Registration.loan_completed.is_(True)),
            Registration.is_deleted.is_(False),
        )
        .order_by(Registration.admission_completed_at.desc(), Registration.id.desc())
        .all()
    )


def trash(db: Session, principal: Principal, clock: Clock = utcnow) -> Dict[str, List[Any]]:
    """Soft-deleted and closed-out items still within reach. Successes never appear here."""
    cutoff = clock() - timedelta(days=settings.TRASH_RETENTION_DAYS)

    leads = db.query(Lead).filter(or_(
        (Lead.is_deleted.is_(True)) & (Lead.deleted_at >= cutoff),
        (Lead.is_deleted.is_(False)) & (Lead.status == LeadStatus.REJECTED),
    ))
    if not principal.can_manage_leads():
        leads = leads.filter(Lead.assigned_to_id == principal.actor_id)

    registrations = db.query(Registration).filter(
        or_(Registration.is_deleted.is_(True), Registration.admission_status.in_(TRASH_ADMISSION_STATUSES)),
        Registration.admission_status != AdmissionStatus.SUCCESS,
    )
    if not principal.is_global_admin:
        registrations = [r for r in registrations.all() if principal.can_own(acting_owner(r))]
    else:
        registrations = registrations.all()

    return {
        "leads": leads.order_by(Lead.updated_at.desc()).all(),
        "registrations": registrations,
    }
