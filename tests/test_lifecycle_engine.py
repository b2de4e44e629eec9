"""
Registration ownership: hand-offs, admission outcomes, deferral and the success registry
"""
import pytest

from app.errors import (
    Conflict, InvalidState, MissingRequiredField, OwnershipDenied, PreconditionViolated,
    RejectionReasonRequired, ValidationError,
)
from app.models import (
    AdmissionStatus, ApplicationStatus, AuditEvent, EmployeeRole, LoanStatus, OfferLetter, Owner, SubjectKind,
)
from app.services import audit_log, lifecycle_engine
from app.services.principal import Principal


def transitions(db, registration_id):
    return [
        (e.event_metadata["from"], e.event_metadata["to"])
        for e in audit_log.events_for(db, SubjectKind.REGISTRATION, registration_id)
        if e.action == "WORKFLOW_TRANSITION"
    ]


class TestGuards:
    def test_wrong_state_is_reported_before_wrong_department(self, db, clock, staff, make_registration):
        registration = make_registration(staff.counsellor)
        with pytest.raises(InvalidState):
            lifecycle_engine.mark_admission_completed(db, staff.counsellor, registration.id, clock=clock)

    def test_wrong_department(self, db, clock, staff, in_admission):
        registration = in_admission()
        with pytest.raises(OwnershipDenied):
            lifecycle_engine.mark_admission_completed(db, staff.counsellor, registration.id, clock=clock)

    def test_counsellor_task_only_from_counsellor(self, db, clock, staff, in_admission):
        registration = in_admission()
        with pytest.raises(InvalidState):
            lifecycle_engine.complete_counsellor_task(db, staff.counsellor, registration.id, clock=clock)

    def test_deleted_registrations_are_frozen(self, db, clock, staff, in_admission):
        registration = in_admission()
        lifecycle_engine.soft_delete_registration(db, staff.admission, registration.id, clock=clock)
        with pytest.raises(InvalidState):
            lifecycle_engine.claim_registration(db, staff.admission, registration.id, clock=clock)

    def test_super_admin_acts_for_any_department(self, db, clock, staff, in_admission):
        registration = in_admission()
        registration = lifecycle_engine.mark_admission_completed(db, staff.admin, registration.id, clock=clock)
        assert registration.current_owner == Owner.DONE


class TestHandOffs:
    def test_full_path_without_loan(self, db, clock, staff, in_admission):
        registration = in_admission()
        registration = lifecycle_engine.claim_registration(db, staff.admission, registration.id, clock=clock)
        assert registration.assigned_admission_id == staff.admission.actor_id
        assert registration.admission_status == AdmissionStatus.PROCESSING

        registration = lifecycle_engine.mark_admission_completed(db, staff.admission, registration.id, clock=clock)
        assert registration.current_owner == Owner.DONE
        assert registration.admission_status == AdmissionStatus.SUCCESS
        assert registration.last_transition_by_id == staff.admission.actor_id
        assert transitions(db, registration.id) == [("COUNSELLOR", "ADMISSION"), ("ADMISSION", "DONE")]

    def test_full_path_with_loan(self, db, clock, staff, in_admission):
        registration = in_admission(loan_required=True)
        registration = lifecycle_engine.mark_admission_completed(db, staff.admission, registration.id, clock=clock)
        assert registration.current_owner == Owner.LOAN

        registration = lifecycle_engine.mark_loan_completed(db, staff.loan, registration.id, clock=clock)
        assert registration.current_owner == Owner.DONE
        assert registration.loan_completed_by_id == staff.loan.actor_id

    def test_claim_by_second_admission_employee_conflicts(self, db, clock, staff, make_employee, in_admission):
        other = Principal.from_employee(make_employee("Second Admission", EmployeeRole.ADMISSION))
        registration = in_admission()
        lifecycle_engine.claim_registration(db, staff.admission, registration.id, clock=clock)
        with pytest.raises(Conflict):
            lifecycle_engine.claim_registration(db, other, registration.id, clock=clock)

    def test_admission_completion_reversal(self, db, clock, staff, admitted):
        registration = admitted()
        registration = lifecycle_engine.mark_admission_completed(db, staff.admission, registration.id, completed=False, clock=clock)
        assert registration.current_owner == Owner.ADMISSION
        assert registration.admission_completed is False
        assert registration.admission_status == AdmissionStatus.PROCESSING
        assert "ADMISSION_COMPLETION_REVERSED" in audit_log.actions_for(db, SubjectKind.REGISTRATION, registration.id)

    def test_transitions_record_actor_and_time(self, db, clock, staff, in_admission):
        registration = in_admission()
        event = [e for e in audit_log.events_for(db, SubjectKind.REGISTRATION, registration.id) if e.action == "WORKFLOW_TRANSITION"][0]
        assert event.actor_id == staff.counsellor.actor_id
        assert registration.last_transition_at is not None


class TestAdmissionOutcomes:
    def test_application_rejection_needs_reason(self, db, clock, staff, in_admission):
        registration = in_admission()
        application = lifecycle_engine.create_application(db, staff.admission, registration.id,
                                                           {"university": "Tbilisi State", "course": "MD"}, clock=clock)
        assert application.status == ApplicationStatus.DRAFT

        with pytest.raises(RejectionReasonRequired):
            lifecycle_engine.update_application(db, staff.admission, application.id, {"status": "Rejected"}, clock=clock)

        application = lifecycle_engine.update_application(
            db, staff.admission, application.id, {"status": "Withdrawn", "rejection_reason": "Student chose another"}, clock=clock,
        )
        assert application.status == ApplicationStatus.WITHDRAWN
        assert application.rejection_reason == "Student chose another"
        event = audit_log.events_for(db, SubjectKind.APPLICATION, application.id)[-1]
        assert event.action == "APPLICATION_UPDATED"
        assert event.event_metadata["to_status"] == "Withdrawn"

    def test_resubmitting_clears_the_old_reason(self, db, clock, staff, in_admission):
        registration = in_admission()
        application = lifecycle_engine.create_application(db, staff.admission, registration.id,
                                                           {"university": "Kazan Federal", "course": "MBBS"}, clock=clock)
        lifecycle_engine.update_application(
            db, staff.admission, application.id, {"status": "Rejected", "rejection_reason": "Seats full"}, clock=clock,
        )

        application = lifecycle_engine.update_application(db, staff.admission, application.id, {"status": "Submitted"}, clock=clock)
        assert application.status == ApplicationStatus.SUBMITTED
        assert application.rejection_reason is None
        event = audit_log.events_for(db, SubjectKind.APPLICATION, application.id)[-1]
        assert event.event_metadata["changes"]["rejection_reason"] is None

    def test_one_application_per_university_course(self, db, clock, staff, in_admission):
        registration = in_admission()
        data = {"university": "Kazan Federal", "course": "MBBS"}
        lifecycle_engine.create_application(db, staff.admission, registration.id, data, clock=clock)
        with pytest.raises(Conflict):
            lifecycle_engine.create_application(db, staff.admission, registration.id, data, clock=clock)

    def test_offer_letter_approves_application(self, db, clock, staff, in_admission):
        registration = in_admission()
        application = lifecycle_engine.create_application(db, staff.admission, registration.id,
                                                           {"university": "Kazan Federal", "course": "MBBS"}, clock=clock)
        application = lifecycle_engine.upload_offer_letter(db, staff.admission, application.id, "offer_letters/1/offer.pdf",
                                                           "offer.pdf", clock=clock)
        assert application.status == ApplicationStatus.APPROVED
        assert application.offer_letter_path == "offer_letters/1/offer.pdf"
        assert db.query(OfferLetter).filter(OfferLetter.application_id == application.id).count() == 1

    def test_cancel_needs_reason(self, db, clock, staff, in_admission):
        registration = in_admission()
        with pytest.raises(MissingRequiredField):
            lifecycle_engine.cancel_admission(db, staff.admission, registration.id, "  ", clock=clock)

        registration = lifecycle_engine.cancel_admission(db, staff.admission, registration.id, "Visa refused", clock=clock)
        assert registration.current_owner == Owner.CANCELLED
        assert registration.previous_owner == Owner.ADMISSION
        assert registration.admission_status == AdmissionStatus.CANCELLED
        assert registration.cancel_reason == "Visa refused"
        assert "ADMISSION_CANCELLED" in audit_log.actions_for(db, SubjectKind.REGISTRATION, registration.id)

    def test_status_board(self, db, clock, staff, in_admission):
        registration = in_admission()
        with pytest.raises(RejectionReasonRequired):
            lifecycle_engine.update_admission_status(db, staff.admission, registration.id, AdmissionStatus.REJECTED, clock=clock)
        with pytest.raises(ValidationError):
            lifecycle_engine.update_admission_status(db, staff.admission, registration.id, AdmissionStatus.SUCCESS, clock=clock)

        registration = lifecycle_engine.update_admission_status(
            db, staff.admission, registration.id, AdmissionStatus.REJECTED, "University declined", clock=clock,
        )
        assert registration.admission_status == AdmissionStatus.REJECTED
        assert registration.current_owner == Owner.ADMISSION


class TestDeferral:
    def test_defer_and_resume_returns_to_previous_owner(self, db, clock, staff, in_admission):
        registration = in_admission()
        registration = lifecycle_engine.defer_intake(db, staff.admission, registration.id, "February 2026", "Finances", clock=clock)
        assert registration.current_owner == Owner.DEFERRED
        assert registration.previous_owner == Owner.ADMISSION
        assert registration.intake == "February 2026"
        assert registration.deferrals[0].old_intake == "September 2025"

        registration = lifecycle_engine.resume_intake(db, staff.admission, registration.id, clock=clock)
        assert registration.current_owner == Owner.ADMISSION
        assert registration.previous_owner is None
        actions = audit_log.actions_for(db, SubjectKind.REGISTRATION, registration.id)
        assert actions.index("INTAKE_DEFERRED") < actions.index("INTAKE_RESUMED")

    def test_deferred_registration_belongs_to_department_it_left(self, db, clock, staff, in_admission):
        registration = in_admission()
        lifecycle_engine.defer_intake(db, staff.admission, registration.id, "February 2026", clock=clock)
        with pytest.raises(OwnershipDenied):
            lifecycle_engine.resume_intake(db, staff.counsellor, registration.id, clock=clock)


class TestLoanRequirement:
    def test_opting_in_after_admission_moves_to_loan(self, db, clock, staff, admitted):
        registration = admitted()
        assert registration.current_owner == Owner.DONE

        registration = lifecycle_engine.set_loan_required(db, staff.admission, registration.id, True, clock=clock)
        assert registration.current_owner == Owner.LOAN
        assert registration.loan is not None
        assert registration.loan.status == LoanStatus.DRAFT

    def test_opting_out_removes_draft_loan(self, db, clock, staff, in_admission, blob_store):
        registration = in_admission(loan_required=True)
        registration = lifecycle_engine.set_loan_required(db, staff.admission, registration.id, False,
                                                          blob_store=blob_store, clock=clock)
        assert registration.loan_required is False
        assert registration.loan is None

    def test_opting_out_with_loan_in_progress(self, db, clock, staff, in_admission):
        registration = in_admission(loan_required=True)
        loan = registration.loan
        lifecycle_engine.update_loan_status(db, staff.admission, loan.id, LoanStatus.APPLIED, clock=clock)
        with pytest.raises(PreconditionViolated):
            lifecycle_engine.set_loan_required(db, staff.admission, registration.id, False, clock=clock)

    def test_loan_completed_requires_loan(self, db, clock, staff, admitted):
        registration = admitted()
        with pytest.raises(PreconditionViolated):
            lifecycle_engine.mark_loan_completed(db, staff.loan, registration.id, clock=clock)


class TestSuccessRegistry:
    def test_membership_follows_completion_flags(self, db, clock, staff, admitted):
        """Present without a loan, gone once a loan is required, back when the loan completes"""
        registration = admitted()
        assert lifecycle_engine.is_in_success_registry(registration)
        assert [r.id for r in lifecycle_engine.success_registry(db)] == [registration.id]

        registration = lifecycle_engine.set_loan_required(db, staff.admission, registration.id, True, clock=clock)
        assert not lifecycle_engine.is_in_success_registry(registration)
        assert lifecycle_engine.success_registry(db) == []

        registration = lifecycle_engine.mark_loan_completed(db, staff.loan, registration.id, clock=clock)
        assert lifecycle_engine.is_in_success_registry(registration)
        assert [r.id for r in lifecycle_engine.success_registry(db)] == [registration.id]

    def test_unfinished_registrations_are_absent(self, db, clock, staff, in_admission):
        in_admission()
        assert lifecycle_engine.success_registry(db) == []


class TestAuditTrail:
    def test_events_are_strictly_ordered_per_subject(self, db, clock, staff, admitted):
        registration = admitted()
        events = audit_log.events_for(db, SubjectKind.REGISTRATION, registration.id)
        stamps = [e.at for e in events]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    def test_audit_rows_are_append_only(self, db, clock, staff, make_registration):
        registration = make_registration(staff.counsellor)
        event = db.query(AuditEvent).filter(AuditEvent.subject_id == str(registration.id)).first()
        event.action = "TAMPERED"
        with pytest.raises(ValueError):
            db.commit()
        db.rollback()
