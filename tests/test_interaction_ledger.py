"""
Call logs, follow-ups and the lead micro-state
"""
from datetime import datetime, timezone

import pytest

from app.errors import InvalidState, MissingRequiredField, OwnershipDenied, ValidationError
from app.models import CallLog, FollowUp, FollowUpStatus, LeadStatus, NextStep, SubjectKind
from app.services import audit_log, interaction_ledger, lifecycle_engine


D1 = datetime(2025, 2, 1, 10, 0)
D2 = datetime(2025, 2, 3, 15, 30)


class TestFollowUps:
    def test_only_one_pending_follow_up(self, db, clock, staff, make_lead):
        """Second follow-up completes the first"""
        lead = make_lead(staff.counsellor)
        interaction_ledger.submit_interaction(
            db, staff.counsellor, lead.id, "no-answer", NextStep.FOLLOW_UP,
            {"date": D1, "note": "call tomorrow"}, clock=clock,
        )
        lead = interaction_ledger.submit_interaction(
            db, staff.counsellor, lead.id, "no-answer", NextStep.FOLLOW_UP,
            {"date": D2.isoformat()}, clock=clock,
        )

        pending = lead.pending_follow_ups
        assert len(pending) == 1
        assert pending[0].due_at == D2
        first = [f for f in lead.follow_ups if f.due_at == D1][0]
        assert first.status == FollowUpStatus.COMPLETED
        assert first.completed_at is not None
        assert first.note == "call tomorrow"
        assert lead.status == LeadStatus.FOLLOW_UP
        assert [c.outcome for c in lead.call_logs] == ["no-answer", "no-answer"]

    def test_follow_up_requires_date(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        with pytest.raises(MissingRequiredField) as exc:
            interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "busy", NextStep.FOLLOW_UP, {}, clock=clock)
        assert exc.value.field == "date"
        assert db.query(CallLog).count() == 0

    def test_aware_dates_are_stored_as_utc(self):
        parsed = interaction_ledger.parse_due_date("2025-02-01T15:30:00+05:30")
        assert parsed == datetime(2025, 2, 1, 10, 0)
        assert parsed.tzinfo is None
        assert interaction_ledger.parse_due_date(datetime(2025, 2, 1, 10, 0, tzinfo=timezone.utc)) == datetime(2025, 2, 1, 10, 0)

    def test_bad_date(self):
        with pytest.raises(ValidationError):
            interaction_ledger.parse_due_date("next tuesday")

    def test_schedule_follow_up_directly(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        interaction_ledger.schedule_follow_up(db, staff.counsellor, lead.id, D1, clock=clock)
        follow_up = interaction_ledger.schedule_follow_up(db, staff.counsellor, lead.id, D2, "second", clock=clock)

        assert follow_up.status == FollowUpStatus.PENDING
        rows = db.query(FollowUp).filter(FollowUp.lead_id == lead.id).order_by(FollowUp.id).all()
        assert [r.status for r in rows] == [FollowUpStatus.COMPLETED, FollowUpStatus.PENDING]
        assert "FOLLOW_UP_SCHEDULED" in audit_log.actions_for(db, SubjectKind.LEAD, lead.id)


class TestOutcomes:
    def test_reject_cancels_pending_and_records_reason(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "callback", NextStep.FOLLOW_UP, {"date": D1}, clock=clock)
        lead = interaction_ledger.submit_interaction(
            db, staff.counsellor, lead.id, "not interested", NextStep.REJECT, {"reason": "budget"}, clock=clock,
        )

        assert lead.status == LeadStatus.REJECTED
        assert lead.is_assigned is False
        assert lead.rejection_reason == "budget"
        assert lead.rejected_by_id == staff.counsellor.actor_id
        assert lead.rejected_at is not None
        assert lead.pending_follow_ups == []
        assert lead.follow_ups[0].status == FollowUpStatus.CANCELLED

    def test_reject_requires_reason(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        with pytest.raises(MissingRequiredField):
            interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "no", NextStep.REJECT, {"reason": "  "}, clock=clock)

    def test_register_moves_to_converting(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "callback", NextStep.FOLLOW_UP, {"date": D1}, clock=clock)
        lead = interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "ready", NextStep.REGISTER, clock=clock)

        assert lead.status == LeadStatus.CONVERTING_TO_REG
        assert lead.pending_follow_ups == []
        assert lead.follow_ups[0].status == FollowUpStatus.COMPLETED

    def test_none_only_logs_the_call(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        before = lead.status
        lead = interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "left voicemail", NextStep.NONE,
                                                     {"details": "no pickup"}, clock=clock)
        assert lead.status == before
        assert len(lead.call_logs) == 1
        assert lead.call_logs[0].details == "no pickup"
        assert lead.call_logs[0].performed_by_id == staff.counsellor.actor_id

    def test_unknown_next_step(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        with pytest.raises(ValidationError):
            interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "x", "CALL_AGAIN", clock=clock)

    def test_interaction_is_audited(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "ready", NextStep.REGISTER, clock=clock)
        event = audit_log.events_for(db, SubjectKind.LEAD, lead.id)[-1]
        assert event.action == "LEAD_INTERACTION"
        assert event.event_metadata["to_status"] == LeadStatus.CONVERTING_TO_REG.value


class TestGuards:
    def test_closed_leads_take_no_interactions(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "no", NextStep.REJECT, {"reason": "moved"}, clock=clock)
        with pytest.raises(InvalidState):
            interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "again", NextStep.NONE, clock=clock)

    def test_deleted_leads_take_no_interactions(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        lifecycle_engine.soft_delete_lead(db, staff.counsellor, lead.id, clock=clock)
        with pytest.raises(InvalidState):
            interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "hello", NextStep.NONE, clock=clock)

    def test_other_counsellors_lead(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        with pytest.raises(OwnershipDenied):
            interaction_ledger.submit_interaction(db, staff.other_counsellor, lead.id, "hi", NextStep.NONE, clock=clock)

    def test_admin_may_work_any_lead(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        lead = interaction_ledger.submit_interaction(db, staff.admin, lead.id, "escalated", NextStep.NONE, clock=clock)
        assert lead.call_logs[0].performed_by_id == staff.admin.actor_id


class TestIdempotency:
    def test_replayed_key_is_recorded_once(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        for _ in range(3):
            lead = interaction_ledger.submit_interaction(
                db, staff.counsellor, lead.id, "no-answer", NextStep.FOLLOW_UP, {"date": D1},
                idempotency_key="call-1", clock=clock,
            )

        assert len(lead.call_logs) == 1
        assert len(lead.follow_ups) == 1
        assert audit_log.actions_for(db, SubjectKind.LEAD, lead.id).count("LEAD_INTERACTION") == 1

    def test_distinct_keys_both_apply(self, db, clock, staff, make_lead):
        lead = make_lead(staff.counsellor)
        interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "a", NextStep.NONE, idempotency_key="k1", clock=clock)
        lead = interaction_ledger.submit_interaction(db, staff.counsellor, lead.id, "b", NextStep.NONE, idempotency_key="k2", clock=clock)
        assert [c.outcome for c in lead.call_logs] == ["a", "b"]
