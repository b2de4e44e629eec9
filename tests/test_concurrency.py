"""
Optimistic locking: a writer holding a stale copy loses with Conflict
"""
import pytest

from app.database import commit_or_conflict
from app.errors import Conflict
from app.models import Lead, Registration


class TestStaleWriters:
    def test_stale_registration_write_is_a_conflict(self, db, session_factory, staff, make_registration):
        registration = make_registration(staff.counsellor)
        other = session_factory()
        try:
            stale = other.query(Registration).filter(Registration.id == registration.id).one()
            loaded_version = stale.version

            registration.course = "BDS"
            commit_or_conflict(db)
            assert registration.version == loaded_version + 1

            stale.course = "Nursing"
            with pytest.raises(Conflict) as exc:
                commit_or_conflict(other)
            assert exc.value.reason == "concurrent_update"
        finally:
            other.close()

        db.expire_all()
        assert db.query(Registration).filter(Registration.id == registration.id).one().course == "BDS"

    def test_stale_lead_write_is_a_conflict(self, db, session_factory, staff, make_lead):
        lead = make_lead(staff.counsellor)
        other = session_factory()
        try:
            stale = other.query(Lead).filter(Lead.id == lead.id).one()
            lead.name = "Renamed"
            commit_or_conflict(db)

            stale.name = "Lost update"
            with pytest.raises(Conflict):
                commit_or_conflict(other)
        finally:
            other.close()

    def test_fresh_copy_writes_cleanly(self, db, session_factory, staff, make_registration):
        registration = make_registration(staff.counsellor)
        registration.course = "BDS"
        commit_or_conflict(db)
        current_version = registration.version

        other = session_factory()
        try:
            fresh = other.query(Registration).filter(Registration.id == registration.id).one()
            fresh.course = "Nursing"
            commit_or_conflict(other)
            assert fresh.version == current_version + 1
        finally:
            other.close()
