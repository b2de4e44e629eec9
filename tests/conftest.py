"""
Shared fixtures: an in-memory SQLite store per test, a deterministic clock,
staff principals for each department and helpers that walk a student through
the lifecycle (lead -> registration -> admission).
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import itertools
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import settings
from app.database import Base, get_db, get_session_factory
from app.models import (
    Employee, EmployeeRole, EmployeeStatus, NextStep, SubjectKind, VerificationParty, VerificationStatus,
)
from app.services import document_gate, interaction_ledger, lifecycle_engine
from app.services.blob_store import BlobStore
from app.services.principal import ROLE_DEPARTMENTS, Principal


class TickingClock:
    """Every call advances the clock by ``step``."""

    def __init__(self, start=datetime(2025, 1, 15, 9, 0, 0), step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def make_employee(db):
    counter = itertools.count(1)

    def _make(name=None, role=EmployeeRole.COUNSELLOR, department=None, last_assigned=None,
              status=EmployeeStatus.ACTIVE):
        n = next(counter)
        name = name or f"Employee {n}"
        employee = Employee(
            employee_code=f"EMP-{100000 + n}",
            name=name,
            email=f"{name.lower().replace(' ', '.')}@jv.test",
            role=role,
            department=department or ROLE_DEPARTMENTS[role],
            status=status,
            last_lead_assigned_at=last_assigned,
        )
        db.add(employee)
        db.commit()
        db.refresh(employee)
        return employee

    return _make


@pytest.fixture
def staff(make_employee):
    """One principal per department (plus a super admin)."""
    employees = {
        "counsellor": make_employee("Asha Counsellor", EmployeeRole.COUNSELLOR),
        "other_counsellor": make_employee("Kiran Counsellor", EmployeeRole.COUNSELLOR),
        "admission": make_employee("Ravi Admission", EmployeeRole.ADMISSION),
        "loan": make_employee("Meena Loan", EmployeeRole.LOAN_OFFICER),
        "admin": make_employee("Super Admin", EmployeeRole.SUPER_ADMIN),
    }
    principals = {key: Principal.from_employee(employee) for key, employee in employees.items()}
    return SimpleNamespace(employees=employees, **principals)


@pytest.fixture
def make_lead(db, clock):
    counter = itertools.count(1)

    def _make(principal, **overrides):
        n = next(counter)
        form = {
            "name": f"Student {n}",
            "phone": "98765 43210",
            "email": f"student{n}@example.com",
            "source": "website",
            "service_type": "Study Abroad",
        }
        form.update(overrides)
        return lifecycle_engine.create_lead(db, principal, form, clock=clock)

    return _make


@pytest.fixture
def make_registration(db, clock, make_lead):
    """Lead added by ``principal`` and converted to a registration held by COUNSELLOR."""

    def _make(principal, loan_required=False, total_amount=50000, paid_amount=10000, is_test_data=False, **draft):
        lead = make_lead(principal, is_test_data=is_test_data)
        interaction_ledger.submit_interaction(db, principal, lead.id, "interested", NextStep.REGISTER, clock=clock)
        values = {
            "total_amount": total_amount,
            "paid_amount": paid_amount,
            "loan_required": loan_required,
            "course": "MBBS",
            "intake": "September 2025",
        }
        values.update(draft)
        return lifecycle_engine.convert_lead(db, principal, lead.id, values, clock=clock)

    return _make


@pytest.fixture
def verify_docs(db, clock, staff):
    """Upload and Admission-verify documents on a registration."""

    def _verify(registration, doc_ids=None):
        documents = []
        for doc_id in settings.COUNSELLOR_REQUIRED_DOCS if doc_ids is None else doc_ids:
            document = document_gate.upload(
                db, staff.counsellor, SubjectKind.REGISTRATION, registration.id, doc_id,
                f"registration/{registration.id}/{doc_id}.pdf", clock=clock,
            )
            documents.append(document_gate.verify(
                db, staff.admission, document.id, VerificationParty.ADMISSION, VerificationStatus.VERIFIED, clock=clock,
            ))
        return documents

    return _verify


@pytest.fixture
def in_admission(db, clock, staff, make_registration, verify_docs):
    """A registration whose counsellor task is done (owner ADMISSION)."""

    def _make(**kwargs):
        registration = make_registration(staff.counsellor, **kwargs)
        verify_docs(registration)
        return lifecycle_engine.complete_counsellor_task(db, staff.counsellor, registration.id, clock=clock)

    return _make


@pytest.fixture
def admitted(db, clock, staff, in_admission):
    """A registration whose admission is completed (owner LOAN or DONE)."""

    def _make(**kwargs):
        registration = in_admission(**kwargs)
        return lifecycle_engine.mark_admission_completed(db, staff.admission, registration.id, clock=clock)

    return _make


@pytest.fixture
def blob_store():
    store = Mock(spec=BlobStore)
    store.put.side_effect = lambda data, filename, folder="documents": f"{folder}/{filename}"
    store.sign.side_effect = lambda key, ttl_seconds=None: f"https://signed.example/{key}"
    store.delete.return_value = True
    return store


@pytest.fixture
def client(session_factory, blob_store):
    from app.main import app
    from app.services.blob_store import get_blob_store, get_optional_blob_store

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    app.dependency_overrides[get_optional_blob_store] = lambda: blob_store
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login_as():
    """Authenticate subsequent API calls as ``principal``."""
    from app.main import app
    from app.routers.auth import get_current_principal

    def _login(principal):
        app.dependency_overrides[get_current_principal] = lambda: principal

    return _login
