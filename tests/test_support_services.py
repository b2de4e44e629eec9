"""
Principals, input validation, identifiers and the blob store client
"""
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from app.errors import BlobUnavailable, MissingRequiredField, ValidationError
from app.models import Department, EmployeeRole, Owner, VerificationParty
from app.services import blob_store as blob_store_module
from app.services.blob_store import BlobStore, get_optional_blob_store
from app.services.identifiers import generate_employee_id, generate_student_id
from app.services.principal import ROLE_CAPABILITIES, ROLE_DEPARTMENTS, Principal
from app.services.validation import normalize_email, require, validate_phone


def principal(role, department=None):
    return Principal(
        actor_id=1,
        name="Someone",
        role=role,
        department=department or ROLE_DEPARTMENTS[role],
        capabilities=ROLE_CAPABILITIES.get(role, frozenset()),
    )


class TestPrincipal:
    def test_departments_own_their_stage(self):
        counsellor = principal(EmployeeRole.COUNSELLOR)
        assert counsellor.can_own(Owner.COUNSELLOR)
        assert not counsellor.can_own(Owner.ADMISSION)
        assert counsellor.can_own("COUNSELLOR")

    def test_admission_may_work_the_loan_stage(self):
        admission = principal(EmployeeRole.ADMISSION)
        assert admission.can_own(Owner.LOAN)
        assert not principal(EmployeeRole.LOAN_OFFICER).can_own(Owner.ADMISSION)

    def test_wfh_counts_as_counsellor(self):
        wfh = principal(EmployeeRole.WFH)
        assert wfh.can_own(Owner.COUNSELLOR)
        assert wfh.can_act_as(VerificationParty.COUNSELLOR)
        assert not wfh.can_act_as(VerificationParty.ADMISSION)

    def test_super_admin(self):
        admin = principal(EmployeeRole.SUPER_ADMIN)
        assert admin.is_global_admin
        assert admin.can_purge()
        assert all(admin.can_own(owner) for owner in Owner)

    def test_department_admins_manage_leads_only(self):
        admin = principal(EmployeeRole.ADMISSION_ADMIN)
        assert admin.can_manage_leads()
        assert not admin.can_purge()
        assert admin.department == Department.ADMISSION

    def test_legacy_role_labels(self):
        employee = Mock(id=4, role="Loan Officer", department=None)
        employee.name = "Legacy"
        converted = Principal.from_employee(employee)
        assert converted.role == EmployeeRole.LOAN_OFFICER
        assert converted.department == Department.LOAN

    @pytest.mark.parametrize("label,expected", [
        ("Super Admin", EmployeeRole.SUPER_ADMIN),
        ("counselor", EmployeeRole.COUNSELLOR),
        ("work-from-home", EmployeeRole.WFH),
        ("admission_officer", EmployeeRole.ADMISSION),
        ("janitor", None),
        ("", None),
    ])
    def test_canonicalize(self, label, expected):
        assert EmployeeRole.canonicalize(label) == expected


class TestValidation:
    def test_phone_is_stored_as_ten_digits(self):
        assert validate_phone("98765 43210") == "9876543210"
        assert validate_phone("98765-43210") == "9876543210"

    @pytest.mark.parametrize("phone", ["+919876543210", "12345", "98765abcde"])
    def test_bad_phone(self, phone):
        with pytest.raises(ValidationError):
            validate_phone(phone)

    def test_missing_phone(self):
        with pytest.raises(MissingRequiredField):
            validate_phone("")

    def test_email_normalization(self):
        assert normalize_email("  Asha@Example.COM ") == "asha@example.com"
        assert normalize_email("   ") is None
        assert normalize_email(None) is None

    def test_require(self):
        assert require("x", "field") == "x"
        with pytest.raises(MissingRequiredField) as exc:
            require("  ", "name")
        assert exc.value.field == "name"


class TestIdentifiers:
    def test_student_id(self):
        assert generate_student_id(0, 2025) == "STU-2025-1000"
        assert generate_student_id(42, 2026) == "STU-2026-1042"

    def test_employee_code(self):
        code = generate_employee_id()
        assert code.startswith("EMP-")
        assert len(code) == 10


class TestBlobStore:
    @pytest.fixture
    def s3(self):
        return Mock()

    @pytest.fixture
    def store(self, s3):
        return BlobStore(client=s3, bucket_name="documents")

    def test_put_returns_generated_key(self, store, s3):
        key = store.put(b"%PDF", "passport.PDF", folder="registration/3")
        assert key.startswith("registration/3/")
        assert key.endswith(".PDF")
        _, bucket, uploaded_key = s3.upload_fileobj.call_args.args
        assert bucket == "documents"
        assert uploaded_key == key
        assert s3.upload_fileobj.call_args.kwargs["ExtraArgs"] == {"ContentType": "application/pdf"}

    def test_put_failure(self, store, s3):
        s3.upload_fileobj.side_effect = ClientError({"Error": {"Code": "500"}}, "PutObject")
        with pytest.raises(BlobUnavailable):
            store.put(b"x", "a.pdf")

    def test_delete_is_best_effort(self, store, s3):
        s3.delete_object.side_effect = ClientError({"Error": {"Code": "404"}}, "DeleteObject")
        assert store.delete("registration/3/a.pdf") is False
        assert store.delete("") is False

    def test_sign(self, store, s3):
        s3.generate_presigned_url.return_value = "https://r2.example/signed"
        assert store.sign("registration/3/a.pdf", ttl_seconds=60) == "https://r2.example/signed"
        s3.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "documents", "Key": "registration/3/a.pdf"}, ExpiresIn=60,
        )

    def test_optional_store_is_none_when_unconfigured(self, monkeypatch):
        monkeypatch.setattr(blob_store_module.settings, "R2_ENDPOINT_URL", "")
        monkeypatch.setattr(blob_store_module, "_blob_store", None)
        assert get_optional_blob_store() is None

    def test_optional_store_reuses_the_configured_client(self, monkeypatch, store):
        monkeypatch.setattr(blob_store_module, "_blob_store", store)
        assert get_optional_blob_store() is store
