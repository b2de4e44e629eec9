import re
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.errors import DuplicateEmail, MissingRequiredField, ValidationError
from app.models import Employee, Registration, SubjectKind
from app.services import audit_log

_PHONE = re.compile(r"^\d{10}$")


def normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    email = str(email).strip().lower()
    return email or None


def validate_phone(phone: Optional[str]) -> str:
    """Phone numbers are stored as exactly 10 digits (spaces and dashes dropped)."""
    if not phone:
        raise MissingRequiredField("phone")
    digits = re.sub(r"[\s\-]", "", str(phone))
    if not _PHONE.match(digits):
        raise ValidationError("invalid_phone", {"phone": phone, "expected": "10 digits"})
    return digits


def require(value: Any, field: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise MissingRequiredField(field)
    return value


def email_owner(db: Session, email: str, exclude_registration_id: Optional[int] = None) -> Optional[str]:
    """Where an email is already in use: 'employee', 'registration' or None."""
    if db.query(Employee.id).filter(func.lower(Employee.email) == email).first():
        return "employee"
    query = db.query(Registration.id).filter(
        func.lower(Registration.email) == email,
        Registration.is_deleted.is_(False),
    )
    if exclude_registration_id is not None:
        query = query.filter(Registration.id != exclude_registration_id)
    if query.first():
        return "registration"
    return None


def ensure_email_available(db: Session, email: Optional[str], actor_id: Optional[int] = None,
                           exclude_registration_id: Optional[int] = None) -> Optional[str]:
    """Normalize ``email`` and raise DuplicateEmail if an employee or live registration holds it."""
    email = normalize_email(email)
    if not email:
        return None
    found_in = email_owner(db, email, exclude_registration_id)
    if found_in:
        audit_log.record(db, actor_id, "EMAIL_DUPLICATE_BLOCKED", SubjectKind.EMPLOYEE if found_in == "employee" else SubjectKind.REGISTRATION,
                         None, {"email": email, "found_in": found_in})
        raise DuplicateEmail(email, found_in)
    return email
