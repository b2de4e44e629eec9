import random
import time
from app.services.clock import utcnow
from typing import Optional

STUDENT_SEQUENCE_BASE = 1000


def generate_student_id(count: int, year: Optional[int] = None) -> str:
    """STU-<YYYY>-<1000 + count> where count is the number of existing registrations."""
    if year is None:
        year = utcnow().year
    return f"STU-{year}-{STUDENT_SEQUENCE_BASE + count}"


def generate_employee_id() -> str:
    return f"EMP-{random.randint(100000, 999999)}"


def generate_payment_reference() -> str:
    return f"PAY-{int(time.time() * 1000)}"
