from datetime import datetime, timezone
from typing import Callable

# Timestamps are stored as naive UTC
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
