import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ts() -> int:
    """Current time as integer epoch seconds (the unit of `last` and `claimed_at`)."""
    return int(time.time())
