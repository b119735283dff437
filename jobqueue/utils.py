import re
from datetime import datetime, timezone, timedelta
from typing import Optional

# Fixed width so that lexical order in SQLite equals time order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# e.g., "20s", "5m", "1h30m", "2d3h", "90m"
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage; naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def after_ms(ms: float, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) + timedelta(milliseconds=ms)


def elapsed_ms(since: datetime, now: Optional[datetime] = None) -> int:
    return int(((now or utcnow()) - since).total_seconds() * 1000)


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:
        total += int(d) * 86400
    if h:
        total += int(h) * 3600
    if m_:
        total += int(m_) * 60
    if s_:
        total += int(s_)
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total
