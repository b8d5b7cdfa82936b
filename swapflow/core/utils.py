"""
Utility helpers.
"""

from __future__ import annotations

import secrets
import string
import time
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Optional, Set

_BASE36 = string.digits + string.ascii_lowercase


def now_ms() -> int:
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(raw: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def random_token(length: int = 7) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def make_correlation_id(prefix: str) -> str:
    """Time + random id. Not globally coordinated; collisions are negligible, not impossible."""
    return f"{prefix}-{now_ms()}-{random_token()}"


def make_session_id(prefix: str) -> str:
    return f"{prefix}-sess-{base36(now_ms())}-{random_token()}"


def format_time_ago(then: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Human elapsed time: 'just now', 'N minutes ago', 'N hours ago', 'N days ago'."""
    if then is None:
        return ""
    now = now or utcnow()
    minutes = int((now - then).total_seconds() // 60)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


class BoundedSet:
    """Dedup with bounded memory."""

    def __init__(self, maxlen: int = 5000) -> None:
        self.maxlen = maxlen
        self.deque: Deque[str] = deque(maxlen=maxlen)
        self.set: Set[str] = set()

    def __contains__(self, key: str) -> bool:
        return key in self.set

    def __len__(self) -> int:
        return len(self.set)

    def add(self, key: str) -> bool:
        if key in self.set:
            return False
        if len(self.deque) == self.maxlen:
            old = self.deque.popleft()
            self.set.discard(old)
        self.deque.append(key)
        self.set.add(key)
        return True
