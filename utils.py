import itertools
import random
import re
import time
from typing import Optional

HEXA_ID_RE = re.compile(r"^HX-\d{9}$")

_sequence = itertools.count(1)


def now_ms() -> int:
    return int(time.time() * 1000)


def next_sequence() -> int:
    """Process-wide tiebreaker for records created within the same millisecond."""
    return next(_sequence)


def generate_hexa_id() -> str:
    return f"HX-{random.randint(100000000, 999999999)}"


def is_hexa_id(value: str) -> bool:
    return bool(HEXA_ID_RE.match(value or ""))


def format_last_seen(timestamp: int, now: Optional[int] = None) -> str:
    """Human readable distance between ``timestamp`` and ``now`` (both epoch ms)."""
    now = now_ms() if now is None else now
    minutes = max(0, (now - timestamp) // 60000)
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'' if minutes == 1 else 's'} ago"
    if minutes < 1440:
        hours = minutes // 60
        return f"{hours} hour{'' if hours == 1 else 's'} ago"
    days = minutes // 1440
    return f"{days} day{'' if days == 1 else 's'} ago"


def default_avatar(first_name: str, last_name: str) -> str:
    return f"https://ui-avatars.com/api/?name={first_name}+{last_name}&background=random"
