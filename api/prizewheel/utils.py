import random
import re
import secrets
from datetime import datetime, timezone
from typing import Protocol, Sequence, TypeVar

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_system_random = secrets.SystemRandom()


class Weighted(Protocol):
    weight: int


W = TypeVar("W", bound=Weighted)


def weighted_choice(candidates: Sequence[W], rng: random.Random | None = None) -> W:
    """Pick one candidate with probability weight / sum(weights).

    Candidates must already be filtered to in-stock prizes. The draw comes from
    the OS CSPRNG unless a generator is injected.
    """
    if not candidates:
        raise ValueError("No candidates to choose from")
    total = sum(c.weight for c in candidates)
    r = (rng or _system_random).random() * total
    for c in candidates:
        r -= c.weight
        if r <= 0:
            return c
    # float drift only
    return candidates[-1]

def gen_code(year: int | None = None, length: int = 6) -> str:
    # like "AK-2025-K7F9X2"
    year = year or datetime.now(timezone.utc).year
    suffix = "".join(secrets.choice(ALPHABET) for _ in range(length))
    return f"AK-{year}-{suffix}"

def normalize_code(code: str) -> str:
    return code.strip().upper()

def normalize_email(email: str) -> str:
    return email.strip().lower()

def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))

def sanitize_name(name: str) -> str:
    return name.replace("<", "").replace(">", "").strip()

def as_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt

def client_identifier(headers) -> str:
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "unknown"
