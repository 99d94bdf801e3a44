from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import cache
from .config import settings
from .models import SpinCode
from .notifications import EmailClient, send_code_issued
from .utils import gen_code, is_valid_email, normalize_email, sanitize_name

logger = logging.getLogger(__name__)

MAX_BATCH = 100
INSERT_ATTEMPTS = 3


@dataclass
class GenerateResult:
    created: int = 0
    skipped: list[str] = field(default_factory=list)
    emails_sent: int = 0
    emails_failed: int = 0
    codes: list[SpinCode] = field(default_factory=list)


async def _unique_code(db: AsyncSession, taken: set[str]) -> str:
    while True:
        candidate = gen_code()
        if candidate in taken:
            continue
        exists = (
            await db.execute(select(SpinCode.id).where(SpinCode.code == candidate))
        ).scalar_one_or_none()
        if exists is None:
            taken.add(candidate)
            return candidate


async def _insert_batch(db: AsyncSession, entries: list[tuple[str, str]]) -> list[SpinCode]:
    """Insert one fresh code per entry in a single commit.

    Another batch can claim a candidate between the lookup and the commit; the
    unique index rejects it and the whole batch is drawn again.
    """
    taken: set[str] = set()
    for attempt in range(1, INSERT_ATTEMPTS + 1):
        try:
            rows = [
                SpinCode(code=await _unique_code(db, taken), name=name, email=email, is_used=False, used_at=None)
                for name, email in entries
            ]
            db.add_all(rows)
            await db.commit()
            return rows
        except IntegrityError:
            await db.rollback()
            logger.warning("Code collision on insert (attempt %s/%s), redrawing batch", attempt, INSERT_ATTEMPTS)
        except Exception:
            await db.rollback()
            raise
    raise HTTPException(status_code=503, detail="Could not allocate unique codes, please try again")


async def generate_codes(
    db: AsyncSession,
    entries: list[tuple[str, str]],
    client: EmailClient | None = None,
) -> GenerateResult:
    """Issue one code per (name, email) and email it to the holder.

    Emails that already hold a code (exact match after lowercasing) are
    skipped. The insert is one transaction; the emails afterwards are paced
    and best effort, so a failed send still leaves the code in place.
    """
    if not 1 <= len(entries) <= MAX_BATCH:
        raise HTTPException(status_code=400, detail=f"Between 1 and {MAX_BATCH} entries are required")

    cleaned: list[tuple[str, str]] = []
    invalid = []
    for name, email in entries:
        email = normalize_email(email)
        if not is_valid_email(email):
            invalid.append(email)
        cleaned.append((sanitize_name(name), email))
    if invalid:
        raise HTTPException(status_code=400, detail=f"Invalid email address(es): {', '.join(invalid)}")
    if any(not name for name, _ in cleaned):
        raise HTTPException(status_code=400, detail="Every entry needs a name")

    existing = set(
        (
            await db.execute(
                select(SpinCode.email).where(SpinCode.email.in_([e for _, e in cleaned]))
            )
        ).scalars().all()
    )

    result = GenerateResult()
    fresh: list[tuple[str, str]] = []
    seen: set[str] = set(existing)
    for name, email in cleaned:
        if email in seen:
            result.skipped.append(email)
            continue
        seen.add(email)
        fresh.append((name, email))

    if fresh:
        result.codes = await _insert_batch(db, fresh)
    else:
        await db.rollback()

    result.created = len(result.codes)
    logger.info("Generated %s codes (%s duplicate emails skipped)", result.created, len(result.skipped))

    client = client or EmailClient()
    if not client.configured:
        logger.info("Email not configured, no code emails sent")
        return result

    for i, c in enumerate(result.codes):
        if i and settings.email_send_interval_seconds > 0:
            # provider allows ~2 messages/second
            await asyncio.sleep(settings.email_send_interval_seconds)
        try:
            await send_code_issued(client, name=c.name, email=c.email, code=c.code)
            result.emails_sent += 1
        except Exception:
            result.emails_failed += 1
            logger.exception("Code email failed for %s", c.email)

    return result


async def list_codes(db: AsyncSession, used: bool | None = None) -> list[SpinCode]:
    stmt = select(SpinCode).order_by(SpinCode.created_at.desc(), SpinCode.id.desc())
    if used is not None:
        stmt = stmt.where(SpinCode.is_used.is_(used))
    return list((await db.execute(stmt)).scalars().all())


async def delete_code(db: AsyncSession, code_id: int) -> None:
    c = (
        await db.execute(select(SpinCode).where(SpinCode.id == code_id).with_for_update())
    ).scalar_one_or_none()
    if not c:
        raise HTTPException(status_code=404, detail="Code not found")
    if c.is_used:
        await db.rollback()
        raise HTTPException(status_code=400, detail="Cannot delete a code that has been used")

    await db.delete(c)
    await db.commit()
    logger.info("Deleted unused code %s", code_id)


async def update_code(db: AsyncSession, code_id: int, *, name: str | None, email: str | None) -> SpinCode:
    """Correct the holder details on a code. Blank values clear the field."""
    c = await db.get(SpinCode, code_id)
    if not c:
        raise HTTPException(status_code=404, detail="Code not found")

    email = normalize_email(email) if email else None
    if email and not is_valid_email(email):
        raise HTTPException(status_code=400, detail=f"Invalid email address: {email}")

    c.name = sanitize_name(name) if name else None
    c.email = email
    await db.commit()
    cache.publish(cache.WINNERS_CHANGED)
    return c
