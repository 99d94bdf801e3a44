"""Failed-attempt tracking per client identifier.

Records live in the ``rate_limits`` table so every API instance sees the same
counters. An identifier is limited once it has ``max_attempts`` failures and
the latest one is inside the window; a failure after the window has elapsed
starts counting from 1 again.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import settings
from .models import RateLimit
from .utils import as_utc

logger = logging.getLogger(__name__)


def _window() -> timedelta:
    return timedelta(minutes=settings.rate_limit_window_minutes)


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


async def is_rate_limited(db: AsyncSession, identifier: str, now: datetime | None = None) -> bool:
    now = _now(now)
    window_start = now - _window()

    async with db.begin():
        record = (
            await db.execute(
                select(RateLimit)
                .where(RateLimit.identifier == identifier)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if record is None:
            return False

        if as_utc(record.last_attempt) < window_start:
            if record.attempts:
                record.attempts = 0
            return False

        return record.attempts >= settings.rate_limit_max_attempts


async def record_failed_attempt(db: AsyncSession, identifier: str, now: datetime | None = None) -> None:
    now = _now(now)
    window_start = now - _window()
    stmt = (
        update(RateLimit)
        .where(RateLimit.identifier == identifier)
        .values(
            attempts=case(
                (RateLimit.last_attempt < window_start, 1),
                else_=RateLimit.attempts + 1,
            ),
            last_attempt=now,
        )
        .execution_options(synchronize_session=False)
    )

    async with db.begin():
        res = await db.execute(stmt)
        if res.rowcount:
            return
        try:
            async with db.begin_nested():
                db.add(RateLimit(identifier=identifier, attempts=1, last_attempt=now))
        except IntegrityError:
            # another instance inserted the row first
            await db.execute(stmt)


async def reset_attempts(db: AsyncSession, identifier: str) -> None:
    async with db.begin():
        await db.execute(
            update(RateLimit)
            .where(RateLimit.identifier == identifier)
            .values(attempts=0)
            .execution_options(synchronize_session=False)
        )


async def clear_rate_limits(db: AsyncSession) -> int:
    async with db.begin():
        res = await db.execute(delete(RateLimit))
    logger.info("Cleared %s rate limit records", res.rowcount)
    return res.rowcount or 0
