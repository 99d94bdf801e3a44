"""Code validation and the spin transaction.

A spin validates the code, draws a prize from stock, decrements it, burns the
code and writes the winner row in one database transaction. Isolation is the
store's job (row locks on PostgreSQL, BEGIN IMMEDIATE on SQLite); nothing here
relies on process-local locking, so any number of API instances can spin
against the same database.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import cache
from .config import settings
from .models import Prize, SpinCode, Winner
from .utils import weighted_choice

logger = logging.getLogger(__name__)


class CodeStatus(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_USED = "ALREADY_USED"
    VALID = "VALID"


class SpinError(str, enum.Enum):
    INVALID_CODE = "INVALID_CODE"
    CODE_ALREADY_USED = "CODE_ALREADY_USED"
    NO_PRIZES_AVAILABLE = "NO_PRIZES_AVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    TRANSIENT_STORE_ERROR = "TRANSIENT_STORE_ERROR"


ERROR_MESSAGES = {
    SpinError.INVALID_CODE: "Invalid code. Please check and try again.",
    SpinError.CODE_ALREADY_USED: "This code has already been used.",
    SpinError.NO_PRIZES_AVAILABLE: "No prizes available at this time. Please contact support.",
    SpinError.RATE_LIMITED: "Too many attempts. Please try again later.",
    SpinError.TRANSIENT_STORE_ERROR: "An unexpected error occurred. Please try again.",
}


class SpinStoreError(Exception):
    """The store failed or kept conflicting; nothing was committed."""


class _SpinConflict(Exception):
    """A guarded write touched no row: someone else got there first."""


@dataclass(frozen=True, slots=True)
class PrizeSummary:
    """What the client may see about a prize. No stock, no weight."""

    id: int
    title: str
    image_url: str | None


@dataclass(frozen=True, slots=True)
class WinDetails:
    """Server-side facts about a win, used for notifications only."""

    winner_id: int
    code: str
    winner_name: str | None
    winner_email: str | None
    prize_title: str
    prize_description: str | None
    prize_image_url: str | None
    won_at: datetime


@dataclass(frozen=True, slots=True)
class SpinResult:
    success: bool
    prize: PrizeSummary | None = None
    error: SpinError | None = None
    win: WinDetails | None = None

    @property
    def message(self) -> str | None:
        return ERROR_MESSAGES[self.error] if self.error else None

    @classmethod
    def failure(cls, error: SpinError) -> "SpinResult":
        return cls(success=False, error=error)


async def validate_code(db: AsyncSession, code: str) -> CodeStatus:
    """Read-only pre-check. A VALID answer can be stale by the time the user spins.

    Runs in its own short transaction so no lock outlives the lookup.
    """
    async with db.begin():
        is_used = (
            await db.execute(select(SpinCode.is_used).where(SpinCode.code == code))
        ).scalar_one_or_none()
    if is_used is None:
        return CodeStatus.NOT_FOUND
    if is_used:
        return CodeStatus.ALREADY_USED
    return CodeStatus.VALID


async def _spin_once(
    session_factory: async_sessionmaker[AsyncSession],
    code: str,
    rng: random.Random | None,
    now: datetime,
) -> SpinResult:
    async with session_factory() as db:
        async with db.begin():
            spin_code = (
                await db.execute(select(SpinCode).where(SpinCode.code == code).with_for_update())
            ).scalar_one_or_none()
            if spin_code is None:
                return SpinResult.failure(SpinError.INVALID_CODE)
            if spin_code.is_used:
                return SpinResult.failure(SpinError.CODE_ALREADY_USED)

            available = (
                await db.execute(
                    select(Prize)
                    .where(Prize.quantity_remaining > 0)
                    .order_by(Prize.created_at.asc(), Prize.id.asc())
                    .with_for_update()
                )
            ).scalars().all()
            if not available:
                return SpinResult.failure(SpinError.NO_PRIZES_AVAILABLE)

            prize = weighted_choice(available, rng)

            res = await db.execute(
                update(Prize)
                .where(Prize.id == prize.id, Prize.quantity_remaining > 0)
                .values(quantity_remaining=Prize.quantity_remaining - 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise _SpinConflict(f"prize {prize.id} ran out of stock")

            res = await db.execute(
                update(SpinCode)
                .where(SpinCode.id == spin_code.id, SpinCode.is_used.is_(False))
                .values(is_used=True, used_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                raise _SpinConflict(f"code {spin_code.id} was used concurrently")

            winner = Winner(code_id=spin_code.id, prize_id=prize.id, won_at=now)
            db.add(winner)
            await db.flush()

            return SpinResult(
                success=True,
                prize=PrizeSummary(id=prize.id, title=prize.title, image_url=prize.image_url),
                win=WinDetails(
                    winner_id=winner.id,
                    code=spin_code.code,
                    winner_name=spin_code.name,
                    winner_email=spin_code.email,
                    prize_title=prize.title,
                    prize_description=prize.description,
                    prize_image_url=prize.image_url,
                    won_at=now,
                ),
            )


async def perform_spin(
    session_factory: async_sessionmaker[AsyncSession],
    code: str,
    *,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> SpinResult:
    """Run the spin transaction for a normalized code.

    Business rejections come back as ``SpinResult.failure``. Store errors,
    timeouts and write conflicts roll the attempt back and are retried up to
    ``settings.spin_max_retries`` times; after that ``SpinStoreError`` is
    raised. Cache invalidation events fire only after a successful commit.
    """
    attempts = settings.spin_max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            result = await asyncio.wait_for(
                _spin_once(session_factory, code, rng, now or datetime.now(timezone.utc)),
                timeout=settings.spin_timeout_seconds,
            )
        except (_SpinConflict, DBAPIError, asyncio.TimeoutError) as exc:
            logger.warning("Spin attempt %s/%s rolled back: %r", attempt, attempts, exc)
            if attempt == attempts:
                raise SpinStoreError("Spin could not be completed") from exc
            continue

        if result.success:
            logger.info("Winner %s won prize %s", result.win.winner_id, result.prize.id)
            cache.publish(cache.PRIZES_CHANGED, cache.WINNERS_CHANGED)
        else:
            logger.info("Spin rejected: %s", result.error.value)
        return result

    raise SpinStoreError("Spin could not be completed")
