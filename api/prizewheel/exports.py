"""CSV exports for the admin screens, and the end-of-campaign reset."""
from __future__ import annotations

import csv
import io
import logging
import secrets
from datetime import datetime

from fastapi import HTTPException
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import cache
from .config import settings
from .models import Prize, RateLimit, SpinCode, Winner
from .utils import as_utc

logger = logging.getLogger(__name__)

PRIZE_COLUMNS = ["title", "description", "image_url", "quantity_total", "quantity_remaining", "weight", "created_at"]
CODE_COLUMNS = ["code", "name", "email", "is_used", "used_at", "created_at", "prize"]
WINNER_COLUMNS = ["won_at", "name", "email", "code", "prize", "prize_sent", "notes"]


def _iso(dt: datetime | None) -> str:
    return as_utc(dt).isoformat() if dt else ""


def _to_csv(header: list[str], rows) -> str:
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(header)
    writer.writerows(rows)
    return out.getvalue()


async def prizes_csv(db: AsyncSession) -> str:
    prizes = (await db.execute(select(Prize).order_by(Prize.created_at.asc(), Prize.id.asc()))).scalars().all()
    return _to_csv(PRIZE_COLUMNS, (
        [p.title, p.description or "", p.image_url or "", p.quantity_total, p.quantity_remaining, p.weight, _iso(p.created_at)]
        for p in prizes
    ))


async def codes_csv(db: AsyncSession) -> str:
    codes = (await db.execute(select(SpinCode).order_by(SpinCode.created_at.desc(), SpinCode.id.desc()))).scalars().all()
    return _to_csv(CODE_COLUMNS, (
        [
            c.code,
            c.name or "",
            c.email or "",
            "TRUE" if c.is_used else "FALSE",
            _iso(c.used_at),
            _iso(c.created_at),
            c.winner.prize.title if c.winner else "",
        ]
        for c in codes
    ))


async def winners_csv(db: AsyncSession) -> str:
    winners = (await db.execute(select(Winner).order_by(Winner.won_at.desc(), Winner.id.desc()))).scalars().all()
    return _to_csv(WINNER_COLUMNS, (
        [
            _iso(w.won_at),
            w.code.name or "",
            w.code.email or "",
            w.code.code,
            w.prize.title,
            "Yes" if w.prize_sent else "No",
            w.notes or "",
        ]
        for w in winners
    ))


async def reset_all(db: AsyncSession, reset_password: str) -> dict:
    """Export everything, then wipe winners, codes, prizes and rate limits.

    The exports are taken in the same transaction as the deletes, so what is
    returned is exactly what was removed.
    """
    if not settings.admin_reset_password or not secrets.compare_digest(
        reset_password.encode("utf-8"), settings.admin_reset_password.encode("utf-8")
    ):
        raise HTTPException(status_code=403, detail="Invalid reset password")

    try:
        csv_data = {
            "prizes": await prizes_csv(db),
            "codes": await codes_csv(db),
            "winners": await winners_csv(db),
        }
        stats = {}
        # winners first: they reference codes and prizes
        for key, model in (("winners", Winner), ("codes", SpinCode), ("prizes", Prize), ("rate_limits", RateLimit)):
            res = await db.execute(delete(model))
            stats[key] = res.rowcount or 0
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.warning("All campaign data reset: %s", stats)
    cache.publish(cache.PRIZES_CHANGED, cache.WINNERS_CHANGED)
    return {"ok": True, "message": "All data has been reset", "csv": csv_data, "deleted": stats}
