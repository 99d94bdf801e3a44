from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import cache
from .models import Prize, SpinCode, Winner
from .utils import as_utc

logger = logging.getLogger(__name__)


async def list_winners(db: AsyncSession, limit: int | None = None) -> list[Winner]:
    stmt = select(Winner).order_by(Winner.won_at.desc(), Winner.id.desc())
    if limit:
        stmt = stmt.limit(limit)
    return list((await db.execute(stmt)).scalars().all())


async def update_fulfillment(
    db: AsyncSession,
    winner_id: int,
    *,
    prize_sent: bool | None = None,
    notes: str | None = None,
) -> Winner:
    w = await db.get(Winner, winner_id)
    if not w:
        raise HTTPException(status_code=404, detail="Winner not found")

    if prize_sent is not None:
        w.prize_sent = prize_sent
    if notes is not None:
        w.notes = notes
    await db.commit()
    cache.publish(cache.WINNERS_CHANGED)
    return w


async def delete_winner(db: AsyncSession, winner_id: int) -> None:
    """Reverse a win: put the prize unit back, free the code, drop the record.

    All three writes commit together or not at all.
    """
    w = (
        await db.execute(select(Winner).where(Winner.id == winner_id).with_for_update())
    ).scalar_one_or_none()
    if not w:
        raise HTTPException(status_code=404, detail="Winner not found")

    try:
        res = await db.execute(
            update(Prize)
            .where(Prize.id == w.prize_id, Prize.quantity_remaining < Prize.quantity_total)
            .values(quantity_remaining=Prize.quantity_remaining + 1)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            # stock was edited down past this unit; remaining must stay <= total
            raise HTTPException(
                status_code=409,
                detail="Prize is already at full stock; raise its total before deleting this winner",
            )
        await db.execute(
            update(SpinCode)
            .where(SpinCode.id == w.code_id)
            .values(is_used=False, used_at=None)
            .execution_options(synchronize_session=False)
        )
        await db.delete(w)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Winner %s deleted, prize %s restored, code %s reset", winner_id, w.prize_id, w.code_id)
    cache.publish(cache.PRIZES_CHANGED, cache.WINNERS_CHANGED)


async def recent_winners(db: AsyncSession, limit: int = 10) -> list[dict]:
    """Public ticker rows. Only winners with a named code and a prize title."""
    out = []
    for w in await list_winners(db, limit=limit):
        if not (w.prize and w.prize.title and w.code and w.code.name):
            continue
        out.append({
            "name": w.code.name,
            "prizeName": w.prize.title,
            "prizeImage": w.prize.image_url,
            "wonAt": as_utc(w.won_at),
        })
    return out
