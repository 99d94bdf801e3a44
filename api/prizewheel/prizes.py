from __future__ import annotations

import logging

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import cache
from .models import Prize, Winner

logger = logging.getLogger(__name__)


async def list_prizes(db: AsyncSession) -> list[Prize]:
    return list(
        (await db.execute(select(Prize).order_by(Prize.created_at.asc(), Prize.id.asc()))).scalars().all()
    )


async def wheel_prizes(db: AsyncSession) -> list[dict]:
    # display fields only: never stock or weight
    rows = await db.execute(
        select(Prize.id, Prize.title, Prize.image_url).order_by(Prize.created_at.asc(), Prize.id.asc())
    )
    return [{"id": r.id, "title": r.title, "imageUrl": r.image_url} for r in rows]


async def public_prize(db: AsyncSession, prize_id: int) -> dict:
    row = (
        await db.execute(select(Prize.id, Prize.title, Prize.image_url).where(Prize.id == prize_id))
    ).one_or_none()
    if row is None:
        raise HTTPException(status_code=404, detail="Prize not found")
    return {"id": row.id, "title": row.title, "imageUrl": row.image_url}


async def create_prize(
    db: AsyncSession,
    *,
    title: str,
    description: str | None,
    image_url: str | None,
    quantity_total: int,
    weight: int,
) -> Prize:
    p = Prize(
        title=title,
        description=description,
        image_url=image_url,
        quantity_total=quantity_total,
        quantity_remaining=quantity_total,
        weight=weight,
    )
    db.add(p)
    await db.commit()
    await db.refresh(p)
    cache.publish(cache.PRIZES_CHANGED)
    return p


async def update_prize(
    db: AsyncSession,
    prize_id: int,
    *,
    title: str,
    description: str | None,
    image_url: str | None,
    quantity_total: int,
    weight: int,
) -> Prize:
    """Edit a prize. Changing the total shifts remaining by the same amount, floored at 0."""
    p = (
        await db.execute(select(Prize).where(Prize.id == prize_id).with_for_update())
    ).scalar_one_or_none()
    if not p:
        raise HTTPException(status_code=404, detail="Prize not found")

    diff = quantity_total - p.quantity_total
    p.title = title
    p.description = description
    p.image_url = image_url
    p.quantity_total = quantity_total
    p.quantity_remaining = min(quantity_total, max(0, p.quantity_remaining + diff))
    p.weight = weight
    await db.commit()
    await db.refresh(p)
    cache.publish(cache.PRIZES_CHANGED)
    return p


async def delete_prize(db: AsyncSession, prize_id: int) -> None:
    p = await db.get(Prize, prize_id)
    if not p:
        raise HTTPException(status_code=404, detail="Prize not found")

    won = (await db.execute(select(func.count(Winner.id)).where(Winner.prize_id == prize_id))).scalar() or 0
    if won:
        raise HTTPException(status_code=409, detail="Cannot delete prize that has already been won")

    await db.delete(p)
    await db.commit()
    logger.info("Deleted prize %s", prize_id)
    cache.publish(cache.PRIZES_CHANGED)
