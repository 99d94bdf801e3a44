from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Boolean, ForeignKey, DateTime, Text, CheckConstraint
from datetime import datetime, timezone
from typing import Optional
from .db import Base

utcnow = lambda: datetime.now(timezone.utc)

class SpinCode(Base):
    __tablename__ = "spin_codes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, index=True)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    winner: Mapped[Optional["Winner"]] = relationship(back_populates="code", lazy="selectin")

class Prize(Base):
    __tablename__ = "prizes"
    __table_args__ = (
        CheckConstraint("quantity_remaining >= 0", name="prizes_remaining_non_negative"),
        CheckConstraint("quantity_remaining <= quantity_total", name="prizes_remaining_within_total"),
        CheckConstraint("weight > 0", name="prizes_weight_positive"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String, nullable=True)
    quantity_total: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    weight: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Winner(Base):
    __tablename__ = "winners"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # unique: a code can back at most one win
    code_id: Mapped[int] = mapped_column(Integer, ForeignKey("spin_codes.id"), unique=True, nullable=False)
    prize_id: Mapped[int] = mapped_column(Integer, ForeignKey("prizes.id"), nullable=False, index=True)
    won_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    prize_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    code: Mapped[SpinCode] = relationship(back_populates="winner", lazy="selectin")
    prize: Mapped[Prize] = relationship(lazy="selectin")

class RateLimit(Base):
    __tablename__ = "rate_limits"
    identifier: Mapped[str] = mapped_column(String(255), primary_key=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
