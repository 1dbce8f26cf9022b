from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class BalancerKeyState(Base):
    __tablename__ = "balancer_keys"

    # sha256 hex of the credential; the credential itself is never stored.
    key_id: Mapped[str] = mapped_column(String, primary_key=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    # Epoch seconds; 0 means unset.
    cooldown_until: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    minute_window_start: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    day_window_start: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    last_used_at: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    rpm_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rpd_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tpm_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_requests: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class BalancerPoolState(Base):
    __tablename__ = "balancer_pool"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    rr_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    persisted_at: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
