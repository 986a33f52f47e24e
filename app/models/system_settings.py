from datetime import datetime
from decimal import Decimal
from sqlalchemy import Integer, String, Boolean, DateTime, Numeric, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SystemSettings(Base):
    """Single-row (id="default") automation settings. Missing row = env defaults."""

    __tablename__ = "system_settings"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default="default")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    feedback_delay_min: Mapped[int] = mapped_column(Integer, nullable=False)
    feedback_delay_max: Mapped[int] = mapped_column(Integer, nullable=False)
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    quiet_hours_start: Mapped[int] = mapped_column(Integer, nullable=False)
    quiet_hours_end: Mapped[int] = mapped_column(Integer, nullable=False)
    upsell_revenue_threshold: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    upsell_consecutive_weeks: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
