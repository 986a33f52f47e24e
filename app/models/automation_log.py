"""
AutomationLog — append-only audit trail of every dispatch.

Rule dispatches use the catalog ids (R1 … L2); the anomaly gate, the feedback
scheduler and the cron sweeps write under their own pseudo ids
(Q2, FEEDBACK_BLOCK, AI_FEEDBACK, AI_FEEDBACK_RELEASE, CRON).

actions_taken / details: JSON-encoded text (list of action tags / dict).
"""
from datetime import datetime
from sqlalchemy import Integer, String, Text, Boolean, DateTime, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AutomationLog(Base):
    __tablename__ = "automation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    member_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("members.id", ondelete="SET NULL"), nullable=True, index=True
    )
    rule_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    rule_name: Mapped[str] = mapped_column(String(128), nullable=False)
    triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    actions_taken: Mapped[str] = mapped_column(
        Text, nullable=False, default="[]",
        comment="JSON-encoded ordered list of action tags",
    )
    details: Mapped[str | None] = mapped_column(
        Text, nullable=True,
        comment="JSON-encoded dict with context specific to each rule",
    )
    fired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
