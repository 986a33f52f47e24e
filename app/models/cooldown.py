"""
AutomationCooldown — (member, rule) gate that prevents re-dispatch.

The unique constraint on (member_id, rule_id) is what makes the claim in
app/services/cooldowns.py atomic: two concurrent dispatchers race on the same
row and only one of them gets it back from INSERT ... ON CONFLICT.
Expired rows are left in place; expiry is checked on read.
"""
from datetime import datetime
from sqlalchemy import Integer, String, DateTime, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AutomationCooldown(Base):
    __tablename__ = "automation_cooldowns"
    __table_args__ = (
        UniqueConstraint("member_id", "rule_id", name="uq_cooldown_member_rule"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    member_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rule_id: Mapped[str] = mapped_column(String(32), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
