"""
KpiWeek — one immutable weekly submission per (member, ISO week).

The `*_soll_snapshot` columns copy the member's targets at submission time so
performance percentages of historical weeks never move when the live targets
are edited later. Feedback state columns are the only ones written after
creation (by the anomaly gate, the feedback scheduler and the delivery sweep).
"""
from datetime import datetime, date
from decimal import Decimal

from sqlalchemy import (
    Integer, String, Text, Boolean, DateTime, Date, Numeric, ForeignKey,
    UniqueConstraint, CheckConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


# (actual column, snapshot column, live target column on Member)
PERFORMANCE_FIELDS = (
    ("umsatz_ist", "umsatz_soll_snapshot", "umsatz_soll_woche"),
    ("kontakte_ist", "kontakte_soll_snapshot", "kontakte_soll"),
    ("entscheider_ist", "entscheider_soll_snapshot", "entscheider_soll"),
    ("termine_vereinbart_ist", "termine_vereinbart_soll_snapshot", "termine_vereinbart_soll"),
    ("termine_stattgefunden_ist", "termine_stattgefunden_soll_snapshot", "termine_stattgefunden_soll"),
    ("termine_abschluss_ist", "termine_abschluss_soll_snapshot", "termine_abschluss_soll"),
    ("einheiten_ist", "einheiten_soll_snapshot", "einheiten_soll"),
    ("empfehlungen_ist", "empfehlungen_soll_snapshot", "empfehlungen_soll"),
    ("konvertierung_termin_ist", "konvertierung_termin_soll_snapshot", "konvertierung_termin_soll"),
    ("abschlussquote_ist", "abschlussquote_soll_snapshot", "abschlussquote_soll"),
)


class KpiWeek(Base):
    __tablename__ = "kpi_weeks"
    __table_args__ = (
        UniqueConstraint("member_id", "week_start", name="uq_kpi_week_member_week"),
        CheckConstraint(
            "NOT (ai_feedback_generated AND ai_feedback_blocked)",
            name="ck_kpi_week_feedback_exclusive",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    member_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    week_start: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    week_number: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    # --- actual values (Ist) ---
    umsatz_ist: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    kontakte_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entscheider_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_vereinbart_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_stattgefunden_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_abschluss_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_noshow_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)
    einheiten_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)
    empfehlungen_ist: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # --- derived ratios ---
    noshow_quote: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    konvertierung_termin_ist: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    abschlussquote_ist: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)

    # --- qualitative ---
    feeling_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    heldentat: Mapped[str | None] = mapped_column(Text, nullable=True)
    blockiert: Mapped[str | None] = mapped_column(Text, nullable=True)
    herausforderung: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- goal snapshot (Soll at submission time) ---
    umsatz_soll_snapshot: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    kontakte_soll_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entscheider_soll_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_vereinbart_soll_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_stattgefunden_soll_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_abschluss_soll_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    einheiten_soll_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    empfehlungen_soll_snapshot: Mapped[int | None] = mapped_column(Integer, nullable=True)
    konvertierung_termin_soll_snapshot: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    abschlussquote_soll_snapshot: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)

    # --- AI feedback state ---
    ai_feedback_generated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ai_feedback_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ai_feedback_block_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    ai_feedback_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_feedback_style: Mapped[str | None] = mapped_column(String(32), nullable=True)
    ai_feedback_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    whatsapp_scheduled_for: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    whatsapp_feedback_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    whatsapp_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def week_label(self) -> str:
        return f"KW {self.week_number}/{self.year}"

    def performance(self) -> dict[str, int | None]:
        """
        Percent of target reached per metric, computed from the goal snapshot
        only. None where either side is missing or the snapshot target is 0.
        """
        result: dict[str, int | None] = {}
        for ist_field, snapshot_field, _ in PERFORMANCE_FIELDS:
            ist = getattr(self, ist_field)
            soll = getattr(self, snapshot_field)
            if ist is None or not soll:
                result[ist_field] = None
            else:
                result[ist_field] = round(float(ist) / float(soll) * 100)
        return result
