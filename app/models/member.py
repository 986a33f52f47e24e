"""
Member — the person whose weekly KPIs are evaluated.

Owned by the member-management side of the CRM. The automation core reads
targets ("Soll"), tracking toggles and flags, and writes flags through the
action dispatcher only.
"""
from datetime import datetime
from decimal import Decimal
import enum

from sqlalchemy import Integer, String, Boolean, DateTime, Enum, Numeric, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class MemberStatus(str, enum.Enum):
    aktiv = "aktiv"
    pausiert = "pausiert"
    gekuendigt = "gekuendigt"


class MemberFlag(str, enum.Enum):
    """Boolean member states set by rule actions. Value = short audit tag."""
    review = "review"
    churn_risk = "churn_risk"
    upsell_candidate = "upsell_candidate"
    danger_zone = "danger_zone"

    @property
    def column(self) -> str:
        return "review_flag" if self is MemberFlag.review else self.value


# Target column -> snapshot column on KpiWeek
TARGET_FIELDS = (
    "umsatz_soll_woche",
    "kontakte_soll",
    "entscheider_soll",
    "termine_vereinbart_soll",
    "termine_stattgefunden_soll",
    "termine_abschluss_soll",
    "einheiten_soll",
    "empfehlungen_soll",
    "konvertierung_termin_soll",
    "abschlussquote_soll",
)


class Member(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    vorname: Mapped[str] = mapped_column(String(128), nullable=False)
    nachname: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    whatsapp_nummer: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(
        Enum(MemberStatus, name="member_status_enum"),
        nullable=False,
        default=MemberStatus.aktiv,
    )
    assigned_coach_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # --- weekly targets (Soll) ---
    umsatz_soll_woche: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    kontakte_soll: Mapped[int | None] = mapped_column(Integer, nullable=True)
    entscheider_soll: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_vereinbart_soll: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_stattgefunden_soll: Mapped[int | None] = mapped_column(Integer, nullable=True)
    termine_abschluss_soll: Mapped[int | None] = mapped_column(Integer, nullable=True)
    einheiten_soll: Mapped[int | None] = mapped_column(Integer, nullable=True)
    empfehlungen_soll: Mapped[int | None] = mapped_column(Integer, nullable=True)
    konvertierung_termin_soll: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    abschlussquote_soll: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)

    # --- tracking toggles ---
    track_kontakte: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    track_termine: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    track_einheiten: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    track_empfehlungen: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    track_entscheider: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    track_abschluesse: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # --- flags (written by the dispatcher) ---
    churn_risk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    upsell_candidate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    danger_zone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def full_name(self) -> str:
        return f"{self.vorname} {self.nachname}"
