"""
Delivery sweep for scheduled WhatsApp feedback and queued outbound messages.

  send_due_feedback(db, transport, settings, ...) -> DeliveryResult
  send_due_messages(db, transport, settings, ...) -> DeliveryResult

Per due item:
  1. WhatsApp inside quiet hours (force=False): move `scheduled_for` to the end
     of the window + random 0-59 minutes; the transport is not called.
  2. Claim with a conditional UPDATE (… WHERE sent = false). A concurrent
     sweep that loses the claim skips the item.
  3. transport.send(); on failure the claim is reverted so the next run retries.

The transport is a collaborator; `LogOnlyTransport` is the default here and
only writes a log line.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.models.kpi_week import KpiWeek
from app.models.member import Member
from app.models.outbound_message import Channel, OutboundMessage
from app.services import audit
from app.services.automation_settings import AutomationSettings
from app.services.quiet_hours import in_quiet_hours, quiet_hours_end

logger = logging.getLogger(__name__)

BATCH_LIMIT = 20


class MessageTransport(Protocol):
    def send(self, channel: str, recipient: str, content: str) -> bool:
        ...


class LogOnlyTransport:
    def send(self, channel: str, recipient: str, content: str) -> bool:
        logger.info("[%s] -> %s: %s", channel, recipient, content[:80])
        return True


def get_transport() -> MessageTransport:
    return LogOnlyTransport()


@dataclass
class DeliveryResult:
    sent: int = 0
    rescheduled: int = 0
    failed: int = 0
    skipped: int = 0


def _rescheduled_time(now: datetime, settings: AutomationSettings, rng: random.Random) -> datetime:
    return quiet_hours_end(now, settings.quiet_hours) + timedelta(minutes=rng.randint(0, 59))


def _send(transport: MessageTransport, channel: str, recipient: str, content: str) -> bool:
    try:
        return bool(transport.send(channel, recipient, content))
    except Exception:
        logger.exception("Transport failed for %s message to %s", channel, recipient)
        return False


# ---------------------------------------------------------------------------
# AI feedback
# ---------------------------------------------------------------------------

def send_due_feedback(
    db: Session,
    transport: MessageTransport,
    settings: AutomationSettings,
    *,
    now: Optional[datetime] = None,
    force: bool = False,
    limit: int = BATCH_LIMIT,
    rng: Optional[random.Random] = None,
) -> DeliveryResult:
    now = now or utcnow()
    rng = rng or random.Random()
    result = DeliveryResult()
    quiet = not force and in_quiet_hours(now, settings.quiet_hours)

    due = db.scalars(
        select(KpiWeek)
        .where(
            KpiWeek.ai_feedback_generated.is_(True),
            KpiWeek.ai_feedback_blocked.is_(False),
            KpiWeek.whatsapp_feedback_sent.is_(False),
            KpiWeek.whatsapp_scheduled_for.is_not(None),
            KpiWeek.whatsapp_scheduled_for <= now,
        )
        .order_by(KpiWeek.whatsapp_scheduled_for)
        .limit(limit)
    ).all()

    for week in due:
        member = db.get(Member, week.member_id)
        if member is None or not member.whatsapp_nummer or not week.ai_feedback_text:
            week.whatsapp_scheduled_for = None
            db.commit()
            logger.warning("KPI week %s has no WhatsApp recipient or text, unscheduled", week.id)
            result.skipped += 1
            continue

        if quiet:
            week.whatsapp_scheduled_for = _rescheduled_time(now, settings, rng)
            db.commit()
            result.rescheduled += 1
            continue

        claimed = db.execute(
            update(KpiWeek)
            .where(KpiWeek.id == week.id, KpiWeek.whatsapp_feedback_sent.is_(False))
            .values(whatsapp_feedback_sent=True, whatsapp_sent_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        if not claimed:
            result.skipped += 1
            continue

        if not _send(transport, Channel.whatsapp.value, member.whatsapp_nummer, week.ai_feedback_text):
            db.execute(
                update(KpiWeek)
                .where(KpiWeek.id == week.id)
                .values(whatsapp_feedback_sent=False, whatsapp_sent_at=None)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            result.failed += 1
            continue

        db.execute(
            update(KpiWeek)
            .where(KpiWeek.id == week.id)
            .values(whatsapp_scheduled_for=None)
            .execution_options(synchronize_session=False)
        )
        audit.record(
            db,
            member_id=member.id,
            rule_id=audit.AI_FEEDBACK_SENT_RULE_ID,
            rule_name="KI-Feedback gesendet",
            actions=["SEND_WHATSAPP_FEEDBACK"],
            details={"kpiWeekId": week.id, "week": week.week_label},
            now=now,
        )
        db.commit()
        result.sent += 1

    if due:
        logger.info(
            "Feedback delivery: %d sent, %d rescheduled, %d failed, %d skipped",
            result.sent, result.rescheduled, result.failed, result.skipped,
        )
    return result


# ---------------------------------------------------------------------------
# Queued outbound messages
# ---------------------------------------------------------------------------

def send_due_messages(
    db: Session,
    transport: MessageTransport,
    settings: AutomationSettings,
    *,
    now: Optional[datetime] = None,
    force: bool = False,
    limit: int = BATCH_LIMIT,
    rng: Optional[random.Random] = None,
) -> DeliveryResult:
    now = now or utcnow()
    rng = rng or random.Random()
    result = DeliveryResult()
    quiet = not force and in_quiet_hours(now, settings.quiet_hours)

    due = db.scalars(
        select(OutboundMessage)
        .where(OutboundMessage.sent.is_(False), OutboundMessage.scheduled_for <= now)
        .order_by(OutboundMessage.scheduled_for)
        .limit(limit)
    ).all()

    for message in due:
        if quiet and message.channel == Channel.whatsapp:
            message.scheduled_for = _rescheduled_time(now, settings, rng)
            db.commit()
            result.rescheduled += 1
            continue

        claimed = db.execute(
            update(OutboundMessage)
            .where(OutboundMessage.id == message.id, OutboundMessage.sent.is_(False))
            .values(sent=True, sent_at=now, error=None)
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
        if not claimed:
            result.skipped += 1
            continue

        channel = message.channel.value if isinstance(message.channel, Channel) else str(message.channel)
        if not _send(transport, channel, message.recipient, message.content):
            db.execute(
                update(OutboundMessage)
                .where(OutboundMessage.id == message.id)
                .values(sent=False, sent_at=None, error="Versand fehlgeschlagen")
                .execution_options(synchronize_session=False)
            )
            db.commit()
            result.failed += 1
            continue
        result.sent += 1

    if due:
        logger.info(
            "Message delivery: %d sent, %d rescheduled, %d failed, %d skipped",
            result.sent, result.rescheduled, result.failed, result.skipped,
        )
    return result
