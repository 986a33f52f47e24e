"""
Tests for the (member, rule) cooldown store.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from app.core.clock import as_utc
from app.models.cooldown import AutomationCooldown
from app.services import cooldowns

NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)
WEEK = timedelta(days=7)


class TestTryAcquire:
    def test_first_claim_wins(self, db, make_member):
        member = make_member()
        expires_at = cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW)
        db.commit()
        assert expires_at == NOW + WEEK
        assert cooldowns.is_cooling_down(db, member.id, "R1", NOW)

    def test_second_claim_is_refused(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW)
        db.commit()

        assert cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW + timedelta(hours=1)) is None
        db.commit()
        assert as_utc(cooldowns.active_cooldown(db, member.id, "R1", NOW)) == NOW + WEEK

    def test_expired_cooldown_is_taken_over(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW)
        db.commit()

        later = NOW + WEEK + timedelta(minutes=1)
        assert cooldowns.try_acquire(db, member.id, "R1", WEEK, later) == later + WEEK
        db.commit()
        count = db.scalar(select(func.count()).select_from(AutomationCooldown))
        assert count == 1

    def test_rules_are_independent(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW)
        assert cooldowns.try_acquire(db, member.id, "R3", WEEK, NOW) is not None
        db.commit()

    def test_members_are_independent(self, db, make_member):
        anna = make_member()
        ben = make_member(vorname="Ben")
        cooldowns.try_acquire(db, anna.id, "R1", WEEK, NOW)
        assert cooldowns.try_acquire(db, ben.id, "R1", WEEK, NOW) is not None
        db.commit()


class TestActiveCooldown:
    def test_absent(self, db, make_member):
        member = make_member()
        assert cooldowns.active_cooldown(db, member.id, "R1", NOW) is None

    def test_expired_counts_as_absent(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW)
        db.commit()
        assert cooldowns.active_cooldown(db, member.id, "R1", NOW + WEEK) is None

    def test_exact_key_match(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "P1", WEEK, NOW)
        db.commit()
        assert cooldowns.is_cooling_down(db, member.id, "P1_extra", NOW) is False


class TestRefresh:
    def test_refresh_extends_held_cooldown(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "Q2", WEEK, NOW)
        later = NOW + timedelta(days=2)
        assert cooldowns.refresh(db, member.id, "Q2", WEEK, later) == later + WEEK
        db.commit()
        assert as_utc(cooldowns.active_cooldown(db, member.id, "Q2", later)) == later + WEEK


class TestClearCooldown:
    def test_clear_single_rule(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW)
        cooldowns.try_acquire(db, member.id, "R3", WEEK, NOW)
        db.commit()

        assert cooldowns.clear_cooldown(db, member.id, "R1") == 1
        db.commit()
        assert cooldowns.is_cooling_down(db, member.id, "R1", NOW) is False
        assert cooldowns.is_cooling_down(db, member.id, "R3", NOW) is True

    def test_clear_all_rules_of_member(self, db, make_member):
        member = make_member()
        other = make_member(vorname="Ben")
        for rule_id in ("R1", "R3", "L1"):
            cooldowns.try_acquire(db, member.id, rule_id, WEEK, NOW)
        cooldowns.try_acquire(db, other.id, "R1", WEEK, NOW)
        db.commit()

        assert cooldowns.clear_cooldown(db, member.id) == 3
        db.commit()
        assert cooldowns.is_cooling_down(db, other.id, "R1", NOW) is True

    def test_clear_then_acquire(self, db, make_member):
        member = make_member()
        cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW)
        cooldowns.clear_cooldown(db, member.id, "R1")
        assert cooldowns.try_acquire(db, member.id, "R1", WEEK, NOW) is not None
        db.commit()
