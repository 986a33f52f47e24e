"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- ENUM types ---
    member_status_enum = sa.Enum("aktiv", "pausiert", "gekuendigt", name="member_status_enum")
    member_status_enum.create(op.get_bind(), checkfirst=True)

    task_status_enum = sa.Enum(
        "open", "in_progress", "completed", "cancelled", name="task_status_enum"
    )
    task_status_enum.create(op.get_bind(), checkfirst=True)

    task_priority_enum = sa.Enum("low", "medium", "high", "urgent", name="task_priority_enum")
    task_priority_enum.create(op.get_bind(), checkfirst=True)

    message_channel_enum = sa.Enum("email", "whatsapp", name="message_channel_enum")
    message_channel_enum.create(op.get_bind(), checkfirst=True)

    # --- members ---
    op.create_table(
        "members",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("vorname", sa.String(128), nullable=False),
        sa.Column("nachname", sa.String(128), nullable=False),
        sa.Column("email", sa.String(256), nullable=True),
        sa.Column("whatsapp_nummer", sa.String(32), nullable=True),
        sa.Column("status", sa.Enum(
            "aktiv", "pausiert", "gekuendigt", name="member_status_enum", create_type=False
        ), nullable=False),
        sa.Column("assigned_coach_id", sa.Integer(), nullable=True),
        sa.Column("umsatz_soll_woche", sa.Numeric(12, 2), nullable=True),
        sa.Column("kontakte_soll", sa.Integer(), nullable=True),
        sa.Column("entscheider_soll", sa.Integer(), nullable=True),
        sa.Column("termine_vereinbart_soll", sa.Integer(), nullable=True),
        sa.Column("termine_stattgefunden_soll", sa.Integer(), nullable=True),
        sa.Column("termine_abschluss_soll", sa.Integer(), nullable=True),
        sa.Column("einheiten_soll", sa.Integer(), nullable=True),
        sa.Column("empfehlungen_soll", sa.Integer(), nullable=True),
        sa.Column("konvertierung_termin_soll", sa.Numeric(6, 2), nullable=True),
        sa.Column("abschlussquote_soll", sa.Numeric(6, 2), nullable=True),
        sa.Column("track_kontakte", sa.Boolean(), nullable=False),
        sa.Column("track_termine", sa.Boolean(), nullable=False),
        sa.Column("track_einheiten", sa.Boolean(), nullable=False),
        sa.Column("track_empfehlungen", sa.Boolean(), nullable=False),
        sa.Column("track_entscheider", sa.Boolean(), nullable=False),
        sa.Column("track_abschluesse", sa.Boolean(), nullable=False),
        sa.Column("churn_risk", sa.Boolean(), nullable=False),
        sa.Column("upsell_candidate", sa.Boolean(), nullable=False),
        sa.Column("review_flag", sa.Boolean(), nullable=False),
        sa.Column("danger_zone", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_members_id", "members", ["id"])

    # --- kpi_weeks ---
    op.create_table(
        "kpi_weeks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("week_start", sa.Date(), nullable=False),
        sa.Column("week_number", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("umsatz_ist", sa.Numeric(12, 2), nullable=True),
        sa.Column("kontakte_ist", sa.Integer(), nullable=True),
        sa.Column("entscheider_ist", sa.Integer(), nullable=True),
        sa.Column("termine_vereinbart_ist", sa.Integer(), nullable=True),
        sa.Column("termine_stattgefunden_ist", sa.Integer(), nullable=True),
        sa.Column("termine_abschluss_ist", sa.Integer(), nullable=True),
        sa.Column("termine_noshow_ist", sa.Integer(), nullable=True),
        sa.Column("einheiten_ist", sa.Integer(), nullable=True),
        sa.Column("empfehlungen_ist", sa.Integer(), nullable=True),
        sa.Column("noshow_quote", sa.Numeric(5, 4), nullable=True),
        sa.Column("konvertierung_termin_ist", sa.Numeric(6, 2), nullable=True),
        sa.Column("abschlussquote_ist", sa.Numeric(6, 2), nullable=True),
        sa.Column("feeling_score", sa.Integer(), nullable=True),
        sa.Column("heldentat", sa.Text(), nullable=True),
        sa.Column("blockiert", sa.Text(), nullable=True),
        sa.Column("herausforderung", sa.Text(), nullable=True),
        sa.Column("umsatz_soll_snapshot", sa.Numeric(12, 2), nullable=True),
        sa.Column("kontakte_soll_snapshot", sa.Integer(), nullable=True),
        sa.Column("entscheider_soll_snapshot", sa.Integer(), nullable=True),
        sa.Column("termine_vereinbart_soll_snapshot", sa.Integer(), nullable=True),
        sa.Column("termine_stattgefunden_soll_snapshot", sa.Integer(), nullable=True),
        sa.Column("termine_abschluss_soll_snapshot", sa.Integer(), nullable=True),
        sa.Column("einheiten_soll_snapshot", sa.Integer(), nullable=True),
        sa.Column("empfehlungen_soll_snapshot", sa.Integer(), nullable=True),
        sa.Column("konvertierung_termin_soll_snapshot", sa.Numeric(6, 2), nullable=True),
        sa.Column("abschlussquote_soll_snapshot", sa.Numeric(6, 2), nullable=True),
        sa.Column("ai_feedback_generated", sa.Boolean(), nullable=False),
        sa.Column("ai_feedback_blocked", sa.Boolean(), nullable=False),
        sa.Column("ai_feedback_block_reason", sa.String(512), nullable=True),
        sa.Column("ai_feedback_text", sa.Text(), nullable=True),
        sa.Column("ai_feedback_style", sa.String(32), nullable=True),
        sa.Column("ai_feedback_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("whatsapp_scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("whatsapp_feedback_sent", sa.Boolean(), nullable=False),
        sa.Column("whatsapp_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("member_id", "week_start", name="uq_kpi_week_member_week"),
        sa.CheckConstraint(
            "NOT (ai_feedback_generated AND ai_feedback_blocked)",
            name="ck_kpi_week_feedback_exclusive",
        ),
    )
    op.create_index("ix_kpi_weeks_id", "kpi_weeks", ["id"])
    op.create_index("ix_kpi_weeks_member_id", "kpi_weeks", ["member_id"])
    op.create_index("ix_kpi_weeks_week_start", "kpi_weeks", ["week_start"])
    op.create_index("ix_kpi_weeks_whatsapp_scheduled_for", "kpi_weeks", ["whatsapp_scheduled_for"])

    # --- automation_cooldowns ---
    op.create_table(
        "automation_cooldowns",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("rule_id", sa.String(32), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("member_id", "rule_id", name="uq_cooldown_member_rule"),
    )
    op.create_index("ix_automation_cooldowns_id", "automation_cooldowns", ["id"])
    op.create_index("ix_automation_cooldowns_member_id", "automation_cooldowns", ["member_id"])

    # --- automation_logs ---
    op.create_table(
        "automation_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=True),
        sa.Column("rule_id", sa.String(32), nullable=False),
        sa.Column("rule_name", sa.String(128), nullable=False),
        sa.Column("triggered", sa.Boolean(), nullable=False),
        sa.Column("actions_taken", sa.Text(), nullable=False,
                  comment="JSON-encoded ordered list of action tags"),
        sa.Column("details", sa.Text(), nullable=True,
                  comment="JSON-encoded dict with context specific to each rule"),
        sa.Column("fired_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_logs_id", "automation_logs", ["id"])
    op.create_index("ix_automation_logs_member_id", "automation_logs", ["member_id"])
    op.create_index("ix_automation_logs_rule_id", "automation_logs", ["rule_id"])
    op.create_index("ix_automation_logs_fired_at", "automation_logs", ["fired_at"])

    # --- tasks ---
    op.create_table(
        "tasks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=True),
        sa.Column("kpi_week_id", sa.Integer(), nullable=True),
        sa.Column("rule_id", sa.String(32), nullable=True),
        sa.Column("title", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.Enum(
            "open", "in_progress", "completed", "cancelled", name="task_status_enum", create_type=False
        ), nullable=False),
        sa.Column("priority", sa.Enum(
            "low", "medium", "high", "urgent", name="task_priority_enum", create_type=False
        ), nullable=False),
        sa.Column("assigned_to_id", sa.Integer(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["kpi_week_id"], ["kpi_weeks.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_tasks_id", "tasks", ["id"])
    op.create_index("ix_tasks_member_id", "tasks", ["member_id"])
    op.create_index("ix_tasks_kpi_week_id", "tasks", ["kpi_week_id"])
    op.create_index("ix_tasks_rule_id", "tasks", ["rule_id"])

    # --- member_notes ---
    op.create_table(
        "member_notes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("author_name", sa.String(128), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_pinned", sa.Boolean(), nullable=False),
        sa.Column("rule_id", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_member_notes_id", "member_notes", ["id"])
    op.create_index("ix_member_notes_member_id", "member_notes", ["member_id"])

    # --- outbound_messages ---
    op.create_table(
        "outbound_messages",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("channel", sa.Enum(
            "email", "whatsapp", name="message_channel_enum", create_type=False
        ), nullable=False),
        sa.Column("template", sa.String(64), nullable=False),
        sa.Column("recipient", sa.String(256), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("rule_id", sa.String(32), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent", sa.Boolean(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbound_messages_id", "outbound_messages", ["id"])
    op.create_index("ix_outbound_messages_member_id", "outbound_messages", ["member_id"])
    op.create_index("ix_outbound_messages_scheduled_for", "outbound_messages", ["scheduled_for"])

    # --- system_settings ---
    op.create_table(
        "system_settings",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False),
        sa.Column("feedback_delay_min", sa.Integer(), nullable=False),
        sa.Column("feedback_delay_max", sa.Integer(), nullable=False),
        sa.Column("quiet_hours_enabled", sa.Boolean(), nullable=False),
        sa.Column("quiet_hours_start", sa.Integer(), nullable=False),
        sa.Column("quiet_hours_end", sa.Integer(), nullable=False),
        sa.Column("upsell_revenue_threshold", sa.Numeric(12, 2), nullable=False),
        sa.Column("upsell_consecutive_weeks", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- seed default settings ---
    op.execute("""
        INSERT INTO system_settings (
            id, timezone, feedback_delay_min, feedback_delay_max,
            quiet_hours_enabled, quiet_hours_start, quiet_hours_end,
            upsell_revenue_threshold, upsell_consecutive_weeks
        )
        VALUES ('default', 'Europe/Berlin', 60, 120, true, 21, 8, 20000, 12)
    """)


def downgrade() -> None:
    op.drop_table("system_settings")
    op.drop_table("outbound_messages")
    op.drop_table("member_notes")
    op.drop_table("tasks")
    op.drop_table("automation_logs")
    op.drop_table("automation_cooldowns")
    op.drop_table("kpi_weeks")
    op.drop_table("members")
    sa.Enum(name="message_channel_enum").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="task_priority_enum").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="task_status_enum").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="member_status_enum").drop(op.get_bind(), checkfirst=True)
