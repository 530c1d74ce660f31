"""Create the clinic collaborator tables and the WhatsApp messaging tables."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_create_whatsapp_tables"
down_revision = None
branch_labels = None
depends_on = None


_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_NOW = sa.text("CURRENT_TIMESTAMP")


def _id() -> sa.Column:
    return sa.Column("id", sa.Uuid(), primary_key=True, nullable=False)


def _clinic_fk() -> sa.Column:
    return sa.Column(
        "clinic_id",
        sa.Uuid(),
        sa.ForeignKey("clinics.id", ondelete="CASCADE"),
        nullable=False,
    )


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=_NOW)


def upgrade() -> None:
    op.create_table(
        "clinics",
        _id(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=64)),
        sa.Column("address", sa.Text()),
        sa.Column("city", sa.String(length=128)),
        sa.Column("state", sa.String(length=64)),
        sa.Column("whatsapp_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("whatsapp_phone_number_id", sa.String(length=64)),
        sa.Column("whatsapp_phone_display", sa.String(length=64)),
        sa.Column("whatsapp_waba_id", sa.String(length=64)),
        sa.Column("whatsapp_verify_token", sa.String(length=255)),
        sa.Column("wa_reminders_d1", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("wa_reminders_d0", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("wa_attendant_inbox", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "wa_ai_model",
            sa.String(length=128),
            nullable=False,
            server_default=sa.text("'openai/gpt-4o-mini'"),
        ),
        _created_at(),
    )
    op.create_index(
        "ix_clinics_wa_phone_number_id", "clinics", ["whatsapp_phone_number_id"]
    )

    op.create_table(
        "patients",
        _id(),
        _clinic_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=64)),
        _created_at(),
    )
    op.create_index("ix_patients_clinic_id", "patients", ["clinic_id"])

    op.create_table(
        "professionals",
        _id(),
        _clinic_fk(),
        sa.Column("name", sa.String(length=255), nullable=False),
    )

    op.create_table(
        "appointments",
        _id(),
        _clinic_fk(),
        sa.Column("patient_id", sa.Uuid(), sa.ForeignKey("patients.id", ondelete="SET NULL")),
        sa.Column(
            "professional_id",
            sa.Uuid(),
            sa.ForeignKey("professionals.id", ondelete="SET NULL"),
        ),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True)),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'scheduled'"),
        ),
        _created_at(),
        sa.CheckConstraint(
            "status IN ('scheduled', 'confirmed', 'completed', 'cancelled', 'no_show')",
            name="ck_appointments_status",
        ),
    )
    op.create_index("ix_appointments_starts_at", "appointments", ["starts_at"])
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"])

    op.create_table(
        "whatsapp_sessions",
        _id(),
        _clinic_fk(),
        sa.Column("patient_id", sa.Uuid(), sa.ForeignKey("patients.id", ondelete="SET NULL")),
        sa.Column("wa_phone", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'ai'")),
        sa.Column("ai_draft", sa.Text()),
        sa.Column("context_snapshot", _JSON, nullable=False),
        _created_at("last_message_at"),
        _created_at(),
        sa.CheckConstraint(
            "status IN ('ai', 'human', 'resolved')", name="ck_wa_sessions_status"
        ),
    )
    op.create_index(
        "uq_wa_sessions_open_phone",
        "whatsapp_sessions",
        ["clinic_id", "wa_phone"],
        unique=True,
        postgresql_where=sa.text("status <> 'resolved'"),
        sqlite_where=sa.text("status != 'resolved'"),
    )
    op.create_index(
        "ix_wa_sessions_clinic_status", "whatsapp_sessions", ["clinic_id", "status"]
    )
    op.create_index(
        "ix_wa_sessions_last_message_at", "whatsapp_sessions", ["last_message_at"]
    )

    op.create_table(
        "whatsapp_messages",
        _id(),
        sa.Column(
            "session_id",
            sa.Uuid(),
            sa.ForeignKey("whatsapp_sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _clinic_fk(),
        sa.Column("direction", sa.String(length=16), nullable=False),
        sa.Column("wa_message_id", sa.String(length=255)),
        sa.Column("body", sa.Text()),
        sa.Column("message_type", sa.String(length=16), nullable=False),
        sa.Column("sent_by", sa.String(length=16), nullable=False),
        sa.Column("delivery_status", sa.String(length=16)),
        _created_at(),
        sa.CheckConstraint(
            "direction IN ('inbound', 'outbound')", name="ck_wa_messages_direction"
        ),
        sa.CheckConstraint(
            "message_type IN ('text', 'template', 'interactive')",
            name="ck_wa_messages_type",
        ),
        sa.CheckConstraint(
            "sent_by IN ('patient', 'ai', 'attendant', 'system')",
            name="ck_wa_messages_sent_by",
        ),
    )
    op.create_index(
        "ix_wa_messages_session_created", "whatsapp_messages", ["session_id", "created_at"]
    )
    op.create_index("ix_wa_messages_wa_message_id", "whatsapp_messages", ["wa_message_id"])
    op.create_index(
        "uq_wa_messages_inbound_provider_id",
        "whatsapp_messages",
        ["clinic_id", "wa_message_id"],
        unique=True,
        postgresql_where=sa.text("direction = 'inbound' AND wa_message_id IS NOT NULL"),
        sqlite_where=sa.text("direction = 'inbound' AND wa_message_id IS NOT NULL"),
    )

    op.create_table(
        "whatsapp_templates",
        _id(),
        _clinic_fk(),
        sa.Column("template_key", sa.String(length=64), nullable=False),
        sa.Column("meta_template_name", sa.String(length=255), nullable=False),
        sa.Column("language", sa.String(length=16), nullable=False, server_default=sa.text("'pt_BR'")),
        sa.Column("body_preview", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.UniqueConstraint("clinic_id", "template_key", name="uq_wa_templates_clinic_key"),
    )

    op.create_table(
        "notification_log",
        _id(),
        _clinic_fk(),
        sa.Column(
            "appointment_id",
            sa.Uuid(),
            sa.ForeignKey("appointments.id", ondelete="SET NULL"),
        ),
        sa.Column("patient_id", sa.Uuid(), sa.ForeignKey("patients.id", ondelete="SET NULL")),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("error_message", sa.Text()),
        _created_at("sent_at"),
        sa.Column("wa_message_id", sa.String(length=255)),
        sa.CheckConstraint(
            "channel IN ('whatsapp', 'email', 'sms')", name="ck_notification_channel"
        ),
        sa.CheckConstraint(
            "status IN ('sent', 'delivered', 'read', 'failed', 'skipped')",
            name="ck_notification_status",
        ),
    )
    op.create_index(
        "ix_notification_log_clinic_sent", "notification_log", ["clinic_id", "sent_at"]
    )
    op.create_index(
        "uq_notification_log_dedup",
        "notification_log",
        ["appointment_id", "channel", "type"],
        unique=True,
        postgresql_where=sa.text("status <> 'failed'"),
        sqlite_where=sa.text("status != 'failed'"),
    )

    op.create_table(
        "channel_secrets",
        sa.Column(
            "clinic_id",
            sa.Uuid(),
            sa.ForeignKey("clinics.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("access_token", sa.Text(), nullable=False),
        _created_at("updated_at"),
    )


def downgrade() -> None:
    op.drop_table("channel_secrets")
    op.drop_index("uq_notification_log_dedup", table_name="notification_log")
    op.drop_index("ix_notification_log_clinic_sent", table_name="notification_log")
    op.drop_table("notification_log")
    op.drop_table("whatsapp_templates")
    op.drop_index("uq_wa_messages_inbound_provider_id", table_name="whatsapp_messages")
    op.drop_index("ix_wa_messages_wa_message_id", table_name="whatsapp_messages")
    op.drop_index("ix_wa_messages_session_created", table_name="whatsapp_messages")
    op.drop_table("whatsapp_messages")
    op.drop_index("ix_wa_sessions_last_message_at", table_name="whatsapp_sessions")
    op.drop_index("ix_wa_sessions_clinic_status", table_name="whatsapp_sessions")
    op.drop_index("uq_wa_sessions_open_phone", table_name="whatsapp_sessions")
    op.drop_table("whatsapp_sessions")
    op.drop_index("ix_appointments_patient_id", table_name="appointments")
    op.drop_index("ix_appointments_starts_at", table_name="appointments")
    op.drop_table("appointments")
    op.drop_table("professionals")
    op.drop_index("ix_patients_clinic_id", table_name="patients")
    op.drop_table("patients")
    op.drop_index("ix_clinics_wa_phone_number_id", table_name="clinics")
    op.drop_table("clinics")
