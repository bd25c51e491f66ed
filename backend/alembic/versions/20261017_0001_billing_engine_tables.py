"""Create customer, billing, template, message history, calendar and channel tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("email", sa.String(length=256), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("payment_key", sa.String(length=256), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_customers_owner_id", "customers", ["owner_id"], unique=False)

    op.create_table(
        "billings",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("recurrence_kind", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("recurrence_interval", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("recurrence_end_date", sa.Date(), nullable=True),
        sa.Column("parent_billing_id", sa.Integer(), nullable=True),
        sa.Column("payment_key", sa.String(length=256), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["parent_billing_id"], ["billings.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billings_owner_id", "billings", ["owner_id"], unique=False)
    op.create_index("ix_billings_due_date", "billings", ["due_date"], unique=False)
    op.create_index("ix_billings_status", "billings", ["status"], unique=False)
    op.create_index("ix_billings_parent_billing_id", "billings", ["parent_billing_id"], unique=False)

    op.create_table(
        "message_templates",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("trigger_kind", sa.String(length=16), nullable=False),
        sa.Column("trigger_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_message_templates_owner_id", "message_templates", ["owner_id"], unique=False)

    op.create_table(
        "message_history",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("customer_id", sa.Integer(), nullable=False),
        sa.Column("billing_id", sa.Integer(), nullable=True),
        sa.Column("template_id", sa.Integer(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recipient_phone", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
        sa.ForeignKeyConstraint(["billing_id"], ["billings.id"]),
        sa.ForeignKeyConstraint(["template_id"], ["message_templates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_message_history_owner_id", "message_history", ["owner_id"], unique=False)
    op.create_index("ix_message_history_billing_id", "message_history", ["billing_id"], unique=False)
    op.create_index("ix_message_history_status", "message_history", ["status"], unique=False)
    op.create_index("ix_message_history_scheduled_for", "message_history", ["scheduled_for"], unique=False)

    op.create_table(
        "calendar_events",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("billing_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_all_day", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["billing_id"], ["billings.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("billing_id"),
    )
    op.create_index("ix_calendar_events_owner_id", "calendar_events", ["owner_id"], unique=False)

    op.create_table(
        "channel_instances",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=256), nullable=False),
        sa.Column("instance_name", sa.String(length=256), nullable=False),
        sa.Column("access_token", sa.String(length=256), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="created"),
        sa.Column("is_connected", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_channel_instances_owner_id", "channel_instances", ["owner_id"], unique=False)

    op.create_table(
        "channel_settings",
        sa.Column("owner_id", sa.String(length=128), nullable=False),
        sa.Column("api_url", sa.String(length=512), nullable=False),
        sa.Column("api_key", sa.String(length=256), nullable=False),
        sa.PrimaryKeyConstraint("owner_id"),
    )


def downgrade() -> None:
    op.drop_table("channel_settings")
    op.drop_index("ix_channel_instances_owner_id", table_name="channel_instances")
    op.drop_table("channel_instances")
    op.drop_index("ix_calendar_events_owner_id", table_name="calendar_events")
    op.drop_table("calendar_events")
    op.drop_index("ix_message_history_scheduled_for", table_name="message_history")
    op.drop_index("ix_message_history_status", table_name="message_history")
    op.drop_index("ix_message_history_billing_id", table_name="message_history")
    op.drop_index("ix_message_history_owner_id", table_name="message_history")
    op.drop_table("message_history")
    op.drop_index("ix_message_templates_owner_id", table_name="message_templates")
    op.drop_table("message_templates")
    op.drop_index("ix_billings_parent_billing_id", table_name="billings")
    op.drop_index("ix_billings_status", table_name="billings")
    op.drop_index("ix_billings_due_date", table_name="billings")
    op.drop_index("ix_billings_owner_id", table_name="billings")
    op.drop_table("billings")
    op.drop_index("ix_customers_owner_id", table_name="customers")
    op.drop_table("customers")
