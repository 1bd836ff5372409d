"""keys baseline: catalogue, loans with claim tables, bundles, events, activity log

Revision ID: 3a1f6c2d9e4b
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "3a1f6c2d9e4b"
down_revision = None
branch_labels = None
depends_on = None

TIMESTAMPS = ("created_at", "updated_at")


def _timestamps():
    return [
        sa.Column(name, sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))
        for name in TIMESTAMPS
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("key_systems"):
        op.create_table(
            "key_systems",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("system_code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("manufacturer", sa.String(length=255), nullable=True),
            sa.Column("type", sa.String(length=20), nullable=False, server_default="MECHANICAL"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("description", sa.Text(), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_key_systems_system_code", "key_systems", ["system_code"], unique=True)

    if not inspector.has_table("keys"):
        op.create_table(
            "keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key_name", sa.String(length=120), nullable=False),
            sa.Column("key_sequence_number", sa.Integer(), nullable=True),
            sa.Column("flex_number", sa.Integer(), nullable=True),
            sa.Column("key_type", sa.String(length=10), nullable=False),
            sa.Column("rental_object_code", sa.String(length=50), nullable=True),
            sa.Column("key_system_id", sa.Integer(), sa.ForeignKey("key_systems.id"), nullable=True),
            sa.Column("disposed", sa.Boolean(), nullable=False, server_default=sa.false()),
            *_timestamps(),
        )
        op.create_index("ix_keys_key_name", "keys", ["key_name"])
        op.create_index("ix_keys_rental_object_code", "keys", ["rental_object_code"])
        op.create_index("ix_keys_key_system_id", "keys", ["key_system_id"])

    if not inspector.has_table("key_loans"):
        op.create_table(
            "key_loans",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("loan_type", sa.String(length=20), nullable=False, server_default="TENANT"),
            sa.Column("contact", sa.String(length=255), nullable=False),
            sa.Column("contact2", sa.String(length=255), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("picked_up_at", sa.DateTime(), nullable=True),
            sa.Column("returned_at", sa.DateTime(), nullable=True),
            sa.Column("available_to_next_tenant_from", sa.DateTime(), nullable=True),
            *_timestamps(),
            sa.Column("created_by", sa.String(length=255), nullable=True),
            sa.Column("updated_by", sa.String(length=255), nullable=True),
        )
        op.create_index("ix_key_loans_contact", "key_loans", ["contact"])
        op.create_index("ix_key_loans_contact2", "key_loans", ["contact2"])
        op.create_index("ix_key_loans_returned_at", "key_loans", ["returned_at"])
        op.create_index("ix_key_loans_created_at", "key_loans", ["created_at"])

    if not inspector.has_table("key_loan_keys"):
        op.create_table(
            "key_loan_keys",
            sa.Column("key_loan_id", sa.Integer(), sa.ForeignKey("key_loans.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("key_id", sa.Integer(), sa.ForeignKey("keys.id"), primary_key=True),
        )
        op.create_index("ix_key_loan_keys_key_id", "key_loan_keys", ["key_id"])

    if not inspector.has_table("key_loan_cards"):
        op.create_table(
            "key_loan_cards",
            sa.Column("key_loan_id", sa.Integer(), sa.ForeignKey("key_loans.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("card_id", sa.String(length=100), primary_key=True),
        )
        op.create_index("ix_key_loan_cards_card_id", "key_loan_cards", ["card_id"])

    # One row per key/card held by an outstanding loan; the primary key is the reservation guard
    if not inspector.has_table("active_key_claims"):
        op.create_table(
            "active_key_claims",
            sa.Column("key_id", sa.Integer(), sa.ForeignKey("keys.id"), primary_key=True),
            sa.Column("key_loan_id", sa.Integer(), sa.ForeignKey("key_loans.id", ondelete="CASCADE"), nullable=False),
        )
        op.create_index("ix_active_key_claims_key_loan_id", "active_key_claims", ["key_loan_id"])

    if not inspector.has_table("active_card_claims"):
        op.create_table(
            "active_card_claims",
            sa.Column("card_id", sa.String(length=100), primary_key=True),
            sa.Column("key_loan_id", sa.Integer(), sa.ForeignKey("key_loans.id", ondelete="CASCADE"), nullable=False),
        )
        op.create_index("ix_active_card_claims_key_loan_id", "active_card_claims", ["key_loan_id"])

    if not inspector.has_table("key_bundles"):
        op.create_table(
            "key_bundles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("name", name="uq_key_bundles_name"),
        )
        op.create_index("ix_key_bundles_created_at", "key_bundles", ["created_at"])

    if not inspector.has_table("key_bundle_keys"):
        op.create_table(
            "key_bundle_keys",
            sa.Column("key_bundle_id", sa.Integer(), sa.ForeignKey("key_bundles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("key_id", sa.Integer(), sa.ForeignKey("keys.id"), primary_key=True),
        )
        op.create_index("ix_key_bundle_keys_key_id", "key_bundle_keys", ["key_id"])

    if not inspector.has_table("key_events"):
        op.create_table(
            "key_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("type", sa.String(length=20), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="ORDERED"),
            sa.Column("work_order_id", sa.String(length=100), nullable=True),
            *_timestamps(),
        )
        op.create_index("ix_key_events_created_at", "key_events", ["created_at"])

    if not inspector.has_table("key_event_keys"):
        op.create_table(
            "key_event_keys",
            sa.Column("key_event_id", sa.Integer(), sa.ForeignKey("key_events.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("key_id", sa.Integer(), sa.ForeignKey("keys.id"), primary_key=True),
        )
        op.create_index("ix_key_event_keys_key_id", "key_event_keys", ["key_id"])

    if not inspector.has_table("activity_logs"):
        op.create_table(
            "activity_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("user_name", sa.String(length=255), nullable=True),
            sa.Column("action", sa.String(length=120), nullable=False),
            sa.Column("target_type", sa.String(length=120), nullable=True),
            sa.Column("target_id", sa.Integer(), nullable=True),
            sa.Column("summary", sa.String(length=255), nullable=True),
            sa.Column("meta", sa.JSON(), nullable=True),
        )
        op.create_index("ix_activity_logs_user_name", "activity_logs", ["user_name"])


def downgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    for table in (
        "activity_logs",
        "key_event_keys",
        "key_events",
        "key_bundle_keys",
        "key_bundles",
        "active_card_claims",
        "active_key_claims",
        "key_loan_cards",
        "key_loan_keys",
        "key_loans",
        "keys",
        "key_systems",
    ):
        if inspector.has_table(table):
            op.drop_table(table)
