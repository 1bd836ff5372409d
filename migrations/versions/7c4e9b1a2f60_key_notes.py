"""key notes per rental object

Revision ID: 7c4e9b1a2f60
Revises: 3a1f6c2d9e4b
Create Date: 2026-10-18 14:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "7c4e9b1a2f60"
down_revision = "3a1f6c2d9e4b"
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("key_notes"):
        op.create_table(
            "key_notes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("rental_object_code", sa.String(length=50), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        )
        op.create_index("ix_key_notes_rental_object_code", "key_notes", ["rental_object_code"])


def downgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)
    if inspector.has_table("key_notes"):
        op.drop_index("ix_key_notes_rental_object_code", table_name="key_notes")
        op.drop_table("key_notes")
