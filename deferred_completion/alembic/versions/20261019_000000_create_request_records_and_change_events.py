"""Create request_records and change_events tables

Revision ID: 20261019_000000
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261019_000000"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Create request_records table
    op.create_table(
        "request_records",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("system_prompt", sa.Text(), nullable=True),
        sa.Column("user_prompt", sa.Text(), nullable=True),
        sa.Column("max_tokens", sa.Integer(), nullable=True),
        sa.Column("response_format", sa.String(20), nullable=False, server_default="structured"),
        sa.Column("model_id", sa.String(255), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("usage", _JSON, nullable=True),
        sa.Column("finish_reason", sa.String(100), nullable=True),
        sa.Column("expires_at", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index(op.f("ix_request_records_finish_reason"), "request_records", ["finish_reason"], unique=False)
    op.create_index(op.f("ix_request_records_expires_at"), "request_records", ["expires_at"], unique=False)

    # Create change_events table (the change feed)
    op.create_table(
        "change_events",
        sa.Column(
            "sequence",
            sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
            primary_key=True,
            autoincrement=True,
        ),
        sa.Column("event_kind", sa.String(20), nullable=False),
        sa.Column("record_key", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("new_image", _JSON, nullable=True),
        sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index(op.f("ix_change_events_record_key"), "change_events", ["record_key"], unique=False)
    op.create_index(op.f("ix_change_events_acknowledged_at"), "change_events", ["acknowledged_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_change_events_acknowledged_at"), table_name="change_events")
    op.drop_index(op.f("ix_change_events_record_key"), table_name="change_events")
    op.drop_table("change_events")

    op.drop_index(op.f("ix_request_records_expires_at"), table_name="request_records")
    op.drop_index(op.f("ix_request_records_finish_reason"), table_name="request_records")
    op.drop_table("request_records")
