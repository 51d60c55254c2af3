"""create tracking tables

Revision ID: 7c1f0a9d2e41
Revises:
Create Date: 2026-10-19 10:12:03.481220

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
import sqlmodel

revision: str = "7c1f0a9d2e41"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "pixelfly_pending_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("event_data", sa.Text(), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(length=20), nullable=False),
        sa.Column("fired_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_pixelfly_pending_events_order_id"),
        "pixelfly_pending_events",
        ["order_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_pixelfly_pending_events_status"),
        "pixelfly_pending_events",
        ["status"],
        unique=False,
    )

    op.create_table(
        "pixelfly_event_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_type", sqlmodel.sql.sqltypes.AutoString(length=50), nullable=False),
        sa.Column("event_id", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_pixelfly_event_log_event_type"),
        "pixelfly_event_log",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        op.f("ix_pixelfly_event_log_order_id"),
        "pixelfly_event_log",
        ["order_id"],
        unique=False,
    )

    op.create_table(
        "pixelfly_order_tracking",
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("status", sqlmodel.sql.sqltypes.AutoString(length=40), nullable=True),
        sa.Column(
            "payment_method", sqlmodel.sql.sqltypes.AutoString(length=80), nullable=True
        ),
        sa.Column("tracked", sa.Boolean(), nullable=False),
        sa.Column("server_tracked", sa.Boolean(), nullable=False),
        sa.Column("fired_at", sa.DateTime(), nullable=True),
        sa.Column("pending_event_id", sa.Integer(), nullable=True),
        sa.Column("order_data", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )


def downgrade() -> None:
    op.drop_table("pixelfly_order_tracking")
    op.drop_index(op.f("ix_pixelfly_event_log_order_id"), table_name="pixelfly_event_log")
    op.drop_index(op.f("ix_pixelfly_event_log_event_type"), table_name="pixelfly_event_log")
    op.drop_table("pixelfly_event_log")
    op.drop_index(
        op.f("ix_pixelfly_pending_events_status"), table_name="pixelfly_pending_events"
    )
    op.drop_index(
        op.f("ix_pixelfly_pending_events_order_id"), table_name="pixelfly_pending_events"
    )
    op.drop_table("pixelfly_pending_events")
