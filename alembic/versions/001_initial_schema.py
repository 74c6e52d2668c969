"""Initial schema: users and match_requests.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("username", sa.String(64), nullable=False),
        sa.Column("email", sa.String, nullable=False),
        sa.Column("password_hash", sa.String, nullable=False),
        sa.Column("nickname", sa.String(64), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("date_of_birth", sa.Date, nullable=True),
        sa.Column("gender", sa.String(16), nullable=True),
        sa.Column("bio", sa.Text, nullable=True),
        sa.Column(
            "region",
            sa.String,
            nullable=True,
            comment="Human-readable region derived from the coordinate",
        ),
        sa.Column("profile_image_url", sa.String, nullable=True),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column("preferred_gender", sa.String(16), nullable=True),
        sa.Column("preferred_age_min", sa.Integer, nullable=True),
        sa.Column("preferred_age_max", sa.Integer, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
            comment="Signup timestamp",
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, server_default=sa.true(), nullable=False),
        sa.CheckConstraint(
            "(latitude IS NULL) = (longitude IS NULL)",
            name="ck_users_coordinate_pair",
        ),
        sa.CheckConstraint(
            "latitude IS NULL OR (latitude >= -90 AND latitude <= 90)",
            name="ck_users_latitude_range",
        ),
        sa.CheckConstraint(
            "longitude IS NULL OR (longitude >= -180 AND longitude <= 180)",
            name="ck_users_longitude_range",
        ),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_coordinate", "users", ["latitude", "longitude"])

    # ── 2. match_requests ───────────────────────────────────────────
    op.create_table(
        "match_requests",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "requester_id",
            sa.Uuid,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "recipient_id",
            sa.Uuid,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("user_low_id", sa.Uuid, nullable=False),
        sa.Column("user_high_id", sa.Uuid, nullable=False),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            comment="pending / accepted / rejected",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("requester_id <> recipient_id", name="ck_match_request_not_self"),
        sa.CheckConstraint("user_low_id < user_high_id", name="ck_match_request_pair_order"),
        sa.CheckConstraint(
            "status IN ('pending', 'accepted', 'rejected')",
            name="ck_match_request_status",
        ),
    )
    op.create_index("ix_match_requests_requester_id", "match_requests", ["requester_id"])
    op.create_index(
        "ix_match_request_recipient_status",
        "match_requests",
        ["recipient_id", "status"],
    )
    # At most one open request per unordered pair
    op.create_index(
        "uq_match_request_open_pair",
        "match_requests",
        ["user_low_id", "user_high_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'accepted')"),
    )


def downgrade() -> None:
    op.drop_index("uq_match_request_open_pair", table_name="match_requests")
    op.drop_index("ix_match_request_recipient_status", table_name="match_requests")
    op.drop_index("ix_match_requests_requester_id", table_name="match_requests")
    op.drop_table("match_requests")

    op.drop_index("ix_users_coordinate", table_name="users")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_table("users")
