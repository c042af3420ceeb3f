"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

Users, videos and the viewer/category join tables.
For databases created by create_tables(), use 'alembic stamp 001'.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="viewer"),
        sa.Column("api_key_prefix", sa.String(8), nullable=False),
        sa.Column("api_key_hash", sa.String(64), unique=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("role IN ('admin', 'editor', 'viewer')", name="ck_users_role"),
    )
    op.create_index("ix_users_api_key_prefix", "users", ["api_key_prefix"])
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "videos",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("owner_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, server_default=""),
        sa.Column("storage_reference", sa.Text, nullable=False),
        sa.Column("size", sa.BigInteger, server_default="0"),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("sensitivity_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("flagged_reason", sa.Text, nullable=False, server_default=""),
        sa.Column("thumbnail_path", sa.Text, nullable=True),
        sa.Column("views", sa.Integer, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_videos_processing_status",
        ),
        sa.CheckConstraint(
            "sensitivity_status IN ('pending', 'safe', 'flagged')",
            name="ck_videos_sensitivity_status",
        ),
    )
    op.create_index("ix_videos_owner_id", "videos", ["owner_id"])
    op.create_index("ix_videos_processing_status", "videos", ["processing_status"])
    op.create_index("ix_videos_sensitivity_status", "videos", ["sensitivity_status"])
    op.create_index("ix_videos_created_at", "videos", ["created_at"])

    op.create_table(
        "video_viewers",
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_index("ix_video_viewers_user_id", "video_viewers", ["user_id"])

    op.create_table(
        "video_categories",
        sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("name", sa.String(100), primary_key=True),
    )
    op.create_index("ix_video_categories_name", "video_categories", ["name"])


def downgrade() -> None:
    op.drop_table("video_categories")
    op.drop_table("video_viewers")
    op.drop_table("videos")
    op.drop_table("users")
