from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Principals. Authentication happens upstream; the API key only identifies
# the caller and their role.
users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100), nullable=False),
    sa.Column("email", sa.String(255), unique=True, nullable=False),
    sa.Column(
        "role",
        sa.String(20),
        sa.CheckConstraint("role IN ('admin', 'editor', 'viewer')", name="ck_users_role"),
        nullable=False,
        default="viewer",
    ),
    sa.Column("api_key_prefix", sa.String(8), nullable=False),
    sa.Column("api_key_hash", sa.String(64), unique=True, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
    sa.Index("ix_users_api_key_prefix", "api_key_prefix"),
    sa.Index("ix_users_role", "role"),
)

# Content items
#
# STATE SEMANTICS:
# ----------------
# processing_status: pending -> {completed, failed}, written only by the
#   moderation pipeline (and operator recovery). Never revisited once terminal
#   except by an explicit operator re-run.
# sensitivity_status: pending -> {safe, flagged}. completed always resolves it;
#   failed leaves it untouched.
# flagged_reason: comma-joined moderation label names, or a diagnostic string
#   when the fail-safe path ran. Empty when safe or not evaluated.
# storage_reference: object URL (S3) or legacy local path. Immutable.
videos = sa.Table(
    "videos",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("owner_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text, default=""),
    sa.Column("storage_reference", sa.Text, nullable=False),
    sa.Column("size", sa.BigInteger, default=0),  # bytes
    sa.Column(
        "processing_status",
        sa.String(20),
        sa.CheckConstraint(
            "processing_status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_videos_processing_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column(
        "sensitivity_status",
        sa.String(20),
        sa.CheckConstraint(
            "sensitivity_status IN ('pending', 'safe', 'flagged')",
            name="ck_videos_sensitivity_status",
        ),
        nullable=False,
        default="pending",
    ),
    sa.Column("flagged_reason", sa.Text, nullable=False, default=""),
    sa.Column("thumbnail_path", sa.Text, nullable=True),
    sa.Column("views", sa.Integer, default=0),
    sa.Column("created_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=_utcnow),
    sa.Index("ix_videos_owner_id", "owner_id"),
    sa.Index("ix_videos_processing_status", "processing_status"),
    sa.Index("ix_videos_sensitivity_status", "sensitivity_status"),
    sa.Index("ix_videos_created_at", "created_at"),
)

# Viewers granted access to a video (assigned by administrators)
video_viewers = sa.Table(
    "video_viewers",
    metadata,
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    sa.Index("ix_video_viewers_user_id", "user_id"),
)

# Free-form category names attached at upload
video_categories = sa.Table(
    "video_categories",
    metadata,
    sa.Column("video_id", sa.Integer, sa.ForeignKey("videos.id", ondelete="CASCADE"), primary_key=True),
    sa.Column("name", sa.String(100), primary_key=True),
    sa.Index("ix_video_categories_name", "name"),
)


def create_tables() -> None:
    """Create all tables (used on startup and by tests)."""
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()
