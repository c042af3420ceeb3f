"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class ProcessingStatus(str, Enum):
    """Lifecycle of the moderation pipeline for a video."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SensitivityStatus(str, Enum):
    """Moderation verdict, independent of processing status."""

    PENDING = "pending"
    SAFE = "safe"
    FLAGGED = "flagged"


class UserRole(str, Enum):
    """Principal roles."""

    ADMIN = "admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class ModerationJobStatus(str, Enum):
    """Status values reported by the moderation service for a job."""

    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
