"""
Audit logging for content changes and moderation outcomes.

Each event is written as one JSON object per line to a rotating log file,
falling back to the console when the file cannot be opened.
"""

import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from api.errors import truncate_string
from config import (
    AUDIT_LOG_BACKUP_COUNT,
    AUDIT_LOG_ENABLED,
    AUDIT_LOG_LEVEL,
    AUDIT_LOG_MAX_BYTES,
    AUDIT_LOG_PATH,
    ERROR_DETAIL_MAX_LENGTH,
)

if not os.environ.get("PULSE_TEST_MODE") and AUDIT_LOG_ENABLED:
    try:
        AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass  # Falls back to console logging


class AuditAction(str, Enum):
    VIDEO_UPLOAD = "video_upload"
    VIDEO_DELETE = "video_delete"
    VIDEO_ASSIGN = "video_assign"
    VIDEO_REPROCESS = "video_reprocess"

    MODERATION_COMPLETED = "moderation_completed"
    MODERATION_FAILED = "moderation_failed"
    MODERATION_FAIL_SAFE = "moderation_fail_safe"
    STUCK_VIDEOS_RECOVERED = "stuck_videos_recovered"

    USER_CREATE = "user_create"


class AuditLogger:
    """JSON audit logger with file rotation."""

    def __init__(self):
        self.logger = logging.getLogger("pulse.audit")
        self.logger.setLevel(getattr(logging, AUDIT_LOG_LEVEL, logging.INFO))
        self.logger.propagate = False

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self):
        formatter = logging.Formatter("%(message)s")

        if not AUDIT_LOG_ENABLED:
            self.logger.addHandler(logging.NullHandler())
            return

        try:
            handler = RotatingFileHandler(
                AUDIT_LOG_PATH,
                maxBytes=AUDIT_LOG_MAX_BYTES,
                backupCount=AUDIT_LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
        except (PermissionError, OSError):
            handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        self.logger.addHandler(handler)

    def log(
        self,
        action: AuditAction,
        actor_id: Optional[int] = None,
        client_ip: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[Any] = None,
        resource_name: Optional[str] = None,
        details: Optional[dict] = None,
        success: bool = True,
        error: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        """
        Write one audit entry.

        Args:
            action: What happened
            actor_id: Id of the user who triggered it (None for the pipeline)
            client_ip: Client address for request-driven actions
            resource_type: Kind of resource ("video", "user")
            resource_id: Id of the affected resource
            resource_name: Human-readable name (title, email)
            details: Action-specific extra fields
            success: Whether the action succeeded
            error: Error message if it did not
            request_id: X-Request-ID of the originating request
        """
        if not AUDIT_LOG_ENABLED:
            return

        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action.value,
            "success": success,
        }
        optional = {
            "request_id": request_id,
            "actor_id": actor_id,
            "client_ip": client_ip,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "resource_name": resource_name,
            "details": details or None,
            "error": truncate_string(error, ERROR_DETAIL_MAX_LENGTH) if error else None,
        }
        entry.update({key: value for key, value in optional.items() if value is not None})

        try:
            self.logger.info(json.dumps(entry, default=str))
        except (TypeError, ValueError, OSError) as e:
            logging.getLogger(__name__).debug(f"Audit entry dropped: {e}")


audit_logger = AuditLogger()


def log_audit(action: AuditAction, **kwargs):
    """
    Log an audit event through the shared audit logger.

    Example:
        log_audit(
            AuditAction.VIDEO_UPLOAD,
            actor_id=user["id"],
            resource_type="video",
            resource_id=video["id"],
            resource_name=video["title"],
            request_id=get_request_id(request),
        )
    """
    audit_logger.log(action, **kwargs)
