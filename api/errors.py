"""
Error handling utilities for sanitizing and truncating error messages.

Prevents internal implementation details from being exposed to API clients
while still logging detailed errors for debugging.
"""
import logging
import re
from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)

# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r'/home/\w+/',           # Home directory paths
    r'/mnt/\w+/',            # Mount paths
    r'/tmp/\w+',             # Temp paths
    r'/var/\w+/',            # Var paths
    r'line \d+',             # Line numbers in stack traces
    r'File "[^"]+\.py"',     # Python file paths
    r'arn:aws:[^\s]+',       # AWS resource names
    r'RequestId: [\w-]+',    # AWS request ids
    r'Permission denied',    # System errors
    r'No such file or directory',  # System errors with paths
    r'UNIQUE constraint failed',   # Database internals
    r'sqlite3?\.',           # SQLite details
    r'asyncpg\.',            # PostgreSQL driver details
    r'Error: .+\.py:\d+',    # Python error traces
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "storage": "The video could not be stored. Please try uploading again.",
    "credentials": "Object storage is misconfigured. Please contact support.",
    "moderation": "Content analysis is temporarily unavailable. Please try again later.",
    "timeout": "The request timed out. Please try again.",
    "not_found": "The requested video could not be found.",
    "database": "A database error occurred. Please try again.",
    "permission": "A file access error occurred. Please contact support.",
    "general": "An error occurred while processing your request. Please try again.",
}


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """Truncate text to max_length, ending with '...' when there is room for it."""
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    if max_length < 4:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: int = ERROR_DETAIL_MAX_LENGTH) -> Optional[str]:
    """Truncate an error message for storage or display."""
    return truncate_string(error, max_length)


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = ""
) -> Optional[str]:
    """
    Sanitize an error message for safe display to API clients.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "video_id=123")

    Returns:
        A sanitized, user-friendly error message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "credentials" in error_lower or "accessdenied" in error_lower or "access denied" in error_lower:
        return ERROR_MESSAGES["credentials"]

    if "rekognition" in error_lower or "moderation" in error_lower:
        return ERROR_MESSAGES["moderation"]

    if "timeout" in error_lower or "timed out" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "s3" in error_lower or "bucket" in error_lower or "nosuchkey" in error_lower:
        return ERROR_MESSAGES["storage"]

    if "not found" in error_lower:
        return ERROR_MESSAGES["not_found"]

    if "sqlite" in error_lower or "database" in error_lower or "constraint" in error_lower:
        return ERROR_MESSAGES["database"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    # Short messages without path-like segments are shown as-is
    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]
