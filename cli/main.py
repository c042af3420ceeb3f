#!/usr/bin/env python3
"""
PulseStream CLI - user administration, stuck-video recovery and video management.

User and recovery commands talk to the database directly. Video commands go
through the HTTP API and need an API key in PULSE_API_KEY.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.audit import AuditAction, log_audit
from api.errors import truncate_error
from config import (
    API_PORT,
    ERROR_DETAIL_MAX_LENGTH,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_UPLOAD_SIZE,
    RESPONSE_CACHE_ENABLED,
    RESPONSE_CACHE_MAX_SIZE,
    RESPONSE_CACHE_STORAGE_URL,
    RESPONSE_CACHE_TTL,
)

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("PULSE_API_TIMEOUT", "30"))

# Very long timeout for large uploads, but not infinite to prevent hanging
UPLOAD_TIMEOUT = int(os.getenv("PULSE_UPLOAD_TIMEOUT", "7200"))

_default_api_url = f"http://localhost:{API_PORT}"
API_BASE = os.getenv("PULSE_API_URL", _default_api_url).rstrip("/") + "/api"

ROLES = ["admin", "editor", "viewer"]
SENSITIVITY_CHOICES = ["pending", "safe", "flagged"]


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


class ProgressFileWrapper:
    """File object that advances a rich progress bar as it is read."""

    def __init__(self, file, progress, task_id):
        self.file = file
        self.progress = progress
        self.task_id = task_id

    def read(self, size=-1):
        data = self.file.read(size)
        if data:
            self.progress.update(self.task_id, advance=len(data))
        return data

    def seek(self, *args, **kwargs):
        return self.file.seek(*args, **kwargs)

    def tell(self):
        return self.file.tell()


def get_api_headers() -> dict:
    api_key = os.getenv("PULSE_API_KEY", "")
    if not api_key:
        raise CLIError("PULSE_API_KEY is not set. Create a key with: pulse user create")
    return {"X-API-Key": api_key}


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, raising CLIError for error statuses.

    Raises:
        CLIError: If the status is not successful or the body is not JSON
    """
    if response.status_code == 401:
        raise CLIError("Authentication failed. Check PULSE_API_KEY.")
    if response.status_code == 403:
        raise CLIError("Your role is not allowed to do this.")

    if not response.is_success:
        try:
            detail = response.json().get("detail", response.text)
        except (ValueError, httpx.ResponseNotRead):
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except (ValueError, httpx.ResponseNotRead):
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def validate_file(file_path: Path) -> int:
    """
    Check the file exists, is readable, non-empty and under the upload limit.

    Returns:
        int: File size in bytes
    """
    if not file_path.exists():
        raise CLIError(f"File not found: {file_path}")
    if not file_path.is_file():
        raise CLIError(f"Path is not a file: {file_path}")
    if not os.access(file_path, os.R_OK):
        raise CLIError(f"File is not readable: {file_path}")

    file_size = file_path.stat().st_size
    if file_size == 0:
        raise CLIError(f"File is empty: {file_path}")
    if file_size > MAX_UPLOAD_SIZE:
        max_size_gb = MAX_UPLOAD_SIZE / (1024 * 1024 * 1024)
        file_size_gb = file_size / (1024 * 1024 * 1024)
        raise CLIError(f"File too large ({file_size_gb:.2f} GB). Maximum upload size is {max_size_gb:.0f} GB")
    return file_size


def _run_api_command(func, args):
    """Run an API command, turning connection problems and CLIError into exit code 1."""
    try:
        func(args)
    except httpx.ConnectError:
        print(f"Error: Could not connect to API at {API_BASE}")
        print("Make sure the server is running or set PULSE_API_URL.")
        sys.exit(1)
    except httpx.TimeoutException:
        print(f"Error: Request timed out while connecting to {API_BASE}")
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}")
        sys.exit(1)


# ============ Direct database commands ============


async def _with_database(coro_factory):
    from api.database import create_tables, database

    create_tables()
    await database.connect()
    try:
        return await coro_factory()
    finally:
        await database.disconnect()


def cmd_user(args):
    """Create or list users."""
    from api.auth import create_user, list_users
    from api.enums import UserRole

    if args.user_command == "create":
        user, api_key = asyncio.run(
            _with_database(lambda: create_user(args.name, args.email, UserRole(args.role)))
        )
        log_audit(
            AuditAction.USER_CREATE,
            resource_type="user",
            resource_id=user["id"],
            resource_name=user["email"],
            details={"role": user["role"].value},
        )
        print(f"Created {user['role'].value} user {user['id']}: {user['name']} <{user['email']}>")
        print()
        print(f"API key: {api_key}")
        print("Store this key now - it cannot be shown again.")
        return

    role = UserRole(args.role) if args.role else None
    user_rows = asyncio.run(_with_database(lambda: list_users(role)))
    if not user_rows:
        print("No users found.")
        return

    print(f"{'ID':<5} {'Role':<8} {'Name':<25} {'Email':<35}")
    print("-" * 75)
    for u in user_rows:
        name = u["name"][:23] + ".." if len(u["name"]) > 25 else u["name"]
        print(f"{u['id']:<5} {u['role'].value:<8} {name:<25} {u['email']:<35}")


def cmd_recover_stuck(args):
    """Force pending/processing videos to completed/flagged."""
    from api.response_cache import create_response_cache
    from api.video_store import VideoStore
    from worker.pipeline import recover_stuck_videos

    # Only a shared (Redis) cache can be flushed from outside the API process
    cache = create_response_cache(
        storage_url=RESPONSE_CACHE_STORAGE_URL,
        ttl_seconds=RESPONSE_CACHE_TTL,
        enabled=RESPONSE_CACHE_ENABLED,
        max_size=RESPONSE_CACHE_MAX_SIZE,
    )
    count = asyncio.run(_with_database(lambda: recover_stuck_videos(VideoStore(), cache)))
    if count:
        print(f"Recovered {count} stuck video(s). They are now completed and flagged for review.")
    else:
        print("No stuck videos found.")


# ============ API commands ============


def _upload(args):
    file_path = Path(args.file)
    file_size = validate_file(file_path)
    title = args.title or file_path.stem.replace("-", " ").replace("_", " ").title()

    print(f"Uploading: {file_path.name}")
    print(f"Title: {title}")

    data = {"title": title, "description": args.description or "", "categories": args.categories or ""}
    suffix = file_path.suffix.lower().lstrip(".") or "mp4"
    content_type = "video/quicktime" if suffix == "mov" else f"video/{suffix}"

    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        FileSizeColumn(),
        TextColumn("/"),
        TotalFileSizeColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
    ) as progress:
        task_id = progress.add_task("Uploading...", total=file_size)
        with open(file_path, "rb") as f:
            files = {"videoFile": (file_path.name, ProgressFileWrapper(f, progress, task_id), content_type)}
            with httpx.Client(timeout=httpx.Timeout(UPLOAD_TIMEOUT)) as client:
                response = client.post(
                    f"{API_BASE}/videos/upload", files=files, data=data, headers=get_api_headers()
                )

    result = safe_json_response(response)
    print("Success! Video queued for moderation.")
    print(f"  ID: {result['id']}")
    print(f"  Status: {result['processingStatus']}/{result['sensitivityStatus']}")


def _list(args):
    params = {"pageNumber": args.page}
    if args.status:
        params["status"] = args.status
    if args.keyword:
        params["keyword"] = args.keyword

    response = httpx.get(f"{API_BASE}/videos", params=params, headers=get_api_headers(), timeout=DEFAULT_API_TIMEOUT)
    result = safe_json_response(response)
    videos_list = result.get("videos", [])
    if not videos_list:
        print("No videos found.")
        return

    print(f"{'ID':<5} {'Processing':<11} {'Sensitivity':<12} {'Title':<40}")
    print("-" * 70)
    for v in videos_list:
        title = v["title"][:38] + ".." if len(v["title"]) > 40 else v["title"]
        print(f"{v['id']:<5} {v['processingStatus']:<11} {v['sensitivityStatus']:<12} {title:<40}")
        if v.get("flaggedReason"):
            print(f"      reason: {truncate_error(v['flaggedReason'], ERROR_SUMMARY_MAX_LENGTH)}")
    print(f"Page {result.get('page', 1)} of {result.get('pages', 1)}")


def _delete(args):
    response = httpx.delete(f"{API_BASE}/videos/{args.video_id}", headers=get_api_headers(), timeout=DEFAULT_API_TIMEOUT)
    safe_json_response(response)
    print(f"Video {args.video_id} deleted.")


def _reprocess(args):
    response = httpx.post(
        f"{API_BASE}/videos/{args.video_id}/reprocess", headers=get_api_headers(), timeout=DEFAULT_API_TIMEOUT
    )
    safe_json_response(response)
    print(f"Video {args.video_id} queued for moderation.")


def cmd_upload(args):
    """Upload a video."""
    _run_api_command(_upload, args)


def cmd_list(args):
    """List videos."""
    _run_api_command(_list, args)


def cmd_delete(args):
    """Delete a video."""
    _run_api_command(_delete, args)


def cmd_reprocess(args):
    """Re-run moderation for a video (admin)."""
    _run_api_command(_reprocess, args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pulse", description="PulseStream CLI - Manage videos and users")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # User management
    user_parser = subparsers.add_parser("user", help="Manage users and API keys")
    user_subparsers = user_parser.add_subparsers(dest="user_command", required=True)

    user_create = user_subparsers.add_parser("create", help="Create a user and print their API key")
    user_create.add_argument("-n", "--name", required=True, help="Display name")
    user_create.add_argument("-e", "--email", required=True, help="Email address (unique)")
    user_create.add_argument("-r", "--role", choices=ROLES, default="viewer", help="Role (default: viewer)")

    user_list = user_subparsers.add_parser("list", help="List active users")
    user_list.add_argument("-r", "--role", choices=ROLES, help="Only users with this role")

    user_parser.set_defaults(func=cmd_user)

    recover_parser = subparsers.add_parser(
        "recover-stuck", help="Force videos stuck in pending/processing to completed (flagged)"
    )
    recover_parser.set_defaults(func=cmd_recover_stuck)

    # Video commands (HTTP API)
    upload_parser = subparsers.add_parser("upload", help="Upload a video file")
    upload_parser.add_argument("file", help="Video file to upload")
    upload_parser.add_argument("-t", "--title", help="Video title (default: filename)")
    upload_parser.add_argument("-d", "--description", help="Video description")
    upload_parser.add_argument("-c", "--categories", help="Comma-separated categories")
    upload_parser.set_defaults(func=cmd_upload)

    list_parser = subparsers.add_parser("list", help="List videos")
    list_parser.add_argument("-s", "--status", choices=SENSITIVITY_CHOICES, help="Filter by sensitivity")
    list_parser.add_argument("-k", "--keyword", help="Title contains (case-insensitive)")
    list_parser.add_argument("-p", "--page", type=positive_int, default=1, help="Page number")
    list_parser.set_defaults(func=cmd_list)

    del_parser = subparsers.add_parser("delete", help="Delete a video")
    del_parser.add_argument("video_id", type=positive_int, help="Video ID to delete")
    del_parser.set_defaults(func=cmd_delete)

    reprocess_parser = subparsers.add_parser("reprocess", help="Re-run moderation for a video")
    reprocess_parser.add_argument("video_id", type=positive_int, help="Video ID")
    reprocess_parser.set_defaults(func=cmd_reprocess)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
