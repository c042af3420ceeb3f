"""
Pytest fixtures for PulseStream tests.

Tests run against a throwaway SQLite database. The environment is set up
before any project module is imported so that config picks it up.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict
from unittest.mock import MagicMock

import pytest
import sqlalchemy as sa

_test_temp_dir = Path(tempfile.mkdtemp(prefix="pulse-test-"))
os.environ["PULSE_TEST_MODE"] = "1"
os.environ["PULSE_DATABASE_URL"] = f"sqlite:///{_test_temp_dir / 'pulse_test.db'}"
os.environ["PULSE_STORAGE_PATH"] = str(_test_temp_dir / "storage")
os.environ["PULSE_AUDIT_LOG_ENABLED"] = "false"
os.environ["PULSE_RATE_LIMIT_ENABLED"] = "false"
os.environ["PULSE_S3_BUCKET"] = ""
os.environ["PULSE_REDIS_URL"] = ""
os.environ["PULSE_RESPONSE_CACHE_STORAGE_URL"] = "memory://"
os.environ["PULSE_ALERT_WEBHOOK_URL"] = ""

from api.auth import get_key_prefix, hash_api_key  # noqa: E402
from api.database import database, metadata, users, video_categories, video_viewers, videos  # noqa: E402
from config import DATABASE_URL, UPLOADS_DIR  # noqa: E402

TEST_API_KEYS = {
    "admin": "pk_test_admin_key_0000000000000000",
    "editor": "pk_test_editor_key_000000000000000",
    "other_editor": "pk_test_other_editor_0000000000000",
    "viewer": "pk_test_viewer_key_000000000000000",
}

_ROLES = {"admin": "admin", "editor": "editor", "other_editor": "editor", "viewer": "viewer"}


def reset_tables() -> None:
    engine = sa.create_engine(DATABASE_URL)
    metadata.drop_all(engine)
    metadata.create_all(engine)
    engine.dispose()


def _execute(statement):
    engine = sa.create_engine(DATABASE_URL)
    with engine.begin() as conn:
        result = conn.execute(statement)
        inserted = result.inserted_primary_key[0] if result.is_insert else None
    engine.dispose()
    return inserted


def seed_users() -> Dict[str, Dict]:
    """Insert one user per test role. Returns {name: {"id", "role", "key"}}."""
    seeded = {}
    now = datetime.now(timezone.utc)
    for name, key in TEST_API_KEYS.items():
        user_id = _execute(
            users.insert().values(
                name=name.replace("_", " ").title(),
                email=f"{name}@example.com",
                role=_ROLES[name],
                api_key_prefix=get_key_prefix(key),
                api_key_hash=hash_api_key(key),
                created_at=now,
            )
        )
        seeded[name] = {"id": user_id, "role": _ROLES[name], "key": key}
    return seeded


def insert_video(owner_id: int, title: str = "Test Video", categories=(), viewers=(), age_seconds: int = 0, **fields) -> int:
    """Insert a video row directly, bypassing the API and its cache."""
    now = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
    values = {
        "owner_id": owner_id,
        "title": title,
        "description": "",
        "storage_reference": "https://media-bucket.s3.us-east-1.amazonaws.com/videos/1-test.mp4",
        "size": 1024,
        "processing_status": "pending",
        "sensitivity_status": "pending",
        "flagged_reason": "",
        "views": 0,
        "created_at": now,
        "updated_at": now,
    }
    values.update(fields)
    video_id = _execute(videos.insert().values(**values))
    for name in categories:
        _execute(video_categories.insert().values(video_id=video_id, name=name))
    for viewer_id in viewers:
        _execute(video_viewers.insert().values(video_id=video_id, user_id=viewer_id))
    return video_id


def update_video_row(video_id: int, **fields) -> None:
    _execute(videos.update().where(videos.c.id == video_id).values(**fields))


@pytest.fixture
def seeded_users() -> Dict[str, Dict]:
    reset_tables()
    return seed_users()


@pytest.fixture
async def db():
    """Fresh tables and a connected database for store-level tests."""
    reset_tables()
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture
def auth_headers(seeded_users):
    """auth_headers("admin") -> {"X-API-Key": ...}"""

    def _headers(name: str) -> Dict[str, str]:
        return {"X-API-Key": seeded_users[name]["key"]}

    return _headers


@pytest.fixture
def client(seeded_users):
    """
    TestClient for the API with its lifespan running.

    The moderation runner is replaced with a mock so that uploads do not
    start real moderation jobs; pipeline behavior is covered separately.
    """
    from fastapi.testclient import TestClient

    from api.app import app

    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        real_runner = app.state.runner
        runner = MagicMock()
        runner.is_active.return_value = False
        runner.spawn.return_value = True
        app.state.runner = runner
        try:
            yield test_client
        finally:
            app.state.runner = real_runner


@pytest.fixture
def app_state(client):
    from api.app import app

    return app.state
