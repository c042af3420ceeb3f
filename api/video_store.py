"""
Async repository for video records.

Rows are returned as plain dicts. get() and list() enrich each record with
its owner, categories and assigned viewers.

A record can be deleted at any moment, including while a moderation run is
in flight, so writes against a missing id are no-ops that report False
instead of raising.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import sqlalchemy as sa

from api.database import database, users, video_categories, video_viewers, videos
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry, fetch_val_with_retry
from api.enums import ProcessingStatus, SensitivityStatus, UserRole
from config import VIDEOS_PAGE_SIZE

logger = logging.getLogger(__name__)

# Columns that may be changed after creation
UPDATABLE_FIELDS = frozenset(
    [
        "title",
        "description",
        "processing_status",
        "sensitivity_status",
        "flagged_reason",
        "thumbnail_path",
        "views",
    ]
)


@dataclass(frozen=True)
class Scope:
    """Who is asking: limits which records list() returns."""

    principal_id: int
    role: UserRole


def _check_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    values = {key: value.value if hasattr(value, "value") else value for key, value in fields.items()}
    values["updated_at"] = datetime.now(timezone.utc)
    return values


def _video_query():
    return sa.select(
        videos,
        users.c.name.label("owner_name"),
        users.c.email.label("owner_email"),
    ).select_from(videos.outerjoin(users, videos.c.owner_id == users.c.id))


class VideoStore:
    """Persistence for videos and their category/viewer join rows."""

    async def create(
        self,
        owner_id: int,
        title: str,
        description: str,
        storage_reference: str,
        size: int = 0,
        categories: Iterable[str] = (),
    ) -> Dict[str, Any]:
        """Insert a new record in pending/pending state and return it."""
        now = datetime.now(timezone.utc)
        names = list(dict.fromkeys(name.strip() for name in categories if name and name.strip()))

        async with database.transaction():
            video_id = await db_execute_with_retry(
                videos.insert().values(
                    owner_id=owner_id,
                    title=title,
                    description=description or "",
                    storage_reference=storage_reference,
                    size=size,
                    processing_status=ProcessingStatus.PENDING.value,
                    sensitivity_status=SensitivityStatus.PENDING.value,
                    flagged_reason="",
                    views=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            for name in names:
                await db_execute_with_retry(video_categories.insert().values(video_id=video_id, name=name))

        logger.info(f"Created video {video_id} for user {owner_id}")
        return await self.get(video_id)

    async def get(self, video_id: int) -> Optional[Dict[str, Any]]:
        row = await fetch_one_with_retry(_video_query().where(videos.c.id == video_id))
        if row is None:
            return None
        records = await self._enrich([dict(row)])
        return records[0]

    async def list(
        self,
        scope: Scope,
        keyword: Optional[str] = None,
        sensitivity: Optional[str] = None,
        category: Optional[str] = None,
        page: int = 1,
        page_size: int = VIDEOS_PAGE_SIZE,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Return one page of records visible to scope, newest first, plus the total count.

        Administrators see everything, editors their own uploads, viewers
        only videos assigned to them. keyword matches the title
        case-insensitively.
        """
        conditions = []
        if scope.role == UserRole.EDITOR:
            conditions.append(videos.c.owner_id == scope.principal_id)
        elif scope.role == UserRole.VIEWER:
            assigned = sa.select(video_viewers.c.video_id).where(video_viewers.c.user_id == scope.principal_id)
            conditions.append(videos.c.id.in_(assigned))

        if keyword:
            escaped = keyword.replace("/", "//").replace("%", "/%").replace("_", "/_")
            conditions.append(videos.c.title.ilike(f"%{escaped}%", escape="/"))
        if sensitivity:
            conditions.append(videos.c.sensitivity_status == sensitivity)
        if category:
            tagged = sa.select(video_categories.c.video_id).where(video_categories.c.name == category)
            conditions.append(videos.c.id.in_(tagged))

        where = sa.and_(sa.true(), *conditions)
        page = max(1, page)

        total = await fetch_val_with_retry(sa.select(sa.func.count()).select_from(videos).where(where))
        rows = await fetch_all_with_retry(
            _video_query()
            .where(where)
            .order_by(videos.c.created_at.desc(), videos.c.id.desc())
            .limit(page_size)
            .offset(page_size * (page - 1))
        )
        records = await self._enrich([dict(row) for row in rows])
        return records, int(total or 0)

    async def _enrich(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not records:
            return records
        ids = [record["id"] for record in records]

        category_rows = await fetch_all_with_retry(
            sa.select(video_categories.c.video_id, video_categories.c.name)
            .where(video_categories.c.video_id.in_(ids))
            .order_by(video_categories.c.name)
        )
        viewer_rows = await fetch_all_with_retry(
            sa.select(video_viewers.c.video_id, video_viewers.c.user_id)
            .where(video_viewers.c.video_id.in_(ids))
            .order_by(video_viewers.c.user_id)
        )

        by_id = {record["id"]: record for record in records}
        for record in records:
            record["categories"] = []
            record["assigned_viewer_ids"] = []
        for row in category_rows:
            by_id[row["video_id"]]["categories"].append(row["name"])
        for row in viewer_rows:
            by_id[row["video_id"]]["assigned_viewer_ids"].append(row["user_id"])
        return records

    async def update_fields(self, video_id: int, **fields) -> bool:
        """
        Update columns of one record.

        Returns False, without raising, when the record no longer exists.
        """
        values = _check_fields(fields)
        row = await fetch_one_with_retry(
            videos.update().where(videos.c.id == video_id).values(**values).returning(videos.c.id)
        )
        if row is None:
            logger.debug(f"Update skipped, video {video_id} no longer exists")
            return False
        return True

    async def bulk_update(self, where_processing_in: Sequence[str], **fields) -> int:
        """Update every record whose processing_status is in the given set; returns the count."""
        values = _check_fields(fields)
        statuses = [s.value if hasattr(s, "value") else s for s in where_processing_in]
        predicate = videos.c.processing_status.in_(statuses)

        async with database.transaction():
            count = await fetch_val_with_retry(sa.select(sa.func.count()).select_from(videos).where(predicate))
            if count:
                await db_execute_with_retry(videos.update().where(predicate).values(**values))
        return int(count or 0)

    async def delete(self, video_id: int) -> bool:
        """Remove a record and its join rows. Returns False if it was already gone."""
        async with database.transaction():
            await db_execute_with_retry(video_viewers.delete().where(video_viewers.c.video_id == video_id))
            await db_execute_with_retry(video_categories.delete().where(video_categories.c.video_id == video_id))
            row = await fetch_one_with_retry(videos.delete().where(videos.c.id == video_id).returning(videos.c.id))
        if row is None:
            return False
        logger.info(f"Deleted video {video_id}")
        return True

    async def set_assigned_viewers(self, video_id: int, viewer_ids: Iterable[int]) -> List[int]:
        """Replace the viewers assigned to a video; unknown or non-viewer ids are ignored."""
        requested = list(dict.fromkeys(int(viewer_id) for viewer_id in viewer_ids))
        valid: List[int] = []
        if requested:
            rows = await fetch_all_with_retry(
                sa.select(users.c.id).where(
                    users.c.id.in_(requested),
                    users.c.role == UserRole.VIEWER.value,
                    users.c.revoked_at.is_(None),
                )
            )
            found = {row["id"] for row in rows}
            valid = [viewer_id for viewer_id in requested if viewer_id in found]

        async with database.transaction():
            await db_execute_with_retry(video_viewers.delete().where(video_viewers.c.video_id == video_id))
            for viewer_id in valid:
                await db_execute_with_retry(video_viewers.insert().values(video_id=video_id, user_id=viewer_id))
            await db_execute_with_retry(
                videos.update().where(videos.c.id == video_id).values(updated_at=datetime.now(timezone.utc))
            )
        return valid

    async def flagged_reasons(self) -> List[str]:
        rows = await fetch_all_with_retry(
            sa.select(videos.c.flagged_reason).where(
                videos.c.sensitivity_status == SensitivityStatus.FLAGGED.value
            )
        )
        return [row["flagged_reason"] or "" for row in rows]

    async def count(self, sensitivity: Optional[str] = None) -> int:
        query = sa.select(sa.func.count()).select_from(videos)
        if sensitivity is not None:
            query = query.where(videos.c.sensitivity_status == sensitivity)
        return int(await fetch_val_with_retry(query) or 0)
