from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from api.common import ensure_utc
from api.enums import ProcessingStatus, SensitivityStatus, UserRole

MAX_TITLE_LENGTH = 255
MAX_DESCRIPTION_LENGTH = 5000
MAX_ASSIGNED_VIEWERS = 500


class CamelModel(BaseModel):
    """Serialized with camelCase keys; accepts either form on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VideoOwner(CamelModel):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None


class VideoResponse(CamelModel):
    id: int
    owner: VideoOwner
    title: str
    description: str = ""
    categories: List[str] = []
    storage_reference: str
    size: int = 0
    processing_status: ProcessingStatus
    sensitivity_status: SensitivityStatus
    flagged_reason: str = ""
    thumbnail_path: Optional[str] = None
    views: int = 0
    assigned_viewer_ids: List[int] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("description", "flagged_reason", mode="before")
    @classmethod
    def default_empty(cls, v):
        return v if v is not None else ""

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def as_utc(cls, v):
        return ensure_utc(v)

    @classmethod
    def from_record(cls, record: dict) -> "VideoResponse":
        """Build from a VideoStore record dict."""
        return cls(
            owner=VideoOwner(
                id=record["owner_id"],
                name=record.get("owner_name"),
                email=record.get("owner_email"),
            ),
            **{key: value for key, value in record.items() if key in cls.model_fields},
        )


class VideoListResponse(CamelModel):
    videos: List[VideoResponse]
    page: int
    pages: int


class ReasonCount(CamelModel):
    name: str
    count: int


class AnalyticsResponse(CamelModel):
    total_videos: int
    flagged_videos: int
    safe_videos: int
    reason_data: List[ReasonCount]


class AssignRequest(CamelModel):
    viewer_ids: List[int] = Field(..., max_length=MAX_ASSIGNED_VIEWERS)


class AssignResponse(CamelModel):
    id: int
    assigned_viewer_ids: List[int]


class ReprocessResponse(CamelModel):
    id: int
    processing_status: ProcessingStatus
    sensitivity_status: SensitivityStatus
    message: str


class ViewerResponse(CamelModel):
    id: int
    name: str
    email: str


class UserResponse(CamelModel):
    id: int
    name: str
    email: str
    role: UserRole
