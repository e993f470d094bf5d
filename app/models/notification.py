# file: models/notification.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from app.database.models import NotificationChannel, NotificationStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _upper(value):
    if isinstance(value, str):
        value = value.strip().upper()
        return value or None
    return value


class NotificationRequest(CamelModel):
    type: Optional[str] = None
    channel: Optional[NotificationChannel] = None

    @field_validator("channel", mode="before")
    @classmethod
    def normalize_channel(cls, v):
        return _upper(v)


class SendMatchingRequest(CamelModel):
    status: Optional[NotificationStatus] = None
    type: Optional[str] = None
    channel: Optional[NotificationChannel] = None
    user_id: Optional[int] = None
    message: Optional[str] = None
    notification_ids: Optional[List[int]] = None

    @field_validator("status", "channel", mode="before")
    @classmethod
    def normalize_enums(cls, v):
        return _upper(v)


class UserSummary(CamelModel):
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class NotificationResponse(CamelModel):
    id: int
    user_id: int
    notification_type: str
    channel: NotificationChannel
    status: NotificationStatus
    title: str
    message: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    user: Optional[UserSummary] = None


class PageMeta(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int


class NotificationPage(CamelModel):
    data: List[NotificationResponse]
    meta: PageMeta


class DispatchStatsResponse(CamelModel):
    published: int
    sent: int
    failed: int
    skipped: int
    total: int


class GenerateResponse(CamelModel):
    message: str
    count: int
    warnings: List[str] = []


class SendMatchingResponse(CamelModel):
    message: str
    stats: DispatchStatsResponse


class TriggerResponse(CamelModel):
    success: bool
    message: str
    generated: int
    warnings: List[str] = []
    stats: DispatchStatsResponse
