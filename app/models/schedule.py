from typing import List, Optional

from app.models.notification import CamelModel


class ScheduleResponse(CamelModel):
    id: str
    notification_id: str
    channel_id: str
    cron_expression: Optional[str] = None
    enabled: bool
    last_run: Optional[str] = None
    next_run: Optional[str] = None
    description: Optional[str] = None


class ScheduleList(CamelModel):
    data: List[ScheduleResponse]


class ScheduleCreate(CamelModel):
    notification_id: Optional[str] = None
    cron_expression: Optional[str] = None
    channel_id: Optional[str] = None


class ScheduleToggle(CamelModel):
    enabled: bool
