from datetime import datetime
from typing import List, Optional

from app.database.models import NotificationChannel
from app.models.notification import CamelModel


class NotificationTemplateResponse(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    template: str
    channels: List[str]
    updated_at: Optional[datetime] = None


class NotificationTemplateUpdate(CamelModel):
    template: Optional[str] = None
    channels: Optional[List[NotificationChannel]] = None
    name: Optional[str] = None
