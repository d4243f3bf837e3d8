from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    id: str
    user_id: str
    message: str
    type: NotificationType = NotificationType.INFO
    read: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationListResponse(BaseModel):
    user_id: str
    notifications: list[Notification]
    unread_count: int
