"""
User Notifications

Fire-and-forget notification records produced by order transitions,
acknowledged only by their recipient.
"""

from .models import Notification, NotificationType, NotificationListResponse
from .service import (
    NotificationService,
    NotificationServiceError,
    NotificationNotFoundError,
    NotificationAccessError,
)

__all__ = [
    "Notification",
    "NotificationType",
    "NotificationListResponse",
    "NotificationService",
    "NotificationServiceError",
    "NotificationNotFoundError",
    "NotificationAccessError",
]
