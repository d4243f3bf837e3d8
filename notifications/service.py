import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from docstore import DocumentStoreError, InMemoryDocumentStore

from .models import Notification, NotificationType

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"


class NotificationServiceError(Exception):
    pass


class NotificationNotFoundError(NotificationServiceError):
    pass


class NotificationAccessError(NotificationServiceError):
    pass


class NotificationService:
    def __init__(self, store: Optional[InMemoryDocumentStore] = None):
        self.store = store or InMemoryDocumentStore()

    def notify(self, user_id: str, message: str,
               type: NotificationType = NotificationType.INFO) -> Optional[Notification]:
        """Append a notification; a failed write is logged, never raised."""
        try:
            data = self.store.create(NOTIFICATIONS, {
                "user_id": user_id,
                "message": message,
                "type": NotificationType(type),
                "read": False,
                "created_at": datetime.now(timezone.utc),
            })
        except DocumentStoreError as e:
            logger.error("Notification for user %s was not delivered: %s", user_id, e)
            return None
        return Notification(**data)

    def acknowledge(self, notification_id: str, user_id: Optional[str] = None) -> Notification:
        data = self.store.get(NOTIFICATIONS, notification_id)
        if not data:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        if user_id is not None and data["user_id"] != user_id:
            raise NotificationAccessError("Only the recipient can acknowledge a notification")
        if data["read"]:
            return Notification(**data)
        return Notification(**self.store.update(NOTIFICATIONS, notification_id, {"read": True}))

    def list_for_user(self, user_id: str, unread_only: bool = False) -> list[Notification]:
        filters = {"user_id": user_id}
        if unread_only:
            filters["read"] = False
        return [
            Notification(**n) for n in
            self.store.query(NOTIFICATIONS, filters, order_by="created_at", descending=True)
        ]

    def unread_count(self, user_id: str) -> int:
        return len(self.store.query(NOTIFICATIONS, {"user_id": user_id, "read": False}))

    def watch(self, user_id: str, callback: Callable[[list[Notification]], None]) -> Callable[[], None]:
        return self.store.subscribe(
            NOTIFICATIONS,
            lambda docs: callback([Notification(**n) for n in docs]),
            filters={"user_id": user_id},
            order_by="created_at",
            descending=True,
        )
