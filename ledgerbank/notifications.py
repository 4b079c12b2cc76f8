"""
Notification Dispatch Module

Delivers owner-facing alerts (transaction confirmations, loan decisions,
account changes) through pluggable channel providers. Delivery happens after
the underlying change has committed and is best-effort: a failing channel
raises DependencyError for the caller to log, never to undo the change.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import uuid

import requests

from .storage import StorageInterface, StorageRecord
from .exceptions import DependencyError, NotFoundError, AuthorizationError
from .logging_config import get_logger


class NotificationType(Enum):
    """Types of notifications"""
    TRANSACTION = "transaction"
    LOAN = "loan"
    ACCOUNT = "account"
    SECURITY = "security"
    GENERAL = "general"


@dataclass
class Notification(StorageRecord):
    """Notification addressed to one user"""
    user_id: str
    notification_type: NotificationType
    title: str
    message: str
    link: Optional[str] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['notification_type'] = self.notification_type.value
        result['read_at'] = self.read_at.isoformat() if self.read_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        data = dict(data)
        data['notification_type'] = NotificationType(data['notification_type'])
        if data.get('read_at'):
            data['read_at'] = datetime.fromisoformat(data['read_at'])
        return super().from_dict(data)


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass

    def close(self) -> None:
        """Release any resources held by the provider"""
        pass


class LogChannelProvider(ChannelProvider):
    """Logging channel provider for development"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("ledgerbank.notifications")

    def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"Notification to {notification.user_id}: "
            f"{notification.title} | {notification.message[:100]}"
        )
        return True


class InAppChannelProvider(ChannelProvider):
    """In-app notification provider; the stored record is what owners list and mark read"""

    def __init__(self, storage: StorageInterface, table: str = "notifications"):
        self.storage = storage
        self.table = table

    def send(self, notification: Notification) -> bool:
        self.storage.save(self.table, notification.id, notification.to_dict())
        return True


class WebhookChannelProvider(ChannelProvider):
    """Webhook channel provider for external integrations"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout
        self.session = requests.Session()

    def send(self, notification: Notification) -> bool:
        """Send notification via webhook POST"""
        payload = {
            "notification_id": notification.id,
            "type": notification.notification_type.value,
            "user_id": notification.user_id,
            "title": notification.title,
            "message": notification.message,
            "link": notification.link,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }

        response = self.session.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        return 200 <= response.status_code < 300

    def close(self) -> None:
        self.session.close()


class NotificationDispatcher:
    """
    Fans a notification out to every registered channel provider and serves
    the in-app inbox.
    """

    def __init__(self, storage: StorageInterface,
                 providers: Optional[List[ChannelProvider]] = None,
                 table: str = "notifications"):
        self.storage = storage
        self.table = table
        self.logger = get_logger("ledgerbank.notifications")
        if providers is None:
            providers = [InAppChannelProvider(storage, table), LogChannelProvider(self.logger)]
        self.providers = providers

    def register_provider(self, provider: ChannelProvider) -> None:
        self.providers.append(provider)

    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        link: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """
        Deliver a notification through every provider.

        Every provider is attempted even if an earlier one fails.

        Raises:
            DependencyError: If any provider failed or reported non-delivery
        """
        now = datetime.now(timezone.utc)
        notification = Notification(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            link=link,
            metadata=metadata or {}
        )

        failures = []
        for provider in self.providers:
            name = type(provider).__name__
            try:
                if not provider.send(notification):
                    failures.append(f"{name}: not delivered")
            except Exception as e:
                failures.append(f"{name}: {e}")

        if failures:
            raise DependencyError(f"Notification delivery failed ({'; '.join(failures)})")
        return notification

    def list_notifications(self, user_id: str, unread_only: bool = False,
                           limit: int = 50) -> List[Notification]:
        """Get a user's in-app notifications, newest first"""
        filters: Dict[str, Any] = {"user_id": user_id}
        if unread_only:
            filters["is_read"] = False

        notifications = [Notification.from_dict(data) for data in self.storage.find(self.table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def unread_count(self, user_id: str) -> int:
        return len(self.storage.find(self.table, {"user_id": user_id, "is_read": False}))

    def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """Mark one of the user's notifications as read"""
        data = self.storage.load(self.table, notification_id)
        if not data:
            raise NotFoundError("Notification not found")

        notification = Notification.from_dict(data)
        if notification.user_id != user_id:
            raise AuthorizationError("Notification belongs to another user")

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.now(timezone.utc)
            notification.updated_at = notification.read_at
            self.storage.save(self.table, notification.id, notification.to_dict())
        return notification

    def close(self) -> None:
        for provider in self.providers:
            provider.close()
