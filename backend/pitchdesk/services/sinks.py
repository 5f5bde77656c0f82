"""Notification sinks.

A sink delivers one notification to one destination and raises on failure;
the dispatcher owns retrying and swallowing those failures.
"""
from abc import ABC, abstractmethod

from pitchdesk.models.schemas import Notification
from pitchdesk.services.store import WorkflowStore


class NotificationSink(ABC):
    name = "sink"

    @abstractmethod
    async def create_notification(self, notification: Notification) -> None: ...


class StoreNotificationSink(NotificationSink):
    """Writes to the notifications table, which backs the in-app inbox."""
    name = "store"

    def __init__(self, store: WorkflowStore):
        self.store = store

    async def create_notification(self, notification: Notification) -> None:
        await self.store.insert_notification(notification)
