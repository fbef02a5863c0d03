import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from time_service import TimeService


@dataclass
class ScheduledNotification:
    """A notification waiting to be delivered"""
    notification_id: int
    title: str
    body: str
    at: datetime


class NotificationService:
    """Schedule/cancel interface used by the nudge scheduler.

    Ids are fixed per nudge type, so scheduling an id that is already pending
    replaces it.
    """

    async def request_permission(self) -> bool:
        raise NotImplementedError

    async def schedule(self, notification_id: int, title: str, body: str, at: datetime):
        raise NotImplementedError

    async def cancel(self, notification_id: int):
        raise NotImplementedError


def print_delivery(title: str, body: str):
    print(f"🔔 {title}: {body}")


class LocalNotificationService(NotificationService):
    """In-process notifications delivered by asyncio tasks at their scheduled time"""

    def __init__(self, time_service: TimeService, deliver: Optional[Callable] = None, granted: bool = True):
        self.time_service = time_service
        self.deliver = deliver or print_delivery
        self.granted = granted
        self.pending: Dict[int, ScheduledNotification] = {}
        self.delivered: List[ScheduledNotification] = []
        self._tasks: Dict[int, asyncio.Task] = {}

    async def request_permission(self) -> bool:
        return self.granted

    async def schedule(self, notification_id: int, title: str, body: str, at: datetime):
        if not self.granted:
            raise PermissionError("Notifications are not permitted")
        await self.cancel(notification_id)
        notification = ScheduledNotification(notification_id, title, body, at)
        self.pending[notification_id] = notification
        self._tasks[notification_id] = asyncio.create_task(self._deliver_at(notification))
        print(f"🔔 Scheduled notification {notification_id} '{title}' for {at}")

    async def cancel(self, notification_id: int):
        self.pending.pop(notification_id, None)
        task = self._tasks.pop(notification_id, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _deliver_at(self, notification: ScheduledNotification):
        delay = (notification.at - self.time_service.now()).total_seconds()
        try:
            if delay > 0:
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        self.pending.pop(notification.notification_id, None)
        self._tasks.pop(notification.notification_id, None)
        self.delivered.append(notification)
        try:
            result = self.deliver(notification.title, notification.body)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            print(f"Error delivering notification {notification.notification_id}: {e}")

    async def cancel_all(self):
        for notification_id in list(self._tasks):
            await self.cancel(notification_id)
