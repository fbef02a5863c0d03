import asyncio
from datetime import timedelta

import pytest

from notification_service import LocalNotificationService


@pytest.mark.asyncio
async def test_due_notification_is_delivered(clock):
    received = []
    service = LocalNotificationService(clock, deliver=lambda title, body: received.append((title, body)))
    await service.schedule(1004, "Nice one", "You're right on pace.", clock.now())
    await asyncio.sleep(0.01)
    assert received == [("Nice one", "You're right on pace.")]
    assert service.pending == {}
    assert [n.notification_id for n in service.delivered] == [1004]


@pytest.mark.asyncio
async def test_cancel_and_replace(clock):
    received = []
    service = LocalNotificationService(clock, deliver=lambda title, body: received.append(title))
    later = clock.now() + timedelta(hours=1)
    await service.schedule(1002, "first", "", later)
    await service.schedule(1002, "second", "", later)
    assert service.pending[1002].title == "second"
    await service.cancel(1002)
    await service.cancel_all()
    await asyncio.sleep(0.01)
    assert service.pending == {}
    assert received == []


@pytest.mark.asyncio
async def test_denied_permission_raises(clock):
    service = LocalNotificationService(clock, granted=False)
    assert not await service.request_permission()
    with pytest.raises(PermissionError):
        await service.schedule(1001, "Morning Reset", "", clock.now())
