"""Notifier tests."""

import pytest

from pipewright.notify import ResourceChange
from pipewright.notify.inmemory import InMemoryNotifier


@pytest.mark.asyncio
async def test_inmemory_notifier_basic():
    """Test basic InMemoryNotifier publish/subscribe."""
    notifier = InMemoryNotifier()

    change = ResourceChange(
        resource_type="activity",
        action="update",
        resource_id="act-123",
        data={"status": "Success"},
    )
    await notifier.publish(change)

    received = False
    async for event in notifier.subscribe(lifespan=1.0):
        assert event.resource_id == "act-123"
        assert event.data["status"] == "Success"
        received = True
        break

    assert received
    assert notifier.published == [change]


@pytest.mark.asyncio
async def test_subscribe_ends_with_lifespan():
    notifier = InMemoryNotifier()

    events = [event async for event in notifier.subscribe(lifespan=0.2)]

    assert events == []


def test_resource_change_json_round_trip():
    change = ResourceChange(resource_type="pipeline", action="create", resource_id="p-1")

    restored = ResourceChange.from_json(change.to_json())

    assert restored == change
    assert restored.timestamp > 0


@pytest.mark.asyncio
async def test_redis_notifier_import():
    """Test Redis notifier can be imported (even if redis not available)."""
    try:
        from pipewright.notify.redis import RedisNotifier

        try:
            notifier = RedisNotifier()
            assert notifier.host == "localhost"
            assert notifier.port == 6379
            assert notifier.channel == "pipewright:events"
        except ImportError:
            pass
    except ImportError:
        pytest.fail("RedisNotifier should be importable")
