"""
Shared fixtures for redis_feed tests.

Broker I/O is replaced with AsyncMock (mock_redis) or an in-process
fakeredis server (fake_redis) — no live Redis required.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from redis_feed.config import RedisConfig
from redis_feed.errors import ErrorReporter
from redis_feed.manager import RedisPubSubManager


class RecordingReporter(ErrorReporter):
    """ErrorReporter that keeps (operation, error) pairs instead of logging."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = []

    def report(self, operation, error):
        self.calls.append((operation, error))

    @property
    def operations(self):
        return [operation for operation, _ in self.calls]


def fast_config(**overrides) -> RedisConfig:
    """Config with short poll/cancel intervals so tests finish quickly."""
    values = {"listener_poll_interval": 0.01, "cancel_timeout": 0.2}
    values.update(overrides)
    return RedisConfig(**values)


def script(pubsub, *messages):
    """Make pubsub.get_message() return messages in order, then None forever."""
    queue = list(messages)

    async def get_message(**_):
        if queue:
            item = queue.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return None

    pubsub.get_message = AsyncMock(side_effect=get_message)


def message(channel: str, data: str) -> dict:
    return {"type": "message", "pattern": None, "channel": channel.encode(), "data": data.encode()}


def pmessage(pattern: str, channel: str, data: str) -> dict:
    return {
        "type": "pmessage",
        "pattern": pattern.encode(),
        "channel": channel.encode(),
        "data": data.encode(),
    }


def confirmation(kind: str, target: str) -> dict:
    return {"type": kind, "pattern": None, "channel": target.encode(), "data": 1}


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def wait_until():
    """Poll a predicate until it is true or the timeout expires."""

    async def _wait(predicate, timeout: float = 2.0) -> bool:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() >= deadline:
                return False
            await asyncio.sleep(0.01)
        return True

    return _wait


@pytest.fixture
def mock_redis():
    """
    Patch redis_feed.connection.Redis so that Redis.from_url() returns an
    AsyncMock client. client.pubsub() hands out a fresh AsyncMock PubSub per
    call (subscribed=True, get_message -> None). Yields (client, pubsubs).
    """
    with patch("redis_feed.connection.Redis") as mock_cls:
        client = AsyncMock()
        client.ping = AsyncMock(return_value=True)
        client.publish = AsyncMock(return_value=1)

        pubsubs = []

        def make_pubsub(**_):
            pubsub = AsyncMock()
            pubsub.subscribed = True
            pubsub.get_message = AsyncMock(return_value=None)
            pubsubs.append(pubsub)
            return pubsub

        # pubsub() is synchronous in the real client, returns the PubSub object
        client.pubsub = MagicMock(side_effect=make_pubsub)

        mock_cls.from_url.return_value = client
        yield client, pubsubs


@pytest.fixture
async def manager(mock_redis, reporter):
    """An initialized RedisPubSubManager on the mocked client."""
    mgr = RedisPubSubManager.from_config(fast_config(), errors=reporter)
    await mgr.initialize()
    yield mgr
    await mgr.shutdown()
