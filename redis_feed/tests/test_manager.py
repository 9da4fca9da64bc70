"""
Tests for redis_feed.manager

RedisPubSubManager on the mock_redis client: lifecycle, publishing,
subscribing, delivery and unsubscribing.
"""
import asyncio
import json
from dataclasses import dataclass
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import confirmation, fast_config, message, pmessage, script
from redis_feed.errors import BrokerConnectionError, PubSubError, SubscriptionError
from redis_feed.manager import RedisPubSubManager
from redis_feed.messages import ChannelMessage, PatternMessage


@dataclass
class Event:
    type: str
    id: int


def noop(_):
    pass


# ── Lifecycle ─────────────────────────────────────────────────────────────────

async def test_not_initialized_rejects_calls(mock_redis):
    manager = RedisPubSubManager.from_config(fast_config())

    assert not manager.is_initialized
    with pytest.raises(PubSubError, match="not initialized"):
        manager.publish("events", "x")
    with pytest.raises(PubSubError):
        await manager.send("events", "x")
    with pytest.raises(PubSubError):
        await manager.subscribe("events", noop)
    with pytest.raises(PubSubError):
        await manager.subscribe_pattern("events:*", noop)


async def test_initialize_failure_propagates(mock_redis):
    client, _ = mock_redis
    client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
    manager = RedisPubSubManager.from_config(fast_config())

    with pytest.raises(BrokerConnectionError):
        await manager.initialize()
    assert not manager.is_initialized


async def test_shutdown_cancels_everything_and_is_idempotent(manager, mock_redis):
    client, pubsubs = mock_redis
    first = await manager.subscribe("a", noop)
    second = await manager.subscribe_pattern("b:*", noop)

    await manager.shutdown()
    await manager.shutdown()

    assert first.is_cancelled and second.is_cancelled
    assert manager.active_subscriptions == 0
    assert not manager.is_initialized
    client.aclose.assert_awaited_once()
    for pubsub in pubsubs:
        pubsub.aclose.assert_awaited_once()

    with pytest.raises(PubSubError):
        await manager.subscribe("a", noop)


async def test_shutdown_during_subscribe_closes_the_pubsub(manager, mock_redis):
    client, pubsubs = mock_redis
    release = asyncio.Event()
    make_pubsub = client.pubsub.side_effect

    async def held_subscribe(*_):
        await release.wait()

    def slow_pubsub(**kwargs):
        pubsub = make_pubsub(**kwargs)
        pubsub.subscribe = AsyncMock(side_effect=held_subscribe)
        return pubsub

    client.pubsub.side_effect = slow_pubsub
    pending = asyncio.create_task(manager.subscribe("events", noop))
    while not pubsubs or not pubsubs[0].subscribe.await_count:
        await asyncio.sleep(0)

    await manager.shutdown()
    release.set()

    with pytest.raises(PubSubError, match="shut down during subscribe"):
        await pending
    pubsubs[0].aclose.assert_awaited_once()
    assert manager.active_subscriptions == 0


async def test_shutdown_flushes_pending_publishes(manager, mock_redis):
    client, _ = mock_redis
    manager.publish("events", "last words")

    await manager.shutdown()

    client.publish.assert_awaited_once_with("events", "last words")


async def test_context_manager(mock_redis):
    client, _ = mock_redis
    async with RedisPubSubManager.from_config(fast_config()) as manager:
        assert manager.is_initialized
        await manager.subscribe("events", noop)
        assert manager.active_subscriptions == 1

    assert manager.active_subscriptions == 0
    client.aclose.assert_awaited_once()


# ── Publish ───────────────────────────────────────────────────────────────────

async def test_publish_is_fire_and_forget(manager, mock_redis):
    client, _ = mock_redis
    task = manager.publish("events", "hello")

    assert await task == 1
    client.publish.assert_awaited_once_with("events", "hello")


async def test_publish_many(manager, mock_redis):
    client, _ = mock_redis
    tasks = manager.publish_many(["a", "b"], "hello")

    assert [await t for t in tasks] == [1, 1]
    assert client.publish.await_count == 2


async def test_send_returns_receivers(manager, mock_redis):
    client, _ = mock_redis
    client.publish = AsyncMock(return_value=3)

    assert await manager.send("events", "hello") == 3


async def test_send_failure_is_reported(manager, mock_redis, reporter):
    client, _ = mock_redis
    client.publish = AsyncMock(side_effect=RedisConnectionError("gone"))

    assert await manager.send("events", "hello") == 0
    assert reporter.operations == ["publish to 'events'"]


async def test_publish_object_serializes(manager, mock_redis):
    client, _ = mock_redis
    task = manager.publish_object("events", Event(type="join", id=42))
    await task

    channel, payload = client.publish.await_args.args
    assert channel == "events"
    assert json.loads(payload) == {"type": "join", "id": 42}


async def test_publish_object_unserializable_sends_nothing(manager, mock_redis, reporter):
    client, _ = mock_redis

    assert manager.publish_object("events", object()) is None
    client.publish.assert_not_awaited()
    assert reporter.operations == ["serialize object"]


# ── Subscribe ─────────────────────────────────────────────────────────────────

async def test_subscribe_failure_raises_and_leaves_no_handle(manager, mock_redis, reporter):
    client, pubsubs = mock_redis
    make_pubsub = client.pubsub.side_effect

    def failing_pubsub(**kwargs):
        pubsub = make_pubsub(**kwargs)
        pubsub.subscribe = AsyncMock(side_effect=RedisConnectionError("down"))
        return pubsub

    client.pubsub.side_effect = failing_pubsub

    with pytest.raises(SubscriptionError) as exc_info:
        await manager.subscribe("events", noop)

    assert exc_info.value.target == "channel 'events'"
    assert manager.active_subscriptions == 0
    pubsubs[0].aclose.assert_awaited_once()
    assert reporter.operations == ["subscribe to channel 'events'"]


async def test_handler_receives_payloads_in_order(manager, mock_redis, wait_until):
    _, pubsubs = mock_redis
    received = []
    await manager.subscribe("events", received.append)
    script(pubsubs[0], *(message("events", f"m{i}") for i in range(5)))

    assert await wait_until(lambda: len(received) == 5)
    assert received == ["m0", "m1", "m2", "m3", "m4"]


async def test_async_handler_is_awaited(manager, mock_redis, wait_until):
    _, pubsubs = mock_redis
    received = []

    async def handler(payload):
        received.append(payload)

    await manager.subscribe("events", handler)
    script(pubsubs[0], message("events", "hello"))

    assert await wait_until(lambda: received == ["hello"])


async def test_typed_subscription_decodes(manager, mock_redis, wait_until):
    _, pubsubs = mock_redis
    received = []
    await manager.subscribe("events", received.append, message_type=Event)
    script(pubsubs[0], message("events", '{"type": "join", "id": 42}'))

    assert await wait_until(lambda: received == [Event(type="join", id=42)])


async def test_undecodable_payload_is_skipped(manager, mock_redis, reporter, wait_until):
    _, pubsubs = mock_redis
    received = []
    await manager.subscribe("events", received.append, message_type=dict)
    script(pubsubs[0], message("events", "{bad"), message("events", '{"id": 2}'))

    assert await wait_until(lambda: received == [{"id": 2}])
    assert reporter.operations == ["deserialize dict"]


async def test_handler_error_does_not_stop_delivery(manager, mock_redis, reporter, wait_until):
    _, pubsubs = mock_redis
    received = []

    def handler(payload):
        if payload == "bad":
            raise ValueError("handler blew up")
        received.append(payload)

    sub = await manager.subscribe("events", handler)
    script(pubsubs[0], message("events", "bad"), message("events", "good"))

    assert await wait_until(lambda: received == ["good"])
    assert reporter.operations == ["handle message on 'events'"]
    assert sub.is_active


async def test_subscribe_hooks(manager, mock_redis, reporter, wait_until):
    _, pubsubs = mock_redis
    subscribed, unsubscribed = [], []

    async def on_unsubscribe(channel):
        unsubscribed.append(channel)

    await manager.subscribe(
        "events", noop, on_subscribe=subscribed.append, on_unsubscribe=on_unsubscribe
    )
    script(pubsubs[0], confirmation("subscribe", "events"), confirmation("unsubscribe", "events"))

    assert await wait_until(lambda: subscribed == ["events"] and unsubscribed == ["events"])
    assert reporter.calls == []


async def test_failing_hook_is_reported(manager, mock_redis, reporter, wait_until):
    _, pubsubs = mock_redis

    def on_subscribe(_):
        raise RuntimeError("hook failed")

    await manager.subscribe("events", noop, on_subscribe=on_subscribe)
    script(pubsubs[0], confirmation("subscribe", "events"))

    assert await wait_until(lambda: reporter.operations == ["on_subscribe callback for events"])


async def test_subscribe_many_delivers_channel_messages(manager, mock_redis, wait_until):
    _, pubsubs = mock_redis
    received = []
    sub = await manager.subscribe_many(["a", "b", "a"], received.append)
    script(pubsubs[0], message("b", "hi"))

    assert sub.channels == ("a", "b")
    pubsubs[0].subscribe.assert_awaited_once_with("a", "b")
    assert await wait_until(lambda: len(received) == 1)
    assert isinstance(received[0], ChannelMessage)
    assert received[0].channel == "b"
    assert received[0].message == "hi"
    assert received[0].timestamp > 0


async def test_subscribe_many_requires_channels(manager):
    with pytest.raises(ValueError):
        await manager.subscribe_many([], noop)


async def test_subscribe_pattern_delivers_pattern_messages(manager, mock_redis, wait_until):
    _, pubsubs = mock_redis
    received = []
    await manager.subscribe_pattern("events:*", received.append, message_type=Event)
    script(pubsubs[0], pmessage("events:*", "events:lobby", '{"type": "leave", "id": 7}'))

    assert await wait_until(lambda: len(received) == 1)
    assert received[0] == PatternMessage(
        pattern="events:*",
        channel="events:lobby",
        message=Event(type="leave", id=7),
        timestamp=received[0].timestamp,
    )


async def test_connection_drop_cancels_implicitly(manager, mock_redis, reporter, wait_until):
    _, pubsubs = mock_redis
    sub = await manager.subscribe("events", noop)
    script(pubsubs[0], RedisConnectionError("connection lost"))

    assert await wait_until(lambda: sub.task.done())
    assert sub.is_cancelled
    assert not sub.is_active
    assert manager.active_subscriptions == 0
    assert reporter.operations == ["listen on channel 'events'"]
    pubsubs[0].aclose.assert_awaited_once()


# ── Unsubscribe ───────────────────────────────────────────────────────────────

async def test_unsubscribe_channel_cancels_its_handles(manager):
    first = await manager.subscribe("events", noop)
    second = await manager.subscribe("events", noop)
    other = await manager.subscribe("other", noop)

    assert await manager.unsubscribe("events") == 2

    assert first.is_cancelled and second.is_cancelled
    assert not other.is_cancelled
    assert manager.subscriptions() == [other]


async def test_unsubscribe_narrows_multi_channel_handle(manager):
    sub = await manager.subscribe_many(["a", "b"], noop)

    assert await manager.unsubscribe("a") == 1
    assert not sub.is_cancelled
    assert sub.active_channels == ("b",)

    assert await manager.unsubscribe("b") == 1
    assert sub.is_cancelled


async def test_unsubscribe_unknown_channel(manager):
    assert await manager.unsubscribe("nobody") == 0


async def test_unsubscribe_all(manager):
    subs = [
        await manager.subscribe("a", noop),
        await manager.subscribe_many(["b", "c"], noop),
        await manager.subscribe_pattern("d:*", noop),
    ]
    assert manager.active_subscriptions == 3

    await manager.unsubscribe_all()

    assert all(sub.is_cancelled for sub in subs)
    assert manager.active_subscriptions == 0
    assert manager.is_initialized


# ── Cache ─────────────────────────────────────────────────────────────────────

async def test_get_cache_returns_one_instance_per_name(manager):
    players = manager.get_cache("players", Event)

    assert manager.get_cache("players", Event) is players
    assert manager.get_cache("scores", int) is not players
    assert players.key_prefix == "feed:cache:players:"
    assert players.value_type is Event


async def test_cache_shares_the_manager_client(manager, mock_redis):
    client, _ = mock_redis
    client.set = AsyncMock(return_value=True)
    players = manager.get_cache("players", Event)

    assert await players.put("ann", Event("join", 1), ttl=30)

    key, payload = client.set.await_args.args
    assert key == "feed:cache:players:ann"
    assert json.loads(payload) == {"type": "join", "id": 1}


async def test_shutdown_closes_caches(manager):
    players = manager.get_cache("players", Event)

    await manager.shutdown()

    assert players.is_closed
    assert await players.get("ann") is None
