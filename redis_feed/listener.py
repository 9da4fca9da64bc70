"""
Broker-Level Listeners

A Listener owns one redis-py PubSub and pumps its messages into a handler.
It runs inside a background task created by RedisPubSubManager and stops
when its stop token is set or when the broker reports it is no longer
subscribed to anything.

Messages are handled one at a time, so a single listener delivers in the
order the broker pushed them. Handler and hook errors are reported and the
loop carries on; broker errors end the loop and propagate to the task.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from .errors import ErrorReporter
from .messages import ChannelMessage, PatternMessage
from .serializer import DecodeResult

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Awaitable[None], None]]
Hook = Callable[[str], Union[Awaitable[None], None]]
Decoder = Callable[[str], DecodeResult[Any]]


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


class Listener:
    """Base listener for exact-channel subscriptions (SUBSCRIBE)."""

    subscribe_type = "subscribe"
    unsubscribe_type = "unsubscribe"
    message_type = "message"

    def __init__(
        self,
        pubsub: PubSub,
        handler: Handler,
        errors: ErrorReporter,
        *,
        decode: Optional[Decoder] = None,
        on_subscribe: Optional[Hook] = None,
        on_unsubscribe: Optional[Hook] = None,
        poll_interval: float = 0.1,
    ) -> None:
        self._pubsub = pubsub
        self._handler = handler
        self._errors = errors
        self._decode = decode
        self._on_subscribe = on_subscribe
        self._on_unsubscribe = on_unsubscribe
        self._poll_interval = poll_interval
        self._stop = asyncio.Event()
        self._closed = False

    @property
    def pubsub(self) -> PubSub:
        return self._pubsub

    @property
    def is_subscribed(self) -> bool:
        return bool(self._pubsub.subscribed)

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Ask run() to return at its next idle poll."""
        self._stop.set()

    # ── Broker commands ───────────────────────────────────────────────────────

    async def subscribe(self, *targets: str) -> None:
        await self._pubsub.subscribe(*targets)

    async def unsubscribe(self, *targets: str) -> None:
        await self._pubsub.unsubscribe(*targets)

    async def close(self) -> None:
        """Release the PubSub connection back to the pool. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.aclose()
        except (RedisError, OSError) as exc:
            self._errors.report("close pubsub", exc)

    # ── Message pump ──────────────────────────────────────────────────────────

    async def run(self) -> None:
        """
        Deliver messages until stopped or fully unsubscribed.

        Raises:
            RedisError: If the broker connection breaks.
        """
        while True:
            message = await self._pubsub.get_message(
                ignore_subscribe_messages=False,
                timeout=self._poll_interval,
            )
            if message is None:
                if self._stop.is_set() or not self.is_subscribed:
                    return
                # Yield to the event loop briefly before polling again
                await asyncio.sleep(0)
                continue
            await self._dispatch(message)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == self.message_type:
            await self._deliver(message)
        elif kind == self.subscribe_type:
            target = _text(message.get("channel"))
            logger.info("Subscribed to %s", target)
            await self._call_hook(self._on_subscribe, target, "on_subscribe")
        elif kind == self.unsubscribe_type:
            target = _text(message.get("channel"))
            logger.info("Unsubscribed from %s", target)
            await self._call_hook(self._on_unsubscribe, target, "on_unsubscribe")

    async def _deliver(self, message: dict[str, Any]) -> None:
        raw = message.get("data")
        if raw is None:
            return
        channel = _text(message.get("channel"))
        payload: Any = _text(raw)
        if self._decode is not None:
            result = self._decode(payload)
            if not result.ok or result.value is None:
                return
            payload = result.value
        logger.debug("Message on '%s'", channel)
        await self._invoke(self._build(message, channel, payload), f"handle message on '{channel}'")

    def _build(self, message: dict[str, Any], channel: str, payload: Any) -> Any:
        return payload

    async def _invoke(self, value: Any, operation: str) -> None:
        try:
            result = self._handler(value)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._errors.report(operation, exc)

    async def _call_hook(self, hook: Optional[Hook], target: str, name: str) -> None:
        if hook is None:
            return
        try:
            result = hook(target)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self._errors.report(f"{name} callback for {target}", exc)


class ChannelListener(Listener):
    """Single channel: the handler receives the payload itself."""


class MultiChannelListener(Listener):
    """Several channels on one connection: the handler receives ChannelMessage."""

    def _build(self, message: dict[str, Any], channel: str, payload: Any) -> Any:
        return ChannelMessage(channel=channel, message=payload)


class PatternListener(Listener):
    """Glob pattern (PSUBSCRIBE): the handler receives PatternMessage."""

    subscribe_type = "psubscribe"
    unsubscribe_type = "punsubscribe"
    message_type = "pmessage"

    async def subscribe(self, *targets: str) -> None:
        await self._pubsub.psubscribe(*targets)

    async def unsubscribe(self, *targets: str) -> None:
        await self._pubsub.punsubscribe(*targets)

    def _build(self, message: dict[str, Any], channel: str, payload: Any) -> Any:
        return PatternMessage(
            pattern=_text(message.get("pattern")),
            channel=channel,
            message=payload,
        )
