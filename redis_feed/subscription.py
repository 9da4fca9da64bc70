"""
Subscription Handles

A handle is the caller's token for one live listener. It is created by
RedisPubSubManager and stays valid until cancel() (or manager shutdown, or
a dropped broker connection) retires it.

    created ──> active ──> cancelled

`is_cancelled` flips exactly once and is visible from every thread as soon
as cancel() or cancel_threadsafe() returns. Cancellation is best-effort:
broker errors while unsubscribing are reported, never raised, and the
handle ends up cancelled regardless.
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import TYPE_CHECKING, Optional

from .listener import Listener

if TYPE_CHECKING:
    from .manager import RedisPubSubManager

logger = logging.getLogger(__name__)


class Subscription:
    """Common lifecycle for every handle type."""

    def __init__(self, listener: Listener, manager: RedisPubSubManager) -> None:
        self._listener = listener
        self._manager = manager
        self._task: Optional[asyncio.Task[None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._teardown_task: Optional[asyncio.Task[None]] = None
        self._owns_close = False
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        raise NotImplementedError

    @property
    def subscriber(self) -> Listener:
        """The broker-level listener behind this handle."""
        return self._listener

    @property
    def task(self) -> Optional[asyncio.Task[None]]:
        return self._task

    @property
    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def is_active(self) -> bool:
        return (
            not self.is_cancelled
            and self._listener.is_subscribed
            and (self._task is None or not self._task.done())
        )

    def _bind(self, task: asyncio.Task[None]) -> None:
        self._task = task
        self._loop = task.get_loop()

    def _mark_cancelled(self) -> bool:
        """Flip the flag. Returns False if it was already set."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            return True

    # ── Cancellation ──────────────────────────────────────────────────────────

    async def cancel(self) -> None:
        """Unsubscribe and stop the listener task. Calling it again is a no-op."""
        if not self._mark_cancelled():
            return
        await self._teardown()

    def cancel_threadsafe(self, timeout: Optional[float] = None) -> None:
        """
        Cancel from a thread that is not running the subscription's loop.

        The handle reports cancelled immediately; teardown runs on the loop
        and this call waits for it at most `timeout` seconds (default: twice
        the manager's cancel timeout plus one second).
        """
        if not self._mark_cancelled():
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._teardown_task = loop.create_task(self._teardown())
            return

        future = asyncio.run_coroutine_threadsafe(self._teardown(), loop)
        if timeout is None:
            timeout = self._manager.cancel_timeout * 2 + 1.0
        try:
            future.result(timeout)
        except concurrent.futures.TimeoutError:
            logger.warning("Teardown of %s still running after %.1fs", self.name, timeout)

    async def _teardown(self) -> None:
        listener = self._listener
        task = self._task
        # From inside a handler the listener task closes the PubSub on its way out
        self._owns_close = task is None or task is not asyncio.current_task()

        # UNSUBSCRIBE before the stop token: the listener must still read the
        # confirmation and run on_unsubscribe.
        try:
            if listener.is_subscribed:
                await self._unsubscribe()
        except Exception as exc:
            self._manager.errors.report(f"unsubscribe {self.name}", exc)
        listener.stop()

        if self._owns_close:
            if task is not None:
                await self._stop_task(task)
            await listener.close()
        self._manager._forget(self)
        logger.info("Subscription to %s cancelled", self.name)

    async def _stop_task(self, task: asyncio.Task[None]) -> None:
        grace = self._manager.cancel_timeout
        _, pending = await asyncio.wait({task}, timeout=grace)
        if pending:
            logger.debug("Listener for %s did not stop in %.1fs, force-cancelling", self.name, grace)
            task.cancel()
            await asyncio.wait({task}, timeout=grace)

    async def _unsubscribe(self) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        state = "cancelled" if self.is_cancelled else ("active" if self.is_active else "inactive")
        return f"<{type(self).__name__} {self.name} {state}>"


class RedisSubscription(Subscription):
    """Handle for a single exact channel."""

    def __init__(self, channel: str, listener: Listener, manager: RedisPubSubManager) -> None:
        super().__init__(listener, manager)
        self._channel = channel

    @property
    def channel(self) -> str:
        return self._channel

    @property
    def name(self) -> str:
        return f"channel '{self._channel}'"

    async def _unsubscribe(self) -> None:
        await self._listener.unsubscribe(self._channel)


class MultiChannelSubscription(Subscription):
    """
    Handle for several channels sharing one listener.

    cancel(channel) drops a single channel and leaves the handle itself
    live; cancel() with no argument retires the whole handle.
    """

    def __init__(
        self,
        channels: list[str],
        listener: Listener,
        manager: RedisPubSubManager,
    ) -> None:
        super().__init__(listener, manager)
        self._channels = tuple(channels)
        self._dropped: set[str] = set()

    @property
    def channels(self) -> tuple[str, ...]:
        return self._channels

    @property
    def active_channels(self) -> tuple[str, ...]:
        """Channels not individually cancelled."""
        with self._lock:
            return tuple(c for c in self._channels if c not in self._dropped)

    @property
    def name(self) -> str:
        return f"channels {list(self._channels)}"

    async def cancel(self, channel: Optional[str] = None) -> None:
        if channel is None:
            await super().cancel()
            return
        with self._lock:
            self._dropped.add(channel)
        try:
            if self._listener.is_subscribed:
                await self._listener.unsubscribe(channel)
        except Exception as exc:
            self._manager.errors.report(f"unsubscribe channel '{channel}'", exc)
        self._manager._forget_channel(self, channel)

    async def _unsubscribe(self) -> None:
        await self._listener.unsubscribe(*self._channels)


class PatternSubscription(Subscription):
    """Handle for a glob-style pattern subscription (PSUBSCRIBE)."""

    def __init__(self, pattern: str, listener: Listener, manager: RedisPubSubManager) -> None:
        super().__init__(listener, manager)
        self._pattern = pattern

    @property
    def pattern(self) -> str:
        return self._pattern

    @property
    def name(self) -> str:
        return f"pattern '{self._pattern}'"

    async def _unsubscribe(self) -> None:
        await self._listener.unsubscribe(self._pattern)
