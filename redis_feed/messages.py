"""
Delivered Message Types

Multi-channel handlers receive a ChannelMessage, pattern handlers a
PatternMessage. `message` is the raw payload text, or the decoded value
when the subscription was made with a message_type.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ChannelMessage:
    """A message received on one of several subscribed channels."""

    channel: str
    message: Any
    timestamp: int = field(default_factory=_now_ms)


@dataclass(frozen=True)
class PatternMessage:
    """A message received through a pattern subscription."""

    pattern: str
    channel: str
    message: Any
    timestamp: int = field(default_factory=_now_ms)
