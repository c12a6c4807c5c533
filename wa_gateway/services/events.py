"""Lifecycle events emitted by a WhatsApp Web session.

The controller consumes these through a single transition function, so every
event type the session can produce is listed in `SessionEvent`.
"""
import time
from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class ChallengeIssued:
    """A login QR is on screen. `token` is its raw value, `image_base64` a PNG of it."""

    token: str
    image_base64: Optional[str] = None
    issued_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Authenticated:
    pass


@dataclass(frozen=True)
class Ready:
    pass


@dataclass(frozen=True)
class AuthFailed:
    reason: str = "authentication failed"


@dataclass(frozen=True)
class Disconnected:
    reason: str = "disconnected"


SessionEvent = Union[ChallengeIssued, Authenticated, Ready, AuthFailed, Disconnected]
