"""
Events emitted by the apply pipeline towards the UI layer.

The controller never renders anything itself; it hands these to the
``event_callback`` it was constructed with.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Union

ProgressPhase = Literal["renaming", "importing"]


@dataclass(frozen=True)
class ProgressEvent:
    phase: ProgressPhase
    current: int
    total: int
    name: str


@dataclass(frozen=True)
class StatusEvent:
    """One line of tool output (or a controller status message)."""

    message: str


@dataclass(frozen=True)
class ErrorLineEvent:
    """One stderr line of the running overlay."""

    message: str


@dataclass(frozen=True)
class CancelledEvent:
    pass


@dataclass(frozen=True)
class OverlayResetEvent:
    """The overlay process exited; UI should clear its running status."""


ApplyEvent = Union[ProgressEvent, StatusEvent, ErrorLineEvent, CancelledEvent, OverlayResetEvent]
EventCallback = Callable[[ApplyEvent], None]
