"""
Cancellable session timers.

A TimerSlot holds at most one armed timer. Arming replaces (and cancels) the
previous one. When a timer elapses it does not act directly on session state;
it posts a TimerFired event into the session queue, and the session checks
`is_current()` before acting. A firing that was already queued when the slot
was re-armed or cancelled is therefore ignored.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

from src.intake.events import TimerFired

logger = structlog.get_logger(__name__)


class TimerSlot:
    """Single cancellable timer posting into a session's event queue."""

    def __init__(self, name: str, post: Callable[[TimerFired], None]):
        self.name = name
        self._post = post
        self._handle: Optional[asyncio.TimerHandle] = None
        self._generation = 0
        self._armed_generation: Optional[int] = None
        self._purpose: str = ""

    @property
    def active(self) -> bool:
        return self._armed_generation is not None

    @property
    def purpose(self) -> str:
        """What the currently armed timer is for (e.g. 'fallback', 'settle')."""
        return self._purpose if self.active else ""

    def arm(self, delay_s: float, purpose: str = "") -> int:
        """
        Arm the slot, cancelling whatever was armed before.

        Returns:
            The generation of the newly armed timer
        """
        self.cancel()
        self._generation += 1
        generation = self._generation
        self._armed_generation = generation
        self._purpose = purpose or self.name
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay_s), self._fire, generation)
        logger.debug("Timer armed", slot=self.name, purpose=self._purpose, delay_s=delay_s)
        return generation

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._armed_generation is not None:
            logger.debug("Timer cancelled", slot=self.name, purpose=self._purpose)
        self._armed_generation = None

    def is_current(self, event: TimerFired) -> bool:
        """True if `event` belongs to the timer that is armed right now."""
        return event.slot == self.name and event.generation == self._armed_generation

    def consume(self, event: TimerFired) -> Optional[str]:
        """
        Check a firing and, if it is current, disarm the slot.

        Returns:
            The purpose the timer was armed for, or None for a stale firing
        """
        if not self.is_current(event):
            return None
        purpose = self._purpose
        self._armed_generation = None
        self._handle = None
        return purpose

    def _fire(self, generation: int) -> None:
        if generation != self._armed_generation:
            return
        self._handle = None
        self._post(TimerFired(slot=self.name, generation=generation))
