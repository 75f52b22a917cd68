"""
Session Registry: process-wide "transfer due" flags keyed by CallSid.

A session that commits a transfer calls `mark_due(call_sid)` just before it
closes the media stream. The next Twilio webhook for that call consults
`consume(call_sid)`, which atomically checks and clears the flag, so a
retried webhook can never dial the human line twice. Entries that are never
consumed are dropped after a bounded TTL.

This is the only structure shared between sessions. It is touched from
session handlers on the event loop and from webhook handlers that may run in
the threadpool, so every mutation happens under one lock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 10.0


class Cancellable(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Cancellable]


def thread_timer_factory(delay_s: float, callback: Callable[[], None]) -> Cancellable:
    """Default expiry timer: a daemon threading.Timer, already started."""
    timer = threading.Timer(delay_s, callback)
    timer.daemon = True
    timer.start()
    return timer


@dataclass
class RegistryEntry:
    """Transfer-due flag for one call."""
    call_sid: str
    due: bool
    created_at: float
    expires_at: float
    timer: Optional[Cancellable] = None


class SessionRegistry:
    """
    Mutex-guarded map of CallSid -> RegistryEntry.

    Args:
        ttl_s: Default lifetime of an entry that is never consumed
        clock: Monotonic clock, injectable for tests
        timer_factory: Creates a started, cancellable expiry timer
    """

    def __init__(
        self,
        ttl_s: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Optional[TimerFactory] = thread_timer_factory,
    ):
        self.ttl_s = ttl_s
        self._clock = clock
        self._timer_factory = timer_factory
        self._entries: Dict[str, RegistryEntry] = {}
        self._lock = threading.Lock()

    def mark_due(self, call_sid: str, ttl_s: Optional[float] = None) -> None:
        """Record that `call_sid` must be dialed forward on its next webhook."""
        if not call_sid:
            raise ValueError("call_sid is required")

        ttl = self.ttl_s if ttl_s is None else ttl_s
        now = self._clock()
        entry = RegistryEntry(call_sid=call_sid, due=True, created_at=now, expires_at=now + ttl)

        with self._lock:
            previous = self._entries.pop(call_sid, None)
            if previous and previous.timer:
                previous.timer.cancel()
            if self._timer_factory is not None:
                entry.timer = self._timer_factory(ttl, lambda: self._expire_entry(entry))
            self._entries[call_sid] = entry

        logger.info("Transfer marked due", call_sid=call_sid, ttl_s=ttl)

    def consume(self, call_sid: str) -> bool:
        """
        Atomically check-and-clear the transfer flag for `call_sid`.

        Returns:
            True exactly once per `mark_due`, False otherwise (including after expiry)
        """
        if not call_sid:
            return False

        with self._lock:
            entry = self._entries.pop(call_sid, None)

        if entry is None:
            return False
        if entry.timer:
            entry.timer.cancel()
        if self._clock() >= entry.expires_at:
            logger.warning("Transfer flag expired before webhook", call_sid=call_sid)
            return False

        logger.info("Transfer flag consumed", call_sid=call_sid)
        return entry.due

    def expire(self, call_sid: str) -> bool:
        """
        Delete the entry for `call_sid` and cancel its expiry timer.

        Idempotent. Returns True if an entry was removed.
        """
        with self._lock:
            entry = self._entries.pop(call_sid, None)
        if entry is None:
            return False
        if entry.timer:
            entry.timer.cancel()
        logger.info("Transfer flag expired", call_sid=call_sid)
        return True

    def sweep(self) -> int:
        """Drop every entry whose TTL has passed. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            expired = [e for e in self._entries.values() if now >= e.expires_at]
            for entry in expired:
                del self._entries[entry.call_sid]
        for entry in expired:
            if entry.timer:
                entry.timer.cancel()
        if expired:
            logger.info("Swept expired transfer flags", count=len(expired))
        return len(expired)

    def pending(self) -> Dict[str, float]:
        """Snapshot of CallSid -> seconds until expiry, for monitoring."""
        now = self._clock()
        with self._lock:
            return {
                sid: round(max(0.0, e.expires_at - now), 3)
                for sid, e in self._entries.items()
            }

    def clear(self) -> None:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            if entry.timer:
                entry.timer.cancel()

    def __contains__(self, call_sid: object) -> bool:
        with self._lock:
            return call_sid in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expire_entry(self, entry: RegistryEntry) -> None:
        # Only drop the entry this timer was armed for; a re-marked call has its own timer.
        with self._lock:
            if self._entries.get(entry.call_sid) is not entry:
                return
            del self._entries[entry.call_sid]
        logger.warning("Transfer flag timed out without webhook", call_sid=entry.call_sid)


# Singleton instance
_registry: Optional[SessionRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> SessionRegistry:
    """Get or create the process-wide registry."""
    global _registry

    with _registry_lock:
        if _registry is None:
            from src.intake.config import get_config

            _registry = SessionRegistry(ttl_s=get_config().transfer_registry_ttl_seconds)
        return _registry


def reset_registry() -> None:
    """Drop the process-wide registry (used on shutdown and in tests)."""
    global _registry

    with _registry_lock:
        if _registry is not None:
            _registry.clear()
        _registry = None
