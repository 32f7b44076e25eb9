"""
Typing presence.

One tracker per room. Each user is either absent or typing; a ping moves
them to typing with a fresh TTL, a repeated ping only resets the TTL, and
expiry or an explicit stop moves them back to absent. Timer handles are kept
per user and replaced atomically on refresh.
"""

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

from campus_chat.models.snapshot import TypingEntry

logger = logging.getLogger(__name__)

TYPING_TTL_S = 3.0


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """The subset of an asyncio event loop the tracker needs."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...

    def time(self) -> float: ...


class TypingTracker:
    def __init__(
        self,
        room_id: str,
        scheduler: Optional[Scheduler] = None,
        ttl: float = TYPING_TTL_S,
        on_change: Optional[Callable[[tuple[TypingEntry, ...]], None]] = None,
    ):
        self._room_id = room_id
        self._scheduler = scheduler
        self._ttl = ttl
        self._on_change = on_change
        self._entries: dict[str, TypingEntry] = {}
        self._timers: dict[str, TimerHandle] = {}
        self._closed = False

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def typing_users(self) -> tuple[TypingEntry, ...]:
        return tuple(self._entries.values())

    def is_typing(self, user_id: str) -> bool:
        return user_id in self._entries

    def _loop(self) -> Scheduler:
        return self._scheduler or asyncio.get_running_loop()

    def ping(self, user_id: str, user_name: str) -> bool:
        """Mark a user as typing. Returns True if they were absent before."""
        if self._closed:
            return False
        loop = self._loop()
        old = self._timers.pop(user_id, None)
        if old is not None:
            old.cancel()
        self._timers[user_id] = loop.call_later(self._ttl, self._expire, user_id)
        is_new = user_id not in self._entries
        self._entries[user_id] = TypingEntry(
            room_id=self._room_id,
            user_id=user_id,
            user_name=user_name,
            last_ping_at=loop.time(),
        )
        if is_new:
            self._notify()
        return is_new

    def stop(self, user_id: str) -> bool:
        """Explicit stop. Safe when the user is not typing."""
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()
        if self._entries.pop(user_id, None) is None:
            return False
        self._notify()
        return True

    def _expire(self, user_id: str) -> None:
        self._timers.pop(user_id, None)
        if self._entries.pop(user_id, None) is not None:
            logger.debug("Typing expired for %s in room %s", user_id, self._room_id)
            self._notify()

    def close(self) -> None:
        """Cancel every timer. No notifications are sent after this."""
        self._closed = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._entries.clear()

    def _notify(self) -> None:
        if self._on_change is not None and not self._closed:
            self._on_change(self.typing_users)
