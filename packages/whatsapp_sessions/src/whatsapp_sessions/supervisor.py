"""
Reconnection Supervisor

Schedules a new connection attempt after a non-terminal close. Attempts are
counted per session key and the counter resets when the session opens. A
timer whose handle is no longer the registered one when it fires does
nothing.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from whatsapp_sessions.keys import SessionKey
from whatsapp_sessions.registry import InstanceRegistry, LiveHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Delay and ceiling for reconnection attempts.

    Attributes:
        delay: Seconds before the first attempt
        backoff_factor: Multiplier applied per further attempt (1.0 = fixed delay)
        max_delay: Upper bound for the delay
        max_attempts: Attempts before giving up; 0 means never give up
    """

    delay: float = 3.0
    backoff_factor: float = 1.0
    max_delay: float = 60.0
    max_attempts: int = 50

    @classmethod
    def from_settings(cls, settings) -> "ReconnectPolicy":
        return cls(
            delay=settings.RECONNECT_DELAY_SECONDS,
            backoff_factor=settings.RECONNECT_BACKOFF_FACTOR,
            max_delay=settings.RECONNECT_MAX_DELAY_SECONDS,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the ``attempt``-th reconnection (1-based)."""
        return min(self.delay * (self.backoff_factor ** (attempt - 1)), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt > self.max_attempts


class ReconnectionSupervisor:
    """Owns the reconnect timers and attempt counters of all session keys."""

    def __init__(
        self,
        registry: InstanceRegistry,
        policy: ReconnectPolicy,
        reopen: Callable[[LiveHandle], Awaitable[None]],
    ):
        self.registry = registry
        self.policy = policy
        self._reopen = reopen
        self._timers: dict[SessionKey, asyncio.Task] = {}
        self._attempts: dict[SessionKey, int] = {}

    def attempts(self, key: SessionKey) -> int:
        return self._attempts.get(key, 0)

    def pending(self, key: SessionKey) -> bool:
        timer = self._timers.get(key)
        return timer is not None and not timer.done()

    def schedule(self, handle: LiveHandle) -> float | None:
        """
        Schedule a reconnection for ``handle``'s key.

        Returns:
            The delay in seconds, or None when the attempt ceiling is reached
        """
        key = handle.key
        attempt = self._attempts.get(key, 0) + 1
        if self.policy.exhausted(attempt):
            logger.warning(
                f"Giving up on {key} after {attempt - 1} reconnection attempts",
                extra={"session_key": str(key)},
            )
            return None

        self._attempts[key] = attempt
        delay = self.policy.delay_for(attempt)

        existing = self._timers.pop(key, None)
        if existing is not None and existing is not asyncio.current_task():
            existing.cancel()

        self._timers[key] = asyncio.get_running_loop().create_task(self._fire(handle, delay))
        logger.info(
            f"Reconnection {attempt} for {key} in {delay:g}s",
            extra={"session_key": str(key), "attempt": attempt, "delay": delay},
        )
        return delay

    async def _fire(self, handle: LiveHandle, delay: float) -> None:
        await asyncio.sleep(delay)

        key = handle.key
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]

        if not self.registry.is_current(handle):
            logger.debug(f"Stale reconnect timer for {key} ignored", extra={"session_key": str(key)})
            return

        try:
            await self._reopen(handle)
        except Exception:
            logger.exception(f"Reconnection of {key} failed", extra={"session_key": str(key)})

    def reset(self, key: SessionKey) -> None:
        """Forget the attempt count (the session opened)."""
        self._attempts.pop(key, None)

    def cancel(self, key: SessionKey) -> None:
        """Cancel a pending timer and forget the attempt count."""
        timer = self._timers.pop(key, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        self._attempts.pop(key, None)

    async def shutdown(self) -> None:
        timers = [t for t in self._timers.values() if t is not asyncio.current_task()]
        self._timers.clear()
        self._attempts.clear()
        for timer in timers:
            timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
