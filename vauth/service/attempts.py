from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional

from vauth.logging import get_logger
from vauth.service.events import SECURITY_ALERT, EventNotifier

logger = get_logger(__name__)

ALERT_TYPES = {
    "login": "MULTIPLE_FAILED_LOGINS",
    "token": "MULTIPLE_FAILED_TOKENS",
}


class FailedAttemptTracker:
    """Rolling-window failure counter per subject, used for alerting only.

    With a cache the window lives in a Redis sorted set shared by every
    instance; otherwise it is process-local and evicted as attempts age out.
    Every failure at or above ``threshold`` inside the window publishes a
    ``security-alert``.
    """

    def __init__(
        self,
        notifier: Optional[EventNotifier] = None,
        *,
        threshold: int = 3,
        window_seconds: int = 15 * 60,
        cache=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.notifier = notifier
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.cache = cache
        self._clock = clock
        self._attempts: Dict[str, List[float]] = {}
        self._state_lock = threading.Lock()

    def _record_local(self, subject: str, now: float) -> int:
        cutoff = now - self.window_seconds
        with self._state_lock:
            # Drop aged-out subjects so the map does not grow without bound
            for key in [k for k, stamps in self._attempts.items() if stamps[-1] <= cutoff]:
                self._attempts.pop(key, None)
            stamps = [ts for ts in self._attempts.get(subject, []) if ts > cutoff]
            stamps.append(now)
            self._attempts[subject] = stamps
            return len(stamps)

    async def record_failure(
        self, subject: str, *, kind: str = "login", ip: Optional[str] = None
    ) -> int:
        """Record one failure and return the number inside the current window."""
        now = self._clock()
        if self.cache is not None:
            try:
                count = await self.cache.record_failed_attempt(subject, self.window_seconds, now=now)
            except Exception as exc:
                logger.warning("failed_attempt_cache_error", error=str(exc))
                count = self._record_local(subject, now)
        else:
            count = self._record_local(subject, now)

        if count >= self.threshold and self.notifier is not None:
            logger.warning("failed_attempt_threshold_reached", subject=subject, attempts=count, kind=kind)
            await self.notifier.publish(
                SECURITY_ALERT,
                {
                    "type": ALERT_TYPES.get(kind, "MULTIPLE_FAILED_LOGINS"),
                    "subject": subject,
                    "attempts": count,
                    "last_ip": ip,
                },
            )
        return count

    async def clear(self, subject: str) -> None:
        with self._state_lock:
            self._attempts.pop(subject, None)
        if self.cache is not None:
            try:
                await self.cache.clear_failed_attempts(subject)
            except Exception as exc:
                logger.warning("failed_attempt_clear_error", error=str(exc))

    def attempts(self, subject: str) -> int:
        """Process-local count for ``subject`` inside the window."""
        cutoff = self._clock() - self.window_seconds
        with self._state_lock:
            return sum(1 for ts in self._attempts.get(subject, []) if ts > cutoff)
