from __future__ import annotations

import hmac
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from vauth.logging import get_logger
from vauth.service.errors import ForbiddenError, InvalidCredentialsError


@dataclass(frozen=True)
class AdminContext:
    username: str
    access_token: str


class AdminAuthService:
    """Authenticates the admin console against credentials from the environment.

    A successful login yields an opaque bearer token. Tokens live in Redis when
    a cache is configured, otherwise in a process-local map with expiry.
    """

    def __init__(
        self,
        username: Optional[str],
        password: Optional[str],
        *,
        ttl_minutes: int = 60,
        cache=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.username = username
        self.password = password
        self.ttl_seconds = ttl_minutes * 60
        self.cache = cache
        self._clock = clock
        self._sessions: Dict[str, Tuple[str, float]] = {}
        self._state_lock = threading.Lock()
        self.logger = get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return bool(self.username and self.password)

    async def login(self, username: str, password: str) -> AdminContext:
        if not self.enabled:
            raise ForbiddenError("admin console is not configured")
        user_ok = hmac.compare_digest(username.encode(), self.username.encode())
        pass_ok = hmac.compare_digest(password.encode(), self.password.encode())
        if not (user_ok and pass_ok):
            self.logger.warning("admin_login_failed", username=username)
            raise InvalidCredentialsError()

        token = secrets.token_urlsafe(32)
        if self.cache is not None:
            await self.cache.set_admin_session(token, username, self.ttl_seconds)
        else:
            with self._state_lock:
                self._evict_expired()
                self._sessions[token] = (username, self._clock() + self.ttl_seconds)
        self.logger.info("admin_login", username=username)
        return AdminContext(username=username, access_token=token)

    def _evict_expired(self) -> None:
        now = self._clock()
        for key in [k for k, (_, deadline) in self._sessions.items() if deadline <= now]:
            self._sessions.pop(key, None)

    async def authenticate(self, access_token: Optional[str]) -> Optional[AdminContext]:
        if not access_token:
            return None
        if self.cache is not None:
            username = await self.cache.get_admin_session(access_token)
        else:
            with self._state_lock:
                self._evict_expired()
                entry = self._sessions.get(access_token)
            username = entry[0] if entry else None
        if not username:
            return None
        return AdminContext(username=username, access_token=access_token)

    async def logout(self, access_token: str) -> None:
        if self.cache is not None:
            await self.cache.delete_admin_session(access_token)
        else:
            with self._state_lock:
                self._sessions.pop(access_token, None)
        self.logger.info("admin_logout")
