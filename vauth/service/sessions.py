from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from vauth.logging import get_logger
from vauth.service.errors import ValidationError
from vauth.storage.models import Session, SessionStatus, utcnow


class ValidateOutcome(str, Enum):
    VALID = "VALID"
    NOT_FOUND = "NOT_FOUND"
    INACTIVE = "INACTIVE"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class ValidateResult:
    outcome: ValidateOutcome
    session: Optional[Session] = None
    time_remaining: int = 0
    duration: int = 0

    @property
    def valid(self) -> bool:
        return self.outcome == ValidateOutcome.VALID


class SessionService:
    """Opens, validates and terminates sessions.

    At most one session per principal is ACTIVE: ``open`` demotes the
    principal's other ACTIVE sessions in the same store operation that creates
    the new one.
    """

    def __init__(self, store, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self._clock = clock
        self.logger = get_logger(__name__)

    async def open(
        self,
        principal: str,
        device_id: str,
        origin_ip: Optional[str],
        ttl_minutes: int,
    ) -> Session:
        if not principal:
            raise ValidationError("principal is required")
        if ttl_minutes <= 0:
            raise ValidationError("ttl_minutes must be positive")
        session = Session.new(principal, device_id, origin_ip, ttl_minutes, now=self._clock())
        stored, demoted = await asyncio.to_thread(self.store.open_session, session)
        self.logger.info(
            "session_opened",
            session_id=stored.id,
            principal=principal,
            device_id=device_id,
            demoted=demoted,
        )
        return stored

    async def validate(self, session_id: str) -> ValidateResult:
        if not session_id:
            return ValidateResult(ValidateOutcome.NOT_FOUND)
        session = await asyncio.to_thread(self.store.get_session, session_id)
        if session is None:
            return ValidateResult(ValidateOutcome.NOT_FOUND)
        if session.status != SessionStatus.ACTIVE:
            return ValidateResult(ValidateOutcome.INACTIVE, session)

        now = self._clock()
        if session.expires_at < now:
            expired = await asyncio.to_thread(
                self.store.transition_session, session.id, SessionStatus.EXPIRED
            )
            if expired is None:
                # Someone else terminated it first
                current = await asyncio.to_thread(self.store.get_session, session.id)
                return ValidateResult(ValidateOutcome.INACTIVE, current or session)
            self.logger.info("session_expired", session_id=session.id, principal=session.principal)
            return ValidateResult(ValidateOutcome.EXPIRED, expired)

        return ValidateResult(
            ValidateOutcome.VALID,
            session,
            time_remaining=session.time_remaining(now),
            duration=session.duration(now),
        )

    async def force_logout(self, session_id: str) -> bool:
        changed = await asyncio.to_thread(
            self.store.transition_session, session_id, SessionStatus.FORCED_LOGOUT
        )
        if changed is None:
            return False
        self.logger.info("session_forced_logout", session_id=session_id, principal=changed.principal)
        return True

    async def end(self, session_id: str) -> Optional[Session]:
        """Expire an ACTIVE session at its owner's request; None if it was not ACTIVE."""
        ended = await asyncio.to_thread(
            self.store.transition_session, session_id, SessionStatus.EXPIRED
        )
        if ended is not None:
            self.logger.info("session_ended", session_id=session_id, principal=ended.principal)
        return ended

    async def sweep_expired(self) -> int:
        count = await asyncio.to_thread(self.store.expire_sessions, self._clock())
        if count:
            self.logger.info("sessions_swept", count=count)
        return count

    async def list_active(self) -> List[Session]:
        return await asyncio.to_thread(
            self.store.list_sessions, SessionStatus.ACTIVE, expires_after=self._clock()
        )

    async def count_active(self) -> int:
        return await asyncio.to_thread(self.store.count_sessions, SessionStatus.ACTIVE)
