from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStatus(str, Enum):
    """Token lifecycle states. USED and EXPIRED are terminal."""

    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"


class SessionStatus(str, Enum):
    """Session lifecycle states. Only ACTIVE is non-terminal."""

    ACTIVE = "ACTIVE"
    FORCED_LOGOUT = "FORCED_LOGOUT"
    EXPIRED = "EXPIRED"


def _seconds_until(deadline: datetime, now: datetime) -> int:
    return max(0, int((deadline - now).total_seconds()))


@dataclass
class Principal:
    id: str
    username: str
    password_hash: str
    device_id: str
    # Encrypted profile fields (name, email, mobile, operating_country)
    profile_enc: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Token:
    id: str
    device_id: str
    digest: str
    expires_at: datetime
    status: TokenStatus = TokenStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    @classmethod
    def new(cls, device_id: str, digest: str, ttl_seconds: int, *, now: datetime) -> "Token":
        return cls(
            id=str(uuid.uuid4()),
            device_id=device_id,
            digest=digest,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def time_remaining(self, now: datetime) -> int:
        """Whole seconds until expiry; 0 once the token left ACTIVE or its deadline passed."""
        if self.status != TokenStatus.ACTIVE:
            return 0
        return _seconds_until(self.expires_at, now)


@dataclass
class Session:
    id: str
    principal: str
    device_id: str
    started_at: datetime
    expires_at: datetime
    origin_ip: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE

    @classmethod
    def new(
        cls,
        principal: str,
        device_id: str,
        origin_ip: Optional[str],
        ttl_minutes: int,
        *,
        now: datetime,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            principal=principal,
            device_id=device_id,
            origin_ip=origin_ip,
            started_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    def time_remaining(self, now: datetime) -> int:
        if self.status != SessionStatus.ACTIVE:
            return 0
        return _seconds_until(self.expires_at, now)

    def duration(self, now: datetime) -> int:
        """Elapsed whole seconds since the session started."""
        return max(0, int((now - self.started_at).total_seconds()))
