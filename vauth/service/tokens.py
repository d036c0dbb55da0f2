from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from vauth.logging import get_logger
from vauth.service.digest import fingerprint, random_secret
from vauth.service.errors import ValidationError
from vauth.storage.errors import ConstraintViolation
from vauth.storage.models import Token, TokenStatus, utcnow

# Regenerate the secret when its digest already exists
_MAX_ISSUE_ATTEMPTS = 3


class VerifyOutcome(str, Enum):
    VALID = "VALID"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"


class RejectReason(str, Enum):
    TOKEN_VALID = "TOKEN_VALID"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    DEVICE_MISMATCH = "DEVICE_MISMATCH"
    TOKEN_ALREADY_USED = "TOKEN_ALREADY_USED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"


@dataclass(frozen=True)
class VerifyResult:
    outcome: VerifyOutcome
    reason: RejectReason
    token: Optional[Token] = None

    @property
    def valid(self) -> bool:
        return self.outcome == VerifyOutcome.VALID


@dataclass(frozen=True)
class TokenView:
    token: Token
    time_remaining: int


class TokenService:
    """Issues, consumes and expires one-time tokens.

    Consumption relies on the store's conditional transition: a token moves to
    USED only if it is still ACTIVE, so concurrent verifications of one token
    produce a single VALID result.
    """

    def __init__(
        self,
        store,
        *,
        clock: Callable[[], datetime] = utcnow,
        secret_length: int = 6,
    ) -> None:
        self.store = store
        self._clock = clock
        self.secret_length = secret_length
        self.logger = get_logger(__name__)

    async def issue(self, device_id: str, ttl_seconds: int) -> Tuple[Token, str]:
        """Persist a new ACTIVE token and return it with its plaintext secret.

        The plaintext is returned exactly once and is never stored.
        """
        if ttl_seconds <= 0:
            raise ValidationError("ttl_seconds must be positive")
        for attempt in range(1, _MAX_ISSUE_ATTEMPTS + 1):
            plain_secret = random_secret(self.secret_length)
            digest = fingerprint(device_id, plain_secret)
            token = Token.new(device_id, digest, ttl_seconds, now=self._clock())
            try:
                stored = await asyncio.to_thread(self.store.create_token, token)
            except ConstraintViolation:
                self.logger.warning("token_digest_collision", device_id=device_id, attempt=attempt)
                continue
            self.logger.info(
                "token_issued",
                token_id=stored.id,
                device_id=device_id,
                expires_at=stored.expires_at.isoformat(),
            )
            return stored, plain_secret
        raise ConstraintViolation("unable to allocate a unique token", {"device_id": device_id})

    async def verify(self, device_id: str, plain_secret: str) -> VerifyResult:
        digest = fingerprint(device_id, plain_secret)
        token = await asyncio.to_thread(self.store.get_token_by_digest, digest)
        if token is None:
            return self._reject(VerifyOutcome.NOT_FOUND, RejectReason.TOKEN_NOT_FOUND, device_id)
        if token.device_id != device_id:
            return self._reject(
                VerifyOutcome.NOT_FOUND, RejectReason.DEVICE_MISMATCH, device_id, token
            )
        if token.status != TokenStatus.ACTIVE:
            return self._reject(
                VerifyOutcome.NOT_FOUND, RejectReason.TOKEN_ALREADY_USED, device_id, token
            )

        now = self._clock()
        if token.expires_at < now:
            expired = await asyncio.to_thread(
                self.store.transition_token, token.id, TokenStatus.EXPIRED
            )
            if expired is None:
                return self._reject(
                    VerifyOutcome.NOT_FOUND, RejectReason.TOKEN_ALREADY_USED, device_id, token
                )
            return self._reject(
                VerifyOutcome.EXPIRED, RejectReason.TOKEN_EXPIRED, device_id, expired
            )

        used = await asyncio.to_thread(
            self.store.transition_token, token.id, TokenStatus.USED, used_at=now
        )
        if used is None:
            return self._reject(
                VerifyOutcome.NOT_FOUND, RejectReason.TOKEN_ALREADY_USED, device_id, token
            )
        self.logger.info("token_verified", token_id=used.id, device_id=device_id)
        return VerifyResult(VerifyOutcome.VALID, RejectReason.TOKEN_VALID, used)

    def _reject(
        self,
        outcome: VerifyOutcome,
        reason: RejectReason,
        device_id: str,
        token: Optional[Token] = None,
    ) -> VerifyResult:
        self.logger.info(
            "token_verify_rejected",
            reason=reason.value,
            device_id=device_id,
            token_id=token.id if token else None,
        )
        return VerifyResult(outcome, reason, token)

    async def sweep_expired(self) -> int:
        count = await asyncio.to_thread(self.store.expire_tokens, self._clock())
        if count:
            self.logger.info("tokens_swept", count=count)
        return count

    async def purge_expired(self) -> int:
        count = await asyncio.to_thread(self.store.delete_tokens, TokenStatus.EXPIRED)
        if count:
            self.logger.info("tokens_purged", count=count)
        return count

    async def delete(self, token_id: str) -> bool:
        deleted = await asyncio.to_thread(self.store.delete_token, token_id)
        if deleted:
            self.logger.info("token_deleted", token_id=token_id)
        return deleted

    async def list(self, status: Optional[TokenStatus] = None) -> List[TokenView]:
        tokens = await asyncio.to_thread(self.store.list_tokens, status)
        now = self._clock()
        return [TokenView(token=t, time_remaining=t.time_remaining(now)) for t in tokens]

    async def count(self, status: Optional[TokenStatus] = None) -> int:
        return await asyncio.to_thread(self.store.count_tokens, status)
