from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional

from vauth.logging import get_logger
from vauth.service import events
from vauth.service.attempts import FailedAttemptTracker
from vauth.service.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
    ServiceError,
    UnknownDeviceError,
    ValidationError,
)
from vauth.service.events import EventNotifier, TokenDelivery
from vauth.service.identity import IdentityService, PrincipalProfile
from vauth.service.sessions import SessionService, ValidateOutcome
from vauth.service.tokens import TokenService, TokenView, VerifyOutcome
from vauth.storage.errors import ConstraintViolation, StoreUnavailable
from vauth.storage.models import Session, TokenStatus

DEVICE_UNKNOWN = "DEVICE_UNKNOWN"


@dataclass(frozen=True)
class LoginResult:
    device_id: str
    token_expires_at: datetime


@dataclass(frozen=True)
class SessionStatusView:
    authenticated: bool
    outcome: ValidateOutcome
    principal: Optional[str] = None
    session_id: Optional[str] = None
    time_remaining: int = 0
    duration: int = 0


@dataclass(frozen=True)
class VirtualToken:
    token_id: str
    device_id: str
    plain_secret: str
    expires_at: datetime


@dataclass(frozen=True)
class SweepReport:
    tokens_expired: int = 0
    sessions_expired: int = 0


@dataclass(frozen=True)
class DashboardStats:
    total_users: int
    active_tokens: int
    expired_tokens: int
    active_sessions: int
    auto_purge_enabled: bool


class LifecycleCoordinator:
    """Drives login, token verification, session checks and maintenance.

    Store outages surface as ``ServerError``. When a session cannot be opened
    after its token was consumed, the token stays USED and the caller has to
    log in again.
    """

    def __init__(
        self,
        tokens: TokenService,
        sessions: SessionService,
        identity: IdentityService,
        notifier: EventNotifier,
        attempts: FailedAttemptTracker,
        *,
        delivery: Optional[TokenDelivery] = None,
        token_ttl_seconds: int = 300,
        session_ttl_minutes: int = 10,
        auto_purge_enabled: bool = False,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.identity = identity
        self.notifier = notifier
        self.attempts = attempts
        self.delivery = delivery or events.DeviceTopicDelivery(notifier)
        self.token_ttl_seconds = token_ttl_seconds
        self.session_ttl_minutes = session_ttl_minutes
        self.auto_purge_enabled = auto_purge_enabled
        self.logger = get_logger(__name__)

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            self.logger.error("store_unavailable", operation=operation, error=str(exc))
            raise ServerError() from exc
        except ConstraintViolation as exc:
            self.logger.error(
                "store_constraint_violation", operation=operation, error=exc.message, detail=exc.detail
            )
            raise ServerError() from exc

    # user flows
    async def login(
        self, username: str, password: str, origin_ip: Optional[str] = None
    ) -> LoginResult:
        username = (username or "").strip()
        if len(username) < 3:
            raise ValidationError("username must be at least 3 characters")
        if not password:
            raise ValidationError("password is required")

        with self._store_errors("login"):
            principal, reason = await self.identity.authenticate(username, password)
            if principal is None:
                await self.attempts.record_failure(username, kind="login", ip=origin_ip)
                await self.notifier.publish(
                    events.USER_LOGIN_ATTEMPT,
                    {"username": username, "ip": origin_ip, "success": False, "reason": reason},
                )
                raise InvalidCredentialsError()

            await self.attempts.clear(username)
            await self.notifier.publish(
                events.USER_LOGIN_ATTEMPT,
                {"username": username, "ip": origin_ip, "success": True},
            )
            token, plain_secret = await self.tokens.issue(principal.device_id, self.token_ttl_seconds)

        await self.notifier.publish(
            events.TOKEN_ISSUED,
            {
                "token_id": token.id,
                "device_id": token.device_id,
                "expires_at": token.expires_at.isoformat(),
            },
        )
        try:
            await self.delivery.deliver(token.device_id, plain_secret, token.expires_at)
        except Exception as exc:
            self.logger.error("token_delivery_failed", token_id=token.id, error=str(exc))
            raise ServerError("token delivery failed") from exc
        return LoginResult(device_id=principal.device_id, token_expires_at=token.expires_at)

    async def verify_token(
        self, device_id: str, plain_secret: str, origin_ip: Optional[str] = None
    ) -> Session:
        device_id = (device_id or "").strip()
        plain_secret = (plain_secret or "").strip()
        if not device_id:
            raise ValidationError("device_id is required")
        if len(plain_secret) != self.tokens.secret_length:
            raise ValidationError(f"token must be {self.tokens.secret_length} characters")

        with self._store_errors("verify_token"):
            principal = await self.identity.find_by_device_id(device_id)
            if principal is None:
                await self.notifier.publish(
                    events.TOKEN_REJECTED,
                    {"device_id": device_id, "ip": origin_ip, "reason": DEVICE_UNKNOWN},
                )
                raise UnknownDeviceError()

            result = await self.tokens.verify(device_id, plain_secret)
            if not result.valid:
                if result.outcome == VerifyOutcome.EXPIRED and result.token is not None:
                    await self.notifier.publish(
                        events.TOKEN_EXPIRED,
                        {"token_id": result.token.id, "device_id": device_id},
                    )
                await self.notifier.publish(
                    events.TOKEN_REJECTED,
                    {
                        "device_id": device_id,
                        "username": principal.username,
                        "ip": origin_ip,
                        "reason": result.reason.value,
                    },
                )
                await self.attempts.record_failure(principal.username, kind="token", ip=origin_ip)
                raise InvalidTokenError()

        await self.notifier.publish(
            events.TOKEN_VERIFIED,
            {
                "token_id": result.token.id,
                "device_id": device_id,
                "username": principal.username,
                "ip": origin_ip,
            },
        )
        try:
            session = await self.sessions.open(
                principal.username, device_id, origin_ip, self.session_ttl_minutes
            )
        except StoreUnavailable as exc:
            self.logger.error(
                "session_open_failed_token_consumed",
                token_id=result.token.id,
                device_id=device_id,
                error=str(exc),
            )
            raise ServerError() from exc

        await self.notifier.publish(
            events.SESSION_OPENED,
            {
                "session_id": session.id,
                "username": principal.username,
                "device_id": device_id,
                "ip": origin_ip,
                "expires_at": session.expires_at.isoformat(),
            },
        )
        return session

    async def session_status(self, session_id: Optional[str]) -> SessionStatusView:
        with self._store_errors("session_status"):
            result = await self.sessions.validate(session_id or "")
        if result.outcome == ValidateOutcome.EXPIRED and result.session is not None:
            await self.notifier.publish(
                events.SESSION_EXPIRED,
                {"session_id": result.session.id, "username": result.session.principal},
            )
        session = result.session
        return SessionStatusView(
            authenticated=result.valid,
            outcome=result.outcome,
            principal=session.principal if session else None,
            session_id=session.id if session else None,
            time_remaining=result.time_remaining,
            duration=result.duration,
        )

    async def logout(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        with self._store_errors("logout"):
            ended = await self.sessions.end(session_id)
        if ended is None:
            return False
        await self.notifier.publish(
            events.USER_LOGOUT, {"session_id": ended.id, "username": ended.principal}
        )
        return True

    # admin operations
    async def force_logout(self, session_id: str) -> bool:
        with self._store_errors("force_logout"):
            changed = await self.sessions.force_logout(session_id)
        if changed:
            await self.notifier.publish(events.SESSION_FORCED_LOGOUT, {"session_id": session_id})
        return changed

    async def list_tokens(self, status: Optional[TokenStatus] = None) -> List[TokenView]:
        with self._store_errors("list_tokens"):
            return await self.tokens.list(status)

    async def delete_token(self, token_id: str) -> bool:
        with self._store_errors("delete_token"):
            return await self.tokens.delete(token_id)

    async def list_sessions(self) -> List[Session]:
        with self._store_errors("list_sessions"):
            return await self.sessions.list_active()

    async def list_principals(self) -> List[PrincipalProfile]:
        with self._store_errors("list_principals"):
            return await self.identity.list_principals()

    async def purge_expired(self) -> int:
        with self._store_errors("purge_expired"):
            count = await self.tokens.purge_expired()
        if count:
            await self.notifier.publish(events.TOKENS_PURGED, {"count": count})
        return count

    async def set_auto_purge(self, enabled: bool) -> int:
        """Toggle periodic purging; enabling also purges right away and returns the count."""
        self.auto_purge_enabled = enabled
        self.logger.info("auto_purge_toggled", enabled=enabled)
        if not enabled:
            return 0
        return await self.purge_expired()

    async def issue_virtual_token(self, device_id: str) -> VirtualToken:
        device_id = (device_id or "").strip()
        if not device_id:
            raise ValidationError("device_id is required")
        with self._store_errors("issue_virtual_token"):
            principal = await self.identity.find_by_device_id(device_id)
            if principal is None:
                raise NotFoundError("device not found")
            token, plain_secret = await self.tokens.issue(device_id, self.token_ttl_seconds)
        await self.notifier.publish(
            events.VIRTUAL_TOKEN_GENERATED,
            {
                "token_id": token.id,
                "device_id": device_id,
                "username": principal.username,
                "expires_at": token.expires_at.isoformat(),
            },
        )
        try:
            await self.delivery.deliver(device_id, plain_secret, token.expires_at)
        except Exception as exc:
            self.logger.warning("token_delivery_failed", token_id=token.id, error=str(exc))
        return VirtualToken(
            token_id=token.id,
            device_id=device_id,
            plain_secret=plain_secret,
            expires_at=token.expires_at,
        )

    async def dashboard_stats(self) -> DashboardStats:
        with self._store_errors("dashboard_stats"):
            return DashboardStats(
                total_users=await self.identity.count_principals(),
                active_tokens=await self.tokens.count(TokenStatus.ACTIVE),
                expired_tokens=await self.tokens.count(TokenStatus.EXPIRED),
                active_sessions=await self.sessions.count_active(),
                auto_purge_enabled=self.auto_purge_enabled,
            )

    # maintenance
    async def run_sweep(self) -> SweepReport:
        """Expire overdue tokens and sessions. Failures are logged, never raised."""
        tokens_expired = 0
        sessions_expired = 0
        try:
            tokens_expired = await self.tokens.sweep_expired()
        except Exception as exc:
            self.logger.error("maintenance_token_sweep_failed", error=str(exc))
        try:
            sessions_expired = await self.sessions.sweep_expired()
        except Exception as exc:
            self.logger.error("maintenance_session_sweep_failed", error=str(exc))

        if tokens_expired:
            await self.notifier.publish(events.TOKENS_SWEPT, {"count": tokens_expired})
        if sessions_expired:
            await self.notifier.publish(
                events.SESSION_EXPIRED, {"count": sessions_expired, "sweep": True}
            )
        return SweepReport(tokens_expired=tokens_expired, sessions_expired=sessions_expired)

    async def run_purge(self) -> int:
        """Purge EXPIRED tokens when auto-purge is on. Failures are logged, never raised."""
        if not self.auto_purge_enabled:
            return 0
        try:
            return await self.purge_expired()
        except ServiceError as exc:
            self.logger.error("maintenance_purge_failed", error=exc.message)
            return 0
