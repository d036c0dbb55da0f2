from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vauth.logging import get_logger
from vauth.storage.errors import ConstraintViolation, StoreUnavailable
from vauth.storage.models import (
    Principal,
    Session,
    SessionStatus,
    Token,
    TokenStatus,
)


class MemoryStore:
    """In-process backing store for development and tests.

    Every read-modify-write runs under a single re-entrant lock, which is this
    backend's conditional-update primitive. Objects handed out are copies so
    callers can never mutate stored state outside the lock.
    """

    def __init__(self, fs_root: str = "/tmp/vauth") -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.tokens: Dict[str, Token] = {}
        self.sessions: Dict[str, Session] = {}
        # Secondary indexes
        self._tokens_by_digest: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "vauth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # principals
    def create_principal(
        self,
        username: str,
        password_hash: str,
        device_id: str,
        profile_enc: Optional[Dict[str, str]] = None,
    ) -> Principal:
        with self._data_lock:
            for existing in self.principals.values():
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if existing.device_id == device_id:
                    raise ConstraintViolation("device id already exists", {"field": "device_id"})
            principal = Principal(
                id=str(uuid.uuid4()),
                username=username,
                password_hash=password_hash,
                device_id=device_id,
                profile_enc=dict(profile_enc or {}),
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return replace(principal)

    def get_principal_by_username(self, username: str) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                if principal.username == username:
                    return replace(principal)
            return None

    def get_principal_by_device_id(self, device_id: str) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                if principal.device_id == device_id:
                    return replace(principal)
            return None

    def list_principals(self) -> List[Principal]:
        with self._data_lock:
            ordered = sorted(
                self.principals.values(), key=lambda p: p.created_at, reverse=True
            )
            return [replace(p) for p in ordered]

    def count_principals(self) -> int:
        with self._data_lock:
            return len(self.principals)

    # tokens
    def create_token(self, token: Token) -> Token:
        with self._data_lock:
            if token.digest in self._tokens_by_digest:
                raise ConstraintViolation("token digest already exists", {"field": "digest"})
            stored = replace(token)
            self.tokens[stored.id] = stored
            self._tokens_by_digest[stored.digest] = stored.id
            self._persist_state()
            return replace(stored)

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(token_id)
            return replace(token) if token else None

    def get_token_by_digest(self, digest: str) -> Optional[Token]:
        with self._data_lock:
            token_id = self._tokens_by_digest.get(digest)
            token = self.tokens.get(token_id) if token_id else None
            return replace(token) if token else None

    def transition_token(
        self,
        token_id: str,
        new_status: TokenStatus,
        *,
        expected: TokenStatus = TokenStatus.ACTIVE,
        used_at: Optional[datetime] = None,
    ) -> Optional[Token]:
        """Set ``new_status`` only if the token is currently ``expected``.

        Returns the updated token, or None when the token is missing or was
        already moved by someone else.
        """
        with self._data_lock:
            token = self.tokens.get(token_id)
            if not token or token.status != expected:
                return None
            token.status = new_status
            if used_at is not None:
                token.used_at = used_at
            self._persist_state()
            return replace(token)

    def expire_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                t for t in self.tokens.values()
                if t.status == TokenStatus.ACTIVE and t.expires_at < now
            ]
            for token in stale:
                token.status = TokenStatus.EXPIRED
            if stale:
                self._persist_state()
            return len(stale)

    def delete_token(self, token_id: str) -> bool:
        with self._data_lock:
            token = self.tokens.pop(token_id, None)
            if not token:
                return False
            self._tokens_by_digest.pop(token.digest, None)
            self._persist_state()
            return True

    def delete_tokens(self, status: TokenStatus) -> int:
        with self._data_lock:
            doomed = [t for t in self.tokens.values() if t.status == status]
            for token in doomed:
                self.tokens.pop(token.id, None)
                self._tokens_by_digest.pop(token.digest, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def list_tokens(self, status: Optional[TokenStatus] = None) -> List[Token]:
        with self._data_lock:
            matching = [
                t for t in self.tokens.values() if status is None or t.status == status
            ]
            matching.sort(key=lambda t: t.created_at, reverse=True)
            return [replace(t) for t in matching]

    def count_tokens(self, status: Optional[TokenStatus] = None) -> int:
        with self._data_lock:
            return sum(1 for t in self.tokens.values() if status is None or t.status == status)

    # sessions
    def open_session(self, session: Session) -> Tuple[Session, int]:
        """Demote the principal's ACTIVE sessions to EXPIRED, then store ``session``.

        Both steps happen under one lock acquisition so concurrent opens for
        the same principal serialize. Returns the stored session and the number
        of sessions demoted.
        """
        with self._data_lock:
            demoted = 0
            for existing in self.sessions.values():
                if (
                    existing.principal == session.principal
                    and existing.status == SessionStatus.ACTIVE
                ):
                    existing.status = SessionStatus.EXPIRED
                    demoted += 1
            stored = replace(session)
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored), demoted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def transition_session(
        self,
        session_id: str,
        new_status: SessionStatus,
        *,
        expected: SessionStatus = SessionStatus.ACTIVE,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.status != expected:
                return None
            sess.status = new_status
            self._persist_state()
            return replace(sess)

    def expire_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                s for s in self.sessions.values()
                if s.status == SessionStatus.ACTIVE and s.expires_at < now
            ]
            for sess in stale:
                sess.status = SessionStatus.EXPIRED
            if stale:
                self._persist_state()
            return len(stale)

    def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        *,
        expires_after: Optional[datetime] = None,
    ) -> List[Session]:
        with self._data_lock:
            matching = [
                s for s in self.sessions.values()
                if (status is None or s.status == status)
                and (expires_after is None or s.expires_at > expires_after)
            ]
            matching.sort(key=lambda s: s.started_at, reverse=True)
            return [replace(s) for s in matching]

    def count_sessions(self, status: Optional[SessionStatus] = None) -> int:
        with self._data_lock:
            return sum(
                1 for s in self.sessions.values() if status is None or s.status == status
            )

    def verify_connection(self) -> None:
        """Ensure the snapshot directory is writable."""
        path = self._state_path()
        probe = path.with_suffix(".probe")
        probe.write_text("ok")
        probe.unlink(missing_ok=True)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable(
                "failed to persist in-memory state", {"path": str(path), "error": str(exc)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.tokens = {t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])}
        self._tokens_by_digest = {t.digest: t.id for t in self.tokens.values()}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            principals=len(self.principals),
            tokens=len(self.tokens),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "username": principal.username,
            "password_hash": principal.password_hash,
            "device_id": principal.device_id,
            "profile_enc": principal.profile_enc,
            "created_at": self._serialize_datetime(principal.created_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        return Principal(
            id=str(data["id"]),
            username=data["username"],
            password_hash=data["password_hash"],
            device_id=data["device_id"],
            profile_enc=data.get("profile_enc") or {},
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_token(self, token: Token) -> dict:
        return {
            "id": token.id,
            "device_id": token.device_id,
            "digest": token.digest,
            "status": token.status.value,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "used_at": self._serialize_datetime(token.used_at),
        }

    def _deserialize_token(self, data: dict) -> Token:
        return Token(
            id=str(data["id"]),
            device_id=data["device_id"],
            digest=data["digest"],
            status=TokenStatus(data.get("status", TokenStatus.ACTIVE.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "principal": session.principal,
            "device_id": session.device_id,
            "origin_ip": session.origin_ip,
            "status": session.status.value,
            "started_at": self._serialize_datetime(session.started_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=str(data["id"]),
            principal=data["principal"],
            device_id=data["device_id"],
            origin_ip=data.get("origin_ip"),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            started_at=self._deserialize_datetime(data["started_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )
