from __future__ import annotations

import asyncio
import base64
import hashlib
import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError
from cryptography.fernet import Fernet, InvalidToken

from vauth.logging import get_logger
from vauth.service.digest import SECRET_ALPHABET
from vauth.service.errors import ConflictError, ServerError, ValidationError
from vauth.storage.errors import ConstraintViolation
from vauth.storage.models import Principal

PROFILE_FIELDS = ("name", "email", "mobile", "operating_country")
DEVICE_ID_PREFIX = "VAUTH-"
_DEVICE_ID_SUFFIX_LENGTH = 8
_MAX_DEVICE_ID_ATTEMPTS = 5

USER_NOT_FOUND = "USER_NOT_FOUND"
INVALID_PASSWORD = "INVALID_PASSWORD"


def generate_device_id() -> str:
    suffix = "".join(secrets.choice(SECRET_ALPHABET) for _ in range(_DEVICE_ID_SUFFIX_LENGTH))
    return f"{DEVICE_ID_PREFIX}{suffix}"


@dataclass(frozen=True)
class PrincipalProfile:
    principal: Principal
    profile: Dict[str, Optional[str]]


class IdentityService:
    """Principal lookup plus the password and field-encryption capabilities.

    Passwords are argon2id hashes. Profile PII is Fernet-encrypted with a key
    derived from the configured encryption key material.
    """

    def __init__(self, store, *, encryption_key: str) -> None:
        if not encryption_key:
            raise ValueError("encryption_key is required")
        self.store = store
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._cipher = Fernet(self._derive_cipher_key(encryption_key))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def hash_secret(self, plain: str) -> str:
        return self._pwd_hasher.hash(plain)

    def verify_secret(self, plain: str, digest: str) -> bool:
        try:
            return self._pwd_hasher.verify(digest, plain)
        except (InvalidHash, VerifyMismatchError):
            return False

    def encrypt_field(self, value: str) -> str:
        return self._cipher.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt_field(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            self.logger.error("field_decrypt_failed")
            raise ServerError("failed to decrypt field") from exc

    async def find_by_username(self, username: str) -> Optional[Principal]:
        return await asyncio.to_thread(self.store.get_principal_by_username, username)

    async def find_by_device_id(self, device_id: str) -> Optional[Principal]:
        return await asyncio.to_thread(self.store.get_principal_by_device_id, device_id)

    async def authenticate(
        self, username: str, password: str
    ) -> Tuple[Optional[Principal], Optional[str]]:
        """Return ``(principal, None)`` on success or ``(None, reason)`` on failure."""
        principal = await self.find_by_username(username)
        if principal is None:
            return None, USER_NOT_FOUND
        ok = await asyncio.to_thread(self.verify_secret, password, principal.password_hash)
        if not ok:
            self.logger.warning("password_verification_failed", username=username)
            return None, INVALID_PASSWORD
        return principal, None

    async def register_principal(
        self,
        username: str,
        password: str,
        profile: Optional[Dict[str, str]] = None,
    ) -> Principal:
        """Create a principal with a fresh device id and encrypted profile."""
        if not username or len(username.strip()) < 3:
            raise ValidationError("username must be at least 3 characters")
        if not password:
            raise ValidationError("password is required")
        unknown = set(profile or {}) - set(PROFILE_FIELDS)
        if unknown:
            raise ValidationError("unknown profile fields", detail={"fields": sorted(unknown)})

        password_hash = await asyncio.to_thread(self.hash_secret, password)
        profile_enc = {k: self.encrypt_field(v) for k, v in (profile or {}).items() if v}
        for _ in range(_MAX_DEVICE_ID_ATTEMPTS):
            device_id = generate_device_id()
            try:
                principal = await asyncio.to_thread(
                    self.store.create_principal,
                    username.strip(),
                    password_hash,
                    device_id,
                    profile_enc,
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") == "device_id":
                    continue
                raise ConflictError("username already exists") from exc
            self.logger.info("principal_registered", principal_id=principal.id, device_id=device_id)
            return principal
        raise ServerError("unable to allocate a device id")

    async def list_principals(self) -> List[PrincipalProfile]:
        principals = await asyncio.to_thread(self.store.list_principals)
        return [
            PrincipalProfile(
                principal=p,
                profile={
                    name: self.decrypt_field(p.profile_enc[name]) if name in p.profile_enc else None
                    for name in PROFILE_FIELDS
                },
            )
            for p in principals
        ]

    async def count_principals(self) -> int:
        return await asyncio.to_thread(self.store.count_principals)
