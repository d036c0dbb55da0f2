"""One-way fingerprints and random secrets for one-time tokens."""

from __future__ import annotations

import hashlib
import secrets
import string

from vauth.service.errors import ValidationError

SECRET_ALPHABET = string.ascii_uppercase + string.digits


def fingerprint(device_id: str, plain_secret: str) -> str:
    """SHA-512 hex digest over ``device_id + plain_secret``.

    Deterministic; the digest is what gets stored and looked up, never the secret.
    """
    if not isinstance(device_id, str) or not device_id:
        raise ValidationError("device_id is required")
    if not isinstance(plain_secret, str) or not plain_secret:
        raise ValidationError("token is required")
    try:
        material = (device_id + plain_secret).encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ValidationError("token must be valid text") from exc
    return hashlib.sha512(material).hexdigest()


def random_secret(length: int = 6) -> str:
    if length <= 0:
        raise ValidationError("secret length must be positive")
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))
