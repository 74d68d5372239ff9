"""
Anonymous owner identity.

Each browser generates a random owner key and sends it with every project
request in the ``X-CookWire-Owner-Key`` header. Only an HMAC-SHA256 of the key,
keyed with a server-side secret, is ever stored, so a leaked database cannot be
matched against precomputed hashes.
"""

import base64
import hashlib
import hmac
import re
import secrets
from typing import Optional

from fastapi import HTTPException, Request

from ..shared.logger import get_logger

logger = get_logger(__name__)

OWNER_KEY_HEADER = "X-CookWire-Owner-Key"
MIN_OWNER_KEY_LENGTH = 24
MAX_OWNER_KEY_LENGTH = 512
MIN_SECRET_LENGTH = 32

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class OwnerKeyError(ValueError):
    """The owner key header is missing or malformed."""


def extract_owner_key(value: Optional[str]) -> str:
    """Validate a raw header value and return the trimmed owner key."""
    if not isinstance(value, str):
        raise OwnerKeyError(f"Missing {OWNER_KEY_HEADER} header")

    trimmed = value.strip()
    # Upper bound keeps HMAC input small
    if len(trimmed) < MIN_OWNER_KEY_LENGTH or len(trimmed) > MAX_OWNER_KEY_LENGTH:
        raise OwnerKeyError("Invalid owner key length")
    if _CONTROL_CHARS.search(trimmed):
        raise OwnerKeyError("Invalid characters in owner key")
    return trimmed


class OwnerKeyHasher:
    """Keyed hashing of owner keys.

    Falls back to a random per-process secret when none (or a too short one)
    is configured. Hashes then change on restart, which makes previously
    stored projects unreachable.
    """

    def __init__(self, secret: str = ""):
        if secret and len(secret) >= MIN_SECRET_LENGTH:
            self._secret = secret.encode("utf-8")
            self.ephemeral = False
        else:
            logger.warning(
                "OWNER_KEY_SECRET is not set or too short (<%d chars). Using a random "
                "per-process secret; stored owner key hashes will be invalidated on restart.",
                MIN_SECRET_LENGTH,
            )
            self._secret = secrets.token_bytes(32)
            self.ephemeral = True

    def hash(self, owner_key: str) -> str:
        return hmac.new(self._secret, owner_key.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_owner_key() -> str:
    """Generate a fresh owner key (32 random bytes, base64url, unpadded)."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


def timing_safe_equal(a: str, b: str) -> bool:
    """Constant-time string comparison."""
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def require_owner(request: Request) -> str:
    """FastAPI dependency: validate the owner key header and return its hash."""
    try:
        owner_key = extract_owner_key(request.headers.get(OWNER_KEY_HEADER))
    except OwnerKeyError as e:
        raise HTTPException(status_code=400, detail=str(e))
    hasher: OwnerKeyHasher = request.app.state.owner_key_hasher
    return hasher.hash(owner_key)
