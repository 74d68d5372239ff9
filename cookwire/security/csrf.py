"""
CSRF protection (signed double-submit cookie).

- A random token is stored in an httpOnly cookie the SPA cannot read.
- Its HMAC-SHA256 signature is stored in a readable cookie.
- State-changing requests send the signature in the ``x-csrf-token`` header.
- The server checks that the header is a valid signature of the httpOnly
  cookie value.

A cross-site attacker can neither read the httpOnly cookie nor forge a
signature without the server secret.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Optional

from starlette.responses import Response

from ..shared.logger import get_logger

logger = get_logger(__name__)

CSRF_TOKEN_BYTES = 32
CSRF_HEADER = "x-csrf-token"
CSRF_COOKIE_NAME = "csrf_token"
CSRF_PUBLIC_COOKIE_NAME = "csrf_token_signed"
CSRF_COOKIE_MAX_AGE = 24 * 60 * 60
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
MIN_SECRET_LENGTH = 32


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_token() -> str:
    """Generate a raw CSRF token."""
    return _b64url(secrets.token_bytes(CSRF_TOKEN_BYTES))


class CsrfSigner:
    """Signs and verifies CSRF tokens with a server-side secret."""

    def __init__(self, secret: str = ""):
        if secret and len(secret) >= MIN_SECRET_LENGTH:
            self._secret = secret.encode("utf-8")
        else:
            logger.warning(
                "CSRF_SECRET is not set or too short (<%d chars). Using a random "
                "per-process secret; CSRF tokens will be invalidated on restart.",
                MIN_SECRET_LENGTH,
            )
            self._secret = secrets.token_bytes(32)

    def sign(self, token: str) -> str:
        return _b64url(hmac.new(self._secret, token.encode("utf-8"), hashlib.sha256).digest())

    def verify(self, token: str, signature: str) -> bool:
        """Return True when ``signature`` is the signature of ``token``."""
        if not token or not signature:
            return False
        try:
            return hmac.compare_digest(self.sign(token).encode("ascii"), signature.encode("utf-8"))
        except (TypeError, UnicodeError):
            return False


def set_csrf_cookies(response: Response, token: str, signer: CsrfSigner, secure: bool) -> None:
    """Attach the httpOnly token cookie and the readable signature cookie."""
    common = {
        "max_age": CSRF_COOKIE_MAX_AGE,
        "path": "/",
        "secure": secure,
        "samesite": "strict",
    }
    response.set_cookie(CSRF_COOKIE_NAME, token, httponly=True, **common)
    response.set_cookie(CSRF_PUBLIC_COOKIE_NAME, signer.sign(token), httponly=False, **common)


def check_request(
    method: str,
    signature: Optional[str],
    cookie_token: Optional[str],
    signer: CsrfSigner,
) -> Optional[dict]:
    """Check a request against the double-submit rule.

    Returns None when the request may proceed, otherwise the JSON error body
    for a 403 response.
    """
    if method.upper() in SAFE_METHODS:
        return None
    if not signature or not cookie_token:
        return {"error": "CSRF token missing", "code": "CSRF_MISSING"}
    if not signer.verify(cookie_token, signature):
        return {"error": "CSRF token invalid", "code": "CSRF_INVALID"}
    return None
