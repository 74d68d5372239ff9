"""
Request security for the CookWire API: owner identity, CSRF, rate limiting.
"""

from .csrf import CSRF_HEADER, CsrfSigner
from .owner_key import OWNER_KEY_HEADER, OwnerKeyHasher, require_owner
from .rate_limit import RateLimiter, rate_limit

__all__ = [
    "CSRF_HEADER",
    "CsrfSigner",
    "OWNER_KEY_HEADER",
    "OwnerKeyHasher",
    "require_owner",
    "RateLimiter",
    "rate_limit",
]
