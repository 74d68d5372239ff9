"""
System routes for the CookWire API: health, connectivity probe, CSRF token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from .security.csrf import generate_token, set_csrf_cookies
from .security.rate_limit import rate_limit
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

NO_STORE = "no-cache, no-store, must-revalidate"


def log_error(
    endpoint: str,
    message: str,
    level: str = "error",
    details: Optional[str] = None,
    exc: Optional[BaseException] = None,
) -> None:
    """Log a server-side failure with the endpoint that produced it."""
    log = logger.critical if level == "critical" else logger.error
    if details:
        log("%s: %s (%s)", endpoint, message, details, exc_info=exc)
    else:
        log("%s: %s", endpoint, message, exc_info=exc)


def server_error_response(request: Request, exc: Exception, production: bool) -> JSONResponse:
    """Log an unhandled exception and render the 500 body.

    The exception message is only exposed outside production.
    """
    log_error(
        endpoint=str(request.url.path),
        message=str(exc),
        level="critical",
        details=f"Unhandled exception: {type(exc).__name__}",
        exc=exc,
    )
    if production:
        content = {"error": "Internal server error"}
    else:
        content = {"error": "Server error", "message": str(exc)}
    return JSONResponse(status_code=500, content=content)


@router.get("/health")
async def health_check(response: Response):
    """Liveness probe. Deliberately minimal: no version or environment info."""
    response.headers["Cache-Control"] = NO_STORE
    return {"ok": True}


@router.get("/debug-ping", response_class=PlainTextResponse)
async def debug_ping():
    """Plain-text reachability probe for proxies and port checks."""
    return "pong"


@router.get("/api/csrf-token", dependencies=[Depends(rate_limit)])
async def get_csrf_token(request: Request, response: Response):
    """Issue a fresh CSRF cookie pair.

    Only the signed value is returned; the raw token stays in the httpOnly
    cookie.
    """
    signer = request.app.state.csrf_signer
    token = generate_token()
    set_csrf_cookies(response, token, signer, secure=request.app.state.settings.is_production)
    return {"csrfToken": signer.sign(token)}
