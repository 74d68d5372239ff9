"""
HTTP middleware stack for the CookWire API.

Outermost to innermost:

    access log -> security headers -> CORS -> CSRF cookie issuing
    -> method guard -> /api CSRF protection -> unhandled errors -> routes

The innermost layer turns unhandled exceptions into 500 responses, which then
pass through every outer layer.
"""

import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .app_config import AppSettings
from .security.csrf import (
    CSRF_COOKIE_NAME,
    CSRF_HEADER,
    check_request,
    generate_token,
    set_csrf_cookies,
)
from .security.owner_key import OWNER_KEY_HEADER
from .shared.logger import get_access_logger
from .system import server_error_response

access_logger = get_access_logger()

ALLOWED_API_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"})
CORS_ALLOWED_HEADERS = ["Content-Type", OWNER_KEY_HEADER, CSRF_HEADER]
CORS_ALLOWED_METHODS = ["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"]

# 'unsafe-inline' and 'unsafe-eval' are needed by the in-browser code editor
CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' 'unsafe-eval'",
        "style-src 'self' 'unsafe-inline'",
        "img-src 'self' data: blob:",
        "font-src 'self'",
        "connect-src 'self'",
        "frame-src 'self'",
        "object-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "frame-ancestors 'none'",
        "upgrade-insecure-requests",
        "manifest-src 'self'",
        "media-src 'self'",
        "worker-src 'none'",
    ]
)

SECURITY_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "X-Content-Type-Options": "nosniff",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Frame-Options": "DENY",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-XSS-Protection": "0",
}

ACCESS_LOG_SKIP_PATHS = frozenset({"/health"})
FINAL_404_TEXT = "CookWire Code-side 404"


def is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")


def install_middleware(app: FastAPI, settings: AppSettings) -> None:
    """Register the middleware stack on ``app``.

    Starlette wraps each newly added middleware around the existing ones, so
    registration runs from the innermost layer outwards.
    """

    @app.middleware("http")
    async def unhandled_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return server_error_response(request, exc, settings.is_production)

    @app.middleware("http")
    async def csrf_protection(request: Request, call_next):
        if is_api_path(request.url.path):
            error = check_request(
                request.method,
                request.headers.get(CSRF_HEADER),
                request.cookies.get(CSRF_COOKIE_NAME),
                request.app.state.csrf_signer,
            )
            if error is not None:
                return JSONResponse(status_code=403, content=error)
        return await call_next(request)

    @app.middleware("http")
    async def method_guard(request: Request, call_next):
        if request.method.upper() not in ALLOWED_API_METHODS:
            if is_api_path(request.url.path):
                return JSONResponse(status_code=405, content={"error": "Method not allowed"})
            return PlainTextResponse(FINAL_404_TEXT, status_code=404)
        return await call_next(request)

    @app.middleware("http")
    async def csrf_cookie(request: Request, call_next):
        response = await call_next(request)
        if request.cookies.get(CSRF_COOKIE_NAME):
            return response
        # Handlers such as /api/csrf-token issue their own pair
        already_issued = any(
            value.startswith(f"{CSRF_COOKIE_NAME}=") for value in response.headers.getlist("set-cookie")
        )
        if not already_issued:
            set_csrf_cookies(
                response,
                generate_token(),
                request.app.state.csrf_signer,
                secure=settings.is_production,
            )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,  # CSRF cookies travel with API calls
        allow_methods=CORS_ALLOWED_METHODS,
        allow_headers=CORS_ALLOWED_HEADERS,
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if "x-powered-by" in response.headers:
            del response.headers["x-powered-by"]
        return response

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        if request.url.path not in ACCESS_LOG_SKIP_PATHS:
            elapsed_ms = (time.perf_counter() - started) * 1000
            url = request.url.path
            if request.url.query:
                url = f"{url}?{request.url.query}"
            access_logger.info(
                "%s %s %d %s - %.3f ms",
                request.method,
                url,
                response.status_code,
                response.headers.get("content-length", "-"),
                elapsed_ms,
            )
        return response
