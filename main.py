"""
FastAPI backend for the CookWire code playground.

Serves the project-storage REST API used by the editor SPA, and the built
SPA itself (``dist/``) with client-side routing fallback.
"""

import os
import sys
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, ORJSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cookwire.app_config import AppSettings, EnvValidationError, validate_env
from cookwire.chat import DEFAULT_CHAR_DELAY
from cookwire.chat import router as chat_router
from cookwire.middleware import FINAL_404_TEXT, install_middleware
from cookwire.projects import router as projects_router
from cookwire.projects_store import ProjectsRepository
from cookwire.security import CsrfSigner, OwnerKeyHasher, RateLimiter
from cookwire.shared.logger import get_logger, resolve_level, setup_logging
from cookwire.system import log_error, server_error_response
from cookwire.system import router as system_router

logger = get_logger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _file_response(path: Path) -> FileResponse:
    headers = NO_CACHE_HEADERS if path.suffix == ".html" else None
    return FileResponse(str(path), headers=headers)


def serve_dist(dist_path: Path, full_path: str):
    """Serve a built asset, or ``index.html`` for client-side routes.

    Paths with a dot-prefixed segment are never served as files and get
    ``index.html`` like any client-side route. Nothing outside ``dist_path``
    is ever served.
    """
    segments = [s for s in full_path.split("/") if s]
    hidden = any(s.startswith(".") for s in segments)

    root = dist_path.resolve()
    if segments and not hidden:
        candidate = (root / "/".join(segments)).resolve()
        if candidate.is_relative_to(root) and candidate.is_file():
            return _file_response(candidate)

    index_file = root / "index.html"
    if index_file.is_file():
        return _file_response(index_file)
    logger.error("index.html not found at: %s", index_file)
    return PlainTextResponse(FINAL_404_TEXT, status_code=404)


def _log_dist_diagnostics(dist_path: Path) -> None:
    logger.info("distPath: %s", dist_path)
    if dist_path.is_dir():
        contents = sorted(p.name for p in dist_path.iterdir())
        logger.info("dist directory found, contents: %s", ", ".join(contents))
    else:
        logger.error("dist directory NOT FOUND at %s", dist_path)


def create_app(
    settings: Optional[AppSettings] = None,
    chat_char_delay: float = DEFAULT_CHAR_DELAY,
) -> FastAPI:
    """Build the CookWire API application.

    Args:
        settings: Validated settings; read from the environment when omitted.
        chat_char_delay: Seconds between streamed characters of the mock chat.
    """
    if settings is None:
        settings = validate_env()
    setup_logging(settings.log_level)

    app = FastAPI(
        title="CookWire API",
        description="Project storage API for the CookWire code playground",
        version="1.0.0",
        default_response_class=ORJSONResponse,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None,
        openapi_url=None if settings.is_production else "/openapi.json",
    )

    app.state.settings = settings
    app.state.repository = ProjectsRepository(
        data_dir=settings.resolved_data_dir,
        database_path=settings.resolved_database_path,
    )
    app.state.owner_key_hasher = OwnerKeyHasher(settings.owner_key_secret)
    app.state.csrf_signer = CsrfSigner(settings.csrf_secret)
    app.state.rate_limiter = RateLimiter()
    app.state.chat_char_delay = chat_char_delay

    dist_path = Path(settings.dist_dir)

    # ============= Exception Handlers =============

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Render HTTP errors as ``{"error": ...}``; log server errors."""
        if exc.status_code >= 500:
            log_error(
                endpoint=str(request.url.path),
                message=str(exc.detail),
                details=f"Status code: {exc.status_code}",
            )
        content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Last resort for failures raised by the middleware stack itself."""
        return server_error_response(request, exc, settings.is_production)

    install_middleware(app, settings)

    # ============= Routes =============

    app.include_router(system_router, tags=["system"])
    app.include_router(projects_router, prefix="/api")
    app.include_router(chat_router, prefix="/api")

    @app.api_route("/api", methods=ALL_METHODS, include_in_schema=False)
    @app.api_route("/api/{rest:path}", methods=ALL_METHODS, include_in_schema=False)
    async def api_not_found():
        return JSONResponse(status_code=404, content={"error": "API endpoint not found"})

    @app.api_route("/{full_path:path}", methods=ALL_METHODS, include_in_schema=False)
    async def serve_spa_routes(full_path: str, request: Request):
        """Serve the SPA for all non-API GET routes."""
        if request.method not in ("GET", "HEAD"):
            logger.info("Final 404 handler hit for: %s /%s", request.method, full_path)
            return PlainTextResponse(FINAL_404_TEXT, status_code=404)
        if not settings.is_production:
            logger.debug("Serving SPA for: /%s", full_path)
        return serve_dist(dist_path, full_path)

    # ============= Startup Events =============

    @app.on_event("startup")
    async def startup_event():
        logger.info("CookWire API starting...")
        logger.info("Environment: %s", settings.app_env)
        logger.info("CORS origins: %s", settings.cors_allow_origins)
        logger.info("Database: %s", settings.resolved_database_path)
        _log_dist_diagnostics(dist_path)

    return app


if __name__ == "__main__":
    import argparse

    setup_logging(os.environ.get("LOG_LEVEL", "INFO"))
    try:
        env_settings = validate_env()
    except EnvValidationError:
        # validate_env already logged every problem
        sys.exit(1)

    parser = argparse.ArgumentParser(description="CookWire API server")
    parser.add_argument(
        "--port",
        type=int,
        default=env_settings.port,
        help="Port to run the server on (default: PORT env var or 3000)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0 or HOST env var)",
    )
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable auto-reload (development only)",
    )
    args = parser.parse_args()

    logger.info("CookWire API listening on port %d", args.port)
    uvicorn.run(
        "main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=resolve_level(env_settings.log_level),
        log_config=None,
        server_header=False,
        timeout_keep_alive=5,
        # X-Forwarded-For is interpreted by the rate limiter per TRUST_PROXY
        proxy_headers=False,
    )
