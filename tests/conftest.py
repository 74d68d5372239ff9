"""
Root conftest.py for CookWire backend tests.

Every test gets its own application instance, built from explicit settings
that point the database and SPA dist directory into ``tmp_path``.
"""

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure the repository root is in the path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from cookwire.app_config import AppSettings  # noqa: E402
from cookwire.security.owner_key import generate_owner_key  # noqa: E402
from main import create_app  # noqa: E402

CSRF_SECRET = "c" * 32
OWNER_KEY_SECRET = "o" * 32


# ============================================================================
# Pytest Hooks
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "api: mark test as exercising the HTTP API through TestClient",
    )


def pytest_collection_modifyitems(config, items):
    """Mark tests that use the ``client`` fixture as API tests."""
    for item in items:
        if "client" in getattr(item, "fixturenames", ()):
            item.add_marker(pytest.mark.api)


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def make_settings(tmp_path: Path):
    """Factory for settings isolated under ``tmp_path``."""

    def _make(**overrides) -> AppSettings:
        values = {
            "app_env": "test",
            "data_dir": str(tmp_path / "data"),
            "dist_dir": str(tmp_path / "dist"),
            "csrf_secret": CSRF_SECRET,
            "owner_key_secret": OWNER_KEY_SECRET,
        }
        values.update(overrides)
        return AppSettings(**values)

    return _make


@pytest.fixture
def settings(make_settings) -> AppSettings:
    return make_settings()


@pytest.fixture
def app(settings):
    return create_app(settings, chat_char_delay=0)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def csrf_headers(client) -> dict:
    """Fetch a CSRF token; the client keeps the matching cookie."""
    response = client.get("/api/csrf-token")
    assert response.status_code == 200
    return {"x-csrf-token": response.json()["csrfToken"]}


@pytest.fixture
def owner_key() -> str:
    return generate_owner_key()


@pytest.fixture
def other_owner_key() -> str:
    return generate_owner_key()


@pytest.fixture
def auth_headers(owner_key, csrf_headers) -> dict:
    return {"X-CookWire-Owner-Key": owner_key, **csrf_headers}


@pytest.fixture
def project_payload() -> dict:
    """A valid project body as the editor sends it."""
    return {
        "title": "My Pen",
        "files": {
            "html": "<h1>Hello</h1>",
            "css": "h1 { color: tomato; }",
            "js": "console.log('hi')",
        },
        "language": "en",
        "theme": "dark",
        "editorPrefs": {"fontSize": 14, "lineHeight": 1.6, "autoPreview": True},
        "workspacePrefs": {"previewMode": "desktop"},
    }
