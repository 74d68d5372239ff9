"""Project storage API endpoints.

Projects are scoped to the caller's owner key hash. Reading, updating or
deleting someone else's project is refused with 403 rather than hidden.
"""

from __future__ import annotations

import math
import re
from typing import Annotated, Any, Literal, Union

import orjson
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StringConstraints,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

from .projects_store import ProjectRecord, ProjectsRepository
from .security.owner_key import require_owner
from .security.rate_limit import rate_limit
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/projects",
    tags=["projects"],
    dependencies=[Depends(rate_limit)],
)

MAX_FILE_LENGTH = 200_000
MAX_TITLE_LENGTH = 120
MAX_BODY_BYTES = 2 * 1024 * 1024
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

# Route-level check accepts any UUID layout; the repository is stricter
PROJECT_ID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


# ============= Payload schema =============


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


Number = Union[StrictInt, StrictFloat]
Title = Annotated[
    str,
    StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_TITLE_LENGTH, strict=True),
]
Source = Annotated[str, StringConstraints(max_length=MAX_FILE_LENGTH, strict=True)]


def _check_range(value: float, low: float, high: float) -> float:
    if not math.isfinite(value):
        raise ValueError("must be a finite number")
    if value < low or value > high:
        raise ValueError(f"must be between {low} and {high}")
    return value


class ProjectFiles(_CamelModel):
    html: Source
    css: Source
    js: Source


class EditorPrefs(_CamelModel):
    font_size: Number
    line_height: Number
    auto_preview: StrictBool

    @field_validator("font_size")
    @classmethod
    def _font_size_range(cls, value):
        return _check_range(value, 12, 20)

    @field_validator("line_height")
    @classmethod
    def _line_height_range(cls, value):
        return _check_range(value, 1.2, 2.1)


class WorkspacePrefs(_CamelModel):
    preview_mode: Literal["desktop", "mobile"]


class ProjectPayload(_CamelModel):
    """Everything the editor saves for one project."""

    title: Title
    files: ProjectFiles
    language: Literal["ja", "en"]
    theme: Literal["dark", "light"]
    editor_prefs: EditorPrefs
    workspace_prefs: WorkspacePrefs

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


def flatten_errors(error: ValidationError) -> dict[str, Any]:
    """Group validation messages by top-level field.

    Problems with the body as a whole (e.g. not an object) go to
    ``formErrors``.
    """
    form_errors: list[str] = []
    field_errors: dict[str, list[str]] = {}
    for item in error.errors(include_url=False):
        loc = item.get("loc") or ()
        if not loc:
            form_errors.append(item["msg"])
            continue
        field_errors.setdefault(str(loc[0]), []).append(item["msg"])
    return {"formErrors": form_errors, "fieldErrors": field_errors}


# ============= Helpers =============


def _repository(request: Request) -> ProjectsRepository:
    return request.app.state.repository


def _parse_leading_int(raw: str | None) -> int | None:
    """Integer prefix of ``raw`` (``"10abc"`` -> 10), or None."""
    if raw is None:
        return None
    match = _LEADING_INT.match(raw)
    return int(match.group(1)) if match else None


async def _read_json_body(request: Request) -> Any:
    """Decoded JSON request body; ``{}`` when absent or not JSON.

    Bodies over ``MAX_BODY_BYTES`` are refused with 413 without being read
    past the limit.
    """
    declared = _parse_leading_int(request.headers.get("content-length"))
    if declared is not None and declared > MAX_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    chunks: list[bytes] = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > MAX_BODY_BYTES:
            raise HTTPException(status_code=413, detail="Payload too large")
        chunks.append(chunk)
    body = b"".join(chunks)

    content_type = request.headers.get("content-type", "")
    if not body or "json" not in content_type.lower():
        return {}
    try:
        data = orjson.loads(body)
    except orjson.JSONDecodeError:
        return {}
    return {} if data is None else data


def _validate_payload(request: Request, data: Any) -> ProjectPayload:
    try:
        return ProjectPayload.model_validate(data)
    except ValidationError as e:
        detail: dict[str, Any] = {"error": "Invalid payload"}
        if not request.app.state.settings.is_production:
            detail["details"] = flatten_errors(e)
        raise HTTPException(status_code=400, detail=detail)


def _check_project_id(project_id: str) -> None:
    if not PROJECT_ID_PATTERN.match(project_id):
        raise HTTPException(status_code=400, detail="Invalid project ID format")


def _require_owned(record: ProjectRecord | None, owner_key_hash: str) -> ProjectRecord:
    if record is None:
        raise HTTPException(status_code=404, detail="Not found")
    if record.owner_key_hash != owner_key_hash:
        raise HTTPException(status_code=403, detail="Forbidden")
    return record


def _storage_failure(message: str, exc: Exception) -> HTTPException:
    logger.error("Database error: %s", exc, exc_info=exc)
    return HTTPException(status_code=500, detail=message)


# ============= Routes =============


@router.get("")
async def list_projects(
    request: Request,
    owner_key_hash: str = Depends(require_owner),
    limit: str | None = Query(None, description="Page size (1-200, default 50)"),
    offset: str | None = Query(None, description="Rows to skip (default 0)"),
):
    """List the caller's projects, most recently updated first."""
    raw_limit = _parse_leading_int(limit)
    raw_offset = _parse_leading_int(offset)
    page_size = DEFAULT_PAGE_SIZE if raw_limit is None else max(1, min(raw_limit, MAX_PAGE_SIZE))
    skip = 0 if raw_offset is None else max(0, raw_offset)

    try:
        data = _repository(request).list_by_owner(owner_key_hash, limit=page_size, offset=skip)
    except Exception as e:
        raise _storage_failure("Failed to fetch projects", e)
    return {"data": data}


@router.get("/{project_id}")
async def get_project(project_id: str, request: Request, owner_key_hash: str = Depends(require_owner)):
    """Fetch one project."""
    _check_project_id(project_id)
    try:
        record = _repository(request).get_by_id(project_id)
    except Exception as e:
        raise _storage_failure("Failed to fetch project", e)
    return {"data": _require_owned(record, owner_key_hash).project}


@router.post("", status_code=201)
async def create_project(request: Request, owner_key_hash: str = Depends(require_owner)):
    """Create a project owned by the caller."""
    payload = _validate_payload(request, await _read_json_body(request))
    try:
        data = _repository(request).create(owner_key_hash, payload.to_storage())
    except Exception as e:
        raise _storage_failure("Failed to create project", e)
    return {"data": data}


@router.put("/{project_id}")
async def update_project(project_id: str, request: Request, owner_key_hash: str = Depends(require_owner)):
    """Replace a project's content and preferences."""
    _check_project_id(project_id)
    repository = _repository(request)
    try:
        record = repository.get_by_id(project_id)
    except Exception as e:
        raise _storage_failure("Failed to update project", e)
    _require_owned(record, owner_key_hash)

    payload = _validate_payload(request, await _read_json_body(request))
    try:
        data = repository.update(project_id, payload.to_storage())
    except Exception as e:
        raise _storage_failure("Failed to update project", e)
    if data is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"data": data}


@router.delete("/{project_id}", status_code=204)
async def delete_project(project_id: str, request: Request, owner_key_hash: str = Depends(require_owner)):
    """Delete a project."""
    _check_project_id(project_id)
    repository = _repository(request)
    try:
        record = repository.get_by_id(project_id)
    except Exception as e:
        raise _storage_failure("Failed to delete project", e)
    _require_owned(record, owner_key_hash)

    try:
        repository.delete(project_id)
    except Exception as e:
        raise _storage_failure("Failed to delete project", e)
    return None
