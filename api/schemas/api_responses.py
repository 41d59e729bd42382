from __future__ import annotations

import uuid
from typing import Any, Dict, Generic, Optional, TypeVar

from flask import has_request_context, request
from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

REQUEST_ID_HEADER = "X-Request-ID"
_ENVIRON_KEY = "crimson.request_id"


class ApiError(BaseModel):
    """Standard error payload for API responses."""

    code: str = Field(default="error")
    message: str
    details: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="ignore")


class ApiMeta(BaseModel):
    """Metadata attached to every response."""

    request_id: Optional[str] = None
    # Number of items in `data` for list endpoints.
    count: Optional[int] = None

    model_config = ConfigDict(extra="ignore")


class ApiResponse(BaseModel, Generic[T]):
    """Standard envelope for all API responses."""

    ok: bool
    data: Optional[T] = None
    error: Optional[ApiError] = None
    meta: ApiMeta = Field(default_factory=ApiMeta)

    model_config = ConfigDict(extra="ignore")


def current_request_id() -> Optional[str]:
    """Request id for the active request (caller-supplied header or generated).

    None outside a request context.
    """

    if not has_request_context():
        return None
    rid = request.environ.get(_ENVIRON_KEY)
    if rid is None:
        rid = (request.headers.get(REQUEST_ID_HEADER) or "").strip()[:128] or uuid.uuid4().hex
        request.environ[_ENVIRON_KEY] = rid
    return rid


def _meta(meta: Optional[ApiMeta], data: Any = None) -> ApiMeta:
    if meta is None:
        meta = ApiMeta(count=len(data) if isinstance(data, list) else None)
    if meta.request_id is None:
        meta.request_id = current_request_id()
    return meta


def ok(data: T = None, *, meta: Optional[ApiMeta] = None) -> Dict[str, Any]:
    """Create a success envelope as a JSON-serializable dict."""

    payload = ApiResponse[Any](ok=True, data=data, error=None, meta=_meta(meta, data))
    return payload.model_dump(mode="json")


def fail(
    message: str,
    *,
    code: str = "error",
    details: Optional[Dict[str, Any]] = None,
    meta: Optional[ApiMeta] = None,
) -> Dict[str, Any]:
    """Create an error envelope as a JSON-serializable dict."""

    payload = ApiResponse[None](
        ok=False,
        data=None,
        error=ApiError(code=code, message=message, details=details),
        meta=_meta(meta),
    )
    return payload.model_dump(mode="json")
