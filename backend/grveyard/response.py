"""Uniform JSON envelope for REST responses.

Every HTTP endpoint answers with::

    {"success": bool, "message": str, "data": {...}, "created_at": "<iso8601>"}

``data`` is omitted when there is nothing to return.
"""
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def send_api_response(
    status_code: int,
    success: bool,
    message: str,
    data: Optional[Any] = None,
) -> JSONResponse:
    """Build a JSONResponse wrapped in the APIResponse envelope."""
    body = APIResponse(success=success, message=message, data=data)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
    )
