"""API errors rendered as `{"error": ..., "details": ...}` bodies.

The chat and analysis endpoints answer failures with a plain-language
`error` string the client can show directly; everything else uses
FastAPI's HTTPException.
"""

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    """An error response with a user-facing message."""

    def __init__(
        self,
        status_code: int,
        error: str,
        details: str | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.status_code = status_code
        self.error = error
        self.details = details
        self.extra = extra or {}
        self.headers = headers
        super().__init__(error)

    def body(self) -> dict[str, Any]:
        content: dict[str, Any] = {"error": self.error}
        if self.details:
            content["details"] = self.details
        content.update(self.extra)
        return content


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Render an ApiError as JSON."""
    return JSONResponse(status_code=exc.status_code, content=exc.body(), headers=exc.headers)
