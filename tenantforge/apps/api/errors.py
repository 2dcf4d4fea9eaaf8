from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantforge.apps.api.response import failure_response
from tenantforge.domain.state import ErrorCode


logger = logging.getLogger(__name__)

INVALID_REQUEST = "InvalidRequest"
NOT_FOUND = "NotFound"

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: INVALID_REQUEST,
    401: ErrorCode.UNAUTHORIZED.value,
    404: NOT_FOUND,
    405: INVALID_REQUEST,
    409: ErrorCode.IN_PROGRESS.value,
    422: INVALID_REQUEST,
    500: ErrorCode.UNKNOWN.value,
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, ErrorCode.UNKNOWN.value)


def _split_detail(detail: Any, status_code: int) -> tuple[str, str]:
    # Extract code/message from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        return code, message
    if isinstance(detail, str):
        return _default_code(status_code), detail
    return _default_code(status_code), "Request failed"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message = _split_detail(exc.detail, exc.status_code)
    payload = failure_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405 responses use the same failure shape.
    code, message = _split_detail(exc.detail, exc.status_code)
    payload = failure_response(request=request, code=code, message=message)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = sorted({".".join(str(part) for part in error.get("loc", ())[1:]) for error in exc.errors()})
    message = "Invalid request body"
    if fields:
        message = f"Invalid request: {', '.join(field for field in fields if field)}"
    payload = failure_response(request=request, code=INVALID_REQUEST, message=message)
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; detail stays in the server log.
    logger.error(
        "unhandled_exception path=%s method=%s",
        request.url.path,
        request.method,
        exc_info=exc,
    )
    payload = failure_response(
        request=request,
        code=ErrorCode.UNKNOWN.value,
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
