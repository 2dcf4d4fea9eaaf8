from __future__ import annotations

from typing import Any

from tenantforge.apps.api.response import FailureResponse


def _failure_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "success": False,
        "errorCode": code,
        "message": message,
        "requestId": "4f1c2a9e0d7b4c3a9e8f6b5d4c3a2b1e",
    }


def _response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": FailureResponse,
        "description": description,
        "content": {"application/json": {"example": _failure_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", "Unauthorized", "Missing or invalid bearer token"),
    422: _response("Validation error", "InvalidRequest", "Invalid request: ownerLogin"),
    500: _response("Internal error", "Unknown", "Internal server error"),
}

PROVISIONING_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _response("Invalid slug, login or reference", "InvalidSlug", '"admin" is a reserved keyword and cannot be used'),
    409: _response("Slug taken or attempt in progress", "DuplicateSlug", "Slug 'golden-spoon' is already in use"),
    502: _response(
        "Identity provider failure",
        "IdentityCreationFailed",
        "Owner identity could not be created; an operator has been notified",
    ),
}
