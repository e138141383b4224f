from __future__ import annotations

from typing import Any, Dict

from .schemas.anthropic import ErrorResponse


class GatewayError(Exception):
    error_type = "api_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return error_payload(self.error_type, self.message)


class AuthenticationError(GatewayError):
    """Credential missing or empty; raised before any upstream call."""

    error_type = "authentication_error"
    status_code = 401


class UpstreamError(GatewayError):
    """The upstream call failed, returned an error status, or could not be decoded."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def error_payload(error_type: str, message: str) -> Dict[str, Any]:
    return ErrorResponse(error={"type": error_type, "message": message}).model_dump()
