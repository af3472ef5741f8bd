"""Command response envelope and error codes."""

from typing import Any


class CommandResponse:
    """Envelope returned by every command handler: {success, data?, error?}."""

    @staticmethod
    def success(data: Any = None) -> dict:
        """Create a success response."""
        response = {"success": True}
        if data is not None:
            response["data"] = data
        return response

    @staticmethod
    def failure(code: str, message: str, data: Any = None) -> dict:
        """Create an error response."""
        response = {
            "success": False,
            "error": {"code": code, "message": message},
        }
        if data is not None:
            response["data"] = data
        return response


class ErrorCodes:
    """Error codes carried in failed command responses."""
    UNEXPECTED_EXCEPTION = "unexpected_exception"
    INVALID_ARGUMENT = "invalid_argument"
    NOT_FOUND = "not_found"
    IO_ERROR = "io_error"
    TIMEOUT = "timeout"
    VALIDATION_ERROR = "validation_error"
    SECURITY_REJECTION = "security_rejection"
    CONNECT_ERROR = "connect_error"
    PROTOCOL_ERROR = "protocol_error"
    TOOL_INVOCATION_ERROR = "tool_invocation_error"
    CANCELLED = "cancelled"
    NOT_CONNECTED = "not_connected"
    UNAUTHORIZED = "unauthorized"
