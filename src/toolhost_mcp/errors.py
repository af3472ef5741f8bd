"""Exception taxonomy for the MCP client."""

from typing import List, Optional

from toolhost_mcp.response import ErrorCodes


class MCPClientError(Exception):
    """Base class for every error raised by the client."""

    code = ErrorCodes.UNEXPECTED_EXCEPTION

    def __init__(self, message: str, server_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server_id = server_id


class ConfigValidationError(MCPClientError):
    """Structural problems with a server entry."""

    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, errors: List[str], server_id: Optional[str] = None):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration", server_id)


class SecurityRejection(MCPClientError):
    """Security policy violation. Never retried and never overridable."""

    code = ErrorCodes.SECURITY_REJECTION

    def __init__(self, violations: List[str], server_id: Optional[str] = None):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations) or "rejected by security policy", server_id)


class ConnectError(MCPClientError):
    """Transient failure to establish a connection."""

    code = ErrorCodes.CONNECT_ERROR


class ProtocolError(MCPClientError):
    """The peer sent something that breaks the MCP / JSON-RPC contract."""

    code = ErrorCodes.PROTOCOL_ERROR


class OperationTimeoutError(MCPClientError, TimeoutError):
    code = ErrorCodes.TIMEOUT


class ToolInvocationError(MCPClientError):
    """A tool call failed (unknown tool, remote error, bad arguments)."""

    code = ErrorCodes.TOOL_INVOCATION_ERROR


class CancellationError(ToolInvocationError):
    """An outstanding call was cancelled because its connection went away."""

    code = ErrorCodes.CANCELLED


class NotConnectedError(MCPClientError):
    code = ErrorCodes.NOT_CONNECTED


class UnknownServerError(MCPClientError):
    code = ErrorCodes.NOT_FOUND


class InvalidArgumentError(MCPClientError):
    code = ErrorCodes.INVALID_ARGUMENT


class ConfigurationError(MCPClientError):
    """Configuration document could not be read, written or parsed."""

    code = ErrorCodes.IO_ERROR
