"""Data model shared by the client components."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TransportKind(str, Enum):
    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNHEALTHY = "unhealthy"


DEFAULT_TIMEOUT_MS = 30_000
MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 300_000

# Fields whose change requires tearing the connection down and reopening it.
TRANSPORT_FIELDS = (
    "transport_kind",
    "command",
    "args",
    "env",
    "working_directory",
    "base_url",
    "headers",
    "timeout_ms",
)


@dataclass(frozen=True)
class ServerConfig:
    """A validated tool-server entry."""

    id: str
    transport_kind: TransportKind
    display_name: str = ""
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    base_url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    enabled: bool = True

    @property
    def timeout(self) -> float:
        """Timeout in seconds."""
        return self.timeout_ms / 1000.0

    def transport_differs(self, other: "ServerConfig") -> bool:
        return any(getattr(self, name) != getattr(other, name) for name in TRANSPORT_FIELDS)

    def to_entry(self) -> Dict[str, Any]:
        """Document form of this server, written with the canonical `transport` key."""
        entry: Dict[str, Any] = {"transport": self.transport_kind.value}
        if self.display_name and self.display_name != self.id:
            entry["displayName"] = self.display_name
        if self.transport_kind == TransportKind.STDIO:
            entry["command"] = self.command
            entry["args"] = list(self.args)
            entry["env"] = dict(self.env)
            if self.working_directory:
                entry["workingDirectory"] = self.working_directory
        else:
            entry["baseUrl"] = self.base_url
            if self.headers:
                entry["headers"] = dict(self.headers)
        if self.timeout_ms != DEFAULT_TIMEOUT_MS:
            entry["timeoutMs"] = self.timeout_ms
        return entry


@dataclass
class ConnectionState:
    server_id: str
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: Optional[str] = None
    last_connected_at: Optional[datetime] = None
    consecutive_failures: int = 0
    retry_count: int = 0
    last_check_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None

    def snapshot(self) -> "ConnectionState":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serverId": self.server_id,
            "status": self.status.value,
            "lastError": self.last_error,
            "lastConnectedAt": _iso(self.last_connected_at),
            "consecutiveFailures": self.consecutive_failures,
            "retryCount": self.retry_count,
            "lastCheckAt": _iso(self.last_check_at),
            "lastSuccessAt": _iso(self.last_success_at),
        }


@dataclass(frozen=True)
class Tool:
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    @property
    def required(self) -> List[str]:
        return list(self.input_schema.get("required", []) or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of exactly one ToolCall."""

    success: bool
    content: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, content: List[Dict[str, Any]]) -> "ToolResult":
        return cls(success=True, content=content)

    @classmethod
    def failed(cls, error: str, error_code: Optional[str] = None) -> "ToolResult":
        return cls(success=False, error=error, error_code=error_code)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success}
        if self.content is not None:
            result["content"] = self.content
        if self.error is not None:
            result["error"] = self.error
            result["errorCode"] = self.error_code
        return result


@dataclass
class ToolStats:
    success_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_called_at: Optional[datetime] = None


@dataclass
class HealthRecord:
    """Derived, unpersisted view of one server's health."""

    server_id: str
    status: ConnectionStatus
    consecutive_failures: int
    last_check_at: Optional[datetime]
    last_success_at: Optional[datetime]
    last_error: Optional[str]
    tool_stats: Dict[str, ToolStats] = field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    @property
    def success_rate(self) -> float:
        total = sum(s.success_count + s.error_count for s in self.tool_stats.values())
        if total == 0:
            return 1.0
        return sum(s.success_count for s in self.tool_stats.values()) / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serverId": self.server_id,
            "status": self.status.value,
            "isHealthy": self.is_healthy,
            "consecutiveFailures": self.consecutive_failures,
            "lastCheckAt": _iso(self.last_check_at),
            "lastSuccessAt": _iso(self.last_success_at),
            "lastError": self.last_error,
            "successRate": round(self.success_rate, 4),
            "tools": {
                name: {
                    "successCount": stats.success_count,
                    "errorCount": stats.error_count,
                    "lastError": stats.last_error,
                    "lastCalledAt": _iso(stats.last_called_at),
                }
                for name, stats in self.tool_stats.items()
            },
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
