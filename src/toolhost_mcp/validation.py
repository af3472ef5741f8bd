"""
Configuration validation for tool-server entries.

Turns one raw entry from the configuration document into a ServerConfig, or
a list of every problem found. Structural problems and security violations
are both hard errors; warnings never block.

Supports both document formats:
- Nested format: { "mcpServers": { "server-name": {...} }, "disabled": {...} }
- Flat format: { "server-name": {...} }
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from toolhost_mcp.errors import ConfigValidationError, SecurityRejection
from toolhost_mcp.models import (
    DEFAULT_TIMEOUT_MS,
    MAX_TIMEOUT_MS,
    MIN_TIMEOUT_MS,
    ServerConfig,
    TransportKind,
)
from toolhost_mcp.security import SecurityGate, TrustLevel, UrlPurpose, Violation

logger = logging.getLogger(__name__)

SERVER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

MAX_ARGS = 50
MAX_ENV_VARS = 100
MAX_COMMAND_LENGTH = 500
MAX_ENV_VALUE_LENGTH = 1000

SYSTEM_PERMISSIONS_WARNING = "This server will execute with your system permissions"
UNKNOWN_SOURCE_WARNING = "Unknown package source - verify before installing"

# Violations from a URL scan that describe a malformed URL rather than a policy hit.
MALFORMED_URL_CODES = frozenset(["invalid_url"])


@dataclass
class ValidationResult:
    server_id: Optional[str]
    config: Optional[ServerConfig] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)
    trust_level: TrustLevel = TrustLevel.UNKNOWN

    @property
    def valid(self) -> bool:
        return self.config is not None and not self.errors

    @property
    def rejected_by_security(self) -> bool:
        return bool(self.violations)

    def raise_for_errors(self):
        """Raise SecurityRejection or ConfigValidationError if the entry is invalid."""
        if self.violations:
            raise SecurityRejection([v.reason for v in self.violations], self.server_id)
        if self.errors:
            raise ConfigValidationError(self.errors, self.server_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "serverId": self.server_id,
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "securityViolations": [v.reason for v in self.violations],
            "trustLevel": self.trust_level.value,
        }


def entry_transport(raw: Dict[str, Any]) -> Any:
    """Read the discriminator; `transport` wins over the `type` alias."""
    if raw.get("transport") is not None:
        return raw.get("transport")
    return raw.get("type")


def entry_base_url(raw: Dict[str, Any]) -> Any:
    if raw.get("baseUrl") is not None:
        return raw.get("baseUrl")
    return raw.get("url")


class ConfigValidator:
    """Structural + security validation of raw server entries."""

    def __init__(self, gate: Optional[SecurityGate] = None):
        self.gate = gate or SecurityGate()

    def validate(self, raw: Dict[str, Any], server_id: Optional[str] = None, enabled: bool = True) -> ValidationResult:
        """
        Validate one raw entry.

        Args:
            raw: Entry as found in the document
            server_id: Key of the entry in its section (falls back to raw["id"])
            enabled: Whether the entry sits in the active section

        Returns:
            ValidationResult carrying every error and warning found

        Raises:
            TypeError: If raw is None (caller bug, not bad input)
        """
        if raw is None:
            raise TypeError("validate() requires a configuration entry, got None")

        if server_id is None and isinstance(raw, dict):
            server_id = raw.get("id")
        result = ValidationResult(server_id=server_id)

        if not isinstance(raw, dict):
            result.errors.append("Server entry must be an object")
            return result

        if not isinstance(server_id, str) or not server_id:
            result.errors.append("Missing server id")
        elif not SERVER_ID_PATTERN.match(server_id):
            result.errors.append(
                f"Invalid server id '{server_id}': only letters, digits, '-' and '_' are allowed"
            )

        kind = self._transport_kind(raw, result)
        timeout_ms = self._timeout(raw, result)
        display_name = raw.get("displayName", raw.get("name"))
        if display_name is not None and not isinstance(display_name, str):
            result.errors.append("displayName must be a string")
            display_name = None

        fields: Dict[str, Any] = {}
        if kind == TransportKind.STDIO:
            fields = self._stdio_fields(raw, result)
        elif kind in (TransportKind.HTTP, TransportKind.SSE):
            fields = self._remote_fields(raw, kind, result)

        if result.violations:
            result.errors.extend(f"Security: {v.reason}" for v in result.violations)

        if result.errors:
            logger.info(f"Server entry '{server_id}' failed validation with {len(result.errors)} error(s)")
            return result

        result.config = ServerConfig(
            id=server_id,
            transport_kind=kind,
            display_name=display_name or server_id,
            timeout_ms=timeout_ms,
            enabled=enabled,
            **fields,
        )
        return result

    def _transport_kind(self, raw: Dict[str, Any], result: ValidationResult) -> Optional[TransportKind]:
        transport = raw.get("transport")
        alias = raw.get("type")
        if transport is not None and alias is not None and transport != alias:
            result.errors.append(f"Conflicting transport '{transport}' and type '{alias}'")
            return None
        value = entry_transport(raw)
        if value is None:
            result.errors.append("Missing transport type (expected one of: stdio, http, sse)")
            return None
        try:
            return TransportKind(value)
        except ValueError:
            result.errors.append(f"Invalid transport type '{value}' (expected one of: stdio, http, sse)")
            return None

    def _timeout(self, raw: Dict[str, Any], result: ValidationResult) -> int:
        timeout_ms = raw.get("timeoutMs", DEFAULT_TIMEOUT_MS)
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int):
            result.errors.append("timeoutMs must be an integer number of milliseconds")
            return DEFAULT_TIMEOUT_MS
        if not MIN_TIMEOUT_MS <= timeout_ms <= MAX_TIMEOUT_MS:
            result.errors.append(
                f"timeoutMs must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS}, got {timeout_ms}"
            )
        return timeout_ms

    def _stdio_fields(self, raw: Dict[str, Any], result: ValidationResult) -> Dict[str, Any]:
        command = raw.get("command")
        args = raw.get("args", [])
        env = raw.get("env", {})
        working_directory = raw.get("workingDirectory", raw.get("cwd"))
        if args is None:
            args = []
        if env is None:
            env = {}

        if entry_base_url(raw) is not None:
            result.errors.append("baseUrl is not valid for stdio transport")
        if raw.get("headers"):
            result.errors.append("headers are not valid for stdio transport")

        if not isinstance(command, str) or not command.strip():
            result.errors.append("Missing command for stdio transport")
            command = None
        elif len(command) > MAX_COMMAND_LENGTH:
            result.errors.append(f"Command exceeds {MAX_COMMAND_LENGTH} characters")

        if not isinstance(args, list) or not all(isinstance(a, str) for a in args):
            result.errors.append("args must be a list of strings")
            args = []
        elif len(args) > MAX_ARGS:
            result.errors.append(f"Too many arguments: {len(args)} (maximum {MAX_ARGS})")

        if not isinstance(env, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in env.items()):
            result.errors.append("env must be a mapping of string to string")
            env = {}
        else:
            if len(env) > MAX_ENV_VARS:
                result.errors.append(f"Too many environment variables: {len(env)} (maximum {MAX_ENV_VARS})")
            for key, value in env.items():
                if len(value) > MAX_ENV_VALUE_LENGTH:
                    result.errors.append(
                        f"Environment variable '{key}' exceeds {MAX_ENV_VALUE_LENGTH} characters"
                    )

        if working_directory is not None and not isinstance(working_directory, str):
            result.errors.append("workingDirectory must be a string")
            working_directory = None

        if command:
            result.violations.extend(self.gate.scan_command(command, args))
            result.trust_level = self.gate.trust_level(command, args)
            result.warnings.append(SYSTEM_PERMISSIONS_WARNING)
            if result.trust_level == TrustLevel.UNKNOWN:
                result.warnings.append(UNKNOWN_SOURCE_WARNING)
        result.violations.extend(self.gate.scan_environment(env))
        if working_directory and ("../" in working_directory or "..\\" in working_directory):
            result.violations.append(
                Violation("path_traversal", f"Path traversal is not allowed: {working_directory!r}")
            )

        return {
            "command": command,
            "args": list(args),
            "env": dict(env),
            "working_directory": working_directory or None,
        }

    def _remote_fields(self, raw: Dict[str, Any], kind: TransportKind, result: ValidationResult) -> Dict[str, Any]:
        base_url = entry_base_url(raw)
        headers = raw.get("headers", {}) or {}

        if raw.get("command") is not None:
            result.errors.append(f"command is not valid for {kind.value} transport")

        if base_url is None or (isinstance(base_url, str) and not base_url.strip()):
            result.errors.append(f"Missing baseUrl for {kind.value} transport")
            base_url = None
        elif not isinstance(base_url, str):
            result.errors.append("baseUrl must be a string")
            base_url = None
        else:
            for violation in self.gate.scan_url(base_url, UrlPurpose.CONNECT):
                if violation.code in MALFORMED_URL_CODES:
                    result.errors.append(f"Invalid baseUrl: {violation.reason}")
                else:
                    result.violations.append(violation)

        if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            result.errors.append("headers must be a mapping of string to string")
            headers = {}
        else:
            result.violations.extend(self.gate.scan_headers(headers))

        return {"base_url": base_url.strip() if base_url else None, "headers": dict(headers)}


def normalize_document(document: Any) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Split a document into (active, disabled) raw sections.

    Raises:
        ConfigValidationError: If the document is not an object or a section is not an object
    """
    if not isinstance(document, dict):
        raise ConfigValidationError(["Configuration document must be an object"])
    if "mcpServers" in document or "disabled" in document:
        active = document.get("mcpServers") or {}
        disabled = document.get("disabled") or {}
    else:
        active, disabled = document, {}
    problems = []
    if not isinstance(active, dict):
        problems.append("mcpServers must be an object")
    if not isinstance(disabled, dict):
        problems.append("disabled must be an object")
    if problems:
        raise ConfigValidationError(problems)
    return dict(active), dict(disabled)


def duplicate_ids(active: Dict[str, Any], disabled: Dict[str, Any]) -> List[str]:
    return sorted(set(active) & set(disabled))
