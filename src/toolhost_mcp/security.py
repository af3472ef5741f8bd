"""
Security gate for tool-server configuration.

Pure checks over commands, arguments, environment, headers and URLs. Nothing
here touches the network or spawns anything; every check returns a list of
Violation objects, each with a human readable reason. An empty list means the
input passed.

Usage:
    from toolhost_mcp.security import SecurityGate, UrlPurpose

    gate = SecurityGate()
    violations = gate.scan_command("npx", ["-y", "@modelcontextprotocol/server-memory"])
    violations = gate.scan_url("https://example.com/mcp", UrlPurpose.CONNECT)
"""

import ipaddress
import logging
import ntpath
import posixpath
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)


class UrlPurpose(str, Enum):
    CONNECT = "connect"              # tool-server endpoints
    OPEN_EXTERNAL = "open_external"  # links handed to the system browser / mail client
    FETCH = "fetch"                  # content fetched on the user's behalf


class TrustLevel(str, Enum):
    VERIFIED_OFFICIAL = "verified-official"
    COMMUNITY = "community"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Violation:
    code: str
    reason: str

    def __str__(self) -> str:
        return self.reason


OFFICIAL_MCP_PACKAGES = frozenset([
    "@modelcontextprotocol/server-memory",
    "@modelcontextprotocol/server-filesystem",
    "@modelcontextprotocol/server-sqlite",
    "@modelcontextprotocol/server-postgres",
    "@modelcontextprotocol/server-brave-search",
    "@modelcontextprotocol/server-fetch",
    "@modelcontextprotocol/server-github",
    "@modelcontextprotocol/server-google-maps",
    "@modelcontextprotocol/server-puppeteer",
    "@modelcontextprotocol/server-slack",
    "@modelcontextprotocol/server-everything",
    "@modelcontextprotocol/server-sequential-thinking",
])

OFFICIAL_PYTHON_MCP_PACKAGES = frozenset([
    "mcp-server-git",
    "mcp-server-time",
    "mcp-server-fetch",
    "mcp-server-filesystem",
    "mcp-server-memory",
    "mcp-server-sequential-thinking",
])

BLOCKED_COMMANDS = frozenset([
    # shells
    "bash", "sh", "zsh", "fish", "csh", "tcsh", "ksh",
    # network utilities
    "curl", "wget", "nc", "netcat", "telnet", "ftp", "sftp",
    # filesystem
    "rm", "dd", "mkfs", "fdisk", "mount", "umount",
    # process and system control
    "kill", "killall", "pkill", "shutdown", "reboot", "halt",
    # execution wrappers
    "eval", "exec", "sudo", "su", "doas",
    # compilers and linkers
    "gcc", "g++", "cc", "ld", "as",
])

PRIVILEGE_COMMANDS = frozenset(["sudo", "su", "doas"])

BLOCKED_NPX_FLAGS = ("-e", "--eval", "--call", "-c", "--shell-auto-fallback")
BLOCKED_NODE_FLAGS = ("-e", "--eval", "-p", "--print", "--inspect", "--inspect-brk", "--require", "-r")
BLOCKED_PYTHON_FLAGS = ("-c", "--command")
BLOCKED_PYTHON_CALLS = ("eval(", "exec(", "__import__(")
BLOCKED_PYTHON_MODULES = frozenset(["pip", "pip3", "easy_install", "ensurepip", "venv", "site"])
BLOCKED_UV_SUBCOMMANDS = (
    "pip install",
    "pip uninstall",
    "tool install",
    "tool uninstall",
    "cache clear",
    "self update",
)

PYTHON_COMMANDS = frozenset(["python", "python3", "python2"])
NODE_SCRIPT_SUFFIXES = (".js", ".mjs", ".cjs")
PYTHON_SCRIPT_SUFFIXES = (".py", ".pyz")

SHELL_OPERATORS = (
    ("&&", "command chaining"),
    ("||", "command chaining"),
    (";", "command separator"),
    ("|", "pipe"),
    ("`", "backtick substitution"),
    ("$(", "command substitution"),
)

DESTRUCTIVE_PATTERNS = (
    (re.compile(r"\brm\s+-[a-z]*(rf|fr)[a-z]*\b", re.IGNORECASE), "destructive command 'rm -rf'"),
    (re.compile(r"\bmkfs(\.\w+)?\b"), "filesystem formatting"),
    (re.compile(r"\bdd\s+if="), "raw disk copy with dd"),
)

PRIVILEGE_PATTERNS = (
    (re.compile(r"\bchmod\s+(-R\s+)?0?777\b"), "world-writable permissions 'chmod 777'"),
    (re.compile(r"\bchmod\s+(-R\s+)?[ugo]*\+s\b"), "setuid permissions 'chmod +s'"),
)

DEVICE_REDIRECT = re.compile(r">{1,2}\s*/dev/(?!null\b)")

# Loader and interpreter hooks that run attacker code before the server starts.
DANGEROUS_ENV_VARS = frozenset([
    "LD_PRELOAD",
    "LD_AUDIT",
    "DYLD_INSERT_LIBRARIES",
    "PYTHONSTARTUP",
    "BASH_ENV",
    "ENV",
    "PROMPT_COMMAND",
])

HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")

CONNECT_PROTOCOLS = frozenset(["http", "https"])
OPEN_EXTERNAL_PROTOCOLS = frozenset(["http", "https", "mailto"])

METADATA_HOSTS = frozenset(["169.254.169.254", "metadata.google.internal", "metadata", "fd00:ec2::254"])
LOCALHOST_NAMES = frozenset(["localhost", "localhost.localdomain", "ip6-localhost"])

BLOCKED_PROTOCOL_MESSAGES = {
    "file": "Local file access is not allowed for security reasons",
    "ftp": "FTP protocol is not supported",
    "javascript": "JavaScript URLs are blocked for security reasons",
    "data": "Data URLs are blocked for security reasons",
}


def base_command(command: str) -> str:
    """Executable name without directory or Windows launcher suffix."""
    name = posixpath.basename(ntpath.basename(command.strip()))
    lowered = name.lower()
    for suffix in (".exe", ".cmd", ".bat"):
        if lowered.endswith(suffix):
            return lowered[: -len(suffix)]
    return lowered


def _flag_matches(arg: str, flags: Iterable[str]) -> Optional[str]:
    for flag in flags:
        if arg == flag or arg.startswith(f"{flag}="):
            return flag
    return None


def blocked_protocol_message(scheme: str) -> str:
    scheme = scheme.lower().rstrip(":")
    return BLOCKED_PROTOCOL_MESSAGES.get(
        scheme, f"Protocol '{scheme}:' is not allowed. Only http, https and mailto links can be opened"
    )


class SecurityGate:
    """Stateless policy checks. Options only narrow or widen the FETCH purpose."""

    def __init__(
        self,
        fetch_domain_allowlist: Optional[Sequence[str]] = None,
        allow_localhost_fetch: bool = False,
        allowed_fetch_ports: Optional[Sequence[int]] = None,
    ):
        self.fetch_domain_allowlist = [d.lower().lstrip(".") for d in (fetch_domain_allowlist or [])]
        self.allow_localhost_fetch = allow_localhost_fetch
        self.allowed_fetch_ports = list(allowed_fetch_ports) if allowed_fetch_ports else None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def scan_command(self, command: str, args: Optional[Sequence[str]] = None) -> List[Violation]:
        """Check a stdio launch line. Returns every violation found."""
        args = list(args or [])
        violations: List[Violation] = []
        base = base_command(command)

        if base in BLOCKED_COMMANDS:
            violations.append(Violation(
                "blocked_command",
                f"Command '{base}' is blocked for security reasons: it can be used to run arbitrary "
                f"or destructive operations",
            ))

        for token in [command] + args:
            violations.extend(self._scan_token(token))

        joined = " ".join([command] + args)
        for pattern, label in DESTRUCTIVE_PATTERNS + PRIVILEGE_PATTERNS:
            if pattern.search(joined):
                violations.append(Violation("dangerous_pattern", f"Dangerous pattern detected: {label}"))

        for arg in args:
            if arg.strip().lower() in PRIVILEGE_COMMANDS:
                violations.append(Violation(
                    "privilege_escalation",
                    f"Privilege escalation via '{arg.strip()}' is not allowed",
                ))

        violations.extend(self._scan_runtime(base, args))
        violations = _dedupe(violations)
        if violations:
            logger.warning(f"Command '{base}' rejected with {len(violations)} violation(s)")
        return violations

    def _scan_token(self, token: str) -> List[Violation]:
        found = []
        for operator, label in SHELL_OPERATORS:
            if operator in token:
                found.append(Violation(
                    "shell_metacharacter",
                    f"Shell operator '{operator}' ({label}) is not allowed in commands or arguments",
                ))
        if "../" in token or "..\\" in token:
            found.append(Violation("path_traversal", f"Path traversal is not allowed: {token!r}"))
        if DEVICE_REDIRECT.search(token):
            found.append(Violation("device_redirect", "Redirection into device files is not allowed"))
        return found

    def _scan_runtime(self, base: str, args: List[str]) -> List[Violation]:
        if base == "npx":
            return [
                Violation(
                    "blocked_flag",
                    f"Dangerous npx flag '{flag}' is not allowed: it can execute arbitrary code",
                )
                for flag in filter(None, (_flag_matches(arg, BLOCKED_NPX_FLAGS) for arg in args))
            ]
        if base == "node":
            return self._scan_node(args)
        if base in PYTHON_COMMANDS:
            return self._scan_python(args)
        if base in ("uv", "uvx"):
            return self._scan_uv(base, args)
        return []

    def _scan_node(self, args: List[str]) -> List[Violation]:
        violations = [
            Violation("blocked_flag", f"Dangerous Node.js flag '{flag}' is not allowed: it can execute arbitrary code")
            for flag in filter(None, (_flag_matches(arg, BLOCKED_NODE_FLAGS) for arg in args))
        ]
        if not args:
            violations.append(Violation("missing_script", "Node command requires a script file path"))
        elif not violations and not args[0].endswith(NODE_SCRIPT_SUFFIXES):
            violations.append(Violation(
                "missing_script",
                "Node command must start with a .js/.mjs/.cjs script file",
            ))
        return violations

    def _python_patterns(self, args: List[str], context: str) -> List[Violation]:
        violations = []
        for arg in args:
            flag = _flag_matches(arg, BLOCKED_PYTHON_FLAGS)
            if flag:
                violations.append(Violation(
                    "blocked_flag",
                    f"Dangerous Python flag '{flag}' is not allowed in {context}: direct code execution",
                ))
            for call in BLOCKED_PYTHON_CALLS:
                if call in arg:
                    violations.append(Violation(
                        "blocked_pattern",
                        f"Dangerous Python pattern '{call}' detected in {context}",
                    ))
        return violations

    def _scan_python(self, args: List[str]) -> List[Violation]:
        violations = self._python_patterns(args, "python arguments")
        if not args:
            violations.append(Violation(
                "missing_script",
                "Python command requires a module (-m) or a script file",
            ))
            return violations
        first = args[0]
        if first in ("-m", "--module"):
            if len(args) < 2:
                violations.append(Violation("missing_script", "Python -m flag requires a module name"))
            elif args[1].split(".")[0] in BLOCKED_PYTHON_MODULES:
                violations.append(Violation(
                    "blocked_module",
                    f"Python module '{args[1]}' is blocked: it can install packages or modify the environment",
                ))
        elif not violations and not first.endswith(PYTHON_SCRIPT_SUFFIXES):
            violations.append(Violation(
                "missing_script",
                "Python command must run a .py script or use -m for a module",
            ))
        return violations

    def _scan_uv(self, base: str, args: List[str]) -> List[Violation]:
        if base == "uvx":
            return self._python_patterns(args, "uvx arguments")
        if not args:
            return [Violation("missing_subcommand", "uv command requires a subcommand such as 'run'")]
        violations = []
        subcommand = " ".join(args[:2])
        for blocked in BLOCKED_UV_SUBCOMMANDS:
            if subcommand.startswith(blocked):
                violations.append(Violation(
                    "blocked_subcommand",
                    f"uv subcommand '{blocked}' is blocked: it modifies the system or installs packages",
                ))
        if not violations and ("install" in args[0] or "uninstall" in args[0]):
            violations.append(Violation(
                "blocked_subcommand",
                f"uv subcommand '{args[0]}' looks like package management and is blocked",
            ))
        if args[0] == "run":
            violations.extend(self._python_patterns(args[1:], "uv run arguments"))
        return violations

    # ------------------------------------------------------------------
    # Environment and headers
    # ------------------------------------------------------------------

    def scan_environment(self, env: Optional[Dict[str, str]]) -> List[Violation]:
        violations = []
        for key, value in (env or {}).items():
            if key.upper() in DANGEROUS_ENV_VARS:
                violations.append(Violation(
                    "dangerous_env",
                    f"Environment variable '{key}' is not allowed: it injects code into the server process",
                ))
            elif key.upper() == "NODE_OPTIONS":
                for part in str(value).split():
                    flag = _flag_matches(part, BLOCKED_NODE_FLAGS)
                    if flag:
                        violations.append(Violation(
                            "dangerous_env",
                            f"NODE_OPTIONS must not contain '{flag}'",
                        ))
        return violations

    def scan_headers(self, headers: Optional[Dict[str, str]]) -> List[Violation]:
        violations = []
        for name, value in (headers or {}).items():
            if not HEADER_NAME.match(str(name)):
                violations.append(Violation("invalid_header", f"Header name {name!r} is not a valid token"))
            if "\r" in str(value) or "\n" in str(value):
                violations.append(Violation(
                    "header_injection",
                    f"Header {name!r} contains a line break",
                ))
        return violations

    # ------------------------------------------------------------------
    # URLs
    # ------------------------------------------------------------------

    def is_protocol_allowed(self, scheme: str, purpose: UrlPurpose = UrlPurpose.CONNECT) -> bool:
        scheme = (scheme or "").lower().rstrip(":")
        if purpose == UrlPurpose.OPEN_EXTERNAL:
            return scheme in OPEN_EXTERNAL_PROTOCOLS
        return scheme in CONNECT_PROTOCOLS

    def scan_url(self, url: str, purpose: UrlPurpose = UrlPurpose.CONNECT) -> List[Violation]:
        """Check a URL for the given purpose.

        CONNECT: http(s) with a host; cloud metadata endpoints refused.
        OPEN_EXTERNAL: http(s) or mailto.
        FETCH: http(s), no private/loopback/link-local hosts, optional domain
        allowlist and port allowlist.
        """
        if not isinstance(url, str) or not url.strip():
            return [Violation("invalid_url", "URL is empty")]
        try:
            parts = urlsplit(url.strip())
            port = parts.port
        except ValueError as e:
            return [Violation("invalid_url", f"Invalid URL format: {e}")]

        scheme = parts.scheme.lower()
        if not self.is_protocol_allowed(scheme, purpose):
            if not scheme:
                return [Violation("invalid_url", "URL has no scheme")]
            return [Violation("blocked_protocol", blocked_protocol_message(scheme))]

        if scheme == "mailto":
            if not parts.path:
                return [Violation("invalid_url", "mailto link has no address")]
            return []

        host = (parts.hostname or "").lower()
        if not host:
            return [Violation("invalid_url", "URL has no host")]

        violations = []
        if host in METADATA_HOSTS:
            violations.append(Violation(
                "metadata_endpoint",
                f"Access to cloud metadata endpoint is not allowed: {host}",
            ))

        if purpose == UrlPurpose.FETCH:
            if not violations and self._is_private_host(host):
                violations.append(Violation(
                    "private_address",
                    f"Access to private IP addresses and internal networks is not allowed: {host}",
                ))
            if self.fetch_domain_allowlist and not self._domain_allowed(host):
                violations.append(Violation(
                    "domain_not_allowed",
                    f"Domain '{host}' is not in the fetch allowlist",
                ))
            if port is not None and self.allowed_fetch_ports and port not in self.allowed_fetch_ports:
                violations.append(Violation(
                    "port_not_allowed",
                    f"Port {port} is not in the allowed list: {', '.join(map(str, self.allowed_fetch_ports))}",
                ))
        return violations

    def is_url_safe_to_open(self, url: str) -> bool:
        return not self.scan_url(url, UrlPurpose.OPEN_EXTERNAL)

    def _domain_allowed(self, host: str) -> bool:
        return any(host == domain or host.endswith("." + domain) for domain in self.fetch_domain_allowlist)

    def _is_private_host(self, host: str) -> bool:
        if host in LOCALHOST_NAMES or host.endswith(".localhost"):
            return not self.allow_localhost_fetch
        try:
            address = ipaddress.ip_address(host.strip("[]"))
        except ValueError:
            return False
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
            address = address.ipv4_mapped
        if address.is_loopback:
            return not self.allow_localhost_fetch
        return (
            address.is_private
            or address.is_link_local
            or address.is_unspecified
            or address.is_reserved
            or address.is_multicast
        )

    # ------------------------------------------------------------------
    # Package provenance
    # ------------------------------------------------------------------

    def trust_level(self, command: str, args: Optional[Sequence[str]] = None) -> TrustLevel:
        """Classify where a stdio server's package comes from. Informational only."""
        package = package_name(command, args or [])
        if package is None:
            return TrustLevel.UNKNOWN
        if package in OFFICIAL_MCP_PACKAGES or package in OFFICIAL_PYTHON_MCP_PACKAGES:
            return TrustLevel.VERIFIED_OFFICIAL
        if package.startswith("@modelcontextprotocol/"):
            return TrustLevel.COMMUNITY
        return TrustLevel.UNKNOWN


NPX_SKIP_FLAGS = frozenset(["-y", "--yes", "-q", "--quiet"])
UVX_VALUE_FLAGS = frozenset(["--from", "--with", "--python", "-p", "--index-url", "--extra-index-url"])


def package_name(command: str, args: Sequence[str]) -> Optional[str]:
    """Package launched by npx/uvx, without any @version suffix."""
    base = base_command(command)
    if base not in ("npx", "uvx"):
        return None
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if base == "uvx" and arg in UVX_VALUE_FLAGS:
            skip_next = True
            continue
        if arg.startswith("-"):
            if base == "npx" and arg not in NPX_SKIP_FLAGS:
                return None
            continue
        return _strip_version(arg)
    return None


def _strip_version(package: str) -> str:
    at = package.rfind("@")
    if at > 0:
        return package[:at]
    return package


def _dedupe(violations: List[Violation]) -> List[Violation]:
    seen = set()
    unique = []
    for violation in violations:
        if violation.reason not in seen:
            seen.add(violation.reason)
            unique.append(violation)
    return unique
