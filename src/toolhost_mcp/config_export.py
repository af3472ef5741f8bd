"""
Configuration Export Module

Exports the tool-server configuration for backup, migration, and
documentation, and parses exports back into a document. Secrets in env
values and headers are masked unless redaction is turned off.

Usage:
    from toolhost_mcp.config_export import build_export, export_to_json

    # Export all servers
    export_data = build_export(document)

    # Export specific servers with a health snapshot
    export_data = build_export(document, servers=["memory", "search"], health_report=report)

    text = render_export(export_data, "yaml")
"""

import copy
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from toolhost_mcp.errors import ConfigurationError, InvalidArgumentError
from toolhost_mcp.protocol import CLIENT_NAME, CLIENT_VERSION

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
SENSITIVE_MARKERS = ("key", "secret", "token", "password", "authorization", "cookie", "credential")
EXPORT_FORMATS = ("json", "yaml", "markdown")


def is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SENSITIVE_MARKERS)


def redact_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of an entry with sensitive env values and header values masked."""
    redacted = copy.deepcopy(entry)
    for section in ("env", "headers"):
        values = redacted.get(section)
        if isinstance(values, dict):
            redacted[section] = {k: (REDACTED if is_sensitive(k) else v) for k, v in values.items()}
    return redacted


def build_export(
    document: Dict[str, Any],
    servers: Optional[List[str]] = None,
    health_report: Optional[Dict[str, Any]] = None,
    redact: bool = True,
) -> Dict[str, Any]:
    """
    Build export data for a configuration document.

    Args:
        document: Document with mcpServers / disabled sections
        servers: Server ids to export (None for all)
        health_report: Optional health report to embed
        redact: Mask secrets in env values and headers

    Returns:
        Dictionary containing exported configuration data
    """
    configuration = {}
    for section in ("mcpServers", "disabled"):
        entries = document.get(section, {}) or {}
        if servers:
            entries = {k: v for k, v in entries.items() if k in servers}
        configuration[section] = {
            k: (redact_entry(v) if redact and isinstance(v, dict) else copy.deepcopy(v))
            for k, v in entries.items()
        }

    export_data = {
        "timestamp": datetime.now().isoformat(),
        "source": CLIENT_NAME,
        "version": CLIENT_VERSION,
        "total_servers": len(configuration["mcpServers"]) + len(configuration["disabled"]),
        "redacted": redact,
        "configuration": configuration,
    }
    if health_report is not None:
        export_data["health_status"] = health_report
    return export_data


def export_to_json(export_data: Dict[str, Any], indent: int = 2) -> str:
    return json.dumps(export_data, indent=indent, ensure_ascii=False)


def export_to_yaml(export_data: Dict[str, Any]) -> str:
    return yaml.dump(export_data, default_flow_style=False, sort_keys=False)


def export_to_markdown(export_data: Dict[str, Any]) -> str:
    """
    Convert export data to Markdown documentation.

    Args:
        export_data: Export data dictionary

    Returns:
        Markdown string
    """
    md_lines = []

    # Header
    md_lines.append("# MCP Server Configuration Export")
    md_lines.append(f"\n**Generated**: {export_data.get('timestamp', 'unknown')}")
    md_lines.append(f"**Source**: {export_data.get('source', 'unknown')}")
    md_lines.append(f"**Total Servers**: {export_data.get('total_servers', 0)}")
    md_lines.append("")

    configuration = export_data.get("configuration", {})
    for title, section in (("Active Servers", "mcpServers"), ("Disabled Servers", "disabled")):
        servers = configuration.get(section, {})
        if not servers:
            continue
        md_lines.append(f"## {title}")
        md_lines.append("")

        for server_name, server_config in servers.items():
            md_lines.append(f"### {server_name}")
            md_lines.append("")
            transport = server_config.get("transport", server_config.get("type", "unknown"))
            md_lines.append(f"**Transport**: `{transport}`")
            md_lines.append("")

            command = server_config.get("command")
            if command:
                md_lines.append(f"**Command**: `{command}`")
                md_lines.append("")

            args = server_config.get("args", [])
            if args:
                md_lines.append("**Arguments**:")
                md_lines.append("```")
                for arg in args:
                    md_lines.append(f"  {arg}")
                md_lines.append("```")
                md_lines.append("")

            base_url = server_config.get("baseUrl", server_config.get("url"))
            if base_url:
                md_lines.append(f"**URL**: `{base_url}`")
                md_lines.append("")

            for label, key in (("Environment Variables", "env"), ("Headers", "headers")):
                values = server_config.get(key, {})
                if values:
                    md_lines.append(f"**{label}**:")
                    md_lines.append("")
                    md_lines.append("| Name | Value |")
                    md_lines.append("|------|-------|")
                    for name, value in values.items():
                        md_lines.append(f"| `{name}` | `{value}` |")
                    md_lines.append("")

            md_lines.append("---")
            md_lines.append("")

    if "health_status" in export_data:
        md_lines.append("## Health Status")
        md_lines.append("")
        health = export_data["health_status"]
        summary = health.get("summary", {})
        md_lines.append(f"- **Connected**: {summary.get('connected', 0)}/{summary.get('total', 0)}")
        md_lines.append(f"- **Disconnected**: {summary.get('disconnected', 0)}")
        md_lines.append(f"- **Unhealthy**: {summary.get('unhealthy', 0)}")
        md_lines.append("")

        troubled = [(sid, rec) for sid, rec in health.get("servers", {}).items() if rec.get("lastError")]
        if troubled:
            md_lines.append("### Last Errors")
            md_lines.append("")
            for server_id, record in troubled:
                md_lines.append(f"- **{server_id}** ({record.get('status')}): {record.get('lastError')}")
            md_lines.append("")

    return "\n".join(md_lines)


def render_export(export_data: Dict[str, Any], format: str = "json") -> str:
    if format == "json":
        return export_to_json(export_data)
    if format == "yaml":
        return export_to_yaml(export_data)
    if format == "markdown":
        return export_to_markdown(export_data)
    raise InvalidArgumentError(f"Unsupported export format: {format} (expected one of: {', '.join(EXPORT_FORMATS)})")


def parse_export(content: str, format: str = "json") -> Dict[str, Any]:
    """
    Parse exported (or plain) configuration text back into a document.

    Accepts either a full export (with a `configuration` key) or a bare
    document.

    Raises:
        ConfigurationError: If the text cannot be parsed
        InvalidArgumentError: If the format cannot be re-imported
    """
    try:
        if format == "json":
            data = json.loads(content)
        elif format == "yaml":
            data = yaml.safe_load(content)
        else:
            raise InvalidArgumentError(f"Cannot import from format: {format} (expected json or yaml)")
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to parse {format} configuration: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError("Imported configuration must be an object")
    if isinstance(data.get("configuration"), dict):
        data = data["configuration"]
    return data


def save_export(export_data: Dict[str, Any], output_path: str, format: str = "json") -> Path:
    """
    Write rendered export data to a file.

    Raises:
        InvalidArgumentError: If the format is unsupported
        ConfigurationError: If the file cannot be written
    """
    content = render_export(export_data, format)
    path = Path(output_path).expanduser()
    try:
        with open(path, "w") as f:
            f.write(content)
    except OSError as e:
        raise ConfigurationError(f"Failed to save export to {path}: {e}")
    logger.info(f"Exported configuration to {path} ({format} format)")
    return path
