#!/usr/bin/env python3
"""
Tests for configuration export/import rendering.
"""

import json

import pytest
import yaml

from toolhost_mcp.config_export import (
    REDACTED,
    build_export,
    parse_export,
    redact_entry,
    render_export,
    save_export,
)
from toolhost_mcp.errors import ConfigurationError, InvalidArgumentError

DOCUMENT = {
    "mcpServers": {
        "search": {
            "transport": "stdio",
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-brave-search"],
            "env": {"BRAVE_API_KEY": "sk-live-123", "LOG_LEVEL": "info"},
        },
        "remote": {
            "transport": "http",
            "baseUrl": "https://mcp.example.com/mcp",
            "headers": {"Authorization": "Bearer abc", "X-Team": "core"},
        },
    },
    "disabled": {
        "legacy": {"transport": "sse", "baseUrl": "https://old.example.com/sse"},
    },
}


class TestBuildExport:
    def test_all_servers_redacted(self):
        data = build_export(DOCUMENT)

        assert data["total_servers"] == 3
        assert data["redacted"] is True
        search = data["configuration"]["mcpServers"]["search"]
        assert search["env"] == {"BRAVE_API_KEY": REDACTED, "LOG_LEVEL": "info"}
        remote = data["configuration"]["mcpServers"]["remote"]
        assert remote["headers"] == {"Authorization": REDACTED, "X-Team": "core"}

    def test_source_document_untouched(self):
        build_export(DOCUMENT)
        assert DOCUMENT["mcpServers"]["search"]["env"]["BRAVE_API_KEY"] == "sk-live-123"

    def test_without_redaction(self):
        data = build_export(DOCUMENT, redact=False)
        assert data["configuration"]["mcpServers"]["search"]["env"]["BRAVE_API_KEY"] == "sk-live-123"

    def test_selected_servers(self):
        data = build_export(DOCUMENT, servers=["remote", "legacy"])
        assert list(data["configuration"]["mcpServers"]) == ["remote"]
        assert list(data["configuration"]["disabled"]) == ["legacy"]
        assert data["total_servers"] == 2

    def test_health_embedded(self):
        report = {"summary": {"total": 1, "connected": 1}, "servers": {}}
        assert build_export(DOCUMENT, health_report=report)["health_status"] == report

    def test_redact_entry_without_secrets(self):
        entry = {"transport": "stdio", "command": "node"}
        assert redact_entry(entry) == entry


class TestRender:
    def test_json(self):
        content = render_export(build_export(DOCUMENT), "json")
        assert json.loads(content)["configuration"]["disabled"]["legacy"]["transport"] == "sse"

    def test_yaml(self):
        content = render_export(build_export(DOCUMENT), "yaml")
        assert yaml.safe_load(content)["total_servers"] == 3

    def test_markdown(self):
        report = {
            "summary": {"total": 2, "connected": 1, "disconnected": 0, "unhealthy": 1},
            "servers": {"remote": {"status": "unhealthy", "lastError": "Ping to 'remote' failed"}},
        }
        content = render_export(build_export(DOCUMENT, health_report=report), "markdown")

        assert content.startswith("# MCP Server Configuration Export")
        assert "## Active Servers" in content
        assert "## Disabled Servers" in content
        assert "**URL**: `https://mcp.example.com/mcp`" in content
        assert f"| `BRAVE_API_KEY` | `{REDACTED}` |" in content
        assert "- **Connected**: 1/2" in content
        assert "Ping to 'remote' failed" in content

    def test_unknown_format(self):
        with pytest.raises(InvalidArgumentError):
            render_export(build_export(DOCUMENT), "xml")

    def test_save_export(self, tmp_path):
        path = save_export(build_export(DOCUMENT), str(tmp_path / "out.yaml"), "yaml")
        assert yaml.safe_load(path.read_text())["source"] == "toolhost-mcp"


class TestParse:
    def test_parse_full_export(self):
        content = render_export(build_export(DOCUMENT, redact=False), "json")
        assert parse_export(content, "json") == DOCUMENT

    def test_parse_bare_yaml_document(self):
        content = yaml.dump({"mcpServers": {"remote": DOCUMENT["mcpServers"]["remote"]}})
        assert list(parse_export(content, "yaml")["mcpServers"]) == ["remote"]

    def test_parse_garbage(self):
        with pytest.raises(ConfigurationError):
            parse_export("{broken", "json")

    def test_parse_non_object(self):
        with pytest.raises(ConfigurationError):
            parse_export("- a\n- b\n", "yaml")

    def test_markdown_not_importable(self):
        with pytest.raises(InvalidArgumentError):
            parse_export("# export", "markdown")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
