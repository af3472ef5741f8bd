#!/usr/bin/env python3
"""
Tests for the command-line interface.

Local-mode tests only use configurations that never launch a process
(empty documents and disabled servers).
"""

import json
from unittest.mock import Mock

import pytest
import requests
import yaml

import cli

REMOTE = {"transport": "http", "baseUrl": "https://mcp.example.com/mcp", "headers": {"Authorization": "Bearer abc"}}


def parse(*argv):
    return cli.build_parser().parse_args(list(argv))


class TestBuildRequest:
    def test_servers(self):
        assert cli.build_request(parse("servers")) == ("listServers", {})

    def test_tools_for_one_server(self):
        assert cli.build_request(parse("tools", "--server", "memory", "--refresh")) == (
            "listTools", {"refresh": True, "serverId": "memory"},
        )

    def test_call(self):
        name, arguments = cli.build_request(parse("call", "memory", "search", "--args", '{"q": "x"}', "--timeout-ms", "500"))
        assert name == "callTool"
        assert arguments == {"serverId": "memory", "toolName": "search", "arguments": {"q": "x"}, "timeoutMs": 500}

    def test_add_disabled(self):
        name, arguments = cli.build_request(parse("add", "remote", "--config", json.dumps(REMOTE), "--disabled"))
        assert name == "addServer"
        assert arguments["enabled"] is False
        assert arguments["config"] == REMOTE

    @pytest.mark.parametrize("action,command", [
        ("remove", "removeServer"),
        ("enable", "enableServer"),
        ("disable", "disableServer"),
        ("reset", "resetServerHealth"),
    ])
    def test_server_actions(self, action, command):
        assert cli.build_request(parse(action, "memory")) == (command, {"serverId": "memory"})

    def test_health(self):
        assert cli.build_request(parse("health")) == ("healthReport", {"refresh": False})
        assert cli.build_request(parse("health", "--server", "memory")) == ("serverHealth", {"serverId": "memory"})

    def test_export(self):
        name, arguments = cli.build_request(parse("export", "--format", "yaml", "--servers", "a,b", "--no-redact"))
        assert name == "exportConfiguration"
        assert arguments == {"format": "yaml", "includeHealth": False, "redact": False, "servers": ["a", "b"]}

    def test_import_reads_file(self, tmp_path):
        path = tmp_path / "mcp.yaml"
        path.write_text("disabled: {}\n")
        name, arguments = cli.build_request(parse("import", str(path), "--format", "yaml"))
        assert name == "importConfiguration"
        assert arguments == {"content": "disabled: {}\n", "format": "yaml", "overwrite": False}

    def test_import_missing_file(self, tmp_path):
        with pytest.raises(ValueError):
            cli.build_request(parse("import", str(tmp_path / "missing.json")))

    def test_run_any_command(self):
        assert cli.build_request(parse("run", "getConfigPath")) == ("getConfigPath", {})

    def test_bad_json(self):
        with pytest.raises(ValueError) as exc_info:
            cli.build_request(parse("validate", "--config", "{nope"))
        assert "--config" in str(exc_info.value)

    def test_json_must_be_object(self):
        with pytest.raises(ValueError):
            cli.parse_json_arg("[1, 2]", "--args")


class TestLocalMode:
    @pytest.mark.asyncio
    async def test_servers_on_empty_config(self, tmp_path, capsys):
        config = tmp_path / "mcp.json"

        exit_code = await cli.main_async(["--config-path", str(config), "servers"])

        assert exit_code == 0
        assert "Configured Servers (0)" in capsys.readouterr().out
        assert json.loads(config.read_text()) == {"mcpServers": {}, "disabled": {}}

    @pytest.mark.asyncio
    async def test_add_disabled_then_export(self, tmp_path, capsys):
        config = tmp_path / "mcp.json"
        output = tmp_path / "export.yaml"

        assert await cli.main_async([
            "--config-path", str(config), "add", "remote", "--config", json.dumps(REMOTE), "--disabled",
        ]) == 0
        assert await cli.main_async([
            "--config-path", str(config), "export", "--format", "yaml", "--output", str(output),
        ]) == 0

        exported = yaml.safe_load(output.read_text())
        assert exported["configuration"]["disabled"]["remote"]["headers"]["Authorization"] == "***REDACTED***"

    @pytest.mark.asyncio
    async def test_import(self, tmp_path):
        config = tmp_path / "mcp.json"
        source = tmp_path / "source.json"
        source.write_text(json.dumps({"disabled": {"remote": REMOTE}}))

        assert await cli.main_async(["--config-path", str(config), "import", str(source)]) == 0
        assert json.loads(config.read_text())["disabled"] == {"remote": REMOTE}

    @pytest.mark.asyncio
    async def test_validation_failure_exit_code(self, tmp_path, capsys):
        exit_code = await cli.main_async([
            "--config-path", str(tmp_path / "mcp.json"),
            "add", "evil", "--config", '{"transport": "stdio", "command": "bash"}',
        ])

        assert exit_code == 1
        assert "security_rejection" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_json_output(self, tmp_path, capsys):
        config = tmp_path / "mcp.json"
        await cli.main_async(["--format", "json", "--config-path", str(config), "run", "getConfigPath"])

        output = json.loads(capsys.readouterr().out)
        assert output["command"] == "getConfigPath"
        assert output["response"]["data"]["path"] == str(config)

    @pytest.mark.asyncio
    async def test_bad_arguments_exit_code(self, tmp_path, capsys):
        exit_code = await cli.main_async(["--config-path", str(tmp_path / "mcp.json"), "validate", "--config", "{nope"])
        assert exit_code == 1
        assert "Invalid JSON" in capsys.readouterr().out


class TestRemoteMode:
    @pytest.mark.asyncio
    async def test_remote_call(self, monkeypatch):
        response = Mock()
        response.json.return_value = {"success": True, "data": {"servers": [], "count": 0}}
        post = Mock(return_value=response)
        monkeypatch.setattr(cli.requests, "post", post)

        exit_code = await cli.main_async(["--remote", "http://localhost:5556/", "--token", "t0k", "unhealthy"])

        assert exit_code == 0
        url = post.call_args.args[0]
        assert url == "http://localhost:5556/commands/unhealthyServers"
        assert post.call_args.kwargs["headers"] == {"Authorization": "Bearer t0k"}

    @pytest.mark.asyncio
    async def test_remote_unreachable(self, monkeypatch, capsys):
        monkeypatch.setattr(cli.requests, "post", Mock(side_effect=requests.exceptions.ConnectionError()))

        exit_code = await cli.main_async(["--remote", "http://localhost:1", "servers"])

        assert exit_code == 1
        assert "Cannot connect" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_remote_non_json(self, monkeypatch):
        response = Mock(status_code=502, text="Bad Gateway")
        response.json.side_effect = ValueError("no json")
        monkeypatch.setattr(cli.requests, "post", Mock(return_value=response))

        args = parse("--remote", "http://localhost:5556", "servers")
        result = cli.ToolhostCLI(args).run_remote("listServers", {})

        assert result["error"]["code"] == "protocol_error"
        assert "HTTP 502" in result["error"]["message"]


class TestExitCodes:
    def _cli(self, command, response):
        instance = cli.ToolhostCLI(parse("health"))
        instance.command = command
        instance.response = response
        return instance

    def test_unhealthy_report_fails(self):
        report = {"success": True, "data": {"summary": {"unhealthy": 1}}}
        assert self._cli("healthReport", report).get_exit_code() == 1

    def test_healthy_report(self):
        report = {"success": True, "data": {"summary": {"unhealthy": 0}}}
        assert self._cli("healthReport", report).get_exit_code() == 0

    def test_failure(self):
        assert self._cli("listServers", {"success": False}).get_exit_code() == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
