#!/usr/bin/env python3
"""
CLI Mode for toolhost-mcp

Command-line interface for managing and calling MCP tool servers without an
MCP host. Commands run in-process against the configuration document, or
against a running http_server.py with --remote.

Usage:
  python cli.py servers                                  # List configured servers
  python cli.py tools                                    # List tools of connected servers
  python cli.py tools --server memory --refresh          # Re-list one server's tools
  python cli.py call memory read_graph                   # Call a tool
  python cli.py call memory search --args '{"q": "x"}'   # With arguments
  python cli.py test --config '{"transport": "stdio", "command": "npx", "args": ["-y", "@modelcontextprotocol/server-memory"]}'
  python cli.py add memory --config '{...}'              # Add a server (--disabled to park it)
  python cli.py remove memory | enable memory | disable memory
  python cli.py health                                   # Health report (exit 1 if any unhealthy)
  python cli.py health --server memory                   # One server, with tool stats
  python cli.py unhealthy                                # Unhealthy server ids
  python cli.py reset memory                             # Reset a server's health
  python cli.py refresh                                  # Reload the document and reconcile
  python cli.py validate --config '{...}'                # Validate an entry without saving
  python cli.py export --format yaml --output mcp.yaml   # Export (secrets redacted)
  python cli.py import mcp.yaml --format yaml            # Import servers from a file
  python cli.py run getConfigPath                        # Any command by name
  python cli.py --remote http://localhost:5556 health    # Against a running HTTP server
  python cli.py --format json servers                    # JSON output
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import requests

# Add src directory to path
src_path = Path(__file__).parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Configure logging
logging.basicConfig(
    level=logging.WARNING,  # Only show warnings/errors in CLI mode
    format='%(levelname)s: %(message)s'
)
logger = logging.getLogger("toolhost-mcp-cli")


def parse_json_arg(value: Optional[str], flag: str) -> Dict[str, Any]:
    """Parse a JSON object given on the command line."""
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {flag}: {e}")
    if not isinstance(parsed, dict):
        raise ValueError(f"{flag} must be a JSON object")
    return parsed


def build_request(args) -> tuple:
    """Map parsed CLI arguments to (command name, command arguments)."""
    action = args.action

    if action == "servers":
        return "listServers", {}
    if action == "tools":
        arguments = {"refresh": args.refresh}
        if args.server:
            arguments["serverId"] = args.server
        return "listTools", arguments
    if action == "call":
        arguments = {
            "serverId": args.server,
            "toolName": args.tool,
            "arguments": parse_json_arg(args.args, "--args"),
        }
        if args.timeout_ms:
            arguments["timeoutMs"] = args.timeout_ms
        return "callTool", arguments
    if action == "test":
        arguments = {"config": parse_json_arg(args.config, "--config")}
        if args.server:
            arguments["serverId"] = args.server
        return "testConnection", arguments
    if action == "add":
        return "addServer", {
            "serverId": args.server,
            "config": parse_json_arg(args.config, "--config"),
            "enabled": not args.disabled,
        }
    if action in ("remove", "enable", "disable", "reset"):
        name = {
            "remove": "removeServer",
            "enable": "enableServer",
            "disable": "disableServer",
            "reset": "resetServerHealth",
        }[action]
        return name, {"serverId": args.server}
    if action == "health":
        if args.server:
            return "serverHealth", {"serverId": args.server}
        return "healthReport", {"refresh": args.refresh}
    if action == "unhealthy":
        return "unhealthyServers", {}
    if action == "refresh":
        return "refreshConfiguration", {}
    if action == "validate":
        return "validateConfiguration", {"config": parse_json_arg(args.config, "--config")}
    if action == "export":
        arguments = {
            "format": args.export_format,
            "includeHealth": args.include_health,
            "redact": not args.no_redact,
        }
        if args.servers:
            arguments["servers"] = args.servers.split(",")
        return "exportConfiguration", arguments
    if action == "import":
        try:
            content = Path(args.path).expanduser().read_text()
        except OSError as e:
            raise ValueError(f"Cannot read {args.path}: {e}")
        return "importConfiguration", {
            "content": content,
            "format": args.import_format,
            "overwrite": args.overwrite,
        }
    if action == "run":
        return args.command, parse_json_arg(args.args, "--args")
    raise ValueError(f"Unknown action: {action}")


class ToolhostCLI:
    """CLI interface for toolhost-mcp."""

    def __init__(self, args):
        self.args = args
        self.command = None
        self.response: Dict[str, Any] = {}

    async def run(self) -> int:
        """Run the requested command and print the result."""
        self.command, arguments = build_request(self.args)

        if self.args.remote:
            self.response = self.run_remote(self.command, arguments)
        else:
            self.response = await self.run_local(self.command, arguments)

        if self.args.action == "export" and self.args.output and self.response.get("success"):
            Path(self.args.output).expanduser().write_text(self.response["data"]["content"])

        self.output_results()
        return self.get_exit_code()

    async def run_local(self, command: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Run a command in-process against the configuration document."""
        from toolhost_mcp import commands
        from toolhost_mcp.context import ClientContext
        from toolhost_mcp.env_config import ClientSettings

        settings = ClientSettings.from_env()
        if self.args.config_path:
            settings.config_path = Path(self.args.config_path).expanduser()

        async with ClientContext(settings) as ctx:
            return await commands.dispatch(ctx, command, arguments)

    def run_remote(self, command: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """Run a command on a running http_server.py."""
        url = f"{self.args.remote.rstrip('/')}/commands/{command}"
        headers = {}
        token = self.args.token or os.environ.get("TOOLHOST_API_TOKEN")
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = requests.post(url, json=arguments, headers=headers, timeout=self.args.timeout)
        except requests.exceptions.ConnectionError:
            return {"success": False, "error": {"code": "connect_error", "message": f"Cannot connect to {self.args.remote}"}}
        except requests.exceptions.Timeout:
            return {"success": False, "error": {"code": "timeout", "message": f"Timeout after {self.args.timeout}s"}}

        try:
            return response.json()
        except ValueError:
            return {
                "success": False,
                "error": {"code": "protocol_error", "message": f"HTTP {response.status_code}: {response.text[:200]}"},
            }

    def output_results(self):
        """Output results in the requested format."""
        if self.args.format == "json":
            self.output_json()
        else:
            self.output_text()

    def output_json(self):
        output = {
            "timestamp": datetime.now().isoformat(),
            "command": self.command,
            "response": self.response,
        }
        print(json.dumps(output, indent=2))

    def output_text(self):
        """Output human-readable text format."""
        if not self.response.get("success"):
            error = self.response.get("error") or {}
            print(f"✗ {self.command} failed [{error.get('code', 'unknown')}]: {error.get('message', '')}")
            data = self.response.get("data") or {}
            for line in data.get("errors", []) or data.get("violations", []):
                print(f"  - {line}")
            return

        data = self.response.get("data")
        if self.command == "listServers":
            self.print_servers(data)
        elif self.command == "listTools":
            self.print_tools(data)
        elif self.command == "healthReport":
            self.print_health_report(data)
        elif self.command == "exportConfiguration" and not self.args.output:
            print(data["content"])
        else:
            print(f"✓ {self.command}")
            if data is not None:
                print(json.dumps(data, indent=2))

    def print_servers(self, data: Dict[str, Any]):
        print("=" * 80)
        print(f"Configured Servers ({data['count']})")
        print("=" * 80)
        for server in data["servers"]:
            status = (server.get("status") or {}).get("status", "not registered")
            symbol = "✓" if status == "connected" else "✗"
            enabled = "" if server["enabled"] else " (disabled)"
            print(f"  {symbol} {server['id']}{enabled}: {status}, {server['toolCount']} tools")

    def print_tools(self, data: Dict[str, Any]):
        print("=" * 80)
        print(f"Available Tools ({data['count']})")
        print("=" * 80)
        for tool in data["tools"]:
            description = tool.get("description") or ""
            print(f"  {tool['serverId']}/{tool['name']}: {description}")

    def print_health_report(self, data: Dict[str, Any]):
        summary = data["summary"]
        print("=" * 80)
        print(f"Health Report - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        print("=" * 80)
        print(f"Connected: {summary['connected']}/{summary['total']}  "
              f"Unhealthy: {summary['unhealthy']}  Disconnected: {summary['disconnected']}")
        print()
        for server_id, record in data["servers"].items():
            symbol = "✓" if record["status"] == "connected" else "✗"
            line = f"  {symbol} {server_id}: {record['status']}"
            if record.get("consecutiveFailures"):
                line += f" ({record['consecutiveFailures']} consecutive failures)"
            print(line)
            if record.get("lastError"):
                print(f"      Last error: {record['lastError']}")

    def get_exit_code(self) -> int:
        """0 on success, 1 on failure or when the health report shows unhealthy servers."""
        if not self.response.get("success"):
            return 1
        if self.command == "healthReport":
            return 1 if self.response["data"]["summary"]["unhealthy"] > 0 else 0
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage and call MCP tool servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format (default: text)")
    parser.add_argument("--config-path", metavar="PATH", help="Configuration document for local mode")
    parser.add_argument("--remote", metavar="URL", help="Run against a toolhost-mcp HTTP server instead of in-process")
    parser.add_argument("--token", help="Bearer token for --remote (default: TOOLHOST_API_TOKEN)")
    parser.add_argument("--timeout", type=float, default=60.0, help="HTTP timeout for --remote in seconds (default: 60)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    sub = parser.add_subparsers(dest="action", required=True)

    sub.add_parser("servers", help="List configured servers")

    tools = sub.add_parser("tools", help="List discovered tools")
    tools.add_argument("--server", help="Only this server")
    tools.add_argument("--refresh", action="store_true", help="Re-list tools from the server")

    call = sub.add_parser("call", help="Call a tool")
    call.add_argument("server")
    call.add_argument("tool")
    call.add_argument("--args", metavar="JSON", help="Tool arguments as a JSON object")
    call.add_argument("--timeout-ms", type=int, help="Call timeout in milliseconds")

    test = sub.add_parser("test", help="Test a server entry with a throwaway connection")
    test.add_argument("--config", metavar="JSON", required=True)
    test.add_argument("--server", help="Server id to report under")

    add = sub.add_parser("add", help="Add a server")
    add.add_argument("server")
    add.add_argument("--config", metavar="JSON", required=True)
    add.add_argument("--disabled", action="store_true", help="Add to the disabled section")

    for action, help_text in (
        ("remove", "Remove a server"),
        ("enable", "Enable a server"),
        ("disable", "Disable a server"),
        ("reset", "Reset a server's health"),
    ):
        p = sub.add_parser(action, help=help_text)
        p.add_argument("server")

    health = sub.add_parser("health", help="Health report")
    health.add_argument("--server", help="Only this server, with tool statistics")
    health.add_argument("--refresh", action="store_true", help="Ping every server first")

    sub.add_parser("unhealthy", help="List unhealthy servers")
    sub.add_parser("refresh", help="Reload the configuration document and reconcile")

    validate = sub.add_parser("validate", help="Validate a server entry")
    validate.add_argument("--config", metavar="JSON", required=True)

    export = sub.add_parser("export", help="Export the configuration")
    export.add_argument("--format", dest="export_format", choices=["json", "yaml", "markdown"], default="json")
    export.add_argument("--output", metavar="PATH", help="Write to a file instead of stdout")
    export.add_argument("--servers", help="Comma-separated server ids")
    export.add_argument("--include-health", action="store_true")
    export.add_argument("--no-redact", action="store_true", help="Keep secrets in env and headers")

    imp = sub.add_parser("import", help="Import servers from a json/yaml file")
    imp.add_argument("path")
    imp.add_argument("--format", dest="import_format", choices=["json", "yaml"], default="json")
    imp.add_argument("--overwrite", action="store_true", help="Replace servers that already exist")

    run = sub.add_parser("run", help="Run any command by name")
    run.add_argument("command")
    run.add_argument("--args", metavar="JSON", help="Command arguments as a JSON object")

    return parser


async def main_async(argv=None) -> int:
    """Main async entry point."""
    args = build_parser().parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)
        logger.setLevel(logging.INFO)

    cli = ToolhostCLI(args)
    try:
        return await cli.run()
    except ValueError as e:
        print(f"✗ {e}")
        return 1


def main():
    """Main entry point."""
    try:
        exit_code = asyncio.run(main_async())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
