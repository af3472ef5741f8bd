"""
Command surface.

Every command takes the ClientContext plus an arguments dict and returns the
envelope {success, data?, error?}. dispatch() is the only entry point used by
the MCP server, the HTTP server and the CLI.
"""

import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import sentry_sdk

from toolhost_mcp.config_export import EXPORT_FORMATS, build_export, parse_export, render_export
from toolhost_mcp.context import ClientContext
from toolhost_mcp.errors import (
    ConfigValidationError,
    InvalidArgumentError,
    MCPClientError,
    SecurityRejection,
    UnknownServerError,
)
from toolhost_mcp.models import ConnectionStatus, ToolCall
from toolhost_mcp.response import CommandResponse, ErrorCodes
from toolhost_mcp.validation import ValidationResult, duplicate_ids, normalize_document

logger = logging.getLogger(__name__)

Handler = Callable[[ClientContext, Dict[str, Any]], Awaitable[dict]]


def _require_str(arguments: Dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidArgumentError(f"'{key}' is required and must be a non-empty string")
    return value


def _require_dict(arguments: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = arguments.get(key)
    if not isinstance(value, dict):
        raise InvalidArgumentError(f"'{key}' is required and must be an object")
    return value


def _validation_failure(results: List[ValidationResult], extra_errors: Optional[List[str]] = None) -> dict:
    """Failure envelope listing every invalid entry."""
    details = {r.server_id or "": r.to_dict() for r in results if not r.valid}
    errors = list(extra_errors or [])
    for result in results:
        if not result.valid:
            errors.extend(f"{result.server_id}: {e}" for e in result.errors)
    code = ErrorCodes.SECURITY_REJECTION if any(r.violations for r in results) else ErrorCodes.VALIDATION_ERROR
    return CommandResponse.failure(code, "; ".join(errors), {"servers": details, "errors": errors})


def _validate_document(ctx: ClientContext, document: Any) -> Optional[dict]:
    """None if every entry is valid, otherwise a failure envelope."""
    active, disabled = normalize_document(document)
    dupes = [f"Server id '{sid}' appears in both mcpServers and disabled" for sid in duplicate_ids(active, disabled)]
    results = [ctx.validator.validate(raw, sid, enabled=True) for sid, raw in active.items()]
    results += [ctx.validator.validate(raw, sid, enabled=False) for sid, raw in disabled.items()]
    if dupes or any(not r.valid for r in results):
        return _validation_failure(results, dupes)
    return None


async def _save_and_reconcile(ctx: ClientContext, edit: Callable[[], Any]) -> Tuple[Any, Dict[str, Any]]:
    """
    Apply `edit` to the store, persist it, then converge connections.

    If the edit or the save raises, the in-memory document is rolled back so
    it keeps matching the file. Caller holds config_lock.
    """
    with ctx.store.transaction():
        outcome = edit()
        ctx.store.save()
    report = await ctx.reconcile_locked()
    return outcome, report.to_dict()


def _server_view(ctx: ClientContext, entry: Dict[str, Any]) -> Dict[str, Any]:
    server_id = entry["id"]
    try:
        entry["status"] = ctx.manager.get_status(server_id).to_dict()
    except UnknownServerError:
        entry["status"] = None
    entry["toolCount"] = len(ctx.registry.get_tools(server_id))
    return entry


# ----------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------

async def handle_list_tools(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = arguments.get("serverId")
    if server_id:
        ctx.manager.get_status(server_id)
        if arguments.get("refresh"):
            await ctx.registry.refresh(server_id)
        tools = {server_id: ctx.registry.get_tools(server_id)}
    else:
        tools = ctx.registry.all_tools()
    flat = [
        {"serverId": sid, **tool.to_dict()}
        for sid, server_tools in tools.items()
        for tool in server_tools
    ]
    return CommandResponse.success({"tools": flat, "count": len(flat)})


async def handle_call_tool(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    tool_name = arguments.get("toolName") or arguments.get("name")
    if not isinstance(tool_name, str) or not tool_name:
        raise InvalidArgumentError("'toolName' is required and must be a non-empty string")
    tool_arguments = arguments.get("arguments") or {}
    if not isinstance(tool_arguments, dict):
        raise InvalidArgumentError("'arguments' must be an object")
    timeout_ms = arguments.get("timeoutMs")
    if timeout_ms is not None and (isinstance(timeout_ms, bool) or not isinstance(timeout_ms, (int, float)) or timeout_ms <= 0):
        raise InvalidArgumentError("'timeoutMs' must be a positive number")

    call = ToolCall(id=str(arguments.get("callId") or uuid.uuid4()), name=tool_name, arguments=tool_arguments)
    result = await ctx.registry.invoke(server_id, call, timeout_ms / 1000.0 if timeout_ms else None)
    data = {"callId": call.id, "serverId": server_id, **result.to_dict()}
    if result.success:
        return CommandResponse.success(data)
    return CommandResponse.failure(result.error_code or ErrorCodes.TOOL_INVOCATION_ERROR, result.error or "", data)


# ----------------------------------------------------------------------
# Connections
# ----------------------------------------------------------------------

async def handle_test_connection(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    raw = _require_dict(arguments, "config")
    server_id = arguments.get("serverId") or f"test-{int(time.time() * 1000)}"
    result = ctx.validator.validate(raw, server_id)
    result.raise_for_errors()
    outcome = await ctx.manager.test_connection(result.config)
    outcome["serverId"] = server_id
    outcome["warnings"] = result.warnings
    return CommandResponse.success(outcome)


async def handle_connect_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    async with ctx.config_lock:
        found = ctx.store.find(server_id)
        if found is None:
            raw = arguments.get("config")
            if not isinstance(raw, dict):
                raise UnknownServerError(f"Server '{server_id}' is not configured", server_id)
            ctx.validator.validate(raw, server_id).raise_for_errors()
            _, report = await _save_and_reconcile(ctx, lambda: ctx.store.add_server(server_id, raw))
        elif found[0] == "disabled":
            _, report = await _save_and_reconcile(ctx, lambda: ctx.store.enable_server(server_id))
        else:
            report = None
    if server_id not in ctx.manager.server_ids():
        invalid = (report or {}).get("invalid", {}).get(server_id)
        raise ConfigValidationError(invalid or [f"Server '{server_id}' could not be registered"], server_id)
    state = await ctx.manager.connect(server_id)
    return CommandResponse.success({"status": state.to_dict(), "reconcile": report})


async def handle_disconnect_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    async with ctx.config_lock:
        _, report = await _save_and_reconcile(ctx, lambda: ctx.store.disable_server(server_id))
    return CommandResponse.success({"serverId": server_id, "enabled": False, "reconcile": report})


async def handle_connection_status(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = arguments.get("serverId")
    if server_id:
        return CommandResponse.success(ctx.manager.get_status(server_id).to_dict())
    return CommandResponse.success({sid: state.to_dict() for sid, state in ctx.manager.statuses().items()})


# ----------------------------------------------------------------------
# Configuration
# ----------------------------------------------------------------------

async def handle_add_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    raw = _require_dict(arguments, "config")
    enabled = bool(arguments.get("enabled", True))
    result = ctx.validator.validate(raw, server_id, enabled=enabled)
    result.raise_for_errors()
    async with ctx.config_lock:
        _, report = await _save_and_reconcile(ctx, lambda: ctx.store.add_server(server_id, raw, enabled=enabled))
    return CommandResponse.success({
        "server": ctx.store.get_server(server_id),
        "warnings": result.warnings,
        "trustLevel": result.trust_level.value,
        "reconcile": report,
    })


async def handle_update_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    updates = _require_dict(arguments, "updates")
    async with ctx.config_lock:
        section, merged = ctx.store.preview_update(server_id, updates)
        result = ctx.validator.validate(merged, server_id, enabled=section == "mcpServers")
        result.raise_for_errors()
        _, report = await _save_and_reconcile(ctx, lambda: ctx.store.update_server(server_id, updates))
    return CommandResponse.success({"server": ctx.store.get_server(server_id), "reconcile": report})


async def handle_remove_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    async with ctx.config_lock:
        if ctx.store.find(server_id) is None:
            raise UnknownServerError(f"Server '{server_id}' is not configured", server_id)
        _, report = await _save_and_reconcile(ctx, lambda: ctx.store.remove_server(server_id))
    return CommandResponse.success({"serverId": server_id, "removed": True, "reconcile": report})


async def handle_enable_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    async with ctx.config_lock:
        changed, report = await _save_and_reconcile(ctx, lambda: ctx.store.enable_server(server_id))
    return CommandResponse.success({"serverId": server_id, "enabled": True, "changed": changed, "reconcile": report})


async def handle_disable_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    async with ctx.config_lock:
        changed, report = await _save_and_reconcile(ctx, lambda: ctx.store.disable_server(server_id))
    return CommandResponse.success({"serverId": server_id, "enabled": False, "changed": changed, "reconcile": report})


async def handle_get_server(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    return CommandResponse.success(_server_view(ctx, ctx.store.get_server(server_id)))


async def handle_list_servers(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    servers = [_server_view(ctx, entry) for entry in ctx.store.list_servers()]
    return CommandResponse.success({"servers": servers, "count": len(servers)})


async def handle_load_configuration(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    async with ctx.config_lock:
        ctx.store.load()
    return CommandResponse.success(ctx.store.export_configuration())


async def handle_save_configuration(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    document = _require_dict(arguments, "configuration")
    failure = _validate_document(ctx, document)
    if failure is not None:
        return failure
    async with ctx.config_lock:
        ctx.store.save(document)
        report = await ctx.reconcile_locked()
    return CommandResponse.success({"path": str(ctx.store.path), "reconcile": report.to_dict()})


async def handle_refresh_configuration(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    report = await ctx.reload()
    server_results = {}
    for server_id in report.connected + report.reconnected:
        server_results[server_id] = {"success": True}
    for server_id in report.unchanged:
        state = ctx.manager.get_status(server_id)
        server_results[server_id] = {"success": state.status == ConnectionStatus.CONNECTED, "status": state.status.value}
    for server_id in report.unhealthy:
        server_results[server_id] = {"success": False, "error": f"Server '{server_id}' is unhealthy"}
    for server_id, error in report.failed.items():
        server_results[server_id] = {"success": False, "error": error}
    for server_id, errors in report.invalid.items():
        server_results[server_id] = {"success": False, "error": "; ".join(errors)}
    return CommandResponse.success({"serverResults": server_results, "reconcile": report.to_dict()})


async def handle_validate_configuration(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    raw = _require_dict(arguments, "config")
    result = ctx.validator.validate(raw, arguments.get("serverId") or "candidate")
    return CommandResponse.success(result.to_dict())


async def handle_import_configuration(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    if isinstance(arguments.get("content"), str):
        document = parse_export(arguments["content"], arguments.get("format", "json"))
    else:
        document = _require_dict(arguments, "configuration")
    failure = _validate_document(ctx, document)
    if failure is not None:
        return failure
    async with ctx.config_lock:
        overwrite = bool(arguments.get("overwrite", False))
        outcome, report = await _save_and_reconcile(ctx, lambda: ctx.store.import_configuration(document, overwrite=overwrite))
    return CommandResponse.success({**outcome, "reconcile": report})


async def handle_export_configuration(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    export_format = arguments.get("format", "json")
    if export_format not in EXPORT_FORMATS:
        raise InvalidArgumentError(f"Unsupported export format: {export_format}")
    servers = arguments.get("servers")
    if servers is not None and not (isinstance(servers, list) and all(isinstance(s, str) for s in servers)):
        raise InvalidArgumentError("'servers' must be a list of server ids")
    health_report = ctx.health.get_health_report() if arguments.get("includeHealth") else None
    export_data = build_export(
        ctx.store.export_configuration(),
        servers=servers,
        health_report=health_report,
        redact=bool(arguments.get("redact", True)),
    )
    return CommandResponse.success({"format": export_format, "content": render_export(export_data, export_format)})


async def handle_get_config_path(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    return CommandResponse.success({"path": str(ctx.store.path)})


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------

async def handle_health_report(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    if arguments.get("refresh"):
        await ctx.health.check_all()
    return CommandResponse.success(ctx.health.get_health_report())


async def handle_server_health(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    record = ctx.health.server_health(server_id)
    data = record.to_dict()
    data["deprioritized"] = ctx.health.should_deprioritize(server_id)
    return CommandResponse.success(data)


async def handle_reset_server_health(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    server_id = _require_str(arguments, "serverId")
    record = await ctx.health.reset_server_health(server_id)
    return CommandResponse.success(record.to_dict())


async def handle_unhealthy_servers(ctx: ClientContext, arguments: Dict[str, Any]) -> dict:
    servers = ctx.health.get_unhealthy_servers()
    return CommandResponse.success({"servers": servers, "count": len(servers)})


COMMANDS: Dict[str, Handler] = {
    "listTools": handle_list_tools,
    "callTool": handle_call_tool,
    "testConnection": handle_test_connection,
    "addServer": handle_add_server,
    "saveConfiguration": handle_save_configuration,
    "refreshConfiguration": handle_refresh_configuration,
    "healthReport": handle_health_report,
    "serverHealth": handle_server_health,
    "resetServerHealth": handle_reset_server_health,
    "unhealthyServers": handle_unhealthy_servers,
    "loadConfiguration": handle_load_configuration,
    "listServers": handle_list_servers,
    "getServer": handle_get_server,
    "removeServer": handle_remove_server,
    "updateServer": handle_update_server,
    "enableServer": handle_enable_server,
    "disableServer": handle_disable_server,
    "connectServer": handle_connect_server,
    "disconnectServer": handle_disconnect_server,
    "connectionStatus": handle_connection_status,
    "importConfiguration": handle_import_configuration,
    "exportConfiguration": handle_export_configuration,
    "getConfigPath": handle_get_config_path,
    "validateConfiguration": handle_validate_configuration,
}


async def dispatch(ctx: ClientContext, name: str, arguments: Optional[Dict[str, Any]] = None) -> dict:
    """Run a command by name, turning every failure into an error envelope."""
    handler = COMMANDS.get(name)
    if handler is None:
        return CommandResponse.failure(ErrorCodes.NOT_FOUND, f"Unknown command: {name}")
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        return CommandResponse.failure(ErrorCodes.INVALID_ARGUMENT, "Command arguments must be an object")
    try:
        return await handler(ctx, arguments)
    except SecurityRejection as e:
        logger.warning(f"Command {name} rejected by security policy: {e}")
        return CommandResponse.failure(e.code, e.message, {"violations": e.violations})
    except ConfigValidationError as e:
        return CommandResponse.failure(e.code, e.message, {"errors": e.errors})
    except MCPClientError as e:
        logger.info(f"Command {name} failed: {e}")
        return CommandResponse.failure(e.code, e.message)
    except Exception as e:
        logger.exception(f"Command {name} failed")
        sentry_sdk.capture_exception(e)
        return CommandResponse.failure(ErrorCodes.UNEXPECTED_EXCEPTION, f"Command execution failed: {str(e)}")
