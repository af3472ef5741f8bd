#!/usr/bin/env python3
"""
HTTP/SSE Transport Wrapper for toolhost-mcp

Exposes the toolhost-mcp command surface over HTTP, both as an MCP server
(SSE) and as plain JSON endpoints for scripts and monitoring systems.

Endpoints:
  GET  /sse                  - SSE connection for MCP protocol
  POST /messages/            - Message endpoint for MCP protocol
  GET  /health               - Basic health check (server counts)
  GET  /health/report        - Health report of every configured server
  GET  /health/unhealthy     - Ids of unhealthy servers
  GET  /info                 - Server info endpoint
  GET  /commands             - List available commands
  POST /commands/{name}      - Run a command (JSON body = command arguments)

Authentication:
  When TOOLHOST_API_TOKEN is set, every endpoint except /health* and /info
  requires "Authorization: Bearer <token>".

Usage:
  python http_server.py                          # Default port 5556
  python http_server.py --port 5556              # Custom port
  TOOLHOST_HTTP_PORT=5556 python http_server.py  # Via environment
"""

import argparse
import contextlib
import logging
import os
import secrets
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route, Mount
from starlette.responses import JSONResponse, Response
from mcp.server.sse import SseServerTransport

# Add src directory to path for imports
src_path = Path(__file__).parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from toolhost_mcp import commands  # noqa: E402
from toolhost_mcp.context import ClientContext  # noqa: E402
from toolhost_mcp.env_config import ClientSettings  # noqa: E402
from toolhost_mcp.protocol import CLIENT_NAME, CLIENT_VERSION  # noqa: E402
from toolhost_mcp.response import CommandResponse, ErrorCodes  # noqa: E402
from toolhost_mcp.server import create_server, init_sentry  # noqa: E402

logger = logging.getLogger("toolhost-mcp-http")

EXEMPT_PATHS = ("/health", "/info")


class _SseResponse(Response):
    """
    No-op Response for SSE endpoints.

    The SSE transport handles the response directly via ASGI send callback.
    """
    async def __call__(self, scope, receive, send):
        pass


class BearerTokenMiddleware(BaseHTTPMiddleware):
    """Require a static bearer token on everything but the health and info endpoints."""

    def __init__(self, app, token: str):
        super().__init__(app)
        self.token = token

    async def dispatch(self, request, call_next):
        if any(request.url.path.startswith(path) for path in EXEMPT_PATHS):
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return JSONResponse(
                CommandResponse.failure(ErrorCodes.UNAUTHORIZED, "Bearer token required"),
                status_code=401,
            )

        token = auth_header[7:]  # Remove "Bearer " prefix
        if not secrets.compare_digest(token, self.token):
            logger.warning(f"Invalid token from {request.client.host if request.client else 'unknown'}")
            return JSONResponse(
                CommandResponse.failure(ErrorCodes.UNAUTHORIZED, "Invalid token"),
                status_code=401,
            )

        return await call_next(request)


def status_for(response: dict) -> int:
    """HTTP status for a command envelope."""
    if response.get("success"):
        return 200
    code = (response.get("error") or {}).get("code")
    if code == ErrorCodes.NOT_FOUND:
        return 404
    if code in (ErrorCodes.INVALID_ARGUMENT, ErrorCodes.VALIDATION_ERROR, ErrorCodes.SECURITY_REJECTION):
        return 400
    if code == ErrorCodes.UNEXPECTED_EXCEPTION:
        return 500
    # Tool and connection failures are reported in the envelope.
    return 200


def create_app(ctx: ClientContext, api_token: Optional[str] = None) -> Starlette:
    """Create Starlette app with MCP SSE endpoints, command endpoints, health endpoints and CORS support."""

    mcp_server = create_server(ctx)
    sse = SseServerTransport("/messages/")
    started_at = time.time()

    @contextlib.asynccontextmanager
    async def lifespan(app):
        await ctx.start()
        try:
            yield
        finally:
            await ctx.shutdown()

    async def handle_sse(request):
        """Handle SSE connection for MCP protocol."""
        logger.info(f"SSE connection from {request.client.host if request.client else 'unknown'}")

        async with sse.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1], mcp_server.create_initialization_options()
            )

        return _SseResponse()

    async def health(request):
        """Basic health check with server counts."""
        summary = ctx.health.get_health_report()["summary"]
        return JSONResponse({
            "status": "UP",
            "server": CLIENT_NAME,
            "servers": summary,
            "uptime_seconds": round(time.time() - started_at, 2),
            "timestamp": datetime.now().isoformat()
        })

    async def health_report(request):
        """Health report of every configured server (?refresh to ping first)."""
        response = await commands.dispatch(ctx, "healthReport", {"refresh": "refresh" in request.query_params})
        return JSONResponse(response, status_code=status_for(response))

    async def health_unhealthy(request):
        response = await commands.dispatch(ctx, "unhealthyServers", {})
        return JSONResponse(response, status_code=status_for(response))

    async def info(request):
        """Server info endpoint."""
        return JSONResponse({
            "name": CLIENT_NAME,
            "version": CLIENT_VERSION,
            "transport": "http",
            "protocol": "mcp",
            "config_path": str(ctx.store.path),
            "auth_required": bool(api_token),
            "endpoints": {
                "sse": "/sse",
                "messages": "/messages/",
                "health": "/health",
                "health_report": "/health/report",
                "health_unhealthy": "/health/unhealthy",
                "info": "/info",
                "commands": "/commands",
                "run_command": "/commands/{name}"
            },
            "commands": sorted(commands.COMMANDS),
        })

    async def list_commands(request):
        return JSONResponse(CommandResponse.success({"commands": sorted(commands.COMMANDS)}))

    async def run_command(request):
        """
        Run a command via HTTP (non-MCP).

        POST /commands/{name}
        Body: JSON arguments for the command

        Example:
          POST /commands/callTool
          {"serverId": "memory", "toolName": "read_graph", "arguments": {}}
        """
        name = request.path_params["name"]
        body = await request.body()
        if body.strip():
            try:
                arguments = await request.json()
            except ValueError as e:
                return JSONResponse(
                    CommandResponse.failure(ErrorCodes.INVALID_ARGUMENT, f"Request body is not valid JSON: {e}"),
                    status_code=400,
                )
        else:
            arguments = {}

        logger.info(f"HTTP command: {name}")
        response = await commands.dispatch(ctx, name, arguments)
        return JSONResponse(response, status_code=status_for(response))

    routes = [
        Route("/health", endpoint=health, methods=["GET"]),
        Route("/health/report", endpoint=health_report, methods=["GET"]),
        Route("/health/unhealthy", endpoint=health_unhealthy, methods=["GET"]),
        Route("/info", endpoint=info, methods=["GET"]),
        Route("/commands", endpoint=list_commands, methods=["GET"]),
        Route("/commands/{name}", endpoint=run_command, methods=["POST"]),
        Route("/sse", endpoint=handle_sse, methods=["GET"]),
        Mount("/messages/", app=sse.handle_post_message),
    ]

    middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )
    ]

    if api_token:
        middleware.append(Middleware(BearerTokenMiddleware, token=api_token))
        logger.info("Authentication middleware enabled")

    return Starlette(routes=routes, middleware=middleware, lifespan=lifespan)


def main():
    """Run the toolhost-mcp HTTP server."""
    parser = argparse.ArgumentParser(
        description="HTTP/SSE wrapper for toolhost-mcp"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(os.environ.get("TOOLHOST_HTTP_PORT", "5556")),
        help="HTTP port to listen on (default: 5556)"
    )
    parser.add_argument(
        "--host",
        default=os.environ.get("TOOLHOST_HTTP_HOST", "127.0.0.1"),
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Configuration document (default: TOOLHOST_CONFIG_PATH or ~/.toolhost/mcp.json)"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = ClientSettings.from_env()
    if args.config:
        settings.config_path = Path(args.config).expanduser()
    init_sentry(settings)

    if not settings.api_token:
        logger.info("Authentication disabled (set TOOLHOST_API_TOKEN to enable)")

    app = create_app(ClientContext(settings), settings.api_token)

    logger.info(f"Starting toolhost-mcp HTTP server on {args.host}:{args.port}")
    logger.info(f"Configuration: {settings.config_path}")
    logger.info(f"Health check: http://{args.host}:{args.port}/health")
    logger.info(f"Commands: http://{args.host}:{args.port}/commands/{{name}}")
    logger.info(f"SSE endpoint: http://{args.host}:{args.port}/sse")

    uvicorn.run(app, host=args.host, port=args.port, log_level="info")


if __name__ == "__main__":
    main()
