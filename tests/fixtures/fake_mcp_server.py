#!/usr/bin/env python3
"""
Minimal MCP server over stdio for transport tests.

Speaks newline-delimited JSON-RPC 2.0 on stdin/stdout. Behaviour switches
come from the environment:

  FAKE_MCP_BANNER=1        print a non-JSON line before the first response
  FAKE_MCP_NO_PING=1       answer "ping" with -32601
  FAKE_MCP_PAGES=N         split tools/list into N pages (nextCursor)
  FAKE_MCP_EXIT_CODE=N     write to stderr and exit with N before reading anything
  FAKE_MCP_BAD_FRAME=1     answer tools/list with a JSON array instead of an object
  FAKE_MCP_SERVER_PING=1   send a ping request to the client after initialize

Tools: echo(text), add(a, b), slow(seconds), fail(), crash()
"""

import json
import os
import sys
import time

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the text back",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
    },
    {
        "name": "add",
        "description": "Add two numbers",
        "inputSchema": {
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        },
    },
    {
        "name": "slow",
        "description": "Sleep before answering",
        "inputSchema": {"type": "object", "properties": {"seconds": {"type": "number"}}},
    },
    {"name": "fail", "description": "Always reports an error", "inputSchema": {"type": "object", "properties": {}}},
    {"name": "crash", "description": "Exit the process", "inputSchema": {"type": "object", "properties": {}}},
]

banner_pending = os.environ.get("FAKE_MCP_BANNER") == "1"


def write(message):
    global banner_pending
    if banner_pending:
        sys.stdout.write("fake-mcp-server starting up\n")
        banner_pending = False
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def result(request_id, value):
    write({"jsonrpc": "2.0", "id": request_id, "result": value})


def error(request_id, code, message):
    write({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})


def text(value, is_error=False):
    return {"content": [{"type": "text", "text": value}], "isError": is_error}


def call_tool(request_id, params):
    name = params.get("name")
    arguments = params.get("arguments") or {}
    if name == "echo":
        result(request_id, text(str(arguments.get("text", ""))))
    elif name == "add":
        result(request_id, text(str(arguments["a"] + arguments["b"])))
    elif name == "slow":
        time.sleep(float(arguments.get("seconds", 5)))
        result(request_id, text("done"))
    elif name == "fail":
        result(request_id, text("something went wrong", is_error=True))
    elif name == "crash":
        sys.stderr.write("fatal: crash requested\n")
        sys.stderr.flush()
        sys.exit(3)
    else:
        error(request_id, -32602, f"Unknown tool: {name}")


def list_tools(request_id, params):
    if os.environ.get("FAKE_MCP_BAD_FRAME") == "1":
        sys.stdout.write(json.dumps([1, 2, 3]) + "\n")
        sys.stdout.flush()
        return
    pages = int(os.environ.get("FAKE_MCP_PAGES", "1"))
    if pages <= 1:
        result(request_id, {"tools": TOOLS})
        return
    page = int(params.get("cursor") or 0)
    size = -(-len(TOOLS) // pages)
    chunk = TOOLS[page * size:(page + 1) * size]
    value = {"tools": chunk}
    if (page + 1) * size < len(TOOLS):
        value["nextCursor"] = str(page + 1)
    result(request_id, value)


def main():
    exit_code = os.environ.get("FAKE_MCP_EXIT_CODE")
    if exit_code:
        sys.stderr.write("fake-mcp-server: missing API key\n")
        sys.stderr.flush()
        sys.exit(int(exit_code))

    sys.stderr.write("fake-mcp-server ready\n")
    sys.stderr.flush()

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}

        if method is None:
            continue  # response to our own ping
        if request_id is None:
            if method == "notifications/initialized" and os.environ.get("FAKE_MCP_SERVER_PING") == "1":
                write({"jsonrpc": "2.0", "id": "srv-1", "method": "ping"})
            continue

        if method == "initialize":
            result(request_id, {
                "protocolVersion": params.get("protocolVersion", "2024-11-05"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-mcp-server", "version": "1.0.0"},
            })
        elif method == "tools/list":
            list_tools(request_id, params)
        elif method == "tools/call":
            call_tool(request_id, params)
        elif method == "ping":
            if os.environ.get("FAKE_MCP_NO_PING") == "1":
                error(request_id, -32601, "Method not found: ping")
            else:
                result(request_id, {})
        else:
            error(request_id, -32601, f"Method not found: {method}")


if __name__ == "__main__":
    main()
