#!/usr/bin/env python3
"""
Integration tests for the HTTP wrapper.

The app runs under starlette's TestClient (lifespan included) with the
configuration in a temp directory and in-memory transports.
"""

import pytest
from starlette.testclient import TestClient

import http_server
from toolhost_mcp.context import ClientContext
from toolhost_mcp.errors import MCPClientError
from toolhost_mcp.response import CommandResponse, ErrorCodes

MEMORY = {"transport": "stdio", "command": "npx", "args": ["-y", "@modelcontextprotocol/server-memory"]}
TOKEN = "test-api-token"


@pytest.fixture
def client(settings, factory):
    ctx = ClientContext(settings, transport_factory=factory)
    with TestClient(http_server.create_app(ctx)) as client:
        yield client


@pytest.fixture
def secured_client(settings, factory):
    ctx = ClientContext(settings, transport_factory=factory)
    with TestClient(http_server.create_app(ctx, api_token=TOKEN)) as client:
        yield client


class TestPublicEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "UP"
        assert data["server"] == "toolhost-mcp"
        assert data["servers"]["total"] == 0

    def test_info(self, client, settings):
        data = client.get("/info").json()

        assert data["name"] == "toolhost-mcp"
        assert data["auth_required"] is False
        assert data["config_path"] == str(settings.config_path)
        assert "callTool" in data["commands"]

    def test_list_commands(self, client):
        data = client.get("/commands").json()
        assert data["success"] is True
        assert len(data["data"]["commands"]) == 24


class TestCommandEndpoints:
    def test_add_server_and_list_tools(self, client):
        added = client.post("/commands/addServer", json={"serverId": "memory", "config": MEMORY})
        assert added.status_code == 200
        assert added.json()["data"]["reconcile"]["connected"] == ["memory"]

        tools = client.post("/commands/listTools")
        assert tools.status_code == 200
        assert tools.json()["data"]["count"] == 2

    def test_call_tool(self, client):
        client.post("/commands/addServer", json={"serverId": "memory", "config": MEMORY})

        response = client.post("/commands/callTool", json={
            "serverId": "memory", "toolName": "echo", "arguments": {"text": "over http"},
        })

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_tool_failure_is_200(self, client):
        response = client.post("/commands/callTool", json={"serverId": "ghost", "toolName": "echo"})

        assert response.status_code == 200
        assert response.json()["error"]["code"] == ErrorCodes.NOT_CONNECTED

    def test_not_found(self, client):
        assert client.post("/commands/getServer", json={"serverId": "ghost"}).status_code == 404
        assert client.post("/commands/formatDisk").status_code == 404

    def test_security_rejection_is_400(self, client):
        evil = {"transport": "stdio", "command": "bash", "args": ["-c", "id"]}
        response = client.post("/commands/addServer", json={"serverId": "evil", "config": evil})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == ErrorCodes.SECURITY_REJECTION

    def test_invalid_json_body(self, client):
        response = client.post("/commands/listTools", content="{broken", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == ErrorCodes.INVALID_ARGUMENT

    def test_health_report(self, client):
        client.post("/commands/addServer", json={"serverId": "memory", "config": MEMORY})

        data = client.get("/health/report?refresh=1").json()["data"]

        assert data["summary"]["connected"] == 1
        assert data["servers"]["memory"]["isHealthy"] is True

    def test_unhealthy(self, client):
        data = client.get("/health/unhealthy").json()
        assert data == {"success": True, "data": {"servers": [], "count": 0}}


class TestAuthentication:
    def test_health_and_info_are_public(self, secured_client):
        assert secured_client.get("/health").status_code == 200
        assert secured_client.get("/health/report").status_code == 200
        assert secured_client.get("/info").json()["auth_required"] is True

    def test_missing_token(self, secured_client):
        response = secured_client.get("/commands")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == ErrorCodes.UNAUTHORIZED

    def test_wrong_token(self, secured_client):
        response = secured_client.post("/commands/listTools", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid token"

    def test_malformed_header(self, secured_client):
        response = secured_client.get("/commands", headers={"Authorization": f"Token {TOKEN}"})
        assert response.status_code == 401

    def test_valid_token(self, secured_client):
        response = secured_client.post("/commands/listTools", headers={"Authorization": f"Bearer {TOKEN}"})
        assert response.status_code == 200
        assert response.json()["success"] is True


class TestStatusMapping:
    @pytest.mark.parametrize("code,status", [
        (ErrorCodes.NOT_FOUND, 404),
        (ErrorCodes.INVALID_ARGUMENT, 400),
        (ErrorCodes.VALIDATION_ERROR, 400),
        (ErrorCodes.SECURITY_REJECTION, 400),
        (ErrorCodes.UNEXPECTED_EXCEPTION, 500),
        (ErrorCodes.CONNECT_ERROR, 200),
        (ErrorCodes.TIMEOUT, 200),
    ])
    def test_status_for(self, code, status):
        assert http_server.status_for(CommandResponse.failure(code, "x")) == status

    def test_success(self):
        assert http_server.status_for(CommandResponse.success()) == 200

    def test_every_error_code_has_a_source(self):
        """Each declared code is raised by an error class, or by the HTTP auth check."""
        def subclasses(cls):
            for sub in cls.__subclasses__():
                yield sub
                yield from subclasses(sub)

        declared = {value for name, value in vars(ErrorCodes).items() if name.isupper()}
        raised = {MCPClientError.code} | {cls.code for cls in subclasses(MCPClientError)}
        assert raised <= declared
        assert declared - raised == {ErrorCodes.UNAUTHORIZED}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
