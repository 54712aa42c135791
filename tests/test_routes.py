# Copyright 2025 Alibaba Group Holding Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

from fastapi import HTTPException, status
from fastapi.testclient import TestClient

from sandbox_manager.api.schema import ContainerModel, SandboxType
from sandbox_manager.main import app, build_log_config, error_body
from sandbox_manager.services.constants import SandboxErrorCodes


def _container() -> ContainerModel:
    return ContainerModel(
        session_id="abc123",
        container_id="cid-1",
        container_name="runtime_sandbox_container_abc123",
        base_url="http://localhost:40001/fastapi",
        ports=["40001"],
        runtime_token="tok",
    )


class TestAuthentication:
    def test_missing_token_rejected(self, client):
        response = client.post("/release", json={"identity": "cid-1"})

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH::UNAUTHORIZED"

    def test_wrong_token_rejected(self, client):
        response = client.post("/release", json={"identity": "cid-1"}, headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    def test_health_is_exempt(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestLifecycleRoutes:
    def test_create_from_pool(self, client, auth_headers, mock_service):
        mock_service.create_from_pool.return_value = _container()

        response = client.post(
            "/createFromPool",
            json={"sandboxType": "BROWSER", "userId": "u1", "sessionId": "s1"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["containerName"] == "runtime_sandbox_container_abc123"
        assert data["baseUrl"] == "http://localhost:40001/fastapi"
        mock_service.create_from_pool.assert_called_once_with(SandboxType.BROWSER, "u1", "s1", None, None)

    def test_create_container_none_result(self, client, auth_headers, mock_service):
        mock_service.create_container.return_value = None

        response = client.post(
            "/createContainer",
            json={"sandboxType": "base", "environment": {"A": None}},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"data": None}

    def test_versioned_prefix(self, client, auth_headers, mock_service):
        mock_service.get_sandbox_status.return_value = "running"

        response = client.post(
            "/v1/getSandboxStatus",
            json={"userId": "u1", "sessionId": "s1", "sandboxType": "gui", "imageId": "img"},
            headers=auth_headers,
        )

        assert response.json() == {"data": "running"}
        mock_service.get_sandbox_status.assert_called_once_with(SandboxType.GUI, "u1", "s1", "img")

    def test_identity_operations(self, client, auth_headers, mock_service):
        body = {"userId": "u1", "sessionId": "s1"}
        mock_service.stop_and_remove_sandbox.return_value = True

        assert client.post("/startSandbox", json=body, headers=auth_headers).json() == {"data": None}
        assert client.post("/stopSandbox", json=body, headers=auth_headers).json() == {"data": None}
        assert client.post("/stopAndRemoveSandbox", json=body, headers=auth_headers).json() == {"data": True}

        mock_service.start_sandbox.assert_called_once_with(SandboxType.BASE, "u1", "s1", None)
        mock_service.stop_sandbox.assert_called_once_with(SandboxType.BASE, "u1", "s1", None)

    def test_get_sandbox(self, client, auth_headers, mock_service):
        mock_service.get_sandbox.return_value = _container()

        response = client.post(
            "/getSandbox",
            json={"userId": "u1", "sessionId": "s1", "mountDir": "/tmp/m", "environment": {"K": "V"}},
            headers=auth_headers,
        )

        assert response.json()["data"]["containerId"] == "cid-1"
        mock_service.get_sandbox.assert_called_once_with(
            SandboxType.BASE, "u1", "s1", "/tmp/m", None, {"K": "V"}, None, None
        )

    def test_get_info_not_found_is_flattened(self, client, auth_headers, mock_service):
        mock_service.get_info.side_effect = HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": SandboxErrorCodes.IDENTITY_NOT_FOUND, "message": "No container found with id: x"},
        )

        response = client.post("/getInfo", json={"identity": "x"}, headers=auth_headers)

        assert response.status_code == 404
        assert response.json() == {
            "code": SandboxErrorCodes.IDENTITY_NOT_FOUND,
            "message": "No container found with id: x",
        }

    def test_release(self, client, auth_headers, mock_service):
        mock_service.release.return_value = False

        response = client.post("/release", json={"identity": "ghost"}, headers=auth_headers)

        assert response.json() == {"data": False}

    def test_invalid_body(self, client, auth_headers):
        response = client.post("/callTool", json={"sandboxId": "cid-1"}, headers=auth_headers)

        assert response.status_code == 422


class TestToolRoutes:
    def test_list_tools(self, client, auth_headers, mock_service):
        mock_service.list_tools.return_value = {"generic": {}}

        response = client.post(
            "/listTools", json={"sandboxId": "cid-1", "toolType": "generic"}, headers=auth_headers
        )

        assert response.json() == {"data": {"generic": {}}}
        mock_service.list_tools.assert_called_once_with("cid-1", None, None, "generic")

    def test_call_tool(self, client, auth_headers, mock_service):
        mock_service.call_tool.return_value = {"isError": False, "content": []}

        response = client.post(
            "/callTool",
            json={"sandboxId": "cid-1", "toolName": "run_shell_command", "arguments": {"command": "ls"}},
            headers=auth_headers,
        )

        assert response.json()["data"]["isError"] is False
        mock_service.call_tool.assert_called_once_with("cid-1", "run_shell_command", {"command": "ls"}, None, None)

    def test_add_mcp_servers(self, client, auth_headers, mock_service):
        mock_service.add_mcp_servers.return_value = {"added": ["fs"]}

        response = client.post(
            "/addMcpServers",
            json={"sandboxId": "cid-1", "serverConfigs": {"fs": {}}, "overwrite": True},
            headers=auth_headers,
        )

        assert response.json() == {"data": {"added": ["fs"]}}
        mock_service.add_mcp_servers.assert_called_once_with("cid-1", {"fs": {}}, True, None, None)


def test_uninitialized_service_returns_503(auth_headers):
    app.dependency_overrides.clear()
    app.state.sandbox_service = None

    response = TestClient(app).post("/release", json={"identity": "x"}, headers=auth_headers)

    assert response.status_code == 503
    assert response.json()["code"] == SandboxErrorCodes.BACKEND_UNREACHABLE


def test_error_body_fallbacks():
    assert error_body({"code": "X", "message": "m"}) == {"code": "X", "message": "m"}
    assert error_body("plain text")["message"] == "plain text"
    assert error_body(None)["code"] == "SANDBOX::UNKNOWN_ERROR"


def test_log_config_routes_package_logger():
    log_config = build_log_config("debug")

    assert log_config["loggers"]["sandbox_manager"]["level"] == "DEBUG"
    assert "%(asctime)s" in log_config["formatters"]["default"]["fmt"]
