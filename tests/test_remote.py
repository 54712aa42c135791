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

import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from fastapi import HTTPException

from sandbox_manager.api.schema import ContainerModel, SandboxType
from sandbox_manager.config import RemoteConfig
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.manager import SandboxManager
from sandbox_manager.services.remote import RemoteHttpClient, RemoteSandboxService
from sandbox_manager.services.sandbox_service import DelegatingSandboxService

CONTAINER_WIRE = {
    "sessionId": "abc123",
    "containerId": "cid-1",
    "containerName": "runtime_sandbox_container_abc123",
    "baseUrl": "http://localhost:40001/fastapi",
    "ports": ["40001"],
}


def _response(status_code=200, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.content = json.dumps(body).encode() if body is not None else b""
    if body is not None:
        response.json.return_value = body
    else:
        response.json.side_effect = ValueError("no json")
    response.text = text
    response.reason = "Bad Gateway"
    return response


@pytest.fixture
def session():
    mock_session = MagicMock()
    mock_session.headers = {}
    return mock_session


@pytest.fixture
def remote_client(session):
    return RemoteHttpClient("http://manager.test/", bearer_token="secret", timeout=7, session=session)


@pytest.fixture
def remote_service(remote_client):
    return RemoteSandboxService(remote_client)


class TestRemoteHttpClient:
    def test_headers_and_url(self, remote_client, session):
        session.request.return_value = _response(200, {"data": 1})

        assert remote_client.make_request("POST", "/release", {"identity": "x"}) == 1
        assert session.headers["Authorization"] == "Bearer secret"
        session.request.assert_called_once_with(
            "POST", "http://manager.test/release", json={"identity": "x"}, timeout=7
        )

    def test_bare_and_empty_bodies(self, remote_client, session):
        session.request.return_value = _response(200, "running")
        assert remote_client.make_request("POST", "/getSandboxStatus") == "running"

        session.request.return_value = _response(200)
        assert remote_client.make_request("POST", "/stopSandbox") is None

    def test_non_json_success_body_is_bad_gateway(self, remote_client, session):
        response = _response(200, text="<html>proxy login</html>")
        response.content = b"<html>proxy login</html>"
        session.request.return_value = response

        with pytest.raises(HTTPException) as exc_info:
            remote_client.make_request("POST", "/createContainer", {"sandboxType": "base"})

        assert exc_info.value.status_code == 502
        assert exc_info.value.detail["code"] == SandboxErrorCodes.REMOTE_REQUEST_FAILED

    def test_transport_error(self, remote_client, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(HTTPException) as exc_info:
            remote_client.make_request("POST", "/release")

        assert exc_info.value.status_code == 502
        assert exc_info.value.detail["code"] == SandboxErrorCodes.REMOTE_REQUEST_FAILED

    def test_error_detail_is_propagated(self, remote_client, session):
        session.request.return_value = _response(
            404, {"detail": {"code": "SANDBOX::IDENTITY_NOT_FOUND", "message": "No container found with id: x"}}
        )

        with pytest.raises(HTTPException) as exc_info:
            remote_client.make_request("POST", "/getInfo", {"identity": "x"})

        assert "No container found with id: x" in exc_info.value.detail["message"]

    def test_error_without_json_uses_text(self, remote_client, session):
        session.request.return_value = _response(500, text="Internal Server Error")

        with pytest.raises(HTTPException) as exc_info:
            remote_client.make_request("POST", "/release")

        assert "Internal Server Error" in exc_info.value.detail["message"]


class TestRemoteSandboxService:
    def test_create_from_pool_payload(self, remote_service, session):
        session.request.return_value = _response(200, {"data": CONTAINER_WIRE})

        model = remote_service.create_from_pool(SandboxType.BROWSER, "u1", "s1")

        payload = session.request.call_args.kwargs["json"]
        assert session.request.call_args[0][1] == "http://manager.test/createFromPool"
        assert payload["sandboxType"] == "browser"
        assert payload["userId"] == "u1"
        assert payload["sessionId"] == "s1"
        assert model.container_name == "runtime_sandbox_container_abc123"
        assert model.base_url == "http://localhost:40001/fastapi"

    def test_empty_result_is_none(self, remote_service, session):
        session.request.return_value = _response(200, {"data": None})

        assert remote_service.create_container(SandboxType.BASE) is None

    def test_get_info_missing_raises_404(self, remote_service, session):
        session.request.return_value = _response(200, {"data": None})

        with pytest.raises(HTTPException) as exc_info:
            remote_service.get_info("ghost")

        assert exc_info.value.status_code == 404

    def test_release_and_status(self, remote_service, session):
        session.request.return_value = _response(200, {"data": True})
        assert remote_service.release("cid-1") is True

        session.request.return_value = _response(200, {"data": "not_found"})
        assert remote_service.get_sandbox_status(SandboxType.BASE, "u1", "s1") == "not_found"

    def test_call_tool_failure_is_error_result(self, remote_service, session):
        session.request.side_effect = requests.Timeout("slow")

        result = remote_service.call_tool("cid-1", "run_shell_command", {"command": "ls"})

        assert result["isError"] is True
        assert "slow" in result["content"][0]["text"]

    def test_add_mcp_servers_payload(self, remote_service, session):
        session.request.return_value = _response(200, {"data": {"added": ["fs"]}})

        assert remote_service.add_mcp_servers("cid-1", {"fs": {}}, overwrite=True) == {"added": ["fs"]}
        payload = session.request.call_args.kwargs["json"]
        assert payload["serverConfigs"] == {"fs": {}}
        assert payload["overwrite"] is True

    def test_from_config(self):
        service = RemoteSandboxService.from_config(RemoteConfig(base_url="http://manager.test", timeout=3))

        assert service.client.base_url == "http://manager.test"
        assert service.client.timeout == 3


class TestDelegatingSandboxService:
    def test_requires_exactly_one_delegate(self):
        with pytest.raises(ValueError):
            DelegatingSandboxService()
        with pytest.raises(ValueError):
            DelegatingSandboxService(manager=MagicMock(), remote=MagicMock())

    def test_local_mode_forwards_to_manager(self):
        manager = MagicMock()
        service = DelegatingSandboxService(manager=manager)

        service.start_sandbox(SandboxType.BASE, "u1", "s1")
        service.release("cid-1")

        assert service.is_remote is False
        manager.start_sandbox.assert_called_once_with(SandboxType.BASE, "u1", "s1", None)
        manager.release.assert_called_once_with("cid-1")

    def test_remote_mode_forwards_to_remote(self):
        remote = MagicMock()
        service = DelegatingSandboxService(remote=remote)

        service.create_from_pool(SandboxType.GUI, "u1", "s1", "img")
        service.cleanup_all_sandboxes()

        assert service.is_remote is True
        remote.create_from_pool.assert_called_once_with(SandboxType.GUI, "u1", "s1", "img", None)
        remote.cleanup_all_sandboxes.assert_called_once()

    def test_remote_mode_create_container_is_a_single_forwarded_call(self, remote_service, session):
        session.request.return_value = _response(200, {"data": CONTAINER_WIRE})
        service = DelegatingSandboxService(remote=remote_service)

        with patch.object(SandboxManager, "create_container") as local_create:
            model = service.create_container(SandboxType.BASE, environment={"A": "1"})

        local_create.assert_not_called()
        session.request.assert_called_once()
        method, url = session.request.call_args[0]
        assert (method, url) == ("POST", "http://manager.test/createContainer")
        assert session.request.call_args.kwargs["json"]["environment"] == {"A": "1"}
        assert isinstance(model, ContainerModel)
        assert model == ContainerModel.model_validate(CONTAINER_WIRE)
