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

from unittest.mock import MagicMock

import pytest
import requests

from sandbox_manager.api.schema import ContainerModel
from sandbox_manager.services.training_client import (
    TRAINING_TOOL_TYPE,
    TrainingSandboxClient,
    is_training_container,
)


def _container(**overrides):
    values = {
        "session_id": "abc123",
        "container_id": "cid-1",
        "container_name": "runtime_sandbox_container_abc123",
        "base_url": "http://localhost:40001/fastapi",
        "runtime_token": "tok",
        "version": "registry.test/ns/runtime-sandbox-appworld:latest",
    }
    values.update(overrides)
    return ContainerModel(**values)


def _response(body):
    response = MagicMock()
    response.status_code = 200
    response.content = b"{}"
    response.json.return_value = body
    return response


@pytest.fixture
def session():
    mock_session = MagicMock()
    mock_session.headers = {}
    return mock_session


@pytest.fixture
def training_client(session):
    return TrainingSandboxClient(_container(), timeout=5, session=session)


def test_environment_api_is_served_above_the_tool_server_path(training_client, session):
    session.get.return_value = MagicMock(status_code=200)

    assert training_client.base_url == "http://localhost:40001"
    assert training_client.check_health() is True
    assert session.get.call_args[0][0] == "http://localhost:40001/healthz"


@pytest.mark.parametrize(
    "version, expected",
    [
        ("registry.test/ns/runtime-sandbox-appworld:latest", True),
        ("registry.test/ns/runtime-sandbox-bfcl:v2", True),
        ("registry.test/ns/runtime-sandbox-webshop:latest", True),
        ("registry.test/ns/runtime-sandbox-base:latest", False),
        (None, False),
    ],
)
def test_is_training_container(version, expected):
    assert is_training_container(_container(version=version)) is expected


class TestEnvironmentCalls:
    def test_create_instance_payload(self, training_client, session):
        session.post.return_value = _response({"data": {"instance_id": "i-1", "state": []}})

        data = training_client.create_instance("appworld", "task-7", params={"seed": 1})

        assert data == {"instance_id": "i-1", "state": []}
        url = session.post.call_args[0][0]
        assert url == "http://localhost:40001/create"
        assert session.post.call_args.kwargs["json"] == {
            "env_type": "appworld",
            "task_id": "task-7",
            "messages": {},
            "params": {"seed": 1},
        }

    def test_get_task_ids_defaults_to_train_split(self, training_client, session):
        session.post.return_value = _response({"data": ["t1", "t2"]})

        assert training_client.get_task_ids("bfcl") == ["t1", "t2"]
        assert session.post.call_args[0][0] == "http://localhost:40001/get_env_profile"
        assert session.post.call_args.kwargs["json"]["params"] == {"split": "train"}

    def test_release_reports_success_flag(self, training_client, session):
        session.post.return_value = _response({"success": False})

        assert training_client.release_instance("i-1") is False
        assert session.post.call_args.kwargs["json"]["instance_id"] == "i-1"


class TestToolDispatch:
    def test_list_tools_describes_environment_operations(self, training_client, session):
        tools = training_client.list_tools()

        assert "step" in tools[TRAINING_TOOL_TYPE]
        assert training_client.list_tools("generic") == {"generic": {}}
        session.post.assert_not_called()

    def test_step_tool_posts_action_as_messages(self, training_client, session):
        session.post.return_value = _response({"data": {"reward": 1.0}})

        result = training_client.call_tool("step", {"instance_id": "i-1", "action": {"content": "ls"}})

        assert result["isError"] is False
        assert result["content"][0]["text"] == '{"reward": 1.0}'
        assert session.post.call_args[0][0] == "http://localhost:40001/step"
        assert session.post.call_args.kwargs["json"]["messages"] == {"content": "ls"}

    def test_release_tool_returns_text_status(self, training_client, session):
        session.post.return_value = _response({"success": True})

        result = training_client.call_tool("release_instance", {"instance_id": "i-1"})

        assert result["content"][0]["text"] == "success"

    def test_unknown_tool_is_error_result(self, training_client, session):
        result = training_client.call_tool("run_shell_command", {"command": "ls"})

        assert result["isError"] is True
        session.post.assert_not_called()

    def test_http_failure_is_error_result(self, training_client, session):
        response = _response({})
        response.raise_for_status.side_effect = requests.HTTPError("500 error")
        session.post.return_value = response

        result = training_client.call_tool("evaluate", {"instance_id": "i-1"})

        assert result["isError"] is True
        assert "500 error" in result["content"][0]["text"]

    def test_mcp_servers_are_not_supported(self, training_client, session):
        assert training_client.add_mcp_servers({"fs": {"command": "mcp-fs"}})["isError"] is True
        session.post.assert_not_called()
