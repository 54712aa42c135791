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

"""
Client for training environment sandboxes (AppWorld, BFCL, WebShop).

Training images serve an environment API one level above the tool server
path: ``create``, ``step``, ``evaluate``, ``release``, ``get_info`` and
``get_env_profile``, each taking a JSON body of the form
``{env_type, task_id, instance_id, messages, params}``.
"""

import json
import logging
from typing import Any, Dict, Optional

import requests

from sandbox_manager.api.schema import ContainerModel
from sandbox_manager.services.sandbox_client import SandboxHttpClient, error_result

logger = logging.getLogger(__name__)

TRAINING_TOOL_TYPE = "training"
TRAINING_IMAGE_MARKERS = ("sandbox-appworld", "sandbox-bfcl", "sandbox-webshop")

TRAINING_TOOLS: Dict[str, str] = {
    "create_instance": "Create an environment instance for a task.",
    "step": "Apply an action to an environment instance.",
    "evaluate": "Score the current state of an environment instance.",
    "release_instance": "Release an environment instance.",
    "get_task_ids": "List the task ids of a dataset split.",
    "get_env_profile": "Describe the tasks of a dataset split.",
    "get_tools_info": "Describe the tools available to an environment instance.",
}


def is_training_container(container: ContainerModel) -> bool:
    """Whether ``container`` runs one of the training environment images."""
    version = container.version or ""
    return any(marker in version for marker in TRAINING_IMAGE_MARKERS)


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class TrainingSandboxClient(SandboxHttpClient):
    """Environment API client; shares health polling and headers with the tool client."""

    def __init__(self, container: ContainerModel, timeout: int = 60, session: Optional[requests.Session] = None):
        super().__init__(container, timeout, session)
        # The environment API is served at the root, not under the tool server path.
        self.base_url = self.base_url.rsplit("/", 1)[0]

    def _request(
        self,
        endpoint: str,
        env_type: Optional[str] = None,
        task_id: Optional[str] = None,
        instance_id: Optional[str] = None,
        messages: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"messages": messages or {}, "params": params or {}}
        if env_type is not None:
            body["env_type"] = env_type
        if task_id is not None:
            body["task_id"] = task_id
        if instance_id is not None:
            body["instance_id"] = instance_id
        result = self._post(f"/{endpoint}", body)
        return result if isinstance(result, dict) else {"data": result}

    def create_instance(
        self,
        env_type: str,
        task_id: str,
        instance_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        return self._request("create", env_type, task_id, instance_id, params=params).get("data")

    def step(self, instance_id: str, action: Optional[Dict[str, Any]] = None, params=None) -> Any:
        return self._request("step", instance_id=instance_id, messages=action, params=params).get("data")

    def evaluate(self, instance_id: str, messages: Optional[Dict[str, Any]] = None, params=None) -> Any:
        return self._request("evaluate", instance_id=instance_id, messages=messages, params=params).get("data")

    def release_instance(self, instance_id: str) -> bool:
        return bool(self._request("release", instance_id=instance_id).get("success"))

    def get_env_profile(self, env_type: str, split: str = "train", params: Optional[Dict[str, Any]] = None) -> Any:
        split_params = dict(params or {})
        split_params["split"] = split
        return self._request("get_env_profile", env_type, params=split_params).get("data")

    def get_task_ids(self, env_type: str, split: str = "train", params: Optional[Dict[str, Any]] = None) -> Any:
        return self.get_env_profile(env_type, split, params)

    def get_tools_info(self, instance_id: str, messages: Optional[Dict[str, Any]] = None, params=None) -> Any:
        return self._request("get_info", instance_id=instance_id, messages=messages, params=params).get("data")

    def list_tools(self, tool_type: Optional[str] = None) -> Dict[str, Any]:
        tools = {
            name: {"name": name, "description": description} for name, description in TRAINING_TOOLS.items()
        }
        if tool_type and tool_type != TRAINING_TOOL_TYPE:
            return {tool_type: {}}
        return {TRAINING_TOOL_TYPE: tools}

    def _dispatch(self, name: str, arguments: Dict[str, Any]) -> Any:
        instance_id = arguments.get("instance_id")
        if name == "create_instance":
            return self.create_instance(
                arguments.get("env_type"), arguments.get("task_id"), instance_id, _as_dict(arguments.get("params"))
            )
        if name == "release_instance":
            return "success" if self.release_instance(instance_id) else "failure"
        if name == "evaluate":
            return self.evaluate(instance_id, _as_dict(arguments.get("messages")), _as_dict(arguments.get("params")))
        if name == "step":
            return self.step(instance_id, _as_dict(arguments.get("action")), _as_dict(arguments.get("params")))
        if name in ("get_task_ids", "get_env_profile"):
            return self.get_env_profile(
                arguments.get("env_type"), arguments.get("split", "train"), _as_dict(arguments.get("params"))
            )
        return self.get_tools_info(instance_id, _as_dict(arguments.get("messages")), _as_dict(arguments.get("params")))

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if name not in TRAINING_TOOLS:
            return error_result(f"Unknown training tool: {name}")
        try:
            data = self._dispatch(name, arguments or {})
        except (requests.RequestException, ValueError) as exc:
            logger.error("Training tool %s failed on %s: %s", name, self.container.container_name, exc)
            return error_result(f"Error calling tool: {str(exc)}")
        text = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
        return {"isError": False, "content": [{"type": "text", "text": text}]}

    def add_mcp_servers(self, server_configs: Dict[str, Any], overwrite: bool = False) -> Dict[str, Any]:
        return error_result("Training sandboxes do not host MCP servers.")
