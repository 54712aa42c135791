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

"""HTTP client for the tool server running inside a sandbox container."""

import logging
import time
from typing import Any, Dict, Optional

import requests

from sandbox_manager.api.schema import ContainerModel
from sandbox_manager.services.constants import SESSION_HEADER

logger = logging.getLogger(__name__)

HEALTH_POLL_INTERVAL = 1.0
GENERIC_TOOL_TYPE = "generic"


def _function_schema(name: str, description: str, param: str, param_description: str) -> Dict[str, Any]:
    return {
        "name": name,
        "json_schema": {
            "type": "function",
            "function": {
                "name": name,
                "description": description,
                "parameters": {
                    "type": "object",
                    "properties": {param: {"type": "string", "description": param_description}},
                    "required": [param],
                },
            },
        },
    }


GENERIC_TOOLS: Dict[str, Dict[str, Any]] = {
    "run_ipython_cell": _function_schema(
        "run_ipython_cell", "Run an IPython cell.", "code", "IPython code to execute"
    ),
    "run_shell_command": _function_schema(
        "run_shell_command", "Run a shell command.", "command", "Shell command to execute"
    ),
}


def error_result(message: str) -> Dict[str, Any]:
    """Tool call result reporting ``message`` as an error."""
    return {"isError": True, "content": [{"type": "text", "text": message}]}


class SandboxHttpClient:
    """
    Talks to the tool server of one container.

    Every request carries the container's runtime token and the caller's
    session id. Tool failures are returned as error results, never raised.
    """

    def __init__(self, container: ContainerModel, timeout: int = 60, session: Optional[requests.Session] = None):
        if not container.base_url:
            raise ValueError(f"Container {container.container_name} has no base URL")
        self.container = container
        self.base_url = container.base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {container.runtime_token or ''}",
                SESSION_HEADER: f"s{container.session_id}",
            }
        )

    def __enter__(self) -> "SandboxHttpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def check_health(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/healthz", timeout=HEALTH_POLL_INTERVAL * 5)
        except requests.RequestException:
            return False
        return response.status_code == 200

    def wait_until_healthy(self, timeout: Optional[float] = None) -> bool:
        """Poll /healthz once per second until it answers 200 or ``timeout`` elapses."""
        deadline = time.monotonic() + (timeout if timeout is not None else self.timeout)
        while True:
            if self.check_health():
                return True
            if time.monotonic() >= deadline:
                logger.warning(
                    "Sandbox %s not healthy after %ss", self.container.container_name, timeout or self.timeout
                )
                return False
            time.sleep(HEALTH_POLL_INTERVAL)

    def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json() if response.content else {}

    def list_tools(self, tool_type: Optional[str] = None) -> Dict[str, Any]:
        """Tool schemas grouped by tool type, including the generic execution tools."""
        try:
            tools = self._post("/mcp/list_tools", {}) or {}
        except (requests.RequestException, ValueError) as exc:
            logger.error("Failed to list tools of %s: %s", self.container.container_name, exc)
            return {}
        tools[GENERIC_TOOL_TYPE] = dict(GENERIC_TOOLS)
        if tool_type:
            return {tool_type: tools.get(tool_type, {})}
        return tools

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        arguments = arguments or {}
        try:
            if name in GENERIC_TOOLS:
                return self._post(f"/tools/{name}", arguments)
            return self._post("/mcp/call_tool", {"tool_name": name, "arguments": arguments})
        except (requests.RequestException, ValueError) as exc:
            logger.error("Tool %s failed on %s: %s", name, self.container.container_name, exc)
            return error_result(f"Error calling tool: {str(exc)}")

    def add_mcp_servers(self, server_configs: Dict[str, Any], overwrite: bool = False) -> Dict[str, Any]:
        try:
            return self._post("/mcp/add_servers", {"server_configs": server_configs, "overwrite": overwrite})
        except (requests.RequestException, ValueError) as exc:
            logger.error("Failed to add MCP servers to %s: %s", self.container.container_name, exc)
            return error_result(f"Error adding MCP servers: {str(exc)}")
