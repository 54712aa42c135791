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
Remote proxy for a sandbox manager reachable over HTTP.

Every lifecycle operation is a JSON POST to an endpoint named after it; the
server answers with ``{"data": <result>}`` or with the bare result.
"""

import logging
from typing import Any, Dict, Optional

import requests
from fastapi import HTTPException, status

from sandbox_manager.api.schema import ContainerModel, SandboxType
from sandbox_manager.config import RemoteConfig
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.sandbox_client import error_result
from sandbox_manager.services.sandbox_service import SandboxService

logger = logging.getLogger(__name__)


def _extract_error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for field in ("detail", "error", "message"):
            value = body.get(field)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)
    return str(body)


class RemoteHttpClient:
    """JSON transport to a remote sandbox manager."""

    def __init__(
        self,
        base_url: str,
        bearer_token: Optional[str] = None,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers["Content-Type"] = "application/json"
        if bearer_token:
            self.session.headers["Authorization"] = f"Bearer {bearer_token}"

    def make_request(self, method: str, endpoint: str, data: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        logger.debug("Remote %s %s", method, url)
        try:
            response = self.session.request(method, url, json=data, timeout=self.timeout)
        except requests.RequestException as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "code": SandboxErrorCodes.REMOTE_REQUEST_FAILED,
                    "message": f"Remote sandbox manager unreachable: {str(exc)}",
                },
            ) from exc
        if not response.ok:
            message = _extract_error_message(response)
            logger.error("Remote %s %s failed with HTTP %s: %s", method, endpoint, response.status_code, message)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "code": SandboxErrorCodes.REMOTE_REQUEST_FAILED,
                    "message": f"Remote {endpoint} failed: {message}",
                },
            )
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            logger.error("Remote %s %s returned a non-JSON body", method, endpoint)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "code": SandboxErrorCodes.REMOTE_REQUEST_FAILED,
                    "message": f"Remote {endpoint} returned an invalid response: {str(exc)}",
                },
            ) from exc
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    def close(self) -> None:
        self.session.close()


def _type_value(sandbox_type: SandboxType) -> str:
    return SandboxType(sandbox_type).value


def _to_model(result: Any) -> Optional[ContainerModel]:
    if not result:
        return None
    return ContainerModel.model_validate(result)


class RemoteSandboxService(SandboxService):
    """SandboxService implementation that forwards to a remote manager."""

    def __init__(self, client: RemoteHttpClient):
        self.client = client

    @classmethod
    def from_config(cls, config: RemoteConfig) -> "RemoteSandboxService":
        return cls(RemoteHttpClient(config.base_url, config.bearer_token, config.timeout))

    def close(self) -> None:
        self.client.close()

    def _identity(self, sandbox_type, user_id, session_id, image_id) -> Dict[str, Any]:
        return {
            "sandboxType": _type_value(sandbox_type),
            "userId": user_id,
            "sessionId": session_id,
            "imageId": image_id,
        }

    def create_from_pool(self, sandbox_type, user_id=None, session_id=None, image_id=None, labels=None):
        payload = self._identity(sandbox_type, user_id, session_id, image_id)
        payload["labels"] = labels
        return _to_model(self.client.make_request("POST", "/createFromPool", payload))

    def create_container(
        self, sandbox_type, mount_dir=None, storage_path=None, environment=None, image_id=None, labels=None
    ):
        payload = {
            "sandboxType": _type_value(sandbox_type),
            "mountDir": mount_dir,
            "storagePath": storage_path,
            "environment": environment,
            "imageId": image_id,
            "labels": labels,
        }
        return _to_model(self.client.make_request("POST", "/createContainer", payload))

    def get_sandbox(
        self,
        sandbox_type,
        user_id,
        session_id,
        mount_dir=None,
        storage_path=None,
        environment=None,
        image_id=None,
        labels=None,
    ):
        payload = self._identity(sandbox_type, user_id, session_id, image_id)
        payload.update(
            {"mountDir": mount_dir, "storagePath": storage_path, "environment": environment, "labels": labels}
        )
        return _to_model(self.client.make_request("POST", "/getSandbox", payload))

    def start_sandbox(self, sandbox_type, user_id, session_id, image_id=None):
        self.client.make_request("POST", "/startSandbox", self._identity(sandbox_type, user_id, session_id, image_id))

    def stop_sandbox(self, sandbox_type, user_id, session_id, image_id=None):
        self.client.make_request("POST", "/stopSandbox", self._identity(sandbox_type, user_id, session_id, image_id))

    def stop_and_remove_sandbox(self, sandbox_type, user_id, session_id, image_id=None):
        result = self.client.make_request(
            "POST", "/stopAndRemoveSandbox", self._identity(sandbox_type, user_id, session_id, image_id)
        )
        return bool(result)

    def get_sandbox_status(self, sandbox_type, user_id, session_id, image_id=None):
        result = self.client.make_request(
            "POST", "/getSandboxStatus", self._identity(sandbox_type, user_id, session_id, image_id)
        )
        return str(result)

    def get_info(self, identity):
        model = _to_model(self.client.make_request("POST", "/getInfo", {"identity": identity}))
        if model is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "code": SandboxErrorCodes.IDENTITY_NOT_FOUND,
                    "message": f"No container found with id: {identity}",
                },
            )
        return model

    def release(self, identity):
        return bool(self.client.make_request("POST", "/release", {"identity": identity}))

    def list_tools(self, sandbox_id, user_id=None, session_id=None, tool_type=None):
        payload = {"sandboxId": sandbox_id, "userId": user_id, "sessionId": session_id, "toolType": tool_type}
        return self.client.make_request("POST", "/listTools", payload) or {}

    def call_tool(self, sandbox_id, tool_name, arguments=None, user_id=None, session_id=None):
        payload = {
            "sandboxId": sandbox_id,
            "userId": user_id,
            "sessionId": session_id,
            "toolName": tool_name,
            "arguments": arguments or {},
        }
        try:
            return self.client.make_request("POST", "/callTool", payload)
        except HTTPException as exc:
            return error_result(f"Error calling tool: {exc.detail.get('message', exc.detail)}")

    def add_mcp_servers(self, sandbox_id, server_configs, overwrite=False, user_id=None, session_id=None):
        payload = {
            "sandboxId": sandbox_id,
            "userId": user_id,
            "sessionId": session_id,
            "serverConfigs": server_configs,
            "overwrite": overwrite,
        }
        return self.client.make_request("POST", "/addMcpServers", payload)

    def cleanup_all_sandboxes(self):
        logger.info("Remote mode: sandboxes are owned and cleaned up by %s", self.client.base_url)
