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
Drivers for backends managed through an HTTP control plane.

Neither backend exposes a host filesystem nor pulls images on our side, so
sandboxes created here never get host mounts or a local image check.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from fastapi import HTTPException, status

from sandbox_manager.config import CloudConfig, ServerlessConfig
from sandbox_manager.services.constants import CONTAINER_STATUS_NOT_FOUND, SandboxErrorCodes
from sandbox_manager.services.drivers.base import BackendDriver, ContainerCreateResult, VolumeBinding

logger = logging.getLogger(__name__)


class HttpBackendDriver(BackendDriver):
    """Shared request plumbing for control plane drivers."""

    supports_host_mounts = False
    resource = "sandboxes"

    def __init__(
        self,
        endpoint: str,
        token: Optional[str] = None,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(
        self,
        method: str,
        path: str,
        action: str,
        error_code: str,
        container: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Optional[Dict[str, Any]]:
        url = f"{self.endpoint}{path}"
        try:
            with self._operation(action, container):
                response = self.session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "code": SandboxErrorCodes.BACKEND_UNREACHABLE,
                    "message": f"{self.name} control plane unreachable: {str(exc)}",
                },
            ) from exc
        if response.status_code == 404 and allow_missing:
            return None
        if not response.ok:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "code": error_code,
                    "message": f"{self.name} {action} failed with HTTP {response.status_code}: {response.text}",
                },
            )
        if not response.content:
            return {}
        return response.json()

    def _path(self, container_id: Optional[str] = None, suffix: str = "") -> str:
        path = f"/{self.resource}"
        if container_id:
            path += f"/{container_id}"
        return path + suffix

    def connect(self) -> bool:
        try:
            self._request("GET", "/health", "health check", SandboxErrorCodes.BACKEND_UNREACHABLE)
        except HTTPException as exc:
            logger.error("%s control plane unreachable: %s", self.name, exc.detail)
            return False
        return True

    def remove_container(self, container_id: str) -> None:
        self._request(
            "DELETE",
            self._path(container_id),
            "remove",
            SandboxErrorCodes.SANDBOX_DELETE_FAILED,
            container=container_id,
            allow_missing=True,
        )

    def _describe(self, container_id: str) -> Optional[Dict[str, Any]]:
        return self._request(
            "GET",
            self._path(container_id),
            "describe",
            SandboxErrorCodes.CONTAINER_QUERY_FAILED,
            container=container_id,
            allow_missing=True,
        )

    def inspect_container(self, container_id: str) -> bool:
        return self._describe(container_id) is not None

    def get_container_status(self, container_id: str) -> str:
        data = self._describe(container_id)
        if data is None:
            return CONTAINER_STATUS_NOT_FOUND
        return str(data.get("status") or "unknown").lower()

    def close(self) -> None:
        self.session.close()


class ServerlessDriver(HttpBackendDriver):
    """Managed serverless runtime; one sandbox per runtime instance."""

    name = "serverless"

    def __init__(self, config: ServerlessConfig, session: Optional[requests.Session] = None):
        super().__init__(config.endpoint, config.access_token, config.timeout, session)

    def create_container(
        self,
        name: str,
        image: str,
        ports: List[str],
        volume_bindings: List[VolumeBinding],
        environment: Dict[str, str],
        runtime_config: Optional[Dict[str, Any]] = None,
    ) -> ContainerCreateResult:
        if volume_bindings:
            logger.debug("Ignoring %s volume bindings for serverless sandbox %s", len(volume_bindings), name)
        data = self._request(
            "POST",
            self._path(),
            "create",
            SandboxErrorCodes.CONTAINER_CREATION_FAILED,
            container=name,
            payload={
                "name": name,
                "image": image,
                "ports": ports,
                "environment": environment,
                "runtimeConfig": runtime_config or {},
            },
        ) or {}
        container_id = data.get("id")
        if not container_id:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_CREATION_FAILED,
                    "message": "Serverless runtime did not return a sandbox id.",
                },
            )
        return ContainerCreateResult(
            container_id=container_id,
            ports=[str(port) for port in data.get("ports") or []],
            host=data.get("host") or urlparse(self.endpoint).hostname or "localhost",
            protocol=data.get("protocol") or "https",
        )

    def start_container(self, container_id: str) -> None:
        self._request(
            "POST",
            self._path(container_id, "/start"),
            "start",
            SandboxErrorCodes.CONTAINER_START_FAILED,
            container=container_id,
        )

    def stop_container(self, container_id: str) -> None:
        self._request(
            "POST",
            self._path(container_id, "/stop"),
            "stop",
            SandboxErrorCodes.CONTAINER_STOP_FAILED,
            container=container_id,
            allow_missing=True,
        )


class CloudDriver(HttpBackendDriver):
    """
    Opaque cloud sandbox provider.

    Sessions are created from a provider image id and are running as soon as
    the create call returns; start and stop have no equivalent.
    """

    name = "cloud"
    resource = "sessions"

    def __init__(self, config: CloudConfig, session: Optional[requests.Session] = None):
        super().__init__(config.endpoint, config.api_key, config.timeout, session)

    def create_container(
        self,
        name: str,
        image: str,
        ports: List[str],
        volume_bindings: List[VolumeBinding],
        environment: Dict[str, str],
        runtime_config: Optional[Dict[str, Any]] = None,
    ) -> ContainerCreateResult:
        runtime_config = runtime_config or {}
        data = self._request(
            "POST",
            self._path(),
            "create",
            SandboxErrorCodes.CONTAINER_CREATION_FAILED,
            container=name,
            payload={
                "imageId": image or None,
                "labels": runtime_config.get("labels") or {},
                "environment": environment,
            },
        ) or {}
        session_id = data.get("sessionId")
        if not session_id:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_CREATION_FAILED,
                    "message": "Cloud provider did not return a session id.",
                },
            )
        resource = urlparse(data.get("resourceUrl") or "")
        port = resource.port or (443 if resource.scheme == "https" else 80)
        return ContainerCreateResult(
            container_id=session_id,
            ports=[str(port)],
            host=resource.hostname or "localhost",
            protocol=resource.scheme or "https",
        )

    def start_container(self, container_id: str) -> None:
        logger.debug("Cloud session %s starts on creation.", container_id)

    def stop_container(self, container_id: str) -> None:
        logger.debug("Cloud session %s has no stop operation.", container_id)
