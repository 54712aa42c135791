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
Docker backend driver.

Containers publish their service ports on host ports handed out by the
shared PortManager; the manager releases them again on teardown.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.types import DeviceRequest, Ulimit
from fastapi import HTTPException, status

from sandbox_manager.config import DockerConfig
from sandbox_manager.services.constants import (
    DEFAULT_PROTOCOL,
    DEFAULT_WORKDIR,
    CONTAINER_STATUS_NOT_FOUND,
    SandboxErrorCodes,
)
from sandbox_manager.services.drivers.base import BackendDriver, ContainerCreateResult, VolumeBinding
from sandbox_manager.services.helpers import parse_memory_limit, parse_nano_cpus
from sandbox_manager.services.port_manager import PortManager

logger = logging.getLogger(__name__)


def _split_port(port: str) -> Tuple[int, str]:
    number, _, protocol = str(port).partition("/")
    return int(number), protocol or "tcp"


class DockerDriver(BackendDriver):
    """Drives the local (or configured) Docker daemon through the docker SDK."""

    name = "docker"
    requires_image_pull = True

    def __init__(self, config: Optional[DockerConfig] = None, port_manager: Optional[PortManager] = None):
        self.config = config or DockerConfig()
        self.port_manager = port_manager or PortManager(*self.config.port_range)
        try:
            if self.config.host:
                self.docker_client = docker.DockerClient(base_url=self.config.host, timeout=self.config.timeout)
            else:
                self.docker_client = docker.from_env(timeout=self.config.timeout)
        except DockerException as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "code": SandboxErrorCodes.BACKEND_UNREACHABLE,
                    "message": f"Failed to initialize Docker client: {str(e)}",
                },
            ) from e

    def connect(self) -> bool:
        try:
            with self._operation("ping"):
                self.docker_client.ping()
        except DockerException as exc:
            logger.error("Docker daemon unreachable: %s", exc)
            return False
        return True

    def ensure_image_available(self, image: str) -> bool:
        try:
            with self._operation(f"inspect image {image}"):
                self.docker_client.images.get(image)
            return True
        except ImageNotFound:
            logger.info("Image %s not present locally; pulling.", image)
        except DockerException as exc:
            logger.error("Failed to inspect image %s: %s", image, exc)
            return False
        try:
            with self._operation(f"pull image {image}"):
                self.docker_client.images.pull(image)
        except DockerException as exc:
            logger.error("Failed to pull image %s: %s", image, exc)
            return False
        return True

    @staticmethod
    def _runtime_host_config(runtime_config: Dict[str, Any]) -> Dict[str, Any]:
        """Translate registry runtime options into create_host_config kwargs."""
        kwargs: Dict[str, Any] = {}
        mem_limit = runtime_config.get("mem_limit")
        if mem_limit:
            kwargs["mem_limit"] = mem_limit if isinstance(mem_limit, int) else parse_memory_limit(mem_limit)
        nano_cpus = runtime_config.get("nano_cpus") or parse_nano_cpus(runtime_config.get("cpu"))
        if nano_cpus:
            kwargs["nano_cpus"] = int(nano_cpus)
        if runtime_config.get("privileged"):
            kwargs["privileged"] = True
        shm_size = runtime_config.get("shm_size")
        if shm_size:
            kwargs["shm_size"] = shm_size if isinstance(shm_size, int) else parse_memory_limit(shm_size)
        max_connections = runtime_config.get("max_connections")
        if max_connections:
            kwargs["ulimits"] = [Ulimit(name="nofile", soft=int(max_connections), hard=int(max_connections))]
        if runtime_config.get("enable_gpu"):
            kwargs["device_requests"] = [DeviceRequest(count=-1, capabilities=[["gpu"]])]
        return kwargs

    def create_container(
        self,
        name: str,
        image: str,
        ports: List[str],
        volume_bindings: List[VolumeBinding],
        environment: Dict[str, str],
        runtime_config: Optional[Dict[str, Any]] = None,
    ) -> ContainerCreateResult:
        host_ports = self.port_manager.allocate_ports(len(ports))
        if host_ports is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "code": SandboxErrorCodes.PORT_ALLOCATION_FAILED,
                    "message": f"Failed to allocate {len(ports)} host ports for container {name}.",
                },
            )

        port_bindings = {port: host_port for port, host_port in zip(ports, host_ports)}
        binds = {
            binding.host_path: {
                "bind": binding.container_path,
                "mode": "ro" if binding.read_only else "rw",
            }
            for binding in volume_bindings
        }
        host_config = self.docker_client.api.create_host_config(
            port_bindings=port_bindings,
            binds=binds or None,
            **self._runtime_host_config(runtime_config or {}),
        )
        env = [f"{key}={value}" for key, value in environment.items()]

        try:
            with self._operation("create container", name):
                response = self.docker_client.api.create_container(
                    image=image,
                    name=name,
                    ports=[_split_port(port) for port in ports],
                    environment=env,
                    working_dir=DEFAULT_WORKDIR,
                    host_config=host_config,
                )
        except DockerException as exc:
            self.port_manager.release_ports(host_ports)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_CREATION_FAILED,
                    "message": f"Failed to create container {name}: {str(exc)}",
                },
            ) from exc

        container_id = response.get("Id")
        if not container_id:
            self.port_manager.release_ports(host_ports)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_CREATION_FAILED,
                    "message": "Docker did not return a container ID.",
                },
            )

        self.port_manager.register_container_ports(name, host_ports)
        return ContainerCreateResult(
            container_id=container_id,
            ports=[str(port) for port in host_ports],
            host=self.config.public_host,
            protocol=DEFAULT_PROTOCOL,
        )

    def start_container(self, container_id: str) -> None:
        try:
            with self._operation("start container", container_id):
                self.docker_client.containers.get(container_id).start()
        except DockerException as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_START_FAILED,
                    "message": f"Failed to start container {container_id}: {str(exc)}",
                },
            ) from exc

    def stop_container(self, container_id: str) -> None:
        try:
            with self._operation("stop container", container_id):
                self.docker_client.containers.get(container_id).stop()
        except NotFound:
            logger.debug("Container %s already gone; nothing to stop.", container_id)
        except DockerException as exc:
            # Ignore error if container is already stopped
            if "is not running" in str(exc).lower():
                return
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_STOP_FAILED,
                    "message": f"Failed to stop container {container_id}: {str(exc)}",
                },
            ) from exc

    def remove_container(self, container_id: str) -> None:
        try:
            with self._operation("remove container", container_id):
                self.docker_client.containers.get(container_id).remove(force=True)
        except NotFound:
            logger.debug("Container %s already removed.", container_id)
        except DockerException as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.SANDBOX_DELETE_FAILED,
                    "message": f"Failed to remove container {container_id}: {str(exc)}",
                },
            ) from exc

    def inspect_container(self, container_id: str) -> bool:
        try:
            self.docker_client.containers.get(container_id)
        except NotFound:
            return False
        except DockerException as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_QUERY_FAILED,
                    "message": f"Failed to inspect container {container_id}: {str(exc)}",
                },
            ) from exc
        return True

    def get_container_status(self, container_id: str) -> str:
        try:
            container = self.docker_client.containers.get(container_id)
        except NotFound:
            return CONTAINER_STATUS_NOT_FOUND
        except DockerException as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.CONTAINER_QUERY_FAILED,
                    "message": f"Failed to query container {container_id}: {str(exc)}",
                },
            ) from exc
        return str(container.status).lower()

    def close(self) -> None:
        try:
            self.docker_client.close()
        except DockerException as exc:
            logger.debug("Error closing docker client: %s", exc)
