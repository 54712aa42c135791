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
Local sandbox lifecycle manager.

Composes a backend driver, the warm container pool and the identity mapping
into the create / acquire / teardown flows of the sandbox service.
"""

import logging
import os
import posixpath
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException, status

from sandbox_manager.api.schema import ContainerModel, SandboxType
from sandbox_manager.config import AppConfig
from sandbox_manager.services.constants import (
    ARTIFACTS_SIO_TEMPLATE,
    BASE_URL_TEMPLATE,
    BROWSER_URL_TEMPLATE,
    CLIENT_BROWSER_WS_TEMPLATE,
    CONTAINER_STATUS_NOT_FOUND,
    CONTAINER_STATUS_RUNNING,
    DEFAULT_CONTAINER_PORTS,
    DEFAULT_WORKDIR,
    FRONT_BROWSER_WS_TEMPLATE,
    RUNTIME_TOKEN_LENGTH,
    SECRET_TOKEN_ENV,
    SESSION_ID_LENGTH,
    SandboxErrorCodes,
)
from sandbox_manager.services.drivers.base import BackendDriver, ContainerCreateResult, VolumeBinding
from sandbox_manager.services.helpers import generate_random_string
from sandbox_manager.services.mapping import SandboxKey, SandboxMapping
from sandbox_manager.services.pool import ContainerQueue, InMemoryContainerQueue
from sandbox_manager.services.port_manager import PortManager
from sandbox_manager.services.registry import SandboxConfig, SandboxRegistry
from sandbox_manager.services.sandbox_client import SandboxHttpClient, error_result
from sandbox_manager.services.sandbox_service import SandboxService
from sandbox_manager.services.shared_store import is_shared_store_error
from sandbox_manager.services.storage import StorageManager
from sandbox_manager.services.training_client import TrainingSandboxClient, is_training_container

logger = logging.getLogger(__name__)


class SandboxManager(SandboxService):
    """
    Manages sandboxes on a single backend (plus the optional cloud provider).

    Invariants:
    - the mapping only ever holds containers that were created successfully;
    - pooled containers are unassigned, a container leaves the pool before it
      is bound to an identity.
    """

    def __init__(
        self,
        config: AppConfig,
        driver: BackendDriver,
        registry: Optional[SandboxRegistry] = None,
        pool: Optional[ContainerQueue] = None,
        mapping: Optional[SandboxMapping] = None,
        port_manager: Optional[PortManager] = None,
        storage: Optional[StorageManager] = None,
        cloud_driver: Optional[BackendDriver] = None,
        client_factory: Callable[..., SandboxHttpClient] = SandboxHttpClient,
        training_client_factory: Callable[..., SandboxHttpClient] = TrainingSandboxClient,
    ):
        self.config = config
        self.driver = driver
        self.cloud_driver = cloud_driver
        self.registry = registry or SandboxRegistry.from_config(config)
        self.pool = pool or InMemoryContainerQueue()
        self.mapping = mapping or SandboxMapping()
        self.port_manager = port_manager or getattr(driver, "port_manager", None) or PortManager(
            *config.docker.port_range
        )
        self.storage = storage or StorageManager()
        self.client_factory = client_factory
        self.training_client_factory = training_client_factory
        self.pool_size = config.runtime.pool_size

    # ------------------------------------------------------------------
    # Startup / shutdown
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self.driver.connect():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "code": SandboxErrorCodes.BACKEND_UNREACHABLE,
                    "message": f"Backend {self.driver.name} is unreachable.",
                },
            )
        if self.cloud_driver is not None and not self.cloud_driver.connect():
            logger.warning("Cloud provider unreachable; cloud sandboxes will fail until it recovers.")
        logger.info(
            "Sandbox manager started: backend=%s, pool_size=%s, shared_store=%s",
            self.driver.name,
            self.pool_size,
            self.mapping.shared is not None,
        )
        if self.pool_size > 0:
            self.init_container_pool()

    def init_container_pool(self) -> None:
        """Fill the pool up to its target with containers of the default types."""
        eligible = [
            sandbox_type
            for sandbox_type in (SandboxType(name) for name in self.config.runtime.default_sandbox_types)
            if self.registry.is_pool_eligible(sandbox_type)
        ]
        if not eligible:
            logger.warning("No pool eligible default sandbox types configured; pool stays empty.")
            return

        while self.pool.size() < self.pool_size:
            for sandbox_type in eligible:
                try:
                    container = self.create_container(sandbox_type)
                except HTTPException as exc:
                    logger.error("Pool initialization aborted, creating %s failed: %s", sandbox_type.value, exc.detail)
                    return
                if container is None:
                    logger.error("Pool initialization aborted, creating %s returned nothing.", sandbox_type.value)
                    return
                if self.pool.size() < self.pool_size:
                    self.pool.enqueue(container)
                else:
                    # Another instance filled the shared pool meanwhile.
                    self._release_container(container, sandbox_type)
                    return
        logger.info("Container pool initialized with %s containers", self.pool.size())

    def close(self) -> None:
        self.driver.close()
        if self.cloud_driver is not None:
            self.cloud_driver.close()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _driver_for(self, sandbox_type: SandboxType) -> BackendDriver:
        if sandbox_type is not SandboxType.CLOUD:
            return self.driver
        if self.cloud_driver is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": SandboxErrorCodes.CLOUD_NOT_CONFIGURED,
                    "message": "Cloud sandboxes require a [cloud] configuration section.",
                },
            )
        return self.cloud_driver

    def _prepare_mounts(
        self,
        driver: BackendDriver,
        session_id: str,
        mount_dir: Optional[str],
        storage_path: Optional[str],
    ) -> Tuple[str, Optional[str], List[VolumeBinding]]:
        storage_cfg = self.config.storage
        if not storage_path and storage_cfg.storage_folder:
            storage_path = posixpath.join(storage_cfg.storage_folder, session_id)

        if not driver.supports_host_mounts:
            mount_dir = mount_dir or posixpath.join(storage_cfg.mount_dir, session_id)
            if not posixpath.isabs(mount_dir):
                mount_dir = "/" + mount_dir
            return mount_dir, storage_path, []

        mount_dir = os.path.abspath(mount_dir or os.path.join(os.getcwd(), storage_cfg.mount_dir, session_id))
        os.makedirs(mount_dir, exist_ok=True)
        if storage_path:
            self.storage.download_folder(storage_path, mount_dir)

        bindings = [VolumeBinding(host_path=mount_dir, container_path=DEFAULT_WORKDIR)]
        for host_path, container_path in storage_cfg.readonly_mounts.items():
            host_abs = os.path.abspath(host_path)
            if not os.path.exists(host_abs):
                logger.warning("Read-only mount source %s does not exist; skipping.", host_abs)
                continue
            bindings.append(VolumeBinding(host_path=host_abs, container_path=container_path, read_only=True))
        return mount_dir, storage_path, bindings

    @staticmethod
    def _build_model(
        session_id: str,
        container_name: str,
        result: ContainerCreateResult,
        mount_dir: str,
        storage_path: Optional[str],
        runtime_token: str,
        image: str,
        sandbox_config: Optional[SandboxConfig],
    ) -> ContainerModel:
        port = result.ports[0] if result.ports else None
        urls: Dict[str, Optional[str]] = {}
        if port:
            values = {"protocol": result.protocol, "host": result.host, "port": port, "token": runtime_token}
            urls["base_url"] = BASE_URL_TEMPLATE.format(**values)
            urls["artifacts_sio"] = ARTIFACTS_SIO_TEMPLATE.format(**values)
            if sandbox_config is not None and sandbox_config.exposes_browser:
                urls["browser_url"] = BROWSER_URL_TEMPLATE.format(**values)
                urls["front_browser_ws"] = FRONT_BROWSER_WS_TEMPLATE.format(**values)
                urls["client_browser_ws"] = CLIENT_BROWSER_WS_TEMPLATE.format(**values)
        return ContainerModel(
            session_id=session_id,
            container_id=result.container_id,
            container_name=container_name,
            ports=list(result.ports),
            mount_dir=mount_dir,
            storage_path=storage_path,
            runtime_token=runtime_token,
            auth_token=runtime_token,
            version=image,
            **urls,
        )

    def create_container(
        self,
        sandbox_type: SandboxType,
        mount_dir: Optional[str] = None,
        storage_path: Optional[str] = None,
        environment: Optional[Dict[str, Optional[str]]] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Optional[ContainerModel]:
        sandbox_type = SandboxType(sandbox_type)
        environment = dict(environment or {})
        null_keys = sorted(key for key, value in environment.items() if value is None)
        if null_keys:
            logger.warning("Refusing to create %s sandbox: null environment values for %s", sandbox_type.value, null_keys)
            return None

        driver = self._driver_for(sandbox_type)
        sandbox_config = self.registry.get_config_by_type(sandbox_type)
        image = image_id or self.registry.get_image_by_type(sandbox_type) or ""
        if not image and sandbox_type is not SandboxType.CLOUD:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": SandboxErrorCodes.INVALID_PARAMETER,
                    "message": f"No image registered for sandbox type {sandbox_type.value}.",
                },
            )
        env: Dict[str, str] = dict(sandbox_config.environment) if sandbox_config else {}
        env.update(environment)

        if driver.requires_image_pull and not driver.ensure_image_available(image):
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={
                    "code": SandboxErrorCodes.IMAGE_UNAVAILABLE,
                    "message": f"Image {image} is not available on backend {driver.name}.",
                },
            )

        session_id = generate_random_string(SESSION_ID_LENGTH)
        runtime_token = generate_random_string(RUNTIME_TOKEN_LENGTH)
        env[SECRET_TOKEN_ENV] = runtime_token

        mount_dir, storage_path, bindings = self._prepare_mounts(driver, session_id, mount_dir, storage_path)
        container_name = driver.sanitize_name(f"{self.config.runtime.container_prefix_key}{session_id.lower()}")

        runtime_config: Dict[str, Any] = dict(sandbox_config.runtime_config) if sandbox_config else {}
        if labels:
            runtime_config["labels"] = dict(labels)

        result = driver.create_container(
            container_name,
            image,
            list(DEFAULT_CONTAINER_PORTS),
            bindings,
            env,
            runtime_config,
        )
        if not result.container_id:
            logger.error("Backend %s returned no container id for %s", driver.name, container_name)
            self.port_manager.release_container_ports(container_name)
            return None

        container = self._build_model(
            session_id, container_name, result, mount_dir, storage_path, runtime_token, image, sandbox_config
        )
        try:
            driver.start_container(result.container_id)
        except HTTPException:
            self._release_container(container, sandbox_type)
            raise
        logger.info(
            "Created %s sandbox %s (container %s) on %s",
            sandbox_type.value,
            container_name,
            result.container_id,
            driver.name,
        )
        return container

    # ------------------------------------------------------------------
    # Pool acquisition
    # ------------------------------------------------------------------

    def _top_up_pool(self, sandbox_type: SandboxType) -> None:
        # Pooled containers are unassigned and carry no requester labels.
        try:
            container = self.create_container(sandbox_type)
        except HTTPException as exc:
            logger.warning("Failed to top up %s pool: %s", sandbox_type.value, exc.detail)
            return
        if container is not None:
            self.pool.enqueue(container)

    def _acquire_from_pool(self, sandbox_type: SandboxType) -> Optional[ContainerModel]:
        """Hand out a healthy pooled container, evicting stale or dead ones on the way."""
        max_attempts = self.pool_size + 1
        for attempt in range(1, max_attempts + 1):
            try:
                if self.pool.size() < self.pool_size:
                    self._top_up_pool(sandbox_type)
                candidate = self.pool.dequeue()
                if candidate is None:
                    logger.info("Pool empty (attempt %s/%s)", attempt, max_attempts)
                    continue

                current_image = self.registry.get_image_by_type(sandbox_type)
                if current_image and candidate.version != current_image:
                    logger.info(
                        "Evicting stale pooled container %s (image %s, current %s)",
                        candidate.container_name,
                        candidate.version,
                        current_image,
                    )
                    self._release_container(candidate, sandbox_type)
                    continue

                if not self.driver.inspect_container(candidate.container_id):
                    logger.warning("Pooled container %s vanished from the backend", candidate.container_name)
                    self.port_manager.release_container_ports(candidate.container_name)
                    continue

                container_status = self.driver.get_container_status(candidate.container_id)
                if container_status != CONTAINER_STATUS_RUNNING:
                    logger.warning(
                        "Pooled container %s is %s, not running; discarding",
                        candidate.container_name,
                        container_status,
                    )
                    self._release_container(candidate, sandbox_type)
                    continue

                return candidate
            except HTTPException as exc:
                if is_shared_store_error(exc):
                    raise
                logger.warning("Pool acquisition attempt %s/%s failed: %s", attempt, max_attempts, exc.detail)
        logger.info("No usable pooled %s container after %s attempts", sandbox_type.value, max_attempts)
        return None

    def _record(self, key: SandboxKey, container: ContainerModel) -> ContainerModel:
        winner = self.mapping.put_if_absent(key, container)
        if winner.container_id != container.container_id:
            logger.info(
                "Identity %s was claimed concurrently; releasing duplicate %s",
                key,
                container.container_name,
            )
            self._release_container(container, key.sandbox_type)
        return winner

    def create_from_pool(
        self,
        sandbox_type: SandboxType,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Optional[ContainerModel]:
        sandbox_type = SandboxType(sandbox_type)
        key = None
        if user_id and session_id:
            key = SandboxKey(user_id, session_id, sandbox_type, image_id or "")
            existing = self.mapping.get(key)
            if existing is not None:
                return existing

        container = None
        registry_image = self.registry.get_image_by_type(sandbox_type)
        # Pooled containers run the registry image; other images are created directly.
        if self.registry.is_pool_eligible(sandbox_type) and (not image_id or image_id == registry_image):
            container = self._acquire_from_pool(sandbox_type)
        if container is None:
            container = self.create_container(sandbox_type, image_id=image_id, labels=labels)
        if container is None:
            return None
        if key is not None:
            return self._record(key, container)
        return container

    # ------------------------------------------------------------------
    # Identity keyed operations
    # ------------------------------------------------------------------

    def get_sandbox(
        self,
        sandbox_type: SandboxType,
        user_id: str,
        session_id: str,
        mount_dir: Optional[str] = None,
        storage_path: Optional[str] = None,
        environment: Optional[Dict[str, Optional[str]]] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Optional[ContainerModel]:
        key = SandboxKey(user_id, session_id, sandbox_type, image_id or "")
        existing = self.mapping.get(key)
        if existing is not None:
            return existing
        container = self.create_container(key.sandbox_type, mount_dir, storage_path, environment, image_id, labels)
        if container is None:
            return None
        recorded = self._record(key, container)
        try:
            self.start_sandbox(key.sandbox_type, user_id, session_id, image_id)
        except HTTPException as exc:
            # create_container already started it.
            logger.warning("Start after recording %s failed: %s", recorded.container_name, exc.detail)
        return recorded

    def start_sandbox(self, sandbox_type, user_id, session_id, image_id=None) -> None:
        found = self.mapping.lookup(SandboxKey(user_id, session_id, sandbox_type, image_id or ""))
        if found is None:
            logger.warning("start_sandbox: no sandbox for %s/%s/%s", user_id, session_id, sandbox_type)
            return
        key, container = found
        self._driver_for(key.sandbox_type).start_container(container.container_id)
        self.mapping.put(key, container)

    def stop_sandbox(self, sandbox_type, user_id, session_id, image_id=None) -> None:
        found = self.mapping.lookup(SandboxKey(user_id, session_id, sandbox_type, image_id or ""))
        if found is None:
            logger.warning("stop_sandbox: no sandbox for %s/%s/%s", user_id, session_id, sandbox_type)
            return
        key, container = found
        try:
            self._driver_for(key.sandbox_type).stop_container(container.container_id)
        except HTTPException as exc:
            logger.warning("Failed to stop %s: %s", container.container_name, exc.detail)
            return
        self.mapping.put(key, container)

    def stop_and_remove_sandbox(self, sandbox_type, user_id, session_id, image_id=None) -> bool:
        found = self.mapping.lookup(SandboxKey(user_id, session_id, sandbox_type, image_id or ""))
        if found is None:
            logger.info("No sandbox mapped for %s/%s/%s; nothing to remove", user_id, session_id, sandbox_type)
            return False
        key, container = found
        try:
            self._release_container(container, key.sandbox_type)
        finally:
            self.mapping.remove(key)
        return True

    def get_sandbox_status(self, sandbox_type, user_id, session_id, image_id=None) -> str:
        found = self.mapping.lookup(SandboxKey(user_id, session_id, sandbox_type, image_id or ""))
        if found is None:
            return CONTAINER_STATUS_NOT_FOUND
        key, container = found
        return self._driver_for(key.sandbox_type).get_container_status(container.container_id)

    def get_all_sandboxes(self) -> Dict[SandboxKey, ContainerModel]:
        return self.mapping.get_all()

    # ------------------------------------------------------------------
    # Lookup by container identity
    # ------------------------------------------------------------------

    def _find_by_identity(self, identity: str) -> Optional[Tuple[SandboxKey, ContainerModel]]:
        records = list(self.mapping.get_all().items())
        for attribute in ("container_name", "session_id", "container_id"):
            for key, container in records:
                if getattr(container, attribute) == identity:
                    return key, container
        return None

    def get_info(self, identity: str) -> ContainerModel:
        if not identity:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": SandboxErrorCodes.INVALID_PARAMETER,
                    "message": "Identity must not be empty.",
                },
            )
        found = self._find_by_identity(identity)
        if found is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={
                    "code": SandboxErrorCodes.IDENTITY_NOT_FOUND,
                    "message": f"No container found with id: {identity}",
                },
            )
        return found[1]

    def release(self, identity: str) -> bool:
        found = self._find_by_identity(identity) if identity else None
        if found is None:
            logger.warning("release: no container found with id %s", identity)
            return False
        key, container = found
        self._release_container(container, key.sandbox_type)
        self.mapping.remove(key)
        logger.info("Released container %s", container.container_name)
        return True

    def _release_container(self, container: ContainerModel, sandbox_type: Optional[SandboxType] = None) -> None:
        """Best-effort teardown: stop, force-remove, free ports, persist the mount directory."""
        driver = self.cloud_driver if sandbox_type is SandboxType.CLOUD and self.cloud_driver else self.driver
        try:
            driver.stop_container(container.container_id)
        except HTTPException as exc:
            logger.warning("Failed to stop %s: %s", container.container_name, exc.detail)
        try:
            driver.remove_container(container.container_id)
        except HTTPException as exc:
            logger.warning("Failed to remove %s: %s", container.container_name, exc.detail)
        self.port_manager.release_container_ports(container.container_name)
        if driver.supports_host_mounts and container.mount_dir and container.storage_path:
            self.storage.upload_folder(container.mount_dir, container.storage_path)

    # ------------------------------------------------------------------
    # Tool server access
    # ------------------------------------------------------------------

    def _open_client(self, container: ContainerModel) -> Optional[SandboxHttpClient]:
        if not container.base_url:
            logger.error("Sandbox %s exposes no tool server URL", container.container_name)
            return None
        factory = self.training_client_factory if is_training_container(container) else self.client_factory
        client = factory(container, timeout=self.config.runtime.health_timeout)
        if client.wait_until_healthy():
            return client
        client.close()
        return None

    def list_tools(self, sandbox_id, user_id=None, session_id=None, tool_type=None) -> Dict[str, Any]:
        try:
            container = self.get_info(sandbox_id)
        except HTTPException as exc:
            logger.error("list_tools: %s", exc.detail)
            return {}
        client = self._open_client(container)
        if client is None:
            return {}
        with client:
            return client.list_tools(tool_type)

    def call_tool(self, sandbox_id, tool_name, arguments=None, user_id=None, session_id=None) -> Dict[str, Any]:
        try:
            container = self.get_info(sandbox_id)
        except HTTPException as exc:
            return error_result(f"Error calling tool: {exc.detail['message']}")
        client = self._open_client(container)
        if client is None:
            return error_result(f"Error calling tool: sandbox {sandbox_id} is not healthy")
        with client:
            return client.call_tool(tool_name, arguments)

    def add_mcp_servers(
        self, sandbox_id, server_configs, overwrite=False, user_id=None, session_id=None
    ) -> Dict[str, Any]:
        try:
            container = self.get_info(sandbox_id)
        except HTTPException as exc:
            return error_result(f"Error adding MCP servers: {exc.detail['message']}")
        client = self._open_client(container)
        if client is None:
            return error_result(f"Error adding MCP servers: sandbox {sandbox_id} is not healthy")
        with client:
            return client.add_mcp_servers(server_configs, overwrite)

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup_all_sandboxes(self) -> None:
        """Release every pooled container and every mapped sandbox."""
        drained = 0
        while True:
            try:
                container = self.pool.dequeue()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to drain the container pool: %s", exc)
                break
            if container is None:
                break
            try:
                self._release_container(container)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to release pooled container %s: %s", container.container_name, exc)
                continue
            drained += 1

        try:
            mapped = self.mapping.get_all()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to list shared sandboxes, cleaning local records only: %s", exc)
            mapped = self.mapping.local.get_all()
        released = 0
        for key, container in mapped.items():
            try:
                self._release_container(container, key.sandbox_type)
                released += 1
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to release sandbox %s: %s", container.container_name, exc)
            try:
                self.mapping.remove(key)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to remove mapping for %s: %s", key, exc)
        logger.info("Cleanup finished: %s pooled and %s mapped sandboxes released", drained, released)
