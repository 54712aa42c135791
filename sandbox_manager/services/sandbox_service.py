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
Abstract sandbox service interface.

Both the local manager and the remote HTTP proxy implement this contract;
the delegating wrapper picks one of them once, at construction time.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from sandbox_manager.api.schema import ContainerModel, SandboxType

logger = logging.getLogger(__name__)


class SandboxService(ABC):
    """
    Sandbox lifecycle operations.

    Identity-keyed operations address a sandbox by user, session and type
    (plus an optional image); ``get_info`` and ``release`` accept a container
    name, session id or container id.
    """

    def start(self) -> None:
        """Connect to collaborators and warm up; no-op by default."""

    def close(self) -> None:
        """Release client resources; no-op by default."""

    @abstractmethod
    def create_from_pool(
        self,
        sandbox_type: SandboxType,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Optional[ContainerModel]:
        """Hand out a pooled container, bound to the identity when one is given."""

    @abstractmethod
    def create_container(
        self,
        sandbox_type: SandboxType,
        mount_dir: Optional[str] = None,
        storage_path: Optional[str] = None,
        environment: Optional[Dict[str, Optional[str]]] = None,
        image_id: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> Optional[ContainerModel]:
        """Create and start an unassigned container; None on rejected input."""

    @abstractmethod
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
        """Return the container mapped to the identity, creating it on first use."""

    @abstractmethod
    def start_sandbox(
        self, sandbox_type: SandboxType, user_id: str, session_id: str, image_id: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    def stop_sandbox(
        self, sandbox_type: SandboxType, user_id: str, session_id: str, image_id: Optional[str] = None
    ) -> None:
        pass

    @abstractmethod
    def stop_and_remove_sandbox(
        self, sandbox_type: SandboxType, user_id: str, session_id: str, image_id: Optional[str] = None
    ) -> bool:
        """Tear the sandbox down; returns False when nothing was mapped."""

    def remove_sandbox(
        self, sandbox_type: SandboxType, user_id: str, session_id: str, image_id: Optional[str] = None
    ) -> bool:
        return self.stop_and_remove_sandbox(sandbox_type, user_id, session_id, image_id)

    def release_sandbox(
        self, sandbox_type: SandboxType, user_id: str, session_id: str, image_id: Optional[str] = None
    ) -> bool:
        return self.stop_and_remove_sandbox(sandbox_type, user_id, session_id, image_id)

    @abstractmethod
    def get_sandbox_status(
        self, sandbox_type: SandboxType, user_id: str, session_id: str, image_id: Optional[str] = None
    ) -> str:
        pass

    @abstractmethod
    def get_info(self, identity: str) -> ContainerModel:
        """Resolve a container name, session id or container id; raises when unknown."""

    @abstractmethod
    def release(self, identity: str) -> bool:
        pass

    @abstractmethod
    def list_tools(
        self,
        sandbox_id: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        tool_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def call_tool(
        self,
        sandbox_id: str,
        tool_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def add_mcp_servers(
        self,
        sandbox_id: str,
        server_configs: Dict[str, Any],
        overwrite: bool = False,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def cleanup_all_sandboxes(self) -> None:
        pass


class DelegatingSandboxService(SandboxService):
    """
    Forwards every operation to the remote proxy when one is configured and
    to the local manager otherwise. The choice is fixed at construction.
    """

    def __init__(self, manager: Optional[SandboxService] = None, remote: Optional[SandboxService] = None):
        if (manager is None) == (remote is None):
            raise ValueError("Exactly one of manager or remote must be provided")
        self.manager = manager
        self.remote = remote
        logger.info("Sandbox service running in %s mode", "remote" if remote is not None else "local")

    @property
    def is_remote(self) -> bool:
        return self.remote is not None

    @property
    def delegate(self) -> SandboxService:
        return self.remote if self.remote is not None else self.manager

    def start(self) -> None:
        self.delegate.start()

    def close(self) -> None:
        self.delegate.close()

    def create_from_pool(self, sandbox_type, user_id=None, session_id=None, image_id=None, labels=None):
        return self.delegate.create_from_pool(sandbox_type, user_id, session_id, image_id, labels)

    def create_container(
        self, sandbox_type, mount_dir=None, storage_path=None, environment=None, image_id=None, labels=None
    ):
        return self.delegate.create_container(sandbox_type, mount_dir, storage_path, environment, image_id, labels)

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
        return self.delegate.get_sandbox(
            sandbox_type, user_id, session_id, mount_dir, storage_path, environment, image_id, labels
        )

    def start_sandbox(self, sandbox_type, user_id, session_id, image_id=None):
        return self.delegate.start_sandbox(sandbox_type, user_id, session_id, image_id)

    def stop_sandbox(self, sandbox_type, user_id, session_id, image_id=None):
        return self.delegate.stop_sandbox(sandbox_type, user_id, session_id, image_id)

    def stop_and_remove_sandbox(self, sandbox_type, user_id, session_id, image_id=None):
        return self.delegate.stop_and_remove_sandbox(sandbox_type, user_id, session_id, image_id)

    def get_sandbox_status(self, sandbox_type, user_id, session_id, image_id=None):
        return self.delegate.get_sandbox_status(sandbox_type, user_id, session_id, image_id)

    def get_info(self, identity):
        return self.delegate.get_info(identity)

    def release(self, identity):
        return self.delegate.release(identity)

    def list_tools(self, sandbox_id, user_id=None, session_id=None, tool_type=None):
        return self.delegate.list_tools(sandbox_id, user_id, session_id, tool_type)

    def call_tool(self, sandbox_id, tool_name, arguments=None, user_id=None, session_id=None):
        return self.delegate.call_tool(sandbox_id, tool_name, arguments, user_id, session_id)

    def add_mcp_servers(self, sandbox_id, server_configs, overwrite=False, user_id=None, session_id=None):
        return self.delegate.add_mcp_servers(sandbox_id, server_configs, overwrite, user_id, session_id)

    def cleanup_all_sandboxes(self):
        return self.delegate.cleanup_all_sandboxes()
