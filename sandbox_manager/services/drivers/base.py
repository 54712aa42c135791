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
Backend driver interface.

A driver is a thin adapter over one container backend. It knows nothing
about pools, identities or sandbox types; the manager composes those on top.
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sandbox_manager.services.constants import DEFAULT_HOST, DEFAULT_PROTOCOL

logger = logging.getLogger(__name__)


@dataclass
class VolumeBinding:
    host_path: str
    container_path: str
    read_only: bool = False


@dataclass
class ContainerCreateResult:
    """What the manager needs to build URLs for a freshly created container."""
    container_id: str
    ports: List[str] = field(default_factory=list)
    host: str = DEFAULT_HOST
    protocol: str = DEFAULT_PROTOCOL


class BackendDriver(ABC):
    """
    Uniform container operations over a concrete backend.

    Contracts shared by every implementation:
    - ``create_container`` returns a non-empty id or raises.
    - ``remove_container`` treats an already missing container as success.
    - operations a backend has no equivalent for are no-ops.
    """

    name = "backend"
    supports_host_mounts = True
    requires_image_pull = False

    @contextmanager
    def _operation(self, action: str, container: Optional[str] = None):
        """Context manager to log duration for backend API calls."""
        op_id = container or "shared"
        start = time.perf_counter()
        try:
            yield
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                "backend=%s | container=%s | action=%s | duration=%.2f | error=%s",
                self.name,
                op_id,
                action,
                elapsed_ms,
                exc,
            )
            raise
        else:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.info(
                "backend=%s | container=%s | action=%s | duration=%.2f",
                self.name,
                op_id,
                action,
                elapsed_ms,
            )

    @abstractmethod
    def connect(self) -> bool:
        """Verify the backend is reachable."""

    def ensure_image_available(self, image: str) -> bool:
        return True

    @abstractmethod
    def create_container(
        self,
        name: str,
        image: str,
        ports: List[str],
        volume_bindings: List[VolumeBinding],
        environment: Dict[str, str],
        runtime_config: Optional[Dict[str, Any]] = None,
    ) -> ContainerCreateResult:
        pass

    @abstractmethod
    def start_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    def stop_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    def remove_container(self, container_id: str) -> None:
        pass

    @abstractmethod
    def inspect_container(self, container_id: str) -> bool:
        """Return True when the backend still knows the container."""

    @abstractmethod
    def get_container_status(self, container_id: str) -> str:
        """Backend status string; only ``running`` carries meaning for the manager."""

    def sanitize_name(self, name: str) -> str:
        return name

    def close(self) -> None:
        pass
