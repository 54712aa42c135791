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

"""Backend driver factory."""

from typing import Optional

from sandbox_manager.config import AppConfig
from sandbox_manager.services.drivers.base import BackendDriver, ContainerCreateResult, VolumeBinding
from sandbox_manager.services.port_manager import PortManager


def create_backend_driver(config: AppConfig, port_manager: Optional[PortManager] = None) -> BackendDriver:
    """Instantiate the driver selected by ``runtime.type``."""
    runtime_type = config.runtime.type
    if runtime_type == "docker":
        from sandbox_manager.services.drivers.docker import DockerDriver

        return DockerDriver(config.docker, port_manager)
    if runtime_type == "kubernetes":
        from sandbox_manager.services.drivers.kubernetes import KubernetesDriver

        return KubernetesDriver(config.kubernetes)
    if runtime_type == "serverless":
        from sandbox_manager.services.drivers.http import ServerlessDriver

        return ServerlessDriver(config.serverless)
    raise ValueError(f"Unsupported runtime type: {runtime_type}")


def create_cloud_driver(config: AppConfig) -> Optional[BackendDriver]:
    if config.cloud is None:
        return None
    from sandbox_manager.services.drivers.http import CloudDriver

    return CloudDriver(config.cloud)


__all__ = [
    "BackendDriver",
    "ContainerCreateResult",
    "VolumeBinding",
    "create_backend_driver",
    "create_cloud_driver",
]
