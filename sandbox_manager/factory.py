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

"""Composition root: builds the sandbox service described by the configuration."""

import logging

from sandbox_manager.config import AppConfig
from sandbox_manager.services.drivers import create_backend_driver, create_cloud_driver
from sandbox_manager.services.manager import SandboxManager
from sandbox_manager.services.mapping import RedisSandboxMap, SandboxMapping
from sandbox_manager.services.pool import InMemoryContainerQueue, RedisContainerQueue
from sandbox_manager.services.port_manager import PortManager
from sandbox_manager.services.registry import SandboxRegistry
from sandbox_manager.services.remote import RemoteSandboxService
from sandbox_manager.services.sandbox_service import DelegatingSandboxService
from sandbox_manager.services.shared_store import create_redis_client
from sandbox_manager.services.storage import StorageManager

logger = logging.getLogger(__name__)

MAPPING_SUFFIX = "mapping"


def build_sandbox_manager(config: AppConfig) -> SandboxManager:
    port_manager = PortManager(*config.docker.port_range)
    driver = create_backend_driver(config, port_manager)
    cloud_driver = create_cloud_driver(config)

    if config.redis is not None:
        redis_client = create_redis_client(config.redis)
        mapping = SandboxMapping(
            shared=RedisSandboxMap(redis_client, f"{config.runtime.container_prefix_key}{MAPPING_SUFFIX}")
        )
        pool = RedisContainerQueue(redis_client, config.redis.container_pool_key)
    else:
        mapping = SandboxMapping()
        pool = InMemoryContainerQueue()

    return SandboxManager(
        config,
        driver,
        registry=SandboxRegistry.from_config(config),
        pool=pool,
        mapping=mapping,
        port_manager=port_manager,
        storage=StorageManager(),
        cloud_driver=cloud_driver,
    )


def build_sandbox_service(config: AppConfig) -> DelegatingSandboxService:
    """Remote proxy when ``remote.base_url`` is set, local manager otherwise."""
    if config.is_remote:
        logger.info("Forwarding sandbox operations to %s", config.remote.base_url)
        return DelegatingSandboxService(remote=RemoteSandboxService.from_config(config.remote))
    return DelegatingSandboxService(manager=build_sandbox_manager(config))
