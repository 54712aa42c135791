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

from unittest.mock import MagicMock, patch

import pytest

from sandbox_manager.config import AppConfig, CloudConfig, RedisConfig, RemoteConfig, RuntimeConfig
from sandbox_manager.factory import build_sandbox_manager, build_sandbox_service
from sandbox_manager.services.drivers import create_backend_driver, create_cloud_driver
from sandbox_manager.services.drivers.http import CloudDriver, ServerlessDriver
from sandbox_manager.services.mapping import RedisSandboxMap
from sandbox_manager.services.pool import InMemoryContainerQueue, RedisContainerQueue
from sandbox_manager.services.remote import RemoteSandboxService


@pytest.fixture
def backend_driver():
    with patch("sandbox_manager.factory.create_backend_driver") as mock_create:
        mock_create.return_value = MagicMock()
        yield mock_create


def test_local_manager_without_redis(backend_driver):
    manager = build_sandbox_manager(AppConfig())

    assert isinstance(manager.pool, InMemoryContainerQueue)
    assert manager.mapping.shared is None
    assert manager.cloud_driver is None
    assert manager.port_manager.start_port == 49152


def test_redis_enables_shared_pool_and_mapping(backend_driver):
    config = AppConfig(redis=RedisConfig(container_pool_key="pool-key"))

    with patch("sandbox_manager.factory.create_redis_client") as mock_redis:
        manager = build_sandbox_manager(config)

    mock_redis.assert_called_once_with(config.redis)
    assert isinstance(manager.pool, RedisContainerQueue)
    assert manager.pool.key == "pool-key"
    assert isinstance(manager.mapping.shared, RedisSandboxMap)
    assert manager.mapping.shared.prefix == "runtime_sandbox_container_mapping"


def test_remote_mode_skips_local_backend(backend_driver):
    service = build_sandbox_service(AppConfig(remote=RemoteConfig(base_url="http://manager.test")))

    assert service.is_remote
    assert isinstance(service.remote, RemoteSandboxService)
    backend_driver.assert_not_called()


def test_local_mode(backend_driver):
    service = build_sandbox_service(AppConfig())

    assert not service.is_remote
    backend_driver.assert_called_once()


def test_driver_selection():
    config = AppConfig.model_validate(
        {"runtime": {"type": "serverless"}, "serverless": {"endpoint": "https://fn.example.com"}}
    )

    assert isinstance(create_backend_driver(config), ServerlessDriver)
    assert create_cloud_driver(config) is None
    cloud = AppConfig(cloud=CloudConfig(endpoint="https://api.cloud.example.com", api_key="k"))
    assert isinstance(create_cloud_driver(cloud), CloudDriver)


def test_docker_driver_gets_port_manager():
    with patch("sandbox_manager.services.drivers.docker.docker"):
        config = AppConfig(runtime=RuntimeConfig(type="docker"))
        port_manager = MagicMock()
        driver = create_backend_driver(config, port_manager)

    assert driver.port_manager is port_manager
