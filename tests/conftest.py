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
Pytest configuration and fixtures for sandbox manager tests.

This module provides shared fixtures and configuration for all test modules.
"""

import fnmatch
import itertools
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from fastapi import HTTPException, status
from fastapi.testclient import TestClient

TEST_CONFIG_PATH = Path(__file__).resolve().parent / "testdata" / "config.toml"
os.environ.setdefault("SANDBOX_CONFIG_PATH", str(TEST_CONFIG_PATH))

from sandbox_manager.api.lifecycle import get_sandbox_service  # noqa: E402
from sandbox_manager.config import AppConfig, RuntimeConfig, StorageConfig  # noqa: E402
from sandbox_manager.main import app  # noqa: E402
from sandbox_manager.services.constants import SandboxErrorCodes  # noqa: E402
from sandbox_manager.services.drivers.base import (  # noqa: E402
    BackendDriver,
    ContainerCreateResult,
    VolumeBinding,
)
from sandbox_manager.services.manager import SandboxManager  # noqa: E402
from sandbox_manager.services.port_manager import PortManager  # noqa: E402
from sandbox_manager.services.registry import SandboxRegistry  # noqa: E402


class FakeDriver(BackendDriver):
    """In-memory backend recording every call it receives."""

    name = "fake"
    supports_host_mounts = False

    def __init__(self):
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.fail_create = False
        self.reachable = True
        self._ids = itertools.count(1)

    def connect(self) -> bool:
        return self.reachable

    def create_container(
        self,
        name: str,
        image: str,
        ports: List[str],
        volume_bindings: List[VolumeBinding],
        environment: Dict[str, str],
        runtime_config: Optional[Dict[str, Any]] = None,
    ) -> ContainerCreateResult:
        if self.fail_create:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"code": SandboxErrorCodes.CONTAINER_CREATION_FAILED, "message": "boom"},
            )
        number = next(self._ids)
        container_id = f"cid-{number}"
        self.containers[container_id] = {
            "name": name,
            "image": image,
            "environment": dict(environment),
            "bindings": list(volume_bindings),
            "runtime_config": dict(runtime_config or {}),
            "status": "created",
        }
        self.calls.append(("create", container_id))
        return ContainerCreateResult(container_id=container_id, ports=[str(40000 + number)], host="localhost")

    def start_container(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        if container_id in self.containers:
            self.containers[container_id]["status"] = "running"

    def stop_container(self, container_id: str) -> None:
        self.calls.append(("stop", container_id))
        if container_id in self.containers:
            self.containers[container_id]["status"] = "exited"

    def remove_container(self, container_id: str) -> None:
        self.calls.append(("remove", container_id))
        self.containers.pop(container_id, None)

    def inspect_container(self, container_id: str) -> bool:
        return container_id in self.containers

    def get_container_status(self, container_id: str) -> str:
        container = self.containers.get(container_id)
        return container["status"] if container else "not_found"

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)


class FakeRedis:
    """Just enough of the redis string commands for the identity mapping."""

    def __init__(self):
        self.store = {}

    def set(self, key, value, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def get(self, key):
        return self.store.get(key)

    def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    def scan_iter(self, match):
        return [key for key in self.store if fnmatch.fnmatchcase(key, match)]

    def mget(self, keys):
        return [self.store.get(key) for key in keys]


def pytest_configure(config):
    """
    Configure pytest with custom markers.
    """
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (require Docker)"
    )


@pytest.fixture(scope="session")
def test_api_key() -> str:
    """
    Fixture providing a test API key (matches test configuration file).
    """
    return "test-api-key-12345"


@pytest.fixture(scope="function")
def auth_headers(test_api_key: str) -> dict:
    """
    Fixture providing authentication headers.
    """
    return {"Authorization": f"Bearer {test_api_key}"}


@pytest.fixture(scope="function")
def mock_service() -> MagicMock:
    return MagicMock()


@pytest.fixture(scope="function")
def client(mock_service: MagicMock):
    """
    Fixture providing a FastAPI test client backed by a mocked sandbox service.
    """
    app.dependency_overrides[get_sandbox_service] = lambda: mock_service
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def fake_driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def make_manager(fake_driver: FakeDriver, tmp_path):
    """Factory building a SandboxManager over the fake driver."""

    def _make(pool_size: int = 0, driver: Optional[BackendDriver] = None, **kwargs) -> SandboxManager:
        config = AppConfig(
            runtime=RuntimeConfig(pool_size=pool_size, default_sandbox_types=["base"]),
            storage=StorageConfig(mount_dir=str(tmp_path / "mounts")),
        )
        return SandboxManager(
            config,
            driver or fake_driver,
            registry=kwargs.pop("registry", SandboxRegistry(image_namespace="registry.test/ns")),
            port_manager=kwargs.pop("port_manager", PortManager(50000, 50010)),
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
