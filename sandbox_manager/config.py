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
Configuration loading for the sandbox manager.

Configuration is read once from a TOML file (``SANDBOX_CONFIG_PATH``, defaulting
to ``~/.sandbox.toml``) into pydantic models and treated as read-only afterwards.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SANDBOX_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path.home() / ".sandbox.toml"

DEFAULT_IMAGE_NAMESPACE = "agentscope-registry.ap-southeast-1.cr.aliyuncs.com/agentscope"
# Container names are prefix + 22 char session id, and must stay within 63 chars.
MAX_CONTAINER_PREFIX_LENGTH = 38


class ServerConfig(BaseModel):
    """HTTP front end settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    api_key: Optional[str] = Field(
        None,
        description="Bearer key required on every request when set.",
    )


class RuntimeConfig(BaseModel):
    """Backend selection and pool settings."""

    type: Literal["docker", "kubernetes", "serverless"] = "docker"
    container_prefix_key: str = "runtime_sandbox_container_"
    pool_size: int = Field(0, ge=0)
    default_sandbox_types: List[str] = Field(default_factory=lambda: ["base"])
    image_namespace: str = DEFAULT_IMAGE_NAMESPACE
    image_tag: str = "latest"
    health_timeout: int = Field(60, gt=0, description="Seconds to wait for a tool server to become healthy.")

    @field_validator("container_prefix_key")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v:
            raise ValueError("container_prefix_key cannot be empty")
        if len(v) > MAX_CONTAINER_PREFIX_LENGTH:
            raise ValueError(
                f"container_prefix_key must be at most {MAX_CONTAINER_PREFIX_LENGTH} characters"
            )
        return v


class DockerConfig(BaseModel):
    host: Optional[str] = Field(None, description="Docker daemon URL; environment defaults when unset.")
    timeout: int = Field(180, gt=0)
    public_host: str = Field("localhost", description="Host name clients use to reach published ports.")
    port_range: Tuple[int, int] = (49152, 59152)

    @field_validator("port_range")
    @classmethod
    def validate_port_range(cls, v: Tuple[int, int]) -> Tuple[int, int]:
        start, end = v
        if not (0 < start <= end <= 65535):
            raise ValueError("port_range must be an increasing pair within 1-65535")
        return v


class KubernetesConfig(BaseModel):
    kubeconfig_path: Optional[str] = None
    namespace: str = "default"
    service_type: Literal["NodePort", "LoadBalancer"] = "NodePort"
    image_pull_policy: str = "IfNotPresent"
    ready_timeout: int = Field(120, gt=0)
    poll_interval: float = Field(2.0, gt=0)


class ServerlessConfig(BaseModel):
    """Managed serverless runtime control plane."""

    endpoint: str
    access_token: Optional[str] = None
    timeout: int = Field(60, gt=0)


class CloudConfig(BaseModel):
    """Opaque cloud sandbox provider, used for the ``cloud`` sandbox type."""

    endpoint: str
    api_key: str
    timeout: int = Field(60, gt=0)


class RedisConfig(BaseModel):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    username: Optional[str] = None
    password: Optional[str] = None
    container_pool_key: str = "sandbox_container_pool"

    @field_validator("container_pool_key")
    @classmethod
    def validate_pool_key(cls, v: str) -> str:
        if not v:
            raise ValueError("container_pool_key cannot be empty")
        return v


class StorageConfig(BaseModel):
    mount_dir: str = "sessions_mount_dir"
    storage_folder: str = ""
    readonly_mounts: Dict[str, str] = Field(
        default_factory=dict,
        description="Host path -> container path, mounted read-only into every sandbox.",
    )


class RemoteConfig(BaseModel):
    base_url: Optional[str] = Field(None, description="Forward every operation to this manager when set.")
    bearer_token: Optional[str] = None
    timeout: int = Field(60, gt=0)


class SandboxImageConfig(BaseModel):
    """Per type overrides; unset fields keep the built-in registration."""

    image: Optional[str] = None
    environment: Optional[Dict[str, str]] = None
    runtime_config: Optional[Dict[str, Any]] = None
    pool_eligible: Optional[bool] = None


class AppConfig(BaseModel):
    """Top level configuration, one section per concern."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    serverless: Optional[ServerlessConfig] = None
    cloud: Optional[CloudConfig] = None
    redis: Optional[RedisConfig] = None
    storage: StorageConfig = Field(default_factory=StorageConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sandbox_images: Dict[str, Union[str, SandboxImageConfig]] = Field(
        default_factory=dict,
        description="Per sandbox type image overrides; a bare string replaces only the image.",
    )

    @model_validator(mode="after")
    def validate_backend_section(self) -> "AppConfig":
        if self.runtime.type == "serverless" and self.serverless is None:
            raise ValueError("runtime.type = 'serverless' requires a [serverless] section.")
        return self

    @property
    def is_remote(self) -> bool:
        return bool(self.remote.base_url)

    @classmethod
    def from_file(cls, path: Path | str) -> "AppConfig":
        with open(path, "rb") as fh:
            data = tomllib.load(fh)
        return cls.model_validate(data)


_config: Optional[AppConfig] = None


def load_config(path: Optional[Path | str] = None) -> AppConfig:
    """
    Load configuration from ``path``, ``$SANDBOX_CONFIG_PATH`` or the default location.

    A missing file yields the built-in defaults; a malformed one raises.
    """
    global _config
    config_path = Path(path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH).expanduser()
    if config_path.exists():
        _config = AppConfig.from_file(config_path)
        logger.info("Loaded configuration from %s", config_path)
    else:
        logger.warning("Config file %s not found; using defaults.", config_path)
        _config = AppConfig()
    return _config


def get_config() -> AppConfig:
    if _config is None:
        return load_config()
    return _config


__all__ = [
    "AppConfig",
    "CloudConfig",
    "DockerConfig",
    "KubernetesConfig",
    "RedisConfig",
    "RemoteConfig",
    "RuntimeConfig",
    "SandboxImageConfig",
    "ServerConfig",
    "ServerlessConfig",
    "StorageConfig",
    "get_config",
    "load_config",
]
