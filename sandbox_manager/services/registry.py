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

"""Registry of sandbox types and the images they run."""

import logging
import os
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, Optional

from sandbox_manager.api.schema import SandboxType
from sandbox_manager.config import DEFAULT_IMAGE_NAMESPACE, AppConfig, SandboxImageConfig

logger = logging.getLogger(__name__)

_DESCRIPTIONS = {
    SandboxType.BASE: "Python and shell execution",
    SandboxType.FILESYSTEM: "File system operations",
    SandboxType.BROWSER: "Headless browser automation",
    SandboxType.GUI: "Desktop GUI automation",
    SandboxType.MOBILE: "Mobile device emulation",
    SandboxType.TRAINING: "Training environment",
    SandboxType.APPWORLD: "AppWorld training environment",
    SandboxType.BFCL: "BFCL training environment",
    SandboxType.WEBSHOP: "WebShop training environment",
    SandboxType.CLOUD: "Cloud hosted sandbox",
}

_BROWSER_TYPES = frozenset({SandboxType.BROWSER, SandboxType.GUI})

BFCL_DATA_DIR = "/agentscope_runtime/training_box/bfcl/multi_turn"


def _bfcl_environment() -> Dict[str, str]:
    dataset = os.environ.get("DATASET_SUB_TYPE", "multi_turn")
    return {
        "OPENAI_API_KEY": os.environ.get("OPENAI_API_KEY", ""),
        "BFCL_DATA_PATH": f"{BFCL_DATA_DIR}/{dataset}_processed.jsonl",
        "BFCL_SPLID_ID_PATH": f"{BFCL_DATA_DIR}/{dataset}_split_ids.json",
    }


def _builtin_options(sandbox_type: SandboxType) -> Dict[str, Any]:
    """Creation defaults the stock training images need."""
    if sandbox_type is SandboxType.WEBSHOP:
        return {"runtime_config": {"shm_size": "5.06gb"}}
    if sandbox_type is SandboxType.BFCL:
        return {"runtime_config": {"shm_size": "8.06gb"}, "environment": _bfcl_environment()}
    if sandbox_type is SandboxType.CLOUD:
        # Cloud sandboxes are created from a provider image id, never pooled.
        return {"pool_eligible": False}
    return {}


@dataclass
class SandboxConfig:
    image_name: str
    sandbox_type: SandboxType
    environment: Dict[str, str] = field(default_factory=dict)
    runtime_config: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    pool_eligible: bool = True

    @property
    def exposes_browser(self) -> bool:
        return self.sandbox_type in _BROWSER_TYPES


class SandboxRegistry:
    """
    Maps a sandbox type to its image reference and creation defaults.

    Re-registering a type replaces its entry, which is how an image upgrade
    is rolled out: pooled containers built from the old image become stale.
    """

    def __init__(self, image_namespace: str = DEFAULT_IMAGE_NAMESPACE, image_tag: str = "latest"):
        self._lock = Lock()
        self._configs: Dict[SandboxType, SandboxConfig] = {}
        for sandbox_type in SandboxType:
            image = "" if sandbox_type is SandboxType.CLOUD else (
                f"{image_namespace}/runtime-sandbox-{sandbox_type.value}:{image_tag}"
            )
            self.register(
                sandbox_type,
                image,
                description=_DESCRIPTIONS[sandbox_type],
                **_builtin_options(sandbox_type),
            )

    @classmethod
    def from_config(cls, config: AppConfig) -> "SandboxRegistry":
        registry = cls(config.runtime.image_namespace, config.runtime.image_tag)
        for type_name, override in config.sandbox_images.items():
            sandbox_type = SandboxType(type_name)
            if isinstance(override, str):
                override = SandboxImageConfig(image=override)
            current = registry.get_config_by_type(sandbox_type)
            registry.register(
                sandbox_type,
                override.image or current.image_name,
                environment=override.environment,
                runtime_config=override.runtime_config,
                pool_eligible=override.pool_eligible,
            )
        return registry
    def register(
        self,
        sandbox_type: SandboxType,
        image_name: str,
        environment: Optional[Dict[str, str]] = None,
        runtime_config: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        pool_eligible: Optional[bool] = None,
    ) -> SandboxConfig:
        sandbox_type = SandboxType(sandbox_type)
        with self._lock:
            previous = self._configs.get(sandbox_type)
            config = SandboxConfig(
                image_name=image_name,
                sandbox_type=sandbox_type,
                environment=dict(environment if environment is not None else (previous.environment if previous else {})),
                runtime_config=dict(
                    runtime_config if runtime_config is not None else (previous.runtime_config if previous else {})
                ),
                description=description if description is not None else (previous.description if previous else ""),
                pool_eligible=pool_eligible if pool_eligible is not None else (previous.pool_eligible if previous else True),
            )
            self._configs[sandbox_type] = config
        if previous and previous.image_name != image_name:
            logger.info("Sandbox type %s now uses image %s", sandbox_type.value, image_name)
        return config

    def get_config_by_type(self, sandbox_type: SandboxType) -> Optional[SandboxConfig]:
        with self._lock:
            return self._configs.get(SandboxType(sandbox_type))

    def get_image_by_type(self, sandbox_type: SandboxType) -> Optional[str]:
        config = self.get_config_by_type(sandbox_type)
        return config.image_name if config and config.image_name else None

    def is_pool_eligible(self, sandbox_type: SandboxType) -> bool:
        config = self.get_config_by_type(sandbox_type)
        return bool(config and config.pool_eligible)
