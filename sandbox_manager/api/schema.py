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
Pydantic schemas for the sandbox manager.

This module defines the container record shared by the pool, the identity
mapping and the remote protocol, plus the request bodies of the lifecycle API.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class SandboxType(str, Enum):
    """Closed set of sandbox flavours known to the registry."""

    BASE = "base"
    FILESYSTEM = "filesystem"
    BROWSER = "browser"
    GUI = "gui"
    MOBILE = "mobile"
    TRAINING = "training"
    APPWORLD = "appworld"
    BFCL = "bfcl"
    WEBSHOP = "webshop"
    CLOUD = "cloud"

    @classmethod
    def _missing_(cls, value: object):
        # Accept enum names ("BASE") as sent by other clients.
        if isinstance(value, str):
            lowered = value.lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


# ============================================================================
# Container record
# ============================================================================

class ContainerModel(BaseModel):
    """
    Everything needed to reach and tear down one running sandbox.

    Instances are immutable; updates produce a new record.
    """
    session_id: str = Field(..., alias="sessionId")
    container_id: str = Field(..., alias="containerId")
    container_name: str = Field(..., alias="containerName")
    base_url: Optional[str] = Field(None, alias="baseUrl")
    browser_url: Optional[str] = Field(None, alias="browserUrl")
    front_browser_ws: Optional[str] = Field(None, alias="frontBrowserWS")
    client_browser_ws: Optional[str] = Field(None, alias="clientBrowserWS")
    artifacts_sio: Optional[str] = Field(None, alias="artifactsSIO")
    ports: List[str] = Field(default_factory=list)
    mount_dir: Optional[str] = Field(None, alias="mountDir")
    storage_path: Optional[str] = Field(None, alias="storagePath")
    runtime_token: Optional[str] = Field(None, alias="runtimeToken")
    auth_token: Optional[str] = Field(None, alias="authToken")
    version: Optional[str] = Field(None, description="Image reference the container was created from.")

    class Config:
        populate_by_name = True
        frozen = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ContainerModel":
        return cls.model_validate_json(raw)


# ============================================================================
# Lifecycle API requests
# ============================================================================

class _Request(BaseModel):
    class Config:
        populate_by_name = True


class CreateFromPoolRequest(_Request):
    sandbox_type: SandboxType = Field(SandboxType.BASE, alias="sandboxType")
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    image_id: Optional[str] = Field(None, alias="imageId")
    labels: Optional[Dict[str, str]] = None


class CreateContainerRequest(_Request):
    sandbox_type: SandboxType = Field(SandboxType.BASE, alias="sandboxType")
    mount_dir: Optional[str] = Field(None, alias="mountDir")
    storage_path: Optional[str] = Field(None, alias="storagePath")
    environment: Optional[Dict[str, Optional[str]]] = None
    image_id: Optional[str] = Field(None, alias="imageId")
    labels: Optional[Dict[str, str]] = None


class SandboxIdentityRequest(_Request):
    """Identity triple (plus optional image) addressing one mapped sandbox."""
    user_id: str = Field(..., alias="userId")
    session_id: str = Field(..., alias="sessionId")
    sandbox_type: SandboxType = Field(SandboxType.BASE, alias="sandboxType")
    image_id: Optional[str] = Field(None, alias="imageId")


class GetSandboxRequest(SandboxIdentityRequest):
    mount_dir: Optional[str] = Field(None, alias="mountDir")
    storage_path: Optional[str] = Field(None, alias="storagePath")
    environment: Optional[Dict[str, Optional[str]]] = None
    labels: Optional[Dict[str, str]] = None


class IdentityRequest(_Request):
    """Container name, session id or container id."""
    identity: str


class ListToolsRequest(_Request):
    sandbox_id: str = Field(..., alias="sandboxId")
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    tool_type: Optional[str] = Field(None, alias="toolType")


class CallToolRequest(_Request):
    sandbox_id: str = Field(..., alias="sandboxId")
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    tool_name: str = Field(..., alias="toolName")
    arguments: Dict[str, Any] = Field(default_factory=dict)


class AddMcpServersRequest(_Request):
    sandbox_id: str = Field(..., alias="sandboxId")
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    server_configs: Dict[str, Any] = Field(..., alias="serverConfigs")
    overwrite: bool = False
