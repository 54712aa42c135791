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
API routes for the sandbox lifecycle.

Each operation of the sandbox service is exposed as one POST endpoint whose
response wraps the result as ``{"data": ...}``. The same contract is spoken
by RemoteSandboxService, so one manager can front another.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status

from sandbox_manager.api.schema import (
    AddMcpServersRequest,
    CallToolRequest,
    ContainerModel,
    CreateContainerRequest,
    CreateFromPoolRequest,
    GetSandboxRequest,
    IdentityRequest,
    ListToolsRequest,
    SandboxIdentityRequest,
)
from sandbox_manager.services.constants import SandboxErrorCodes
from sandbox_manager.services.sandbox_service import SandboxService

router = APIRouter(tags=["Sandboxes"])


def get_sandbox_service(request: Request) -> SandboxService:
    service = getattr(request.app.state, "sandbox_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "code": SandboxErrorCodes.BACKEND_UNREACHABLE,
                "message": "Sandbox service is not initialized.",
            },
        )
    return service


def _wrap(result: Any) -> Dict[str, Any]:
    if isinstance(result, ContainerModel):
        result = result.to_wire()
    return {"data": result}


@router.post("/createFromPool")
def create_from_pool(body: CreateFromPoolRequest, service: SandboxService = Depends(get_sandbox_service)):
    """Hand out a pre-warmed container, optionally bound to a user session."""
    return _wrap(
        service.create_from_pool(body.sandbox_type, body.user_id, body.session_id, body.image_id, body.labels)
    )


@router.post("/createContainer")
def create_container(body: CreateContainerRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(
        service.create_container(
            body.sandbox_type, body.mount_dir, body.storage_path, body.environment, body.image_id, body.labels
        )
    )


@router.post("/getSandbox")
def get_sandbox(body: GetSandboxRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(
        service.get_sandbox(
            body.sandbox_type,
            body.user_id,
            body.session_id,
            body.mount_dir,
            body.storage_path,
            body.environment,
            body.image_id,
            body.labels,
        )
    )


@router.post("/startSandbox")
def start_sandbox(body: SandboxIdentityRequest, service: SandboxService = Depends(get_sandbox_service)):
    service.start_sandbox(body.sandbox_type, body.user_id, body.session_id, body.image_id)
    return _wrap(None)


@router.post("/stopSandbox")
def stop_sandbox(body: SandboxIdentityRequest, service: SandboxService = Depends(get_sandbox_service)):
    service.stop_sandbox(body.sandbox_type, body.user_id, body.session_id, body.image_id)
    return _wrap(None)


@router.post("/stopAndRemoveSandbox")
def stop_and_remove_sandbox(body: SandboxIdentityRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(service.stop_and_remove_sandbox(body.sandbox_type, body.user_id, body.session_id, body.image_id))


@router.post("/getSandboxStatus")
def get_sandbox_status(body: SandboxIdentityRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(service.get_sandbox_status(body.sandbox_type, body.user_id, body.session_id, body.image_id))


@router.post("/getInfo")
def get_info(body: IdentityRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(service.get_info(body.identity))


@router.post("/release")
def release(body: IdentityRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(service.release(body.identity))


@router.post("/listTools")
def list_tools(body: ListToolsRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(service.list_tools(body.sandbox_id, body.user_id, body.session_id, body.tool_type))


@router.post("/callTool")
def call_tool(body: CallToolRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(service.call_tool(body.sandbox_id, body.tool_name, body.arguments, body.user_id, body.session_id))


@router.post("/addMcpServers")
def add_mcp_servers(body: AddMcpServersRequest, service: SandboxService = Depends(get_sandbox_service)):
    return _wrap(
        service.add_mcp_servers(body.sandbox_id, body.server_configs, body.overwrite, body.user_id, body.session_id)
    )
