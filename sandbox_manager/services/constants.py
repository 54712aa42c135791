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

"""Shared constants for sandbox services."""

SANDBOX_SESSION_LABEL = "sandbox-manager.io/session-id"
SANDBOX_TYPE_LABEL = "sandbox-manager.io/type"

# Environment key reserved for the per-container runtime token.
SECRET_TOKEN_ENV = "SECRET_TOKEN"

# Header the in-container tool server reads the caller session from.
SESSION_HEADER = "x-agentrun-session-id"

DEFAULT_WORKDIR = "/workspace"
DEFAULT_CONTAINER_PORTS = ["80/tcp"]
DEFAULT_PROTOCOL = "http"
DEFAULT_HOST = "localhost"

SESSION_ID_LENGTH = 22
RUNTIME_TOKEN_LENGTH = 32

BASE_URL_TEMPLATE = "{protocol}://{host}:{port}/fastapi"
BROWSER_URL_TEMPLATE = "{protocol}://{host}:{port}/steel-api/{token}"
FRONT_BROWSER_WS_TEMPLATE = "ws://{host}:{port}/steel-api/{token}/v1/sessions/cast"
CLIENT_BROWSER_WS_TEMPLATE = (
    "ws://{host}:{port}/steel-api/{token}/&sessionId=123e4567-e89b-12d3-a456-426614174000"
)
ARTIFACTS_SIO_TEMPLATE = "{protocol}://{host}:{port}/v1"

CONTAINER_STATUS_RUNNING = "running"
CONTAINER_STATUS_NOT_FOUND = "not_found"
CONTAINER_STATUS_UNKNOWN = "unknown"


class SandboxErrorCodes:
    """Canonical error codes for sandbox service operations."""

    # Backend error codes
    BACKEND_UNREACHABLE = "BACKEND::UNREACHABLE"
    IMAGE_UNAVAILABLE = "BACKEND::IMAGE_UNAVAILABLE"
    CONTAINER_CREATION_FAILED = "BACKEND::CONTAINER_CREATION_FAILED"
    CONTAINER_START_FAILED = "BACKEND::CONTAINER_START_FAILED"
    CONTAINER_STOP_FAILED = "BACKEND::CONTAINER_STOP_FAILED"
    CONTAINER_QUERY_FAILED = "BACKEND::CONTAINER_QUERY_FAILED"
    SANDBOX_DELETE_FAILED = "BACKEND::SANDBOX_DELETE_FAILED"
    PORT_ALLOCATION_FAILED = "BACKEND::PORT_ALLOCATION_FAILED"
    CLOUD_NOT_CONFIGURED = "BACKEND::CLOUD_NOT_CONFIGURED"

    # Kubernetes runtime error codes
    K8S_POD_READY_TIMEOUT = "KUBERNETES::POD_READY_TIMEOUT"
    K8S_API_ERROR = "KUBERNETES::API_ERROR"

    # Manager error codes
    IDENTITY_NOT_FOUND = "SANDBOX::IDENTITY_NOT_FOUND"
    SHARED_STORE_UNAVAILABLE = "SANDBOX::SHARED_STORE_UNAVAILABLE"
    REMOTE_REQUEST_FAILED = "SANDBOX::REMOTE_REQUEST_FAILED"

    # Common error codes
    UNKNOWN_ERROR = "SANDBOX::UNKNOWN_ERROR"
    INVALID_PARAMETER = "SANDBOX::INVALID_PARAMETER"


__all__ = [
    "SANDBOX_SESSION_LABEL",
    "SANDBOX_TYPE_LABEL",
    "SECRET_TOKEN_ENV",
    "SESSION_HEADER",
    "SandboxErrorCodes",
]
