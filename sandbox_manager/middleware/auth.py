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

"""Bearer key authentication for the lifecycle API."""

import logging
import secrets

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sandbox_manager.config import AppConfig

logger = logging.getLogger(__name__)

AUTH_ERROR_CODE = "AUTH::UNAUTHORIZED"
EXEMPT_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})


class AuthMiddleware(BaseHTTPMiddleware):
    """Rejects requests without ``Authorization: Bearer <server.api_key>`` when a key is configured."""

    def __init__(self, app, config: AppConfig):
        super().__init__(app)
        self.api_key = config.server.api_key

    async def dispatch(self, request: Request, call_next):
        if not self.api_key or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip().encode(), self.api_key.encode()):
            logger.warning("Rejected unauthenticated request to %s", request.url.path)
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"code": AUTH_ERROR_CODE, "message": "Missing or invalid bearer token."},
            )
        return await call_next(request)
