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

"""Redis connection handling for the shared pool and identity mapping."""

import logging
from contextlib import contextmanager

import redis
from fastapi import HTTPException, status

from sandbox_manager.config import RedisConfig
from sandbox_manager.services.constants import SandboxErrorCodes

logger = logging.getLogger(__name__)


def create_redis_client(config: RedisConfig) -> redis.Redis:
    """Build a client and verify the server answers; raises when it does not."""
    client = redis.Redis(
        host=config.host,
        port=config.port,
        db=config.db,
        username=config.username,
        password=config.password,
        decode_responses=True,
    )
    with shared_store_operation("ping"):
        client.ping()
    logger.info("Connected to redis at %s:%s/%s", config.host, config.port, config.db)
    return client


@contextmanager
def shared_store_operation(action: str):
    """Translate redis failures into a SHARED_STORE_UNAVAILABLE error for the caller."""
    try:
        yield
    except redis.RedisError as exc:
        logger.error("Shared store %s failed: %s", action, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "code": SandboxErrorCodes.SHARED_STORE_UNAVAILABLE,
                "message": f"Shared store {action} failed: {str(exc)}",
            },
        ) from exc


def is_shared_store_error(exc: HTTPException) -> bool:
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    return detail.get("code") == SandboxErrorCodes.SHARED_STORE_UNAVAILABLE
