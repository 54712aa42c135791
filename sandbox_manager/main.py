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
FastAPI application entry point for the sandbox manager.

Logging is configured from the loaded configuration before any service module
is imported. The sandbox service is built and started in the application
lifespan, and every sandbox is released again on shutdown.
"""

import copy
import logging.config
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse
from uvicorn.config import LOGGING_CONFIG as UVICORN_LOGGING_CONFIG

from sandbox_manager import __version__
from sandbox_manager.config import load_config

LOG_FORMAT = "%(levelprefix)s %(asctime)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S%z"


def build_log_config(level: str) -> Dict[str, Any]:
    """uvicorn's dictConfig with timestamps, plus the sandbox_manager logger tree at ``level``."""
    log_config = copy.deepcopy(UVICORN_LOGGING_CONFIG)
    for formatter in ("default", "access"):
        log_config["formatters"][formatter]["fmt"] = LOG_FORMAT
        log_config["formatters"][formatter]["datefmt"] = LOG_DATE_FORMAT
    log_config["loggers"]["sandbox_manager"] = {
        "handlers": ["default"],
        "level": level.upper(),
        "propagate": False,
    }
    return log_config


app_config = load_config()
log_config = build_log_config(app_config.server.log_level)
logging.config.dictConfig(log_config)
logging.getLogger().setLevel(getattr(logging, app_config.server.log_level.upper(), logging.INFO))

from sandbox_manager.api.lifecycle import router  # noqa: E402
from sandbox_manager.factory import build_sandbox_service  # noqa: E402
from sandbox_manager.middleware.auth import AuthMiddleware  # noqa: E402

logger = logging.getLogger(__name__)

FALLBACK_ERROR_CODE = "SANDBOX::UNKNOWN_ERROR"
FALLBACK_ERROR_MESSAGE = "Unexpected sandbox manager error."


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = build_sandbox_service(app_config)
    service.start()
    app.state.sandbox_service = service
    try:
        yield
    finally:
        logger.info("Shutting down; releasing all sandboxes")
        try:
            service.cleanup_all_sandboxes()
        finally:
            service.close()


app = FastAPI(
    title="Sandbox Manager API",
    version=__version__,
    description="Provisions, tracks and tears down isolated execution containers for agents.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)
app.state.config = app_config
app.add_middleware(AuthMiddleware, config=app_config)

# Served unprefixed for proxy clients and under /v1.
app.include_router(router)
app.include_router(router, prefix="/v1")


def error_body(detail: Any) -> Dict[str, str]:
    """Reduce any HTTPException detail to ``{"code", "message"}``."""
    if not isinstance(detail, dict):
        return {"code": FALLBACK_ERROR_CODE, "message": str(detail or FALLBACK_ERROR_MESSAGE)}
    return {
        "code": detail.get("code") or FALLBACK_ERROR_CODE,
        "message": detail.get("message") or FALLBACK_ERROR_MESSAGE,
    }


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.detail), headers=exc.headers)


@app.get("/health")
async def health_check():
    """Liveness probe; exempt from authentication."""
    return {"status": "healthy"}


def run() -> None:
    import uvicorn

    uvicorn.run(
        "sandbox_manager.main:app",
        host=app_config.server.host,
        port=app_config.server.port,
        log_config=log_config,
    )


if __name__ == "__main__":
    run()
