from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.middleware import UsageMeteringMiddleware
from .api.router import admin_router, router
from .config import Settings, settings as default_settings
from .errors import InkEconomyError
from .services.container import InkServices


logger = logging.getLogger(__name__)


def create_app(
    services: Optional[InkServices] = None,
    app_settings: Optional[Settings] = None,
    metered_prefix: Optional[str] = None,
) -> FastAPI:
    """
    Build the ink API. `metered_prefix` mounts usage metering over the
    inference routes living under that prefix.
    """
    app_settings = app_settings or (services.settings if services else default_settings)
    logging.basicConfig(level=app_settings.LOG_LEVEL.upper())

    services = services or InkServices(app_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await services.db.ensure_indexes()
        yield

    app = FastAPI(title="Ink economy", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(InkEconomyError)
    async def _ink_error_handler(request: Request, exc: InkEconomyError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "code": exc.code, "error": exc.message},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "code": exc.code, "details": exc.details},
        )

    app.include_router(router)
    app.include_router(admin_router)

    if metered_prefix:
        app.add_middleware(UsageMeteringMiddleware, services=services, path_prefix=metered_prefix)

    return app


def main() -> None:
    import uvicorn

    uvicorn.run("ink_economy.app:create_app", factory=True, host="0.0.0.0", port=8000)
