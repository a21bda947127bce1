# paygate/main.py
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from paygate.providers.validate import validate_gateway_startup
from paygate.routes.metrics import router as metrics_router
from paygate.routes.payments import router as payments_router
from paygate.routes.webhooks import router as webhooks_router
from paygate.settings import Settings, settings as default_settings

logger = logging.getLogger("paygate")


def create_app(s: Settings | None = None) -> FastAPI:
    s = s if s is not None else default_settings
    validate_gateway_startup(s)

    app = FastAPI(title="Paygate API", version="1.0.0")
    app.include_router(payments_router)
    app.include_router(webhooks_router)
    app.include_router(metrics_router)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled error path=%s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app
