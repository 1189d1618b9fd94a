from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.requests import Request

from fieldops import __version__
from fieldops.api.middleware.actor import ActorHeaderMiddleware
from fieldops.api.routers.entities import entity_router
from fieldops.api.routers.health import router as health_router
from fieldops.exceptions.handlers import ConfigurationError, FieldOpsException, RLSBypassError
from fieldops.meta_engine.bootstrap import get_access_control

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="FieldOps Access", version=__version__)
    app.add_middleware(ActorHeaderMiddleware)
    # health before the catch-all entity routes
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(entity_router, prefix="/api/v1")

    @app.exception_handler(FieldOpsException)
    async def _fieldops_error(_request: Request, exc: FieldOpsException) -> JSONResponse:
        if isinstance(exc, (ConfigurationError, RLSBypassError)):
            logger.critical("%s: %s", exc.code, exc.message)
            body = {
                "code": exc.code,
                "message": exc.user_message,
                "user_message": exc.user_message,
                "details": {},
            }
        else:
            body = exc.to_dict()
        return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": body})

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        get_access_control()

    return app


app = create_app()
