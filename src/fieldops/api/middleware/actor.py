from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from fieldops.config import get_settings
from fieldops.meta_engine.services.access_pipeline import Actor


class ActorHeaderMiddleware(BaseHTTPMiddleware):
    """
    Dev/gateway mode: build the actor from trusted headers.

    Does nothing unless TRUST_ACTOR_HEADERS is on, and never overrides an actor
    an upstream auth middleware already attached.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        settings = get_settings()
        if settings.TRUST_ACTOR_HEADERS and getattr(request.state, "actor", None) is None:
            role = request.headers.get(settings.ACTOR_ROLE_HEADER)
            actor_id = request.headers.get(settings.ACTOR_ID_HEADER)
            if role:
                request.state.actor = Actor(id=actor_id, role=role.strip().lower())
        return await call_next(request)
