from __future__ import annotations

from typing import Generator

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session
from starlette.requests import Request

from fieldops.database import get_db
from fieldops.meta_engine.bootstrap import AccessControl, get_access_control
from fieldops.meta_engine.services.access_pipeline import Actor
from fieldops.meta_engine.services.entity_service import SqlEntityStore


def get_current_actor(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if not isinstance(actor, Actor):
        raise HTTPException(status_code=401, detail="Not authenticated")
    return actor


def get_access() -> AccessControl:
    return get_access_control()


def get_entity_store(db: Session = Depends(get_db)) -> Generator[SqlEntityStore, None, None]:
    yield SqlEntityStore(db)
