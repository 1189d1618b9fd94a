from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.requests import Request

from fieldops.api.dependencies.auth import get_access, get_current_actor, get_entity_store
from fieldops.meta_engine.bootstrap import AccessControl
from fieldops.meta_engine.services.access_pipeline import Actor, PipelineOutcome
from fieldops.meta_engine.services.entity_service import SqlEntityStore

entity_router = APIRouter(tags=["Entities"])


def _respond(outcome: PipelineOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status_code, content=jsonable_encoder(outcome.to_dict()))


def _commit(store: Any, outcome: PipelineOutcome) -> None:
    session = getattr(store, "session", None)
    if session is None:
        return
    if outcome.ok:
        session.commit()
    else:
        session.rollback()


@entity_router.get("/{entity}")
def list_records(
    entity: str,
    request: Request,
    actor: Actor = Depends(get_current_actor),
    access: AccessControl = Depends(get_access),
    store: SqlEntityStore = Depends(get_entity_store),
) -> JSONResponse:
    params = dict(request.query_params)
    return _respond(access.pipeline.list_records(entity, actor, store, params))


@entity_router.get("/{entity}/{record_id}")
def get_record(
    entity: str,
    record_id: int,
    actor: Actor = Depends(get_current_actor),
    access: AccessControl = Depends(get_access),
    store: SqlEntityStore = Depends(get_entity_store),
) -> JSONResponse:
    return _respond(access.pipeline.get_record(entity, actor, store, record_id))


@entity_router.post("/{entity}")
def create_record(
    entity: str,
    body: Any = Body(default=None),
    actor: Actor = Depends(get_current_actor),
    access: AccessControl = Depends(get_access),
    store: SqlEntityStore = Depends(get_entity_store),
) -> JSONResponse:
    outcome = access.pipeline.create_record(entity, actor, store, body)
    _commit(store, outcome)
    return _respond(outcome)


@entity_router.patch("/{entity}/{record_id}")
def update_record(
    entity: str,
    record_id: int,
    body: Any = Body(default=None),
    actor: Actor = Depends(get_current_actor),
    access: AccessControl = Depends(get_access),
    store: SqlEntityStore = Depends(get_entity_store),
) -> JSONResponse:
    outcome = access.pipeline.update_record(entity, actor, store, record_id, body)
    _commit(store, outcome)
    return _respond(outcome)


@entity_router.delete("/{entity}/{record_id}")
def delete_record(
    entity: str,
    record_id: int,
    actor: Actor = Depends(get_current_actor),
    access: AccessControl = Depends(get_access),
    store: SqlEntityStore = Depends(get_entity_store),
) -> JSONResponse:
    outcome = access.pipeline.delete_record(entity, actor, store, record_id)
    _commit(store, outcome)
    return _respond(outcome)
