from __future__ import annotations

"""
Request orchestration.

Stages run in a fixed order: extract entity -> check permission -> resolve RLS
policy -> validate payload / build query -> hand off to the entity store ->
check that RLS was applied. Each stage re-checks what it depends on instead of
trusting the previous one, and every stage returns a new ``RequestContext``.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional

from fieldops.exceptions.handlers import (
    AuthorizationDenied,
    ConfigurationError,
    EntityNotFound,
    FieldOpsException,
    RecordNotFound,
    RLSBypassError,
    ValidationError,
)
from fieldops.meta_engine.models.entity import EntityMetadata
from fieldops.meta_engine.registry import EntityRegistry
from fieldops.meta_engine.schemas.access import Operation, QueryOptions, RLSPolicy
from fieldops.meta_engine.services.entity_service import (
    DataAccessRequest,
    DataAccessResult,
    EntityStore,
)
from fieldops.meta_engine.services.query_service import (
    BuiltQuery,
    build_query,
    parse_query_params,
)
from fieldops.meta_engine.services.validator import FieldAccessSchemaBuilder
from fieldops.security.rbac.permissions import PermissionDecision, PermissionMatrix
from fieldops.security.rls.policies import RLSPolicyResolver

logger = logging.getLogger(__name__)

# Recovered into a structured outcome; anything else propagates.
RECOVERABLE_ERRORS = (AuthorizationDenied, ValidationError, EntityNotFound, RecordNotFound)


@dataclass(frozen=True)
class Actor:
    """Authenticated actor as handed over by the auth layer."""

    id: Any
    role: Optional[str]


@dataclass(frozen=True)
class RequestContext:
    entity_name: Optional[str] = None
    metadata: Optional[EntityMetadata] = None
    rls_resource: Optional[str] = None
    operation: Optional[Operation] = None
    actor: Optional[Actor] = None
    permission: Optional[PermissionDecision] = None
    rls_policy: Optional[RLSPolicy] = None
    payload: Optional[Mapping[str, Any]] = None
    query: Optional[BuiltQuery] = None
    record_id: Any = None


@dataclass(frozen=True)
class PipelineOutcome:
    ok: bool
    status_code: int
    context: RequestContext
    data: Any = None
    result: Optional[DataAccessResult] = None
    error: Optional[FieldOpsException] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "data": self.data}
        return {"ok": False, "error": self.error.to_dict() if self.error else None}

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def validate_rls_applied(context: RequestContext, result: Optional[DataAccessResult]) -> None:
    """Fail loudly when a resolved RLS policy never reached the data-access layer."""
    if context.rls_resource is None or context.rls_policy is None:
        return
    if result is None or not result.rls_applied:
        logger.critical(
            "RLS bypass: policy %s on %s was resolved but the result is not marked applied",
            context.rls_policy.value,
            context.rls_resource,
        )
        raise RLSBypassError(context.rls_resource, context.rls_policy.value)


class AccessPipeline:
    def __init__(
        self,
        registry: EntityRegistry,
        matrix: PermissionMatrix,
        rls: RLSPolicyResolver,
        schemas: FieldAccessSchemaBuilder,
        *,
        default_page_size: int = 50,
        max_page_size: int = 200,
    ) -> None:
        self.registry = registry
        self.matrix = matrix
        self.rls = rls
        self.schemas = schemas
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def extract_entity(self, url_entity: str) -> RequestContext:
        """Resolve a route segment; unknown segments are a client 404."""
        entity_name = self.registry.normalize_entity_name(url_entity)
        if entity_name is None:
            raise EntityNotFound(str(url_entity))
        return self.attach_entity(entity_name)

    def attach_entity(self, entity_name: str) -> RequestContext:
        """Bind a fixed entity; an unknown name is a configuration defect."""
        metadata = self.registry.get(entity_name)
        return RequestContext(
            entity_name=metadata.entity_name,
            metadata=metadata,
            rls_resource=metadata.rls_resource,
        )

    @staticmethod
    def _require_entity(context: RequestContext, stage: str) -> EntityMetadata:
        if context.metadata is None or not context.rls_resource:
            raise ConfigurationError(
                f"{stage}: no entity metadata attached to the request", config_key="route"
            )
        return context.metadata

    def check_permission(
        self,
        context: RequestContext,
        actor: Optional[Actor],
        operation: Operation,
    ) -> RequestContext:
        self._require_entity(context, "check_permission")
        resource = context.rls_resource
        op = Operation(operation)
        if self.matrix.entry(resource, op) is None:
            raise ConfigurationError(
                f"No permission matrix entry for {resource}.{op.value}", config_key=resource
            )
        if actor is None or not actor.role:
            raise AuthorizationDenied(op.value, resource, reason="no_role")

        decision = self.matrix.explain(actor.role, resource, op)
        if not decision.allowed:
            logger.info(
                "Denied %s %s for role %s (%s)", op.value, resource, actor.role, decision.reason
            )
            raise AuthorizationDenied(
                op.value,
                resource,
                role=actor.role,
                minimum_role=decision.minimum_role,
                reason=decision.reason,
            )
        return replace(context, operation=op, actor=actor, permission=decision)

    def resolve_rls(self, context: RequestContext) -> RequestContext:
        self._require_entity(context, "resolve_rls")
        if context.permission is None or not context.permission.allowed or context.actor is None:
            raise ConfigurationError(
                "resolve_rls: permission stage did not run", config_key="pipeline"
            )
        policy = self.rls.get_policy(context.actor.role, context.rls_resource)
        if policy is None:
            raise ConfigurationError(
                f"No RLS policy for role {context.actor.role} on {context.rls_resource}",
                config_key="rls_policy",
            )
        return replace(context, rls_policy=policy)

    def _require_rls(self, context: RequestContext, stage: str) -> EntityMetadata:
        metadata = self._require_entity(context, stage)
        if context.actor is None or context.operation is None or context.rls_policy is None:
            raise ConfigurationError(
                f"{stage}: RLS policy not resolved", config_key="pipeline"
            )
        return metadata

    def validate_payload(self, context: RequestContext, body: Any) -> RequestContext:
        metadata = self._require_rls(context, "validate_payload")
        validator = self.schemas.build_schema(
            metadata.entity_name, context.operation, metadata, context.actor.role
        )
        return replace(context, payload=validator.validate(body))

    def build_list_query(
        self, context: RequestContext, options: QueryOptions
    ) -> RequestContext:
        metadata = self._require_rls(context, "build_list_query")
        return replace(context, query=build_query(options, metadata))

    def hand_off(
        self,
        context: RequestContext,
        store: EntityStore,
        *,
        limit: int = 0,
        offset: int = 0,
    ) -> DataAccessResult:
        metadata = self._require_rls(context, "hand_off")
        request = DataAccessRequest(
            metadata=metadata,
            actor_id=context.actor.id,
            rls_policy=context.rls_policy,
            query=context.query,
            payload=context.payload or {},
            record_id=context.record_id,
            limit=limit or self.default_page_size,
            offset=offset,
        )
        if context.operation is Operation.create:
            result = store.create(request)
        elif context.operation is Operation.update:
            result = store.update(request)
        elif context.operation is Operation.delete:
            result = store.delete(request)
        elif context.record_id is not None:
            result = store.find_by_id(request)
        else:
            result = store.find_all(request)
        validate_rls_applied(context, result)
        return result

    # ------------------------------------------------------------------
    # Request entry points
    # ------------------------------------------------------------------

    def _run(self, build: Callable[[], PipelineOutcome]) -> PipelineOutcome:
        try:
            return build()
        except RECOVERABLE_ERRORS as exc:
            return PipelineOutcome(
                ok=False,
                status_code=exc.status_code,
                context=RequestContext(),
                error=exc,
            )

    def _authorize(
        self, url_entity: str, actor: Optional[Actor], op: Operation
    ) -> RequestContext:
        context = self.extract_entity(url_entity)
        context = self.check_permission(context, actor, op)
        return self.resolve_rls(context)

    def _readable(self, context: RequestContext, rows: Any) -> Any:
        return self.schemas.filter_readable(rows, context.metadata, context.actor.role)

    def list_records(
        self,
        url_entity: str,
        actor: Optional[Actor],
        store: EntityStore,
        query_params: Optional[Mapping[str, Any]] = None,
    ) -> PipelineOutcome:
        def build() -> PipelineOutcome:
            context = self._authorize(url_entity, actor, Operation.read)
            options = parse_query_params(query_params or {})
            context = self.build_list_query(context, options)
            limit, offset = options.page_window(
                default_limit=self.default_page_size, max_limit=self.max_page_size
            )
            result = self.hand_off(context, store, limit=limit, offset=offset)
            data = {
                "items": self._readable(context, result.rows),
                "total": result.total if result.total is not None else len(result.rows),
                "page": options.page,
                "limit": limit,
            }
            return PipelineOutcome(True, 200, context, data=data, result=result)

        return self._run(build)

    def get_record(
        self, url_entity: str, actor: Optional[Actor], store: EntityStore, record_id: Any
    ) -> PipelineOutcome:
        def build() -> PipelineOutcome:
            context = self._authorize(url_entity, actor, Operation.read)
            context = replace(context, record_id=record_id)
            result = self.hand_off(context, store)
            if result.first is None:
                raise RecordNotFound(context.entity_name, record_id)
            data = self._readable(context, result.first)
            return PipelineOutcome(True, 200, context, data=data, result=result)

        return self._run(build)

    def create_record(
        self, url_entity: str, actor: Optional[Actor], store: EntityStore, body: Any
    ) -> PipelineOutcome:
        def build() -> PipelineOutcome:
            context = self._authorize(url_entity, actor, Operation.create)
            context = self.validate_payload(context, body)
            result = self.hand_off(context, store)
            if result.first is None:
                raise AuthorizationDenied(
                    Operation.create.value,
                    context.rls_resource,
                    role=actor.role if actor else None,
                    reason="rls_denied",
                )
            data = self._readable(context, result.first)
            return PipelineOutcome(True, 201, context, data=data, result=result)

        return self._run(build)

    def update_record(
        self,
        url_entity: str,
        actor: Optional[Actor],
        store: EntityStore,
        record_id: Any,
        body: Any,
    ) -> PipelineOutcome:
        def build() -> PipelineOutcome:
            context = self._authorize(url_entity, actor, Operation.update)
            context = self.validate_payload(replace(context, record_id=record_id), body)
            result = self.hand_off(context, store)
            if result.first is None:
                raise RecordNotFound(context.entity_name, record_id)
            data = self._readable(context, result.first)
            return PipelineOutcome(True, 200, context, data=data, result=result)

        return self._run(build)

    def delete_record(
        self, url_entity: str, actor: Optional[Actor], store: EntityStore, record_id: Any
    ) -> PipelineOutcome:
        def build() -> PipelineOutcome:
            context = self._authorize(url_entity, actor, Operation.delete)
            context = replace(context, record_id=record_id)
            result = self.hand_off(context, store)
            if result.first is None:
                raise RecordNotFound(context.entity_name, record_id)
            data = {"id": record_id, "deleted": True}
            return PipelineOutcome(True, 200, context, data=data, result=result)

        return self._run(build)
