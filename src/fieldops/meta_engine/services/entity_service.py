from __future__ import annotations

"""
Data-access side of the pipeline.

``EntityStore`` is the seam the pipeline hands off to. ``SqlEntityStore`` runs
the built fragments through a SQLAlchemy session, adds the RLS predicate itself
and marks every result with ``rls_applied``. A ``deny_all`` policy returns an
empty result without issuing any statement.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from fieldops.meta_engine.models.entity import EntityMetadata
from fieldops.meta_engine.schemas.access import RLSPolicy
from fieldops.meta_engine.services.query_service import (
    BuiltQuery,
    combine_params,
    combine_where_clauses,
)
from fieldops.security.rls.filters import RLSFilter, build_rls_filter

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\$(\d+)")

# Policies whose owner column is forced on create.
_OWNER_COLUMN_ON_CREATE = {
    RLSPolicy.own_work_orders_only: "customer_field",
    RLSPolicy.own_invoices_only: "customer_field",
    RLSPolicy.own_contracts_only: "customer_field",
    RLSPolicy.assigned_work_orders_only: "assigned_field",
}


@dataclass(frozen=True)
class DataAccessRequest:
    metadata: EntityMetadata
    actor_id: Any
    rls_policy: Optional[RLSPolicy]
    query: Optional[BuiltQuery] = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    record_id: Any = None
    limit: int = 50
    offset: int = 0

    @property
    def resource(self) -> str:
        return self.metadata.rls_resource


@dataclass(frozen=True)
class DataAccessResult:
    rows: List[Dict[str, Any]]
    rls_applied: bool
    total: Optional[int] = None

    @property
    def first(self) -> Optional[Dict[str, Any]]:
        return self.rows[0] if self.rows else None


class EntityStore(Protocol):
    def find_all(self, request: DataAccessRequest) -> DataAccessResult: ...

    def find_by_id(self, request: DataAccessRequest) -> DataAccessResult: ...

    def create(self, request: DataAccessRequest) -> DataAccessResult: ...

    def update(self, request: DataAccessRequest) -> DataAccessResult: ...

    def delete(self, request: DataAccessRequest) -> DataAccessResult: ...


def to_bind_params(sql: str, params: Any) -> Tuple[str, Dict[str, Any]]:
    """Rewrite ``$n`` placeholders to SQLAlchemy bind names ``:pn``."""
    values = list(params or ())
    bound: Dict[str, Any] = {}

    def _replace(match: "re.Match[str]") -> str:
        index = int(match.group(1))
        if index < 1 or index > len(values):
            raise IndexError(f"Placeholder ${index} has no parameter ({len(values)} given)")
        bound[f"p{index}"] = values[index - 1]
        return f":p{index}"

    return _PLACEHOLDER.sub(_replace, sql), bound


class SqlEntityStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _rls(self, request: DataAccessRequest, param_offset: int) -> RLSFilter:
        return build_rls_filter(
            request.rls_policy, request.actor_id, request.metadata, param_offset
        )

    def _denied(self, request: DataAccessRequest, action: str) -> DataAccessResult:
        logger.info(
            "RLS %s short-circuit for %s on %s",
            request.rls_policy.value if request.rls_policy else None,
            action,
            request.resource,
        )
        return DataAccessResult(rows=[], rls_applied=True, total=0)

    def _execute(self, sql: str, params: Any) -> List[Dict[str, Any]]:
        statement, bound = to_bind_params(sql, params)
        result = self.session.execute(text(statement), bound)
        return [dict(row) for row in result.mappings().all()]

    def find_all(self, request: DataAccessRequest) -> DataAccessResult:
        query = request.query or BuiltQuery(None, (), f"{request.metadata.primary_key} ASC", 0)
        rls = self._rls(request, query.param_offset)
        if rls.denies_all:
            return self._denied(request, "list")

        where = combine_where_clauses([query.where_clause, rls.clause])
        params = combine_params(query.params, rls.params)
        table = request.metadata.table_name
        where_sql = f" WHERE {where}" if where else ""

        count_sql = f"SELECT COUNT(*) AS total FROM {table}{where_sql}"
        statement, bound = to_bind_params(count_sql, params)
        total = self.session.execute(text(statement), bound).scalar_one()

        list_sql = (
            f"SELECT * FROM {table}{where_sql} ORDER BY {query.order_by}"
            f" LIMIT {int(request.limit)} OFFSET {int(request.offset)}"
        )
        rows = self._execute(list_sql, params)
        return DataAccessResult(rows=rows, rls_applied=rls.applied, total=int(total))

    def find_by_id(self, request: DataAccessRequest) -> DataAccessResult:
        pk = request.metadata.primary_key
        rls = self._rls(request, 1)
        if rls.denies_all:
            return self._denied(request, "get")
        where = combine_where_clauses([f"{pk} = $1", rls.clause])
        rows = self._execute(
            f"SELECT * FROM {request.metadata.table_name} WHERE {where}",
            combine_params([request.record_id], rls.params),
        )
        return DataAccessResult(rows=rows[:1], rls_applied=rls.applied)

    def create(self, request: DataAccessRequest) -> DataAccessResult:
        rls = self._rls(request, 0)
        if rls.denies_all:
            return self._denied(request, "create")

        values = dict(request.payload)
        owner_attr = _OWNER_COLUMN_ON_CREATE.get(request.rls_policy)
        if owner_attr is not None:
            column = getattr(request.metadata.rls_filter_config, owner_attr)
            current = values.get(column)
            if current is not None and str(current) != str(request.actor_id):
                logger.info(
                    "Create on %s refused: %s=%r does not belong to actor %r",
                    request.resource,
                    column,
                    current,
                    request.actor_id,
                )
                return DataAccessResult(rows=[], rls_applied=True)
            values[column] = request.actor_id

        columns = list(values)
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        rows = self._execute(
            f"INSERT INTO {request.metadata.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING *",
            [values[c] for c in columns],
        )
        return DataAccessResult(rows=rows, rls_applied=rls.applied)

    def update(self, request: DataAccessRequest) -> DataAccessResult:
        meta = request.metadata
        columns = list(request.payload)
        assignments = [f"{column} = ${i}" for i, column in enumerate(columns, start=1)]
        if "updated_at" in meta.fields and "updated_at" not in request.payload:
            assignments.append("updated_at = CURRENT_TIMESTAMP")
        id_index = len(columns) + 1

        rls = self._rls(request, id_index)
        if rls.denies_all:
            return self._denied(request, "update")

        where = combine_where_clauses([f"{meta.primary_key} = ${id_index}", rls.clause])
        rows = self._execute(
            f"UPDATE {meta.table_name} SET {', '.join(assignments)} WHERE {where} RETURNING *",
            combine_params([request.payload[c] for c in columns], [request.record_id], rls.params),
        )
        return DataAccessResult(rows=rows, rls_applied=rls.applied)

    def delete(self, request: DataAccessRequest) -> DataAccessResult:
        meta = request.metadata
        rls = self._rls(request, 1)
        if rls.denies_all:
            return self._denied(request, "delete")
        where = combine_where_clauses([f"{meta.primary_key} = $1", rls.clause])
        rows = self._execute(
            f"DELETE FROM {meta.table_name} WHERE {where} RETURNING {meta.primary_key}",
            combine_params([request.record_id], rls.params),
        )
        return DataAccessResult(rows=rows, rls_applied=rls.applied)
