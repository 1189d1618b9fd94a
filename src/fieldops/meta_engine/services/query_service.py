"""
Query fragment builder.

Turns a caller's search/filter/sort request into parameterised SQL fragments
using ``$n`` placeholders. Only whitelisted fields from the entity metadata can
reach a fragment; anything else is dropped silently. The running placeholder
offset is returned from every builder and passed into the next one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from fieldops.meta_engine.models.entity import DefaultSort, EntityMetadata
from fieldops.meta_engine.schemas.access import QueryOptions, SortOrder

COMPARISON_OPERATORS: Mapping[str, str] = MappingProxyType(
    {
        "gt": ">",
        "gte": ">=",
        "lt": "<",
        "lte": "<=",
        "not": "!=",
    }
)
IN_OPERATOR = "in"
EQ_OPERATOR = "eq"

_SUFFIX_KEY = re.compile(r"^(?P<field>[A-Za-z_][A-Za-z0-9_]*)\[(?P<op>[A-Za-z]+)\]$")

_RESERVED_PARAMS = {
    "search": "search",
    "q": "search",
    "sortBy": "sort_by",
    "sort_by": "sort_by",
    "sortOrder": "sort_order",
    "sort_order": "sort_order",
    "page": "page",
    "limit": "limit",
    "includeInactive": "include_inactive",
    "include_inactive": "include_inactive",
}


@dataclass(frozen=True)
class Clause:
    """A WHERE fragment, its parameters and the placeholder offset after it."""

    clause: Optional[str]
    params: Tuple[Any, ...]
    param_offset: int


@dataclass(frozen=True)
class BuiltQuery:
    where_clause: Optional[str]
    params: Tuple[Any, ...]
    order_by: str
    param_offset: int


def _column(field: str, table_prefix: Optional[str]) -> str:
    return f"{table_prefix}.{field}" if table_prefix else field


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set, frozenset)):
        return [item for item in value if item is not None]
    return [value]


def build_search_clause(
    term: Optional[str],
    searchable_fields: Sequence[str],
    *,
    param_offset: int = 0,
    table_prefix: Optional[str] = None,
) -> Clause:
    """
    Case-insensitive ``ILIKE`` across every searchable field, OR-combined.

    The term is bound once per field. Empty terms or an empty whitelist yield
    no clause.
    """
    if not isinstance(term, str) or not searchable_fields:
        return Clause(None, (), param_offset)
    trimmed = term.strip()
    if not trimmed:
        return Clause(None, (), param_offset)

    pattern = f"%{trimmed}%"
    parts = [
        f"{_column(field, table_prefix)} ILIKE ${param_offset + idx}"
        for idx, field in enumerate(searchable_fields, start=1)
    ]
    return Clause(
        f"({' OR '.join(parts)})",
        (pattern,) * len(searchable_fields),
        param_offset + len(searchable_fields),
    )


def build_filter_clause(
    filters: Optional[Mapping[str, Any]],
    filterable_fields: Sequence[str],
    param_offset: int = 0,
    *,
    table_prefix: Optional[str] = None,
) -> Clause:
    """
    AND-joined predicates for whitelisted filter keys.

    Values may be scalars (exact match), lists (``IN``) or operator maps such as
    ``{"gt": 5}`` (``eq`` is an explicit exact match). ``None`` renders ``IS NULL`` (``IS NOT NULL`` under ``not``)
    and consumes no placeholder.
    """
    allowed = set(filterable_fields)
    conditions: List[str] = []
    params: List[Any] = []
    offset = param_offset

    for field, value in (filters or {}).items():
        if field not in allowed:
            continue
        column = _column(field, table_prefix)

        if isinstance(value, Mapping):
            operators = value.items()
        elif isinstance(value, (list, tuple, set, frozenset)):
            operators = [(IN_OPERATOR, value)]
        else:
            operators = [(None, value)]

        for op, operand in operators:
            op = op.lower() if isinstance(op, str) else op
            if op is None or op == EQ_OPERATOR:
                if operand is None:
                    conditions.append(f"{column} IS NULL")
                    continue
                offset += 1
                conditions.append(f"{column} = ${offset}")
                params.append(operand)
            elif op == IN_OPERATOR:
                values = _as_list(operand)
                if not values:
                    continue
                placeholders = ", ".join(f"${offset + i}" for i in range(1, len(values) + 1))
                conditions.append(f"{column} IN ({placeholders})")
                params.extend(values)
                offset += len(values)
            elif op in COMPARISON_OPERATORS:
                if operand is None:
                    if op == "not":
                        conditions.append(f"{column} IS NOT NULL")
                    continue
                offset += 1
                conditions.append(f"{column} {COMPARISON_OPERATORS[op]} ${offset}")
                params.append(operand)
            # unknown operators are dropped

    if not conditions:
        return Clause(None, (), param_offset)
    return Clause(" AND ".join(conditions), tuple(params), offset)


def _default_sort_parts(
    default_sort: Union[DefaultSort, Mapping[str, Any], None],
    sortable_fields: Sequence[str],
) -> Tuple[str, SortOrder]:
    if isinstance(default_sort, DefaultSort):
        field, order = default_sort.field, default_sort.order
    elif isinstance(default_sort, Mapping):
        field, order = default_sort.get("field"), default_sort.get("order")
    else:
        field, order = None, None
    if not field:
        field = sortable_fields[0] if sortable_fields else "id"
    return field, SortOrder.parse(order) or SortOrder.asc


def build_sort_clause(
    sort_by: Optional[str],
    sort_order: Optional[str],
    sortable_fields: Sequence[str],
    default_sort: Union[DefaultSort, Mapping[str, Any], None] = None,
    *,
    table_prefix: Optional[str] = None,
) -> str:
    """
    ``"<field> <ASC|DESC>"``.

    A field outside the whitelist discards the requested order as well: the
    default field and default order are used together. A whitelisted field keeps
    the requested order only when it is asc/desc, otherwise the default order.
    """
    default_field, default_order = _default_sort_parts(default_sort, sortable_fields)
    if sort_by not in sortable_fields:
        field, order = default_field, default_order
    else:
        field = sort_by
        order = SortOrder.parse(sort_order) or default_order
    return f"{_column(field, table_prefix)} {order.value}"


def combine_where_clauses(clauses: Iterable[Union[str, Clause, None]]) -> Optional[str]:
    parts: List[str] = []
    for item in clauses:
        text = item.clause if isinstance(item, Clause) else item
        if text and text.strip():
            parts.append(text)
    return " AND ".join(parts) if parts else None


def combine_params(*param_lists: Optional[Iterable[Any]]) -> List[Any]:
    combined: List[Any] = []
    for params in param_lists:
        if params:
            combined.extend(params)
    return combined


def normalize_filters(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Fold ``field[op]=value`` keys into ``{field: {op: value}}``."""
    filters: Dict[str, Any] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            continue
        match = _SUFFIX_KEY.match(key)
        if match is None:
            if isinstance(value, Mapping) and isinstance(filters.get(key), dict):
                filters[key].update(value)
            else:
                filters[key] = value
            continue
        field, op = match.group("field"), match.group("op").lower()
        existing = filters.get(field)
        if not isinstance(existing, dict):
            existing = {} if existing is None else {"eq": existing}
            filters[field] = existing
        existing[op] = value
    return filters


def parse_query_params(raw: Mapping[str, Any]) -> QueryOptions:
    """Split a flat query-string map into list options and filters."""
    options: Dict[str, Any] = {}
    rest: Dict[str, Any] = {}
    for key, value in raw.items():
        target = _RESERVED_PARAMS.get(key)
        if target is not None:
            options[target] = value
        else:
            rest[key] = value
    options["filters"] = normalize_filters(rest)
    return QueryOptions(**options)


def build_query(
    options: QueryOptions,
    metadata: EntityMetadata,
    *,
    param_offset: int = 0,
    table_prefix: Optional[str] = None,
) -> BuiltQuery:
    """
    Search, then filters, then the active-row restriction, then sort.

    The returned offset is where an RLS predicate should continue numbering.
    """
    search = build_search_clause(
        options.search,
        metadata.searchable_fields,
        param_offset=param_offset,
        table_prefix=table_prefix,
    )
    filters = build_filter_clause(
        options.filters,
        metadata.filterable_fields,
        search.param_offset,
        table_prefix=table_prefix,
    )
    clauses: List[Clause] = [search, filters]
    offset = filters.param_offset

    user_filtered_active = (
        "is_active" in options.filters and "is_active" in metadata.filterable_fields
    )
    if not options.include_inactive and not user_filtered_active and "is_active" in metadata.fields:
        active = build_filter_clause(
            {"is_active": True}, ["is_active"], offset, table_prefix=table_prefix
        )
        clauses.append(active)
        offset = active.param_offset

    order_by = build_sort_clause(
        options.sort_by,
        options.sort_order,
        metadata.sortable_fields,
        metadata.default_sort,
        table_prefix=table_prefix,
    )
    return BuiltQuery(
        where_clause=combine_where_clauses(clauses),
        params=tuple(combine_params(*(c.params for c in clauses))),
        order_by=order_by,
        param_offset=offset,
    )
