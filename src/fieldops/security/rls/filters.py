from __future__ import annotations

"""
Translate a resolved RLS policy into a WHERE fragment for the data-access layer.

Placeholders continue from ``param_offset`` so the fragment can be appended
after search/filter predicates.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from fieldops.meta_engine.models.entity import EntityMetadata
from fieldops.meta_engine.schemas.access import RLSPolicy

logger = logging.getLogger(__name__)

DENY_ALL_CLAUSE = "1=0"


@dataclass(frozen=True)
class RLSFilter:
    clause: Optional[str]
    params: Tuple[Any, ...]
    param_offset: int
    applied: bool
    denies_all: bool = False
    policy: Optional[str] = None


def _column(name: str, table_prefix: Optional[str]) -> str:
    return f"{table_prefix}.{name}" if table_prefix else name


def _deny(policy: Optional[str], param_offset: int) -> RLSFilter:
    return RLSFilter(
        DENY_ALL_CLAUSE, (), param_offset, applied=True, denies_all=True, policy=policy
    )


def build_rls_filter(
    policy: Union[RLSPolicy, str, None],
    actor_id: Any,
    metadata: EntityMetadata,
    param_offset: int = 0,
    *,
    table_prefix: Optional[str] = None,
) -> RLSFilter:
    if policy is None:
        return RLSFilter(None, (), param_offset, applied=False)

    try:
        resolved = RLSPolicy(policy)
    except ValueError:
        logger.warning(
            "Unknown RLS policy %r on %s; denying all rows", policy, metadata.entity_name
        )
        return _deny(str(policy), param_offset)

    if resolved in (RLSPolicy.all_records, RLSPolicy.public_resource):
        return RLSFilter(None, (), param_offset, applied=True, policy=resolved.value)
    if resolved is RLSPolicy.deny_all:
        return _deny(resolved.value, param_offset)
    if resolved is RLSPolicy.parent_entity_access:
        logger.warning(
            "parent_entity_access on %s has no parent scope here; denying all rows",
            metadata.entity_name,
        )
        return _deny(resolved.value, param_offset)

    cfg = metadata.rls_filter_config
    if resolved is RLSPolicy.own_record_only:
        column = cfg.own_record_field
    elif resolved is RLSPolicy.assigned_work_orders_only:
        column = cfg.assigned_field
    else:
        # own_work_orders_only / own_invoices_only / own_contracts_only
        column = cfg.customer_field

    if actor_id is None:
        logger.warning(
            "RLS policy %s on %s needs an actor id; denying all rows",
            resolved.value,
            metadata.entity_name,
        )
        return _deny(resolved.value, param_offset)

    offset = param_offset + 1
    return RLSFilter(
        f"{_column(column, table_prefix)} = ${offset}",
        (actor_id,),
        offset,
        applied=True,
        policy=resolved.value,
    )
