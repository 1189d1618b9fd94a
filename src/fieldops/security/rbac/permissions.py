from __future__ import annotations

"""
Permission matrix: (resource, operation) -> minimum role priority.

The matrix is derived once from entity metadata plus a few resources that have
no entity behind them. A ``min_priority`` of 0 marks an operation that no role
may perform through the API. Lookups never raise for unknown roles or
resources; they answer "not allowed".
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from fieldops.exceptions.handlers import ConfigurationError
from fieldops.meta_engine.models.entity import NO_ACCESS, EntityMetadata
from fieldops.meta_engine.registry import EntityRegistry
from fieldops.meta_engine.schemas.access import CRUD_OPERATIONS, Operation, RLSPolicy
from fieldops.security.rbac.hierarchy import HierarchySnapshot, RoleHierarchy

logger = logging.getLogger(__name__)

OperationLike = Union[Operation, str]


@dataclass(frozen=True)
class SyntheticResource:
    """A permission resource without entity metadata (dashboards, admin screens)."""

    name: str
    permissions: Mapping[Operation, Optional[str]]
    rls_policy: Mapping[str, RLSPolicy] = field(default_factory=dict)


def _synthetic(
    name: str, permissions: Dict[str, Optional[str]], rls: Dict[str, str]
) -> SyntheticResource:
    return SyntheticResource(
        name=name,
        permissions=MappingProxyType({Operation(k): v for k, v in permissions.items()}),
        rls_policy=MappingProxyType({k: RLSPolicy(v) for k, v in rls.items()}),
    )


SYNTHETIC_RESOURCES: Tuple[SyntheticResource, ...] = (
    _synthetic(
        "audit_logs",
        {"create": None, "read": "manager", "update": None, "delete": None},
        {
            "customer": "deny_all",
            "technician": "deny_all",
            "dispatcher": "deny_all",
            "manager": "all_records",
            "admin": "all_records",
        },
    ),
    _synthetic(
        "dashboard",
        {"create": None, "read": "customer", "update": None, "delete": None},
        {
            "customer": "public_resource",
            "technician": "public_resource",
            "dispatcher": "public_resource",
            "manager": "public_resource",
            "admin": "public_resource",
        },
    ),
    _synthetic(
        "admin_panel",
        {"create": "admin", "read": "admin", "update": "admin", "delete": "admin"},
        {
            "customer": "deny_all",
            "technician": "deny_all",
            "dispatcher": "deny_all",
            "manager": "deny_all",
            "admin": "all_records",
        },
    ),
    _synthetic(
        "system_settings",
        {"create": None, "read": "manager", "update": "admin", "delete": None},
        {
            "customer": "deny_all",
            "technician": "deny_all",
            "dispatcher": "deny_all",
            "manager": "all_records",
            "admin": "all_records",
        },
    ),
)


@dataclass(frozen=True)
class PermissionEntry:
    resource: str
    operation: Operation
    min_priority: int
    min_role: Optional[str]

    @property
    def disabled(self) -> bool:
        return self.min_priority == 0


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    reason: str
    resource: str
    operation: Operation
    role: Optional[str] = None
    minimum_role: Optional[str] = None


def _entry_for_role(
    resource: str,
    operation: Operation,
    role_name: Optional[str],
    snapshot: HierarchySnapshot,
) -> PermissionEntry:
    if role_name is None or role_name == NO_ACCESS:
        return PermissionEntry(resource, operation, 0, None)
    role = snapshot.by_name.get(role_name.lower())
    if role is None:
        raise ConfigurationError(
            f"{resource}.{operation.value}: unknown role {role_name!r}",
            config_key=resource,
        )
    return PermissionEntry(resource, operation, role.priority, role.name)


def derive_minimum_role(
    meta: EntityMetadata, operation: Operation, snapshot: HierarchySnapshot
) -> Optional[str]:
    """
    Minimum role for ``operation`` on an entity.

    An explicit ``entity_permissions`` value wins (``None``/``"none"`` disables
    the operation). Otherwise the lowest role granted the operation on any field
    is used, falling back to the top role when no field grants it.
    """
    if operation in meta.entity_permissions:
        role = meta.entity_permissions[operation]
        return None if role in (None, NO_ACCESS) else role

    granted = []
    for access in meta.field_access.values():
        role_name = access.role_for(operation)
        if role_name != NO_ACCESS and role_name in snapshot.by_name:
            granted.append(snapshot.by_name[role_name])
    if not granted:
        return snapshot.roles[-1].name
    return min(granted, key=lambda r: r.priority).name


class PermissionMatrix:
    def __init__(self, entries: Iterable[PermissionEntry], snapshot: HierarchySnapshot) -> None:
        table: Dict[Tuple[str, Operation], PermissionEntry] = {}
        for entry in entries:
            key = (entry.resource, entry.operation)
            if key in table:
                raise ConfigurationError(
                    f"Duplicate permission entry for {entry.resource}.{entry.operation.value}",
                    config_key=entry.resource,
                )
            table[key] = entry
        self._entries: Mapping[Tuple[str, Operation], PermissionEntry] = MappingProxyType(table)
        self._resources = tuple(dict.fromkeys(resource for resource, _ in table))
        self._snapshot = snapshot

    @classmethod
    def derive(
        cls,
        registry: EntityRegistry,
        hierarchy: RoleHierarchy,
        synthetic: Iterable[SyntheticResource] = SYNTHETIC_RESOURCES,
    ) -> "PermissionMatrix":
        snapshot = hierarchy.snapshot
        entries: List[PermissionEntry] = []
        for meta in registry:
            for op in CRUD_OPERATIONS:
                role_name = derive_minimum_role(meta, op, snapshot)
                entries.append(_entry_for_role(meta.rls_resource, op, role_name, snapshot))
        for resource in synthetic:
            for op in CRUD_OPERATIONS:
                entries.append(
                    _entry_for_role(resource.name, op, resource.permissions.get(op), snapshot)
                )
        matrix = cls(entries, snapshot)
        logger.info(
            "Permission matrix derived for %d resources (role hierarchy version %s)",
            len(matrix.resources()),
            snapshot.version,
        )
        return matrix

    @property
    def hierarchy_version(self) -> int:
        return self._snapshot.version

    def resources(self) -> List[str]:
        return list(self._resources)

    def entries(self) -> List[PermissionEntry]:
        return list(self._entries.values())

    def entry(self, resource: str, operation: OperationLike) -> Optional[PermissionEntry]:
        return self._entries.get((resource, Operation(operation)))

    def explain(
        self, role: Optional[str], resource: str, operation: OperationLike
    ) -> PermissionDecision:
        """Decide ``role`` on ``resource``/``operation`` and say why.

        Operations are a closed set: a string outside :class:`Operation`
        raises ``ValueError`` instead of being denied. Unknown roles and
        resources are denied with a reason.
        """
        op = Operation(operation)
        entry = self._entries.get((resource, op))
        actor = self._snapshot.by_name.get(role.strip().lower()) if isinstance(role, str) else None

        def decide(allowed: bool, reason: str) -> PermissionDecision:
            return PermissionDecision(
                allowed=allowed,
                reason=reason,
                resource=resource,
                operation=op,
                role=role,
                minimum_role=entry.min_role if entry else None,
            )

        if entry is None:
            known = resource in self._resources
            return decide(False, "unknown_operation" if known else "unknown_resource")
        if entry.disabled:
            return decide(False, "disabled")
        if actor is None:
            return decide(False, "unknown_role")
        if actor.priority < entry.min_priority:
            return decide(False, "insufficient_role")
        return decide(True, "granted")

    def has_permission(self, role: Optional[str], resource: str, operation: OperationLike) -> bool:
        """True when ``role`` meets the minimum for the operation.

        Raises ``ValueError`` for an operation name that is not an
        :class:`Operation`; an unknown or missing role, or an unknown
        resource, is simply ``False``.
        """
        return self.explain(role, resource, operation).allowed

    def get_minimum_role(self, resource: str, operation: OperationLike) -> Optional[str]:
        entry = self._entries.get((resource, Operation(operation)))
        if entry is None or entry.disabled:
            return None
        return entry.min_role

    def validate(self) -> List[str]:
        """Structural problems with the matrix; an empty list means it is consistent."""
        issues: List[str] = []
        priorities = [role.priority for role in self._snapshot.roles]
        if len(set(priorities)) != len(priorities):
            issues.append("Role priorities are not unique")
        if any(p < 1 for p in priorities):
            issues.append("Role priorities must be >= 1")

        for resource in self._resources:
            for op in CRUD_OPERATIONS:
                entry = self._entries.get((resource, op))
                if entry is None:
                    issues.append(f"{resource}: missing {op.value} entry")
                    continue
                if entry.disabled:
                    if entry.min_role is not None:
                        issues.append(
                            f"{resource}.{op.value}: disabled entry names role {entry.min_role}"
                        )
                    continue
                if entry.min_role is None:
                    issues.append(f"{resource}.{op.value}: priority {entry.min_priority} without a role")
                    continue
                role = self._snapshot.by_name.get(entry.min_role)
                if role is None:
                    issues.append(f"{resource}.{op.value}: unknown role {entry.min_role}")
                elif role.priority != entry.min_priority:
                    issues.append(
                        f"{resource}.{op.value}: priority {entry.min_priority} does not match "
                        f"{role.name}={role.priority}"
                    )
        return issues

    def as_table(self) -> Dict[str, Dict[str, Optional[str]]]:
        """``{resource: {operation: min_role or None}}`` for display."""
        table: Dict[str, Dict[str, Optional[str]]] = {}
        for (resource, op), entry in self._entries.items():
            table.setdefault(resource, {})[op.value] = entry.min_role
        return table
