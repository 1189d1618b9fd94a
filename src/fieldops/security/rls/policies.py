from __future__ import annotations

"""
RLS policy resolver: (role, resource) -> row-filtering policy tag.

A missing entry is returned as ``None`` and is never read as "all records";
resources that mean "no extra filtering" must say ``all_records``.
"""

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from fieldops.exceptions.handlers import ConfigurationError
from fieldops.meta_engine.registry import EntityRegistry
from fieldops.meta_engine.schemas.access import CRUD_OPERATIONS, RLSPolicy
from fieldops.security.rbac.permissions import SYNTHETIC_RESOURCES, SyntheticResource

logger = logging.getLogger(__name__)


def supported_policies() -> List[str]:
    return [policy.value for policy in RLSPolicy]


def policy_allows_access(policy: Any) -> bool:
    """False for ``deny_all``, missing and unrecognised policies."""
    if policy is None:
        return False
    try:
        return RLSPolicy(policy) is not RLSPolicy.deny_all
    except ValueError:
        return False


class RLSPolicyResolver:
    def __init__(self, policies: Mapping[str, Mapping[str, Any]]) -> None:
        table: Dict[str, Mapping[str, RLSPolicy]] = {}
        for resource, by_role in policies.items():
            try:
                table[resource] = MappingProxyType(
                    {str(role).lower(): RLSPolicy(policy) for role, policy in by_role.items()}
                )
            except ValueError as exc:
                raise ConfigurationError(f"{resource}: {exc}", config_key=resource) from exc
        self._policies: Mapping[str, Mapping[str, RLSPolicy]] = MappingProxyType(table)

    @classmethod
    def from_registry(
        cls,
        registry: EntityRegistry,
        synthetic: Iterable[SyntheticResource] = SYNTHETIC_RESOURCES,
    ) -> "RLSPolicyResolver":
        policies: Dict[str, Mapping[str, Any]] = {}
        for meta in registry:
            if meta.rls_resource in policies:
                raise ConfigurationError(
                    f"RLS resource {meta.rls_resource} is claimed by more than one entity",
                    config_key=meta.entity_name,
                )
            policies[meta.rls_resource] = meta.rls_policy
        for resource in synthetic:
            policies.setdefault(resource.name, resource.rls_policy)
        return cls(policies)

    def resources(self) -> List[str]:
        return list(self._policies)

    def policies_for(self, resource: str) -> Mapping[str, RLSPolicy]:
        return self._policies.get(resource, MappingProxyType({}))

    def get_policy(self, role: Optional[str], resource: str) -> Optional[RLSPolicy]:
        if not isinstance(role, str):
            return None
        by_role = self._policies.get(resource)
        if by_role is None:
            return None
        return by_role.get(role.strip().lower())

    def missing_entries(self, matrix: Any, roles: Iterable[str]) -> List[Tuple[str, str]]:
        """(role, resource) pairs that hold some permission but have no policy."""
        missing: List[Tuple[str, str]] = []
        role_names = list(roles)
        for resource in matrix.resources():
            for role in role_names:
                permitted = any(
                    matrix.has_permission(role, resource, op) for op in CRUD_OPERATIONS
                )
                if permitted and self.get_policy(role, resource) is None:
                    missing.append((role, resource))
        return missing

    def assert_complete(self, matrix: Any, roles: Iterable[str]) -> None:
        missing = self.missing_entries(matrix, roles)
        if missing:
            pairs = ", ".join(f"{role}/{resource}" for role, resource in missing)
            raise ConfigurationError(
                f"No RLS policy configured for: {pairs}",
                config_key="rls_policy",
                missing=[list(pair) for pair in missing],
            )
