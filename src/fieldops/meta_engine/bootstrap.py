from __future__ import annotations

"""
Access-core bootstrap.

Builds the role hierarchy, entity registry, permission matrix, RLS resolver,
schema builder and pipeline in dependency order and refuses to start when the
static configuration is inconsistent. The assembled ``AccessControl`` is
read-only; ``reload_access_control()`` builds a fresh one and swaps it in.
"""

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, List, Optional

from fieldops.config import Settings, get_settings
from fieldops.exceptions.handlers import ConfigurationError
from fieldops.meta_engine.registry import EntityRegistry
from fieldops.meta_engine.services.access_pipeline import AccessPipeline
from fieldops.meta_engine.services.metadata_validator import MetadataValidator
from fieldops.meta_engine.services.validator import FieldAccessSchemaBuilder
from fieldops.security.rbac.hierarchy import RoleHierarchy, bootstrap_hierarchy
from fieldops.security.rbac.permissions import PermissionMatrix
from fieldops.security.rls.policies import RLSPolicyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessControl:
    hierarchy: RoleHierarchy
    registry: EntityRegistry
    matrix: PermissionMatrix
    rls: RLSPolicyResolver
    schemas: FieldAccessSchemaBuilder
    pipeline: AccessPipeline

    def check(self) -> List[str]:
        """All configuration problems, without raising."""
        issues = MetadataValidator(self.registry, self.hierarchy).validate_all()
        issues.extend(self.matrix.validate())
        for role, resource in self.rls.missing_entries(self.matrix, self.hierarchy.role_names()):
            issues.append(f"{resource}: no RLS policy for role '{role}'")
        return issues


def build_access_control(
    hierarchy: RoleHierarchy,
    registry: EntityRegistry,
    *,
    settings: Optional[Settings] = None,
) -> AccessControl:
    settings = settings or get_settings()

    errors = MetadataValidator(registry, hierarchy).validate_all()
    if errors:
        raise ConfigurationError(
            f"Entity metadata is invalid ({len(errors)} problems): {errors[0]}",
            config_key="entities",
            errors=errors,
        )

    matrix = PermissionMatrix.derive(registry, hierarchy)
    issues = matrix.validate()
    if issues:
        raise ConfigurationError(
            f"Permission matrix is invalid: {issues[0]}",
            config_key="permissions",
            errors=issues,
        )

    rls = RLSPolicyResolver.from_registry(registry)
    if settings.STRICT_RLS_COVERAGE:
        rls.assert_complete(matrix, hierarchy.role_names())

    schemas = FieldAccessSchemaBuilder(hierarchy)
    pipeline = AccessPipeline(
        registry,
        matrix,
        rls,
        schemas,
        default_page_size=settings.DEFAULT_PAGE_SIZE,
        max_page_size=settings.MAX_PAGE_SIZE,
    )
    return AccessControl(hierarchy, registry, matrix, rls, schemas, pipeline)


def bootstrap_access_control(
    *,
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], Any]] = None,
) -> AccessControl:
    settings = settings or get_settings()
    hierarchy = RoleHierarchy()
    bootstrap_hierarchy(hierarchy, settings=settings, session_factory=session_factory)
    registry = EntityRegistry.load(settings.METADATA_PATH or None)
    access = build_access_control(hierarchy, registry, settings=settings)
    logger.info(
        "Access control ready: %d entities, hierarchy v%s (%s)",
        len(registry),
        hierarchy.version,
        hierarchy.status()["source"],
    )
    return access


_current: Optional[AccessControl] = None
_current_lock = Lock()


def get_access_control() -> AccessControl:
    global _current
    with _current_lock:
        if _current is None:
            _current = bootstrap_access_control()
        return _current


def set_access_control(access: Optional[AccessControl]) -> None:
    global _current
    with _current_lock:
        _current = access


def reload_access_control(*, settings: Optional[Settings] = None) -> AccessControl:
    """
    Operator-triggered reload: re-run the role load and rebuild everything from it.

    The new hierarchy is loaded into a detached object; the live access control
    is replaced only once the rebuilt one passes every startup check.
    """
    global _current
    current = get_access_control()
    hierarchy = current.hierarchy.reloaded()
    registry = EntityRegistry.load((settings or get_settings()).METADATA_PATH or None)
    rebuilt = build_access_control(hierarchy, registry, settings=settings)
    with _current_lock:
        _current = rebuilt
    logger.info("Access control reloaded (hierarchy v%s)", rebuilt.hierarchy.version)
    return rebuilt
