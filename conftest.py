from __future__ import annotations

import os

import pytest

from fieldops.config import Settings
from fieldops.meta_engine.bootstrap import build_access_control
from fieldops.meta_engine.registry import EntityRegistry
from fieldops.meta_engine.services.validator import FieldAccessSchemaBuilder
from fieldops.security.rbac.hierarchy import RoleHierarchy
from fieldops.security.rbac.permissions import PermissionMatrix
from fieldops.security.rls.policies import RLSPolicyResolver


def _db_enabled() -> bool:
    flag = os.getenv("FIELDOPS_PYTEST_DB") or os.getenv("PYTEST_DB")
    if flag:
        return flag.strip().lower() in {"1", "true", "yes", "on"}
    return False


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "requires_db: marks tests that execute SQL against SQLite (enable with FIELDOPS_PYTEST_DB=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    if _db_enabled():
        return
    skip_db = pytest.mark.skip(reason="set FIELDOPS_PYTEST_DB=1 to run database tests")
    for item in items:
        if "requires_db" in item.keywords:
            item.add_marker(skip_db)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(ENVIRONMENT="test", ROLE_SOURCE="fallback", _env_file=None)


@pytest.fixture
def hierarchy() -> RoleHierarchy:
    roles = RoleHierarchy()
    roles.init_from_fallback(environment="test")
    return roles


@pytest.fixture(scope="session")
def registry() -> EntityRegistry:
    return EntityRegistry.load()


@pytest.fixture
def matrix(registry: EntityRegistry, hierarchy: RoleHierarchy) -> PermissionMatrix:
    return PermissionMatrix.derive(registry, hierarchy)


@pytest.fixture
def rls_resolver(registry: EntityRegistry) -> RLSPolicyResolver:
    return RLSPolicyResolver.from_registry(registry)


@pytest.fixture
def schema_builder(hierarchy: RoleHierarchy) -> FieldAccessSchemaBuilder:
    return FieldAccessSchemaBuilder(hierarchy)


@pytest.fixture
def access(hierarchy, registry, test_settings):
    return build_access_control(hierarchy, registry, settings=test_settings)
