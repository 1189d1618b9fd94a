from __future__ import annotations

"""
Role hierarchy resolver.

Roles form a total order by priority; "meets minimum role" means
``priority(actor) >= priority(required)``. The hierarchy is loaded once into an
immutable snapshot and only replaced through an explicit (re)initialisation.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from threading import Lock
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from fieldops.config import Settings, get_settings
from fieldops.exceptions.handlers import ConfigurationError, NoActiveRolesError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Role:
    name: str
    priority: int
    description: str = ""


# Bootstrap/test hierarchy. Bump the version whenever the table changes.
FALLBACK_TABLE_VERSION = 1
FALLBACK_ROLES: Tuple[Role, ...] = (
    Role("customer", 1, "Customer portal access"),
    Role("technician", 2, "Field technician access"),
    Role("dispatcher", 3, "Dispatch and scheduling"),
    Role("manager", 4, "Operations manager"),
    Role("admin", 5, "Full system administrator"),
)

ACTIVE_ROLES_SQL = text(
    "SELECT name, priority, description FROM roles "
    "WHERE is_active = :active ORDER BY priority ASC"
)

SOURCE_ROWS = "rows"
SOURCE_DATABASE = "database"
SOURCE_FALLBACK = "fallback"


def _coerce_role(row: Any) -> Role:
    if isinstance(row, Role):
        return row
    if isinstance(row, Mapping):
        data = row
    elif hasattr(row, "_mapping"):
        data = row._mapping
    else:
        data = {
            "name": getattr(row, "name", None),
            "priority": getattr(row, "priority", None),
            "description": getattr(row, "description", None),
        }

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError(f"Role row without a name: {row!r}", config_key="roles")
    priority = data.get("priority")
    if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
        raise ConfigurationError(
            f"Role {name!r} has invalid priority {priority!r} (positive integer required)",
            config_key="roles",
        )
    return Role(
        name=name.strip().lower(),
        priority=priority,
        description=str(data.get("description") or ""),
    )


@dataclass(frozen=True)
class HierarchySnapshot:
    roles: Tuple[Role, ...]
    by_name: Mapping[str, Role]
    by_priority: Mapping[int, Role]
    source: str
    version: int

    @classmethod
    def build(cls, rows: Iterable[Any], *, source: str, version: int) -> "HierarchySnapshot":
        roles = sorted((_coerce_role(row) for row in rows), key=lambda r: r.priority)
        if not roles:
            raise NoActiveRolesError()

        by_name: Dict[str, Role] = {}
        by_priority: Dict[int, Role] = {}
        for role in roles:
            if role.name in by_name:
                raise ConfigurationError(f"Duplicate role name: {role.name}", config_key="roles")
            if role.priority in by_priority:
                raise ConfigurationError(
                    f"Duplicate role priority {role.priority}: "
                    f"{by_priority[role.priority].name} and {role.name}",
                    config_key="roles",
                )
            by_name[role.name] = role
            by_priority[role.priority] = role

        return cls(
            roles=tuple(roles),
            by_name=MappingProxyType(by_name),
            by_priority=MappingProxyType(by_priority),
            source=source,
            version=version,
        )

    def priority_of(self, role_name: Optional[str]) -> Optional[int]:
        if not isinstance(role_name, str):
            return None
        role = self.by_name.get(role_name.strip().lower())
        return role.priority if role else None

    def has_minimum_role(self, actor_role: Optional[str], required_role: Optional[str]) -> bool:
        actor = self.priority_of(actor_role)
        required = self.priority_of(required_role)
        if actor is None or required is None:
            return False
        return actor >= required


def fetch_active_roles(session_factory: Callable[[], Any]) -> List[Role]:
    session = session_factory()
    try:
        rows = session.execute(ACTIVE_ROLES_SQL, {"active": True}).mappings().all()
    finally:
        session.close()
    return [_coerce_role(row) for row in rows]


class RoleHierarchy:
    """
    Holds the current :class:`HierarchySnapshot`.

    Lookups read a single snapshot reference and never lock; only the init/reload
    paths take the write lock.
    """

    def __init__(self) -> None:
        self._snapshot: Optional[HierarchySnapshot] = None
        self._version = 0
        self._loader: Optional[Callable[["RoleHierarchy"], HierarchySnapshot]] = None
        self._write_lock = Lock()

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def _install(self, rows: Iterable[Any], *, source: str) -> HierarchySnapshot:
        with self._write_lock:
            snapshot = HierarchySnapshot.build(rows, source=source, version=self._version + 1)
            self._version = snapshot.version
            self._snapshot = snapshot
        logger.info(
            "Role hierarchy loaded from %s (version %s): %s",
            source,
            snapshot.version,
            ", ".join(f"{r.name}={r.priority}" for r in snapshot.roles),
        )
        return snapshot

    def init_from_source(self, rows: Iterable[Any]) -> HierarchySnapshot:
        materialized = list(rows or ())
        if not materialized:
            raise NoActiveRolesError("No active roles found in role source")
        self._loader = lambda target: target.init_from_source(materialized)
        return self._install(materialized, source=SOURCE_ROWS)

    def init_from_database(
        self,
        session_factory: Callable[[], Any],
        *,
        timeout_seconds: Optional[float] = None,
    ) -> HierarchySnapshot:
        """
        Load active roles from the ``roles`` table.

        The query runs in a worker thread so a slow datastore cannot hold up
        startup past ``timeout_seconds``; on expiry ``TimeoutError`` is raised.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="role-load")
        try:
            future = executor.submit(fetch_active_roles, session_factory)
            try:
                roles = future.result(timeout=timeout_seconds)
            except FuturesTimeoutError as exc:
                future.cancel()
                raise TimeoutError(
                    f"Role load did not finish within {timeout_seconds}s"
                ) from exc
        finally:
            executor.shutdown(wait=False)

        if not roles:
            raise NoActiveRolesError("No active roles found in database")
        self._loader = lambda target: target.init_from_database(
            session_factory, timeout_seconds=timeout_seconds
        )
        return self._install(roles, source=SOURCE_DATABASE)

    def init_from_fallback(self, *, environment: Optional[str] = None) -> HierarchySnapshot:
        env = environment if environment is not None else get_settings().ENVIRONMENT
        if env != "test":
            logger.warning(
                "Using fallback role hierarchy (table version %s); "
                "the primary role source was not used",
                FALLBACK_TABLE_VERSION,
            )
        self._loader = lambda target: target.init_from_fallback(environment=environment)
        return self._install(FALLBACK_ROLES, source=SOURCE_FALLBACK)

    def reload(self) -> HierarchySnapshot:
        """Re-run the last initialisation path (operator triggered)."""
        if self._loader is None:
            raise ConfigurationError("Role hierarchy was never initialised", config_key="roles")
        return self._loader(self)

    def reloaded(self) -> "RoleHierarchy":
        """
        Run the last initialisation path into a new, detached hierarchy.

        ``self`` keeps its snapshot whether or not the load succeeds; the new
        object continues the version sequence.
        """
        if self._loader is None:
            raise ConfigurationError("Role hierarchy was never initialised", config_key="roles")
        fresh = RoleHierarchy()
        fresh._version = self._version
        self._loader(fresh)
        return fresh

    def clear(self) -> None:
        with self._write_lock:
            self._snapshot = None
            self._loader = None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._snapshot is not None

    @property
    def version(self) -> int:
        snapshot = self._snapshot
        return snapshot.version if snapshot else 0

    @property
    def snapshot(self) -> HierarchySnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise ConfigurationError("Role hierarchy is not initialised", config_key="roles")
        return snapshot

    def get_role(self, role_name: Optional[str]) -> Optional[Role]:
        snapshot = self._snapshot
        if snapshot is None or not isinstance(role_name, str):
            return None
        return snapshot.by_name.get(role_name.strip().lower())

    def get_priority(self, role_name: Optional[str]) -> Optional[int]:
        """Priority for ``role_name`` (case-insensitive), ``None`` when unknown."""
        role = self.get_role(role_name)
        return role.priority if role else None

    def get_role_by_priority(self, priority: int) -> Optional[Role]:
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return snapshot.by_priority.get(priority)

    def has_minimum_role(self, actor_role: Optional[str], required_role: Optional[str]) -> bool:
        snapshot = self._snapshot
        if snapshot is None:
            return False
        return snapshot.has_minimum_role(actor_role, required_role)

    def role_names(self) -> List[str]:
        snapshot = self._snapshot
        if snapshot is None:
            return []
        return [role.name for role in snapshot.roles]

    def lowest_role(self, names: Iterable[str]) -> Optional[Role]:
        """Lowest-priority known role among ``names``."""
        known = [r for r in (self.get_role(n) for n in names) if r is not None]
        return min(known, key=lambda r: r.priority) if known else None

    def status(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        return {
            "is_ready": snapshot is not None,
            "source": snapshot.source if snapshot else None,
            "is_fallback": bool(snapshot and snapshot.source == SOURCE_FALLBACK),
            "version": snapshot.version if snapshot else 0,
            "roles": [r.name for r in snapshot.roles] if snapshot else [],
        }


def bootstrap_hierarchy(
    hierarchy: RoleHierarchy,
    *,
    settings: Optional[Settings] = None,
    session_factory: Optional[Callable[[], Any]] = None,
) -> HierarchySnapshot:
    """
    Startup path: datastore first, constant table when the datastore is slow or
    unreachable. An empty role table is never papered over.
    """
    settings = settings or get_settings()
    source = settings.ROLE_SOURCE.strip().lower()
    if source == SOURCE_FALLBACK:
        return hierarchy.init_from_fallback(environment=settings.ENVIRONMENT)
    if source != SOURCE_DATABASE:
        raise ConfigurationError(
            f"Unsupported role source: {settings.ROLE_SOURCE}", config_key="ROLE_SOURCE"
        )

    if session_factory is None:
        from fieldops.database import get_sessionmaker

        session_factory = get_sessionmaker()

    try:
        return hierarchy.init_from_database(
            session_factory, timeout_seconds=settings.ROLE_LOAD_TIMEOUT_SECONDS
        )
    except (TimeoutError, SQLAlchemyError) as exc:
        if not settings.ROLE_FALLBACK_ON_ERROR:
            raise
        logger.warning("Role source unavailable (%s); falling back", exc)
        return hierarchy.init_from_fallback(environment=settings.ENVIRONMENT)
