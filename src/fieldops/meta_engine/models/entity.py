from __future__ import annotations

"""
Static entity metadata.

One frozen :class:`EntityMetadata` per business entity describes its columns,
per-field role access, row-level security mapping and query whitelists. The
values are parsed once from YAML and shared read-only between requests.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from fieldops.exceptions.handlers import ConfigurationError
from fieldops.meta_engine.schemas.access import Operation, RLSPolicy, SortOrder

NO_ACCESS = "none"

SUPPORTED_FIELD_TYPES = frozenset(
    {
        "string",
        "text",
        "integer",
        "number",
        "decimal",
        "currency",
        "boolean",
        "date",
        "timestamp",
        "uuid",
        "email",
        "phone",
        "enum",
        "foreignKey",
        "json",
        "jsonb",
        "array",
    }
)


@dataclass(frozen=True)
class FieldSpec:
    """Column constraints, independent of any validation library."""

    name: str
    type: str
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    pattern: Optional[str] = None
    values: Tuple[Any, ...] = ()
    description: str = ""

    @classmethod
    def from_dict(cls, name: str, raw: Mapping[str, Any], *, entity: str) -> "FieldSpec":
        if not isinstance(raw, Mapping) or not raw.get("type"):
            raise ConfigurationError(
                f"{entity}.{name}: field definition needs a type", config_key=entity
            )
        return cls(
            name=name,
            type=str(raw["type"]),
            min_length=raw.get("min_length"),
            max_length=raw.get("max_length"),
            minimum=raw.get("minimum"),
            maximum=raw.get("maximum"),
            pattern=raw.get("pattern"),
            values=tuple(raw.get("values") or ()),
            description=str(raw.get("description") or ""),
        )


@dataclass(frozen=True)
class FieldAccess:
    """Minimum role per operation; ``"none"`` closes the operation for everyone."""

    create: str = NO_ACCESS
    read: str = NO_ACCESS
    update: str = NO_ACCESS
    delete: str = NO_ACCESS

    def role_for(self, operation: Operation) -> str:
        return getattr(self, Operation(operation).value)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FieldAccess":
        values = {}
        for op in Operation:
            value = raw.get(op.value, NO_ACCESS)
            values[op.value] = NO_ACCESS if value is None else str(value).strip().lower()
        return cls(**values)


@dataclass(frozen=True)
class ForeignKey:
    table: str
    column: str = "id"


@dataclass(frozen=True)
class DefaultSort:
    field: str = "id"
    order: SortOrder = SortOrder.asc


@dataclass(frozen=True)
class RLSFilterConfig:
    """Columns used by the ownership policies when building row filters."""

    own_record_field: str = "id"
    customer_field: str = "customer_id"
    assigned_field: str = "assigned_technician_id"


# Columns every table carries.
UNIVERSAL_FIELDS: Mapping[str, FieldSpec] = MappingProxyType(
    {
        "id": FieldSpec("id", "integer", minimum=1),
        "is_active": FieldSpec("is_active", "boolean"),
        "created_at": FieldSpec("created_at", "timestamp"),
        "updated_at": FieldSpec("updated_at", "timestamp"),
    }
)

UNIVERSAL_FIELD_ACCESS: Mapping[str, FieldAccess] = MappingProxyType(
    {
        "id": FieldAccess(read="customer"),
        "is_active": FieldAccess(read="customer", update="manager"),
        "created_at": FieldAccess(read="customer"),
        "updated_at": FieldAccess(read="customer"),
    }
)


def _names(raw: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    return tuple(str(item) for item in (raw or ()))


@dataclass(frozen=True)
class EntityMetadata:
    entity_name: str
    table_name: str
    rls_resource: str
    primary_key: str = "id"
    display_name: str = ""
    identity_field: Optional[str] = None
    identity_field_unique: bool = False
    fields: Mapping[str, FieldSpec] = field(default_factory=dict)
    field_access: Mapping[str, FieldAccess] = field(default_factory=dict)
    required_fields: Tuple[str, ...] = ()
    immutable_fields: Tuple[str, ...] = ()
    foreign_keys: Mapping[str, ForeignKey] = field(default_factory=dict)
    rls_policy: Mapping[str, RLSPolicy] = field(default_factory=dict)
    entity_permissions: Mapping[Operation, Optional[str]] = field(default_factory=dict)
    rls_filter_config: RLSFilterConfig = RLSFilterConfig()
    searchable_fields: Tuple[str, ...] = ()
    filterable_fields: Tuple[str, ...] = ()
    sortable_fields: Tuple[str, ...] = ()
    default_sort: DefaultSort = DefaultSort()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], *, source: str = "<dict>") -> "EntityMetadata":
        """
        Build metadata from a parsed YAML document.

        Universal columns (id, is_active, timestamps) are merged in unless the
        document defines them itself. Unknown operation or policy names raise
        ``ConfigurationError``.
        """
        name = raw.get("entity_name")
        if not name:
            raise ConfigurationError(f"Entity document without entity_name ({source})")
        for key in ("table_name", "rls_resource"):
            if not raw.get(key):
                raise ConfigurationError(f"{name}: missing {key} ({source})", config_key=name)

        fields: Dict[str, FieldSpec] = dict(UNIVERSAL_FIELDS)
        for field_name, spec in (raw.get("fields") or {}).items():
            fields[field_name] = FieldSpec.from_dict(field_name, spec, entity=name)

        access: Dict[str, FieldAccess] = dict(UNIVERSAL_FIELD_ACCESS)
        for field_name, rule in (raw.get("field_access") or {}).items():
            access[field_name] = FieldAccess.from_dict(rule or {})

        foreign_keys = {
            fk_field: ForeignKey(table=str(fk["table"]), column=str(fk.get("column") or "id"))
            for fk_field, fk in (raw.get("foreign_keys") or {}).items()
        }

        try:
            rls_policy = {
                str(role).lower(): RLSPolicy(policy)
                for role, policy in (raw.get("rls_policy") or {}).items()
            }
            entity_permissions = {
                Operation(op): (None if role is None else str(role).lower())
                for op, role in (raw.get("entity_permissions") or {}).items()
            }
        except ValueError as exc:
            raise ConfigurationError(f"{name}: {exc} ({source})", config_key=name) from exc

        sort_raw = raw.get("default_sort") or {}
        order = SortOrder.parse(sort_raw.get("order", "ASC"))
        if order is None:
            raise ConfigurationError(
                f"{name}: invalid default sort order {sort_raw.get('order')!r}", config_key=name
            )
        default_sort = DefaultSort(field=str(sort_raw.get("field") or "id"), order=order)

        return cls(
            entity_name=str(name),
            table_name=str(raw["table_name"]),
            rls_resource=str(raw["rls_resource"]),
            primary_key=str(raw.get("primary_key") or "id"),
            display_name=str(raw.get("display_name") or name),
            identity_field=raw.get("identity_field"),
            identity_field_unique=bool(raw.get("identity_field_unique", False)),
            fields=MappingProxyType(fields),
            field_access=MappingProxyType(access),
            required_fields=_names(raw.get("required_fields")),
            immutable_fields=_names(raw.get("immutable_fields")),
            foreign_keys=MappingProxyType(foreign_keys),
            rls_policy=MappingProxyType(rls_policy),
            entity_permissions=MappingProxyType(entity_permissions),
            rls_filter_config=RLSFilterConfig(**(raw.get("rls_filter_config") or {})),
            searchable_fields=_names(raw.get("searchable_fields")),
            filterable_fields=_names(raw.get("filterable_fields")),
            sortable_fields=_names(raw.get("sortable_fields")),
            default_sort=default_sort,
        )
