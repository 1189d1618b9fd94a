from __future__ import annotations

from typing import List

from fieldops.meta_engine.models.entity import NO_ACCESS, SUPPORTED_FIELD_TYPES, EntityMetadata
from fieldops.meta_engine.registry import EntityRegistry
from fieldops.meta_engine.schemas.access import Operation
from fieldops.security.rbac.hierarchy import RoleHierarchy


class MetadataValidator:
    """Static checks over the entity catalogue, run once at startup and by ``fieldops check``."""

    def __init__(self, registry: EntityRegistry, hierarchy: RoleHierarchy):
        self.registry = registry
        self.hierarchy = hierarchy

    def validate_all(self) -> List[str]:
        errors: List[str] = []
        resources = {}
        for meta in self.registry:
            errors.extend(self.validate_entity(meta))
            owner = resources.setdefault(meta.rls_resource, meta.entity_name)
            if owner != meta.entity_name:
                errors.append(
                    f"{meta.entity_name}: rls_resource '{meta.rls_resource}' already used by {owner}"
                )
        return errors

    def validate_entity(self, meta: EntityMetadata) -> List[str]:
        name = meta.entity_name
        errors: List[str] = []
        roles = set(self.hierarchy.role_names())

        for field_name, spec in meta.fields.items():
            if spec.type not in SUPPORTED_FIELD_TYPES:
                errors.append(f"{name}.{field_name}: unsupported type '{spec.type}'")
            if spec.type == "enum" and not spec.values:
                errors.append(f"{name}.{field_name}: enum field without values")

        for field_name, access in meta.field_access.items():
            if field_name not in meta.fields:
                errors.append(f"{name}.{field_name}: field_access for undeclared field")
            for op in Operation:
                role = access.role_for(op)
                if role != NO_ACCESS and role not in roles:
                    errors.append(f"{name}.{field_name}.{op.value}: unknown role '{role}'")

        for op, role in meta.entity_permissions.items():
            if role not in (None, NO_ACCESS) and role not in roles:
                errors.append(f"{name}: entity_permissions.{op.value} has unknown role '{role}'")

        for field_name in meta.required_fields:
            if field_name not in meta.fields and field_name not in meta.foreign_keys:
                errors.append(f"{name}: required field '{field_name}' is not declared")
        for field_name in meta.immutable_fields:
            if field_name not in meta.fields:
                errors.append(f"{name}: immutable field '{field_name}' is not declared")

        for fk_field, fk in meta.foreign_keys.items():
            if self.registry.by_table(fk.table) is None:
                errors.append(f"{name}.{fk_field}: foreign key to unknown table '{fk.table}'")

        for role in meta.rls_policy:
            if role not in roles:
                errors.append(f"{name}: rls_policy for unknown role '{role}'")

        for label, whitelist in (
            ("searchable_fields", meta.searchable_fields),
            ("filterable_fields", meta.filterable_fields),
            ("sortable_fields", meta.sortable_fields),
        ):
            for field_name in whitelist:
                if field_name not in meta.fields:
                    errors.append(f"{name}: {label} lists undeclared field '{field_name}'")

        if meta.sortable_fields and meta.default_sort.field not in meta.sortable_fields:
            errors.append(f"{name}: default sort field '{meta.default_sort.field}' is not sortable")
        if meta.identity_field and meta.identity_field not in meta.fields:
            errors.append(f"{name}: identity field '{meta.identity_field}' is not declared")
        return errors
