from __future__ import annotations

"""
Role-aware payload schemas.

For a given role the builder works out which fields may be written, strips
everything else from incoming payloads without comment, and validates the rest
against the field constraints compiled to JSON Schema.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union

from jsonschema import Draft7Validator, FormatChecker

from fieldops.exceptions.handlers import ConfigurationError, ValidationError
from fieldops.meta_engine.models.entity import NO_ACCESS, EntityMetadata
from fieldops.meta_engine.schemas.access import Operation
from fieldops.meta_engine.services.meta_schema_service import build_json_schema
from fieldops.security.rbac.hierarchy import RoleHierarchy

logger = logging.getLogger(__name__)

WRITE_OPERATIONS = (Operation.create, Operation.update)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _list_or_none(names: Sequence[str]) -> str:
    return ", ".join(names) if names else "(none)"


class PayloadValidator:
    """Validator for one (entity, operation, role) combination."""

    def __init__(
        self,
        metadata: EntityMetadata,
        operation: Operation,
        role: str,
        allowed_fields: Sequence[str],
    ) -> None:
        self.entity_name = metadata.entity_name
        self.operation = operation
        self.role = role
        self.allowed_fields = tuple(allowed_fields)
        # Required fields outside the role's reach are populated elsewhere.
        self.required_fields = tuple(
            name for name in metadata.required_fields if name in self.allowed_fields
        )
        self.json_schema = build_json_schema(
            metadata,
            self.allowed_fields,
            non_nullable=[n for n in metadata.required_fields if n in self.allowed_fields],
        )
        self._validator = Draft7Validator(self.json_schema, format_checker=FormatChecker())

    def filter(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return {name: payload[name] for name in self.allowed_fields if name in payload}

    def validate(self, payload: Any) -> Dict[str, Any]:
        """Return the filtered payload or raise :class:`ValidationError`."""
        if not isinstance(payload, Mapping):
            raise ValidationError("Request body must be a JSON object", fields=[])

        filtered = self.filter(payload)
        dropped = sorted(set(payload) - set(filtered))
        if dropped:
            logger.debug(
                "Dropped fields %s from %s %s payload for role %s",
                dropped,
                self.entity_name,
                self.operation.value,
                self.role,
            )

        if self.operation is Operation.update and not filtered:
            raise ValidationError(
                "No valid updateable fields provided. "
                f"Allowed for your role: {_list_or_none(self.allowed_fields)}",
                fields=[],
                allowed_fields=list(self.allowed_fields),
            )

        if self.operation is Operation.create:
            missing = [name for name in self.required_fields if _is_blank(filtered.get(name))]
            if missing:
                raise ValidationError(
                    f"Missing required fields: {', '.join(missing)}",
                    fields=missing,
                    missing_fields=missing,
                )
            if not filtered:
                raise ValidationError(
                    "No valid creatable fields provided. "
                    f"Allowed for your role: {_list_or_none(self.allowed_fields)}",
                    fields=[],
                    missing_fields=[],
                    allowed_fields=list(self.allowed_fields),
                )

        violations: List[Dict[str, str]] = []
        for error in sorted(self._validator.iter_errors(filtered), key=lambda e: list(e.path)):
            field_name = str(error.path[0]) if error.path else ""
            violations.append({"field": field_name, "message": error.message})
        if violations:
            fields = list(dict.fromkeys(v["field"] for v in violations if v["field"]))
            raise ValidationError(
                f"Invalid value for fields: {', '.join(fields)}",
                field=fields[0] if len(fields) == 1 else None,
                fields=fields,
                errors=violations,
            )
        return filtered


class FieldAccessSchemaBuilder:
    """Per-role field sets, answered against the hierarchy snapshot current at construction."""

    def __init__(self, hierarchy: RoleHierarchy) -> None:
        self.snapshot = hierarchy.snapshot

    @property
    def hierarchy_version(self) -> int:
        return self.snapshot.version

    def _fields_for(
        self, metadata: EntityMetadata, role: str, operation: Operation
    ) -> List[str]:
        allowed: List[str] = []
        for name, access in metadata.field_access.items():
            required_role = access.role_for(operation)
            if required_role == NO_ACCESS:
                continue
            if self.snapshot.has_minimum_role(role, required_role):
                allowed.append(name)
        return allowed

    def derive_creatable_fields(self, metadata: EntityMetadata, role: str) -> List[str]:
        return self._fields_for(metadata, role, Operation.create)

    def derive_updateable_fields(self, metadata: EntityMetadata, role: str) -> List[str]:
        immutable = set(metadata.immutable_fields)
        return [
            name
            for name in self._fields_for(metadata, role, Operation.update)
            if name not in immutable
        ]

    def derive_readable_fields(self, metadata: EntityMetadata, role: str) -> List[str]:
        return self._fields_for(metadata, role, Operation.read)

    def build_schema(
        self,
        entity_name: str,
        operation: Union[Operation, str],
        metadata: EntityMetadata,
        role: str,
    ) -> PayloadValidator:
        op = Operation(operation)
        if op not in WRITE_OPERATIONS:
            raise ConfigurationError(
                f"No payload schema for {op.value} on {entity_name}", config_key=entity_name
            )
        if metadata.entity_name != entity_name:
            raise ConfigurationError(
                f"Metadata for {metadata.entity_name} passed for {entity_name}",
                config_key=entity_name,
            )
        if op is Operation.create:
            allowed = self.derive_creatable_fields(metadata, role)
        else:
            allowed = self.derive_updateable_fields(metadata, role)
        return PayloadValidator(metadata, op, role, allowed)

    def filter_readable(
        self,
        records: Union[Mapping[str, Any], Iterable[Mapping[str, Any]], None],
        metadata: EntityMetadata,
        role: str,
    ) -> Any:
        """Strip fields ``role`` may not read from one record or a list of records."""
        if records is None:
            return None
        readable = set(self.derive_readable_fields(metadata, role))
        if isinstance(records, Mapping):
            return {k: v for k, v in records.items() if k in readable}
        return [{k: v for k, v in row.items() if k in readable} for row in records]
