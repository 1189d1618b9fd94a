from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

from fieldops.meta_engine.models.entity import EntityMetadata, FieldSpec

PHONE_PATTERN = r"^\+?[0-9 ().-]{7,50}$"

_JSON_TYPES: Mapping[str, str] = {
    "string": "string",
    "text": "string",
    "email": "string",
    "phone": "string",
    "uuid": "string",
    "date": "string",
    "timestamp": "string",
    "integer": "integer",
    "foreignKey": "integer",
    "number": "number",
    "decimal": "number",
    "currency": "number",
    "boolean": "boolean",
    "array": "array",
}

_FORMATS: Mapping[str, str] = {
    "email": "email",
    "uuid": "uuid",
    "date": "date",
    "timestamp": "date-time",
}


def field_schema(spec: FieldSpec, *, nullable: bool = False) -> Dict[str, Any]:
    """Compile one :class:`FieldSpec` into a JSON Schema fragment."""
    if spec.type == "enum":
        values = list(spec.values)
        if nullable:
            values.append(None)
        return {"enum": values}

    schema: Dict[str, Any] = {}
    json_type = _JSON_TYPES.get(spec.type)
    if json_type:
        schema["type"] = [json_type, "null"] if nullable else json_type
    # json/jsonb accept any JSON value

    if spec.type in _FORMATS:
        schema["format"] = _FORMATS[spec.type]
    if spec.min_length is not None:
        schema["minLength"] = spec.min_length
    if spec.max_length is not None:
        schema["maxLength"] = spec.max_length
    if spec.minimum is not None:
        schema["minimum"] = spec.minimum
    elif spec.type == "foreignKey":
        schema["minimum"] = 1
    if spec.maximum is not None:
        schema["maximum"] = spec.maximum
    if spec.pattern:
        schema["pattern"] = spec.pattern
    elif spec.type == "phone":
        schema["pattern"] = PHONE_PATTERN
    if spec.description:
        schema["description"] = spec.description
    return schema


def build_json_schema(
    metadata: EntityMetadata,
    field_names: Iterable[str],
    *,
    non_nullable: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Object schema limited to ``field_names``.

    Fields listed in ``non_nullable`` reject ``null``; required-ness is checked
    by the caller so the error can be phrased per role.
    """
    strict = set(non_nullable)
    properties: Dict[str, Any] = {}
    for name in field_names:
        spec = metadata.fields.get(name)
        if spec is None:
            properties[name] = {}
            continue
        properties[name] = field_schema(spec, nullable=name not in strict)
    return {
        "type": "object",
        "title": metadata.display_name or metadata.entity_name,
        "properties": properties,
        "additionalProperties": False,
    }
