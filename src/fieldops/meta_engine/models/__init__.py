from fieldops.meta_engine.models.entity import (
    DefaultSort,
    EntityMetadata,
    FieldAccess,
    FieldSpec,
    ForeignKey,
    RLSFilterConfig,
)

__all__ = [
    "DefaultSort",
    "EntityMetadata",
    "FieldAccess",
    "FieldSpec",
    "ForeignKey",
    "RLSFilterConfig",
]
