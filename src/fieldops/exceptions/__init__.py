from fieldops.exceptions.handlers import (
    AuthorizationDenied,
    ConfigurationError,
    EntityNotFound,
    FieldOpsException,
    NoActiveRolesError,
    RecordNotFound,
    RLSBypassError,
    ValidationError,
)

__all__ = [
    "FieldOpsException",
    "ValidationError",
    "AuthorizationDenied",
    "EntityNotFound",
    "RecordNotFound",
    "ConfigurationError",
    "NoActiveRolesError",
    "RLSBypassError",
]
