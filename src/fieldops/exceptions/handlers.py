from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


class FieldOpsException(Exception):
    """
    Base exception for the access core.

    Every error carries:
    - attributes: message/code/status_code/details/user_message
    - method: to_dict() (rendered by the API exception handlers)
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "FIELDOPS_ERROR",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(FieldOpsException):
    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        *,
        fields: Optional[Sequence[str]] = None,
        **kwargs: Any,
    ):
        details: Dict[str, Any] = {"field": field} if field else {}
        if fields is not None:
            details["fields"] = list(fields)
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
            user_message=message,
        )

    @property
    def fields(self) -> List[str]:
        return list(self.details.get("fields") or [])


class AuthorizationDenied(FieldOpsException):
    def __init__(
        self,
        operation: str,
        resource: Optional[str] = None,
        *,
        role: Optional[str] = None,
        minimum_role: Optional[str] = None,
        reason: Optional[str] = None,
        **kwargs: Any,
    ):
        message = f"Insufficient permissions to {operation}"
        if resource:
            message += f" {resource}"

        details: Dict[str, Any] = {
            "operation": operation,
            "resource": resource,
            "role": role,
            "minimum_role": minimum_role,
        }
        if reason:
            details["reason"] = reason
        details.update(kwargs)

        user_message = message
        if minimum_role:
            user_message = f"{message}. Minimum role required: {minimum_role}"
        super().__init__(
            message=message,
            code="PERMISSION_DENIED",
            status_code=403,
            details=details,
            user_message=user_message,
        )


class EntityNotFound(FieldOpsException):
    def __init__(self, entity: str, **kwargs: Any):
        message = f"Unknown entity: {entity}"
        details: Dict[str, Any] = {"entity": entity}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=details,
            user_message="Resource not found",
        )


class RecordNotFound(FieldOpsException):
    def __init__(self, entity: str, record_id: Any, **kwargs: Any):
        message = f"{entity} {record_id} not found"
        details: Dict[str, Any] = {"entity": entity, "id": record_id}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=details,
            user_message="Resource not found",
        )


class ConfigurationError(FieldOpsException):
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"config_key": config_key} if config_key else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
            user_message="System configuration error",
        )


class NoActiveRolesError(ConfigurationError):
    def __init__(self, message: str = "No active roles found in role source", **kwargs: Any):
        super().__init__(message, config_key="roles", **kwargs)
        self.code = "NO_ACTIVE_ROLES"


class RLSBypassError(FieldOpsException):
    def __init__(self, resource: Optional[str], policy: Optional[str], **kwargs: Any):
        message = (
            f"RLS validation failed: policy {policy!r} on resource {resource!r} "
            "was resolved but never applied"
        )
        details: Dict[str, Any] = {"resource": resource, "policy": policy}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="RLS_NOT_APPLIED",
            status_code=500,
            details=details,
            user_message="Internal security check failed",
        )
