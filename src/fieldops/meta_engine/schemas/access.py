from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, field_validator


class Operation(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"


CRUD_OPERATIONS = (
    Operation.create,
    Operation.read,
    Operation.update,
    Operation.delete,
)


class RLSPolicy(str, Enum):
    all_records = "all_records"
    own_record_only = "own_record_only"
    own_work_orders_only = "own_work_orders_only"
    assigned_work_orders_only = "assigned_work_orders_only"
    own_invoices_only = "own_invoices_only"
    own_contracts_only = "own_contracts_only"
    deny_all = "deny_all"
    public_resource = "public_resource"
    parent_entity_access = "parent_entity_access"


class SortOrder(str, Enum):
    asc = "ASC"
    desc = "DESC"

    @classmethod
    def parse(cls, value: Any) -> Optional["SortOrder"]:
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


class QueryOptions(BaseModel):
    """
    List request as handed over by the routing layer.

    Values are kept raw: the query builder drops anything that is not
    whitelisted instead of rejecting it, and values of the wrong shape fall back
    to their defaults here.
    """

    search: Optional[str] = Field(default=None, description="Free-text search term")
    filters: Dict[str, Any] = Field(
        default_factory=dict,
        description="Filter map, e.g. {'status': 'active', 'priority': {'gt': 2}}",
    )
    sort_by: Optional[str] = Field(default=None, description="Sort field")
    sort_order: Optional[str] = Field(default=None, description="asc|desc")
    page: int = Field(default=1, description="Page number (1-based)")
    limit: Optional[int] = Field(default=None, description="Items per page")
    include_inactive: bool = Field(
        default=False, description="Include rows with is_active = false"
    )

    @field_validator("search", "sort_by", "sort_order", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        return value if isinstance(value, str) else None

    @field_validator("filters", mode="before")
    @classmethod
    def _coerce_filters(cls, value: Any) -> Dict[str, Any]:
        return dict(value) if isinstance(value, Mapping) else {}

    @field_validator("include_inactive", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_VALUES
        if isinstance(value, int):
            return value == 1
        return False

    @field_validator("page", mode="before")
    @classmethod
    def _coerce_page(cls, value: Any) -> int:
        try:
            page = int(value)
        except (TypeError, ValueError, OverflowError):
            return 1
        return page if page >= 1 else 1

    @field_validator("limit", mode="before")
    @classmethod
    def _coerce_limit(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError, OverflowError):
            return None

    def page_window(self, *, default_limit: int, max_limit: int) -> tuple[int, int]:
        """Return ``(limit, offset)`` with the limit clamped to ``1..max_limit``."""
        limit = self.limit if self.limit is not None else default_limit
        limit = max(1, min(limit, max_limit))
        return limit, (self.page - 1) * limit
