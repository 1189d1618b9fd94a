from __future__ import annotations

from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from fieldops.exceptions import (
    AuthorizationDenied,
    ConfigurationError,
    EntityNotFound,
    RLSBypassError,
)
from fieldops.meta_engine.schemas.access import Operation, QueryOptions, RLSPolicy
from fieldops.meta_engine.services.access_pipeline import (
    AccessPipeline,
    Actor,
    RequestContext,
)
from fieldops.meta_engine.services.entity_service import (
    DataAccessRequest,
    DataAccessResult,
    SqlEntityStore,
)
from fieldops.security.rls.policies import RLSPolicyResolver


class FakeStore:
    """Records every hand-off and answers with a fixed result."""

    def __init__(self, rows=None, rls_applied: bool = True, total: Optional[int] = None):
        self.rows = rows if rows is not None else []
        self.rls_applied = rls_applied
        self.total = total
        self.calls: List[tuple] = []
        self.commit = MagicMock()
        self.rollback = MagicMock()

    def _answer(self, action: str, request: DataAccessRequest) -> DataAccessResult:
        self.calls.append((action, request))
        return DataAccessResult(rows=list(self.rows), rls_applied=self.rls_applied, total=self.total)

    def find_all(self, request):
        return self._answer("find_all", request)

    def find_by_id(self, request):
        return self._answer("find_by_id", request)

    def create(self, request):
        return self._answer("create", request)

    def update(self, request):
        return self._answer("update", request)

    def delete(self, request):
        return self._answer("delete", request)


@pytest.fixture
def pipeline(access) -> AccessPipeline:
    return access.pipeline


CUSTOMER = Actor(id=7, role="customer")
TECHNICIAN = Actor(id=3, role="technician")
DISPATCHER = Actor(id=2, role="dispatcher")
ADMIN = Actor(id=1, role="admin")


class TestStages:
    def test_extract_entity_accepts_route_aliases(self, pipeline):
        context = pipeline.extract_entity("work-orders")
        assert context.entity_name == "work_order"
        assert context.rls_resource == "work_orders"

    def test_extract_unknown_entity(self, pipeline):
        with pytest.raises(EntityNotFound):
            pipeline.extract_entity("spaceships")

    def test_attach_unknown_entity_is_configuration_error(self, pipeline):
        with pytest.raises(ConfigurationError):
            pipeline.attach_entity("spaceship")

    def test_check_permission_needs_entity(self, pipeline):
        with pytest.raises(ConfigurationError):
            pipeline.check_permission(RequestContext(), ADMIN, Operation.read)

    def test_check_permission_without_role(self, pipeline):
        context = pipeline.extract_entity("customers")
        with pytest.raises(AuthorizationDenied) as exc:
            pipeline.check_permission(context, Actor(id=1, role=None), Operation.read)
        assert exc.value.details["reason"] == "no_role"

    def test_check_permission_denied_names_minimum_role(self, pipeline):
        context = pipeline.extract_entity("invoices")
        with pytest.raises(AuthorizationDenied) as exc:
            pipeline.check_permission(context, CUSTOMER, Operation.delete)
        assert exc.value.status_code == 403
        assert exc.value.details["minimum_role"] == "manager"
        assert exc.value.user_message.endswith("Minimum role required: manager")

    def test_resolve_rls_requires_permission_stage(self, pipeline):
        with pytest.raises(ConfigurationError):
            pipeline.resolve_rls(pipeline.extract_entity("customers"))

    def test_resolve_rls(self, pipeline):
        context = pipeline.check_permission(
            pipeline.extract_entity("contracts"), TECHNICIAN, Operation.read
        )
        assert pipeline.resolve_rls(context).rls_policy is RLSPolicy.deny_all

    def test_null_policy_is_configuration_error(self, access):
        pipeline = AccessPipeline(
            access.registry, access.matrix, RLSPolicyResolver({}), access.schemas
        )
        with pytest.raises(ConfigurationError):
            pipeline.list_records("customers", ADMIN, FakeStore())

    def test_later_stages_require_rls(self, pipeline):
        context = pipeline.check_permission(
            pipeline.extract_entity("customers"), ADMIN, Operation.create
        )
        with pytest.raises(ConfigurationError):
            pipeline.validate_payload(context, {"email": "x@example.com"})
        with pytest.raises(ConfigurationError):
            pipeline.build_list_query(context, QueryOptions())
        with pytest.raises(ConfigurationError):
            pipeline.hand_off(context, FakeStore())


class TestListRecords:
    def test_passes_query_and_window_to_store(self, pipeline):
        store = FakeStore(rows=[{"id": 1, "email": "a@example.com", "password": "x"}], total=11)
        outcome = pipeline.list_records(
            "customers",
            ADMIN,
            store,
            {"search": "a@", "status": "active", "page": "2", "limit": "5"},
        )
        assert outcome.ok and outcome.status_code == 200
        action, request = store.calls[0]
        assert action == "find_all"
        assert request.limit == 5 and request.offset == 5
        assert request.rls_policy is RLSPolicy.all_records
        assert "status = $5" in request.query.where_clause
        assert outcome.data == {
            "items": [{"id": 1, "email": "a@example.com"}],
            "total": 11,
            "page": 2,
            "limit": 5,
        }

    def test_technician_on_contracts_sees_nothing(self, pipeline):
        session = MagicMock()
        outcome = pipeline.list_records(
            "contracts",
            TECHNICIAN,
            SqlEntityStore(session),
            {"search": "CTR", "status": "active", "sort_by": "end_date"},
        )
        assert outcome.ok
        assert outcome.data["items"] == []
        assert outcome.data["total"] == 0
        session.execute.assert_not_called()

    def test_malformed_query_params_are_tolerated(self, pipeline):
        store = FakeStore(rows=[], total=0)
        outcome = pipeline.list_records(
            "users",
            ADMIN,
            store,
            {"includeInactive": "maybe", "search": 42, "sortBy": ["email"], "page": "x"},
        )
        assert outcome.ok and outcome.status_code == 200
        _, request = store.calls[0]
        assert request.query.where_clause == "is_active = $1"
        assert request.query.order_by == "created_at DESC"

    def test_unapplied_rls_raises(self, pipeline):
        with pytest.raises(RLSBypassError):
            pipeline.list_records("work_orders", CUSTOMER, FakeStore(rls_applied=False))

    def test_unknown_entity_outcome(self, pipeline):
        outcome = pipeline.list_records("spaceships", ADMIN, FakeStore())
        assert outcome.ok is False
        assert outcome.status_code == 404
        assert outcome.to_dict()["error"]["code"] == "NOT_FOUND"


class TestWriteOperations:
    def test_create_denied_by_permission(self, pipeline):
        store = FakeStore()
        outcome = pipeline.create_record("technicians", CUSTOMER, store, {"email": "t@example.com"})
        assert outcome.ok is False
        assert outcome.status_code == 403
        assert store.calls == []
        with pytest.raises(AuthorizationDenied):
            outcome.raise_for_error()

    def test_create_filters_payload_before_hand_off(self, pipeline):
        store = FakeStore(rows=[{"id": 10, "name": "Leak", "customer_id": 7}])
        outcome = pipeline.create_record(
            "work_orders",
            CUSTOMER,
            store,
            {"customer_id": 7, "name": "Leak", "status": "completed"},
        )
        assert outcome.status_code == 201
        _, request = store.calls[0]
        assert dict(request.payload) == {"customer_id": 7, "name": "Leak"}
        assert request.rls_policy is RLSPolicy.own_work_orders_only
        assert request.actor_id == 7

    def test_create_validation_failure(self, pipeline):
        store = FakeStore()
        outcome = pipeline.create_record("work_orders", CUSTOMER, store, {"name": "Leak"})
        assert outcome.status_code == 422
        assert outcome.error.details["missing_fields"] == ["customer_id"]
        assert store.calls == []

    def test_create_refused_by_rls(self, pipeline):
        outcome = pipeline.create_record(
            "work_orders", CUSTOMER, FakeStore(rows=[]), {"customer_id": 8}
        )
        assert outcome.status_code == 403
        assert outcome.error.details["reason"] == "rls_denied"

    def test_update_without_allowed_fields(self, pipeline):
        outcome = pipeline.update_record(
            "users", CUSTOMER, FakeStore(), 7, {"email": "new@example.com", "role": "admin"}
        )
        assert outcome.status_code == 422
        assert "first_name, last_name, phone" in outcome.error.message

    def test_update_missing_row(self, pipeline):
        outcome = pipeline.update_record(
            "work_orders", DISPATCHER, FakeStore(rows=[]), 99, {"priority": "high"}
        )
        assert outcome.status_code == 404

    def test_get_record_filters_readable_fields(self, pipeline):
        store = FakeStore(rows=[{"id": 3, "email": "t@example.com", "hourly_rate": 90}])
        outcome = pipeline.get_record("technicians", CUSTOMER, store, 3)
        assert outcome.data == {"id": 3, "email": "t@example.com"}
        assert store.calls[0][0] == "find_by_id"
        assert store.calls[0][1].record_id == 3

    def test_delete(self, pipeline):
        store = FakeStore(rows=[{"id": 5}])
        outcome = pipeline.delete_record("invoices", ADMIN, store, 5)
        assert outcome.ok
        assert outcome.data == {"id": 5, "deleted": True}
        assert store.calls[0][0] == "delete"
