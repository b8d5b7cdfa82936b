"""
Tests for RegistrationOrchestrator.

The HTTP calls go to an AsyncMock BackendApi; the battery assignment goes
over the InMemoryBroker to the SimulatedBackend.
"""

from unittest.mock import AsyncMock

import pytest

from swapflow.execution.backend_gateway import BackendGateway
from swapflow.execution.correlation import CorrelationClient
from swapflow.infra.backend_api import BackendApi, BackendApiError, BackendUnavailableError
from swapflow.orchestrator.base import BatteryScan, StepKind
from swapflow.orchestrator.registration import (
    RegistrationOrchestrator,
    billing_cycle,
    normalize_phone,
    validate_customer_form,
    vehicle_assignment_result,
)
from swapflow.state import state_machine
from swapflow.state.session import StepStatus
from swapflow.state.session_manager import SessionManager, SessionManagerConfig
from swapflow.state.session_store import FileSessionStore
from swapflow.state.state_machine import SessionMode
from swapflow.state.step_data import CustomerFormData, PackageSelection, PlanSelection

FORM = CustomerFormData(
    first_name="Amina",
    last_name="Otieno",
    phone="0712 345 678",
    email="amina@example.com",
    street="Moi Avenue 12",
    city="Nairobi",
    zip="00100",
)
PACKAGE = PackageSelection(package_id="pkg-1", name="Starter", price=1000, currency="KES")
PLAN = PlanSelection(plan_id="plan-9", name="Weekly Swap", price=500, period="Weekly", currency="KES")


def _paid(paid, expected=1500):
    return {
        "receipt": "RCPT-1",
        "amount_paid": paid,
        "amount_expected": expected,
        "amount_remaining": expected - paid,
        "subscription_code": "SUB-REG-1",
    }


@pytest.fixture
def api():
    api = AsyncMock(spec=BackendApi)
    api.register_customer.return_value = {
        "success": True,
        "session": {"token": "tok", "user": {"id": 55, "partner_id": 77}},
    }
    api.purchase_subscription.return_value = {
        "subscription": {
            "id": 901,
            "subscription_code": "SUB-REG-1",
            "product_name": "Weekly Swap",
            "price_at_signup": 1500,
            "currency": "KES",
        },
    }
    api.confirm_payment.return_value = _paid(1500)
    api.assign_vehicle.return_value = {
        "service_ids": ["service-fleet-7"],
        "updated_count": 1,
        "signals": ["ASSET_ASSIGNED"],
        "metadata": "{}",
    }
    return api


@pytest.fixture
def store(tmp_path):
    return FileSessionStore(str(tmp_path / "sessions"))


@pytest.fixture
async def make_orchestrator(store, api, broker, backend, salesperson):
    created = []

    def make(vehicle_step=False):
        gateway = BackendGateway(CorrelationClient(broker, timeout_sec=0.5))
        manager = SessionManager(store, SessionManagerConfig(autosave_delay_ms=60_000))
        orch = RegistrationOrchestrator(manager, store, api, gateway, salesperson, vehicle_step=vehicle_step)
        created.append(orch)
        return orch

    yield make
    for orch in created:
        orch.discard()


@pytest.fixture
def orch(make_orchestrator):
    return make_orchestrator()


async def _to_payment(orch):
    assert (await orch.submit_customer_form(FORM)).success
    assert (await orch.select_package(PACKAGE)).success
    assert (await orch.select_plan(PLAN)).success
    result = await orch.confirm_preview()
    assert result.success
    return result


class TestHelpers:
    def test_validate_customer_form(self):
        assert validate_customer_form(FORM) == {}
        errors = validate_customer_form(CustomerFormData(first_name="", last_name="X", phone="12", email="nope"))
        assert errors["first_name"] == "First name is required"
        assert errors["email"] == "Please enter a valid email address"
        assert errors["phone"] == "Invalid phone number"
        assert errors["street"] == "Street address is required"

    def test_normalize_phone(self):
        assert normalize_phone("0712 345 678") == "254712345678"
        assert normalize_phone("+254 712 345 678") == "254712345678"
        assert normalize_phone("712345678") == "254712345678"

    def test_billing_cycle(self):
        assert billing_cycle("Weekly") == (1, "week")
        assert billing_cycle("Monthly plan") == (1, "month")
        assert billing_cycle("Quarterly") == (3, "month")
        assert billing_cycle("Yearly") == (1, "year")
        assert billing_cycle("") == (1, "month")


class TestRegistrationFlow:
    @pytest.mark.asyncio
    async def test_full_registration(self, orch, api, backend, store):
        result = await orch.submit_customer_form(FORM)
        assert result.step == 2
        api.register_customer.assert_awaited_once_with(
            "Amina Otieno",
            "amina@example.com",
            "254712345678",
            street="Moi Avenue 12",
            city="Nairobi",
            zip_code="00100",
            company_id=14,
        )
        assert orch.session.recovery_summary.customer_name == "Amina Otieno"
        assert orch.manager.reference_id is None

        await orch.select_package(PACKAGE)
        result = await orch.select_plan(PLAN)
        assert result.step == 4
        assert orch.session.recovery_summary.amount_due == 1500.0

        result = await orch.confirm_preview()
        assert result.step == 5
        payload = api.purchase_subscription.await_args.args[0]
        assert payload["customer_id"] == 77
        assert payload["product_id"] == "plan-9"
        assert (payload["cycle_interval"], payload["cycle_unit"]) == (1, "week")
        assert orch.manager.reference_id == 1
        assert orch.subscription_code == "SUB-REG-1"

        result = await orch.confirm_payment("RCPT-1")
        assert result.step == 6
        api.confirm_payment.assert_awaited_once_with("SUB-REG-1", "RCPT-1", 77)

        result = await orch.assign_battery(BatteryScan("BAT-1", 45678))
        assert result.success is True
        assert result.step == 7
        assert state_machine.is_completed(orch.session)

        data = backend.requests_for("payment_and_service")[0]["data"]
        assert data["service_data"]["new_battery_id"] == "BAT-1"
        assert data["service_data"]["energy_transferred"] == 45.68
        assert "payment_data" not in data

        stored = await store.load(1)
        assert state_machine.is_completed(stored)
        done = state_machine.read_step(stored, 7)
        assert done.subscription_code == "SUB-REG-1"
        assert done.battery_id == "BAT-1"

    @pytest.mark.asyncio
    async def test_vehicle_step(self, make_orchestrator, api):
        orch = make_orchestrator(vehicle_step=True)
        await _to_payment(orch)
        await orch.confirm_payment("RCPT-1")
        result = await orch.assign_battery(BatteryScan("BAT-1", 40000))
        assert result.step == 7
        assert not state_machine.is_completed(orch.session)

        assert (await orch.assign_vehicle("  ")).kind is StepKind.VALIDATION
        result = await orch.assign_vehicle("VH-22")
        assert result.step == 8
        assert state_machine.is_completed(orch.session)
        assert result.kind is StepKind.OK
        vehicle = state_machine.read_step(orch.session, 7)
        assert vehicle.vehicle_id == "VH-22"
        assert vehicle.service_ids == ["service-fleet-7"]
        assert vehicle.correlation_id.startswith("sales-vehicle-assign-")

        plan_id, vehicle_id, cid = api.assign_vehicle.await_args.args
        assert (plan_id, vehicle_id) == ("SUB-REG-1", "VH-22")
        assert cid == vehicle.correlation_id

    @pytest.mark.asyncio
    async def test_vehicle_not_enabled(self, orch):
        await _to_payment(orch)
        result = await orch.assign_vehicle("VH-22")
        assert result.message == "Vehicle assignment is not enabled"


class TestVehicleAssignment:
    """The vehicle step is recorded with the backend before the registration completes."""

    async def _to_vehicle(self, make_orchestrator):
        orch = make_orchestrator(vehicle_step=True)
        await _to_payment(orch)
        await orch.confirm_payment("RCPT-1")
        assert (await orch.assign_battery(BatteryScan("BAT-1", 40000))).step == 7
        return orch

    @pytest.mark.asyncio
    async def test_error_signal_blocks_completion(self, make_orchestrator, api):
        orch = await self._to_vehicle(make_orchestrator)
        api.assign_vehicle.return_value = {
            "service_ids": [],
            "updated_count": 0,
            "signals": ["ASSET_VALIDATION_FAILED"],
            "metadata": '{"reason": "Vehicle already assigned to another plan"}',
        }
        result = await orch.assign_vehicle("VH-22")
        assert result.success is False
        assert result.kind is StepKind.REJECTED
        assert result.message == "Vehicle already assigned to another plan"
        assert orch.current_step == 7
        assert orch.session.status_of(7) is StepStatus.FAILED
        assert not state_machine.is_completed(orch.session)

    @pytest.mark.asyncio
    async def test_already_assigned_completes_as_idempotent(self, make_orchestrator, api):
        orch = await self._to_vehicle(make_orchestrator)
        api.assign_vehicle.return_value = {
            "service_ids": ["service-fleet-7"],
            "updated_count": 0,
            "signals": ["IDEMPOTENT_OPERATION_DETECTED"],
            "metadata": None,
        }
        result = await orch.assign_vehicle("VH-22")
        assert result.success is True
        assert result.kind is StepKind.IDEMPOTENT
        assert state_machine.is_completed(orch.session)
        assert state_machine.read_step(orch.session, 7).idempotent is True

    @pytest.mark.asyncio
    async def test_backend_unavailable_is_retryable(self, make_orchestrator, api):
        orch = await self._to_vehicle(make_orchestrator)
        api.assign_vehicle.side_effect = BackendUnavailableError("POST /api/asset-assignment/current-asset failed")
        result = await orch.assign_vehicle("VH-22")
        assert result.kind is StepKind.TRANSPORT
        assert result.retryable is True
        assert not state_machine.is_completed(orch.session)

        api.assign_vehicle.side_effect = None
        result = await orch.assign_vehicle("VH-22")
        assert result.success is True
        assert state_machine.is_completed(orch.session)
        assert api.assign_vehicle.await_count == 2

    def test_result_without_signals_counts_as_assigned(self):
        result = vehicle_assignment_result({"updated_count": 1, "metadata": "not json"}, "cid-1")
        assert result.success is True
        assert result.is_idempotent is False
        assert result.metadata == {}


class TestRegistrationFailures:
    @pytest.mark.asyncio
    async def test_invalid_form_not_sent(self, orch, api):
        result = await orch.submit_customer_form(CustomerFormData(first_name="A", last_name="B", phone="1"))
        assert result.kind is StepKind.VALIDATION
        api.register_customer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_backend_unavailable_is_retryable(self, orch, api):
        api.register_customer.side_effect = BackendUnavailableError("POST /api/auth/register failed")
        result = await orch.submit_customer_form(FORM)
        assert result.kind is StepKind.TRANSPORT
        assert result.retryable is True

    @pytest.mark.asyncio
    async def test_backend_rejection(self, orch, api):
        api.register_customer.side_effect = BackendApiError("Email already registered", status_code=400)
        result = await orch.submit_customer_form(FORM)
        assert result.kind is StepKind.REJECTED
        assert result.message == "Email already registered"
        assert result.retryable is False

    @pytest.mark.asyncio
    async def test_registration_without_session(self, orch, api):
        api.register_customer.return_value = {"success": True}
        result = await orch.submit_customer_form(FORM)
        assert result.message == "Registration failed - no session returned"

    @pytest.mark.asyncio
    async def test_purchase_without_subscription_code(self, orch, api):
        api.purchase_subscription.return_value = {"subscription": {"id": 901}}
        await orch.submit_customer_form(FORM)
        await orch.select_package(PACKAGE)
        await orch.select_plan(PLAN)
        result = await orch.confirm_preview()
        assert result.success is False
        assert result.message == "Subscription purchase failed"
        assert orch.manager.reference_id is None

    @pytest.mark.asyncio
    async def test_partial_payment_keeps_step_open(self, orch, api):
        await _to_payment(orch)
        api.confirm_payment.return_value = _paid(1000)
        result = await orch.confirm_payment("RCPT-1")
        assert result.success is False
        assert result.retryable is True
        assert result.message == "Incomplete payment: KES 1,000 paid of KES 1,500. Remaining: KES 500"
        assert orch.current_step == 5
        assert orch.session.status_of(5) is StepStatus.FAILED

        api.confirm_payment.return_value = _paid(1500)
        result = await orch.confirm_payment("RCPT-1")
        assert result.success is True
        assert result.step == 6

    @pytest.mark.asyncio
    async def test_battery_report_rejected(self, orch, backend):
        await _to_payment(orch)
        await orch.confirm_payment("RCPT-1")
        backend.completion_success = False
        backend.completion_signals = ["ASSET_VALIDATION_FAILED"]
        backend.completion_metadata = {}
        result = await orch.assign_battery(BatteryScan("BAT-1", 40000))
        assert result.success is False
        assert result.message == "Battery validation failed. Please try a different battery."
        assert orch.current_step == 6


class TestRegistrationNavigation:
    @pytest.mark.asyncio
    async def test_cannot_go_back_past_purchase(self, orch):
        await _to_payment(orch)
        result = orch.go_back(3)
        assert result.success is False
        assert result.message == "Subscription can no longer be changed"

    @pytest.mark.asyncio
    async def test_go_back_before_purchase(self, orch):
        await orch.submit_customer_form(FORM)
        await orch.select_package(PACKAGE)
        await orch.select_plan(PLAN)
        assert orch.go_back(1).success is False
        assert orch.go_back(2).success is True
        assert (await orch.select_package(PACKAGE)).success

    @pytest.mark.asyncio
    async def test_resume_after_purchase(self, make_orchestrator, api):
        first = make_orchestrator()
        await _to_payment(first)
        await first.manager.flush_now()
        reference_id = first.manager.reference_id
        first.discard()

        second = make_orchestrator()
        assert await second.resume(reference_id) is SessionMode.RESUME
        assert second.current_step == 5
        assert second.subscription_code == "SUB-REG-1"
        result = await second.confirm_payment("RCPT-1")
        assert result.success is True
        api.confirm_payment.assert_awaited_with("SUB-REG-1", "RCPT-1", 77)
