"""
Tests for BackendGateway and its payload builders.

Tests cover:
- Identification payloads and profile parsing (fresh and cached)
- Operator-facing error messages
- Payment and service completion payload rules
- At-most-once completion reporting
"""

from dataclasses import replace
from datetime import datetime, timezone

import pytest

from swapflow.core.rounding import PaymentSkipReason, SwapPaymentInput, calculate_swap_payment
from swapflow.core.topics import response_for
from swapflow.execution.backend_gateway import (
    CUSTOMER_FIRST_TIME,
    CUSTOMER_RETURNING,
    TIMEOUT_MESSAGE,
    BackendGateway,
    PaymentPayloadError,
    build_battery_assignment_payload,
    build_identify_payload,
    build_payment_and_service_payload,
    skip_payment_reference,
)
from swapflow.execution.correlation import CorrelationClient, CorrelationStatus

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _cost(new_wh=45000, old_wh=10000, rate=120, quota_total=0, quota_used=0):
    return calculate_swap_payment(SwapPaymentInput(new_wh, old_wh, rate, quota_total, quota_used))


def _completion_payload(actor, cost, customer_type=CUSTOMER_RETURNING, old="BAT-OLD-1"):
    return build_payment_and_service_payload(
        plan_id="SUB-1",
        actor=actor,
        customer_type=customer_type,
        cost=cost,
        new_battery_id="BAT-NEW-9",
        old_battery_id=old,
        service_id="service-electricity-ke",
        payment_reference="RCPT-1",
        payment_method="MPESA",
        correlation_id="att-checkout-payment-1",
        idempotency_key="swap-sess-1:payment_and_service",
        now=NOW,
    )


@pytest.fixture
def gateway(broker):
    return BackendGateway(CorrelationClient(broker, timeout_sec=1))


class TestPayloads:
    def test_identify_payload(self, attendant):
        payload = build_identify_payload("SUB-1", "scan", attendant, "cid-1", now=NOW)
        assert payload == {
            "timestamp": "2026-03-01T08:00:00.000Z",
            "plan_id": "SUB-1",
            "correlation_id": "cid-1",
            "actor": {"type": "attendant", "id": "att-1"},
            "data": {
                "action": "IDENTIFY_CUSTOMER",
                "qr_code_data": "QR_CUSTOMER_SUB-1",
                "attendant_station": "STATION_7",
            },
        }
        manual = build_identify_payload("SUB-1", "manual", attendant, "cid-1", now=NOW)
        assert manual["data"]["qr_code_data"] == "MANUAL_SUB-1"

    def test_paid_swap_includes_payment(self, attendant):
        data = _completion_payload(attendant, _cost())["data"]
        assert data["action"] == "REPORT_PAYMENT_AND_SERVICE_COMPLETION"
        assert data["idempotency_key"] == "swap-sess-1:payment_and_service"
        assert data["service_data"] == {
            "new_battery_id": "BAT-NEW-9",
            "old_battery_id": "BAT-OLD-1",
            "energy_transferred": 35.0,
            "service_duration": 240,
        }
        assert data["payment_data"] == {
            "service_id": "service-electricity-ke",
            "payment_amount": 4200.0,
            "payment_reference": "RCPT-1",
            "payment_method": "MPESA",
            "payment_type": "TOP_UP",
        }

    def test_quota_credit_has_no_payment(self, attendant):
        data = _completion_payload(attendant, _cost(quota_total=100))["data"]
        assert "payment_data" not in data

    def test_zero_cost_rounding_reports_payment(self, attendant):
        data = _completion_payload(attendant, _cost(10010, 10000, 50))["data"]
        assert data["payment_data"]["payment_method"] == "ZERO_COST_ROUNDING"
        assert data["payment_data"]["payment_amount"] == 0.5

    def test_first_time_is_deposit_without_old_battery(self, attendant):
        data = _completion_payload(attendant, _cost(old_wh=0), CUSTOMER_FIRST_TIME, old=None)["data"]
        assert data["payment_data"]["payment_type"] == "DEPOSIT"
        assert "old_battery_id" not in data["service_data"]
        assert data["service_data"]["energy_transferred"] == 45.0

    def test_negative_energy_reported_as_zero(self, attendant):
        data = _completion_payload(attendant, _cost(5000, 10000))["data"]
        assert data["service_data"]["energy_transferred"] == 0.0

    def test_returning_without_old_battery_rejected(self, attendant):
        with pytest.raises(PaymentPayloadError):
            _completion_payload(attendant, _cost(), CUSTOMER_RETURNING, old=None)

    def test_battery_assignment_in_kwh(self, salesperson):
        payload = build_battery_assignment_payload(
            plan_id="SUB-9", actor=salesperson, battery_id="BAT-1",
            energy_wh=45678, correlation_id="sales-svc-1", now=NOW,
        )
        assert payload["actor"] == {"type": "salesperson", "id": "sales-1"}
        assert payload["data"]["service_data"]["energy_transferred"] == 45.68
        assert "payment_data" not in payload["data"]

    def test_station_falls_back_to_actor_id(self, attendant):
        data = _completion_payload(replace(attendant, station=None), _cost())["data"]
        assert data["attendant_station"] == "STATION_att-1"

    def test_skip_reference(self):
        assert skip_payment_reference(PaymentSkipReason.QUOTA_CREDIT, 1700) == "QUOTA_1700"
        assert skip_payment_reference(PaymentSkipReason.ZERO_COST_ROUNDING, 1700) == "ZERO_COST_1700"


class TestIdentify:
    @pytest.mark.asyncio
    async def test_returning_customer(self, gateway, backend, attendant):
        outcome = await gateway.identify_customer(" SUB-1 ", "scan", attendant)
        assert outcome.success is True
        profile = outcome.profile
        assert profile.customer_type == CUSTOMER_RETURNING
        assert profile.is_returning is True
        assert profile.current_battery_id == "BAT-OLD-1"
        assert profile.subscription_code == "SUB-1"
        assert profile.rate == 120.0
        assert profile.currency == "KES"
        assert profile.electricity_service_id == "service-electricity-ke"
        assert profile.correlation_id.startswith("att-customer-id-")

        subject, payload = backend.requests[0]
        assert subject == "emit/uxi/attendant/plan/SUB-1/identify_customer"
        assert payload["data"]["qr_code_data"] == "QR_CUSTOMER_SUB-1"

    @pytest.mark.asyncio
    async def test_first_time_customer(self, gateway, backend, attendant):
        backend.current_asset = None
        backend.energy_quota = 50
        backend.energy_used = 10
        outcome = await gateway.identify_customer("SUB-2", "manual", attendant)
        assert outcome.profile.customer_type == CUSTOMER_FIRST_TIME
        assert outcome.profile.energy_quota_total == 50
        assert outcome.profile.energy_quota_used == 10

    @pytest.mark.asyncio
    async def test_not_found(self, gateway, backend, attendant):
        backend.identify_success = False
        backend.identify_signals = ["CUSTOMER_NOT_FOUND"]
        outcome = await gateway.identify_customer("SUB-X", "scan", attendant)
        assert outcome.success is False
        assert outcome.result.status is CorrelationStatus.REJECTED
        assert outcome.error == "Customer not found. Please check the subscription ID."

    @pytest.mark.asyncio
    async def test_missing_success_signal_rejected(self, gateway, backend, attendant):
        backend.identify_signals = []
        outcome = await gateway.identify_customer("SUB-1", "scan", attendant)
        assert outcome.success is False

    @pytest.mark.asyncio
    async def test_timeout(self, broker, backend, attendant):
        backend.silent = True
        gateway = BackendGateway(CorrelationClient(broker, timeout_sec=0.05))
        outcome = await gateway.identify_customer("SUB-1", "scan", attendant)
        assert outcome.result.status is CorrelationStatus.TIMEOUT
        assert outcome.error == TIMEOUT_MESSAGE

    @pytest.mark.asyncio
    async def test_cached_identification(self, broker, attendant):
        async def respond(subject, payload):
            return [(response_for(subject), {
                "correlation_id": payload["correlation_id"],
                "data": {
                    "success": True,
                    "signals": ["IDEMPOTENT_OPERATION_DETECTED"],
                    "metadata": {"cached_result": {
                        "customer_id": "CUST-3",
                        "service_plan_data": {
                            "servicePlanId": "SUB-3",
                            "serviceStates": [{"service_id": "service-electricity-x", "used": 0, "quota": 0}],
                        },
                    }},
                },
            })]

        broker.add_responder("emit/uxi/+/plan/+/identify_customer", respond)
        gateway = BackendGateway(CorrelationClient(broker, timeout_sec=1), default_rate=150)
        outcome = await gateway.identify_customer("SUB-3", "scan", attendant)
        assert outcome.success is True
        assert outcome.profile.idempotent is True
        assert outcome.profile.customer_id == "CUST-3"
        assert outcome.profile.customer_type == CUSTOMER_FIRST_TIME
        assert outcome.profile.rate == 150.0

    @pytest.mark.asyncio
    async def test_missing_plan_data(self, broker, attendant):
        async def respond(subject, payload):
            return [(response_for(subject), {
                "correlation_id": payload["correlation_id"],
                "data": {"success": True, "signals": ["CUSTOMER_IDENTIFIED_SUCCESS"], "metadata": {}},
            })]

        broker.add_responder("emit/uxi/+/plan/+/identify_customer", respond)
        gateway = BackendGateway(CorrelationClient(broker, timeout_sec=1))
        outcome = await gateway.identify_customer("SUB-3", "scan", attendant)
        assert outcome.success is False
        assert outcome.error == "Invalid customer data received"


class TestReportPaymentAndService:
    async def _report(self, gateway, actor, session_id="swap-sess-1", **overrides):
        kwargs = dict(
            plan_id="SUB-1",
            actor=actor,
            customer_type=CUSTOMER_RETURNING,
            cost=_cost(),
            new_battery_id="BAT-NEW-9",
            old_battery_id="BAT-OLD-1",
            service_id="service-electricity-ke",
            payment_reference="RCPT-1",
        )
        kwargs.update(overrides)
        return await gateway.report_payment_and_service(session_id, **kwargs)

    @pytest.mark.asyncio
    async def test_success_with_transaction_id(self, gateway, backend, attendant):
        report = await self._report(gateway, attendant)
        assert report.success is True
        assert report.transaction_id == "TX-1001"
        subject, payload = backend.requests[-1]
        assert subject == "emit/uxi/attendant/plan/SUB-1/payment_and_service"
        assert payload["correlation_id"].startswith("att-checkout-payment-")
        assert payload["data"]["idempotency_key"] == "swap-sess-1:payment_and_service"

    @pytest.mark.asyncio
    async def test_double_submit_reports_once(self, gateway, backend, attendant):
        first = await self._report(gateway, attendant)
        second = await self._report(gateway, attendant)
        assert first.success and second.success
        assert second.result.replayed is True
        assert len(backend.requests_for("payment_and_service")) == 1

    @pytest.mark.asyncio
    async def test_idempotent_backend_response(self, gateway, backend, attendant):
        backend.completion_signals = ["IDEMPOTENT_OPERATION_DETECTED"]
        report = await self._report(gateway, attendant)
        assert report.success is True
        assert report.result.is_idempotent is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flag", [False, None])
    async def test_idempotent_response_accepted_whatever_the_flag(self, gateway, backend, attendant, flag):
        """An already-applied payment must never read as a failure the operator could retry."""
        backend.completion_success = flag
        backend.completion_signals = ["IDEMPOTENT_OPERATION_DETECTED"]
        report = await self._report(gateway, attendant)
        assert report.success is True
        assert report.result.is_idempotent is True
        assert report.error is None

    @pytest.mark.asyncio
    async def test_rejected_with_action_required(self, gateway, backend, attendant):
        backend.completion_success = False
        backend.completion_signals = ["QUOTA_EXHAUSTED"]
        backend.completion_metadata = {"action_required": "Top up the account"}
        report = await self._report(gateway, attendant)
        assert report.success is False
        assert report.error == (
            "Customer quota exhausted. Payment required before service can proceed. Top up the account"
        )

    @pytest.mark.asyncio
    async def test_failure_can_be_retried(self, gateway, backend, attendant):
        backend.completion_success = False
        backend.completion_signals = ["SERVICE_COMPLETION_FAILED"]
        backend.completion_metadata = {"reason": "Ledger busy"}
        failed = await self._report(gateway, attendant)
        assert failed.error == "Ledger busy"

        backend.completion_success = True
        backend.completion_signals = ["SERVICE_COMPLETED"]
        backend.completion_metadata = {"service_result": {"transaction_id": "TX-2"}}
        retried = await self._report(gateway, attendant)
        assert retried.success is True
        assert retried.transaction_id == "TX-2"
        assert len(backend.requests_for("payment_and_service")) == 2

    @pytest.mark.asyncio
    async def test_battery_assignment_uses_attendant_topic(self, gateway, backend, salesperson):
        report = await gateway.report_battery_assignment(
            "sales-sess-1", plan_id="SUB-9", actor=salesperson, battery_id="BAT-1", energy_wh=40000,
        )
        assert report.success is True
        subject, payload = backend.requests[-1]
        assert subject == "emit/uxi/attendant/plan/SUB-9/payment_and_service"
        assert payload["correlation_id"].startswith("sales-svc-")
        assert payload["data"]["idempotency_key"] == "sales-sess-1:battery_assignment"
