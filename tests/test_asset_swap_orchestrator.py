"""
Integration tests for AssetSwapOrchestrator.

Runs the swap workflow end to end over an InMemoryBroker answered by the
SimulatedBackend, persisting to a FileSessionStore.

Tests cover:
- Returning and first-time customer flows
- Battery mismatch and retry
- Payment skip by quota credit and by zero-cost rounding
- Timeouts, rejected completions and version conflicts
- Resume, review and expiry of stored sessions
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from swapflow.core.json_utils import dumps, loads
from swapflow.core.rounding import PaymentSkipReason
from swapflow.execution.backend_gateway import TIMEOUT_MESSAGE, BackendGateway
from swapflow.execution.correlation import CorrelationClient
from swapflow.monitoring.metrics_rich import EngineMetrics
from swapflow.orchestrator.asset_swap import AssetSwapOrchestrator
from swapflow.orchestrator.base import (
    BatteryScan,
    SessionCompletedError,
    SessionExpiredError,
    StepKind,
)
from swapflow.state import state_machine
from swapflow.state.session import StepStatus, WorkflowType
from swapflow.state.session_manager import SessionManager, SessionManagerConfig
from swapflow.state.session_store import FileSessionStore, SessionLoadError, SessionStoreError
from swapflow.state.state_machine import SessionMode

OLD = BatteryScan(battery_id="BAT-OLD-1", energy_wh=10000, charge_level=22)
NEW = BatteryScan(battery_id="BAT-NEW-9", energy_wh=45000, charge_level=98)


@pytest.fixture
def store(tmp_path):
    return FileSessionStore(str(tmp_path / "sessions"))


@pytest.fixture
def metrics():
    return EngineMetrics()


@pytest.fixture
async def make_orchestrator(store, broker, backend, attendant, metrics):
    created = []

    def make(timeout_sec=0.5):
        gateway = BackendGateway(CorrelationClient(broker, timeout_sec=timeout_sec), metrics=metrics)
        manager = SessionManager(store, SessionManagerConfig(autosave_delay_ms=60_000), metrics=metrics)
        orch = AssetSwapOrchestrator(manager, store, gateway, attendant, metrics=metrics)
        created.append(orch)
        return orch

    yield make
    for orch in created:
        orch.discard()


@pytest.fixture
def orch(make_orchestrator):
    return make_orchestrator()


async def _to_review(orch, new=NEW):
    assert (await orch.identify_customer("SUB-1")).success
    assert (await orch.scan_returned_battery(OLD)).success
    result = await orch.scan_new_battery(new)
    assert result.success
    return result


class TestReturningCustomer:
    """Full swap for a customer who holds a battery."""

    @pytest.mark.asyncio
    async def test_paid_swap(self, orch, store, backend, metrics):
        result = await orch.identify_customer("SUB-1")
        assert result.success is True
        assert result.step == 2
        assert orch.manager.reference_id == 1
        assert orch.session.recovery_summary.subscription_code == "SUB-1"

        result = await orch.scan_returned_battery(OLD)
        assert result.step == 3

        result = await orch.scan_new_battery(NEW)
        assert result.step == 4
        assert orch.cost.cost == Decimal("4200.00")
        assert orch.session.recovery_summary.amount_due == 4200.0

        result = await orch.proceed_from_review()
        assert result.step == 5

        result = await orch.confirm_payment("  RCPT-1 ")
        assert result.success is True
        assert result.step == 6
        assert result.notice is None
        assert state_machine.is_completed(orch.session)

        payload = backend.requests_for("payment_and_service")[0]
        assert payload["data"]["service_data"]["old_battery_id"] == "BAT-OLD-1"
        assert payload["data"]["payment_data"]["payment_reference"] == "RCPT-1"
        assert payload["data"]["payment_data"]["payment_type"] == "TOP_UP"

        stored = await store.load(1)
        assert state_machine.is_completed(stored)
        assert stored.version == orch.session.version
        completion = state_machine.read_step(stored, 6)
        assert completion.transaction_id == "TX-1001"
        assert completion.amount_charged == 4200.0
        assert state_machine.read_step(stored, 5).receipt == "RCPT-1"

        assert metrics.registry.get_sample_value(
            "sessions_completed_total", {"workflow": WorkflowType.ASSET_SWAP.value}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_battery_mismatch_then_retry(self, orch):
        await orch.identify_customer("SUB-1")
        result = await orch.scan_returned_battery(BatteryScan("BAT-STRANGER", 10000))
        assert result.success is False
        assert result.kind is StepKind.REJECTED
        assert result.message == "Battery does not match expected assignment."
        assert orch.session.status_of(2) is StepStatus.FAILED
        assert orch.current_step == 2

        result = await orch.scan_returned_battery(OLD)
        assert result.success is True
        assert orch.session.status_of(2) is StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_new_battery_must_differ(self, orch):
        await orch.identify_customer("SUB-1")
        await orch.scan_returned_battery(OLD)
        result = await orch.scan_new_battery(BatteryScan("BAT-OLD-1", 45000))
        assert result.kind is StepKind.VALIDATION

    @pytest.mark.asyncio
    async def test_invalid_scan(self, orch):
        await orch.identify_customer("SUB-1")
        result = await orch.scan_returned_battery(BatteryScan("  ", 10000))
        assert result.message == "Battery ID is required"
        result = await orch.scan_returned_battery(BatteryScan("BAT-OLD-1", -5))
        assert result.kind is StepKind.VALIDATION

    @pytest.mark.asyncio
    async def test_steps_out_of_order_rejected(self, orch):
        await orch.identify_customer("SUB-1")
        result = await orch.confirm_payment("RCPT-1")
        assert result.success is False
        assert result.kind is StepKind.VALIDATION
        assert orch.current_step == 2

    @pytest.mark.asyncio
    async def test_customer_identified_once(self, orch):
        await orch.identify_customer("SUB-1")
        result = await orch.identify_customer("SUB-2")
        assert result.success is False


class TestFirstTimeCustomer:
    @pytest.mark.asyncio
    async def test_skips_return_step(self, orch, backend):
        backend.current_asset = None
        result = await orch.identify_customer("SUB-NEW", source="manual")
        assert result.step == 3
        assert orch.customer.customer_type == "first-time"
        assert 2 not in orch.session.timeline

        await orch.scan_new_battery(NEW)
        assert orch.cost.cost == Decimal("5400.00")
        await orch.proceed_from_review()
        result = await orch.confirm_payment("RCPT-9")
        assert result.success is True

        data = backend.requests_for("payment_and_service")[0]["data"]
        assert data["payment_data"]["payment_type"] == "DEPOSIT"
        assert "old_battery_id" not in data["service_data"]
        assert backend.requests_for("identify_customer")[0]["data"]["qr_code_data"] == "MANUAL_SUB-NEW"

    @pytest.mark.asyncio
    async def test_cannot_go_back_to_return(self, orch, backend):
        backend.current_asset = None
        await orch.identify_customer("SUB-NEW")
        await orch.scan_new_battery(NEW)
        assert orch.go_back(2).success is False
        assert orch.go_back(3).success is True
        assert orch.current_step == 3


class TestPaymentSkip:
    @pytest.mark.asyncio
    async def test_quota_credit(self, orch, backend, metrics):
        backend.energy_quota = 100
        await _to_review(orch)
        assert orch.cost.skip_reason is PaymentSkipReason.QUOTA_CREDIT

        result = await orch.proceed_from_review()
        assert result.success is True
        assert result.step == 6
        assert state_machine.read_step(orch.session, 5) is None

        data = backend.requests_for("payment_and_service")[0]["data"]
        assert "payment_data" not in data
        completion = state_machine.read_step(orch.session, 6)
        assert completion.payment_skipped is True
        assert completion.amount_charged == 0.0
        assert metrics.registry.get_sample_value(
            "payments_skipped_total", {"reason": "QUOTA_CREDIT"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_zero_cost_rounding(self, orch, backend):
        backend.rate = 50
        await _to_review(orch, new=BatteryScan("BAT-NEW-9", 10010))
        assert orch.cost.skip_reason is PaymentSkipReason.ZERO_COST_ROUNDING

        result = await orch.proceed_from_review()
        assert result.success is True
        payment = backend.requests_for("payment_and_service")[0]["data"]["payment_data"]
        assert payment["payment_method"] == "ZERO_COST_ROUNDING"
        assert payment["payment_amount"] == 0.5
        assert payment["payment_reference"].startswith("ZERO_COST_")


class TestFailures:
    @pytest.mark.asyncio
    async def test_identify_timeout_is_retryable(self, make_orchestrator, backend):
        orch = make_orchestrator(timeout_sec=0.05)
        backend.silent = True
        result = await orch.identify_customer("SUB-1")
        assert result.success is False
        assert result.kind is StepKind.TIMEOUT
        assert result.retryable is True
        assert result.message == TIMEOUT_MESSAGE
        assert orch.manager.reference_id is None
        assert orch.session.metadata.retry_count == 1

        backend.silent = False
        result = await orch.identify_customer("SUB-1")
        assert result.success is True
        assert orch.manager.reference_id == 1

    @pytest.mark.asyncio
    async def test_empty_manual_code(self, orch):
        result = await orch.identify_customer("  ", source="manual")
        assert result.message == "Please enter a Subscription ID"
        result = await orch.identify_customer("", source="scan")
        assert result.message == "No subscription code found in QR code"

    @pytest.mark.asyncio
    async def test_rejected_completion_can_be_resubmitted(self, orch, backend):
        await _to_review(orch)
        await orch.proceed_from_review()

        backend.completion_success = False
        backend.completion_signals = ["PAYMENT_FAILED"]
        backend.completion_metadata = {"reason": "Receipt not found"}
        result = await orch.confirm_payment("RCPT-BAD")
        assert result.success is False
        assert result.kind is StepKind.REJECTED
        assert result.message == "Receipt not found"
        assert orch.session.status_of(5) is StepStatus.FAILED
        assert not state_machine.is_completed(orch.session)

        backend.completion_success = True
        backend.completion_signals = ["SERVICE_COMPLETED"]
        backend.completion_metadata = {"transaction_id": "TX-2"}
        result = await orch.confirm_payment("RCPT-GOOD")
        assert result.success is True
        assert state_machine.read_step(orch.session, 6).transaction_id == "TX-2"
        assert len(backend.requests_for("payment_and_service")) == 2

    @pytest.mark.asyncio
    async def test_completed_session_is_closed(self, orch):
        await _to_review(orch)
        await orch.proceed_from_review()
        await orch.confirm_payment("RCPT-1")
        with pytest.raises(SessionCompletedError):
            await orch.confirm_payment("RCPT-1")

    @pytest.mark.asyncio
    async def test_version_conflict_blocks_completion(self, orch, store, backend):
        await _to_review(orch)
        await orch.proceed_from_review()

        # another device saved the session in the meantime
        path = store.root / "session_1.json"
        doc = loads(path.read_bytes())
        doc["version"] = 9
        path.write_text(dumps(doc))

        result = await orch.confirm_payment("RCPT-1")
        assert result.success is False
        assert result.kind is StepKind.CONFLICT
        assert backend.requests_for("payment_and_service") == []
        assert orch.manager.conflict is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("flag", [False, None])
    async def test_completion_already_applied_is_success(self, orch, backend, flag):
        await _to_review(orch)
        await orch.proceed_from_review()

        backend.completion_success = flag
        backend.completion_signals = ["IDEMPOTENT_OPERATION_DETECTED"]
        result = await orch.confirm_payment("RCPT-1")
        assert result.success is True
        assert result.kind is StepKind.IDEMPOTENT
        assert result.notice == "Swap was already recorded"
        assert state_machine.is_completed(orch.session)

    @pytest.mark.asyncio
    async def test_unsaved_session_blocks_completion(self, orch, store, backend, monkeypatch):
        await _to_review(orch)
        await orch.proceed_from_review()

        real_save = store.save

        async def failing_save(reference_id, session):
            raise SessionStoreError("network down")

        monkeypatch.setattr(store, "save", failing_save)
        result = await orch.confirm_payment("RCPT-1")
        assert result.success is False
        assert result.kind is StepKind.TRANSPORT
        assert result.retryable is True
        assert backend.requests_for("payment_and_service") == []
        assert orch.manager.dirty is True
        assert not state_machine.is_completed(orch.session)

        monkeypatch.setattr(store, "save", real_save)
        result = await orch.confirm_payment("RCPT-1")
        assert result.success is True
        assert len(backend.requests_for("payment_and_service")) == 1

    @pytest.mark.asyncio
    async def test_save_failure_after_completion_keeps_session_dirty(self, orch, store, backend, monkeypatch):
        await _to_review(orch)
        await orch.proceed_from_review()

        real_save = store.save

        async def fails_once_completed(reference_id, session):
            if state_machine.is_completed(session):
                raise SessionStoreError("network down")
            return await real_save(reference_id, session)

        monkeypatch.setattr(store, "save", fails_once_completed)
        result = await orch.confirm_payment("RCPT-1")
        assert result.success is True
        assert orch.manager.dirty is True
        assert state_machine.is_completed(orch.session)
        assert len(backend.requests_for("payment_and_service")) == 1


class TestNavigation:
    @pytest.mark.asyncio
    async def test_go_back_to_return_clears_cost(self, orch):
        await _to_review(orch)
        assert orch.go_back(1).success is False
        result = orch.go_back(2)
        assert result.success is True
        assert orch.current_step == 2
        assert orch.session.max_step_reached == 4

        await orch.scan_returned_battery(OLD)
        assert orch.cost is None
        assert (await orch.scan_new_battery(NEW)).success

    @pytest.mark.asyncio
    async def test_go_back_forward_rejected(self, orch):
        await orch.identify_customer("SUB-1")
        assert orch.go_back(4).success is False


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_continues_where_left(self, make_orchestrator, backend):
        first = make_orchestrator()
        await first.identify_customer("SUB-1")
        await first.scan_returned_battery(OLD)
        await first.manager.flush_now()
        reference_id = first.manager.reference_id
        first.discard()

        second = make_orchestrator()
        pending = await second.find_resumable()
        assert [s.reference_id for s in pending] == [reference_id]
        assert pending[0].current_step == 3

        mode = await second.resume(reference_id)
        assert mode is SessionMode.RESUME
        assert second.current_step == 3
        assert second.customer.subscription_code == "SUB-1"
        assert second.session.metadata.last_action == "Session resumed"

        await second.scan_new_battery(NEW)
        assert second.cost.cost == Decimal("4200.00")
        await second.proceed_from_review()
        assert (await second.confirm_payment("RCPT-1")).success

    @pytest.mark.asyncio
    async def test_completed_session_opens_in_review(self, make_orchestrator):
        first = make_orchestrator()
        await _to_review(first)
        await first.proceed_from_review()
        await first.confirm_payment("RCPT-1")
        reference_id = first.manager.reference_id
        first.discard()

        second = make_orchestrator()
        assert await second.find_resumable() == []
        assert await second.resume(reference_id) is SessionMode.REVIEW
        assert second.cost.cost == Decimal("4200.00")
        with pytest.raises(SessionCompletedError):
            await second.confirm_payment("RCPT-2")

    @pytest.mark.asyncio
    async def test_expired_session(self, orch, store, attendant):
        old = state_machine.create(
            WorkflowType.ASSET_SWAP, 6, attendant, now=datetime(2020, 1, 1, tzinfo=timezone.utc)
        )
        old.version = 1
        reference_id = await store.create("SUB-OLD", old)
        with pytest.raises(SessionExpiredError):
            await orch.resume(reference_id)

    @pytest.mark.asyncio
    async def test_other_workflow_rejected(self, orch, store, salesperson):
        reg = state_machine.create(WorkflowType.REGISTRATION, 7, salesperson)
        reg.version = 1
        reference_id = await store.create("SUB-REG", reg)
        with pytest.raises(SessionLoadError):
            await orch.resume(reference_id)

    @pytest.mark.asyncio
    async def test_missing_session(self, orch):
        with pytest.raises(SessionLoadError):
            await orch.resume(404)
