"""
AssetSwapOrchestrator: the attendant's battery swap.

Steps:
    1 Customer  identify by subscription code (scan or manual)
    2 Return    returning customers hand back their battery
    3 New       scan the battery being issued; the cost is computed
    4 Review    cost and quota shown to the operator
    5 Pay       payment receipt (skipped when nothing is owed)
    6 Done      payment and service completion reported

First-time customers go from 1 straight to 3. Identification is the
first persisted write; the report in step 5 (or 4 when payment is
skipped) is the point of no return and is flushed before and after.
"""

from __future__ import annotations

from typing import Optional, TYPE_CHECKING

from swapflow.core.rounding import (
    SwapCost,
    SwapPaymentInput,
    calculate_swap_payment,
)
from swapflow.core.utils import now_ms
from swapflow.execution.backend_gateway import (
    CUSTOMER_FIRST_TIME,
    BackendGateway,
    PaymentPayloadError,
    skip_payment_reference,
)
from swapflow.orchestrator.base import (
    BatteryScan,
    OrchestratorConfig,
    StepKind,
    StepResult,
    WorkflowOrchestrator,
)
from swapflow.state import state_machine
from swapflow.state.session import Actor, Session, WorkflowType
from swapflow.state.session_manager import SessionManager
from swapflow.state.session_store import SessionLoadError, SessionStore, SessionSummary
from swapflow.state.step_data import (
    CustomerIdentification,
    IssuedBattery,
    ReturnedBattery,
    StepDataError,
    SwapCompletion,
    SwapPayment,
    SwapReview,
)

if TYPE_CHECKING:
    from swapflow.monitoring.metrics_rich import EngineMetrics

STEP_CUSTOMER = 1
STEP_RETURN = 2
STEP_NEW = 3
STEP_REVIEW = 4
STEP_PAY = 5
STEP_DONE = 6


def _scan_error(battery: BatteryScan) -> Optional[str]:
    if not battery.battery_id or not battery.battery_id.strip():
        return "Battery ID is required"
    if battery.energy_wh is None or battery.energy_wh < 0:
        return "Battery energy must be zero or more"
    return None


class AssetSwapOrchestrator(WorkflowOrchestrator):
    WORKFLOW_TYPE = WorkflowType.ASSET_SWAP

    def __init__(
        self,
        manager: SessionManager,
        store: SessionStore,
        gateway: BackendGateway,
        actor: Actor,
        config: Optional[OrchestratorConfig] = None,
        metrics: Optional["EngineMetrics"] = None,
    ) -> None:
        super().__init__(manager, store, actor, config, metrics)
        self.gateway = gateway
        self._customer: Optional[CustomerIdentification] = None
        self._returned: Optional[ReturnedBattery] = None
        self._issued: Optional[IssuedBattery] = None
        self._cost: Optional[SwapCost] = None

    @property
    def total_steps(self) -> int:
        return state_machine.ASSET_SWAP_TOTAL_STEPS

    @property
    def customer(self) -> Optional[CustomerIdentification]:
        return self._customer

    @property
    def cost(self) -> Optional[SwapCost]:
        return self._cost

    # ========== Step 1: Customer ==========

    async def identify_customer(self, subscription_code: str, source: str = "scan") -> StepResult:
        self._ensure_session()
        self._ensure_open()
        if self._customer is not None:
            return StepResult.invalid(self.current_step, "Customer already identified for this swap")

        code = (subscription_code or "").strip()
        if not code:
            message = "Please enter a Subscription ID" if source == "manual" else "No subscription code found in QR code"
            return StepResult.invalid(STEP_CUSTOMER, message)

        outcome = await self.gateway.identify_customer(code, source, self.actor)
        if not outcome.success:
            return self._fail_from_result(STEP_CUSTOMER, outcome.result, outcome.error or "Customer not found")

        profile = outcome.profile
        record = CustomerIdentification(
            input_mode=source,
            subscription_code=profile.subscription_code,
            customer_id=profile.customer_id,
            customer_name=profile.customer_name,
            customer_type=profile.customer_type,
            current_battery_id=profile.current_battery_id,
            rate=profile.rate,
            currency=profile.currency,
            quota_total=profile.energy_quota_total,
            quota_used=profile.energy_quota_used,
            service_id=profile.electricity_service_id,
            correlation_id=profile.correlation_id,
            idempotent=profile.idempotent,
        )
        self._customer = record
        self._advance(STEP_CUSTOMER, record)
        next_step = STEP_RETURN if profile.is_returning else STEP_NEW
        self._advance(next_step)
        self._summary(
            customer_name=profile.customer_name,
            subscription_code=profile.subscription_code,
            currency_symbol=profile.currency,
        )

        notice = await self._attach(profile.subscription_code)
        if profile.idempotent:
            notice = notice or "Customer identified (cached)"
        return StepResult.ok(next_step, notice=notice, idempotent=profile.idempotent)

    # ========== Step 2: Return ==========

    async def scan_returned_battery(self, battery: BatteryScan) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_RETURN)
        if blocked:
            return blocked
        if self._customer.customer_type == CUSTOMER_FIRST_TIME:
            return StepResult.invalid(STEP_RETURN, "First-time customers have no battery to return")
        error = _scan_error(battery)
        if error:
            return StepResult.invalid(STEP_RETURN, error)

        battery_id = battery.battery_id.strip()
        expected = self._customer.current_battery_id
        if expected and battery_id != expected:
            return self._fail(STEP_RETURN, StepKind.REJECTED, "Battery does not match expected assignment.")

        record = ReturnedBattery(battery_id=battery_id, energy_wh=battery.energy_wh, charge_level=battery.charge_level)
        self._returned = record
        self._issued = None
        self._cost = None
        self._advance(STEP_RETURN, record)
        self._advance(STEP_NEW)
        return StepResult.ok(STEP_NEW)

    # ========== Step 3: New ==========

    async def scan_new_battery(self, battery: BatteryScan) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_NEW)
        if blocked:
            return blocked
        error = _scan_error(battery)
        if error:
            return StepResult.invalid(STEP_NEW, error)

        battery_id = battery.battery_id.strip()
        if self._returned is not None and battery_id == self._returned.battery_id:
            return StepResult.invalid(STEP_NEW, "New battery must differ from the returned battery")

        cost = self._compute_cost(battery.energy_wh)
        issued = IssuedBattery(
            battery_id=battery_id,
            energy_wh=battery.energy_wh,
            charge_level=battery.charge_level,
            swap_cost=cost.to_dict(),
        )
        reason = cost.skip_reason
        review = SwapReview(
            cost=float(cost.cost),
            display_cost=cost.display_cost,
            payment_skipped=cost.should_skip_payment,
            skip_reason=reason.value if reason else None,
        )
        self._issued = issued
        self._cost = cost
        self._advance(STEP_NEW, issued)
        self._advance(STEP_REVIEW, review)
        self._summary(amount_due=float(cost.cost))
        return StepResult.ok(STEP_REVIEW)

    # ========== Step 4: Review ==========

    async def proceed_from_review(self) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_REVIEW)
        if blocked:
            return blocked
        if self._cost is None:
            return StepResult.invalid(STEP_REVIEW, "Scan the new battery first")

        if self._cost.should_skip_payment:
            reason = self._cost.skip_reason
            reference = skip_payment_reference(reason, now_ms())
            return await self._complete_swap(STEP_REVIEW, reference, payment_skipped=True)

        self._advance(STEP_PAY)
        return StepResult.ok(STEP_PAY)

    # ========== Step 5: Pay ==========

    async def confirm_payment(self, receipt: str) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_PAY)
        if blocked:
            return blocked
        receipt = (receipt or "").strip()
        if not receipt:
            return StepResult.invalid(STEP_PAY, "Please enter the payment receipt")
        return await self._complete_swap(STEP_PAY, receipt, payment_skipped=False)

    # ========== Completion ==========

    async def _complete_swap(self, step: int, reference: str, payment_skipped: bool) -> StepResult:
        blocked = await self._checkpoint(step)
        if blocked:
            return blocked

        customer = self._customer
        cost = self._cost
        try:
            report = await self.gateway.report_payment_and_service(
                self.session.session_id,
                plan_id=customer.subscription_code,
                actor=self.actor,
                customer_type=customer.customer_type,
                cost=cost,
                new_battery_id=self._issued.battery_id,
                old_battery_id=self._returned.battery_id if self._returned else None,
                service_id=customer.service_id,
                payment_reference=reference,
            )
        except PaymentPayloadError as e:
            return self._fail(step, StepKind.VALIDATION, str(e))

        if not report.success:
            return self._fail_from_result(step, report.result, report.error or "Service completion failed")

        result = report.result
        amount = float(cost.cost)
        if payment_skipped:
            if self.metrics:
                self.metrics.payments_skipped.labels(reason=cost.skip_reason.value).inc()
        else:
            self._advance(STEP_PAY, SwapPayment(
                receipt=reference,
                amount_paid=amount,
                method=self.gateway.payment_method,
                correlation_id=result.correlation_id,
                idempotent=result.is_idempotent,
            ))

        self._advance(STEP_DONE, SwapCompletion(
            transaction_id=report.transaction_id,
            energy_transferred=float(max(cost.energy_diff, 0)),
            amount_charged=0.0 if payment_skipped else amount,
            payment_skipped=payment_skipped,
        ))
        self._summary(amount_paid=0.0 if payment_skipped else amount)
        self.manager.apply(state_machine.complete)
        self._completed()

        notice = None
        if result.is_idempotent or result.replayed:
            notice = "Swap was already recorded"
        blocked = await self._checkpoint(STEP_DONE, required=False)
        if blocked:
            notice = blocked.message
        return StepResult.ok(STEP_DONE, notice=notice, idempotent=result.is_idempotent or result.replayed)

    # ========== Hooks ==========

    def _compute_cost(self, new_energy_wh: float) -> SwapCost:
        customer = self._customer
        return calculate_swap_payment(SwapPaymentInput(
            new_battery_energy_wh=new_energy_wh,
            old_battery_energy_wh=self._returned.energy_wh if self._returned else 0,
            rate_per_kwh=customer.rate,
            quota_total=customer.quota_total,
            quota_used=customer.quota_used,
        ))

    def _reset(self) -> None:
        self._customer = None
        self._returned = None
        self._issued = None
        self._cost = None

    def _restore(self, session: Session) -> None:
        self._reset()
        try:
            self._customer = state_machine.read_step(session, STEP_CUSTOMER)
            self._returned = state_machine.read_step(session, STEP_RETURN)
            self._issued = state_machine.read_step(session, STEP_NEW)
        except StepDataError as e:
            raise SessionLoadError(f"session {session.session_id} has malformed step data: {e}") from e
        if self._customer is not None and self._issued is not None:
            self._cost = self._compute_cost(self._issued.energy_wh)

    def _back_floor(self) -> int:
        if self._customer is None:
            return STEP_CUSTOMER
        return STEP_NEW if self._customer.customer_type == CUSTOMER_FIRST_TIME else STEP_RETURN

    def _effectively_complete(self, summary: SessionSummary) -> bool:
        return summary.current_step >= STEP_DONE
