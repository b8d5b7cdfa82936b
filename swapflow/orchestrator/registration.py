"""
RegistrationOrchestrator: the salesperson's customer registration.

Steps:
    1 Customer      form validated, customer registered with the backend
    2 Package       product package chosen
    3 Subscription  plan chosen
    4 Preview       subscription purchased (first persisted write)
    5 Payment       receipt confirmed; partial payments keep the step open
    6 Battery       first battery assigned (reported over the bus)
    7 Vehicle       vehicle scanned, only when the vehicle step is enabled
    7/8 Done

Registration, purchase and payment confirmation are synchronous HTTP
calls (BackendApi); the battery assignment goes through BackendGateway.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING

from swapflow.core.json_utils import loads
from swapflow.core.rounding import round_2dp, to_decimal
from swapflow.core.utils import make_correlation_id
from swapflow.execution.backend_gateway import BackendGateway
from swapflow.execution.correlation import CorrelationResult, interpret_response
from swapflow.infra.backend_api import BackendApi, BackendApiError
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
from swapflow.state.session_store import SessionLoadError, SessionStore
from swapflow.state.step_data import (
    BatteryAssignment,
    CustomerFormData,
    OrderPreview,
    PackageSelection,
    PlanSelection,
    RegistrationCompletion,
    RegistrationPayment,
    StepDataError,
    VehicleAssignment,
)

if TYPE_CHECKING:
    from swapflow.monitoring.metrics_rich import EngineMetrics

STEP_CUSTOMER = 1
STEP_PACKAGE = 2
STEP_PLAN = 3
STEP_PREVIEW = 4
STEP_PAYMENT = 5
STEP_BATTERY = 6
STEP_VEHICLE = 7

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+]?[\s\d\-()]{10,}$")

COUNTRY_CODE = "254"

# period keyword -> (cycle_interval, cycle_unit)
BILLING_CYCLES: Dict[str, Tuple[int, str]] = {
    "daily": (1, "day"),
    "day": (1, "day"),
    "weekly": (1, "week"),
    "week": (1, "week"),
    "monthly": (1, "month"),
    "month": (1, "month"),
    "quarterly": (3, "month"),
    "yearly": (1, "year"),
    "annual": (1, "year"),
    "year": (1, "year"),
}


def validate_customer_form(form: CustomerFormData) -> Dict[str, str]:
    """Field -> error message. Empty when the form is valid."""
    errors: Dict[str, str] = {}
    if not form.first_name.strip():
        errors["first_name"] = "First name is required"
    if not form.last_name.strip():
        errors["last_name"] = "Last name is required"
    if not form.email.strip():
        errors["email"] = "Email is required"
    elif not EMAIL_RE.match(form.email.strip()):
        errors["email"] = "Please enter a valid email address"
    if not form.phone.strip():
        errors["phone"] = "Phone number is required"
    elif not PHONE_RE.match(form.phone.strip()):
        errors["phone"] = "Invalid phone number"
    if not form.street.strip():
        errors["street"] = "Street address is required"
    if not form.city.strip():
        errors["city"] = "City is required"
    if not form.zip.strip():
        errors["zip"] = "ZIP/Postal code is required"
    return errors


def normalize_phone(raw: str) -> str:
    """Digits only, with the country code in front."""
    phone = re.sub(r"[^0-9+]", "", re.sub(r"\s+", "", raw))
    if phone.startswith("0"):
        phone = COUNTRY_CODE + phone[1:]
    elif not phone.startswith("+") and not phone.startswith(COUNTRY_CODE):
        phone = COUNTRY_CODE + phone
    return phone.replace("+", "")


def billing_cycle(period: str) -> Tuple[int, str]:
    text = (period or "").lower()
    for keyword, cycle in BILLING_CYCLES.items():
        if keyword in text:
            return cycle
    return 1, "month"


def vehicle_assignment_result(response: Any, correlation_id: str) -> CorrelationResult:
    """
    Classify the backend's answer to a vehicle assignment.

    Error signals reject, an idempotent signal means the vehicle was
    already assigned, anything else counts as assigned.
    """
    response = response if isinstance(response, dict) else {}
    metadata = response.get("metadata")
    if isinstance(metadata, (str, bytes)):
        try:
            metadata = loads(metadata)
        except ValueError:
            metadata = None
    data = {
        "success": True,
        "signals": list(response.get("signals") or []),
        "metadata": metadata if isinstance(metadata, dict) else {},
        "service_ids": list(response.get("service_ids") or []),
        "updated_count": response.get("updated_count", 0),
    }
    return interpret_response({"data": data}, correlation_id)


class RegistrationOrchestrator(WorkflowOrchestrator):
    WORKFLOW_TYPE = WorkflowType.REGISTRATION

    def __init__(
        self,
        manager: SessionManager,
        store: SessionStore,
        api: BackendApi,
        gateway: BackendGateway,
        actor: Actor,
        config: Optional[OrchestratorConfig] = None,
        metrics: Optional["EngineMetrics"] = None,
        vehicle_step: bool = False,
    ) -> None:
        super().__init__(manager, store, actor, config, metrics)
        self.api = api
        self.gateway = gateway
        self.vehicle_step = vehicle_step
        self._form: Optional[CustomerFormData] = None
        self._package: Optional[PackageSelection] = None
        self._plan: Optional[PlanSelection] = None
        self._preview: Optional[OrderPreview] = None
        self._payment: Optional[RegistrationPayment] = None
        self._battery: Optional[BatteryAssignment] = None
        self._vehicle: Optional[VehicleAssignment] = None

    @property
    def total_steps(self) -> int:
        return 8 if self.vehicle_step else 7

    @property
    def subscription_code(self) -> Optional[str]:
        if self._payment is not None and self._payment.subscription_code:
            return self._payment.subscription_code
        return self._preview.subscription_code if self._preview else None

    # ========== Step 1: Customer ==========

    async def submit_customer_form(self, form: CustomerFormData) -> StepResult:
        self._ensure_session()
        self._ensure_open()
        blocked = self._expect_step(STEP_CUSTOMER)
        if blocked:
            return blocked
        if self._form is not None and self._form.partner_id is not None:
            return StepResult.invalid(STEP_CUSTOMER, "Customer already registered")

        errors = validate_customer_form(form)
        if errors:
            return StepResult.invalid(STEP_CUSTOMER, "; ".join(errors.values()))

        try:
            response = await self.api.register_customer(
                form.full_name,
                form.email.strip(),
                normalize_phone(form.phone),
                street=form.street.strip(),
                city=form.city.strip(),
                zip_code=form.zip.strip(),
                company_id=self.actor.company_id,
            )
        except BackendApiError as e:
            return self._fail_from_api(STEP_CUSTOMER, e)

        user = None
        if isinstance(response, dict) and response.get("success", True):
            user = (response.get("session") or {}).get("user")
        if not isinstance(user, dict):
            return self._fail(STEP_CUSTOMER, StepKind.REJECTED, "Registration failed - no session returned")

        form = replace(form, customer_id=user.get("id"), partner_id=user.get("partner_id"))
        self._form = form
        self._advance(STEP_CUSTOMER, form)
        self._advance(STEP_PACKAGE)
        self._summary(customer_name=form.full_name)
        return StepResult.ok(STEP_PACKAGE)

    # ========== Steps 2-3: Package, Subscription ==========

    async def select_package(self, package: PackageSelection) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_PACKAGE)
        if blocked:
            return blocked
        if not package.package_id:
            return StepResult.invalid(STEP_PACKAGE, "Please select a package")
        self._package = package
        self._advance(STEP_PACKAGE, package)
        self._advance(STEP_PLAN)
        return StepResult.ok(STEP_PLAN)

    async def select_plan(self, plan: PlanSelection) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_PLAN)
        if blocked:
            return blocked
        if not plan.plan_id:
            return StepResult.invalid(STEP_PLAN, "Please select a subscription plan")
        self._plan = plan
        self._advance(STEP_PLAN, plan)
        self._advance(STEP_PREVIEW)
        self._summary(amount_due=self._total_due(), currency_symbol=plan.currency or self.config.currency)
        return StepResult.ok(STEP_PREVIEW)

    # ========== Step 4: Preview ==========

    async def confirm_preview(self) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_PREVIEW)
        if blocked:
            return blocked
        if self._form is None or self._form.partner_id is None:
            return StepResult.invalid(STEP_PREVIEW, "Customer not registered yet")
        if self._plan is None:
            return StepResult.invalid(STEP_PREVIEW, "No plan selected")

        interval, unit = billing_cycle(self._plan.period)
        payload = {
            "customer_id": self._form.partner_id,
            "product_id": self._plan.plan_id,
            "company_id": self.actor.company_id,
            "quantity": 1,
            "cycle_interval": interval,
            "cycle_unit": unit,
            "price_unit": self._plan.price,
            "notes": "Purchased via sales rep flow",
        }
        try:
            response = await self.api.purchase_subscription(payload)
        except BackendApiError as e:
            return self._fail_from_api(STEP_PREVIEW, e)

        subscription = response.get("subscription") if isinstance(response, dict) else None
        if not isinstance(subscription, dict) or not subscription.get("subscription_code"):
            return self._fail(STEP_PREVIEW, StepKind.REJECTED, "Subscription purchase failed")

        preview = OrderPreview(
            order_id=subscription.get("id"),
            order_name=subscription.get("product_name") or self._plan.name,
            total_amount=float(subscription.get("price_at_signup") or self._total_due()),
            currency=subscription.get("currency") or self._plan.currency,
            subscription_code=subscription["subscription_code"],
        )
        self._preview = preview
        self._advance(STEP_PREVIEW, preview)
        self._advance(STEP_PAYMENT)
        self._summary(subscription_code=preview.subscription_code, amount_due=preview.total_amount)
        notice = await self._attach(preview.subscription_code)
        return StepResult.ok(STEP_PAYMENT, notice=notice)

    # ========== Step 5: Payment ==========

    async def confirm_payment(self, receipt: str) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_PAYMENT)
        if blocked:
            return blocked
        receipt = (receipt or "").strip()
        if not receipt:
            return StepResult.invalid(STEP_PAYMENT, "Please enter the payment receipt")
        code = self.subscription_code
        if not code:
            return StepResult.invalid(STEP_PAYMENT, "No subscription created. Please restart the registration.")

        try:
            data = await self.api.confirm_payment(code, receipt, self._form.partner_id if self._form else None)
        except BackendApiError as e:
            return self._fail_from_api(STEP_PAYMENT, e)
        if not isinstance(data, dict):
            return self._fail(STEP_PAYMENT, StepKind.REJECTED, "Payment confirmation failed")

        paid = float(data.get("amount_paid") or 0)
        expected = float(data.get("amount_expected") or 0)
        remaining = float(data.get("amount_remaining") or 0)
        record = RegistrationPayment(
            receipt=data.get("receipt") or receipt,
            amount_expected=expected,
            amount_paid=paid,
            amount_remaining=remaining,
            confirmed=remaining == 0,
            subscription_code=data.get("subscription_code") or code,
        )
        self._payment = record
        self._advance(STEP_PAYMENT, record)
        self._summary(amount_paid=paid, amount_due=remaining)

        if not record.confirmed:
            currency = self._preview.currency if self._preview else self.config.currency
            message = (
                f"Incomplete payment: {currency} {_money(paid)} paid of {currency} {_money(expected)}. "
                f"Remaining: {currency} {_money(remaining)}"
            )
            return self._fail(STEP_PAYMENT, StepKind.REJECTED, message, retryable=True)

        self._advance(STEP_BATTERY)
        return StepResult.ok(STEP_BATTERY)

    # ========== Step 6: Battery ==========

    async def assign_battery(self, battery: BatteryScan) -> StepResult:
        self._ensure_open()
        blocked = self._expect_step(STEP_BATTERY)
        if blocked:
            return blocked
        if not battery.battery_id or not battery.battery_id.strip():
            return StepResult.invalid(STEP_BATTERY, "Battery ID is required")

        blocked = await self._checkpoint(STEP_BATTERY)
        if blocked:
            return blocked

        report = await self.gateway.report_battery_assignment(
            self.session.session_id,
            plan_id=self.subscription_code,
            actor=self.actor,
            battery_id=battery.battery_id.strip(),
            energy_wh=battery.energy_wh,
        )
        if not report.success:
            return self._fail_from_result(STEP_BATTERY, report.result, report.error or "Battery assignment failed")

        result = report.result
        record = BatteryAssignment(
            battery_id=battery.battery_id.strip(),
            energy_wh=battery.energy_wh,
            charge_level=battery.charge_level,
            correlation_id=result.correlation_id,
            idempotent=result.is_idempotent or result.replayed,
        )
        self._battery = record
        self._advance(STEP_BATTERY, record)

        if self.vehicle_step:
            self._advance(STEP_VEHICLE)
            return StepResult.ok(STEP_VEHICLE, idempotent=record.idempotent)
        return await self.complete()

    # ========== Step 7: Vehicle ==========

    async def assign_vehicle(self, vehicle_id: str) -> StepResult:
        self._ensure_open()
        if not self.vehicle_step:
            return StepResult.invalid(self.current_step, "Vehicle assignment is not enabled")
        blocked = self._expect_step(STEP_VEHICLE)
        if blocked:
            return blocked
        vehicle_id = (vehicle_id or "").strip()
        if not vehicle_id:
            return StepResult.invalid(STEP_VEHICLE, "Vehicle ID is required")

        blocked = await self._checkpoint(STEP_VEHICLE)
        if blocked:
            return blocked

        cid = make_correlation_id("sales-vehicle-assign")
        try:
            response = await self.api.assign_vehicle(self.subscription_code, vehicle_id, cid)
        except BackendApiError as e:
            return self._fail_from_api(STEP_VEHICLE, e)

        result = vehicle_assignment_result(response, cid)
        if not result.success:
            reason = result.metadata.get("reason") or result.metadata.get("message")
            return self._fail_from_result(STEP_VEHICLE, result, reason or "Failed to assign vehicle")

        self._log_event("vehicle_assigned", vehicle_id=vehicle_id, correlation_id=cid,
                        idempotent=result.is_idempotent)
        record = VehicleAssignment(
            vehicle_id=vehicle_id,
            correlation_id=cid,
            service_ids=[str(s) for s in result.data.get("service_ids", [])],
            idempotent=result.is_idempotent,
        )
        self._vehicle = record
        self._advance(STEP_VEHICLE, record)
        return await self.complete(idempotent=result.is_idempotent)

    # ========== Done ==========

    async def complete(self, idempotent: bool = False) -> StepResult:
        self._ensure_open()
        if self._battery is None:
            return StepResult.invalid(self.current_step, "Assign a battery before completing")
        if self.vehicle_step and self._vehicle is None:
            return StepResult.invalid(self.current_step, "Assign a vehicle before completing")

        total = self.total_steps
        self._advance(total, RegistrationCompletion(
            subscription_code=self.subscription_code,
            receipt=self._payment.receipt if self._payment else None,
            battery_id=self._battery.battery_id,
        ))
        self.manager.apply(state_machine.complete)
        self._completed()

        notice = None
        blocked = await self._checkpoint(total, required=False)
        if blocked:
            notice = blocked.message
        return StepResult.ok(total, notice=notice, idempotent=idempotent)

    # ========== Hooks ==========

    def _total_due(self) -> float:
        total = to_decimal(self._plan.price if self._plan else 0)
        if self._package is not None:
            total += to_decimal(self._package.price)
        return float(round_2dp(total))

    def _reset(self) -> None:
        self._form = None
        self._package = None
        self._plan = None
        self._preview = None
        self._payment = None
        self._battery = None
        self._vehicle = None

    def _restore(self, session: Session) -> None:
        self._reset()
        self.vehicle_step = session.flow_state.total_steps >= 8
        try:
            self._form = state_machine.read_step(session, STEP_CUSTOMER)
            self._package = state_machine.read_step(session, STEP_PACKAGE)
            self._plan = state_machine.read_step(session, STEP_PLAN)
            self._preview = state_machine.read_step(session, STEP_PREVIEW)
            self._payment = state_machine.read_step(session, STEP_PAYMENT)
            self._battery = state_machine.read_step(session, STEP_BATTERY)
            if self.vehicle_step:
                self._vehicle = state_machine.read_step(session, STEP_VEHICLE)
        except StepDataError as e:
            raise SessionLoadError(f"session {session.session_id} has malformed step data: {e}") from e

    def _back_floor(self) -> int:
        if self._battery is not None:
            return STEP_VEHICLE
        if self._payment is not None and self._payment.confirmed:
            return STEP_BATTERY
        if self._preview is not None:
            return STEP_PAYMENT
        if self._form is not None and self._form.partner_id is not None:
            return STEP_PACKAGE
        return STEP_CUSTOMER


def _money(value: Any) -> str:
    return f"{float(value):,.2f}".rstrip("0").rstrip(".")
