"""
BackendGateway: the business requests the workflows send over the bus.

Builds the IDENTIFY_CUSTOMER and REPORT_PAYMENT_AND_SERVICE_COMPLETION
payloads, sends them through the CorrelationClient, and turns responses
into workflow-level outcomes (a parsed CustomerProfile, or an operator
readable error).

Payload envelope:
    {timestamp, plan_id, correlation_id, actor{type, id}, data{action, ...}}

Payment and service completion:
    - quota credit covers the swap       -> no payment_data
    - cost floors to zero otherwise      -> payment_method ZERO_COST_ROUNDING
    - anything else                      -> configured payment method
    payment_type is DEPOSIT for first-time customers, TOP_UP for returning.

Completion reports go through the IdempotencyGuard with the business key
"<session_id>:payment_and_service" so a double submit reports once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from swapflow.core.errors import SwapflowError
from swapflow.core.json_utils import dumps
from swapflow.core.rounding import PaymentSkipReason, SwapCost, round_2dp, to_decimal
from swapflow.core.topics import ACTION_IDENTIFY_CUSTOMER, ACTION_PAYMENT_AND_SERVICE, request_topic
from swapflow.core.utils import make_correlation_id, to_iso, utcnow
from swapflow.execution.correlation import (
    COMPLETION_SUCCESS_SIGNALS,
    IDENTIFY_SUCCESS_SIGNALS,
    CorrelationClient,
    CorrelationResult,
    CorrelationStatus,
)
from swapflow.execution.idempotency import IdempotencyGuard, business_key
from swapflow.state.session import Actor

if TYPE_CHECKING:
    from swapflow.monitoring.metrics_rich import EngineMetrics

log = logging.getLogger("swapflow")

DEFAULT_RATE = 120
INFINITE_QUOTA_THRESHOLD = 100000
SERVICE_DURATION_SEC = 240

# Completion reports always go out on the attendant subjects
COMPLETION_TOPIC_ROLE = "attendant"

SERVICE_BATTERY_FLEET = "service-battery-fleet"
SERVICE_ELECTRICITY = "service-electricity"
SERVICE_SWAP_COUNT = "service-swap-count"

PAYMENT_TYPE_DEPOSIT = "DEPOSIT"
PAYMENT_TYPE_TOP_UP = "TOP_UP"
PAYMENT_METHOD_ZERO_COST = "ZERO_COST_ROUNDING"

CUSTOMER_FIRST_TIME = "first-time"
CUSTOMER_RETURNING = "returning"

TIMEOUT_MESSAGE = "Request timed out. Please try again."


class PaymentPayloadError(SwapflowError, ValueError):
    """Raised when a completion report is missing a required asset id."""
    pass


# =============================================================================
# Customer profile
# =============================================================================

@dataclass
class ServiceState:
    service_id: str
    used: float = 0.0
    quota: float = 0.0
    current_asset: Optional[str] = None
    name: Optional[str] = None
    usage_unit_price: Optional[float] = None

    @property
    def infinite(self) -> bool:
        return self.quota > INFINITE_QUOTA_THRESHOLD

    @property
    def remaining(self) -> float:
        return float(round_2dp(to_decimal(self.quota) - to_decimal(self.used)))


@dataclass
class CustomerProfile:
    """What identification tells the swap workflow about a customer."""
    customer_id: str
    customer_name: str
    subscription_code: str
    customer_type: str
    current_battery_id: Optional[str]
    rate: float
    currency: str
    subscription_type: str = "Pay-Per-Swap"
    energy_quota_total: float = 0.0
    energy_quota_used: float = 0.0
    swaps_total: float = 0.0
    swaps_used: float = 0.0
    payment_state: str = "INITIAL"
    service_state: str = "INITIAL"
    electricity_service_id: Optional[str] = None
    services: List[ServiceState] = field(default_factory=list)
    idempotent: bool = False
    correlation_id: Optional[str] = None

    @property
    def is_returning(self) -> bool:
        return self.customer_type == CUSTOMER_RETURNING

    @property
    def has_infinite_energy_quota(self) -> bool:
        return self.energy_quota_total > INFINITE_QUOTA_THRESHOLD

    @property
    def has_infinite_swap_quota(self) -> bool:
        return self.swaps_total > INFINITE_QUOTA_THRESHOLD


def _find_service(services: List[ServiceState], fragment: str) -> Optional[ServiceState]:
    return next((s for s in services if fragment in s.service_id), None)


def parse_customer_profile(
    result: CorrelationResult,
    subscription_code: str,
    *,
    default_rate: float = DEFAULT_RATE,
    default_currency: str = "KES",
    customer_name: Optional[str] = None,
) -> CustomerProfile:
    """
    Build a CustomerProfile from an identification response.

    Raises:
        ValueError: the response carries no service plan data
    """
    metadata = result.metadata or {}
    source = metadata.get("cached_result") if result.is_idempotent else metadata
    source = source if isinstance(source, dict) else {}

    plan = source.get("service_plan_data") or source.get("servicePlanData")
    if not isinstance(plan, dict):
        raise ValueError("Invalid customer data received")
    bundle = source.get("service_bundle") or {}
    terms = source.get("common_terms") or {}

    catalog = {
        svc.get("serviceId"): svc
        for svc in (bundle.get("services") or [])
        if isinstance(svc, dict)
    }
    services: List[ServiceState] = []
    for raw in plan.get("serviceStates") or []:
        if not isinstance(raw, dict) or not isinstance(raw.get("service_id"), str):
            continue
        match = catalog.get(raw["service_id"], {})
        services.append(ServiceState(
            service_id=raw["service_id"],
            used=float(raw.get("used") or 0),
            quota=float(raw.get("quota") or 0),
            current_asset=raw.get("current_asset") or None,
            name=match.get("name"),
            usage_unit_price=match.get("usageUnitPrice"),
        ))

    fleet = _find_service(services, SERVICE_BATTERY_FLEET)
    electricity = _find_service(services, SERVICE_ELECTRICITY)
    swaps = _find_service(services, SERVICE_SWAP_COUNT)

    identified_id = source.get("customer_id") or metadata.get("customer_id")
    current_asset = fleet.current_asset if fleet else None

    return CustomerProfile(
        customer_id=str(identified_id or plan.get("customerId") or subscription_code),
        customer_name=customer_name or (str(identified_id) if identified_id else "Customer"),
        subscription_code=str(plan.get("servicePlanId") or subscription_code),
        customer_type=CUSTOMER_RETURNING if current_asset else CUSTOMER_FIRST_TIME,
        current_battery_id=current_asset,
        rate=float((electricity.usage_unit_price if electricity else None) or default_rate),
        currency=terms.get("billingCurrency") or plan.get("currency") or default_currency,
        subscription_type=bundle.get("name") or "Pay-Per-Swap",
        energy_quota_total=electricity.quota if electricity else 0.0,
        energy_quota_used=electricity.used if electricity else 0.0,
        swaps_total=swaps.quota if swaps else 0.0,
        swaps_used=swaps.used if swaps else 0.0,
        payment_state=plan.get("paymentState") or "INITIAL",
        service_state=plan.get("serviceState") or "INITIAL",
        electricity_service_id=electricity.service_id if electricity else None,
        services=services,
        idempotent=result.is_idempotent,
        correlation_id=result.correlation_id,
    )


# =============================================================================
# Error messages
# =============================================================================

def identify_error_message(result: CorrelationResult) -> str:
    if result.status is CorrelationStatus.TIMEOUT:
        return TIMEOUT_MESSAGE
    if result.status is CorrelationStatus.TRANSPORT_ERROR:
        return f"Could not reach the backend: {result.error}"
    explicit = result.data.get("error") or result.metadata.get("message")
    if explicit:
        return str(explicit)
    signals = set(result.signals)
    if signals & {"SERVICE_PLAN_NOT_FOUND", "CUSTOMER_NOT_FOUND"}:
        return "Customer not found. Please check the subscription ID."
    if "INVALID_QR_CODE" in signals:
        return "Invalid QR code. Please scan a valid customer QR code."
    if "INVALID_SUBSCRIPTION_ID" in signals:
        return "Invalid subscription ID format."
    return "Customer not found"


def completion_error_message(result: CorrelationResult) -> str:
    if result.status is CorrelationStatus.TIMEOUT:
        return TIMEOUT_MESSAGE
    if result.status is CorrelationStatus.TRANSPORT_ERROR:
        return f"Could not reach the backend: {result.error}"
    if result.status is CorrelationStatus.CANCELLED:
        return "Request cancelled"

    metadata = result.metadata or {}
    service_result = metadata.get("service_result") if isinstance(metadata.get("service_result"), dict) else {}
    signals = set(result.signals)

    if signals & {"QUOTA_EXHAUSTED", "TOPUP_REQUIRED"}:
        message = "Customer quota exhausted. Payment required before service can proceed."
    elif "SERVICE_REJECTED" in signals:
        message = service_result.get("reason") or "Service was rejected. Please check customer quota."
    elif "BATTERY_MISMATCH" in signals:
        message = "Battery does not match expected assignment."
    elif "ASSET_VALIDATION_FAILED" in signals:
        message = "Battery validation failed. Please try a different battery."
    else:
        message = (
            metadata.get("reason")
            or metadata.get("message")
            or service_result.get("reason")
            or result.data.get("error")
            or "Service completion failed"
        )

    action_required = metadata.get("action_required") or service_result.get("action_required")
    if action_required and result.error_signals():
        return f"{message}. {action_required}"
    return message


# =============================================================================
# Payloads
# =============================================================================

def _envelope(plan_id: str, actor: Actor, correlation_id: str, data: Dict[str, Any],
              now: Optional[datetime] = None) -> Dict[str, Any]:
    return {
        "timestamp": to_iso(now or utcnow()),
        "plan_id": plan_id,
        "correlation_id": correlation_id,
        "actor": {"type": actor.role.value, "id": actor.id},
        "data": data,
    }


def station_of(actor: Actor) -> str:
    return actor.station or f"STATION_{actor.id}"


def build_identify_payload(
    subscription_code: str,
    source: str,
    actor: Actor,
    correlation_id: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    qr_prefix = "MANUAL" if source == "manual" else "QR_CUSTOMER"
    return _envelope(subscription_code, actor, correlation_id, {
        "action": "IDENTIFY_CUSTOMER",
        "qr_code_data": f"{qr_prefix}_{subscription_code}",
        "attendant_station": actor.station,
    }, now)


def build_payment_and_service_payload(
    *,
    plan_id: str,
    actor: Actor,
    customer_type: str,
    cost: SwapCost,
    new_battery_id: Optional[str],
    old_battery_id: Optional[str],
    service_id: Optional[str],
    payment_reference: str,
    payment_method: str,
    correlation_id: str,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Raises:
        PaymentPayloadError: first-time without a new battery, or returning
            without the returned battery
    """
    first_time = customer_type == CUSTOMER_FIRST_TIME
    if first_time and not new_battery_id:
        raise PaymentPayloadError("first-time customer requires a new battery id")
    if customer_type == CUSTOMER_RETURNING and not old_battery_id:
        raise PaymentPayloadError("returning customer requires the returned battery id")

    service_data: Dict[str, Any] = {
        "new_battery_id": new_battery_id or "",
        "energy_transferred": float(max(Decimal("0"), cost.energy_diff)),
        "service_duration": SERVICE_DURATION_SEC,
    }
    if not first_time and old_battery_id:
        service_data["old_battery_id"] = old_battery_id

    data: Dict[str, Any] = {
        "action": "REPORT_PAYMENT_AND_SERVICE_COMPLETION",
        "attendant_station": station_of(actor),
        "service_data": service_data,
    }

    reason = cost.skip_reason
    quota_based = reason is PaymentSkipReason.QUOTA_CREDIT
    zero_cost = reason is PaymentSkipReason.ZERO_COST_ROUNDING
    if not quota_based or zero_cost:
        data["payment_data"] = {
            "service_id": service_id,
            "payment_amount": float(cost.cost),
            "payment_reference": payment_reference,
            "payment_method": PAYMENT_METHOD_ZERO_COST if zero_cost else payment_method,
            "payment_type": PAYMENT_TYPE_DEPOSIT if first_time else PAYMENT_TYPE_TOP_UP,
        }
    if idempotency_key:
        data["idempotency_key"] = idempotency_key

    return _envelope(plan_id, actor, correlation_id, data, now)


def build_battery_assignment_payload(
    *,
    plan_id: str,
    actor: Actor,
    battery_id: str,
    energy_wh: float,
    correlation_id: str,
    idempotency_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """First battery handed to a newly registered customer."""
    energy_kwh = round_2dp(to_decimal(energy_wh) / Decimal("1000"))
    data: Dict[str, Any] = {
        "action": "REPORT_PAYMENT_AND_SERVICE_COMPLETION",
        "attendant_station": station_of(actor),
        "service_data": {
            "new_battery_id": battery_id,
            "energy_transferred": float(energy_kwh),
            "service_duration": SERVICE_DURATION_SEC,
        },
    }
    if idempotency_key:
        data["idempotency_key"] = idempotency_key
    return _envelope(plan_id, actor, correlation_id, data, now)


def skip_payment_reference(reason: PaymentSkipReason, ts_ms: int) -> str:
    prefix = "QUOTA" if reason is PaymentSkipReason.QUOTA_CREDIT else "ZERO_COST"
    return f"{prefix}_{ts_ms}"


# =============================================================================
# Gateway
# =============================================================================

@dataclass
class IdentifyOutcome:
    result: CorrelationResult
    profile: Optional[CustomerProfile] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.profile is not None


@dataclass
class ServiceReport:
    result: CorrelationResult
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def transaction_id(self) -> Optional[str]:
        metadata = self.result.metadata or {}
        service_result = metadata.get("service_result")
        tx = metadata.get("transaction_id")
        if not tx and isinstance(service_result, dict):
            tx = service_result.get("transaction_id")
        return str(tx) if tx else None


def _identify_accepted(result: CorrelationResult) -> bool:
    if result.is_idempotent:
        return True
    signals = set(result.signals)
    return (
        result.success
        and result.data.get("success") is True
        and bool(signals & IDENTIFY_SUCCESS_SIGNALS)
    )


def _completion_accepted(result: CorrelationResult) -> bool:
    if result.is_idempotent:
        return True
    signals = set(result.signals)
    return (
        result.success
        and result.data.get("success") is True
        and (not signals or bool(signals & COMPLETION_SUCCESS_SIGNALS))
    )


def _reject(result: CorrelationResult, error: str) -> CorrelationResult:
    return replace(result, status=CorrelationStatus.REJECTED, error=error)


class BackendGateway:
    """
    Business operations over the correlation client.

    Usage:
        gateway = BackendGateway(client, guard, default_rate=120)
        outcome = await gateway.identify_customer("SUB-1", "scan", actor)
    """

    def __init__(
        self,
        client: CorrelationClient,
        guard: Optional[IdempotencyGuard] = None,
        *,
        default_rate: float = DEFAULT_RATE,
        currency: str = "KES",
        payment_method: str = "MPESA",
        log_event: Optional[Callable[..., None]] = None,
        metrics: Optional["EngineMetrics"] = None,
    ) -> None:
        self.client = client
        self.guard = guard or IdempotencyGuard(metrics=metrics)
        self.default_rate = default_rate
        self.currency = currency
        self.payment_method = payment_method
        self.metrics = metrics
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def identify_customer(
        self,
        subscription_code: str,
        source: str,
        actor: Actor,
        customer_name: Optional[str] = None,
    ) -> IdentifyOutcome:
        """
        Identify a customer by subscription code (scanned or typed).

        Args:
            source: "scan" or "manual"
        """
        code = subscription_code.strip()
        cid = make_correlation_id("att-customer-id")
        payload = build_identify_payload(code, source, actor, cid)
        subject = request_topic(actor.role.value, code, ACTION_IDENTIFY_CUSTOMER)

        result = await self.client.request(
            subject,
            payload,
            action=ACTION_IDENTIFY_CUSTOMER,
            success_signals=IDENTIFY_SUCCESS_SIGNALS,
        )
        if not _identify_accepted(result):
            if result.success:
                result = _reject(result, "identification response carried no success signal")
            error = identify_error_message(result)
            self._log_event("customer_identify_failed", subscription_code=code,
                            status=result.status.value, error=error, correlation_id=cid)
            return IdentifyOutcome(result=result, error=error)

        try:
            profile = parse_customer_profile(
                result,
                code,
                default_rate=self.default_rate,
                default_currency=self.currency,
                customer_name=customer_name,
            )
        except ValueError as e:
            return IdentifyOutcome(result=_reject(result, str(e)), error=str(e))

        self._log_event(
            "customer_identified",
            subscription_code=profile.subscription_code,
            customer_type=profile.customer_type,
            idempotent=profile.idempotent,
            correlation_id=cid,
        )
        return IdentifyOutcome(result=result, profile=profile)

    async def report_payment_and_service(
        self,
        session_id: str,
        *,
        plan_id: str,
        actor: Actor,
        customer_type: str,
        cost: SwapCost,
        new_battery_id: Optional[str],
        old_battery_id: Optional[str],
        service_id: Optional[str],
        payment_reference: str,
        payment_method: Optional[str] = None,
    ) -> ServiceReport:
        """
        Report a completed swap (and its payment) once per session.

        Raises:
            PaymentPayloadError: missing asset id for the customer type
        """
        key = business_key(session_id, ACTION_PAYMENT_AND_SERVICE)
        cid = make_correlation_id("att-checkout-payment")
        payload = build_payment_and_service_payload(
            plan_id=plan_id,
            actor=actor,
            customer_type=customer_type,
            cost=cost,
            new_battery_id=new_battery_id,
            old_battery_id=old_battery_id,
            service_id=service_id,
            payment_reference=payment_reference,
            payment_method=payment_method or self.payment_method,
            correlation_id=cid,
            idempotency_key=key,
        )
        subject = request_topic(COMPLETION_TOPIC_ROLE, plan_id, ACTION_PAYMENT_AND_SERVICE)
        report = await self._report(key, subject, payload)
        if report.success and self.metrics:
            self.metrics.payments_reported.labels(workflow="asset_swap").inc()
        return report

    async def report_battery_assignment(
        self,
        session_id: str,
        *,
        plan_id: str,
        actor: Actor,
        battery_id: str,
        energy_wh: float,
    ) -> ServiceReport:
        key = business_key(session_id, "battery_assignment")
        prefix = "att-svc" if actor.role.value == "attendant" else "sales-svc"
        payload = build_battery_assignment_payload(
            plan_id=plan_id,
            actor=actor,
            battery_id=battery_id,
            energy_wh=energy_wh,
            correlation_id=make_correlation_id(prefix),
            idempotency_key=key,
        )
        subject = request_topic(COMPLETION_TOPIC_ROLE, plan_id, ACTION_PAYMENT_AND_SERVICE)
        report = await self._report(key, subject, payload)
        if report.success and self.metrics:
            self.metrics.payments_reported.labels(workflow="registration").inc()
        return report

    async def _report(self, key: str, subject: str, payload: Dict[str, Any]) -> ServiceReport:
        async def send() -> CorrelationResult:
            result = await self.client.request(
                subject,
                payload,
                action=ACTION_PAYMENT_AND_SERVICE,
                success_signals=COMPLETION_SUCCESS_SIGNALS,
            )
            if result.success and not _completion_accepted(result):
                result = _reject(result, "Failed to complete service")
            return result

        result = await self.guard.run(key, send, action=ACTION_PAYMENT_AND_SERVICE)
        if result.success:
            self._log_event(
                "service_reported",
                key=key,
                correlation_id=result.correlation_id,
                idempotent=result.is_idempotent,
                replayed=result.replayed,
            )
            return ServiceReport(result=result)

        error = completion_error_message(result)
        self._log_event("service_report_failed", key=key, status=result.status.value,
                        error=error, signals=result.signals)
        return ServiceReport(result=result, error=error)
