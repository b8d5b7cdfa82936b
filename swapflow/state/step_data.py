"""
Typed per-step payloads.

Each step of each workflow has exactly one record type. Records carry a
`kind` tag on the wire so a stored payload can be checked against the
schema on load; a registration record can never be stored under an
asset-swap step (or under the wrong step of its own workflow).

Wire form of step_N_data:
    {"step": N, "step_name": "...", "captured_at": "<iso>", "kind": "<tag>", ...fields}
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, Dict, List, Optional, Type

from swapflow.core.errors import SwapflowError
from swapflow.state.session import WorkflowType

ENVELOPE_KEYS = {"step", "step_name", "captured_at", "kind"}


class StepDataError(SwapflowError):
    """Raised when a step payload does not match the workflow's schema."""
    pass


@dataclass
class StepRecord:
    KIND: ClassVar[str] = ""

    def to_payload(self) -> Dict[str, Any]:
        return {"kind": self.KIND, **asdict(self)}

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "StepRecord":
        kind = data.get("kind")
        if kind != cls.KIND:
            raise StepDataError(f"expected kind {cls.KIND!r}, got {kind!r}")
        names = {f.name for f in fields(cls)}
        try:
            return cls(**{k: v for k, v in data.items() if k in names})
        except TypeError as e:
            raise StepDataError(f"malformed {cls.KIND} payload: {e}") from e


# ========== Registration ==========

@dataclass
class CustomerFormData(StepRecord):
    KIND: ClassVar[str] = "customer_form"
    first_name: str
    last_name: str
    phone: str
    email: str = ""
    street: str = ""
    city: str = ""
    zip: str = ""
    customer_id: Optional[Any] = None
    partner_id: Optional[Any] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class PackageSelection(StepRecord):
    KIND: ClassVar[str] = "package"
    package_id: str
    name: str
    price: float
    currency: str
    components: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PlanSelection(StepRecord):
    KIND: ClassVar[str] = "plan"
    plan_id: str
    name: str
    price: float
    period: str
    currency: str


@dataclass
class OrderPreview(StepRecord):
    KIND: ClassVar[str] = "order_preview"
    order_id: Any
    order_name: str
    total_amount: float
    currency: str
    subscription_code: Optional[str] = None


@dataclass
class RegistrationPayment(StepRecord):
    KIND: ClassVar[str] = "registration_payment"
    receipt: str
    amount_expected: float
    amount_paid: float
    amount_remaining: float
    confirmed: bool
    subscription_code: Optional[str] = None


@dataclass
class BatteryAssignment(StepRecord):
    KIND: ClassVar[str] = "battery_assignment"
    battery_id: str
    energy_wh: float
    charge_level: Optional[float] = None
    correlation_id: Optional[str] = None
    idempotent: bool = False


@dataclass
class VehicleAssignment(StepRecord):
    KIND: ClassVar[str] = "vehicle_assignment"
    vehicle_id: str
    correlation_id: Optional[str] = None
    service_ids: List[str] = field(default_factory=list)
    idempotent: bool = False


@dataclass
class RegistrationCompletion(StepRecord):
    KIND: ClassVar[str] = "registration_completion"
    subscription_code: Optional[str]
    receipt: Optional[str]
    battery_id: Optional[str]


# ========== Asset swap ==========

@dataclass
class CustomerIdentification(StepRecord):
    KIND: ClassVar[str] = "customer_identification"
    input_mode: str  # scan | manual
    subscription_code: str
    customer_id: str
    customer_name: str
    customer_type: str  # first-time | returning
    current_battery_id: Optional[str]
    rate: float
    currency: str
    quota_total: float = 0.0
    quota_used: float = 0.0
    service_id: Optional[str] = None
    order_id: Optional[Any] = None
    correlation_id: Optional[str] = None
    idempotent: bool = False


@dataclass
class ReturnedBattery(StepRecord):
    KIND: ClassVar[str] = "returned_battery"
    battery_id: str
    energy_wh: float
    charge_level: Optional[float] = None


@dataclass
class IssuedBattery(StepRecord):
    KIND: ClassVar[str] = "issued_battery"
    battery_id: str
    energy_wh: float
    charge_level: Optional[float] = None
    swap_cost: Dict[str, float] = field(default_factory=dict)


@dataclass
class SwapReview(StepRecord):
    KIND: ClassVar[str] = "swap_review"
    cost: float
    display_cost: int
    payment_skipped: bool
    skip_reason: Optional[str] = None


@dataclass
class SwapPayment(StepRecord):
    KIND: ClassVar[str] = "swap_payment"
    receipt: str
    amount_paid: float
    method: str
    correlation_id: Optional[str] = None
    idempotent: bool = False


@dataclass
class SwapCompletion(StepRecord):
    KIND: ClassVar[str] = "swap_completion"
    transaction_id: Optional[str]
    energy_transferred: float
    amount_charged: float
    payment_skipped: bool = False


REGISTRATION_SCHEMA: Dict[int, Type[StepRecord]] = {
    1: CustomerFormData,
    2: PackageSelection,
    3: PlanSelection,
    4: OrderPreview,
    5: RegistrationPayment,
    6: BatteryAssignment,
}

ASSET_SWAP_SCHEMA: Dict[int, Type[StepRecord]] = {
    1: CustomerIdentification,
    2: ReturnedBattery,
    3: IssuedBattery,
    4: SwapReview,
    5: SwapPayment,
    6: SwapCompletion,
}


def schema_for(workflow_type: WorkflowType, total_steps: int) -> Dict[int, Type[StepRecord]]:
    """Step -> record type. Registration's tail depends on the vehicle step."""
    if workflow_type is WorkflowType.ASSET_SWAP:
        return ASSET_SWAP_SCHEMA
    schema = dict(REGISTRATION_SCHEMA)
    if total_steps >= 8:
        schema[7] = VehicleAssignment
    schema[total_steps] = RegistrationCompletion
    return schema


def validate_record(workflow_type: WorkflowType, total_steps: int, step: int, record: Any) -> None:
    schema = schema_for(workflow_type, total_steps)
    expected = schema.get(step)
    if expected is None:
        raise StepDataError(f"{workflow_type.name} has no data schema for step {step}")
    if not isinstance(record, StepRecord):
        raise StepDataError(f"step {step} data must be a {expected.__name__}, got {type(record).__name__}")
    if type(record) is not expected:
        raise StepDataError(
            f"{type(record).__name__} cannot be stored at {workflow_type.name} step {step} "
            f"(expects {expected.__name__})"
        )


def decode_record(workflow_type: WorkflowType, total_steps: int, step: int,
                  payload: Dict[str, Any]) -> StepRecord:
    """Parse a stored step_N_data payload into its schema record."""
    expected = schema_for(workflow_type, total_steps).get(step)
    if expected is None:
        raise StepDataError(f"{workflow_type.name} has no data schema for step {step}")
    return expected.from_payload(payload)
