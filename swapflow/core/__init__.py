"""
Core utilities package.

Rounding, subject naming, the transport contract, JSON and time helpers.
"""

from swapflow.core.errors import ConfigError, SwapflowError
from swapflow.core.pubsub import InMemoryBroker, Message, Transport, TransportError
from swapflow.core.rounding import (
    PaymentSkipReason,
    SwapCost,
    SwapPaymentInput,
    calculate_swap_payment,
    display_cost,
    has_sufficient_quota,
    payment_skip_reason,
    should_skip_payment,
)
from swapflow.core.utils import BoundedSet, format_time_ago, make_correlation_id, now_ms

__all__ = [
    "ConfigError",
    "SwapflowError",
    "InMemoryBroker",
    "Message",
    "Transport",
    "TransportError",
    "PaymentSkipReason",
    "SwapCost",
    "SwapPaymentInput",
    "calculate_swap_payment",
    "display_cost",
    "has_sufficient_quota",
    "payment_skip_reason",
    "should_skip_payment",
    "BoundedSet",
    "format_time_ago",
    "make_correlation_id",
    "now_ms",
]
