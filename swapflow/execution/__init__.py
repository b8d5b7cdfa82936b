"""
Execution layer: correlated requests over the bus.

- CorrelationClient: publish, wait for the matching response
- IdempotencyGuard: at-most-once business operations
- BackendGateway: identification and payment/service reports
"""

from swapflow.execution.backend_gateway import (
    BackendGateway,
    CustomerProfile,
    IdentifyOutcome,
    PaymentPayloadError,
    ServiceReport,
)
from swapflow.execution.correlation import CorrelationClient, CorrelationResult, CorrelationStatus
from swapflow.execution.idempotency import IdempotencyGuard

__all__ = [
    "BackendGateway",
    "CustomerProfile",
    "IdentifyOutcome",
    "PaymentPayloadError",
    "ServiceReport",
    "CorrelationClient",
    "CorrelationResult",
    "CorrelationStatus",
    "IdempotencyGuard",
]
