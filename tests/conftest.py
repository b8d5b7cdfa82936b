"""
Pytest configuration and fixtures.
Adds the repo root to Python path so tests can import swapflow.
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

# Add the repo root to sys.path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from swapflow.core.pubsub import InMemoryBroker
from swapflow.core.topics import response_for
from swapflow.state.session import Actor, ActorRole


class SimulatedBackend:
    """
    Answers identify and payment/service requests on an InMemoryBroker.

    Tests tweak the response fields (or set silent=True) before acting.
    completion_success=None leaves the flag out of the reply.
    """

    def __init__(self, broker: InMemoryBroker) -> None:
        self.broker = broker
        self.requests: List[Tuple[str, Dict[str, Any]]] = []
        self.current_asset: Optional[str] = "BAT-OLD-1"
        self.energy_quota: float = 0.0
        self.energy_used: float = 0.0
        self.rate: float = 120.0
        self.identify_signals = ["CUSTOMER_IDENTIFIED_SUCCESS"]
        self.identify_success = True
        self.completion_signals = ["SERVICE_COMPLETED"]
        self.completion_success: Optional[bool] = True
        self.completion_metadata: Dict[str, Any] = {"transaction_id": "TX-1001"}
        self.silent = False
        broker.add_responder("emit/uxi/+/plan/+/identify_customer", self._identify)
        broker.add_responder("emit/uxi/+/plan/+/payment_and_service", self._complete)

    def requests_for(self, action: str) -> List[Dict[str, Any]]:
        return [p for s, p in self.requests if s.endswith("/" + action)]

    def _reply(self, subject: str, payload: Dict[str, Any], data: Dict[str, Any]):
        return [(response_for(subject), {"correlation_id": payload["correlation_id"], "data": data})]

    async def _identify(self, subject: str, payload: Dict[str, Any]):
        self.requests.append((subject, payload))
        if self.silent:
            return []
        code = payload["plan_id"]
        fleet: Dict[str, Any] = {"service_id": "service-battery-fleet-ke", "used": 1, "quota": 1}
        if self.current_asset:
            fleet["current_asset"] = self.current_asset
        return self._reply(subject, payload, {
            "success": self.identify_success,
            "signals": list(self.identify_signals),
            "metadata": {
                "customer_id": "CUST-7",
                "service_plan_data": {
                    "servicePlanId": code,
                    "serviceStates": [
                        fleet,
                        {
                            "service_id": "service-electricity-ke",
                            "used": self.energy_used,
                            "quota": self.energy_quota,
                        },
                    ],
                    "paymentState": "CURRENT",
                    "serviceState": "ACTIVE",
                },
                "service_bundle": {
                    "name": "Pay-Per-Swap",
                    "services": [{"serviceId": "service-electricity-ke", "usageUnitPrice": self.rate}],
                },
                "common_terms": {"billingCurrency": "KES"},
            },
        })

    async def _complete(self, subject: str, payload: Dict[str, Any]):
        self.requests.append((subject, payload))
        if self.silent:
            return []
        data: Dict[str, Any] = {
            "signals": list(self.completion_signals),
            "metadata": dict(self.completion_metadata),
        }
        if self.completion_success is not None:
            data["success"] = self.completion_success
        return self._reply(subject, payload, data)


@pytest.fixture
def attendant() -> Actor:
    return Actor(role=ActorRole.ATTENDANT, id="att-1", name="Jane Attendant", station="STATION_7")


@pytest.fixture
def salesperson() -> Actor:
    return Actor(role=ActorRole.SALESPERSON, id="sales-1", name="Sam Sales", station="STATION_7", company_id=14)


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def backend(broker) -> SimulatedBackend:
    return SimulatedBackend(broker)
