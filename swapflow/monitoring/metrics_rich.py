"""
Prometheus metrics for the session engine.

Organized into: correlation, sessions, workflow, payments.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class EngineMetrics:
    """Metrics for workflow session observability."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Correlation Metrics ===
        self.correlation_requests = Counter(
            'correlation_requests_total',
            'Correlated requests by action and outcome',
            labelnames=['action', 'status'],
            registry=reg
        )
        self.correlation_latency_ms = Histogram(
            'correlation_latency_ms',
            'Time from publish to matching response (milliseconds)',
            labelnames=['action'],
            buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
            registry=reg
        )
        self.correlation_pending = Gauge(
            'correlation_pending',
            'Requests waiting for a response',
            registry=reg
        )
        self.late_responses = Counter(
            'correlation_late_responses_total',
            'Responses arriving after their request resolved',
            labelnames=['action'],
            registry=reg
        )
        self.idempotent_replays = Counter(
            'idempotent_replays_total',
            'Operations answered from the idempotency cache',
            labelnames=['action'],
            registry=reg
        )

        # === Session Metrics ===
        self.session_saves = Counter(
            'session_saves_total',
            'Session documents written',
            labelnames=['workflow'],
            registry=reg
        )
        self.session_save_failures = Counter(
            'session_save_failures_total',
            'Session writes that failed (session left dirty)',
            labelnames=['workflow'],
            registry=reg
        )
        self.session_conflicts = Counter(
            'session_conflicts_total',
            'Session writes rejected on version',
            labelnames=['workflow'],
            registry=reg
        )
        self.sessions_started = Counter(
            'sessions_started_total',
            'Sessions started',
            labelnames=['workflow', 'mode'],
            registry=reg
        )
        self.sessions_completed = Counter(
            'sessions_completed_total',
            'Sessions completed',
            labelnames=['workflow'],
            registry=reg
        )

        # === Workflow Metrics ===
        self.step_transitions = Counter(
            'step_transitions_total',
            'Step changes by workflow and target step',
            labelnames=['workflow', 'step'],
            registry=reg
        )
        self.step_failures = Counter(
            'step_failures_total',
            'Failed step attempts',
            labelnames=['workflow', 'step', 'kind'],
            registry=reg
        )

        # === Payment Metrics ===
        self.payments_skipped = Counter(
            'payments_skipped_total',
            'Swaps completed without collecting payment',
            labelnames=['reason'],
            registry=reg
        )
        self.payments_reported = Counter(
            'payments_reported_total',
            'Payment and service completions reported',
            labelnames=['workflow'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry


def start_metrics_server(metrics: EngineMetrics, port: int) -> None:
    """Expose the engine registry on /metrics."""
    start_http_server(port, registry=metrics.registry)
