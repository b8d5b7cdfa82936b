"""
Monitoring package: Prometheus metrics.
"""

from swapflow.monitoring.metrics_rich import EngineMetrics, start_metrics_server

__all__ = ["EngineMetrics", "start_metrics_server"]
