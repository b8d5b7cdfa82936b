"""
Infrastructure package: backend HTTP client and logging.
"""

from swapflow.infra.backend_api import BackendApi, BackendApiError, BackendUnavailableError, Credentials
from swapflow.infra.logging_cfg import build_logger, event_logger, log_event

__all__ = [
    "BackendApi",
    "BackendApiError",
    "BackendUnavailableError",
    "Credentials",
    "build_logger",
    "event_logger",
    "log_event",
]
