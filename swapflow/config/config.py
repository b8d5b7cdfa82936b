"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from swapflow.core.errors import ConfigError
from swapflow.core.json_utils import dumps

load_dotenv()

log = logging.getLogger("swapflow")


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    backend_url: str
    api_token: str | None
    http_timeout: float
    correlation_timeout_sec: float
    autosave_delay_ms: int
    session_ttl_hours: int
    default_rate: float
    currency: str
    station_id: str
    company_id: str | None
    actor_id: str
    actor_name: str
    payment_method: str
    registration_vehicle_step: bool
    sessions_page_limit: int
    store_backend: str  # http | file
    state_dir: str
    log_level: str
    log_file: str | None
    metrics_port: int

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        data = self.__dict__.copy()
        if data.get("api_token"):
            data["api_token"] = "***"
        return data

    @property
    def registration_total_steps(self) -> int:
        return 8 if self.registration_vehicle_step else 7

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        cfg = cls(
            backend_url=os.getenv("SWAP_BACKEND_URL", "http://localhost:3000"),
            api_token=os.getenv("SWAP_API_TOKEN"),
            http_timeout=_float_env("SWAP_HTTP_TIMEOUT", 15.0),
            correlation_timeout_sec=_float_env("SWAP_CORRELATION_TIMEOUT_SEC", 30.0),
            autosave_delay_ms=_int_env("SWAP_AUTOSAVE_DELAY_MS", 500),
            session_ttl_hours=_int_env("SWAP_SESSION_TTL_HOURS", 24),
            default_rate=_float_env("SWAP_DEFAULT_RATE", 120.0),
            currency=os.getenv("SWAP_CURRENCY", "KES"),
            station_id=os.getenv("SWAP_STATION_ID", "STATION_001"),
            company_id=os.getenv("SWAP_COMPANY_ID"),
            actor_id=os.getenv("SWAP_ACTOR_ID", "operator"),
            actor_name=os.getenv("SWAP_ACTOR_NAME", "Operator"),
            payment_method=os.getenv("SWAP_PAYMENT_METHOD", "MPESA"),
            registration_vehicle_step=env_bool("SWAP_REGISTRATION_VEHICLE_STEP", False),
            sessions_page_limit=_int_env("SWAP_SESSIONS_PAGE_LIMIT", 20),
            store_backend=os.getenv("SWAP_STORE_BACKEND", "http"),
            state_dir=os.getenv("SWAP_STATE_DIR", "state/sessions"),
            log_level=os.getenv("SWAP_LOG_LEVEL", "INFO"),
            log_file=os.getenv("SWAP_LOG_FILE", "swapflow.log") or None,
            metrics_port=_int_env("SWAP_METRICS_PORT", 9105),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def _validate(self) -> None:
        if self.correlation_timeout_sec <= 0:
            raise ConfigError("SWAP_CORRELATION_TIMEOUT_SEC must be > 0")
        if self.autosave_delay_ms < 0:
            raise ConfigError("SWAP_AUTOSAVE_DELAY_MS must be >= 0")
        if self.session_ttl_hours <= 0:
            raise ConfigError("SWAP_SESSION_TTL_HOURS must be > 0")
        if self.default_rate < 0:
            raise ConfigError("SWAP_DEFAULT_RATE must be >= 0")
        if self.sessions_page_limit <= 0:
            raise ConfigError("SWAP_SESSIONS_PAGE_LIMIT must be > 0")
        if self.store_backend not in {"http", "file"}:
            raise ConfigError("SWAP_STORE_BACKEND must be 'http' or 'file'")

        if self.store_backend == "http" and not self.api_token:
            log.warning(
                "WARNING: SWAP_API_TOKEN not set. "
                "Session saves against the backend will be unauthenticated."
            )
        if self.correlation_timeout_sec < 5:
            log.warning(
                f"WARNING: SWAP_CORRELATION_TIMEOUT_SEC={self.correlation_timeout_sec} is short. "
                "Payment reports may time out while the backend is still applying them."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    payload = {
        "event": "config_loaded",
        "backend_url": cfg.backend_url,
        "store_backend": cfg.store_backend,
        "correlation_timeout_sec": cfg.correlation_timeout_sec,
        "autosave_delay_ms": cfg.autosave_delay_ms,
        "registration_steps": cfg.registration_total_steps,
    }
    log.info(dumps(payload))
