"""
Configuration checks run before the engine is wired.

Settings._validate only rejects values the engine cannot run with. This
module goes further and reports, per field, what would make sessions hard
to recover: an unreachable store, an autosave window wide enough to lose a
step, a correlation timeout short enough to report a payment as failed
after the backend applied it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

logger = logging.getLogger("swapflow")


class ValidationSeverity(Enum):
    ERROR = "error"      # engine must not start
    WARNING = "warning"  # starts, recoverability is weaker
    INFO = "info"


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None

    def render(self) -> str:
        text = f"CONFIG {self.severity.name}: {self.message}"
        if self.suggestion:
            text += f" (suggestion: {self.suggestion})"
        return text


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def _of(self, severity: ValidationSeverity) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is severity]

    def has_errors(self) -> bool:
        return bool(self._of(ValidationSeverity.ERROR))

    def has_warnings(self) -> bool:
        return bool(self._of(ValidationSeverity.WARNING))

    def get_errors(self) -> List[ValidationIssue]:
        return self._of(ValidationSeverity.ERROR)

    def get_warnings(self) -> List[ValidationIssue]:
        return self._of(ValidationSeverity.WARNING)


Check = Callable[[Any], List[ValidationIssue]]


class ConfigValidator:
    """
    Runs the built-in checks plus any registered ones against a Settings.

    A registered check that raises is logged and skipped; it never hides
    the results of the others.
    """

    # field -> (min, max, environment variable)
    BOUNDS: Dict[str, Tuple[float, float, str]] = {
        "http_timeout": (1.0, 120.0, "SWAP_HTTP_TIMEOUT"),
        "correlation_timeout_sec": (1.0, 300.0, "SWAP_CORRELATION_TIMEOUT_SEC"),
        "autosave_delay_ms": (0, 10_000, "SWAP_AUTOSAVE_DELAY_MS"),
        "session_ttl_hours": (1, 24 * 30, "SWAP_SESSION_TTL_HOURS"),
        "default_rate": (0.0, 1_000_000.0, "SWAP_DEFAULT_RATE"),
        "sessions_page_limit": (1, 200, "SWAP_SESSIONS_PAGE_LIMIT"),
        "metrics_port": (0, 65535, "SWAP_METRICS_PORT"),
    }

    # Written into every session's actor block and payment payload.
    REQUIRED: Tuple[str, ...] = ("currency", "station_id", "actor_id")

    AUTOSAVE_WARN_MS = 5000
    CORRELATION_WARN_SEC = 10.0

    def __init__(self) -> None:
        self._checks: List[Check] = [
            self._check_required,
            self._check_bounds,
            self._check_store,
            self._check_recoverability,
        ]
        self._custom: List[Check] = []

    def register_validator(self, check: Check) -> None:
        self._custom.append(check)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        for check in self._checks:
            issues.extend(check(cfg))
        for check in self._custom:
            try:
                issues.extend(check(cfg) or [])
            except Exception as e:
                logger.warning(f"Custom config check {getattr(check, '__name__', check)!r} failed: {e}")
        return ValidationResult(
            valid=not any(i.severity is ValidationSeverity.ERROR for i in issues),
            issues=issues,
        )

    # ========== Built-in checks ==========

    def _check_required(self, cfg) -> List[ValidationIssue]:
        issues = []
        for name in self.REQUIRED:
            value = getattr(cfg, name, None)
            if not isinstance(value, str) or not value.strip():
                issues.append(ValidationIssue(
                    field=name,
                    message=f"Required field '{name}' is missing or empty",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                    suggestion=f"Set SWAP_{name.upper()}",
                ))
        return issues

    def _check_bounds(self, cfg) -> List[ValidationIssue]:
        issues = []
        for name, (low, high, env) in self.BOUNDS.items():
            value = getattr(cfg, name, None)
            try:
                number = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=name,
                    message=f"'{name}' is not a number: {value!r}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                    suggestion=f"Set {env}",
                ))
                continue
            if low <= number <= high:
                continue
            issues.append(ValidationIssue(
                field=name,
                message=f"'{name}' value {number} is outside {low}..{high}",
                severity=ValidationSeverity.ERROR,
                value=number,
                suggestion=f"Set {env} between {low} and {high}",
            ))
        return issues

    def _check_store(self, cfg) -> List[ValidationIssue]:
        backend = getattr(cfg, "store_backend", "http")
        if backend == "file":
            if getattr(cfg, "state_dir", None):
                return []
            return [ValidationIssue(
                field="state_dir",
                message="File store selected without a state directory",
                severity=ValidationSeverity.ERROR,
                suggestion="Set SWAP_STATE_DIR",
            )]
        if backend != "http":
            return [ValidationIssue(
                field="store_backend",
                message=f"Unknown store backend '{backend}'",
                severity=ValidationSeverity.ERROR,
                value=backend,
                suggestion="Use 'http' or 'file'",
            )]

        issues = []
        url = getattr(cfg, "backend_url", "") or ""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            issues.append(ValidationIssue(
                field="backend_url",
                message=f"Backend URL '{url}' is not an http(s) URL",
                severity=ValidationSeverity.ERROR,
                value=url,
                suggestion="Set SWAP_BACKEND_URL, e.g. https://backend.example",
            ))
        if not getattr(cfg, "api_token", None):
            issues.append(ValidationIssue(
                field="api_token",
                message="No API token; session saves will be unauthenticated",
                severity=ValidationSeverity.WARNING,
                suggestion="Set SWAP_API_TOKEN",
            ))
        return issues

    def _check_recoverability(self, cfg) -> List[ValidationIssue]:
        issues = []
        delay = getattr(cfg, "autosave_delay_ms", 500)
        if delay > self.AUTOSAVE_WARN_MS:
            issues.append(ValidationIssue(
                field="autosave_delay_ms",
                message=f"Autosave delay {delay}ms: a crash can lose up to that much progress",
                severity=ValidationSeverity.WARNING,
                value=delay,
            ))
        timeout = getattr(cfg, "correlation_timeout_sec", 30.0)
        if timeout < self.CORRELATION_WARN_SEC:
            issues.append(ValidationIssue(
                field="correlation_timeout_sec",
                message=f"Correlation timeout {timeout}s may report timeouts for payments the backend applied",
                severity=ValidationSeverity.WARNING,
                value=timeout,
            ))
        if getattr(cfg, "default_rate", 120.0) == 0:
            issues.append(ValidationIssue(
                field="default_rate",
                message="Default rate is 0; swaps without an electricity service will be free",
                severity=ValidationSeverity.WARNING,
                value=0,
            ))
        return issues


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """Validate, log every error and warning, and return whether startup may proceed."""
    log = logger_instance or logger
    result = validate_config(cfg)

    for issue in result.get_errors():
        log.error(issue.render())
    for issue in result.get_warnings():
        log.warning(issue.render())

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")
    return result.valid
