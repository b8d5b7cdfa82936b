"""
Fast JSON utilities for session documents and log events.

Uses orjson. Decimal values (rounding engine output) serialize as floats.

Usage:
    from swapflow.core.json_utils import dumps, loads

    log.info(dumps({"event": "session_saved", "version": 3}))
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import orjson


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return float(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return orjson.dumps(obj, default=_default).decode("utf-8")


def dumps_bytes(obj: Any) -> bytes:
    """Fast JSON encode to bytes."""
    return orjson.dumps(obj, default=_default)


def dumps_canonical(obj: Any) -> str:
    """Key-sorted encoding, used to compare documents for change detection."""
    return orjson.dumps(obj, default=_default, option=orjson.OPT_SORT_KEYS).decode("utf-8")


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
