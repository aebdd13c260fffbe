from __future__ import annotations

import math
from typing import Any


def safe_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None:
            return default
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def clamp(value: float, lower: float, upper: float) -> float:
    return min(upper, max(lower, value))


def normalize_handle(handle: str | None) -> str | None:
    if handle is None:
        return None
    text = handle.strip()
    while text.startswith("@"):
        text = text[1:]
    text = text.strip().lower()
    return text or None


def normalize_address(address: str | None) -> str | None:
    if not address:
        return None
    text = str(address).strip().lower()
    return text or None


def identity_key(address: str, handle: str | None) -> str:
    # Handle is canonical when present, address otherwise.
    normalized = normalize_handle(handle)
    if normalized:
        return f"handle:{normalized}"
    return f"address:{normalize_address(address)}"


def estimate_win_rate(pnl: float, volume: float) -> float:
    if volume <= 0 or not pnl:
        return 0.5
    return clamp(0.5 + (pnl / volume) * 0.5, 0.0, 1.0)
