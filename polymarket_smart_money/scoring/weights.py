from __future__ import annotations

from typing import Any, Callable, Iterable, TypeVar

T = TypeVar("T")

TIER_ORDER = ["S", "A", "B", "C", "D", "E"]

TIER_WEIGHTS: dict[str, float] = {
    "S": 5,
    "A": 3,
    "B": 2,
    "C": 1,
    "D": 0,
    "E": 0,
}


def tier_weight(tier: str | None) -> float:
    return TIER_WEIGHTS.get(tier or "", 0)


def tier_index(tier: str) -> int:
    try:
        return TIER_ORDER.index(tier)
    except ValueError as exc:
        raise ValueError(f"unknown tier {tier!r}") from exc


def stable_sorted(
    items: Iterable[T],
    key: Callable[[T], Any],
    reverse: bool = False,
    tie_breaker: Callable[[T], Any] | None = None,
) -> list[T]:
    if tie_breaker is None:
        tie_breaker = _default_tie_breaker
    items_list = list(items)
    if reverse:
        items_list = sorted(items_list, key=tie_breaker)
        return sorted(items_list, key=key, reverse=True)

    def sort_key(item: T) -> tuple[Any, Any]:
        return (key(item), tie_breaker(item))

    return sorted(items_list, key=sort_key)


def _default_tie_breaker(item: Any) -> Any:
    if isinstance(item, dict):
        for key in ("market_id", "address", "id", "slug"):
            if key in item and item[key] is not None:
                return str(item[key])
    for attr in ("market_id", "address"):
        value = getattr(item, attr, None)
        if value is not None:
            return str(value)
    return str(item)
