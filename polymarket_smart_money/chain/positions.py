from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Any, Dict, Iterable, Protocol, Sequence

from pydantic import BaseModel, Field

from polymarket_smart_money.errors import VerificationError

SHARE_DECIMALS = 6
MAX_TOKEN_ID = 2**256 - 1

logger = logging.getLogger(__name__)


class BalanceSource(Protocol):
    def balances(self, pairs: Sequence[tuple[str, int]]) -> list[int | None]:
        ...


class PositionStatus(str, Enum):
    HELD = "held"
    NONE = "none"
    UNKNOWN = "unknown"


class PositionCheck(BaseModel):
    status: PositionStatus
    shares: float = 0.0


class VerificationResult(BaseModel):
    positions: Dict[str, Dict[str, PositionCheck]] = Field(default_factory=dict)
    groups: int = 0
    failed_groups: int = 0

    def holders(self, market_id: str) -> list[dict[str, Any]]:
        checks = self.positions.get(market_id, {})
        return [
            {"address": address, "shares": check.shares}
            for address, check in sorted(checks.items())
            if check.status == PositionStatus.HELD
        ]

    def count(self, status: PositionStatus) -> int:
        return sum(
            1
            for checks in self.positions.values()
            for check in checks.values()
            if check.status == status
        )


def parse_token_id(token_id: Any) -> int | None:
    try:
        value = int(str(token_id).strip())
    except (TypeError, ValueError):
        return None
    return value if 0 <= value <= MAX_TOKEN_ID else None


def _group(items: list[Any], size: int) -> list[list[Any]]:
    return [items[index : index + size] for index in range(0, len(items), size)]


def _verify_group(
    markets: list[dict[str, Any]],
    traders: list[str],
    balance_source: BalanceSource,
) -> tuple[Dict[str, Dict[str, PositionCheck]], bool]:
    # (market_id, trader) -> raw balances per token, None for unknown.
    balances: dict[tuple[str, str], list[int | None]] = {}
    pairs: list[tuple[str, int]] = []
    slots: list[tuple[str, str]] = []
    for market in markets:
        market_id = str(market["market_id"])
        token_ids = [parse_token_id(token) for token in market.get("outcome_token_ids") or []]
        for trader in traders:
            balances[(market_id, trader)] = []
            for token_id in token_ids:
                if token_id is None:
                    balances[(market_id, trader)].append(None)
                    continue
                pairs.append((trader, token_id))
                slots.append((market_id, trader))

    failed = False
    if pairs:
        try:
            results = balance_source.balances(pairs)
        except VerificationError as exc:
            logger.warning("Balance aggregate failed for %d markets: %s", len(markets), exc)
            results = [None] * len(pairs)
            failed = True
        for slot, balance in zip(slots, results):
            balances[slot].append(balance)

    checks: Dict[str, Dict[str, PositionCheck]] = {}
    for (market_id, trader), values in balances.items():
        held = [value for value in values if value]
        if held:
            check = PositionCheck(
                status=PositionStatus.HELD,
                shares=sum(held) / 10**SHARE_DECIMALS,
            )
        elif not values or any(value is None for value in values):
            check = PositionCheck(status=PositionStatus.UNKNOWN)
        else:
            check = PositionCheck(status=PositionStatus.NONE)
        checks.setdefault(market_id, {})[trader] = check
    return checks, failed


def verify_positions(
    markets: Iterable[dict[str, Any]],
    trader_addresses: Iterable[str],
    balance_source: BalanceSource,
    group_size: int = 5,
    max_workers: int | None = None,
) -> VerificationResult:
    if group_size < 1:
        raise ValueError("group_size must be at least 1")
    market_list = list(markets)
    traders = sorted({address.lower() for address in trader_addresses if address})
    result = VerificationResult()
    if not market_list or not traders:
        return result

    groups = _group(market_list, group_size)
    result.groups = len(groups)
    workers = max(1, min(max_workers or group_size, len(groups)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_verify_group, group, traders, balance_source) for group in groups]
        for future in as_completed(futures):
            checks, failed = future.result()
            result.positions.update(checks)
            if failed:
                result.failed_groups += 1

    logger.info(
        "Verified %d markets x %d traders groups=%d failed_groups=%d held=%d unknown=%d",
        len(market_list),
        len(traders),
        result.groups,
        result.failed_groups,
        result.count(PositionStatus.HELD),
        result.count(PositionStatus.UNKNOWN),
    )
    return result
