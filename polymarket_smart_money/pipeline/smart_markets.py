from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Any

from polymarket_smart_money.chain.positions import BalanceSource, PositionStatus, verify_positions
from polymarket_smart_money.config import AppConfig
from polymarket_smart_money.db import store
from polymarket_smart_money.scoring.smart import rank_markets, score_market
from polymarket_smart_money.utils.time import hours_ago, parse_datetime, to_iso, utc_now

logger = logging.getLogger(__name__)


def _is_live(market: dict[str, Any], now: datetime) -> bool:
    if market.get("status") != "OPEN":
        return False
    end_date = parse_datetime(market.get("end_date"))
    return end_date is None or end_date > now


def candidate_markets(conn: sqlite3.Connection, config: AppConfig, now: datetime) -> list[dict[str, Any]]:
    candidates: list[dict[str, Any]] = []
    for market in store.fetch_open_markets(conn):
        if len(candidates) >= config.verification.max_markets:
            break
        if market.get("outcome_token_ids") and _is_live(market, now):
            candidates.append(market)

    chosen = {market["market_id"]: market for market in candidates}
    for position, market_id in enumerate(config.smart_markets.pinned_markets, start=1):
        market = chosen.get(market_id) or store.fetch_market(conn, market_id)
        if market is None:
            logger.warning("Pinned market %s is not in the catalog", market_id)
            continue
        if not market.get("outcome_token_ids"):
            logger.warning("Pinned market %s has no outcome token ids", market_id)
            continue
        market = {**market, "is_pinned": True, "priority": position}
        if market_id not in chosen:
            candidates.append(market)
        chosen[market_id] = market
    return [chosen[market["market_id"]] for market in candidates]


def compute_smart_markets(
    conn: sqlite3.Connection,
    config: AppConfig,
    balance_source: BalanceSource,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utc_now()
    computed_at = to_iso(now)
    verification = config.verification

    traders = store.fetch_smart_traders(conn, verification.smart_tiers, verification.max_traders)
    markets = candidate_markets(conn, config, now)
    logger.info("Checking %d smart traders across %d markets", len(traders), len(markets))

    result = verify_positions(
        markets,
        [trader["address"] for trader in traders],
        balance_source,
        group_size=verification.group_size,
        max_workers=verification.max_workers,
    )
    by_address = {trader["address"]: trader for trader in traders}

    scores = []
    for market in markets:
        holders = [
            {**by_address[holder["address"]], "shares": holder["shares"]}
            for holder in result.holders(market["market_id"])
            if holder["address"] in by_address
        ]
        score = score_market(market, holders)
        if score is None:
            continue
        score["is_pinned"] = bool(market.get("is_pinned"))
        score["priority"] = market.get("priority", 0)
        scores.append(score)

    ranked = rank_markets(scores)
    stored = store.insert_smart_stats(conn, computed_at, ranked, commit=False)
    logger.info(
        "Smart markets computed_at=%s candidates=%d published=%d unknown_pairs=%d failed_groups=%d",
        computed_at,
        len(markets),
        stored,
        result.count(PositionStatus.UNKNOWN),
        result.failed_groups,
    )
    return {
        "job": "compute-smart-markets",
        "computed_at": computed_at,
        "traders": len(traders),
        "candidates": len(markets),
        "published": stored,
        "unknown_pairs": result.count(PositionStatus.UNKNOWN),
        "failed_groups": result.failed_groups,
        "truncated": result.failed_groups > 0,
    }


def fetch_published_smart_markets(
    conn: sqlite3.Connection,
    now: datetime | None = None,
    window_hours: float = 48,
    limit: int | None = 20,
) -> list[dict[str, Any]]:
    now = now or utc_now()
    rows = store.fetch_smart_stats_since(conn, to_iso(hours_ago(now, window_hours)))
    newest: dict[str, dict[str, Any]] = {}
    for row in rows:
        current = newest.get(row["market_id"])
        if current is None or row["computed_at"] > current["computed_at"]:
            newest[row["market_id"]] = row
    live = [row for row in newest.values() if _is_live(row, now)]
    ranked = rank_markets(live)
    return ranked[:limit] if limit else ranked
