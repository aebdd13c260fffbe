from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Any, Iterable

from polymarket_smart_money.api.data_api import DataApiClient
from polymarket_smart_money.config import AppConfig, ReconcileConfig
from polymarket_smart_money.db import store
from polymarket_smart_money.errors import PersistenceError, SourceUnavailableError
from polymarket_smart_money.models import ClassifiedTrader, LeaderboardEntry, PassSummary, RecordOutcome
from polymarket_smart_money.pipeline.registry import apply_static_handles
from polymarket_smart_money.scoring.features import normalize_handle, safe_float
from polymarket_smart_money.scoring.tiers import classify_batch
from polymarket_smart_money.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

# One reconciliation pass at a time per process.
_RECONCILE_LOCK = threading.Lock()


def classified_fields(trader: ClassifiedTrader, now: str) -> dict[str, Any]:
    entry = trader.entry
    fields: dict[str, Any] = {
        "tier": trader.tier,
        "realized_pnl": entry.pnl,
        "total_pnl": entry.pnl,
        "volume": entry.volume,
        "trade_count": entry.markets_traded,
        "win_rate": trader.win_rate,
        "rarity_score": trader.rarity_score,
        "updated_at": now,
    }
    if entry.display_name:
        fields["display_name"] = entry.display_name
    if entry.profile_image:
        fields["profile_picture"] = entry.profile_image
    if entry.handle:
        fields["twitter_username"] = entry.handle
    return fields


def build_handle_index(classified: Iterable[ClassifiedTrader]) -> dict[str, ClassifiedTrader]:
    index: dict[str, ClassifiedTrader] = {}
    for trader in classified:
        handle = trader.entry.normalized_handle
        if handle is None:
            continue
        best = index.get(handle)
        if (
            best is None
            or trader.entry.pnl > best.entry.pnl
            or (trader.entry.pnl == best.entry.pnl and trader.address < best.address)
        ):
            index[handle] = trader
    return index


def reconcile_traders(
    conn: sqlite3.Connection,
    classified: Iterable[ClassifiedTrader],
    config: ReconcileConfig | None = None,
    now: str | None = None,
) -> PassSummary:
    config = config or ReconcileConfig()
    now = now or to_iso(utc_now())
    index = build_handle_index(classified)
    summary = PassSummary(job="reconcile-traders", fetched=len(index))

    with _RECONCILE_LOCK:
        owns_transaction = not conn.in_transaction
        if owns_transaction:
            conn.execute("BEGIN")
        try:
            for stored in store.fetch_traders_with_handle(conn):
                summary.record(_reconcile_one(conn, stored["address"], index, config, now))
            if owns_transaction:
                conn.commit()
        except Exception:
            if owns_transaction:
                conn.rollback()
            raise

    logger.info("Reconcile %s", summary.log_line())
    return summary


def _reconcile_one(
    conn: sqlite3.Connection,
    address: str,
    index: dict[str, ClassifiedTrader],
    config: ReconcileConfig,
    now: str,
) -> RecordOutcome:
    handle = None
    try:
        stored = store.fetch_trader(conn, address)
        if stored is None:
            # Merged away earlier in this pass.
            return RecordOutcome.SKIPPED
        handle = normalize_handle(stored.get("twitter_username"))
        match = index.get(handle) if handle else None
        if match is None:
            return RecordOutcome.UNSEEN

        pnl_diff = abs(match.entry.pnl - safe_float(stored.get("total_pnl")))
        if match.address == address and pnl_diff <= config.pnl_threshold:
            return RecordOutcome.UNCHANGED

        fields = classified_fields(match, now)
        with store.savepoint(conn, "reconcile_trader"):
            if match.address == address:
                store.update_trader(conn, address, fields)
                outcome = RecordOutcome.UPDATED
            elif store.fetch_trader(conn, match.address) is not None:
                if stored.get("latitude") is not None and stored.get("longitude") is not None:
                    fields["latitude"] = stored["latitude"]
                    fields["longitude"] = stored["longitude"]
                    fields["country"] = stored.get("country")
                store.update_trader(conn, match.address, fields)
                store.delete_trader(conn, address)
                outcome = RecordOutcome.MERGED
            else:
                store.rewrite_trader_address(conn, address, match.address)
                store.update_trader(conn, match.address, fields)
                outcome = RecordOutcome.MIGRATED
    except (sqlite3.Error, PersistenceError) as exc:
        logger.warning("Reconcile failed for %s (@%s): %s", address, handle, exc)
        return RecordOutcome.FAILED

    if outcome != RecordOutcome.UPDATED:
        logger.info("Reconciled @%s %s -> %s (%s)", handle, address, match.address, outcome.value)
    return outcome


def collect_reconcile_entries(
    client: DataApiClient,
    config: AppConfig,
) -> tuple[list[LeaderboardEntry], bool]:
    entries: list[LeaderboardEntry] = []
    truncated = False
    reached = 0
    last_error: SourceUnavailableError | None = None
    for period in config.reconcile.periods:
        try:
            fetch = client.fetch_leaderboard(
                time_period=period,
                order_by=config.leaderboard.order_by,
                batch_size=config.leaderboard.batch_size,
                max_offset=config.leaderboard.max_offset,
                page_delay_s=config.leaderboard.page_delay_s,
            )
        except SourceUnavailableError as exc:
            logger.warning("Leaderboard %s unavailable for reconciliation: %s", period, exc)
            last_error = exc
            truncated = True
            continue
        reached += 1
        truncated = truncated or fetch.truncated
        entries.extend(fetch.entries)
    if reached == 0 and last_error is not None:
        raise last_error
    return entries, truncated


def run_reconcile(
    conn: sqlite3.Connection,
    client: DataApiClient,
    config: AppConfig,
    now: str | None = None,
) -> PassSummary:
    entries, truncated = collect_reconcile_entries(client, config)
    entries = apply_static_handles(entries, config.static_traders)
    classified = classify_batch(entries, config.tiers, config.rarity)
    summary = reconcile_traders(conn, classified, config.reconcile, now)
    summary.truncated = truncated
    return summary
