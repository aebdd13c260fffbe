from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable, Iterable

from polymarket_smart_money.api.data_api import DataApiClient
from polymarket_smart_money.config import AppConfig
from polymarket_smart_money.db import store
from polymarket_smart_money.errors import PersistenceError, SourceUnavailableError
from polymarket_smart_money.models import ClassifiedTrader, LeaderboardEntry, PassSummary, RecordOutcome
from polymarket_smart_money.pipeline.reconcile import build_handle_index, classified_fields, reconcile_traders
from polymarket_smart_money.pipeline.registry import apply_static_handles, apply_static_locations
from polymarket_smart_money.scoring.features import identity_key
from polymarket_smart_money.scoring.tiers import classify_batch, tier_distribution
from polymarket_smart_money.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

# Columns whose change makes an upsert count as UPDATED.
COMPARED_COLUMNS = (
    "display_name",
    "profile_picture",
    "twitter_username",
    "tier",
    "realized_pnl",
    "total_pnl",
    "volume",
    "trade_count",
    "win_rate",
    "rarity_score",
)


def _differs(stored: Any, fresh: Any) -> bool:
    if isinstance(fresh, float) or isinstance(stored, float):
        try:
            return abs(float(stored) - float(fresh)) > 1e-9
        except (TypeError, ValueError):
            return True
    return stored != fresh


def upsert_classified(conn: sqlite3.Connection, trader: ClassifiedTrader, now: str) -> RecordOutcome:
    fields = classified_fields(trader, now)
    existing = store.fetch_trader(conn, trader.address)
    if existing is None:
        row = {
            "address": trader.address,
            "display_name": f"{trader.address[:6]}...",
            "created_at": now,
            "last_active_at": now,
            **fields,
        }
        store.insert_trader(conn, row)
        return RecordOutcome.CREATED

    changed = {
        column: fields[column]
        for column in COMPARED_COLUMNS
        if column in fields and _differs(existing.get(column), fields[column])
    }
    if not changed:
        store.update_trader(conn, trader.address, {"last_active_at": now})
        return RecordOutcome.UNCHANGED
    store.update_trader(conn, trader.address, {**changed, "last_active_at": now, "updated_at": now})
    return RecordOutcome.UPDATED


def persist_classified(
    conn: sqlite3.Connection,
    classified: list[ClassifiedTrader],
    summary: PassSummary,
    now: str,
) -> None:
    index = build_handle_index(classified)
    for trader in classified:
        handle = trader.entry.normalized_handle
        if handle is not None and index[handle].address != trader.address:
            # Another address carries this handle with a higher pnl.
            logger.debug("Skipping %s: @%s belongs to %s", trader.address, handle, index[handle].address)
            summary.record(RecordOutcome.SKIPPED)
            continue
        try:
            with store.savepoint(conn, "upsert_trader"):
                outcome = upsert_classified(conn, trader, now)
        except (sqlite3.Error, PersistenceError) as exc:
            logger.warning("Failed to save trader %s: %s", trader.address, exc)
            outcome = RecordOutcome.FAILED
        summary.record(outcome)


def _ingest(
    conn: sqlite3.Connection,
    job: str,
    entries: list[LeaderboardEntry],
    config: AppConfig,
    summary: PassSummary,
    now: str,
) -> dict[str, Any]:
    entries = apply_static_handles(entries, config.static_traders)
    classified = classify_batch(entries, config.tiers, config.rarity)
    distribution = tier_distribution(classified)

    reconciled = reconcile_traders(conn, classified, config.reconcile, now)
    persist_classified(conn, classified, summary, now)
    located = apply_static_locations(conn, config.static_traders)

    logger.info("Tier distribution: %s", " ".join(f"{tier}={count}" for tier, count in distribution.items()))
    logger.info("Pass %s", summary.log_line())
    return {
        "job": job,
        "traders": summary.model_dump(),
        "reconcile": reconciled.model_dump(),
        "tiers": distribution,
        "located": located,
        "truncated": summary.truncated,
    }


def sync_leaderboard(
    conn: sqlite3.Connection,
    client: DataApiClient,
    config: AppConfig,
    now: str | None = None,
) -> dict[str, Any]:
    now = now or to_iso(utc_now())
    lb = config.leaderboard
    fetch = client.fetch_leaderboard(
        time_period=lb.time_period,
        order_by=lb.order_by,
        batch_size=lb.batch_size,
        max_offset=lb.max_offset,
        page_delay_s=lb.page_delay_s,
    )
    summary = PassSummary(
        job="sync-leaderboard",
        fetched=len(fetch.entries),
        invalid=fetch.invalid,
        truncated=fetch.truncated,
    )
    return _ingest(conn, "sync-leaderboard", fetch.entries, config, summary, now)


def dedupe_by_identity(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    best: dict[str, LeaderboardEntry] = {}
    for entry in entries:
        key = identity_key(entry.address, entry.handle)
        existing = best.get(key)
        if existing is None or entry.pnl > existing.pnl:
            best[key] = entry
    return list(best.values())


def sync_public_traders(
    conn: sqlite3.Connection,
    client: DataApiClient,
    config: AppConfig,
    now: str | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, Any]:
    """Ingest traders with a public handle across several leaderboard windows.

    Each window is paged like the main leaderboard; only rows carrying a
    handle are kept. When ``refresh_all_time_pnl`` is set, pnl is replaced by
    the latest all-time value from the user-pnl series where available.
    """
    now = now or to_iso(utc_now())
    pt = config.public_traders
    summary = PassSummary(job="sync-public-traders")
    collected: list[LeaderboardEntry] = []
    for index, period in enumerate(pt.periods):
        # Only the first window may abort the pass.
        try:
            fetch = client.fetch_leaderboard(
                time_period=period,
                order_by=config.leaderboard.order_by,
                batch_size=config.leaderboard.batch_size,
                max_offset=pt.max_offset,
                page_delay_s=config.leaderboard.page_delay_s,
                sleep=sleep,
            )
        except SourceUnavailableError as exc:
            if index == 0:
                raise
            logger.warning("Public traders window %s failed: %s", period, exc)
            summary.truncated = True
            continue
        summary.invalid += fetch.invalid
        summary.truncated = summary.truncated or fetch.truncated
        collected.extend(apply_static_handles(fetch.entries, config.static_traders))

    public = [entry for entry in dedupe_by_identity(collected) if entry.has_public_identity]
    summary.fetched = len(public)

    if pt.refresh_all_time_pnl:
        refreshed = []
        for entry in public:
            pnl = client.fetch_latest_pnl(entry.address)
            if pnl is not None:
                entry = entry.model_copy(update={"pnl": pnl})
            refreshed.append(entry)
            if pt.pnl_delay_s > 0:
                sleep(pt.pnl_delay_s)
        public = refreshed

    logger.info("Public traders collected=%d windows=%d", len(public), len(pt.periods))
    return _ingest(conn, "sync-public-traders", public, config, summary, now)
