from __future__ import annotations

import logging
import sqlite3
from typing import Any

from polymarket_smart_money.api.gamma import GammaClient
from polymarket_smart_money.config import AppConfig
from polymarket_smart_money.db import store
from polymarket_smart_money.errors import PersistenceError
from polymarket_smart_money.models import MarketRecord, PassSummary, RecordOutcome
from polymarket_smart_money.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

COMPARED_COLUMNS = (
    "question",
    "category",
    "event_slug",
    "slug",
    "end_date",
    "liquidity",
    "volume",
    "status",
    "outcome_token_ids",
    "outcome_labels",
    "outcome_prices",
)


def market_row(record: MarketRecord) -> dict[str, Any]:
    row = record.model_dump(exclude={"closed", "event_id"})
    row["status"] = record.status
    return row


def upsert_market_record(conn: sqlite3.Connection, record: MarketRecord, now: str) -> RecordOutcome:
    row = market_row(record)
    existing = store.fetch_market(conn, record.market_id)
    if existing is not None:
        merged = {
            column: row[column] if row[column] is not None else existing.get(column)
            for column in COMPARED_COLUMNS
        }
        if all(existing.get(column) == merged[column] for column in COMPARED_COLUMNS):
            return RecordOutcome.UNCHANGED
    store.upsert_market(conn, row, now)
    return RecordOutcome.CREATED if existing is None else RecordOutcome.UPDATED


def sync_markets(
    conn: sqlite3.Connection,
    client: GammaClient,
    config: AppConfig,
    now: str | None = None,
) -> dict[str, Any]:
    now = now or to_iso(utc_now())
    fetch = client.list_open_markets(
        max_markets=config.markets.max_markets,
        page_size=config.markets.page_size,
    )
    summary = PassSummary(
        job="sync-markets",
        fetched=len(fetch.markets),
        invalid=fetch.invalid,
        truncated=fetch.truncated,
    )
    for record in fetch.markets:
        if not record.event_slug and record.event_id:
            slug = client.event_slug(record.event_id)
            if slug:
                record = record.model_copy(update={"event_slug": slug})
        try:
            with store.savepoint(conn, "upsert_market"):
                outcome = upsert_market_record(conn, record, now)
        except (sqlite3.Error, PersistenceError) as exc:
            logger.warning("Failed to save market %s: %s", record.market_id, exc)
            outcome = RecordOutcome.FAILED
        summary.record(outcome)

    without_tokens = sum(1 for record in fetch.markets if not record.outcome_token_ids)
    if without_tokens:
        logger.info("%d markets have no outcome token ids", without_tokens)
    logger.info("Event cache hits=%d misses=%d", client.event_cache.hits, client.event_cache.misses)
    logger.info("Pass %s", summary.log_line())
    return {
        "job": "sync-markets",
        "markets": summary.model_dump(),
        "without_tokens": without_tokens,
        "truncated": summary.truncated,
    }
