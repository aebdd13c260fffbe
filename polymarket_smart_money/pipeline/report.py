from __future__ import annotations

import csv
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from polymarket_smart_money.db import store
from polymarket_smart_money.pipeline.smart_markets import fetch_published_smart_markets
from polymarket_smart_money.utils.io import ensure_dir
from polymarket_smart_money.utils.time import utc_now

MARKET_URL = "https://polymarket.com/event/{slug}"

CSV_HEADERS = [
    "market_id",
    "question",
    "category",
    "smart_score",
    "smart_count",
    "smart_weighted",
    "total_shares",
    "volume",
    "end_date",
    "is_pinned",
    "priority",
    "computed_at",
    "url",
]

logger = logging.getLogger(__name__)


def market_url(record: dict[str, Any]) -> str | None:
    slug = record.get("event_slug") or record.get("slug")
    return MARKET_URL.format(slug=slug) if slug else None


def write_report(
    conn: sqlite3.Connection,
    out_dir: Path,
    now: datetime | None = None,
    window_hours: float = 48,
    limit: int = 20,
) -> dict[str, Path]:
    now = now or utc_now()
    records = fetch_published_smart_markets(conn, now=now, window_hours=window_hours, limit=limit)
    for record in records:
        record["url"] = market_url(record)
    tier_counts = store.fetch_tier_counts(conn)
    watermarks = store.fetch_watermarks(conn)

    ensure_dir(out_dir)
    report_date = now.date().isoformat()
    md_path = out_dir / f"smart_markets_{report_date}.md"
    csv_path = out_dir / f"smart_markets_{report_date}.csv"
    watchlist_path = out_dir / "watchlist.json"

    with csv_path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_HEADERS)
        writer.writeheader()
        writer.writerows({key: record.get(key) for key in CSV_HEADERS} for record in records)

    with md_path.open("w", encoding="utf-8") as handle:
        handle.write(f"# Smart Money Markets ({report_date})\n\n")
        handle.write("## Ingestion state\n\n")
        if watermarks:
            for mark in watermarks:
                handle.write(f"- {mark['source']}/{mark['key']}: {mark['last_timestamp']}\n")
        else:
            handle.write("- no completed passes\n")
        handle.write("\n## Traders by tier\n\n")
        for tier, count in tier_counts.items():
            handle.write(f"- {tier}: {count}\n")
        handle.write("\n")
        if not records:
            handle.write(f"No smart markets published in the last {window_hours:g}h.\n")
        else:
            handle.write("| Rank | Market | Smart score | Smart traders | Top traders | Volume | Ends |\n")
            handle.write("| --- | --- | --- | --- | --- | --- | --- |\n")
            for idx, record in enumerate(records, start=1):
                top = ", ".join(
                    f"{trader.get('displayName') or trader.get('address')} ({trader.get('tier')})"
                    for trader in record.get("top_smart_traders", [])[:3]
                )
                pin = " (pinned)" if record.get("is_pinned") else ""
                handle.write(
                    f"| {idx} | {record.get('question')}{pin} | {record.get('smart_score', 0.0):.4f} "
                    f"| {record.get('smart_count', 0)} | {top} | {record.get('volume') or 0:.0f} "
                    f"| {record.get('end_date') or 'n/a'} |\n"
                )

    watchlist = [
        {
            "market_id": record.get("market_id"),
            "question": record.get("question"),
            "url": record.get("url"),
            "smart_score": record.get("smart_score"),
            "smart_count": record.get("smart_count"),
            "smart_weighted": record.get("smart_weighted"),
            "is_pinned": record.get("is_pinned", False),
            "top_smart_traders": record.get("top_smart_traders", []),
            "computed_at": record.get("computed_at"),
        }
        for record in records
    ]
    with watchlist_path.open("w", encoding="utf-8") as handle:
        json.dump(watchlist, handle, ensure_ascii=True, indent=2)

    logger.info("Wrote %d smart markets to %s", len(records), out_dir)
    return {"markdown": md_path, "csv": csv_path, "watchlist": watchlist_path}
