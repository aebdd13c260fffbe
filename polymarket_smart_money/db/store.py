from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from polymarket_smart_money.db.schema import SCHEMA_SQL
from polymarket_smart_money.errors import PersistenceError

TRADER_COLUMNS = (
    "address",
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
    "latitude",
    "longitude",
    "country",
    "last_active_at",
    "created_at",
    "updated_at",
)

MARKET_JSON_COLUMNS = ("outcome_token_ids", "outcome_labels", "outcome_prices")


def get_connection(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    _ensure_column(conn, "traders", "volume", "REAL NOT NULL DEFAULT 0")
    _ensure_column(conn, "market_smart_stats", "total_shares", "REAL")
    _ensure_column(conn, "markets", "outcome_prices", "TEXT")
    conn.commit()


def _ensure_column(conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
    except sqlite3.OperationalError:
        return


@contextmanager
def savepoint(conn: sqlite3.Connection, name: str) -> Iterator[None]:
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except BaseException:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {name}")


# runs


def ensure_run(
    conn: sqlite3.Connection,
    run_id: str,
    job: str,
    started_at: str,
    commit: bool = True,
) -> None:
    conn.execute(
        """
        INSERT OR REPLACE INTO runs (run_id, job, started_at, status)
        VALUES (?, ?, ?, 'running')
        """,
        (run_id, job, started_at),
    )
    if commit:
        conn.commit()


def update_run_status(
    conn: sqlite3.Connection,
    run_id: str,
    status: str,
    finished_at: str,
    summary: dict[str, Any] | None = None,
    error_message: str | None = None,
) -> None:
    conn.execute(
        """
        UPDATE runs
        SET status = ?, finished_at = ?, summary_json = ?, error_message = ?
        WHERE run_id = ?
        """,
        (
            status,
            finished_at,
            json.dumps(summary, ensure_ascii=True) if summary is not None else None,
            error_message,
            run_id,
        ),
    )
    conn.commit()


def fetch_latest_runs(conn: sqlite3.Connection, limit: int = 10) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT run_id, job, started_at, status, finished_at, summary_json, error_message
        FROM runs ORDER BY started_at DESC LIMIT ?
        """,
        (limit,),
    ).fetchall()
    results = []
    for row in rows:
        record = dict(row)
        record["summary"] = json.loads(row["summary_json"]) if row["summary_json"] else {}
        del record["summary_json"]
        results.append(record)
    return results


# traders


def fetch_trader(conn: sqlite3.Connection, address: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM traders WHERE address = ?", (address,)).fetchone()
    return dict(row) if row else None


def fetch_traders_with_handle(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT * FROM traders
        WHERE twitter_username IS NOT NULL AND TRIM(twitter_username) != ''
        ORDER BY address
        """
    ).fetchall()
    return [dict(row) for row in rows]


def fetch_smart_traders(
    conn: sqlite3.Connection,
    tiers: Iterable[str],
    limit: int,
) -> list[dict[str, Any]]:
    tier_list = list(tiers)
    if not tier_list:
        return []
    placeholders = ", ".join("?" for _ in tier_list)
    rows = conn.execute(
        f"""
        SELECT address, display_name, profile_picture, twitter_username, tier, rarity_score
        FROM traders
        WHERE tier IN ({placeholders})
        ORDER BY rarity_score DESC, address ASC
        LIMIT ?
        """,
        (*tier_list, limit),
    ).fetchall()
    return [dict(row) for row in rows]


def insert_trader(conn: sqlite3.Connection, trader: dict[str, Any]) -> None:
    if not trader.get("address"):
        raise PersistenceError("trader", "address is required")
    columns = [column for column in TRADER_COLUMNS if column in trader]
    placeholders = ", ".join("?" for _ in columns)
    conn.execute(
        f"INSERT INTO traders ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(trader[column] for column in columns),
    )


def update_trader(conn: sqlite3.Connection, address: str, fields: dict[str, Any]) -> None:
    unknown = [column for column in fields if column not in TRADER_COLUMNS or column == "address"]
    if unknown:
        raise PersistenceError(address, f"cannot update columns {unknown}")
    if not fields:
        return
    assignments = ", ".join(f"{column} = ?" for column in fields)
    cursor = conn.execute(
        f"UPDATE traders SET {assignments} WHERE address = ?",
        (*fields.values(), address),
    )
    if cursor.rowcount == 0:
        raise PersistenceError(address, "trader not found")


def rewrite_trader_address(conn: sqlite3.Connection, old_address: str, new_address: str) -> None:
    if fetch_trader(conn, new_address) is not None:
        raise PersistenceError(new_address, "target address already has a row")
    cursor = conn.execute(
        "UPDATE traders SET address = ? WHERE address = ?",
        (new_address, old_address),
    )
    if cursor.rowcount == 0:
        raise PersistenceError(old_address, "trader not found")


def delete_trader(conn: sqlite3.Connection, address: str) -> None:
    conn.execute("DELETE FROM traders WHERE address = ?", (address,))


def update_locations_by_handle(
    conn: sqlite3.Connection,
    handle: str,
    latitude: float,
    longitude: float,
    country: str,
) -> int:
    cursor = conn.execute(
        """
        UPDATE traders SET latitude = ?, longitude = ?, country = ?
        WHERE LOWER(LTRIM(TRIM(twitter_username), '@')) = ?
        """,
        (latitude, longitude, country, handle),
    )
    return cursor.rowcount


def fetch_tier_counts(conn: sqlite3.Connection) -> dict[str, int]:
    rows = conn.execute(
        "SELECT tier, COUNT(*) AS count FROM traders GROUP BY tier ORDER BY tier"
    ).fetchall()
    return {row["tier"]: row["count"] for row in rows}


def count_traders(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT COUNT(*) AS count FROM traders").fetchone()
    return row["count"] if row else 0


# markets


def fetch_market(conn: sqlite3.Connection, market_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM markets WHERE market_id = ?", (market_id,)).fetchone()
    return _market_row(row) if row else None


def upsert_market(conn: sqlite3.Connection, market: dict[str, Any], updated_at: str) -> None:
    conn.execute(
        """
        INSERT INTO markets
        (market_id, question, category, event_slug, slug, end_date, liquidity, volume, status,
         outcome_token_ids, outcome_labels, outcome_prices, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(market_id) DO UPDATE SET
            question = excluded.question,
            category = excluded.category,
            event_slug = COALESCE(excluded.event_slug, markets.event_slug),
            slug = COALESCE(excluded.slug, markets.slug),
            end_date = COALESCE(excluded.end_date, markets.end_date),
            liquidity = excluded.liquidity,
            volume = excluded.volume,
            status = excluded.status,
            outcome_token_ids = excluded.outcome_token_ids,
            outcome_labels = excluded.outcome_labels,
            outcome_prices = excluded.outcome_prices,
            updated_at = excluded.updated_at
        """,
        (
            market.get("market_id"),
            market.get("question"),
            market.get("category"),
            market.get("event_slug"),
            market.get("slug"),
            market.get("end_date"),
            market.get("liquidity"),
            market.get("volume"),
            market.get("status"),
            json.dumps(market.get("outcome_token_ids") or [], ensure_ascii=True),
            json.dumps(market.get("outcome_labels") or [], ensure_ascii=True),
            json.dumps(market.get("outcome_prices") or [], ensure_ascii=True),
            updated_at,
        ),
    )


def fetch_open_markets(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM markets WHERE status = 'OPEN' ORDER BY volume DESC, market_id ASC"
    ).fetchall()
    return [_market_row(row) for row in rows]


def _market_row(row: sqlite3.Row) -> dict[str, Any]:
    record = dict(row)
    for column in MARKET_JSON_COLUMNS:
        value = record.get(column)
        record[column] = json.loads(value) if value else []
    return record


# smart stats


def insert_smart_stats(
    conn: sqlite3.Connection,
    computed_at: str,
    stats: Iterable[dict[str, Any]],
    commit: bool = True,
) -> int:
    rows = []
    for stat in stats:
        rows.append(
            (
                stat.get("market_id"),
                computed_at,
                stat.get("smart_count"),
                stat.get("smart_weighted"),
                stat.get("smart_score"),
                stat.get("total_shares"),
                json.dumps(stat.get("top_smart_traders", []), ensure_ascii=True),
                1 if stat.get("is_pinned") else 0,
                stat.get("priority", 0),
            )
        )
    conn.executemany(
        """
        INSERT INTO market_smart_stats
        (market_id, computed_at, smart_count, smart_weighted, smart_score, total_shares,
         top_smart_traders, is_pinned, priority)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )
    if commit:
        conn.commit()
    return len(rows)


def fetch_smart_stats_since(conn: sqlite3.Connection, since: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT s.market_id, s.computed_at, s.smart_count, s.smart_weighted, s.smart_score,
               s.total_shares, s.top_smart_traders, s.is_pinned, s.priority,
               m.question, m.category, m.volume, m.end_date, m.slug, m.event_slug, m.status
        FROM market_smart_stats s
        JOIN markets m ON m.market_id = s.market_id
        WHERE s.computed_at >= ?
        """,
        (since,),
    ).fetchall()
    results = []
    for row in rows:
        record = dict(row)
        record["top_smart_traders"] = (
            json.loads(row["top_smart_traders"]) if row["top_smart_traders"] else []
        )
        record["is_pinned"] = bool(row["is_pinned"])
        results.append(record)
    return results


# ingestion state


def get_watermark(conn: sqlite3.Connection, source: str, key: str) -> str | None:
    row = conn.execute(
        "SELECT last_timestamp FROM ingestion_state WHERE source = ? AND key = ?",
        (source, key),
    ).fetchone()
    return row["last_timestamp"] if row else None


def set_watermark(
    conn: sqlite3.Connection,
    source: str,
    key: str,
    timestamp: str,
    commit: bool = True,
) -> None:
    conn.execute(
        """
        INSERT INTO ingestion_state (source, key, last_timestamp)
        VALUES (?, ?, ?)
        ON CONFLICT(source, key) DO UPDATE SET last_timestamp = excluded.last_timestamp
        """,
        (source, key, timestamp),
    )
    if commit:
        conn.commit()


def fetch_watermarks(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT source, key, last_timestamp FROM ingestion_state ORDER BY source, key"
    ).fetchall()
    return [dict(row) for row in rows]
