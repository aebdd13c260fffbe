from __future__ import annotations

from datetime import datetime

from polymarket_smart_money.config import load_config
from polymarket_smart_money.db import store
from polymarket_smart_money.pipeline.run_jobs import ROOT, WATERMARKS, resolve_path
from polymarket_smart_money.utils.time import parse_datetime, utc_now


def main() -> None:
    config = load_config(ROOT / "config.yaml")
    conn = store.get_connection(resolve_path(config.run.db_path))
    store.init_db(conn)
    now = utc_now()

    marks = {(row["source"], row["key"]): row["last_timestamp"] for row in store.fetch_watermarks(conn)}
    print("watermarks:")
    for job, key in WATERMARKS.items():
        timestamp = marks.get(key)
        print(f"- {key[0]}/{key[1]} ({job}): {timestamp or 'never'} age={_age(parse_datetime(timestamp), now)}")

    print(f"traders: {store.count_traders(conn)} tiers={store.fetch_tier_counts(conn)}")
    print("latest_runs:")
    for run in store.fetch_latest_runs(conn, limit=10):
        line = f"- {run['job']} {run['status']} started={run['started_at']} finished={run['finished_at']}"
        if run.get("error_message"):
            line += f" error={run['error_message']}"
        print(line)
    conn.close()


def _age(timestamp: datetime | None, now: datetime) -> str:
    if timestamp is None:
        return "n/a"
    hours = (now - timestamp).total_seconds() / 3600
    return f"{hours:.1f}h"


if __name__ == "__main__":
    main()
