from __future__ import annotations

from polymarket_smart_money.config import load_config
from polymarket_smart_money.db import store
from polymarket_smart_money.pipeline.report import market_url
from polymarket_smart_money.pipeline.run_jobs import ROOT, resolve_path
from polymarket_smart_money.pipeline.smart_markets import fetch_published_smart_markets


def main() -> None:
    config = load_config(ROOT / "config.yaml")
    conn = store.get_connection(resolve_path(config.run.db_path))
    store.init_db(conn)
    records = fetch_published_smart_markets(
        conn,
        window_hours=config.smart_markets.window_hours,
        limit=config.smart_markets.publish_limit,
    )
    conn.close()
    if not records:
        print(f"No smart markets in the last {config.smart_markets.window_hours}h.")
        return

    for idx, record in enumerate(records, start=1):
        pin = " [pinned]" if record.get("is_pinned") else ""
        print(
            f"{idx}. {record.get('question')}{pin} score={record.get('smart_score', 0.0):.3f} "
            f"smart={record.get('smart_count')} weighted={record.get('smart_weighted')} "
            f"computed_at={record.get('computed_at')}"
        )
        for trader in record.get("top_smart_traders", [])[:5]:
            print(
                f"   - {trader.get('tier')} {trader.get('displayName') or trader.get('address')} "
                f"rarity={trader.get('rarityScore')}"
            )
        url = market_url(record)
        if url:
            print(f"   {url}")


if __name__ == "__main__":
    main()
