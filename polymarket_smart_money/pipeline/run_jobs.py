from __future__ import annotations

import argparse
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Sequence

from polymarket_smart_money.api.data_api import DataApiClient
from polymarket_smart_money.api.gamma import EventCache, GammaClient
from polymarket_smart_money.chain.multicall import MulticallBalanceClient
from polymarket_smart_money.chain.positions import BalanceSource
from polymarket_smart_money.config import AppConfig, load_config
from polymarket_smart_money.db import store
from polymarket_smart_money.pipeline.leaderboard import sync_leaderboard, sync_public_traders
from polymarket_smart_money.pipeline.markets import sync_markets
from polymarket_smart_money.pipeline.reconcile import run_reconcile
from polymarket_smart_money.pipeline.report import write_report
from polymarket_smart_money.pipeline.smart_markets import compute_smart_markets
from polymarket_smart_money.utils.time import to_iso, utc_now

ROOT = Path(__file__).resolve().parents[2]

JOBS = (
    "sync-leaderboard",
    "sync-public-traders",
    "sync-markets",
    "reconcile-traders",
    "compute-smart-markets",
    "report",
)
ALL_JOBS = ("sync-leaderboard", "sync-public-traders", "sync-markets", "compute-smart-markets", "report")

WATERMARKS = {
    "sync-leaderboard": ("leaderboard", "global"),
    "sync-public-traders": ("public-traders", "global"),
    "sync-markets": ("markets", "all"),
    "compute-smart-markets": ("smart-markets", "global"),
}

logger = logging.getLogger(__name__)


def resolve_path(path: str) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else ROOT / candidate


class JobContext:
    """Clients shared by the jobs of one invocation, built on first use."""

    def __init__(
        self,
        config: AppConfig,
        data_client: DataApiClient | None = None,
        gamma_client: GammaClient | None = None,
        balance_source: BalanceSource | None = None,
    ) -> None:
        self.config = config
        self._data_client = data_client
        self._gamma_client = gamma_client
        self._balance_source = balance_source

    def _raw_dir(self) -> Path | None:
        return resolve_path(self.config.run.raw_dir) if self.config.run.archive_raw else None

    @property
    def data_client(self) -> DataApiClient:
        if self._data_client is None:
            self._data_client = DataApiClient(
                error_dir=resolve_path(self.config.run.raw_dir) / "errors",
                raw_dir=self._raw_dir(),
                timeout_s=self.config.leaderboard.request_timeout_s,
            )
        return self._data_client

    @property
    def gamma_client(self) -> GammaClient:
        if self._gamma_client is None:
            markets = self.config.markets
            self._gamma_client = GammaClient(
                timeout_s=markets.request_timeout_s,
                raw_dir=self._raw_dir(),
                event_cache=EventCache(markets.event_cache_size, markets.event_cache_ttl_s),
            )
        return self._gamma_client

    @property
    def balance_source(self) -> BalanceSource:
        if self._balance_source is None:
            verification = self.config.verification
            self._balance_source = MulticallBalanceClient(
                verification.rpc_url,
                timeout_s=verification.request_timeout_s,
            )
        return self._balance_source


def _dispatch(conn: sqlite3.Connection, job: str, context: JobContext, now: str) -> dict[str, Any]:
    config = context.config
    if job == "sync-leaderboard":
        return sync_leaderboard(conn, context.data_client, config, now=now)
    if job == "sync-public-traders":
        return sync_public_traders(conn, context.data_client, config, now=now)
    if job == "sync-markets":
        return sync_markets(conn, context.gamma_client, config, now=now)
    if job == "reconcile-traders":
        return run_reconcile(conn, context.data_client, config, now=now).model_dump()
    if job == "compute-smart-markets":
        return compute_smart_markets(conn, config, context.balance_source)
    if job == "report":
        paths = write_report(
            conn,
            resolve_path(config.run.out_dir),
            window_hours=config.smart_markets.window_hours,
            limit=config.smart_markets.publish_limit,
        )
        return {"job": "report", "outputs": {key: str(path) for key, path in paths.items()}}
    raise ValueError(f"unknown job {job!r}")


def run_job(conn: sqlite3.Connection, job: str, context: JobContext) -> dict[str, Any]:
    started_at = to_iso(utc_now())
    run_id = f"{job}-{uuid.uuid4().hex[:12]}"
    store.ensure_run(conn, run_id, job, started_at)
    logger.info("Starting %s", job)

    try:
        conn.execute("BEGIN")
        summary = _dispatch(conn, job, context, started_at)
        conn.commit()
    except Exception as exc:  # noqa: BLE001
        conn.rollback()
        store.update_run_status(conn, run_id, "failed", to_iso(utc_now()), error_message=str(exc))
        raise

    watermark = WATERMARKS.get(job)
    if watermark is not None:
        if summary.get("truncated"):
            logger.warning("%s was truncated; watermark %s/%s not advanced", job, *watermark)
        else:
            store.set_watermark(conn, watermark[0], watermark[1], started_at)
    store.update_run_status(conn, run_id, "success", to_iso(utc_now()), summary=summary)
    logger.info("Finished %s", job)
    return summary


def main(argv: Sequence[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="smart-money", description="Polymarket smart-money ingestion jobs")
    parser.add_argument("job", choices=[*JOBS, "all"])
    parser.add_argument("--config", type=Path, default=ROOT / "config.yaml")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    config = load_config(args.config)
    conn = store.get_connection(resolve_path(config.run.db_path))
    store.init_db(conn)
    context = JobContext(config)

    jobs = ALL_JOBS if args.job == "all" else (args.job,)
    try:
        for job in jobs:
            run_job(conn, job, context)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
