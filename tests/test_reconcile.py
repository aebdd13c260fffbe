from __future__ import annotations

import sqlite3

import pytest

from polymarket_smart_money.api.data_api import DataApiClient
from polymarket_smart_money.config import AppConfig, LeaderboardConfig, ReconcileConfig
from polymarket_smart_money.db import store
from polymarket_smart_money.errors import PersistenceError, SourceUnavailableError
from polymarket_smart_money.models import LeaderboardEntry, PassSummary, RecordOutcome
from polymarket_smart_money.pipeline.reconcile import build_handle_index, reconcile_traders
from polymarket_smart_money.pipeline.run_jobs import JobContext, run_job
from polymarket_smart_money.scoring.tiers import classify_batch

OLD = "0x" + "1" * 40
NEW = "0x" + "2" * 40
OTHER = "0x" + "3" * 40
FRESH = "0x" + "4" * 40


def _stored(conn, address, handle, pnl, **extra):
    row = {
        "address": address,
        "display_name": f"stored-{address[-4:]}",
        "twitter_username": handle,
        "tier": "B",
        "realized_pnl": pnl,
        "total_pnl": pnl,
        "volume": 1_000,
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
        **extra,
    }
    store.insert_trader(conn, row)
    conn.commit()


def _classified(*rows):
    return classify_batch([LeaderboardEntry.model_validate(row) for row in rows])


def _rows_for_handle(conn, handle):
    rows = conn.execute(
        "SELECT * FROM traders WHERE LOWER(LTRIM(TRIM(twitter_username), '@')) = ? ORDER BY address",
        (handle,),
    ).fetchall()
    return [dict(row) for row in rows]


def test_shared_handle_rows_merge_into_source_address(conn):
    _stored(conn, OLD, "@Whale", 100.0, latitude=51.0, longitude=10.0, country="Germany")
    _stored(conn, NEW, "whale", 100.0)
    upstream = _classified(
        {"proxyWallet": NEW, "xUsername": "Whale", "userName": "whale", "pnl": 5_000, "vol": 9_000}
    )

    summary = reconcile_traders(conn, upstream, now="2026-02-01T00:00:00+00:00")

    rows = _rows_for_handle(conn, "whale")
    assert len(rows) == 1
    merged = rows[0]
    assert merged["address"] == NEW
    assert merged["total_pnl"] == 5_000
    assert merged["volume"] == 9_000
    assert merged["display_name"] == "whale"
    assert merged["tier"] == "A"
    assert merged["country"] == "Germany"
    assert store.fetch_trader(conn, OLD) is None
    assert summary.merged == 1
    assert summary.unchanged == 1
    assert summary.failed == 0


def test_handle_moved_to_unknown_address_migrates_in_place(conn):
    _stored(conn, OLD, "trader1", 10.0)
    upstream = _classified({"proxyWallet": FRESH, "xUsername": "@Trader1", "pnl": 700})

    summary = reconcile_traders(conn, upstream)

    assert summary.migrated == 1
    assert store.fetch_trader(conn, OLD) is None
    migrated = store.fetch_trader(conn, FRESH)
    assert migrated["total_pnl"] == 700
    assert migrated["created_at"] == "2026-01-01T00:00:00+00:00"
    assert migrated["display_name"] == f"stored-{OLD[-4:]}"


def test_unseen_and_unchanged_traders_are_not_written(conn):
    _stored(conn, OLD, "ghost", 10.0)
    _stored(conn, NEW, "steady", 1_000.0)
    upstream = _classified({"proxyWallet": NEW, "xUsername": "steady", "pnl": 1_000.5})

    summary = reconcile_traders(conn, upstream, now="2026-03-01T00:00:00+00:00")

    assert summary.unseen == 1
    assert summary.unchanged == 1
    assert store.fetch_trader(conn, OLD)["updated_at"] == "2026-01-01T00:00:00+00:00"
    steady = store.fetch_trader(conn, NEW)
    assert steady["total_pnl"] == 1_000.0
    assert steady["updated_at"] == "2026-01-01T00:00:00+00:00"


def test_pnl_drift_beyond_threshold_updates_same_address(conn):
    _stored(conn, NEW, "steady", 1_000.0)
    upstream = _classified({"proxyWallet": NEW, "xUsername": "steady", "pnl": 1_250})

    summary = reconcile_traders(conn, upstream, now="2026-03-01T00:00:00+00:00")

    assert summary.updated == 1
    assert store.fetch_trader(conn, NEW)["total_pnl"] == 1_250


def test_failure_rolls_back_only_that_trader(conn, monkeypatch):
    _stored(conn, OLD, "broken", 10.0)
    _stored(conn, OTHER, "fine", 10.0)
    upstream = _classified(
        {"proxyWallet": FRESH, "xUsername": "broken", "pnl": 900},
        {"proxyWallet": NEW, "xUsername": "fine", "pnl": 800},
    )
    original_update = store.update_trader

    def flaky_update(connection, address, fields):
        if address == FRESH:
            raise PersistenceError(address, "disk full")
        return original_update(connection, address, fields)

    monkeypatch.setattr(store, "update_trader", flaky_update)

    summary = reconcile_traders(conn, upstream)

    assert summary.failed == 1
    assert summary.migrated == 1
    # The failed migration stays on the old address.
    assert store.fetch_trader(conn, OLD) is not None
    assert store.fetch_trader(conn, FRESH) is None
    assert store.fetch_trader(conn, NEW)["total_pnl"] == 800
    assert not conn.in_transaction


def test_lookup_failure_skips_only_that_trader(conn, monkeypatch):
    _stored(conn, OLD, "unreadable", 10.0)
    _stored(conn, OTHER, "fine", 10.0)
    upstream = _classified(
        {"proxyWallet": FRESH, "xUsername": "unreadable", "pnl": 900},
        {"proxyWallet": NEW, "xUsername": "fine", "pnl": 800},
    )
    original_fetch = store.fetch_trader

    def flaky_fetch(connection, address):
        if address == OLD:
            raise sqlite3.OperationalError("database disk image is malformed")
        return original_fetch(connection, address)

    monkeypatch.setattr(store, "fetch_trader", flaky_fetch)

    summary = reconcile_traders(conn, upstream)

    assert summary.failed == 1
    assert summary.migrated == 1
    addresses = [row["address"] for row in conn.execute("SELECT address FROM traders ORDER BY address")]
    assert addresses == [OLD, NEW]
    assert not conn.in_transaction


def test_best_source_record_wins_for_a_handle():
    upstream = _classified(
        {"proxyWallet": OLD, "xUsername": "dup", "pnl": 100},
        {"proxyWallet": NEW, "xUsername": "@DUP", "pnl": 900},
    )
    assert build_handle_index(upstream)["dup"].address == NEW


@pytest.mark.parametrize("outcome", list(RecordOutcome))
def test_summary_records_every_outcome(outcome):
    summary = PassSummary(job="x")
    summary.record(outcome)
    assert getattr(summary, outcome.value) == 1


def _period_session(make_session, make_response, rows_by_period):
    def handler(url, params):
        rows = rows_by_period.get(params["timePeriod"])
        if rows is None:
            return make_response(None, status_code=404)
        return rows if params["offset"] == 0 else []

    return make_session(handler)


def test_reconcile_job_tolerates_a_missing_period(conn, make_session, make_response):
    _stored(conn, OLD, "mover", 10.0)
    session = _period_session(
        make_session,
        make_response,
        {"week": [{"proxyWallet": FRESH, "xUsername": "mover", "pnl": 400}]},
    )
    config = AppConfig(
        leaderboard=LeaderboardConfig(page_delay_s=0),
        reconcile=ReconcileConfig(periods=["month", "week"]),
    )

    summary = run_job(conn, "reconcile-traders", JobContext(config, data_client=DataApiClient(session=session)))

    assert summary["migrated"] == 1
    assert summary["truncated"] is True
    assert store.fetch_trader(conn, FRESH)["total_pnl"] == 400


def test_reconcile_job_fails_when_every_period_is_unavailable(conn, make_session, make_response):
    _stored(conn, OLD, "mover", 10.0)
    session = _period_session(make_session, make_response, {})
    config = AppConfig(reconcile=ReconcileConfig(periods=["month", "week"]))

    with pytest.raises(SourceUnavailableError):
        run_job(conn, "reconcile-traders", JobContext(config, data_client=DataApiClient(session=session)))

    assert store.fetch_trader(conn, OLD) is not None
    assert store.fetch_latest_runs(conn)[0]["status"] == "failed"
