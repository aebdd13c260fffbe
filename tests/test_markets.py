from __future__ import annotations

import pytest

from polymarket_smart_money.api.gamma import EventCache, GammaClient
from polymarket_smart_money.config import AppConfig, MarketsConfig
from polymarket_smart_money.db import store
from polymarket_smart_money.errors import SourceUnavailableError
from polymarket_smart_money.models import MarketRecord
from polymarket_smart_money.pipeline.markets import sync_markets


def _raw_market(market_id, volume=1_000.0, **extra):
    return {
        "id": market_id,
        "question": f"Question {market_id}?",
        "category": "Politics",
        "slug": f"market-{market_id}",
        "endDate": "2030-01-01T00:00:00Z",
        "liquidityNum": 500.0,
        "volumeNum": volume,
        "closed": False,
        "clobTokenIds": '["111", "222"]',
        "outcomes": '["Yes", "No"]',
        "outcomePrices": '["0.4", "0.6"]',
        **extra,
    }


def test_market_record_parses_encoded_lists():
    record = MarketRecord.model_validate(_raw_market("1", events=[{"id": 77, "slug": "the-event"}]))
    assert record.outcome_token_ids == ["111", "222"]
    assert record.outcome_labels == ["Yes", "No"]
    assert record.outcome_prices == pytest.approx([0.4, 0.6])
    assert record.event_slug == "the-event"
    assert record.event_id == "77"
    assert record.volume == 1_000.0
    assert record.status == "OPEN"


def test_bad_token_ids_keep_the_market():
    record = MarketRecord.model_validate(_raw_market("2", clobTokenIds="[not json", outcomes=None))
    assert record.outcome_token_ids == []
    assert record.outcome_labels == []
    assert record.question == "Question 2?"


def test_market_defaults():
    record = MarketRecord.model_validate({"id": 9, "question": "  ", "closed": "true", "volume": "12.5"})
    assert record.market_id == "9"
    assert record.question == "Unknown"
    assert record.category == "Uncategorized"
    assert record.volume == 12.5
    assert record.status == "CLOSED"


def test_list_open_markets_pages_until_short_page(make_session):
    pages = {0: [_raw_market(str(index)) for index in range(3)], 3: [_raw_market("3"), {"question": "no id"}]}
    session = make_session(lambda url, params: pages.get(params["offset"], []))
    fetch = GammaClient(session=session).list_open_markets(max_markets=10, page_size=3)

    assert [market.market_id for market in fetch.markets] == ["0", "1", "2", "3"]
    assert fetch.invalid == 1
    assert fetch.truncated is False
    assert all(params["closed"] == "false" for _, params in session.calls)


def test_first_market_page_failure_is_fatal(make_session, make_response):
    session = make_session(lambda url, params: make_response(None, status_code=404))
    with pytest.raises(SourceUnavailableError):
        GammaClient(session=session).list_open_markets()
    assert len(session.calls) == 1


def test_later_market_page_failure_truncates(make_session, make_response):
    def handler(url, params):
        if params["offset"] == 0:
            return [_raw_market("a"), _raw_market("b")]
        return make_response(None, status_code=400)

    fetch = GammaClient(session=make_session(handler)).list_open_markets(max_markets=10, page_size=2)
    assert fetch.truncated is True
    assert len(fetch.markets) == 2


def test_unrecognised_market_pages(make_session):
    def handler(url, params):
        if params["offset"] == 0:
            return {"markets": [_raw_market("a"), _raw_market("b")]}
        return {"error": "rate limited"}

    fetch = GammaClient(session=make_session(handler)).list_open_markets(max_markets=10, page_size=2)
    assert fetch.truncated is True
    assert [market.market_id for market in fetch.markets] == ["a", "b"]

    session = make_session(lambda url, params: {"error": "rate limited"})
    with pytest.raises(SourceUnavailableError):
        GammaClient(session=session).list_open_markets()


def test_event_cache_expiry_and_bounds():
    now = [0.0]
    cache = EventCache(max_size=2, ttl_s=10, clock=lambda: now[0])
    cache.put("a", "slug-a")
    cache.put("b", "slug-b")
    cache.put("c", "slug-c")
    assert len(cache) == 2
    assert cache.get("a") is None
    assert cache.get("c") == "slug-c"

    now[0] = 11.0
    assert "b" not in cache
    assert cache.get("b") is None

    disabled = EventCache(max_size=0)
    disabled.put("a", "slug-a")
    assert len(disabled) == 0


def test_event_slug_lookup_is_cached(make_session):
    session = make_session(lambda url, params: {"id": 5, "slug": "cached-event"})
    client = GammaClient(session=session, event_cache=EventCache(max_size=4, ttl_s=60))
    assert client.event_slug("5") == "cached-event"
    assert client.event_slug("5") == "cached-event"
    assert len(session.calls) == 1


def test_sync_markets_upserts_and_is_idempotent(conn, make_session):
    rows = [_raw_market("m1", volume=5_000.0), _raw_market("m2", clobTokenIds="oops", eventSlug=None)]

    def handler(url, params):
        if url.endswith("/events/88"):
            return {"slug": "looked-up"}
        return rows if params["offset"] == 0 else []

    rows.append(_raw_market("m3", events=[{"id": 88}]))
    client = GammaClient(session=make_session(handler))
    config = AppConfig(markets=MarketsConfig(page_size=10))

    first = sync_markets(conn, client, config, now="2026-05-01T00:00:00+00:00")
    second = sync_markets(conn, client, config, now="2026-05-02T00:00:00+00:00")

    assert first["markets"]["created"] == 3
    assert second["markets"]["unchanged"] == 3
    assert first["without_tokens"] == 1
    m1 = store.fetch_market(conn, "m1")
    assert m1["outcome_token_ids"] == ["111", "222"]
    assert m1["status"] == "OPEN"
    assert m1["updated_at"] == "2026-05-01T00:00:00+00:00"
    assert store.fetch_market(conn, "m3")["event_slug"] == "looked-up"
    assert [market["market_id"] for market in store.fetch_open_markets(conn)][0] == "m1"
