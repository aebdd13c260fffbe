from __future__ import annotations

import sqlite3
from typing import Any, Callable

import pytest
import requests

from polymarket_smart_money.db import store


class FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, url: str = "") -> None:
        self._payload = payload
        self.status_code = status_code
        self.url = url
        self.text = "" if payload is None else str(payload)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self) -> Any:
        return self._payload


class FakeSession:
    """Routes ``get`` calls to a handler returning a payload, a response or an exception."""

    def __init__(self, handler: Callable[[str, dict[str, Any]], Any]) -> None:
        self.handler = handler
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def get(self, url: str, params: dict[str, Any] | None = None, timeout: Any = None) -> FakeResponse:
        params = dict(params or {})
        self.calls.append((url, params))
        result = self.handler(url, params)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, FakeResponse):
            return result
        return FakeResponse(result, url=url)


@pytest.fixture
def conn() -> sqlite3.Connection:
    connection = sqlite3.connect(":memory:")
    connection.row_factory = sqlite3.Row
    store.init_db(connection)
    yield connection
    connection.close()


@pytest.fixture
def make_session() -> Callable[..., FakeSession]:
    return FakeSession


@pytest.fixture
def make_response() -> Callable[..., FakeResponse]:
    return FakeResponse


def leaderboard_row(
    address: str,
    pnl: float,
    handle: str | None = None,
    volume: float = 10_000,
    markets: int = 20,
    name: str | None = None,
) -> dict[str, Any]:
    return {
        "proxyWallet": address,
        "userName": name or address[:8],
        "xUsername": handle,
        "profileImage": None,
        "pnl": pnl,
        "vol": volume,
        "markets_traded": markets,
    }


@pytest.fixture
def make_row() -> Callable[..., dict[str, Any]]:
    return leaderboard_row
