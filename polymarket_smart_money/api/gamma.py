from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

import requests
from pydantic import BaseModel, Field, ValidationError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from polymarket_smart_money.errors import SourceUnavailableError
from polymarket_smart_money.models import MarketRecord
from polymarket_smart_money.utils.io import archive_payload

BASE_URL = "https://gamma-api.polymarket.com"

logger = logging.getLogger(__name__)


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, requests.HTTPError):
        if exc.response is None:
            return True
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, requests.RequestException)


class MarketFetch(BaseModel):
    markets: List[MarketRecord] = Field(default_factory=list)
    invalid: int = 0
    pages: int = 0
    truncated: bool = False


class EventCache:
    """Bounded in-memory map of event id to slug with per-entry expiry.

    A ``max_size`` of 0 disables caching entirely.
    """

    def __init__(
        self,
        max_size: int = 512,
        ttl_s: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_size = max_size
        self.ttl_s = ttl_s
        self.clock = clock
        self._entries: dict[str, tuple[float, Optional[str]]] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry[0] > self.clock()

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        expires_at, value = entry
        if expires_at <= self.clock():
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return value

    def put(self, key: str, value: Optional[str]) -> None:
        if self.max_size <= 0:
            return
        now = self.clock()
        self._entries.pop(key, None)
        if len(self._entries) >= self.max_size:
            self._evict(now)
        self._entries[key] = (now + self.ttl_s, value)

    def _evict(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        while len(self._entries) >= self.max_size:
            oldest = next(iter(self._entries))
            del self._entries[oldest]


class GammaClient:
    def __init__(
        self,
        session: requests.Session | None = None,
        timeout_s: int = 20,
        raw_dir: Path | None = None,
        event_cache: EventCache | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = (5, timeout_s)
        self.raw_dir = raw_dir
        self.event_cache = event_cache if event_cache is not None else EventCache()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        retry=retry_if_exception(_should_retry),
        reraise=True,
    )
    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{BASE_URL}{path}"
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def list_open_markets(self, max_markets: int = 500, page_size: int = 100) -> MarketFetch:
        result = MarketFetch()
        offset = 0
        limit = max(1, min(page_size, max_markets))
        while len(result.markets) < max_markets:
            params = {
                "limit": limit,
                "offset": offset,
                "closed": "false",
            }
            try:
                payload = self._get_json("/markets", params=params)
                batch = self._extract_markets(payload)
            except (requests.RequestException, ValueError) as exc:
                if offset == 0:
                    status = getattr(getattr(exc, "response", None), "status_code", None)
                    raise SourceUnavailableError("gamma", str(exc), status) from exc
                logger.warning(
                    "Market page at offset %d failed, keeping %d markets: %s",
                    offset,
                    len(result.markets),
                    exc,
                )
                result.truncated = True
                break

            self._archive(f"markets_{offset}", payload)
            result.pages += 1
            if not batch:
                break
            for row in batch:
                try:
                    result.markets.append(MarketRecord.model_validate(row))
                except ValidationError as exc:
                    result.invalid += 1
                    logger.debug("Dropped market row: %s", exc.errors()[0].get("msg"))
            if len(batch) < limit:
                break
            offset += limit

        result.markets = result.markets[:max_markets]
        logger.info(
            "Markets fetched=%d invalid=%d pages=%d truncated=%s",
            len(result.markets),
            result.invalid,
            result.pages,
            result.truncated,
        )
        return result

    def event_slug(self, event_id: str) -> Optional[str]:
        if event_id in self.event_cache:
            return self.event_cache.get(event_id)
        try:
            payload = self._get_json(f"/events/{event_id}")
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Event lookup failed for %s: %s", event_id, exc)
            return None
        slug = payload.get("slug") if isinstance(payload, dict) else None
        slug = str(slug) if slug else None
        self.event_cache.put(event_id, slug)
        return slug

    def _archive(self, identifier: str, payload: Any) -> None:
        try:
            archive_payload(self.raw_dir, "gamma", identifier, payload)
        except OSError as exc:
            logger.warning("Could not archive gamma payload: %s", exc)

    @staticmethod
    def _extract_markets(payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict):
            for key in ("markets", "data", "results"):
                value = payload.get(key)
                if isinstance(value, list):
                    return [item for item in value if isinstance(item, dict)]
        raise ValueError(f"unexpected payload shape: {type(payload).__name__}")
