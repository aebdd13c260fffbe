from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

import requests
from pydantic import ValidationError

from polymarket_smart_money.errors import SourceUnavailableError, TransientFetchError
from polymarket_smart_money.models import LeaderboardEntry, LeaderboardFetch
from polymarket_smart_money.scoring.features import safe_float
from polymarket_smart_money.utils.io import archive_payload, write_error_dump

BASE_URL = "https://data-api.polymarket.com"
USER_PNL_URL = "https://user-pnl-api.polymarket.com"

logger = logging.getLogger(__name__)


class DataApiClient:
    def __init__(
        self,
        session: requests.Session | None = None,
        error_dir: Path | None = None,
        raw_dir: Path | None = None,
        timeout_s: int = 15,
    ) -> None:
        self.session = session or requests.Session()
        self.error_dir = error_dir
        self.raw_dir = raw_dir
        self.timeout = (timeout_s, timeout_s)

    def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        response = self.session.get(url, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def fetch_leaderboard(
        self,
        time_period: str = "month",
        order_by: str = "PNL",
        batch_size: int = 100,
        max_offset: int = 1000,
        page_delay_s: float = 0.3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> LeaderboardFetch:
        result = LeaderboardFetch()
        offset = 0
        while offset < max_offset:
            params = {
                "timePeriod": time_period,
                "orderBy": order_by,
                "limit": batch_size,
                "offset": offset,
            }
            try:
                payload = self._get_json(f"{BASE_URL}/v1/leaderboard", params=params)
                rows = self._extract_list(payload)
            except (requests.RequestException, ValueError) as exc:
                error = self._page_error("leaderboard", exc, params)
                if offset == 0:
                    raise SourceUnavailableError(error.source, str(exc), error.status) from exc
                logger.warning(
                    "Leaderboard %s page at offset %d failed, keeping %d rows: %s",
                    time_period,
                    offset,
                    len(result.entries),
                    exc,
                )
                result.truncated = True
                break

            self._archive("leaderboard", f"{time_period}_{order_by}_{offset}", payload)
            result.pages += 1
            if not rows:
                break
            for row in rows:
                try:
                    entry = LeaderboardEntry.model_validate({**row, "period": time_period})
                except ValidationError as exc:
                    result.invalid += 1
                    logger.debug("Dropped leaderboard row: %s", exc.errors()[0].get("msg"))
                    continue
                result.entries.append(entry)

            offset += batch_size
            if offset < max_offset and page_delay_s > 0:
                sleep(page_delay_s)

        logger.info(
            "Leaderboard %s/%s fetched=%d invalid=%d pages=%d truncated=%s",
            time_period,
            order_by,
            len(result.entries),
            result.invalid,
            result.pages,
            result.truncated,
        )
        return result

    def fetch_latest_pnl(self, address: str) -> float | None:
        params = {"user_address": address, "interval": "1m", "fidelity": "1d"}
        try:
            payload = self._get_json(f"{USER_PNL_URL}/user-pnl", params=params)
        except (requests.RequestException, ValueError) as exc:
            self._page_error("user_pnl", exc, params)
            logger.warning("User pnl lookup failed for %s: %s", address, exc)
            return None
        if not isinstance(payload, list) or not payload:
            return None
        latest = payload[-1]
        if not isinstance(latest, dict) or latest.get("p") is None:
            return None
        return safe_float(latest.get("p"))

    def _page_error(
        self,
        label: str,
        exc: Exception,
        params: dict[str, Any],
    ) -> TransientFetchError:
        response = exc.response if isinstance(exc, requests.RequestException) else None
        status = response.status_code if response is not None else None
        self._save_error(label, params.get("offset", params.get("user_address", "")), response, params)
        return TransientFetchError(label, str(exc), status)

    def _save_error(
        self,
        label: str,
        identifier: Any,
        response: requests.Response | None,
        params: dict[str, Any],
    ) -> None:
        if response is None:
            status = "no_response"
            body = ""
            url = ""
        else:
            status = str(response.status_code)
            url = response.url
            body = response.text or ""
        record = {
            "status": status,
            "url": url,
            "params": params,
            "body": body[:5000],
        }
        try:
            write_error_dump(self.error_dir, label, identifier, status, record)
        except OSError as exc:
            logger.debug("Could not write error dump for %s: %s", label, exc)

    def _archive(self, label: str, identifier: str, payload: Any) -> None:
        try:
            archive_payload(self.raw_dir, label, identifier, payload)
        except OSError as exc:
            logger.warning("Could not archive %s payload: %s", label, exc)

    @staticmethod
    def _extract_list(payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict):
            for key in ("leaderboard", "data", "results"):
                value = payload.get(key)
                if isinstance(value, list):
                    return [item for item in value if isinstance(item, dict)]
        raise ValueError(f"unexpected payload shape: {type(payload).__name__}")
