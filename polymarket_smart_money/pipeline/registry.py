from __future__ import annotations

import hashlib
import logging
import sqlite3
from typing import Iterable, Mapping

from polymarket_smart_money.config import StaticTrader
from polymarket_smart_money.db import store
from polymarket_smart_money.models import LeaderboardEntry
from polymarket_smart_money.scoring.features import normalize_handle

MAX_OFFSET_DEGREES = 1.5

COUNTRY_CENTROIDS: dict[str, tuple[float, float]] = {
    "Argentina": (-38.4161, -63.6167),
    "Australasia": (-25.0, 135.0),
    "Australia": (-25.2744, 133.7751),
    "Austria": (47.5162, 14.5501),
    "Brazil": (-14.2350, -51.9253),
    "Canada": (56.1304, -106.3468),
    "Denmark": (56.2639, 9.5018),
    "East Asia & Pacific": (35.0, 105.0),
    "Estonia": (58.5953, 25.0136),
    "Europe": (50.0, 10.0),
    "France": (46.2276, 2.2137),
    "Germany": (51.1657, 10.4515),
    "Hong Kong": (22.3193, 114.1694),
    "India": (20.5937, 78.9629),
    "Indonesia": (-0.7893, 113.9213),
    "Ireland": (53.4129, -8.2439),
    "Italy": (41.8719, 12.5674),
    "Japan": (36.2048, 138.2529),
    "Korea": (37.5665, 126.9780),
    "Lithuania": (55.1694, 23.8813),
    "Malaysia": (4.2105, 101.9758),
    "Mexico": (23.6345, -102.5528),
    "Morocco": (31.7917, -7.0926),
    "Netherlands": (52.1326, 5.2913),
    "North America": (54.5260, -105.2551),
    "Philippines": (12.8797, 121.7740),
    "Poland": (51.9194, 19.1451),
    "Singapore": (1.3521, 103.8198),
    "Slovakia": (48.6690, 19.6990),
    "South Africa": (-30.5595, 22.9375),
    "South America": (-8.7832, -55.4915),
    "South Asia": (20.5937, 78.9629),
    "South Korea": (37.5665, 126.9780),
    "Spain": (40.4637, -3.7492),
    "Sweden": (60.1282, 18.6435),
    "Taiwan": (23.6978, 120.9605),
    "Thailand": (15.8700, 100.9925),
    "Turkey": (38.9637, 35.2433),
    "United Kingdom": (55.3781, -3.4360),
    "United States": (37.0902, -95.7129),
    "Vietnam": (14.0583, 108.2772),
    "West Asia": (29.0, 53.0),
}

logger = logging.getLogger(__name__)


def _offset(digest: bytes, start: int) -> float:
    # Two digest bytes mapped onto [-MAX_OFFSET_DEGREES, MAX_OFFSET_DEGREES].
    value = int.from_bytes(digest[start : start + 2], "big") / 0xFFFF
    return round((value * 2 - 1) * MAX_OFFSET_DEGREES, 4)


def location_for(handle: str, country: str) -> tuple[float, float] | None:
    centroid = COUNTRY_CENTROIDS.get(country)
    if centroid is None:
        return None
    digest = hashlib.sha256(handle.encode("utf-8")).digest()
    latitude = max(-89.0, min(89.0, centroid[0] + _offset(digest, 0)))
    longitude = centroid[1] + _offset(digest, 2)
    return latitude, longitude


def apply_static_locations(conn: sqlite3.Connection, static_traders: Mapping[str, StaticTrader]) -> int:
    updated = 0
    for raw_handle, trader in sorted(static_traders.items()):
        handle = normalize_handle(raw_handle)
        if not handle or not trader.country:
            continue
        location = location_for(handle, trader.country)
        if location is None:
            logger.warning("No centroid for country %r (@%s)", trader.country, handle)
            continue
        updated += store.update_locations_by_handle(conn, handle, location[0], location[1], trader.country)
    logger.info("Applied static locations to %d traders", updated)
    return updated


def static_handles_by_address(static_traders: Mapping[str, StaticTrader]) -> dict[str, str]:
    handles: dict[str, str] = {}
    for raw_handle, trader in sorted(static_traders.items()):
        handle = raw_handle.strip().lstrip("@").strip()
        address = trader.address.strip().lower()
        if handle and address:
            handles.setdefault(address, handle)
    return handles


def apply_static_handles(
    entries: Iterable[LeaderboardEntry],
    static_traders: Mapping[str, StaticTrader],
) -> list[LeaderboardEntry]:
    handles = static_handles_by_address(static_traders)
    if not handles:
        return list(entries)
    result = []
    for entry in entries:
        handle = handles.get(entry.address)
        if handle and normalize_handle(handle) != entry.normalized_handle:
            entry = entry.model_copy(update={"handle": handle})
        result.append(entry)
    return result
