from __future__ import annotations

import math
from typing import Any, Iterable

from polymarket_smart_money.scoring.features import safe_float
from polymarket_smart_money.scoring.weights import stable_sorted, tier_weight

DIVERSITY_BONUS_PER_TIER = 0.5


def smart_score(holders: list[dict[str, Any]], market_volume: float) -> float:
    tier_score = sum(tier_weight(holder.get("tier")) for holder in holders)
    distinct_tiers = len({holder.get("tier") for holder in holders if holder.get("tier")})
    diversity_bonus = DIVERSITY_BONUS_PER_TIER * distinct_tiers
    volume_factor = math.log10(max(safe_float(market_volume), 1.0))
    return (tier_score + diversity_bonus) * volume_factor


def score_market(market: dict[str, Any], holders: Iterable[dict[str, Any]]) -> dict[str, Any] | None:
    distinct: dict[str, dict[str, Any]] = {}
    for holder in holders:
        address = holder.get("address")
        if not address:
            continue
        existing = distinct.get(address)
        if existing is None:
            distinct[address] = dict(holder)
        else:
            existing["shares"] = safe_float(existing.get("shares")) + safe_float(holder.get("shares"))

    if not distinct:
        return None

    active = list(distinct.values())
    top_traders = stable_sorted(
        active,
        key=lambda item: (tier_weight(item.get("tier")), safe_float(item.get("rarity_score"))),
        reverse=True,
        tie_breaker=lambda item: item.get("address"),
    )
    return {
        "market_id": market["market_id"],
        "smart_count": len(active),
        "smart_weighted": sum(safe_float(item.get("rarity_score")) for item in active),
        "smart_score": smart_score(active, market.get("volume") or 0.0),
        "total_shares": sum(safe_float(item.get("shares")) for item in active),
        "top_smart_traders": [
            {
                "address": item.get("address"),
                "displayName": item.get("display_name"),
                "profilePicture": item.get("profile_picture"),
                "tier": item.get("tier"),
                "rarityScore": item.get("rarity_score"),
            }
            for item in top_traders
        ],
    }


def rank_markets(scores: Iterable[dict[str, Any] | None]) -> list[dict[str, Any]]:
    published = [score for score in scores if score and score.get("smart_count", 0) > 0]
    return stable_sorted(
        published,
        key=lambda item: (
            item.get("smart_score", 0.0),
            item.get("smart_count", 0),
            item.get("total_shares", 0.0),
        ),
        reverse=True,
        tie_breaker=lambda item: item.get("market_id"),
    )
