from __future__ import annotations

from typing import Iterable

from polymarket_smart_money.config import RarityRules, TierRules
from polymarket_smart_money.models import ClassifiedTrader, LeaderboardEntry
from polymarket_smart_money.scoring.features import estimate_win_rate
from polymarket_smart_money.scoring.rarity import rarity_score
from polymarket_smart_money.scoring.weights import stable_sorted, tier_index


def classify_tier(
    rank_index: int,
    total: int,
    has_public_identity: bool,
    rules: TierRules | None = None,
) -> str:
    rules = rules or TierRules()
    if total < 1:
        raise ValueError("total must be at least 1")
    if rank_index < 0 or rank_index >= total:
        raise ValueError(f"rank_index {rank_index} out of range for {total} traders")
    percentile = (rank_index + 1) / total

    if has_public_identity:
        top_tier = rules.bands[0].tier if rules.bands else rules.identity_floor_tier
        if percentile <= rules.identity_top_percentile:
            return top_tier
        tier = _band_tier(percentile, rules)
        # Public traders never fall below the floor tier.
        if tier_index(tier) > tier_index(rules.identity_floor_tier):
            return rules.identity_floor_tier
        return tier

    return _band_tier(percentile, rules)


def _band_tier(percentile: float, rules: TierRules) -> str:
    for band in rules.bands:
        if percentile <= band.max_percentile:
            return band.tier
    return rules.fallback_tier


def rank_entries(entries: Iterable[LeaderboardEntry]) -> list[LeaderboardEntry]:
    # pnl descending; address keeps equal pnl in a fixed order.
    deduped: dict[str, LeaderboardEntry] = {}
    for entry in entries:
        existing = deduped.get(entry.address)
        if existing is None or entry.pnl > existing.pnl:
            deduped[entry.address] = entry
    return stable_sorted(
        deduped.values(),
        key=lambda entry: entry.pnl,
        reverse=True,
        tie_breaker=lambda entry: entry.address,
    )


def classify_batch(
    entries: Iterable[LeaderboardEntry],
    tier_rules: TierRules | None = None,
    rarity_rules: RarityRules | None = None,
) -> list[ClassifiedTrader]:
    ranked = rank_entries(entries)
    total = len(ranked)
    classified: list[ClassifiedTrader] = []
    for index, entry in enumerate(ranked):
        has_identity = entry.has_public_identity
        rank = index + 1
        classified.append(
            ClassifiedTrader(
                entry=entry,
                rank=rank,
                tier=classify_tier(index, total, has_identity, tier_rules),
                rarity_score=rarity_score(
                    entry.pnl,
                    entry.volume,
                    entry.markets_traded,
                    rank,
                    has_identity,
                    rarity_rules,
                ),
                win_rate=estimate_win_rate(entry.pnl, entry.volume),
            )
        )
    return classified


def tier_distribution(traders: Iterable[ClassifiedTrader]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for trader in traders:
        counts[trader.tier] = counts.get(trader.tier, 0) + 1
    return dict(sorted(counts.items(), key=lambda item: tier_index(item[0])))
