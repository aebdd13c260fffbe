from __future__ import annotations

import math

from polymarket_smart_money.config import RarityRules
from polymarket_smart_money.scoring.features import clamp


def pnl_points(pnl: float, rules: RarityRules) -> float:
    if rules.pnl_ceiling <= 0:
        return 0.0
    return clamp(pnl / rules.pnl_ceiling * rules.pnl_max_points, 0.0, rules.pnl_max_points)


def volume_points(volume: float, rules: RarityRules) -> float:
    if rules.volume_ceiling <= 0:
        return 0.0
    return clamp(volume / rules.volume_ceiling * rules.volume_max_points, 0.0, rules.volume_max_points)


def markets_points(markets_traded: int, rules: RarityRules) -> float:
    return clamp(markets_traded * rules.points_per_market, 0.0, rules.markets_max_points)


def rank_points(rank: int, rules: RarityRules) -> float:
    if rules.rank_divisor <= 0:
        return 0.0
    return clamp(rules.rank_max_points - rank / rules.rank_divisor, 0.0, rules.rank_max_points)


def rarity_score(
    pnl: float,
    volume: float,
    markets_traded: int,
    rank: int,
    has_public_identity: bool,
    rules: RarityRules | None = None,
) -> int:
    rules = rules or RarityRules()
    total = (
        pnl_points(pnl, rules)
        + volume_points(volume, rules)
        + markets_points(markets_traded, rules)
        + rank_points(rank, rules)
        + (rules.identity_bonus if has_public_identity else 0.0)
    )
    return int(clamp(math.floor(total), 0, rules.max_score))
