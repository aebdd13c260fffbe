from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel


class RunConfig(BaseModel):
    db_path: str = "data/smart_money.sqlite"
    raw_dir: str = "data/raw"
    out_dir: str = "out"
    archive_raw: bool = False


class LeaderboardConfig(BaseModel):
    time_period: str = "month"
    order_by: str = "PNL"
    batch_size: int = 100
    max_offset: int = 1000
    page_delay_s: float = 0.3
    request_timeout_s: int = 15


class MarketsConfig(BaseModel):
    max_markets: int = 500
    page_size: int = 100
    request_timeout_s: int = 20
    event_cache_size: int = 512
    event_cache_ttl_s: int = 3600


class TierBand(BaseModel):
    tier: str
    max_percentile: float


class TierRules(BaseModel):
    bands: List[TierBand] = [
        TierBand(tier="S", max_percentile=0.35),
        TierBand(tier="A", max_percentile=0.70),
    ]
    fallback_tier: str = "B"
    identity_top_percentile: float = 0.40
    identity_floor_tier: str = "A"


class RarityRules(BaseModel):
    pnl_ceiling: float = 10_000
    pnl_max_points: float = 500
    volume_ceiling: float = 50_000
    volume_max_points: float = 300
    points_per_market: float = 2
    markets_max_points: float = 100
    rank_max_points: float = 100
    rank_divisor: float = 10
    identity_bonus: float = 50
    max_score: int = 1000


class ReconcileConfig(BaseModel):
    pnl_threshold: float = 1.0
    periods: List[str] = ["month", "week", "all", "day"]


class PublicTradersConfig(BaseModel):
    periods: List[str] = ["day", "week", "month"]
    max_offset: int = 1000
    refresh_all_time_pnl: bool = True
    pnl_delay_s: float = 0.15


class VerificationConfig(BaseModel):
    rpc_url: str = "https://polygon-rpc.com"
    group_size: int = 5
    max_workers: Optional[int] = None
    max_traders: int = 200
    max_markets: int = 100
    smart_tiers: List[str] = ["S", "A"]
    request_timeout_s: int = 30


class SmartMarketsConfig(BaseModel):
    window_hours: int = 48
    publish_limit: int = 20
    pinned_markets: List[str] = []


class StaticTrader(BaseModel):
    address: str
    country: Optional[str] = None


class AppConfig(BaseModel):
    run: RunConfig = RunConfig()
    leaderboard: LeaderboardConfig = LeaderboardConfig()
    markets: MarketsConfig = MarketsConfig()
    tiers: TierRules = TierRules()
    rarity: RarityRules = RarityRules()
    reconcile: ReconcileConfig = ReconcileConfig()
    public_traders: PublicTradersConfig = PublicTradersConfig()
    verification: VerificationConfig = VerificationConfig()
    smart_markets: SmartMarketsConfig = SmartMarketsConfig()
    static_traders: Dict[str, StaticTrader] = {}


def load_config(path: str | Path) -> AppConfig:
    data: Dict[str, Any] = {}
    config_path = Path(path)
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle)
            if isinstance(loaded, dict):
                data = loaded
    return AppConfig(**data)
