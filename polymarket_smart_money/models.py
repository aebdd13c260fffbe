from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from polymarket_smart_money.scoring.features import normalize_handle, safe_float

ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


class LeaderboardEntry(BaseModel):
    """One leaderboard row, validated field by field.

    Optional fields default to ``None`` (text) or ``0`` (numbers); a row
    without a wallet address is rejected.
    """

    address: str = Field(validation_alias=AliasChoices("proxyWallet", "address", "wallet"))
    display_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("userName", "displayName"))
    handle: Optional[str] = Field(default=None, validation_alias=AliasChoices("xUsername", "twitterUsername"))
    profile_image: Optional[str] = Field(default=None, validation_alias=AliasChoices("profileImage", "profilePicture"))
    pnl: float = 0.0
    volume: float = Field(default=0.0, validation_alias=AliasChoices("vol", "volume"))
    markets_traded: int = Field(default=0, validation_alias=AliasChoices("markets_traded", "marketsTraded"))
    source_rank: Optional[int] = Field(default=None, validation_alias=AliasChoices("rank", "source_rank"))
    period: Optional[str] = None

    @field_validator("address", mode="before")
    @classmethod
    def _address(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        if not ADDRESS_RE.match(text):
            raise ValueError(f"invalid wallet address {text!r}")
        return text

    @field_validator("display_name", "profile_image", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("handle", mode="before")
    @classmethod
    def _handle(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip().lstrip("@").strip()
        return text or None

    @field_validator("pnl", "volume", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float:
        return safe_float(value)

    @field_validator("markets_traded", mode="before")
    @classmethod
    def _count(cls, value: Any) -> int:
        return max(int(safe_float(value)), 0)

    @field_validator("source_rank", mode="before")
    @classmethod
    def _rank(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @property
    def normalized_handle(self) -> Optional[str]:
        return normalize_handle(self.handle)

    @property
    def has_public_identity(self) -> bool:
        return self.normalized_handle is not None


class MarketRecord(BaseModel):
    """One Gamma market row.

    ``clobTokenIds``, ``outcomes`` and ``outcomePrices`` arrive as
    JSON-encoded strings; anything unparsable becomes an empty list.
    """

    market_id: str = Field(validation_alias=AliasChoices("id", "market_id"))
    question: str = "Unknown"
    category: str = "Uncategorized"
    event_slug: Optional[str] = Field(default=None, validation_alias=AliasChoices("eventSlug", "event_slug"))
    event_id: Optional[str] = None
    slug: Optional[str] = None
    end_date: Optional[str] = Field(default=None, validation_alias=AliasChoices("endDate", "endDateIso", "end_date"))
    liquidity: float = 0.0
    volume: float = 0.0
    closed: bool = False
    outcome_token_ids: List[str] = Field(default_factory=list, validation_alias=AliasChoices("clobTokenIds", "outcome_token_ids"))
    outcome_labels: List[str] = Field(default_factory=list, validation_alias=AliasChoices("outcomes", "outcome_labels"))
    outcome_prices: List[float] = Field(default_factory=list, validation_alias=AliasChoices("outcomePrices", "outcome_prices"))

    @model_validator(mode="before")
    @classmethod
    def _flatten(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("liquidityNum") is not None:
            data["liquidity"] = data["liquidityNum"]
        if data.get("volumeNum") is not None:
            data["volume"] = data["volumeNum"]
        events = data.get("events")
        if isinstance(events, list) and events and isinstance(events[0], dict):
            event = events[0]
            if not data.get("eventSlug") and event.get("slug"):
                data["eventSlug"] = event.get("slug")
            if event.get("id") is not None:
                data["event_id"] = str(event.get("id"))
        return data

    @field_validator("market_id", mode="before")
    @classmethod
    def _market_id(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("missing market id")
        return text

    @field_validator("question", "category", mode="before")
    @classmethod
    def _text_default(cls, value: Any, info) -> str:
        text = str(value).strip() if value is not None else ""
        if text:
            return text
        return "Unknown" if info.field_name == "question" else "Uncategorized"

    @field_validator("liquidity", "volume", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float:
        return safe_float(value)

    @field_validator("closed", mode="before")
    @classmethod
    def _closed(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() == "true"
        return bool(value)

    @field_validator("outcome_token_ids", "outcome_labels", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> list[str]:
        return [str(item) for item in parse_json_list(value) if item is not None and str(item)]

    @field_validator("outcome_prices", mode="before")
    @classmethod
    def _price_list(cls, value: Any) -> list[float]:
        return [safe_float(item) for item in parse_json_list(value)]

    @property
    def status(self) -> str:
        return "CLOSED" if self.closed else "OPEN"


def parse_json_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        if isinstance(parsed, list):
            return parsed
    return []


class ClassifiedTrader(BaseModel):
    entry: LeaderboardEntry
    rank: int
    tier: str
    rarity_score: int
    win_rate: float

    @property
    def address(self) -> str:
        return self.entry.address


class RecordOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    MERGED = "merged"
    MIGRATED = "migrated"
    UNSEEN = "unseen"
    SKIPPED = "skipped"
    FAILED = "failed"


class PassSummary(BaseModel):
    job: str
    fetched: int = 0
    invalid: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    merged: int = 0
    migrated: int = 0
    unseen: int = 0
    skipped: int = 0
    failed: int = 0
    truncated: bool = False

    def record(self, outcome: RecordOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def log_line(self) -> str:
        counts = " ".join(
            f"{name}={value}"
            for name, value in self.model_dump().items()
            if name != "job"
        )
        return f"{self.job} {counts}"


class LeaderboardFetch(BaseModel):
    entries: List[LeaderboardEntry] = Field(default_factory=list)
    invalid: int = 0
    pages: int = 0
    truncated: bool = False
