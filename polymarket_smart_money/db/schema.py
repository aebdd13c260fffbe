SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    job TEXT NOT NULL,
    started_at TEXT NOT NULL,
    status TEXT,
    finished_at TEXT,
    summary_json TEXT,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS traders (
    address TEXT PRIMARY KEY,
    display_name TEXT,
    profile_picture TEXT,
    twitter_username TEXT,
    tier TEXT NOT NULL DEFAULT 'B',
    realized_pnl REAL NOT NULL DEFAULT 0,
    total_pnl REAL NOT NULL DEFAULT 0,
    volume REAL NOT NULL DEFAULT 0,
    trade_count INTEGER NOT NULL DEFAULT 0,
    win_rate REAL NOT NULL DEFAULT 0,
    rarity_score INTEGER NOT NULL DEFAULT 0,
    latitude REAL,
    longitude REAL,
    country TEXT,
    last_active_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_traders_twitter ON traders (twitter_username);
CREATE INDEX IF NOT EXISTS idx_traders_tier ON traders (tier, rarity_score);

CREATE TABLE IF NOT EXISTS markets (
    market_id TEXT PRIMARY KEY,
    question TEXT,
    category TEXT,
    event_slug TEXT,
    slug TEXT,
    end_date TEXT,
    liquidity REAL,
    volume REAL,
    status TEXT,
    outcome_token_ids TEXT,
    outcome_labels TEXT,
    outcome_prices TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS market_smart_stats (
    market_id TEXT NOT NULL,
    computed_at TEXT NOT NULL,
    smart_count INTEGER NOT NULL,
    smart_weighted REAL NOT NULL,
    smart_score REAL NOT NULL,
    total_shares REAL,
    top_smart_traders TEXT,
    is_pinned INTEGER NOT NULL DEFAULT 0,
    priority INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (market_id, computed_at)
);

CREATE INDEX IF NOT EXISTS idx_smart_stats_computed ON market_smart_stats (computed_at);

CREATE TABLE IF NOT EXISTS ingestion_state (
    source TEXT NOT NULL,
    key TEXT NOT NULL,
    last_timestamp TEXT NOT NULL,
    PRIMARY KEY (source, key)
);
"""
