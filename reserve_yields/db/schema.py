SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS runs (
    run_id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_date TEXT NOT NULL,
    started_at TEXT NOT NULL,
    status TEXT,
    finished_at TEXT,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS run_diagnostics (
    run_id INTEGER NOT NULL,
    key TEXT NOT NULL,
    value_json TEXT,
    PRIMARY KEY (run_id, key)
);

CREATE TABLE IF NOT EXISTS raw_snapshots (
    market_key TEXT NOT NULL,
    snapshot_date TEXT NOT NULL,
    source TEXT NOT NULL,
    captured_at INTEGER NOT NULL,
    block_number INTEGER,
    reserves_json TEXT NOT NULL,
    processed_at TEXT,
    PRIMARY KEY (market_key, snapshot_date, source)
);

CREATE TABLE IF NOT EXISTS asset_snapshots (
    market_key TEXT NOT NULL,
    underlying_asset TEXT NOT NULL,
    snapshot_date TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    block_number INTEGER,
    symbol TEXT,
    decimals INTEGER,
    supplied_tokens TEXT,
    borrowed_tokens TEXT,
    available_tokens TEXT,
    supplied_usd REAL,
    borrowed_usd REAL,
    available_usd REAL,
    supply_apr REAL,
    borrow_apr REAL,
    utilization REAL,
    price_usd REAL,
    liquidity_index TEXT,
    variable_borrow_index TEXT,
    source TEXT NOT NULL,
    raw_source TEXT,
    updated_at TEXT,
    PRIMARY KEY (market_key, underlying_asset, snapshot_date)
);

CREATE TABLE IF NOT EXISTS market_timeseries (
    market_key TEXT NOT NULL,
    snapshot_date TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    supplied_usd REAL,
    borrowed_usd REAL,
    available_usd REAL,
    source TEXT,
    updated_at TEXT,
    PRIMARY KEY (market_key, snapshot_date)
);

CREATE TABLE IF NOT EXISTS market_reliability (
    market_key TEXT PRIMARY KEY,
    reliable INTEGER NOT NULL,
    reasons_json TEXT,
    details_json TEXT,
    checked_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_raw_pending ON raw_snapshots (processed_at, snapshot_date);
CREATE INDEX IF NOT EXISTS idx_asset_market_date ON asset_snapshots (market_key, snapshot_date);
"""
