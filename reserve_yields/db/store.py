from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from reserve_yields.db.schema import SCHEMA_SQL
from reserve_yields.errors import PersistenceWriteError

ASSET_COLUMNS = (
    "market_key",
    "underlying_asset",
    "snapshot_date",
    "timestamp",
    "block_number",
    "symbol",
    "decimals",
    "supplied_tokens",
    "borrowed_tokens",
    "available_tokens",
    "supplied_usd",
    "borrowed_usd",
    "available_usd",
    "supply_apr",
    "borrow_apr",
    "utilization",
    "price_usd",
    "liquidity_index",
    "variable_borrow_index",
    "source",
    "raw_source",
)

TIMESERIES_COLUMNS = (
    "market_key",
    "snapshot_date",
    "timestamp",
    "supplied_usd",
    "borrowed_usd",
    "available_usd",
    "source",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def _write(conn: sqlite3.Connection, sql: str, params: Iterable[Any], commit: bool = True) -> sqlite3.Cursor:
    try:
        cursor = conn.execute(sql, tuple(params))
        if commit:
            conn.commit()
        return cursor
    except sqlite3.Error as exc:
        raise PersistenceWriteError(f"Write failed: {exc}", {"sql": sql.split("(")[0].strip()}) from exc


def _upsert_sql(table: str, columns: tuple[str, ...], keys: tuple[str, ...]) -> str:
    updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column not in keys)
    return f"""
        INSERT INTO {table} ({", ".join(columns)}, updated_at)
        VALUES ({", ".join("?" for _ in columns)}, ?)
        ON CONFLICT ({", ".join(keys)}) DO UPDATE SET {updates}, updated_at = excluded.updated_at
    """


def start_run(conn: sqlite3.Connection, run_date: str) -> int:
    cursor = _write(
        conn,
        "INSERT INTO runs (run_date, started_at, status) VALUES (?, ?, ?)",
        (run_date, _now(), "running"),
    )
    return int(cursor.lastrowid)


def finish_run(conn: sqlite3.Connection, run_id: int, status: str, error_message: str | None = None) -> None:
    _write(
        conn,
        "UPDATE runs SET status = ?, finished_at = ?, error_message = ? WHERE run_id = ?",
        (status, _now(), error_message, run_id),
    )


def insert_run_diagnostics(conn: sqlite3.Connection, run_id: int, diagnostics: dict[str, Any]) -> None:
    for key, value in diagnostics.items():
        _write(
            conn,
            "INSERT OR REPLACE INTO run_diagnostics (run_id, key, value_json) VALUES (?, ?, ?)",
            (run_id, key, json.dumps(value, ensure_ascii=True, default=str)),
            commit=False,
        )
    conn.commit()


def get_run(conn: sqlite3.Connection, run_id: int) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
    if row is None:
        return None
    run = dict(row)
    diagnostics = conn.execute("SELECT key, value_json FROM run_diagnostics WHERE run_id = ?", (run_id,)).fetchall()
    run["diagnostics"] = {item["key"]: json.loads(item["value_json"]) for item in diagnostics}
    return run


def upsert_raw_snapshot(
    conn: sqlite3.Connection,
    market_key: str,
    snapshot_date: str,
    source: str,
    reserves: list[dict[str, Any]],
    captured_at: int,
    block_number: int | None = None,
    commit: bool = True,
) -> None:
    _write(
        conn,
        """
        INSERT INTO raw_snapshots
        (market_key, snapshot_date, source, captured_at, block_number, reserves_json, processed_at)
        VALUES (?, ?, ?, ?, ?, ?, NULL)
        ON CONFLICT (market_key, snapshot_date, source) DO UPDATE SET
            captured_at = excluded.captured_at,
            block_number = excluded.block_number,
            reserves_json = excluded.reserves_json,
            processed_at = NULL
        """,
        (
            market_key,
            snapshot_date,
            source,
            int(captured_at),
            block_number,
            json.dumps(reserves, ensure_ascii=True),
        ),
        commit=commit,
    )


def _raw_row(row: sqlite3.Row) -> dict[str, Any]:
    raw = dict(row)
    raw["reserves"] = json.loads(raw.pop("reserves_json"))
    return raw


def get_raw_snapshot(
    conn: sqlite3.Connection,
    market_key: str,
    snapshot_date: str,
    source: str,
) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM raw_snapshots WHERE market_key = ? AND snapshot_date = ? AND source = ?",
        (market_key, snapshot_date, source),
    ).fetchone()
    return _raw_row(row) if row is not None else None


def get_raw_snapshot_dates(conn: sqlite3.Connection, market_key: str) -> set[str]:
    rows = conn.execute(
        "SELECT DISTINCT snapshot_date FROM raw_snapshots WHERE market_key = ?",
        (market_key,),
    ).fetchall()
    return {row["snapshot_date"] for row in rows}


def list_pending_raw_snapshots(conn: sqlite3.Connection, limit: int | None = None) -> list[dict[str, Any]]:
    sql = "SELECT * FROM raw_snapshots WHERE processed_at IS NULL ORDER BY snapshot_date, captured_at"
    params: tuple[Any, ...] = ()
    if limit is not None:
        sql += " LIMIT ?"
        params = (limit,)
    return [_raw_row(row) for row in conn.execute(sql, params).fetchall()]


def mark_raw_processed(conn: sqlite3.Connection, market_key: str, snapshot_date: str, source: str) -> None:
    _write(
        conn,
        """
        UPDATE raw_snapshots SET processed_at = ?
        WHERE market_key = ? AND snapshot_date = ? AND source = ?
        """,
        (_now(), market_key, snapshot_date, source),
    )


def get_asset_snapshot(
    conn: sqlite3.Connection,
    market_key: str,
    underlying_asset: str,
    snapshot_date: str,
) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT * FROM asset_snapshots
        WHERE market_key = ? AND underlying_asset = ? AND snapshot_date = ?
        """,
        (market_key, underlying_asset, snapshot_date),
    ).fetchone()
    return dict(row) if row is not None else None


def get_previous_asset_snapshot(
    conn: sqlite3.Connection,
    market_key: str,
    underlying_asset: str,
    before_date: str,
) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT * FROM asset_snapshots
        WHERE market_key = ? AND underlying_asset = ? AND snapshot_date < ?
        ORDER BY snapshot_date DESC
        LIMIT 1
        """,
        (market_key, underlying_asset, before_date),
    ).fetchone()
    return dict(row) if row is not None else None


def upsert_asset_snapshot(conn: sqlite3.Connection, row: dict[str, Any], commit: bool = True) -> None:
    _write(
        conn,
        _upsert_sql("asset_snapshots", ASSET_COLUMNS, ("market_key", "underlying_asset", "snapshot_date")),
        [row.get(column) for column in ASSET_COLUMNS] + [_now()],
        commit=commit,
    )


def list_asset_snapshots(
    conn: sqlite3.Connection,
    market_key: str,
    underlying_asset: str | None = None,
    since: str | None = None,
) -> list[dict[str, Any]]:
    sql = "SELECT * FROM asset_snapshots WHERE market_key = ?"
    params: list[Any] = [market_key]
    if underlying_asset is not None:
        sql += " AND underlying_asset = ?"
        params.append(underlying_asset.lower())
    if since is not None:
        sql += " AND snapshot_date >= ?"
        params.append(since)
    sql += " ORDER BY snapshot_date"
    return [dict(row) for row in conn.execute(sql, params).fetchall()]


def list_latest_asset_snapshots(conn: sqlite3.Connection, market_key: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT a.* FROM asset_snapshots a
        JOIN (
            SELECT underlying_asset, MAX(snapshot_date) AS snapshot_date
            FROM asset_snapshots
            WHERE market_key = ?
            GROUP BY underlying_asset
        ) latest
        ON a.underlying_asset = latest.underlying_asset AND a.snapshot_date = latest.snapshot_date
        WHERE a.market_key = ?
        ORDER BY a.underlying_asset
        """,
        (market_key, market_key),
    ).fetchall()
    return [dict(row) for row in rows]


def upsert_market_point(conn: sqlite3.Connection, row: dict[str, Any], commit: bool = True) -> None:
    _write(
        conn,
        _upsert_sql("market_timeseries", TIMESERIES_COLUMNS, ("market_key", "snapshot_date")),
        [row.get(column) for column in TIMESERIES_COLUMNS] + [_now()],
        commit=commit,
    )


def get_market_point(conn: sqlite3.Connection, market_key: str, snapshot_date: str) -> dict[str, Any] | None:
    row = conn.execute(
        "SELECT * FROM market_timeseries WHERE market_key = ? AND snapshot_date = ?",
        (market_key, snapshot_date),
    ).fetchone()
    return dict(row) if row is not None else None


def list_market_timeseries(conn: sqlite3.Connection, market_key: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM market_timeseries WHERE market_key = ? ORDER BY snapshot_date",
        (market_key,),
    ).fetchall()
    return [dict(row) for row in rows]


def set_market_reliability(
    conn: sqlite3.Connection,
    market_key: str,
    reliable: bool,
    reasons: list[str],
    details: dict[str, Any] | None = None,
) -> None:
    _write(
        conn,
        """
        INSERT OR REPLACE INTO market_reliability (market_key, reliable, reasons_json, details_json, checked_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            market_key,
            1 if reliable else 0,
            json.dumps(reasons, ensure_ascii=True),
            json.dumps(details or {}, ensure_ascii=True, default=str),
            _now(),
        ),
    )


def get_market_reliability(conn: sqlite3.Connection, market_key: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM market_reliability WHERE market_key = ?", (market_key,)).fetchone()
    if row is None:
        return None
    result = dict(row)
    result["reliable"] = bool(result["reliable"])
    result["reasons"] = json.loads(result.pop("reasons_json") or "[]")
    result["details"] = json.loads(result.pop("details_json") or "{}")
    return result


def get_unreliable_markets(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT market_key FROM market_reliability WHERE reliable = 0").fetchall()
    return {row["market_key"] for row in rows}
