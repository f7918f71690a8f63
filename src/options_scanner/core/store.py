"""
SQLite persistence for collected market data and derived results.

Tables (all writes are idempotent upserts via ``INSERT OR REPLACE``):

  stock_data            (symbol, timestamp)         OHLCV per bar / quote
  technical_indicators  (symbol, timestamp)         EMA10/20/50, RSI14, StochRSI
  options_data          (symbol, expiration, strike, timestamp)
  market_sentiment      (symbol, timestamp)         PCR, IV percentile, max pain, GEX
  trade_setups          (symbol, timestamp)         classifier output
  daily_summaries       (symbol, date)              end-of-day roll-up
  watchlist             (symbol)                    user-curated symbols, priced on read

Each call opens its own connection, so the store is safe to use from
``asyncio.to_thread`` workers. The collector only depends on the
``PersistenceStore`` protocol; tests may pass any object with the same
methods.
"""

import logging
import sqlite3
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Protocol

import pandas as pd

from options_scanner.core.models import (
    IndicatorSet,
    OptionsChain,
    OptionsMetrics,
    PricePoint,
    TradeSetup,
)

logger = logging.getLogger("store")


class PersistenceStore(Protocol):
    def save_stock(self, symbol: str, point: PricePoint) -> None: ...

    def save_stock_series(self, symbol: str, series: list[PricePoint]) -> int: ...

    def save_indicator_series(
        self, symbol: str, series: list[PricePoint], indicators: list[IndicatorSet]
    ) -> int: ...

    def save_technical_indicators(
        self, symbol: str, point: PricePoint, indicators: IndicatorSet
    ) -> None: ...

    def save_options_data(
        self, symbol: str, chain: OptionsChain, timestamp: int, on_date: str
    ) -> int: ...

    def save_market_sentiment(
        self,
        symbol: str,
        on_date: str,
        timestamp: int,
        metrics: OptionsMetrics,
        iv_percentile: float,
    ) -> None: ...

    def save_trade_setup(self, setup: TradeSetup) -> None: ...

    def save_daily_summary(self, summary: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS stock_data (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol      TEXT    NOT NULL,
    date        TEXT    NOT NULL,
    timestamp   INTEGER NOT NULL,
    open        REAL,
    high        REAL,
    low         REAL,
    close       REAL,
    volume      INTEGER,
    UNIQUE(symbol, timestamp)
);

CREATE TABLE IF NOT EXISTS technical_indicators (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol      TEXT    NOT NULL,
    date        TEXT    NOT NULL,
    timestamp   INTEGER NOT NULL,
    ema_10      REAL,
    ema_20      REAL,
    ema_50      REAL,
    rsi_14      REAL,
    stoch_rsi   REAL,
    UNIQUE(symbol, timestamp)
);

CREATE TABLE IF NOT EXISTS options_data (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol          TEXT    NOT NULL,
    expiration_date TEXT    NOT NULL,
    date            TEXT    NOT NULL,
    timestamp       INTEGER NOT NULL,
    strike_price    REAL    NOT NULL,
    call_oi         INTEGER,
    put_oi          INTEGER,
    call_volume     INTEGER,
    put_volume      INTEGER,
    call_iv         REAL,
    put_iv          REAL,
    call_delta      REAL,
    put_delta       REAL,
    call_gamma      REAL,
    put_gamma       REAL,
    UNIQUE(symbol, expiration_date, strike_price, timestamp)
);

CREATE TABLE IF NOT EXISTS market_sentiment (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol          TEXT    NOT NULL,
    date            TEXT    NOT NULL,
    timestamp       INTEGER NOT NULL,
    pcr             REAL,
    iv_percentile   REAL,
    max_pain        REAL,
    gamma_exposure  REAL,
    volume_weighted_iv REAL,
    UNIQUE(symbol, timestamp)
);

CREATE TABLE IF NOT EXISTS trade_setups (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol            TEXT    NOT NULL,
    date              TEXT    NOT NULL,
    timestamp         INTEGER NOT NULL,
    setup_type        TEXT,
    strength          INTEGER,
    entry_price       REAL,
    stop_loss         REAL,
    target_price      REAL,
    risk_reward_ratio REAL,
    UNIQUE(symbol, timestamp)
);

CREATE TABLE IF NOT EXISTS daily_summaries (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol          TEXT    NOT NULL,
    date            TEXT    NOT NULL,
    open            REAL,
    high            REAL,
    low             REAL,
    close           REAL,
    volume          INTEGER,
    ema_10          REAL,
    ema_20          REAL,
    ema_50          REAL,
    rsi_14          REAL,
    stoch_rsi       REAL,
    pcr             REAL,
    iv_percentile   REAL,
    max_pain        REAL,
    UNIQUE(symbol, date)
);

CREATE TABLE IF NOT EXISTS watchlist (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol        TEXT    NOT NULL UNIQUE,
    setup_type    TEXT    NOT NULL,
    price         REAL    NOT NULL,
    entry_target  REAL    NOT NULL,
    stop_loss     TEXT    NOT NULL,
    target_price  REAL    NOT NULL,
    added_on      TEXT    NOT NULL,
    notes         TEXT
);

CREATE INDEX IF NOT EXISTS idx_stock_symbol_date ON stock_data(symbol, date);
CREATE INDEX IF NOT EXISTS idx_tech_symbol_date ON technical_indicators(symbol, date);
CREATE INDEX IF NOT EXISTS idx_options_symbol_date ON options_data(symbol, date);
CREATE INDEX IF NOT EXISTS idx_sentiment_symbol_date ON market_sentiment(symbol, date);
CREATE INDEX IF NOT EXISTS idx_setups_symbol_date ON trade_setups(symbol, date);
CREATE INDEX IF NOT EXISTS idx_daily_symbol_date ON daily_summaries(symbol, date);
"""

_DAILY_SUMMARY_COLUMNS = (
    "symbol",
    "date",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "ema_10",
    "ema_20",
    "ema_50",
    "rsi_14",
    "stoch_rsi",
    "pcr",
    "iv_percentile",
    "max_pain",
)


def _since(days: Optional[int]) -> str:
    if days is None:
        return "0000-00-00"
    return (date.today() - timedelta(days=days)).isoformat()


class SqliteStore:
    """``PersistenceStore`` backed by a SQLite file."""

    def __init__(self, db_path: str = "options_scanner.db"):
        self.db_path = db_path

    def _get_conn(self) -> sqlite3.Connection:
        """Create a SQLite connection with WAL mode and row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()
        logger.info("SQLite tables initialised (DB_PATH=%s)", self.db_path)

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._get_conn()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()
        return cursor

    def _query_to_list(self, sql: str, params: tuple = ()) -> list[dict]:
        """Execute a SELECT and return a list of dicts."""
        conn = self._get_conn()
        try:
            df = pd.read_sql(sql, conn, params=params)
        finally:
            conn.close()
        df = df.astype(object).where(pd.notna(df), None)
        return df.to_dict(orient="records")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_stock(self, symbol: str, point: PricePoint) -> None:
        self._execute(
            """INSERT OR REPLACE INTO stock_data
               (symbol, date, timestamp, open, high, low, close, volume)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                symbol,
                point.date,
                point.timestamp,
                point.open,
                point.high,
                point.low,
                point.close,
                point.volume,
            ),
        )

    def save_stock_series(self, symbol: str, series: list[PricePoint]) -> int:
        rows = [
            (symbol, p.date, p.timestamp, p.open, p.high, p.low, p.close, p.volume)
            for p in series
        ]
        conn = self._get_conn()
        try:
            conn.executemany(
                """INSERT OR REPLACE INTO stock_data
                   (symbol, date, timestamp, open, high, low, close, volume)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            conn.commit()
        finally:
            conn.close()
        return len(rows)

    def save_technical_indicators(
        self, symbol: str, point: PricePoint, indicators: IndicatorSet
    ) -> None:
        self._execute(
            """INSERT OR REPLACE INTO technical_indicators
               (symbol, date, timestamp, ema_10, ema_20, ema_50, rsi_14, stoch_rsi)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                symbol,
                point.date,
                point.timestamp,
                indicators.ema10,
                indicators.ema20,
                indicators.ema50,
                indicators.rsi14,
                indicators.stoch_rsi,
            ),
        )

    def save_indicator_series(
        self,
        symbol: str,
        series: list[PricePoint],
        indicators: list[IndicatorSet],
    ) -> int:
        """Persist every index whose indicator set is complete."""
        rows = [
            (
                symbol,
                p.date,
                p.timestamp,
                ind.ema10,
                ind.ema20,
                ind.ema50,
                ind.rsi14,
                ind.stoch_rsi,
            )
            for p, ind in zip(series, indicators)
            if ind.complete
        ]
        conn = self._get_conn()
        try:
            conn.executemany(
                """INSERT OR REPLACE INTO technical_indicators
                   (symbol, date, timestamp, ema_10, ema_20, ema_50, rsi_14, stoch_rsi)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            conn.commit()
        finally:
            conn.close()
        return len(rows)

    def save_options_data(
        self, symbol: str, chain: OptionsChain, timestamp: int, on_date: str
    ) -> int:
        """Persist one row per strike, pairing the call and put at that strike."""
        calls = {c.strike: c for c in chain.calls}
        puts = {p.strike: p for p in chain.puts}
        rows = []
        for strike in chain.strikes:
            call = calls.get(strike)
            put = puts.get(strike)
            rows.append(
                (
                    symbol,
                    chain.expiration_date,
                    on_date,
                    timestamp,
                    strike,
                    call.open_interest if call else 0,
                    put.open_interest if put else 0,
                    call.volume if call else 0,
                    put.volume if put else 0,
                    call.implied_volatility if call else 0.0,
                    put.implied_volatility if put else 0.0,
                    (call.delta or 0.0) if call else 0.0,
                    (put.delta or 0.0) if put else 0.0,
                    (call.gamma or 0.0) if call else 0.0,
                    (put.gamma or 0.0) if put else 0.0,
                )
            )
        conn = self._get_conn()
        try:
            conn.executemany(
                """INSERT OR REPLACE INTO options_data
                   (symbol, expiration_date, date, timestamp, strike_price,
                    call_oi, put_oi, call_volume, put_volume, call_iv, put_iv,
                    call_delta, put_delta, call_gamma, put_gamma)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            conn.commit()
        finally:
            conn.close()
        return len(rows)

    def save_market_sentiment(
        self,
        symbol: str,
        on_date: str,
        timestamp: int,
        metrics: OptionsMetrics,
        iv_percentile: float,
    ) -> None:
        self._execute(
            """INSERT OR REPLACE INTO market_sentiment
               (symbol, date, timestamp, pcr, iv_percentile, max_pain,
                gamma_exposure, volume_weighted_iv)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                symbol,
                on_date,
                timestamp,
                metrics.pcr,
                iv_percentile,
                metrics.max_pain,
                metrics.gamma_exposure,
                metrics.volume_weighted_iv,
            ),
        )

    def save_trade_setup(self, setup: TradeSetup) -> None:
        self._execute(
            """INSERT OR REPLACE INTO trade_setups
               (symbol, date, timestamp, setup_type, strength, entry_price,
                stop_loss, target_price, risk_reward_ratio)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                setup.symbol,
                setup.date,
                setup.timestamp,
                setup.setup_type.value,
                setup.strength,
                setup.entry_price,
                setup.stop_loss,
                setup.target_price,
                setup.risk_reward_ratio,
            ),
        )

    def save_daily_summary(self, summary: dict[str, Any]) -> None:
        placeholders = ", ".join("?" for _ in _DAILY_SUMMARY_COLUMNS)
        self._execute(
            f"""INSERT OR REPLACE INTO daily_summaries
                ({", ".join(_DAILY_SUMMARY_COLUMNS)})
                VALUES ({placeholders})""",
            tuple(summary.get(col) for col in _DAILY_SUMMARY_COLUMNS),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_stock_data(self, symbol: str, days: Optional[int] = 60) -> list[dict]:
        return self._query_to_list(
            "SELECT * FROM stock_data WHERE symbol = ? AND date >= ? ORDER BY timestamp ASC",
            (symbol, _since(days)),
        )

    def get_technical_indicators(
        self, symbol: str, days: Optional[int] = 14
    ) -> list[dict]:
        return self._query_to_list(
            "SELECT * FROM technical_indicators WHERE symbol = ? AND date >= ? ORDER BY timestamp ASC",
            (symbol, _since(days)),
        )

    def get_options_data(
        self, symbol: str, expiration_date: Optional[str] = None
    ) -> list[dict]:
        """Return the latest snapshot for one expiration (nearest if omitted)."""
        if expiration_date is None:
            rows = self._query_to_list(
                """SELECT expiration_date FROM options_data
                   WHERE symbol = ? ORDER BY timestamp DESC, expiration_date ASC LIMIT 1""",
                (symbol,),
            )
            if not rows:
                return []
            expiration_date = rows[0]["expiration_date"]
        return self._query_to_list(
            """SELECT * FROM options_data
               WHERE symbol = ? AND expiration_date = ?
                 AND timestamp = (SELECT MAX(timestamp) FROM options_data
                                  WHERE symbol = ? AND expiration_date = ?)
               ORDER BY strike_price ASC""",
            (symbol, expiration_date, symbol, expiration_date),
        )

    def get_expiration_dates(self, symbol: str) -> list[str]:
        rows = self._query_to_list(
            "SELECT DISTINCT expiration_date FROM options_data WHERE symbol = ? ORDER BY expiration_date ASC",
            (symbol,),
        )
        return [r["expiration_date"] for r in rows]

    def get_market_sentiment(self, symbol: str, days: Optional[int] = 7) -> list[dict]:
        return self._query_to_list(
            "SELECT * FROM market_sentiment WHERE symbol = ? AND date >= ? ORDER BY timestamp ASC",
            (symbol, _since(days)),
        )

    def get_trade_setups(
        self, symbol: Optional[str] = None, setup_type: Optional[str] = None
    ) -> list[dict]:
        clauses = []
        params: list[Any] = []
        if symbol:
            clauses.append("symbol = ?")
            params.append(symbol)
        if setup_type:
            clauses.append("setup_type = ?")
            params.append(setup_type)
        sql = "SELECT * FROM trade_setups"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC"
        return self._query_to_list(sql, tuple(params))

    def get_latest_trade_setup(self, symbol: str) -> Optional[dict]:
        rows = self._query_to_list(
            "SELECT * FROM trade_setups WHERE symbol = ? ORDER BY timestamp DESC LIMIT 1",
            (symbol,),
        )
        return rows[0] if rows else None

    def get_daily_summaries(self, symbol: str, days: Optional[int] = 30) -> list[dict]:
        return self._query_to_list(
            "SELECT * FROM daily_summaries WHERE symbol = ? AND date >= ? ORDER BY date ASC",
            (symbol, _since(days)),
        )

    def get_all_symbols(self) -> list[str]:
        rows = self._query_to_list("SELECT DISTINCT symbol FROM stock_data ORDER BY symbol")
        return [r["symbol"] for r in rows]

    def get_latest_market_context(self, symbol: str) -> dict[str, Optional[dict]]:
        """Latest price, technicals and sentiment rows for *symbol*."""
        context: dict[str, Optional[dict]] = {}
        for name, table in (
            ("price", "stock_data"),
            ("technicals", "technical_indicators"),
            ("sentiment", "market_sentiment"),
        ):
            rows = self._query_to_list(
                f"SELECT * FROM {table} WHERE symbol = ? ORDER BY timestamp DESC LIMIT 1",
                (symbol,),
            )
            context[name] = rows[0] if rows else None
        return context

    # ------------------------------------------------------------------
    # Watchlist
    # ------------------------------------------------------------------

    def add_to_watchlist(
        self,
        symbol: str,
        setup_type: str,
        price: float,
        entry_target: float,
        stop_loss: Any = "N/A",
        target_price: Optional[float] = None,
        notes: str = "",
    ) -> int:
        """Insert or replace *symbol*'s entry and return its row id.

        ``stop_loss`` is stored as text so "N/A" or a level description are
        allowed. ``target_price`` defaults to 5% above *price*.
        """
        if target_price is None:
            target_price = price * 1.05
        cursor = self._execute(
            """INSERT OR REPLACE INTO watchlist
               (symbol, setup_type, price, entry_target, stop_loss, target_price, added_on, notes)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                symbol,
                setup_type,
                price,
                entry_target,
                str(stop_loss),
                target_price,
                datetime.now(tz=timezone.utc).isoformat(),
                notes or "",
            ),
        )
        return cursor.lastrowid

    def remove_from_watchlist(self, symbol: str) -> bool:
        cursor = self._execute("DELETE FROM watchlist WHERE symbol = ?", (symbol,))
        return cursor.rowcount > 0

    def get_watchlist(self) -> list[dict]:
        """Newest entries first, ``price`` taken from the latest stock row when there is one."""
        return self._query_to_list(
            """SELECT w.id, w.symbol, w.setup_type,
                      COALESCE((SELECT s.close FROM stock_data s
                                WHERE s.symbol = w.symbol
                                ORDER BY s.timestamp DESC LIMIT 1), w.price) AS price,
                      w.entry_target, w.stop_loss, w.target_price, w.added_on, w.notes
               FROM watchlist w
               ORDER BY w.added_on DESC"""
        )

    def get_watchlist_item(self, symbol: str) -> Optional[dict]:
        rows = self._query_to_list("SELECT * FROM watchlist WHERE symbol = ?", (symbol,))
        return rows[0] if rows else None
