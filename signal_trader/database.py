import json
import logging
import os
import secrets
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from signal_trader.models import Bot, TradeKind, TradeRecord, TradeSide, utc_now_iso

logger = logging.getLogger(__name__)

# Columns the engine is allowed to write through update_bot
BOT_MUTABLE_COLUMNS = {
    "name",
    "status",
    "token",
    "leverage_type",
    "leverage_value",
    "order_size_type",
    "order_size_value",
    "start_balance",
    "current_balance",
    "profit",
    "trades",
    "stop_loss_enabled",
    "stop_loss",
    "last_signal",
    "last_signal_time",
    "position",
    "entry_price",
    "open_positions",
}


def generate_bot_token() -> str:
    """Webhook token handed to the alerting service for one bot."""
    return secrets.token_urlsafe(18)


class TradingDatabase:
    """Manages SQLite database for bots, the trade ledger and signal audit events."""

    def __init__(self, db_path: Optional[str] = None):
        # Allow tests or env overrides to point at an isolated database
        self.db_path = db_path or os.getenv("TRADING_DB_PATH", "trading-bot.db")
        self.conn = None
        self.initialize_database()

    @staticmethod
    def _column_exists(cursor: sqlite3.Cursor, table: str, column: str) -> bool:
        cursor.execute(f"PRAGMA table_info({table})")
        return any(row["name"] == column for row in cursor.fetchall())

    def _ensure_column(self, cursor: sqlite3.Cursor, table: str, column_def: str):
        """Add a column if it is missing (idempotent for schema upgrades)."""
        column_name = column_def.split()[0]
        if not self._column_exists(cursor, table, column_name):
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")

    def initialize_database(self):
        """Create database and tables if they don't exist."""
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Return rows as dictionaries

        cursor = self.conn.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
        except sqlite3.DatabaseError as exc:
            logger.debug(f"Could not enable WAL mode: {exc}")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS bots (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                pair TEXT NOT NULL,
                exchange TEXT NOT NULL,
                token TEXT UNIQUE NOT NULL,
                status TEXT DEFAULT 'paused',
                profit REAL DEFAULT 0,
                trades INTEGER DEFAULT 0,
                start_balance REAL NOT NULL,
                current_balance REAL NOT NULL,
                last_signal TEXT DEFAULT '-',
                last_signal_time TEXT DEFAULT '-',
                position TEXT DEFAULT 'none',
                entry_price REAL DEFAULT 0,
                leverage_type TEXT DEFAULT 'cross',
                leverage_value INTEGER DEFAULT 1,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """)
        # Columns added after the first release
        self._ensure_column(cursor, "bots", "order_size_type TEXT DEFAULT 'usdt'")
        self._ensure_column(cursor, "bots", "order_size_value REAL DEFAULT 10")
        self._ensure_column(cursor, "bots", "stop_loss REAL DEFAULT 0")
        self._ensure_column(cursor, "bots", "stop_loss_enabled INTEGER DEFAULT 0")
        self._ensure_column(cursor, "bots", "open_positions INTEGER DEFAULT 0")

        # Trade ledger; the AUTOINCREMENT id doubles as the ledger sequence number
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bot_id INTEGER NOT NULL,
                order_id TEXT,
                kind TEXT NOT NULL,
                side TEXT NOT NULL,
                price REAL NOT NULL,
                quantity REAL NOT NULL,
                timestamp TEXT NOT NULL,
                symbol TEXT,
                FOREIGN KEY (bot_id) REFERENCES bots(id)
            )
        """)
        try:
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_bot_id ON trades (bot_id, id)")
        except Exception as exc:
            logger.debug(f"Could not create trades index: {exc}")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS signal_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bot_id INTEGER,
                type TEXT NOT NULL,
                price REAL DEFAULT 0,
                time TEXT NOT NULL,
                status TEXT DEFAULT 'info',
                payload TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS pending_flips (
                bot_id INTEGER PRIMARY KEY,
                symbol TEXT NOT NULL,
                from_side TEXT NOT NULL,
                to_side TEXT NOT NULL,
                quantity REAL NOT NULL,
                stage TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY (bot_id) REFERENCES bots(id)
            )
        """)

        self.conn.commit()
        logger.info(f"Database initialized at {self.db_path}")

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    # --- Bots ---

    def create_bot(
        self,
        name: str,
        pair: str,
        exchange: str,
        start_balance: float,
        *,
        bot_id: Optional[int] = None,
        token: Optional[str] = None,
        status: str = "paused",
        **settings: Any,
    ) -> Bot:
        """Insert a bot row. Bot setup belongs to the admin surface; tests and tooling use this."""
        unknown = set(settings) - BOT_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown bot settings: {', '.join(sorted(unknown))}")
        columns = {
            "name": name,
            "pair": pair,
            "exchange": exchange,
            "token": token or generate_bot_token(),
            "status": status,
            "start_balance": start_balance,
            "current_balance": settings.pop("current_balance", start_balance),
        }
        if bot_id is not None:
            columns["id"] = bot_id
        columns.update(settings)
        if "stop_loss_enabled" in columns:
            columns["stop_loss_enabled"] = 1 if columns["stop_loss_enabled"] else 0
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        cursor = self.conn.cursor()
        cursor.execute(f"INSERT INTO bots ({names}) VALUES ({placeholders})", tuple(columns.values()))
        self.conn.commit()
        return self.get_bot(cursor.lastrowid)

    def get_bot(self, bot_id: int) -> Optional[Bot]:
        row = self.conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
        return Bot.from_row(row) if row else None

    def get_bots(self) -> List[Bot]:
        rows = self.conn.execute("SELECT * FROM bots ORDER BY id").fetchall()
        return [Bot.from_row(row) for row in rows]

    def get_active_bots(self) -> List[Bot]:
        rows = self.conn.execute("SELECT * FROM bots WHERE status = 'active' ORDER BY id").fetchall()
        return [Bot.from_row(row) for row in rows]

    def update_bot(self, bot_id: int, updates: Dict[str, Any]) -> Optional[Bot]:
        """Write a partial update; unknown columns are rejected rather than silently dropped."""
        if not updates:
            return self.get_bot(bot_id)
        unknown = set(updates) - BOT_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update bot columns: {', '.join(sorted(unknown))}")
        values = dict(updates)
        if "stop_loss_enabled" in values:
            values["stop_loss_enabled"] = 1 if values["stop_loss_enabled"] else 0
        assignments = ", ".join(f"{col} = ?" for col in values)
        self.conn.execute(f"UPDATE bots SET {assignments} WHERE id = ?", (*values.values(), bot_id))
        self.conn.commit()
        return self.get_bot(bot_id)

    def increment_bot_trades(self, bot_id: int, by: int = 1) -> None:
        self.conn.execute("UPDATE bots SET trades = trades + ? WHERE id = ?", (by, bot_id))
        self.conn.commit()

    # --- Trade ledger ---

    def log_trade(self, record: TradeRecord) -> TradeRecord:
        """Append a ledger record and return it with its sequence number."""
        side = record.side.value if isinstance(record.side, TradeSide) else str(record.side)
        cursor = self.conn.cursor()
        cursor.execute(
            """
            INSERT INTO trades (bot_id, order_id, kind, side, price, quantity, timestamp, symbol)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.bot_id,
                record.order_id,
                TradeKind(record.kind).value,
                side,
                record.price,
                record.quantity,
                record.timestamp or utc_now_iso(),
                record.symbol,
            ),
        )
        self.conn.commit()
        row = self.conn.execute("SELECT * FROM trades WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return TradeRecord.from_row(row)

    def get_trades_for_bot(self, bot_id: int, order: str = "asc", limit: Optional[int] = None) -> List[TradeRecord]:
        """Ledger rows for a bot in sequence order ('asc') or most recent first ('desc')."""
        direction = "DESC" if order.lower() == "desc" else "ASC"
        query = f"SELECT * FROM trades WHERE bot_id = ? ORDER BY id {direction}"
        params: tuple = (bot_id,)
        if limit:
            query += " LIMIT ?"
            params = (bot_id, limit)
        return [TradeRecord.from_row(row) for row in self.conn.execute(query, params).fetchall()]

    def get_all_trades(self) -> List[TradeRecord]:
        rows = self.conn.execute("SELECT * FROM trades ORDER BY id").fetchall()
        return [TradeRecord.from_row(row) for row in rows]

    def count_trades_by_kind(self, bot_id: int) -> Dict[str, int]:
        counts = {TradeKind.OPEN.value: 0, TradeKind.CLOSE.value: 0}
        rows = self.conn.execute(
            "SELECT kind, COUNT(*) AS n FROM trades WHERE bot_id = ? GROUP BY kind", (bot_id,)
        ).fetchall()
        for row in rows:
            counts[str(row["kind"]).upper()] = row["n"]
        return counts

    def get_last_trade(self, bot_id: int) -> Optional[TradeRecord]:
        row = self.conn.execute(
            "SELECT * FROM trades WHERE bot_id = ? ORDER BY id DESC LIMIT 1", (bot_id,)
        ).fetchone()
        return TradeRecord.from_row(row) if row else None

    def update_trade_side(self, seq: int, side: TradeSide) -> None:
        """Maintenance only: the ledger is otherwise append-only."""
        self.conn.execute("UPDATE trades SET side = ? WHERE id = ?", (TradeSide(side).value, seq))
        self.conn.commit()

    def delete_trades_for_bot(self, bot_id: int) -> int:
        """Maintenance only: wipe a bot's ledger. Returns rows removed."""
        cursor = self.conn.execute("DELETE FROM trades WHERE bot_id = ?", (bot_id,))
        self.conn.commit()
        return cursor.rowcount

    # --- Signal audit events ---

    def log_signal_event(
        self,
        bot_id: Optional[int],
        event_type: str,
        *,
        price: float = 0.0,
        status: str = "info",
        payload: Any = None,
        time: Optional[str] = None,
    ) -> int:
        if payload is not None and not isinstance(payload, str):
            payload = json.dumps(payload, default=str)
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO signal_events (bot_id, type, price, time, status, payload) VALUES (?, ?, ?, ?, ?, ?)",
            (bot_id, event_type, float(price or 0.0), time or utc_now_iso(), status, payload),
        )
        self.conn.commit()
        return cursor.lastrowid

    def prune_signal_events(self, keep: int) -> int:
        cursor = self.conn.execute(
            "DELETE FROM signal_events WHERE id NOT IN (SELECT id FROM signal_events ORDER BY id DESC LIMIT ?)",
            (keep,),
        )
        self.conn.commit()
        return cursor.rowcount

    def get_signal_events(self, bot_id: Optional[int] = None, limit: int = 200) -> List[Dict[str, Any]]:
        if bot_id is None:
            rows = self.conn.execute("SELECT * FROM signal_events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM signal_events WHERE bot_id = ? ORDER BY id DESC LIMIT ?", (bot_id, limit)
            ).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            raw_payload = event.get("payload")
            if raw_payload:
                try:
                    event["payload"] = json.loads(raw_payload)
                except (TypeError, ValueError):
                    pass
            events.append(event)
        return events

    # --- Pending flip markers ---

    def set_pending_flip(self, bot_id: int, symbol: str, from_side: TradeSide, to_side: TradeSide, quantity: float, stage: str) -> None:
        self.conn.execute(
            """
            INSERT INTO pending_flips (bot_id, symbol, from_side, to_side, quantity, stage, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(bot_id) DO UPDATE SET
                symbol = excluded.symbol,
                from_side = excluded.from_side,
                to_side = excluded.to_side,
                quantity = excluded.quantity,
                stage = excluded.stage
            """,
            (
                bot_id,
                symbol,
                TradeSide(from_side).value,
                TradeSide(to_side).value,
                quantity,
                stage,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        self.conn.commit()

    def get_pending_flip(self, bot_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM pending_flips WHERE bot_id = ?", (bot_id,)).fetchone()
        return dict(row) if row else None

    def clear_pending_flip(self, bot_id: int) -> None:
        self.conn.execute("DELETE FROM pending_flips WHERE bot_id = ?", (bot_id,))
        self.conn.commit()
