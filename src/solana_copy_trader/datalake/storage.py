"""Durable ledger for users, alpha wallets, positions and trades."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, List, Optional, Protocol, Sequence, Tuple

from ..errors import AlphaWalletLimitError, LedgerError
from ..utils.constants import utc_now
from .schemas import (
    AlphaWallet,
    ExitReason,
    Position,
    Trade,
    TradeSide,
    TradeStatus,
    User,
    UserSettings,
    UserStats,
)


class Ledger(Protocol):
    """Storage operations consumed by the dispatcher, sizer and monitor."""

    def get_active_trackers(self, alpha_address: str) -> Tuple[User, ...]:
        ...

    def get_position(self, user_id: int, token_address: str) -> Optional[Position]:
        ...

    def upsert_position(self, position: Position) -> None:
        ...

    def append_trade(self, trade: Trade) -> Trade:
        ...

    def record_fill(self, trade: Trade, position: Optional[Position]) -> Trade:
        ...

    def get_open_positions(self, user_id: int) -> Tuple[Position, ...]:
        ...

    def get_blacklisted_tokens(self) -> frozenset[str]:
        ...

    def get_users_with_auto_sell(self) -> Tuple[User, ...]:
        ...

    def has_buy_from_alpha(
        self,
        user_id: int,
        token_address: str,
        alpha_address: str,
        since: Optional[datetime] = None,
    ) -> bool:
        ...


CREATE_USERS_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id TEXT UNIQUE NOT NULL,
    wallet_address TEXT,
    private_key TEXT,
    max_trade_amount REAL NOT NULL DEFAULT 0.1,
    slippage REAL NOT NULL DEFAULT 5.0,
    auto_sell_enabled INTEGER NOT NULL DEFAULT 0,
    take_profit REAL NOT NULL DEFAULT 100,
    stop_loss REAL NOT NULL DEFAULT 20,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

CREATE_ALPHA_WALLETS_TABLE = """
CREATE TABLE IF NOT EXISTS alpha_wallets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    wallet_address TEXT NOT NULL,
    nickname TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
"""

CREATE_POSITIONS_TABLE = """
CREATE TABLE IF NOT EXISTS positions (
    user_id INTEGER NOT NULL REFERENCES users(id),
    token_address TEXT NOT NULL,
    token_symbol TEXT,
    total_amount REAL NOT NULL,
    average_price REAL NOT NULL,
    is_open INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    closed_at TEXT,
    PRIMARY KEY (user_id, token_address)
);
"""

CREATE_TRADES_TABLE = """
CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id),
    alpha_wallet TEXT NOT NULL,
    token_address TEXT NOT NULL,
    token_symbol TEXT,
    side TEXT NOT NULL,
    amount REAL NOT NULL,
    sol_amount REAL NOT NULL,
    price REAL NOT NULL,
    signature TEXT,
    source_signature TEXT,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL,
    error TEXT,
    profit_loss REAL,
    exit_reason TEXT,
    created_at TEXT NOT NULL
);
"""

CREATE_BLACKLIST_TABLE = """
CREATE TABLE IF NOT EXISTS blacklisted_tokens (
    token_address TEXT PRIMARY KEY,
    reason TEXT,
    created_at TEXT NOT NULL
);
"""

CREATE_SCHEMA_VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER NOT NULL
);
"""

CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_alpha_wallets_address ON alpha_wallets (wallet_address, active)",
    "CREATE INDEX IF NOT EXISTS idx_trades_user_token ON trades (user_id, token_address, side, status)",
)

SCHEMA_VERSION = 1

_USER_COLUMNS = (
    "u.id, u.telegram_id, u.wallet_address, u.private_key, u.max_trade_amount, u.slippage, "
    "u.auto_sell_enabled, u.take_profit, u.stop_loss, u.active, u.created_at"
)
_POSITION_COLUMNS = (
    "user_id, token_address, token_symbol, total_amount, average_price, is_open, "
    "created_at, updated_at, closed_at"
)
_TRADE_COLUMNS = (
    "id, user_id, alpha_wallet, token_address, token_symbol, side, amount, sol_amount, price, "
    "signature, source_signature, status, attempts, error, profit_loss, exit_reason, created_at"
)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_user(row: Sequence[Any]) -> User:
    return User(
        id=row[0],
        telegram_id=row[1],
        wallet_address=row[2],
        encrypted_private_key=row[3],
        settings=UserSettings(
            max_trade_amount=float(row[4]),
            slippage_pct=float(row[5]),
            auto_sell_enabled=bool(row[6]),
            take_profit_pct=float(row[7]),
            stop_loss_pct=float(row[8]),
        ),
        active=bool(row[9]),
        created_at=datetime.fromisoformat(row[10]),
    )


def _row_to_position(row: Sequence[Any]) -> Position:
    return Position(
        user_id=row[0],
        token_address=row[1],
        token_symbol=row[2],
        total_amount=float(row[3]),
        average_price=float(row[4]),
        is_open=bool(row[5]),
        created_at=datetime.fromisoformat(row[6]),
        updated_at=datetime.fromisoformat(row[7]),
        closed_at=_parse_ts(row[8]),
    )


def _row_to_trade(row: Sequence[Any]) -> Trade:
    return Trade(
        id=row[0],
        user_id=row[1],
        alpha_wallet=row[2],
        token_address=row[3],
        token_symbol=row[4],
        side=TradeSide(row[5]),
        amount=float(row[6]),
        sol_amount=float(row[7]),
        price=float(row[8]),
        signature=row[9],
        source_signature=row[10],
        status=TradeStatus(row[11]),
        attempts=int(row[12]),
        error=row[13],
        profit_loss=row[14],
        exit_reason=ExitReason(row[15]) if row[15] else None,
        created_at=datetime.fromisoformat(row[16]),
    )


class SQLiteLedger:
    """SQLite-backed :class:`Ledger`.

    Each call opens its own connection, so methods are safe to run from
    worker threads via ``asyncio.to_thread``. ``sqlite3`` failures surface
    as :class:`LedgerError`.
    """

    def __init__(self, database_path: Path, *, max_alpha_wallets: int = 3) -> None:
        self._database_path = Path(database_path)
        self._max_alpha_wallets = max_alpha_wallets
        self._initialize()

    def _initialize(self) -> None:
        self._database_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(CREATE_USERS_TABLE)
            con.execute(CREATE_ALPHA_WALLETS_TABLE)
            con.execute(CREATE_POSITIONS_TABLE)
            con.execute(CREATE_TRADES_TABLE)
            con.execute(CREATE_BLACKLIST_TABLE)
            con.execute(CREATE_SCHEMA_VERSION_TABLE)
            for statement in CREATE_INDEXES:
                con.execute(statement)
            self._apply_migrations(con)
            con.commit()

    def _apply_migrations(self, con: sqlite3.Connection) -> None:
        current = self._get_schema_version(con)
        if current != SCHEMA_VERSION:
            con.execute("DELETE FROM schema_migrations")
            con.execute("INSERT INTO schema_migrations (version) VALUES (?)", (SCHEMA_VERSION,))

    def _get_schema_version(self, con: sqlite3.Connection) -> int:
        row = con.execute("SELECT version FROM schema_migrations ORDER BY ROWID DESC LIMIT 1").fetchone()
        return int(row[0]) if row else 0

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            con = sqlite3.connect(self._database_path)
        except sqlite3.Error as exc:
            raise LedgerError(f"cannot open ledger at {self._database_path}: {exc}") from exc
        try:
            yield con
        except sqlite3.Error as exc:
            con.rollback()
            raise LedgerError(str(exc)) from exc
        finally:
            con.close()

    # Users -------------------------------------------------------------

    def create_user(self, telegram_id: str, settings: Optional[UserSettings] = None) -> User:
        """Return the user for ``telegram_id``, creating it on first contact."""

        existing = self.get_user_by_telegram_id(telegram_id)
        if existing is not None:
            return existing
        settings = settings or UserSettings()
        now = utc_now().isoformat()
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO users (
                    telegram_id, max_trade_amount, slippage, auto_sell_enabled,
                    take_profit, stop_loss, active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(telegram_id) DO NOTHING
                """,
                (
                    str(telegram_id),
                    settings.max_trade_amount,
                    settings.slippage_pct,
                    int(settings.auto_sell_enabled),
                    settings.take_profit_pct,
                    settings.stop_loss_pct,
                    now,
                    now,
                ),
            )
            con.commit()
        user = self.get_user_by_telegram_id(telegram_id)
        if user is None:
            raise LedgerError(f"user {telegram_id} vanished after insert")
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as con:
            row = con.execute(f"SELECT {_USER_COLUMNS} FROM users u WHERE u.id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_telegram_id(self, telegram_id: str) -> Optional[User]:
        with self._connect() as con:
            row = con.execute(
                f"SELECT {_USER_COLUMNS} FROM users u WHERE u.telegram_id = ?", (str(telegram_id),)
            ).fetchone()
        return _row_to_user(row) if row else None

    def connect_wallet(self, user_id: int, wallet_address: str, encrypted_private_key: str) -> None:
        with self._connect() as con:
            con.execute(
                "UPDATE users SET wallet_address = ?, private_key = ?, updated_at = ? WHERE id = ?",
                (wallet_address, encrypted_private_key, utc_now().isoformat(), user_id),
            )
            con.commit()

    def update_user_settings(self, user_id: int, settings: UserSettings) -> None:
        with self._connect() as con:
            con.execute(
                """
                UPDATE users SET
                    max_trade_amount = ?,
                    slippage = ?,
                    auto_sell_enabled = ?,
                    take_profit = ?,
                    stop_loss = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    settings.max_trade_amount,
                    settings.slippage_pct,
                    int(settings.auto_sell_enabled),
                    settings.take_profit_pct,
                    settings.stop_loss_pct,
                    utc_now().isoformat(),
                    user_id,
                ),
            )
            con.commit()

    def set_user_active(self, user_id: int, active: bool) -> None:
        with self._connect() as con:
            con.execute(
                "UPDATE users SET active = ?, updated_at = ? WHERE id = ?",
                (int(active), utc_now().isoformat(), user_id),
            )
            con.commit()

    def get_users_with_auto_sell(self) -> Tuple[User, ...]:
        with self._connect() as con:
            rows = con.execute(
                f"""
                SELECT {_USER_COLUMNS} FROM users u
                WHERE u.auto_sell_enabled = 1 AND u.active = 1 AND u.wallet_address IS NOT NULL
                ORDER BY u.id
                """
            ).fetchall()
        return tuple(_row_to_user(row) for row in rows)

    # Alpha wallets -----------------------------------------------------

    def add_alpha_wallet(self, user_id: int, address: str, nickname: Optional[str] = None) -> AlphaWallet:
        active = self.list_alpha_wallets(user_id)
        if any(wallet.address == address for wallet in active):
            raise AlphaWalletLimitError(f"alpha wallet {address} is already tracked")
        if len(active) >= self._max_alpha_wallets:
            raise AlphaWalletLimitError(
                f"at most {self._max_alpha_wallets} alpha wallets can be tracked"
            )
        created_at = utc_now()
        with self._connect() as con:
            cur = con.execute(
                """
                INSERT INTO alpha_wallets (user_id, wallet_address, nickname, active, created_at)
                VALUES (?, ?, ?, 1, ?)
                """,
                (user_id, address, nickname, created_at.isoformat()),
            )
            con.commit()
            wallet_id = int(cur.lastrowid)
        return AlphaWallet(
            id=wallet_id,
            user_id=user_id,
            address=address,
            nickname=nickname,
            active=True,
            created_at=created_at,
        )

    def list_alpha_wallets(self, user_id: int, *, include_inactive: bool = False) -> List[AlphaWallet]:
        query = (
            "SELECT id, user_id, wallet_address, nickname, active, created_at FROM alpha_wallets "
            "WHERE user_id = ?"
        )
        if not include_inactive:
            query += " AND active = 1"
        with self._connect() as con:
            rows = con.execute(query + " ORDER BY id", (user_id,)).fetchall()
        return [
            AlphaWallet(
                id=row[0],
                user_id=row[1],
                address=row[2],
                nickname=row[3],
                active=bool(row[4]),
                created_at=datetime.fromisoformat(row[5]),
            )
            for row in rows
        ]

    def deactivate_alpha_wallet(self, user_id: int, address: str) -> bool:
        with self._connect() as con:
            cur = con.execute(
                "UPDATE alpha_wallets SET active = 0 WHERE user_id = ? AND wallet_address = ? AND active = 1",
                (user_id, address),
            )
            con.commit()
            return cur.rowcount > 0

    def list_active_alpha_addresses(self) -> List[str]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT DISTINCT wallet_address FROM alpha_wallets WHERE active = 1 ORDER BY wallet_address"
            ).fetchall()
        return [row[0] for row in rows]

    def get_active_trackers(self, alpha_address: str) -> Tuple[User, ...]:
        with self._connect() as con:
            rows = con.execute(
                f"""
                SELECT DISTINCT {_USER_COLUMNS}
                FROM users u
                JOIN alpha_wallets aw ON aw.user_id = u.id
                WHERE aw.wallet_address = ?
                  AND aw.active = 1
                  AND u.active = 1
                  AND u.wallet_address IS NOT NULL
                ORDER BY u.id
                """,
                (alpha_address,),
            ).fetchall()
        return tuple(_row_to_user(row) for row in rows)

    # Positions ---------------------------------------------------------

    def get_position(self, user_id: int, token_address: str) -> Optional[Position]:
        with self._connect() as con:
            row = con.execute(
                f"SELECT {_POSITION_COLUMNS} FROM positions WHERE user_id = ? AND token_address = ?",
                (user_id, token_address),
            ).fetchone()
        return _row_to_position(row) if row else None

    def upsert_position(self, position: Position) -> None:
        with self._connect() as con:
            self._write_position(con, position)
            con.commit()

    def _write_position(self, con: sqlite3.Connection, position: Position) -> None:
        if position.total_amount < 0:
            raise LedgerError("position amount cannot be negative")
        con.execute(
            """
            INSERT INTO positions (
                user_id, token_address, token_symbol, total_amount, average_price,
                is_open, created_at, updated_at, closed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, token_address) DO UPDATE SET
                token_symbol = excluded.token_symbol,
                total_amount = excluded.total_amount,
                average_price = excluded.average_price,
                is_open = excluded.is_open,
                created_at = excluded.created_at,
                updated_at = excluded.updated_at,
                closed_at = excluded.closed_at
            """,
            (
                position.user_id,
                position.token_address,
                position.token_symbol,
                position.total_amount,
                position.average_price,
                int(position.is_open),
                position.created_at.isoformat(),
                position.updated_at.isoformat(),
                position.closed_at.isoformat() if position.closed_at else None,
            ),
        )

    def get_open_positions(self, user_id: int) -> Tuple[Position, ...]:
        with self._connect() as con:
            rows = con.execute(
                f"""
                SELECT {_POSITION_COLUMNS} FROM positions
                WHERE user_id = ? AND is_open = 1
                ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return tuple(_row_to_position(row) for row in rows)

    # Trades ------------------------------------------------------------

    def append_trade(self, trade: Trade) -> Trade:
        """Persist ``trade`` and return it with its row id."""

        with self._connect() as con:
            trade_id = self._insert_trade(con, trade)
            con.commit()
        return replace(trade, id=trade_id)

    def record_fill(self, trade: Trade, position: Optional[Position]) -> Trade:
        """Persist a completed trade and the position it produced atomically.

        Either both rows land or neither does.
        """

        with self._connect() as con:
            trade_id = self._insert_trade(con, trade)
            if position is not None:
                self._write_position(con, position)
            con.commit()
        return replace(trade, id=trade_id)

    def _insert_trade(self, con: sqlite3.Connection, trade: Trade) -> int:
        cur = con.execute(
            f"""
            INSERT INTO trades ({_TRADE_COLUMNS})
            VALUES (NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade.user_id,
                trade.alpha_wallet,
                trade.token_address,
                trade.token_symbol,
                trade.side.value,
                trade.amount,
                trade.sol_amount,
                trade.price,
                trade.signature,
                trade.source_signature,
                trade.status.value,
                trade.attempts,
                trade.error,
                trade.profit_loss,
                trade.exit_reason.value if trade.exit_reason else None,
                trade.created_at.isoformat(),
            ),
        )
        return int(cur.lastrowid)

    def list_trades(
        self,
        user_id: int,
        *,
        limit: int = 50,
        status: Optional[TradeStatus] = None,
    ) -> List[Trade]:
        query = f"SELECT {_TRADE_COLUMNS} FROM trades WHERE user_id = ?"
        params: List[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._connect() as con:
            rows = con.execute(query, params).fetchall()
        return [_row_to_trade(row) for row in rows]

    def has_buy_from_alpha(
        self,
        user_id: int,
        token_address: str,
        alpha_address: str,
        since: Optional[datetime] = None,
    ) -> bool:
        query = (
            "SELECT 1 FROM trades WHERE user_id = ? AND token_address = ? AND alpha_wallet = ? "
            "AND side = ? AND status = ?"
        )
        params: List[Any] = [
            user_id,
            token_address,
            alpha_address,
            TradeSide.BUY.value,
            TradeStatus.COMPLETED.value,
        ]
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since.isoformat())
        with self._connect() as con:
            row = con.execute(query + " LIMIT 1", params).fetchone()
        return row is not None

    def user_stats(self, user_id: int) -> UserStats:
        trades = self.list_trades(user_id, limit=1_000_000)
        completed = [trade for trade in trades if trade.status == TradeStatus.COMPLETED]
        realized = [trade.profit_loss for trade in completed if trade.profit_loss is not None]
        wins = [value for value in realized if value > 0]
        losses = [value for value in realized if value < 0]
        total_pnl = sum(realized)
        with self._connect() as con:
            open_count = con.execute(
                "SELECT COUNT(*) FROM positions WHERE user_id = ? AND is_open = 1", (user_id,)
            ).fetchone()[0]
        return UserStats(
            total_trades=len(completed),
            buy_count=sum(1 for trade in completed if trade.side == TradeSide.BUY),
            sell_count=sum(1 for trade in completed if trade.side == TradeSide.SELL),
            failed_trades=len(trades) - len(completed),
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=(len(wins) / len(realized) * 100.0) if realized else 0.0,
            total_pnl=total_pnl,
            average_pnl=(total_pnl / len(realized)) if realized else 0.0,
            best_trade=max(realized, default=0.0),
            worst_trade=min(realized, default=0.0),
            volume_bought=sum(trade.sol_amount for trade in completed if trade.side == TradeSide.BUY),
            volume_sold=sum(trade.sol_amount for trade in completed if trade.side == TradeSide.SELL),
            open_positions=int(open_count),
        )

    # Blacklist ---------------------------------------------------------

    def get_blacklisted_tokens(self) -> frozenset[str]:
        with self._connect() as con:
            rows = con.execute("SELECT token_address FROM blacklisted_tokens").fetchall()
        return frozenset(row[0] for row in rows)

    def list_blacklist(self) -> List[Tuple[str, Optional[str], datetime]]:
        with self._connect() as con:
            rows = con.execute(
                "SELECT token_address, reason, created_at FROM blacklisted_tokens ORDER BY created_at DESC"
            ).fetchall()
        return [(row[0], row[1], datetime.fromisoformat(row[2])) for row in rows]

    def add_blacklisted_token(self, token_address: str, reason: Optional[str] = None) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO blacklisted_tokens (token_address, reason, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(token_address) DO UPDATE SET reason = excluded.reason
                """,
                (token_address, reason, utc_now().isoformat()),
            )
            con.commit()

    def remove_blacklisted_token(self, token_address: str) -> bool:
        with self._connect() as con:
            cur = con.execute("DELETE FROM blacklisted_tokens WHERE token_address = ?", (token_address,))
            con.commit()
            return cur.rowcount > 0


__all__ = ["Ledger", "SQLiteLedger"]
