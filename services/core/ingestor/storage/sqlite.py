import os
import sqlite3
from decimal import Decimal
from typing import Any, Iterable, Optional

import aiosqlite

from ..providers.base import TradeRecord


CREATE_SQL = """
CREATE TABLE IF NOT EXISTS trades (
  symbol TEXT NOT NULL,
  trade_id INTEGER NOT NULL,
  event_time INTEGER NOT NULL,
  price TEXT NOT NULL,
  quantity TEXT NOT NULL,
  side TEXT NOT NULL,
  buyer_order_id INTEGER,
  seller_order_id INTEGER,
  UNIQUE(symbol, trade_id)
);
"""

CREATE_INDEX_SQL = """
CREATE INDEX IF NOT EXISTS idx_trades_symbol_time ON trades (symbol, event_time);
"""

INSERT_SQL = """
INSERT INTO trades (
  symbol, trade_id, event_time, price, quantity, side, buyer_order_id, seller_order_id
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(symbol, trade_id) DO NOTHING;
"""


class StoreNotConnected(RuntimeError):
  """Raised when the store is used before connect() or after close()."""
  pass


def _to_row(t: TradeRecord) -> tuple:
  return (
    t.symbol,
    t.trade_id,
    t.event_time_ms,
    str(t.price),
    str(t.quantity),
    t.side.value,
    t.buyer_order_id,
    t.seller_order_id,
  )


class TradeStore:
  """
  Trade table on a single persistent aiosqlite connection.

  Writes are idempotent: a row whose (symbol, trade_id) already exists is
  skipped, so redelivered trades never produce duplicates.
  """

  def __init__(self, path: str):
    self.path = path
    self._db: aiosqlite.Connection | None = None

  @property
  def is_connected(self) -> bool:
    return self._db is not None

  async def connect(self) -> None:
    if self._db is not None:
      return
    directory = os.path.dirname(self.path)
    if directory:
      os.makedirs(directory, exist_ok=True)
    db = await aiosqlite.connect(self.path)
    try:
      await db.execute("PRAGMA journal_mode=WAL;")
      await db.execute(CREATE_SQL)
      await db.execute(CREATE_INDEX_SQL)
      await db.commit()
    except sqlite3.Error:
      await db.close()
      raise
    self._db = db

  async def close(self) -> None:
    if self._db is None:
      return
    db, self._db = self._db, None
    await db.close()

  def _conn(self) -> aiosqlite.Connection:
    if self._db is None:
      raise StoreNotConnected(f"trade store {self.path} is not connected")
    return self._db

  async def ping(self) -> bool:
    cur = await self._conn().execute("SELECT 1;")
    row = await cur.fetchone()
    return row is not None and row[0] == 1

  async def insert_trades(self, trades: Iterable[TradeRecord]) -> int:
    """Insert trades in one transaction. Returns the number of new rows."""
    rows = [_to_row(t) for t in trades]
    if not rows:
      return 0
    db = self._conn()
    before = db.total_changes
    try:
      await db.executemany(INSERT_SQL, rows)
      await db.commit()
    except Exception:
      await db.rollback()
      raise
    return db.total_changes - before

  async def fetch_trades(self, symbol: str, limit: int = 500) -> list[dict[str, Any]]:
    db = self._conn()
    cur = await db.execute(
      """
      SELECT symbol, trade_id, event_time, price, quantity, side, buyer_order_id, seller_order_id
      FROM trades
      WHERE symbol=?
      ORDER BY event_time DESC, trade_id DESC
      LIMIT ?;
      """,
      (symbol.upper(), limit),
    )
    rows = await cur.fetchall()
    cols = [c[0] for c in cur.description]
    out = []
    for r in reversed(rows):
      row = dict(zip(cols, r))
      row["price"] = Decimal(row["price"])
      row["quantity"] = Decimal(row["quantity"])
      out.append(row)
    return out

  async def count_trades(self, symbol: Optional[str] = None) -> int:
    db = self._conn()
    if symbol:
      cur = await db.execute("SELECT COUNT(*) FROM trades WHERE symbol=?", (symbol.upper(),))
    else:
      cur = await db.execute("SELECT COUNT(*) FROM trades")
    row = await cur.fetchone()
    return int(row[0])

  async def get_distinct_symbols(self) -> list[str]:
    """
    Get distinct symbols that have stored trades.

    Returns:
        List of unique symbols
    """
    cur = await self._conn().execute("SELECT DISTINCT symbol FROM trades ORDER BY symbol")
    rows = await cur.fetchall()
    return [row[0] for row in rows]
