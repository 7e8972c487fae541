import contextlib
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from .config import SaleConfig
from .utils import format_decimal, now_ts


@dataclass
class Sale:
    id: int
    slug: str
    chain_id: int
    payment_token: str
    payment_token_decimals: int
    recipient: str
    start_ts: int
    end_ts: int
    target_raise: Optional[Decimal] = None
    cap_removed_ts: Optional[int] = None


@dataclass
class Checkpoint:
    sale_id: int
    last_processed_block: int
    total_invested: Decimal
    last_updated_at: int


@dataclass
class Transfer:
    sale_id: int
    tx_hash: str
    log_index: int
    block_number: int
    block_timestamp: int
    from_addr: str
    to_addr: str
    amount_raw: str
    amount: Decimal


@dataclass
class BucketDelta:
    amount: Decimal
    tx_count: int


@dataclass
class Bucket:
    sale_id: int
    bucket_start_ts: int
    amount: Decimal
    tx_count: int


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._tx_depth = 0
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;
            PRAGMA foreign_keys=ON;

            CREATE TABLE IF NOT EXISTS sales (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                slug TEXT NOT NULL UNIQUE,
                chain_id INTEGER NOT NULL,
                payment_token TEXT NOT NULL,
                payment_token_decimals INTEGER NOT NULL,
                recipient TEXT NOT NULL,
                start_ts INTEGER NOT NULL,
                end_ts INTEGER NOT NULL,
                target_raise TEXT,
                cap_removed_ts INTEGER,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sale_state (
                sale_id INTEGER PRIMARY KEY REFERENCES sales(id) ON DELETE CASCADE,
                last_processed_block INTEGER NOT NULL,
                total_invested TEXT NOT NULL,
                last_updated_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS transfers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sale_id INTEGER NOT NULL REFERENCES sales(id) ON DELETE CASCADE,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                block_number INTEGER NOT NULL,
                block_timestamp INTEGER NOT NULL,
                from_addr TEXT NOT NULL,
                to_addr TEXT NOT NULL,
                amount_raw TEXT NOT NULL,
                amount TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                UNIQUE(tx_hash, log_index, sale_id)
            );

            CREATE INDEX IF NOT EXISTS idx_transfers_sale_time
                ON transfers(sale_id, block_timestamp);
            CREATE INDEX IF NOT EXISTS idx_transfers_sale_from
                ON transfers(sale_id, from_addr);

            CREATE TABLE IF NOT EXISTS buckets (
                sale_id INTEGER NOT NULL REFERENCES sales(id) ON DELETE CASCADE,
                bucket_start_ts INTEGER NOT NULL,
                amount TEXT NOT NULL,
                tx_count INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                PRIMARY KEY(sale_id, bucket_start_ts)
            );
            """
        )

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """BEGIN IMMEDIATE ... COMMIT; nested calls join the outer transaction."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self.conn.cursor()
            finally:
                self._tx_depth -= 1
            return

        cur = self.conn.cursor()
        cur.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield cur
            self.conn.commit()
        except BaseException:
            self.conn.rollback()
            raise
        finally:
            self._tx_depth = 0

    # sales

    def _row_to_sale(self, row: sqlite3.Row) -> Sale:
        return Sale(
            id=int(row["id"]),
            slug=row["slug"],
            chain_id=int(row["chain_id"]),
            payment_token=row["payment_token"],
            payment_token_decimals=int(row["payment_token_decimals"]),
            recipient=row["recipient"],
            start_ts=int(row["start_ts"]),
            end_ts=int(row["end_ts"]),
            target_raise=Decimal(row["target_raise"]) if row["target_raise"] is not None else None,
            cap_removed_ts=int(row["cap_removed_ts"]) if row["cap_removed_ts"] is not None else None,
        )

    def upsert_sale(self, sale: SaleConfig) -> Sale:
        now = now_ts()
        self.conn.execute(
            """
            INSERT INTO sales(
                slug, chain_id, payment_token, payment_token_decimals, recipient,
                start_ts, end_ts, target_raise, cap_removed_ts, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(slug) DO UPDATE SET
                chain_id = excluded.chain_id,
                payment_token = excluded.payment_token,
                payment_token_decimals = excluded.payment_token_decimals,
                recipient = excluded.recipient,
                start_ts = excluded.start_ts,
                end_ts = excluded.end_ts,
                target_raise = excluded.target_raise,
                cap_removed_ts = excluded.cap_removed_ts,
                updated_at = excluded.updated_at
            """,
            (
                sale.slug,
                sale.chain_id,
                sale.payment_token.strip().lower(),
                sale.payment_token_decimals,
                sale.recipient.strip().lower(),
                sale.start_ts,
                sale.end_ts,
                format_decimal(sale.target_raise) if sale.target_raise is not None else None,
                sale.cap_removed_ts,
                now,
                now,
            ),
        )
        result = self.get_sale_by_slug(sale.slug)
        assert result is not None
        self.get_or_create_checkpoint(result.id)
        return result

    def get_sale_by_slug(self, slug: str) -> Optional[Sale]:
        row = self.conn.execute("SELECT * FROM sales WHERE slug = ?", (slug,)).fetchone()
        return self._row_to_sale(row) if row else None

    def list_sales(self) -> List[Sale]:
        rows = self.conn.execute("SELECT * FROM sales ORDER BY slug ASC").fetchall()
        return [self._row_to_sale(r) for r in rows]

    # checkpoints

    def _row_to_checkpoint(self, row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            sale_id=int(row["sale_id"]),
            last_processed_block=int(row["last_processed_block"]),
            total_invested=Decimal(row["total_invested"]),
            last_updated_at=int(row["last_updated_at"]),
        )

    def get_checkpoint(self, sale_id: int) -> Optional[Checkpoint]:
        row = self.conn.execute(
            "SELECT * FROM sale_state WHERE sale_id = ?", (sale_id,)
        ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def get_or_create_checkpoint(self, sale_id: int) -> Checkpoint:
        self.conn.execute(
            """
            INSERT OR IGNORE INTO sale_state(sale_id, last_processed_block, total_invested, last_updated_at)
            VALUES (?, 0, '0', ?)
            """,
            (sale_id, now_ts()),
        )
        checkpoint = self.get_checkpoint(sale_id)
        assert checkpoint is not None
        return checkpoint

    def advance_checkpoint(self, sale_id: int, block_number: int, total_added: Decimal) -> Checkpoint:
        with self.transaction() as cur:
            row = cur.execute(
                "SELECT * FROM sale_state WHERE sale_id = ?", (sale_id,)
            ).fetchone()
            old_block = int(row["last_processed_block"]) if row else 0
            old_total = Decimal(row["total_invested"]) if row else Decimal(0)
            cur.execute(
                """
                INSERT INTO sale_state(sale_id, last_processed_block, total_invested, last_updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(sale_id) DO UPDATE SET
                    last_processed_block = excluded.last_processed_block,
                    total_invested = excluded.total_invested,
                    last_updated_at = excluded.last_updated_at
                """,
                (
                    sale_id,
                    max(old_block, block_number),
                    format_decimal(old_total + total_added),
                    now_ts(),
                ),
            )
        checkpoint = self.get_checkpoint(sale_id)
        assert checkpoint is not None
        return checkpoint

    def set_total_invested(self, sale_id: int, total: Decimal) -> None:
        """Overwrite the running total; the block cursor is left alone."""
        self.conn.execute(
            """
            INSERT INTO sale_state(sale_id, last_processed_block, total_invested, last_updated_at)
            VALUES (?, 0, ?, ?)
            ON CONFLICT(sale_id) DO UPDATE SET
                total_invested = excluded.total_invested,
                last_updated_at = excluded.last_updated_at
            """,
            (sale_id, format_decimal(total), now_ts()),
        )

    # transfers

    def transfer_exists(self, sale_id: int, tx_hash: str, log_index: int) -> bool:
        row = self.conn.execute(
            """
            SELECT 1 FROM transfers
            WHERE tx_hash = ? AND log_index = ? AND sale_id = ?
            """,
            (tx_hash.lower(), log_index, sale_id),
        ).fetchone()
        return row is not None

    def insert_transfer(self, t: Transfer) -> bool:
        """Returns False when the natural key is already recorded."""
        try:
            self.conn.execute(
                """
                INSERT INTO transfers(
                    sale_id, tx_hash, log_index, block_number, block_timestamp,
                    from_addr, to_addr, amount_raw, amount, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    t.sale_id,
                    t.tx_hash.lower(),
                    t.log_index,
                    t.block_number,
                    t.block_timestamp,
                    t.from_addr.lower(),
                    t.to_addr.lower(),
                    t.amount_raw,
                    format_decimal(t.amount),
                    now_ts(),
                ),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    def list_transfers(self, sale_id: int) -> List[Transfer]:
        rows = self.conn.execute(
            """
            SELECT * FROM transfers
            WHERE sale_id = ?
            ORDER BY block_number ASC, log_index ASC
            """,
            (sale_id,),
        ).fetchall()
        return [
            Transfer(
                sale_id=int(r["sale_id"]),
                tx_hash=r["tx_hash"],
                log_index=int(r["log_index"]),
                block_number=int(r["block_number"]),
                block_timestamp=int(r["block_timestamp"]),
                from_addr=r["from_addr"],
                to_addr=r["to_addr"],
                amount_raw=r["amount_raw"],
                amount=Decimal(r["amount"]),
            )
            for r in rows
        ]

    def count_transfers(self, sale_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(1) AS c FROM transfers WHERE sale_id = ?", (sale_id,)
        ).fetchone()
        return int(row["c"]) if row else 0

    def sum_transfers(self, sale_id: int) -> Decimal:
        rows = self.conn.execute(
            "SELECT amount FROM transfers WHERE sale_id = ?", (sale_id,)
        ).fetchall()
        return sum((Decimal(r["amount"]) for r in rows), Decimal(0))

    def sender_first_seen(self, sale_id: int) -> Dict[str, int]:
        rows = self.conn.execute(
            """
            SELECT from_addr, MIN(block_timestamp) AS first_ts
            FROM transfers
            WHERE sale_id = ?
            GROUP BY from_addr
            """,
            (sale_id,),
        ).fetchall()
        return {r["from_addr"]: int(r["first_ts"]) for r in rows}

    def query_leaderboard(self, sale_id: int, limit_n: int, offset: int = 0) -> List[Dict[str, str]]:
        rows = self.conn.execute(
            "SELECT from_addr, amount FROM transfers WHERE sale_id = ?", (sale_id,)
        ).fetchall()
        totals: Dict[str, Decimal] = defaultdict(Decimal)
        counts: Dict[str, int] = defaultdict(int)
        for r in rows:
            totals[r["from_addr"]] += Decimal(r["amount"])
            counts[r["from_addr"]] += 1
        ranked = sorted(totals.items(), key=lambda x: (-x[1], x[0]))
        return [
            {"address": addr, "totalAmount": format_decimal(total), "txCount": counts[addr]}
            for addr, total in ranked[offset : offset + limit_n]
        ]

    # buckets

    def merge_buckets(self, sale_id: int, deltas: Dict[int, BucketDelta]) -> None:
        if not deltas:
            return
        now = now_ts()
        with self.transaction() as cur:
            for bucket_start_ts, d in sorted(deltas.items()):
                row = cur.execute(
                    """
                    SELECT amount, tx_count FROM buckets
                    WHERE sale_id = ? AND bucket_start_ts = ?
                    """,
                    (sale_id, bucket_start_ts),
                ).fetchone()
                old_amount = Decimal(row["amount"]) if row else Decimal(0)
                old_count = int(row["tx_count"]) if row else 0
                cur.execute(
                    """
                    INSERT INTO buckets(sale_id, bucket_start_ts, amount, tx_count, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(sale_id, bucket_start_ts) DO UPDATE SET
                        amount = excluded.amount,
                        tx_count = excluded.tx_count,
                        updated_at = excluded.updated_at
                    """,
                    (
                        sale_id,
                        bucket_start_ts,
                        format_decimal(old_amount + d.amount),
                        old_count + d.tx_count,
                        now,
                    ),
                )

    def replace_buckets(
        self, sale_id: int, buckets: Dict[int, BucketDelta], total_invested: Decimal
    ) -> None:
        now = now_ts()
        with self.transaction() as cur:
            cur.execute("DELETE FROM buckets WHERE sale_id = ?", (sale_id,))
            cur.executemany(
                """
                INSERT INTO buckets(sale_id, bucket_start_ts, amount, tx_count, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (sale_id, ts, format_decimal(d.amount), d.tx_count, now)
                    for ts, d in sorted(buckets.items())
                ],
            )
            self.set_total_invested(sale_id, total_invested)

    def list_buckets(
        self, sale_id: int, from_ts: Optional[int] = None, to_ts: Optional[int] = None
    ) -> List[Bucket]:
        sql = "SELECT * FROM buckets WHERE sale_id = ?"
        params: List[int] = [sale_id]
        if from_ts is not None:
            sql += " AND bucket_start_ts >= ?"
            params.append(from_ts)
        if to_ts is not None:
            sql += " AND bucket_start_ts <= ?"
            params.append(to_ts)
        sql += " ORDER BY bucket_start_ts ASC"
        rows = self.conn.execute(sql, params).fetchall()
        return [
            Bucket(
                sale_id=int(r["sale_id"]),
                bucket_start_ts=int(r["bucket_start_ts"]),
                amount=Decimal(r["amount"]),
                tx_count=int(r["tx_count"]),
            )
            for r in rows
        ]

    def sum_buckets_since(self, sale_id: int, since_ts: int) -> Decimal:
        return sum(
            (b.amount for b in self.list_buckets(sale_id, from_ts=since_ts)), Decimal(0)
        )
