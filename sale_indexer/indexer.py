import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from .aggregator import BucketAggregator, accumulate
from .config import (
    DEFAULT_CONFIRMATIONS,
    DEFAULT_LOG_QUERY_RANGE,
    DEFAULT_REORG_BUFFER_BLOCKS,
)
from .errors import ChainMismatchError, ConfigError
from .rpc import EventLogReader, RPCClient
from .storage import BucketDelta, Sale, Storage, Transfer
from .utils import (
    TRANSFER_TOPIC0,
    decode_topic_address,
    format_decimal,
    is_address,
    parse_hex_int,
    raw_to_decimal,
    topic_address,
)

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    sale_slug: str
    from_block: int
    to_block: int
    blocks_scanned: int
    new_transfers: int
    total_added: str
    duration_sec: int
    skipped: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "saleSlug": self.sale_slug,
            "fromBlock": self.from_block,
            "toBlock": self.to_block,
            "blocksScanned": self.blocks_scanned,
            "newTransfers": self.new_transfers,
            "totalAdded": self.total_added,
            "durationSec": self.duration_sec,
        }
        if self.skipped is not None:
            out["skipped"] = self.skipped
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class RunOptions:
    slug: Optional[str] = None
    run_all: bool = False
    rpc_url: Optional[str] = None
    confirmations: int = DEFAULT_CONFIRMATIONS
    reorg_buffer_blocks: int = DEFAULT_REORG_BUFFER_BLOCKS
    log_query_range: int = DEFAULT_LOG_QUERY_RANGE
    rpc_timeout_sec: int = 12
    max_rpc_retries: int = 1
    sqlite_path: str = "./data/sale_indexer.db"


@dataclass
class TransferLog:
    tx_hash: str
    log_index: int
    block_number: int
    from_addr: str
    to_addr: str
    amount_raw: int


def decode_transfer_log(lg: Dict[str, Any]) -> Optional[TransferLog]:
    if lg.get("removed"):
        return None
    topics = lg.get("topics") or []
    if len(topics) != 3 or str(topics[0]).lower() != TRANSFER_TOPIC0:
        return None
    data = lg.get("data") or "0x"
    try:
        if len(data) != 66:
            return None
        tx_hash = str(lg["transactionHash"]).lower()
        if not tx_hash.startswith("0x"):
            return None
        return TransferLog(
            tx_hash=tx_hash,
            log_index=parse_hex_int(lg["logIndex"]),
            block_number=parse_hex_int(lg["blockNumber"]),
            from_addr=decode_topic_address(topics[1]),
            to_addr=decode_topic_address(topics[2]),
            amount_raw=parse_hex_int(data),
        )
    except (KeyError, TypeError, ValueError):
        return None


def in_sale_window(sale: Sale, block_timestamp: int) -> bool:
    if sale.start_ts > 0 and block_timestamp < sale.start_ts:
        return False
    if sale.end_ts > 0 and block_timestamp > sale.end_ts:
        return False
    return True


class BlockTimestampCache:
    def __init__(self, reader: EventLogReader):
        self.reader = reader
        self._cache: Dict[int, int] = {}

    async def get(self, block_number: int) -> int:
        cached = self._cache.get(block_number)
        if cached is not None:
            return cached
        ts = await self.reader.block_timestamp(block_number)
        self._cache[block_number] = ts
        return ts


class SaleIndexer:
    def __init__(
        self,
        storage: Storage,
        reader: EventLogReader,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        reorg_buffer_blocks: int = DEFAULT_REORG_BUFFER_BLOCKS,
        log_query_range: int = DEFAULT_LOG_QUERY_RANGE,
    ):
        self.storage = storage
        self.reader = reader
        self.aggregator = BucketAggregator(storage)
        self.confirmations = max(0, confirmations)
        self.reorg_buffer_blocks = max(0, reorg_buffer_blocks)
        self.log_query_range = max(1, log_query_range)

    @staticmethod
    def validate_sale(sale: Sale) -> Optional[str]:
        if not is_address(sale.payment_token):
            return f"Invalid payment token address: {sale.payment_token}"
        if not is_address(sale.recipient):
            return f"Invalid recipient address: {sale.recipient}"
        return None

    async def index_sale(self, sale: Sale) -> ScanResult:
        """Run one bounded scan for ``sale`` and commit what it found.

        RPC failures propagate; every RPC call happens before the first
        store write, so a failed scan leaves the store untouched.
        """
        started = time.monotonic()
        checkpoint = self.storage.get_or_create_checkpoint(sale.id)

        if sale.chain_id > 0:
            actual_chain_id = await self.reader.chain_id()
            if actual_chain_id != sale.chain_id:
                raise ChainMismatchError(sale.chain_id, actual_chain_id)

        latest_block = await self.reader.latest_height()
        safe_block = max(0, latest_block - self.confirmations)
        last_processed = checkpoint.last_processed_block

        start_block_guess = 0
        if last_processed == 0:
            start_block_guess = await self.reader.find_block_at_or_before_timestamp(
                sale.start_ts, safe_block
            )
        from_block = max(last_processed - self.reorg_buffer_blocks, start_block_guess, 0)

        skip_reason = self.validate_sale(sale)
        if skip_reason:
            logger.warning("[%s] skipped: %s", sale.slug, skip_reason)
            return ScanResult(
                sale_slug=sale.slug,
                from_block=from_block,
                to_block=safe_block,
                blocks_scanned=0,
                new_transfers=0,
                total_added="0",
                duration_sec=int(round(time.monotonic() - started)),
                skipped=skip_reason,
            )

        candidates = await self._collect_transfers(sale, from_block, safe_block)
        new_transfers, total_added = self._commit(sale, candidates, safe_block)

        result = ScanResult(
            sale_slug=sale.slug,
            from_block=from_block,
            to_block=safe_block,
            blocks_scanned=max(0, safe_block - from_block + 1),
            new_transfers=new_transfers,
            total_added=format_decimal(total_added),
            duration_sec=int(round(time.monotonic() - started)),
        )
        logger.info(
            "[%s] scanned %d blocks (%d -> %d), new transfers: %d, total added: %s, duration: %ss",
            result.sale_slug,
            result.blocks_scanned,
            result.from_block,
            result.to_block,
            result.new_transfers,
            result.total_added,
            result.duration_sec,
        )
        return result

    async def _collect_transfers(
        self, sale: Sale, from_block: int, to_block: int
    ) -> List[Transfer]:
        token = sale.payment_token.strip().lower()
        topics = [TRANSFER_TOPIC0, None, topic_address(sale.recipient)]
        timestamps = BlockTimestampCache(self.reader)
        seen: Set[Tuple[str, int, int]] = set()
        candidates: List[Transfer] = []

        async for lg in self.reader.logs_in_range(
            token, topics, from_block, to_block, self.log_query_range
        ):
            decoded = decode_transfer_log(lg)
            if decoded is None:
                continue
            amount = raw_to_decimal(decoded.amount_raw, sale.payment_token_decimals)
            block_timestamp = await timestamps.get(decoded.block_number)
            if not in_sale_window(sale, block_timestamp):
                continue

            key = (decoded.tx_hash, decoded.log_index, sale.id)
            if key in seen:
                continue
            seen.add(key)

            candidates.append(
                Transfer(
                    sale_id=sale.id,
                    tx_hash=decoded.tx_hash,
                    log_index=decoded.log_index,
                    block_number=decoded.block_number,
                    block_timestamp=block_timestamp,
                    from_addr=decoded.from_addr,
                    to_addr=decoded.to_addr,
                    amount_raw=str(decoded.amount_raw),
                    amount=amount,
                )
            )
        return candidates

    def _commit(
        self, sale: Sale, candidates: List[Transfer], safe_block: int
    ) -> Tuple[int, Decimal]:
        new_transfers = 0
        total_added = Decimal(0)
        deltas: Dict[int, BucketDelta] = {}

        with self.storage.transaction():
            for t in candidates:
                if self.storage.transfer_exists(sale.id, t.tx_hash, t.log_index):
                    continue
                if not self.storage.insert_transfer(t):
                    # lost a race with a concurrent scan of the same sale
                    continue
                new_transfers += 1
                total_added += t.amount
                accumulate(deltas, t.block_timestamp, t.amount)
            self.aggregator.merge(sale.id, deltas)
            # checkpoint after the buckets, committed with them
            self.storage.advance_checkpoint(sale.id, safe_block, total_added)
        return new_transfers, total_added


def select_sales(storage: Storage, options: RunOptions) -> List[Sale]:
    if options.run_all:
        sales = storage.list_sales()
        if not sales:
            raise ConfigError("no sales are provisioned")
        return sales
    if not options.slug:
        raise ConfigError("a sale slug is required unless run_all is set")
    sale = storage.get_sale_by_slug(options.slug)
    if sale is None:
        raise ConfigError(f"Sale not found for slug: {options.slug}")
    return [sale]


async def _index_sales(
    indexer: SaleIndexer, sales: List[Sale], isolate_failures: bool
) -> List[ScanResult]:
    if not isolate_failures:
        return [await indexer.index_sale(sale) for sale in sales]
    outcomes = await asyncio.gather(
        *(indexer.index_sale(sale) for sale in sales), return_exceptions=True
    )
    results: List[ScanResult] = []
    for sale, outcome in zip(sales, outcomes):
        if isinstance(outcome, ScanResult):
            results.append(outcome)
            continue
        if not isinstance(outcome, Exception):
            raise outcome
        logger.error(
            "[%s] scan failed: %s",
            sale.slug,
            outcome,
            exc_info=(type(outcome), outcome, outcome.__traceback__),
        )
        results.append(
            ScanResult(
                sale_slug=sale.slug,
                from_block=0,
                to_block=0,
                blocks_scanned=0,
                new_transfers=0,
                total_added="0",
                duration_sec=0,
                error=str(outcome) or type(outcome).__name__,
            )
        )
    return results


async def run_indexer_once(
    options: RunOptions,
    storage: Optional[Storage] = None,
    rpc: Optional[RPCClient] = None,
) -> List[ScanResult]:
    """Scan one sale (``options.slug``) or every sale (``options.run_all``).

    With ``run_all`` a sale whose scan raises gets a result with ``error``
    set and the other sales are still scanned. A single-sale scan raises.
    """
    if not options.rpc_url:
        raise ConfigError("RPC_URL is required to run the indexer.")

    own_storage = storage is None
    store = storage if storage is not None else Storage(options.sqlite_path)
    try:
        sales = select_sales(store, options)
        async with contextlib.AsyncExitStack() as stack:
            if rpc is None:
                rpc = await stack.enter_async_context(
                    RPCClient(
                        options.rpc_url,
                        max_retries=options.max_rpc_retries,
                        timeout_sec=options.rpc_timeout_sec,
                    )
                )
            indexer = SaleIndexer(
                store,
                EventLogReader(rpc),
                confirmations=options.confirmations,
                reorg_buffer_blocks=options.reorg_buffer_blocks,
                log_query_range=options.log_query_range,
            )
            return await _index_sales(indexer, sales, isolate_failures=options.run_all)
    finally:
        if own_storage:
            store.close()
