from decimal import Decimal
from typing import Dict, Iterable

from .storage import BucketDelta, Sale, Storage, Transfer
from .utils import BUCKET_SIZE_SEC, bucket_start


def accumulate(
    deltas: Dict[int, BucketDelta], block_timestamp: int, amount: Decimal
) -> None:
    key = bucket_start(block_timestamp, BUCKET_SIZE_SEC)
    d = deltas.get(key)
    if d is None:
        deltas[key] = BucketDelta(amount=amount, tx_count=1)
    else:
        d.amount += amount
        d.tx_count += 1


def compute_buckets(transfers: Iterable[Transfer]) -> Dict[int, BucketDelta]:
    buckets: Dict[int, BucketDelta] = {}
    for t in transfers:
        accumulate(buckets, t.block_timestamp, t.amount)
    return buckets


class BucketAggregator:
    """5-minute buckets of summed amount and transfer count per sale.

    ``merge`` is the incremental path used by a scan; ``rebuild`` recomputes
    everything from the transfer ledger. Both must agree for the same set of
    transfers.
    """

    def __init__(self, storage: Storage):
        self.storage = storage

    def merge(self, sale_id: int, deltas: Dict[int, BucketDelta]) -> None:
        self.storage.merge_buckets(sale_id, deltas)

    def rebuild(self, sale: Sale) -> Dict[int, BucketDelta]:
        # read and replace under one write lock so a concurrent scan cannot
        # slip a transfer in between
        with self.storage.transaction():
            transfers = self.storage.list_transfers(sale.id)
            buckets = compute_buckets(transfers)
            total = sum((t.amount for t in transfers), Decimal(0))
            self.storage.replace_buckets(sale.id, buckets, total)
        return buckets
