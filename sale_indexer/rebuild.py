import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .aggregator import BucketAggregator
from .errors import ConfigError
from .storage import Sale, Storage
from .utils import format_decimal

logger = logging.getLogger(__name__)


@dataclass
class RebuildResult:
    sale_slug: str
    bucket_count: int
    transfer_count: int
    total_invested: str
    duration_sec: int


def rebuild_sale(storage: Storage, sale: Sale) -> RebuildResult:
    started = time.monotonic()
    buckets = BucketAggregator(storage).rebuild(sale)
    total = sum((b.amount for b in buckets.values()), Decimal(0))
    result = RebuildResult(
        sale_slug=sale.slug,
        bucket_count=len(buckets),
        transfer_count=sum(b.tx_count for b in buckets.values()),
        total_invested=format_decimal(total),
        duration_sec=int(round(time.monotonic() - started)),
    )
    logger.info(
        "[%s] rebuilt %d buckets, totalInvested: %s (%ss)",
        result.sale_slug,
        result.bucket_count,
        result.total_invested,
        result.duration_sec,
    )
    return result


def rebuild_sales(
    storage: Storage, slug: Optional[str] = None, run_all: bool = False
) -> List[RebuildResult]:
    if run_all:
        sales = storage.list_sales()
    elif slug:
        sale = storage.get_sale_by_slug(slug)
        sales = [sale] if sale else []
    else:
        raise ConfigError("a sale slug is required unless run_all is set")
    if not sales:
        raise ConfigError(f"Sale not found for slug: {slug}" if slug else "no sales are provisioned")
    return [rebuild_sale(storage, sale) for sale in sales]
