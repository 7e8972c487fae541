from .errors import ChainMismatchError, ConfigError, IndexerError, RPCError
from .indexer import RunOptions, SaleIndexer, ScanResult, run_indexer_once
from .rebuild import rebuild_sale, rebuild_sales
from .storage import Sale, Storage

__version__ = "0.1.0"

__all__ = [
    "ChainMismatchError",
    "ConfigError",
    "IndexerError",
    "RPCError",
    "RunOptions",
    "Sale",
    "SaleIndexer",
    "ScanResult",
    "Storage",
    "rebuild_sale",
    "rebuild_sales",
    "run_indexer_once",
]
