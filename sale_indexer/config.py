import json
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .errors import ConfigError

DEFAULT_CONFIRMATIONS = 20
DEFAULT_REORG_BUFFER_BLOCKS = 200
DEFAULT_LOG_QUERY_RANGE = 2000

ENV_OVERRIDES = (
    "RPC_URL",
    "SQLITE_PATH",
    "SALE_SLUG",
    "CONFIRMATIONS",
    "REORG_BUFFER_BLOCKS",
    "LOG_QUERY_RANGE",
    "RPC_TIMEOUT_SEC",
    "MAX_RPC_RETRIES",
    "INTERVAL_SEC",
    "LOG_LEVEL",
    "API_HOST",
    "API_PORT",
    "INDEXER_SECRET",
)


@dataclass
class SaleConfig:
    slug: str
    chain_id: int
    payment_token: str
    payment_token_decimals: int
    recipient: str
    start_ts: int = 0
    end_ts: int = 0
    target_raise: Optional[Decimal] = None
    cap_removed_ts: Optional[int] = None


@dataclass
class AppConfig:
    rpc_url: Optional[str]
    sqlite_path: str
    sale_slug: Optional[str]
    confirmations: int = DEFAULT_CONFIRMATIONS
    reorg_buffer_blocks: int = DEFAULT_REORG_BUFFER_BLOCKS
    log_query_range: int = DEFAULT_LOG_QUERY_RANGE
    rpc_timeout_sec: int = 12
    max_rpc_retries: int = 1
    interval_sec: int = 300
    log_level: str = "info"
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    indexer_secret: Optional[str] = None
    sales: List[SaleConfig] = field(default_factory=list)


def _int(raw: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    value = raw.get(key, default)
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got: {value!r}") from None
    if parsed < minimum:
        raise ConfigError(f"{key} must be >= {minimum}")
    return parsed


def _optional_str(raw: Dict[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_sale_config(item: Dict[str, Any]) -> SaleConfig:
    slug = str(item.get("slug", "")).strip()
    if not slug:
        raise ConfigError("sale slug cannot be empty")
    target_raw = item.get("target_raise")
    try:
        target_raise = Decimal(str(target_raw)) if target_raw not in (None, "") else None
    except InvalidOperation:
        raise ConfigError(f"sale {slug} target_raise is invalid: {target_raw}") from None
    cap_removed_raw = item.get("cap_removed_ts")
    try:
        return SaleConfig(
            slug=slug,
            chain_id=int(item.get("chain_id", 8453)),
            payment_token=str(item["payment_token"]).strip().lower(),
            payment_token_decimals=int(item.get("payment_token_decimals", 6)),
            recipient=str(item["recipient"]).strip().lower(),
            start_ts=int(item.get("start_ts", 0)),
            end_ts=int(item.get("end_ts", 0)),
            target_raise=target_raise,
            cap_removed_ts=int(cap_removed_raw) if cap_removed_raw not in (None, "") else None,
        )
    except KeyError as e:
        raise ConfigError(f"sale {slug} is missing {e.args[0]}") from None
    except (TypeError, ValueError) as e:
        raise ConfigError(f"sale {slug} is invalid: {e}") from None


def load_config(path: Optional[str] = None, use_env: bool = True) -> AppConfig:
    raw: Dict[str, Any] = {}
    if path and Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"config file {path} is not valid JSON: {e}") from None
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")

    if use_env:
        load_dotenv()
        for key in ENV_OVERRIDES:
            value = os.getenv(key)
            if value is not None and value.strip():
                raw[key] = value.strip()

    sales = [parse_sale_config(x) for x in raw.get("SALES", [])]
    slugs = [s.slug for s in sales]
    if len(slugs) != len(set(slugs)):
        raise ConfigError("SALES contains duplicate slugs")

    return AppConfig(
        rpc_url=_optional_str(raw, "RPC_URL"),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/sale_indexer.db")),
        sale_slug=_optional_str(raw, "SALE_SLUG"),
        confirmations=_int(raw, "CONFIRMATIONS", DEFAULT_CONFIRMATIONS),
        reorg_buffer_blocks=_int(raw, "REORG_BUFFER_BLOCKS", DEFAULT_REORG_BUFFER_BLOCKS),
        log_query_range=_int(raw, "LOG_QUERY_RANGE", DEFAULT_LOG_QUERY_RANGE, minimum=1),
        rpc_timeout_sec=_int(raw, "RPC_TIMEOUT_SEC", 12, minimum=1),
        max_rpc_retries=_int(raw, "MAX_RPC_RETRIES", 1, minimum=1),
        interval_sec=_int(raw, "INTERVAL_SEC", 300, minimum=1),
        log_level=str(raw.get("LOG_LEVEL", "info")).lower(),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=_int(raw, "API_PORT", 8080, minimum=1),
        indexer_secret=_optional_str(raw, "INDEXER_SECRET"),
        sales=sales,
    )
