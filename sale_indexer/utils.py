import re
import time
from decimal import Decimal, getcontext
from typing import Optional

# uint256 has up to 78 digits; leave room for sums
getcontext().prec = 100

TRANSFER_TOPIC0 = (
    "0xddf252ad1be2c89b69c2b068fc378daa"
    "952ba7f163c4a11628f55a4df523b3ef"
)
BUCKET_SIZE_SEC = 300

_ADDRESS_RE = re.compile(r"0x[0-9a-f]{40}")


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not _ADDRESS_RE.fullmatch(addr):
        raise ValueError(f"invalid address format: {addr}")
    return addr


def is_address(addr: Optional[str]) -> bool:
    try:
        normalize_address(addr)  # type: ignore[arg-type]
    except ValueError:
        return False
    return True


def topic_address(addr: str) -> str:
    return "0x" + ("0" * 24) + normalize_address(addr)[2:]


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    if len(topic) != 64 or int(topic[:24] or "0", 16) != 0:
        raise ValueError(f"topic is not an address: {topic}")
    return normalize_address("0x" + topic[-40:])


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def raw_to_decimal(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def format_decimal(v: Optional[Decimal]) -> str:
    """Plain-notation string without trailing zeros ("2.5", "100", "0")."""
    if v is None or v == 0:
        return "0"
    text = format(v, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def bucket_start(ts: int, size_sec: int = BUCKET_SIZE_SEC) -> int:
    return (int(ts) // size_sec) * size_sec


def now_ts() -> int:
    return int(time.time())
