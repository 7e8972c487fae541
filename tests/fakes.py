from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from sale_indexer.errors import RPCError
from sale_indexer.rpc import RPCClient
from sale_indexer.storage import Transfer
from sale_indexer.utils import TRANSFER_TOPIC0, topic_address

TOKEN = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
RECIPIENT = "0x1111111111111111111111111111111111111111"
BUYER_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BUYER_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


def tx(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeRPC(RPCClient):
    """In-memory chain answering the JSON-RPC methods the indexer uses.

    Block ``n`` exists for ``0 <= n <= head`` and has timestamp
    ``genesis_ts + n * block_time`` unless overridden in ``timestamps``.
    """

    def __init__(self, head: int = 400, genesis_ts: int = 900, block_time: int = 2, chain_id: int = 8453):
        super().__init__("http://fake-rpc")
        self.head = head
        self.genesis_ts = genesis_ts
        self.block_time = block_time
        self.chain_id = chain_id
        self.timestamps: Dict[int, int] = {}
        self.logs: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, List[Any]]] = []
        self.fail_methods: Set[str] = set()
        self.fail_after: Dict[str, int] = {}

    def timestamp_of(self, block_number: int) -> int:
        if block_number in self.timestamps:
            return self.timestamps[block_number]
        return self.genesis_ts + block_number * self.block_time

    def block_at(self, ts: int) -> int:
        return (ts - self.genesis_ts) // self.block_time

    def add_transfer(
        self,
        block_number: int,
        amount_raw: int,
        tx_hash: Optional[str] = None,
        log_index: int = 0,
        sender: str = BUYER_A,
        recipient: str = RECIPIENT,
        token: str = TOKEN,
    ) -> Dict[str, Any]:
        lg = {
            "address": token,
            "topics": [TRANSFER_TOPIC0, topic_address(sender), topic_address(recipient)],
            "data": "0x" + format(amount_raw, "064x"),
            "blockNumber": hex(block_number),
            "transactionHash": tx_hash or tx(len(self.logs) + 1),
            "logIndex": hex(log_index),
            "removed": False,
        }
        self.logs.append(lg)
        return lg

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    def _matches(self, lg: Dict[str, Any], f: Dict[str, Any]) -> bool:
        block_number = int(lg["blockNumber"], 16)
        if not int(f["fromBlock"], 16) <= block_number <= int(f["toBlock"], 16):
            return False
        if f.get("address") and lg["address"].lower() != f["address"].lower():
            return False
        for i, want in enumerate(f.get("topics") or []):
            if want is None:
                continue
            topics = lg["topics"]
            if i >= len(topics):
                return False
            options = want if isinstance(want, list) else [want]
            if topics[i].lower() not in [x.lower() for x in options]:
                return False
        return True

    async def call(self, method: str, params: List[Any]) -> Any:
        self.calls.append((method, params))
        if method in self.fail_methods:
            raise RPCError(f"simulated failure for {method}")
        if method in self.fail_after:
            if self.count(method) > self.fail_after[method]:
                raise RPCError(f"simulated failure for {method}")
        if method == "eth_chainId":
            return hex(self.chain_id)
        if method == "eth_blockNumber":
            return hex(self.head)
        if method == "eth_getBlockByNumber":
            n = int(params[0], 16)
            if n < 0 or n > self.head:
                return None
            return {"number": hex(n), "timestamp": hex(self.timestamp_of(n))}
        if method == "eth_getLogs":
            f = params[0]
            found = [lg for lg in self.logs if self._matches(lg, f)]
            return sorted(
                found, key=lambda x: (int(x["blockNumber"], 16), int(x["logIndex"], 16))
            )
        raise RPCError(f"unsupported method {method}")


def record(storage, sale, n: int, ts: int, amount: str, sender: str = BUYER_A) -> None:
    """Write a transfer row directly, bypassing the indexer."""
    storage.insert_transfer(
        Transfer(
            sale_id=sale.id,
            tx_hash=tx(n),
            log_index=0,
            block_number=n,
            block_timestamp=ts,
            from_addr=sender,
            to_addr=RECIPIENT,
            amount_raw=str(int(Decimal(amount) * 10**6)),
            amount=Decimal(amount),
        )
    )
