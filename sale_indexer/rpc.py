import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from .errors import RPCError
from .utils import parse_hex_int

logger = logging.getLogger(__name__)

BINARY_SEARCH_MAX_PROBES = 30


class RPCClient:
    def __init__(self, url: str, max_retries: int = 1, timeout_sec: int = 12):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _post(self, payload: Dict[str, Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        async with self._session.post(self.url, json=payload) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError as e:
                raise RPCError(f"malformed RPC response (HTTP {resp.status}): {e}") from e
            if resp.status >= 400 and not (isinstance(data, dict) and "error" in data):
                raise RPCError(f"RPC HTTP {resp.status} for {payload['method']}")
        if not isinstance(data, dict):
            raise RPCError(f"malformed RPC response for {payload['method']}: {data!r}")
        if "error" in data:
            raise RPCError(f"RPC error for {payload['method']}: {data['error']}")
        if "result" not in data:
            raise RPCError(f"RPC response for {payload['method']} has no result")
        return data["result"]

    async def call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._post(payload)
            except (aiohttp.ClientError, asyncio.TimeoutError, RPCError) as e:
                if attempt >= self.max_retries:
                    if isinstance(e, RPCError):
                        raise
                    raise RPCError(f"RPC transport failure for {method}: {e!r}") from e
                logger.debug("retrying %s after %r (attempt %d)", method, e, attempt)
                await asyncio.sleep(backoff)
                backoff *= 2

    async def get_block_by_number(self, block_number: int) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getBlockByNumber", [hex(block_number), False])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return _hex_result(result, "eth_blockNumber")

    async def get_chain_id(self) -> int:
        result = await self.call("eth_chainId", [])
        return _hex_result(result, "eth_chainId")

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        if result is None:
            return []
        if not isinstance(result, list):
            raise RPCError(f"eth_getLogs returned {type(result).__name__}, expected list")
        return result


def _hex_result(result: Any, method: str) -> int:
    try:
        return parse_hex_int(result)
    except (TypeError, ValueError):
        raise RPCError(f"{method} returned malformed value: {result!r}") from None


class EventLogReader:
    """Stateless view of the chain used by the indexer."""

    def __init__(self, rpc: RPCClient):
        self.rpc = rpc

    async def latest_height(self) -> int:
        return await self.rpc.get_latest_block_number()

    async def chain_id(self) -> int:
        return await self.rpc.get_chain_id()

    async def block_timestamp(self, block_number: int) -> int:
        block = await self.rpc.get_block_by_number(block_number)
        if not block:
            raise RPCError(f"missing block {block_number}")
        return _hex_result(block.get("timestamp"), "eth_getBlockByNumber")

    async def logs_in_range(
        self,
        address: str,
        topics: List[Any],
        from_block: int,
        to_block: int,
        chunk_size: int,
    ) -> AsyncIterator[Dict[str, Any]]:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be >= 1")
        start = from_block
        while start <= to_block:
            end = min(to_block, start + chunk_size - 1)
            batch = await self.rpc.get_logs(
                from_block=start, to_block=end, address=address, topics=topics
            )
            logger.debug("eth_getLogs %d-%d returned %d logs", start, end, len(batch))
            for lg in batch:
                yield lg
            start = end + 1

    async def find_block_at_or_before_timestamp(self, target_ts: int, hi: int) -> int:
        if target_ts <= 0:
            return 0
        low = 0
        high = hi
        best = 0
        for _ in range(BINARY_SEARCH_MAX_PROBES):
            if low > high:
                break
            mid = (low + high) // 2
            mid_ts = await self.block_timestamp(mid)
            if mid_ts <= target_ts:
                best = mid
                low = mid + 1
            else:
                high = mid - 1
        return best
