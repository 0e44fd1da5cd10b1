import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)

RANGE_ERROR_CODES = {-32005, -32602}
RANGE_ERROR_MARKERS = (
    "block range",
    "range too large",
    "range is too large",
    "query returned more than",
    "limit exceeded",
    "response size",
    "exceed maximum block range",
    "too many blocks",
)
RATE_LIMIT_MARKERS = (
    "rate limit",
    "too many requests",
    "capacity",
    "compute units",
    "throughput",
)


class RPCError(RuntimeError):
    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TransientProviderError(RPCError):
    def __init__(self, message: str, code: Optional[int] = None, kind: str = "range"):
        super().__init__(message, code)
        self.kind = kind


def classify_rpc_error(error: Any) -> RPCError:
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message", error))
    else:
        code = None
        message = str(error)
    lowered = message.lower()
    text = f"RPC error: {message}"
    if any(m in lowered for m in RATE_LIMIT_MARKERS) or code == 429:
        return TransientProviderError(text, code, kind="rate_limit")
    if any(m in lowered for m in RANGE_ERROR_MARKERS):
        return TransientProviderError(text, code, kind="range")
    if code in RANGE_ERROR_CODES and "eth_getlogs" in lowered:
        return TransientProviderError(text, code, kind="range")
    return RPCError(text, code)


class RPCClient:
    def __init__(self, url: str, max_retries: int = 5, timeout_sec: int = 12):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1
        self.error_count = 0

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    if resp.status == 429:
                        raise TransientProviderError(
                            f"RPC error: HTTP 429 on {method}", 429, kind="rate_limit"
                        )
                    data = await resp.json(content_type=None)
                if "error" in data:
                    raise classify_rpc_error(data["error"])
                return data.get("result")
            except TransientProviderError as e:
                self.error_count += 1
                # range errors go back to the scanner
                if e.kind != "rate_limit" or attempt >= self.max_retries:
                    raise
            except RPCError:
                self.error_count += 1
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                self.error_count += 1
                if attempt >= self.max_retries:
                    raise
                logger.debug("%s attempt %d failed: %s", method, attempt, e)
            await asyncio.sleep(backoff)
            backoff *= 2

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_by_number(
        self, block_number: int, full_transactions: bool = False
    ) -> Optional[Dict[str, Any]]:
        return await self.call(
            "eth_getBlockByNumber", [hex(block_number), full_transactions]
        )

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def get_chain_id(self) -> int:
        result = await self.call("eth_chainId", [])
        return int(result, 16)

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
        return result or []

    async def get_code(self, address: str) -> str:
        result = await self.call("eth_getCode", [address, "latest"])
        return result or "0x"

    async def eth_call(self, to: str, data: str) -> str:
        result = await self.call("eth_call", [{"to": to, "data": data}, "latest"])
        return result
