import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

from chain_utils import (
    TRANSFER_TOPIC0,
    WORD_HEX,
    ZERO_ADDRESS,
    ZERO_TOPIC,
    decode_topic_address,
    normalize_address,
    parse_hex_int,
    strip_hex_prefix,
)
from event_decoder import decode_dynamic
from rpc_client import RPCClient

logger = logging.getLogger(__name__)

NAME_SELECTOR = "0x06fdde03"
SYMBOL_SELECTOR = "0x95d89b41"
DECIMALS_SELECTOR = "0x313ce567"
TOTAL_SUPPLY_SELECTOR = "0x18160ddd"

METADATA_DEFAULTS: Dict[str, Any] = {
    "name": "",
    "symbol": "",
    "decimals": 18,
    "total_supply": 0,
}
MAX_NAME_LEN = 200
MAX_SYMBOL_LEN = 50


class MetadataFetchError(RuntimeError):
    def __init__(self, field_name: str, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field_name = field_name


@dataclass
class TokenMetadata:
    name: str = ""
    symbol: str = ""
    decimals: int = 18
    total_supply: int = 0
    resolved: FrozenSet[str] = field(default_factory=frozenset)


def decode_abi_string(result: Optional[str]) -> str:
    data = strip_hex_prefix(result)
    if not data:
        raise ValueError("empty return data")
    if len(data) == WORD_HEX:
        # bytes32 name/symbol (MKR style)
        raw = bytes.fromhex(data).rstrip(b"\x00")
        return raw.decode("utf-8", errors="replace")
    offset = int(data[:WORD_HEX], 16)
    value = decode_dynamic("string", data, offset)
    return value.replace("\x00", "")


def decode_abi_uint(result: Optional[str]) -> int:
    data = strip_hex_prefix(result)
    if not data:
        raise ValueError("empty return data")
    return int(data[:WORD_HEX], 16)


class MetadataResolver:
    def __init__(self, rpc: RPCClient, timeout_sec: float = 5.0):
        self.rpc = rpc
        self.timeout_sec = timeout_sec

    async def resolve(self, address: str) -> TokenMetadata:
        address = normalize_address(address)
        names = ["name", "symbol", "decimals", "total_supply"]
        results = await asyncio.gather(
            self._fetch_name(address),
            self._fetch_symbol(address),
            self._fetch_decimals(address),
            self._fetch_total_supply(address),
            return_exceptions=True,
        )
        values: Dict[str, Any] = {}
        resolved = set()
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.debug("metadata %s for %s defaulted: %s", name, address, result)
                values[name] = METADATA_DEFAULTS[name]
            else:
                values[name] = result
                resolved.add(name)
        return TokenMetadata(resolved=frozenset(resolved), **values)

    async def _call(self, field_name: str, address: str, selector: str) -> str:
        try:
            return await asyncio.wait_for(
                self.rpc.eth_call(address, selector), timeout=self.timeout_sec
            )
        except asyncio.TimeoutError as e:
            raise MetadataFetchError(field_name, f"timeout after {self.timeout_sec}s") from e
        except Exception as e:
            raise MetadataFetchError(field_name, str(e)) from e

    async def _fetch_name(self, address: str) -> str:
        out = await self._call("name", address, NAME_SELECTOR)
        try:
            return decode_abi_string(out).strip()[:MAX_NAME_LEN]
        except ValueError as e:
            raise MetadataFetchError("name", str(e)) from e

    async def _fetch_symbol(self, address: str) -> str:
        out = await self._call("symbol", address, SYMBOL_SELECTOR)
        try:
            return decode_abi_string(out).strip()[:MAX_SYMBOL_LEN]
        except ValueError as e:
            raise MetadataFetchError("symbol", str(e)) from e

    async def _fetch_decimals(self, address: str) -> int:
        out = await self._call("decimals", address, DECIMALS_SELECTOR)
        try:
            value = decode_abi_uint(out)
        except ValueError as e:
            raise MetadataFetchError("decimals", str(e)) from e
        if value > 255:
            raise MetadataFetchError("decimals", f"not a uint8: {value}")
        return value

    async def _fetch_total_supply(self, address: str) -> int:
        out = await self._call("total_supply", address, TOTAL_SUPPLY_SELECTOR)
        try:
            return decode_abi_uint(out)
        except ValueError as e:
            raise MetadataFetchError("total_supply", str(e)) from e


class CreatorResolver:
    def __init__(self, rpc: RPCClient, radius: int = 5, max_window: int = 10):
        self.rpc = rpc
        self.radius = max(0, radius)
        self.max_window = max(1, max_window)

    def search_range(self, around_block: int, head: int) -> Optional[List[int]]:
        radius = min(self.radius, (self.max_window - 1) // 2)
        from_block = max(0, around_block - radius)
        to_block = min(around_block + radius, head)
        if to_block < from_block:
            return None
        return [from_block, to_block]

    async def resolve(
        self, token_address: str, around_block: int, head: Optional[int] = None
    ) -> str:
        try:
            token_address = normalize_address(token_address)
            if head is None:
                head = await self.rpc.get_latest_block_number()
            bounds = self.search_range(around_block, head)
            if bounds is None:
                return ZERO_ADDRESS
            logs = await self.rpc.get_logs(
                from_block=bounds[0],
                to_block=bounds[1],
                address=token_address,
                topics=[TRANSFER_TOPIC0, ZERO_TOPIC],
            )
        except Exception as e:
            logger.warning("creator lookup failed for %s: %s", token_address, e)
            return ZERO_ADDRESS

        ordered = sorted(
            logs,
            key=lambda lg: (parse_hex_int(lg.get("blockNumber")), parse_hex_int(lg.get("logIndex"))),
        )
        for lg in ordered:
            topics = lg.get("topics") or []
            if len(topics) < 3 or str(topics[0]).lower() != TRANSFER_TOPIC0:
                continue
            if decode_topic_address(topics[1]) != ZERO_ADDRESS:
                continue
            to_addr = decode_topic_address(topics[2])
            if to_addr != ZERO_ADDRESS:
                return to_addr
        return ZERO_ADDRESS
