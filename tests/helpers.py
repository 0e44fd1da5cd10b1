from typing import Any, Dict, List, Optional

from chain_utils import parse_hex_int
from rpc_client import RPCError, TransientProviderError
from token_resolvers import DECIMALS_SELECTOR, NAME_SELECTOR, SYMBOL_SELECTOR, TOTAL_SUPPLY_SELECTOR

FACTORY = "0x777777751622c0d3258f214f9df38e35bf45baf3"
DEX_FACTORY = "0x33128a8fc17869897dce68ed026d694621f6fdfd"
TOKEN = "0x4ed4e862860bed51a9570b96d89af5e1b0efefed"
OTHER_TOKEN = "0x9a3b5e2f7c1d4e8a6b0c2d4f6e8a0b2c4d6e8f01"
CREATOR = "0x5f3a1c9e2b7d4a6c8e0f1a3b5c7d9e1f2a4b6c8d"
POOL = "0xd0b53d9277642d899df5c87a3966a349a798f224"
WETH = "0x4200000000000000000000000000000000000006"
USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"

CREATED_TOPIC0 = "0x" + "ab" * 32
POOL_TOPIC0 = "0x783cca1c0412dd0d695e784568c96da2e9c22ff989357a2e8b1d9b2b4e6b7118"


def word_addr(addr: str) -> str:
    return "0" * 24 + addr[2:].lower()


def word_uint(n: int) -> str:
    return f"{n:064x}"


def topic(addr: str) -> str:
    return "0x" + word_addr(addr)


def string_tail(text: str) -> List[str]:
    raw = text.encode("utf-8").hex()
    padded = raw + "0" * ((64 - len(raw) % 64) % 64)
    return [word_uint(len(text.encode("utf-8")))] + [
        padded[i:i + 64] for i in range(0, len(padded), 64)
    ]


def abi_string(text: str) -> str:
    return "0x" + word_uint(32) + "".join(string_tail(text))


def make_log(
    address: str,
    topics: List[str],
    words: List[str],
    block: int,
    log_index: int = 0,
    tx_hash: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "address": address,
        "topics": topics,
        "data": "0x" + "".join(words),
        "blockNumber": hex(block),
        "logIndex": hex(log_index),
        "transactionHash": tx_hash or "0x" + f"{block:04x}{log_index:04x}" * 8,
    }


def created_log(token: str, creator: str, block: int, name: str = "Cat Coin", log_index: int = 0) -> Dict[str, Any]:
    # TokenCreated(address indexed creator, address token, string name)
    return make_log(
        FACTORY,
        [CREATED_TOPIC0, topic(creator)],
        [word_addr(token), word_uint(64)] + string_tail(name),
        block,
        log_index,
    )


def pool_log(token0: str, token1: str, pool: str, block: int, log_index: int = 0) -> Dict[str, Any]:
    return make_log(
        DEX_FACTORY,
        [POOL_TOPIC0, topic(token0), topic(token1), "0x" + word_uint(3000)],
        [word_uint(60), word_addr(pool)],
        block,
        log_index,
    )


def erc20_bytecode(selectors: Optional[List[str]] = None, extra: str = "", pad_bytes: int = 600) -> str:
    if selectors is None:
        selectors = ["70a08231", "a9059cbb", "dd62ed3e", "18160ddd", "095ea7b3", "23b872dd"]
    body = "6080604052" + "".join("63" + s for s in selectors)
    body += "7fddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
    return "0x" + body + extra + "00" * pad_bytes


class FakeRPC:
    def __init__(self, latest: int = 1000, chain_id: int = 8453):
        self.latest = latest
        self.chain_id = chain_id
        self.logs: List[Dict[str, Any]] = []
        self.calls: Dict[Any, Any] = {}
        self.codes: Dict[str, str] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.max_range: Optional[int] = None
        self.get_logs_calls: List[Any] = []
        self.get_code_calls: List[str] = []
        self.error_count = 0

    def set_metadata(self, token: str, name: str, symbol: str, decimals: int = 18, total_supply: int = 0) -> None:
        token = token.lower()
        self.calls[(token, NAME_SELECTOR)] = abi_string(name)
        self.calls[(token, SYMBOL_SELECTOR)] = abi_string(symbol)
        self.calls[(token, DECIMALS_SELECTOR)] = "0x" + word_uint(decimals)
        self.calls[(token, TOTAL_SUPPLY_SELECTOR)] = "0x" + word_uint(total_supply)

    async def get_latest_block_number(self) -> int:
        return self.latest

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_logs(self, from_block, to_block, address=None, topics=None):
        self.get_logs_calls.append((from_block, to_block, address, topics))
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            raise TransientProviderError("RPC error: block range too large")
        out = []
        for lg in self.logs:
            n = parse_hex_int(lg["blockNumber"])
            if n < from_block or n > to_block:
                continue
            if address and lg["address"].lower() != address.lower():
                continue
            if topics and not self._topics_match(lg["topics"], topics):
                continue
            out.append(lg)
        return out

    @staticmethod
    def _topics_match(have: List[str], want: List[Any]) -> bool:
        for i, t in enumerate(want):
            if t is None:
                continue
            if len(have) <= i or have[i].lower() != t.lower():
                return False
        return True

    async def eth_call(self, to: str, data: str) -> str:
        value = self.calls.get((to.lower(), data))
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            return await value()
        if value is None:
            raise RPCError("RPC error: execution reverted")
        return value

    async def get_code(self, address: str) -> str:
        self.get_code_calls.append(address.lower())
        return self.codes.get(address.lower(), "0x")

    async def get_receipt(self, tx_hash: str):
        return self.receipts.get(tx_hash.lower())

    async def get_block_by_number(self, block_number: int, full_transactions: bool = False):
        return self.blocks.get(block_number, {"number": hex(block_number), "transactions": []})


