import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from bytecode_classifier import (
    COMMON_ERC20_SELECTORS,
    DEFAULT_MAX_BYTECODE_SIZE,
    DEFAULT_MIN_CONFIDENCE,
    DEFAULT_MIN_CONTRACT_SIZE,
    DEFAULT_SHORT_BYTECODE_WARN_SIZE,
    REQUIRED_ERC20_SELECTORS,
)
from chain_utils import normalize_address
from event_decoder import (
    DEFAULT_FIXED_OFFSETS,
    DEFAULT_OFFSET_WORD_INDEX,
    DEFAULT_STRATEGY_ORDER,
    STRATEGY_SCHEMA,
    EventSchema,
)

BYTECODE_SOURCE_NAME = "bytecode"
SOURCE_KINDS = {"factory", "dex"}
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass
class SourceConfig:
    name: str
    kind: str
    address: str
    platform: str
    event_type: str
    topic0: Optional[str] = None
    schema: Optional[EventSchema] = None
    start_block: Optional[int] = None
    max_window: int = 10
    poll_interval_sec: float = 30.0
    decode_strategies: List[str] = field(default_factory=lambda: list(DEFAULT_STRATEGY_ORDER))
    offset_word_index: int = DEFAULT_OFFSET_WORD_INDEX
    fixed_offsets: List[int] = field(default_factory=lambda: list(DEFAULT_FIXED_OFFSETS))
    counterpart_topic_index: Optional[int] = None


@dataclass
class BytecodeScannerConfig:
    enabled: bool = False
    start_block: Optional[int] = None
    max_window: int = 200
    poll_interval_sec: float = 300.0
    min_erc20_confidence: float = DEFAULT_MIN_CONFIDENCE
    required_selectors: List[str] = field(default_factory=lambda: list(REQUIRED_ERC20_SELECTORS))
    common_selectors: List[str] = field(default_factory=lambda: list(COMMON_ERC20_SELECTORS))
    require_transfer_event: bool = False
    min_contract_size: int = DEFAULT_MIN_CONTRACT_SIZE
    max_bytecode_size: int = DEFAULT_MAX_BYTECODE_SIZE
    short_bytecode_warn_size: int = DEFAULT_SHORT_BYTECODE_WARN_SIZE


@dataclass
class AppConfig:
    chain_id: int
    http_rpc_url: str
    max_rpc_retries: int
    rpc_timeout_sec: int
    max_blocks_per_request: int
    confirmations: int
    sqlite_path: str
    log_level: str
    fallback_start_blocks: int
    max_cursor_lag_blocks: int
    min_window_retries: int
    metadata_timeout_sec: float
    creator_search_radius: int
    shutdown_grace_sec: float
    base_tokens: Set[str]
    api_enabled: bool
    api_host: str
    api_port: int
    factories: List[SourceConfig]
    dexes: List[SourceConfig]
    bytecode_scanner: BytecodeScannerConfig

    @property
    def sources(self) -> List[SourceConfig]:
        return list(self.factories) + list(self.dexes)


def _positive_int(raw: Dict[str, Any], key: str, default: int, minimum: int = 1) -> int:
    value = int(raw.get(key, default))
    if value < minimum:
        raise ValueError(f"{key} must be >= {minimum}")
    return value


def _optional_block(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    block = int(value)
    if block < 0:
        raise ValueError(f"start block must be >= 0, got {block}")
    return block


def parse_source(item: Dict[str, Any], kind: str) -> SourceConfig:
    if kind not in SOURCE_KINDS:
        raise ValueError(f"unknown source kind: {kind}")
    name = str(item["name"]).strip()
    if not name:
        raise ValueError(f"{kind} source name cannot be empty")
    if name == BYTECODE_SOURCE_NAME:
        raise ValueError(f"source name {name!r} is reserved")
    address = normalize_address(item.get("address") or item["factory"])

    topic0_raw = item.get("topic0")
    topic0 = str(topic0_raw).strip().lower() if topic0_raw else None
    event = item.get("event")
    if kind == "dex":
        token_fields = item.get("token_fields", ["token0", "token1"])
        pool_field = item.get("pool_field", "pool")
        default_strategies = [STRATEGY_SCHEMA]
        platform = str(item.get("platform", f"dex_{name}"))
        event_type = str(item.get("event_type", f"{name}_pool_creation"))
        counterpart_topic_index = item.get("counterpart_topic_index")
        if not event:
            raise ValueError(f"dex {name} needs an event signature")
    else:
        token_fields = item.get("token_fields", ["token"])
        pool_field = item.get("pool_field")
        default_strategies = list(DEFAULT_STRATEGY_ORDER)
        platform = str(item.get("platform", name))
        event_type = str(item.get("event_type", f"{name}_token_created"))
        counterpart_topic_index = item.get("counterpart_topic_index", 1)

    schema: Optional[EventSchema] = None
    if event:
        if not topic0:
            raise ValueError(f"{kind} {name} declares an event but no topic0")
        schema = EventSchema.from_signature(
            str(event),
            topic0,
            token_fields=[str(x) for x in token_fields],
            creator_field=item.get("creator_field"),
            pool_field=pool_field,
        )

    strategies = [str(x) for x in item.get("decode_strategies", default_strategies)]
    for s in strategies:
        if s not in DEFAULT_STRATEGY_ORDER:
            raise ValueError(f"{kind} {name} has unknown decode strategy {s}")
    if not strategies or (strategies == [STRATEGY_SCHEMA] and schema is None):
        raise ValueError(f"{kind} {name} has no usable decode strategy")

    poll_interval_sec = float(item.get("poll_interval_sec", 45 if kind == "dex" else 30))
    if poll_interval_sec <= 0:
        raise ValueError(f"{kind} {name} poll_interval_sec must be > 0")
    max_window = int(item.get("max_window", 10))
    if max_window <= 0:
        raise ValueError(f"{kind} {name} max_window must be >= 1")

    return SourceConfig(
        name=name,
        kind=kind,
        address=address,
        platform=platform,
        event_type=event_type,
        topic0=topic0,
        schema=schema,
        start_block=_optional_block(item.get("start_block")),
        max_window=max_window,
        poll_interval_sec=poll_interval_sec,
        decode_strategies=strategies,
        offset_word_index=int(item.get("offset_word_index", DEFAULT_OFFSET_WORD_INDEX)),
        fixed_offsets=[int(x) for x in item.get("fixed_offsets", DEFAULT_FIXED_OFFSETS)],
        counterpart_topic_index=(
            int(counterpart_topic_index) if counterpart_topic_index is not None else None
        ),
    )


def parse_bytecode_scanner(raw: Dict[str, Any]) -> BytecodeScannerConfig:
    min_conf = float(raw.get("MIN_ERC20_CONFIDENCE", DEFAULT_MIN_CONFIDENCE))
    if min_conf < 0 or min_conf > 1:
        raise ValueError("MIN_ERC20_CONFIDENCE must be in [0,1]")
    required = [str(x).lower() for x in raw.get("REQUIRED_SELECTORS", REQUIRED_ERC20_SELECTORS)]
    if not required:
        raise ValueError("REQUIRED_SELECTORS cannot be empty")
    min_size = _positive_int(raw, "MIN_CONTRACT_SIZE", DEFAULT_MIN_CONTRACT_SIZE)
    max_size = _positive_int(raw, "MAX_BYTECODE_SIZE", DEFAULT_MAX_BYTECODE_SIZE)
    if min_size > max_size:
        raise ValueError("MIN_CONTRACT_SIZE cannot exceed MAX_BYTECODE_SIZE")
    return BytecodeScannerConfig(
        enabled=bool(raw.get("ENABLED", False)),
        start_block=_optional_block(raw.get("START_BLOCK")),
        max_window=_positive_int(raw, "MAX_WINDOW", 200),
        poll_interval_sec=float(raw.get("POLL_INTERVAL_SEC", 300)),
        min_erc20_confidence=min_conf,
        required_selectors=required,
        common_selectors=[
            str(x).lower() for x in raw.get("COMMON_SELECTORS", COMMON_ERC20_SELECTORS)
        ],
        require_transfer_event=bool(raw.get("REQUIRE_TRANSFER_EVENT", False)),
        min_contract_size=min_size,
        max_bytecode_size=max_size,
        short_bytecode_warn_size=_positive_int(
            raw, "SHORT_BYTECODE_WARN_SIZE", DEFAULT_SHORT_BYTECODE_WARN_SIZE
        ),
    )


def build_config(raw: Dict[str, Any]) -> AppConfig:
    http_rpc_url = str(raw["HTTP_RPC_URL"]).strip()
    if not http_rpc_url:
        raise ValueError("HTTP_RPC_URL cannot be empty")

    db_mode = str(raw.get("DB_MODE", "sqlite")).lower()
    if db_mode != "sqlite":
        raise ValueError("current runtime only supports sqlite; set DB_MODE=sqlite")

    factories = [parse_source(item, "factory") for item in raw.get("FACTORIES", [])]
    dexes = [parse_source(item, "dex") for item in raw.get("DEXES", [])]
    bytecode_scanner = parse_bytecode_scanner(raw.get("BYTECODE_SCANNER", {}))

    names = [s.name for s in factories + dexes]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"duplicate source names: {', '.join(dupes)}")
    if not names and not bytecode_scanner.enabled:
        raise ValueError("no detection sources configured (FACTORIES, DEXES or BYTECODE_SCANNER)")

    log_level = str(raw.get("LOG_LEVEL", "info")).lower()
    if log_level not in LOG_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}")

    base_tokens = {normalize_address(x) for x in raw.get("BASE_TOKENS", [])}
    if dexes and not base_tokens:
        raise ValueError("BASE_TOKENS cannot be empty when DEXES are configured")

    return AppConfig(
        chain_id=int(raw.get("CHAIN_ID", 8453)),
        http_rpc_url=http_rpc_url,
        max_rpc_retries=_positive_int(raw, "MAX_RPC_RETRIES", 5),
        rpc_timeout_sec=_positive_int(raw, "RPC_TIMEOUT_SEC", 12),
        max_blocks_per_request=_positive_int(raw, "MAX_BLOCKS_PER_REQUEST", 10),
        confirmations=_positive_int(raw, "CONFIRMATIONS", 1),
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/token_hunter.db")),
        log_level=log_level,
        fallback_start_blocks=_positive_int(raw, "FALLBACK_START_BLOCKS", 1000),
        max_cursor_lag_blocks=_positive_int(raw, "MAX_CURSOR_LAG_BLOCKS", 0, minimum=0),
        min_window_retries=_positive_int(raw, "MIN_WINDOW_RETRIES", 3),
        metadata_timeout_sec=float(raw.get("METADATA_TIMEOUT_SEC", 5)),
        creator_search_radius=_positive_int(raw, "CREATOR_SEARCH_RADIUS", 5, minimum=0),
        shutdown_grace_sec=float(raw.get("SHUTDOWN_GRACE_SEC", 30)),
        base_tokens=base_tokens,
        api_enabled=bool(raw.get("API_ENABLED", False)),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        factories=factories,
        dexes=dexes,
        bytecode_scanner=bytecode_scanner,
    )


def load_config(path: str) -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    return build_config(raw)
