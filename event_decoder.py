import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from chain_utils import (
    WORD_HEX,
    ZERO_ADDRESS,
    split_words,
    strip_hex_prefix,
    word_at_byte,
    word_to_padded_address,
    word_to_right_padded_address,
)

logger = logging.getLogger(__name__)

STRATEGY_SCHEMA = "schema"
STRATEGY_OFFSET_POINTER = "offset_pointer"
STRATEGY_PATTERN_SCAN = "pattern_scan"
STRATEGY_FIXED_POSITION = "fixed_position"
DEFAULT_STRATEGY_ORDER = (
    STRATEGY_SCHEMA,
    STRATEGY_OFFSET_POINTER,
    STRATEGY_PATTERN_SCAN,
    STRATEGY_FIXED_POSITION,
)
DEFAULT_OFFSET_WORD_INDEX = 4
DEFAULT_FIXED_OFFSETS = (32, 64, 96, 128, 160, 192)

# Values below this are lengths, offsets or amounts that happen to fit in 20 bytes.
MIN_PLAUSIBLE_ADDRESS = 1 << 128


class PermanentDecodeError(ValueError):
    def __init__(self, reason: str, log: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.log = log


@dataclass
class EventParam:
    name: str
    type: str
    indexed: bool = False

    @property
    def is_dynamic(self) -> bool:
        return self.type in {"string", "bytes"}

    @property
    def is_array(self) -> bool:
        return self.type.endswith("]")


@dataclass
class EventSchema:
    name: str
    topic0: str
    params: List[EventParam]
    token_fields: List[str]
    creator_field: Optional[str] = None
    pool_field: Optional[str] = None

    @classmethod
    def from_signature(
        cls,
        signature: str,
        topic0: str,
        token_fields: Sequence[str],
        creator_field: Optional[str] = None,
        pool_field: Optional[str] = None,
    ) -> "EventSchema":
        name, params = parse_event_signature(signature)
        names = {p.name for p in params}
        for f in list(token_fields) + [x for x in (creator_field, pool_field) if x]:
            if f not in names:
                raise ValueError(f"event {name} has no parameter named {f}")
        if not token_fields:
            raise ValueError(f"event {name} schema needs at least one token field")
        topic0 = topic0.strip().lower()
        if not topic0.startswith("0x") or len(topic0) != 66:
            raise ValueError(f"invalid topic0 for event {name}: {topic0}")
        return cls(
            name=name,
            topic0=topic0,
            params=params,
            token_fields=list(token_fields),
            creator_field=creator_field,
            pool_field=pool_field,
        )

    def decode_fields(self, log: Dict[str, Any]) -> Dict[str, Any]:
        topics = [str(t).lower() for t in (log.get("topics") or [])]
        if not topics or topics[0] != self.topic0:
            raise ValueError(f"topic0 does not match {self.name}")
        indexed = [p for p in self.params if p.indexed]
        if len(topics) - 1 != len(indexed):
            raise ValueError(
                f"{self.name} expects {len(indexed)} indexed topics, got {len(topics) - 1}"
            )

        out: Dict[str, Any] = {}
        for param, topic in zip(indexed, topics[1:]):
            word = strip_hex_prefix(topic)
            if param.is_dynamic or param.is_array:
                out[param.name] = "0x" + word
            else:
                out[param.name] = decode_static_word(param.type, word)

        data = strip_hex_prefix(log.get("data"))
        head = 0
        for param in self.params:
            if param.indexed:
                continue
            word = data[head * WORD_HEX:(head + 1) * WORD_HEX]
            if len(word) != WORD_HEX:
                raise ValueError(f"{self.name} data too short for {param.name}")
            if param.is_dynamic:
                out[param.name] = decode_dynamic(param.type, data, int(word, 16))
            else:
                out[param.name] = decode_static_word(param.type, word)
            head += 1
        return out


def parse_event_signature(signature: str) -> Tuple[str, List[EventParam]]:
    text = signature.strip()
    if text.startswith("event "):
        text = text[len("event "):].strip()
    name, sep, rest = text.partition("(")
    name = name.strip()
    if not sep or not rest.endswith(")") or not name:
        raise ValueError(f"invalid event signature: {signature}")
    body = rest[:-1].strip()
    if "(" in body or ")" in body:
        raise ValueError(f"tuple parameters are not supported: {signature}")

    params: List[EventParam] = []
    if not body:
        return name, params
    for i, part in enumerate(body.split(",")):
        tokens = part.split()
        if not tokens:
            raise ValueError(f"empty parameter in event signature: {signature}")
        rest_tokens = tokens[1:]
        indexed = "indexed" in rest_tokens
        names = [t for t in rest_tokens if t != "indexed"]
        param = EventParam(
            name=names[0] if names else f"arg{i}",
            type=normalize_abi_type(tokens[0]),
            indexed=indexed,
        )
        # indexed arrays arrive as a topic hash
        if param.is_array and not indexed:
            raise ValueError(f"array parameters in event data are not supported: {signature}")
        params.append(param)
    return name, params


def normalize_abi_type(type_: str) -> str:
    type_ = type_.strip()
    if type_ == "uint":
        return "uint256"
    if type_ == "int":
        return "int256"
    return type_


def decode_static_word(type_: str, word: str) -> Any:
    if len(word) != WORD_HEX:
        raise ValueError(f"invalid word length for {type_}")
    if type_ == "address":
        addr = word_to_padded_address(word)
        if addr is None:
            raise ValueError("address word is not zero padded")
        return addr
    if type_ == "bool":
        value = int(word, 16)
        if value not in (0, 1):
            raise ValueError("bool word out of range")
        return bool(value)
    if type_.startswith("uint"):
        return int(word, 16)
    if type_.startswith("int"):
        bits = int(type_[3:] or 256)
        value = int(word, 16)
        if value >= 1 << 255:
            value -= 1 << 256
        if not -(1 << (bits - 1)) <= value < (1 << (bits - 1)):
            raise ValueError(f"{type_} value out of range")
        return value
    if type_.startswith("bytes") and type_[5:].isdigit():
        size = int(type_[5:])
        return "0x" + word[: size * 2]
    raise ValueError(f"unsupported static type: {type_}")


def decode_dynamic(type_: str, data: str, byte_offset: int) -> Any:
    if type_ not in {"string", "bytes"}:
        raise ValueError(f"unsupported dynamic type: {type_}")
    start = byte_offset * 2
    length_word = data[start:start + WORD_HEX]
    if len(length_word) != WORD_HEX:
        raise ValueError("dynamic field offset out of bounds")
    length = int(length_word, 16)
    payload = data[start + WORD_HEX:start + WORD_HEX + length * 2]
    if len(payload) != length * 2:
        raise ValueError("dynamic field shorter than declared length")
    if type_ == "bytes":
        return "0x" + payload
    return bytes.fromhex(payload).decode("utf-8", errors="replace")


def validate_candidate(candidate: Optional[str], counterpart: Optional[str]) -> Optional[str]:
    if not candidate or not isinstance(candidate, str):
        return None
    clean = strip_hex_prefix(candidate)
    if len(clean) == WORD_HEX:
        if clean[:24] != "0" * 24:
            return None
        clean = clean[24:]
    if len(clean) != 40:
        return None
    try:
        int(clean, 16)
    except ValueError:
        return None
    addr = "0x" + clean
    if addr == ZERO_ADDRESS:
        return None
    if counterpart and addr == counterpart.strip().lower():
        return None
    return addr


def is_degenerate_address(addr: str) -> bool:
    value = int(addr[2:], 16)
    return value < MIN_PLAUSIBLE_ADDRESS or addr.endswith("0" * 16)


class DecodeStrategy:
    name = "base"

    def decode(self, log: Dict[str, Any], counterpart: Optional[str]) -> Optional[str]:
        raise NotImplementedError


class SchemaDecodeStrategy(DecodeStrategy):
    name = STRATEGY_SCHEMA

    def __init__(self, schema: EventSchema, ignore_addresses: Iterable[str] = ()):
        self.schema = schema
        self.ignore_addresses: Set[str] = {a.lower() for a in ignore_addresses}

    def decode(self, log: Dict[str, Any], counterpart: Optional[str]) -> Optional[str]:
        try:
            fields = self.schema.decode_fields(log)
        except ValueError as e:
            logger.debug("schema decode failed for %s: %s", self.schema.name, e)
            return None
        candidates: List[str] = []
        for name in self.schema.token_fields:
            addr = validate_candidate(fields.get(name), counterpart)
            if addr and addr not in self.ignore_addresses and addr not in candidates:
                candidates.append(addr)
        if len(candidates) != 1:
            return None
        return candidates[0]


class OffsetPointerStrategy(DecodeStrategy):
    name = STRATEGY_OFFSET_POINTER

    def __init__(self, word_index: int = DEFAULT_OFFSET_WORD_INDEX):
        self.word_index = word_index

    def decode(self, log: Dict[str, Any], counterpart: Optional[str]) -> Optional[str]:
        data = log.get("data") or ""
        words = split_words(data)
        if len(words) <= self.word_index:
            return None
        offset = int(words[self.word_index], 16)
        if offset == 0 or offset % 32:
            return None
        word = word_at_byte(data, offset)
        if word is None:
            return None
        addr = validate_candidate(word_to_padded_address(word), counterpart)
        if addr is None or is_degenerate_address(addr):
            return None
        return addr


class PatternScanStrategy(DecodeStrategy):
    name = STRATEGY_PATTERN_SCAN

    def decode(self, log: Dict[str, Any], counterpart: Optional[str]) -> Optional[str]:
        # 20 address bytes followed by 12 zero bytes; left-padded ABI words belong to fixed_position
        for word in split_words(log.get("data") or ""):
            addr = validate_candidate(word_to_right_padded_address(word), counterpart)
            if addr is not None and not is_degenerate_address(addr):
                return addr
        return None


class FixedPositionStrategy(DecodeStrategy):
    name = STRATEGY_FIXED_POSITION

    def __init__(self, byte_offsets: Sequence[int] = DEFAULT_FIXED_OFFSETS):
        self.byte_offsets = tuple(byte_offsets)

    def decode(self, log: Dict[str, Any], counterpart: Optional[str]) -> Optional[str]:
        data = log.get("data") or ""
        for offset in self.byte_offsets:
            word = word_at_byte(data, offset)
            if word is None:
                continue
            addr = validate_candidate(word_to_padded_address(word), counterpart)
            if addr is not None and not is_degenerate_address(addr):
                return addr
        return None


@dataclass
class DecodeResult:
    token_address: Optional[str]
    strategy: Optional[str] = None
    reason: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.token_address is not None


class EventDecoder:
    def __init__(
        self,
        strategies: Sequence[DecodeStrategy],
        schema: Optional[EventSchema] = None,
    ):
        if not strategies:
            raise ValueError("EventDecoder needs at least one strategy")
        self.strategies = list(strategies)
        self.schema = schema

    @classmethod
    def for_source(
        cls,
        schema: Optional[EventSchema] = None,
        strategy_names: Sequence[str] = DEFAULT_STRATEGY_ORDER,
        offset_word_index: int = DEFAULT_OFFSET_WORD_INDEX,
        fixed_offsets: Sequence[int] = DEFAULT_FIXED_OFFSETS,
        ignore_addresses: Iterable[str] = (),
    ) -> "EventDecoder":
        strategies: List[DecodeStrategy] = []
        for name in strategy_names:
            if name == STRATEGY_SCHEMA:
                if schema is not None:
                    strategies.append(SchemaDecodeStrategy(schema, ignore_addresses))
            elif name == STRATEGY_OFFSET_POINTER:
                strategies.append(OffsetPointerStrategy(offset_word_index))
            elif name == STRATEGY_PATTERN_SCAN:
                strategies.append(PatternScanStrategy())
            elif name == STRATEGY_FIXED_POSITION:
                strategies.append(FixedPositionStrategy(fixed_offsets))
            else:
                raise ValueError(f"unknown decode strategy: {name}")
        return cls(strategies, schema=schema)

    def decode_fields(self, log: Dict[str, Any]) -> Dict[str, Any]:
        if self.schema is None:
            return {}
        try:
            return self.schema.decode_fields(log)
        except ValueError:
            return {}

    def decode(self, log: Dict[str, Any], counterpart: Optional[str] = None) -> DecodeResult:
        fields = self.decode_fields(log)
        tried: List[str] = []
        for strategy in self.strategies:
            tried.append(strategy.name)
            try:
                addr = strategy.decode(log, counterpart)
            except (ValueError, IndexError) as e:
                logger.debug("strategy %s raised: %s", strategy.name, e)
                continue
            # re-check so no strategy can leak the zero or counterpart address
            addr = validate_candidate(addr, counterpart)
            if addr is not None:
                return DecodeResult(token_address=addr, strategy=strategy.name, fields=fields)
        return DecodeResult(
            token_address=None,
            reason="no decoding strategy produced a valid token address (tried: "
            + ", ".join(tried)
            + ")",
            fields=fields,
        )

    def decode_or_raise(
        self, log: Dict[str, Any], counterpart: Optional[str] = None
    ) -> DecodeResult:
        result = self.decode(log, counterpart)
        if not result.ok:
            raise PermanentDecodeError(result.reason or "decode failed", log)
        return result
