from typing import List, Optional

ZERO_ADDRESS = "0x" + "0" * 40
ZERO_TOPIC = "0x" + "0" * 64

TRANSFER_TOPIC0 = (
    "0xddf252ad1be2c89b69c2b068fc378daa"
    "952ba7f163c4a11628f55a4df523b3ef"
)

WORD_BYTES = 32
WORD_HEX = WORD_BYTES * 2


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def is_address(addr: Optional[str]) -> bool:
    try:
        normalize_address(addr)  # type: ignore[arg-type]
    except ValueError:
        return False
    return True


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    return "0x" + topic[-40:]


def strip_hex_prefix(data: Optional[str]) -> str:
    if not data:
        return ""
    data = data.strip().lower()
    if data.startswith("0x"):
        data = data[2:]
    return data


def split_words(data: str) -> List[str]:
    clean = strip_hex_prefix(data)
    return [
        clean[i:i + WORD_HEX]
        for i in range(0, len(clean) - WORD_HEX + 1, WORD_HEX)
    ]


def word_at_byte(data: str, byte_offset: int) -> Optional[str]:
    clean = strip_hex_prefix(data)
    start = byte_offset * 2
    if byte_offset < 0 or start + WORD_HEX > len(clean):
        return None
    return clean[start:start + WORD_HEX]


def word_to_padded_address(word: str) -> Optional[str]:
    if len(word) != WORD_HEX:
        return None
    if word[:24] != "0" * 24:
        return None
    return "0x" + word[24:]


def word_to_right_padded_address(word: str) -> Optional[str]:
    if len(word) != WORD_HEX:
        return None
    if word[40:] != "0" * 24:
        return None
    return "0x" + word[:40]
