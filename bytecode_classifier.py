import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from chain_utils import TRANSFER_TOPIC0, strip_hex_prefix

logger = logging.getLogger(__name__)

ERC20_FUNCTION_SELECTORS = {
    "totalSupply()": "18160ddd",
    "balanceOf(address)": "70a08231",
    "transfer(address,uint256)": "a9059cbb",
    "transferFrom(address,address,uint256)": "23b872dd",
    "approve(address,uint256)": "095ea7b3",
    "allowance(address,address)": "dd62ed3e",
    "name()": "06fdde03",
    "symbol()": "95d89b41",
    "decimals()": "313ce567",
    "mint(address,uint256)": "40c10f19",
    "burn(uint256)": "42966c68",
    "owner()": "8da5cb5b",
    "renounceOwnership()": "715018a6",
    "transferOwnership(address)": "f2fde38b",
}
SELECTOR_NAMES = {v: k for k, v in ERC20_FUNCTION_SELECTORS.items()}

REQUIRED_ERC20_SELECTORS = ("70a08231", "a9059cbb", "dd62ed3e")
COMMON_ERC20_SELECTORS = ("18160ddd", "095ea7b3", "23b872dd")

ERC20_EVENT_SIGNATURES = {
    "Transfer": TRANSFER_TOPIC0[2:],
    "Approval": "8c5be1e5ebec7d5bd14f71427d1e84f3dd0314c0f7b2291e5b200ac8c7c3b925",
    "OwnershipTransferred": "8be0079c531659141344cd1fd0a4f28419497f9722a3daafe3b4186f6b6457e0",
}

IMPLEMENTATION_PATTERNS = {
    "openzeppelin": (
        "45524332303a20",  # "ERC20: " revert prefix
        "e450d38c",  # ERC20InsufficientBalance
        "fb8f41b2",  # ERC20InsufficientAllowance
    ),
    "solmate": (
        "5045524d49545f444541444c494e455f45585049524544",  # "PERMIT_DEADLINE_EXPIRED"
        "494e56414c49445f5349474e4552",  # "INVALID_SIGNER"
    ),
}
PROXY_PATTERNS = {
    "eip1167_runtime": "363d3d373d3d3d363d73",
    "eip1167_tail": "5af43d82803e903d91602b57fd5bf3",
    "eip1167_creation": "3d602d80600a3d3981f3",
    "eip1967_slot": "360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc",
}

CONFIDENCE_WEIGHTS = {
    "required_selector": 0.4,
    "common_selector": 0.15,
    "transfer_event": 0.2,
    "known_pattern": 0.25,
}

DEFAULT_MIN_CONFIDENCE = 0.6
DEFAULT_MIN_CONTRACT_SIZE = 200
DEFAULT_MAX_BYTECODE_SIZE = 24576
DEFAULT_SHORT_BYTECODE_WARN_SIZE = 500
LOW_SELECTOR_COUNT = 3

_HEX_RE = re.compile(r"^[0-9a-f]*$")


@dataclass
class BytecodeAnalysis:
    is_erc20: bool
    confidence: float
    implementation_type: str
    features: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    is_proxy: bool = False
    bytecode_hash: Optional[str] = None
    bytecode_length: int = 0


class BytecodeClassifier:
    def __init__(
        self,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
        required_selectors: Sequence[str] = REQUIRED_ERC20_SELECTORS,
        common_selectors: Sequence[str] = COMMON_ERC20_SELECTORS,
        require_transfer_event: bool = False,
        min_contract_size: int = DEFAULT_MIN_CONTRACT_SIZE,
        max_bytecode_size: int = DEFAULT_MAX_BYTECODE_SIZE,
        short_bytecode_warn_size: int = DEFAULT_SHORT_BYTECODE_WARN_SIZE,
    ):
        if not 0 <= min_confidence <= 1:
            raise ValueError("min_confidence must be within [0,1]")
        self.min_confidence = min_confidence
        self.required_selectors = tuple(strip_hex_prefix(s) for s in required_selectors)
        self.common_selectors = tuple(strip_hex_prefix(s) for s in common_selectors)
        self.require_transfer_event = require_transfer_event
        self.min_contract_size = min_contract_size
        self.max_bytecode_size = max_bytecode_size
        self.short_bytecode_warn_size = short_bytecode_warn_size

    def normalize(self, bytecode: Optional[str]) -> str:
        if not bytecode or not isinstance(bytecode, str):
            raise ValueError("empty bytecode")
        clean = strip_hex_prefix(bytecode)
        if not clean:
            raise ValueError("empty bytecode")
        if len(clean) % 2 or not _HEX_RE.match(clean):
            raise ValueError("bytecode is not valid hex")
        size = len(clean) // 2
        if size < self.min_contract_size:
            raise ValueError(
                f"bytecode too short: {size} bytes < minimum {self.min_contract_size}"
            )
        if size > self.max_bytecode_size:
            raise ValueError(
                f"bytecode too large: {size} bytes > maximum {self.max_bytecode_size}"
            )
        return clean

    def analyze(self, bytecode: Optional[str]) -> BytecodeAnalysis:
        try:
            clean = self.normalize(bytecode)
        except ValueError as e:
            return self._rejected(bytecode, str(e))

        features = self.extract_features(clean)
        is_proxy = bool(features["proxy_patterns"])
        confidence = self.score(features)
        is_erc20 = (
            confidence >= self.min_confidence
            and features["has_all_required"]
            and (features["events"]["Transfer"] or not self.require_transfer_event)
        )
        return BytecodeAnalysis(
            is_erc20=is_erc20,
            confidence=confidence,
            implementation_type=self.implementation_type(features),
            features=features,
            warnings=self.warnings(clean, features, is_proxy),
            is_proxy=is_proxy,
            bytecode_hash=bytecode_hash(clean),
            bytecode_length=len(clean) // 2,
        )

    def analyze_batch(self, bytecodes: Sequence[Optional[str]]) -> List[BytecodeAnalysis]:
        results: List[BytecodeAnalysis] = []
        for i, bytecode in enumerate(bytecodes):
            try:
                results.append(self.analyze(bytecode))
            except Exception as e:
                logger.exception("bytecode analysis failed for item %d", i)
                results.append(self._error_result(f"analysis error: {e}"))
        return results

    def extract_features(self, clean: str) -> Dict[str, Any]:
        selectors: Dict[str, bool] = {}
        missing: List[str] = []
        for selector in self.required_selectors:
            found = selector in clean
            selectors[selector] = found
            if not found:
                missing.append(selector)
        for selector in self.common_selectors:
            selectors[selector] = selector in clean
        for selector in ERC20_FUNCTION_SELECTORS.values():
            selectors.setdefault(selector, selector in clean)

        events = {name: sig in clean for name, sig in ERC20_EVENT_SIGNATURES.items()}
        patterns = sorted(
            family
            for family, needles in IMPLEMENTATION_PATTERNS.items()
            if any(n in clean for n in needles)
        )
        proxy_patterns = sorted(name for name, p in PROXY_PATTERNS.items() if p in clean)

        return {
            "selectors": selectors,
            "selector_names": sorted(
                SELECTOR_NAMES.get(s, "0x" + s) for s, found in selectors.items() if found
            ),
            "missing_selectors": missing,
            "has_all_required": not missing,
            "events": events,
            "patterns": patterns,
            "proxy_patterns": proxy_patterns,
            "total_selectors_found": sum(1 for v in selectors.values() if v),
            "total_events_found": sum(1 for v in events.values() if v),
            "total_patterns_found": len(patterns),
        }

    def score(self, features: Dict[str, Any]) -> float:
        selectors = features["selectors"]
        score = 0.0
        for selector in self.required_selectors:
            if selectors.get(selector):
                score += CONFIDENCE_WEIGHTS["required_selector"]
        for selector in self.common_selectors:
            if selectors.get(selector):
                score += CONFIDENCE_WEIGHTS["common_selector"]
        if features["events"].get("Transfer"):
            score += CONFIDENCE_WEIGHTS["transfer_event"]
        score += CONFIDENCE_WEIGHTS["known_pattern"] * len(features["patterns"])
        return round(min(max(score, 0.0), 1.0), 3)

    def implementation_type(self, features: Dict[str, Any]) -> str:
        # proxies carry no token logic of their own
        if features["proxy_patterns"]:
            return "proxy"
        if "openzeppelin" in features["patterns"]:
            return "openzeppelin"
        if "solmate" in features["patterns"]:
            return "solmate"
        return "custom"

    def warnings(self, clean: str, features: Dict[str, Any], is_proxy: bool) -> List[str]:
        out: List[str] = []
        if not features["has_all_required"]:
            names = [SELECTOR_NAMES.get(s, "0x" + s) for s in features["missing_selectors"]]
            out.append("Missing required ERC-20 selectors: " + ", ".join(names))
        if self.require_transfer_event and not features["events"]["Transfer"]:
            out.append("Missing Transfer event (required for ERC-20)")
        if features["total_selectors_found"] < LOW_SELECTOR_COUNT:
            out.append(f"Low function selector count: {features['total_selectors_found']}")
        if len(clean) // 2 < self.short_bytecode_warn_size:
            out.append("Very short bytecode - may be minimal or incomplete")
        if is_proxy:
            out.append("Contract appears to be a proxy - implementation bytecode not available")
        return out

    def _rejected(self, bytecode: Optional[str], message: str) -> BytecodeAnalysis:
        result = self._error_result(message)
        clean = strip_hex_prefix(bytecode) if isinstance(bytecode, str) else ""
        if clean and _HEX_RE.match(clean):
            result.bytecode_length = len(clean) // 2
            result.bytecode_hash = bytecode_hash(clean) if len(clean) % 2 == 0 else None
            proxies = sorted(name for name, p in PROXY_PATTERNS.items() if p in clean)
            if proxies:
                result.is_proxy = True
                result.implementation_type = "proxy"
                result.features = {"proxy_patterns": proxies}
                result.warnings.append(
                    "Contract appears to be a proxy - implementation bytecode not available"
                )
        return result

    def _error_result(self, message: str) -> BytecodeAnalysis:
        return BytecodeAnalysis(
            is_erc20=False,
            confidence=0.0,
            implementation_type="unknown",
            warnings=[message],
        )


def bytecode_hash(clean: str) -> str:
    return "0x" + hashlib.sha256(bytes.fromhex(clean)).hexdigest()
