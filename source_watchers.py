import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bytecode_classifier import BytecodeClassifier
from chain_utils import ZERO_ADDRESS, decode_topic_address, is_address, normalize_address, parse_hex_int
from event_decoder import EventDecoder, PermanentDecodeError
from hunter_config import BYTECODE_SOURCE_NAME, BytecodeScannerConfig, SourceConfig
from range_scanner import RangeScanner
from rpc_client import RPCClient, TransientProviderError
from token_resolvers import CreatorResolver, MetadataResolver, TokenMetadata
from token_storage import BytecodeScan, DetectionEvent, DexPool, Storage, Token

logger = logging.getLogger(__name__)

BYTECODE_DETECTION_METHOD = "bytecode_scan"
BYTECODE_PLATFORM = "erc20"


def guess_platform(name: str, symbol: str, default: str) -> str:
    text = f"{name} {symbol}".lower()
    if "flaunch" in text:
        return "flaunch"
    if "mint club" in text or "mint" in text:
        return "mint_club"
    return default


def log_position(log: Dict[str, Any]) -> Tuple[str, int, int]:
    return (
        str(log.get("transactionHash") or "").lower(),
        parse_hex_int(log.get("logIndex")),
        parse_hex_int(log.get("blockNumber")),
    )


def apply_event_metadata(metadata: TokenMetadata, fields: Dict[str, Any]) -> TokenMetadata:
    # event name/symbol fill fields eth_call left empty
    resolved = set(metadata.resolved)
    name, symbol = metadata.name, metadata.symbol
    if "name" not in resolved and isinstance(fields.get("name"), str) and fields["name"].strip():
        name = fields["name"].strip()[:200]
        resolved.add("name")
    if "symbol" not in resolved and isinstance(fields.get("symbol"), str) and fields["symbol"].strip():
        symbol = fields["symbol"].strip()[:50]
        resolved.add("symbol")
    return TokenMetadata(
        name=name,
        symbol=symbol,
        decimals=metadata.decimals,
        total_supply=metadata.total_supply,
        resolved=frozenset(resolved),
    )


class SourceWatcher:
    kind = "base"

    def __init__(
        self,
        name: str,
        rpc: RPCClient,
        storage: Storage,
        metadata: MetadataResolver,
        max_window: int,
        provider_window_limit: int,
        poll_interval_sec: float,
        start_block: Optional[int] = None,
        min_window_retries: int = 3,
    ):
        self.name = name
        self.rpc = rpc
        self.storage = storage
        self.metadata = metadata
        self.start_block = start_block
        self.scanner = RangeScanner(
            name=name,
            storage=storage,
            fetch=self.fetch,
            handle=self.handle,
            max_window=max_window,
            provider_window_limit=provider_window_limit,
            poll_interval_sec=poll_interval_sec,
            min_window_retries=min_window_retries,
        )
        self.stats: Dict[str, int] = {
            "processed": 0,
            "new_tokens": 0,
            "detection_events": 0,
            "dead_letters": 0,
        }

    def last_persisted_block(self) -> Optional[int]:
        raise NotImplementedError

    def initialize(self, head: int, fallback_blocks: int, max_lag_blocks: int = 0) -> int:
        return self.scanner.initialize(
            head,
            fallback_blocks,
            start_block=self.start_block,
            persisted_block=self.last_persisted_block(),
            max_lag_blocks=max_lag_blocks,
        )

    async def fetch(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def process(self, item: Dict[str, Any], head: int) -> None:
        raise NotImplementedError

    def item_position(self, item: Dict[str, Any]) -> Tuple[str, int, int]:
        return log_position(item)

    async def handle(self, items: List[Dict[str, Any]], from_block: int, to_block: int) -> None:
        for item in items:
            try:
                await self.process(item, to_block)
                self.stats["processed"] += 1
            except PermanentDecodeError as e:
                logger.info("%s: dropped log: %s", self.name, e.reason)
                self.dead_letter(item, e.reason)
            except Exception as e:
                tx_hash, _, block = self.item_position(item)
                logger.exception("%s: failed to process %s in block %d", self.name, tx_hash, block)
                self.dead_letter(item, f"process_failed: {type(e).__name__}: {e}")

    def dead_letter(self, item: Dict[str, Any], reason: str) -> None:
        tx_hash, index, block = self.item_position(item)
        if self.storage.save_dead_letter(
            source=self.name,
            tx_hash=tx_hash,
            log_index=index,
            reason=reason,
            block_number=block,
            payload=item,
        ):
            self.stats["dead_letters"] += 1

    def save_token(self, token: Token) -> bool:
        created = self.storage.insert_token(token)
        if created:
            self.stats["new_tokens"] += 1
            logger.info(
                "%s: new token %s %s (%s) via %s at block %s",
                self.name,
                token.address,
                token.symbol or "?",
                token.name or "?",
                token.detection_method,
                token.detection_block_number,
            )
        return created

    def save_event(self, event: DetectionEvent) -> bool:
        created = self.storage.insert_detection_event(event)
        if created:
            self.stats["detection_events"] += 1
        return created

    def snapshot(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind}
        out.update(self.stats)
        out["scanner"] = self.scanner.snapshot()
        return out


class FactoryWatcher(SourceWatcher):
    kind = "factory"

    def __init__(
        self,
        source: SourceConfig,
        rpc: RPCClient,
        storage: Storage,
        metadata: MetadataResolver,
        creators: CreatorResolver,
        provider_window_limit: int,
        min_window_retries: int = 3,
    ):
        super().__init__(
            name=source.name,
            rpc=rpc,
            storage=storage,
            metadata=metadata,
            max_window=source.max_window,
            provider_window_limit=provider_window_limit,
            poll_interval_sec=source.poll_interval_sec,
            start_block=source.start_block,
            min_window_retries=min_window_retries,
        )
        self.source = source
        self.creators = creators
        self.decoder = self.build_decoder()

    def build_decoder(self) -> EventDecoder:
        return EventDecoder.for_source(
            schema=self.source.schema,
            strategy_names=self.source.decode_strategies,
            offset_word_index=self.source.offset_word_index,
            fixed_offsets=self.source.fixed_offsets,
        )

    def last_persisted_block(self) -> Optional[int]:
        return self.storage.max_detection_block(self.source.address)

    async def fetch(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        topics = [self.source.topic0] if self.source.topic0 else None
        logs = await self.rpc.get_logs(
            from_block=from_block,
            to_block=to_block,
            address=self.source.address,
            topics=topics,
        )
        return sorted(
            logs,
            key=lambda lg: (parse_hex_int(lg.get("blockNumber")), parse_hex_int(lg.get("logIndex"))),
        )

    def counterpart_of(self, log: Dict[str, Any]) -> Optional[str]:
        idx = self.source.counterpart_topic_index
        topics = log.get("topics") or []
        if idx is None or idx <= 0 or len(topics) <= idx:
            return None
        addr = decode_topic_address(str(topics[idx]))
        return None if addr == ZERO_ADDRESS else addr

    async def creator_of(
        self, token_address: str, fields: Dict[str, Any], counterpart: Optional[str], block: int, head: int
    ) -> str:
        field_name = self.source.schema.creator_field if self.source.schema else None
        if field_name:
            value = fields.get(field_name)
            if is_address(value) and normalize_address(value) != ZERO_ADDRESS:
                return normalize_address(value)
        if counterpart:
            return counterpart
        return await self.creators.resolve(token_address, block, head)

    async def process(self, log: Dict[str, Any], head: int) -> None:
        tx_hash, log_index, block = log_position(log)
        counterpart = self.counterpart_of(log)
        result = self.decoder.decode_or_raise(log, counterpart)
        token_address = normalize_address(result.token_address)

        creator = await self.creator_of(token_address, result.fields, counterpart, block, head)
        metadata = apply_event_metadata(await self.metadata.resolve(token_address), result.fields)

        self.save_token(
            Token(
                address=token_address,
                detection_method=f"{self.source.platform}_{result.strategy}",
                platform=self.source.platform,
                name=metadata.name,
                symbol=metadata.symbol,
                decimals=metadata.decimals,
                total_supply=metadata.total_supply,
                creator_address=creator,
                detection_block_number=block,
                detection_transaction_hash=tx_hash,
                factory_address=self.source.address,
                resolved_fields=metadata.resolved,
            )
        )
        self.save_event(
            DetectionEvent(
                event_type=self.source.event_type,
                contract_address=self.source.address,
                block_number=block,
                transaction_hash=tx_hash,
                log_index=log_index,
                token_address=token_address,
                raw_data={
                    "topics": log.get("topics") or [],
                    "data": log.get("data") or "0x",
                    "strategy": result.strategy,
                    "fields": result.fields,
                },
            )
        )


class DexWatcher(FactoryWatcher):
    kind = "dex"

    def __init__(
        self,
        source: SourceConfig,
        rpc: RPCClient,
        storage: Storage,
        metadata: MetadataResolver,
        creators: CreatorResolver,
        base_tokens: Iterable[str],
        provider_window_limit: int,
        min_window_retries: int = 3,
    ):
        self.base_tokens = {normalize_address(x) for x in base_tokens}
        super().__init__(
            source,
            rpc,
            storage,
            metadata,
            creators,
            provider_window_limit=provider_window_limit,
            min_window_retries=min_window_retries,
        )

    def build_decoder(self) -> EventDecoder:
        return EventDecoder.for_source(
            schema=self.source.schema,
            strategy_names=self.source.decode_strategies,
            offset_word_index=self.source.offset_word_index,
            fixed_offsets=self.source.fixed_offsets,
            ignore_addresses=self.base_tokens,
        )

    def pair_of(self, fields: Dict[str, Any]) -> Optional[Tuple[str, str]]:
        schema = self.source.schema
        if schema is None or len(schema.token_fields) < 2:
            return None
        token0 = fields.get(schema.token_fields[0])
        token1 = fields.get(schema.token_fields[1])
        if not is_address(token0) or not is_address(token1):
            return None
        return normalize_address(token0), normalize_address(token1)

    async def process(self, log: Dict[str, Any], head: int) -> None:
        tx_hash, log_index, block = log_position(log)
        result = self.decoder.decode(log, self.counterpart_of(log))
        pair = self.pair_of(result.fields)
        if pair is None:
            raise PermanentDecodeError(result.reason or "pool event could not be decoded", log)
        if not result.ok:
            base_sides = sum(1 for t in pair if t in self.base_tokens)
            raise PermanentDecodeError(
                f"pool pairs {base_sides} base token(s), need exactly one", log
            )
        token_address = normalize_address(result.token_address)
        token0, token1 = pair

        pool_field = self.source.schema.pool_field if self.source.schema else None
        pool_address = result.fields.get(pool_field) if pool_field else None
        if is_address(pool_address):
            self.storage.insert_dex_pool(
                DexPool(
                    pool_address=normalize_address(pool_address),
                    dex_name=self.source.name,
                    token0=token0,
                    token1=token1,
                    factory_address=self.source.address,
                    creation_block=block,
                    creation_transaction_hash=tx_hash,
                )
            )

        existing = self.storage.get_token(token_address)
        if existing is None or not existing["name"] or not existing["symbol"]:
            metadata = await self.metadata.resolve(token_address)
            creator = await self.creators.resolve(token_address, block, head)
            self.save_token(
                Token(
                    address=token_address,
                    detection_method=f"{self.source.name}_pool",
                    platform=guess_platform(metadata.name, metadata.symbol, self.source.platform),
                    name=metadata.name,
                    symbol=metadata.symbol,
                    decimals=metadata.decimals,
                    total_supply=metadata.total_supply,
                    creator_address=creator,
                    detection_block_number=block,
                    detection_transaction_hash=tx_hash,
                    factory_address=self.source.address,
                    resolved_fields=metadata.resolved,
                )
            )

        self.save_event(
            DetectionEvent(
                event_type=self.source.event_type,
                contract_address=self.source.address,
                block_number=block,
                transaction_hash=tx_hash,
                log_index=log_index,
                token_address=token_address,
                raw_data={
                    "token0": token0,
                    "token1": token1,
                    "pool": pool_address,
                    "fields": result.fields,
                },
            )
        )


class BytecodeWatcher(SourceWatcher):
    kind = "bytecode"

    def __init__(
        self,
        cfg: BytecodeScannerConfig,
        rpc: RPCClient,
        storage: Storage,
        metadata: MetadataResolver,
        classifier: Optional[BytecodeClassifier] = None,
        min_window_retries: int = 3,
    ):
        super().__init__(
            name=BYTECODE_SOURCE_NAME,
            rpc=rpc,
            storage=storage,
            metadata=metadata,
            max_window=cfg.max_window,
            provider_window_limit=cfg.max_window,
            poll_interval_sec=cfg.poll_interval_sec,
            start_block=cfg.start_block,
            min_window_retries=min_window_retries,
        )
        self.classifier = classifier or BytecodeClassifier(
            min_confidence=cfg.min_erc20_confidence,
            required_selectors=cfg.required_selectors,
            common_selectors=cfg.common_selectors,
            require_transfer_event=cfg.require_transfer_event,
            min_contract_size=cfg.min_contract_size,
            max_bytecode_size=cfg.max_bytecode_size,
            short_bytecode_warn_size=cfg.short_bytecode_warn_size,
        )
        self.stats["scanned"] = 0
        self.stats["erc20"] = 0

    def last_persisted_block(self) -> Optional[int]:
        return self.storage.max_bytecode_scan_block()

    def item_position(self, item: Dict[str, Any]) -> Tuple[str, int, int]:
        return (
            str(item.get("hash") or "").lower(),
            parse_hex_int(item.get("transactionIndex")),
            parse_hex_int(item.get("blockNumber")),
        )

    async def fetch(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        creations: List[Dict[str, Any]] = []
        for n in range(from_block, to_block + 1):
            block = await self.rpc.get_block_by_number(n, True)
            if not block:
                raise TransientProviderError(
                    f"RPC error: block {n} not available yet", kind="block_unavailable"
                )
            for tx in block.get("transactions") or []:
                if not isinstance(tx, dict) or tx.get("to"):
                    continue
                creations.append(
                    {
                        "hash": tx.get("hash"),
                        "from": tx.get("from"),
                        "blockNumber": n,
                        "transactionIndex": tx.get("transactionIndex"),
                    }
                )
        return creations

    async def process(self, tx: Dict[str, Any], head: int) -> None:
        tx_hash, _, block = self.item_position(tx)
        receipt = await self.rpc.get_receipt(tx_hash)
        if not receipt or not receipt.get("contractAddress"):
            return
        if receipt.get("status") and int(receipt["status"], 16) == 0:
            return
        address = normalize_address(receipt["contractAddress"])
        if self.storage.has_bytecode_scan(address):
            return

        code = await self.rpc.get_code(address)
        if not code or code == "0x":
            return
        analysis = self.classifier.analyze(code)
        creator = normalize_address(tx["from"]) if is_address(tx.get("from")) else None
        self.storage.upsert_bytecode_scan(
            BytecodeScan(
                contract_address=address,
                is_erc20=analysis.is_erc20,
                confidence=analysis.confidence,
                implementation_type=analysis.implementation_type,
                features=analysis.features,
                warnings=analysis.warnings,
                creator_address=creator,
                transaction_hash=tx_hash,
                block_number=block,
                bytecode_hash=analysis.bytecode_hash,
                bytecode_length=analysis.bytecode_length,
            )
        )
        self.stats["scanned"] += 1
        if not analysis.is_erc20:
            logger.debug(
                "bytecode: %s not ERC-20 (confidence %.3f)", address, analysis.confidence
            )
            return

        self.stats["erc20"] += 1
        metadata = await self.metadata.resolve(address)
        self.save_token(
            Token(
                address=address,
                detection_method=BYTECODE_DETECTION_METHOD,
                platform=BYTECODE_PLATFORM,
                name=metadata.name,
                symbol=metadata.symbol,
                decimals=metadata.decimals,
                total_supply=metadata.total_supply,
                creator_address=creator or ZERO_ADDRESS,
                detection_block_number=block,
                detection_transaction_hash=tx_hash,
                status="active",
                resolved_fields=metadata.resolved,
            )
        )
