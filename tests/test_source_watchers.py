import asyncio

from bytecode_classifier import BytecodeClassifier
from chain_utils import TRANSFER_TOPIC0, ZERO_TOPIC
from helpers import (
    CREATED_TOPIC0,
    CREATOR,
    DEX_FACTORY,
    FACTORY,
    OTHER_TOKEN,
    POOL,
    POOL_TOPIC0,
    TOKEN,
    USDC,
    WETH,
    FakeRPC,
    created_log,
    erc20_bytecode,
    make_log,
    pool_log,
    topic,
    word_addr,
    word_uint,
)
from hunter_config import BytecodeScannerConfig, parse_source
from source_watchers import BytecodeWatcher, DexWatcher, FactoryWatcher, guess_platform
from token_resolvers import CreatorResolver, MetadataResolver


def factory_source(**overrides):
    item = {
        "name": "zora",
        "address": FACTORY,
        "platform": "zora",
        "event": "TokenCreated(address indexed creator, address token, string name)",
        "topic0": CREATED_TOPIC0,
        "token_fields": ["token"],
        "start_block": 95,
    }
    item.update(overrides)
    return parse_source(item, "factory")


def dex_source():
    return parse_source(
        {
            "name": "uniswap_v3",
            "address": DEX_FACTORY,
            "event": "PoolCreated(address indexed token0, address indexed token1, uint24 indexed fee, int24 tickSpacing, address pool)",
            "topic0": POOL_TOPIC0,
            "start_block": 95,
        },
        "dex",
    )


def factory_watcher(rpc, storage, source=None):
    return FactoryWatcher(
        source or factory_source(),
        rpc,
        storage,
        MetadataResolver(rpc),
        CreatorResolver(rpc, max_window=10),
        provider_window_limit=10,
    )


def dex_watcher(rpc, storage):
    return DexWatcher(
        dex_source(),
        rpc,
        storage,
        MetadataResolver(rpc),
        CreatorResolver(rpc, max_window=10),
        base_tokens=[WETH, USDC],
        provider_window_limit=10,
    )


def test_schema_log_becomes_token_with_source_detection_method(rpc, storage):
    rpc.logs.append(created_log(TOKEN, CREATOR, 100, log_index=3))
    rpc.set_metadata(TOKEN, "Cat Coin", "CAT", decimals=18, total_supply=10 ** 24)
    watcher = factory_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    result = asyncio.run(watcher.scanner.tick(119))

    assert result.status == "ok"
    row = storage.get_token(TOKEN)
    assert row["detection_method"] == "zora_schema"
    assert row["platform"] == "zora"
    assert row["creator_address"] == CREATOR
    assert row["name"] == "Cat Coin"
    assert row["symbol"] == "CAT"
    assert row["total_supply"] == str(10 ** 24)
    assert row["factory_address"] == FACTORY
    assert row["detection_block_number"] == 100
    assert storage.count_detection_events() == 1
    assert watcher.stats["new_tokens"] == 1
    assert rpc.get_logs_calls[0] == (95, 104, FACTORY, [CREATED_TOPIC0])


def test_event_name_fills_in_when_calls_fail(rpc, storage):
    rpc.logs.append(created_log(TOKEN, CREATOR, 100, name="Only In Event"))
    watcher = factory_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))

    row = storage.get_token(TOKEN)
    assert row["name"] == "Only In Event"
    assert row["symbol"] == ""


def test_replaying_overlapping_window_adds_nothing(rpc, storage):
    rpc.logs.append(created_log(TOKEN, CREATOR, 100, log_index=1))
    rpc.logs.append(created_log(OTHER_TOKEN, CREATOR, 103, log_index=0))
    watcher = factory_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)
    asyncio.run(watcher.scanner.tick(119))
    tokens, events = storage.count_tokens(), storage.count_detection_events()

    replay = factory_watcher(rpc, storage)
    replay.initialize(head=119, fallback_blocks=1000)
    replay.scanner.cursor = 98
    asyncio.run(replay.scanner.tick(119))

    assert (tokens, events) == (2, 2)
    assert storage.count_tokens() == tokens
    assert storage.count_detection_events() == events
    assert replay.stats["new_tokens"] == 0
    assert replay.stats["detection_events"] == 0
    assert replay.stats["processed"] == 2


def test_resume_from_persisted_rows_when_cursor_missing(rpc, storage):
    rpc.logs.append(created_log(TOKEN, CREATOR, 100))
    watcher = factory_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)
    asyncio.run(watcher.scanner.tick(119))
    storage.reset_cursor("zora")

    again = factory_watcher(rpc, storage)

    assert again.initialize(head=119, fallback_blocks=1000) == 101


def test_undecodable_log_goes_to_dead_letters(rpc, storage):
    bad = make_log(FACTORY, [CREATED_TOPIC0, topic(CREATOR)], [word_addr(CREATOR)], 100, log_index=2)
    rpc.logs.append(bad)
    watcher = factory_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))
    asyncio.run(watcher.scanner.tick(119))

    assert storage.count_tokens() == 0
    assert storage.count_dead_letters("zora") == 1
    row = storage.conn.execute("SELECT reason, block_number FROM dead_letters").fetchone()
    assert row["reason"].startswith("no decoding strategy produced a valid token address")
    assert row["block_number"] == 100
    assert watcher.scanner.cursor == 115


def test_default_chain_falls_to_fixed_position_without_schema(rpc, storage):
    source = parse_source(
        {
            "name": "mystery",
            "address": FACTORY,
            "topic0": CREATED_TOPIC0,
            "start_block": 95,
        },
        "factory",
    )
    rpc.logs.append(
        make_log(
            FACTORY,
            [CREATED_TOPIC0, topic(CREATOR)],
            [word_uint(1), word_addr(CREATOR), word_uint(10 ** 18), word_addr(TOKEN)],
            100,
        )
    )
    rpc.set_metadata(TOKEN, "Mystery", "MYS")
    watcher = factory_watcher(rpc, storage, source)
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))

    row = storage.get_token(TOKEN)
    assert row["detection_method"] == "mystery_fixed_position"
    assert row["creator_address"] == CREATOR


def test_creator_taken_from_event_field(rpc, storage):
    source = factory_source(
        event="TokenCreated(address indexed caller, address payout, address token)",
        creator_field="payout",
        counterpart_topic_index=None,
    )
    rpc.logs.append(
        make_log(FACTORY, [CREATED_TOPIC0, topic(OTHER_TOKEN)], [word_addr(CREATOR), word_addr(TOKEN)], 100)
    )
    watcher = factory_watcher(rpc, storage, source)
    watcher.initialize(head=119, fallback_blocks=1000)
    asyncio.run(watcher.scanner.tick(119))

    assert storage.get_token(TOKEN)["creator_address"] == CREATOR


def test_pool_with_one_base_token_records_token_and_pool(rpc, storage):
    rpc.logs.append(pool_log(WETH, TOKEN, POOL, 100, log_index=4))
    rpc.logs.append(make_log(TOKEN, [TRANSFER_TOPIC0, ZERO_TOPIC, topic(CREATOR)], [word_uint(1)], 99))
    rpc.set_metadata(TOKEN, "Based Cat", "BCAT")
    watcher = dex_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))

    row = storage.get_token(TOKEN)
    assert row["detection_method"] == "uniswap_v3_pool"
    assert row["platform"] == "dex_uniswap_v3"
    assert row["creator_address"] == CREATOR
    pool = storage.conn.execute("SELECT * FROM dex_pools").fetchone()
    assert pool["pool_address"] == POOL
    assert pool["token0_address"] == WETH
    assert pool["token1_address"] == TOKEN
    event = storage.conn.execute("SELECT * FROM detection_events").fetchone()
    assert event["event_type"] == "uniswap_v3_pool_creation"
    assert event["token_address"] == TOKEN


def test_pool_without_single_base_token_is_dropped(rpc, storage):
    rpc.logs.append(pool_log(TOKEN, OTHER_TOKEN, POOL, 100, log_index=0))
    rpc.logs.append(pool_log(WETH, USDC, POOL, 101, log_index=0))
    watcher = dex_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))

    assert storage.count_tokens() == 0
    assert storage.count_dead_letters("uniswap_v3") == 2
    reasons = {r["reason"] for r in storage.conn.execute("SELECT reason FROM dead_letters")}
    assert reasons == {
        "pool pairs 0 base token(s), need exactly one",
        "pool pairs 2 base token(s), need exactly one",
    }


def test_known_token_in_new_pool_keeps_first_detection(rpc, storage):
    rpc.logs.append(created_log(TOKEN, CREATOR, 100))
    rpc.logs.append(pool_log(TOKEN, WETH, POOL, 103))
    rpc.set_metadata(TOKEN, "Cat Coin", "CAT")
    factory = factory_watcher(rpc, storage)
    factory.initialize(head=119, fallback_blocks=1000)
    asyncio.run(factory.scanner.tick(119))
    dex = dex_watcher(rpc, storage)
    dex.initialize(head=119, fallback_blocks=1000)

    asyncio.run(dex.scanner.tick(119))

    row = storage.get_token(TOKEN)
    assert row["detection_method"] == "zora_schema"
    assert storage.count_detection_events() == 2
    assert dex.stats["new_tokens"] == 0


def test_guess_platform():
    assert guess_platform("Flaunch Cat", "FCAT", "dex_aerodrome") == "flaunch"
    assert guess_platform("Mint Club Token", "MCT", "dex_aerodrome") == "mint_club"
    assert guess_platform("Cat", "CAT", "dex_aerodrome") == "dex_aerodrome"


def bytecode_chain(rpc, code):
    deploy = "0x" + "d1" * 32
    call = "0x" + "d2" * 32
    rpc.blocks[100] = {
        "number": hex(100),
        "transactions": [
            {"hash": deploy, "from": CREATOR, "to": None, "transactionIndex": "0x0"},
            {"hash": call, "from": CREATOR, "to": TOKEN, "transactionIndex": "0x1"},
        ],
    }
    rpc.receipts[deploy] = {"contractAddress": TOKEN, "status": "0x1"}
    rpc.codes[TOKEN] = code


def bytecode_watcher(rpc, storage):
    return BytecodeWatcher(
        BytecodeScannerConfig(enabled=True, max_window=20, start_block=95),
        rpc,
        storage,
        MetadataResolver(rpc),
    )


def test_bytecode_scan_records_erc20_deployments(rpc, storage):
    bytecode_chain(rpc, erc20_bytecode())
    rpc.set_metadata(TOKEN, "Raw Token", "RAW", decimals=9, total_supply=5)
    watcher = bytecode_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))

    scan = storage.get_bytecode_scan(TOKEN)
    assert scan["is_erc20"]
    assert scan["creator_address"] == CREATOR
    assert scan["block_number"] == 100
    row = storage.get_token(TOKEN)
    assert row["detection_method"] == "bytecode_scan"
    assert row["platform"] == "erc20"
    assert row["status"] == "active"
    assert row["decimals"] == 9
    assert row["factory_address"] is None
    assert storage.count_detection_events() == 0
    assert watcher.scanner.cursor == 115


def test_bytecode_scan_is_once_per_contract(rpc, storage):
    bytecode_chain(rpc, erc20_bytecode())
    watcher = bytecode_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)
    asyncio.run(watcher.scanner.tick(119))

    watcher.scanner.cursor = 95
    asyncio.run(watcher.scanner.tick(119))

    assert rpc.get_code_calls == [TOKEN]


def test_missing_block_is_retried_not_skipped(storage):
    class LaggingRPC(FakeRPC):
        misses = 2

        async def get_block_by_number(self, block_number, full_transactions=False):
            if block_number == 100 and self.misses:
                self.misses -= 1
                return None
            return await super().get_block_by_number(block_number, full_transactions)

    rpc = LaggingRPC(latest=1000)
    bytecode_chain(rpc, erc20_bytecode())
    watcher = bytecode_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    first = asyncio.run(watcher.scanner.tick(119))

    assert (first.status, first.to_block) == ("ok", 99)
    assert watcher.scanner.cursor == 100
    assert not storage.has_bytecode_scan(TOKEN)

    asyncio.run(watcher.scanner.tick(119))

    assert storage.get_bytecode_scan(TOKEN)["is_erc20"]
    assert watcher.scanner.cursor > 100


def test_non_erc20_deployment_is_scanned_but_not_a_token(rpc, storage):
    bytecode_chain(rpc, erc20_bytecode(["a9059cbb", "dd62ed3e"]))
    watcher = bytecode_watcher(rpc, storage)
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))

    assert storage.has_bytecode_scan(TOKEN)
    assert not storage.get_bytecode_scan(TOKEN)["is_erc20"]
    assert storage.count_tokens() == 0


def test_custom_classifier_is_used(rpc, storage):
    bytecode_chain(rpc, erc20_bytecode())
    watcher = BytecodeWatcher(
        BytecodeScannerConfig(enabled=True, max_window=20, start_block=95),
        rpc,
        storage,
        MetadataResolver(rpc),
        classifier=BytecodeClassifier(min_contract_size=5000, max_bytecode_size=24576),
    )
    watcher.initialize(head=119, fallback_blocks=1000)

    asyncio.run(watcher.scanner.tick(119))

    scan = storage.get_bytecode_scan(TOKEN)
    assert scan["confidence"] == 0
    assert any("too short" in w for w in scan["warnings"])
    assert storage.count_tokens() == 0
