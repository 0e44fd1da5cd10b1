import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

from chain_utils import ZERO_ADDRESS, normalize_address

logger = logging.getLogger(__name__)

ENRICHABLE_FIELDS = frozenset({"name", "symbol", "decimals", "total_supply"})
TOKEN_STATUSES = {"detected", "active"}
CURSOR_KEY_PREFIX = "cursor:"


@dataclass
class Token:
    address: str
    detection_method: str
    platform: str
    name: str = ""
    symbol: str = ""
    decimals: int = 18
    total_supply: int = 0
    creator_address: str = ZERO_ADDRESS
    detection_block_number: Optional[int] = None
    detection_transaction_hash: Optional[str] = None
    factory_address: Optional[str] = None
    status: str = "detected"
    resolved_fields: FrozenSet[str] = field(default_factory=lambda: ENRICHABLE_FIELDS)


@dataclass
class DetectionEvent:
    event_type: str
    contract_address: str
    block_number: int
    transaction_hash: str
    log_index: int
    token_address: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BytecodeScan:
    contract_address: str
    is_erc20: bool
    confidence: float
    implementation_type: str
    features: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    creator_address: Optional[str] = None
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    bytecode_hash: Optional[str] = None
    bytecode_length: int = 0


@dataclass
class DexPool:
    pool_address: str
    dex_name: str
    token0: str
    token1: str
    factory_address: str
    creation_block: int
    creation_transaction_hash: str


class Storage:
    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path)
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.executescript(
            """
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;

            CREATE TABLE IF NOT EXISTS tokens (
                address TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                symbol TEXT NOT NULL DEFAULT '',
                decimals INTEGER NOT NULL DEFAULT 18,
                total_supply TEXT NOT NULL DEFAULT '0',
                creator_address TEXT NOT NULL,
                platform TEXT NOT NULL,
                detection_method TEXT NOT NULL,
                detection_block_number INTEGER,
                detection_transaction_hash TEXT,
                factory_address TEXT,
                status TEXT NOT NULL DEFAULT 'detected',
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tokens_creator ON tokens(creator_address);
            CREATE INDEX IF NOT EXISTS idx_tokens_block ON tokens(detection_block_number);

            CREATE TABLE IF NOT EXISTS detection_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                contract_address TEXT NOT NULL,
                block_number INTEGER NOT NULL,
                transaction_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                token_address TEXT,
                raw_data TEXT,
                created_at INTEGER NOT NULL,
                UNIQUE(contract_address, block_number, log_index)
            );

            CREATE TABLE IF NOT EXISTS bytecode_scans (
                contract_address TEXT PRIMARY KEY,
                creator_address TEXT,
                transaction_hash TEXT,
                block_number INTEGER,
                bytecode_hash TEXT,
                bytecode_length INTEGER NOT NULL,
                is_erc20 INTEGER NOT NULL,
                confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
                implementation_type TEXT NOT NULL,
                features TEXT NOT NULL,
                warnings TEXT NOT NULL,
                scanned_at INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_bytecode_scans_erc20 ON bytecode_scans(is_erc20);
            CREATE INDEX IF NOT EXISTS idx_bytecode_scans_block ON bytecode_scans(block_number);

            CREATE TABLE IF NOT EXISTS dex_pools (
                pool_address TEXT PRIMARY KEY,
                dex_name TEXT NOT NULL,
                token0_address TEXT NOT NULL,
                token1_address TEXT NOT NULL,
                factory_address TEXT NOT NULL,
                creation_block INTEGER NOT NULL,
                creation_transaction_hash TEXT NOT NULL,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS dead_letters (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source TEXT NOT NULL,
                tx_hash TEXT NOT NULL,
                log_index INTEGER NOT NULL,
                block_number INTEGER,
                reason TEXT NOT NULL,
                payload TEXT,
                created_at INTEGER NOT NULL,
                UNIQUE(source, tx_hash, log_index)
            );

            CREATE TABLE IF NOT EXISTS system_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            );
            """
        )
        self.conn.commit()

    def get_state(self, key: str) -> Optional[str]:
        cur = self.conn.execute("SELECT value FROM system_state WHERE key = ?", (key,))
        row = cur.fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        now = int(time.time())
        self.conn.execute(
            """
            INSERT INTO system_state(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, value, now),
        )
        self.conn.commit()

    def delete_state(self, key: str) -> bool:
        cur = self.conn.execute("DELETE FROM system_state WHERE key = ?", (key,))
        self.conn.commit()
        return cur.rowcount > 0

    def get_last_processed_block(self, source: str) -> Optional[int]:
        raw = self.get_state(CURSOR_KEY_PREFIX + source)
        return int(raw) if raw is not None else None

    def set_last_processed_block(self, source: str, block_number: int) -> None:
        self.set_state(CURSOR_KEY_PREFIX + source, str(int(block_number)))

    def reset_cursor(self, source: str) -> bool:
        return self.delete_state(CURSOR_KEY_PREFIX + source)

    def list_cursors(self) -> Dict[str, int]:
        rows = self.conn.execute(
            "SELECT key, value FROM system_state WHERE key LIKE ?",
            (CURSOR_KEY_PREFIX + "%",),
        ).fetchall()
        return {row["key"][len(CURSOR_KEY_PREFIX):]: int(row["value"]) for row in rows}

    def max_detection_block(self, contract_address: str) -> Optional[int]:
        row = self.conn.execute(
            "SELECT MAX(block_number) AS last_block FROM detection_events WHERE contract_address = ?",
            (contract_address.lower(),),
        ).fetchone()
        return int(row["last_block"]) if row and row["last_block"] is not None else None

    def max_bytecode_scan_block(self) -> Optional[int]:
        row = self.conn.execute(
            "SELECT MAX(block_number) AS last_block FROM bytecode_scans"
        ).fetchone()
        return int(row["last_block"]) if row and row["last_block"] is not None else None

    def insert_token(self, token: Token) -> bool:
        if token.status not in TOKEN_STATUSES:
            raise ValueError(f"invalid token status: {token.status}")
        now = int(time.time())
        address = normalize_address(token.address)
        existed = (
            self.conn.execute("SELECT 1 FROM tokens WHERE address = ?", (address,)).fetchone()
            is not None
        )
        resolved = token.resolved_fields
        self.conn.execute(
            """
            INSERT INTO tokens(
                address, name, symbol, decimals, total_supply, creator_address,
                platform, detection_method, detection_block_number,
                detection_transaction_hash, factory_address, status,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
                name = CASE WHEN ? THEN excluded.name ELSE tokens.name END,
                symbol = CASE WHEN ? THEN excluded.symbol ELSE tokens.symbol END,
                decimals = CASE WHEN ? THEN excluded.decimals ELSE tokens.decimals END,
                total_supply = CASE WHEN ? THEN excluded.total_supply ELSE tokens.total_supply END,
                creator_address = CASE
                    WHEN tokens.creator_address = ? THEN excluded.creator_address
                    ELSE tokens.creator_address
                END,
                updated_at = excluded.updated_at
            """,
            (
                address,
                token.name,
                token.symbol,
                int(token.decimals),
                str(int(token.total_supply)),
                (token.creator_address or ZERO_ADDRESS).lower(),
                token.platform,
                token.detection_method,
                token.detection_block_number,
                token.detection_transaction_hash,
                token.factory_address.lower() if token.factory_address else None,
                token.status,
                now,
                now,
                int("name" in resolved),
                int("symbol" in resolved),
                int("decimals" in resolved),
                int("total_supply" in resolved),
                ZERO_ADDRESS,
            ),
        )
        self.conn.commit()
        return not existed

    def get_token(self, address: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM tokens WHERE address = ?", (address.lower(),)
        ).fetchone()
        return dict(row) if row else None

    def token_exists(self, address: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM tokens WHERE address = ?", (address.lower(),)
        ).fetchone()
        return row is not None

    def insert_detection_event(self, event: DetectionEvent) -> bool:
        now = int(time.time())
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO detection_events(
                event_type, contract_address, block_number, transaction_hash,
                log_index, token_address, raw_data, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.event_type,
                event.contract_address.lower(),
                int(event.block_number),
                event.transaction_hash.lower(),
                int(event.log_index),
                event.token_address.lower() if event.token_address else None,
                json.dumps(event.raw_data, ensure_ascii=False, default=str),
                now,
            ),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def has_bytecode_scan(self, contract_address: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM bytecode_scans WHERE contract_address = ?",
            (contract_address.lower(),),
        ).fetchone()
        return row is not None

    def upsert_bytecode_scan(self, scan: BytecodeScan) -> bool:
        if not 0 <= scan.confidence <= 1:
            raise ValueError(f"confidence out of range: {scan.confidence}")
        now = int(time.time())
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO bytecode_scans(
                contract_address, creator_address, transaction_hash, block_number,
                bytecode_hash, bytecode_length, is_erc20, confidence,
                implementation_type, features, warnings, scanned_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                scan.contract_address.lower(),
                scan.creator_address.lower() if scan.creator_address else None,
                scan.transaction_hash.lower() if scan.transaction_hash else None,
                scan.block_number,
                scan.bytecode_hash,
                int(scan.bytecode_length),
                int(bool(scan.is_erc20)),
                float(scan.confidence),
                scan.implementation_type,
                json.dumps(scan.features, sort_keys=True),
                json.dumps(scan.warnings),
                now,
            ),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def get_bytecode_scan(self, contract_address: str) -> Optional[Dict[str, Any]]:
        row = self.conn.execute(
            "SELECT * FROM bytecode_scans WHERE contract_address = ?",
            (contract_address.lower(),),
        ).fetchone()
        if not row:
            return None
        out = dict(row)
        out["is_erc20"] = bool(out["is_erc20"])
        out["features"] = json.loads(out["features"])
        out["warnings"] = json.loads(out["warnings"])
        return out

    def insert_dex_pool(self, pool: DexPool) -> bool:
        now = int(time.time())
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO dex_pools(
                pool_address, dex_name, token0_address, token1_address,
                factory_address, creation_block, creation_transaction_hash, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pool.pool_address.lower(),
                pool.dex_name,
                pool.token0.lower(),
                pool.token1.lower(),
                pool.factory_address.lower(),
                int(pool.creation_block),
                pool.creation_transaction_hash.lower(),
                now,
            ),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def save_dead_letter(
        self,
        source: str,
        tx_hash: str,
        log_index: int,
        reason: str,
        block_number: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        cur = self.conn.execute(
            """
            INSERT OR IGNORE INTO dead_letters(
                source, tx_hash, log_index, block_number, reason, payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source,
                tx_hash.lower(),
                int(log_index),
                block_number,
                reason,
                json.dumps(payload, ensure_ascii=False, default=str) if payload is not None else None,
                int(time.time()),
            ),
        )
        self.conn.commit()
        return cur.rowcount == 1

    def count_tokens(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) AS n FROM tokens").fetchone()["n"])

    def count_detection_events(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) AS n FROM detection_events").fetchone()["n"])

    def count_dead_letters(self, source: Optional[str] = None) -> int:
        if source:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM dead_letters WHERE source = ?", (source,)
            ).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM dead_letters").fetchone()
        return int(row["n"])

    def get_stats(self) -> Dict[str, Any]:
        scans = self.conn.execute(
            """
            SELECT
                COUNT(*) AS total_scans,
                COALESCE(SUM(CASE WHEN is_erc20 = 1 THEN 1 ELSE 0 END), 0) AS erc20_detected,
                MIN(block_number) AS earliest_block,
                MAX(block_number) AS latest_block,
                MAX(scanned_at) AS last_scan
            FROM bytecode_scans
            """
        ).fetchone()
        by_method = self.conn.execute(
            """
            SELECT detection_method, COUNT(*) AS n
            FROM tokens
            GROUP BY detection_method
            ORDER BY n DESC
            """
        ).fetchall()
        total_scans = int(scans["total_scans"])
        erc20 = int(scans["erc20_detected"])
        return {
            "tokens": self.count_tokens(),
            "tokens_by_detection_method": {r["detection_method"]: int(r["n"]) for r in by_method},
            "detection_events": self.count_detection_events(),
            "dead_letters": self.count_dead_letters(),
            "bytecode_scans": {
                "total_scans": total_scans,
                "erc20_detected": erc20,
                "non_erc20": total_scans - erc20,
                "earliest_block": scans["earliest_block"],
                "latest_block": scans["latest_block"],
                "last_scan": scans["last_scan"],
            },
            "cursors": self.list_cursors(),
        }
