import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from rpc_client import TransientProviderError
from token_storage import Storage

logger = logging.getLogger(__name__)

FetchFn = Callable[[int, int], Awaitable[List[Any]]]
HandleFn = Callable[[List[Any], int, int], Awaitable[None]]
HeadFn = Callable[[], Awaitable[int]]


@dataclass
class ScanResult:
    status: str
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    items: int = 0
    window: int = 0


class RangeScanner:
    def __init__(
        self,
        name: str,
        storage: Storage,
        fetch: FetchFn,
        handle: HandleFn,
        max_window: int,
        provider_window_limit: int,
        poll_interval_sec: float,
        min_window_retries: int = 3,
        retry_backoff_sec: float = 1.0,
    ):
        self.name = name
        self.storage = storage
        self.fetch = fetch
        self.handle = handle
        self.max_window = max(1, min(max_window, provider_window_limit))
        self.window = self.max_window
        self.poll_interval_sec = poll_interval_sec
        self.min_window_retries = max(1, min_window_retries)
        self.retry_backoff_sec = retry_backoff_sec
        self.cursor: Optional[int] = None
        self._in_flight = False
        self.stats: Dict[str, Any] = {
            "ticks": 0,
            "batches": 0,
            "items": 0,
            "transient_errors": 0,
            "fetch_errors": 0,
            "skipped_blocks": 0,
            "tick_errors": 0,
            "last_result": None,
        }

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def initialize(
        self,
        head: int,
        fallback_blocks: int,
        start_block: Optional[int] = None,
        persisted_block: Optional[int] = None,
        max_lag_blocks: int = 0,
    ) -> int:
        last = self.storage.get_last_processed_block(self.name)
        origin = "cursor"
        if last is None and persisted_block is not None:
            last = persisted_block
            origin = "persisted rows"
        if last is not None:
            cursor = last + 1
        elif start_block is not None:
            cursor = start_block
            origin = "configured start block"
        else:
            cursor = max(0, head - fallback_blocks)
            origin = "fallback window"

        if max_lag_blocks > 0 and head - cursor > max_lag_blocks and head - fallback_blocks > cursor:
            jumped = max(cursor, head - fallback_blocks)
            logger.warning(
                "%s: cursor %d is %d blocks behind head, jumping forward to %d",
                self.name,
                cursor,
                head - cursor,
                jumped,
            )
            cursor = jumped
        self.cursor = cursor
        logger.info("%s: starting at block %d (from %s)", self.name, cursor, origin)
        return cursor

    def _advance(self, last_block: int) -> None:
        next_block = last_block + 1
        if self.cursor is not None and next_block <= self.cursor:
            return
        self.storage.set_last_processed_block(self.name, last_block)
        self.cursor = next_block

    async def tick(self, head: int) -> ScanResult:
        if self.cursor is None:
            raise RuntimeError(f"{self.name}: scanner is not initialized")
        if self._in_flight:
            return ScanResult("busy", window=self.window)
        self._in_flight = True
        try:
            self.stats["ticks"] += 1
            result = await self._scan(head)
            self.stats["last_result"] = result.status
            return result
        finally:
            self._in_flight = False

    async def _scan(self, head: int) -> ScanResult:
        from_block = self.cursor
        assert from_block is not None
        if from_block >= head:
            return ScanResult("idle", from_block=from_block, window=self.window)

        window = min(self.window, self.max_window)
        failures = 0
        while True:
            to_block = min(from_block + window - 1, head)
            try:
                items = await self.fetch(from_block, to_block)
            except TransientProviderError as e:
                self.stats["transient_errors"] += 1
                if window > 1:
                    smaller = max(1, window // 2)
                    logger.warning(
                        "%s: %s for blocks %d-%d, shrinking window %d -> %d",
                        self.name,
                        e,
                        from_block,
                        to_block,
                        window,
                        smaller,
                    )
                    window = smaller
                    self.window = smaller
                    continue
                failures += 1
                if failures >= self.min_window_retries:
                    logger.warning(
                        "%s: skipping block %d after %d failures at minimum window: %s",
                        self.name,
                        from_block,
                        failures,
                        e,
                    )
                    self.stats["skipped_blocks"] += 1
                    self._advance(from_block)
                    return ScanResult("skipped", from_block, from_block, window=window)
                await asyncio.sleep(self.retry_backoff_sec * failures)
                continue
            except Exception as e:
                self.stats["fetch_errors"] += 1
                logger.error(
                    "%s: fetching blocks %d-%d failed, moving past them: %s",
                    self.name,
                    from_block,
                    to_block,
                    e,
                )
                self._advance(to_block)
                return ScanResult("failed", from_block, to_block, window=window)

            await self.handle(items, from_block, to_block)
            self._advance(to_block)
            self.stats["batches"] += 1
            self.stats["items"] += len(items)
            if window < self.max_window:
                self.window = min(self.max_window, window * 2)
            if items:
                logger.info(
                    "%s: blocks %d-%d handled %d item(s)",
                    self.name,
                    from_block,
                    to_block,
                    len(items),
                )
            return ScanResult("ok", from_block, to_block, items=len(items), window=window)

    async def run(self, stop_event: asyncio.Event, head_fn: HeadFn) -> None:
        while not stop_event.is_set():
            try:
                head = await head_fn()
                await self.tick(head)
            except Exception as e:
                self.stats["tick_errors"] += 1
                logger.error("%s: scan tick failed: %s", self.name, e)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_sec)

    def snapshot(self) -> Dict[str, Any]:
        out = dict(self.stats)
        out.update(
            {
                "cursor": self.cursor,
                "window": self.window,
                "max_window": self.max_window,
                "in_flight": self._in_flight,
            }
        )
        return out
