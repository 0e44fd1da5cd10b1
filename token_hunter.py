import argparse
import asyncio
import contextlib
import json
import logging
import signal
import time
from typing import Any, Dict, List, Optional

from aiohttp import web

from hunter_config import AppConfig, load_config
from rpc_client import RPCClient
from source_watchers import BytecodeWatcher, DexWatcher, FactoryWatcher, SourceWatcher
from token_resolvers import CreatorResolver, MetadataResolver
from token_storage import Storage

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


class FatalStartupError(RuntimeError):
    pass


class TokenHunter:
    def __init__(self, cfg: AppConfig, storage: Optional[Storage] = None, rpc: Optional[RPCClient] = None):
        self.cfg = cfg
        self.storage = storage or Storage(cfg.sqlite_path)
        self.http_rpc = rpc or RPCClient(
            cfg.http_rpc_url,
            max_retries=cfg.max_rpc_retries,
            timeout_sec=cfg.rpc_timeout_sec,
        )
        self.metadata = MetadataResolver(self.http_rpc, timeout_sec=cfg.metadata_timeout_sec)
        self.creators = CreatorResolver(
            self.http_rpc,
            radius=cfg.creator_search_radius,
            max_window=cfg.max_blocks_per_request,
        )
        self.watchers: List[SourceWatcher] = self.build_watchers()
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []
        self.stats: Dict[str, Any] = {
            "started_at": int(time.time()),
            "head": 0,
            "head_errors": 0,
        }

    def build_watchers(self) -> List[SourceWatcher]:
        cfg = self.cfg
        watchers: List[SourceWatcher] = []
        for source in cfg.factories:
            watchers.append(
                FactoryWatcher(
                    source,
                    self.http_rpc,
                    self.storage,
                    self.metadata,
                    self.creators,
                    provider_window_limit=cfg.max_blocks_per_request,
                    min_window_retries=cfg.min_window_retries,
                )
            )
        for source in cfg.dexes:
            watchers.append(
                DexWatcher(
                    source,
                    self.http_rpc,
                    self.storage,
                    self.metadata,
                    self.creators,
                    base_tokens=cfg.base_tokens,
                    provider_window_limit=cfg.max_blocks_per_request,
                    min_window_retries=cfg.min_window_retries,
                )
            )
        if cfg.bytecode_scanner.enabled:
            watchers.append(
                BytecodeWatcher(
                    cfg.bytecode_scanner,
                    self.http_rpc,
                    self.storage,
                    self.metadata,
                    min_window_retries=cfg.min_window_retries,
                )
            )
        return watchers

    async def __aenter__(self) -> "TokenHunter":
        await self.http_rpc.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
        await self.http_rpc.__aexit__(exc_type, exc, tb)
        self.storage.close()

    async def confirmed_head(self) -> int:
        try:
            latest = await self.http_rpc.get_latest_block_number()
        except Exception:
            self.stats["head_errors"] += 1
            raise
        head = max(0, latest - self.cfg.confirmations)
        self.stats["head"] = head
        return head

    async def startup(self) -> int:
        try:
            chain_id = await self.http_rpc.get_chain_id()
            head = await self.confirmed_head()
        except Exception as e:
            raise FatalStartupError(f"cannot reach RPC {self.cfg.http_rpc_url}: {e}") from e
        if chain_id != self.cfg.chain_id:
            raise FatalStartupError(
                f"RPC serves chain {chain_id}, config expects CHAIN_ID={self.cfg.chain_id}"
            )
        for watcher in self.watchers:
            watcher.initialize(
                head,
                self.cfg.fallback_start_blocks,
                max_lag_blocks=self.cfg.max_cursor_lag_blocks,
            )
        logger.info(
            "chain %d confirmed head %d, %d source(s): %s",
            chain_id,
            head,
            len(self.watchers),
            ", ".join(w.name for w in self.watchers),
        )
        return head

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "stats": dict(self.stats),
                "rpcErrors": self.http_rpc.error_count,
                "sources": {w.name: w.snapshot() for w in self.watchers},
            }
        )

    async def stats_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.storage.get_stats())

    async def create_api_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/stats", self.stats_handler)
        return app

    async def run(self) -> None:
        await self.startup()
        if self.stop_event.is_set():
            logger.info("stop requested during startup, not starting scanners")
            return
        for watcher in self.watchers:
            self.tasks.append(
                asyncio.create_task(
                    watcher.scanner.run(self.stop_event, self.confirmed_head),
                    name=f"scanner:{watcher.name}",
                )
            )

        runner: Optional[web.AppRunner] = None
        if self.cfg.api_enabled:
            app = await self.create_api_app()
            runner = web.AppRunner(app)
            await runner.setup()
            site = web.TCPSite(runner, host=self.cfg.api_host, port=self.cfg.api_port)
            await site.start()
            logger.info("health API on http://%s:%d", self.cfg.api_host, self.cfg.api_port)

        try:
            await self.stop_event.wait()
        finally:
            if runner is not None:
                await runner.cleanup()

    async def shutdown(self) -> None:
        self.stop_event.set()
        if not self.tasks:
            return
        # scanners check the stop event between ticks
        _, pending = await asyncio.wait(self.tasks, timeout=self.cfg.shutdown_grace_sec)
        for t in pending:
            logger.warning("%s did not stop within %.0fs, cancelling", t.get_name(), self.cfg.shutdown_grace_sec)
            t.cancel()
        for t in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self.tasks = []


async def main_async(cfg: AppConfig) -> None:
    async with TokenHunter(cfg) as hunter:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            logger.info("stop requested")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(hunter.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, _ = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        wait_task.cancel()
        if run_task in done and run_task.exception():
            raise run_task.exception()
        await hunter.shutdown()
        await run_task


def reset_cursors(cfg: AppConfig, names: List[str]) -> None:
    known = {s.name for s in cfg.sources}
    if cfg.bytecode_scanner.enabled:
        known.add("bytecode")
    storage = Storage(cfg.sqlite_path)
    try:
        for name in names:
            if name not in known:
                raise SystemExit(f"unknown source: {name} (known: {', '.join(sorted(known))})")
            removed = storage.reset_cursor(name)
            print(f"{name}: {'cursor cleared' if removed else 'no cursor stored'}")
    finally:
        storage.close()


def print_stats(cfg: AppConfig) -> None:
    storage = Storage(cfg.sqlite_path)
    try:
        print(json.dumps(storage.get_stats(), indent=2))
    finally:
        storage.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Creator Token Hunter: detect new ERC-20 tokens from factories, DEX pools and bytecode"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    parser.add_argument(
        "--reset-cursor",
        action="append",
        default=[],
        metavar="SOURCE",
        help="clear the stored cursor of a source and exit (repeatable)",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="print database statistics as JSON and exit",
    )
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except (OSError, KeyError, ValueError) as e:
        raise SystemExit(f"invalid config {args.config}: {e}") from e

    logging.basicConfig(level=cfg.log_level.upper(), format=LOG_FORMAT)

    if args.reset_cursor:
        reset_cursors(cfg, args.reset_cursor)
        return
    if args.stats:
        print_stats(cfg)
        return

    try:
        asyncio.run(main_async(cfg))
    except KeyboardInterrupt:
        pass
    except FatalStartupError as e:
        raise SystemExit(f"startup failed: {e}") from e


if __name__ == "__main__":
    main()
