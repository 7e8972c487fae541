import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import List, Optional

from aiohttp import web

from .api import SaleApi
from .config import AppConfig, load_config
from .errors import ConfigError, IndexerError
from .indexer import RunOptions, ScanResult, run_indexer_once
from .rebuild import rebuild_sales
from .rpc import RPCClient
from .storage import Storage

logger = logging.getLogger("sale_indexer")


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_run_options(cfg: AppConfig, args: argparse.Namespace) -> RunOptions:
    return RunOptions(
        slug=args.slug or cfg.sale_slug,
        run_all=bool(args.all),
        rpc_url=cfg.rpc_url,
        confirmations=cfg.confirmations,
        reorg_buffer_blocks=cfg.reorg_buffer_blocks,
        log_query_range=cfg.log_query_range,
        rpc_timeout_sec=cfg.rpc_timeout_sec,
        max_rpc_retries=cfg.max_rpc_retries,
        sqlite_path=cfg.sqlite_path,
    )


def log_result(result: ScanResult) -> None:
    if result.error:
        logger.error("[%s] failed: %s", result.sale_slug, result.error)
    elif result.skipped:
        logger.warning("[%s] skipped: %s", result.sale_slug, result.skipped)


def install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)


async def run_once_async(cfg: AppConfig, options: RunOptions) -> List[ScanResult]:
    storage = Storage(cfg.sqlite_path)
    try:
        results = await run_indexer_once(options, storage=storage)
    finally:
        storage.close()
    for r in results:
        log_result(r)
    return results


async def run_loop_async(cfg: AppConfig, options: RunOptions, interval_sec: int) -> None:
    # validate before entering the loop so a bad slug or missing RPC fails fast
    if not options.rpc_url:
        raise ConfigError("RPC_URL is required to run the indexer.")
    stop_event = asyncio.Event()
    install_stop_handlers(stop_event)

    storage = Storage(cfg.sqlite_path)
    try:
        async with RPCClient(
            options.rpc_url,
            max_retries=options.max_rpc_retries,
            timeout_sec=options.rpc_timeout_sec,
        ) as rpc:
            while not stop_event.is_set():
                try:
                    results = await run_indexer_once(options, storage=storage, rpc=rpc)
                except ConfigError:
                    raise
                except Exception:
                    logger.exception("Indexer run failed; will retry next cycle.")
                else:
                    for r in results:
                        log_result(r)
                logger.info("Waiting %ss before next run...", interval_sec)
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=interval_sec)
    finally:
        storage.close()


async def serve_async(cfg: AppConfig) -> None:
    stop_event = asyncio.Event()
    install_stop_handlers(stop_event)
    storage = Storage(cfg.sqlite_path)
    runner: Optional[web.AppRunner] = None
    try:
        runner = web.AppRunner(SaleApi(cfg, storage).create_app())
        await runner.setup()
        site = web.TCPSite(runner, host=cfg.api_host, port=cfg.api_port)
        await site.start()
        logger.info("API listening on %s:%s", cfg.api_host, cfg.api_port)
        await stop_event.wait()
    finally:
        if runner is not None:
            await runner.cleanup()
        storage.close()


def cmd_run(cfg: AppConfig, args: argparse.Namespace) -> int:
    options = build_run_options(cfg, args)
    if args.watch or args.interval:
        interval = args.interval or cfg.interval_sec
        asyncio.run(run_loop_async(cfg, options, interval))
        return 0
    results = asyncio.run(run_once_async(cfg, options))
    return 1 if any(r.error for r in results) else 0


def cmd_rebuild(cfg: AppConfig, args: argparse.Namespace) -> int:
    storage = Storage(cfg.sqlite_path)
    try:
        rebuild_sales(storage, slug=args.slug or cfg.sale_slug, run_all=bool(args.all))
    finally:
        storage.close()
    return 0


def cmd_seed(cfg: AppConfig, args: argparse.Namespace) -> int:
    if not cfg.sales:
        raise ConfigError("SALES is empty; nothing to seed")
    storage = Storage(cfg.sqlite_path)
    try:
        for sale_cfg in cfg.sales:
            sale = storage.upsert_sale(sale_cfg)
            logger.info("Seeded sale: %s", sale.slug)
    finally:
        storage.close()
    return 0


def cmd_serve(cfg: AppConfig, args: argparse.Namespace) -> int:
    asyncio.run(serve_async(cfg))
    return 0


def positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from None
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {parsed}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sale-indexer",
        description="Index stablecoin payments into fundraising sales",
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="scan new chain activity")
    target = run.add_mutually_exclusive_group()
    target.add_argument("--slug", help="scan one sale")
    target.add_argument("--all", action="store_true", help="scan every sale")
    run.add_argument("--watch", action="store_true", help="keep polling")
    run.add_argument("--interval", type=positive_int, help="seconds between passes (implies --watch)")
    run.set_defaults(func=cmd_run)

    rebuild = sub.add_parser("rebuild", help="recompute buckets and totals from transfers")
    target = rebuild.add_mutually_exclusive_group()
    target.add_argument("--slug", help="rebuild one sale")
    target.add_argument("--all", action="store_true", help="rebuild every sale")
    rebuild.set_defaults(func=cmd_rebuild)

    seed = sub.add_parser("seed", help="provision sales declared in the config")
    seed.set_defaults(func=cmd_seed)

    serve = sub.add_parser("serve", help="serve the read API")
    serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        raise SystemExit(f"config error: {e}") from e
    setup_logging(cfg.log_level)

    try:
        code = args.func(cfg, args)
    except KeyboardInterrupt:
        code = 0
    except ConfigError as e:
        logger.error("config error: %s", e)
        code = 2
    except IndexerError as e:
        logger.error("indexer run failed: %s", e)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
