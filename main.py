#!/usr/bin/env python3
"""
=========================================================
     ⚡ FlashLoop - Flash Loan Route Arbitrage Keeper
=========================================================

Every new block:
1. Read all pool reserves in one Multicall3 batch
2. Quote every configured route for the borrowed amount
3. Sell along the best route, buy back along the worst one (reversed)
4. If the round trip clears debt + 1 source token, submit getit()

Only one flash loan request is in flight at a time; blocks that arrive
meanwhile are ignored.

Usage:
    python main.py
    python main.py --config config/arbitrage.json
"""

# Suppress pkg_resources deprecation warning from web3
import warnings
warnings.filterwarnings("ignore", message="pkg_resources is deprecated")

import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from flashloop.abi_loader import HAS_ORJSON, ABILoadError
from flashloop.arbitrage import compute_debt, profit_floor
from flashloop.catalog import RouteCatalog, build_route_catalog
from flashloop.config_loader import (
    BotConfig,
    ConfigLoader,
    ConfigValidationError,
    format_units,
    parse_units,
)
from flashloop.controller import BlockWatcher, ExecutionController
from flashloop.executor import ExecutionError, FlashLoanExecutor
from flashloop.gas import GasPolicy
from flashloop.multicall import Multicall
from flashloop.network import NetworkManager
from flashloop.quotes import QuoteBuilder

# Project root
PROJECT_ROOT = Path(__file__).resolve().parent

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
LOG_DATEFMT = "%H:%M:%S"

logger = logging.getLogger("flashloop")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger (console + optional file)"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True,
    )


async def _no_submitter(*args, **kwargs):
    raise ExecutionError("No keeper account configured (DRY_RUN without PRIVATE_KEY)")


# ============================================
# Bot
# ============================================

class FlashLoopBot:
    """
    Wires config, catalog, network and controller together and runs the
    block loop until SIGINT/SIGTERM.
    """

    def __init__(self, config: BotConfig):
        self.config = config
        self.catalog: Optional[RouteCatalog] = None
        self.network: Optional[NetworkManager] = None
        self.executor: Optional[FlashLoanExecutor] = None
        self.controller: Optional[ExecutionController] = None
        self.watcher: Optional[BlockWatcher] = None

        self.borrow_amount = 0
        self.debt = 0
        self.start_time = None

        # Signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signal."""
        print("\n\n🛑 Shutting down...")
        if self.watcher:
            self.watcher.stop()

    async def initialize(self) -> None:
        """
        Build the catalog and connect.

        Raises:
            ConfigValidationError: invalid topology or borrowed amount
            ABILoadError: flash loan ABI missing
        """
        cfg = self.config

        print("\n" + "=" * 60)
        print("     ⚡ FlashLoop - Flash Loan Route Arbitrage Keeper")
        print("=" * 60)

        self.catalog = build_route_catalog(cfg.tokens, cfg.pools, cfg.routers)
        source = self.catalog.source

        self.borrow_amount = parse_units(cfg.borrowed_amount, source.decimals)
        self.debt = compute_debt(self.borrow_amount, cfg.premium_bps)

        print(f"\n🌐 Connecting to {cfg.chain.name} ({len(cfg.chain.rpc_urls)} RPC endpoint(s))...")
        self.network = NetworkManager(cfg.chain)
        await self.network.connect()
        print(f"✅ Network state: {self.network.state.value}")

        if cfg.private_key:
            self.executor = FlashLoanExecutor(
                self.network,
                cfg.flashloan_address,
                cfg.private_key,
                tx_timeout=cfg.tx_timeout,
            )

        multicall = Multicall(self.network)
        pool_addresses = self.catalog.pool_addresses

        async def read_reserves():
            return await multicall.get_reserves_batch(pool_addresses)

        gas_policy = GasPolicy(cfg.gas, session=self.network.session)
        await gas_policy.report()

        self.controller = ExecutionController(
            reserve_reader=read_reserves,
            quote_builder=QuoteBuilder(self.catalog, self.borrow_amount),
            gas_policy=gas_policy,
            submitter=self.executor.submit if self.executor else _no_submitter,
            asset=source.address,
            borrow_amount=self.borrow_amount,
            debt=self.debt,
            profit_floor=profit_floor(source.decimals),
            decimals=source.decimals,
            symbol=source.symbol,
            cycle_timeout=cfg.cycle_timeout,
            dry_run=cfg.dry_run,
        )
        self.watcher = BlockWatcher(self.network, self.controller, cfg.poll_interval)

        balance = await self.executor.get_balance() if self.executor else None
        self._print_banner(balance)

    def _print_banner(self, balance: Optional[int] = None) -> None:
        cfg = self.config
        source = self.catalog.source

        print("\n" + "=" * 60)
        print("⚙️  Configuration")
        print("=" * 60)
        print(f"  Chain:              {cfg.chain.name} ({cfg.chain.chain_id})")
        print(f"  Keeper:             {self.executor.address if self.executor else '-'}")
        if balance is not None:
            print(f"  Keeper Balance:     {format_units(balance, 18)} native")
        print(f"  Flash Loan:         {cfg.flashloan_address}")
        print(f"  Borrow Amount:      {format_units(self.borrow_amount, source.decimals)} {source.symbol}")
        print(f"  Debt:               {format_units(self.debt, source.decimals)} {source.symbol} ({cfg.premium_bps} bps)")
        print(f"  Gas Oracle:         {cfg.gas.oracle_url or 'disabled (node defaults)'}")
        print(f"  Gas Limit:          {cfg.gas.gas_limit}")
        print(f"  Cycle Timeout:      {cfg.cycle_timeout or 'disabled'}")
        print(f"  Poll Interval:      {cfg.poll_interval}s")
        print("=" * 60)
        print("🔧 Modes")
        print("=" * 60)
        print(f"  Dry Run:            {'✅ Yes' if cfg.dry_run else '❌ No (LIVE)'}")
        print(f"  orjson (Fast JSON): {'✅ Enabled' if HAS_ORJSON else '❌ Not installed'}")
        print("=" * 60)
        print("📊 Routes")
        print("=" * 60)
        for route in self.catalog.routes:
            print(f"  - {route.label}")
        print(f"  Pools:              {len(self.catalog.pools)}")
        print("=" * 60)

    async def run(self) -> None:
        """Run the block loop."""
        self.start_time = time.time()
        print(f"\n🏃 Watching blocks... (Ctrl+C to stop)\n")
        try:
            await self.watcher.run()
        finally:
            await self.watcher.drain()
            await self.network.disconnect()
            self._display_final_stats()

    def _display_final_stats(self) -> None:
        """Display final statistics."""
        runtime = time.time() - self.start_time if self.start_time else 0
        hours = int(runtime // 3600)
        minutes = int((runtime % 3600) // 60)
        seconds = int(runtime % 60)

        print("\n\n" + "=" * 60)
        print("📊 Final Statistics")
        print("=" * 60)
        print(f"  Runtime:        {hours}h {minutes}m {seconds}s")
        print(f"  Cycles:         {self.controller.cycles}")
        print(f"  Dropped:        {self.controller.dropped}")
        print(f"  Executed:       {self.controller.executed}")
        print(f"  Failed:         {self.controller.failed}")
        if self.executor:
            print(f"  Transactions:   {self.executor.success_count}/{self.executor.tx_count} mined")
        for url, health in self.network.get_rpc_health().items():
            status = "✅" if health.is_healthy else "❌"
            print(f"  {status} {url}: {health.total_requests} requests, avg {health.avg_latency_ms:.0f}ms")
        print("=" * 60)
        print("👋 Goodbye!")


# ============================================
# Entry Point
# ============================================

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Flash loan route arbitrage keeper")
    parser.add_argument("--config", help="Path to arbitrage.json (default: ARBITRAGE_CONFIG or config/arbitrage.json)")
    parser.add_argument("--env", help="Path to .env file (default: project root .env)")
    return parser.parse_args(argv)


async def _main(config: BotConfig) -> None:
    bot = FlashLoopBot(config)
    try:
        await bot.initialize()
    except Exception:
        if bot.network:
            await bot.network.disconnect()
        raise
    await bot.run()


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = ConfigLoader(config_path=args.config, env_path=args.env).load()
    except ConfigValidationError as e:
        setup_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(config.log_level, config.log_file)

    try:
        asyncio.run(_main(config))
    except (ConfigValidationError, ABILoadError) as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
