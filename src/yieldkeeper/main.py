"""Command-line entrypoint."""

import argparse
import asyncio
import json
import signal
import sys
from typing import Any

from pydantic import ValidationError

from yieldkeeper.allocation.planner import AllocationPlanner
from yieldkeeper.allocation.rebalance import diff_allocations
from yieldkeeper.config import RebalancerSettings, load_settings
from yieldkeeper.errors import ConfigurationError, YieldkeeperError
from yieldkeeper.logging import get_logger, log_exception, setup_logging
from yieldkeeper.registry import StrategyRegistry
from yieldkeeper.signals.price import PriceClient
from yieldkeeper.signals.yield_signal import YieldApiClient, YieldSignal
from yieldkeeper.sources import JsonSnapshotSource
from yieldkeeper.worker import LoggingExecutor, RebalanceWorker, WorkerMessage, WorkerThread

logger = get_logger(__name__)


class Components:
    """Everything one rebalancer process needs, wired from settings."""

    def __init__(self, settings: RebalancerSettings) -> None:
        self.settings = settings
        self.registry = StrategyRegistry.from_file(settings.strategies_file)
        self.snapshot = JsonSnapshotSource(settings.snapshot_file)
        self.price_client = PriceClient(settings.price_api_url, timeout=settings.http_timeout_seconds)
        self.yield_client = YieldApiClient(
            settings.yield_api_url,
            chain=settings.yield_chain,
            timeout=settings.http_timeout_seconds,
        )
        self.yield_signal = YieldSignal(
            registry=self.registry,
            yield_client=self.yield_client,
            price_client=self.price_client,
            asset_mint=settings.asset_mint,
            asset_symbol=settings.asset_symbol,
            asset_decimals=settings.asset_decimals,
            max_pool_share=settings.max_pool_share,
        )
        self.planner = AllocationPlanner(
            registry=self.registry,
            positions=self.snapshot,
            reserves=self.snapshot,
            settings=settings,
            yield_signal=self.yield_signal,
        )

    async def aclose(self) -> None:
        await self.price_client.aclose()
        await self.yield_client.aclose()


def _print_registry(registry: StrategyRegistry) -> None:
    print(f"{len(registry)} strategies registered")
    for strategy in registry:
        key = f" yieldKey={strategy.yield_key}" if strategy.yield_key else ""
        print(f"  {strategy.id:<28} {strategy.type.value:<14} {strategy.address}{key}")


async def _plan_once(components: Components) -> dict[str, Any]:
    try:
        plan = await components.planner.plan()
    finally:
        await components.aclose()
    actions = diff_allocations(plan.previous, plan.target, components.settings.min_rebalance_delta)
    return {
        "plan": plan.to_dict(),
        "actions": [action.to_dict() for action in actions],
    }


def _run_worker(components: Components) -> int:
    settings = components.settings
    if not settings.dry_run:
        logger.error("Only dry-run execution is available; set YIELDKEEPER_DRY_RUN=true")
        return 1

    worker = RebalanceWorker(components.planner, LoggingExecutor(), settings)
    thread = WorkerThread(worker, cleanup=components.aclose)

    def shutdown_handler(sig, frame):
        logger.info(f"Received {signal.Signals(sig).name}, shutting down rebalance worker...")
        thread.send(WorkerMessage.SHUTDOWN)

    def trigger_handler(sig, frame):
        thread.send(WorkerMessage.TRIGGER)

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, trigger_handler)
    logger.info("Signal handlers installed (SIGINT/SIGTERM stop, SIGHUP triggers a rebalance)")

    thread.start()
    if not thread.wait_started(timeout=30):
        logger.error("Rebalance worker did not report started")
        thread.stop(timeout=5)
        return 1

    # Join in slices so the main thread keeps servicing signals.
    while not thread.join(timeout=1.0):
        pass

    return 1 if thread.error is not None else 0


def main() -> None:
    """Main entrypoint."""
    parser = argparse.ArgumentParser(description="Yieldkeeper vault rebalancer")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("registry", help="List the registered strategies")
    plan_parser = subparsers.add_parser("plan", help="Compute one allocation plan and print it as JSON")
    plan_parser.add_argument(
        "--mode",
        type=str,
        default=None,
        choices=["equal", "yield"],
        help="Override the configured allocation mode",
    )
    subparsers.add_parser("run", help="Run the rebalance worker until interrupted")

    args = parser.parse_args()

    overrides: dict[str, Any] = {}
    if getattr(args, "mode", None):
        overrides["allocation_mode"] = args.mode
    try:
        settings = load_settings(**overrides)
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(settings)

    if args.command is None:
        parser.print_help()
        sys.exit(2)

    try:
        if args.command == "registry":
            _print_registry(StrategyRegistry.from_file(settings.strategies_file))
            return

        components = Components(settings)
        if args.command == "plan":
            result = asyncio.run(_plan_once(components))
            print(json.dumps(result, indent=2))
        elif args.command == "run":
            sys.exit(_run_worker(components))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except YieldkeeperError as e:
        log_exception(logger, e, context=getattr(e, "context", None))
        sys.exit(1)


if __name__ == "__main__":
    main()
