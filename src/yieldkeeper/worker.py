"""Rebalance worker - drives the periodic fetch-plan-execute cycle.

A cycle reads current positions and reserves, asks the planner for a
target, diffs it against the current portfolio and hands the resulting
actions to an executor. Cycles start on a fixed interval or on a manual
trigger, and never overlap: a trigger that arrives mid-cycle queues exactly
one follow-up cycle, however many times it is sent.

``WorkerThread`` hosts the worker on its own event loop in a background
thread, so a hung cycle cannot block the process that owns it. It talks to
the worker through messages: ``shutdown`` and ``rebalance`` in, ``started``
out.
"""

import asyncio
import queue
import threading
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from yieldkeeper.allocation.models import AllocationPlan
from yieldkeeper.allocation.planner import AllocationPlanner
from yieldkeeper.allocation.rebalance import RebalanceAction, diff_allocations
from yieldkeeper.config import RebalancerSettings
from yieldkeeper.logging import clear_rebalance_context, get_logger, new_cycle_id, set_rebalance_context
from yieldkeeper.utils.retry import run_with_backoff

logger = get_logger(__name__)


class WorkerMessage(str, Enum):
    """Control-channel messages."""

    STARTED = "started"
    SHUTDOWN = "shutdown"
    TRIGGER = "rebalance"


class RebalanceExecutor(Protocol):
    """Submits deposit/withdraw actions to the venues."""

    async def execute(self, actions: Sequence[RebalanceAction]) -> None: ...


class LoggingExecutor:
    """Dry-run executor: logs the actions it would submit."""

    def __init__(self) -> None:
        self.executed: list[RebalanceAction] = []

    async def execute(self, actions: Sequence[RebalanceAction]) -> None:
        for action in actions:
            logger.info(
                f"[DRY RUN] {action.kind.value} {action.amount} "
                f"{'from' if action.kind.value == 'withdraw' else 'into'} "
                f"{action.strategy_id} ({action.strategy_type} {action.strategy_address})"
            )
            self.executed.append(action)


@dataclass(frozen=True)
class CycleResult:
    cycle_id: str
    plan: AllocationPlan
    actions: tuple[RebalanceAction, ...]


class RebalanceWorker:
    """Runs rebalance cycles until told to shut down."""

    def __init__(
        self,
        planner: AllocationPlanner,
        executor: RebalanceExecutor,
        settings: RebalancerSettings,
    ) -> None:
        self._planner = planner
        self._executor = executor
        self._settings = settings
        self._interval = settings.rebalance_interval_seconds
        self._min_delta = settings.min_rebalance_delta

        self._shutdown = asyncio.Event()
        self._trigger = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._listeners: list[Callable[[WorkerMessage], None]] = []

        self._running = False
        self._cycles_completed = 0
        self.last_result: CycleResult | None = None

    # ------------------------------------------------------------------
    # Control channel
    # ------------------------------------------------------------------

    def add_listener(self, listener: Callable[[WorkerMessage], None]) -> None:
        """Register a callback for outbound messages (``started``)."""
        self._listeners.append(listener)

    def _post(self, message: WorkerMessage) -> None:
        for listener in self._listeners:
            listener(message)

    def handle_message(self, message: WorkerMessage) -> None:
        """Dispatch an inbound control message."""
        if message is WorkerMessage.SHUTDOWN:
            self.request_shutdown()
        elif message is WorkerMessage.TRIGGER:
            self.request_rebalance()
        else:
            logger.warning(f"Ignoring unexpected worker message: {message!r}")

    def request_rebalance(self) -> None:
        if self._cycle_lock.locked():
            logger.info("Rebalance trigger received mid-cycle; queued for the next cycle")
        else:
            logger.info("Manual rebalance trigger received")
        self._trigger.set()

    def request_shutdown(self) -> None:
        logger.info("Rebalance worker received shutdown signal")
        self._shutdown.set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    @property
    def cycle_in_flight(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def cycles_completed(self) -> int:
        return self._cycles_completed

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleResult:
        """Run exactly one rebalance cycle; waits if another one is in flight."""
        async with self._cycle_lock:
            # Triggers received before this point are served by this cycle.
            self._trigger.clear()
            cycle_id = new_cycle_id()
            set_rebalance_context(cycle_id=cycle_id)
            try:
                plan = await self._planner.plan()
                actions = diff_allocations(plan.previous, plan.target, self._min_delta)
                logger.info(
                    f"Rebalance plan: policy={plan.policy.value} winner={plan.winner_id} "
                    f"total={plan.total_value} actions={len(actions)}",
                    extra={
                        "policy": plan.policy.value,
                        "winner_id": plan.winner_id,
                        "total_value": plan.total_value,
                        "target": {a.strategy_id: a.position_value for a in plan.target},
                    },
                )
                if actions:
                    await self._executor.execute(actions)
                else:
                    logger.info("Portfolio already at target; nothing to do")

                result = CycleResult(cycle_id=cycle_id, plan=plan, actions=actions)
                self.last_result = result
                self._cycles_completed += 1
                return result
            finally:
                clear_rebalance_context()

    async def _wait_for_next_cycle(self) -> None:
        """Return on interval expiry, manual trigger or shutdown, whichever comes first."""
        if self._trigger.is_set() or self._shutdown.is_set():
            return
        waiters = [
            asyncio.create_task(self._trigger.wait()),
            asyncio.create_task(self._shutdown.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=self._interval, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in waiters:
                task.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

    async def _cycle_then_wait(self) -> None:
        await self.run_cycle()
        await self._wait_for_next_cycle()

    async def run(self) -> None:
        """Main loop; returns once shutdown has been requested."""
        if self._running:
            return
        self._running = True
        logger.info(
            f"Rebalance worker started (interval={self._interval}s, "
            f"mode={self._settings.allocation_mode}, dry_run={self._settings.dry_run})"
        )
        self._post(WorkerMessage.STARTED)
        try:
            await run_with_backoff(
                self._cycle_then_wait,
                "rebalance-worker",
                self._shutdown,
                base_delay=self._settings.retry_base_delay_seconds,
                max_delay=self._settings.retry_max_delay_seconds,
                jitter=self._settings.retry_jitter,
            )
        finally:
            self._running = False
            logger.info("Rebalance worker stopped")


class WorkerThread:
    """Hosts a ``RebalanceWorker`` on a dedicated thread and event loop."""

    def __init__(
        self,
        worker: RebalanceWorker,
        name: str = "rebalance-worker",
        cleanup: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._worker = worker
        self._name = name
        self._cleanup = cleanup
        self._outbox: queue.Queue[WorkerMessage] = queue.Queue()
        self._worker.add_listener(self._outbox.put)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_ready = threading.Event()
        self._thread: threading.Thread | None = None
        self.error: BaseException | None = None

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Worker thread {self._name} already started")
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        self._loop_ready.wait()

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        self._loop_ready.set()
        try:
            loop.run_until_complete(self._worker.run())
        except Exception as e:
            self.error = e
            logger.error(f"Fatal error in rebalance worker: {e}", exc_info=True)
        finally:
            # Clients opened on this loop must be closed on it.
            if self._cleanup is not None:
                try:
                    loop.run_until_complete(self._cleanup())
                except Exception as e:
                    logger.warning(f"Worker cleanup failed: {e}")
            loop.close()

    def send(self, message: WorkerMessage) -> bool:
        """Deliver ``message`` to the worker's loop. Returns False if it is gone."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning(f"Worker {self._name} is not running; dropping {message.value}")
            return False
        try:
            loop.call_soon_threadsafe(self._worker.handle_message, message)
        except RuntimeError:
            logger.warning(f"Worker {self._name} loop closed; dropping {message.value}")
            return False
        return True

    def wait_started(self, timeout: float | None = None) -> bool:
        """Block until the worker posts ``started``."""
        try:
            while True:
                if self._outbox.get(timeout=timeout) is WorkerMessage.STARTED:
                    return True
        except queue.Empty:
            return False

    def stop(self, timeout: float | None = None) -> bool:
        """Request shutdown and join; True if the thread exited in time."""
        self.send(WorkerMessage.SHUTDOWN)
        return self.join(timeout)

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
