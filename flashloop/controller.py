#!/usr/bin/env python3
"""
Execution controller

One cycle per observed block:

    IDLE -> EVALUATING (snapshot, quote, select) -> IDLE            no opportunity
    IDLE -> EVALUATING -> SUBMITTING (gas, submit) -> IDLE          opportunity

Only one cycle may be in flight. The guard is a non-blocking lock
acquisition; a block arriving while it is held is dropped, never queued.
Every error inside a cycle is logged with the block number and the stage
it came from and the lock is released in `finally`.

The cycle deadline covers evaluation only. Once submitted, the lock is held
until the receipt arrives or the executor gives up after its tx timeout.
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, Set, Tuple, Union

from .arbitrage import ArbitrageDecision, select_arbitrage
from .config_loader import format_units
from .gas import GasOptions, GasPolicy
from .network import NetworkManager
from .quotes import QuoteBuilder

logger = logging.getLogger(__name__)

DEFAULT_CYCLE_TIMEOUT = 60.0

ReserveReader = Callable[[], Awaitable[Sequence[Optional[Tuple[int, ...]]]]]
Submitter = Callable[..., Awaitable[Any]]


class CycleTimeoutError(Exception):
    """Evaluation exceeded the cycle deadline"""
    pass


class CycleState(Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    SUBMITTING = "submitting"


class CycleStage(Enum):
    SNAPSHOT = "snapshot"
    QUOTE = "quote"
    SELECT = "select"
    GAS = "gas"
    SUBMIT = "submit"


class CycleOutcome(Enum):
    DROPPED = "dropped"
    NO_OPPORTUNITY = "no_opportunity"
    SIMULATED = "simulated"
    EXECUTED = "executed"
    FAILED = "failed"


class ExecutionController:
    """
    Per-block evaluate-and-submit state machine.

    Collaborators are injected so tests can replace them with plain fakes:
        reserve_reader()  -> raw reserve batch in catalog pool order
        quote_builder     -> QuoteBuilder for the borrowed amount
        gas_policy        -> object with `async resolve() -> GasOptions`
        submitter(asset, amount, buy_path, sell_path, buy_router, sell_router, gas)
    """

    def __init__(
        self,
        reserve_reader: ReserveReader,
        quote_builder: QuoteBuilder,
        gas_policy: GasPolicy,
        submitter: Submitter,
        asset: str,
        borrow_amount: int,
        debt: int,
        profit_floor: int,
        decimals: int,
        symbol: str = "",
        cycle_timeout: Optional[float] = DEFAULT_CYCLE_TIMEOUT,
        dry_run: bool = False,
    ):
        self.reserve_reader = reserve_reader
        self.quote_builder = quote_builder
        self.gas_policy = gas_policy
        self.submitter = submitter
        self.asset = asset
        self.borrow_amount = borrow_amount
        self.debt = debt
        self.profit_floor = profit_floor
        self.decimals = decimals
        self.symbol = symbol
        self.cycle_timeout = cycle_timeout
        self.dry_run = dry_run

        self._lock = threading.Lock()
        self.state = CycleState.IDLE
        self.stage: Optional[CycleStage] = None
        self.last_decision: Optional[ArbitrageDecision] = None

        # Stats
        self.cycles = 0
        self.dropped = 0
        self.executed = 0
        self.failed = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _fmt(self, amount: int) -> str:
        text = format_units(amount, self.decimals)
        return f"{text} {self.symbol}" if self.symbol else text

    async def handle_block(self, block_number: int) -> CycleOutcome:
        """Run one cycle for `block_number`; never raises on cycle errors"""
        if not self._lock.acquire(blocking=False):
            self.dropped += 1
            logger.info(
                f"#{block_number}: Ignoring this block as there is already an in-flight request"
            )
            return CycleOutcome.DROPPED

        self.cycles += 1
        try:
            return await self._run_cycle(block_number)
        except CycleTimeoutError:
            self.failed += 1
            logger.error(
                f"#{block_number}: Cycle timed out after {self.cycle_timeout}s "
                f"(stage: {self._stage_name()})"
            )
            return CycleOutcome.FAILED
        except Exception as e:
            self.failed += 1
            logger.error(
                f"#{block_number}: {self._stage_name()} failed: {type(e).__name__}: {e}"
            )
            return CycleOutcome.FAILED
        finally:
            self.state = CycleState.IDLE
            self.stage = None
            self._lock.release()

    def _stage_name(self) -> str:
        return self.stage.value if self.stage else "unknown"

    async def _run_cycle(self, block_number: int) -> CycleOutcome:
        prepared = await self._with_deadline(self._evaluate(block_number))
        if isinstance(prepared, CycleOutcome):
            return prepared

        decision, gas = prepared
        return await self._submit(block_number, decision, gas)

    async def _with_deadline(self, coro):
        if not self.cycle_timeout:
            return await coro
        try:
            return await asyncio.wait_for(coro, self.cycle_timeout)
        except asyncio.TimeoutError:
            raise CycleTimeoutError(self._stage_name()) from None

    async def _evaluate(
        self, block_number: int
    ) -> Union[CycleOutcome, Tuple[ArbitrageDecision, GasOptions]]:
        self.state = CycleState.EVALUATING

        self.stage = CycleStage.SNAPSHOT
        raw = await self.reserve_reader()

        self.stage = CycleStage.QUOTE
        quotes = self.quote_builder.build_from_batch(raw)

        self.stage = CycleStage.SELECT
        decision = select_arbitrage(quotes, self.debt)
        self.last_decision = decision

        if not decision.profitable(self.profit_floor):
            logger.info(
                f"#{block_number}: No arbitrage opportunity "
                f"(net {self._fmt(decision.net_result)})"
            )
            return CycleOutcome.NO_OPPORTUNITY

        logger.info(
            f"#{block_number}: Found arbitrage opportunity: "
            f"net {self._fmt(decision.net_result)}, "
            f"sell via router {decision.sell_router} ({len(decision.sell_path)} tokens), "
            f"buy back via router {decision.buy_router} ({len(decision.buy_path)} tokens)"
        )

        self.state = CycleState.SUBMITTING
        self.stage = CycleStage.GAS
        gas: GasOptions = await self.gas_policy.resolve()

        if self.dry_run:
            logger.info(
                f"#{block_number}: Dry run, flash loan of {self._fmt(self.borrow_amount)} "
                f"not submitted (gas: {gas.to_tx_params()})"
            )
            return CycleOutcome.SIMULATED

        return decision, gas

    async def _submit(
        self, block_number: int, decision: ArbitrageDecision, gas: GasOptions
    ) -> CycleOutcome:
        self.stage = CycleStage.SUBMIT
        result = await self.submitter(
            self.asset,
            self.borrow_amount,
            decision.buy_path,
            decision.sell_path,
            decision.buy_router,
            decision.sell_router,
            gas,
        )

        self.executed += 1
        logger.info(
            f"#{block_number}: Flashloan request {getattr(result, 'tx_hash', result)} "
            f"for {self._fmt(self.borrow_amount)} successfully mined"
        )
        return CycleOutcome.EXECUTED


class BlockWatcher:
    """
    Polls the latest block number and dispatches each new block to the
    controller as its own task.

    Only the newest block is dispatched when several arrive between polls.
    """

    def __init__(
        self,
        network: NetworkManager,
        controller: ExecutionController,
        poll_interval: float = 1.0,
    ):
        self.network = network
        self.controller = controller
        self.poll_interval = poll_interval
        self.last_block: Optional[int] = None
        self._running = False
        self._tasks: Set[asyncio.Future] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, block_number: int) -> asyncio.Future:
        task = asyncio.ensure_future(self.controller.handle_block(block_number))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def poll_once(self) -> Optional[int]:
        """Dispatch the latest block if it is new; returns it, else None"""
        block_number = await self.network.get_block_number()
        if self.last_block is not None and block_number <= self.last_block:
            return None
        self.last_block = block_number
        self.dispatch(block_number)
        return block_number

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                logger.warning(f"Block poll failed: {type(e).__name__}: {e}")
            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        self._running = False

    async def drain(self) -> None:
        """Wait for in-flight cycles to finish"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
