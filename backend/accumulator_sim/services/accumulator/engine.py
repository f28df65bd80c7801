"""Accumulator contract engine.

Drives one contract at a time, tick by tick:
- a tick within the tolerance band compounds the stake by the growth rate;
- the first tick outside the band loses the whole stake;
- max ticks, max payout and take profit close the contract as won;
- a user stop closes it as cancelled and pays back stake + accrued profit.

Settlement (ledger credit + history record) happens in exactly one place,
``_close``. Nothing in the settlement path raises to callers; listeners are
notified through events.
"""

from __future__ import annotations

import asyncio
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from accumulator_sim.infrastructure.logging.logging import get_logger
from accumulator_sim.infrastructure.utils.timeutils import utc_now
from accumulator_sim.models.contract_models import (
    AccumulatorParams,
    Contract,
    ContractSnapshot,
    ContractStatus,
    EngineState,
    InvalidStateTransition,
)
from accumulator_sim.services.accounting.ledger import AccountLedger
from accumulator_sim.services.accounting.trade_history import TradeHistoryStore
from accumulator_sim.services.accumulator.pricing import compound_profit, is_within_tolerance, tolerance_margin
from accumulator_sim.services.market.price_sources import PriceSource

DEFAULT_MAX_TICKS = 45
DEFAULT_MAX_PAYOUT = 10_000.0


@dataclass(frozen=True)
class ContractEvent:
    kind: str  # "opened" | "tick" | "closed"
    state: EngineState
    snapshot: Optional[ContractSnapshot] = None


Listener = Callable[[ContractEvent], None]


def _valid_price(price: float) -> bool:
    return isinstance(price, (int, float)) and math.isfinite(price) and price > 0


class AccumulatorEngine:
    def __init__(
        self,
        ledger: AccountLedger,
        history: TradeHistoryStore,
        source: Optional[PriceSource] = None,
        *,
        max_ticks: int = DEFAULT_MAX_TICKS,
        max_payout: float = DEFAULT_MAX_PAYOUT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_ticks < 1:
            raise ValueError("max_ticks must be >= 1")
        if max_payout <= 0:
            raise ValueError("max_payout must be > 0")
        self._log = get_logger("accumulator")
        self._ledger = ledger
        self._history = history
        self._source = source
        self._max_ticks = max_ticks
        self._max_payout = float(max_payout)
        self._clock = clock

        self._contract: Optional[Contract] = None
        self._last_closed: Optional[ContractSnapshot] = None
        self._starting = False
        self._source_open = False
        self._tick_task: Optional[asyncio.Task[None]] = None
        self._listeners: List[Listener] = []

    @property
    def max_ticks(self) -> int:
        return self._max_ticks

    @property
    def max_payout(self) -> float:
        return self._max_payout

    @property
    def contract(self) -> Optional[Contract]:
        return self._contract

    @property
    def is_active(self) -> bool:
        return self._contract is not None and self._contract.status is ContractStatus.ACTIVE

    @property
    def last_closed(self) -> Optional[ContractSnapshot]:
        return self._last_closed

    def state(self) -> EngineState:
        c = self._contract
        if c is None or c.status is not ContractStatus.ACTIVE:
            last = self._last_closed
            if last is None:
                return EngineState()
            return EngineState(
                status=last.status,
                contract_id=last.contract_id,
                market=last.market,
                last_price=last.exit_price,
            )
        return EngineState(
            status=c.status,
            contract_id=c.contract_id,
            market=c.market,
            tick_count=c.tick_count,
            current_profit=c.current_profit,
            current_stake=c.stake + c.current_profit,
            last_price=c.last_price,
        )

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for contract events; returns a function that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ---- commands ----

    def open(self, params: AccumulatorParams, entry_price: float) -> Contract:
        """Activate a contract at ``entry_price``, debiting the stake.

        Raises InvalidStateTransition while another contract is active and
        InsufficientBalance (from the ledger) when the stake is not covered;
        in both cases nothing is debited and no contract exists afterwards.
        """
        if self.is_active:
            raise InvalidStateTransition("a contract is already active")
        if not _valid_price(entry_price):
            raise ValueError(f"invalid entry price: {entry_price!r}")

        contract = Contract(
            contract_id=uuid.uuid4().hex,
            market=params.market,
            stake=float(params.stake),
            growth_rate_percent=params.growth_rate_percent,
            tolerance_margin=tolerance_margin(params.growth_rate_percent),
            take_profit=params.take_profit,
        )
        self._ledger.debit(contract.stake)

        contract.transition(ContractStatus.ACTIVE)
        contract.entry_price = float(entry_price)
        contract.last_price = float(entry_price)
        contract.start_time = self._clock()
        self._contract = contract

        self._log.info(
            "contract_opened",
            contract_id=contract.contract_id,
            market=contract.market,
            stake=contract.stake,
            growth_rate=contract.growth_rate_percent,
            tolerance=contract.tolerance_margin,
            take_profit=contract.take_profit,
            entry_price=contract.entry_price,
        )
        self._emit("opened")
        return contract

    async def start(self, params: AccumulatorParams) -> Contract:
        """Open a contract on the configured price source and run its tick loop."""
        if self._source is None:
            raise RuntimeError("no price source configured")
        if self.is_active or self._starting:
            raise InvalidStateTransition("a contract is already active")

        self._starting = True
        try:
            # Previous loop must be fully detached before the source is reopened.
            await self.wait_closed()
            entry_price = await self._source.open(params.market)
            self._source_open = True
            try:
                contract = self.open(params, entry_price)
            except BaseException:
                await self._release_source(self._source)
                raise
        finally:
            self._starting = False

        self._tick_task = asyncio.create_task(self._run_ticks(contract.contract_id, self._source))
        return contract

    def on_tick(self, price: float) -> Optional[ContractStatus]:
        """Apply one price update. Returns the contract status after the tick."""
        c = self._contract
        if c is None or c.status is not ContractStatus.ACTIVE:
            self._log.warning("tick_ignored", reason="no_active_contract", price=price)
            return None
        if not _valid_price(price):
            self._log.warning("tick_ignored", reason="invalid_price", price=price, contract_id=c.contract_id)
            return c.status

        assert c.last_price is not None
        if is_within_tolerance(price, c.last_price, c.tolerance_margin):
            c.tick_count += 1
            c.consecutive_tick_run += 1
            c.current_profit = compound_profit(c.stake, c.growth_rate_percent, c.tick_count)
            c.last_price = float(price)
            self._log.debug(
                "tick_accepted",
                contract_id=c.contract_id,
                tick=c.tick_count,
                price=price,
                profit=round(c.current_profit, 2),
            )
            self._emit("tick")

            # A listener may have stopped the contract while handling the tick.
            reason = self._win_reason(c) if c.status is ContractStatus.ACTIVE else None
            if reason is not None:
                self._close(ContractStatus.WON, reason)
        else:
            self._log.info(
                "tick_breach",
                contract_id=c.contract_id,
                tick=c.tick_count + 1,
                price=price,
                last_price=c.last_price,
                tolerance=c.tolerance_margin,
            )
            c.last_price = float(price)
            c.tick_run_history.append(c.consecutive_tick_run)
            c.consecutive_tick_run = 0
            self._close(ContractStatus.LOST, "breach")
        return c.status

    def stop(self) -> Optional[ContractSnapshot]:
        """Close the active contract now, keeping the accrued profit."""
        if not self.is_active:
            self._log.warning("stop_ignored", reason="no_active_contract")
            return None
        # Halt the tick loop before settling so no tick lands on a closed contract.
        self._cancel_tick_task()
        return self._close(ContractStatus.CANCELLED, "user_stop")

    async def wait_closed(self) -> Optional[ContractSnapshot]:
        """Wait for the running tick loop to finish; returns the last closed contract."""
        task = self._tick_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
            if self._tick_task is task:
                self._tick_task = None
        # A loop cancelled before its first step never reached its own cleanup.
        if self._source is not None and not self.is_active:
            await self._release_source(self._source)
        return self._last_closed

    async def aclose(self) -> None:
        if self.is_active:
            self.stop()
        await self.wait_closed()

    # ---- internals ----

    def _win_reason(self, c: Contract) -> Optional[str]:
        if c.tick_count >= self._max_ticks:
            return "max_ticks"
        if c.current_profit >= self._max_payout:
            return "max_payout"
        if c.take_profit is not None and c.current_profit >= c.take_profit:
            return "take_profit"
        return None

    def _is_current(self, contract_id: str) -> bool:
        c = self._contract
        return c is not None and c.contract_id == contract_id and c.status is ContractStatus.ACTIVE

    async def _run_ticks(self, contract_id: str, source: PriceSource) -> None:
        try:
            while self._is_current(contract_id):
                price = await source.next_price()
                self.on_tick(price)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("price_source_failed", contract_id=contract_id, error=str(e))
            if self._is_current(contract_id):
                self._close(ContractStatus.CANCELLED, "source_lost")
        finally:
            await self._release_source(source)

    async def _release_source(self, source: PriceSource) -> None:
        if not self._source_open:
            return
        self._source_open = False
        await source.close()

    def _cancel_tick_task(self) -> None:
        task = self._tick_task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            task.cancel()

    def _close(self, status: ContractStatus, reason: str) -> ContractSnapshot:
        c = self._contract
        assert c is not None
        c.transition(status)
        c.end_time = self._clock()

        if status is ContractStatus.LOST:
            profit = -c.stake
            payout = 0.0
        else:
            profit = c.current_profit
            payout = c.stake + c.current_profit
        if payout > 0:
            self._ledger.credit(payout)

        snapshot = ContractSnapshot(
            contract_id=c.contract_id,
            market=c.market,
            stake=c.stake,
            growth_rate_percent=c.growth_rate_percent,
            take_profit=c.take_profit,
            status=status,
            close_reason=reason,
            tick_count=c.tick_count,
            profit=profit,
            payout=payout,
            entry_price=c.entry_price,
            exit_price=c.last_price,
            start_time=c.start_time,
            end_time=c.end_time,
            tick_run_history=tuple(c.tick_run_history),
        )
        self._history.append(snapshot)
        self._contract = None
        self._last_closed = snapshot

        self._log.info(
            "contract_closed",
            contract_id=c.contract_id,
            status=status.value,
            reason=reason,
            ticks=c.tick_count,
            profit=round(profit, 2),
            payout=round(payout, 2),
            balance=self._ledger.balance,
        )
        self._emit("closed", snapshot)
        return snapshot

    def _emit(self, kind: str, snapshot: Optional[ContractSnapshot] = None) -> None:
        if not self._listeners:
            return
        event = ContractEvent(kind=kind, state=self.state(), snapshot=snapshot)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                self._log.error("listener_error", kind=kind, error=str(e))
