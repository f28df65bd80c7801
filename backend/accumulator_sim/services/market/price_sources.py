"""Price sources feeding the accumulator engine.

A source is opened for one market, yields prices one at a time in arrival
order, and is closed when the contract ends.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional, Protocol

from accumulator_sim.infrastructure.deriv.deriv_ws_client import (
    FeedError,
    PriceFeedClient,
    SubscriptionError,
    TickSubscription,
)
from accumulator_sim.infrastructure.logging.logging import get_logger
from accumulator_sim.services.market.price_simulator import PriceSimulator

if TYPE_CHECKING:
    from accumulator_sim.infrastructure.utils.config import SimulatorConfig


class PriceSource(Protocol):
    async def open(self, market: str) -> float:
        """Prepare the stream for ``market`` and return the entry price."""
        ...

    async def next_price(self) -> float: ...

    async def close(self) -> None: ...


class SimulatedPriceSource:
    """Random-walk prices on a fixed cadence (one price per ``interval_sec``)."""

    def __init__(
        self,
        config: "SimulatorConfig",
        *,
        interval_sec: float = 1.0,
        seed: Optional[int] = None,
    ) -> None:
        self._config = config
        self._interval = interval_sec
        self._seed = seed
        self._simulator: Optional[PriceSimulator] = None
        self._log = get_logger("simulated_source")

    @property
    def simulator(self) -> Optional[PriceSimulator]:
        return self._simulator

    async def open(self, market: str) -> float:
        self._simulator = PriceSimulator(
            initial_price=self._config.initial_price,
            volatility=self._config.volatility_for(market),
            trend=self._config.trend,
            seed=self._seed,
        )
        self._log.info("source_opened", market=market, volatility=self._simulator.volatility)
        return self._simulator.current_price

    async def next_price(self) -> float:
        if self._simulator is None:
            raise RuntimeError("price source not opened")
        # sleep(0) still yields, so a zero interval never starves the loop.
        await asyncio.sleep(self._interval)
        if self._simulator is None:
            raise RuntimeError("price source closed")
        return self._simulator.next_price()

    async def close(self) -> None:
        self._simulator = None


class FeedPriceSource:
    """Live ticks from the market-data feed; cadence is the feed's own."""

    def __init__(self, client: PriceFeedClient) -> None:
        self._client = client
        self._subscription: Optional[TickSubscription] = None
        self._log = get_logger("feed_source")

    async def open(self, market: str) -> float:
        self._subscription = await self._client.subscribe(market)
        try:
            return await self.next_price()
        except BaseException:
            await self.close()
            raise

    async def next_price(self) -> float:
        if self._subscription is None:
            raise RuntimeError("price source not opened")
        try:
            tick = await self._subscription.__anext__()
        except StopAsyncIteration:
            raise SubscriptionError(f"tick stream for {self._subscription.symbol} ended") from None
        return tick.price

    async def close(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is None:
            return
        try:
            await sub.unsubscribe()
        except FeedError as e:
            self._log.warning("unsubscribe_failed", symbol=sub.symbol, error=str(e))
