"""Random-walk price generator for offline/demo trading."""

from __future__ import annotations

import random
from typing import Iterator, Optional


class PriceSimulator:
    """Each step moves the price by ``p * (volatility * U1 + trend * U2)``
    with U1, U2 drawn uniformly from [-0.5, 0.5]. Prices never go below zero.
    """

    def __init__(
        self,
        initial_price: float,
        volatility: float,
        trend: float = 0.0,
        *,
        seed: Optional[int] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if initial_price <= 0:
            raise ValueError("initial_price must be > 0")
        if volatility < 0:
            raise ValueError("volatility must be >= 0")
        self._initial_price = float(initial_price)
        self._price = float(initial_price)
        self._volatility = float(volatility)
        self._trend = float(trend)
        self._rng = rng if rng is not None else random.Random(seed)

    @property
    def current_price(self) -> float:
        return self._price

    @property
    def volatility(self) -> float:
        return self._volatility

    @property
    def trend(self) -> float:
        return self._trend

    def set_volatility(self, volatility: float) -> None:
        if volatility < 0:
            raise ValueError("volatility must be >= 0")
        self._volatility = float(volatility)

    def set_trend(self, trend: float) -> None:
        self._trend = float(trend)

    def next_price(self) -> float:
        volatility_component = self._volatility * (self._rng.random() - 0.5)
        trend_component = self._trend * (self._rng.random() - 0.5)
        self._price = max(0.0, self._price + self._price * (volatility_component + trend_component))
        return self._price

    def reset(self, initial_price: Optional[float] = None) -> None:
        """Restart the walk from ``initial_price`` (or the original start)."""
        if initial_price is not None:
            if initial_price <= 0:
                raise ValueError("initial_price must be > 0")
            self._initial_price = float(initial_price)
        self._price = self._initial_price

    def __iter__(self) -> Iterator[float]:
        while True:
            yield self.next_price()
