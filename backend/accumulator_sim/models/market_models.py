"""Market domain models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict

# Deriv 1-second volatility indices offered for accumulator contracts.
MARKETS: Dict[str, str] = {
    "1HZ10V": "Volatility 10 (1s) Index",
    "1HZ25V": "Volatility 25 (1s) Index",
    "1HZ50V": "Volatility 50 (1s) Index",
    "1HZ75V": "Volatility 75 (1s) Index",
    "1HZ100V": "Volatility 100 (1s) Index",
}

# Per-tick volatility used by the local simulator for each index.
# Half of each value (the largest single step) must exceed the widest tolerance band.
MARKET_VOLATILITY: Dict[str, float] = {
    "1HZ10V": 0.0016,
    "1HZ25V": 0.0020,
    "1HZ50V": 0.0025,
    "1HZ75V": 0.0030,
    "1HZ100V": 0.0040,
}


@dataclass(frozen=True)
class Tick:
    symbol: str
    epoch: int
    price: float


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe_sec: int
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
