"""Turn Deriv ticks_history responses into candles."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List

from accumulator_sim.infrastructure.logging.logging import get_logger
from accumulator_sim.models.market_models import Candle

log = get_logger("deriv_history")


def _floor_epoch(epoch: int, timeframe_sec: int = 60) -> int:
    return epoch - (epoch % timeframe_sec)


def ticks_to_candles(
    symbol: str,
    times: List[int],
    prices: List[float],
    timeframe_sec: int = 60,
) -> List[Candle]:
    """Group ticks by time bucket and build OHLC candles.

    times and prices are aligned by index.
    """
    if not times or not prices or len(times) != len(prices):
        return []

    pairs = sorted(zip(times, prices), key=lambda x: x[0])
    buckets: Dict[int, List[float]] = defaultdict(list)
    for epoch, price in pairs:
        buckets[_floor_epoch(epoch, timeframe_sec)].append(price)

    candles: List[Candle] = []
    for open_epoch in sorted(buckets.keys()):
        vals = buckets[open_epoch]
        candles.append(
            Candle(
                symbol=symbol,
                timeframe_sec=timeframe_sec,
                open_time=datetime.fromtimestamp(open_epoch, tz=timezone.utc),
                open=vals[0],
                high=max(vals),
                low=min(vals),
                close=vals[-1],
                volume=len(vals),
            )
        )
    return candles


def parse_history_response(symbol: str, resp: Dict[str, Any], granularity: int = 60) -> List[Candle]:
    """Parse a ``candles`` or ``history`` style response.

    Tick-style history (prices/times) is bucketed into candles of
    ``granularity`` seconds so callers always get the same shape back.
    """
    if resp.get("candles"):
        candles: List[Candle] = []
        for c in resp.get("candles") or []:
            if not isinstance(c, dict) or c.get("epoch") is None:
                continue
            candles.append(
                Candle(
                    symbol=symbol,
                    timeframe_sec=granularity,
                    open_time=datetime.fromtimestamp(int(c["epoch"]), tz=timezone.utc),
                    open=float(c.get("open", 0)),
                    high=float(c.get("high", 0)),
                    low=float(c.get("low", 0)),
                    close=float(c.get("close", 0)),
                )
            )
        log.info("history_loaded", symbol=symbol, style="candles", candles=len(candles))
        return candles

    history = resp.get("history") or {}
    times = [int(t) for t in history.get("times") or []]
    prices = [float(p) for p in history.get("prices") or []]
    if len(times) != len(prices):
        n = min(len(times), len(prices))
        times, prices = times[:n], prices[:n]
    candles = ticks_to_candles(symbol, times, prices, timeframe_sec=granularity)
    log.info("history_loaded", symbol=symbol, style="ticks", ticks=len(times), candles=len(candles))
    return candles
