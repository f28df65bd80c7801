"""In-memory, append-only record of closed contracts."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from accumulator_sim.models.contract_models import ContractSnapshot, ContractStatus


@dataclass(frozen=True)
class HistoryStats:
    trades: int
    wins: int
    losses: int
    cancelled: int
    net_profit: float
    win_rate: float  # percent of won + cancelled-in-profit over all trades


class TradeHistoryStore:
    def __init__(self) -> None:
        self._entries: List[ContractSnapshot] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append(self, snapshot: ContractSnapshot) -> None:
        if not snapshot.status.is_terminal:
            raise ValueError(f"only closed contracts are recorded (got {snapshot.status.value})")
        with self._lock:
            self._entries.append(snapshot)

    def entries(self, *, market: Optional[str] = None, limit: Optional[int] = None) -> Tuple[ContractSnapshot, ...]:
        """Closed contracts in insertion order, optionally filtered and cut to the most recent ``limit``."""
        with self._lock:
            out = [e for e in self._entries if market is None or e.market == market]
        if limit is not None:
            out = out[-limit:] if limit > 0 else []
        return tuple(out)

    def markets(self) -> List[str]:
        with self._lock:
            return sorted({e.market for e in self._entries})

    def stats(self, *, market: Optional[str] = None) -> HistoryStats:
        rows = self.entries(market=market)
        wins = sum(1 for r in rows if r.status is ContractStatus.WON)
        losses = sum(1 for r in rows if r.status is ContractStatus.LOST)
        cancelled = sum(1 for r in rows if r.status is ContractStatus.CANCELLED)
        profitable = sum(1 for r in rows if r.status is not ContractStatus.LOST and r.profit > 0)
        total = len(rows)
        return HistoryStats(
            trades=total,
            wins=wins,
            losses=losses,
            cancelled=cancelled,
            net_profit=round(sum(r.profit for r in rows), 2),
            win_rate=round((profitable / total) * 100.0, 2) if total else 0.0,
        )
