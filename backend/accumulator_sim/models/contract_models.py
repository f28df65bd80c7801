"""Accumulator contract domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from accumulator_sim.models.market_models import MARKETS

# Growth rate (%) -> max fractional move between consecutive ticks that still counts as in range.
GROWTH_RATE_TOLERANCE: Dict[int, float] = {
    1: 0.00030,
    2: 0.00040,
    3: 0.00050,
    4: 0.00060,
    5: 0.00070,
}


class InvalidStateTransition(RuntimeError):
    pass


class ContractStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[ContractStatus] = frozenset(
    {ContractStatus.WON, ContractStatus.LOST, ContractStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS: Dict[ContractStatus, FrozenSet[ContractStatus]] = {
    ContractStatus.PENDING: frozenset({ContractStatus.ACTIVE}),
    ContractStatus.ACTIVE: TERMINAL_STATUSES,
    ContractStatus.WON: frozenset(),
    ContractStatus.LOST: frozenset(),
    ContractStatus.CANCELLED: frozenset(),
}


class AccumulatorParams(BaseModel):
    """User-chosen contract parameters (validated before any ledger debit)."""

    market: str = Field(default="1HZ25V")
    stake: float = Field(..., gt=0)
    growth_rate_percent: int = Field(default=3)
    take_profit: Optional[float] = Field(default=None, gt=0)

    @field_validator("market")
    @classmethod
    def validate_market(cls, v: str) -> str:
        if v not in MARKETS:
            raise ValueError(f"market must be one of: {sorted(MARKETS)}")
        return v

    @field_validator("growth_rate_percent")
    @classmethod
    def validate_growth_rate(cls, v: int) -> int:
        if v not in GROWTH_RATE_TOLERANCE:
            raise ValueError(f"growth_rate_percent must be one of: {sorted(GROWTH_RATE_TOLERANCE)}")
        return v


@dataclass
class Contract:
    contract_id: str
    market: str
    stake: float
    growth_rate_percent: int
    tolerance_margin: float
    take_profit: Optional[float] = None

    status: ContractStatus = ContractStatus.PENDING
    tick_count: int = 0
    current_profit: float = 0.0

    entry_price: Optional[float] = None
    last_price: Optional[float] = None

    consecutive_tick_run: int = 0
    tick_run_history: List[int] = field(default_factory=list)

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def transition(self, new_status: ContractStatus) -> None:
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateTransition(f"{self.status.value} -> {new_status.value}")
        self.status = new_status


@dataclass(frozen=True)
class ContractSnapshot:
    """Immutable record of a closed contract, as kept in trade history."""

    contract_id: str
    market: str
    stake: float
    growth_rate_percent: int
    take_profit: Optional[float]
    status: ContractStatus
    close_reason: str
    tick_count: int
    profit: float           # settled: -stake when lost
    payout: float           # amount credited back to the ledger
    entry_price: Optional[float]
    exit_price: Optional[float]
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    tick_run_history: Tuple[int, ...] = ()


@dataclass(frozen=True)
class EngineState:
    """Read-only projection for the presentation layer."""

    status: Optional[ContractStatus] = None
    contract_id: Optional[str] = None
    market: Optional[str] = None
    tick_count: int = 0
    current_profit: float = 0.0
    current_stake: float = 0.0
    last_price: Optional[float] = None
