"""Simulated account balance."""

from __future__ import annotations

import threading

from accumulator_sim.infrastructure.logging.logging import get_logger


class InsufficientBalance(RuntimeError):
    def __init__(self, amount: float, balance: float) -> None:
        super().__init__(f"insufficient balance: requested={amount:.2f} available={balance:.2f}")
        self.amount = amount
        self.balance = balance


def _to_cents(value: float) -> float:
    return round(float(value), 2)


class AccountLedger:
    """Mock cash balance.

    Only ``debit`` (trade open) and ``credit`` (trade close) change the
    balance. Both run under a lock so API threads never observe a
    half-applied update.
    """

    def __init__(self, initial_balance: float, *, currency: str = "USD") -> None:
        if initial_balance < 0:
            raise ValueError("initial_balance must be >= 0")
        self._log = get_logger("ledger")
        self._balance = _to_cents(initial_balance)
        self._currency = currency
        self._lock = threading.Lock()

    @property
    def balance(self) -> float:
        with self._lock:
            return self._balance

    @property
    def currency(self) -> str:
        return self._currency

    def debit(self, amount: float) -> float:
        amount = float(amount)
        if amount <= 0:
            raise ValueError("debit amount must be > 0")
        with self._lock:
            if amount > self._balance:
                self._log.warning("debit_rejected", amount=amount, balance=self._balance)
                raise InsufficientBalance(amount, self._balance)
            self._balance = _to_cents(self._balance - amount)
            new_balance = self._balance
        self._log.info("debit", amount=amount, balance=new_balance)
        return new_balance

    def credit(self, amount: float) -> float:
        amount = float(amount)
        if amount < 0:
            raise ValueError("credit amount must be >= 0")
        with self._lock:
            self._balance = _to_cents(self._balance + amount)
            new_balance = self._balance
        self._log.info("credit", amount=round(amount, 2), balance=new_balance)
        return new_balance
