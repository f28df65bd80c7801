"""Tests for the mock account balance."""

import threading

import pytest

from accumulator_sim.services.accounting.ledger import AccountLedger, InsufficientBalance


class TestAccountLedger:
    def test_initial_balance(self):
        ledger = AccountLedger(50_000.0)
        assert ledger.balance == 50_000.0
        assert ledger.currency == "USD"

    def test_debit_and_credit(self):
        ledger = AccountLedger(100.0)
        assert ledger.debit(40.0) == 60.0
        assert ledger.credit(10.5) == 70.5
        assert ledger.balance == 70.5

    def test_rounds_to_cents(self):
        ledger = AccountLedger(100.0)
        ledger.credit(1.23456)
        assert ledger.balance == 101.23

    def test_debit_whole_balance(self):
        ledger = AccountLedger(25.0)
        ledger.debit(25.0)
        assert ledger.balance == 0.0

    def test_insufficient_balance(self):
        ledger = AccountLedger(10.0)
        with pytest.raises(InsufficientBalance) as exc:
            ledger.debit(10.01)
        assert exc.value.amount == 10.01
        assert exc.value.balance == 10.0
        assert ledger.balance == 10.0

    @pytest.mark.parametrize("amount", [0.0, -5.0])
    def test_debit_must_be_positive(self, amount):
        with pytest.raises(ValueError):
            AccountLedger(10.0).debit(amount)

    def test_credit_rejects_negative(self):
        with pytest.raises(ValueError):
            AccountLedger(10.0).credit(-1.0)

    def test_credit_zero_is_noop(self):
        ledger = AccountLedger(10.0)
        ledger.credit(0.0)
        assert ledger.balance == 10.0

    def test_negative_initial_balance(self):
        with pytest.raises(ValueError):
            AccountLedger(-1.0)

    def test_concurrent_updates(self):
        """Debits and credits from several threads never lose an update."""
        ledger = AccountLedger(1000.0)

        def work():
            for _ in range(200):
                ledger.debit(1.0)
                ledger.credit(1.0)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert ledger.balance == 1000.0
