"""Tests for the account ledger: mutations on unsaved Account rows, and reads."""

import pytest

from conftest import fetch_account
from margindesk.services.errors import InvalidAccountState, NotFound, ValidationError
from margindesk.services.ledger import AccountLedger


@pytest.fixture
def ledger() -> AccountLedger:
    return AccountLedger(paper_starting_balance=10000.0)


@pytest.fixture
def account(ledger):
    return ledger.open_account("alice", 10000.0)


class TestOpenAccount:
    def test_derived_fields(self, account):
        assert account.cash_balance == 10000.0
        assert account.available_funds == 10000.0
        assert account.equity == 10000.0
        assert account.used_margin == 0.0
        assert account.last_updated is not None

    def test_negative_balance(self, ledger):
        with pytest.raises(InvalidAccountState):
            ledger.open_account("bob", -1)


class TestOpenAndClose:
    def test_debit(self, ledger, account):
        ledger.debit_for_open(account, 1000.0)
        assert account.used_margin == 1000.0
        assert account.available_funds == 9000.0
        assert account.cash_balance == 10000.0

    def test_debit_beyond_available(self, ledger, account):
        with pytest.raises(InvalidAccountState):
            ledger.debit_for_open(account, 10000.01)
        assert account.used_margin == 0.0

    def test_credit_releases_margin_and_books_pnl(self, ledger, account):
        ledger.debit_for_open(account, 1000.0)
        released = ledger.credit_for_close(account, 1000.0, 1000.0)
        assert released == 1000.0
        assert account.used_margin == 0.0
        assert account.cash_balance == 11000.0
        assert account.realized_pnl == 1000.0
        assert account.available_funds == 11000.0
        assert account.equity == 11000.0

    def test_used_margin_clamped_at_zero(self, ledger, account):
        ledger.debit_for_open(account, 100.0)
        released = ledger.credit_for_close(account, 250.0, 0.0)
        assert released == 100.0
        assert account.used_margin == 0.0

    def test_unrealized_clamped_at_zero(self, ledger, account):
        ledger.mark_to_market(account, 300.0)
        ledger.credit_for_close(account, 0.0, 500.0)
        assert account.unrealized_pnl == 0.0
        assert account.equity == account.cash_balance

    def test_available_never_negative_after_loss(self, ledger, account):
        ledger.debit_for_open(account, 9000.0)
        ledger.debit_for_open(account, 1000.0)
        # Loss on the first position exceeds what is left uncommitted
        ledger.credit_for_close(account, 9000.0, -9500.0)
        assert account.cash_balance == 500.0
        assert account.used_margin == 1000.0
        assert account.available_funds == 0.0


class TestFunds:
    def test_deposit(self, ledger, account):
        ledger.deposit(account, 250.0)
        assert account.cash_balance == 10250.0
        assert account.available_funds == 10250.0

    @pytest.mark.parametrize("amount", [0, -10])
    def test_non_positive_amounts(self, ledger, account, amount):
        with pytest.raises(InvalidAccountState):
            ledger.deposit(account, amount)
        with pytest.raises(InvalidAccountState):
            ledger.withdraw(account, amount)

    @pytest.mark.parametrize("amount", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_amounts(self, ledger, account, amount):
        with pytest.raises(ValidationError, match="finite"):
            ledger.deposit(account, amount)
        with pytest.raises(ValidationError, match="finite"):
            ledger.withdraw(account, amount)
        with pytest.raises(ValidationError, match="finite"):
            ledger.open_account("bob", amount)
        assert account.cash_balance == 10000.0
        assert account.equity == 10000.0

    def test_withdraw_limited_to_available(self, ledger, account):
        ledger.debit_for_open(account, 4000.0)
        with pytest.raises(InvalidAccountState, match="exceeds available funds"):
            ledger.withdraw(account, 6000.01)
        ledger.withdraw(account, 6000.0)
        assert account.cash_balance == 4000.0
        assert account.available_funds == 0.0


class TestCheck:
    def test_negative_used_margin_rejected(self, ledger, account):
        account.used_margin = -5.0
        with pytest.raises(InvalidAccountState):
            ledger.check(account)

    def test_drifted_available_funds_resettled(self, ledger, account):
        account.available_funds = 42.0
        ledger.check(account)
        assert account.available_funds == 10000.0


def test_mark_to_market_moves_equity_only(ledger, account):
    ledger.debit_for_open(account, 1000.0)
    ledger.mark_to_market(account, -250.0)
    assert account.unrealized_pnl == -250.0
    assert account.equity == 9750.0
    assert account.available_funds == 9000.0


class TestLoad:
    @pytest.mark.asyncio
    async def test_unused_paper_book_reads_fresh_without_saving(self, ledger, session_factory):
        async with session_factory() as session:
            account = await ledger.load(session, "dave", is_paper=True)
            assert account.cash_balance == 10000.0
            assert account.available_funds == 10000.0
            assert session.new == set()
        assert await fetch_account(session_factory, "dave", is_paper=True) is None

    @pytest.mark.asyncio
    async def test_missing_live_account(self, ledger, session_factory):
        async with session_factory() as session:
            with pytest.raises(NotFound):
                await ledger.load(session, "dave")

    @pytest.mark.asyncio
    async def test_existing_account(self, ledger, session_factory):
        async with session_factory() as session:
            async with session.begin():
                session.add(ledger.open_account("erin", 250.0))
        async with session_factory() as session:
            account = await ledger.load(session, "erin")
        assert account.cash_balance == 250.0
