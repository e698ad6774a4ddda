"""Account ledger: the only writer of account balances.

Applies deltas to an ``Account`` row that the caller has already locked inside
its transaction. After every mutation the derived fields are re-settled so that
``available_funds + used_margin == cash_balance`` (while cash covers margin) and
``equity == cash_balance + unrealized_pnl``.
"""

import logging
import math
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from margindesk.config import settings
from margindesk.models.account import Account
from margindesk.services.errors import InvalidAccountState, NotFound, ValidationError
from margindesk.services.margin import EPSILON

logger = logging.getLogger(__name__)


def _require_finite(amount: float, what: str) -> None:
    if amount is None or not math.isfinite(amount):
        raise ValidationError(f"{what} must be a finite number")


class AccountLedger:
    """Owns account rows and the deltas applied to them."""

    def __init__(self, paper_starting_balance: float | None = None) -> None:
        if paper_starting_balance is None:
            paper_starting_balance = settings.paper_starting_balance
        self._paper_starting_balance = paper_starting_balance

    # ---------- row access ----------

    async def load_for_update(
        self, session: AsyncSession, user_id: str, is_paper: bool = False
    ) -> Account:
        """Fetch and lock the user's account row.

        Paper accounts are provisioned on first use; live accounts must exist.
        """
        result = await session.execute(
            select(Account)
            .where(Account.user_id == user_id, Account.is_paper == is_paper)
            .with_for_update()
        )
        account = result.scalar_one_or_none()
        if account is None:
            if not is_paper:
                raise NotFound(f"No trading account for user {user_id}")
            account = self.open_account(user_id, self._paper_starting_balance, is_paper=True)
            session.add(account)
            await session.flush()
            logger.info("Provisioned paper account for %s", user_id)
        self.check(account)
        return account

    async def load(self, session: AsyncSession, user_id: str, is_paper: bool = False) -> Account:
        """Read the user's account without locking it.

        A paper book that was never used reads as a fresh, unsaved account.
        """
        result = await session.execute(
            select(Account).where(Account.user_id == user_id, Account.is_paper == is_paper)
        )
        account = result.scalar_one_or_none()
        if account is None:
            if not is_paper:
                raise NotFound(f"No trading account for user {user_id}")
            return self.open_account(user_id, self._paper_starting_balance, is_paper=True)
        return account

    def open_account(
        self, user_id: str, initial_balance: float = 0.0, is_paper: bool = False
    ) -> Account:
        _require_finite(initial_balance, "Initial balance")
        if initial_balance < 0:
            raise InvalidAccountState("Initial balance cannot be negative")
        now = datetime.now(timezone.utc)
        account = Account(
            user_id=user_id,
            is_paper=is_paper,
            cash_balance=float(initial_balance),
            used_margin=0.0,
            realized_pnl=0.0,
            unrealized_pnl=0.0,
            created_at=now,
        )
        self._settle(account, now)
        return account

    def check(self, account: Account) -> None:
        """Reject rows that already violate the invariants."""
        if account.used_margin < -EPSILON:
            raise InvalidAccountState(
                f"Account {account.user_id} has negative used margin {account.used_margin:.2f}"
            )
        expected = max(0.0, account.cash_balance - account.used_margin)
        if abs(account.available_funds - expected) > 1e-6:
            # Stored derived field drifted (e.g. edited outside the ledger); re-derive it
            logger.warning(
                "Account %s available funds %.2f != expected %.2f, re-settling",
                account.user_id, account.available_funds, expected,
            )
            self._settle(account)

    # ---------- deltas ----------

    def debit_for_open(self, account: Account, margin: float) -> None:
        """Lock ``margin`` for a newly opened position."""
        if margin < 0:
            raise InvalidAccountState(f"Margin cannot be negative: {margin}")
        if account.available_funds - margin < -EPSILON:
            raise InvalidAccountState(
                f"Debit of {margin:.2f} would drive available funds "
                f"({account.available_funds:.2f}) negative"
            )
        account.used_margin += margin
        self._settle(account)

    def credit_for_close(self, account: Account, margin: float, pnl: float) -> float:
        """Release a closed position's margin and book its P&L.

        Returns the margin actually released (never more than is in use).
        """
        released = min(margin, account.used_margin)
        account.used_margin = max(0.0, account.used_margin - margin)
        account.cash_balance += pnl
        account.realized_pnl += pnl
        account.unrealized_pnl = max(0.0, account.unrealized_pnl - pnl)
        self._settle(account)
        return released

    def deposit(self, account: Account, amount: float) -> None:
        _require_finite(amount, "Deposit amount")
        if amount <= 0:
            raise InvalidAccountState("Deposit amount must be positive")
        account.cash_balance += amount
        self._settle(account)

    def withdraw(self, account: Account, amount: float) -> None:
        _require_finite(amount, "Withdrawal amount")
        if amount <= 0:
            raise InvalidAccountState("Withdrawal amount must be positive")
        if account.available_funds - amount < -EPSILON:
            raise InvalidAccountState(
                f"Withdrawal of {amount:.2f} exceeds available funds {account.available_funds:.2f}"
            )
        account.cash_balance -= amount
        self._settle(account)

    def mark_to_market(self, account: Account, unrealized_pnl: float) -> None:
        """Replace the unrealized P&L with a fresh portfolio valuation."""
        account.unrealized_pnl = unrealized_pnl
        self._settle(account)

    def _settle(self, account: Account, now: datetime | None = None) -> None:
        account.available_funds = max(0.0, account.cash_balance - account.used_margin)
        account.equity = account.cash_balance + account.unrealized_pnl
        account.last_updated = now or datetime.now(timezone.utc)
