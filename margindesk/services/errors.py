"""Engine error taxonomy and the result type returned across the engine boundary.

Internals raise ``TradeError`` subclasses. Public ``OrderEngine`` operations
catch them and hand back a ``TradeResult`` so callers never see an exception
for a rejected request.
"""

from dataclasses import dataclass, field
from typing import Any


class TradeError(Exception):
    """Base class. ``kind`` is the machine-readable error code."""

    kind = "trade_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TradeError):
    """Malformed request: missing symbol, non-positive units/price, bad enum."""

    kind = "validation_error"


class MarketClosed(ValidationError):
    kind = "market_closed"


class InsufficientFunds(TradeError):
    kind = "insufficient_funds"


class InvalidState(TradeError):
    """Order is not in the state the transition requires."""

    kind = "invalid_state"


class InvalidAccountState(TradeError):
    """Ledger mutation would break the account invariants."""

    kind = "invalid_account_state"


class NotFound(TradeError):
    kind = "not_found"


class PersistenceFailure(TradeError):
    kind = "persistence_failure"


@dataclass
class TradeResult:
    """Discriminated result: ``success`` plus either ``data`` or ``error``."""

    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, message: str, **data: Any) -> "TradeResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, exc: TradeError) -> "TradeResult":
        return cls(success=False, message=exc.message, error=exc.kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "error": self.error,
        }
