"""Shared engine singleton and result-to-HTTP mapping."""

from fastapi.responses import JSONResponse

from margindesk.services.alerting import AlertService
from margindesk.services.engine import OrderEngine
from margindesk.services.errors import TradeResult

# Module-level engine singleton; its per-user locks must be shared by every request
_engine = OrderEngine(alerts=AlertService())

# Error kind -> HTTP status
ERROR_STATUS = {
    "validation_error": 400,
    "market_closed": 400,
    "insufficient_funds": 400,
    "invalid_account_state": 400,
    "not_found": 404,
    "invalid_state": 409,
    "persistence_failure": 503,
}


def get_engine() -> OrderEngine:
    """Dependency returning the process-wide engine."""
    return _engine


def to_response(result: TradeResult, success_status: int = 200) -> JSONResponse:
    if result.success:
        return JSONResponse(result.to_dict(), status_code=success_status)
    return JSONResponse(result.to_dict(), status_code=ERROR_STATUS.get(result.error, 400))
