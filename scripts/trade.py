"""CLI for account and order operations.

Usage:
    python scripts/trade.py open-account alice --balance 10000
    python scripts/trade.py deposit alice 500
    python scripts/trade.py market alice AAPL buy 10 150 --name "Apple Inc" --market-type Stocks
    python scripts/trade.py entry alice EURUSD sell 1000 1.09 --market-type Forex
    python scripts/trade.py close alice <order_id> [--price 160]
    python scripts/trade.py cancel alice <order_id>
    python scripts/trade.py account alice [--refresh]
    python scripts/trade.py orders alice [--status open]

Add ``--paper`` to any command to act on the user's paper book.
"""

import argparse
import asyncio
import json
import logging
import math
import sys

logger = logging.getLogger(__name__)


def finite_float(value: str) -> float:
    """argparse type for money, units and prices: rejects nan and inf."""
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if not math.isfinite(number):
        raise argparse.ArgumentTypeError(f"must be a finite number: {value!r}")
    return number


def _print_result(result) -> int:
    status = "OK" if result.success else f"FAILED ({result.error})"
    print(f"{status}: {result.message}")
    if result.data:
        print(json.dumps(result.data, indent=2, default=str))
    return 0 if result.success else 1


async def run(args: argparse.Namespace) -> int:
    from margindesk.database import engine as db_engine
    from margindesk.services.engine import OrderEngine

    engine = OrderEngine()
    try:
        if args.command == "open-account":
            result = await engine.open_account(args.user, args.balance, is_paper=args.paper)
        elif args.command == "deposit":
            result = await engine.deposit(args.user, args.amount, is_paper=args.paper)
        elif args.command in ("market", "entry"):
            request = {
                "asset_symbol": args.symbol,
                "asset_name": args.name or args.symbol,
                "market_type": args.market_type,
                "units": args.units,
                "price_per_unit": args.price,
                "trade_type": args.side,
                "order_type": args.command,
                "stop_loss": args.stop_loss,
                "take_profit": args.take_profit,
                "is_paper": args.paper,
            }
            if args.command == "entry" and args.expires:
                request["expiration_date"] = args.expires
            result = await engine.submit_order(args.user, request)
        elif args.command == "close":
            if args.price is None:
                result = await engine.close_position_at_market(args.user, args.order_id)
            else:
                result = await engine.close_position(args.user, args.order_id, args.price)
        elif args.command == "cancel":
            result = await engine.cancel_order(args.user, args.order_id)
        elif args.command == "account":
            if args.refresh:
                result = await engine.refresh_portfolio(args.user, is_paper=args.paper)
            else:
                result = await engine.get_account(args.user, is_paper=args.paper)
        else:
            result = await engine.list_orders(args.user, status=args.status, limit=args.limit)
        return _print_result(result)
    finally:
        await engine.close()
        await db_engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="MarginDesk account and order operations")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("user", help="User id")
    common.add_argument("--paper", action="store_true", help="Use the paper trading book")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("open-account", parents=[common], help="Open a trading account")
    p.add_argument("--balance", type=finite_float, default=0.0, help="Initial cash balance")

    p = sub.add_parser("deposit", parents=[common], help="Deposit cash")
    p.add_argument("amount", type=finite_float)

    for name, help_text in (("market", "Submit a market order"), ("entry", "Place an entry order")):
        p = sub.add_parser(name, parents=[common], help=help_text)
        p.add_argument("symbol")
        p.add_argument("side", choices=["buy", "sell"])
        p.add_argument("units", type=finite_float)
        p.add_argument("price", type=finite_float)
        p.add_argument("--name", help="Asset name (defaults to the symbol)")
        p.add_argument("--market-type", default="Stocks",
                       help="Stocks, Indices, Commodities, Forex or Crypto")
        p.add_argument("--stop-loss", type=finite_float)
        p.add_argument("--take-profit", type=finite_float)
        if name == "entry":
            p.add_argument("--expires", help="ISO-8601 expiration timestamp")

    p = sub.add_parser("close", parents=[common], help="Close an open position")
    p.add_argument("order_id")
    p.add_argument("--price", type=finite_float, help="Close price (live quote when omitted)")

    p = sub.add_parser("cancel", parents=[common], help="Cancel a pending order")
    p.add_argument("order_id")

    p = sub.add_parser("account", parents=[common], help="Show balances and margin level")
    p.add_argument("--refresh", action="store_true", help="Mark the portfolio to market first")

    p = sub.add_parser("orders", parents=[common], help="List orders")
    p.add_argument("--status", choices=["pending", "open", "closed", "cancelled"])
    p.add_argument("--limit", type=int, default=50)

    return parser


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
