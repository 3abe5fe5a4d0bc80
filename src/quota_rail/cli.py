"""
Quota Rail CLI

Commands:
  serve        - Run the quota server
  parse-range  - Count the pages selected by a range expression
  estimate     - Compute the A4-equivalent charge of a print job
  balance      - Show a user's page balance
  allocate     - Grant pages to a user
  history      - Show a user's ledger history
  verify       - Replay a user's ledger and check its invariants
"""

import argparse
import sys
import structlog

from .config import get_settings
from .core.errors import QuotaRailError
from .logging_config import configure_logging

logger = structlog.get_logger()


def _ledger():
    from .core.ledger import BalanceLedger
    from .persistence import Database, TransactionRepository

    settings = get_settings()
    if settings.use_memory_storage:
        logger.warning("cli_memory_storage", detail="ledger is discarded on exit")
        return BalanceLedger()
    db = Database(settings.database_url)
    db.initialize()
    return BalanceLedger(TransactionRepository(db))


def cmd_serve(args):
    """Run the quota server."""
    import uvicorn

    settings = get_settings()
    port = args.port or settings.port
    host = args.host or "0.0.0.0"

    print(f"Starting Quota Rail on {host}:{port}")

    uvicorn.run(
        "quota_rail.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_parse_range(args):
    from .core.page_range import parse_page_range

    pages = parse_page_range(args.expression, args.max_pages)
    print(f"Pages selected: {pages}")


def cmd_estimate(args):
    from .core.equivalence import compute_equivalent_pages
    from .core.page_range import parse_page_range

    pages = parse_page_range(args.page_range, args.pages)
    charge = compute_equivalent_pages(pages, args.paper_size, args.duplex, args.copies)

    print(f"Pages to print: {pages}")
    print(f"  Paper size: {args.paper_size.upper()}")
    print(f"  Duplex: {'Yes' if args.duplex else 'No'}")
    print(f"  Copies: {args.copies}")
    print(f"A4-equivalent charge: {charge}")


def cmd_balance(args):
    balance = _ledger().get_balance(args.user)
    print(f"User: {balance.user_id}")
    print(f"  Balance: {balance.current_a4} A4 pages")
    print(f"  Last updated: {balance.last_updated or 'never'}")


def cmd_allocate(args):
    from .core.models import TransactionType

    transaction = _ledger().credit(
        args.user,
        TransactionType.ALLOCATE,
        args.amount,
        note=args.note,
    )
    print(f"Allocated {args.amount} pages to {args.user}")
    print(f"  Transaction: {transaction.transaction_id}")
    print(f"  Balance after: {transaction.balance_after}")


def cmd_history(args):
    history = _ledger().history(
        args.user,
        page=args.page,
        size=args.size,
        start=args.since,
        end=args.until,
    )

    print(f"Ledger for {args.user} (page {history.current_page + 1}/{max(history.total_pages, 1)})")
    print("=" * 72)
    for t in history.content:
        print(
            f"{t.created_at[:19]}  {t.type.value:<9} {t.delta:>+7}  "
            f"-> {t.balance_after:>6}  {t.reference_job_id or t.payment_reference or ''}"
        )


def cmd_verify(args):
    is_valid, error, length = _ledger().verify_integrity(args.user)
    if is_valid:
        print(f"Ledger valid ({length} entries)")
    else:
        print(f"Ledger INVALID: {error}")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(
        description="Quota Rail - Print quota accounting",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # parse-range
    range_parser = subparsers.add_parser("parse-range", help="Count pages in a range expression")
    range_parser.add_argument("expression", help='Range expression, e.g. "1-5,10"')
    range_parser.add_argument("--max-pages", type=int, required=True, help="Document page total")

    # estimate
    estimate_parser = subparsers.add_parser("estimate", help="Compute A4-equivalent charge")
    estimate_parser.add_argument("--pages", type=int, required=True, help="Document page total")
    estimate_parser.add_argument("--paper-size", default="A4", choices=["A4", "A3", "a4", "a3"])
    estimate_parser.add_argument("--duplex", action="store_true")
    estimate_parser.add_argument("--copies", type=int, default=1)
    estimate_parser.add_argument("--page-range", default=None)

    # balance
    balance_parser = subparsers.add_parser("balance", help="Show page balance")
    balance_parser.add_argument("user", help="User ID")

    # allocate
    allocate_parser = subparsers.add_parser("allocate", help="Grant pages")
    allocate_parser.add_argument("user", help="User ID")
    allocate_parser.add_argument("amount", type=int, help="A4 pages to grant")
    allocate_parser.add_argument("--note", default="Manual allocation")

    # history
    history_parser = subparsers.add_parser("history", help="Show ledger history")
    history_parser.add_argument("user", help="User ID")
    history_parser.add_argument("--page", type=int, default=0)
    history_parser.add_argument("--size", type=int, default=20)
    history_parser.add_argument("--since", help="First day to include (YYYY-MM-DD)")
    history_parser.add_argument("--until", help="Last day to include (YYYY-MM-DD)")

    # verify
    verify_parser = subparsers.add_parser("verify", help="Verify ledger integrity")
    verify_parser.add_argument("user", help="User ID")

    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_format == "json")

    commands = {
        "serve": cmd_serve,
        "parse-range": cmd_parse_range,
        "estimate": cmd_estimate,
        "balance": cmd_balance,
        "allocate": cmd_allocate,
        "history": cmd_history,
        "verify": cmd_verify,
    }

    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return

    try:
        command(args)
    except QuotaRailError as e:
        print(f"Error: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
