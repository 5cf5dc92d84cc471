"""
Command line entry point for maintenance runs.

    emi-engine process-overdues --db emi_engine.db
    emi-engine fix-overdues --today 2025-02-16
    emi-engine stats LOAN_ID
    emi-engine portfolio
    emi-engine emis --status overdue --from 2025-02-01 --to 2025-02-28
    emi-engine sweep --interval 600
"""

import argparse
import json
import sys
from datetime import date
from typing import List, Optional

from .clock import FixedClock
from .config import get_config
from .exceptions import EMIEngineError
from .logging_config import get_logger, setup_logging
from .models import EMIStatus
from .system import LendingSystem


logger = get_logger("emi_engine.cli")


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a YYYY-MM-DD date: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="emi-engine",
        description="Daily EMI schedule and overdue penalty maintenance",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: EMI_DATABASE_PATH or emi_engine.db)",
    )
    parser.add_argument(
        "--today",
        type=_iso_date,
        default=None,
        help="Run as if today were this date (YYYY-MM-DD)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: EMI_LOG_LEVEL or INFO)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("process-overdues", help="Run one overdue sweep")
    commands.add_parser("fix-overdues", help="Repair drifted EMIs and re-sum loan penalties")
    stats = commands.add_parser("stats", help="EMI statistics of one loan")
    stats.add_argument("loan_id", help="Loan ID")
    commands.add_parser("portfolio", help="Totals across all loans and EMIs")
    emis = commands.add_parser("emis", help="Search EMIs, latest due date first")
    emis.add_argument(
        "--status",
        action="append",
        choices=[status.value for status in EMIStatus],
        help="Only EMIs with this status (repeatable)",
    )
    emis.add_argument("--from", dest="start", type=_iso_date, default=None, help="Earliest due date, inclusive")
    emis.add_argument("--to", dest="end", type=_iso_date, default=None, help="Latest due date, inclusive")
    emis.add_argument("--users", type=str, default=None, help="Comma-separated borrower IDs")
    emis.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    emis.add_argument("--limit", type=int, default=20, help="Page size (default: 20)")
    sweep = commands.add_parser("sweep", help="Run the periodic sweeper in the foreground")
    sweep.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between sweeps (default: EMI_SWEEP_INTERVAL_SECONDS)",
    )
    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def run(args: argparse.Namespace) -> None:
    config = get_config()
    updates = {}
    if args.db:
        updates.update(use_sqlite=True, database_path=args.db)
    if getattr(args, "interval", None):
        updates["sweep_interval_seconds"] = args.interval
    if updates:
        config = config.model_copy(update=updates)

    clock = FixedClock(args.today) if args.today else None
    system = LendingSystem(config=config, clock=clock)
    try:
        if args.command == "process-overdues":
            processed = system.accrual_engine.process_overdues()
            print(f"Processed {processed} overdue EMIs")
        elif args.command == "fix-overdues":
            report = system.accrual_engine.correct_overdue_state()
            print(
                f"Checked {report.checked} unpaid EMIs: reset {report.reset_to_pending}, "
                f"recalculated {report.recalculated}, reconciled {report.loans_reconciled} loans"
            )
        elif args.command == "stats":
            _print_json(system.loan_stats(args.loan_id).to_dict())
        elif args.command == "portfolio":
            _print_json(system.portfolio_stats().to_dict())
        elif args.command == "emis":
            result = system.search_emis(
                statuses=args.status, start=args.start, end=args.end,
                user_ids=args.users, page=args.page, limit=args.limit
            )
            _print_json(result.to_dict())
        elif args.command == "sweep":
            sweeper = system.start_sweeper()
            try:
                sweeper.wait()
            except KeyboardInterrupt:
                logger.info("Interrupted, stopping sweeper")
    finally:
        system.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = get_config()
        setup_logging(args.log_level or config.log_level, fmt=config.log_format)
        run(args)
    except EMIEngineError as e:
        logger.error(str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
