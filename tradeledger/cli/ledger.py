#!/usr/bin/env python3
"""
Ledger CLI - Commit trades, run wash-sale checks and export tax reports.

Usage:
    python -m tradeledger.cli.ledger seed-accounts
    python -m tradeledger.cli.ledger commit --user u1 --transactions 10 11 --strategy "bull put spread"
    python -m tradeledger.cli.ledger wash-sales --user u1 --apply
    python -m tradeledger.cli.ledger tax-report --user u1 --year 2024 --csv out/8949.csv
"""

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from sqlalchemy.engine import make_url

from tradeledger.config.validator import (
    DEFAULT_CONFIG_PATH,
    ConfigValidationError,
    default_settings,
    load_and_validate_config,
)
from tradeledger.database.models import create_session_factory, init_db
from tradeledger.errors import TradeLedgerError
from tradeledger.ledger.chart_of_accounts import seed_chart_of_accounts
from tradeledger.ledger.posting import LedgerPostingEngine
from tradeledger.ledger.reports import trial_balance, verify_balances
from tradeledger.positions.categorization import CategorizationJob
from tradeledger.positions.summary import positions_summary
from tradeledger.tax.reports import TaxReportGenerator, generate_form8949_csv
from tradeledger.tax.wash_sale import WashSaleDetector
from tradeledger.utils.logging import setup_logging_from_settings

logger = logging.getLogger(__name__)


def parse_date(date_str: str):
    """Parse date string in various formats."""
    formats = ["%Y-%m-%d", "%Y/%m/%d", "%m-%d-%Y", "%m/%d/%Y"]

    for fmt in formats:
        try:
            return datetime.strptime(date_str, fmt).date()
        except ValueError:
            continue

    raise argparse.ArgumentTypeError(f"Could not parse date: {date_str}. Use YYYY-MM-DD format.")


def load_settings(config_path: Optional[str]) -> dict:
    """Validated settings from ``config_path``, or defaults when no file exists."""
    path = config_path or DEFAULT_CONFIG_PATH
    if Path(path).exists():
        return load_and_validate_config(path)
    if config_path:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    return default_settings()


def open_database(settings: dict):
    """Engine and session factory for the configured database."""
    url = settings["database"]["url"]
    database = make_url(url).database
    if url.startswith("sqlite") and database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    engine = init_db(url, echo=settings["database"].get("echo", False))
    return engine, create_session_factory(engine)


def emit(payload: Any, output: Optional[str] = None, fmt: str = "json") -> None:
    """Print ``payload`` or write it to ``output``."""
    if fmt == "yaml":
        text = yaml.safe_dump(payload, default_flow_style=False, sort_keys=False)
    else:
        text = json.dumps(payload, indent=2, default=str)

    if output:
        output_path = Path(output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(text)
        logger.info(f"Results saved to: {output_path}")
    else:
        print(text)


def cmd_seed_accounts(args, settings, session_factory) -> Any:
    with session_factory.begin() as session:
        added = seed_chart_of_accounts(session)
    return {"accounts_added": added}


def cmd_commit(args, settings, session_factory) -> Any:
    engine = LedgerPostingEngine(session_factory, settings)
    result = engine.commit_transactions(args.user, args.transactions, args.strategy, args.trade_num)
    return result.to_dict()


def cmd_assign(args, settings, session_factory) -> Any:
    engine = LedgerPostingEngine(session_factory, settings)
    result = engine.process_assignment(args.user, args.transfer, args.stock, args.strategy, args.trade_num)
    return result.to_dict()


def cmd_reverse(args, settings, session_factory) -> Any:
    engine = LedgerPostingEngine(session_factory, settings)
    return engine.reverse_journal(args.journal, args.date, args.description).to_dict()


def cmd_wash_sales(args, settings, session_factory) -> Any:
    detector = WashSaleDetector(session_factory, settings)
    report = detector.detect_wash_sales(args.user)
    payload = report.to_dict()
    if args.apply and report.violations:
        payload["applied"] = detector.apply_wash_sale_adjustments(args.user, report.violations).to_dict()
    return payload


def cmd_tax_report(args, settings, session_factory) -> Any:
    generator = TaxReportGenerator(session_factory, settings)
    report = generator.generate_tax_report(args.user, args.year)
    if args.csv:
        csv_path = Path(args.csv)
        csv_path.parent.mkdir(parents=True, exist_ok=True)
        csv_path.write_text(generate_form8949_csv(report.rows))
        logger.info(f"Form 8949 CSV saved to: {csv_path}")
    return report.to_dict()


def cmd_categorize(args, settings, session_factory) -> Any:
    job = CategorizationJob(session_factory, settings)
    return job.run(args.users or None).to_dict()


def cmd_trial_balance(args, settings, session_factory) -> Any:
    with session_factory() as session:
        payload = trial_balance(session, include_empty=args.all)
        payload["drift"] = verify_balances(session)
    return payload


def cmd_positions(args, settings, session_factory) -> Any:
    with session_factory() as session:
        frame = positions_summary(session, args.user)
    return json.loads(frame.reset_index().to_json(orient="records"))


COMMANDS = {
    "seed-accounts": cmd_seed_accounts,
    "commit": cmd_commit,
    "assign": cmd_assign,
    "reverse": cmd_reverse,
    "wash-sales": cmd_wash_sales,
    "tax-report": cmd_tax_report,
    "categorize": cmd_categorize,
    "trial-balance": cmd_trial_balance,
    "positions": cmd_positions,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradeledger",
        description="Double-entry trade ledger with lot tracking and tax reports",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the trading chart of accounts
  tradeledger seed-accounts

  # Commit two imported rows as one spread
  tradeledger commit --user u1 -t 10 11 --strategy "bull put spread"

  # Detect and apply wash sales
  tradeledger wash-sales --user u1 --apply

  # Tax report with a Form 8949 CSV
  tradeledger tax-report --user u1 --year 2024 --csv out/8949.csv
        """,
    )
    parser.add_argument("-c", "--config", default=None, help=f"Settings file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("-o", "--output", default=None, help="Write results to this file instead of stdout")
    parser.add_argument("--format", choices=["json", "yaml"], default="json", help="Output format")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose output")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-accounts", help="Insert missing trading accounts")

    commit = sub.add_parser("commit", help="Commit imported transactions as one trade")
    commit.add_argument("--user", required=True)
    commit.add_argument("-t", "--transactions", nargs="+", type=int, required=True)
    commit.add_argument("--strategy", default=None)
    commit.add_argument("--trade-num", default=None)

    assign = sub.add_parser("assign", help="Post an assignment or exercise")
    assign.add_argument("--user", required=True)
    assign.add_argument("--transfer", type=int, required=True, help="Option exercise/assignment row id")
    assign.add_argument("--stock", type=int, required=True, help="Stock delivery row id")
    assign.add_argument("--strategy", default=None)
    assign.add_argument("--trade-num", default=None)

    reverse = sub.add_parser("reverse", help="Post the reversal of a journal")
    reverse.add_argument("journal", type=int)
    reverse.add_argument("--date", type=parse_date, default=None)
    reverse.add_argument("--description", default=None)

    wash = sub.add_parser("wash-sales", help="Detect wash sales")
    wash.add_argument("--user", required=True)
    wash.add_argument("--apply", action="store_true", help="Apply the detected adjustments")

    tax = sub.add_parser("tax-report", help="Form 8949 and Schedule D summary")
    tax.add_argument("--user", required=True)
    tax.add_argument("--year", type=int, default=datetime.now().year)
    tax.add_argument("--csv", default=None, help="Also write Form 8949 rows to this CSV file")

    categorize = sub.add_parser("categorize", help="Suggest accounts and strategies for pending rows")
    categorize.add_argument("--users", nargs="*", default=None)

    balance = sub.add_parser("trial-balance", help="Trial balance and balance drift check")
    balance.add_argument("--all", action="store_true", help="Include accounts without activity")

    positions = sub.add_parser("positions", help="Open positions and realized P&L per symbol")
    positions.add_argument("--user", required=True)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the ledger CLI."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (ConfigValidationError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    setup_logging_from_settings(settings, verbose=args.verbose)

    engine, session_factory = open_database(settings)
    try:
        payload = COMMANDS[args.command](args, settings, session_factory)
    except TradeLedgerError as e:
        logger.error(f"{args.command} failed: {e}")
        error = {"error": type(e).__name__, "message": str(e)}
        if e.leg_index is not None:
            error["leg_index"] = e.leg_index
        emit(error, fmt=args.format)
        return 1
    finally:
        engine.dispose()

    emit(payload, args.output, args.format)
    return 0


if __name__ == "__main__":
    sys.exit(main())
