"""Command-line entry point for CommandX back-office jobs.

Usage:
    # Weekly payroll for the most recently completed week
    commandx generate-payroll

    # Connect QuickBooks (open the URL, then pass back the code and realm)
    commandx qb-auth-url --redirect-uri https://ops.example.com/qb/callback
    commandx qb-connect --code CODE --realm-id REALM --redirect-uri URI

    # Certified payroll for a project week
    commandx wh347 --project ID --week-ending 2024-01-13 --payroll-number 3
"""

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Any

import structlog

from commandx.config import bind_command_context, configure_logging
from commandx.payroll import WeeklyPayrollGenerator
from commandx.quickbooks import (
    QuickBooksClient,
    QuickBooksError,
    QuickBooksSync,
    QuickBooksTokenManager,
    build_authorization_url,
    parse_quickbooks_error,
)
from commandx.store import StoreError, SupabaseClient
from commandx.wh347 import WH347Error, WH347Service

logger = structlog.get_logger(__name__)


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="commandx",
        description="CommandX payroll, billing sync and certified payroll jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override LOG_LEVEL",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    payroll = sub.add_parser("generate-payroll", help="Create weekly personnel payments")
    payroll.add_argument(
        "--period-end",
        type=_iso_date,
        default=None,
        help="Sunday that ends the pay period (default: last completed Sunday)",
    )

    auth_url = sub.add_parser("qb-auth-url", help="Print the QuickBooks consent URL")
    auth_url.add_argument("--redirect-uri", required=True)

    connect = sub.add_parser("qb-connect", help="Exchange an authorization code")
    connect.add_argument("--code", required=True)
    connect.add_argument("--realm-id", required=True)
    connect.add_argument("--redirect-uri", required=True)

    sub.add_parser("qb-disconnect", help="Disconnect QuickBooks")

    vendors = sub.add_parser("qb-sync-vendors", help="Bulk vendor import or export")
    vendors.add_argument("direction", choices=["import", "export"])

    for name, help_text in (
        ("qb-sync-vendor", "Create or update one vendor in QuickBooks"),
        ("qb-sync-personnel", "Sync an onboarded employee as a QuickBooks vendor"),
        ("qb-create-bill", "Create a QuickBooks bill for a vendor bill"),
        ("qb-create-invoice", "Create a QuickBooks invoice"),
        ("qb-void-invoice", "Void an invoice in QuickBooks"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("id")

    wh347 = sub.add_parser("wh347", help="Generate a WH-347 certified payroll PDF")
    wh347.add_argument("--project", required=True, help="Project id")
    wh347.add_argument("--week-ending", required=True, type=_iso_date)
    wh347.add_argument("--payroll-number", default="1")
    wh347.add_argument("--subcontractor", action="store_true")
    wh347.add_argument("--certifier-name")
    wh347.add_argument("--certifier-title")
    wh347.add_argument("--fringe-to-plans", action="store_true")
    wh347.add_argument("--fringe-in-cash", action="store_true")
    wh347.add_argument("--output", type=Path, help="Also write the PDF to this file")

    return parser


async def _run_quickbooks(args: argparse.Namespace, store: SupabaseClient) -> dict[str, Any]:
    tokens = QuickBooksTokenManager(store)
    try:
        if args.command == "qb-connect":
            return await tokens.exchange_code(args.code, args.realm_id, args.redirect_uri)
        if args.command == "qb-disconnect":
            await tokens.disconnect()
            return {"success": True}

        async with QuickBooksClient(tokens) as client:
            sync = QuickBooksSync(store, client)
            if args.command == "qb-sync-vendors":
                if args.direction == "import":
                    counts = await sync.import_vendors()
                else:
                    counts = await sync.export_vendors()
                return {"success": True, **counts}
            if args.command == "qb-sync-vendor":
                return {"success": True, "quickbooks_vendor_id": await sync.sync_vendor(args.id)}
            if args.command == "qb-sync-personnel":
                return await sync.sync_personnel(args.id)
            if args.command == "qb-create-bill":
                return await sync.create_bill(args.id)
            if args.command == "qb-create-invoice":
                return await sync.create_invoice(args.id)
            if args.command == "qb-void-invoice":
                return await sync.void_invoice(args.id)
    finally:
        await tokens.close()
    raise ValueError(f"Unknown command: {args.command}")


async def run_command(args: argparse.Namespace) -> dict[str, Any]:
    """Execute one parsed command and return its JSON-serializable result."""
    if args.command == "qb-auth-url":
        url, state = build_authorization_url(args.redirect_uri)
        return {"url": url, "state": state}

    async with SupabaseClient() as store:
        if args.command == "generate-payroll":
            result = await WeeklyPayrollGenerator(store).generate(args.period_end)
            return result.to_dict()

        if args.command == "wh347":
            export = await WH347Service(store).generate(
                args.project,
                args.week_ending,
                args.payroll_number,
                is_subcontractor=args.subcontractor,
                certifier_name=args.certifier_name,
                certifier_title=args.certifier_title,
                fringe_paid_to_plan=args.fringe_to_plans,
                fringe_paid_in_cash=args.fringe_in_cash,
            )
            if args.output:
                args.output.write_bytes(export.pdf)
            return {"success": True, **export.to_dict()}

        return await _run_quickbooks(args, store)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    bind_command_context(args.command)

    try:
        result = asyncio.run(run_command(args))
    except QuickBooksError as e:
        parsed = parse_quickbooks_error(str(e))
        logger.error("command_failed", error=str(e), error_type=parsed.type.value)
        print(json.dumps({"success": False, "error": parsed.title, "details": parsed.description}))
        return 1
    except (StoreError, WH347Error, ValueError) as e:
        logger.error("command_failed", error=str(e))
        print(json.dumps({"success": False, "error": str(e)}))
        return 1
    except Exception as e:
        logger.exception("command_error", error=str(e))
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success", True) else 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
