"""
Usage Billing Rail CLI

Commands:
  serve     - Run the HTTP trigger server
  run       - Run billing for a date (defaults to yesterday)
  preview   - Dry run: aggregate and price without charging
  records   - Show ledger rows for a date
  init-db   - Create the database schema
"""

import argparse
import asyncio
import json
import os
import sys


def _target_date(args):
    from .config import ConfigError, parse_billing_date

    if not args.date:
        return None
    try:
        return parse_billing_date(args.date)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(2)


async def _run_with_orchestrator(method: str, target_date, **kwargs):
    from .bootstrap import build_orchestrator

    orchestrator = build_orchestrator()
    try:
        return await getattr(orchestrator, method)(target_date, **kwargs)
    finally:
        await orchestrator.aclose()


def _print_report(report) -> None:
    print(json.dumps(report.to_dict(), indent=2, default=str))


def cmd_serve(args):
    """Run the HTTP trigger server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Usage Billing Rail on {host}:{port}")

    uvicorn.run(
        "usage_billing.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_run(args):
    """Run billing for one date."""
    report = asyncio.run(_run_with_orchestrator("run", _target_date(args), scheduled=False))
    _print_report(report)
    sys.exit(0 if report.success else 1)


def cmd_preview(args):
    """Dry run for one date."""
    report = asyncio.run(_run_with_orchestrator("preview", _target_date(args)))
    _print_report(report)
    sys.exit(0 if report.success else 1)


def cmd_records(args):
    """Show ledger rows for a date."""
    from .config import BillingConfig
    from .persistence.database import get_database
    from .persistence.repository import LedgerRepository, latest_per_tenant

    config = BillingConfig.from_env()
    ledger = LedgerRepository(get_database(config.database_url))

    records = asyncio.run(ledger.read_by_date(_target_date(args)))
    if args.latest:
        records = latest_per_tenant(records)

    print(f"Billing records for {args.date}: {len(records)}")
    print("=" * 40)
    for record in records:
        print(
            f"{record.tenant_key:<40} {record.phase.value:<15} {record.charge_status.value:<8} "
            f"{record.unit_count:>12,} units  ${record.billing_amount}"
        )
        if record.charge_error_message:
            print(f"  error: {record.charge_error_message}")


def cmd_init_db(args):
    """Create the database schema."""
    from .config import BillingConfig
    from .persistence.database import get_database

    config = BillingConfig.from_env()
    get_database(config.database_url)
    print(f"Database initialized: {config.database_url}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="usage-billing",
        description="Usage Billing Rail - Daily usage-based billing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: $PORT or 8000)")
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # run
    run_parser = subparsers.add_parser("run", help="Run billing for a date")
    run_parser.add_argument("--date", help="Billing date (YYYY-MM-DD)")

    # preview
    preview_parser = subparsers.add_parser("preview", help="Dry run for a date")
    preview_parser.add_argument("--date", help="Billing date (YYYY-MM-DD)")

    # records
    records_parser = subparsers.add_parser("records", help="Show ledger rows for a date")
    records_parser.add_argument("--date", required=True, help="Billing date (YYYY-MM-DD)")
    records_parser.add_argument("--latest", action="store_true", help="Latest row per tenant only")

    # init-db
    subparsers.add_parser("init-db", help="Create the database schema")

    args = parser.parse_args(argv)

    if args.command and args.command != "serve":
        from .bootstrap import configure_logging
        configure_logging()

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "run":
        cmd_run(args)
    elif args.command == "preview":
        cmd_preview(args)
    elif args.command == "records":
        cmd_records(args)
    elif args.command == "init-db":
        cmd_init_db(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
