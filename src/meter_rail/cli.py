"""
Meter Rail CLI

Commands:
  serve   - Run the metering server
  quote   - Calculate units for a request against a rules file
  events  - List recorded usage events for a tenant
  purge   - Delete expired dedupe stamps
"""

import argparse
import json
import os
import sys
from datetime import datetime, timezone

from .config import MeterSettings
from .observability import configure_logging


def cmd_serve(args, settings: MeterSettings):
    """Run the metering server."""
    import uvicorn

    port = args.port or int(os.environ.get("PORT", 8000))
    host = args.host or "0.0.0.0"

    print(f"Starting Meter Rail on {host}:{port}")

    uvicorn.run(
        "meter_rail.api.server:app",
        host=host,
        port=port,
        reload=args.reload,
        workers=args.workers,
    )


def cmd_quote(args, settings: MeterSettings):
    """Calculate units for a request."""
    from .billing.calculator import RuleBasedUnitCalculator
    from .billing.rules import PrefixRuleResolver, load_rules
    from .core.errors import RuleConfigError
    from .core.types import EndpointKey, RequestInfo

    rules_path = args.rules or settings.rules_path
    if not rules_path:
        print("Error: --rules or METER_RULES_PATH required")
        sys.exit(1)

    items = {}
    for pair in args.item or []:
        if "=" not in pair:
            print(f"Error: item must be KEY=VALUE, got {pair!r}")
            sys.exit(1)
        key, value = pair.split("=", 1)
        items[key] = value

    try:
        calculator = RuleBasedUnitCalculator(PrefixRuleResolver(load_rules(rules_path)))
    except RuleConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    request = RequestInfo(
        method=args.method.upper(),
        path=args.path or "",
        timestamp=datetime.now(timezone.utc),
        endpoint=EndpointKey(args.endpoint or ""),
        items=items,
    )
    result = calculator.calculate(request)

    print(f"Units: {result.units}")
    print(f"  Reason: {result.reason}")
    print(f"  Rule: {result.rule_id or '-'}")


def cmd_events(args, settings: MeterSettings):
    """List recorded usage events for a tenant."""
    from .persistence.database import Database
    from .persistence.repository import UsageEventRepository

    db = Database(settings.database_url)
    db.initialize()
    try:
        records = UsageEventRepository(db).get_by_tenant(args.tenant, limit=args.limit)
        if args.json:
            print(json.dumps([r.to_event().to_dict() for r in records], indent=2))
            return

        print(f"Usage events for {args.tenant}: {len(records)}")
        for r in records:
            print(f"  {r.occurred_at}  {r.endpoint:<30} {r.units:>10}  {r.request_id}")
    finally:
        db.close()


def cmd_purge(args, settings: MeterSettings):
    """Delete expired dedupe stamps."""
    from .persistence.adapters import DatabaseDedupeStore
    from .persistence.database import Database

    db = Database(settings.database_url)
    db.initialize()
    try:
        removed = DatabaseDedupeStore(db).purge_expired()
        print(f"Purged {removed} expired dedupe stamps")
    finally:
        db.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meter-rail",
        description="Meter Rail - Exactly-once API usage metering",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Run the server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=None, help="Defaults to $PORT or 8000")
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.add_argument("--workers", type=int, default=1)

    # quote
    quote_parser = subparsers.add_parser("quote", help="Calculate units for a request")
    quote_parser.add_argument("--rules", help="Rules JSON file")
    quote_parser.add_argument("--endpoint", help="Logical endpoint key")
    quote_parser.add_argument("--path", help="Raw request path")
    quote_parser.add_argument("--method", default="POST")
    quote_parser.add_argument("--item", action="append", help="Billing item as KEY=VALUE (repeatable)")

    # events
    events_parser = subparsers.add_parser("events", help="List usage events for a tenant")
    events_parser.add_argument("tenant", help="Tenant ID")
    events_parser.add_argument("--limit", type=int, default=50)
    events_parser.add_argument("--json", action="store_true", help="Print JSON")

    # purge
    subparsers.add_parser("purge", help="Delete expired dedupe stamps")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = MeterSettings.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)

    configure_logging(log_level=settings.log_level, json_output=settings.log_json)

    commands = {
        "serve": cmd_serve,
        "quote": cmd_quote,
        "events": cmd_events,
        "purge": cmd_purge,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return

    handler(args, settings)


if __name__ == "__main__":
    main()
