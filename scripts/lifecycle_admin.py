#!/usr/bin/env python3
"""
Projection maintenance from the command line.

Usage:
    python scripts/lifecycle_admin.py project [--budget SECONDS]
    python scripts/lifecycle_admin.py rebuild [COMPANY_PRODUCT_ID ...]
    python scripts/lifecycle_admin.py verify [--repair]
    python scripts/lifecycle_admin.py lag
    python scripts/lifecycle_admin.py sla-scan

Uses DATABASE_URL from the environment / .env like the API does.
"""

import argparse
import logging
import os
import sys

# Add backend directory to path so backend imports resolve
_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
_backend_dir = os.path.join(_root, "backend")
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

from config import settings  # noqa: E402
from database import check_schema_version, init_engine, make_session_factory  # noqa: E402
from services.projector import Projector  # noqa: E402
from services.read_models import ReadModelStore  # noqa: E402
from services.sla_scanner import SLAScanner  # noqa: E402


def _print_run(run):
    print(f"  Aggregates processed: {run.aggregates_processed}")
    print(f"  Events processed:     {run.events_processed}")
    print(f"  Duration:             {run.duration:.3f}s")
    if run.stopped_early:
        print("  Stopped early (time budget spent); run again to continue.")
    for error in run.errors:
        print(f"  ERROR: {error}")


def cmd_project(session_factory, args) -> int:
    print("Catching up read models...")
    run = Projector(session_factory, time_budget_seconds=args.budget).catch_up()
    _print_run(run)
    return 1 if run.errors else 0


def cmd_rebuild(session_factory, args) -> int:
    projector = Projector(session_factory)
    if args.ids:
        print(f"Rebuilding {len(args.ids)} company product(s)...")
        run = projector.rebuild(args.ids)
    else:
        print("Rebuilding ALL read models...")
        run = projector.rebuild_all()
    _print_run(run)
    return 1 if run.errors else 0


def cmd_verify(session_factory, args) -> int:
    projector = Projector(session_factory)
    mismatches = projector.verify()
    if not mismatches:
        print("Read model matches the event log.")
        return 0

    print(f"{len(mismatches)} mismatched row(s):")
    for m in mismatches:
        if m["missing"]:
            print(f"  {m['company_product_id']}: row missing")
        else:
            print(f"  {m['company_product_id']}: {', '.join(sorted(m['differences']))}")

    if args.repair:
        print("Repairing...")
        _print_run(projector.rebuild([m["company_product_id"] for m in mismatches]))
        return 0
    return 1


def cmd_lag(session_factory, args) -> int:
    with session_factory() as db:
        lagging = ReadModelStore(db).projection_lag()
    if not lagging:
        print("No projection lag.")
        return 0
    print(f"{len(lagging)} company product(s) behind:")
    for lag in lagging:
        print(
            f"  {lag.company_product_id}: watermark {lag.last_applied_sequence_no}, "
            f"head {lag.head_sequence_no} ({lag.events_behind} behind)"
        )
    return 0


def cmd_sla_scan(session_factory, args) -> int:
    projector = Projector(session_factory)
    projector.catch_up()
    print("Scanning for SLA warnings and breaches...")
    results = SLAScanner(session_factory).run_full_scan()
    failed = False
    for label, result in results.items():
        print(
            f"  {label.capitalize()}: {result.scanned} scanned, {result.detected} detected, "
            f"{result.events_emitted} emitted"
        )
        for error in result.errors:
            print(f"  ERROR: {error}")
        failed = failed or not result.success
    print("Projecting new events...")
    _print_run(projector.catch_up())
    return 1 if failed else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Lifecycle Engine projection maintenance")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    sub = parser.add_subparsers(dest="command", required=True)

    project = sub.add_parser("project", help="Catch up every lagging read model")
    project.add_argument("--budget", type=float, default=None, help="Wall-clock budget in seconds")
    project.set_defaults(func=cmd_project)

    rebuild = sub.add_parser("rebuild", help="Drop and refold read models")
    rebuild.add_argument("ids", nargs="*", help="Company product ids (default: all)")
    rebuild.set_defaults(func=cmd_rebuild)

    verify = sub.add_parser("verify", help="Compare read models with the event log")
    verify.add_argument("--repair", action="store_true", help="Rebuild mismatched rows")
    verify.set_defaults(func=cmd_verify)

    lag = sub.add_parser("lag", help="Report read models behind the event log")
    lag.set_defaults(func=cmd_lag)

    sla_scan = sub.add_parser("sla-scan", help="Record SLA warnings and breaches")
    sla_scan.set_defaults(func=cmd_sla_scan)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    args = build_parser().parse_args(argv)

    engine = init_engine(args.database_url or settings.DATABASE_URL)
    try:
        check_schema_version(engine)
        return args.func(make_session_factory(engine), args)
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
