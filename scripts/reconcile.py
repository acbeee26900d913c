#!/usr/bin/env python3
"""
Matchgraph — Deletion Reconciler CLI

Operator tool for the account-deletion cascade.  Provides three subcommands:

  run      — Run (or resume) the cascade for one deleted user.
  resume   — Continue every cascade that has an unfinished step.
  pending  — List deleted users whose cascade is not complete yet.

Usage examples
--------------
  # Clean up after a deleted account
  python scripts/reconcile.py run 8c1f0e

  # Start over, ignoring saved checkpoints
  python scripts/reconcile.py run 8c1f0e --restart

  # Sweep at most 50 pages, then stop
  python scripts/reconcile.py resume --max-pages 50

  # See what is still outstanding
  python scripts/reconcile.py pending
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

# Ensure the project root is importable
sys.path.insert(0, ".")

from app.database import get_engine, get_session_factory
from app.schemas.reconciliation import ReconciliationReport
from app.services.reconciliation_service import ReconciliationService


def _build_service(args: argparse.Namespace) -> ReconciliationService:
    return ReconciliationService(
        get_session_factory(),
        page_size=getattr(args, "page_size", None),
        max_pages_per_run=getattr(args, "max_pages", None),
    )


def _print_report(report: ReconciliationReport) -> None:
    print(f"\n  {report.deleted_user_id}: {report.status}")
    for step in report.steps:
        line = f"    {step.step:<24} {step.status.value:<8} pages={step.pages} writes={step.writes}"
        if step.error:
            line += f"  error={step.error}"
        print(line)


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: run
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_run(args: argparse.Namespace) -> int:
    """Run the cascade for a single deleted user."""
    service = _build_service(args)
    try:
        report = await service.handle_user_deleted(args.user_id, restart=args.restart)
    finally:
        await get_engine().dispose()

    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        _print_report(report)
        print()
    return 0 if report.completed else 2


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: resume
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_resume(args: argparse.Namespace) -> int:
    """Continue every unfinished cascade within one budget."""
    service = _build_service(args)
    try:
        reports = await service.resume_pending()
    finally:
        await get_engine().dispose()

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in reports], indent=2))
    else:
        print(f"\n{'=' * 60}")
        print(f"  Resumed {len(reports)} cascade(s)")
        print(f"{'=' * 60}")
        for report in reports:
            _print_report(report)
        print()
    return 0 if all(r.completed for r in reports) else 2


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: pending
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_pending(args: argparse.Namespace) -> int:
    """List deleted users with unfinished cascade steps."""
    service = _build_service(args)
    try:
        pending = await service.pending_user_ids()
    finally:
        await get_engine().dispose()

    if args.json:
        print(json.dumps(pending))
    elif not pending:
        print("  No unfinished cascades.")
    else:
        for user_id in pending:
            print(f"  {user_id}")
    return 0


# ──────────────────────────────────────────────────────────────────────────────
# CLI entry point
# ──────────────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description=(
            "Matchgraph Deletion Reconciler — run, resume and inspect "
            "account-deletion cascades."
        ),
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available subcommands",
    )

    # ── run ───────────────────────────────────────────────────────────
    run_parser = subparsers.add_parser(
        "run",
        help="Run (or resume) the cascade for one deleted user.",
    )
    run_parser.add_argument("user_id", help="Id of the deleted user.")
    run_parser.add_argument(
        "--restart",
        action="store_true",
        default=False,
        help="Discard saved checkpoints and start from the first step.",
    )

    # ── resume ────────────────────────────────────────────────────────
    resume_parser = subparsers.add_parser(
        "resume",
        help="Continue every cascade that has an unfinished step.",
    )

    for sub in (run_parser, resume_parser):
        sub.add_argument(
            "--max-pages",
            type=int,
            default=None,
            help="Stop after this many pages (default: SWEEP_MAX_PAGES_PER_RUN).",
        )
        sub.add_argument(
            "--page-size",
            type=int,
            default=None,
            help="Rows per page (default: SWEEP_PAGE_SIZE).",
        )

    # ── pending ───────────────────────────────────────────────────────
    pending_parser = subparsers.add_parser(
        "pending",
        help="List deleted users whose cascade is not complete.",
    )

    for sub in (run_parser, resume_parser, pending_parser):
        sub.add_argument(
            "--json",
            action="store_true",
            default=False,
            help="Output raw JSON.",
        )

    args = parser.parse_args()

    commands = {
        "run": cmd_run,
        "resume": cmd_resume,
        "pending": cmd_pending,
    }
    if args.command not in commands:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(commands[args.command](args)))


if __name__ == "__main__":
    main()
