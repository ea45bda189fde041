#!/usr/bin/env python3
"""
sweep.py

Finds transient scan artifacts that outlived their jobs and removes them:
  - jobs still in flight past their TTL are expired and collected
  - rows whose trigger never finished dispatching are failed and cleaned up
  - collections that stalled (process died mid-collection) are re-run
  - bundles / units labelled managed-by=isoscan, older than the max age,
    whose job is finished, collected or unknown, are deleted

The same sweep runs on the background scheduler; this script is for
operators and cron.

Usage:
    # Dry run (shows what would be removed, no changes):
    python sweep.py

    # Actually sweep:
    python sweep.py --commit

    # Override the leaked-artifact age (seconds):
    python sweep.py --commit --max-age 7200

Run from backend/ (where isoscan/ lives).
"""

import argparse
import os
import sys

# Ensure the package is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from isoscan import create_app
from isoscan.config import Settings


def sweep(commit=False, max_age=None):
    settings = Settings.from_env().with_overrides(scheduler_enabled=False)
    if max_age:
        settings = settings.with_overrides(sweep_max_age_seconds=max_age)

    app = create_app(settings)
    engine = app.extensions["isoscan"]

    with app.app_context():
        report = engine.sweeper.sweep(commit=commit)

    print(f"Substrate: {engine.backend.name}  max age: {settings.effective_sweep_max_age}s\n")
    for title, items in (
        ("Expired jobs", report.expired),
        ("Abandoned dispatches", report.abandoned),
        ("Re-collected jobs", report.recollected),
        ("Leaked units", report.leaked_units),
        ("Leaked bundles", report.leaked_bundles),
    ):
        print(f"{title}: {len(items)}")
        for item in items:
            print(f"  - {item}")

    if report.errors:
        print(f"\nErrors: {len(report.errors)}")
        for err in report.errors:
            print(f"  ! {err}")

    print(f"\n{'=' * 60}")
    if commit:
        print(f"DONE: {report.total} item(s) swept.")
    else:
        print(f"DRY RUN: {report.total} item(s) would be swept. Run with --commit to apply.")

    engine.backend.close()
    return 1 if report.errors else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sweep leaked isoscan bundles and units")
    parser.add_argument("--commit", action="store_true", help="apply changes (default: dry run)")
    parser.add_argument("--max-age", type=int, default=None, help="leaked-artifact age in seconds")
    args = parser.parse_args()
    sys.exit(sweep(commit=args.commit, max_age=args.max_age))
