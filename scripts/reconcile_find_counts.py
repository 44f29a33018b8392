#!/usr/bin/env python
"""
Recompute cache (and optionally profile) find counters from the finds ledger.

Counters are bumped best-effort after each find; this pass repairs any drift and is
safe to run repeatedly.

Usage:
    python scripts/reconcile_find_counts.py                 # every cache
    python scripts/reconcile_find_counts.py --cache-id ID   # a single cache
    python scripts/reconcile_find_counts.py --profiles      # also every profile

Uses the same environment as the app (DATABASE_URL, USE_SUPABASE, SUPABASE_URL,
SUPABASE_KEY).
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app import create_app  # noqa: E402
from finds.errors import FindLedgerError  # noqa: E402
from finds.service import (  # noqa: E402
    reconcile_all_find_counts,
    reconcile_cache_find_count,
    reconcile_profile_counts,
)
from extensions import db  # noqa: E402
from models import Profile  # noqa: E402


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--cache-id", help="Reconcile only this cache.")
    parser.add_argument("--profiles", action="store_true", help="Also reconcile every profile's find/FTC counters.")
    return parser.parse_args(argv)


def reconcile(cache_id: str | None = None, profiles: bool = False) -> int:
    """Run the reconciliation pass inside an app context; returns a process exit code."""
    app = create_app()
    with app.app_context():
        try:
            if cache_id:
                count = reconcile_cache_find_count(cache_id)
                print(f"✅ Cache {cache_id} now has finds_count={count}.")
            else:
                drifted = reconcile_all_find_counts()
                print(f"✅ Reconciled every cache. Drifted counters repaired: {drifted}")

            if profiles:
                profile_ids = [row[0] for row in db.session.query(Profile.id).all()]
                print(f"🔍 Reconciling {len(profile_ids)} profiles...")
                for profile_id in profile_ids:
                    finds_count, ftc_count = reconcile_profile_counts(profile_id)
                    print(f"  • {profile_id}: finds={finds_count} ftc={ftc_count}")
        except FindLedgerError as exc:
            print(f"❌ Reconciliation failed: {exc}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    args = _parse_args()
    try:
        sys.exit(reconcile(cache_id=args.cache_id, profiles=args.profiles))
    except KeyboardInterrupt:
        sys.exit("\n⚠️ Reconciliation cancelled by user.")
