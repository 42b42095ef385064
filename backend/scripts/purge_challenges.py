"""
Sweep expired WebAuthn challenges left behind by abandoned sign-ups and logins.

Consuming a challenge deletes it, so only ceremonies the browser never
finished accumulate here. Safe to run as often as you like.

Usage:
    cd backend
    SUPABASE_URL=... SUPABASE_SERVICE_KEY=... python scripts/purge_challenges.py [--dry-run]

Or with a .env file:
    python scripts/purge_challenges.py [--dry-run]
"""
import sys
from collections import Counter
from datetime import datetime, timezone

from dotenv import load_dotenv

from athena.db import get_client, list_expired_challenges, purge_expired_challenges


def run(dry_run: bool = False, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    db = get_client()

    print(f"\n🔍 Looking for challenges that expired before {now.isoformat()}...\n")
    expired = list_expired_challenges(db, now)
    if not expired:
        print("  Nothing to purge.")
        return 0

    by_purpose = Counter(row.get("purpose", "?") for row in expired)
    for purpose, count in sorted(by_purpose.items()):
        print(f"    {purpose}: {count}")

    if dry_run:
        print(f"\n  DRY RUN — {len(expired)} rows would be removed.")
        return 0

    removed = purge_expired_challenges(db, now)
    print(f"\n✅ Removed {removed} expired challenges.\n")
    return removed


if __name__ == "__main__":
    load_dotenv()
    run(dry_run="--dry-run" in sys.argv)
