#!/usr/bin/env python3
"""
Re-list every connected account's campaigns and adopt remote campaigns that
have no local document (e.g. a create whose local insert failed).

Run from backend directory:
  python scripts/reconcile_campaigns.py

Limit to one user:
  python scripts/reconcile_campaigns.py --user <user_id>
"""

import asyncio
import argparse
import sys
from pathlib import Path

# Ensure backend root is on path
backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from adsync.errors import ClassifiedError
from adsync.services.sync_service import SyncService, build_sync_service


async def reconcile_user(service: SyncService, user_id: str, max_pages: int) -> int:
    """Walk every ad account of one user; returns the number of campaigns reconciled."""
    result = await service.list_ad_accounts(user_id)
    total = 0
    for ref in result["ad_accounts"]:
        bookmark = None
        for _ in range(max_pages):
            filters = {"bookmark": bookmark} if bookmark else {}
            page = await service.list_campaigns(user_id, ref.id, filters)
            total += len(page["reconciled"])
            bookmark = page["bookmark"]
            if not bookmark:
                break
        print(f"  {user_id} / {ref.id}: reconciled")
    return total


async def main():
    parser = argparse.ArgumentParser(description="Reconcile remote campaigns into local documents")
    parser.add_argument("--user", help="Only reconcile this user id")
    parser.add_argument("--max-pages", type=int, default=50, help="Page limit per ad account")
    args = parser.parse_args()

    service = build_sync_service()
    if args.user:
        user_ids = [args.user]
    else:
        user_ids = sorted({account.user_id for account in await service.store.list_accounts()})

    print(f"Reconciling campaigns for {len(user_ids)} user(s)...")
    failures = 0
    for user_id in user_ids:
        try:
            count = await reconcile_user(service, user_id, args.max_pages)
            print(f"  {user_id}: {count} campaigns reconciled")
        except ClassifiedError as e:
            failures += 1
            print(f"  {user_id}: {e.code.value}: {e.message}")

    print(f"Done. {len(user_ids) - failures} ok, {failures} failed.")


if __name__ == "__main__":
    asyncio.run(main())
