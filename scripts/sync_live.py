#!/usr/bin/env python3
"""Live sync check against real ad accounts.

Creates a PAUSED campaign for a small test ad on each requested platform,
pauses it again through the status path and prints the binding records, to
verify that credentials and connectors work end-to-end.

Usage:
    # Sync to Meta only
    python3 scripts/sync_live.py --platform meta

    # Sync to both platforms with a custom name
    python3 scripts/sync_live.py --platform google --platform meta --name "My Test Ad"

Environment variables required (set in .env):
    GOOGLE_ADS_DEVELOPER_TOKEN, GOOGLE_ADS_CUSTOMER_ID, GOOGLE_OAUTH_CLIENT_ID,
    GOOGLE_OAUTH_CLIENT_SECRET  - for --platform google
    META_APP_ID, META_APP_SECRET, META_AD_ACCOUNT_ID, META_PAGE_ID
                                - for --platform meta
    GOOGLE_REFRESH_TOKEN / META_ACCESS_TOKEN - the user grant to sync with
    META_IMAGE_HASH             - uploaded image hash, required by Meta creatives
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from decimal import Decimal

from adsync.jobs import build_orchestrator
from adsync.platforms.base import (
    BudgetSpec,
    CreativeSpec,
    Credential,
    Platform,
    TargetingSpec,
    UnifiedAd,
)
from adsync.services.storage import InMemorySyncStore
from adsync.settings import settings

REQUIRED = {
    Platform.GOOGLE: [
        "GOOGLE_ADS_DEVELOPER_TOKEN",
        "GOOGLE_ADS_CUSTOMER_ID",
        "GOOGLE_OAUTH_CLIENT_ID",
    ],
    Platform.META: ["META_APP_ID", "META_APP_SECRET", "META_AD_ACCOUNT_ID", "META_PAGE_ID"],
}
GRANT_ENV = {Platform.GOOGLE: "GOOGLE_REFRESH_TOKEN", Platform.META: "META_ACCESS_TOKEN"}
USER_ID = "live-check"


def check_credentials(platforms: list[Platform]) -> bool:
    ok = True
    for platform in platforms:
        for name in REQUIRED[platform]:
            if not getattr(settings, name):
                print(f"  ERROR: {name} is not set")
                ok = False
        if not os.environ.get(GRANT_ENV[platform]):
            print(f"  ERROR: {GRANT_ENV[platform]} is not set")
            ok = False
    return ok


def build_ad(name: str) -> UnifiedAd:
    image_hash = os.environ.get("META_IMAGE_HASH")
    return UnifiedAd(
        user_id=USER_ID,
        name=name,
        objective="traffic",
        creative=CreativeSpec(
            headlines=["Fresh Coffee Daily", "Roasted This Week", "Order In Minutes"],
            descriptions=["Small batch beans shipped fast.", "Free shipping over $30."],
            call_to_action="shop_now",
            asset_refs=[image_hash] if image_hash else [],
            landing_url="https://example.com/coffee",
        ),
        targeting=TargetingSpec(countries=["US"], languages=["en"], keywords=["coffee beans"]),
        budget=BudgetSpec(amount=Decimal("5.00")),
    )


async def run_check(name: str, platforms: list[Platform]) -> bool:
    print("\n1. Checking credentials...")
    if not check_credentials(platforms):
        return False

    store = InMemorySyncStore()
    orchestrator = build_orchestrator(store, dry_run=False)
    tokens = orchestrator.tokens
    for platform in platforms:
        grant = os.environ[GRANT_ENV[platform]]
        await tokens.connect(
            Credential(
                user_id=USER_ID,
                platform=platform,
                # Google hands out refresh tokens; the first call exchanges it.
                access_token=grant if platform == Platform.META else "",
                refresh_token=grant,
            )
        )

    ad = build_ad(name)
    await store.save_ad(ad)

    print("\n2. Syncing ad (campaigns are created PAUSED)...")
    result = await orchestrator.sync(ad, platforms)
    for r in result.results:
        if r.success:
            print(f"   {r.platform.value}: {r.operation.value} OK -> {r.native_id}")
        else:
            print(f"   {r.platform.value}: FAILED [{r.error.kind.value}] {r.error.message}")
        if r.dropped_fields:
            print(f"   {r.platform.value}: dropped {', '.join(r.dropped_fields)}")

    if result.success:
        print("\n3. Pausing through the status path...")
        paused = await orchestrator.pause(ad)
        for r in paused.results:
            print(f"   {r.platform.value}: {'OK' if r.success else 'FAILED - ' + r.error.message}")

    print("\n4. Bindings:")
    for binding in await store.list_bindings(ad.id, include_archived=True):
        print(f"   {binding.model_dump_json()}")

    await orchestrator.close()
    return result.success


def main():
    parser = argparse.ArgumentParser(description="Live sync check for adsync connectors")
    parser.add_argument(
        "--platform",
        action="append",
        choices=[Platform.GOOGLE.value, Platform.META.value],
        help="Platform to sync to (repeatable, default: meta)",
    )
    parser.add_argument("--name", default="[TEST] adsync live check", help="Ad name")
    args = parser.parse_args()
    platforms = [Platform(p) for p in (args.platform or [Platform.META.value])]

    print("=" * 60)
    print("ADSYNC - LIVE SYNC CHECK")
    print("=" * 60)

    success = asyncio.run(run_check(args.name, platforms))

    print("\n" + "=" * 60)
    print("RESULT: PASSED" if success else "RESULT: FAILED")
    print("=" * 60)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
