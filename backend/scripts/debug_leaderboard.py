#!/usr/bin/env python3
"""One-off: fetch a map leaderboard through the pipeline client and print it, with display names.
Usage: NADEO_BASIC_AUTHORIZATION=... MAP_UID=... python scripts/debug_leaderboard.py [length]"""
import asyncio
import json
import os
import sys

from record_alerts.services.http_client import close_http_client, init_http_client
from record_alerts.services.leaderboard_client import build_leaderboard_client

MAP_UID = os.environ.get("MAP_UID", "")


async def main():
    if not MAP_UID:
        print("Set MAP_UID in environment")
        return
    length = int(sys.argv[1]) if len(sys.argv) > 1 else 5
    init_http_client()
    client = build_leaderboard_client()
    client.use_cache = False
    try:
        print("=== leaderboard {} (length={}) ===".format(MAP_UID, length))
        entries = await client.get_leaderboard(MAP_UID, length=length)
        names = await client.resolve_display_names([e.account_id for e in entries])
        rows = [dict(e.model_dump(), display_name=names.get(e.account_id)) for e in entries]
        print(json.dumps(rows, indent=2, default=str))
        print("API calls:", client.spacer.calls)
    finally:
        await close_http_client()


if __name__ == "__main__":
    asyncio.run(main())
