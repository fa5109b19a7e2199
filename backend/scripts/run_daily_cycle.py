#!/usr/bin/env python3
"""Run one daily cycle and drain the queue once, outside the API process (cron or manual rerun).
Usage: python scripts/run_daily_cycle.py [YYYY-MM-DD]"""
import asyncio
import logging
import sys
from datetime import date

from record_alerts.db.session import async_session_maker, init_db
from record_alerts.services.email_composer import compose_overdue
from record_alerts.services.http_client import close_http_client, init_http_client
from record_alerts.services.job_queue import run_queue_worker
from record_alerts.services.leaderboard_client import build_leaderboard_client
from record_alerts.services.scheduler import run_daily_cycle

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s", stream=sys.stdout)


async def main():
    day = date.fromisoformat(sys.argv[1]) if len(sys.argv) > 1 else None
    await init_db()
    init_http_client()
    try:
        queued = await run_daily_cycle(async_session_maker, today=day)
        print("Users queued:", queued)
        ran = await run_queue_worker(async_session_maker, build_leaderboard_client(async_session_maker))
        print("Jobs run:", ran)
        print("Overdue emails composed:", await compose_overdue(async_session_maker))
    finally:
        await close_http_client()


if __name__ == "__main__":
    asyncio.run(main())
