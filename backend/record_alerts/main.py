import logging
import sys
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

# Ensure pipeline loggers (leaderboard client, phases, composer) print to stdout
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stdout,
)
from record_alerts.config import settings

logging.getLogger("record_alerts").setLevel(logging.DEBUG if settings.debug else logging.INFO)
from record_alerts.db.session import async_session_maker, init_db
from record_alerts.services.http_client import close_http_client, init_http_client
from record_alerts.services.leaderboard_cache import close_redis
from prometheus_client import make_asgi_app

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_daily_cycle():
    """Fan out the day's phase jobs (cron, settings.daily_cycle_hour)."""
    from record_alerts.services.scheduler import run_daily_cycle

    count = await run_daily_cycle(async_session_maker)
    logger.info("Daily cycle: %s users queued", count)


async def scheduled_queue_worker():
    """Drain available phase jobs with bounded concurrency."""
    from record_alerts.services.job_queue import run_queue_worker

    await run_queue_worker(async_session_maker, app.state.leaderboard_client)


async def scheduled_composer_sweep():
    """Send emails whose second phase never reported within the wait window."""
    from record_alerts.services.email_composer import compose_overdue

    await compose_overdue(async_session_maker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.app_env == "production":
        if not settings.encryption_key or len(settings.encryption_key) < 32:
            raise RuntimeError(
                "ENCRYPTION_KEY must be set in production (min 32 chars). "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        settings.validate_credentials()
    await init_db()
    init_http_client()

    from record_alerts.services.leaderboard_client import build_leaderboard_client

    app.state.leaderboard_client = build_leaderboard_client(async_session_maker)

    hour = settings.daily_cycle_hour if 0 <= settings.daily_cycle_hour <= 23 else 6
    scheduler.add_job(scheduled_daily_cycle, "cron", hour=hour, minute=0, max_instances=1, coalesce=True)
    scheduler.add_job(
        scheduled_queue_worker, "interval", seconds=settings.queue_poll_seconds, max_instances=1, coalesce=True
    )
    scheduler.add_job(
        scheduled_composer_sweep, "interval", minutes=settings.composer_sweep_minutes, max_instances=1, coalesce=True
    )

    scheduler.start()
    yield
    scheduler.shutdown()
    await close_http_client()
    await close_redis()


app = FastAPI(
    title="Trackmania Record Alerts",
    description="Daily mapper alert and driver notification pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health")
def health():
    return {"status": "ok"}
