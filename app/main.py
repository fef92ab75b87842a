import asyncio
import os

from fastapi import Depends, FastAPI
from sqlalchemy.orm import Session

from app.config import settings
from app.database import dispose_engine, get_db, init_db
from app.logging_config import get_logger, setup_logging
from app.models import ConversationProfile, InboundMessage
from app.routers import admin, cron, telegram_webhook, whatsapp_webhook
from app.runtime import build_runtime, close_runtime

setup_logging()

app = FastAPI(
    title="Chat Relay",
    description="Debounced relay between chat platforms and a completion API",
    version="0.1.0",
)

app.include_router(telegram_webhook.router)
app.include_router(whatsapp_webhook.router)
app.include_router(admin.router)
app.include_router(cron.router)

logger = get_logger("main")
sweep_logger = get_logger("sweep_worker")
_sweep_worker_task: asyncio.Task | None = None


def _is_sweep_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.sweep_enabled


async def _sweep_worker_loop() -> None:
    interval_seconds = max(settings.sweep_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            runtime = getattr(app.state, "runtime", None)
            if runtime is None:
                continue
            results = await runtime.scheduler.sweep()
            if results.get("due") or results.get("released_stale"):
                sweep_logger.info("Sweep worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            sweep_logger.error(
                "Sweep worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def startup() -> None:
    global _sweep_worker_task
    init_db()
    app.state.runtime = build_runtime(settings)
    logger.info("Relay started", extra={"context": {"quiet_period_seconds": settings.quiet_period_seconds}})
    if not _is_sweep_worker_enabled():
        return
    if _sweep_worker_task is None or _sweep_worker_task.done():
        _sweep_worker_task = asyncio.create_task(_sweep_worker_loop())
        sweep_logger.info("Sweep worker started")


@app.on_event("shutdown")
async def shutdown() -> None:
    global _sweep_worker_task
    if _sweep_worker_task is not None:
        _sweep_worker_task.cancel()
        try:
            await _sweep_worker_task
        except asyncio.CancelledError:
            pass
        _sweep_worker_task = None

    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        await close_runtime(runtime)
        app.state.runtime = None
    dispose_engine()


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    messages_count = db.query(InboundMessage).count()
    pending_count = db.query(InboundMessage).filter(InboundMessage.status == "pending").count()
    profiles_count = db.query(ConversationProfile).count()
    return {
        "status": "ok",
        "messages": messages_count,
        "pending": pending_count,
        "profiles": profiles_count,
    }
