import asyncio
import os
from datetime import datetime, timezone

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from supportbot import __version__
from supportbot.config import settings, validate_settings
from supportbot.dependencies import get_orchestrator, reset_orchestrator
from supportbot.logging_config import get_logger, setup_logging
from supportbot.routers import admin, chat, staff_webhook, webhook
from supportbot.services.orchestrator import ChatOrchestrator, auto_release_loop

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Support Bot API",
    description="LINE support chatbot with Q&A retrieval and human handoff",
    version=__version__,
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()] or ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(staff_webhook.router)
app.include_router(chat.router)
app.include_router(admin.router)

_auto_release_task: asyncio.Task | None = None


def _is_auto_release_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.handoff_auto_release_seconds > 0


@app.on_event("startup")
async def start_background_work() -> None:
    global _auto_release_task
    for problem in validate_settings():
        logger.warning(f"Configuration problem: {problem}")

    orchestrator = get_orchestrator()
    orchestrator.start()

    if _is_auto_release_enabled() and (_auto_release_task is None or _auto_release_task.done()):
        _auto_release_task = asyncio.create_task(
            auto_release_loop(
                orchestrator,
                settings.handoff_auto_release_seconds,
                max(settings.handoff_auto_release_interval_seconds, 1.0),
            )
        )
        logger.info("Handoff auto-release worker started")


@app.on_event("shutdown")
async def stop_background_work() -> None:
    global _auto_release_task
    if _auto_release_task is not None:
        _auto_release_task.cancel()
        try:
            await _auto_release_task
        except asyncio.CancelledError:
            pass
        _auto_release_task = None

    orchestrator = reset_orchestrator()
    if orchestrator is not None:
        await orchestrator.close()


@app.get("/health")
async def health(orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    knowledge = orchestrator.answer_service.knowledge
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "index_loaded": knowledge.loaded,
        "index_exists": knowledge.exists(),
        "stores": {
            "history": orchestrator.history.stats(),
            "relay_bindings": orchestrator.relay.bindings.stats(),
        },
    }
