from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from supportbot.config import settings
from supportbot.dependencies import get_orchestrator
from supportbot.routers.webhook import process_events, read_signed_events
from supportbot.services.orchestrator import STAFF_CHANNEL, ChatOrchestrator

router = APIRouter(prefix="/staff")


@router.post("/webhook")
async def handle_staff_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_line_signature: Optional[str] = Header(default=None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Staff notification channel: handoff toggles, replies and the suspended-user list."""
    if not settings.staff_line_channel_secret:
        raise HTTPException(status_code=503, detail="Staff channel not configured")
    events = await read_signed_events(request, settings.staff_line_channel_secret, x_line_signature)
    background_tasks.add_task(process_events, orchestrator, events, STAFF_CHANNEL)
    return {"status": "ok", "events": len(events)}
