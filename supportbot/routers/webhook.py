from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from pydantic import ValidationError

from supportbot.config import settings
from supportbot.dependencies import get_orchestrator
from supportbot.logging_config import get_logger
from supportbot.schemas.line import LineEvent, LineWebhookBody
from supportbot.services.line_service import verify_signature
from supportbot.services.orchestrator import USER_CHANNEL, ChatOrchestrator

logger = get_logger("webhook")

router = APIRouter()


async def read_signed_events(request: Request, channel_secret: Optional[str], signature: Optional[str]) -> List[LineEvent]:
    """Verify X-Line-Signature over the raw body and parse the events."""
    body = await request.body()
    if not verify_signature(body, channel_secret or "", signature):
        logger.warning("Rejected webhook with bad signature", extra={"context": {"path": request.url.path}})
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        return LineWebhookBody.model_validate_json(body).events
    except ValidationError as e:
        logger.warning(f"Invalid webhook payload: {e}")
        raise HTTPException(status_code=400, detail="Invalid payload")


async def process_events(orchestrator: ChatOrchestrator, events: List[LineEvent], channel: str) -> None:
    results = await orchestrator.handle_events(events, channel)
    failures = [result.describe() for result in results if not result.ok]
    logger.info(
        "Webhook events processed",
        extra={"context": {"channel": channel, "events": len(results), "failures": failures}},
    )


@router.post("/webhook")
async def handle_line_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_line_signature: Optional[str] = Header(default=None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """User-facing channel. Acknowledge at once; events are handled after the response."""
    events = await read_signed_events(request, settings.line_channel_secret, x_line_signature)
    background_tasks.add_task(process_events, orchestrator, events, USER_CHANNEL)
    return {"status": "ok", "events": len(events)}
