"""Admin API: index reload, handoff inspection and override, config summary."""

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from supportbot.config import config_summary, settings, validate_settings
from supportbot.dependencies import get_orchestrator
from supportbot.logging_config import get_logger
from supportbot.services.knowledge_service import IndexNotFoundError
from supportbot.services.orchestrator import ChatOrchestrator
from supportbot.services.result import ErrorCode

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/reload")
async def reload_index(
    x_admin_token: Optional[str] = Header(default=None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    _require_admin_token(x_admin_token)
    knowledge = orchestrator.answer_service.knowledge
    try:
        index = knowledge.reload()
    except IndexNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logger.info("Q&A index reloaded", extra={"context": {"count": len(index.get("items") or [])}})
    return {
        "status": "ok",
        "count": len(index.get("items") or []),
        "generated_at": index.get("generated_at"),
        "embedding_model": index.get("embedding_model"),
    }


@router.get("/handoffs")
async def list_handoffs(
    enabled: Optional[bool] = None,
    x_admin_token: Optional[str] = Header(default=None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    _require_admin_token(x_admin_token)
    flags = orchestrator.handoff.flags
    if enabled is None:
        records = flags.list_all()
    elif enabled:
        records = flags.list_enabled()
    else:
        records = flags.list_disabled()
    return {
        "count": len(records),
        "items": [{"user_id": user_id, **record.model_dump(by_alias=True)} for user_id, record in records],
    }


@router.post("/handoffs/{user_id}/release")
async def release_handoff(
    user_id: str,
    x_admin_token: Optional[str] = Header(default=None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    _require_admin_token(x_admin_token)
    result = await orchestrator.handoff.admin_release(user_id)
    if not result.ok:
        status = 409 if result.error_code == ErrorCode.LOCK_TIMEOUT else 500
        raise HTTPException(status_code=status, detail=result.describe())
    return {"status": "ok", "user_id": user_id, "record": result.value.model_dump(by_alias=True)}


@router.get("/config")
async def get_config(x_admin_token: Optional[str] = Header(default=None)):
    _require_admin_token(x_admin_token)
    return {"config": config_summary(), "errors": validate_settings()}
