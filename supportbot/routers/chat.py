from fastapi import APIRouter, Depends, HTTPException

from supportbot.dependencies import get_orchestrator
from supportbot.logging_config import get_logger
from supportbot.schemas.chat import ChatRequest, ChatResponse
from supportbot.services.knowledge_service import IndexNotFoundError
from supportbot.services.orchestrator import ChatOrchestrator

logger = get_logger("chat")

router = APIRouter()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, orchestrator: ChatOrchestrator = Depends(get_orchestrator)):
    """Answer one question directly, without debounce or handoff."""
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="message is required")
    try:
        return await orchestrator.answer_service.answer(message)
    except IndexNotFoundError as e:
        logger.error(f"Chat failed: {e}")
        raise HTTPException(status_code=503, detail="Q&A index not available")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
