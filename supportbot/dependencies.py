from typing import Optional

from supportbot.config import Settings, settings
from supportbot.services.answer_service import AnswerService
from supportbot.services.coalescer import MessageCoalescer
from supportbot.services.flag_store import HandoffFlagStore
from supportbot.services.handoff_service import HandoffService
from supportbot.services.knowledge_service import KnowledgeBase
from supportbot.services.line_service import LineService
from supportbot.services.llm import OpenAIProvider
from supportbot.services.orchestrator import ChatOrchestrator, make_answer_fn
from supportbot.services.relay_service import ReplyRelay
from supportbot.services.ttl_store import ExpiringListStore

_orchestrator: Optional[ChatOrchestrator] = None


def build_orchestrator(config: Settings) -> ChatOrchestrator:
    """Wire every collaborator from settings."""
    llm = OpenAIProvider(
        api_key=config.openai_api_key or "",
        default_model=config.chat_model,
        embedding_model=config.embedding_model,
        base_url=config.openai_base_url,
        timeout_seconds=config.llm_timeout_seconds,
        max_attempts=config.llm_max_retries,
    )
    knowledge = KnowledgeBase(config.qa_index_path, embed=llm.embed_one)
    answer_service = AnswerService(
        knowledge,
        llm if config.openai_api_key else None,
        sim_threshold=config.sim_threshold,
        margin_threshold=config.score_gap_threshold,
        top_k=config.rag_top_k,
        context_path=config.qa_context_path,
        chat_model=config.chat_model,
        max_tokens=config.max_tokens,
    )

    user_channel = LineService(config.line_channel_access_token)
    staff_channel = None
    if config.staff_line_channel_access_token:
        staff_channel = LineService(config.staff_line_channel_access_token)

    history = ExpiringListStore(config.message_history_ttl_seconds, config.message_history_max_items)
    flags = HandoffFlagStore(
        config.handoff_state_path,
        lock_retries=config.handoff_lock_retries,
        lock_backoff_seconds=config.handoff_lock_backoff_seconds,
        lock_max_backoff_seconds=config.handoff_lock_max_backoff_seconds,
        lock_stale_seconds=config.handoff_lock_stale_seconds,
    )
    handoff = HandoffService(
        flags,
        user_channel,
        history,
        staff_channel=staff_channel,
        staff_target_id=config.staff_target_id,
    )
    coalescer = MessageCoalescer(
        make_answer_fn(answer_service),
        user_channel,
        history,
        debounce_seconds=config.debounce_ms / 1000,
        max_messages=config.max_debounce_messages,
        max_chars=config.max_debounce_chars,
    )
    relay = ReplyRelay(user_channel, config.reply_mode_timeout_seconds)

    return ChatOrchestrator(
        handoff,
        coalescer,
        relay,
        answer_service,
        user_channel,
        history,
        staff_channel=staff_channel,
        staff_target_id=config.staff_target_id,
    )


def get_orchestrator() -> ChatOrchestrator:
    """FastAPI dependency: the process-wide orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(settings)
    return _orchestrator


def reset_orchestrator() -> Optional[ChatOrchestrator]:
    """Forget the current orchestrator (returned so the caller can close it)."""
    global _orchestrator
    current, _orchestrator = _orchestrator, None
    return current
