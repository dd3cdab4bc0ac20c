from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    port: int = 3000
    debug: bool = False
    log_level: str = "INFO"

    # LINE: user-facing channel
    line_channel_secret: str = ""
    line_channel_access_token: str = ""
    # LINE: staff notification channel (optional)
    staff_line_channel_secret: Optional[str] = None
    staff_line_channel_access_token: Optional[str] = None
    staff_target_id: Optional[str] = None

    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    embedding_model: str = "text-embedding-3-small"
    chat_model: str = "gpt-4o-mini"
    max_tokens: int = 2000
    llm_timeout_seconds: float = 30.0
    llm_max_retries: int = 3

    # Direct vs generate decision
    sim_threshold: float = 0.85
    score_gap_threshold: float = 0.05
    rag_top_k: int = 5

    debounce_ms: int = 500
    max_debounce_messages: int = 5
    max_debounce_chars: int = 800

    message_history_ttl_seconds: float = 1800
    message_history_max_items: int = 10
    reply_mode_timeout_seconds: float = 180

    handoff_state_path: str = "data/handoff_state.json"
    handoff_lock_retries: int = 20
    handoff_lock_backoff_seconds: float = 0.05
    handoff_lock_max_backoff_seconds: float = 1.0
    handoff_lock_stale_seconds: float = 10.0
    # 0 disables automatic release of long-running suspensions
    handoff_auto_release_seconds: float = 0
    handoff_auto_release_interval_seconds: float = 60

    qa_index_path: str = "data/qa_index.json"
    qa_context_path: str = "data/qa_context.md"

    admin_token: Optional[str] = None
    cors_allow_origins: str = "*"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()


def validate_settings(config: Optional[Settings] = None) -> list[str]:
    """Return the list of missing required settings (empty when valid)."""
    config = config or settings
    errors = []
    if not config.line_channel_secret:
        errors.append("LINE_CHANNEL_SECRET is required")
    if not config.line_channel_access_token:
        errors.append("LINE_CHANNEL_ACCESS_TOKEN is required")
    if not config.openai_api_key:
        errors.append("OPENAI_API_KEY is required")
    return errors


def config_summary(config: Optional[Settings] = None) -> dict:
    """Settings snapshot with secrets replaced by presence flags."""
    config = config or settings
    return {
        "server": {"port": config.port, "debug": config.debug},
        "openai": {
            "embedding_model": config.embedding_model,
            "chat_model": config.chat_model,
            "max_tokens": config.max_tokens,
            "has_api_key": bool(config.openai_api_key),
        },
        "line": {
            "has_channel_secret": bool(config.line_channel_secret),
            "has_channel_access_token": bool(config.line_channel_access_token),
            "has_staff_config": bool(config.staff_line_channel_secret and config.staff_target_id),
        },
        "similarity": {
            "sim_threshold": config.sim_threshold,
            "score_gap_threshold": config.score_gap_threshold,
            "rag_top_k": config.rag_top_k,
        },
        "debounce": {
            "debounce_ms": config.debounce_ms,
            "max_debounce_messages": config.max_debounce_messages,
            "max_debounce_chars": config.max_debounce_chars,
        },
        "ttl": {
            "message_history_ttl_seconds": config.message_history_ttl_seconds,
            "message_history_max_items": config.message_history_max_items,
            "reply_mode_timeout_seconds": config.reply_mode_timeout_seconds,
        },
        "handoff": {
            "state_path": config.handoff_state_path,
            "auto_release_seconds": config.handoff_auto_release_seconds,
        },
        "logging": {"level": config.log_level},
        "admin": {"has_token": bool(config.admin_token)},
    }
