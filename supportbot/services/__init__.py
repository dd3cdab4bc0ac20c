from supportbot.services.answer_policy import AnswerMode, decide_mode, ensure_handoff_invitation
from supportbot.services.flag_store import HandoffFlagStore, HandoffReason, HandoffRecord, LockTimeoutError
from supportbot.services.result import ErrorCode, Result
from supportbot.services.state_machine import (
    HandoffState,
    InvalidTransitionError,
    can_transition,
    is_handoff_list_command,
    is_human_request,
    is_release_command,
    release,
    suspend,
    transition,
)
from supportbot.services.ttl_store import ExpiringListStore, ExpiringStore
