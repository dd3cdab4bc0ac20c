from enum import Enum
from typing import Optional


class HandoffState(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


VALID_TRANSITIONS = {
    HandoffState.ACTIVE: [HandoffState.SUSPENDED],
    HandoffState.SUSPENDED: [HandoffState.ACTIVE],
}

# Exact-match command vocabularies, compared after strip + casefold.
HUMAN_REQUEST_COMMANDS = frozenset({"担当者", "human", "staff", "operator"})

RELEASE_COMMANDS = frozenset(
    {
        "解除",
        "担当者解除",
        "担当者終了",
        "再開",
        "bot再開",
        "release",
        "resume",
    }
)

HANDOFF_LIST_COMMANDS = frozenset(
    {
        "停止中一覧",
        "担当者一覧",
        "handoff一覧",
        "bot停止中一覧",
    }
)


class InvalidTransitionError(Exception):
    def __init__(self, from_state: HandoffState, to_state: HandoffState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def state_of(enabled: Optional[bool]) -> HandoffState:
    """Map the durable suspension flag onto a state."""
    return HandoffState.SUSPENDED if enabled else HandoffState.ACTIVE


def can_transition(from_state: HandoffState, to_state: HandoffState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: HandoffState, to_state: HandoffState) -> HandoffState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def suspend(current_state: HandoffState) -> HandoffState:
    """Hand the conversation to staff: the bot stops answering."""
    return transition(current_state, HandoffState.SUSPENDED)


def release(current_state: HandoffState) -> HandoffState:
    """Give the conversation back to the bot."""
    return transition(current_state, HandoffState.ACTIVE)


def _normalize_command(text: Optional[str]) -> str:
    return (text or "").strip().casefold()


def is_human_request(text: Optional[str]) -> bool:
    return _normalize_command(text) in HUMAN_REQUEST_COMMANDS


def is_release_command(text: Optional[str]) -> bool:
    return _normalize_command(text) in RELEASE_COMMANDS


def is_handoff_list_command(text: Optional[str]) -> bool:
    return _normalize_command(text) in HANDOFF_LIST_COMMANDS
