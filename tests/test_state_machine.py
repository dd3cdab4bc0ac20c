import pytest

from supportbot.services.state_machine import (
    VALID_TRANSITIONS,
    HandoffState,
    InvalidTransitionError,
    can_transition,
    is_handoff_list_command,
    is_human_request,
    is_release_command,
    release,
    state_of,
    suspend,
    transition,
)


class TestHandoffState:
    def test_all_states_exist(self):
        assert HandoffState.ACTIVE.value == "active"
        assert HandoffState.SUSPENDED.value == "suspended"

    def test_state_is_string_enum(self):
        assert HandoffState.ACTIVE == "active"

    def test_state_of_flag(self):
        assert state_of(True) == HandoffState.SUSPENDED
        assert state_of(False) == HandoffState.ACTIVE
        assert state_of(None) == HandoffState.ACTIVE


class TestValidTransitions:
    def test_every_state_has_transitions(self):
        for state in HandoffState:
            assert state in VALID_TRANSITIONS

    def test_active_to_suspended(self):
        assert can_transition(HandoffState.ACTIVE, HandoffState.SUSPENDED)

    def test_suspended_to_active(self):
        assert can_transition(HandoffState.SUSPENDED, HandoffState.ACTIVE)

    def test_no_self_transitions(self):
        assert not can_transition(HandoffState.ACTIVE, HandoffState.ACTIVE)
        assert not can_transition(HandoffState.SUSPENDED, HandoffState.SUSPENDED)


class TestTransitionFunction:
    def test_valid_transition_returns_new_state(self):
        assert transition(HandoffState.ACTIVE, HandoffState.SUSPENDED) == HandoffState.SUSPENDED

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(HandoffState.ACTIVE, HandoffState.ACTIVE)
        assert exc_info.value.from_state == HandoffState.ACTIVE
        assert "active -> active" in str(exc_info.value)

    def test_suspend_and_release(self):
        assert suspend(HandoffState.ACTIVE) == HandoffState.SUSPENDED
        assert release(HandoffState.SUSPENDED) == HandoffState.ACTIVE

    def test_release_from_active_raises(self):
        with pytest.raises(InvalidTransitionError):
            release(HandoffState.ACTIVE)


class TestCommandVocabulary:
    @pytest.mark.parametrize("text", ["担当者", " 担当者 ", "HUMAN", "Staff", "operator"])
    def test_human_request(self, text):
        assert is_human_request(text)

    @pytest.mark.parametrize("text", ["担当者と話したい", "", None, "humans"])
    def test_not_human_request(self, text):
        assert not is_human_request(text)

    @pytest.mark.parametrize("text", ["解除", "担当者解除", "担当者終了", "再開", "Bot再開", "BOT再開", "Resume", " release "])
    def test_release_commands(self, text):
        assert is_release_command(text)

    @pytest.mark.parametrize("text", ["再開して", "resume please", "担当者"])
    def test_not_release_commands(self, text):
        assert not is_release_command(text)

    @pytest.mark.parametrize("text", ["停止中一覧", "担当者一覧", "Handoff一覧", "BOT停止中一覧"])
    def test_list_commands(self, text):
        assert is_handoff_list_command(text)
