import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from supportbot.logging_config import get_logger, log_handoff_change
from supportbot.services.delivery import OutboundChannel, display_name_of, send_reply_with_split
from supportbot.services.flag_store import (
    SYSTEM_ACTOR,
    HandoffFlagStore,
    HandoffReason,
    HandoffRecord,
    parse_timestamp,
)
from supportbot.services.line_service import build_handoff_flex, text_message
from supportbot.services.result import ErrorCode, Result
from supportbot.services.state_machine import HandoffState, InvalidTransitionError, release, state_of, suspend
from supportbot.services.ttl_store import ExpiringListStore

logger = get_logger("handoff_service")

HUMAN_REQUEST_ACK = "担当者が返信しますのでしばらくお待ちください。"
HANDOFF_FAILED_MESSAGE = "ただいま担当者へお繋ぎできませんでした。お手数ですが、しばらくしてからもう一度「担当者」と入力してください。"
RELEASE_ACK = "担当者対応を終了しました。Botの自動回答を再開します。"
STAFF_CONTEXT_TURNS = 2

MOVES = {HandoffState.SUSPENDED: suspend, HandoffState.ACTIVE: release}


class HandoffService:
    """Side effects of suspending and releasing automation for a user.

    The flag store is the only place the state lives. Flag-store calls run in
    worker threads because lock acquisition may sleep.
    """

    def __init__(
        self,
        flags: HandoffFlagStore,
        user_channel: OutboundChannel,
        history: ExpiringListStore,
        *,
        staff_channel: Optional[OutboundChannel] = None,
        staff_target_id: Optional[str] = None,
        push_interval_seconds: float = 0.5,
    ):
        self.flags = flags
        self.user_channel = user_channel
        self.history = history
        self.staff_channel = staff_channel
        self.staff_target_id = staff_target_id
        self.push_interval_seconds = push_interval_seconds

    @property
    def staff_configured(self) -> bool:
        return bool(self.staff_channel and self.staff_target_id)

    async def current_state(self, user_id: str) -> HandoffState:
        return state_of(await asyncio.to_thread(self.flags.is_enabled, user_id))

    async def read(self, user_id: str) -> Optional[HandoffRecord]:
        return await asyncio.to_thread(self.flags.read, user_id)

    async def register(self, user_id: str) -> Optional[HandoffRecord]:
        """Make sure a first-seen user has a (disabled) record. Lock-free when it already exists."""
        record = await self.read(user_id)
        if record is not None:
            return record
        result = await asyncio.to_thread(self.flags.ensure, user_id)
        if not result.ok:
            logger.warning("Could not register user", extra={"context": {"user_id": user_id, "error": result.describe()}})
        return result.value

    def _prior_turns(self, user_id: str) -> List[str]:
        return (self.history.get(user_id) or [])[-STAFF_CONTEXT_TURNS:]

    async def _set_flag(
        self,
        user_id: str,
        target: HandoffState,
        *,
        reason: HandoffReason,
        updated_by: str,
        display_name: Optional[str] = None,
        strict: bool = False,
    ) -> Result[HandoffRecord]:
        """Move the user to target. A no-op move is allowed unless strict.

        The transition is checked against the stored record under the flag-store
        lock, so of two concurrent strict moves only the first succeeds.
        """

        def _check(previous: Optional[HandoffRecord]) -> None:
            current = state_of(previous.enabled if previous else False)
            if current != target or strict:
                MOVES[target](current)

        try:
            result = await asyncio.to_thread(
                self.flags.write,
                user_id,
                enabled=target == HandoffState.SUSPENDED,
                updated_by=updated_by,
                reason=reason,
                display_name=display_name,
                guard=_check,
            )
        except InvalidTransitionError as exc:
            return Result.failure(str(exc), ErrorCode.INVALID_STATE)

        if result.ok:
            log_handoff_change(
                logger,
                user_id=user_id,
                enabled=result.value.enabled,
                reason=reason.value,
                updated_by=updated_by,
            )
        return result

    async def notify_staff(self, messages: List[dict]) -> bool:
        if not self.staff_configured:
            logger.warning("Staff notification is not configured")
            return False
        response = await self.staff_channel.push_message(self.staff_target_id, messages)
        if not response.get("ok"):
            logger.warning("Staff notification failed", extra={"context": {"error": response.get("error")}})
            return False
        return True

    async def request_human(self, user_id: str, text: str, reply_token: Optional[str]) -> Result[HandoffRecord]:
        """User asked for staff: suspend, acknowledge once, notify staff with recent context.

        Repeating the request while suspended acknowledges and notifies again.
        """
        previous = self._prior_turns(user_id)
        display_name = await display_name_of(self.user_channel, user_id)

        result = await self._set_flag(
            user_id,
            HandoffState.SUSPENDED,
            reason=HandoffReason.USER_REQUESTED_STAFF,
            updated_by=user_id,
            display_name=display_name,
        )
        if not result.ok:
            logger.error("Handoff request not persisted", extra={"context": {"user_id": user_id, "error": result.describe()}})
            await send_reply_with_split(self.user_channel, user_id, reply_token, HANDOFF_FAILED_MESSAGE, self.push_interval_seconds)
            return result

        await send_reply_with_split(self.user_channel, user_id, reply_token, HUMAN_REQUEST_ACK, self.push_interval_seconds)
        await self.notify_staff(
            [build_handoff_flex(user_id, display_name, text, previous, enabled=True, title="担当者対応の依頼")]
        )
        return result

    async def release_by_user(self, user_id: str, reply_token: Optional[str]) -> Result[HandoffRecord]:
        result = await self._set_flag(
            user_id,
            HandoffState.ACTIVE,
            reason=HandoffReason.USER_RELEASED,
            updated_by=user_id,
            strict=True,
        )
        if not result.ok:
            return result
        await send_reply_with_split(self.user_channel, user_id, reply_token, RELEASE_ACK, self.push_interval_seconds)
        name = result.value.display_name or user_id
        await self.notify_staff([text_message(f"ユーザーが担当者対応を終了しました（Bot再開）\nユーザー: {name}")])
        return result

    async def forward_while_suspended(self, user_id: str, text: str) -> Result[str]:
        """Pass a suspended user's message to staff instead of answering it."""
        previous = self._prior_turns(user_id)
        self.history.push(user_id, text)
        record = await self.read(user_id)
        display_name = (record.display_name if record else None) or user_id
        delivered = await self.notify_staff(
            [build_handoff_flex(user_id, display_name, text, previous, enabled=True, title="担当者対応中のメッセージ")]
        )
        if not delivered:
            return Result.failure("staff notification not delivered", ErrorCode.DELIVERY_FAILED)
        return Result.success("forwarded")

    async def staff_toggle(self, user_id: str, enabled: bool, staff_actor_id: str) -> Result[HandoffRecord]:
        target = HandoffState.SUSPENDED if enabled else HandoffState.ACTIVE
        return await self._set_flag(
            user_id, target, reason=HandoffReason.STAFF_GROUP_POSTBACK, updated_by=staff_actor_id
        )

    async def admin_release(self, user_id: str, actor: str = "admin") -> Result[HandoffRecord]:
        return await self._set_flag(user_id, HandoffState.ACTIVE, reason=HandoffReason.ADMIN_OVERRIDE, updated_by=actor)

    async def release_expired(self, max_age_seconds: float, now: Optional[datetime] = None) -> List[str]:
        """Release every suspension whose last update is older than max_age_seconds."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=max_age_seconds)
        released = []
        for user_id, record in await asyncio.to_thread(self.flags.list_enabled):
            updated_at = parse_timestamp(record.updated_at)
            if updated_at is None or updated_at > cutoff:
                continue
            result = await self._set_flag(
                user_id,
                HandoffState.ACTIVE,
                reason=HandoffReason.TIMEOUT_RELEASE,
                updated_by=SYSTEM_ACTOR,
                strict=True,
            )
            if result.ok:
                released.append(user_id)
            else:
                logger.warning("Timeout release failed", extra={"context": {"user_id": user_id, "error": result.describe()}})
        return released

    async def list_suspended(self) -> List[Tuple[str, str]]:
        """(user_id, display name) for every suspended user."""
        records = await asyncio.to_thread(self.flags.list_enabled)
        return [(user_id, record.display_name or user_id) for user_id, record in records]
