"""Routing of inbound LINE events.

User channel: human request, suspension check, release command, then the
debounced answer path. Staff channel: handoff toggles, reply-relay and the
suspended-user list, accepted only from the configured staff group.

Every event is handled on its own; a failure in one is logged and reported in
that event's Result and never touches the others.
"""

import asyncio
from typing import List, Optional

from supportbot.logging_config import get_logger
from supportbot.schemas.line import LineEvent
from supportbot.services.answer_service import AnswerService
from supportbot.services.coalescer import APOLOGY_MESSAGE, AnswerFn, MessageCoalescer
from supportbot.services.delivery import OutboundChannel, send_reply_with_split
from supportbot.services.handoff_service import HandoffService
from supportbot.services.line_service import REPLY_MAX_MESSAGES, build_handoff_list_messages, format_status, text_message
from supportbot.services.relay_service import ReplyRelay
from supportbot.services.result import ErrorCode, Result
from supportbot.services.state_machine import (
    HandoffState,
    is_handoff_list_command,
    is_human_request,
    is_release_command,
)
from supportbot.services.ttl_store import ExpiringListStore

logger = get_logger("orchestrator")

USER_CHANNEL = "user"
STAFF_CHANNEL = "staff"

NO_SUSPENDED_USERS_MESSAGE = "現在、Bot停止中（担当者対応中）のユーザーはいません。"
LIST_TRUNCATED_MESSAGE = "停止中ユーザーが多いため一部のみ表示しました（最大50件）。必要なら「停止中一覧」をもう一度送ってください。"


def make_answer_fn(answer_service: AnswerService) -> AnswerFn:
    async def _answer(text: str, history: List[str]) -> str:
        response = await answer_service.answer(text, history)
        return response.answer

    return _answer


class ChatOrchestrator:
    def __init__(
        self,
        handoff: HandoffService,
        coalescer: MessageCoalescer,
        relay: ReplyRelay,
        answer_service: AnswerService,
        user_channel: OutboundChannel,
        history: ExpiringListStore,
        *,
        staff_channel: Optional[OutboundChannel] = None,
        staff_target_id: Optional[str] = None,
        push_interval_seconds: float = 0.5,
    ):
        self.handoff = handoff
        self.coalescer = coalescer
        self.relay = relay
        self.answer_service = answer_service
        self.user_channel = user_channel
        self.history = history
        self.staff_channel = staff_channel
        self.staff_target_id = staff_target_id
        self.push_interval_seconds = push_interval_seconds

    def start(self) -> None:
        """Start the periodic sweeps of the in-memory stores."""
        self.history.start()
        self.relay.bindings.start()

    async def close(self) -> None:
        await self.coalescer.close()
        await self.history.close()
        await self.relay.bindings.close()

    def _reply_channel(self, channel: str) -> OutboundChannel:
        if channel == STAFF_CHANNEL and self.staff_channel is not None:
            return self.staff_channel
        return self.user_channel

    def _is_staff_source(self, event: LineEvent) -> bool:
        source = event.source
        return bool(self.staff_target_id and source and source.group_id == self.staff_target_id)

    async def handle_events(self, events: List[LineEvent], channel: str = USER_CHANNEL) -> List[Result[str]]:
        results = []
        for event in events:
            try:
                result = await self.handle_event(event, channel)
            except Exception as exc:
                logger.exception(
                    "Event handling failed",
                    extra={"context": {"channel": channel, "event_type": event.type, "user_id": event.user_id}},
                )
                result = Result.failure(str(exc), ErrorCode.UNKNOWN)
            results.append(result)
        return results

    async def handle_event(self, event: LineEvent, channel: str = USER_CHANNEL) -> Result[str]:
        reply_channel = self._reply_channel(channel)

        if event.type == "postback":
            return await self._handle_postback(event, reply_channel)

        if event.text is None:
            return Result.success("ignored")

        if self._is_staff_source(event):
            return await self._handle_staff_text(event, reply_channel)
        if channel == STAFF_CHANNEL:
            return Result.success("ignored")

        return await self._handle_user_text(event)

    async def _handle_user_text(self, event: LineEvent) -> Result[str]:
        text = (event.text or "").strip()
        if not text:
            return Result.success("ignored")

        user_id = event.user_id
        if not user_id:
            # Group/room sources without a user id: answer right away, nothing to key state on.
            target = event.source.chat_id if event.source else None
            await self._answer_now(target, event.reply_token, text)
            return Result.failure("event has no user id", ErrorCode.MISSING_USER_ID)

        if is_human_request(text):
            result = await self.handoff.request_human(user_id, text, event.reply_token)
            return Result.success("handoff_requested") if result.ok else Result.failure(result.error, result.error_code)

        await self.handoff.register(user_id)
        if await self.handoff.current_state(user_id) == HandoffState.SUSPENDED:
            if is_release_command(text):
                result = await self.handoff.release_by_user(user_id, event.reply_token)
                return Result.success("released") if result.ok else Result.failure(result.error, result.error_code)
            return await self.handoff.forward_while_suspended(user_id, text)

        self.coalescer.enqueue(user_id, text, event.reply_token)
        return Result.success("queued")

    async def _answer_now(self, target: Optional[str], reply_token: Optional[str], text: str) -> None:
        try:
            answer = (await self.answer_service.answer(text, [])).answer
        except Exception as exc:
            logger.error("Immediate answer failed", extra={"context": {"error": str(exc)}})
            answer = APOLOGY_MESSAGE
        await send_reply_with_split(self.user_channel, target, reply_token, answer, self.push_interval_seconds)

    async def _reply(self, channel: OutboundChannel, reply_token: Optional[str], messages: List[dict]) -> bool:
        if not reply_token:
            return False
        response = await channel.reply_message(reply_token, messages)
        if not response.get("ok"):
            logger.warning("Staff reply failed", extra={"context": {"error": response.get("error")}})
            return False
        return True

    async def _handle_postback(self, event: LineEvent, reply_channel: OutboundChannel) -> Result[str]:
        if not self._is_staff_source(event):
            logger.warning(
                "Postback from outside the staff group ignored",
                extra={"context": {"source": event.source.model_dump() if event.source else None}},
            )
            return Result.failure("postback not from staff group", ErrorCode.UNAUTHORIZED)

        data = event.postback.data if event.postback else ""
        group_id = event.source.group_id

        if data.startswith("handoff:on:") or data.startswith("handoff:off:"):
            _, action, user_id = data.split(":", 2)
            if not user_id:
                return Result.failure("postback has no user id", ErrorCode.MISSING_USER_ID)
            enabled = action == "on"
            result = await self.handoff.staff_toggle(user_id, enabled, group_id)
            if not result.ok:
                await self._reply(reply_channel, event.reply_token, [text_message(f"handoffを更新できませんでした: {result.error_code}")])
                return Result.failure(result.error, result.error_code)
            name = result.value.display_name or user_id
            await self._reply(
                reply_channel,
                event.reply_token,
                [text_message(f"handoffを更新しました: {format_status(enabled)}\nユーザー: {name}")],
            )
            return Result.success(f"handoff_{action}")

        if data.startswith("reply:"):
            parts = data.split(":", 2)
            user_id = parts[1] if len(parts) > 1 else ""
            display_name = parts[2] if len(parts) > 2 and parts[2] else user_id
            if not user_id:
                return Result.failure("postback has no user id", ErrorCode.MISSING_USER_ID)
            actor = event.user_id or group_id
            self.relay.begin(actor, user_id, display_name)
            timeout = int(self.relay.bindings.ttl_seconds)
            await self._reply(
                reply_channel,
                event.reply_token,
                [text_message(f"{display_name} さんへの返信を入力してください（{timeout}秒以内・1通のみ送信されます）")],
            )
            return Result.success("reply_mode")

        return Result.success("ignored")

    async def _handle_staff_text(self, event: LineEvent, reply_channel: OutboundChannel) -> Result[str]:
        text = event.text or ""
        actor = event.user_id or event.source.group_id

        if self.relay.active_binding(actor) is not None:
            result = await self.relay.consume(actor, text)
            binding = result.value
            name = binding.target_display_name if binding else ""
            if result.ok:
                await self._reply(reply_channel, event.reply_token, [text_message(f"{name} さんに送信しました。")])
                return Result.success("relayed")
            await self._reply(
                reply_channel,
                event.reply_token,
                [text_message(f"{name} さんへの送信に失敗しました。もう一度「返信する」から送ってください。")],
            )
            return Result.failure(result.error, result.error_code)

        if is_handoff_list_command(text):
            await self._send_suspended_list(event, reply_channel)
            return Result.success("listed")

        return Result.success("ignored")

    async def _send_suspended_list(self, event: LineEvent, reply_channel: OutboundChannel) -> None:
        users = await self.handoff.list_suspended()
        if not users:
            await self._reply(reply_channel, event.reply_token, [text_message(NO_SUSPENDED_USERS_MESSAGE)])
            return

        messages = build_handoff_list_messages(users)
        await self._reply(reply_channel, event.reply_token, messages[:REPLY_MAX_MESSAGES])
        if len(messages) > REPLY_MAX_MESSAGES:
            await reply_channel.push_message(event.source.group_id, [text_message(LIST_TRUNCATED_MESSAGE)])

    async def release_expired(self, max_age_seconds: float) -> List[str]:
        released = await self.handoff.release_expired(max_age_seconds)
        if released:
            logger.info("Released stale suspensions", extra={"context": {"count": len(released)}})
        return released


async def auto_release_loop(orchestrator: ChatOrchestrator, max_age_seconds: float, interval_seconds: float) -> None:
    """Periodically release suspensions older than max_age_seconds."""
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await orchestrator.release_expired(max_age_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.error("Auto-release loop failed", extra={"context": {"error": str(exc)}})
