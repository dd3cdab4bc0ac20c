"""Per-user debounce of rapid-fire messages into one answered turn.

Each user has at most one pending buffer and one armed timer. A new fragment
cancels and re-arms the timer. When it fires the buffer is taken out before
any work starts, so fragments arriving during the flush start a fresh buffer.
Only one flush per user runs at a time; a timer that fires during a flush
re-arms itself and the buffer waits for the next round.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from supportbot.logging_config import LoggerAdapter, get_logger, start_timer
from supportbot.services.delivery import PUSH_INTERVAL_SECONDS, OutboundChannel, send_reply_with_split
from supportbot.services.ttl_store import ExpiringListStore

logger = get_logger("coalescer")

APOLOGY_MESSAGE = "申し訳ありません。ただいま回答を作成できませんでした。しばらくしてからもう一度お試しください。"

AnswerFn = Callable[[str, List[str]], Awaitable[str]]


def trim_fragments(fragments: List[str], max_messages: int, max_chars: int) -> List[str]:
    """Drop oldest fragments past the count cap, then past the joined-length cap.

    A single remaining fragment that is still too long is truncated.
    """
    trimmed = list(fragments)[-max_messages:] if max_messages > 0 else list(fragments)
    while len(trimmed) > 1 and len("\n".join(trimmed)) > max_chars:
        trimmed.pop(0)
    joined = "\n".join(trimmed)
    if len(joined) > max_chars:
        trimmed = [joined[:max_chars]]
    return trimmed


def combine_fragments(fragments: List[str], max_messages: int, max_chars: int) -> str:
    return "\n".join(trim_fragments(fragments, max_messages, max_chars)).strip()


@dataclass
class PendingBuffer:
    fragments: List[str] = field(default_factory=list)
    reply_token: Optional[str] = None
    flush_at: float = 0.0
    timer: Optional[asyncio.TimerHandle] = None


class MessageCoalescer:
    def __init__(
        self,
        answer_fn: AnswerFn,
        channel: OutboundChannel,
        history: ExpiringListStore,
        *,
        debounce_seconds: float = 0.5,
        max_messages: int = 5,
        max_chars: int = 800,
        history_turns: int = 3,
        push_interval_seconds: float = PUSH_INTERVAL_SECONDS,
    ):
        self.answer_fn = answer_fn
        self.channel = channel
        self.history = history
        self.debounce_seconds = debounce_seconds
        self.max_messages = max_messages
        self.max_chars = max_chars
        self.history_turns = history_turns
        self.push_interval_seconds = push_interval_seconds
        self._pending: Dict[str, PendingBuffer] = {}
        self._in_flight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, user_id: str) -> bool:
        return user_id in self._pending

    def is_in_flight(self, user_id: str) -> bool:
        return user_id in self._in_flight

    def pending_fragments(self, user_id: str) -> List[str]:
        buffer = self._pending.get(user_id)
        return list(buffer.fragments) if buffer else []

    def enqueue(self, user_id: str, fragment: str, reply_token: Optional[str]) -> None:
        """Add a fragment to the user's buffer and (re)arm its flush timer."""
        buffer = self._pending.get(user_id)
        if buffer is None:
            buffer = PendingBuffer()
            self._pending[user_id] = buffer
        buffer.fragments = trim_fragments(buffer.fragments + [fragment], self.max_messages, self.max_chars)
        if reply_token:
            buffer.reply_token = reply_token
        self._arm(user_id, buffer)

    def _arm(self, user_id: str, buffer: PendingBuffer) -> None:
        loop = asyncio.get_running_loop()
        if buffer.timer is not None:
            buffer.timer.cancel()
        buffer.flush_at = loop.time() + self.debounce_seconds
        buffer.timer = loop.call_later(self.debounce_seconds, self._on_timer, user_id)

    def _on_timer(self, user_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self.flush(user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self, user_id: str) -> bool:
        """Answer the user's buffered fragments as one turn. Returns False when nothing ran."""
        buffer = self._pending.get(user_id)
        if buffer is None:
            return False
        if user_id in self._in_flight:
            self._arm(user_id, buffer)
            return False

        self._in_flight.add(user_id)
        del self._pending[user_id]
        if buffer.timer is not None:
            buffer.timer.cancel()
            buffer.timer = None
        try:
            await self._run(user_id, buffer)
        except Exception as exc:
            logger.exception("Coalesced flush failed", extra={"context": {"user_id": user_id, "error": str(exc)}})
        finally:
            self._in_flight.discard(user_id)
        return True

    async def _run(self, user_id: str, buffer: PendingBuffer) -> None:
        log = LoggerAdapter(logger, {"user_id": user_id})
        combined = combine_fragments(buffer.fragments, self.max_messages, self.max_chars)
        if not combined:
            return

        elapsed = start_timer()
        history = self.history.get(user_id) or []
        answered = True
        try:
            answer = await self.answer_fn(combined, history[-self.history_turns :])
        except Exception as exc:
            log.error("Answer pipeline failed", context={"error": str(exc)})
            answer = APOLOGY_MESSAGE
            answered = False

        delivery = await send_reply_with_split(
            self.channel, user_id, buffer.reply_token, answer, self.push_interval_seconds
        )
        if not delivery.ok:
            log.warning("Answer delivery failed", context={"error": delivery.describe()})

        if answered:
            self.history.push(user_id, combined)
        log.info(
            "Flushed coalesced turn",
            context={
                "fragments": len(buffer.fragments),
                "chars": len(combined),
                "delivery": delivery.describe(),
                "ms": elapsed(),
            },
        )

    async def close(self) -> None:
        """Cancel every armed timer and wait for flushes already running."""
        for buffer in self._pending.values():
            if buffer.timer is not None:
                buffer.timer.cancel()
        self._pending.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
