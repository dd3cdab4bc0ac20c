"""Outbound delivery helpers shared by every sender.

A reply token is single-use and short-lived, so long answers go out as one
reply followed by pushes. When the reply itself fails (token expired or
already used) every chunk is pushed instead.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

from supportbot.logging_config import get_logger
from supportbot.services.result import ErrorCode, Result

logger = get_logger("delivery")

LINE_MAX_TEXT_LENGTH = 5000
SPLIT_LOOKBACK_CHARS = 200
SPLIT_BREAKS = ("\n", "。", "？", "！", "?", "!")
PUSH_INTERVAL_SECONDS = 0.5
# Room kept free in the first chunk for the continuation marker.
CONTINUATION_RESERVE_CHARS = 20


class OutboundChannel(ABC):
    """Messaging API surface the core depends on."""

    @abstractmethod
    async def reply_message(self, reply_token: str, messages: List[dict]) -> dict:
        pass

    @abstractmethod
    async def push_message(self, to: str, messages: List[dict]) -> dict:
        pass

    @abstractmethod
    async def get_profile(self, user_id: str) -> dict:
        pass


def split_long_message(text: str, max_length: int = LINE_MAX_TEXT_LENGTH) -> List[str]:
    """Split text into chunks of at most max_length characters.

    A chunk ends at the last newline or sentence punctuation found within the
    final SPLIT_LOOKBACK_CHARS before the limit; otherwise it is cut hard.
    """
    if len(text) <= max_length:
        return [text]

    chunks = []
    start = 0
    while start < len(text):
        end = start + max_length
        if end >= len(text):
            chunks.append(text[start:])
            break

        search_from = max(start, end - SPLIT_LOOKBACK_CHARS)
        best = max(text.rfind(mark, search_from, end) for mark in SPLIT_BREAKS)
        if best > search_from:
            end = best + 1

        chunks.append(text[start:end])
        start = end
    return chunks


def _text(text: str) -> dict:
    return {"type": "text", "text": text}


async def push_chunks(
    channel: OutboundChannel,
    to: str,
    chunks: List[str],
    interval_seconds: float = PUSH_INTERVAL_SECONDS,
) -> bool:
    """Push chunks in order; stops at the first failure."""
    for idx, chunk in enumerate(chunks):
        if idx > 0 and interval_seconds > 0:
            await asyncio.sleep(interval_seconds)
        response = await channel.push_message(to, [_text(chunk)])
        if not response.get("ok"):
            logger.warning(
                "Push failed",
                extra={"context": {"to": to, "chunk": idx + 1, "total": len(chunks), "error": response.get("error")}},
            )
            return False
    return True


async def push_text(
    channel: OutboundChannel,
    to: str,
    text: str,
    interval_seconds: float = PUSH_INTERVAL_SECONDS,
) -> bool:
    return await push_chunks(channel, to, split_long_message(text), interval_seconds)


async def send_reply_with_split(
    channel: OutboundChannel,
    user_id: Optional[str],
    reply_token: Optional[str],
    text: str,
    interval_seconds: float = PUSH_INTERVAL_SECONDS,
) -> Result[str]:
    """Deliver text to a user: reply first, push the rest, push everything if the reply fails.

    Returns the path taken ("reply" or "push") on success.
    """
    chunks = split_long_message(text)
    if len(chunks) > 1:
        chunks = split_long_message(text, LINE_MAX_TEXT_LENGTH - CONTINUATION_RESERVE_CHARS)

    if reply_token:
        first = chunks[0]
        if len(chunks) > 1:
            first = f"{first}\n\n（続き {len(chunks) - 1}件）"
        response = await channel.reply_message(reply_token, [_text(first)])
        if response.get("ok"):
            if len(chunks) > 1 and user_id:
                if not await push_chunks(channel, user_id, chunks[1:], interval_seconds):
                    return Result.failure("continuation push failed", ErrorCode.DELIVERY_FAILED)
            return Result.success("reply")
        logger.warning(
            "Reply failed, falling back to push",
            extra={"context": {"user_id": user_id, "error": response.get("error")}},
        )

    if not user_id:
        return Result.failure("no user id to push to", ErrorCode.DELIVERY_FAILED)
    if await push_chunks(channel, user_id, chunks, interval_seconds):
        return Result.success("push")
    return Result.failure("push failed", ErrorCode.DELIVERY_FAILED)


async def display_name_of(channel: OutboundChannel, user_id: str) -> str:
    """Best-effort profile lookup; the raw id stands in when it fails."""
    try:
        response = await channel.get_profile(user_id)
    except Exception as exc:
        logger.warning("Profile lookup raised", extra={"context": {"user_id": user_id, "error": str(exc)}})
        return user_id
    if response.get("ok"):
        name = (response.get("result") or {}).get("displayName")
        if name:
            return name
    return user_id
