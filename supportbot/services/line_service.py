import base64
import hashlib
import hmac
from typing import Iterable, Optional

import httpx

from supportbot.logging_config import get_logger
from supportbot.services.delivery import OutboundChannel

logger = get_logger("line_service")

# LINE caps postback data at 300 characters.
POSTBACK_DATA_MAX = 300
CAROUSEL_MAX_BUBBLES = 10
REPLY_MAX_MESSAGES = 5


class LineService(OutboundChannel):
    """Service for the LINE Messaging API."""

    BASE_URL = "https://api.line.me/v2/bot"

    def __init__(self, channel_access_token: str, timeout_seconds: float = 30.0):
        self.channel_access_token = channel_access_token
        self.timeout_seconds = timeout_seconds

    async def _make_request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        """Make request to LINE API. Never raises; failures come back with ok=False."""
        url = f"{self.BASE_URL}{path}"
        headers = {"Authorization": f"Bearer {self.channel_access_token}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.request(method, url, headers=headers, json=data)
        except httpx.HTTPError as e:
            logger.error(f"LINE API error: {e}")
            return {"ok": False, "error": str(e)}

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"raw": response.text}

        if response.status_code != 200:
            logger.warning(
                "LINE API returned error status",
                extra={"context": {"path": path, "status": response.status_code, "body": body}},
            )
            return {"ok": False, "status": response.status_code, "error": body.get("message") or str(body)}

        return {"ok": True, "status": response.status_code, "result": body}

    async def reply_message(self, reply_token: str, messages: list[dict]) -> dict:
        """Answer an event with its single-use reply token."""
        return await self._make_request(
            "POST",
            "/message/reply",
            {"replyToken": reply_token, "messages": messages[:REPLY_MAX_MESSAGES]},
        )

    async def push_message(self, to: str, messages: list[dict]) -> dict:
        """Send messages to a user or group without a reply token."""
        return await self._make_request("POST", "/message/push", {"to": to, "messages": messages[:REPLY_MAX_MESSAGES]})

    async def get_profile(self, user_id: str) -> dict:
        """Fetch a user's profile (displayName, pictureUrl, ...)."""
        return await self._make_request("GET", f"/profile/{user_id}")


def verify_signature(body: bytes, channel_secret: str, signature: Optional[str]) -> bool:
    """Check the X-Line-Signature header: base64(HMAC-SHA256(secret, raw body))."""
    if not channel_secret or not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature)


def text_message(text: str) -> dict:
    return {"type": "text", "text": text}


def _postback_button(label: str, data: str, display_text: str, style: str = "secondary", color: Optional[str] = None) -> dict:
    button = {
        "type": "button",
        "style": style,
        "action": {
            "type": "postback",
            "label": label,
            "data": data[:POSTBACK_DATA_MAX],
            "displayText": display_text,
        },
    }
    if color:
        button["color"] = color
    return button


def build_handoff_buttons(user_id: str, display_name: str) -> list[dict]:
    """Stop / resume / reply buttons for one user."""
    return [
        _postback_button("Bot停止（このユーザー）", f"handoff:on:{user_id}", "Bot停止（このユーザー）", "primary", "#D0021B"),
        _postback_button("Bot再開（このユーザー）", f"handoff:off:{user_id}", "Bot再開（このユーザー）"),
        _postback_button("返信する", f"reply:{user_id}:{display_name}", f"返信（{display_name}）"),
    ]


def format_status(enabled: bool) -> str:
    return "ON（Bot停止中）" if enabled else "OFF（Bot稼働）"


def build_handoff_flex(
    user_id: str,
    display_name: str,
    current_text: str,
    previous_texts: Iterable[str] = (),
    enabled: bool = True,
    title: str = "担当者対応",
) -> dict:
    """Staff notification: status header, recent turns, action buttons."""
    status = format_status(enabled)
    body = []
    previous = [text for text in previous_texts if text]
    if previous:
        body.append({"type": "text", "text": "直前のやり取り", "size": "sm", "color": "#666666"})
        for text in previous:
            body.append({"type": "text", "text": text, "wrap": True, "size": "sm"})
    body.append({"type": "text", "text": "今回", "size": "sm", "color": "#666666"})
    body.append({"type": "text", "text": current_text or "（空のメッセージ）", "wrap": True, "size": "md"})

    return {
        "type": "flex",
        "altText": f"{title}: {display_name}（{status}）",
        "contents": {
            "type": "bubble",
            "size": "mega",
            "header": {
                "type": "box",
                "layout": "vertical",
                "contents": [
                    {"type": "text", "text": title, "weight": "bold", "size": "lg"},
                    {"type": "text", "text": f"状態: {status}", "size": "sm", "color": "#666666"},
                    {"type": "text", "text": f"ユーザー: {display_name}", "size": "sm", "wrap": True},
                ],
                "paddingAll": "12px",
            },
            "body": {"type": "box", "layout": "vertical", "spacing": "md", "contents": body, "paddingAll": "12px"},
            "footer": {
                "type": "box",
                "layout": "vertical",
                "spacing": "sm",
                "contents": build_handoff_buttons(user_id, display_name),
                "paddingAll": "12px",
            },
        },
    }


def build_handoff_list_bubble(user_id: str, display_name: str) -> dict:
    return {
        "type": "bubble",
        "size": "kilo",
        "header": {
            "type": "box",
            "layout": "vertical",
            "contents": [
                {"type": "text", "text": display_name, "weight": "bold", "size": "md", "wrap": True},
                {"type": "text", "text": f"状態: {format_status(True)}", "size": "sm", "color": "#D0021B"},
            ],
            "paddingAll": "10px",
        },
        "footer": {
            "type": "box",
            "layout": "vertical",
            "spacing": "sm",
            "contents": [
                _postback_button("Bot再開（OFF）", f"handoff:off:{user_id}", f"Bot再開（{display_name}）", "primary"),
                _postback_button("返信する", f"reply:{user_id}:{display_name}", f"返信（{display_name}）"),
            ],
            "paddingAll": "10px",
        },
    }


def build_handoff_list_messages(users: list[tuple[str, str]]) -> list[dict]:
    """Carousel messages (10 bubbles each) listing suspended users as (user_id, display_name)."""
    chunks = [users[i : i + CAROUSEL_MAX_BUBBLES] for i in range(0, len(users), CAROUSEL_MAX_BUBBLES)]
    messages = []
    for idx, chunk in enumerate(chunks):
        suffix = f" {idx + 1}/{len(chunks)}" if len(chunks) > 1 else ""
        messages.append(
            {
                "type": "flex",
                "altText": f"停止中ユーザー一覧（{len(users)}件）{suffix}",
                "contents": {
                    "type": "carousel",
                    "contents": [build_handoff_list_bubble(user_id, name) for user_id, name in chunk],
                },
            }
        )
    return messages
