import base64
import hashlib
import hmac
import json

import httpx
import pytest

from supportbot.services.delivery import display_name_of, push_text, send_reply_with_split, split_long_message
from supportbot.services.line_service import (
    LineService,
    build_handoff_flex,
    build_handoff_list_messages,
    verify_signature,
)


@pytest.fixture
def line_api(monkeypatch):
    """Route LineService HTTP calls to an in-process handler."""
    calls = []
    responses = {}
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, request.url.path, body, request.headers.get("authorization")))
        status, payload = responses.get(request.url.path, (200, {}))
        return httpx.Response(status, json=payload)

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr("supportbot.services.line_service.httpx.AsyncClient", factory)
    return calls, responses


class TestLineService:
    @pytest.mark.asyncio
    async def test_reply_message(self, line_api):
        calls, _ = line_api
        service = LineService("token-1")

        result = await service.reply_message("rt", [{"type": "text", "text": "hi"}])

        assert result["ok"] is True
        method, path, body, auth = calls[0]
        assert (method, path) == ("POST", "/v2/bot/message/reply")
        assert body == {"replyToken": "rt", "messages": [{"type": "text", "text": "hi"}]}
        assert auth == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_push_caps_message_count(self, line_api):
        calls, _ = line_api
        service = LineService("t")

        await service.push_message("U1", [{"type": "text", "text": str(i)} for i in range(7)])

        assert len(calls[0][2]["messages"]) == 5

    @pytest.mark.asyncio
    async def test_error_status_is_not_ok(self, line_api):
        _, responses = line_api
        responses["/v2/bot/message/reply"] = (400, {"message": "Invalid reply token"})

        result = await LineService("t").reply_message("expired", [{"type": "text", "text": "x"}])

        assert result["ok"] is False
        assert result["status"] == 400
        assert result["error"] == "Invalid reply token"

    @pytest.mark.asyncio
    async def test_get_profile(self, line_api):
        _, responses = line_api
        responses["/v2/bot/profile/U1"] = (200, {"displayName": "Taro"})

        result = await LineService("t").get_profile("U1")

        assert result["result"]["displayName"] == "Taro"

    @pytest.mark.asyncio
    async def test_transport_error_is_not_ok(self, monkeypatch):
        real_client = httpx.AsyncClient

        def handler(request):
            raise httpx.ConnectError("down")

        monkeypatch.setattr(
            "supportbot.services.line_service.httpx.AsyncClient",
            lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs),
        )

        result = await LineService("t").push_message("U1", [{"type": "text", "text": "x"}])

        assert result["ok"] is False


class TestVerifySignature:
    def test_valid_signature(self):
        body = b'{"events":[]}'
        signature = base64.b64encode(hmac.new(b"secret", body, hashlib.sha256).digest()).decode()
        assert verify_signature(body, "secret", signature) is True

    def test_invalid_signature(self):
        assert verify_signature(b"{}", "secret", "bogus") is False

    def test_missing_signature_or_secret(self):
        assert verify_signature(b"{}", "secret", None) is False
        assert verify_signature(b"{}", "", "x") is False


class TestFlexBuilders:
    def test_handoff_flex_buttons_carry_user_id(self):
        flex = build_handoff_flex("U1", "Taro", "担当者", ["前の質問1", "前の質問2"])

        footer = flex["contents"]["footer"]["contents"]
        assert [b["action"]["data"] for b in footer] == ["handoff:on:U1", "handoff:off:U1", "reply:U1:Taro"]
        body_texts = [c["text"] for c in flex["contents"]["body"]["contents"]]
        assert "前の質問1" in body_texts and "担当者" in body_texts

    def test_list_messages_chunk_by_ten(self):
        users = [(f"U{i}", f"name{i}") for i in range(23)]

        messages = build_handoff_list_messages(users)

        assert len(messages) == 3
        assert [len(m["contents"]["contents"]) for m in messages] == [10, 10, 3]
        assert messages[0]["altText"].endswith("1/3")


class TestSplitLongMessage:
    def test_short_text_single_chunk(self):
        assert split_long_message("hello", 10) == ["hello"]

    def test_prefers_sentence_break(self):
        text = "あ" * 8 + "。" + "い" * 8
        chunks = split_long_message(text, 12)
        assert chunks == ["あ" * 8 + "。", "い" * 8]

    def test_hard_cut_without_breaks(self):
        chunks = split_long_message("x" * 25, 10)
        assert chunks == ["x" * 10, "x" * 10, "x" * 5]

    def test_chunks_never_exceed_limit(self):
        text = ("段落です。\n" * 400) + "z" * 3000
        chunks = split_long_message(text, 5000)
        assert all(len(chunk) <= 5000 for chunk in chunks)
        assert "".join(chunks) == text


class TestSendReplyWithSplit:
    @pytest.mark.asyncio
    async def test_single_reply(self, channel):
        result = await send_reply_with_split(channel, "U1", "rt", "hello", interval_seconds=0)

        assert result.ok and result.value == "reply"
        assert channel.reply_texts() == ["hello"]
        assert channel.pushes == []

    @pytest.mark.asyncio
    async def test_long_answer_reply_then_push(self, channel):
        text = "a" * 6000
        result = await send_reply_with_split(channel, "U1", "rt", text, interval_seconds=0)

        assert result.value == "reply"
        assert channel.reply_texts()[0].endswith("（続き 1件）")
        assert channel.push_texts() == ["a" * 1020]
        assert len(channel.reply_texts()[0]) <= 5000

    @pytest.mark.asyncio
    async def test_reply_failure_falls_back_to_push(self, make_channel):
        channel = make_channel(reply_ok=False)

        result = await send_reply_with_split(channel, "U1", "expired", "hello", interval_seconds=0)

        assert result.ok and result.value == "push"
        assert channel.pushes == [("U1", [{"type": "text", "text": "hello"}])]

    @pytest.mark.asyncio
    async def test_no_token_pushes(self, channel):
        result = await send_reply_with_split(channel, "U1", None, "hello", interval_seconds=0)
        assert result.value == "push"
        assert channel.replies == []

    @pytest.mark.asyncio
    async def test_everything_fails(self, make_channel):
        channel = make_channel(reply_ok=False, push_ok=False)

        result = await send_reply_with_split(channel, "U1", "rt", "hello", interval_seconds=0)

        assert result.ok is False
        assert result.error_code == "delivery_failed"

    @pytest.mark.asyncio
    async def test_push_text_stops_on_failure(self, make_channel):
        channel = make_channel(push_ok=False)
        assert await push_text(channel, "U1", "x" * 12000, interval_seconds=0) is False
        assert len(channel.pushes) == 1


class TestDisplayNameOf:
    @pytest.mark.asyncio
    async def test_profile_name(self, make_channel):
        assert await display_name_of(make_channel(profiles={"U1": "Taro"}), "U1") == "Taro"

    @pytest.mark.asyncio
    async def test_falls_back_to_raw_id(self, channel):
        assert await display_name_of(channel, "U404") == "U404"
