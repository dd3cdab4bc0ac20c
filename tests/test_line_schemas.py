from supportbot.schemas.line import LineEvent, LineWebhookBody


class TestLineEvent:
    def test_text_message(self):
        event = LineEvent.model_validate(
            {
                "type": "message",
                "replyToken": "r1",
                "source": {"type": "user", "userId": "U1"},
                "message": {"id": "m1", "type": "text", "text": "こんにちは"},
            }
        )
        assert event.reply_token == "r1"
        assert event.user_id == "U1"
        assert event.text == "こんにちは"
        assert event.source.chat_id == "U1"

    def test_non_text_message_has_no_text(self):
        event = LineEvent.model_validate(
            {"type": "message", "source": {"type": "user", "userId": "U1"}, "message": {"type": "image"}}
        )
        assert event.text is None

    def test_group_source(self):
        event = LineEvent.model_validate(
            {"type": "postback", "source": {"type": "group", "groupId": "C1"}, "postback": {"data": "handoff:on:U1"}}
        )
        assert event.user_id is None
        assert event.source.chat_id == "C1"
        assert event.postback.data == "handoff:on:U1"
        assert event.text is None

    def test_missing_source(self):
        event = LineEvent.model_validate({"type": "follow"})
        assert event.user_id is None


class TestWebhookBody:
    def test_defaults_to_no_events(self):
        assert LineWebhookBody.model_validate({}).events == []

    def test_unknown_fields_ignored(self):
        body = LineWebhookBody.model_validate_json(
            '{"destination": "U0", "events": [{"type": "unfollow", "mode": "active", "webhookEventId": "x"}]}'
        )
        assert body.events[0].type == "unfollow"
