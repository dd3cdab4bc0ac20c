import pytest

from supportbot.services.relay_service import ReplyRelay


class TestReplyRelay:
    @pytest.mark.asyncio
    async def test_consume_relays_verbatim_once(self, channel, clock):
        relay = ReplyRelay(channel, 180, clock=clock, push_interval_seconds=0)
        relay.begin("S1", "U1", "Taro")

        result = await relay.consume("S1", "  お待たせしました  ")

        assert result.ok is True
        assert result.value.target_user_id == "U1"
        assert channel.pushes == [("U1", [{"type": "text", "text": "  お待たせしました  "}])]

        second = await relay.consume("S1", "again")
        assert second.ok is False
        assert second.error_code == "no_binding"
        assert len(channel.pushes) == 1

    @pytest.mark.asyncio
    async def test_binding_expires(self, channel, clock):
        relay = ReplyRelay(channel, 180, clock=clock)
        relay.begin("S1", "U1", "Taro")

        clock.advance(180)

        assert relay.active_binding("S1") is None
        result = await relay.consume("S1", "late")
        assert result.error_code == "no_binding"
        assert channel.pushes == []

    @pytest.mark.asyncio
    async def test_new_begin_supersedes(self, channel, clock):
        relay = ReplyRelay(channel, 180, clock=clock, push_interval_seconds=0)
        relay.begin("S1", "U1", "Taro")
        relay.begin("S1", "U2", "Hanako")

        await relay.consume("S1", "hi")

        assert channel.pushes[0][0] == "U2"

    @pytest.mark.asyncio
    async def test_failed_delivery_still_consumes_binding(self, make_channel, clock):
        channel = make_channel(push_ok=False)
        relay = ReplyRelay(channel, 180, clock=clock)
        relay.begin("S1", "U1", "Taro")

        result = await relay.consume("S1", "hi")

        assert result.ok is False
        assert result.error_code == "delivery_failed"
        assert result.value.target_display_name == "Taro"
        assert relay.active_binding("S1") is None

    def test_bindings_are_per_staff_actor(self, channel, clock):
        relay = ReplyRelay(channel, 180, clock=clock)
        relay.begin("S1", "U1", "Taro")
        relay.begin("S2", "U2", None)

        assert relay.active_binding("S1").target_user_id == "U1"
        assert relay.active_binding("S2").target_display_name == "U2"
        assert relay.cancel("S2") is True
