"""Tests for mission payloads and notification channels."""

import json
from unittest.mock import patch

import httpx
import pytest
import respx
from tenacity import wait_none

from sosbridge.core.config import DispatchConfig
from sosbridge.dispatch.models import Location
from sosbridge.dispatch.notify import (
    LoggingChannel,
    TelegramChannel,
    build_mission_payload,
    format_mission_message,
    recipient_ref_for,
    reward_for_priority,
)

SEND_URL = "https://api.telegram.org/botTEST/sendMessage"


@pytest.fixture
def no_retry_wait(monkeypatch):
    """Don't sleep between rate-limit retries."""
    monkeypatch.setattr(TelegramChannel._send_message.retry, "wait", wait_none())


class TestReward:
    @pytest.mark.parametrize(("priority", "amount"), [(1, 20), (3, 30), (5, 40)])
    def test_reward_for_priority(self, priority, amount):
        assert reward_for_priority(priority, DispatchConfig()) == amount


class TestBuildMissionPayload:
    def test_fields(self, make_ticket, make_rescuer):
        ticket = make_ticket(priority=5, people_count=3, address_text="Thôn 3, Hải Lăng")
        ticket = ticket.model_copy(
            update={
                "victim_info": ticket.victim_info.model_copy(
                    update={"has_elderly": True, "has_children": True}
                )
            }
        )

        payload = build_mission_payload(ticket, make_rescuer(), 1.23456, DispatchConfig())

        assert payload.ticket_id == ticket.id
        assert payload.priority == 5
        assert payload.priority_tier == "critical"
        assert payload.address == "Thôn 3, Hải Lăng"
        assert payload.distance_km == 1.23
        assert payload.people_count == 3
        assert payload.special_flags == ["elderly", "children"]
        assert payload.reward_amount == 40
        assert payload.reward_currency == "USDC"
        assert payload.victim_phone is not None

    def test_address_falls_back_to_coordinates(self, make_ticket, make_rescuer):
        ticket = make_ticket().model_copy(
            update={"location": Location(lat=16.76551, lng=107.12349)}
        )
        payload = build_mission_payload(ticket, make_rescuer(), 0.5, DispatchConfig())
        assert payload.address == "16.7655, 107.1235"

    @pytest.mark.parametrize(
        ("priority", "tier"),
        [(1, "low"), (2, "medium"), (3, "high"), (4, "very_high"), (5, "critical")],
    )
    def test_priority_tiers(self, make_ticket, make_rescuer, priority, tier):
        payload = build_mission_payload(
            make_ticket(priority=priority), make_rescuer(), 0.5, DispatchConfig()
        )
        assert payload.priority_tier == tier


class TestFormatMissionMessage:
    def test_contains_key_details(self, make_ticket, make_rescuer):
        ticket = make_ticket(people_count=4, address_text="Xã Hải Phú")
        payload = build_mission_payload(ticket, make_rescuer(), 2.0, DispatchConfig())

        message = format_mission_message(payload)

        assert ticket.id in message
        assert "Xã Hải Phú" in message
        assert "2.0 km" in message
        assert "30 USDC" in message
        assert message.endswith("First to accept gets the mission!")


class TestRecipientRef:
    def test_prefers_chat_id(self, make_rescuer):
        assert recipient_ref_for(make_rescuer(telegram_chat_id=5, telegram_user_id=6)) == 5

    def test_falls_back_to_user_id(self, make_rescuer):
        assert recipient_ref_for(make_rescuer(telegram_chat_id=None, telegram_user_id=6)) == 6

    def test_unreachable(self, make_rescuer):
        assert recipient_ref_for(make_rescuer(telegram_chat_id=None)) is None


class TestLoggingChannel:
    async def test_records_deliveries(self, make_ticket, make_rescuer):
        channel = LoggingChannel()
        payload = build_mission_payload(make_ticket(), make_rescuer(), 1.0, DispatchConfig())

        assert await channel.deliver(42, payload) is True
        assert channel.sent == [(42, payload)]


class TestTelegramChannel:
    def _payload(self, make_ticket, make_rescuer):
        return build_mission_payload(make_ticket(), make_rescuer(), 1.0, DispatchConfig())

    def test_requires_token(self, monkeypatch):
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        with (
            patch("sosbridge.core.config.load_dotenv"),
            pytest.raises(ValueError, match="TELEGRAM_BOT_TOKEN"),
        ):
            TelegramChannel()

    @respx.mock
    async def test_sends_message_with_buttons(self, make_ticket, make_rescuer):
        route = respx.post(SEND_URL).mock(
            return_value=httpx.Response(200, json={"ok": True, "result": {}})
        )
        payload = self._payload(make_ticket, make_rescuer)

        async with TelegramChannel(token="TEST") as channel:
            ok = await channel.deliver(1234, payload)

        assert ok is True
        body = json.loads(route.calls.last.request.content)
        assert body["chat_id"] == 1234
        assert payload.ticket_id in body["text"]
        buttons = body["reply_markup"]["inline_keyboard"][0]
        assert buttons[0]["callback_data"] == f"accept_mission:{payload.ticket_id}"
        assert buttons[1]["callback_data"] == f"decline_mission:{payload.ticket_id}"

    @respx.mock
    async def test_api_error_returns_false(self, make_ticket, make_rescuer):
        respx.post(SEND_URL).mock(
            return_value=httpx.Response(403, json={"ok": False, "description": "blocked"})
        )

        async with TelegramChannel(token="TEST") as channel:
            ok = await channel.deliver(1234, self._payload(make_ticket, make_rescuer))

        assert ok is False

    @respx.mock
    async def test_retries_when_rate_limited(self, make_ticket, make_rescuer, no_retry_wait):
        route = respx.post(SEND_URL).mock(
            side_effect=[
                httpx.Response(429, json={"ok": False}),
                httpx.Response(200, json={"ok": True}),
            ]
        )

        async with TelegramChannel(token="TEST") as channel:
            ok = await channel.deliver(1234, self._payload(make_ticket, make_rescuer))

        assert ok is True
        assert route.call_count == 2

    @respx.mock
    async def test_gives_up_after_max_retries(self, make_ticket, make_rescuer, no_retry_wait):
        route = respx.post(SEND_URL).mock(return_value=httpx.Response(429, json={"ok": False}))

        async with TelegramChannel(token="TEST") as channel:
            ok = await channel.deliver(1234, self._payload(make_ticket, make_rescuer))

        assert ok is False
        assert route.call_count == 4

    async def test_deliver_outside_context_raises(self, make_ticket, make_rescuer):
        channel = TelegramChannel(token="TEST")
        with pytest.raises(RuntimeError):
            await channel.deliver(1234, self._payload(make_ticket, make_rescuer))
