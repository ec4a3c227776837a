"""Mission notifications: payload formatting and delivery channels.

The dispatcher only depends on ``NotificationChannel.deliver(recipient_ref,
payload) -> bool``. How a payload reaches a rescuer (chat message, push,
SMS) is up to the channel implementation.
"""

import logging
from typing import Protocol, Self

import httpx
from pydantic import BaseModel
from tenacity import (
    RetryError,
    retry,
    retry_if_result,
    stop_after_attempt,
    wait_exponential_jitter,
)

from sosbridge.core.config import DispatchConfig, get_dispatch_config, get_telegram_bot_token
from sosbridge.core.normalize import format_phone
from sosbridge.dispatch.models import Rescuer, Ticket

logger = logging.getLogger(__name__)

PRIORITY_TIERS: dict[int, str] = {
    1: "low",
    2: "medium",
    3: "high",
    4: "very_high",
    5: "critical",
}

PRIORITY_MARKERS: dict[int, str] = {1: "🟢", 2: "🟡", 3: "🟠", 4: "🔴", 5: "🚨"}

TELEGRAM_API_BASE = "https://api.telegram.org"

# Rate limiting configuration
MAX_RETRIES = 4
MIN_WAIT_SECONDS = 1
MAX_WAIT_SECONDS = 15


class MissionPayload(BaseModel):
    """Structured mission offer sent to a candidate rescuer."""

    ticket_id: str
    priority: int
    priority_tier: str
    address: str
    distance_km: float
    people_count: int
    special_flags: list[str] = []
    reward_amount: float
    reward_currency: str = "USDC"
    victim_phone: str | None = None


def reward_for_priority(priority: int, config: DispatchConfig | None = None) -> float:
    """Fuel-support reward offered for a mission: base + step per priority level."""
    config = config or get_dispatch_config()
    return config.base_reward + (priority - 1) * config.priority_reward_step


def build_mission_payload(
    ticket: Ticket,
    rescuer: Rescuer,
    distance_km: float,
    config: DispatchConfig | None = None,
) -> MissionPayload:
    """Build the mission offer for one rescuer.

    Args:
        ticket: Ticket being offered
        rescuer: Recipient (kept for channel-specific formatting)
        distance_km: Rescuer's distance to the ticket
        config: Dispatch config for reward amounts

    Returns:
        MissionPayload ready for delivery
    """
    config = config or get_dispatch_config()
    victim = ticket.victim_info

    flags = []
    if victim.has_elderly:
        flags.append("elderly")
    if victim.has_children:
        flags.append("children")
    if victim.has_disabled:
        flags.append("disabled")

    address = ticket.location.address_text or (
        f"{ticket.location.lat:.4f}, {ticket.location.lng:.4f}"
    )

    logger.debug("Building mission payload for %s -> %s", ticket.id, rescuer.id)
    return MissionPayload(
        ticket_id=ticket.id,
        priority=ticket.priority,
        priority_tier=PRIORITY_TIERS[ticket.priority],
        address=address,
        distance_km=round(distance_km, 2),
        people_count=victim.people_count,
        special_flags=flags,
        reward_amount=reward_for_priority(ticket.priority, config),
        reward_currency=config.reward_currency,
        victim_phone=format_phone(victim.phone),
    )


def format_mission_message(payload: MissionPayload) -> str:
    """Render a payload as a plain-text chat message."""
    marker = PRIORITY_MARKERS.get(payload.priority, "⚪")
    people = f"{payload.people_count}"
    if payload.special_flags:
        people += f" (incl. {', '.join(payload.special_flags)})"

    lines = [
        f"🚨 {marker} NEW RESCUE MISSION",
        "",
        f"📍 Location: {payload.address}",
        f"📏 Distance: {payload.distance_km:.1f} km from you",
        f"👥 People: {people}",
        f"⚡ Priority: {payload.priority}/5 ({payload.priority_tier})",
        f"💰 Reward: {payload.reward_amount:g} {payload.reward_currency}",
    ]
    if payload.victim_phone:
        lines.append(f"📞 Contact: {payload.victim_phone}")
    lines += [
        "",
        f"📋 Ticket: {payload.ticket_id}",
        "",
        "⏰ First to accept gets the mission!",
    ]
    return "\n".join(lines)


def recipient_ref_for(rescuer: Rescuer) -> int | None:
    """Chat reference used to reach a rescuer, or None if unreachable."""
    return rescuer.telegram_chat_id or rescuer.telegram_user_id


class NotificationChannel(Protocol):
    """Delivers a mission payload to one recipient."""

    async def deliver(self, recipient_ref: int, payload: MissionPayload) -> bool:
        """Return True if the payload was handed off successfully."""
        ...


class LoggingChannel:
    """Development channel that logs messages instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, MissionPayload]] = []

    async def deliver(self, recipient_ref: int, payload: MissionPayload) -> bool:
        """Log the rendered message and record it."""
        self.sent.append((recipient_ref, payload))
        logger.info(
            "Mission %s -> %s:\n%s",
            payload.ticket_id,
            recipient_ref,
            format_mission_message(payload),
        )
        return True


def _is_rate_limited(response: httpx.Response) -> bool:
    """Check if response indicates rate limiting (429)."""
    return response.status_code == 429


def _log_retry(retry_state) -> None:
    """Log retry attempts."""
    logger.warning("Telegram rate limited, retry attempt %d", retry_state.attempt_number)


class TelegramChannel:
    """Delivers mission offers through the Telegram Bot API.

    Each message carries accept/decline inline buttons whose callback data
    (``accept_mission:<ticket_id>``) is handled by the bot layer.

    Usage::

        async with TelegramChannel() as channel:
            ok = await channel.deliver(chat_id, payload)
    """

    def __init__(self, token: str | None = None) -> None:
        """Initialize the channel with a bot token (defaults to environment)."""
        self.token = token or get_telegram_bot_token()
        self.client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        """Create the HTTP client."""
        self.client = httpx.AsyncClient(
            base_url=f"{TELEGRAM_API_BASE}/bot{self.token}",
            timeout=15.0,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    @retry(
        retry=retry_if_result(_is_rate_limited),
        stop=stop_after_attempt(MAX_RETRIES),
        wait=wait_exponential_jitter(initial=MIN_WAIT_SECONDS, max=MAX_WAIT_SECONDS),
        before_sleep=_log_retry,
    )
    async def _send_message(self, body: dict) -> httpx.Response:
        if self.client is None:
            raise RuntimeError("TelegramChannel used outside of 'async with'")
        return await self.client.post("/sendMessage", json=body)

    async def deliver(self, recipient_ref: int, payload: MissionPayload) -> bool:
        """Send a mission offer to a Telegram chat.

        Returns:
            True if Telegram accepted the message, False otherwise
        """
        ticket_id = payload.ticket_id
        body = {
            "chat_id": recipient_ref,
            "text": format_mission_message(payload),
            "reply_markup": {
                "inline_keyboard": [
                    [
                        {"text": "✅ ACCEPT", "callback_data": f"accept_mission:{ticket_id}"},
                        {"text": "❌ Decline", "callback_data": f"decline_mission:{ticket_id}"},
                    ]
                ]
            },
        }

        try:
            response = await self._send_message(body)
        except RetryError:
            logger.error("Telegram still rate limiting after %d attempts", MAX_RETRIES)
            return False

        if response.status_code != 200:
            logger.error(
                "Telegram sendMessage to %s failed: %s %s",
                recipient_ref,
                response.status_code,
                response.text[:200],
            )
            return False

        return bool(response.json().get("ok", False))
