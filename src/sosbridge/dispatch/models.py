"""Pydantic models for tickets, rescuers, and dispatch results.

Tickets and rescuers are stored as documents in Cosmos DB (or the in-memory
fallback). Result models are what the dispatch core hands back to the bot,
API, and UI layers: business outcomes such as "not found" or "already taken"
are carried in ``error`` fields, never raised.
"""

from __future__ import annotations

import secrets
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class TicketStatus(str, Enum):
    """Lifecycle states of a rescue ticket."""

    OPEN = "OPEN"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    VERIFIED = "VERIFIED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class RescuerStatus(str, Enum):
    """Availability states of a rescuer."""

    OFFLINE = "OFFLINE"
    ONLINE = "ONLINE"
    IDLE = "IDLE"
    ON_MISSION = "ON_MISSION"
    BUSY = "BUSY"


class VehicleType(str, Enum):
    """Rescue vehicle kinds."""

    CANO = "cano"  # motor boat
    BOAT = "boat"
    KAYAK = "kayak"
    RAFT = "raft"
    OTHER = "other"


class ErrorCode(str, Enum):
    """Expected business outcomes returned (not raised) to callers."""

    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    DUPLICATE_REQUEST = "duplicate_request"


ACTIVE_TICKET_STATUSES: frozenset[TicketStatus] = frozenset(
    {TicketStatus.OPEN, TicketStatus.ASSIGNED, TicketStatus.IN_PROGRESS}
)

# Statuses that require an assigned rescuer
ASSIGNED_TICKET_STATUSES: frozenset[TicketStatus] = frozenset(
    {
        TicketStatus.ASSIGNED,
        TicketStatus.IN_PROGRESS,
        TicketStatus.VERIFIED,
        TicketStatus.COMPLETED,
    }
)

AVAILABLE_RESCUER_STATUSES: frozenset[RescuerStatus] = frozenset(
    {RescuerStatus.ONLINE, RescuerStatus.IDLE}
)

MIN_PRIORITY = 1
MAX_PRIORITY = 5
MAX_RATING = 5.0


def _now() -> datetime:
    return datetime.now(UTC)


def generate_ticket_id() -> str:
    """Generate a unique ticket ID like ``SOS_VN_M5X2K1AB_3F9A1C``."""
    timestamp = _base36(int(time.time() * 1000))
    return f"SOS_VN_{timestamp}_{secrets.token_hex(3)}".upper()


def generate_rescuer_id() -> str:
    """Generate a unique rescuer ID like ``RSC_M5X2K1AB_3F9A1C``."""
    timestamp = _base36(int(time.time() * 1000))
    return f"RSC_{timestamp}_{secrets.token_hex(3)}".upper()


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


class Location(BaseModel):
    """Where the victims are."""

    lat: float
    lng: float
    address_text: str = ""


class VictimInfo(BaseModel):
    """Who needs rescuing. ``phone`` is always in canonical form."""

    phone: str
    people_count: int = Field(default=1, ge=1)
    note: str = ""
    has_elderly: bool = False
    has_children: bool = False
    has_disabled: bool = False


class Ticket(BaseModel):
    """A rescue request document.

    ``assigned_rescuer_id`` is set iff the ticket is ASSIGNED, IN_PROGRESS,
    VERIFIED, or COMPLETED. The partition key is ``id``.
    """

    id: str = Field(default_factory=generate_ticket_id)
    status: TicketStatus = TicketStatus.OPEN
    priority: int = Field(default=3, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    location: Location
    victim_info: VictimInfo
    assigned_rescuer_id: str | None = None
    raw_message: str = ""
    source: Literal["telegram_form", "telegram_forward", "direct"] = "direct"
    reporter_chat_id: int | None = None  # Reporter's Telegram chat, if any

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    verified_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _check_assignment(self) -> Ticket:
        if self.status in ASSIGNED_TICKET_STATUSES and not self.assigned_rescuer_id:
            raise ValueError(f"Ticket {self.id} is {self.status.value} without a rescuer")
        if self.status not in ASSIGNED_TICKET_STATUSES and self.assigned_rescuer_id:
            raise ValueError(f"Ticket {self.id} is {self.status.value} but has a rescuer")
        return self

    @property
    def is_active(self) -> bool:
        """True while the ticket still needs or is receiving help."""
        return self.status in ACTIVE_TICKET_STATUSES

    def to_cosmos(self) -> dict:
        """Serialize for Cosmos DB storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_cosmos(cls, data: dict) -> Ticket:
        """Deserialize from Cosmos DB document."""
        return cls.model_validate(data)


class RescuerLocation(BaseModel):
    """Last reported rescuer position."""

    lat: float
    lng: float
    last_updated: datetime = Field(default_factory=_now)


class Rescuer(BaseModel):
    """A volunteer rescue unit document. The partition key is ``id``."""

    id: str = Field(default_factory=generate_rescuer_id)
    name: str
    phone: str
    status: RescuerStatus = RescuerStatus.OFFLINE  # Offline until they check in
    location: RescuerLocation
    vehicle_type: VehicleType = VehicleType.BOAT
    vehicle_capacity: int = Field(default=1, ge=1)
    wallet_address: str | None = None
    rating: float = MAX_RATING
    completed_missions: int = Field(default=0, ge=0)
    telegram_user_id: int | None = None
    telegram_chat_id: int | None = None

    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    last_active_at: datetime = Field(default_factory=_now)

    @field_validator("rating")
    @classmethod
    def _clamp_rating(cls, value: float) -> float:
        # Out-of-range ratings would silently skew rankings
        return min(max(value, 0.0), MAX_RATING)

    @property
    def is_available(self) -> bool:
        """True if the rescuer can take a new mission."""
        return self.status in AVAILABLE_RESCUER_STATUSES

    def to_cosmos(self) -> dict:
        """Serialize for Cosmos DB storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_cosmos(cls, data: dict) -> Rescuer:
        """Deserialize from Cosmos DB document."""
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Results handed back to bot / API / UI layers
# ---------------------------------------------------------------------------


class DedupResult(BaseModel):
    """Outcome of a duplicate check for an incoming request."""

    is_duplicate: bool
    existing_ticket_id: str | None = None
    existing_status: TicketStatus | None = None
    match_type: Literal["phone", "location", "none"] = "none"
    action: Literal["skip", "merge", "create"] = "create"
    distance_km: float | None = None  # Location matches only
    message: str = ""


class MergeResult(BaseModel):
    """Outcome of merging new information into an existing ticket."""

    success: bool
    ticket_id: str
    updates_applied: list[str] = []
    error: ErrorCode | None = None
    message: str = ""


class ScoreBreakdown(BaseModel):
    """Per-factor score for one rescuer against one ticket."""

    distance: float
    vehicle: float
    capacity: float
    rating: float
    experience: float

    @property
    def total(self) -> float:
        """Sum of all factors."""
        return self.distance + self.vehicle + self.capacity + self.rating + self.experience


class ScoredRescuer(BaseModel):
    """An eligible rescuer with its distance and score."""

    rescuer: Rescuer
    distance_km: float
    breakdown: ScoreBreakdown

    @property
    def score(self) -> float:
        """Total score (higher is better)."""
        return self.breakdown.total


class NotifiedRescuer(BaseModel):
    """Summary of one fan-out recipient."""

    rescuer_id: str
    name: str
    distance_km: float
    score: float
    notified: bool = False


class DispatchResult(BaseModel):
    """Outcome of fanning a ticket out to candidate rescuers."""

    success: bool
    ticket_id: str
    notified_count: int = 0
    rescuers: list[NotifiedRescuer] = []
    error: ErrorCode | None = None
    message: str = ""


class AssignmentResult(BaseModel):
    """Outcome of a rescuer accepting (or being assigned) a mission."""

    success: bool
    ticket_id: str
    rescuer_id: str | None = None
    ticket_status: TicketStatus | None = None
    rescuer_status: RescuerStatus | None = None
    error: ErrorCode | None = None
    message: str = ""


class AvailabilityResult(BaseModel):
    """Read-only view of whether a ticket can still be accepted."""

    available: bool
    current_status: str  # TicketStatus value, or "NOT_FOUND"
    assigned_to: str | None = None


class IntakeResult(BaseModel):
    """Outcome of submitting a new rescue request."""

    success: bool
    action: Literal["skip", "merge", "create"]
    ticket_id: str | None = None
    ticket: Ticket | None = None
    dedup: DedupResult | None = None
    dispatch: DispatchResult | None = None
    error: ErrorCode | None = None
    message: str = ""
