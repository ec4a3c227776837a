"""Duplicate detection for incoming rescue requests.

The same victim often reaches out several times (or several neighbours report
the same house). A missed duplicate sends two scarce boats to one address, so
store failures here always propagate instead of resolving to "no duplicate".

Checks run in order, first match wins:

1. An active ticket with the same canonical phone -> ``skip``
2. An active ticket within the dedup radius (50 m) -> ``merge``
3. Otherwise -> ``create``
"""

import logging

from sosbridge.core.config import DispatchConfig, get_dispatch_config
from sosbridge.core.geo import haversine_km
from sosbridge.core.normalize import normalize_phone
from sosbridge.dispatch.models import (
    ACTIVE_TICKET_STATUSES,
    MAX_PRIORITY,
    DedupResult,
    ErrorCode,
    MergeResult,
)
from sosbridge.dispatch.store import RescueStore

logger = logging.getLogger(__name__)


async def check_duplicate(
    store: RescueStore,
    phone: str,
    lat: float | None = None,
    lng: float | None = None,
    *,
    config: DispatchConfig | None = None,
) -> DedupResult:
    """Decide whether a request duplicates an already-tracked ticket.

    Args:
        store: Open RescueStore
        phone: Reporter phone in any format
        lat: Latitude of the request, if known
        lng: Longitude of the request, if known
        config: Dispatch config (defaults to the cached project config)

    Returns:
        DedupResult with ``action`` of skip, merge, or create
    """
    config = config or get_dispatch_config()
    normalized = normalize_phone(phone)
    logger.info("Checking duplicate for phone %s", normalized)

    if normalized:
        existing = await store.find_ticket_by_phone(normalized, statuses=ACTIVE_TICKET_STATUSES)
        if existing:
            logger.info("Duplicate by phone: %s (%s)", existing.id, existing.status.value)
            return DedupResult(
                is_duplicate=True,
                existing_ticket_id=existing.id,
                existing_status=existing.status,
                match_type="phone",
                action="skip",
                message=f"Already being handled, ticket {existing.id} ({existing.status.value})",
            )

    if lat is not None and lng is not None:
        nearby = await store.find_tickets_in_radius(
            lat, lng, config.dedup_radius_km, statuses=ACTIVE_TICKET_STATUSES
        )
        nearest = None
        nearest_km = 0.0
        for ticket in nearby:
            distance = haversine_km(lat, lng, ticket.location.lat, ticket.location.lng)
            # Strict comparison: on an exact tie the first one found wins
            if nearest is None or distance < nearest_km:
                nearest, nearest_km = ticket, distance

        if nearest is not None:
            logger.info("Duplicate by location: %s (%.1f m)", nearest.id, nearest_km * 1000)
            return DedupResult(
                is_duplicate=True,
                existing_ticket_id=nearest.id,
                existing_status=nearest.status,
                match_type="location",
                action="merge",
                distance_km=nearest_km,
                message=(
                    f"Ticket {nearest.id} is {nearest_km * 1000:.0f} m away, "
                    "new information can be merged into it"
                ),
            )

    logger.info("No duplicate found, a new ticket can be created")
    return DedupResult(
        is_duplicate=False,
        match_type="none",
        action="create",
        message="No duplicate detected",
    )


async def merge_ticket_info(
    store: RescueStore,
    ticket_id: str,
    *,
    additional_info: str | None = None,
    people_count: int | None = None,
    priority: int | None = None,
) -> MergeResult:
    """Merge information from a duplicate report into an existing ticket.

    People count and priority only ever go up; extra text is appended to the
    victim note with an ``[Update]`` marker.

    Args:
        store: Open RescueStore
        ticket_id: Ticket to merge into
        additional_info: Free text to append to the note
        people_count: Newly reported number of people
        priority: Newly reported priority (1-5)

    Returns:
        MergeResult listing which fields changed
    """
    ticket = await store.get_ticket(ticket_id)
    if ticket is None:
        return MergeResult(
            success=False,
            ticket_id=ticket_id,
            error=ErrorCode.NOT_FOUND,
            message=f"Ticket {ticket_id} not found",
        )

    victim = ticket.victim_info
    updates: dict = {}

    if people_count and people_count > victim.people_count:
        victim = victim.model_copy(update={"people_count": people_count})
        updates["victim_info"] = victim

    if priority and priority > ticket.priority:
        updates["priority"] = min(priority, MAX_PRIORITY)

    if additional_info:
        note = f"{victim.note}\n[Update] {additional_info}".strip()
        victim = victim.model_copy(update={"note": note})
        updates["victim_info"] = victim

    if not updates:
        return MergeResult(
            success=True,
            ticket_id=ticket_id,
            message="No new information to merge",
        )

    updated = await store.update_ticket(ticket_id, updates)
    if updated is None:
        return MergeResult(
            success=False,
            ticket_id=ticket_id,
            error=ErrorCode.NOT_FOUND,
            message=f"Ticket {ticket_id} not found",
        )

    applied = sorted(updates)
    logger.info("Merged %s into ticket %s", ", ".join(applied), ticket_id)
    return MergeResult(
        success=True,
        ticket_id=ticket_id,
        updates_applied=applied,
        message="Merged new information into ticket",
    )
