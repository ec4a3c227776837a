"""Entry points for turning a reported emergency into a dispatched ticket.

Message parsing happens upstream; callers hand over already-extracted
fields (phone, coordinates, people count). ``submit_request`` runs the full
path: dedup check, then skip, merge, or create-and-dispatch.
"""

import logging
from typing import Literal

from sosbridge.core.normalize import normalize_phone
from sosbridge.dispatch.dedup import check_duplicate, merge_ticket_info
from sosbridge.dispatch.dispatcher import Dispatcher
from sosbridge.dispatch.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    ErrorCode,
    IntakeResult,
    Location,
    Ticket,
    VictimInfo,
)
from sosbridge.dispatch.store import RescueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

Source = Literal["telegram_form", "telegram_forward", "direct"]

DEFAULT_PEOPLE_COUNT = 1
DEFAULT_PRIORITY = 3


async def create_ticket(
    store: RescueStore,
    *,
    phone: str,
    lat: float,
    lng: float,
    address_text: str = "",
    people_count: int = DEFAULT_PEOPLE_COUNT,
    priority: int = DEFAULT_PRIORITY,
    raw_message: str = "",
    note: str = "",
    has_elderly: bool = False,
    has_children: bool = False,
    has_disabled: bool = False,
    source: Source = "direct",
    reporter_chat_id: int | None = None,
) -> Ticket:
    """Create and persist a new OPEN ticket.

    The phone is stored in canonical form. Out-of-range priorities are
    clamped into 1-5 and people count is at least 1.

    Returns:
        The persisted ticket
    """
    ticket = Ticket(
        priority=min(max(priority, MIN_PRIORITY), MAX_PRIORITY),
        location=Location(lat=lat, lng=lng, address_text=address_text),
        victim_info=VictimInfo(
            phone=normalize_phone(phone),
            people_count=max(people_count, 1),
            note=note,
            has_elderly=has_elderly,
            has_children=has_children,
            has_disabled=has_disabled,
        ),
        raw_message=raw_message,
        source=source,
        reporter_chat_id=reporter_chat_id,
    )
    return await store.create_ticket(ticket)


async def submit_request(
    store: RescueStore,
    dispatcher: Dispatcher,
    *,
    phone: str,
    lat: float,
    lng: float,
    address_text: str = "",
    people_count: int | None = None,
    priority: int | None = None,
    raw_message: str = "",
    note: str = "",
    has_elderly: bool = False,
    has_children: bool = False,
    has_disabled: bool = False,
    source: Source = "direct",
    reporter_chat_id: int | None = None,
) -> IntakeResult:
    """Dedup, then create-and-dispatch or fold into an existing ticket.

    Args:
        store: Open RescueStore
        dispatcher: Dispatcher used for the automatic fan-out
        phone: Reporter phone in any format
        lat: Latitude of the victims
        lng: Longitude of the victims
        people_count: Reported number of people, if the reporter gave one
        priority: Reported priority, if the reporter gave one
        (remaining keyword arguments are passed to ``create_ticket``)

    A merge only applies values the reporter actually supplied; the
    ``create_ticket`` defaults (1 person, priority 3) apply to new tickets
    only.

    Returns:
        IntakeResult with the dedup decision and, for new tickets, the
        dispatch outcome
    """
    dedup = await check_duplicate(store, phone, lat, lng, config=dispatcher.config)

    if dedup.action == "skip":
        logger.info("Skipping duplicate request for ticket %s", dedup.existing_ticket_id)
        return IntakeResult(
            success=False,
            action="skip",
            ticket_id=dedup.existing_ticket_id,
            dedup=dedup,
            error=ErrorCode.DUPLICATE_REQUEST,
            message=dedup.message,
        )

    if dedup.action == "merge":
        info = note or raw_message or None
        merged = await merge_ticket_info(
            store,
            dedup.existing_ticket_id,
            additional_info=info,
            people_count=people_count,
            priority=min(priority, MAX_PRIORITY) if priority is not None else None,
        )
        return IntakeResult(
            success=merged.success,
            action="merge",
            ticket_id=dedup.existing_ticket_id,
            ticket=await store.get_ticket(dedup.existing_ticket_id),
            dedup=dedup,
            error=merged.error,
            message=merged.message,
        )

    ticket = await create_ticket(
        store,
        phone=phone,
        lat=lat,
        lng=lng,
        address_text=address_text,
        people_count=people_count if people_count is not None else DEFAULT_PEOPLE_COUNT,
        priority=priority if priority is not None else DEFAULT_PRIORITY,
        raw_message=raw_message,
        note=note,
        has_elderly=has_elderly,
        has_children=has_children,
        has_disabled=has_disabled,
        source=source,
        reporter_chat_id=reporter_chat_id,
    )

    # The ticket is committed; a dispatch failure must not undo it
    dispatch = None
    try:
        dispatch = await dispatcher.dispatch_ticket(ticket.id)
    except StoreUnavailableError:
        logger.error("Auto-dispatch failed for new ticket %s", ticket.id, exc_info=True)

    if dispatch is None:
        message = f"Created ticket {ticket.id}, dispatch will need to be retried"
    else:
        message = f"Created ticket {ticket.id}. {dispatch.message}"

    return IntakeResult(
        success=True,
        action="create",
        ticket_id=ticket.id,
        ticket=ticket,
        dedup=dedup,
        dispatch=dispatch,
        message=message,
    )
