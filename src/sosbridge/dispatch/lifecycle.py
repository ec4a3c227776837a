"""Ticket status transition rules.

Statuses move forward along OPEN -> ASSIGNED -> IN_PROGRESS -> VERIFIED ->
COMPLETED. Any non-terminal ticket can be CANCELLED, and a cancelled ticket
can only be re-opened. COMPLETED is terminal.

These are pure checks; the dispatcher enforces them by passing the allowed
source statuses to the store's conditional update.
"""

from sosbridge.dispatch.models import TicketStatus

TICKET_TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
    TicketStatus.OPEN: frozenset({TicketStatus.ASSIGNED, TicketStatus.CANCELLED}),
    TicketStatus.ASSIGNED: frozenset({TicketStatus.IN_PROGRESS, TicketStatus.CANCELLED}),
    TicketStatus.IN_PROGRESS: frozenset({TicketStatus.VERIFIED, TicketStatus.CANCELLED}),
    TicketStatus.VERIFIED: frozenset({TicketStatus.COMPLETED, TicketStatus.CANCELLED}),
    TicketStatus.COMPLETED: frozenset(),
    TicketStatus.CANCELLED: frozenset({TicketStatus.OPEN}),
}


def can_transition(current: TicketStatus, target: TicketStatus) -> bool:
    """Return True if a ticket may move from ``current`` to ``target``."""
    return target in TICKET_TRANSITIONS[current]


def sources_for(target: TicketStatus) -> frozenset[TicketStatus]:
    """All statuses from which ``target`` is reachable in one step."""
    return frozenset(
        status for status, targets in TICKET_TRANSITIONS.items() if target in targets
    )
