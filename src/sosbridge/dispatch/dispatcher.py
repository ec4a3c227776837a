"""Dispatch orchestrator: fan-out and race-safe mission assignment.

A freshly created OPEN ticket is offered to several nearby rescuers at once.
Whoever accepts first wins: the assignment is a single conditional store
update (``expected_status=OPEN``), so two concurrent accepts can never both
succeed. Late accepts, lost races, and accepts on cancelled tickets all fall
out of the same status check and get "mission no longer available".

The ticket-side assignment is the single source of truth for who won. The
rescuer's ON_MISSION flag follows as a second conditional write; if that one
fails because the rescuer was claimed by another mission in the meantime,
the ticket assignment is rolled back to OPEN so a rescuer never holds two
missions.
"""

import asyncio
import logging
from datetime import UTC, datetime

from sosbridge.core.config import DispatchConfig, get_dispatch_config
from sosbridge.dispatch.lifecycle import can_transition, sources_for
from sosbridge.dispatch.models import (
    AVAILABLE_RESCUER_STATUSES,
    AssignmentResult,
    AvailabilityResult,
    DispatchResult,
    ErrorCode,
    NotifiedRescuer,
    RescuerStatus,
    ScoredRescuer,
    Ticket,
    TicketStatus,
)
from sosbridge.dispatch.notify import NotificationChannel, build_mission_payload, recipient_ref_for
from sosbridge.dispatch.scoring import find_best_rescuer, select_candidates
from sosbridge.dispatch.store import RescueStore, StoreUnavailableError

logger = logging.getLogger(__name__)

NO_LONGER_AVAILABLE = "Mission no longer available"
MAX_CANCEL_ATTEMPTS = 3


class Dispatcher:
    """Coordinates fan-out of tickets and assignment of rescuers.

    Usage::

        async with RescueStore() as store:
            dispatcher = Dispatcher(store, LoggingChannel())
            await dispatcher.dispatch_ticket(ticket.id)
            result = await dispatcher.accept_mission(ticket.id, rescuer.id)
    """

    def __init__(
        self,
        store: RescueStore,
        channel: NotificationChannel,
        config: DispatchConfig | None = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.config = config or get_dispatch_config()

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def dispatch_ticket(self, ticket_id: str) -> DispatchResult:
        """Offer an OPEN ticket to the best nearby rescuers concurrently.

        Candidates are selected within the broadcast radius, rescuers with no
        notification channel are dropped, and the top
        ``max_rescuers_to_notify`` of the rest are notified. One failed
        delivery never blocks the others. Finding nobody is not an error:
        the ticket simply stays OPEN.

        Args:
            ticket_id: Ticket to dispatch

        Returns:
            DispatchResult with per-rescuer notification outcomes
        """
        logger.info("Dispatching ticket %s", ticket_id)

        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            return DispatchResult(
                success=False,
                ticket_id=ticket_id,
                error=ErrorCode.NOT_FOUND,
                message=f"Ticket {ticket_id} not found",
            )
        if ticket.status != TicketStatus.OPEN:
            return DispatchResult(
                success=False,
                ticket_id=ticket_id,
                error=ErrorCode.INVALID_STATE,
                message=f"Ticket is not OPEN (current: {ticket.status.value})",
            )

        radius = self.config.broadcast_radius_km
        candidates = await select_candidates(
            self.store, ticket, radius, weights=self.config.scoring
        )
        if not candidates:
            return DispatchResult(
                success=False,
                ticket_id=ticket_id,
                message=f"No rescuers available within {radius:g} km, ticket stays open",
            )

        # Unreachable rescuers must not use up notification slots
        limit = self.config.max_rescuers_to_notify
        reachable = [c for c in candidates if recipient_ref_for(c.rescuer) is not None][:limit]
        if not reachable:
            logger.warning(
                "Found %d rescuers for %s but none can be notified", len(candidates), ticket_id
            )
            return DispatchResult(
                success=False,
                ticket_id=ticket_id,
                rescuers=[_summary(c, notified=False) for c in candidates[:limit]],
                message=f"Found {len(candidates)} rescuers but none can be notified",
            )

        outcomes = await asyncio.gather(*(self._notify(ticket, c) for c in reachable))
        summaries = [_summary(c, notified=ok) for c, ok in zip(reachable, outcomes, strict=True)]
        notified_count = sum(outcomes)

        logger.info(
            "Dispatch of %s: notified %d/%d rescuers", ticket_id, notified_count, len(reachable)
        )
        return DispatchResult(
            success=notified_count > 0,
            ticket_id=ticket_id,
            notified_count=notified_count,
            rescuers=summaries,
            message=(
                f"Notified {notified_count} nearby rescuers"
                if notified_count
                else "Could not notify any rescuer, please retry later"
            ),
        )

    async def _notify(self, ticket: Ticket, candidate: ScoredRescuer) -> bool:
        """Deliver one offer. Failures are logged and isolated to this recipient."""
        rescuer = candidate.rescuer
        payload = build_mission_payload(ticket, rescuer, candidate.distance_km, self.config)
        try:
            delivered = await self.channel.deliver(recipient_ref_for(rescuer), payload)
        except Exception:
            logger.warning("Failed to notify %s about %s", rescuer.id, ticket.id, exc_info=True)
            return False
        if not delivered:
            logger.warning("Channel rejected notification to %s about %s", rescuer.id, ticket.id)
        return bool(delivered)

    # ------------------------------------------------------------------
    # Accept / assignment
    # ------------------------------------------------------------------

    async def is_ticket_available(self, ticket_id: str) -> AvailabilityResult:
        """Report whether a ticket can still be accepted (latest committed state)."""
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            return AvailabilityResult(available=False, current_status="NOT_FOUND")
        if ticket.status != TicketStatus.OPEN:
            return AvailabilityResult(
                available=False,
                current_status=ticket.status.value,
                assigned_to=ticket.assigned_rescuer_id,
            )
        return AvailabilityResult(available=True, current_status=ticket.status.value)

    async def accept_mission(self, ticket_id: str, rescuer_id: str) -> AssignmentResult:
        """Handle a rescuer accepting a mission offer.

        Exactly one of several concurrent accepts for the same ticket succeeds;
        every other one gets ``error=invalid_state`` and leaves the rescuer
        untouched.

        Args:
            ticket_id: Ticket being accepted
            rescuer_id: Rescuer who pressed accept

        Returns:
            AssignmentResult describing the outcome
        """
        logger.info("Rescuer %s accepting ticket %s", rescuer_id, ticket_id)

        # Always re-read; the fan-out view may be stale
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                rescuer_id=rescuer_id,
                error=ErrorCode.NOT_FOUND,
                message=f"Ticket {ticket_id} not found",
            )
        if ticket.status != TicketStatus.OPEN:
            return await self._rejected(ticket_id, rescuer_id, ticket.status)

        rescuer = await self.store.get_rescuer(rescuer_id)
        if rescuer is None:
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                rescuer_id=rescuer_id,
                ticket_status=ticket.status,
                error=ErrorCode.NOT_FOUND,
                message=f"Rescuer {rescuer_id} not found",
            )
        if not rescuer.is_available:
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                rescuer_id=rescuer_id,
                ticket_status=ticket.status,
                rescuer_status=rescuer.status,
                error=ErrorCode.INVALID_STATE,
                message=f"Rescuer is not available (status: {rescuer.status.value})",
            )

        return await self._assign(ticket_id, rescuer_id)

    async def auto_assign(self, ticket_id: str, radius_km: float | None = None) -> AssignmentResult:
        """Assign the single best-matching rescuer without a fan-out round.

        Uses the best-match radius (default 5 km) and the same conditional
        assignment as ``accept_mission``.
        """
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                error=ErrorCode.NOT_FOUND,
                message=f"Ticket {ticket_id} not found",
            )
        if ticket.status != TicketStatus.OPEN:
            return await self._rejected(ticket_id, None, ticket.status)

        best = await find_best_rescuer(self.store, ticket, radius_km=radius_km, config=self.config)
        if best is None:
            radius = radius_km if radius_km is not None else self.config.match_radius_km
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                ticket_status=ticket.status,
                message=f"No suitable rescuer within {radius:g} km",
            )

        logger.info(
            "Best match for %s: %s (%.2f km, score %.0f)",
            ticket_id,
            best.rescuer.id,
            best.distance_km,
            best.score,
        )
        return await self._assign(ticket_id, best.rescuer.id)

    async def _assign(self, ticket_id: str, rescuer_id: str) -> AssignmentResult:
        """Conditionally assign, then claim the rescuer (or roll back)."""
        assigned = await self.store.update_ticket(
            ticket_id,
            {"status": TicketStatus.ASSIGNED, "assigned_rescuer_id": rescuer_id},
            expected_status=TicketStatus.OPEN,
        )
        if assigned is None:
            logger.info("Rescuer %s lost the race for ticket %s", rescuer_id, ticket_id)
            current = await self.store.get_ticket(ticket_id)
            return await self._rejected(ticket_id, rescuer_id, current.status if current else None)

        claimed = await self.store.update_rescuer(
            rescuer_id,
            {"status": RescuerStatus.ON_MISSION},
            expected_status=AVAILABLE_RESCUER_STATUSES,
        )
        if claimed is None:
            logger.warning(
                "Rescuer %s became unavailable while accepting %s, releasing ticket",
                rescuer_id,
                ticket_id,
            )
            await self._release_assignment(ticket_id, rescuer_id)
            rescuer = await self.store.get_rescuer(rescuer_id)
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                rescuer_id=rescuer_id,
                ticket_status=TicketStatus.OPEN,
                rescuer_status=rescuer.status if rescuer else None,
                error=ErrorCode.INVALID_STATE,
                message="Rescuer already has another mission in progress",
            )

        logger.info("Assigned rescuer %s (%s) to ticket %s", claimed.id, claimed.name, ticket_id)
        return AssignmentResult(
            success=True,
            ticket_id=ticket_id,
            rescuer_id=rescuer_id,
            ticket_status=assigned.status,
            rescuer_status=claimed.status,
            message="Mission accepted",
        )

    async def _release_assignment(self, ticket_id: str, rescuer_id: str) -> None:
        """Undo an assignment whose rescuer could not be claimed."""
        released = await self.store.update_ticket(
            ticket_id,
            {"status": TicketStatus.OPEN, "assigned_rescuer_id": None},
            expected_status=TicketStatus.ASSIGNED,
        )
        if released is None:
            logger.error(
                "Could not release ticket %s after failed claim of %s", ticket_id, rescuer_id
            )

    async def _rejected(
        self,
        ticket_id: str,
        rescuer_id: str | None,
        status: TicketStatus | None,
    ) -> AssignmentResult:
        """Standard "no longer available" outcome, naming the winner if any."""
        message = NO_LONGER_AVAILABLE
        if status in (TicketStatus.ASSIGNED, TicketStatus.IN_PROGRESS):
            ticket = await self.store.get_ticket(ticket_id)
            winner = (
                await self.store.get_rescuer(ticket.assigned_rescuer_id)
                if ticket and ticket.assigned_rescuer_id
                else None
            )
            if winner and winner.id != rescuer_id:
                message = f"{NO_LONGER_AVAILABLE}: already accepted by {winner.name}"
        elif status is not None and status != TicketStatus.OPEN:
            message = f"{NO_LONGER_AVAILABLE} (status: {status.value})"

        return AssignmentResult(
            success=False,
            ticket_id=ticket_id,
            rescuer_id=rescuer_id,
            ticket_status=status,
            error=ErrorCode.INVALID_STATE,
            message=message,
        )

    # ------------------------------------------------------------------
    # Mission lifecycle
    # ------------------------------------------------------------------

    async def start_mission(self, ticket_id: str, rescuer_id: str) -> AssignmentResult:
        """ASSIGNED -> IN_PROGRESS, only for the assigned rescuer."""
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            return _not_found(ticket_id, rescuer_id)
        if ticket.assigned_rescuer_id != rescuer_id:
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                rescuer_id=rescuer_id,
                ticket_status=ticket.status,
                error=ErrorCode.INVALID_STATE,
                message="Mission is not assigned to this rescuer",
            )
        return await self._transition(ticket_id, TicketStatus.IN_PROGRESS, {})

    async def mark_verified(self, ticket_id: str) -> AssignmentResult:
        """IN_PROGRESS -> VERIFIED once the rescue has been confirmed."""
        return await self._transition(
            ticket_id, TicketStatus.VERIFIED, {"verified_at": datetime.now(UTC)}
        )

    async def complete_mission(self, ticket_id: str) -> AssignmentResult:
        """VERIFIED -> COMPLETED; frees the rescuer and credits the mission."""
        result = await self._transition(
            ticket_id, TicketStatus.COMPLETED, {"completed_at": datetime.now(UTC)}
        )
        if not result.success or result.rescuer_id is None:
            return result

        rescuer = await self.store.get_rescuer(result.rescuer_id)
        if rescuer is not None:
            released = await self.store.update_rescuer(
                rescuer.id,
                {
                    "status": RescuerStatus.IDLE,
                    "completed_missions": rescuer.completed_missions + 1,
                },
                expected_status=RescuerStatus.ON_MISSION,
            )
            if released is None:
                logger.warning("Rescuer %s was not ON_MISSION at completion", rescuer.id)
            else:
                result.rescuer_status = released.status
        return result

    async def cancel_ticket(self, ticket_id: str) -> AssignmentResult:
        """Cancel a non-terminal ticket and release its rescuer, if any.

        The cancel only commits against the exact status and assignee it read,
        so the rescuer released afterwards is always the one that was holding
        the ticket. Pending offers need no separate revocation: any later
        accept sees CANCELLED and is rejected.

        Raises:
            StoreUnavailableError: The ticket kept changing under concurrent
                writers
        """
        for _ in range(MAX_CANCEL_ATTEMPTS):
            ticket = await self.store.get_ticket(ticket_id)
            if ticket is None:
                return _not_found(ticket_id, None)
            if not can_transition(ticket.status, TicketStatus.CANCELLED):
                return AssignmentResult(
                    success=False,
                    ticket_id=ticket_id,
                    ticket_status=ticket.status,
                    error=ErrorCode.INVALID_STATE,
                    message="Ticket can no longer be cancelled",
                )

            cancelled = await self.store.update_ticket(
                ticket_id,
                {"status": TicketStatus.CANCELLED, "assigned_rescuer_id": None},
                expected_status=ticket.status,
                expected_rescuer_id=ticket.assigned_rescuer_id,
            )
            if cancelled is not None:
                break
            logger.info("Ticket %s changed while cancelling, re-reading", ticket_id)
        else:
            raise StoreUnavailableError(f"Ticket {ticket_id} kept changing while cancelling")

        rescuer_status = None
        if ticket.assigned_rescuer_id:
            released = await self.store.update_rescuer(
                ticket.assigned_rescuer_id,
                {"status": RescuerStatus.IDLE},
                expected_status=RescuerStatus.ON_MISSION,
            )
            rescuer_status = released.status if released else None

        logger.info("Cancelled ticket %s (was %s)", ticket_id, ticket.status.value)
        return AssignmentResult(
            success=True,
            ticket_id=ticket_id,
            rescuer_id=ticket.assigned_rescuer_id,
            ticket_status=cancelled.status,
            rescuer_status=rescuer_status,
            message="Ticket cancelled",
        )

    async def reopen_ticket(self, ticket_id: str) -> AssignmentResult:
        """CANCELLED -> OPEN."""
        return await self._transition(ticket_id, TicketStatus.OPEN, {})

    async def _transition(
        self,
        ticket_id: str,
        target: TicketStatus,
        extra: dict,
    ) -> AssignmentResult:
        """Move a ticket to ``target`` from any status the transition table allows."""
        updated = await self.store.update_ticket(
            ticket_id, {"status": target, **extra}, expected_status=sources_for(target)
        )
        if updated is None:
            current = await self.store.get_ticket(ticket_id)
            if current is None:
                return _not_found(ticket_id, None)
            return AssignmentResult(
                success=False,
                ticket_id=ticket_id,
                rescuer_id=current.assigned_rescuer_id,
                ticket_status=current.status,
                error=ErrorCode.INVALID_STATE,
                message=f"Cannot move ticket from {current.status.value} to {target.value}",
            )

        logger.info("Ticket %s is now %s", ticket_id, target.value)
        return AssignmentResult(
            success=True,
            ticket_id=ticket_id,
            rescuer_id=updated.assigned_rescuer_id,
            ticket_status=updated.status,
            message=f"Ticket is now {target.value}",
        )


def _summary(candidate: ScoredRescuer, *, notified: bool) -> NotifiedRescuer:
    return NotifiedRescuer(
        rescuer_id=candidate.rescuer.id,
        name=candidate.rescuer.name,
        distance_km=round(candidate.distance_km, 2),
        score=round(candidate.score, 1),
        notified=notified,
    )


def _not_found(ticket_id: str, rescuer_id: str | None) -> AssignmentResult:
    return AssignmentResult(
        success=False,
        ticket_id=ticket_id,
        rescuer_id=rescuer_id,
        error=ErrorCode.NOT_FOUND,
        message=f"Ticket {ticket_id} not found",
    )
