"""Async Cosmos DB operations for tickets and rescuers.

This module is the only place that reads or writes ticket and rescuer
documents. Status and assignment changes go through the conditional update
methods (``update_ticket`` / ``update_rescuer`` with ``expected_status``),
which commit only if the stored status still matches at the moment of the
write:

- Cosmos DB mode uses optimistic concurrency on the document ``_etag``.
  A 412 from an unrelated concurrent write triggers a re-read and a fresh
  status check, so only a real status change makes the update lose.
- In-memory mode performs the check and the write under a process-wide lock
  with no suspension point in between.

When ``COSMOS_ENDPOINT`` is not set, falls back to an in-memory store
for local development and testing.
"""

import logging
import os
import threading
from collections.abc import Collection
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar, Self, TypeVar

from azure.core import MatchConditions
from azure.cosmos.exceptions import (
    CosmosAccessConditionFailedError,
    CosmosHttpResponseError,
    CosmosResourceNotFoundError,
)
from dotenv import load_dotenv
from pydantic import BaseModel
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from sosbridge.core.config import get_cosmos_database
from sosbridge.core.geo import haversine_km
from sosbridge.dispatch.models import (
    ACTIVE_TICKET_STATUSES,
    AVAILABLE_RESCUER_STATUSES,
    Rescuer,
    RescuerStatus,
    Ticket,
    TicketStatus,
)

logger = logging.getLogger(__name__)

TICKETS_CONTAINER = "tickets"
RESCUERS_CONTAINER = "rescuers"

# Optimistic-concurrency retry configuration (Cosmos mode)
MAX_CAS_ATTEMPTS = 5
MIN_CAS_WAIT_SECONDS = 0.05
MAX_CAS_WAIT_SECONDS = 1.0

DEFAULT_DEDUP_RADIUS_KM = 0.05

# Sentinel: no precondition on assigned_rescuer_id (None is a real value)
_ANY_ASSIGNEE = object()

ModelT = TypeVar("ModelT", bound=BaseModel)


class StoreUnavailableError(Exception):
    """The backing datastore could not be reached or rejected the request.

    Retryable: callers should surface this as a transient failure and never
    treat it as "not found" or "no duplicate".
    """


def _status_values(expected: Any) -> frozenset[str] | None:
    """Normalize an expected-status argument to a set of raw values."""
    if expected is None:
        return None
    if isinstance(expected, Enum):
        return frozenset({expected.value})
    if isinstance(expected, str):
        return frozenset({expected})
    if isinstance(expected, Collection):
        return frozenset(s.value if isinstance(s, Enum) else s for s in expected)
    raise TypeError(f"Unsupported expected_status: {expected!r}")


def _mismatch(data: dict, expected: frozenset[str] | None, assignee: Any) -> str | None:
    """Describe why a stored document fails an update precondition, or None."""
    if expected is not None and data["status"] not in expected:
        return f"status is {data['status']}, expected {sorted(expected)}"
    if assignee is not _ANY_ASSIGNEE and data.get("assigned_rescuer_id") != assignee:
        return f"assigned to {data.get('assigned_rescuer_id')}, expected {assignee}"
    return None


def _apply(model_cls: type[ModelT], data: dict, updates: dict) -> ModelT:
    """Merge a partial update into a stored document and re-validate."""
    merged = {**data, **updates, "updated_at": datetime.now(UTC)}
    return model_cls.model_validate(merged)


class _EtagConflict(Exception):
    """Another writer replaced the document between our read and write."""


class RescueStore:
    """Async store for ticket and rescuer documents in Cosmos DB.

    Falls back to in-memory storage when Cosmos DB is not configured,
    so the dispatcher works out of the box without Azure infrastructure.

    Usage::

        async with RescueStore() as store:
            ticket = await store.create_ticket(ticket)
            won = await store.update_ticket(
                ticket.id,
                {"status": TicketStatus.ASSIGNED, "assigned_rescuer_id": "RSC_1"},
                expected_status=TicketStatus.OPEN,
            )
    """

    # Shared in-memory state across instances (persists for process lifetime)
    _tickets: ClassVar[dict[str, dict]] = {}
    _rescuers: ClassVar[dict[str, dict]] = {}
    _phone_index: ClassVar[dict[str, str]] = {}  # canonical phone -> most recent ticket id
    _lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self) -> None:
        """Initialize store. Call ``__aenter__`` to connect."""
        self._client = None
        self._credential = None
        self._tickets_container = None
        self._rescuers_container = None
        self._in_memory = False

    async def __aenter__(self) -> Self:
        """Connect to Cosmos DB, or fall back to in-memory mode."""
        load_dotenv()

        endpoint = os.getenv("COSMOS_ENDPOINT")
        key = os.getenv("COSMOS_KEY")

        if key:
            from azure.cosmos.aio import CosmosClient

            self._client = CosmosClient(endpoint, credential=key)
        elif endpoint:
            from azure.cosmos.aio import CosmosClient
            from azure.identity.aio import DefaultAzureCredential

            self._credential = DefaultAzureCredential()
            self._client = CosmosClient(endpoint, credential=self._credential)
        else:
            logger.warning("No COSMOS_ENDPOINT set, using in-memory rescue store (dev only)")
            self._in_memory = True
            return self

        database = self._client.get_database_client(get_cosmos_database())
        self._tickets_container = database.get_container_client(TICKETS_CONTAINER)
        self._rescuers_container = database.get_container_client(RESCUERS_CONTAINER)
        logger.info(
            "Connected to Cosmos DB: %s/{%s,%s}",
            get_cosmos_database(),
            TICKETS_CONTAINER,
            RESCUERS_CONTAINER,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close connections."""
        if self._client:
            await self._client.close()
            self._client = None
        if self._credential:
            await self._credential.close()
            self._credential = None
        self._tickets_container = None
        self._rescuers_container = None

    @classmethod
    def clear_memory(cls) -> None:
        """Drop all in-memory documents (dev and tests only)."""
        with cls._lock:
            cls._tickets.clear()
            cls._rescuers.clear()
            cls._phone_index.clear()

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        """Persist a new ticket and index it by phone.

        Args:
            ticket: Ticket to create

        Returns:
            The created ticket
        """
        if self._in_memory:
            with self._lock:
                self._tickets[ticket.id] = ticket.to_cosmos()
                if ticket.victim_info.phone:
                    self._phone_index[ticket.victim_info.phone] = ticket.id
            logger.info("Created ticket %s (in-memory, priority=%d)", ticket.id, ticket.priority)
            return ticket

        try:
            result = await self._tickets_container.create_item(body=ticket.to_cosmos())
        except CosmosHttpResponseError as e:
            raise StoreUnavailableError(f"Failed to create ticket {ticket.id}: {e}") from e
        logger.info("Created ticket %s (priority=%d)", ticket.id, ticket.priority)
        return Ticket.from_cosmos(result)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        """Point-read a ticket by ID.

        Returns:
            Ticket if found, None otherwise

        Raises:
            StoreUnavailableError: If the datastore request failed
        """
        if self._in_memory:
            data = self._tickets.get(ticket_id)
            return Ticket.from_cosmos(data) if data else None

        data = await self._read(self._tickets_container, ticket_id)
        return Ticket.from_cosmos(data) if data else None

    async def update_ticket(
        self,
        ticket_id: str,
        updates: dict[str, Any],
        *,
        expected_status: TicketStatus | Collection[TicketStatus] | None = None,
        expected_rescuer_id: Any = _ANY_ASSIGNEE,
    ) -> Ticket | None:
        """Apply a partial update, optionally only if the status still matches.

        The precondition check and the write are atomic: when two writers race
        with the same ``expected_status``, at most one of them gets a ticket
        back.

        Args:
            ticket_id: Ticket to update
            updates: Top-level fields to replace
            expected_status: Status (or statuses) the stored ticket must have
            expected_rescuer_id: If given, the stored ``assigned_rescuer_id``
                must equal it (``None`` means "unassigned")

        Returns:
            The updated ticket, or None if the ticket doesn't exist or a
            precondition no longer holds

        Raises:
            StoreUnavailableError: Cosmos DB failed, or concurrent writers
                kept invalidating the etag
        """
        expected = _status_values(expected_status)

        if self._in_memory:
            with self._lock:
                data = self._tickets.get(ticket_id)
                if data is None:
                    return None
                reason = _mismatch(data, expected, expected_rescuer_id)
                if reason:
                    logger.info("Conditional update of ticket %s skipped: %s", ticket_id, reason)
                    return None
                ticket = _apply(Ticket, data, updates)
                self._tickets[ticket_id] = ticket.to_cosmos()
                self._reindex_phone(data, ticket)
            logger.debug("Updated ticket %s (in-memory), status=%s", ticket_id, ticket.status.value)
            return ticket

        result = await self._conditional_update(
            self._tickets_container, Ticket, ticket_id, updates, expected, expected_rescuer_id
        )
        if result is not None:
            logger.debug("Updated ticket %s, status=%s", ticket_id, result.status.value)
        return result

    async def find_ticket_by_phone(
        self,
        phone: str,
        *,
        statuses: Collection[TicketStatus] | None = None,
    ) -> Ticket | None:
        """Find the most recent ticket for a canonical phone number.

        Args:
            phone: Canonical phone (see ``normalize_phone``)
            statuses: Only consider tickets in these statuses

        Returns:
            Most recently created matching ticket, or None
        """
        wanted = _status_values(statuses)

        if self._in_memory:
            ticket_id = self._phone_index.get(phone)
            data = self._tickets.get(ticket_id) if ticket_id else None
            if data and (wanted is None or data["status"] in wanted):
                return Ticket.from_cosmos(data)
            if wanted is None:
                return None
            # Index points at an inactive ticket; an older one may still match
            matches = [
                d
                for d in self._tickets.values()
                if d["victim_info"]["phone"] == phone and d["status"] in wanted
            ]
            if not matches:
                return None
            return Ticket.from_cosmos(max(matches, key=lambda d: d["created_at"]))

        conditions = ["c.victim_info.phone = @phone"]
        parameters: list[dict] = [{"name": "@phone", "value": phone}]
        if wanted is not None:
            conditions.append("ARRAY_CONTAINS(@statuses, c.status)")
            parameters.append({"name": "@statuses", "value": sorted(wanted)})

        query = f"SELECT TOP 1 * FROM c WHERE {' AND '.join(conditions)} ORDER BY c.created_at DESC"
        items = await self._query(self._tickets_container, query, parameters)
        return Ticket.from_cosmos(items[0]) if items else None

    async def find_tickets_in_radius(
        self,
        lat: float,
        lng: float,
        radius_km: float,
        *,
        statuses: Collection[TicketStatus] | None = None,
    ) -> list[Ticket]:
        """List tickets within ``radius_km`` of a point, in store order.

        Args:
            lat: Latitude in degrees
            lng: Longitude in degrees
            radius_km: Search radius in kilometers (inclusive)
            statuses: Only consider tickets in these statuses

        Returns:
            Matching tickets (not sorted by distance)
        """
        tickets = await self.list_tickets(statuses=statuses, max_items=None)
        return [
            t
            for t in tickets
            if haversine_km(lat, lng, t.location.lat, t.location.lng) <= radius_km
        ]

    async def has_active_ticket_nearby(
        self, lat: float, lng: float, radius_km: float = DEFAULT_DEDUP_RADIUS_KM
    ) -> bool:
        """Check whether any active ticket lies within ``radius_km``."""
        nearby = await self.find_tickets_in_radius(
            lat, lng, radius_km, statuses=ACTIVE_TICKET_STATUSES
        )
        return bool(nearby)

    async def list_tickets(
        self,
        status: TicketStatus | None = None,
        *,
        statuses: Collection[TicketStatus] | None = None,
        max_items: int | None = 100,
    ) -> list[Ticket]:
        """List tickets, optionally filtered by status, oldest first.

        Args:
            status: Single status filter
            statuses: Multiple-status filter (combined with ``status``)
            max_items: Maximum results, or None for all

        Returns:
            Matching tickets sorted by created_at ascending
        """
        wanted = _status_values(statuses)
        if status is not None:
            wanted = (wanted or frozenset()) | {status.value}

        if self._in_memory:
            results = [
                Ticket.from_cosmos(d)
                for d in self._tickets.values()
                if wanted is None or d["status"] in wanted
            ]
            results.sort(key=lambda t: t.created_at)
            return results if max_items is None else results[:max_items]

        parameters: list[dict] = []
        where_clause = ""
        if wanted is not None:
            where_clause = " WHERE ARRAY_CONTAINS(@statuses, c.status)"
            parameters.append({"name": "@statuses", "value": sorted(wanted)})
        query = f"SELECT * FROM c{where_clause} ORDER BY c.created_at ASC"

        items = await self._query(self._tickets_container, query, parameters, max_items)
        return [Ticket.from_cosmos(item) for item in items]

    def _reindex_phone(self, before: dict, ticket: Ticket) -> None:
        """Keep the phone index consistent after an in-memory update (lock held)."""
        old_phone = before["victim_info"]["phone"]
        new_phone = ticket.victim_info.phone
        if old_phone == new_phone:
            return
        if self._phone_index.get(old_phone) == ticket.id:
            remaining = [
                d for d in self._tickets.values() if d["victim_info"]["phone"] == old_phone
            ]
            if remaining:
                newest = max(remaining, key=lambda d: d["created_at"])
                self._phone_index[old_phone] = newest["id"]
            else:
                del self._phone_index[old_phone]
        if new_phone:
            current = self._tickets.get(self._phone_index.get(new_phone, ""))
            if current is None or current["created_at"] <= ticket.to_cosmos()["created_at"]:
                self._phone_index[new_phone] = ticket.id

    # ------------------------------------------------------------------
    # Rescuers
    # ------------------------------------------------------------------

    async def add_rescuer(self, rescuer: Rescuer) -> Rescuer:
        """Persist a new rescuer."""
        if self._in_memory:
            with self._lock:
                self._rescuers[rescuer.id] = rescuer.to_cosmos()
            logger.info("Added rescuer %s (%s) (in-memory)", rescuer.id, rescuer.name)
            return rescuer

        try:
            result = await self._rescuers_container.create_item(body=rescuer.to_cosmos())
        except CosmosHttpResponseError as e:
            raise StoreUnavailableError(f"Failed to add rescuer {rescuer.id}: {e}") from e
        logger.info("Added rescuer %s (%s)", rescuer.id, rescuer.name)
        return Rescuer.from_cosmos(result)

    async def get_rescuer(self, rescuer_id: str) -> Rescuer | None:
        """Point-read a rescuer by ID."""
        if self._in_memory:
            data = self._rescuers.get(rescuer_id)
            return Rescuer.from_cosmos(data) if data else None

        data = await self._read(self._rescuers_container, rescuer_id)
        return Rescuer.from_cosmos(data) if data else None

    async def update_rescuer(
        self,
        rescuer_id: str,
        updates: dict[str, Any],
        *,
        expected_status: RescuerStatus | Collection[RescuerStatus] | None = None,
    ) -> Rescuer | None:
        """Apply a partial update, optionally only if the status still matches.

        Returns:
            The updated rescuer, or None if missing or the status didn't match
        """
        expected = _status_values(expected_status)
        updates = {**updates, "last_active_at": datetime.now(UTC)}

        if self._in_memory:
            with self._lock:
                data = self._rescuers.get(rescuer_id)
                if data is None:
                    return None
                reason = _mismatch(data, expected, _ANY_ASSIGNEE)
                if reason:
                    logger.info("Conditional update of rescuer %s skipped: %s", rescuer_id, reason)
                    return None
                rescuer = _apply(Rescuer, data, updates)
                self._rescuers[rescuer_id] = rescuer.to_cosmos()
            logger.debug(
                "Updated rescuer %s (in-memory), status=%s", rescuer_id, rescuer.status.value
            )
            return rescuer

        return await self._conditional_update(
            self._rescuers_container, Rescuer, rescuer_id, updates, expected, _ANY_ASSIGNEE
        )

    async def list_rescuers(
        self,
        *,
        statuses: Collection[RescuerStatus] | None = None,
    ) -> list[Rescuer]:
        """List rescuers in stable store order (created_at, then id)."""
        wanted = _status_values(statuses)

        if self._in_memory:
            results = [
                Rescuer.from_cosmos(d)
                for d in self._rescuers.values()
                if wanted is None or d["status"] in wanted
            ]
            results.sort(key=lambda r: (r.created_at, r.id))
            return results

        parameters: list[dict] = []
        where_clause = ""
        if wanted is not None:
            where_clause = " WHERE ARRAY_CONTAINS(@statuses, c.status)"
            parameters.append({"name": "@statuses", "value": sorted(wanted)})
        query = f"SELECT * FROM c{where_clause} ORDER BY c.created_at ASC, c.id ASC"

        items = await self._query(self._rescuers_container, query, parameters)
        return [Rescuer.from_cosmos(item) for item in items]

    async def find_available_rescuers_in_radius(
        self, lat: float, lng: float, radius_km: float
    ) -> list[tuple[Rescuer, float]]:
        """Find ONLINE/IDLE rescuers within ``radius_km`` of a point.

        Returns:
            (rescuer, distance_km) pairs, nearest first; equal distances keep
            store order
        """
        rescuers = await self.list_rescuers(statuses=AVAILABLE_RESCUER_STATUSES)
        pairs = [
            (r, haversine_km(lat, lng, r.location.lat, r.location.lng)) for r in rescuers
        ]
        in_range = [(r, d) for r, d in pairs if d <= radius_km]
        in_range.sort(key=lambda pair: pair[1])
        return in_range

    async def find_rescuer_by_telegram_id(self, telegram_user_id: int) -> Rescuer | None:
        """Look up a rescuer by their Telegram user ID."""
        if self._in_memory:
            for data in self._rescuers.values():
                if data.get("telegram_user_id") == telegram_user_id:
                    return Rescuer.from_cosmos(data)
            return None

        query = "SELECT TOP 1 * FROM c WHERE c.telegram_user_id = @uid"
        parameters: list[dict] = [{"name": "@uid", "value": telegram_user_id}]
        items = await self._query(self._rescuers_container, query, parameters)
        return Rescuer.from_cosmos(items[0]) if items else None

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict:
        """Count tickets and rescuers by status.

        Returns:
            Dict with ``tickets`` and ``rescuers`` sections, each holding a
            ``total`` and one count per status
        """
        tickets = await self.list_tickets(max_items=None)
        rescuers = await self.list_rescuers()

        ticket_counts = {s.value: 0 for s in TicketStatus}
        for t in tickets:
            ticket_counts[t.status.value] += 1
        rescuer_counts = {s.value: 0 for s in RescuerStatus}
        for r in rescuers:
            rescuer_counts[r.status.value] += 1

        return {
            "tickets": {"total": len(tickets), **ticket_counts},
            "rescuers": {
                "total": len(rescuers),
                "available": sum(1 for r in rescuers if r.is_available),
                **rescuer_counts,
            },
        }

    # ------------------------------------------------------------------
    # Cosmos helpers
    # ------------------------------------------------------------------

    async def _read(self, container, item_id: str) -> dict | None:
        try:
            return await container.read_item(item=item_id, partition_key=item_id)
        except CosmosResourceNotFoundError:
            logger.debug("Document not found: %s", item_id)
            return None
        except CosmosHttpResponseError as e:
            raise StoreUnavailableError(f"Failed to read {item_id}: {e}") from e

    async def _query(
        self,
        container,
        query: str,
        parameters: list[dict],
        max_items: int | None = None,
    ) -> list[dict]:
        items: list[dict] = []
        try:
            async for item in container.query_items(
                query=query,
                parameters=parameters or None,
            ):
                items.append(item)
                if max_items is not None and len(items) >= max_items:
                    break
        except CosmosHttpResponseError as e:
            raise StoreUnavailableError(f"Query failed: {e}") from e
        return items

    async def _conditional_update(
        self,
        container,
        model_cls: type[ModelT],
        item_id: str,
        updates: dict[str, Any],
        expected: frozenset[str] | None,
        assignee: Any,
    ) -> ModelT | None:
        try:
            return await self._replace_if_unchanged(
                container, model_cls, item_id, updates, expected, assignee
            )
        except RetryError as e:
            logger.warning(
                "Gave up updating %s after %d etag conflicts", item_id, MAX_CAS_ATTEMPTS
            )
            raise StoreUnavailableError(
                f"Update of {item_id} kept conflicting with concurrent writers"
            ) from e

    @retry(
        retry=retry_if_exception_type(_EtagConflict),
        stop=stop_after_attempt(MAX_CAS_ATTEMPTS),
        wait=wait_exponential_jitter(initial=MIN_CAS_WAIT_SECONDS, max=MAX_CAS_WAIT_SECONDS),
    )
    async def _replace_if_unchanged(
        self,
        container,
        model_cls: type[ModelT],
        item_id: str,
        updates: dict[str, Any],
        expected: frozenset[str] | None,
        assignee: Any,
    ) -> ModelT | None:
        """Read, check preconditions, and replace with an etag precondition.

        Raises ``_EtagConflict`` (retried) when another writer got in between.
        """
        data = await self._read(container, item_id)
        if data is None:
            return None
        reason = _mismatch(data, expected, assignee)
        if reason:
            logger.info("Conditional update of %s skipped: %s", item_id, reason)
            return None

        doc = _apply(model_cls, data, updates)
        try:
            result = await container.replace_item(
                item=item_id,
                body=doc.to_cosmos(),
                etag=data["_etag"],
                match_condition=MatchConditions.IfNotModified,
            )
        except CosmosAccessConditionFailedError as e:
            logger.debug("Etag conflict on %s, re-reading", item_id)
            raise _EtagConflict(item_id) from e
        except CosmosHttpResponseError as e:
            raise StoreUnavailableError(f"Failed to update {item_id}: {e}") from e
        return model_cls.model_validate(result)
