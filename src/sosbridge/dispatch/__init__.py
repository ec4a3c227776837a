"""Rescue dispatch: deduplication, rescuer matching, and mission assignment."""

import logging

from sosbridge.dispatch.dedup import check_duplicate, merge_ticket_info
from sosbridge.dispatch.dispatcher import Dispatcher
from sosbridge.dispatch.intake import create_ticket, submit_request
from sosbridge.dispatch.models import (
    AssignmentResult,
    AvailabilityResult,
    DedupResult,
    DispatchResult,
    ErrorCode,
    Rescuer,
    RescuerStatus,
    Ticket,
    TicketStatus,
    VehicleType,
)
from sosbridge.dispatch.notify import LoggingChannel, TelegramChannel
from sosbridge.dispatch.store import RescueStore, StoreUnavailableError

# Azure SDK emits HTTP-level logs at INFO
logging.getLogger("azure").setLevel(logging.WARNING)

__all__ = [
    "AssignmentResult",
    "AvailabilityResult",
    "DedupResult",
    "DispatchResult",
    "Dispatcher",
    "ErrorCode",
    "LoggingChannel",
    "RescueStore",
    "Rescuer",
    "RescuerStatus",
    "StoreUnavailableError",
    "TelegramChannel",
    "Ticket",
    "TicketStatus",
    "VehicleType",
    "check_duplicate",
    "create_ticket",
    "merge_ticket_info",
    "submit_request",
]
