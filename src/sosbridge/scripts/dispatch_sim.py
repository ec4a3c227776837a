"""Simulate a rescue request end to end against the configured store.

Seeds a few demo rescuers around Quang Tri, submits a request, fans it out,
and then has every notified rescuer press "accept" at the same time to show
that exactly one of them wins the mission.
"""

import argparse
import asyncio
import logging
import sys

from sosbridge.core.config import load_dispatch_config
from sosbridge.dispatch.dispatcher import Dispatcher
from sosbridge.dispatch.intake import submit_request
from sosbridge.dispatch.models import Rescuer, RescuerLocation, RescuerStatus, VehicleType
from sosbridge.dispatch.notify import LoggingChannel
from sosbridge.dispatch.store import RescueStore

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

DEMO_RESCUERS = [
    {
        "name": "Đội cứu hộ Hải Lăng",
        "phone": "0905111222",
        "lat": 16.7650,
        "lng": 107.1230,
        "vehicle_type": VehicleType.CANO,
        "vehicle_capacity": 8,
        "completed_missions": 12,
        "telegram_chat_id": 100001,
    },
    {
        "name": "Anh Tuấn - Thuyền",
        "phone": "0905333444",
        "lat": 16.7700,
        "lng": 107.1280,
        "vehicle_type": VehicleType.BOAT,
        "vehicle_capacity": 5,
        "completed_missions": 4,
        "telegram_chat_id": 100002,
    },
    {
        "name": "Chị Lan - Kayak",
        "phone": "0905555666",
        "lat": 16.7600,
        "lng": 107.1180,
        "vehicle_type": VehicleType.KAYAK,
        "vehicle_capacity": 2,
        "completed_missions": 1,
        "telegram_chat_id": 100003,
    },
]


async def seed_rescuers(store: RescueStore) -> list[Rescuer]:
    """Add the demo rescuers, all ONLINE."""
    rescuers = []
    for demo in DEMO_RESCUERS:
        rescuer = Rescuer(
            name=demo["name"],
            phone=demo["phone"],
            status=RescuerStatus.ONLINE,
            location=RescuerLocation(lat=demo["lat"], lng=demo["lng"]),
            vehicle_type=demo["vehicle_type"],
            vehicle_capacity=demo["vehicle_capacity"],
            completed_missions=demo["completed_missions"],
            telegram_chat_id=demo["telegram_chat_id"],
        )
        rescuers.append(await store.add_rescuer(rescuer))
    logger.info("Seeded %d demo rescuers", len(rescuers))
    return rescuers


async def run_simulation(
    phone: str,
    lat: float,
    lng: float,
    people: int,
    priority: int,
    seed: bool = True,
) -> int:
    """Run one request through dedup, fan-out, and the accept race.

    Returns:
        Exit code (0 for success)
    """
    try:
        config = load_dispatch_config()
    except ValueError as e:
        logger.error("Invalid dispatch config: %s", e)
        return 1

    async with RescueStore() as store:
        if seed:
            await seed_rescuers(store)

        dispatcher = Dispatcher(store, LoggingChannel(), config)

        logger.info("=" * 50)
        logger.info("Submitting request from %s at (%.4f, %.4f)", phone, lat, lng)
        logger.info("=" * 50)

        intake = await submit_request(
            store,
            dispatcher,
            phone=phone,
            lat=lat,
            lng=lng,
            people_count=people,
            priority=priority,
            raw_message="Simulated request",
        )
        logger.info("Intake: %s (%s)", intake.action, intake.message)
        if intake.action != "create":
            return 0
        if intake.dispatch is None:
            logger.error("Dispatch failed for ticket %s", intake.ticket_id)
            return 1

        notified = [r for r in intake.dispatch.rescuers if r.notified]
        for r in notified:
            logger.info("  notified %s (%.2f km, score %.0f)", r.name, r.distance_km, r.score)
        if not notified:
            logger.info("Nobody was notified, ticket %s stays open", intake.ticket_id)
            return 0

        logger.info("")
        logger.info("All %d rescuers accept at once...", len(notified))
        results = await asyncio.gather(
            *(dispatcher.accept_mission(intake.ticket_id, r.rescuer_id) for r in notified)
        )
        for r, result in zip(notified, results, strict=True):
            outcome = "WON" if result.success else "rejected"
            logger.info("  %s: %s (%s)", r.name, outcome, result.message)

        winners = sum(1 for result in results if result.success)
        stats = await store.get_stats()
        logger.info("")
        logger.info("Winners: %d", winners)
        logger.info("Tickets: %s", stats["tickets"])
        logger.info("Rescuers: %s", stats["rescuers"])

    return 0 if winners == 1 else 1


def main():
    """CLI entry point for sos-dispatch-sim."""
    parser = argparse.ArgumentParser(description="Simulate dispatching a flood rescue request")
    parser.add_argument("--phone", default="0912.345.678", help="Reporter phone number")
    parser.add_argument("--lat", type=float, default=16.7655, help="Victim latitude")
    parser.add_argument("--lng", type=float, default=107.1235, help="Victim longitude")
    parser.add_argument("--people", type=int, default=4, help="Number of people to rescue")
    parser.add_argument("--priority", type=int, default=4, help="Priority 1-5")
    parser.add_argument(
        "--no-seed",
        action="store_true",
        help="Use rescuers already in the store instead of seeding demo data",
    )

    args = parser.parse_args()
    exit_code = asyncio.run(
        run_simulation(
            phone=args.phone,
            lat=args.lat,
            lng=args.lng,
            people=args.people,
            priority=args.priority,
            seed=not args.no_seed,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
