"""Rescuer scoring and candidate selection.

Eligible rescuers (ONLINE or IDLE, within the search radius) are ranked by an
additive score; see ``ScoringWeights`` for the tunable parameters:

    distance   = max(0, distance_max - km * distance_per_km)
    vehicle    = vehicle_scores[vehicle_type] (0 if not listed)
    capacity   = capacity_bonus if capacity >= people_count else 0
    rating     = rating * rating_multiplier
    experience = min(completed_missions, experience_cap)

Ties on total score are broken by distance, then by store order.
"""

import logging

from sosbridge.core.config import DispatchConfig, ScoringWeights, get_dispatch_config
from sosbridge.dispatch.models import Rescuer, ScoreBreakdown, ScoredRescuer, Ticket
from sosbridge.dispatch.store import RescueStore

logger = logging.getLogger(__name__)


def score_rescuer(
    ticket: Ticket,
    rescuer: Rescuer,
    distance_km: float,
    weights: ScoringWeights | None = None,
) -> ScoreBreakdown:
    """Score one rescuer for one ticket."""
    weights = weights or ScoringWeights()
    return ScoreBreakdown(
        distance=max(0.0, weights.distance_max - distance_km * weights.distance_per_km),
        vehicle=weights.vehicle_scores.get(rescuer.vehicle_type.value, 0.0),
        capacity=(
            weights.capacity_bonus
            if rescuer.vehicle_capacity >= ticket.victim_info.people_count
            else 0.0
        ),
        rating=rescuer.rating * weights.rating_multiplier,
        experience=float(min(rescuer.completed_missions, weights.experience_cap)),
    )


def rank_candidates(
    ticket: Ticket,
    candidates: list[tuple[Rescuer, float]],
    weights: ScoringWeights | None = None,
) -> list[ScoredRescuer]:
    """Score and sort candidates, best first.

    Args:
        ticket: Ticket being dispatched
        candidates: (rescuer, distance_km) pairs in store order
        weights: Scoring weights (defaults to ``ScoringWeights()``)

    Returns:
        Scored rescuers sorted by total desc, distance asc, then input order
    """
    scored = [
        (
            index,
            ScoredRescuer(
                rescuer=rescuer,
                distance_km=distance,
                breakdown=score_rescuer(ticket, rescuer, distance, weights),
            ),
        )
        for index, (rescuer, distance) in enumerate(candidates)
    ]
    scored.sort(key=lambda item: (-item[1].score, item[1].distance_km, item[0]))
    return [s for _, s in scored]


async def select_candidates(
    store: RescueStore,
    ticket: Ticket,
    radius_km: float,
    *,
    weights: ScoringWeights | None = None,
    limit: int | None = None,
) -> list[ScoredRescuer]:
    """Find and rank eligible rescuers around a ticket.

    An empty list is a normal outcome, not an error.

    Args:
        store: Open RescueStore
        ticket: Ticket being dispatched
        radius_km: Search radius in kilometers
        weights: Scoring weights
        limit: Keep only the top N

    Returns:
        Ranked candidates, best first
    """
    candidates = await store.find_available_rescuers_in_radius(
        ticket.location.lat, ticket.location.lng, radius_km
    )
    if not candidates:
        logger.info("No available rescuers within %.1f km of ticket %s", radius_km, ticket.id)
        return []

    ranked = rank_candidates(ticket, candidates, weights)
    if limit is not None:
        ranked = ranked[:limit]

    logger.info(
        "Ranked %d rescuers for ticket %s: %s",
        len(ranked),
        ticket.id,
        ", ".join(f"{s.rescuer.name} ({s.distance_km:.2f} km, {s.score:.0f})" for s in ranked),
    )
    return ranked


async def find_best_rescuer(
    store: RescueStore,
    ticket: Ticket,
    *,
    radius_km: float | None = None,
    config: DispatchConfig | None = None,
) -> ScoredRescuer | None:
    """Return the single best-matching rescuer (default radius 5 km), if any."""
    config = config or get_dispatch_config()
    ranked = await select_candidates(
        store,
        ticket,
        radius_km if radius_km is not None else config.match_radius_km,
        weights=config.scoring,
        limit=1,
    )
    return ranked[0] if ranked else None
