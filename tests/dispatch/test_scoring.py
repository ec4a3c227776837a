"""Tests for rescuer scoring and candidate selection."""

import pytest

from sosbridge.core.config import DispatchConfig, ScoringWeights
from sosbridge.dispatch.models import RescuerStatus, VehicleType
from sosbridge.dispatch.scoring import (
    find_best_rescuer,
    rank_candidates,
    score_rescuer,
    select_candidates,
)
from sosbridge.dispatch.store import RescueStore


class TestScoreRescuer:
    def test_all_factors(self, make_ticket, make_rescuer):
        ticket = make_ticket(people_count=4)
        rescuer = make_rescuer(
            vehicle_type=VehicleType.CANO,
            vehicle_capacity=8,
            rating=5.0,
            completed_missions=12,
        )

        breakdown = score_rescuer(ticket, rescuer, 1.0)

        assert breakdown.distance == 80
        assert breakdown.vehicle == 30
        assert breakdown.capacity == 20
        assert breakdown.rating == 25
        assert breakdown.experience == 12
        assert breakdown.total == 167

    def test_distance_floor_is_zero(self, make_ticket, make_rescuer):
        breakdown = score_rescuer(make_ticket(), make_rescuer(), 7.5)
        assert breakdown.distance == 0

    def test_unlisted_vehicle_scores_zero(self, make_ticket, make_rescuer):
        breakdown = score_rescuer(make_ticket(), make_rescuer(vehicle_type=VehicleType.KAYAK), 0)
        assert breakdown.vehicle == 0

    def test_capacity_bonus_only_when_everyone_fits(self, make_ticket, make_rescuer):
        ticket = make_ticket(people_count=5)
        assert score_rescuer(ticket, make_rescuer(vehicle_capacity=5), 0).capacity == 20
        assert score_rescuer(ticket, make_rescuer(vehicle_capacity=4), 0).capacity == 0

    def test_experience_is_capped(self, make_ticket, make_rescuer):
        breakdown = score_rescuer(make_ticket(), make_rescuer(completed_missions=57), 0)
        assert breakdown.experience == 20

    def test_custom_weights(self, make_ticket, make_rescuer):
        weights = ScoringWeights(vehicle_scores={"kayak": 50.0})
        rescuer = make_rescuer(vehicle_type=VehicleType.KAYAK)
        assert score_rescuer(make_ticket(), rescuer, 0, weights).vehicle == 50


class TestRankCandidates:
    def test_higher_score_first(self, make_ticket, make_rescuer):
        boat = make_rescuer(name="boat", vehicle_type=VehicleType.BOAT)
        cano = make_rescuer(name="cano", vehicle_type=VehicleType.CANO)

        ranked = rank_candidates(make_ticket(), [(boat, 1.0), (cano, 1.0)])

        assert [s.rescuer.name for s in ranked] == ["cano", "boat"]

    def test_equal_score_closer_first(self, make_ticket, make_rescuer):
        # 80 + 4 experience vs 84 + 0 experience
        veteran = make_rescuer(name="veteran", completed_missions=4)
        rookie = make_rescuer(name="rookie", completed_missions=0)

        ranked = rank_candidates(make_ticket(), [(veteran, 1.0), (rookie, 0.8)])

        assert ranked[0].score == pytest.approx(ranked[1].score)
        assert [s.rescuer.name for s in ranked] == ["rookie", "veteran"]

    def test_full_tie_keeps_input_order(self, make_ticket, make_rescuer):
        a = make_rescuer(name="a")
        b = make_rescuer(name="b")

        ranked = rank_candidates(make_ticket(), [(a, 1.0), (b, 1.0)])

        assert [s.rescuer.name for s in ranked] == ["a", "b"]


class TestSelectCandidates:
    async def test_only_available_within_radius(self, make_ticket, make_rescuer):
        ticket = make_ticket()
        async with RescueStore() as store:
            await store.add_rescuer(make_rescuer(name="online"))
            await store.add_rescuer(make_rescuer(name="idle", status=RescuerStatus.IDLE))
            await store.add_rescuer(make_rescuer(name="offline", status=RescuerStatus.OFFLINE))
            await store.add_rescuer(make_rescuer(name="busy", status=RescuerStatus.BUSY))
            await store.add_rescuer(make_rescuer(name="far", lat=16.90))

            ranked = await select_candidates(store, ticket, 10.0)

        assert {s.rescuer.name for s in ranked} == {"online", "idle"}

    async def test_empty_is_not_an_error(self, make_ticket):
        async with RescueStore() as store:
            assert await select_candidates(store, make_ticket(), 10.0) == []

    async def test_limit(self, make_ticket, make_rescuer):
        async with RescueStore() as store:
            for i in range(4):
                await store.add_rescuer(make_rescuer(name=f"r{i}"))
            ranked = await select_candidates(store, make_ticket(), 10.0, limit=2)

        assert len(ranked) == 2


class TestFindBestRescuer:
    async def test_prefers_motor_boat_nearby(self, make_ticket, make_rescuer):
        ticket = make_ticket(people_count=4)
        async with RescueStore() as store:
            await store.add_rescuer(
                make_rescuer(
                    name="cano",
                    lat=16.7650,
                    lng=107.1230,
                    vehicle_type=VehicleType.CANO,
                    vehicle_capacity=8,
                )
            )
            await store.add_rescuer(
                make_rescuer(
                    name="boat",
                    lat=16.7700,
                    lng=107.1280,
                    vehicle_type=VehicleType.BOAT,
                    vehicle_capacity=5,
                )
            )
            await store.add_rescuer(
                make_rescuer(
                    name="kayak",
                    lat=16.7600,
                    lng=107.1180,
                    vehicle_type=VehicleType.KAYAK,
                    vehicle_capacity=2,
                )
            )

            best = await find_best_rescuer(store, ticket, config=DispatchConfig())

        assert best.rescuer.name == "cano"

    async def test_uses_match_radius(self, make_ticket, make_rescuer):
        async with RescueStore() as store:
            # About 7.8 km north: inside the broadcast radius, outside best-match
            await store.add_rescuer(make_rescuer(lat=16.8355))
            best = await find_best_rescuer(store, make_ticket(), config=DispatchConfig())
            wider = await find_best_rescuer(
                store, make_ticket(), radius_km=10.0, config=DispatchConfig()
            )

        assert best is None
        assert wider is not None
