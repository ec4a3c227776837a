"""Fixtures for dispatch tests: in-memory store and model builders."""

from unittest.mock import patch

import pytest

from sosbridge.dispatch.models import (
    Location,
    Rescuer,
    RescuerLocation,
    RescuerStatus,
    Ticket,
    VehicleType,
    VictimInfo,
)
from sosbridge.dispatch.store import RescueStore

# Hai Lang, Quang Tri
BASE_LAT = 16.7655
BASE_LNG = 107.1235


@pytest.fixture(autouse=True)
def _in_memory_store(monkeypatch):
    """Force in-memory mode and reset shared state between tests."""
    monkeypatch.delenv("COSMOS_ENDPOINT", raising=False)
    monkeypatch.delenv("COSMOS_KEY", raising=False)
    RescueStore.clear_memory()
    with patch("sosbridge.dispatch.store.load_dotenv"):
        yield
    RescueStore.clear_memory()


@pytest.fixture
def make_ticket():
    """Factory for OPEN tickets at the base location."""

    def _make(**overrides) -> Ticket:
        phone = overrides.pop("phone", "0912345678")
        lat = overrides.pop("lat", BASE_LAT)
        lng = overrides.pop("lng", BASE_LNG)
        people = overrides.pop("people_count", 1)
        address = overrides.pop("address_text", "")
        return Ticket(
            location=Location(lat=lat, lng=lng, address_text=address),
            victim_info=VictimInfo(phone=phone, people_count=people),
            **overrides,
        )

    return _make


@pytest.fixture
def make_rescuer():
    """Factory for ONLINE boat rescuers at the base location."""

    def _make(**overrides) -> Rescuer:
        lat = overrides.pop("lat", BASE_LAT)
        lng = overrides.pop("lng", BASE_LNG)
        defaults = {
            "name": "Test Rescuer",
            "phone": "0905000000",
            "status": RescuerStatus.ONLINE,
            "location": RescuerLocation(lat=lat, lng=lng),
            "vehicle_type": VehicleType.BOAT,
            "vehicle_capacity": 4,
            "telegram_chat_id": 1000,
        }
        defaults.update(overrides)
        return Rescuer(**defaults)

    return _make
