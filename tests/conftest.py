from __future__ import annotations

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone

# Must be set before anything under ambulink is imported.
os.environ.setdefault("AUDIT_LOG_DIR", tempfile.mkdtemp(prefix="ambulink-audit-"))
os.environ["DATABASE_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from ambulink.core.config import DispatchSettings
from ambulink.core.dispatch import DispatchCoordinator
from ambulink.core.domain import BedPool, CapabilityTier, Coordinate, Facility, Intake, Requester, Resource
from ambulink.core.facilities import FacilityDirectory
from ambulink.core.fleet import Fleet
from ambulink.core.ports import NotificationPort, OutboxNotifier, PaymentPort
from ambulink.core.reservations import ReservationBook

PICKUP = Coordinate(28.6139, 77.2090)


class FakeClock:
    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ManualScheduler:
    """Collects delayed calls; tests fire them explicitly."""

    def __init__(self):
        self.pending = []

    def call_later(self, delay_seconds, fn, *args):
        self.pending.append((delay_seconds, fn, args))

    def run_pending(self) -> int:
        batch, self.pending = self.pending, []
        for _, fn, args in batch:
            fn(*args)
        return len(batch)

    def shutdown(self):
        self.pending = []


class FailingNotifier(NotificationPort):
    def __init__(self):
        self.calls = 0

    def notify(self, party, template, variables):
        self.calls += 1
        raise ConnectionError("sms gateway down")


class StubPayments(PaymentPort):
    def __init__(self, ok: bool = True):
        self.ok = ok
        self._lock = threading.Lock()
        self.calls = []

    def confirm_settlement(self, request_id, amount):
        with self._lock:
            self.calls.append((request_id, amount))
        return self.ok


def make_facility(facility_id, lat, lon, specialties=("general",), equipment=(), icu=(10, 5),
                  emergency=(10, 5), general=(20, 10), rating=4.0, accepts_emergencies=True, name=None):
    return Facility(
        facility_id=facility_id,
        name=name or facility_id,
        location=Coordinate(lat, lon),
        specialties=tuple(specialties),
        equipment=tuple(equipment),
        beds={
            "general": BedPool(*general),
            "icu": BedPool(*icu),
            "emergency": BedPool(*emergency),
        },
        rating=rating,
        accepts_emergencies=accepts_emergencies,
    )


def make_resource(resource_id, lat, lon, capability, rating=4.5):
    return Resource(
        resource_id=resource_id,
        driver_name=f"Driver {resource_id}",
        location=Coordinate(lat, lon),
        capability=CapabilityTier(capability),
        rating=rating,
        phone="+91-90000-00000",
        vehicle_number=f"DL-{resource_id}",
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def notifier():
    return OutboxNotifier()


@pytest.fixture
def payments():
    return StubPayments()


@pytest.fixture
def settings():
    return DispatchSettings(notify_timeout_seconds=1.0, settlement_timeout_seconds=1.0)


@pytest.fixture
def directory():
    return FacilityDirectory([
        make_facility("fac-cardiac", 28.6200, 77.2100, specialties=("cardiac",),
                      equipment=("cath_lab", "icu", "ventilators"), icu=(10, 5)),
        make_facility("fac-general", 28.6000, 77.2000, specialties=("general", "trauma"),
                      equipment=("icu", "ct_scan"), icu=(8, 0)),
    ])


@pytest.fixture
def reservations(directory, settings, clock):
    return ReservationBook(directory, settings=settings, clock=clock)


@pytest.fixture
def fleet():
    return Fleet([
        make_resource("amb-basic", 28.6139, 77.2090, "BASIC"),
        make_resource("amb-adv", 28.6200, 77.2150, "ADVANCED"),
        make_resource("amb-cc", 28.6300, 77.2200, "CRITICAL_CARE"),
        make_resource("amb-far", 28.8000, 77.5000, "ADVANCED"),
    ])


@pytest.fixture
def coordinator(fleet, notifier, payments, settings, clock, scheduler):
    codes = iter(["4821", "7305", "1190", "6642"])
    coord = DispatchCoordinator(
        fleet,
        notifier,
        payments,
        settings=settings,
        clock=clock,
        scheduler=scheduler,
        code_factory=lambda: next(codes),
    )
    yield coord
    coord.shutdown()


@pytest.fixture
def requester():
    return Requester(name="Asha Rao", contact="+91-98111-22233", conditions=("diabetes",))


@pytest.fixture
def critical_intake():
    return Intake(category="CARDIAC", conscious=False, symptoms="Crushing chest pain")


@pytest.fixture
def low_intake():
    return Intake(category="GENERAL", symptoms="needs a ride to a checkup")
