from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import Engine

from ambulink.core.config import DispatchSettings, load_config
from ambulink.core.data_access import load_registry
from ambulink.core.dispatch import DispatchCoordinator
from ambulink.core.domain import utcnow
from ambulink.core.facilities import FacilityDirectory
from ambulink.core.fleet import Fleet
from ambulink.core.load import facilities_from_df, resources_from_df
from ambulink.core.logger import get_logger
from ambulink.core.matching import FacilityMatcher
from ambulink.core.ports import NotificationPort, OutboxNotifier, PaymentPort, RetryingNotifier, SimulatedPaymentGateway
from ambulink.core.reservations import ReservationBook
from ambulink.core.scheduler import PeriodicSweeper
from ambulink.db import engine

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Every long-lived component of the service, wired once per process."""
    settings: DispatchSettings
    directory: FacilityDirectory
    matcher: FacilityMatcher
    reservations: ReservationBook
    fleet: Fleet
    notifier: NotificationPort
    payments: PaymentPort
    coordinator: DispatchCoordinator
    sweeper: PeriodicSweeper

    def shutdown(self) -> None:
        self.sweeper.stop()
        self.coordinator.shutdown()


def build_runtime(
    config: Optional[Dict[str, Any]] = None,
    db_engine: Optional[Engine] = None,
    data_dir: Optional[str] = None,
    clock: Callable[[], datetime] = utcnow,
    scheduler: Any = None,
    notifier: Optional[NotificationPort] = None,
    payments: Optional[PaymentPort] = None,
) -> Runtime:
    config = config if config is not None else load_config()
    settings = DispatchSettings.from_config(config)

    facilities_df, resources_df = load_registry(db_engine=db_engine, data_dir=data_dir)
    directory = FacilityDirectory(facilities_from_df(facilities_df))
    fleet = Fleet(resources_from_df(resources_df), speed_kmh=settings.average_speed_kmh)
    reservations = ReservationBook(directory, settings=settings, clock=clock)
    notifier = notifier or RetryingNotifier(OutboxNotifier())
    payments = payments or SimulatedPaymentGateway()

    coordinator = DispatchCoordinator(
        fleet,
        notifier,
        payments,
        settings=settings,
        clock=clock,
        scheduler=scheduler,
    )
    sweeper = PeriodicSweeper(
        settings.sweep_interval_seconds,
        [reservations.expire_stale, coordinator.sweep],
    )

    logger.info("runtime ready: %d facilities, %d resources", len(directory), len(fleet))
    return Runtime(
        settings=settings,
        directory=directory,
        matcher=FacilityMatcher(directory, weights=settings.weights, speed_kmh=settings.average_speed_kmh),
        reservations=reservations,
        fleet=fleet,
        notifier=notifier,
        payments=payments,
        coordinator=coordinator,
        sweeper=sweeper,
    )


@lru_cache()
def get_runtime() -> Runtime:
    """FastAPI dependency; tests swap it out through app.dependency_overrides."""
    return build_runtime(db_engine=engine)
