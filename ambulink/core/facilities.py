import threading
from typing import Dict, Iterable, List

from ambulink.core.domain import BED_TYPES, Facility
from ambulink.core.errors import ConflictError, NotFoundError, ValidationError


class FacilityDirectory:
    """
    System of record for facilities and their bed pools.

    Bed counters are changed only through take_bed/return_bed, which the
    ReservationBook calls while holding its own lock. Readers always get
    deep copies so scoring can never mutate live state.
    """

    def __init__(self, facilities: Iterable[Facility] = ()):
        self._lock = threading.Lock()
        self._facilities: Dict[str, Facility] = {}
        for facility in facilities:
            self.add(facility)

    def add(self, facility: Facility) -> None:
        for bed_type, pool in facility.beds.items():
            if bed_type not in BED_TYPES:
                raise ValidationError(f"{facility.facility_id}: unknown bed type {bed_type!r}")
            if pool.total < 0 or not 0 <= pool.available <= pool.total:
                raise ValidationError(
                    f"{facility.facility_id}: {bed_type} beds must satisfy 0 <= available <= total"
                )
        with self._lock:
            self._facilities[facility.facility_id] = facility.snapshot()

    def get(self, facility_id: str) -> Facility:
        with self._lock:
            facility = self._facilities.get(facility_id)
            if facility is None:
                raise NotFoundError(f"facility {facility_id} not found")
            return facility.snapshot()

    def all(self) -> List[Facility]:
        with self._lock:
            return [f.snapshot() for f in self._facilities.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._facilities)

    def take_bed(self, facility_id: str, bed_type: str) -> int:
        """Decrement-with-guard. Returns the remaining available count."""
        with self._lock:
            facility = self._facilities.get(facility_id)
            if facility is None:
                raise NotFoundError(f"facility {facility_id} not found")
            pool = facility.beds.get(bed_type)
            if pool is None or pool.available <= 0:
                raise ConflictError(
                    f"no {bed_type} beds available at {facility_id}", reason="NO_BEDS"
                )
            pool.available -= 1
            return pool.available

    def return_bed(self, facility_id: str, bed_type: str) -> int:
        with self._lock:
            facility = self._facilities.get(facility_id)
            if facility is None:
                raise NotFoundError(f"facility {facility_id} not found")
            pool = facility.beds[bed_type]
            if pool.available >= pool.total:
                raise ConflictError(
                    f"{bed_type} pool at {facility_id} is already full", reason="POOL_FULL"
                )
            pool.available += 1
            return pool.available
