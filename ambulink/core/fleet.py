import threading
from typing import Dict, Iterable, List, Optional

from ambulink.core.distance import DEFAULT_SPEED_KMH, distance_between, eta_minutes, round_half_up
from ambulink.core.domain import CapabilityTier, Coordinate, Resource, ScoredCandidate
from ambulink.core.errors import ConflictError, NotFoundError
from ambulink.core.validate import validate_coordinate


class Fleet:
    """
    System of record for resources (vehicle + driver).

    The availability flag is only flipped by claim/release. Callers that need
    the flip to be atomic with a request transition hold the request lock
    first and then call in here; the fleet never calls back out, so the lock
    order request -> fleet cannot invert.
    """

    def __init__(self, resources: Iterable[Resource] = (), speed_kmh: float = DEFAULT_SPEED_KMH):
        self._lock = threading.Lock()
        self._resources: Dict[str, Resource] = {}
        self.speed_kmh = speed_kmh
        for resource in resources:
            self.add(resource)

    def add(self, resource: Resource) -> None:
        validate_coordinate(resource.location.lat, resource.location.lon, "resource location")
        with self._lock:
            self._resources[resource.resource_id] = resource.snapshot()

    def get(self, resource_id: str) -> Resource:
        with self._lock:
            return self._get_locked(resource_id).snapshot()

    def all(self) -> List[Resource]:
        with self._lock:
            return [r.snapshot() for r in self._resources.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    def discover(self, location: Coordinate, min_tier: CapabilityTier, radius_km: float) -> List[ScoredCandidate]:
        """
        Available resources able to handle `min_tier` within `radius_km`,
        nearest first. Read-only.
        """
        with self._lock:
            pool = [
                r.snapshot()
                for r in self._resources.values()
                if r.available and r.current_request_id is None and r.capability.covers(min_tier)
            ]
        return self._rank(pool, location, radius_km)

    def nearby(self, location: Coordinate, radius_km: float) -> List[ScoredCandidate]:
        with self._lock:
            pool = [r.snapshot() for r in self._resources.values()]
        return self._rank(pool, location, radius_km)

    def claim(self, resource_id: str, request_id: str) -> Resource:
        with self._lock:
            resource = self._get_locked(resource_id)
            if not resource.available or resource.current_request_id is not None:
                raise ConflictError(
                    f"resource {resource_id} is busy with {resource.current_request_id}",
                    reason="RESOURCE_BUSY",
                )
            resource.available = False
            resource.current_request_id = request_id
            return resource.snapshot()

    def release(self, resource_id: str, request_id: str, fare: Optional[float] = None) -> bool:
        """
        Hand the resource back after `request_id` ends. A release for a request
        the resource is not (or no longer) serving is ignored and returns False.
        """
        with self._lock:
            resource = self._get_locked(resource_id)
            if resource.current_request_id != request_id:
                return False
            resource.current_request_id = None
            resource.available = True
            if fare is not None:
                resource.completed_trips += 1
                resource.earnings += float(fare)
            return True

    def update_location(self, resource_id: str, location: Coordinate) -> Resource:
        validate_coordinate(location.lat, location.lon, "location")
        with self._lock:
            resource = self._get_locked(resource_id)
            resource.location = location
            return resource.snapshot()

    # -----------------------------------------------------

    def _get_locked(self, resource_id: str) -> Resource:
        resource = self._resources.get(resource_id)
        if resource is None:
            raise NotFoundError(f"resource {resource_id} not found")
        return resource

    def _rank(self, pool: List[Resource], location: Coordinate, radius_km: float) -> List[ScoredCandidate]:
        in_range = []
        for resource in pool:
            distance_km = distance_between(location, resource.location)
            if distance_km <= radius_km:
                in_range.append((distance_km, resource))
        in_range.sort(key=lambda pair: pair[0])

        candidates: List[ScoredCandidate] = []
        for position, (distance_km, resource) in enumerate(in_range):
            proximity = max(0.0, 1.0 - distance_km / radius_km) if radius_km > 0 else 0.0
            candidates.append(
                ScoredCandidate(
                    kind="resource",
                    entity_id=resource.resource_id,
                    name=resource.driver_name,
                    distance_km=round(distance_km, 2),
                    eta_minutes=eta_minutes(distance_km, self.speed_kmh),
                    score=round_half_up(proximity * 100),
                    recommended=position == 0,
                    match_reasons={
                        "capability": resource.capability.value,
                        "rating": resource.rating,
                        "available": resource.available,
                    },
                )
            )
        return candidates
