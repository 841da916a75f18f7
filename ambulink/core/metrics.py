from typing import Any, Dict, Iterable, List

import numpy as np

from ambulink.core.distance import distance_between
from ambulink.core.domain import Facility, RequestState, Resource, TransportRequest


def _mean(values: List[float]) -> float:
    return float(np.mean(np.array(values, dtype=float))) if values else 0.0


def compute_metrics(
    requests: Iterable[TransportRequest],
    resources: Iterable[Resource],
    facilities: Iterable[Facility],
) -> Dict[str, Any]:
    """
    Operational KPIs over a snapshot of the registries.
    """
    requests = list(requests)
    resources = list(resources)
    facilities = list(facilities)
    by_id = {r.resource_id: r for r in resources}

    by_state = {state.value: 0 for state in RequestState}
    for r in requests:
        by_state[r.state.value] += 1

    total_requests = len(requests)
    completed = by_state[RequestState.COMPLETED.value]
    cancelled = by_state[RequestState.CANCELLED.value]

    # --- Latencies (seconds / minutes) ---
    acceptance_latency = [
        (r.accepted_at - r.created_at).total_seconds() for r in requests if r.accepted_at is not None
    ]
    ride_minutes = [
        (r.completed_at - r.started_at).total_seconds() / 60.0
        for r in requests
        if r.completed_at is not None and r.started_at is not None
    ]

    # --- Pickup distance of the resource currently on each open job ---
    pickup_distances = []
    for r in requests:
        resource = by_id.get(r.assigned_resource_id)
        if resource is not None and resource.current_request_id == r.request_id:
            pickup_distances.append(distance_between(resource.location, r.pickup))

    fares = np.array([r.fare_paid for r in requests if r.fare_paid is not None], dtype=float)
    total_fare = float(np.sum(fares)) if fares.size else 0.0

    busy = sum(1 for r in resources if not r.available)
    fleet_utilisation = float(busy / len(resources)) if resources else 0.0

    occ_ratios = [
        pool.occupied / pool.total
        for f in facilities
        for pool in f.beds.values()
        if pool.total > 0
    ]
    if occ_ratios:
        occ_arr = np.array(occ_ratios, dtype=float)
        occ_mean = float(np.mean(occ_arr))
        occ_min = float(np.min(occ_arr))
        occ_max = float(np.max(occ_arr))
    else:
        occ_mean = occ_min = occ_max = 0.0

    closed = completed + cancelled
    completion_ratio = float(completed / closed) if closed else 0.0

    return {
        "total_requests": total_requests,
        "requests_by_state": by_state,
        "completion_ratio": completion_ratio,
        "avg_acceptance_seconds": _mean(acceptance_latency),
        "avg_ride_minutes": _mean(ride_minutes),
        "avg_pickup_distance_km": _mean(pickup_distances),
        "total_fare_collected": total_fare,
        "fleet_size": len(resources),
        "fleet_busy": busy,
        "fleet_utilisation": fleet_utilisation,
        "occ_mean": occ_mean,
        "occ_min": occ_min,
        "occ_max": occ_max,
    }
