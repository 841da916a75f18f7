from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ambulink.core.domain import Coordinate
from ambulink.core.runtime import Runtime, get_runtime
from ambulink.core.validate import validate_coordinate
from ambulink.models.schemas import CandidateOut, CoordinateIn, ResourceOut

router = APIRouter(prefix="/resources", tags=["resources"])


@router.get("/nearby", response_model=List[CandidateOut])
def nearby_resources(
    lat: float = Query(...),
    lon: float = Query(...),
    radius_km: Optional[float] = Query(None, gt=0),
    runtime: Runtime = Depends(get_runtime),
):
    """Every resource within the radius, busy ones included, nearest first."""
    validate_coordinate(lat, lon, "location")
    radius = radius_km or runtime.settings.search_radius_km
    return [CandidateOut.from_domain(c) for c in runtime.fleet.nearby(Coordinate(lat, lon), radius)]


@router.get("/{resource_id}", response_model=ResourceOut)
def get_resource(resource_id: str, runtime: Runtime = Depends(get_runtime)):
    return ResourceOut.from_domain(runtime.fleet.get(resource_id))


@router.put("/{resource_id}/location", response_model=ResourceOut)
def update_location(resource_id: str, body: CoordinateIn, runtime: Runtime = Depends(get_runtime)):
    return ResourceOut.from_domain(runtime.fleet.update_location(resource_id, body.to_domain()))
