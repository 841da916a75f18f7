from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request

from ambulink.core.audit import log_event
from ambulink.core.runtime import Runtime, get_runtime
from ambulink.core.supply import bed_occupancy_frame
from ambulink.models.schemas import (
    CandidateOut,
    FacilityOut,
    OccupancyRow,
    RecommendIn,
    RecommendResult,
    ReservationOut,
    ReserveIn,
)

router = APIRouter(prefix="/facilities", tags=["facilities"])


@router.get("", response_model=List[FacilityOut])
def list_facilities(
    specialty: Optional[str] = Query(None, description="Only facilities offering this specialty, e.g. cardiac"),
    emergency_only: bool = Query(False, description="Only facilities accepting emergencies"),
    runtime: Runtime = Depends(get_runtime),
):
    facilities = runtime.directory.all()
    if specialty:
        facilities = [f for f in facilities if specialty.lower() in f.specialties]
    if emergency_only:
        facilities = [f for f in facilities if f.accepts_emergencies]
    return [FacilityOut.from_domain(f) for f in facilities]


@router.get("/occupancy", response_model=List[OccupancyRow])
def occupancy(runtime: Runtime = Depends(get_runtime)):
    df = bed_occupancy_frame(runtime.directory.all())
    return df.to_dict(orient="records")


@router.get("/{facility_id}", response_model=FacilityOut)
def get_facility(facility_id: str, runtime: Runtime = Depends(get_runtime)):
    return FacilityOut.from_domain(runtime.directory.get(facility_id))


@router.post("/recommend", response_model=RecommendResult)
def recommend_facilities(body: RecommendIn, request: Request, runtime: Runtime = Depends(get_runtime)):
    """
    Rank facilities for one emergency. Read-only: nothing is reserved.
    """
    candidates = runtime.matcher.recommend(body.location.to_domain(), body.need, body.priority, body.bed_type)
    requirements = runtime.matcher.requirements(body.need, body.priority, body.bed_type)
    top = candidates[: body.limit]

    log_event(
        "facility_recommendation",
        {
            "need": body.need,
            "priority": body.priority,
            "top": top[0].entity_id if top else None,
            "count": len(candidates),
        },
        run_id=getattr(request.state, "request_id", None),
    )
    return RecommendResult(
        count=len(top),
        candidates=[CandidateOut.from_domain(c) for c in top],
        **requirements,
    )


@router.post("/{facility_id}/reservations", response_model=ReservationOut, status_code=201)
def reserve_bed(facility_id: str, body: ReserveIn, runtime: Runtime = Depends(get_runtime)):
    reservation = runtime.reservations.reserve(facility_id, body.bed_type, body.request_id, body.eta_minutes)
    return ReservationOut.from_domain(reservation)
