from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ambulink.core.domain import ReservationState
from ambulink.core.errors import ValidationError
from ambulink.core.runtime import Runtime, get_runtime
from ambulink.models.schemas import CancelIn, ConfirmArrivalIn, ReservationOut

router = APIRouter(prefix="/reservations", tags=["reservations"])


def _parse_state(state: Optional[str]) -> Optional[ReservationState]:
    if not state:
        return None
    try:
        return ReservationState(state.upper())
    except ValueError:
        raise ValidationError(f"state must be one of {[s.value for s in ReservationState]}")


@router.get("", response_model=List[ReservationOut])
def list_reservations(
    facility_id: Optional[str] = Query(None),
    state: Optional[str] = Query(None, description="HELD, CONFIRMED, CANCELLED or EXPIRED"),
    runtime: Runtime = Depends(get_runtime),
):
    rows = runtime.reservations.list(facility_id=facility_id, state=_parse_state(state))
    return [ReservationOut.from_domain(r) for r in rows]


@router.get("/{reservation_id}", response_model=ReservationOut)
def get_reservation(reservation_id: str, runtime: Runtime = Depends(get_runtime)):
    return ReservationOut.from_domain(runtime.reservations.get(reservation_id))


@router.post("/{reservation_id}/confirm-arrival", response_model=ReservationOut)
def confirm_arrival(reservation_id: str, body: Optional[ConfirmArrivalIn] = None, runtime: Runtime = Depends(get_runtime)):
    body = body or ConfirmArrivalIn()
    reservation = runtime.reservations.confirm_arrival(reservation_id, body.confirmed_by, body.notes)
    return ReservationOut.from_domain(reservation)


@router.post("/{reservation_id}/cancel", response_model=ReservationOut)
def cancel_reservation(reservation_id: str, body: Optional[CancelIn] = None, runtime: Runtime = Depends(get_runtime)):
    body = body or CancelIn()
    return ReservationOut.from_domain(runtime.reservations.cancel(reservation_id, body.reason))
