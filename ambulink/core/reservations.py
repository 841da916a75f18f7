import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ambulink.core.audit import log_event
from ambulink.core.config import DispatchSettings
from ambulink.core.domain import BED_TYPES, Reservation, ReservationState, utcnow
from ambulink.core.errors import ConflictError, ExpiredError, NotFoundError, ValidationError
from ambulink.core.facilities import FacilityDirectory
from ambulink.core.logger import get_logger

logger = get_logger(__name__)


class ReservationBook:
    """
    Bed holds with expiry.

    A HELD reservation owns exactly one bed from its facility's pool. Confirming
    arrival hands that bed to the admitted patient, so the pool stays
    decremented. Cancel and expiry give the bed back exactly once: every exit
    happens under self._lock after re-checking the state, so an explicit
    cancel racing the expiry sweep releases a single bed.

    Closed reservations are dropped once they have been closed for longer
    than `purge_after_minutes`.
    """

    def __init__(
        self,
        directory: FacilityDirectory,
        settings: Optional[DispatchSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.directory = directory
        self.settings = settings or DispatchSettings()
        self._clock = clock
        self._lock = threading.Lock()
        self._reservations: Dict[str, Reservation] = {}

    def reserve(self, facility_id: str, bed_type: str, request_id: str, eta_minutes: float) -> Reservation:
        bed_type = str(bed_type or "").lower()
        if bed_type not in BED_TYPES:
            raise ValidationError(f"bed_type must be one of {list(BED_TYPES)}")
        if not request_id:
            raise ValidationError("request_id is required")
        try:
            eta = float(eta_minutes)
        except (TypeError, ValueError):
            raise ValidationError("eta_minutes must be a number")
        if eta < 0:
            raise ValidationError("eta_minutes must be >= 0")

        with self._lock:
            remaining = self.directory.take_bed(facility_id, bed_type)
            now = self._clock()
            reservation = Reservation(
                reservation_id=f"RES-{uuid.uuid4().hex[:12]}",
                facility_id=facility_id,
                request_id=request_id,
                bed_type=bed_type,
                eta_minutes=eta,
                reserved_at=now,
                expires_at=now + timedelta(minutes=eta + self.settings.bed_hold_buffer_minutes),
            )
            self._reservations[reservation.reservation_id] = reservation
            snapshot = reservation.snapshot()

        log_event(
            "bed_reserved",
            {
                "reservation_id": snapshot.reservation_id,
                "facility_id": facility_id,
                "bed_type": bed_type,
                "eta_minutes": eta,
                "remaining": remaining,
            },
            request_id=request_id,
        )
        return snapshot

    def get(self, reservation_id: str) -> Reservation:
        with self._lock:
            return self._get_locked(reservation_id).snapshot()

    def list(self, facility_id: Optional[str] = None, state: Optional[ReservationState] = None) -> List[Reservation]:
        with self._lock:
            rows = [
                r.snapshot()
                for r in self._reservations.values()
                if (facility_id is None or r.facility_id == facility_id)
                and (state is None or r.state == state)
            ]
        rows.sort(key=lambda r: r.reserved_at, reverse=True)
        return rows

    def confirm_arrival(self, reservation_id: str, confirmed_by: Optional[str] = None, notes: Optional[str] = None) -> Reservation:
        with self._lock:
            reservation = self._get_locked(reservation_id)
            now = self._clock()
            if reservation.state == ReservationState.HELD and now >= reservation.expires_at:
                self._close_locked(reservation, ReservationState.EXPIRED, now)
                raise ExpiredError(f"reservation {reservation_id} expired at {reservation.expires_at.isoformat()}")
            if reservation.state != ReservationState.HELD:
                raise ConflictError(
                    f"cannot confirm reservation in state {reservation.state.value}",
                    reason="NOT_HELD",
                )
            reservation.confirmed_by = confirmed_by
            reservation.arrival_notes = notes
            reservation.confirmed_at = now
            self._close_locked(reservation, ReservationState.CONFIRMED, now)
            return reservation.snapshot()

    def cancel(self, reservation_id: str, reason: Optional[str] = None) -> Reservation:
        with self._lock:
            reservation = self._get_locked(reservation_id)
            if reservation.state != ReservationState.HELD:
                raise ConflictError(
                    f"reservation already {reservation.state.value.lower()}",
                    reason="NOT_HELD",
                )
            reservation.cancel_reason = reason or "not specified"
            self._close_locked(reservation, ReservationState.CANCELLED, self._clock())
            return reservation.snapshot()

    def expire_stale(self, now: Optional[datetime] = None) -> List[Reservation]:
        """
        Background sweep: every HELD reservation past its expiry goes to EXPIRED,
        and reservations closed longer than the purge horizon are forgotten.
        """
        now = now or self._clock()
        horizon = timedelta(minutes=self.settings.purge_after_minutes)
        expired: List[Reservation] = []
        with self._lock:
            for reservation in self._reservations.values():
                if reservation.state == ReservationState.HELD and now >= reservation.expires_at:
                    self._close_locked(reservation, ReservationState.EXPIRED, now)
                    expired.append(reservation.snapshot())
            purged = [
                reservation_id
                for reservation_id, r in self._reservations.items()
                if r.closed_at is not None and r.closed_at + horizon <= now
            ]
            for reservation_id in purged:
                del self._reservations[reservation_id]
        if expired:
            logger.info("expired %d stale bed reservations", len(expired))
        if purged:
            logger.info("purged %d closed bed reservations", len(purged))
        return expired

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._reservations.values() if r.state == ReservationState.HELD)

    # -----------------------------------------------------

    def _get_locked(self, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise NotFoundError(f"reservation {reservation_id} not found")
        return reservation

    def _close_locked(self, reservation: Reservation, new_state: ReservationState, now: datetime) -> None:
        # Only a HELD reservation still owns its bed; a confirmed one keeps it.
        if reservation.state != ReservationState.HELD:
            return
        if new_state != ReservationState.CONFIRMED:
            self.directory.return_bed(reservation.facility_id, reservation.bed_type)
        reservation.state = new_state
        reservation.closed_at = now
        log_event(
            f"reservation_{new_state.value.lower()}",
            {
                "reservation_id": reservation.reservation_id,
                "facility_id": reservation.facility_id,
                "bed_type": reservation.bed_type,
                "reason": reservation.cancel_reason,
            },
            request_id=reservation.request_id,
        )
