import secrets
import uuid
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ambulink.core.audit import log_event
from ambulink.core.config import DispatchSettings
from ambulink.core.distance import distance_between
from ambulink.core.domain import (
    Coordinate,
    Intake,
    Requester,
    RequestState,
    ScoredCandidate,
    TransportRequest,
    utcnow,
)
from ambulink.core.errors import (
    ConflictError,
    ExpiredError,
    InvalidCodeError,
    NoCandidatesError,
    SettlementError,
    ValidationError,
)
from ambulink.core.fare import quote_fare
from ambulink.core.fleet import Fleet
from ambulink.core.logger import get_logger
from ambulink.core.ports import DeliveryStatus, NotificationPort, Party, PaymentPort, call_with_timeout
from ambulink.core.scheduler import TimerScheduler
from ambulink.core.state import RequestStore
from ambulink.core.triage import classify
from ambulink.core.validate import validate_coordinate, validate_requester

logger = get_logger(__name__)

NO_RESOURCES_REASON = "no_resources_available"
CODE_LENGTH = 4

# state -> states it may move to; anything else is a violation
TRANSITIONS = {
    RequestState.CREATED: {RequestState.BROADCASTING, RequestState.CANCELLED},
    RequestState.BROADCASTING: {RequestState.ACCEPTED, RequestState.CANCELLED},
    RequestState.ACCEPTED: {RequestState.CODE_ISSUED, RequestState.CANCELLED},
    RequestState.CODE_ISSUED: {RequestState.CODE_ISSUED, RequestState.IN_PROGRESS, RequestState.CANCELLED},
    RequestState.IN_PROGRESS: {RequestState.COMPLETED, RequestState.CANCELLED},
    RequestState.COMPLETED: set(),
    RequestState.CANCELLED: set(),
}


def generate_code() -> str:
    return str(secrets.randbelow(9000) + 1000)


class DispatchCoordinator:
    """
    Owns the lifecycle of every transport request:

        CREATED -> BROADCASTING -> ACCEPTED -> CODE_ISSUED -> IN_PROGRESS -> COMPLETED
        (any non-terminal state) -> CANCELLED

    Every mutation of a request happens while holding that request's lock from
    the RequestStore. Resource availability is flipped inside the same critical
    section (request lock, then fleet lock), so the first accept to reach the
    lock wins and every later one observes the assignment and gets a
    ConflictError.

    Calls to the notification and payment collaborators go through a thread
    pool with bounded waits. A failed notification never undoes a committed
    transition; a failed settlement blocks completion.
    """

    def __init__(
        self,
        fleet: Fleet,
        notifier: NotificationPort,
        payments: PaymentPort,
        settings: Optional[DispatchSettings] = None,
        clock: Callable[[], datetime] = utcnow,
        scheduler: Any = None,
        store: Optional[RequestStore] = None,
        code_factory: Callable[[], str] = generate_code,
    ):
        self.fleet = fleet
        self.notifier = notifier
        self.payments = payments
        self.settings = settings or DispatchSettings()
        self._clock = clock
        self._scheduler = scheduler or TimerScheduler()
        self._store = store or RequestStore()
        self._code_factory = code_factory
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.settings.broadcast_workers),
            thread_name_prefix="ambulink-io",
        )

    # =====================================================
    #  INTAKE + BROADCAST
    # =====================================================

    def create_request(
        self,
        requester: Requester,
        pickup: Coordinate,
        intake: Intake,
        destination: Optional[Coordinate] = None,
        pickup_address: str = "",
        destination_facility_id: Optional[str] = None,
    ) -> TransportRequest:
        if requester is None:
            raise ValidationError("requester is required")
        validate_requester(requester.name, requester.contact)
        if pickup is None:
            raise ValidationError("pickup location is required")
        validate_coordinate(pickup.lat, pickup.lon, "pickup")
        if destination is not None:
            validate_coordinate(destination.lat, destination.lon, "destination")
        if intake is None:
            raise ValidationError("intake is required")

        priority = classify(intake)
        trip_km = distance_between(pickup, destination) if destination is not None else 0.0

        request = TransportRequest(
            request_id=str(uuid.uuid4()),
            requester=requester,
            pickup=pickup,
            intake=intake,
            priority=priority,
            required_tier=self.settings.required_tier(priority),
            created_at=self._clock(),
            pickup_address=pickup_address or "",
            destination=destination,
            destination_facility_id=destination_facility_id,
            fare_quote=quote_fare(intake.category, priority, trip_km),
        )
        self._store.add(request)
        log_event(
            "request_created",
            {
                "priority": priority,
                "required_tier": request.required_tier,
                "category": intake.category,
                "fare_quote": request.fare_quote.get("total"),
            },
            request_id=request.request_id,
        )

        with self._store.lock_for(request.request_id):
            self._transition(request, RequestState.BROADCASTING)

        self._run_broadcast_round(request.request_id)
        return self.get_request_status(request.request_id)

    def preview(
        self,
        pickup: Coordinate,
        intake: Intake,
        destination: Optional[Coordinate] = None,
    ) -> Dict[str, Any]:
        """
        What booking would look like right now: priority, fare quote and the
        resources a broadcast would reach. Nothing is stored or offered.
        """
        if pickup is None:
            raise ValidationError("pickup location is required")
        validate_coordinate(pickup.lat, pickup.lon, "pickup")
        if destination is not None:
            validate_coordinate(destination.lat, destination.lon, "destination")
        if intake is None:
            raise ValidationError("intake is required")

        priority = classify(intake)
        tier = self.settings.required_tier(priority)
        trip_km = distance_between(pickup, destination) if destination is not None else 0.0
        return {
            "priority": priority,
            "required_tier": tier,
            "fare_quote": quote_fare(intake.category, priority, trip_km),
            "candidates": self.fleet.discover(pickup, tier, self.settings.search_radius_km),
        }

    def rebroadcast(self, request_id: str) -> List[ScoredCandidate]:
        """
        Offer the request again right now. Raises NoCandidatesError when nobody
        eligible is in range, ConflictError when the request is past broadcasting.
        """
        candidates = self._broadcast(request_id, manual=True)
        if not candidates:
            raise ConflictError(f"request {request_id} is no longer broadcasting", reason="NOT_BROADCASTING")
        return candidates

    def _broadcast(self, request_id: str, manual: bool = False) -> List[ScoredCandidate]:
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state != RequestState.BROADCASTING:
                raise ConflictError(
                    f"request {request_id} is {request.state.value}, not broadcasting",
                    reason="NOT_BROADCASTING",
                )
            # operator rounds do not spend the automatic retry budget
            if manual:
                request.manual_broadcasts += 1
            else:
                request.broadcast_attempts += 1
            attempt = request.broadcast_attempts
            pickup, tier = request.pickup, request.required_tier

        radius = self.settings.search_radius_km
        candidates = self.fleet.discover(pickup, tier, radius)
        if not candidates:
            log_event("broadcast_empty", {"attempt": attempt, "radius_km": radius, "tier": tier}, request_id=request_id)
            raise NoCandidatesError(
                f"no {tier.value} or better resources available within {radius} km",
                reason="NO_RESOURCES",
            )

        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state != RequestState.BROADCASTING:
                return []
            for candidate in candidates:
                if candidate.entity_id not in request.offered_resource_ids:
                    request.offered_resource_ids.append(candidate.entity_id)
            offer = request.snapshot()

        delivered = self._offer(offer, candidates)
        log_event(
            "broadcast",
            {
                "attempt": attempt,
                "manual": manual,
                "offered": [c.entity_id for c in candidates],
                "delivered": delivered,
            },
            request_id=request_id,
        )
        return candidates

    def _offer(self, request: TransportRequest, candidates: List[ScoredCandidate]) -> int:
        futures = []
        for candidate in candidates:
            variables = {
                "request_id": request.request_id,
                "priority": request.priority.value,
                "category": request.intake.category,
                "pickup_lat": request.pickup.lat,
                "pickup_lon": request.pickup.lon,
                "pickup_address": request.pickup_address,
                "distance_km": candidate.distance_km,
                "eta_minutes": candidate.eta_minutes,
                "fare_estimate": request.fare_quote.get("total"),
            }
            party = Party("resource", candidate.entity_id)
            futures.append(self._executor.submit(self.notifier.notify, party, "ride_offer", variables))

        done, not_done = wait(futures, timeout=self.settings.notify_timeout_seconds)
        delivered = sum(
            1 for f in done if f.exception() is None and f.result() == DeliveryStatus.DELIVERED
        )
        for future in not_done:
            future.cancel()
        if delivered < len(futures):
            logger.warning(
                "request %s: %d of %d offers not delivered",
                request.request_id, len(futures) - delivered, len(futures),
            )
        return delivered

    def _run_broadcast_round(self, request_id: str) -> None:
        try:
            candidates = self._broadcast(request_id)
        except NoCandidatesError as exc:
            logger.info("request %s: %s, retrying in %ss", request_id, exc, self.settings.broadcast_retry_seconds)
            self._scheduler.call_later(self.settings.broadcast_retry_seconds, self._on_round_timeout, request_id)
            return
        except ConflictError:
            return
        if candidates:
            self._scheduler.call_later(self.settings.offer_timeout_seconds, self._on_round_timeout, request_id)

    def _on_round_timeout(self, request_id: str) -> None:
        """Fires after a round that found nobody, or that nobody accepted."""
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state != RequestState.BROADCASTING:
                return
            if request.broadcast_attempts < self.settings.max_broadcast_attempts:
                exhausted = False
            else:
                exhausted = True
                self._cancel_locked(request, NO_RESOURCES_REASON)
                requester = request.requester

        if not exhausted:
            self._run_broadcast_round(request_id)
            return

        logger.warning("request %s: gave up after %d broadcast rounds", request_id, self.settings.max_broadcast_attempts)
        self._notify(
            self._requester_party(requester),
            "no_resources",
            {"request_id": request_id, "attempts": self.settings.max_broadcast_attempts},
        )

    # =====================================================
    #  ACCEPTANCE
    # =====================================================

    def accept_request(self, resource_id: str, request_id: str) -> TransportRequest:
        self.fleet.get(resource_id)
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state.is_terminal:
                raise ConflictError(
                    f"request {request_id} is already {request.state.value.lower()}",
                    reason="REQUEST_CLOSED",
                )
            if request.assigned_resource_id is not None or request.state != RequestState.BROADCASTING:
                raise ConflictError(
                    f"request {request_id} has already been accepted",
                    reason="ALREADY_ASSIGNED",
                )
            if resource_id not in request.offered_resource_ids:
                raise ConflictError(
                    f"request {request_id} was not offered to {resource_id}",
                    reason="NOT_OFFERED",
                )

            resource = self.fleet.claim(resource_id, request_id)
            request.assigned_resource_id = resource_id
            request.accepted_at = self._clock()
            self._transition(request, RequestState.ACCEPTED)
            snapshot = request.snapshot()

        log_event("request_accepted", {"resource_id": resource_id}, request_id=request_id)
        self._notify(
            self._requester_party(snapshot.requester),
            "resource_assigned",
            {
                "request_id": request_id,
                "resource_id": resource_id,
                "driver_name": resource.driver_name,
                "driver_phone": resource.phone,
                "vehicle_number": resource.vehicle_number,
            },
        )
        return snapshot

    # =====================================================
    #  ONE-TIME CODE
    # =====================================================

    def issue_code(self, request_id: str) -> Dict[str, Any]:
        """
        Generate a fresh code and send it to the requester only.
        The return value carries the expiry, never the code.
        """
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state not in (RequestState.ACCEPTED, RequestState.CODE_ISSUED):
                raise ConflictError(
                    f"cannot issue a code while request is {request.state.value}",
                    reason="INVALID_STATE",
                )
            code = self._code_factory()
            request.one_time_code = code
            request.code_expires_at = self._clock() + timedelta(minutes=self.settings.code_ttl_minutes)
            request.codes_issued += 1
            self._transition(request, RequestState.CODE_ISSUED)
            expires_at = request.code_expires_at
            requester = request.requester
            resource_id = request.assigned_resource_id
            issued = request.codes_issued

        log_event("code_issued", {"expires_at": expires_at, "codes_issued": issued}, request_id=request_id)
        self._notify(
            self._requester_party(requester),
            "ride_code",
            {
                "request_id": request_id,
                "code": code,
                "expires_at": expires_at.isoformat(),
                "resource_id": resource_id,
            },
        )
        return {"request_id": request_id, "expires_at": expires_at}

    def verify_code(self, resource_id: str, request_id: str, code: str) -> TransportRequest:
        submitted = str(code or "").strip()
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state != RequestState.CODE_ISSUED:
                raise ConflictError(
                    f"request {request_id} is {request.state.value}, no code to verify",
                    reason="INVALID_STATE",
                )
            if request.assigned_resource_id != resource_id:
                raise ConflictError(
                    f"{resource_id} is not the resource assigned to {request_id}",
                    reason="NOT_ASSIGNED",
                )
            now = self._clock()
            if self._expire_code_locked(request, now) or request.one_time_code is None:
                raise ExpiredError("code expired, request a fresh one", reason="CODE_EXPIRED")
            if len(submitted) != CODE_LENGTH or not submitted.isdigit() or not secrets.compare_digest(
                submitted, request.one_time_code
            ):
                log_event("code_rejected", {"resource_id": resource_id}, request_id=request_id)
                raise InvalidCodeError("code does not match", reason="CODE_MISMATCH")

            request.one_time_code = None
            request.code_expires_at = None
            request.started_at = now
            self._transition(request, RequestState.IN_PROGRESS)
            snapshot = request.snapshot()

        log_event("ride_started", {"resource_id": resource_id}, request_id=request_id)
        return snapshot

    def _expire_code_locked(self, request: TransportRequest, now: datetime) -> bool:
        if request.one_time_code is None or request.code_expires_at is None:
            return False
        if now < request.code_expires_at:
            return False
        request.one_time_code = None
        log_event("code_expired", {"expired_at": request.code_expires_at}, request_id=request.request_id)
        return True

    # =====================================================
    #  SETTLEMENT + CANCELLATION
    # =====================================================

    def complete_request(self, request_id: str, fare_paid: Optional[float] = None) -> TransportRequest:
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state == RequestState.COMPLETED:
                return request.snapshot()
            if request.state != RequestState.IN_PROGRESS:
                raise ConflictError(
                    f"cannot complete request in state {request.state.value}",
                    reason="INVALID_STATE",
                )

            amount = request.fare_quote.get("total", 0) if fare_paid is None else fare_paid
            try:
                amount = float(amount)
            except (TypeError, ValueError):
                raise ValidationError("fare_paid must be a number")
            if amount < 0:
                raise ValidationError("fare_paid must be >= 0")

            if not self._settle(request_id, amount):
                log_event("settlement_failed", {"amount": amount}, request_id=request_id)
                raise SettlementError(f"payment settlement not confirmed for {request_id}", reason="NOT_SETTLED")

            self.fleet.release(request.assigned_resource_id, request_id, fare=amount)
            request.fare_paid = amount
            request.completed_at = self._clock()
            self._transition(request, RequestState.COMPLETED)
            snapshot = request.snapshot()

        log_event(
            "request_completed",
            {"resource_id": snapshot.assigned_resource_id, "fare_paid": snapshot.fare_paid},
            request_id=request_id,
        )
        self._notify(
            self._requester_party(snapshot.requester),
            "ride_receipt",
            {"request_id": request_id, "fare_paid": snapshot.fare_paid},
        )
        return snapshot

    def _settle(self, request_id: str, amount: float) -> bool:
        try:
            return bool(
                call_with_timeout(
                    self._executor,
                    self.payments.confirm_settlement,
                    self.settings.settlement_timeout_seconds,
                    request_id,
                    amount,
                )
            )
        except TimeoutError as exc:
            logger.warning("settlement for %s: %s", request_id, exc)
        except Exception as exc:
            logger.warning("settlement for %s raised: %s", request_id, exc)
        return False

    def cancel_request(self, request_id: str, reason: Optional[str] = None) -> TransportRequest:
        reason = str(reason or "").strip() or "not specified"
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            if request.state.is_terminal:
                raise ConflictError(
                    f"request {request_id} is already {request.state.value.lower()}",
                    reason="REQUEST_CLOSED",
                )
            released = self._cancel_locked(request, reason)
            snapshot = request.snapshot()

        self._notify(
            self._requester_party(snapshot.requester),
            "request_cancelled",
            {"request_id": request_id, "reason": reason},
        )
        if released is not None:
            self._notify(
                Party("resource", released),
                "request_cancelled",
                {"request_id": request_id, "reason": reason},
            )
        return snapshot

    def _cancel_locked(self, request: TransportRequest, reason: str) -> Optional[str]:
        resource_id = request.assigned_resource_id
        if resource_id is not None:
            self.fleet.release(resource_id, request.request_id)
        request.one_time_code = None
        request.code_expires_at = None
        request.cancel_reason = reason
        request.cancelled_at = self._clock()
        self._transition(request, RequestState.CANCELLED)
        log_event("request_cancelled", {"reason": reason, "resource_id": resource_id}, request_id=request.request_id)
        return resource_id

    # =====================================================
    #  QUERIES + HOUSEKEEPING
    # =====================================================

    def get_request_status(self, request_id: str) -> TransportRequest:
        with self._store.lock_for(request_id):
            request = self._store.get(request_id)
            self._expire_code_locked(request, self._clock())
            return request.snapshot()

    def list_requests(self, state: Optional[RequestState] = None) -> List[TransportRequest]:
        return [r.snapshot() for r in self._store.all(state)]

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Clear lapsed codes, archive requests settled longer than the retention
        window, and forget archived requests past the purge horizon.
        """
        now = now or self._clock()
        expired_codes = 0
        for request in self._store.active():
            with self._store.lock_for(request.request_id):
                if self._expire_code_locked(request, now):
                    expired_codes += 1
        archived = self._store.archive_settled(now, timedelta(minutes=self.settings.retention_minutes))
        purged = self._store.purge_archived(now, timedelta(minutes=self.settings.purge_after_minutes))
        return {"expired_codes": expired_codes, "archived": len(archived), "purged": len(purged)}

    def shutdown(self) -> None:
        shutdown = getattr(self._scheduler, "shutdown", None)
        if shutdown is not None:
            shutdown()
        self._executor.shutdown(wait=False)

    # -----------------------------------------------------

    def _transition(self, request: TransportRequest, new_state: RequestState) -> None:
        if new_state not in TRANSITIONS[request.state]:
            raise ConflictError(
                f"illegal transition {request.state.value} -> {new_state.value}",
                reason="ILLEGAL_TRANSITION",
            )
        request.state = new_state

    def _requester_party(self, requester: Requester) -> Party:
        return Party("requester", requester.contact, requester.contact)

    def _notify(self, party: Party, template: str, variables: Dict[str, Any]) -> DeliveryStatus:
        try:
            status = call_with_timeout(
                self._executor,
                self.notifier.notify,
                self.settings.notify_timeout_seconds,
                party,
                template,
                variables,
            )
        except Exception as exc:
            logger.warning("notify %s -> %s failed: %s", template, party.party_id, exc)
            return DeliveryStatus.FAILED
        if status != DeliveryStatus.DELIVERED:
            logger.warning("notify %s -> %s not delivered", template, party.party_id)
        return status
