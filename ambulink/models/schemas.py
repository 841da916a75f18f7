from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ambulink.core.domain import (
    Coordinate,
    Facility,
    Intake,
    Requester,
    Reservation,
    Resource,
    ScoredCandidate,
    TransportRequest,
)


# =====================================================
#  SHARED
# =====================================================

class CoordinateIn(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    def to_domain(self) -> Coordinate:
        return Coordinate(self.lat, self.lon)


class CoordinateOut(BaseModel):
    lat: float
    lon: float


class CandidateOut(BaseModel):
    kind: str
    entity_id: str
    name: str
    distance_km: float
    eta_minutes: int
    score: int
    recommended: bool
    match_reasons: Dict[str, Any]

    @classmethod
    def from_domain(cls, c: ScoredCandidate) -> "CandidateOut":
        return cls(
            kind=c.kind,
            entity_id=c.entity_id,
            name=c.name,
            distance_km=c.distance_km,
            eta_minutes=c.eta_minutes,
            score=c.score,
            recommended=c.recommended,
            match_reasons=c.match_reasons,
        )


# =====================================================
#  TRIAGE
# =====================================================

class IntakeIn(BaseModel):
    category: str = "GENERAL"
    conscious: bool = True
    breathing: bool = True
    bleeding: bool = False
    pain_level: Optional[float] = None
    symptoms: str = ""

    def to_domain(self) -> Intake:
        return Intake(
            category=self.category,
            conscious=self.conscious,
            breathing=self.breathing,
            bleeding=self.bleeding,
            pain_level=self.pain_level,
            symptoms=self.symptoms,
        )


class TriageResult(BaseModel):
    priority: str
    score: int
    required_tier: str
    breakdown: Dict[str, int]
    keyword_tier: Optional[str] = None
    keyword: Optional[str] = None


# =====================================================
#  TRANSPORT REQUESTS
# =====================================================

class RequesterIn(BaseModel):
    name: str
    contact: str
    conditions: List[str] = []
    allergies: List[str] = []

    def to_domain(self) -> Requester:
        return Requester(self.name, self.contact, tuple(self.conditions), tuple(self.allergies))


class CreateRequestIn(BaseModel):
    requester: RequesterIn
    pickup: CoordinateIn
    intake: IntakeIn = Field(default_factory=IntakeIn)
    pickup_address: str = ""
    destination: Optional[CoordinateIn] = None
    destination_facility_id: Optional[str] = None


class AcceptIn(BaseModel):
    resource_id: str


class VerifyCodeIn(BaseModel):
    resource_id: str
    code: str


class CompleteIn(BaseModel):
    fare_paid: Optional[float] = Field(None, ge=0)


class CancelIn(BaseModel):
    reason: Optional[str] = None


class CodeIssued(BaseModel):
    request_id: str
    expires_at: datetime


class RequestOut(BaseModel):
    """Public view of a transport request. The one-time code is deliberately absent."""
    request_id: str
    state: str
    priority: str
    required_tier: str
    requester_name: str
    pickup: CoordinateOut
    pickup_address: str
    destination: Optional[CoordinateOut] = None
    destination_facility_id: Optional[str] = None
    assigned_resource_id: Optional[str] = None
    code_pending: bool
    code_expires_at: Optional[datetime] = None
    codes_issued: int
    fare_quote: Dict[str, Any]
    fare_paid: Optional[float] = None
    broadcast_attempts: int
    manual_broadcasts: int
    offered_count: int
    created_at: datetime
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    @classmethod
    def from_domain(cls, r: TransportRequest) -> "RequestOut":
        return cls(
            request_id=r.request_id,
            state=r.state.value,
            priority=r.priority.value,
            required_tier=r.required_tier.value,
            requester_name=r.requester.name,
            pickup=CoordinateOut(lat=r.pickup.lat, lon=r.pickup.lon),
            pickup_address=r.pickup_address,
            destination=CoordinateOut(lat=r.destination.lat, lon=r.destination.lon) if r.destination else None,
            destination_facility_id=r.destination_facility_id,
            assigned_resource_id=r.assigned_resource_id,
            code_pending=r.code_pending,
            code_expires_at=r.code_expires_at if r.code_pending else None,
            codes_issued=r.codes_issued,
            fare_quote=r.fare_quote,
            fare_paid=r.fare_paid,
            broadcast_attempts=r.broadcast_attempts,
            manual_broadcasts=r.manual_broadcasts,
            offered_count=len(r.offered_resource_ids),
            created_at=r.created_at,
            accepted_at=r.accepted_at,
            started_at=r.started_at,
            completed_at=r.completed_at,
            cancelled_at=r.cancelled_at,
            cancel_reason=r.cancel_reason,
        )


class PreviewIn(BaseModel):
    pickup: CoordinateIn
    intake: IntakeIn = Field(default_factory=IntakeIn)
    destination: Optional[CoordinateIn] = None


class PreviewResult(BaseModel):
    priority: str
    required_tier: str
    fare_quote: Dict[str, Any]
    count: int
    candidates: List[CandidateOut]


class BroadcastResult(BaseModel):
    request_id: str
    count: int
    candidates: List[CandidateOut]


# =====================================================
#  FACILITIES + RESERVATIONS
# =====================================================

class BedPoolOut(BaseModel):
    total: int
    available: int
    occupied: int


class FacilityOut(BaseModel):
    facility_id: str
    name: str
    lat: float
    lon: float
    specialties: List[str]
    equipment: List[str]
    beds: Dict[str, BedPoolOut]
    rating: float
    accepts_emergencies: bool
    address: str = ""
    contact: str = ""

    @classmethod
    def from_domain(cls, f: Facility) -> "FacilityOut":
        return cls(
            facility_id=f.facility_id,
            name=f.name,
            lat=f.location.lat,
            lon=f.location.lon,
            specialties=list(f.specialties),
            equipment=list(f.equipment),
            beds={
                bed_type: BedPoolOut(total=p.total, available=p.available, occupied=p.occupied)
                for bed_type, p in f.beds.items()
            },
            rating=f.rating,
            accepts_emergencies=f.accepts_emergencies,
            address=f.address,
            contact=f.contact,
        )


class OccupancyRow(BaseModel):
    facility_id: str
    name: str
    bed_type: str
    total: int
    available: int
    occupied: int
    occ_ratio: float


class RecommendIn(BaseModel):
    location: CoordinateIn
    need: Optional[str] = None
    priority: Optional[str] = None
    bed_type: Optional[str] = None
    limit: int = Field(10, ge=1, le=100)


class RecommendResult(BaseModel):
    required_specialty: str
    required_equipment: List[str]
    bed_type: str
    count: int
    candidates: List[CandidateOut]


class ReserveIn(BaseModel):
    bed_type: str
    request_id: str
    eta_minutes: float = Field(..., ge=0)


class ConfirmArrivalIn(BaseModel):
    confirmed_by: Optional[str] = None
    notes: Optional[str] = None


class ReservationOut(BaseModel):
    reservation_id: str
    facility_id: str
    request_id: str
    bed_type: str
    eta_minutes: float
    state: str
    reserved_at: datetime
    expires_at: datetime
    confirmed_by: Optional[str] = None
    arrival_notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, r: Reservation) -> "ReservationOut":
        return cls(
            reservation_id=r.reservation_id,
            facility_id=r.facility_id,
            request_id=r.request_id,
            bed_type=r.bed_type,
            eta_minutes=r.eta_minutes,
            state=r.state.value,
            reserved_at=r.reserved_at,
            expires_at=r.expires_at,
            confirmed_by=r.confirmed_by,
            arrival_notes=r.arrival_notes,
            confirmed_at=r.confirmed_at,
            cancel_reason=r.cancel_reason,
            closed_at=r.closed_at,
        )


# =====================================================
#  RESOURCES
# =====================================================

class ResourceOut(BaseModel):
    resource_id: str
    driver_name: str
    lat: float
    lon: float
    capability: str
    rating: float
    phone: str
    vehicle_number: str
    available: bool
    current_request_id: Optional[str] = None
    completed_trips: int
    earnings: float

    @classmethod
    def from_domain(cls, r: Resource) -> "ResourceOut":
        return cls(
            resource_id=r.resource_id,
            driver_name=r.driver_name,
            lat=r.location.lat,
            lon=r.location.lon,
            capability=r.capability.value,
            rating=r.rating,
            phone=r.phone,
            vehicle_number=r.vehicle_number,
            available=r.available,
            current_request_id=r.current_request_id,
            completed_trips=r.completed_trips,
            earnings=r.earnings,
        )


# =====================================================
#  METRICS + EXPLAIN
# =====================================================

class Metrics(BaseModel):
    total_requests: int
    requests_by_state: Dict[str, int]
    completion_ratio: float
    avg_acceptance_seconds: float
    avg_ride_minutes: float
    avg_pickup_distance_km: float
    total_fare_collected: float
    fleet_size: int
    fleet_busy: int
    fleet_utilisation: float
    occ_mean: float
    occ_min: float
    occ_max: float


class AlternativeSuggestion(BaseModel):
    facility_id: str
    name: str
    score: int
    distance_km: float
    eta_minutes: int
    beds_available: int
    bed_type: Optional[str] = None
    specialty_match: bool
    has_required_equipment: bool


class ExplainIn(BaseModel):
    location: CoordinateIn
    need: Optional[str] = None
    priority: Optional[str] = None
    bed_type: Optional[str] = None


class ExplainResult(BaseModel):
    facility_id: Optional[str] = None
    narrative: str
    alternative: Optional[AlternativeSuggestion] = None
