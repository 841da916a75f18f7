import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ambulink.core.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =====================================================
#  ENUMS
# =====================================================

class Priority(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @classmethod
    def coerce(cls, value: Any, default: "Priority" = None) -> "Priority":
        """Lenient parse used by the pure scoring paths; unknown values fall back to `default`."""
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return default if default is not None else cls.MEDIUM


class CapabilityTier(str, Enum):
    BASIC = "BASIC"
    INTERMEDIATE = "INTERMEDIATE"
    ADVANCED = "ADVANCED"
    CRITICAL_CARE = "CRITICAL_CARE"

    @property
    def level(self) -> int:
        return _TIER_ORDER.index(self)

    def covers(self, required: "CapabilityTier") -> bool:
        return self.level >= required.level

    @classmethod
    def parse(cls, value: Any) -> "CapabilityTier":
        if isinstance(value, CapabilityTier):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            raise ValidationError(f"unknown capability tier: {value!r}")


_TIER_ORDER = [
    CapabilityTier.BASIC,
    CapabilityTier.INTERMEDIATE,
    CapabilityTier.ADVANCED,
    CapabilityTier.CRITICAL_CARE,
]


class RequestState(str, Enum):
    CREATED = "CREATED"
    BROADCASTING = "BROADCASTING"
    ACCEPTED = "ACCEPTED"
    CODE_ISSUED = "CODE_ISSUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.CANCELLED)


class ReservationState(str, Enum):
    HELD = "HELD"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


BED_TYPES = ("general", "icu", "emergency")


# =====================================================
#  VALUE OBJECTS
# =====================================================

@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float


@dataclass(frozen=True)
class Requester:
    name: str
    contact: str
    conditions: Tuple[str, ...] = ()
    allergies: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Intake:
    """
    Raw intake data as captured by the call-taker or the public app.
    Every field is optional from the classifier's point of view.
    """
    category: str = "GENERAL"
    conscious: bool = True
    breathing: bool = True
    bleeding: bool = False
    pain_level: Optional[Any] = None
    symptoms: str = ""


# =====================================================
#  ENTITIES
# =====================================================

@dataclass
class TransportRequest:
    request_id: str
    requester: Requester
    pickup: Coordinate
    intake: Intake
    priority: Priority
    required_tier: CapabilityTier
    created_at: datetime
    pickup_address: str = ""
    destination: Optional[Coordinate] = None
    destination_facility_id: Optional[str] = None
    state: RequestState = RequestState.CREATED
    assigned_resource_id: Optional[str] = None
    one_time_code: Optional[str] = field(default=None, repr=False)
    code_expires_at: Optional[datetime] = None
    codes_issued: int = 0
    fare_quote: Dict[str, Any] = field(default_factory=dict)
    fare_paid: Optional[float] = None
    offered_resource_ids: List[str] = field(default_factory=list)
    broadcast_attempts: int = 0
    manual_broadcasts: int = 0
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    @property
    def code_pending(self) -> bool:
        return self.state == RequestState.CODE_ISSUED and self.one_time_code is not None

    @property
    def settled_at(self) -> Optional[datetime]:
        return self.completed_at or self.cancelled_at

    def snapshot(self) -> "TransportRequest":
        return copy.deepcopy(self)


@dataclass
class Resource:
    resource_id: str
    driver_name: str
    location: Coordinate
    capability: CapabilityTier
    rating: float = 0.0
    phone: str = ""
    vehicle_number: str = ""
    available: bool = True
    current_request_id: Optional[str] = None
    completed_trips: int = 0
    earnings: float = 0.0

    def snapshot(self) -> "Resource":
        return copy.deepcopy(self)


@dataclass
class BedPool:
    total: int
    available: int

    @property
    def occupied(self) -> int:
        return self.total - self.available


@dataclass
class Facility:
    facility_id: str
    name: str
    location: Coordinate
    specialties: Tuple[str, ...] = ()
    equipment: Tuple[str, ...] = ()
    beds: Dict[str, BedPool] = field(default_factory=dict)
    rating: float = 0.0
    accepts_emergencies: bool = True
    address: str = ""
    contact: str = ""

    def snapshot(self) -> "Facility":
        return copy.deepcopy(self)


@dataclass
class Reservation:
    reservation_id: str
    facility_id: str
    request_id: str
    bed_type: str
    eta_minutes: float
    reserved_at: datetime
    expires_at: datetime
    state: ReservationState = ReservationState.HELD
    confirmed_by: Optional[str] = None
    arrival_notes: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    closed_at: Optional[datetime] = None

    def snapshot(self) -> "Reservation":
        return copy.deepcopy(self)


@dataclass
class ScoredCandidate:
    """A facility or resource decorated for one query. Never cached."""
    kind: str
    entity_id: str
    name: str
    distance_km: float
    eta_minutes: int
    score: int
    recommended: bool = False
    match_reasons: Dict[str, Any] = field(default_factory=dict)
