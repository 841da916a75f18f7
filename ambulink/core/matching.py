from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from ambulink.core.config import MatchingWeights
from ambulink.core.distance import DEFAULT_SPEED_KMH, distance_between, eta_minutes, round_half_up
from ambulink.core.domain import Coordinate, Facility, Priority, ScoredCandidate
from ambulink.core.facilities import FacilityDirectory

DEFAULT_BED_TYPE = "emergency"

# need keyword -> canonical specialty, checked in order
SPECIALTY_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("heart attack", "cardiac"),
    ("cardiac", "cardiac"),
    ("stroke", "neurology"),
    ("neuro", "neurology"),
    ("accident", "trauma"),
    ("trauma", "trauma"),
    ("breathing", "respiratory"),
    ("respiratory", "respiratory"),
    ("burn", "burns"),
    ("maternity", "maternity"),
    ("pediatric", "pediatric"),
    ("broken bones", "orthopedic"),
    ("orthopedic", "orthopedic"),
)

EQUIPMENT_KEYWORDS: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("heart", "cardiac"), ("cath_lab", "icu", "ventilators")),
    (("stroke", "neuro"), ("ct_scan", "mri", "icu")),
    (("trauma", "accident"), ("ct_scan", "blood_bank", "icu")),
    (("breathing", "respiratory"), ("ventilators", "icu")),
    (("burn",), ("burn_unit", "icu")),
)
CRITICAL_EQUIPMENT = ("icu", "ventilators")


def required_specialty(need: Optional[str]) -> str:
    text = str(need or "").lower()
    for keyword, specialty in SPECIALTY_KEYWORDS:
        if keyword in text:
            return specialty
    return "general"


def required_equipment(need: Optional[str], priority: Any) -> List[str]:
    """
    Union of equipment tags for every keyword group the need mentions,
    plus ICU and ventilators for CRITICAL cases. Order-preserving, no duplicates.
    """
    text = str(need or "").lower()
    equipment: List[str] = []
    for keywords, tags in EQUIPMENT_KEYWORDS:
        if any(k in text for k in keywords):
            equipment.extend(tags)
    if Priority.coerce(priority) == Priority.CRITICAL:
        equipment.extend(CRITICAL_EQUIPMENT)
    return list(dict.fromkeys(equipment))


def selected_bed_type(priority: Any, bed_type_hint: Optional[str]) -> str:
    if Priority.coerce(priority) == Priority.CRITICAL:
        return "icu"
    return str(bed_type_hint or DEFAULT_BED_TYPE).lower()


def _score_facility(
    facility: Facility,
    location: Coordinate,
    specialty: str,
    equipment: List[str],
    bed_type: str,
    weights: MatchingWeights,
    speed_kmh: float,
) -> Dict[str, Any]:
    distance_km = distance_between(location, facility.location)
    specialties = {s.lower() for s in facility.specialties}
    facility_equipment = {e.lower() for e in facility.equipment}

    score = 0.0

    specialty_match = specialty in specialties
    if specialty_match:
        score += weights.specialty_exact
    elif "general" in specialties:
        score += weights.specialty_general

    matched_equipment = [e for e in equipment if e in facility_equipment]
    score += len(matched_equipment) / max(len(equipment), 1) * weights.equipment

    pool = facility.beds.get(bed_type)
    beds_available = pool.available if pool else 0
    beds_total = pool.total if pool and pool.total > 0 else 1
    score += beds_available / beds_total * weights.beds
    if beds_available == 0:
        score -= weights.no_beds_penalty

    horizon = weights.distance_horizon_km if weights.distance_horizon_km > 0 else 1.0
    score += max(0.0, 1.0 - distance_km / horizon) * weights.distance

    score += facility.rating / 5.0 * weights.rating

    if facility.accepts_emergencies:
        score += weights.emergency_ready

    return {
        "entity_id": facility.facility_id,
        "name": facility.name,
        "distance_km": round(distance_km, 2),
        "eta_minutes": eta_minutes(distance_km, speed_kmh),
        "score": round_half_up(score),
        "match_reasons": {
            "specialty_match": specialty_match,
            "has_required_equipment": len(matched_equipment) == len(equipment),
            "beds_available": beds_available,
            "bed_type": bed_type,
            "distance_km": round(distance_km, 2),
        },
    }


def recommend(
    facilities: Iterable[Facility],
    location: Coordinate,
    need: Optional[str],
    priority: Any,
    bed_type_hint: Optional[str] = None,
    weights: Optional[MatchingWeights] = None,
    speed_kmh: float = DEFAULT_SPEED_KMH,
) -> List[ScoredCandidate]:
    """
    Score and rank candidate facilities for one emergency.

    - specialty fit, equipment fit, bed ratio (with a flat penalty on zero beds),
      proximity, rating and emergency readiness are summed
    - ranking is a stable sort by score, so ties keep the input order
    - the first candidate is flagged as recommended
    Works on whatever facility objects it is given and never writes to them.
    """
    weights = weights or MatchingWeights()
    specialty = required_specialty(need)
    equipment = required_equipment(need, priority)
    bed_type = selected_bed_type(priority, bed_type_hint)

    rows = [
        _score_facility(f, location, specialty, equipment, bed_type, weights, speed_kmh)
        for f in facilities
    ]
    if not rows:
        return []

    ranked = pd.DataFrame(rows).sort_values("score", ascending=False, kind="stable")

    candidates: List[ScoredCandidate] = []
    for position, row in enumerate(ranked.to_dict(orient="records")):
        candidates.append(
            ScoredCandidate(
                kind="facility",
                entity_id=str(row["entity_id"]),
                name=str(row["name"]),
                distance_km=float(row["distance_km"]),
                eta_minutes=int(row["eta_minutes"]),
                score=int(row["score"]),
                recommended=position == 0,
                match_reasons=dict(row["match_reasons"]),
            )
        )
    return candidates


class FacilityMatcher:
    """Binds the pure ranking to the live directory (snapshots only)."""

    def __init__(self, directory: FacilityDirectory, weights: Optional[MatchingWeights] = None, speed_kmh: float = DEFAULT_SPEED_KMH):
        self.directory = directory
        self.weights = weights or MatchingWeights()
        self.speed_kmh = speed_kmh

    def recommend(
        self,
        location: Coordinate,
        need: Optional[str],
        priority: Any,
        bed_type_hint: Optional[str] = None,
    ) -> List[ScoredCandidate]:
        return recommend(
            self.directory.all(),
            location,
            need,
            priority,
            bed_type_hint,
            weights=self.weights,
            speed_kmh=self.speed_kmh,
        )

    def requirements(self, need: Optional[str], priority: Any, bed_type_hint: Optional[str] = None) -> Dict[str, Any]:
        return {
            "required_specialty": required_specialty(need),
            "required_equipment": required_equipment(need, priority),
            "bed_type": selected_bed_type(priority, bed_type_hint),
        }
