from typing import Any, Dict, List, Optional

from ambulink.core.domain import Priority, ScoredCandidate
from ambulink.core.matching import required_equipment, required_specialty


def _yes_no(flag: bool) -> str:
    return "yes" if flag else "no"


def _describe(candidate: ScoredCandidate) -> Dict[str, Any]:
    reasons = candidate.match_reasons
    return {
        "facility_id": candidate.entity_id,
        "name": candidate.name,
        "score": candidate.score,
        "distance_km": candidate.distance_km,
        "eta_minutes": candidate.eta_minutes,
        "beds_available": int(reasons.get("beds_available", 0)),
        "bed_type": reasons.get("bed_type"),
        "specialty_match": bool(reasons.get("specialty_match", False)),
        "has_required_equipment": bool(reasons.get("has_required_equipment", False)),
    }


def build_recommendation_explanation(
    candidates: List[ScoredCandidate],
    need: Optional[str],
    priority: Any,
) -> Dict[str, Any]:
    """
    Narrative for the top-ranked facility and its best alternative.
    `candidates` is the ranked output of recommend(); an empty list yields
    an explanation saying nothing was found.
    """
    priority = Priority.coerce(priority)
    specialty = required_specialty(need)
    equipment = required_equipment(need, priority)

    if not candidates:
        return {
            "facility_id": None,
            "narrative": f"No facility could be scored for a {priority.value} {specialty} case.",
            "alternative": None,
        }

    top = _describe(candidates[0])
    alt = _describe(candidates[1]) if len(candidates) > 1 else None

    equipment_part = ", ".join(equipment) if equipment else "no special equipment"
    narrative = (
        f"{top['name']} ({top['facility_id']}) is recommended for a {priority.value} case needing "
        f"{specialty} care and {equipment_part}. It is {top['distance_km']:.2f} km away "
        f"(about {top['eta_minutes']} min), has {top['beds_available']} {top['bed_type']} beds free, "
        f"specialty match: {_yes_no(top['specialty_match'])}, "
        f"equipment complete: {_yes_no(top['has_required_equipment'])}. Score {top['score']}."
    )
    if top["beds_available"] == 0:
        narrative += " Warning: no beds of the requested type are free; call ahead."
    if alt:
        narrative += (
            f" Best alternative: {alt['name']} ({alt['facility_id']}) at {alt['distance_km']:.2f} km "
            f"with score {alt['score']} and {alt['beds_available']} beds free."
        )

    return {"facility_id": top["facility_id"], "narrative": narrative, "alternative": alt}
