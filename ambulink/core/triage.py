from typing import Any, Dict, Optional, Tuple

from ambulink.core.domain import Intake, Priority

CATEGORY_BASE_SCORES: Dict[str, int] = {
    "RESPIRATORY": 9,
    "CARDIAC": 8,
    "NEUROLOGICAL": 8,
    "TRAUMA": 7,
    "BURNS": 6,
    "PEDIATRIC": 5,
    "MATERNITY": 5,
    "ORTHOPEDIC": 4,
    "PSYCHIATRIC": 3,
    "GENERAL": 3,
}
DEFAULT_BASE_SCORE = 3

CRITICAL_KEYWORDS = (
    "not breathing",
    "unconscious",
    "severe bleeding",
    "chest pain",
    "heart attack",
    "stroke",
    "choking",
    "unresponsive",
)
HIGH_KEYWORDS = (
    "accident",
    "fall",
    "fracture",
    "severe pain",
    "bleeding",
    "burn",
    "shortness of breath",
    "head injury",
)

# (minimum score, tier), checked top-down
PRIORITY_THRESHOLDS = (
    (15, Priority.CRITICAL),
    (10, Priority.HIGH),
    (5, Priority.MEDIUM),
)


def _pain_points(pain_level: Any) -> int:
    try:
        pain = float(pain_level)
    except (TypeError, ValueError):
        return 0
    if pain >= 8:
        return 4
    if pain >= 6:
        return 2
    if pain >= 4:
        return 1
    return 0


def match_keyword_tier(symptoms: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """
    Case-insensitive substring match against the keyword sets.
    Returns (tier, keyword) for the first hit, critical before high, or (None, None).
    """
    text = str(symptoms or "").lower()
    for keyword in CRITICAL_KEYWORDS:
        if keyword in text:
            return "critical", keyword
    for keyword in HIGH_KEYWORDS:
        if keyword in text:
            return "high", keyword
    return None, None


def score_intake(intake: Intake) -> Dict[str, Any]:
    """
    Accumulate the triage score for one intake and keep the breakdown.

    Never raises: a missing or unknown category scores the default base,
    a malformed pain level scores nothing.
    """
    category = str(getattr(intake, "category", "") or "").strip().upper()
    breakdown: Dict[str, int] = {
        "category": CATEGORY_BASE_SCORES.get(category, DEFAULT_BASE_SCORE),
    }

    if not getattr(intake, "conscious", True):
        breakdown["unconscious"] = 10
    if not getattr(intake, "breathing", True):
        breakdown["not_breathing"] = 10
    if getattr(intake, "bleeding", False):
        breakdown["bleeding"] = 5

    pain = _pain_points(getattr(intake, "pain_level", None))
    if pain:
        breakdown["pain"] = pain

    tier, keyword = match_keyword_tier(getattr(intake, "symptoms", ""))
    if tier == "critical":
        breakdown["symptoms"] = 8
    elif tier == "high":
        breakdown["symptoms"] = 4

    total = sum(breakdown.values())
    return {
        "score": total,
        "priority": priority_for_score(total),
        "breakdown": breakdown,
        "keyword_tier": tier,
        "keyword": keyword,
    }


def priority_for_score(score: int) -> Priority:
    for minimum, priority in PRIORITY_THRESHOLDS:
        if score >= minimum:
            return priority
    return Priority.LOW


def classify(intake: Intake) -> Priority:
    return score_intake(intake)["priority"]
