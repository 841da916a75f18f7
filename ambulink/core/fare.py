from typing import Any, Dict

from ambulink.core.distance import round_half_up
from ambulink.core.domain import Priority

BASE_PRICE = 500.0
PER_KM = 10.0
CURRENCY = "INR"

CATEGORY_MULTIPLIERS = {
    "CARDIAC": 1.5,
    "NEUROLOGICAL": 1.4,
    "TRAUMA": 1.3,
    "RESPIRATORY": 1.2,
    "PEDIATRIC": 1.1,
}
PRIORITY_MULTIPLIERS = {
    Priority.CRITICAL: 2.0,
    Priority.HIGH: 1.5,
    Priority.MEDIUM: 1.2,
    Priority.LOW: 1.0,
}


def quote_fare(category: str, priority: Priority, distance_km: float = 0.0) -> Dict[str, Any]:
    """Advisory fare shown to the requester up front; the settled amount comes from completion."""
    category_multiplier = CATEGORY_MULTIPLIERS.get(str(category or "").upper(), 1.0)
    priority_multiplier = PRIORITY_MULTIPLIERS.get(Priority.coerce(priority), 1.0)
    distance_charge = max(0.0, float(distance_km or 0.0)) * PER_KM
    total = round_half_up(BASE_PRICE * category_multiplier * priority_multiplier + distance_charge)
    return {
        "base_price": BASE_PRICE,
        "category_multiplier": category_multiplier,
        "priority_multiplier": priority_multiplier,
        "distance_charge": round(distance_charge, 2),
        "total": total,
        "currency": CURRENCY,
    }
