import math
from typing import Any, List

import pandas as pd

from ambulink.core.errors import ValidationError

FACILITY_COLUMNS = [
    "facility_id", "name", "lat", "lon", "specialties", "equipment",
    "general_total", "general_available", "icu_total", "icu_available",
    "emergency_total", "emergency_available", "rating", "accepts_emergencies",
]
RESOURCE_COLUMNS = ["resource_id", "driver_name", "lat", "lon", "capability", "rating"]


def validate_coordinate(lat: Any, lon: Any, name: str = "coordinate") -> None:
    try:
        lat_f = float(lat)
        lon_f = float(lon)
    except (TypeError, ValueError):
        raise ValidationError(f"{name}: lat/lon must be numbers")
    if math.isnan(lat_f) or math.isnan(lon_f):
        raise ValidationError(f"{name}: lat/lon must be numbers")
    if not -90.0 <= lat_f <= 90.0:
        raise ValidationError(f"{name}: lat must be in [-90, 90]")
    if not -180.0 <= lon_f <= 180.0:
        raise ValidationError(f"{name}: lon must be in [-180, 180]")


def validate_requester(name: Any, contact: Any) -> None:
    errors = []
    if not str(name or "").strip():
        errors.append("requester name is required")
    if not str(contact or "").strip():
        errors.append("requester contact is required")
    if errors:
        raise ValidationError("; ".join(errors))


def _ensure_columns(df: "pd.DataFrame", required: List[str], name: str) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValidationError(f"{name} missing required columns: {missing}")


def _check_lat_lon(df: "pd.DataFrame", errors: List[str]) -> None:
    if ((df["lat"] < -90) | (df["lat"] > 90)).any(): errors.append("lat must be in [-90, 90]")
    if ((df["lon"] < -180) | (df["lon"] > 180)).any(): errors.append("lon must be in [-180, 180]")


def validate_facilities_df(df: "pd.DataFrame") -> None:
    _ensure_columns(df, FACILITY_COLUMNS, "facilities")
    errors = []
    if df["facility_id"].duplicated().any(): errors.append("facility_id must be unique")
    for bed_type in ("general", "icu", "emergency"):
        total = df[f"{bed_type}_total"]
        available = df[f"{bed_type}_available"]
        if (total < 0).any(): errors.append(f"{bed_type}_total must be >= 0")
        if (available < 0).any(): errors.append(f"{bed_type}_available must be >= 0")
        if (available > total).any(): errors.append(f"{bed_type}_available cannot exceed {bed_type}_total")
    if ((df["rating"] < 0) | (df["rating"] > 5)).any(): errors.append("rating must be in [0, 5]")
    _check_lat_lon(df, errors)
    if errors: raise ValidationError("; ".join(errors))


def validate_resources_df(df: "pd.DataFrame") -> None:
    _ensure_columns(df, RESOURCE_COLUMNS, "resources")
    errors = []
    if df["resource_id"].duplicated().any(): errors.append("resource_id must be unique")
    tiers = {"BASIC", "INTERMEDIATE", "ADVANCED", "CRITICAL_CARE"}
    bad = ~df["capability"].astype(str).str.upper().isin(tiers)
    if bad.any(): errors.append(f"capability must be one of {sorted(tiers)}")
    if ((df["rating"] < 0) | (df["rating"] > 5)).any(): errors.append("rating must be in [0, 5]")
    _check_lat_lon(df, errors)
    if errors: raise ValidationError("; ".join(errors))
