import os
from pathlib import Path
from typing import List, Optional, Tuple

import pandas as pd

from ambulink.core.config import PROJECT_ROOT
from ambulink.core.domain import BED_TYPES, BedPool, CapabilityTier, Coordinate, Facility, Resource
from ambulink.core.validate import validate_facilities_df, validate_resources_df

LIST_SEPARATOR = "|"


def _data_dir(data_dir: Optional[str] = None) -> Path:
    return Path(data_dir or os.getenv("DATA_DIR") or PROJECT_ROOT / "data")


def load_seed_data(data_dir: Optional[str] = None) -> Tuple["pd.DataFrame", "pd.DataFrame"]:
    base = _data_dir(data_dir)
    facilities_path = base / "facilities.csv"
    resources_path = base / "resources.csv"

    if not facilities_path.exists():
        raise FileNotFoundError(f"facilities.csv not found at {facilities_path.resolve()}")
    if not resources_path.exists():
        raise FileNotFoundError(f"resources.csv not found at {resources_path.resolve()}")

    facilities_df = pd.read_csv(facilities_path, dtype={"facility_id": str})
    resources_df = pd.read_csv(resources_path, dtype={"resource_id": str, "phone": str})

    validate_facilities_df(facilities_df)
    validate_resources_df(resources_df)

    return facilities_df, resources_df


def _split(value) -> Tuple[str, ...]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ()
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(LIST_SEPARATOR)
    return tuple(s.strip().lower() for s in items if str(s).strip())


def _text(value) -> str:
    return "" if value is None or pd.isna(value) else str(value)


def facilities_from_df(df: "pd.DataFrame") -> List[Facility]:
    facilities: List[Facility] = []
    for _, row in df.iterrows():
        beds = {
            bed_type: BedPool(int(row[f"{bed_type}_total"]), int(row[f"{bed_type}_available"]))
            for bed_type in BED_TYPES
        }
        facilities.append(
            Facility(
                facility_id=str(row["facility_id"]),
                name=str(row["name"]),
                location=Coordinate(float(row["lat"]), float(row["lon"])),
                specialties=_split(row.get("specialties")),
                equipment=_split(row.get("equipment")),
                beds=beds,
                rating=float(row.get("rating", 0.0)),
                accepts_emergencies=str(row.get("accepts_emergencies", True)).strip().lower() in ("true", "1", "yes"),
                address=_text(row.get("address")),
                contact=_text(row.get("contact")),
            )
        )
    return facilities


def resources_from_df(df: "pd.DataFrame") -> List[Resource]:
    return [
        Resource(
            resource_id=str(row["resource_id"]),
            driver_name=str(row["driver_name"]),
            location=Coordinate(float(row["lat"]), float(row["lon"])),
            capability=CapabilityTier.parse(row["capability"]),
            rating=float(row.get("rating", 0.0)),
            phone=_text(row.get("phone")),
            vehicle_number=_text(row.get("vehicle_number")),
        )
        for _, row in df.iterrows()
    ]
