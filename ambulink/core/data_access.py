from typing import Optional, Tuple

import pandas as pd
from sqlalchemy import text
from sqlalchemy.engine import Engine

from ambulink.core.load import load_seed_data
from ambulink.core.logger import get_logger
from ambulink.core.validate import validate_facilities_df, validate_resources_df

logger = get_logger(__name__)


# =========================
# FACILITIES
# =========================

def load_facilities_df(db_engine: Engine) -> pd.DataFrame:
    """
    Read the facility registry from the `facilities` table.

    Columns mirror data/facilities.csv: per bed type a `<type>_total` and
    `<type>_available` pair, and `|`-separated specialties/equipment.
    """
    query = """
        SELECT
            facility_id, name, lat, lon, specialties, equipment,
            general_total, general_available,
            icu_total, icu_available,
            emergency_total, emergency_available,
            rating, accepts_emergencies, address, contact
        FROM facilities
        ORDER BY facility_id
    """
    with db_engine.connect() as conn:
        df = pd.read_sql(text(query), conn)

    numeric_cols = [
        "lat", "lon", "rating",
        "general_total", "general_available",
        "icu_total", "icu_available",
        "emergency_total", "emergency_available",
    ]
    for col in numeric_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["facility_id"] = df["facility_id"].astype(str)
    return df


# =========================
# RESOURCES
# =========================

def load_resources_df(db_engine: Engine, capability: Optional[str] = None) -> pd.DataFrame:
    query = """
        SELECT resource_id, driver_name, lat, lon, capability, rating, phone, vehicle_number
        FROM resources
    """
    params: dict = {}
    if capability:
        query += " WHERE capability = :capability"
        params["capability"] = capability.upper()
    query += " ORDER BY resource_id"

    with db_engine.connect() as conn:
        df = pd.read_sql(text(query), conn, params=params)

    for col in ["lat", "lon", "rating"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["resource_id"] = df["resource_id"].astype(str)
    return df


# =========================
# SEED LOADER
# =========================

def load_registry(
    db_engine: Optional[Engine] = None,
    data_dir: Optional[str] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Seed data for the facility directory and the fleet.
    SQL tables when an engine is available, the CSVs under DATA_DIR otherwise.
    """
    if db_engine is None:
        return load_seed_data(data_dir)

    facilities_df = load_facilities_df(db_engine)
    resources_df = load_resources_df(db_engine)
    validate_facilities_df(facilities_df)
    validate_resources_df(resources_df)
    logger.info("loaded %d facilities and %d resources from database", len(facilities_df), len(resources_df))
    return facilities_df, resources_df
