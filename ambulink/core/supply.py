from typing import Iterable

import pandas as pd

from ambulink.core.domain import Facility

OCCUPANCY_COLUMNS = ["facility_id", "name", "bed_type", "total", "available", "occupied", "occ_ratio"]


def bed_occupancy_frame(facilities: Iterable[Facility]) -> "pd.DataFrame":
    """
    One row per facility and bed type, with the occupancy ratio.
    Pools with zero capacity get occ_ratio 0 rather than NaN.
    """
    rows = [
        {
            "facility_id": f.facility_id,
            "name": f.name,
            "bed_type": bed_type,
            "total": pool.total,
            "available": pool.available,
            "occupied": pool.occupied,
        }
        for f in facilities
        for bed_type, pool in f.beds.items()
    ]
    df = pd.DataFrame(rows, columns=OCCUPANCY_COLUMNS[:-1])
    df["occ_ratio"] = (df["occupied"] / df["total"].where(df["total"] > 0)).fillna(0.0)
    return df
