# app/utils/csv_parser.py
"""
Helpers for turning LPR CSV exports into ingest rows.
Each mapping lists, per ingest field, the CSV headers that may carry it.
Validation happens later in EventIn; this module only renames columns.
"""

import csv
import io
from typing import Optional

COLUMN_MAPPINGS = {
    # Loose headers from ad-hoc exports, matched case-insensitively
    "generic": {
        "ts": ("timestamp", "ts", "time", "utc time"),
        "zone": ("zone", "location"),
        "direction": ("direction", "dir", "lane type"),
        "plate_raw": ("plate", "license_plate", "license plate", "plate_raw"),
        "state_raw": ("state", "state_raw"),
        "camera_id": ("camera", "camera_id", "camera id"),
        "quality": ("quality",),
    },
    # Omaha site export: License Plate, Country, State, Zone, Utc Time, Camera Id, Lane Type
    "omaha": {
        "ts": ("utc time",),
        "zone": ("zone",),
        "direction": ("lane type",),
        "plate_raw": ("license plate",),
        "state_raw": ("state",),
        "camera_id": ("camera id",),
    },
}


def detect_mapping(headers: list[str]) -> str:
    """Pick the most specific mapping whose headers are all present."""
    present = {h.strip().lower() for h in headers}
    omaha_headers = {alias for aliases in COLUMN_MAPPINGS["omaha"].values() for alias in aliases}
    return "omaha" if omaha_headers <= present else "generic"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_csv(text: str, mapping: Optional[str] = None) -> list[dict]:
    """
    Parse CSV text into ingest rows. Unknown columns are dropped; empty cells
    become None so validation reports them as missing rather than malformed.
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    headers = reader.fieldnames or []
    mapping = mapping or detect_mapping(headers)
    if mapping not in COLUMN_MAPPINGS:
        raise ValueError(f"unknown CSV mapping {mapping!r}; expected one of {sorted(COLUMN_MAPPINGS)}")

    lookup = {h.strip().lower(): h for h in headers}
    columns = {}
    for target, aliases in COLUMN_MAPPINGS[mapping].items():
        for alias in aliases:
            if alias in lookup:
                columns[target] = lookup[alias]
                break

    return [
        {target: _clean(record.get(source)) for target, source in columns.items()}
        for record in reader
    ]
