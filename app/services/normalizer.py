# app/services/normalizer.py
"""
Canonicalises raw plate/state/timestamp strings into comparable keys.

  normalize_plate("abc-123")        → "ABC123"     exact key
  normalize_plate_fuzzy("ABO-123")  → "A80123"     fuzzy key
  normalize_state(" ca ")           → "CA"

The fuzzy key collapses each OCR confusion class to one representative so
that plates a camera could plausibly misread share a key:

  O, D, 0 → 0     I, L, 1 → 1     S, 5 → 5     B, 8 → 8     G, 6 → 6

None of these functions raise; unusable input normalises to "".
"""

import hashlib
import re
from datetime import datetime, timezone
from typing import Optional

_NON_ALNUM = re.compile(r"[^A-Z0-9]")

OCR_CONFUSION_CLASSES = (
    frozenset("0OD"),
    frozenset("1IL"),
    frozenset("5S"),
    frozenset("8B"),
    frozenset("6G"),
)

_FUZZY_COLLAPSE = str.maketrans({"O": "0", "D": "0", "I": "1", "L": "1",
                                 "S": "5", "B": "8", "G": "6"})

_TIMESTAMP_FORMATS = (
    "%m/%d/%Y %H:%M",       # Omaha export: 3/15/2025 23:58
    "%m/%d/%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)


def normalize_plate(raw) -> str:
    if not isinstance(raw, str):
        return ""
    return _NON_ALNUM.sub("", raw.upper())


def normalize_plate_fuzzy(raw) -> str:
    return normalize_plate(raw).translate(_FUZZY_COLLAPSE)


def normalize_state(raw) -> str:
    if not isinstance(raw, str):
        return ""
    return raw.strip().upper()


def make_dedup_key(zone: str, camera_id: Optional[str], direction: str,
                   ts: datetime, plate_norm: str, state_norm: str) -> str:
    """SHA-256 over the logical identity of a read, with time truncated to the minute."""
    minute = ts.strftime("%Y-%m-%dT%H:%M")
    raw = "|".join([zone or "", camera_id or "", direction or "", minute, plate_norm or "", state_norm or ""])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def to_naive_utc(ts: datetime) -> datetime:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def parse_timestamp(raw) -> Optional[datetime]:
    """Parse ISO-8601 or the known CSV export formats. Returns naive UTC, or None."""
    if isinstance(raw, datetime):
        return to_naive_utc(raw)
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    try:
        return to_naive_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None
