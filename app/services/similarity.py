# app/services/similarity.py
"""
Plate similarity for fuzzy matching.

Two stages, cheapest first:
  trigram_similarity()  — pg_trgm-style prefilter on fuzzy keys, bounds the
                          IN × OUT candidate set before scoring
  score_plates()        — position-weighted edit distance that charges
                          little for substitutions inside an OCR confusion
                          class (0↔O↔D, 1↔I↔L, 5↔S, 8↔B, 6↔G)

Any callable with the signature `(plate_a, plate_b) -> float in [0, 1]`
can replace score_plates in FuzzyMatchingEngine.
"""

from typing import Callable, List

from app.services.normalizer import OCR_CONFUSION_CLASSES

PlateScorer = Callable[[str, str], float]

CONFUSION_SUBSTITUTION_COST = 0.25
EDGE_POSITION_WEIGHT = 0.8     # first/last characters are the ones most often clipped
INTERIOR_POSITION_WEIGHT = 1.0


def _trigrams(text: str) -> set:
    grams = set()
    for word in "".join(c if c.isalnum() else " " for c in text.lower()).split():
        padded = f"  {word} "
        grams.update(padded[i:i + 3] for i in range(len(padded) - 2))
    return grams


def trigram_similarity(a: str, b: str) -> float:
    """Shared trigrams over total distinct trigrams, like pg_trgm's similarity()."""
    ga, gb = _trigrams(a or ""), _trigrams(b or "")
    if not ga or not gb:
        return 0.0
    return len(ga & gb) / len(ga | gb)


def is_ocr_confusion(a: str, b: str) -> bool:
    return any(a in cls and b in cls for cls in OCR_CONFUSION_CLASSES)


def substitution_cost(a: str, b: str) -> float:
    if a == b:
        return 0.0
    if is_ocr_confusion(a, b):
        return CONFUSION_SUBSTITUTION_COST
    return 1.0


def position_weights(plate: str) -> List[float]:
    n = len(plate)
    return [EDGE_POSITION_WEIGHT if i in (0, n - 1) else INTERIOR_POSITION_WEIGHT for i in range(n)]


def score_plates(plate_a: str, plate_b: str) -> float:
    """
    1 − weighted_edit_distance / weighted_length.

    Identical plates score 1.0. A single 0/O swap inside a six-character
    plate scores ≈0.955; a non-confusable swap in the same place ≈0.82.
    """
    a, b = plate_a or "", plate_b or ""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    wa, wb = position_weights(a), position_weights(b)
    prev = [0.0]
    for j in range(len(b)):
        prev.append(prev[j] + wb[j])

    for i in range(1, len(a) + 1):
        cur = [prev[0] + wa[i - 1]]
        for j in range(1, len(b) + 1):
            weight = max(wa[i - 1], wb[j - 1])
            cur.append(min(
                prev[j] + wa[i - 1],                                         # deletion
                cur[j - 1] + wb[j - 1],                                      # insertion
                prev[j - 1] + substitution_cost(a[i - 1], b[j - 1]) * weight,
            ))
        prev = cur

    total = max(sum(wa), sum(wb))
    return max(0.0, 1.0 - prev[-1] / total)
