"""
String similarity used for name clustering and fuzzy list matching.
"""

from rapidfuzz.distance import Levenshtein


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute all cost 1)"""
    return Levenshtein.distance(a, b)


def similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity in [0, 1]

    Computed case-insensitively as (maxLen - distance) / maxLen.
    Two empty strings are identical (1.0).
    """
    a = (a or "").lower()
    b = (b or "").lower()
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein_distance(a, b)) / max_len
