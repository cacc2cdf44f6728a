"""String similarity scoring for business name deduplication."""

from collections.abc import Iterable

DEFAULT_THRESHOLD = 0.85


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance with unit insert, delete and substitute costs.

    Comparison is case-sensitive; callers lowercase first when they need to.
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + cost,
                )
            )
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Score in [0, 1]; 1.0 for identical strings, 0.0 when exactly one is empty."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    distance = edit_distance(a.lower(), b.lower())
    return 1.0 - distance / max(len(a), len(b))


def find_similar(
    target: str,
    candidates: Iterable[str],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[tuple[str, float]]:
    """Candidates scoring at least ``threshold``, best first.

    Ties keep their input order.
    """
    scored = [(candidate, similarity(target, candidate)) for candidate in candidates]
    matches = [item for item in scored if item[1] >= threshold]
    return sorted(matches, key=lambda item: item[1], reverse=True)


def are_similar(a: str, b: str, threshold: float = DEFAULT_THRESHOLD) -> bool:
    return similarity(a, b) >= threshold
