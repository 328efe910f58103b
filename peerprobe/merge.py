from typing import Dict, List, Optional

from .models import CHECK_ORDER, NOT_ATTEMPTED, CheckKind, CumulativeEndpointResult, TargetResult


def _merge_value(prev: int, fresh: int) -> int:
    if fresh >= 0:
        return fresh
    if prev >= 0:
        return prev
    # neither succeeded: most recent attempt wins
    return prev if fresh == NOT_ATTEMPTED else fresh


def merge(previous: Optional[TargetResult], fresh: TargetResult) -> TargetResult:
    """
    Combine a prior measurement of a target with a fresh one.

    Notes:
      - a kind that succeeded on either side stays successful
      - when both sides failed, the fresh failure marker wins unless fresh never tried
      - error is cleared once the merged result is available
    """
    if previous is None:
        return fresh

    latencies: Dict[CheckKind, int] = {}
    for k in CHECK_ORDER:
        latencies[k] = _merge_value(previous.latency(k), fresh.latency(k))

    failures: Dict[CheckKind, str] = {}
    for k in CHECK_ORDER:
        if latencies[k] >= 0:
            continue
        reason = fresh.failures.get(k) or previous.failures.get(k)
        if reason:
            failures[k] = reason

    merged = TargetResult(
        target=fresh.target,
        is_primary=fresh.is_primary,
        latencies=latencies,
        failures=failures,
    )
    merged.error = "" if merged.available else (fresh.error or previous.error)
    return merged


def merge_endpoint(previous: Optional[CumulativeEndpointResult],
                   fresh: CumulativeEndpointResult) -> CumulativeEndpointResult:
    if previous is None:
        return fresh

    fallbacks: List[TargetResult] = []
    fresh_targets = set()
    for fb in fresh.fallbacks:
        fresh_targets.add(fb.target)
        fallbacks.append(merge(previous.fallback_for(fb.target), fb))
    for fb in previous.fallbacks:
        if fb.target not in fresh_targets:
            fallbacks.append(fb)

    return CumulativeEndpointResult(
        key=fresh.key,
        primary=merge(previous.primary, fresh.primary),
        fallbacks=fallbacks,
        censorship=fresh.censorship or previous.censorship,
    )
