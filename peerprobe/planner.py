from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .models import CHECK_ORDER, CheckKind, CumulativeEndpointResult, EndpointDescriptor, TargetResult


@dataclass(frozen=True)
class PlanEntry:
    endpoint: EndpointDescriptor
    kinds: Tuple[CheckKind, ...]


@dataclass
class Plan:
    entries: List[PlanEntry] = field(default_factory=list)
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def empty(self) -> bool:
        return not self.entries


def kinds_needed(prior: Optional[TargetResult], enabled: Iterable[CheckKind]) -> Tuple[CheckKind, ...]:
    """Enabled kinds, in probe order, that the prior result has not yet succeeded on."""
    wanted = frozenset(enabled)
    ordered = tuple(k for k in CHECK_ORDER if k in wanted)
    if prior is None:
        return ordered
    return tuple(k for k in ordered if prior.needs(k))


def plan(
    endpoints: Iterable[EndpointDescriptor],
    enabled_kinds: FrozenSet[CheckKind],
    prior: Optional[Mapping[str, CumulativeEndpointResult]] = None,
) -> Plan:
    """
    Reduce the endpoint list to the work still outstanding.

    Returns:
      Plan with one entry per endpoint still needing a kind, and the number of
      endpoints skipped because their prior primary already satisfies every
      enabled kind.
    """
    prior = prior or {}
    out = Plan()
    seen: Dict[str, bool] = {}
    for ep in endpoints:
        if ep.key in seen:
            continue
        seen[ep.key] = True

        prev = prior.get(ep.key)
        kinds = kinds_needed(prev.primary if prev else None, enabled_kinds)
        if not kinds:
            out.skipped += 1
            continue
        out.entries.append(PlanEntry(ep, kinds))
    return out
