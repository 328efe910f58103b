from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

NOT_ATTEMPTED = -1
FAILED = -2

MAX_ALTERNATES = 5
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 30

ALL_CHECKS_FAILED = "all checks failed"


# -----------------------------
# Enumerations
# -----------------------------

class ProtocolClass(str, Enum):
    TCP = "tcp"
    TLS = "tls"
    QUIC = "quic"
    WS = "ws"
    WSS = "wss"
    GENERIC_TCP = "generic-tcp"
    GENERIC_TLS = "generic-tls"
    SNI = "sni"

    @property
    def is_overlay(self) -> bool:
        return self in OVERLAY_CLASSES

    @property
    def is_tls(self) -> bool:
        return self in TLS_CLASSES


OVERLAY_CLASSES = frozenset({
    ProtocolClass.TCP, ProtocolClass.TLS, ProtocolClass.QUIC, ProtocolClass.WS, ProtocolClass.WSS,
})
TLS_CLASSES = frozenset({
    ProtocolClass.TLS, ProtocolClass.WSS, ProtocolClass.GENERIC_TLS, ProtocolClass.SNI,
})


class CheckKind(str, Enum):
    PING = "ping"
    OVERLAY_RTT = "overlay"
    PORT_DEFAULT = "port-default"
    PORT_80 = "port-80"
    PORT_443 = "port-443"

    @classmethod
    def parse_list(cls, s: str) -> FrozenSet["CheckKind"]:
        """
        Accepts a comma-separated list of check names, e.g. "ping,port-443".
        Raises ValueError on unknown names.
        """
        out = set()
        for part in (s or "").split(","):
            p = part.strip().lower()
            if not p:
                continue
            try:
                out.add(cls(p))
            except ValueError:
                known = ",".join(k.value for k in cls)
                raise ValueError(f"unknown check '{p}' (known: {known})")
        return frozenset(out)


# Probe order within one target.
CHECK_ORDER: Tuple[CheckKind, ...] = tuple(CheckKind)


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    REFUSED = "refused"
    UNREACHABLE = "unreachable"
    NO_SUCH_HOST = "no-such-host"
    UNSUPPORTED = "unsupported protocol"
    FAILED = "failed"


# Most specific first; used to pick the reason surfaced for a fully failed target.
ERROR_PRECEDENCE: Tuple[ErrorKind, ...] = (
    ErrorKind.TIMEOUT,
    ErrorKind.REFUSED,
    ErrorKind.UNREACHABLE,
    ErrorKind.NO_SUCH_HOST,
    ErrorKind.UNSUPPORTED,
    ErrorKind.FAILED,
)


class ProbeKind(str, Enum):
    FINGERPRINT = "fingerprint"
    CERTIFICATE = "certificate"
    HTTP_STATUS = "http-status"
    COMPARATIVE_TIMING = "comparative-timing"
    REDIRECT_CHAIN = "redirect-chain"
    RESPONSE_SIZE = "response-size"


class ProbeWarning(str, Enum):
    NONE = "none"
    BLOCKED = "blocked"
    CERT_MISMATCH = "cert-mismatch"
    ANOMALY = "anomaly"
    TIMEOUT = "timeout"
    NO_CERT = "no-cert"


class RunState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    RUNNING = "running"
    DRAINING = "draining"
    CANCELLING = "cancelling"
    DONE = "done"


# -----------------------------
# Endpoints
# -----------------------------

@dataclass(frozen=True)
class EndpointDescriptor:
    address: str
    port: Optional[int]
    protocol: ProtocolClass
    raw: str
    alternates: Tuple[str, ...] = ()

    def __post_init__(self):
        seen = set()
        cleaned: List[str] = []
        for ip in self.alternates:
            ip = (ip or "").strip().strip("[]")
            if not ip or ip == self.address or ip in seen:
                continue
            seen.add(ip)
            cleaned.append(ip)
        object.__setattr__(self, "alternates", tuple(cleaned[:MAX_ALTERNATES]))

    @property
    def key(self) -> str:
        return self.raw

    @classmethod
    def from_raw(cls, raw: str, alternates: Iterable[str] = ()) -> "EndpointDescriptor":
        from .targets import parse_target

        t = parse_target(raw)
        return cls(
            address=t.host,
            port=t.port,
            protocol=t.protocol,
            raw=raw.strip(),
            alternates=tuple(alternates),
        )

    def with_alternates(self, alternates: Iterable[str]) -> "EndpointDescriptor":
        return EndpointDescriptor(self.address, self.port, self.protocol, self.raw, tuple(alternates))


# -----------------------------
# Results
# -----------------------------

def _blank_latencies() -> Dict[CheckKind, int]:
    return {k: NOT_ATTEMPTED for k in CHECK_ORDER}


@dataclass
class TargetResult:
    target: str
    is_primary: bool
    latencies: Dict[CheckKind, int] = field(default_factory=_blank_latencies)
    available: bool = False
    error: str = ""
    failures: Dict[CheckKind, str] = field(default_factory=dict)

    def __post_init__(self):
        for k in CHECK_ORDER:
            self.latencies.setdefault(k, NOT_ATTEMPTED)
        self.available = any(v >= 0 for v in self.latencies.values())

    def latency(self, kind: CheckKind) -> int:
        return self.latencies.get(kind, NOT_ATTEMPTED)

    def succeeded(self, kind: CheckKind) -> bool:
        return self.latency(kind) >= 0

    def needs(self, kind: CheckKind) -> bool:
        return not self.succeeded(kind)

    def satisfies(self, kinds: Iterable[CheckKind]) -> bool:
        return all(self.succeeded(k) for k in kinds)

    def best_ms(self) -> Optional[int]:
        ok = [v for v in self.latencies.values() if v >= 0]
        return min(ok) if ok else None


@dataclass
class CensorshipProbeResult:
    kind: ProbeKind
    warning: ProbeWarning = ProbeWarning.NONE
    detail: str = ""
    is_blocking: bool = False
    status_code: int = -1
    redirect_url: str = ""
    redirect_chain: List[str] = field(default_factory=list)
    response_size: int = -1
    port: int = -1
    ratio: Optional[float] = None


@dataclass
class CumulativeEndpointResult:
    key: str
    primary: TargetResult
    fallbacks: List[TargetResult] = field(default_factory=list)
    censorship: List[CensorshipProbeResult] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.primary.available or any(fb.available for fb in self.fallbacks)

    def fallback_for(self, target: str) -> Optional[TargetResult]:
        for fb in self.fallbacks:
            if fb.target == target:
                return fb
        return None

    def blocking_probes(self) -> List[CensorshipProbeResult]:
        return [p for p in self.censorship if p.is_blocking]


# -----------------------------
# Run configuration / summary
# -----------------------------

DEFAULT_KINDS = frozenset({CheckKind.PING, CheckKind.OVERLAY_RTT})


@dataclass(frozen=True)
class RunConfig:
    enabled_kinds: FrozenSet[CheckKind] = DEFAULT_KINDS
    fast_mode: bool = False
    always_check_fallbacks: bool = True
    concurrency: int = 10
    timeout_ms: int = 3000
    tls_timeout_ms: int = 5000
    censorship_probes: bool = False
    censorship_timeout_ms: int = 5000

    def __post_init__(self):
        if not (MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY):
            raise ValueError(
                f"concurrency must be within {MIN_CONCURRENCY}..{MAX_CONCURRENCY}, got {self.concurrency}")
        if self.timeout_ms <= 0 or self.tls_timeout_ms <= 0 or self.censorship_timeout_ms <= 0:
            raise ValueError("timeouts must be positive")
        object.__setattr__(self, "enabled_kinds", frozenset(self.enabled_kinds))

    @property
    def ordered_kinds(self) -> Tuple[CheckKind, ...]:
        return tuple(k for k in CHECK_ORDER if k in self.enabled_kinds)


@dataclass
class RunSummary:
    state: RunState
    status: str
    total: int = 0
    checked: int = 0
    available: int = 0
    unavailable: int = 0
    skipped: int = 0
    cancelled: bool = False
    results: Dict[str, CumulativeEndpointResult] = field(default_factory=dict)
