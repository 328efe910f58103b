import errno
import logging
import re
import socket
import ssl
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

from .models import ErrorKind, ProtocolClass
from .targets import Target

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 3000
DEFAULT_TLS_TIMEOUT_MS = 5000
MAX_PING_COUNT = 5
MAX_HOPS = 30


# -----------------------------
# Outcome type
# -----------------------------

class ProbeStatus(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    FAILED = "failed"
    SUCCEEDED = "succeeded"


@dataclass
class ProbeOutcome:
    status: ProbeStatus
    latency_ms: Optional[int] = None
    error: str = ""
    reason: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.status == ProbeStatus.SUCCEEDED

    @classmethod
    def success(cls, latency_ms: float) -> "ProbeOutcome":
        return cls(ProbeStatus.SUCCEEDED, max(0, int(round(latency_ms))))

    @classmethod
    def failure(cls, reason: ErrorKind, error: str = "") -> "ProbeOutcome":
        return cls(ProbeStatus.FAILED, None, error or reason.value, reason)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ProbeOutcome":
        return cls.failure(classify_error(exc), str(exc) or type(exc).__name__)

    @classmethod
    def skipped(cls) -> "ProbeOutcome":
        return cls(ProbeStatus.NOT_ATTEMPTED)


_UNREACHABLE_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH, getattr(errno, "ENETDOWN", -1)}


def classify_error(exc: BaseException) -> ErrorKind:
    """
    Map a socket-level exception to the error taxonomy.
    Checks exception types and errno first, then falls back to the message text.
    """
    if isinstance(exc, (socket.timeout, TimeoutError, subprocess.TimeoutExpired)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionRefusedError):
        return ErrorKind.REFUSED
    if isinstance(exc, socket.gaierror):
        return ErrorKind.NO_SUCH_HOST
    if isinstance(exc, OSError) and exc.errno in _UNREACHABLE_ERRNOS:
        return ErrorKind.UNREACHABLE
    return classify_message(str(exc))


def classify_message(text: str) -> ErrorKind:
    msg = (text or "").lower()
    if "timed out" in msg or "timeout" in msg:
        return ErrorKind.TIMEOUT
    if "refused" in msg:
        return ErrorKind.REFUSED
    if "unreachable" in msg or "no route to host" in msg:
        return ErrorKind.UNREACHABLE
    if ("name or service not known" in msg or "nodename nor servname" in msg
            or "no address associated" in msg or "unknown host" in msg or "getaddrinfo" in msg
            or "failure in name resolution" in msg):
        return ErrorKind.NO_SUCH_HOST
    return ErrorKind.FAILED


def _elapsed_ms(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000


def _seconds(timeout_ms: int) -> float:
    return max(0.001, timeout_ms / 1000.0)


# -----------------------------
# Ping
# -----------------------------

@dataclass
class PingSample:
    rtt_ms: Optional[float]
    ttl: Optional[int]
    exit_code: int
    output: str


_TIME_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms")
_TTL_RE = re.compile(r"ttl=(\d+)", re.IGNORECASE)
_STATS_RE = re.compile(r"min/avg/max(?:/[a-z]+)?\s*=\s*([\d.]+)/([\d.]+)/([\d.]+)")


def parse_ping_output(output: str, count: int = 1) -> Tuple[Optional[float], Optional[int]]:
    """
    Returns (rtt_ms, ttl).

    Notes:
      - count == 1 -> first "time=" value
      - count > 1  -> avg from the "min/avg/max" summary line
    """
    ttl: Optional[int] = None
    m = _TTL_RE.search(output or "")
    if m:
        ttl = int(m.group(1))

    if count > 1:
        s = _STATS_RE.search(output or "")
        return (float(s.group(2)) if s else None), ttl

    t = _TIME_RE.search(output or "")
    return (float(t.group(1)) if t else None), ttl


Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class PingProbe:
    """ICMP echo via the system ping binary."""

    def __init__(self, count: int = 1, runner: Optional[Runner] = None):
        self.count = max(1, min(MAX_PING_COUNT, count))
        self._run = runner or subprocess.run

    def _exec(self, cmd, timeout_s: float) -> PingSample:
        proc = self._run(cmd, capture_output=True, text=True, timeout=timeout_s)
        rtt, ttl = parse_ping_output(proc.stdout or "", self.count)
        out = (proc.stdout or "") + (proc.stderr or "")
        return PingSample(rtt_ms=rtt, ttl=ttl, exit_code=proc.returncode, output=out)

    def measure(self, host: str, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> PingSample:
        wait_s = max(1, timeout_ms // 1000)
        cmd = ["ping", "-n", "-c", str(self.count), "-W", str(wait_s), host]
        return self._exec(cmd, timeout_s=wait_s * self.count + 2)

    def probe(self, address: str, port: Optional[int] = None, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ProbeOutcome:
        try:
            sample = self.measure(address, timeout_ms)
        except FileNotFoundError:
            return ProbeOutcome.failure(ErrorKind.FAILED, "ping binary not available")
        except Exception as e:
            return ProbeOutcome.from_exception(e)

        if sample.exit_code != 0:
            logger.debug("ping %s exit=%s", address, sample.exit_code)
            # exit 1: no reply; anything else is an error reported on stderr
            if sample.exit_code == 1:
                return ProbeOutcome.failure(ErrorKind.TIMEOUT, "no reply")
            lines = [ln.strip() for ln in sample.output.splitlines() if ln.strip()]
            detail = lines[-1] if lines else f"ping exit={sample.exit_code}"
            return ProbeOutcome.failure(classify_message(sample.output), detail)
        if sample.rtt_ms is None:
            return ProbeOutcome.failure(ErrorKind.FAILED, "unparsable ping output")
        return ProbeOutcome.success(sample.rtt_ms)

    def hop_reached(self, host: str, ttl: int, timeout_ms: int = 2000) -> Tuple[bool, bool]:
        """
        One TTL-limited echo.
        Returns (got_response, reached_target).
        """
        wait_s = max(1, timeout_ms // 1000)
        cmd = ["ping", "-n", "-c", "1", "-W", str(wait_s), "-t", str(ttl), host]
        try:
            proc = self._run(cmd, capture_output=True, text=True, timeout=wait_s + 2)
        except Exception:
            return False, False
        out = (proc.stdout or "") + (proc.stderr or "")
        if proc.returncode == 0 and ("bytes from" in out or "ttl=" in out.lower()):
            return True, True
        if "time to live exceeded" in out.lower() or "ttl expired" in out.lower():
            return True, False
        return False, False

    def count_hops(self, host: str, max_hops: int = MAX_HOPS, timeout_ms: int = 2000) -> int:
        """Number of hops to host, -1 when it could not be determined."""
        for ttl in range(1, max_hops + 1):
            _got, reached = self.hop_reached(host, ttl, timeout_ms)
            if reached:
                return ttl
        return -1


# -----------------------------
# TCP / TLS
# -----------------------------

class TcpPortProbe:
    def probe(self, address: str, port: Optional[int], timeout_ms: int = DEFAULT_TIMEOUT_MS) -> ProbeOutcome:
        if not port:
            return ProbeOutcome.failure(ErrorKind.FAILED, "no port")
        t0 = time.perf_counter()
        try:
            with socket.create_connection((address, port), timeout=_seconds(timeout_ms)):
                return ProbeOutcome.success(_elapsed_ms(t0))
        except Exception as e:
            return ProbeOutcome.from_exception(e)


def insecure_context() -> ssl.SSLContext:
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


@dataclass
class Handshake:
    outcome: ProbeOutcome
    cert_der: Optional[bytes] = None
    tls_version: Optional[str] = None


class TlsSniProbe:
    """TCP connect followed by a TLS handshake presenting server_name via SNI."""

    def __init__(self, context_factory: Callable[[], ssl.SSLContext] = insecure_context):
        self._context_factory = context_factory

    def handshake(self, address: str, port: Optional[int], server_name: Optional[str] = None,
                  timeout_ms: int = DEFAULT_TLS_TIMEOUT_MS) -> Handshake:
        if not port:
            return Handshake(ProbeOutcome.failure(ErrorKind.FAILED, "no port"))
        ctx = self._context_factory()
        t0 = time.perf_counter()
        try:
            with socket.create_connection((address, port), timeout=_seconds(timeout_ms)) as raw:
                raw.settimeout(_seconds(timeout_ms))
                with ctx.wrap_socket(raw, server_hostname=server_name or address) as tls:
                    latency = _elapsed_ms(t0)
                    return Handshake(
                        outcome=ProbeOutcome.success(latency),
                        cert_der=tls.getpeercert(binary_form=True),
                        tls_version=tls.version(),
                    )
        except Exception as e:
            return Handshake(ProbeOutcome.from_exception(e))

    def probe(self, address: str, port: Optional[int], timeout_ms: int = DEFAULT_TLS_TIMEOUT_MS,
              server_name: Optional[str] = None) -> ProbeOutcome:
        return self.handshake(address, port, server_name, timeout_ms).outcome


class OverlayConnectProbe:
    """
    Best-effort connect probe for overlay peers.

    tcp/ws   -> bare TCP connect
    tls/wss  -> TCP + TLS handshake, certificate validation off (peers self-issue)
    quic     -> always "unsupported protocol"

    Generic classes are only probed this way for fallback targets.
    """

    def __init__(self, tcp: Optional[TcpPortProbe] = None, tls: Optional[TlsSniProbe] = None):
        self.tcp = tcp or TcpPortProbe()
        self.tls = tls or TlsSniProbe()

    def probe(self, target: Target, timeout_ms: int = DEFAULT_TLS_TIMEOUT_MS,
              server_name: Optional[str] = None) -> ProbeOutcome:
        proto = target.protocol
        if proto == ProtocolClass.QUIC:
            return ProbeOutcome.failure(ErrorKind.UNSUPPORTED, ErrorKind.UNSUPPORTED.value)
        if target.port is None:
            return ProbeOutcome.failure(ErrorKind.FAILED, f"no port in {target.render()}")
        if proto.is_tls:
            return self.tls.probe(target.host, target.port, timeout_ms, server_name=server_name or target.host)
        return self.tcp.probe(target.host, target.port, timeout_ms)


@dataclass
class ProbeSet:
    """The probes a checker runs; swapped for fakes in tests."""
    ping: PingProbe
    tcp: TcpPortProbe
    tls: TlsSniProbe
    overlay: OverlayConnectProbe

    @classmethod
    def default(cls) -> "ProbeSet":
        tcp = TcpPortProbe()
        tls = TlsSniProbe()
        return cls(ping=PingProbe(), tcp=tcp, tls=tls, overlay=OverlayConnectProbe(tcp, tls))
