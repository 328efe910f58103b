"""
Interference probes run against a single target.

Every probe returns a CensorshipProbeResult and never raises. Results are
advisory: they annotate a target and never change its reachability.
"""

import hashlib
import logging
import re
import socket
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlsplit

import httpx
from cryptography import x509
from cryptography.x509.oid import NameOID

from .models import CensorshipProbeResult, ErrorKind, ProbeKind, ProbeWarning
from .probes import TcpPortProbe, TlsSniProbe, classify_error
from .targets import format_host, is_ip_address

logger = logging.getLogger(__name__)

BLOCK_PATTERNS: Tuple[str, ...] = (
    "access denied",
    "blocked",
    "filtered",
    "rkn",
    "zapret",
    "restricted",
    "роскомнадзор",
    "заблокирован",
    "blocking",
    "unavailable for legal reasons",
    "451",
    "nfgw",
    "internet filter",
    "content filter",
    "web filter",
    # regulator and filtering-vendor block pages
    "eais.rkn.gov.ru",
    "warning.rt.ru",
    "lawfilter",
    "fortiguard",
    "netsweeper",
    "peyvandha.ir",
    "trustpositif",
)

BLOCKING_STATUSES = (403, 451)

FINGERPRINT_READ_LIMIT = 512
RESPONSE_READ_LIMIT = 10240
STUB_BODY_LIMIT = 500
MAX_REDIRECTS = 5
ANOMALY_RATIO = 10.0

_STATUS_RE = re.compile(r"HTTP/\d(?:\.\d)?\s+(\d{3})")
_LOCATION_RE = re.compile(r"^location:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


# -----------------------------
# Helpers
# -----------------------------

def match_block_pattern(text: str, patterns: Sequence[str] = BLOCK_PATTERNS) -> Optional[str]:
    """First interference phrase found in text (case-insensitive), or None."""
    low = (text or "").lower()
    for p in patterns:
        if p in low:
            return p
    return None


def parse_status_code(response: str) -> int:
    first = (response or "").split("\n", 1)[0]
    m = _STATUS_RE.search(first)
    return int(m.group(1)) if m else -1


def decode_response(raw: bytes) -> str:
    """Text view of raw response bytes, for status and phrase matching only."""
    return raw.decode("utf-8", errors="replace")


def split_response(response: str) -> Tuple[str, str]:
    """(head, body) split on the first blank line; body is "" when absent."""
    idx = response.find("\r\n\r\n")
    if idx < 0:
        return response, ""
    return response[:idx], response[idx + 4:]


def match_cert_name(hostname: str, names: Sequence[str]) -> bool:
    """
    Exact or wildcard match of hostname against certificate names.
    "*.example.com" matches any name ending in ".example.com".
    """
    h = (hostname or "").lower().rstrip(".")
    for name in names:
        n = (name or "").lower().rstrip(".")
        if not n:
            continue
        if n == h:
            return True
        if n.startswith("*.") and h.endswith(n[1:]):
            return True
    return False


def cert_fingerprint(der: bytes, length: int = 8) -> str:
    """Colon-separated SHA-256 of the DER, truncated to the first `length` bytes."""
    digest = hashlib.sha256(der).hexdigest().upper()
    return ":".join(digest[i:i + 2] for i in range(0, length * 2, 2))


def _first_cn(name: x509.Name) -> str:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""


def describe_certificate(der: bytes) -> Tuple[str, List[str], str, str]:
    """Returns (cn, san_dns_names, issuer_cn, fingerprint)."""
    cert = x509.load_der_x509_certificate(der)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        dns_names = [str(n).lower() for n in san.get_values_for_type(x509.DNSName)]
    except x509.ExtensionNotFound:
        dns_names = []
    return _first_cn(cert.subject), dns_names, _first_cn(cert.issuer), cert_fingerprint(der)


def timing_verdict(connect_ms: float, ping_ms: float) -> Tuple[float, bool]:
    """(ratio, is_anomaly) for a TCP connect time against an ICMP baseline."""
    ratio = connect_ms / ping_ms
    return ratio, ratio > ANOMALY_RATIO


def _error_detail(e: BaseException) -> str:
    return f"Error: {(str(e) or type(e).__name__)[:50]}"


def _is_timeout(e: BaseException) -> bool:
    return isinstance(e, httpx.TimeoutException) or classify_error(e) == ErrorKind.TIMEOUT


def default_http_client(timeout_s: float) -> httpx.Client:
    return httpx.Client(verify=False, follow_redirects=False, timeout=timeout_s)


# -----------------------------
# Suite
# -----------------------------

class CensorshipProbeSuite:
    """
    Six content-level probes:
      fingerprint, certificate, http-status, comparative-timing,
      redirect-chain, response-size
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        tcp: Optional[TcpPortProbe] = None,
        tls: Optional[TlsSniProbe] = None,
        http_client: Callable[[float], httpx.Client] = default_http_client,
        patterns: Sequence[str] = BLOCK_PATTERNS,
    ):
        self.timeout_ms = timeout_ms
        self.tcp = tcp or TcpPortProbe()
        self.tls = tls or TlsSniProbe()
        self._http_client = http_client
        self.patterns = tuple(p.lower() for p in patterns)

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000.0

    def raw_get(self, host: str, port: int, host_header: Optional[str] = None,
                limit: int = RESPONSE_READ_LIMIT, path: str = "/") -> bytes:
        """Plain-socket HTTP/1.1 GET; returns at most `limit` raw bytes of the response."""
        request = f"GET {path} HTTP/1.1\r\nHost: {host_header or host}\r\nConnection: close\r\n\r\n"
        chunks: List[bytes] = []
        total = 0
        with socket.create_connection((host, port), timeout=self.timeout_s) as s:
            s.settimeout(self.timeout_s)
            s.sendall(request.encode("ascii", errors="replace"))
            while total < limit:
                data = s.recv(min(4096, limit - total))
                if not data:
                    break
                chunks.append(data)
                total += len(data)
        return b"".join(chunks)

    # ---- probes ----

    def fingerprint(self, host: str, port: int = 80, hostname: Optional[str] = None) -> CensorshipProbeResult:
        try:
            resp = decode_response(self.raw_get(host, port, hostname, limit=FINGERPRINT_READ_LIMIT))
        except Exception as e:
            if _is_timeout(e):
                return CensorshipProbeResult(ProbeKind.FINGERPRINT, ProbeWarning.TIMEOUT,
                                             "HTTP probe timeout", port=port)
            return CensorshipProbeResult(ProbeKind.FINGERPRINT, detail=_error_detail(e), port=port)

        status = parse_status_code(resp)
        hit = match_block_pattern(resp, self.patterns)
        if hit:
            return CensorshipProbeResult(
                ProbeKind.FINGERPRINT, ProbeWarning.BLOCKED,
                f"ISP stub: '{hit}' (HTTP {status})",
                is_blocking=True, status_code=status, port=port,
            )
        return CensorshipProbeResult(ProbeKind.FINGERPRINT, detail=f"HTTP:{port} {status}",
                                     status_code=status, port=port)

    def certificate(self, host: str, port: int = 443, hostname: Optional[str] = None) -> CensorshipProbeResult:
        sni = hostname or host
        hs = self.tls.handshake(host, port, sni, self.timeout_ms)
        if not hs.outcome.ok:
            if hs.outcome.reason == ErrorKind.TIMEOUT:
                return CensorshipProbeResult(ProbeKind.CERTIFICATE, ProbeWarning.TIMEOUT, "TLS timeout", port=port)
            return CensorshipProbeResult(ProbeKind.CERTIFICATE, detail=f"Error: {hs.outcome.error[:50]}", port=port)
        if not hs.cert_der:
            return CensorshipProbeResult(ProbeKind.CERTIFICATE, ProbeWarning.NO_CERT, "No certificates", port=port)

        try:
            cn, sans, issuer, fp = describe_certificate(hs.cert_der)
        except Exception as e:
            return CensorshipProbeResult(ProbeKind.CERTIFICATE, detail=_error_detail(e), port=port)

        detail = f"CN={cn} SAN={','.join(sans[:3])} Issuer={issuer} FP={fp}"
        names = ([cn] if cn else []) + sans
        if is_ip_address(sni) or match_cert_name(sni, names):
            return CensorshipProbeResult(ProbeKind.CERTIFICATE, detail=detail, port=port)

        logger.debug("certificate mismatch for %s:%s (cn=%s)", sni, port, cn)
        return CensorshipProbeResult(
            ProbeKind.CERTIFICATE, ProbeWarning.CERT_MISMATCH,
            f"MISMATCH: host={sni} {detail}",
            is_blocking=True, port=port,
        )

    def _https_get(self, url: str) -> Tuple[int, Optional[str]]:
        with self._http_client(self.timeout_s) as client:
            r = client.get(url)
            return r.status_code, r.headers.get("location")

    def http_status(self, host: str, port: int = 80, hostname: Optional[str] = None) -> CensorshipProbeResult:
        try:
            if port == 443:
                status, _loc = self._https_get(f"https://{format_host(hostname or host)}/")
            else:
                status = parse_status_code(decode_response(
                    self.raw_get(host, port, hostname, limit=FINGERPRINT_READ_LIMIT)))
        except Exception as e:
            return CensorshipProbeResult(ProbeKind.HTTP_STATUS, detail=_error_detail(e), port=port)

        blocking = status in BLOCKING_STATUSES
        return CensorshipProbeResult(
            ProbeKind.HTTP_STATUS,
            ProbeWarning.BLOCKED if blocking else ProbeWarning.NONE,
            f"HTTP {status}" + (" (blocking status)" if blocking else ""),
            is_blocking=blocking, status_code=status, port=port,
        )

    def comparative_timing(self, host: str, port: int, known_ping_ms: Optional[float]) -> CensorshipProbeResult:
        if known_ping_ms is None or known_ping_ms <= 0:
            return CensorshipProbeResult(ProbeKind.COMPARATIVE_TIMING, detail="No ping data (no baseline)", port=port)

        out = self.tcp.probe(host, port, self.timeout_ms)
        if not out.ok:
            if out.reason == ErrorKind.TIMEOUT:
                return CensorshipProbeResult(ProbeKind.COMPARATIVE_TIMING, ProbeWarning.TIMEOUT, "Timeout", port=port)
            return CensorshipProbeResult(ProbeKind.COMPARATIVE_TIMING, detail=f"Error: {out.error[:50]}", port=port)

        connect_ms = out.latency_ms or 0
        ratio, anomaly = timing_verdict(connect_ms, known_ping_ms)
        return CensorshipProbeResult(
            ProbeKind.COMPARATIVE_TIMING,
            ProbeWarning.ANOMALY if anomaly else ProbeWarning.NONE,
            f"TCP:{connect_ms}ms/Ping:{known_ping_ms:g}ms={ratio:.1f}x",
            is_blocking=anomaly, port=port, ratio=ratio,
        )

    def _fetch_redirect(self, url: str) -> Tuple[int, Optional[str]]:
        parts = urlsplit(url)
        if parts.scheme == "https":
            return self._https_get(url)
        port = parts.port or 80
        path = parts.path or "/"
        if parts.query:
            path += "?" + parts.query
        resp = decode_response(self.raw_get(parts.hostname or "", port, parts.netloc, limit=RESPONSE_READ_LIMIT,
                                            path=path))
        head, _body = split_response(resp)
        m = _LOCATION_RE.search(head)
        return parse_status_code(resp), (m.group(1).strip() if m else None)

    def redirect_chain(self, host: str, port: int = 80, hostname: Optional[str] = None,
                       max_redirects: int = MAX_REDIRECTS) -> CensorshipProbeResult:
        h = format_host(hostname or host)
        if port == 443:
            url = f"https://{h}/"
        elif port == 80:
            url = f"http://{h}/"
        else:
            url = f"http://{h}:{port}/"

        chain = [url]
        status = -1
        flagged = False
        try:
            for _ in range(max_redirects):
                status, location = self._fetch_redirect(url)
                if not (300 <= status <= 399) or not location:
                    break
                url = urljoin(url, location)
                chain.append(url)
                if match_block_pattern(urlsplit(url).hostname or "", self.patterns):
                    flagged = True
        except Exception as e:
            return CensorshipProbeResult(ProbeKind.REDIRECT_CHAIN, detail=_error_detail(e),
                                         redirect_chain=chain, port=port)

        detail = f"{' → '.join(chain)} (HTTP {status})" if len(chain) > 1 else f"No redirect (HTTP {status})"
        return CensorshipProbeResult(
            ProbeKind.REDIRECT_CHAIN,
            ProbeWarning.BLOCKED if flagged else ProbeWarning.NONE,
            detail,
            is_blocking=flagged, status_code=status,
            redirect_url=chain[-1] if len(chain) > 1 else "",
            redirect_chain=chain, port=port,
        )

    def response_size(self, host: str, port: int = 80, hostname: Optional[str] = None) -> CensorshipProbeResult:
        try:
            raw = self.raw_get(host, port, hostname, limit=RESPONSE_READ_LIMIT)
        except Exception as e:
            if _is_timeout(e):
                return CensorshipProbeResult(ProbeKind.RESPONSE_SIZE, detail="Timeout", port=port)
            return CensorshipProbeResult(ProbeKind.RESPONSE_SIZE, detail=_error_detail(e), port=port)

        # measured on the wire bytes; decoded text is for phrase matching only
        head, _sep, body_bytes = raw.partition(b"\r\n\r\n")
        status = parse_status_code(decode_response(head))
        size = len(body_bytes)
        body = decode_response(body_bytes)
        stub = size < STUB_BODY_LIMIT and match_block_pattern(body, self.patterns) is not None
        return CensorshipProbeResult(
            ProbeKind.RESPONSE_SIZE,
            ProbeWarning.BLOCKED if stub else ProbeWarning.NONE,
            f"{size}B (HTTP {status})" + (" ISP stub" if stub else ""),
            is_blocking=stub, status_code=status, response_size=size, port=port,
        )

    def run_all(self, host: str, port: Optional[int] = None, hostname: Optional[str] = None,
                known_ping_ms: Optional[float] = None, tls: bool = False) -> List[CensorshipProbeResult]:
        """
        All six probes, sequentially, for one target.

        Notes:
          - fingerprint and response-size always use port 80
          - certificate uses `port` for TLS endpoints, 443 otherwise
          - http-status, redirect-chain and comparative-timing use `port` (80 when unknown)
        """
        ep_port = port or 80
        cert_port = port if (tls and port) else 443
        return [
            self.fingerprint(host, 80, hostname),
            self.certificate(host, cert_port, hostname),
            self.http_status(host, ep_port, hostname),
            self.comparative_timing(host, ep_port, known_ping_ms),
            self.redirect_chain(host, ep_port, hostname),
            self.response_size(host, 80, hostname),
        ]
