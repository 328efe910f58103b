"""
Structured connection targets.

A raw target string looks like one of:
  tls://peer.example.org:443?key=abcd
  quic://[2001:db8::1]:9001
  https://example.com
  example.com:8443
  example.com

Fallback targets are produced by swapping the host of the parsed target and
rendering it again; scheme, explicit port and the trailing path/query are kept.
"""

import ipaddress
import re
from dataclasses import dataclass, replace
from typing import Optional

from .models import ProtocolClass

SCHEME_CLASSES = {
    "tcp": ProtocolClass.TCP,
    "tls": ProtocolClass.TLS,
    "quic": ProtocolClass.QUIC,
    "ws": ProtocolClass.WS,
    "wss": ProtocolClass.WSS,
    "http": ProtocolClass.GENERIC_TCP,
    "https": ProtocolClass.GENERIC_TLS,
    "sni": ProtocolClass.SNI,
}

_URL_RE = re.compile(
    r"^(?P<scheme>[a-z][a-z0-9+.-]*)://(?:\[(?P<v6>[^\]]+)\]|(?P<host>[^/:?#\[\]]+))(?::(?P<port>\d+))?(?P<tail>[/?#].*)?$",
    re.IGNORECASE,
)
_HOST_PORT_RE = re.compile(r"^(?:\[(?P<v6>[^\]]+)\]|(?P<host>[^/:?#\[\]]+)):(?P<port>\d+)(?P<tail>[/?#].*)?$")

LOCALHOST_NAMES = {"localhost", "localhost.localdomain"}


def default_port(protocol: ProtocolClass, scheme: Optional[str] = None) -> Optional[int]:
    if scheme == "http":
        return 80
    if protocol in (ProtocolClass.TLS, ProtocolClass.SNI, ProtocolClass.GENERIC_TLS):
        return 443
    return None


def is_ip_address(address: str) -> bool:
    try:
        ipaddress.ip_address((address or "").strip().strip("[]"))
        return True
    except ValueError:
        return False


def is_loopback_address(address: str) -> bool:
    """
    True for addresses that can never be a real remote peer:
    localhost names, 127.0.0.0/8, ::1 and the unspecified addresses.
    """
    a = (address or "").strip().strip("[]").lower()
    if a in LOCALHOST_NAMES:
        return True
    try:
        ip = ipaddress.ip_address(a)
    except ValueError:
        return False
    return ip.is_loopback or ip.is_unspecified


def format_host(host: str) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


@dataclass(frozen=True)
class Target:
    scheme: Optional[str]
    host: str
    port: Optional[int]
    protocol: ProtocolClass
    tail: str = ""
    explicit_port: bool = False

    @property
    def is_ip(self) -> bool:
        return is_ip_address(self.host)

    def with_host(self, host: str) -> "Target":
        return replace(self, host=host.strip().strip("[]"))

    def render(self) -> str:
        h = format_host(self.host)
        port = f":{self.port}" if (self.explicit_port and self.port is not None) else ""
        if self.scheme is None:
            return f"{h}{port}{self.tail}"
        return f"{self.scheme}://{h}{port}{self.tail}"


def _port(s: Optional[str], raw: str) -> Optional[int]:
    if not s:
        return None
    p = int(s)
    if not (0 < p < 65536):
        raise ValueError(f"port out of range in target: {raw!r}")
    return p


def parse_target(raw: str) -> Target:
    s = (raw or "").strip()
    if not s:
        raise ValueError("empty target")

    m = _URL_RE.match(s)
    if m:
        scheme = m.group("scheme").lower()
        protocol = SCHEME_CLASSES.get(scheme)
        if protocol is None:
            raise ValueError(f"unsupported scheme '{scheme}' in target: {raw!r}")
        host = (m.group("v6") or m.group("host") or "").strip().lower()
        port = _port(m.group("port"), raw)
        explicit = port is not None
        if port is None:
            port = default_port(protocol, scheme)
        return Target(scheme, host, port, protocol, m.group("tail") or "", explicit)

    if "://" in s:
        raise ValueError(f"cannot parse target: {raw!r}")

    m = _HOST_PORT_RE.match(s)
    if m:
        host = (m.group("v6") or m.group("host") or "").strip().lower()
        return Target(None, host, _port(m.group("port"), raw), ProtocolClass.SNI, m.group("tail") or "", True)

    seg = re.split(r"[/?#]", s, maxsplit=1)[0]
    host = seg.strip().strip("[]").lower()
    if not host:
        raise ValueError(f"cannot parse target: {raw!r}")
    return Target(None, host, default_port(ProtocolClass.SNI), ProtocolClass.SNI, s[len(seg):])


def fallback_target(raw: str, ip: str) -> str:
    """The raw target string with its host replaced by a literal IP."""
    return parse_target(raw).with_host(ip).render()
