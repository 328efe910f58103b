"""
Alternate-address lookup for the CLI.

The engine never resolves names; callers fill EndpointDescriptor.alternates
from here before a run.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple

import dns.exception
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype
import dns.resolver

from .models import MAX_ALTERNATES
from .targets import is_ip_address, is_loopback_address

logger = logging.getLogger(__name__)

ADDRESS_TYPES = ("A", "AAAA")


@dataclass
class Resolution:
    ips: List[str] = field(default_factory=list)
    spoofed: bool = False
    error: str = ""


class AddressResolver(Protocol):
    def resolve(self, host: str) -> Resolution:
        ...

    def alternates(self, host: str) -> List[str]:
        ...


def query_addresses(server: str, host: str, qtype: str, timeout: float) -> Tuple[str, List[str]]:
    """
    One lookup against one server.
    UDP first (TCP on truncation), then an explicit TCP retry on timeout.

    Returns:
      (rcode_text, addresses)
    """
    rdtype = dns.rdatatype.from_text(qtype)
    msg = dns.message.make_query(host, rdtype)
    try:
        resp, _used_tcp = dns.query.udp_with_fallback(msg, server, timeout=timeout)
    except dns.exception.Timeout:
        try:
            resp = dns.query.tcp(msg, server, timeout=timeout)
        except dns.exception.Timeout:
            return "TIMEOUT", []

    out: List[str] = []
    for rrset in resp.answer:
        if rrset.rdtype != rdtype:
            continue
        for rd in rrset:
            out.append(rd.to_text())
    return dns.rcode.to_text(resp.rcode()), out


def system_nameservers() -> List[str]:
    try:
        return list(dns.resolver.Resolver().nameservers)
    except dns.resolver.NoResolverConfiguration:
        return []


class DnsAddressResolver:
    def __init__(self, nameservers: Optional[Sequence[str]] = None, timeout: float = 5.0):
        self.nameservers = list(nameservers) if nameservers else system_nameservers()
        self.timeout = timeout

    def resolve(self, host: str) -> Resolution:
        """
        Up to five unique addresses (A then AAAA) from the first server that answers.
        Loopback answers are kept so the checker can mark them, and flag the result as spoofed.
        """
        if not host or is_ip_address(host):
            return Resolution()
        if not self.nameservers:
            return Resolution(error="no nameservers")

        last_err = ""
        for server in self.nameservers:
            ips: List[str] = []
            answered = False
            for qtype in ADDRESS_TYPES:
                try:
                    rcode, found = query_addresses(server, host, qtype, self.timeout)
                except Exception as e:
                    last_err = type(e).__name__
                    continue
                if rcode in ("NOERROR", "NXDOMAIN"):
                    answered = True
                else:
                    last_err = rcode
                for ip in found:
                    if ip not in ips:
                        ips.append(ip)
            if answered:
                ips = ips[:MAX_ALTERNATES]
                spoofed = any(is_loopback_address(ip) for ip in ips)
                if spoofed:
                    logger.warning("%s resolves to loopback via %s: %s", host, server, ",".join(ips))
                return Resolution(ips=ips, spoofed=spoofed, error="" if ips else "no addresses")
        return Resolution(error=last_err or "no answer")

    def alternates(self, host: str) -> List[str]:
        return self.resolve(host).ips
