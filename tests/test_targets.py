import pytest

from peerprobe.models import EndpointDescriptor, ProtocolClass
from peerprobe.targets import fallback_target, is_loopback_address, parse_target


class TestParseTarget:
    @pytest.mark.parametrize("raw,protocol,host,port", [
        ("tls://peer.example.org:443?key=abcd", ProtocolClass.TLS, "peer.example.org", 443),
        ("quic://[2001:db8::1]:9001", ProtocolClass.QUIC, "2001:db8::1", 9001),
        ("tcp://203.0.113.4:7743", ProtocolClass.TCP, "203.0.113.4", 7743),
        ("https://Example.com/x", ProtocolClass.GENERIC_TLS, "example.com", 443),
        ("http://example.com", ProtocolClass.GENERIC_TCP, "example.com", 80),
        ("example.com:8443", ProtocolClass.SNI, "example.com", 8443),
        ("example.com", ProtocolClass.SNI, "example.com", 443),
    ])
    def test_forms(self, raw, protocol, host, port):
        t = parse_target(raw)
        assert t.protocol == protocol
        assert t.host == host
        assert t.port == port

    def test_overlay_tcp_without_port_has_none(self):
        assert parse_target("tcp://peer.example.org").port is None

    @pytest.mark.parametrize("raw", ["", "   ", "ftp://example.com", "tcp://example.com:70000"])
    def test_rejects(self, raw):
        with pytest.raises(ValueError):
            parse_target(raw)


class TestFallbackTarget:
    def test_keeps_scheme_port_and_tail(self):
        assert fallback_target("tls://peer.example.org:443?key=abcd", "198.51.100.3") == \
            "tls://198.51.100.3:443?key=abcd"

    def test_ipv6_is_bracketed(self):
        assert fallback_target("tcp://peer.example.org:7743", "2001:db8::5") == "tcp://[2001:db8::5]:7743"

    def test_implicit_port_stays_implicit(self):
        assert fallback_target("https://example.com/path?q=1", "192.0.2.1") == "https://192.0.2.1/path?q=1"
        assert fallback_target("example.com", "192.0.2.1") == "192.0.2.1"


class TestEndpointDescriptor:
    def test_alternates_deduped_capped_and_without_primary(self):
        ep = EndpointDescriptor.from_raw(
            "tcp://192.0.2.1:80",
            ["192.0.2.1", "192.0.2.2", "192.0.2.2", "[2001:db8::1]", "192.0.2.3", "192.0.2.4", "192.0.2.5", "192.0.2.6"],
        )
        assert ep.alternates == ("192.0.2.2", "2001:db8::1", "192.0.2.3", "192.0.2.4", "192.0.2.5")
        assert ep.key == "tcp://192.0.2.1:80"


@pytest.mark.parametrize("addr,expected", [
    ("127.0.0.1", True),
    ("127.3.2.1", True),
    ("0.0.0.0", True),
    ("::1", True),
    ("[::1]", True),
    ("localhost", True),
    ("192.0.2.1", False),
    ("example.com", False),
])
def test_is_loopback_address(addr, expected):
    assert is_loopback_address(addr) is expected
