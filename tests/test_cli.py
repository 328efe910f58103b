import sys

import pytest

from peerprobe import cli
from peerprobe.models import EndpointDescriptor, ProtocolClass
from peerprobe.resolver import Resolution


def test_read_targets_skips_comments_duplicates_and_junk(tmp_path):
    p = tmp_path / "targets.txt"
    p.write_text(
        "# overlay peers\n"
        "tls://peer.example.org:443?key=abcd\n"
        "\n"
        "tls://peer.example.org:443?key=abcd\n"
        "ftp://nope.example.org\n"
        "example.com\n",
        encoding="utf-8",
    )
    endpoints, rejected = cli.read_targets(str(p))
    assert [e.raw for e in endpoints] == ["tls://peer.example.org:443?key=abcd", "example.com"]
    assert endpoints[0].protocol == ProtocolClass.TLS
    assert rejected == ["ftp://nope.example.org"]


def test_main_rejects_empty_target_file(tmp_path, monkeypatch):
    p = tmp_path / "empty.txt"
    p.write_text("# nothing\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["peerprobe", "--targets", str(p), "--outdir", str(tmp_path)])
    with pytest.raises(SystemExit, match="No valid targets"):
        cli.main()


def test_main_rejects_bad_worker_count(tmp_path, monkeypatch):
    p = tmp_path / "t.txt"
    p.write_text("example.com\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["peerprobe", "--targets", str(p), "--workers", "31",
                                      "--outdir", str(tmp_path)])
    with pytest.raises(SystemExit, match="concurrency"):
        cli.main()


def test_main_rejects_unknown_check(tmp_path, monkeypatch):
    p = tmp_path / "t.txt"
    p.write_text("example.com\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["peerprobe", "--targets", str(p), "--checks", "ping,bogus",
                                      "--outdir", str(tmp_path)])
    with pytest.raises(SystemExit, match="unknown check"):
        cli.main()


class StaticResolver:
    def __init__(self, answers):
        self.answers = answers
        self.asked = []

    def resolve(self, host):
        self.asked.append(host)
        return Resolution(ips=list(self.answers.get(host, ())))

    def alternates(self, host):
        return self.resolve(host).ips


def test_attach_alternates_resolves_names_only(capsys):
    endpoints = [EndpointDescriptor.from_raw("tls://peer.example.org:443"),
                 EndpointDescriptor.from_raw("192.0.2.7:8080")]
    resolver = StaticResolver({"peer.example.org": ["192.0.2.1", "192.0.2.2"]})

    out = cli.attach_alternates(endpoints, resolver, workers=2)

    assert resolver.asked == ["peer.example.org"]
    assert out[0].alternates == ("192.0.2.1", "192.0.2.2")
    assert out[1].alternates == ()
    assert "peer.example.org" in capsys.readouterr().out
