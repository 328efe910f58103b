import csv

from openpyxl import load_workbook

from peerprobe.models import (
    FAILED,
    CensorshipProbeResult,
    CheckKind,
    CumulativeEndpointResult,
    ProbeKind,
    ProbeWarning,
    TargetResult,
)
from peerprobe.report import result_rows, write_csv, write_xlsx


def sample_table():
    primary = TargetResult("tls://peer.example.org:443", True, {CheckKind.PING: FAILED, CheckKind.OVERLAY_RTT: 41})
    fb = TargetResult("tls://192.0.2.1:443", False, {CheckKind.PING: 12, CheckKind.OVERLAY_RTT: FAILED})
    cert = CensorshipProbeResult(ProbeKind.CERTIFICATE, ProbeWarning.CERT_MISMATCH, "MISMATCH", is_blocking=True)
    timing = CensorshipProbeResult(ProbeKind.COMPARATIVE_TIMING, detail="No ping data (no baseline)")
    return {
        "tls://peer.example.org:443": CumulativeEndpointResult(
            "tls://peer.example.org:443", primary, [fb], [cert, timing]),
    }


class TestRows:
    def test_primary_then_fallbacks(self):
        rows = result_rows(sample_table())
        assert [r.target for r in rows] == ["tls://peer.example.org:443", "tls://192.0.2.1:443"]
        assert rows[0].is_primary and not rows[1].is_primary
        assert rows[0].overlay_ms == 41
        assert rows[0].ping_ms == FAILED
        assert rows[0].port_80_ms == -1
        assert rows[1].best_ms == 12

    def test_censorship_warnings_on_primary_row(self):
        rows = result_rows(sample_table())
        assert rows[0].blocking
        assert rows[0].censorship == "certificate:cert-mismatch"
        assert rows[1].censorship == ""


class TestWriters:
    def test_csv(self, tmp_path):
        path = tmp_path / "out" / "results.csv"
        write_csv(path, result_rows(sample_table()))
        with open(path, encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 2
        assert rows[0]["endpoint"] == "tls://peer.example.org:443"
        assert rows[1]["ping_ms"] == "12"

    def test_xlsx(self, tmp_path):
        path = tmp_path / "results.xlsx"
        write_xlsx(path, result_rows(sample_table()))
        ws = load_workbook(path).active
        header = [c.value for c in ws[1]]
        assert header[:3] == ["endpoint", "target", "is_primary"]
        assert ws.max_row == 3
        assert ws["A1"].font.bold
        assert ws.freeze_panes == "A2"
        assert ws.auto_filter.ref == "A1:M3"
        assert ws.cell(row=2, column=header.index("censorship") + 1).value == "certificate:cert-mismatch"

    def test_empty_rows_write_nothing(self, tmp_path):
        path = tmp_path / "none.csv"
        write_csv(path, [])
        assert not path.exists()
