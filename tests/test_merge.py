import itertools

from peerprobe.merge import merge, merge_endpoint
from peerprobe.models import FAILED, NOT_ATTEMPTED, CheckKind, CumulativeEndpointResult, TargetResult


def tr(target="t", **lat):
    return TargetResult(target, True, {CheckKind[k.upper()]: v for k, v in lat.items()})


class TestMerge:
    def test_no_previous_returns_fresh(self):
        fresh = tr(ping=5)
        assert merge(None, fresh) is fresh

    def test_success_never_regresses(self):
        values = (NOT_ATTEMPTED, FAILED, 7)
        for prev_v, fresh_v in itertools.product(values, values):
            merged = merge(tr(ping=prev_v), tr(ping=fresh_v))
            if prev_v >= 0:
                assert merged.latency(CheckKind.PING) >= 0

    def test_fresh_success_replaces_prior_value(self):
        assert merge(tr(ping=50), tr(ping=20)).latency(CheckKind.PING) == 20

    def test_fresh_failure_marker_wins_when_neither_succeeded(self):
        merged = merge(tr(ping=NOT_ATTEMPTED), tr(ping=FAILED))
        assert merged.latency(CheckKind.PING) == FAILED

    def test_not_attempted_fresh_keeps_prior_failure(self):
        merged = merge(tr(ping=FAILED), tr(ping=NOT_ATTEMPTED))
        assert merged.latency(CheckKind.PING) == FAILED

    def test_available_is_or_and_clears_error(self):
        prev = tr(ping=12)
        fresh = tr(ping=FAILED, port_80=FAILED)
        fresh.error = "all checks failed (timeout)"
        fresh.failures = {CheckKind.PING: "timed out", CheckKind.PORT_80: "refused"}

        merged = merge(prev, fresh)
        assert merged.available
        assert merged.error == ""
        assert merged.failures == {CheckKind.PORT_80: "refused"}

    def test_error_kept_when_still_unavailable(self):
        prev = tr(ping=FAILED)
        prev.error = "old"
        fresh = tr(ping=FAILED)
        assert merge(prev, fresh).error == "old"
        fresh.error = "new"
        assert merge(prev, fresh).error == "new"


class TestMergeEndpoint:
    def test_fallbacks_matched_by_target_in_fresh_order(self):
        prev = CumulativeEndpointResult("k", tr("k", ping=FAILED), [
            TargetResult("192.0.2.1", False, {CheckKind.PING: 9}),
            TargetResult("192.0.2.9", False, {CheckKind.PING: FAILED}),
        ])
        fresh = CumulativeEndpointResult("k", tr("k", ping=FAILED), [
            TargetResult("192.0.2.2", False, {CheckKind.PING: 4}),
            TargetResult("192.0.2.1", False, {CheckKind.PING: FAILED}),
        ])

        merged = merge_endpoint(prev, fresh)

        assert [fb.target for fb in merged.fallbacks] == ["192.0.2.2", "192.0.2.1", "192.0.2.9"]
        assert merged.fallback_for("192.0.2.1").latency(CheckKind.PING) == 9
        assert merged.available
        assert not merged.primary.available
