import logging
import threading
from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .censorship import CensorshipProbeSuite
from .merge import merge, merge_endpoint
from .models import (
    ALL_CHECKS_FAILED,
    ERROR_PRECEDENCE,
    FAILED,
    CheckKind,
    CumulativeEndpointResult,
    EndpointDescriptor,
    ErrorKind,
    RunConfig,
    RunState,
    RunSummary,
    TargetResult,
)
from .planner import PlanEntry, kinds_needed, plan
from .probes import ProbeOutcome, ProbeSet, ProbeStatus
from .targets import Target, default_port, is_ip_address, is_loopback_address, parse_target

logger = logging.getLogger(__name__)

SPOOFED_ERROR = "localhost/DNS spoofed"

UpdateCallback = Callable[[CumulativeEndpointResult, int, int], None]


# -----------------------------
# Cancellation / session state
# -----------------------------

class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class OrchestrationSession:
    """
    Live state of one run. Only the coordinating thread writes the result
    table; readers on other threads go through snapshot().
    """

    def __init__(self, endpoints: Sequence[EndpointDescriptor], config: RunConfig, token: CancellationToken,
                 prior: Optional[Mapping[str, CumulativeEndpointResult]] = None):
        self.endpoints = list(endpoints)
        self.config = config
        self.token = token
        self.results: Dict[str, CumulativeEndpointResult] = dict(prior or {})
        self.state = RunState.IDLE
        self.completed = 0
        self.total = 0
        self.checked_keys = set()
        self._lock = threading.Lock()

    def transition(self, state: RunState) -> None:
        with self._lock:
            logger.debug("run state %s -> %s", self.state.value, state.value)
            self.state = state

    def publish(self, result: CumulativeEndpointResult) -> int:
        with self._lock:
            self.results[result.key] = result
            self.checked_keys.add(result.key)
            self.completed += 1
            return self.completed

    def snapshot(self) -> Tuple[RunState, int, int, Dict[str, CumulativeEndpointResult]]:
        with self._lock:
            return self.state, self.completed, self.total, dict(self.results)


# -----------------------------
# Per-target checks
# -----------------------------

def failure_error(reasons: Iterable[ErrorKind]) -> str:
    """Error text for a target with no successes, naming the most specific reason seen."""
    seen = set(reasons)
    for kind in ERROR_PRECEDENCE:
        if kind in seen:
            return f"{ALL_CHECKS_FAILED} ({kind.value})"
    return ALL_CHECKS_FAILED


def endpoint_target(ep: EndpointDescriptor) -> Target:
    try:
        return parse_target(ep.raw)
    except ValueError:
        return Target(None, ep.address, ep.port, ep.protocol, explicit_port=ep.port is not None)


class TargetChecker:
    """Runs the planned checks for one endpoint: primary, then fallbacks, then censorship probes."""

    def __init__(self, config: RunConfig, probes: Optional[ProbeSet] = None,
                 censorship: Optional[CensorshipProbeSuite] = None):
        self.config = config
        self.probes = probes or ProbeSet.default()
        self.censorship = censorship
        if config.censorship_probes and self.censorship is None:
            self.censorship = CensorshipProbeSuite(timeout_ms=config.censorship_timeout_ms)

    def _applies(self, kind: CheckKind, target: Target, is_primary: bool) -> bool:
        if kind == CheckKind.OVERLAY_RTT:
            return (not is_primary) or target.protocol.is_overlay
        if kind == CheckKind.PORT_DEFAULT:
            return bool(target.port or default_port(target.protocol))
        return True

    def _run_probe(self, kind: CheckKind, target: Target, server_name: Optional[str]) -> ProbeOutcome:
        p = self.probes
        cfg = self.config
        host = target.host
        if kind == CheckKind.PING:
            return p.ping.probe(host, None, cfg.timeout_ms)
        if kind == CheckKind.OVERLAY_RTT:
            return p.overlay.probe(target, cfg.tls_timeout_ms, server_name=server_name)
        if kind == CheckKind.PORT_DEFAULT:
            return p.tcp.probe(host, target.port or default_port(target.protocol), cfg.timeout_ms)
        if kind == CheckKind.PORT_80:
            return p.tcp.probe(host, 80, cfg.timeout_ms)
        # port 443: handshake with the original name when probing a generic endpoint by IP
        if server_name and not target.protocol.is_overlay:
            return p.tls.probe(host, 443, cfg.tls_timeout_ms, server_name=server_name)
        return p.tcp.probe(host, 443, cfg.timeout_ms)

    def probe_target(self, label: str, target: Target, kinds: Sequence[CheckKind], is_primary: bool,
                     server_name: Optional[str] = None) -> TargetResult:
        """
        Probe one concrete target with the given kinds, in order.

        Notes:
          - fast mode returns on the first success; later kinds stay not-attempted
          - a probe that raises counts as an attempted failure
        """
        result = TargetResult(target=label, is_primary=is_primary)
        applicable = [k for k in kinds if self._applies(k, target, is_primary)]

        if is_loopback_address(target.host):
            logger.warning("loopback target %s, marking %d checks failed", label, len(applicable))
            for k in applicable:
                result.latencies[k] = FAILED
                result.failures[k] = SPOOFED_ERROR
            result.available = False
            result.error = SPOOFED_ERROR
            return result

        reasons: List[ErrorKind] = []
        for k in applicable:
            try:
                out = self._run_probe(k, target, server_name)
            except Exception as e:
                out = ProbeOutcome.from_exception(e)

            if out.status == ProbeStatus.SUCCEEDED:
                result.latencies[k] = out.latency_ms or 0
                result.available = True
                logger.debug("%s %s ok %sms", label, k.value, out.latency_ms)
                if self.config.fast_mode:
                    break
            elif out.status == ProbeStatus.FAILED:
                result.latencies[k] = FAILED
                result.failures[k] = out.error
                reasons.append(out.reason or ErrorKind.FAILED)
                logger.debug("%s %s failed: %s", label, k.value, out.error)

        if not result.available:
            result.error = failure_error(reasons) if reasons else "no applicable checks"
        return result

    def check(self, entry: PlanEntry, prior: Optional[CumulativeEndpointResult],
              token: CancellationToken) -> Optional[CumulativeEndpointResult]:
        """
        Returns:
          fresh (unmerged) results for the endpoint, or None when the run was
          cancelled before they could be published.
        """
        if token.cancelled:
            return None

        ep = entry.endpoint
        cfg = self.config
        target = endpoint_target(ep)
        primary = self.probe_target(ep.raw, target, entry.kinds, is_primary=True)
        merged_primary = merge(prior.primary if prior else None, primary)

        fallbacks: List[TargetResult] = []
        if ep.alternates and (cfg.always_check_fallbacks or not merged_primary.available):
            sni = None if target.is_ip else target.host
            for ip in ep.alternates:
                if token.cancelled:
                    return None
                fb_target = target.with_host(ip)
                label = fb_target.render()
                prev_fb = prior.fallback_for(label) if prior else None
                fb_kinds = kinds_needed(prev_fb, cfg.enabled_kinds)
                if prev_fb is not None and not fb_kinds:
                    fb = prev_fb
                else:
                    fb = self.probe_target(label, fb_target, fb_kinds, is_primary=False, server_name=sni)
                fallbacks.append(fb)
                if merge(prev_fb, fb).available and cfg.fast_mode and not cfg.always_check_fallbacks:
                    break

        censorship = []
        if cfg.censorship_probes and self.censorship is not None and not is_loopback_address(target.host):
            ping = merged_primary.latency(CheckKind.PING)
            censorship = self.censorship.run_all(
                target.host,
                target.port,
                hostname=None if is_ip_address(target.host) else target.host,
                known_ping_ms=ping if ping > 0 else None,
                tls=target.protocol.is_tls,
            )

        if token.cancelled:
            return None
        return CumulativeEndpointResult(key=ep.key, primary=primary, fallbacks=fallbacks, censorship=censorship)


# -----------------------------
# Orchestrator
# -----------------------------

class CheckOrchestrator:
    def __init__(self, probes: Optional[ProbeSet] = None, censorship: Optional[CensorshipProbeSuite] = None):
        self.probes = probes
        self.censorship = censorship
        self.session: Optional[OrchestrationSession] = None

    def _crashed(self, entry: PlanEntry, exc: BaseException) -> CumulativeEndpointResult:
        primary = TargetResult(target=entry.endpoint.raw, is_primary=True)
        for k in entry.kinds:
            primary.latencies[k] = FAILED
            primary.failures[k] = f"{type(exc).__name__}: {exc}"
        primary.available = False
        primary.error = failure_error([ErrorKind.FAILED])
        return CumulativeEndpointResult(key=entry.endpoint.key, primary=primary)

    def _summary(self, session: OrchestrationSession, skipped: int, status: Optional[str] = None) -> RunSummary:
        cancelled = session.token.cancelled
        session.transition(RunState.DONE)
        state, completed, total, results = session.snapshot()
        checked_keys = [k for k in results if k in session.checked_keys]
        available = sum(1 for k in checked_keys if results[k].available)
        unavailable = len(checked_keys) - available
        if status is None:
            head = "Cancelled" if cancelled else "Done"
            status = f"{head} | OK {available} | Fail {unavailable} | Skip {skipped}"
        return RunSummary(
            state=state,
            status=status,
            total=total,
            checked=completed,
            available=available,
            unavailable=unavailable,
            skipped=skipped,
            cancelled=cancelled,
            results=results,
        )

    def run(
        self,
        endpoints: Sequence[EndpointDescriptor],
        config: RunConfig,
        prior: Optional[Mapping[str, CumulativeEndpointResult]] = None,
        token: Optional[CancellationToken] = None,
        on_update: Optional[UpdateCallback] = None,
    ) -> RunSummary:
        token = token or CancellationToken()
        prior = prior or {}
        session = OrchestrationSession(endpoints, config, token, prior)
        self.session = session

        session.transition(RunState.PLANNING)
        if not session.endpoints:
            return self._summary(session, 0, status="no targets")

        work = plan(session.endpoints, config.enabled_kinds, prior)
        session.total = len(work)
        if work.empty:
            logger.info("nothing to do: %d endpoints already known", work.skipped)
            return self._summary(session, work.skipped, status="nothing to do")

        checker = TargetChecker(config, self.probes, self.censorship)
        gate = threading.BoundedSemaphore(config.concurrency)

        def task(entry: PlanEntry) -> Optional[CumulativeEndpointResult]:
            with gate:
                if token.cancelled:
                    return None
                return checker.check(entry, prior.get(entry.endpoint.key), token)

        logger.info("checking %d endpoints (%d skipped), width=%d", len(work), work.skipped, config.concurrency)
        session.transition(RunState.RUNNING)
        with ThreadPoolExecutor(max_workers=config.concurrency) as ex:
            futs = {ex.submit(task, entry): entry for entry in work.entries}
            for fut in as_completed(futs):
                if token.cancelled and session.state == RunState.RUNNING:
                    session.transition(RunState.CANCELLING)
                    for f in futs:
                        f.cancel()

                entry = futs[fut]
                try:
                    fresh = fut.result()
                except CancelledError:
                    continue
                except Exception as e:
                    logger.exception("checker crashed on %s", entry.endpoint.raw)
                    fresh = self._crashed(entry, e)
                # anything finishing after cancel is dropped, never published
                if fresh is None or token.cancelled:
                    continue

                merged = merge_endpoint(session.results.get(fresh.key), fresh)
                completed = session.publish(merged)
                if on_update is not None:
                    try:
                        on_update(merged, completed, session.total)
                    except Exception:
                        logger.exception("update callback failed for %s", merged.key)

            if session.state == RunState.RUNNING:
                session.transition(RunState.DRAINING)

        summary = self._summary(session, work.skipped)
        logger.info(summary.status)
        return summary
