import argparse
import logging
import signal
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import List, Tuple

from .models import CheckKind, CumulativeEndpointResult, EndpointDescriptor, RunConfig
from .orchestrator import CancellationToken, CheckOrchestrator
from .probes import PingProbe
from .report import now_stamp, result_rows, write_csv, write_xlsx
from .resolver import AddressResolver, DnsAddressResolver
from .targets import is_ip_address


def read_targets(path: str) -> Tuple[List[EndpointDescriptor], List[str]]:
    """
    One target per line; "#" comments and blank lines skipped, duplicates removed.

    Returns:
      (endpoints, rejected_lines)
    """
    out: List[EndpointDescriptor] = []
    bad: List[str] = []
    seen = set()
    with open(path, "r", encoding="utf-8", errors="ignore") as f:
        for line in f:
            s = line.strip()
            if not s or s.startswith("#") or s in seen:
                continue
            seen.add(s)
            try:
                out.append(EndpointDescriptor.from_raw(s))
            except ValueError:
                bad.append(s)
    return out, bad


def attach_alternates(endpoints: List[EndpointDescriptor], resolver: AddressResolver,
                      workers: int) -> List[EndpointDescriptor]:
    hosts = sorted({ep.address for ep in endpoints if not is_ip_address(ep.address)})
    found = {}
    with ThreadPoolExecutor(max_workers=workers) as ex:
        futures = {ex.submit(resolver.resolve, h): h for h in hosts}
        for fut in as_completed(futures):
            host = futures[fut]
            res = fut.result()
            found[host] = res.ips
            flag = " SPOOFED" if res.spoofed else ""
            print(f"DNS   {host:>40} ips={','.join(res.ips) or '-'}{flag} {res.error}".rstrip())
    return [ep.with_alternates(found.get(ep.address, ())) for ep in endpoints]


def print_hops(results: List[CumulativeEndpointResult], workers: int) -> None:
    pinger = PingProbe(count=3)

    def trace(host: str):
        return pinger.count_hops(host), pinger.measure(host)

    with ThreadPoolExecutor(max_workers=workers) as ex:
        futures = {}
        for r in results:
            if r.primary.available:
                futures[ex.submit(trace, EndpointDescriptor.from_raw(r.key).address)] = r.key
        for fut in as_completed(futures):
            key = futures[fut]
            try:
                hops, sample = fut.result()
            except Exception as e:
                print(f"HOPS  {key:>40} error={type(e).__name__}")
                continue
            avg = f"{sample.rtt_ms:.1f}ms" if sample.rtt_ms is not None else "-"
            print(f"HOPS  {key:>40} hops={hops:>3} avg={avg} ttl={sample.ttl if sample.ttl is not None else '-'}")


# -----------------------------
# Main
# -----------------------------

def main() -> None:
    ap = argparse.ArgumentParser(description="Reachability and interference probe for overlay peers and hosts.")
    ap.add_argument("--targets", required=True, help="Path to a targets file (one URL or host[:port] per line)")
    ap.add_argument("--checks", default="ping,overlay",
                    help="Comma-separated checks: ping,overlay,port-default,port-80,port-443 (default: ping,overlay)")
    ap.add_argument("--fast", action="store_true", help="Stop checking a target after its first successful check.")
    ap.add_argument("--no-fallbacks", action="store_false", dest="always_fallbacks",
                    help="Only check fallback addresses when the primary fails (default: always check).")
    ap.add_argument("--workers", type=int, default=10, help="Concurrent targets, 1-30 (default: 10)")
    ap.add_argument("--timeout", type=float, default=3.0, help="TCP/ping timeout seconds (default: 3.0)")
    ap.add_argument("--tls-timeout", type=float, default=5.0, help="TLS/overlay handshake timeout seconds (default: 5.0)")
    ap.add_argument("--resolve", action="store_true", help="Resolve hostnames and use their addresses as fallbacks.")
    ap.add_argument("--dns-server", default="", help="Comma-separated DNS servers for --resolve (default: system)")
    ap.add_argument("--censorship", action="store_true", help="Run the interference probes on every checked target.")
    ap.add_argument("--hops", action="store_true", help="Print hop counts for reachable targets after the run.")

    ap.add_argument("--out", default="", help="Output file path. If empty -> results_<stamp>.csv in outdir.")
    ap.add_argument("--outdir", default="results", help="Output directory (default: results)")
    ap.add_argument("--xlsx", action="store_true", help="Write XLSX (Excel) instead of CSV.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")

    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    endpoints, rejected = read_targets(args.targets)
    for line in rejected:
        print(f"SKIP  {line:>40} unparsable target")
    if not endpoints:
        raise SystemExit("No valid targets found in targets input.")

    try:
        config = RunConfig(
            enabled_kinds=CheckKind.parse_list(args.checks),
            fast_mode=args.fast,
            always_check_fallbacks=args.always_fallbacks,
            concurrency=args.workers,
            timeout_ms=int(args.timeout * 1000),
            tls_timeout_ms=int(args.tls_timeout * 1000),
            censorship_probes=args.censorship,
        )
    except ValueError as e:
        raise SystemExit(f"Invalid options: {e}")

    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    if args.out:
        out_path = Path(args.out)
    else:
        ext = ".xlsx" if args.xlsx else ".csv"
        out_path = outdir / f"results_{now_stamp()}{ext}"

    if out_path.suffix.lower() == ".xlsx":
        args.xlsx = True

    if args.resolve:
        servers = [s.strip() for s in args.dns_server.split(",") if s.strip()]
        endpoints = attach_alternates(endpoints, DnsAddressResolver(servers or None), config.concurrency)

    print(f"START | targets={len(endpoints)} | checks={','.join(k.value for k in config.ordered_kinds)}")
    print(f"MODE  fast={config.fast_mode} | always_fallbacks={config.always_check_fallbacks} | "
          f"workers={config.concurrency} | censorship={config.censorship_probes}")

    token = CancellationToken()

    def on_sigint(signum, frame):
        print("CANCEL requested, waiting for running checks...")
        token.cancel()

    signal.signal(signal.SIGINT, on_sigint)

    def on_update(res: CumulativeEndpointResult, completed: int, total: int) -> None:
        best = res.primary.best_ms()
        fb_ok = sum(1 for fb in res.fallbacks if fb.available)
        state = "OK  " if res.available else "FAIL"
        blocking = ",".join(p.kind.value for p in res.blocking_probes())
        print(
            f"CHECK {res.key:>40} {state} best={best if best is not None else '-':>5} "
            f"fallbacks={fb_ok}/{len(res.fallbacks)} [{completed}/{total}]"
            + (f" error={res.primary.error}" if res.primary.error else "")
            + (f" interference={blocking}" if blocking else "")
        )

    summary = CheckOrchestrator().run(endpoints, config, token=token, on_update=on_update)

    if args.hops and not summary.cancelled:
        print_hops(list(summary.results.values()), config.concurrency)

    rows = result_rows(summary.results)
    if args.xlsx:
        write_xlsx(out_path, rows)
    else:
        write_csv(out_path, rows)

    print("---")
    print(summary.status)
    print(f"DONE. Output: {out_path}")


if __name__ == "__main__":
    main()
