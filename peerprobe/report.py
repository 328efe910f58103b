import csv
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from .models import CheckKind, CumulativeEndpointResult, ProbeWarning, TargetResult


def now_stamp() -> str:
    return datetime.now().strftime("%Y%m%d-%H%M%S")


# -----------------------------
# Rows
# -----------------------------

@dataclass
class ResultRow:
    endpoint: str
    target: str
    is_primary: bool
    available: bool
    ping_ms: int
    overlay_ms: int
    port_default_ms: int
    port_80_ms: int
    port_443_ms: int
    best_ms: Optional[int]
    error: str
    blocking: bool = False
    censorship: str = ""


def _row(endpoint: str, r: TargetResult, blocking: bool = False, censorship: str = "") -> ResultRow:
    return ResultRow(
        endpoint=endpoint,
        target=r.target,
        is_primary=r.is_primary,
        available=r.available,
        ping_ms=r.latency(CheckKind.PING),
        overlay_ms=r.latency(CheckKind.OVERLAY_RTT),
        port_default_ms=r.latency(CheckKind.PORT_DEFAULT),
        port_80_ms=r.latency(CheckKind.PORT_80),
        port_443_ms=r.latency(CheckKind.PORT_443),
        best_ms=r.best_ms(),
        error=r.error,
        blocking=blocking,
        censorship=censorship,
    )


def censorship_summary(result: CumulativeEndpointResult) -> str:
    """e.g. "certificate:cert-mismatch; response-size:blocked" (warnings only)."""
    parts = [f"{p.kind.value}:{p.warning.value}" for p in result.censorship if p.warning != ProbeWarning.NONE]
    return "; ".join(parts)


def result_rows(table: Mapping[str, CumulativeEndpointResult]) -> List[ResultRow]:
    """One row per concrete target: the primary first, then its fallbacks."""
    rows: List[ResultRow] = []
    for key, res in table.items():
        rows.append(_row(key, res.primary, bool(res.blocking_probes()), censorship_summary(res)))
        for fb in res.fallbacks:
            rows.append(_row(key, fb))
    return rows


# -----------------------------
# Writers
# -----------------------------

def _table(rows: List[ResultRow]) -> Tuple[List[str], List[List[object]]]:
    headers = [f.name for f in fields(ResultRow)]
    values = [["" if getattr(r, h) is None else getattr(r, h) for h in headers] for r in rows]
    return headers, values


def write_csv(path: Path, rows: List[ResultRow]) -> None:
    if not rows:
        return
    headers, values = _table(rows)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8", newline="") as f:
        w = csv.writer(f)
        w.writerow(headers)
        w.writerows(values)


def write_xlsx(path: Path, rows: List[ResultRow]) -> None:
    from openpyxl import Workbook
    from openpyxl.styles import Font
    from openpyxl.utils import get_column_letter

    if not rows:
        return
    headers, values = _table(rows)
    wb = Workbook()
    ws = wb.active
    ws.title = "reachability"
    ws.append(headers)
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for v in values:
        ws.append(v)

    # widest of header and cells, capped so long error texts stay readable
    for i, h in enumerate(headers, start=1):
        width = max([len(h)] + [len(str(v[i - 1])) for v in values])
        ws.column_dimensions[get_column_letter(i)].width = min(width + 2, 60)

    ws.freeze_panes = "A2"
    ws.auto_filter.ref = ws.dimensions
    path.parent.mkdir(parents=True, exist_ok=True)
    wb.save(path)
