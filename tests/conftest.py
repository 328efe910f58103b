"""
Shared fixtures: scripted probes that never touch the network, and a tiny
raw HTTP server for the interference probes.
"""

import socket
import socketserver
import threading
import time
from typing import Callable, List, Optional, Tuple

import pytest

from peerprobe.probes import ProbeOutcome, ProbeSet
from peerprobe.targets import Target

Script = Callable[[str, str], object]


class ConcurrencyTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def enter(self):
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)

    def exit(self):
        with self._lock:
            self.current -= 1


class FakeProbe:
    """
    Stands in for any probe. `script(name, host)` returns a ProbeOutcome or an
    exception instance to raise; every call is recorded as (name, host, kwargs).
    """

    def __init__(self, name: str, script: Script, calls: List[Tuple[str, str, dict]],
                 delay: float = 0.0, tracker: Optional[ConcurrencyTracker] = None):
        self.name = name
        self.script = script
        self.calls = calls
        self.delay = delay
        self.tracker = tracker
        self._lock = threading.Lock()

    def probe(self, first, *args, **kwargs):
        host = first.host if isinstance(first, Target) else first
        with self._lock:
            self.calls.append((self.name, host, dict(kwargs)))
        if self.tracker:
            self.tracker.enter()
        try:
            if self.delay:
                time.sleep(self.delay)
        finally:
            if self.tracker:
                self.tracker.exit()
        out = self.script(self.name, host)
        if isinstance(out, BaseException):
            raise out
        return out


def always_ok(name: str, host: str) -> ProbeOutcome:
    return ProbeOutcome.success(10)


@pytest.fixture
def make_probes():
    """
    make_probes(script=always_ok, delay=0.0, tracker=None) -> (ProbeSet, calls)
    """

    def _make(script: Script = always_ok, delay: float = 0.0, tracker: Optional[ConcurrencyTracker] = None):
        calls: List[Tuple[str, str, dict]] = []
        probes = ProbeSet(
            ping=FakeProbe("ping", script, calls, delay, tracker),
            tcp=FakeProbe("tcp", script, calls, delay, tracker),
            tls=FakeProbe("tls", script, calls, delay, tracker),
            overlay=FakeProbe("overlay", script, calls, delay, tracker),
        )
        return probes, calls

    return _make


# -----------------------------
# Local HTTP responder
# -----------------------------

def http_response(body: bytes, status: str = "200 OK", headers: Tuple[str, ...] = ()) -> bytes:
    head = [f"HTTP/1.1 {status}", f"Content-Length: {len(body)}", "Connection: close", *headers]
    return ("\r\n".join(head) + "\r\n\r\n").encode("ascii") + body


class _Server(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


@pytest.fixture
def http_server():
    """
    http_server(responder) -> port
    responder(path) returns the raw bytes sent back for a request line "GET <path> ...".
    """
    servers = []

    def _start(responder: Callable[[str], bytes]) -> int:
        class Handler(socketserver.BaseRequestHandler):
            def handle(self):
                data = b""
                while b"\r\n\r\n" not in data:
                    chunk = self.request.recv(4096)
                    if not chunk:
                        break
                    data += chunk
                line = data.split(b"\r\n", 1)[0].decode("ascii", errors="replace")
                parts = line.split(" ")
                path = parts[1] if len(parts) > 1 else "/"
                self.request.sendall(responder(path))
                self.request.shutdown(socket.SHUT_WR)

        srv = _Server(("127.0.0.1", 0), Handler)
        t = threading.Thread(target=srv.serve_forever, daemon=True)
        t.start()
        servers.append(srv)
        return srv.server_address[1]

    yield _start

    for srv in servers:
        srv.shutdown()
        srv.server_close()
