#!/usr/bin/env python3
"""
Color service for watching progressive-delivery rollouts:
- POST /color answers with a color, optionally slow or failing
- everything else is served as static files from --static-dir
- Prometheus metrics on a separate port
- graceful shutdown with a termination delay for load balancers to catch up
- optional CPU burners and TLS with a self-signed certificate
- small CLI helper to put load on /color and tally the answers
"""

import argparse
import collections
import functools
import json
import multiprocessing
import os
import signal
import ssl
import threading
import time
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

from prometheus_client import Counter, Histogram, start_http_server

from .color import MalformedRequest, Picker, render
from .config import ConfigurationError, env, load_config, parse_addr, parse_burn
from .log import fatal, log_line
from .tls import CryptoFailure, InvalidOptions, server_context

# Gives ingress controllers time to drop the pod IP from their endpoints
# before we stop accepting connections.
DEFAULT_TERMINATION_DELAY = 10
SHUTDOWN_TIMEOUT = 30
HANDSHAKE_TIMEOUT = 10

# ---------- metrics ----------

REQ = Counter(
    "http_requests_total", "Number of requests.",
    ["path", "status"]
)
LAT = Histogram(
    "http_response_time_seconds", "Duration of HTTP requests.",
    ["path"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10)
)

# ---------- in-flight tracking ----------

class Inflight:
    """Counts requests being handled so shutdown can wait for them."""
    def __init__(self):
        self.n = 0
        self.cond = threading.Condition()
    def inc(self):
        with self.cond:
            self.n += 1
    def dec(self):
        with self.cond:
            self.n -= 1
            if self.n <= 0:
                self.cond.notify_all()
    def wait_idle(self, timeout):
        """True when no request is in flight before timeout."""
        with self.cond:
            return self.cond.wait_for(lambda: self.n <= 0, timeout)

# ---------- cpu burn ----------

def _spin(i, stop):
    log_line({"msg": "burning cpu", "cpu": i})
    while not stop.is_set():
        for _ in range(10000):
            pass
    log_line({"msg": "stopped cpu burn", "cpu": i})

class Burner:
    """N busy-loop processes that spin until stop is set."""
    def __init__(self, n):
        self.n = n
        self.stop = multiprocessing.Event()
        self.procs = []
    def start(self):
        if self.n <= 0:
            return
        log_line({"msg": "burning cpus", "n": self.n})
        for i in range(self.n):
            p = multiprocessing.Process(target=_spin, args=(i, self.stop), daemon=True)
            p.start()
            self.procs.append(p)
    def stop_now(self, timeout=5):
        self.stop.set()
        for p in self.procs:
            p.join(timeout)

# ---------- http ----------

class Handler(SimpleHTTPRequestHandler):
    """POST /color picks a color; any other GET is a static file."""
    picker = None      # bound to a Picker
    inflight = None    # bound to an Inflight

    def log_message(self, f, *a):  # silence default http.server logging
        pass

    def send_response(self, code, message=None):
        self._resp_code = code
        super().send_response(code, message)

    def do_GET(self):  self._d("GET")
    def do_HEAD(self): self._d("HEAD")
    def do_POST(self): self._d("POST")

    def _t(self, c, s, headers=None):
        b = s.encode() if not isinstance(s, bytes) else s
        self.send_response(c)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("Content-Length", str(len(b)))
        if headers:
            for k, v in headers.items():
                self.send_header(k, v)
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(b)

    def _body(self):
        l = int(self.headers.get("Content-Length", "0") or "0")
        if l <= 0:
            return b""
        return self.rfile.read(l)

    def _color(self):
        try:
            body = self._body()
        except ValueError:
            self._t(400, "bad content-length\n")
            return
        try:
            d = self.picker.decide(body)
        except MalformedRequest as e:
            log_line({"msg": "malformed request", "body": body.decode("utf-8", "replace"), "err": str(e)})
            self._t(500, str(e))
            return
        if d.delay > 0:
            log_line({"msg": "delaying", "color": d.color, "delay": d.delay})
            time.sleep(d.delay)
        log_line({"msg": "successful" if d.ok else "returning error", "color": d.color,
                  "c": d.status, "delay": d.delay})
        self._t(d.status, render(d.color))

    def _d(self, m):
        """Route /color to the picker, everything else to the file server."""
        t0 = time.perf_counter()
        p = urlparse(self.path).path
        self._resp_code = 200
        if self.inflight:
            self.inflight.inc()
        try:
            if p == "/color" and m in ("GET", "POST"):
                self._color()
            elif m == "GET":
                super().do_GET()
            elif m == "HEAD":
                super().do_HEAD()
            else:
                self._t(405, "method not allowed\n", {"Allow": "GET, HEAD"})
        finally:
            if self.inflight:
                self.inflight.dec()
            dt = max(0.0, time.perf_counter() - t0)
            rc = self._resp_code
            # one series for every static file
            lp = p if p == "/color" else "static"
            REQ.labels(path=lp, status=str(rc)).inc()
            LAT.labels(path=lp).observe(dt)
            log_line({"m": m, "p": p, "c": rc, "ms": int(dt * 1000)})


class Server(ThreadingHTTPServer):
    """Thread per request; TLS handshakes run on the request thread too."""
    daemon_threads = True
    ctx = None
    inflight = None

    def finish_request(self, request, client_address):
        if self.ctx is None:
            super().finish_request(request, client_address)
            return
        request.settimeout(HANDSHAKE_TIMEOUT)
        try:
            tls = self.ctx.wrap_socket(request, server_side=True)
        except (ssl.SSLError, OSError) as e:
            log_line({"msg": "tls handshake failed", "client": client_address[0], "err": str(e)})
            return
        tls.settimeout(None)
        try:
            super().finish_request(tls, client_address)
        finally:
            self.shutdown_request(tls)


def make_server(cfg, addr, static_dir=None, ctx=None, rng=None):
    """Bind a Server answering /color from cfg."""
    h = type("Handler", (Handler,), {"picker": Picker(cfg, rng), "inflight": Inflight()})
    srv = Server(addr, functools.partial(h, directory=static_dir or os.getcwd()))
    srv.inflight = h.inflight
    srv.ctx = ctx
    return srv

# ---------- shutdown ----------

class Stopper:
    """First signal starts the termination delay, a second one skips it."""
    def __init__(self):
        self.caught = threading.Event()
        self.now = threading.Event()
    def handle(self, sig, frm):
        if self.caught.is_set():
            log_line({"msg": "second signal caught, shutting down now", "sig": sig})
            self.now.set()
        else:
            self.caught.set()
    def install(self):
        signal.signal(signal.SIGINT, self.handle)
        signal.signal(signal.SIGTERM, self.handle)
    def wait(self, delay):
        # short waits so the main thread keeps running signal handlers
        while not self.caught.wait(0.5):
            pass
        log_line({"msg": "signal caught, shutting down", "in": delay})
        deadline = time.monotonic() + delay
        while not self.now.is_set():
            left = deadline - time.monotonic()
            if left <= 0:
                break
            self.now.wait(min(left, 0.5))


def serve(args):
    """Wire config + metrics + tls + burners + HTTP server, handle shutdown."""
    try:
        cfg = load_config()
        addr = parse_addr(args.listen_addr)
        burn = parse_burn(args.cpu_burn)
    except ConfigurationError as e:
        fatal("invalid configuration", err=str(e))

    ctx = None
    if args.tls:
        hosts = [h.strip() for h in args.tls_hosts.split(",") if h.strip()]
        try:
            ctx = server_context(args.tls_cert, args.tls_key, hosts)
        except (ConfigurationError, InvalidOptions, CryptoFailure) as e:
            fatal("could not create tls configuration", err=str(e))

    try:
        srv = make_server(cfg, addr, args.static_dir, ctx)
    except OSError as e:
        fatal("could not listen", addr=args.listen_addr, err=str(e))

    if args.metrics_port:
        start_http_server(args.metrics_port)

    st = Stopper()
    st.install()
    bn = Burner(burn)
    bn.start()

    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    log_line({"msg": "started server", "addr": args.listen_addr, "tls": bool(ctx),
              "color": cfg.color, "latency": cfg.latency, "error_rate": cfg.error_rate})

    st.wait(args.termination_delay)
    srv.shutdown()
    srv.server_close()
    bn.stop_now()
    if not srv.inflight.wait_idle(SHUTDOWN_TIMEOUT):
        fatal("could not gracefully shutdown the server", timeout=SHUTDOWN_TIMEOUT)
    log_line({"msg": "server stopped"})

# ---------- CLI helpers (optional) ----------

def cli_load(base, secs, body=None):
    """POST /color for secs seconds and print color/status tallies."""
    import requests
    colors = collections.Counter()
    codes = collections.Counter()
    t0 = time.time(); i = 0
    while time.time() - t0 < secs:
        try:
            r = requests.post(base + "/color", json=body, timeout=30)
        except requests.RequestException:
            codes["error"] += 1
        else:
            codes[str(r.status_code)] += 1
            try:
                colors[r.json()] += 1
            except ValueError:
                pass
        i += 1
    out = {"hits": i, "colors": dict(colors), "codes": dict(codes)}
    print(json.dumps(out))
    return out

# ---------- main ----------

def main(argv=None):
    ap = argparse.ArgumentParser(description="color service for rollout demos")
    ap.add_argument("--listen-addr", default=":8080", help="server listen address")
    ap.add_argument("--termination-delay", type=int, default=DEFAULT_TERMINATION_DELAY,
                    help="termination delay in seconds")
    ap.add_argument("--cpu-burn", default="", help="burn specified number of cpus (number or 'all')")
    ap.add_argument("--tls", action="store_true", help="serve over tls")
    ap.add_argument("--tls-cert", default="", help="tls certificate path")
    ap.add_argument("--tls-key", default="", help="tls key path")
    ap.add_argument("--tls-hosts", default="localhost,127.0.0.1",
                    help="hosts for the self-signed certificate")
    ap.add_argument("--static-dir", default=None, help="directory served on GET (default: cwd)")
    ap.add_argument("--metrics-port", type=int, default=int(env("METRICS_PORT", "9000")),
                    help="prometheus port, 0 disables")
    ap.add_argument("--load", type=int, default=0, help="put load on --base for N seconds")
    ap.add_argument("--base", default="http://localhost:8080")
    ap.add_argument("--body", default=None, help="JSON overrides sent with --load")
    args = ap.parse_args(argv)

    if args.load > 0:
        cli_load(args.base, args.load, json.loads(args.body) if args.body else None)
    else:
        serve(args)


if __name__ == "__main__":
    main()
