"""End-to-end tests against a server bound to an ephemeral port."""

from __future__ import annotations

import http.client
import signal
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests
from prometheus_client import REGISTRY

from rollouts_demo.config import COLORS, Config
from rollouts_demo.main import Inflight, Stopper, cli_load, make_server
from rollouts_demo.tls import CertOptions, generate, server_context


@pytest.fixture
def serve(tmp_path):
    servers = []

    def start(cfg=None, ctx=None, rng=None):
        srv = make_server(cfg or Config(), ("127.0.0.1", 0), str(tmp_path), ctx, rng)
        threading.Thread(target=srv.serve_forever, daemon=True).start()
        servers.append(srv)
        scheme = "https" if ctx else "http"
        return f"{scheme}://127.0.0.1:{srv.server_address[1]}"

    yield start
    for srv in servers:
        srv.shutdown()
        srv.server_close()


def requests_total(status, path="/color"):
    return REGISTRY.get_sample_value("http_requests_total", {"path": path, "status": status}) or 0.0


class TestColorEndpoint:
    def test_returns_json_string_color(self, serve) -> None:
        base = serve()
        r = requests.post(base + "/color", timeout=5)
        assert r.status_code == 200
        assert r.json() in COLORS
        assert r.text.startswith('"')
        assert r.headers["Content-Type"] == "text/plain; charset=utf-8"
        assert r.headers["X-Content-Type-Options"] == "nosniff"

    def test_fixed_color(self, serve) -> None:
        base = serve(Config(color="purple"))
        for _ in range(5):
            assert requests.post(base + "/color", data=b'"[]"', timeout=5).json() == "purple"

    def test_get_color(self, serve) -> None:
        base = serve(Config(color="green"))
        assert requests.get(base + "/color", timeout=5).json() == "green"

    def test_simulated_failure_keeps_color(self, serve) -> None:
        base = serve(Config(color="red"))
        before = requests_total("500")
        r = requests.post(base + "/color", json=[{"color": "red", "return500": 100}], timeout=5)
        assert r.status_code == 500
        assert r.json() == "red"
        assert requests_total("500") == before + 1

    def test_malformed_body(self, serve) -> None:
        base = serve()
        r = requests.post(base + "/color", data=b"{not valid", timeout=5)
        assert r.status_code == 500
        assert r.text.strip('"') not in COLORS

    def test_fixed_latency(self, serve) -> None:
        base = serve(Config(color="blue", latency=0.3))
        t0 = time.monotonic()
        assert requests.post(base + "/color", timeout=5).status_code == 200
        assert time.monotonic() - t0 >= 0.3

    def test_delay_does_not_block_other_requests(self, serve) -> None:
        base = serve(Config(color="red"))
        slow_body = [{"color": "red", "delayPercent": 100, "delayLength": 2}]

        def timed(body):
            t0 = time.monotonic()
            r = requests.post(base + "/color", json=body, timeout=10)
            return r.status_code, time.monotonic() - t0

        with ThreadPoolExecutor(max_workers=2) as ex:
            slow = ex.submit(timed, slow_body)
            time.sleep(0.2)
            fast = ex.submit(timed, None)
            fast_code, fast_dt = fast.result()
            assert not slow.done()
            slow_code, slow_dt = slow.result()

        assert fast_code == slow_code == 200
        assert slow_dt >= 2.0
        assert fast_dt < 1.0


class TestStaticFiles:
    def test_serves_working_directory(self, serve, tmp_path) -> None:
        (tmp_path / "index.html").write_text("<h1>rollouts</h1>")
        base = serve()
        r = requests.get(base + "/", timeout=5)
        assert r.status_code == 200
        assert "rollouts" in r.text

    def test_missing_file(self, serve) -> None:
        base = serve()
        assert requests.get(base + "/nope.js", timeout=5).status_code == 404

    def test_post_elsewhere_not_allowed(self, serve) -> None:
        base = serve()
        assert requests.post(base + "/other", timeout=5).status_code == 405


def test_tls(serve, tmp_path) -> None:
    cert_pem, key_pem = generate(CertOptions(hosts=["127.0.0.1"], is_ca=True))
    (tmp_path / "tls.crt").write_bytes(cert_pem)
    (tmp_path / "tls.key").write_bytes(key_pem)
    ctx = server_context(str(tmp_path / "tls.crt"), str(tmp_path / "tls.key"), ["127.0.0.1"])
    base = serve(Config(color="orange"), ctx)
    r = requests.post(base + "/color", timeout=5, verify=False)
    assert r.json() == "orange"


def test_inflight_wait_idle() -> None:
    f = Inflight()
    assert f.wait_idle(0)
    f.inc()
    assert not f.wait_idle(0.05)
    threading.Timer(0.05, f.dec).start()
    assert f.wait_idle(2)


def test_cli_load(serve, capsys) -> None:
    base = serve(Config(color="yellow"))
    out = cli_load(base, 1)
    assert out["hits"] > 0
    assert out["colors"] == {"yellow": out["hits"]}
    assert out["codes"] == {"200": out["hits"]}
    assert '"yellow"' in capsys.readouterr().out


class TestBadInput:
    def test_huge_delay_length_is_rejected(self, serve) -> None:
        base = serve(Config(color="red"))
        b = b'[{"color": "red", "delayPercent": 100, "delayLength": 1e400}]'
        r = requests.post(base + "/color", data=b, timeout=5)
        assert r.status_code == 500
        assert "delayLength" in r.text

    def test_non_numeric_content_length(self, serve) -> None:
        base = serve()
        port = int(base.rsplit(":", 1)[1])
        conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
        conn.putrequest("POST", "/color")
        conn.putheader("Content-Length", "abc")
        conn.endheaders()
        r = conn.getresponse()
        assert r.status == 400
        assert r.read() == b"bad content-length\n"
        conn.close()


class TestMetricsLabels:
    def test_static_paths_share_one_series(self, serve) -> None:
        base = serve()
        before = requests_total("404", path="static")
        for name in ("a.js", "b.css", "c/d.png"):
            assert requests.get(base + "/" + name, timeout=5).status_code == 404
        assert requests_total("404", path="static") == before + 3
        assert REGISTRY.get_sample_value("http_requests_total", {"path": "/a.js", "status": "404"}) is None


def test_stalled_tls_handshake_does_not_block_others(serve, tmp_path) -> None:
    ctx = server_context(str(tmp_path / "none.crt"), str(tmp_path / "none.key"), ["127.0.0.1"])
    base = serve(Config(color="blue"), ctx)
    port = int(base.rsplit(":", 1)[1])
    # connects but never sends a ClientHello
    idle = socket.create_connection(("127.0.0.1", port), timeout=5)
    try:
        time.sleep(0.2)
        t0 = time.monotonic()
        r = requests.post(base + "/color", timeout=3, verify=False)
        assert r.json() == "blue"
        assert time.monotonic() - t0 < 2
    finally:
        idle.close()


class TestStopper:
    def test_second_signal_skips_delay(self) -> None:
        st = Stopper()
        threading.Timer(0.1, st.handle, (signal.SIGTERM, None)).start()
        threading.Timer(0.3, st.handle, (signal.SIGTERM, None)).start()
        t0 = time.monotonic()
        st.wait(30)
        assert time.monotonic() - t0 < 5
        assert st.now.is_set()

    def test_single_signal_waits_for_delay(self) -> None:
        st = Stopper()
        st.handle(signal.SIGTERM, None)
        t0 = time.monotonic()
        st.wait(0.2)
        dt = time.monotonic() - t0
        assert 0.2 <= dt < 2
        assert not st.now.is_set()

    def test_waits_for_first_signal(self) -> None:
        st = Stopper()
        threading.Timer(0.3, st.handle, (signal.SIGINT, None)).start()
        t0 = time.monotonic()
        st.wait(0)
        assert time.monotonic() - t0 >= 0.3
