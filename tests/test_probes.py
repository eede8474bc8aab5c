import socket
import subprocess
import sys
import time
import types
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import requests  # noqa: E402

from configuration import Target, TargetStatus  # noqa: E402
from servmon import http_probe, network_probe, probe  # noqa: E402


def _closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class _Response:

    def __init__(self, status_code):
        self.status_code = status_code
        self.closed = False

    def close(self):
        self.closed = True


@pytest.mark.parametrize("status_code", [200, 204, 301, 399])
def test_probe_http_success_below_400(monkeypatch, status_code):
    calls = []

    def fake_get(url, timeout):
        calls.append((url, timeout))
        return _Response(status_code)

    monkeypatch.setattr(http_probe.requests, "get", fake_get)

    status = http_probe.probe_http("https://example.com/health", 4.0)

    assert status.is_up is True
    assert status.last_error == ""
    assert status.last_check is not None
    assert status.last_check.tzinfo is not None
    assert calls == [("https://example.com/health", 4.0)]


@pytest.mark.parametrize("status_code", [400, 404, 500, 503])
def test_probe_http_failure_reports_status_code(monkeypatch, status_code):
    monkeypatch.setattr(http_probe.requests, "get",
                        lambda url, timeout: _Response(status_code))

    status = http_probe.probe_http("https://example.com", 1.0)

    assert status.is_up is False
    assert status.last_error == f"HTTP {status_code}"


def test_probe_http_transport_error_uses_exception_message(monkeypatch, caplog):

    def fake_get(url, timeout):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(http_probe.requests, "get", fake_get)

    with caplog.at_level("WARNING"):
        status = http_probe.probe_http("https://down.example.com", 1.0)

    assert status.is_up is False
    assert status.last_error == "connection refused"
    assert "monitor.http.error" in caplog.text


def test_probe_http_measures_latency_including_failures(monkeypatch):

    def slow_get(url, timeout):
        time.sleep(0.05)
        raise requests.Timeout("timed out")

    monkeypatch.setattr(http_probe.requests, "get", slow_get)

    status = http_probe.probe_http("https://slow.example.com", 0.05)

    assert status.response_time_ms >= 40


@pytest.mark.parametrize(
    "address, expected",
    [
        ("example.com:22", ("example.com", 22)),
        ("tcp://10.0.0.1:5432", ("10.0.0.1", 5432)),
        ("[::1]:8080", ("::1", 8080)),
    ],
)
def test_split_host_port(address, expected):
    assert network_probe.split_host_port(address) == expected


@pytest.mark.parametrize("address", ["example.com", "host:notaport", ":80"])
def test_split_host_port_rejects_incomplete_addresses(address):
    with pytest.raises(ValueError):
        network_probe.split_host_port(address)


def test_probe_tcp_succeeds_against_listening_socket():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    try:
        status = network_probe.probe_tcp(
            f"127.0.0.1:{server.getsockname()[1]}", 1.0)
    finally:
        server.close()

    assert status.is_up is True
    assert status.last_error == ""


def test_probe_tcp_closed_port_fails_quickly():
    target = Target(id="t", name="closed", address=f"127.0.0.1:{_closed_port()}",
                    protocol="tcp", timeout="1s")

    started = time.monotonic()
    status = probe.probe(target)
    elapsed = time.monotonic() - started

    assert status.is_up is False
    assert status.last_error
    assert elapsed < 2.0


def test_probe_tcp_invalid_address_is_down():
    status = network_probe.probe_tcp("no-port-here", 1.0)

    assert status.is_up is False
    assert "host:port" in status.last_error


@pytest.mark.parametrize(
    "address, expected",
    [
        ("https://example.com/health", "example.com"),
        ("example.com:443", "example.com"),
        ("8.8.8.8", "8.8.8.8"),
        ("[2001:db8::1]:80", "2001:db8::1"),
    ],
)
def test_extract_ping_host(address, expected):
    assert network_probe.extract_ping_host(address) == expected


def test_build_ping_command_per_platform():
    assert network_probe.build_ping_command("h", 2.5, platform_name="nt") == [
        "ping", "-n", "1", "-w", "2500", "h"
    ]
    assert network_probe.build_ping_command("h", 2.5,
                                            platform_name="posix") == [
        "ping", "-c", "1", "-W", "3", "h"
    ]


def test_probe_ping_success(monkeypatch):
    calls = []
    monkeypatch.setattr(network_probe.shutil, "which", lambda name: "/bin/ping")

    def fake_run(cmd, **kwargs):
        calls.append((cmd, kwargs))
        return types.SimpleNamespace(returncode=0)

    monkeypatch.setattr(network_probe.subprocess, "run", fake_run)

    status = network_probe.probe_ping("http://example.com:80/x", 3.0)

    assert status.is_up is True
    assert calls[0][0][-1] == "example.com"
    assert calls[0][1]["timeout"] == pytest.approx(
        3.0 + network_probe.PING_GRACE_SECONDS)


@pytest.mark.parametrize(
    "error",
    [
        subprocess.CalledProcessError(1, ["ping"]),
        subprocess.TimeoutExpired(["ping"], 3),
    ],
)
def test_probe_ping_failure_detail(monkeypatch, error):
    monkeypatch.setattr(network_probe.shutil, "which", lambda name: "/bin/ping")

    def fake_run(cmd, **kwargs):
        raise error

    monkeypatch.setattr(network_probe.subprocess, "run", fake_run)

    status = network_probe.probe_ping("example.com", 1.0)

    assert status.is_up is False
    assert status.last_error == network_probe.PING_FAILED


def test_probe_ping_missing_binary_is_failed_check(monkeypatch):
    monkeypatch.setattr(network_probe.shutil, "which", lambda name: None)

    status = network_probe.probe_ping("example.com", 1.0)

    assert status.is_up is False
    assert status.last_error == network_probe.PING_FAILED


def test_probe_unsupported_protocol_returns_down_status():
    target = Target(id="x", name="X", address="example.com", protocol="gopher")

    status = probe.probe(target)

    assert status.is_up is False
    assert "Unsupported protocol" in status.last_error
    assert "gopher" in status.last_error


def test_probe_dispatches_by_protocol_with_resolved_timeout(monkeypatch):
    seen = []

    def fake_tcp(address, timeout):
        seen.append((address, timeout))
        return TargetStatus(is_up=True)

    monkeypatch.setattr(network_probe, "probe_tcp", fake_tcp)
    target = Target(id="db", name="DB", address="db:5432", protocol="TCP",
                    timeout="3s")

    assert probe.probe(target).is_up is True
    assert probe.probe(target, 7).is_up is True
    assert seen == [("db:5432", 3.0), ("db:5432", 7.0)]


def test_resolve_timeout_defaults_when_unparsable():
    target = Target(id="a", name="A", address="a", protocol="http",
                    timeout="later")

    assert probe.resolve_timeout(target) == 10.0
    assert probe.resolve_timeout(target, 0) == 10.0
