# -*- codeing = utf-8 -*-
"""TCP and ping connectivity probes."""

import datetime as _dt
import logging
import math
import os
import shutil
import socket
import subprocess
import time
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from configuration import TargetStatus

LOGGER = logging.getLogger(__name__)

PING_FAILED = "Ping failed"
# Extra time granted to the ping process beyond its own wait flag.
PING_GRACE_SECONDS = 2.0


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def split_host_port(address: str) -> Tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``, or a URL with a port)."""

    text = address.strip()
    candidate = text if "://" in text else f"tcp://{text}"
    parts = urlsplit(candidate)
    try:
        port = parts.port
    except ValueError as exc:
        raise ValueError(f"Invalid port in address {address!r}") from exc
    if not parts.hostname or port is None:
        raise ValueError(f"Address {address!r} must look like host:port")
    return parts.hostname, port


def extract_ping_host(address: str) -> str:
    """Strip scheme, path and port so only the bare host remains."""

    text = address.strip()
    if "://" in text:
        text = text.split("://", 1)[1]
    text = text.split("/", 1)[0]
    if text.startswith("["):
        return text[1:].split("]", 1)[0]
    if text.count(":") == 1:
        text = text.split(":", 1)[0]
    return text


def probe_tcp(address: str, timeout: float) -> TargetStatus:
    """Open and immediately close a TCP connection to ``address``."""

    started = time.perf_counter()
    try:
        host, port = split_host_port(address)
        with socket.create_connection((host, port), timeout=timeout):
            elapsed = _elapsed_ms(started)
    except (OSError, ValueError) as exc:
        elapsed = _elapsed_ms(started)
        LOGGER.warning("monitor.socket.offline address=%s elapsed_ms=%s error=%s",
                       address, elapsed, exc)
        return TargetStatus(
            is_up=False,
            response_time_ms=elapsed,
            last_check=_utc_now(),
            last_error=str(exc) or exc.__class__.__name__,
        )

    LOGGER.info("monitor.socket.success address=%s elapsed_ms=%s", address,
                elapsed)
    return TargetStatus(is_up=True, response_time_ms=elapsed,
                        last_check=_utc_now())


def build_ping_command(host: str,
                       timeout: float,
                       *,
                       platform_name: Optional[str] = None) -> List[str]:
    """Single echo request; Windows waits in ms, everything else in seconds."""

    timeout = max(float(timeout), 0.0)
    if (platform_name or os.name) == "nt":
        wait_ms = max(int(math.ceil(timeout * 1000)), 1)
        return ["ping", "-n", "1", "-w", str(wait_ms), host]
    wait_seconds = max(int(math.ceil(timeout)), 1)
    return ["ping", "-c", "1", "-W", str(wait_seconds), host]


def probe_ping(address: str, timeout: float) -> TargetStatus:
    """Run the system ping utility once against the host in ``address``."""

    host = extract_ping_host(address)
    ping_cmd = build_ping_command(host, timeout)
    started = time.perf_counter()

    if not host or shutil.which(ping_cmd[0]) is None:
        LOGGER.warning("monitor.ping.command_missing host=%s command=%s", host,
                       ping_cmd[0])
        return TargetStatus(
            is_up=False,
            response_time_ms=_elapsed_ms(started),
            last_check=_utc_now(),
            last_error=PING_FAILED,
        )

    try:
        subprocess.run(
            ping_cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=max(float(timeout), 0.0) + PING_GRACE_SECONDS,
            check=True,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired,
            OSError) as exc:
        elapsed = _elapsed_ms(started)
        LOGGER.warning("monitor.ping.failure host=%s elapsed_ms=%s error=%s",
                       host, elapsed, exc)
        return TargetStatus(
            is_up=False,
            response_time_ms=elapsed,
            last_check=_utc_now(),
            last_error=PING_FAILED,
        )

    elapsed = _elapsed_ms(started)
    LOGGER.info("monitor.ping.success host=%s elapsed_ms=%s", host, elapsed)
    return TargetStatus(is_up=True, response_time_ms=elapsed,
                        last_check=_utc_now())


__all__ = [
    "build_ping_command",
    "extract_ping_host",
    "probe_ping",
    "probe_tcp",
    "split_host_port",
]
