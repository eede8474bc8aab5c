# -*- codeing = utf-8 -*-
# @Create: 2023-03-29 3:23 p.m.
# @Update: 2025-10-24 11:53 p.m.
"""Dispatch a single health check by protocol."""

import datetime as _dt
import logging
from typing import Callable, Dict, Optional

import configuration
from configuration import Target, TargetStatus

from . import http_probe
from . import network_probe

LOGGER = logging.getLogger(__name__)

ProbeFunction = Callable[[str, float], TargetStatus]

_PROBES: Dict[str, ProbeFunction] = {
    "http": lambda address, timeout: http_probe.probe_http(address, timeout),
    "tcp": lambda address, timeout: network_probe.probe_tcp(address, timeout),
    "ping": lambda address, timeout: network_probe.probe_ping(address, timeout),
}


def resolve_timeout(target: Target,
                    explicit_timeout: Optional[float] = None) -> float:
    """Prefer an explicit timeout, then the target's own duration string."""

    if explicit_timeout is not None and explicit_timeout > 0:
        return float(explicit_timeout)
    return configuration.parse_duration(target.timeout,
                                        configuration.DEFAULT_CHECK_TIMEOUT)


def probe(target: Target, timeout: Optional[float] = None) -> TargetStatus:
    """Run one check against ``target``; never raises for probe failures."""

    resolved_timeout = resolve_timeout(target, timeout)
    protocol = (target.protocol or "").strip().lower()
    probe_function = _PROBES.get(protocol)
    if probe_function is None:
        LOGGER.error("monitor.probe.unsupported target=%s protocol=%s",
                     target.id, target.protocol)
        return TargetStatus(
            is_up=False,
            response_time_ms=0,
            last_check=_dt.datetime.now(_dt.timezone.utc),
            last_error=f"Unsupported protocol: {target.protocol!r}",
        )

    LOGGER.debug("monitor.probe.start target=%s protocol=%s address=%s timeout=%s",
                 target.id, protocol, target.address, resolved_timeout)
    return probe_function(target.address, resolved_timeout)
