# -*- codeing = utf-8 -*-
# @Create: 2023-03-29 3:23 p.m.
# @Update: 2025-10-24 11:53 p.m.
"""HTTP probing helper functions."""

import datetime as _dt
import logging
import time

import requests

from configuration import TargetStatus

LOGGER = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def probe_http(url: str, timeout: float) -> TargetStatus:
    """Issue a GET against ``url``; any status below 400 counts as up."""

    started = time.perf_counter()
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as exc:
        elapsed = _elapsed_ms(started)
        LOGGER.warning("monitor.http.error url=%s elapsed_ms=%s error=%s", url,
                       elapsed, exc)
        return TargetStatus(
            is_up=False,
            response_time_ms=elapsed,
            last_check=_utc_now(),
            last_error=str(exc) or exc.__class__.__name__,
        )

    elapsed = _elapsed_ms(started)
    status_code = response.status_code
    close = getattr(response, "close", None)
    if callable(close):
        close()

    if status_code < 400:
        LOGGER.info("monitor.http.success url=%s status=%s elapsed_ms=%s", url,
                    status_code, elapsed)
        return TargetStatus(
            is_up=True,
            response_time_ms=elapsed,
            last_check=_utc_now(),
        )

    LOGGER.warning("monitor.http.failure url=%s status=%s elapsed_ms=%s", url,
                   status_code, elapsed)
    return TargetStatus(
        is_up=False,
        response_time_ms=elapsed,
        last_check=_utc_now(),
        last_error=f"HTTP {status_code}",
    )
