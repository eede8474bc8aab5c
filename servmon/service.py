# -*- codeing = utf-8 -*-
# @Create: 2023-02-16 3:37 p.m.
# @Update: 2025-10-24 11:53 p.m.
"""Scheduler: one cancellable worker thread per monitored target."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import configuration
from configuration import Target, TargetStatus

from . import probe as probe_engine
from .state_machine import MonitorEvent, MonitorStateMachine, NotificationMessage
from .target_store import TargetStore

LOGGER = logging.getLogger(__name__)

ProbeFunction = Callable[[Target, Optional[float]], TargetStatus]


@dataclass
class _LoopHandle:
    cancel: threading.Event
    thread: threading.Thread


class MonitorScheduler:
    """Coordinate per-target worker threads and their state machines.

    The scheduler lock guards only the handle table; probes, store writes and
    notifications run outside of it.
    """

    def __init__(
        self,
        store: TargetStore,
        *,
        dispatcher: Optional[Callable[[NotificationMessage], object]] = None,
        event_handler: Optional[Callable[[MonitorEvent], None]] = None,
        probe_function: Optional[ProbeFunction] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._event_handler = event_handler or (lambda event: None)
        self._probe = probe_function or probe_engine.probe
        self._lock = threading.Lock()
        self._loops: Dict[str, _LoopHandle] = {}

    def start(self, target: Target) -> None:
        """(Re)start the loop for ``target``; a running loop is cancelled."""

        interval, timeout = configuration.resolve_check_timings(target)
        cancel = threading.Event()
        thread = threading.Thread(
            name=f"Monitor:{target.name}",
            target=self._run_loop,
            args=(target.id, cancel, interval, timeout),
            daemon=True,
        )
        with self._lock:
            previous = self._loops.pop(target.id, None)
            if previous is not None:
                previous.cancel.set()
            self._loops[target.id] = _LoopHandle(cancel=cancel, thread=thread)
            thread.start()
        LOGGER.info(
            "monitor.scheduler.start target=%s protocol=%s interval=%s timeout=%s restarted=%s",
            target.id, target.protocol, interval, timeout, previous is not None)

    def stop(self, target_id: str) -> bool:
        with self._lock:
            handle = self._loops.pop(target_id, None)
        if handle is None:
            return False
        handle.cancel.set()
        LOGGER.info("monitor.scheduler.stop target=%s", target_id)
        return True

    def stop_all(self, *, join_timeout: Optional[float] = None) -> None:
        with self._lock:
            handles = list(self._loops.values())
            self._loops.clear()
        for handle in handles:
            handle.cancel.set()
        if join_timeout is not None:
            for handle in handles:
                handle.thread.join(join_timeout)
        LOGGER.info("monitor.scheduler.stop_all count=%s", len(handles))

    def is_running(self, target_id: str) -> bool:
        with self._lock:
            handle = self._loops.get(target_id)
        return (handle is not None and not handle.cancel.is_set()
                and handle.thread.is_alive())

    def active_ids(self) -> List[str]:
        with self._lock:
            return [
                target_id for target_id, handle in self._loops.items()
                if not handle.cancel.is_set()
            ]

    def run_single_check(self, target: Target) -> TargetStatus:
        """Probe ``target`` once with its own timeout; nothing is recorded."""

        _, timeout = configuration.resolve_check_timings(target)
        return self._safe_probe(target, timeout)

    def _safe_probe(self, target: Target, timeout: float) -> TargetStatus:
        try:
            return self._probe(target, timeout)
        except Exception as exc:
            LOGGER.exception("monitor.scheduler.probe_error target=%s error=%s",
                             target.id, exc)
            return TargetStatus(
                is_up=False,
                response_time_ms=0,
                last_check=_dt.datetime.now(_dt.timezone.utc),
                last_error=str(exc) or exc.__class__.__name__,
            )

    def _run_loop(self, target_id: str, cancel: threading.Event,
                  interval: float, timeout: float) -> None:
        target = self._store.get(target_id)
        if target is None:
            self._release(target_id, cancel)
            return
        state_machine = MonitorStateMachine(target)
        try:
            while not cancel.is_set():
                if not self._run_cycle(target_id, state_machine, cancel,
                                       timeout):
                    break
                if cancel.wait(interval):
                    break
        finally:
            self._release(target_id, cancel)
            LOGGER.debug("monitor.scheduler.loop_exit target=%s", target_id)

    def _release(self, target_id: str, cancel: threading.Event) -> None:
        with self._lock:
            handle = self._loops.get(target_id)
            if handle is not None and handle.cancel is cancel:
                del self._loops[target_id]

    def _run_cycle(self, target_id: str, state_machine: MonitorStateMachine,
                   cancel: threading.Event, timeout: float) -> bool:
        target = self._store.get(target_id)
        if target is None:
            LOGGER.info("monitor.scheduler.target_removed target=%s", target_id)
            return False
        state_machine.update_target(target)

        status = self._safe_probe(target, timeout)
        if cancel.is_set():
            LOGGER.debug("monitor.scheduler.result_discarded target=%s",
                         target_id)
            return False

        previous = self._store.swap_status(target_id, status)
        if previous is None:
            return False

        event = state_machine.transition(previous, status)
        self._handle_event(event)
        return True

    def _handle_event(self, event: MonitorEvent) -> None:
        if event.is_status_change:
            LOGGER.info(
                "monitor.scheduler.status_change target=%s up=%s failures=%s error=%s",
                event.target.id, event.status.is_up,
                event.consecutive_failures, event.status.last_error)
        self._dispatch_notification(event)
        try:
            self._event_handler(event)
        except Exception as exc:
            LOGGER.exception(
                "monitor.scheduler.event_handler_error target=%s error=%s",
                event.target.id, exc)

    def _dispatch_notification(self, event: MonitorEvent) -> None:
        if event.notification is None or self._dispatcher is None:
            return
        try:
            self._dispatcher(event.notification)
        except Exception as exc:
            LOGGER.exception(
                "monitor.scheduler.notification_error target=%s kind=%s error=%s",
                event.target.id, event.notification.kind.value, exc)
