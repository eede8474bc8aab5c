"""Per-loop notification policy: transitions, failure counting, escalation."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from PySide6 import QtCore

from configuration import Target, TargetStatus

# Failures at which a DOWN transition (or an announced outage) escalates.
CRITICAL_FAILURE_THRESHOLD = 3
# Every Nth consecutive failure of an ongoing outage re-alerts as critical.
STILL_DOWN_REMINDER_EVERY = 5


class MonitorState(Enum):
    """Outcome of comparing the previous and new status of a target."""

    HEALTHY = "healthy"
    RECOVERED = "recovered"
    OUTAGE = "outage"
    OUTAGE_ONGOING = "outage_ongoing"

    @property
    def display_text(self) -> str:
        translate = QtCore.QCoreApplication.translate
        return {
            MonitorState.HEALTHY: translate("MonitorState", "Service healthy"),
            MonitorState.RECOVERED: translate("MonitorState", "Service recovered"),
            MonitorState.OUTAGE: translate("MonitorState", "Service down"),
            MonitorState.OUTAGE_ONGOING: translate("MonitorState",
                                                   "Service still down"),
        }[self]


class AlertKind(Enum):
    """Notification kinds; each has its own cooldown slot per target."""

    UP = "UP"
    DOWN = "DOWN"
    CRITICAL = "CRITICAL"
    SUMMARY = "SUMMARY"


@dataclass(frozen=True)
class NotificationMessage:
    """An alert waiting to pass the throttler."""

    target_id: str
    target_name: str
    kind: AlertKind
    title: str
    body: str
    failures: int = 0

    @property
    def critical(self) -> bool:
        return self.kind is AlertKind.CRITICAL


@dataclass(frozen=True)
class MonitorEvent:
    target: Target
    previous: TargetStatus
    status: TargetStatus
    state: MonitorState
    consecutive_failures: int
    notification: Optional[NotificationMessage]

    @property
    def is_status_change(self) -> bool:
        return self.previous.is_up != self.status.is_up


def _translate(text: str) -> str:
    return QtCore.QCoreApplication.translate("Notification", text)


def build_transition_message(target: Target, kind: AlertKind,
                             failures: int = 0) -> NotificationMessage:
    label = "UP" if kind is AlertKind.UP else "DOWN"
    return NotificationMessage(
        target_id=target.id,
        target_name=target.name,
        kind=kind,
        title=_translate("Server status"),
        body=_translate("Server {name} is now {status}").format(
            name=target.name, status=label),
        failures=failures,
    )


def build_critical_message(target: Target, failures: int, *,
                           ongoing: bool) -> NotificationMessage:
    if ongoing:
        detail = _translate("STILL DOWN (failures: {count})")
    else:
        detail = _translate("DOWN (failures: {count})")
    return NotificationMessage(
        target_id=target.id,
        target_name=target.name,
        kind=AlertKind.CRITICAL,
        title=_translate("CRITICAL: server status"),
        body=_translate("Server {name} is {detail}").format(
            name=target.name, detail=detail.format(count=failures)),
        failures=failures,
    )


class MonitorStateMachine:
    """Track consecutive failures for one scheduler loop and pick alerts.

    The counter lives only as long as the loop that owns the machine; a
    restart begins counting from zero again.
    """

    def __init__(self, target: Target):
        self._target = target
        self._consecutive_failures = 0
        self._outage_announced = False
        self._outage_escalated = False

    @property
    def target(self) -> Target:
        return self._target

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def update_target(self, target: Target) -> None:
        self._target = target

    def transition(self, previous: TargetStatus,
                   status: TargetStatus) -> MonitorEvent:
        target = self._target
        notification: Optional[NotificationMessage] = None

        if previous.is_up != status.is_up:
            if status.is_up:
                self._consecutive_failures = 0
                self._outage_announced = False
                self._outage_escalated = False
                state = MonitorState.RECOVERED
                notification = build_transition_message(target, AlertKind.UP)
            else:
                self._consecutive_failures += 1
                state = MonitorState.OUTAGE
                failures = self._consecutive_failures
                if failures >= CRITICAL_FAILURE_THRESHOLD:
                    self._outage_escalated = True
                    notification = build_critical_message(target,
                                                          failures,
                                                          ongoing=False)
                else:
                    notification = build_transition_message(
                        target, AlertKind.DOWN, failures)
                self._outage_announced = True
        elif not status.is_up:
            self._consecutive_failures += 1
            state = MonitorState.OUTAGE_ONGOING
            failures = self._consecutive_failures
            if failures % STILL_DOWN_REMINDER_EVERY == 0:
                notification = build_critical_message(target,
                                                      failures,
                                                      ongoing=True)
            elif (self._outage_announced and not self._outage_escalated
                  and failures >= CRITICAL_FAILURE_THRESHOLD):
                self._outage_escalated = True
                notification = build_critical_message(target,
                                                      failures,
                                                      ongoing=False)
        else:
            state = MonitorState.HEALTHY

        return MonitorEvent(
            target=target,
            previous=previous,
            status=status,
            state=state,
            consecutive_failures=self._consecutive_failures,
            notification=notification,
        )
