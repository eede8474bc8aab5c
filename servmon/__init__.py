# -*- codeing = utf-8 -*-
# @Create: 2023-03-29 3:23 p.m.
# @Update: 2025-10-24 11:53 p.m.
"""Server health monitoring: probes, scheduler, throttled alerts, mail relay."""

from . import http_probe, network_probe, probe, send_email
from .app import MonitorApp
from .mail_relay import MailMessage, MailRelay
from .notifier import AlertDispatcher, LocalNotifier
from .send_email import RelayConfig
from .service import MonitorScheduler
from .state_machine import (
    AlertKind,
    MonitorEvent,
    MonitorState,
    MonitorStateMachine,
    NotificationMessage,
)
from .target_store import (
    EmptyAddressError,
    EmptyNameError,
    TargetStore,
    TargetValidationError,
    UnknownTargetError,
    UnsupportedProtocolError,
)
from .throttle import NotificationThrottler

__all__ = [
    "AlertDispatcher",
    "AlertKind",
    "EmptyAddressError",
    "EmptyNameError",
    "LocalNotifier",
    "MailMessage",
    "MailRelay",
    "MonitorApp",
    "MonitorEvent",
    "MonitorScheduler",
    "MonitorState",
    "MonitorStateMachine",
    "NotificationMessage",
    "NotificationThrottler",
    "RelayConfig",
    "TargetStore",
    "TargetValidationError",
    "UnknownTargetError",
    "UnsupportedProtocolError",
    "http_probe",
    "network_probe",
    "probe",
    "send_email",
]
