"""Alert delivery: desktop notifications and routing by notification mode."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
from typing import Callable, Iterable, List, Optional, Sequence

from PySide6 import QtCore, QtWidgets

import configuration

from . import send_email
from .mail_listener import MailMessage
from .state_machine import AlertKind, NotificationMessage
from .throttle import NotificationThrottler

LOGGER = logging.getLogger(__name__)

TRAY_MESSAGE_TIMEOUT_MS = 10000
LOCAL_SENDER = "servmon@localhost"
SUMMARY_TARGET_ID = "*"


def _translate(text: str) -> str:
    return QtCore.QCoreApplication.translate("Notifier", text)


class TrayPresenter:
    """Show a message through the system tray, or log it when there is none."""

    def __init__(self, tray: Optional[QtWidgets.QSystemTrayIcon] = None):
        self._tray = tray

    def _ensure_tray(self) -> Optional[QtWidgets.QSystemTrayIcon]:
        if self._tray is not None:
            return self._tray
        app = QtWidgets.QApplication.instance()
        if not isinstance(app, QtWidgets.QApplication):
            return None
        if not QtWidgets.QSystemTrayIcon.isSystemTrayAvailable():
            return None
        icon = app.style().standardIcon(
            QtWidgets.QStyle.StandardPixmap.SP_MessageBoxInformation)
        self._tray = QtWidgets.QSystemTrayIcon(icon, app)
        self._tray.show()
        return self._tray

    def __call__(self, title: str, body: str, critical: bool) -> None:
        tray = self._ensure_tray()
        if tray is None:
            LOGGER.info("notify.local.log title=%s body=%s critical=%s", title,
                        body, critical)
            return
        icon = (QtWidgets.QSystemTrayIcon.MessageIcon.Critical if critical else
                QtWidgets.QSystemTrayIcon.MessageIcon.Information)
        tray.showMessage(title, body, icon, TRAY_MESSAGE_TIMEOUT_MS)


class _NotificationBridge(QtCore.QObject):
    """Lives on the GUI thread; queued signal delivery crosses threads."""

    notificationRequested = QtCore.Signal(str, str, bool)

    def __init__(self, presenter: Callable[[str, str, bool], None]) -> None:
        super().__init__()
        self._presenter = presenter
        self.notificationRequested.connect(self._present)

    @QtCore.Slot(str, str, bool)
    def _present(self, title: str, body: str, critical: bool) -> None:
        try:
            self._presenter(title, body, critical)
        except Exception:
            LOGGER.exception("notify.local.error title=%s", title)


class LocalNotifier:
    """Desktop notifications that are safe to raise from worker threads."""

    def __init__(
        self,
        presenter: Optional[Callable[[str, str, bool], None]] = None,
    ) -> None:
        self._presenter = presenter or TrayPresenter()
        self._bridge: Optional[_NotificationBridge] = None
        self._bridge_lock = threading.Lock()

    def _bridge_for(self, app: QtCore.QCoreApplication) -> _NotificationBridge:
        with self._bridge_lock:
            if self._bridge is None:
                bridge = _NotificationBridge(self._presenter)
                bridge.moveToThread(app.thread())
                self._bridge = bridge
            return self._bridge

    def notify(self, title: str, body: str, *, critical: bool = False) -> None:
        app = QtCore.QCoreApplication.instance()
        if app is None or QtCore.QThread.currentThread() == app.thread():
            try:
                self._presenter(title, body, critical)
            except Exception:
                LOGGER.exception("notify.local.error title=%s", title)
            return
        self._bridge_for(app).notificationRequested.emit(title, body, critical)


def _alert_detail(notification: NotificationMessage) -> str:
    if notification.kind is AlertKind.UP:
        return "UP"
    if notification.kind is AlertKind.CRITICAL:
        return _translate("CRITICAL ({count} failures)").format(
            count=notification.failures)
    return "DOWN"


class AlertDispatcher:
    """Pass alerts through the throttler, then out on the configured channel.

    ``inapp`` shows a desktop notification, ``email`` submits the alert to the
    embedded mail relay and ``none`` drops it before the throttler is asked.
    """

    def __init__(
        self,
        throttler: NotificationThrottler,
        *,
        local_notifier: Optional[LocalNotifier] = None,
        mail_submitter: Optional[Callable[[MailMessage], object]] = None,
        mode: str = "inapp",
        recipients: Iterable[str] = (),
        clock: Optional[Callable[[], _dt.datetime]] = None,
    ) -> None:
        self._throttler = throttler
        self._local_notifier = local_notifier or LocalNotifier()
        self._mail_submitter = mail_submitter
        self._lock = threading.Lock()
        self._mode = "inapp"
        self._recipients: List[str] = []
        self._clock = clock or (lambda: _dt.datetime.now().astimezone())
        self.set_mode(mode)
        self.set_recipients(recipients)

    @property
    def throttler(self) -> NotificationThrottler:
        return self._throttler

    @property
    def mode(self) -> str:
        with self._lock:
            return self._mode

    def set_mode(self, mode: str) -> None:
        normalized = (mode or "").strip().lower()
        if normalized not in configuration.NOTIFICATION_MODES:
            raise ValueError(f"Unknown notification mode: {mode!r}")
        with self._lock:
            self._mode = normalized

    def set_recipients(self, recipients: Iterable[str]) -> None:
        cleaned = [str(item).strip() for item in recipients if str(item).strip()]
        with self._lock:
            self._recipients = cleaned

    def set_mail_submitter(
            self, submitter: Optional[Callable[[MailMessage], object]]) -> None:
        with self._lock:
            self._mail_submitter = submitter

    def __call__(self, notification: NotificationMessage) -> bool:
        return self.dispatch(notification)

    def dispatch(self, notification: NotificationMessage) -> bool:
        """Deliver ``notification`` if mode and throttler allow; report it."""

        mode = self.mode
        if mode == "none":
            return False

        if notification.critical:
            allowed = self._throttler.record(notification.target_id,
                                             notification.kind)
        else:
            allowed = self._throttler.should_notify(notification.target_id,
                                                    notification.kind)
        if not allowed:
            LOGGER.info("notify.dispatch.suppressed target=%s kind=%s",
                        notification.target_id, notification.kind.value)
            return False

        LOGGER.info("notify.dispatch.sent target=%s kind=%s mode=%s",
                    notification.target_id, notification.kind.value, mode)
        if mode == "inapp":
            self._local_notifier.notify(notification.title,
                                        notification.body,
                                        critical=notification.critical)
        else:
            self._submit_mail(notification)
        return True

    def _submit_mail(self, notification: NotificationMessage) -> None:
        with self._lock:
            recipients = list(self._recipients)
            submitter = self._mail_submitter
        if submitter is None or not recipients:
            LOGGER.warning(
                "notify.mail.skipped target=%s reason=%s",
                notification.target_id,
                "no relay" if submitter is None else "no recipients",
            )
            return
        if notification.kind is AlertKind.SUMMARY:
            subject, body = notification.title, notification.body
        else:
            subject, body = send_email.build_alert_email(
                notification.target_name, _alert_detail(notification),
                self._clock())
        submitter(
            MailMessage(sender=LOCAL_SENDER,
                        recipients=tuple(recipients),
                        subject=subject,
                        body=body))

    def send_summary(self, names: Sequence[str]) -> bool:
        """Send one ``SUMMARY`` alert listing the targets that are down."""

        names = [name for name in names if name]
        if not names:
            return False
        message = NotificationMessage(
            target_id=SUMMARY_TARGET_ID,
            target_name=_translate("{count} servers").format(count=len(names)),
            kind=AlertKind.SUMMARY,
            title=_translate("Servers down"),
            body=_translate("Servers down: {names}").format(
                names=", ".join(names)),
            failures=len(names),
        )
        return self.dispatch(message)
