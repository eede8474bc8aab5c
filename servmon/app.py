"""Application facade exposing the operations a front-end calls."""

from __future__ import annotations

import datetime as _dt
import logging
import os
import threading
from dataclasses import replace
from typing import Callable, List, Optional, Union

import configuration
from configuration import Settings, Target, TargetStatus

from . import send_email
from .mail_relay import MailMessage, MailRelay
from .notifier import AlertDispatcher, LocalNotifier
from .send_email import PROVIDER_PRESETS, RelayConfig
from .service import MonitorScheduler, ProbeFunction
from .state_machine import MonitorEvent
from .target_store import TargetStore, UnknownTargetError
from .throttle import NotificationThrottler

LOGGER = logging.getLogger(__name__)

SHUTDOWN_JOIN_TIMEOUT = 1.0


class MonitorApp:
    """Wire the store, scheduler, throttler, notifier and mail relay together.

    Every public method is safe to call while scheduler loops are running.
    """

    def __init__(
        self,
        *,
        store: Optional[TargetStore] = None,
        throttler: Optional[NotificationThrottler] = None,
        relay: Optional[MailRelay] = None,
        local_notifier: Optional[LocalNotifier] = None,
        probe_function: Optional[ProbeFunction] = None,
        event_handler: Optional[Callable[[MonitorEvent], None]] = None,
        targets_path: Union[str, os.PathLike, None] = None,
    ) -> None:
        self._settings = Settings()
        self._settings_lock = threading.Lock()
        self._persist_lock = threading.Lock()
        self._targets_path = targets_path
        self._store = store or TargetStore()
        self._throttler = throttler or NotificationThrottler(
            self._settings.notification_cooldown)
        self._relay = relay or MailRelay()
        self._dispatcher = AlertDispatcher(
            self._throttler,
            local_notifier=local_notifier,
            mail_submitter=self._relay.submit_async,
            mode=self._settings.notification_mode,
        )
        self._scheduler = MonitorScheduler(
            self._store,
            dispatcher=self._dispatcher.dispatch,
            event_handler=event_handler,
            probe_function=probe_function,
        )

    @property
    def store(self) -> TargetStore:
        return self._store

    @property
    def scheduler(self) -> MonitorScheduler:
        return self._scheduler

    @property
    def relay(self) -> MailRelay:
        return self._relay

    @property
    def dispatcher(self) -> AlertDispatcher:
        return self._dispatcher

    # --- lifecycle --------------------------------------------------------
    def startup(self) -> None:
        """Load settings and targets, start the relay, then every loop."""

        self._apply_settings(self._load_settings())
        targets = self._store.replace_all(self._load_targets())
        try:
            self._relay.start()
        except OSError:
            LOGGER.exception("app.startup.relay_error")
        for target in targets:
            self._scheduler.start(target)
        LOGGER.info("app.startup targets=%s smtp_port=%s", len(targets),
                    self._relay.port)

    def shutdown(self) -> None:
        self._scheduler.stop_all(join_timeout=SHUTDOWN_JOIN_TIMEOUT)
        self._relay.stop()
        self._save_targets()
        LOGGER.info("app.shutdown")

    def _load_settings(self) -> Settings:
        try:
            return configuration.read_settings()
        except (OSError, ValueError):
            LOGGER.exception("app.settings.load_failed")
            return Settings()

    def _load_targets(self) -> List[Target]:
        try:
            return configuration.read_target_list(self._targets_path)
        except (OSError, ValueError) as exc:
            LOGGER.error("app.targets.load_failed error=%s", exc)
            return []

    def _save_targets(self) -> bool:
        """Persist the current set; failures are logged, never raised."""

        with self._persist_lock:
            try:
                configuration.write_target_list(self._store.list(),
                                                self._targets_path)
            except OSError:
                LOGGER.exception("app.targets.save_failed path=%s",
                                 self._targets_path or "default")
                return False
        return True

    # --- targets ----------------------------------------------------------
    def list_targets(self) -> List[Target]:
        return self._store.list()

    def add_target(self, target: Target) -> Target:
        """Register ``target`` under a fresh id and start monitoring it."""

        added = self._store.upsert(replace(target, id="",
                                           status=TargetStatus()))
        self._scheduler.start(added)
        LOGGER.info("app.target.added id=%s name=%s protocol=%s", added.id,
                    added.name, added.protocol)
        self._save_targets()
        return added

    def update_target(self, target: Target) -> Target:
        """Replace a target's definition and restart its loop."""

        updated = self._store.update(target)
        self._scheduler.start(updated)
        LOGGER.info("app.target.updated id=%s", updated.id)
        self._save_targets()
        return updated

    def delete_target(self, target_id: str) -> bool:
        self._scheduler.stop(target_id)
        removed = self._store.remove(target_id)
        if removed is None:
            return False
        LOGGER.info("app.target.deleted id=%s", target_id)
        self._save_targets()
        return True

    def manual_check(self, target: Target) -> TargetStatus:
        """Probe ``target`` once, registered or not; nothing is recorded."""

        return self._scheduler.run_single_check(target)

    # --- notifications ----------------------------------------------------
    def set_notifications_enabled(self, enabled: bool) -> None:
        self._throttler.set_enabled(enabled)

    def get_notifications_enabled(self) -> bool:
        return self._throttler.is_enabled()

    def set_notification_cooldown(self, minutes: int) -> None:
        self._throttler.set_cooldown(minutes)
        with self._settings_lock:
            self._settings = replace(self._settings,
                                     notification_cooldown=int(minutes))
            settings = self._settings
        try:
            configuration.write_settings(settings)
        except OSError:
            LOGGER.exception("app.settings.save_failed option=cooldown")

    def get_notification_cooldown(self) -> int:
        return self._throttler.get_cooldown()

    def clear_notification_cooldowns(self) -> None:
        self._throttler.clear_cooldowns()

    def send_test_alert(self) -> None:
        """Relay a test mail synchronously; relay errors reach the caller."""

        config = self._relay.config
        if not config.configured:
            raise ValueError("SMTP relay host is not configured")
        with self._settings_lock:
            recipient = self._settings.user_email or config.sender
        if not recipient:
            raise ValueError("No recipient address configured")
        subject, body = send_email.build_test_email(
            config, _dt.datetime.now().astimezone())
        self._relay.forward(
            MailMessage(sender=config.sender,
                        recipients=(recipient,),
                        subject=subject,
                        body=body))
        LOGGER.info("app.test_alert.sent recipient=%s", recipient)

    def send_down_summary(self) -> bool:
        names = [
            target.name for target in self._store.list()
            if not target.status.is_up and target.status.last_check is not None
        ]
        return self._dispatcher.send_summary(names)

    # --- settings ---------------------------------------------------------
    def get_settings(self) -> Settings:
        with self._settings_lock:
            return self._settings

    def save_settings(self, settings: Settings) -> None:
        configuration.write_settings(settings)
        self._apply_settings(settings)

    def _apply_settings(self, settings: Settings) -> None:
        relay_config = RelayConfig.from_mapping(settings.mail)
        self._throttler.set_cooldown(settings.notification_cooldown)
        self._dispatcher.set_mode(settings.notification_mode)
        self._dispatcher.set_recipients(
            [settings.user_email] if settings.user_email else [])
        with self._settings_lock:
            self._settings = settings

        if relay_config == self._relay.config:
            return
        if self._relay.is_running:
            LOGGER.info("app.settings.relay_restart server=%s",
                        relay_config.host or "-")
            self._relay.restart(relay_config)
        else:
            self._relay.update_config(relay_config)

    def get_smtp_port(self) -> Optional[int]:
        return self._relay.port

    def get_relay_preset(self, provider: str) -> RelayConfig:
        try:
            return PROVIDER_PRESETS[(provider or "").strip().lower()]
        except KeyError:
            raise ValueError(f"Unknown mail provider: {provider!r}") from None


__all__ = ["MonitorApp", "UnknownTargetError"]
