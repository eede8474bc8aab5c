"""Embedded mail relay: loopback listener plus asynchronous forwarding."""

from __future__ import annotations

import collections
import logging
import smtplib
import threading
from email.utils import formatdate
from typing import Callable, List, Optional

from . import send_email
from .mail_listener import LOCAL_HOST, MailMessage, MailSubmissionServer
from .send_email import RelayConfig

LOGGER = logging.getLogger(__name__)

DEFAULT_INBOX_SIZE = 100
DEFAULT_SUBMIT_TIMEOUT = 10.0

Forwarder = Callable[[MailMessage, RelayConfig], None]


def _header_text(value: str) -> str:
    return " ".join(str(value).splitlines())


class MailRelay:
    """Own the listener handle and hand received mail to the relay client.

    Start, stop and restart are serialized so a restart always releases the
    previous listener before binding a new one.
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        host: str = LOCAL_HOST,
        forwarder: Optional[Forwarder] = None,
        inbox_size: int = DEFAULT_INBOX_SIZE,
    ) -> None:
        self._host = host
        self._config = config or RelayConfig()
        self._forwarder = forwarder or send_email.relay_message
        self._lifecycle_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._server: Optional[MailSubmissionServer] = None
        self._thread: Optional[threading.Thread] = None
        self._inbox: collections.deque = collections.deque(maxlen=inbox_size)

    # --- configuration ----------------------------------------------------
    @property
    def config(self) -> RelayConfig:
        with self._state_lock:
            return self._config

    def update_config(self, config: RelayConfig) -> None:
        with self._state_lock:
            self._config = config

    # --- lifecycle --------------------------------------------------------
    @property
    def port(self) -> Optional[int]:
        with self._lifecycle_lock:
            return self._server.port if self._server is not None else None

    @property
    def is_running(self) -> bool:
        with self._lifecycle_lock:
            return self._thread is not None and self._thread.is_alive()

    def start(self) -> int:
        with self._lifecycle_lock:
            if self._server is not None:
                return self._server.port
            server = MailSubmissionServer(self._handle_message, host=self._host)
            thread = threading.Thread(
                name=f"MailRelay:{server.port}",
                target=server.serve_forever,
                kwargs={"poll_interval": 0.2},
                daemon=True,
            )
            thread.start()
            self._server = server
            self._thread = thread
            config = self.config
            LOGGER.info("mail.relay.listening host=%s port=%s upstream=%s:%s",
                        self._host, server.port, config.host or "-",
                        config.port)
            return server.port

    def stop(self) -> None:
        with self._lifecycle_lock:
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
            if server is None:
                return
            server.shutdown()
            server.server_close()
            if thread is not None:
                thread.join(timeout=5)
            LOGGER.info("mail.relay.stopped port=%s", server.port)

    def restart(self, config: Optional[RelayConfig] = None) -> int:
        with self._lifecycle_lock:
            if config is not None:
                self.update_config(config)
            self.stop()
            return self.start()

    # --- inbound ----------------------------------------------------------
    def received_messages(self) -> List[MailMessage]:
        with self._state_lock:
            return list(self._inbox)

    def _handle_message(self, message: MailMessage) -> None:
        with self._state_lock:
            self._inbox.append(message)
            config = self._config
        if not config.configured:
            LOGGER.warning(
                "mail.relay.unconfigured subject=%s stored locally only",
                message.subject)
            return
        self.forward_async(message)

    def submit(self,
               message: MailMessage,
               *,
               timeout: float = DEFAULT_SUBMIT_TIMEOUT) -> None:
        """Hand ``message`` to the embedded listener over SMTP."""

        port = self.port
        if port is None:
            raise RuntimeError("Mail relay is not running")

        lines = [
            f"From: {_header_text(message.sender)}",
            f"To: {', '.join(message.recipients)}",
            f"Subject: {_header_text(message.subject)}",
            f"Date: {formatdate(localtime=True)}",
            "",
            *message.body.splitlines(),
        ]
        payload = "\r\n".join(lines).encode("utf-8")
        with smtplib.SMTP(self._host, port, timeout=timeout) as client:
            client.sendmail(message.sender, list(message.recipients), payload)
        LOGGER.debug("mail.relay.submitted port=%s subject=%s", port,
                     message.subject)

    def submit_async(self, message: MailMessage) -> threading.Thread:
        def _run() -> None:
            try:
                self.submit(message)
            except (smtplib.SMTPException, OSError, RuntimeError) as exc:
                LOGGER.error("mail.relay.submit_failed subject=%s error=%s",
                             message.subject, exc)

        thread = threading.Thread(name="MailRelay:submit",
                                  target=_run,
                                  daemon=True)
        thread.start()
        return thread

    # --- outbound ---------------------------------------------------------
    def forward(self, message: MailMessage) -> None:
        """Relay ``message`` upstream synchronously; errors propagate."""

        self._forwarder(message, self.config)

    def forward_async(self, message: MailMessage) -> threading.Thread:
        def _run() -> None:
            try:
                self.forward(message)
            except Exception as exc:
                LOGGER.error("mail.relay.forward_failed subject=%s error=%s",
                             message.subject, exc)

        thread = threading.Thread(name="MailRelay:forward",
                                  target=_run,
                                  daemon=True)
        thread.start()
        return thread


__all__ = ["MailMessage", "MailRelay", "RelayConfig"]
