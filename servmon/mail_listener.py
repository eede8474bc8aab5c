"""Inbound half of the mail relay: a loopback-only SMTP submission listener.

Only the subset needed for local alert submission is spoken: ``HELO/EHLO``,
``MAIL FROM``, ``RCPT TO``, ``DATA``, ``RSET``, ``NOOP`` and ``QUIT``. There is
no authentication; binding to the loopback interface is the trust boundary.
"""

from __future__ import annotations

import datetime as _dt
import logging
import re
import socket
import socketserver
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from typing import Callable, List, Optional, Tuple

LOGGER = logging.getLogger(__name__)

LOCAL_HOST = "127.0.0.1"
SERVER_NAME = "localhost"
MAX_LINE_LENGTH = 8192
MAX_MESSAGE_SIZE = 1024 * 1024
CONNECTION_TIMEOUT = 30.0

_ADDRESS_PATTERN = re.compile(r"^(?:FROM|TO)\s*:\s*<?([^<>\s]*)>?",
                              re.IGNORECASE)


@dataclass(frozen=True)
class MailMessage:
    """A submitted message, consumed once by the relay client."""

    sender: str
    recipients: Tuple[str, ...]
    subject: str
    body: str
    created_at: _dt.datetime = field(
        default_factory=lambda: _dt.datetime.now(_dt.timezone.utc))


def _decode_subject(raw_subject: str) -> str:
    try:
        return str(make_header(decode_header(raw_subject)))
    except (UnicodeDecodeError, LookupError, ValueError):
        return raw_subject


def parse_message_data(sender: str, recipients, data: str) -> MailMessage:
    """Extract the ``Subject`` header and the body after the first blank line."""

    lines = data.replace("\r\n", "\n").split("\n")
    subject = ""
    body_lines: List[str] = []
    in_headers = True
    for line in lines:
        if in_headers:
            if line == "":
                in_headers = False
            elif line.lower().startswith("subject:") and not subject:
                subject = _decode_subject(line.split(":", 1)[1].strip())
        else:
            body_lines.append(line)

    return MailMessage(
        sender=sender,
        recipients=tuple(recipients),
        subject=subject,
        body="\n".join(body_lines).strip(),
    )


def _parse_path(argument: str) -> Optional[str]:
    match = _ADDRESS_PATTERN.match(argument.strip())
    if match is None:
        return None
    return match.group(1)


class MailSubmissionHandler(socketserver.StreamRequestHandler):
    """Serve one SMTP session on a single client connection."""

    timeout = CONNECTION_TIMEOUT

    def setup(self) -> None:
        super().setup()
        self._reset_envelope()

    def _reset_envelope(self) -> None:
        self.sender: Optional[str] = None
        self.recipients: List[str] = []

    def _reply(self, code: int, text: str) -> None:
        self.wfile.write(f"{code} {text}\r\n".encode("utf-8"))
        self.wfile.flush()

    def _read_line(self) -> Optional[str]:
        raw = self.rfile.readline(MAX_LINE_LENGTH + 1)
        if not raw:
            return None
        if len(raw) > MAX_LINE_LENGTH:
            raise ValueError("line too long")
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    def handle(self) -> None:
        peer = self.client_address
        LOGGER.debug("mail.listener.connect peer=%s", peer)
        self._reply(220, f"{SERVER_NAME} ESMTP servmon")
        try:
            while True:
                line = self._read_line()
                if line is None:
                    break
                verb, _, argument = line.partition(" ")
                if not self._dispatch(verb.upper(), argument):
                    break
        except (socket.timeout, ConnectionError) as exc:
            LOGGER.warning("mail.listener.connection_error peer=%s error=%s",
                           peer, exc)
        except ValueError as exc:
            LOGGER.warning("mail.listener.protocol_error peer=%s error=%s", peer,
                           exc)
            self._reply(500, "Line too long")

    def _dispatch(self, verb: str, argument: str) -> bool:
        if verb in ("HELO", "EHLO"):
            self._reset_envelope()
            self._reply(250, SERVER_NAME)
        elif verb == "MAIL":
            sender = _parse_path(argument)
            if sender is None:
                self._reply(501, "Syntax: MAIL FROM:<address>")
            elif self.sender is not None:
                self._reply(503, "Sender already specified")
            else:
                self.sender = sender
                self._reply(250, "OK")
        elif verb == "RCPT":
            recipient = _parse_path(argument)
            if self.sender is None:
                self._reply(503, "Need MAIL before RCPT")
            elif not recipient:
                self._reply(501, "Syntax: RCPT TO:<address>")
            else:
                self.recipients.append(recipient)
                self._reply(250, "OK")
        elif verb == "DATA":
            if not self.recipients:
                self._reply(503, "Need RCPT before DATA")
            else:
                self._receive_data()
        elif verb == "RSET":
            self._reset_envelope()
            self._reply(250, "OK")
        elif verb == "NOOP":
            self._reply(250, "OK")
        elif verb == "QUIT":
            self._reply(221, "Bye")
            return False
        else:
            self._reply(502, "Command not implemented")
        return True

    def _receive_data(self) -> None:
        self._reply(354, "End data with <CR><LF>.<CR><LF>")
        lines: List[str] = []
        size = 0
        while True:
            line = self._read_line()
            if line is None:
                raise ConnectionError("connection closed during DATA")
            if line == ".":
                break
            if line.startswith("."):
                line = line[1:]
            size += len(line) + 2
            if size <= MAX_MESSAGE_SIZE:
                lines.append(line)

        if size > MAX_MESSAGE_SIZE:
            self._reply(552, "Message size exceeds limit")
        else:
            message = parse_message_data(self.sender or "", self.recipients,
                                         "\n".join(lines))
            self.server.deliver(message)
            self._reply(250, "OK: queued")
        self._reset_envelope()


class MailSubmissionServer(socketserver.TCPServer):
    """Serial TCP server; one session at a time on the accept-loop thread."""

    allow_reuse_address = True

    def __init__(self,
                 on_message: Callable[[MailMessage], None],
                 host: str = LOCAL_HOST,
                 port: int = 0) -> None:
        self._on_message = on_message
        super().__init__((host, port), MailSubmissionHandler)

    @property
    def port(self) -> int:
        return self.server_address[1]

    def deliver(self, message: MailMessage) -> None:
        LOGGER.info("mail.listener.received from=%s to=%s subject=%s",
                    message.sender, list(message.recipients), message.subject)
        try:
            self._on_message(message)
        except Exception:  # pragma: no cover
            LOGGER.exception("mail.listener.callback_error subject=%s",
                             message.subject)
