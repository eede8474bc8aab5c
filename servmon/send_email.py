# -*- codeing = utf-8 -*-
# @Time : 2023-03-29 3:56 p.m.
# @File : send_email.py
"""Outbound half of the mail relay: forward messages to a real SMTP server."""

import datetime as _dt
import logging
import smtplib
from dataclasses import dataclass
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, parseaddr
from typing import Any, Iterable, List, Mapping, Tuple

from PySide6 import QtCore

LOGGER = logging.getLogger(__name__)

DEFAULT_RELAY_TIMEOUT = 30.0


def _translate(text: str) -> str:
    return QtCore.QCoreApplication.translate("Email", text)


@dataclass(frozen=True)
class RelayConfig:
    """Where and how relayed mail leaves the machine."""

    host: str = ""
    port: int = 587
    username: str = ""
    password: str = ""
    use_starttls: bool = True
    use_ssl: bool = False
    from_addr: str = ""

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "RelayConfig":
        """Build from the ``[Mail]`` mapping returned by ``configuration``."""

        try:
            port = int(values.get("smtp_port") or 587)
        except (TypeError, ValueError) as exc:
            raise ValueError(_translate("SMTP port must be an integer")) from exc
        return cls(
            host=str(values.get("smtp_server") or "").strip(),
            port=port,
            username=str(values.get("username") or "").strip(),
            password=str(values.get("password") or ""),
            use_starttls=bool(values.get("use_starttls", True)),
            use_ssl=bool(values.get("use_ssl", False)),
            from_addr=str(values.get("from_addr") or "").strip(),
        )

    @property
    def configured(self) -> bool:
        return bool(self.host)

    @property
    def sender(self) -> str:
        return self.from_addr or self.username


PROVIDER_PRESETS = {
    "gmail": RelayConfig(host="smtp.gmail.com", port=587, use_starttls=True),
    "outlook": RelayConfig(host="smtp-mail.outlook.com",
                           port=587,
                           use_starttls=True),
    "yahoo": RelayConfig(host="smtp.mail.yahoo.com", port=587,
                         use_starttls=True),
}


def clean_app_password(password: str) -> str:
    """Application passwords are often pasted in space-separated groups."""

    return password.replace(" ", "")


def _format_address(address: str) -> str:
    """Render an address for a header, encoding the display name as UTF-8."""

    name, email_addr = parseaddr(address)
    if not email_addr:
        return str(Header(name or address, "utf-8"))
    if name:
        return formataddr((str(Header(name, "utf-8")), email_addr))
    return email_addr


def _extract_email(address: str) -> str:
    return parseaddr(address)[1] or address


def _normalize_recipients(recipients: Iterable[str]) -> List[str]:
    addresses = [str(addr).strip() for addr in recipients if str(addr).strip()]
    if not addresses:
        raise ValueError(_translate("Recipient list must not be empty"))
    return addresses


def build_mime_message(message, config: RelayConfig) -> Tuple[str, List[str], str]:
    """Return ``(envelope_from, envelope_to, serialized_message)``."""

    sender = config.sender or message.sender
    if not sender:
        raise ValueError(_translate("No sender address configured"))
    recipients = _normalize_recipients(message.recipients)

    mime = MIMEMultipart()
    mime["From"] = _format_address(sender)
    mime["To"] = ", ".join(_format_address(addr) for addr in recipients)
    mime["Subject"] = Header(message.subject, "utf-8")
    mime["Date"] = formatdate(localtime=True)
    mime.attach(MIMEText(message.body, "plain", "utf-8"))

    return (
        _extract_email(sender),
        [_extract_email(addr) for addr in recipients],
        mime.as_string(),
    )


def relay_message(message,
                  config: RelayConfig,
                  *,
                  timeout: float = DEFAULT_RELAY_TIMEOUT) -> None:
    """Forward ``message`` through ``config``; raises on any failure."""

    if not config.configured:
        raise ValueError(_translate("SMTP relay host is not configured"))
    if config.use_starttls and config.use_ssl:
        raise ValueError(
            _translate("use_starttls and use_ssl cannot both be enabled"))

    envelope_from, envelope_to, payload = build_mime_message(message, config)
    smtp_factory = smtplib.SMTP_SSL if config.use_ssl else smtplib.SMTP

    LOGGER.info("mail.relay.start server=%s port=%s recipients=%s", config.host,
                config.port, envelope_to)
    try:
        with smtp_factory(config.host, config.port, timeout=timeout) as server:
            if config.use_starttls:
                server.starttls()
            if config.username:
                server.login(config.username,
                             clean_app_password(config.password))
            server.sendmail(envelope_from, envelope_to, payload)
    except smtplib.SMTPAuthenticationError:
        LOGGER.exception(
            "mail.relay.authentication_error server=%s username=%s recipients=%s",
            config.host,
            config.username,
            envelope_to,
        )
        raise
    except smtplib.SMTPException:
        LOGGER.exception(
            "mail.relay.communication_error server=%s port=%s recipients=%s",
            config.host,
            config.port,
            envelope_to,
        )
        raise
    except OSError:
        LOGGER.exception(
            "mail.relay.connection_error server=%s port=%s recipients=%s",
            config.host,
            config.port,
            envelope_to,
        )
        raise

    LOGGER.info("mail.relay.sent server=%s recipients=%s", config.host,
                envelope_to)


def _format_timestamp(occurred_at: _dt.datetime) -> str:
    return occurred_at.strftime("%H:%M:%S - %d/%m/%Y")


def build_alert_email(target_name: str, detail: str,
                      occurred_at: _dt.datetime) -> Tuple[str, str]:
    """Subject and plain-text body for an alert mail."""

    subject = _translate("ALERT: {name} is {detail}").format(name=target_name,
                                                              detail=detail)
    lines = [
        _translate("SERVER ALERT"),
        "",
        _translate("Server: {name}").format(name=target_name),
        _translate("Status: {detail}").format(detail=detail),
        _translate("Time: {time}").format(time=_format_timestamp(occurred_at)),
        "",
        "---",
        _translate("Sent by your monitoring app"),
    ]
    return subject, "\n".join(lines)


def build_test_email(config: RelayConfig,
                     occurred_at: _dt.datetime) -> Tuple[str, str]:
    subject = _translate("Test - Monitoring App")
    lines = [
        _translate("Email configuration test"),
        "",
        _translate("This is a test message sent by your monitoring app."),
        "",
        _translate("Configuration used:"),
        _translate("- SMTP server: {host}:{port}").format(host=config.host,
                                                        port=config.port),
        _translate("- User: {user}").format(user=config.username),
        _translate("- STARTTLS: {tls}").format(tls=config.use_starttls),
        "",
        "---",
        _translate("Sent at {time}").format(
            time=_format_timestamp(occurred_at)),
    ]
    return subject, "\n".join(lines)
