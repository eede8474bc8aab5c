import datetime
import logging
import smtplib
import socket
import sys
import threading
import time
from email import message_from_string
from email.header import decode_header, make_header
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from servmon import send_email  # noqa: E402
from servmon.mail_listener import (  # noqa: E402
    MAX_MESSAGE_SIZE,
    MailSubmissionServer,
    parse_message_data,
)
from servmon.mail_relay import MailMessage, MailRelay  # noqa: E402
from servmon.send_email import RelayConfig  # noqa: E402

CONFIGURED = RelayConfig(host="smtp.example.com", port=587,
                         username="ops@example.com", password="abcd efgh")


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class RecordingForwarder:

    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.done = threading.Event()

    def __call__(self, message, config):
        self.calls.append((message, config))
        self.done.set()
        if self.error is not None:
            raise self.error


@pytest.fixture
def relay_factory():
    relays = []

    def _factory(config=CONFIGURED, forwarder=None):
        relay = MailRelay(config, forwarder=forwarder or RecordingForwarder())
        relays.append(relay)
        return relay

    yield _factory
    for relay in relays:
        relay.stop()


def _message(**overrides):
    values = dict(sender="servmon@localhost",
                  recipients=("ops@example.com",),
                  subject="ALERT: Web is DOWN",
                  body="Server: Web\nStatus: DOWN")
    values.update(overrides)
    return MailMessage(**values)


def test_parse_message_data_extracts_subject_and_body():
    data = ("From: a@example.com\r\nsubject: =?utf-8?b?5pyN5Yqh5Zmo?=\r\n"
            "X-Other: 1\r\n\r\n\r\nline one\r\n\r\nline two\r\n")

    message = parse_message_data("a@example.com", ["b@example.com"], data)

    assert message.subject == "服务器"
    assert message.body == "line one\n\nline two"
    assert message.recipients == ("b@example.com",)
    assert message.created_at.tzinfo is not None


def test_parse_message_data_without_headers_separator():
    message = parse_message_data("a", ["b"], "Subject: only headers")

    assert message.subject == "only headers"
    assert message.body == ""


def test_submit_round_trip_through_listener(relay_factory):
    forwarder = RecordingForwarder()
    relay = relay_factory(forwarder=forwarder)
    port = relay.start()

    assert relay.port == port
    assert relay.is_running
    relay.submit(_message(recipients=("a@example.com", "b@example.com"),
                          subject="Prüfung ✓",
                          body=".leading dot\nsecond line"))

    assert forwarder.done.wait(3)
    received = relay.received_messages()
    assert len(received) == 1
    assert received[0].subject == "Prüfung ✓"
    assert received[0].body == ".leading dot\nsecond line"
    assert received[0].recipients == ("a@example.com", "b@example.com")
    assert received[0].sender == "servmon@localhost"
    assert forwarder.calls[0][1] == CONFIGURED


def test_unconfigured_relay_only_stores_locally(relay_factory, caplog):
    forwarder = RecordingForwarder()
    relay = relay_factory(config=RelayConfig(), forwarder=forwarder)
    relay.start()

    with caplog.at_level(logging.WARNING):
        relay.submit(_message())
        assert _wait_for(lambda: relay.received_messages())

    assert forwarder.calls == []
    assert "mail.relay.unconfigured" in caplog.text


def test_restart_releases_previous_listener(relay_factory):
    relay = relay_factory()
    first_port = relay.start()
    assert relay.start() == first_port

    second_port = relay.restart(RelayConfig(host="smtp.other.example"))

    assert relay.port == second_port
    assert relay.is_running
    assert relay.config.host == "smtp.other.example"
    if second_port != first_port:
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", first_port), timeout=1)


def test_stop_clears_port_and_submit_requires_running(relay_factory):
    relay = relay_factory()
    relay.start()
    relay.stop()
    relay.stop()

    assert relay.port is None
    assert not relay.is_running
    with pytest.raises(RuntimeError):
        relay.submit(_message())


def test_listener_rejects_out_of_order_commands():
    server = MailSubmissionServer(lambda message: None)
    thread = threading.Thread(target=server.serve_forever,
                              kwargs={"poll_interval": 0.05},
                              daemon=True)
    thread.start()
    try:
        with smtplib.SMTP("127.0.0.1", server.port, timeout=5) as client:
            client.ehlo()
            assert client.docmd("RCPT", "TO:<a@example.com>")[0] == 503
            assert client.docmd("DATA")[0] == 503
            assert client.docmd("VRFY", "someone")[0] == 502
            assert client.docmd("MAIL", "nonsense")[0] == 501
            assert client.docmd("MAIL", "FROM:<a@example.com>")[0] == 250
            assert client.docmd("MAIL", "FROM:<b@example.com>")[0] == 503
            assert client.docmd("RSET")[0] == 250
            assert client.docmd("NOOP")[0] == 250
    finally:
        server.shutdown()
        server.server_close()


def test_listener_rejects_oversized_message():
    delivered = []
    server = MailSubmissionServer(delivered.append)
    thread = threading.Thread(target=server.serve_forever,
                              kwargs={"poll_interval": 0.05},
                              daemon=True)
    thread.start()
    try:
        body = ("x" * 1000 + "\r\n") * (MAX_MESSAGE_SIZE // 1000 + 10)
        with smtplib.SMTP("127.0.0.1", server.port, timeout=10) as client:
            with pytest.raises(smtplib.SMTPDataError) as excinfo:
                client.sendmail("a@example.com", ["b@example.com"],
                                "Subject: big\r\n\r\n" + body)
        assert excinfo.value.smtp_code == 552
        assert delivered == []
    finally:
        server.shutdown()
        server.server_close()


def test_forward_propagates_errors(relay_factory):
    relay = relay_factory(forwarder=RecordingForwarder(
        error=smtplib.SMTPException("rejected")))

    with pytest.raises(smtplib.SMTPException):
        relay.forward(_message())


def test_forward_async_logs_errors(relay_factory, caplog):
    forwarder = RecordingForwarder(error=OSError("unreachable"))
    relay = relay_factory(forwarder=forwarder)

    with caplog.at_level(logging.ERROR):
        relay.forward_async(_message()).join(3)

    assert forwarder.calls
    assert "mail.relay.forward_failed" in caplog.text


# --- outbound relay client ------------------------------------------------

SMTP_CALLS = []


class DummySMTP:

    def __init__(self, host, port, timeout=None):
        assert isinstance(port, int)
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.login_args = None
        self.sent_messages = []

    def __enter__(self):
        SMTP_CALLS.append(self)
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def starttls(self):
        self.started_tls = True

    def login(self, username, password):
        self.login_args = (username, password)

    def sendmail(self, from_addr, to_addrs, msg):
        self.sent_messages.append((from_addr, to_addrs, msg))


class FailingLoginSMTP(DummySMTP):

    def login(self, username, password):
        raise smtplib.SMTPAuthenticationError(535, b"bad credentials")


@pytest.fixture(autouse=True)
def _reset_smtp_calls():
    SMTP_CALLS.clear()
    yield
    SMTP_CALLS.clear()


def test_relay_message_uses_starttls_login_and_sender_override(monkeypatch):
    monkeypatch.setattr(send_email.smtplib, "SMTP", DummySMTP)
    config = RelayConfig(host="smtp.example.com", port=587,
                         username="login@example.com", password="abcd efgh ijkl",
                         from_addr="Alerts <alerts@example.com>")

    send_email.relay_message(_message(subject="服务器 DOWN"), config,
                             timeout=12)

    client = SMTP_CALLS[0]
    assert (client.host, client.port, client.timeout) == ("smtp.example.com",
                                                          587, 12)
    assert client.started_tls is True
    assert client.login_args == ("login@example.com", "abcdefghijkl")
    from_addr, to_addrs, payload = client.sent_messages[0]
    assert from_addr == "alerts@example.com"
    assert to_addrs == ["ops@example.com"]
    parsed = message_from_string(payload)
    assert str(make_header(decode_header(parsed["Subject"]))) == "服务器 DOWN"
    assert parsed["Date"]


def test_relay_message_ssl_without_login(monkeypatch):
    monkeypatch.setattr(send_email.smtplib, "SMTP_SSL", DummySMTP)
    config = RelayConfig(host="smtp.example.com", port=465,
                         use_starttls=False, use_ssl=True,
                         from_addr="alerts@example.com")

    send_email.relay_message(_message(), config)

    client = SMTP_CALLS[0]
    assert client.started_tls is False
    assert client.login_args is None
    assert client.sent_messages[0][0] == "alerts@example.com"


@pytest.mark.parametrize(
    "config",
    [
        RelayConfig(),
        RelayConfig(host="smtp.example.com", use_starttls=True, use_ssl=True),
    ],
)
def test_relay_message_rejects_invalid_configuration(config):
    with pytest.raises(ValueError):
        send_email.relay_message(_message(), config)


def test_relay_message_logs_and_reraises_auth_errors(monkeypatch, caplog):
    monkeypatch.setattr(send_email.smtplib, "SMTP", FailingLoginSMTP)

    with caplog.at_level(logging.ERROR):
        with pytest.raises(smtplib.SMTPAuthenticationError):
            send_email.relay_message(_message(), CONFIGURED)

    assert "mail.relay.authentication_error" in caplog.text


def test_relay_message_requires_recipients(monkeypatch):
    monkeypatch.setattr(send_email.smtplib, "SMTP", DummySMTP)

    with pytest.raises(ValueError):
        send_email.relay_message(_message(recipients=(" ",)), CONFIGURED)
    assert SMTP_CALLS == []


def test_relay_config_from_mapping_and_presets():
    config = RelayConfig.from_mapping({
        "smtp_server": " smtp.example.com ",
        "smtp_port": "2525",
        "username": "user",
        "use_ssl": False,
    })

    assert config.host == "smtp.example.com"
    assert config.port == 2525
    assert config.sender == "user"
    assert config.configured
    assert send_email.PROVIDER_PRESETS["gmail"].host == "smtp.gmail.com"
    assert all(preset.port == 587 and preset.use_starttls
               for preset in send_email.PROVIDER_PRESETS.values())
    with pytest.raises(ValueError):
        RelayConfig.from_mapping({"smtp_port": "abc"})


def test_alert_and_test_email_content():
    occurred = datetime.datetime(2025, 3, 4, 5, 6, 7)

    subject, body = send_email.build_alert_email("Web", "DOWN", occurred)
    assert subject == "ALERT: Web is DOWN"
    assert "Server: Web" in body
    assert "05:06:07 - 04/03/2025" in body

    subject, body = send_email.build_test_email(CONFIGURED, occurred)
    assert "Test" in subject
    assert "smtp.example.com:587" in body
