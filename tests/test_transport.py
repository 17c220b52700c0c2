import pytest
import aiosmtplib

from mail_outbox import transport as transport_module
from mail_outbox.models import OutboundMessage, SecurityMode
from mail_outbox.transport import SmtpTransport, TransportError, build_email, resolve_tls


class DummySMTP:
    instances = []

    def __init__(self, hostname, port, use_tls, start_tls, timeout):
        self.hostname = hostname
        self.port = port
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.timeout = timeout
        self.is_connected = False
        self.logins = []
        self.sent = []
        self.quit_called = False
        self.closed = False
        self.fail_on = None
        DummySMTP.instances.append(self)

    async def connect(self):
        if self.fail_on == "connect":
            raise aiosmtplib.SMTPConnectError("connection refused")
        self.is_connected = True

    async def login(self, username, password):
        if self.fail_on == "login":
            raise aiosmtplib.SMTPAuthenticationError(535, "bad credentials")
        self.logins.append((username, password))

    async def send_message(self, message, sender=None):
        if self.fail_on == "send":
            raise aiosmtplib.SMTPResponseException(421, "try again later")
        self.sent.append((message, sender))

    async def quit(self):
        if self.fail_on == "quit":
            raise aiosmtplib.SMTPServerDisconnected("gone")
        self.quit_called = True
        self.is_connected = False

    def close(self):
        self.closed = True
        self.is_connected = False


@pytest.fixture(autouse=True)
def dummy_smtp(monkeypatch):
    DummySMTP.instances = []
    monkeypatch.setattr(transport_module.aiosmtplib, "SMTP", DummySMTP)
    yield DummySMTP


def make_message() -> OutboundMessage:
    return OutboundMessage(id="msg-1", recipient="dest@example.com", subject="Hello", body="<p>Hi</p>")


@pytest.mark.parametrize(
    "port, security, expected",
    [
        (465, SecurityMode.AUTO, (True, False)),
        (587, SecurityMode.AUTO, (False, None)),
        (25, SecurityMode.NONE, (False, False)),
        (2525, SecurityMode.SSL_ON_CONNECT, (True, False)),
        (465, SecurityMode.STARTTLS, (False, True)),
        (587, SecurityMode.STARTTLS_WHEN_AVAILABLE, (False, None)),
    ],
)
def test_resolve_tls(port, security, expected):
    assert resolve_tls(port, security) == expected


def test_build_email_headers():
    msg = build_email(make_message(), "Mailer <noreply@example.com>")
    assert msg["From"] == "Mailer <noreply@example.com>"
    assert msg["To"] == "dest@example.com"
    assert msg["Subject"] == "Hello"
    assert msg["Message-ID"] == "<msg-1@example.com>"
    assert msg.get_content_subtype() == "html"
    assert "<p>Hi</p>" in msg.get_content()


@pytest.mark.asyncio
async def test_full_attempt_sequence():
    transport = SmtpTransport(timeout=12)
    await transport.connect("smtp.example.com", 587, SecurityMode.STARTTLS)
    assert transport.connected

    smtp = DummySMTP.instances[0]
    assert (smtp.hostname, smtp.port, smtp.use_tls, smtp.start_tls, smtp.timeout) == (
        "smtp.example.com",
        587,
        False,
        True,
        12,
    )

    await transport.authenticate("mailer", "secret")
    await transport.send(make_message(), "noreply@example.com")
    await transport.disconnect()

    assert smtp.logins == [("mailer", "secret")]
    email_msg, sender = smtp.sent[0]
    assert sender == "noreply@example.com"
    assert email_msg["To"] == "dest@example.com"
    assert smtp.quit_called is True
    assert transport.connected is False


@pytest.mark.asyncio
async def test_connect_failure_is_wrapped(dummy_smtp, monkeypatch):
    original_init = DummySMTP.__init__

    def failing_init(self, *args, **kwargs):
        original_init(self, *args, **kwargs)
        self.fail_on = "connect"

    monkeypatch.setattr(DummySMTP, "__init__", failing_init)
    transport = SmtpTransport()

    with pytest.raises(TransportError) as excinfo:
        await transport.connect("smtp.example.com", 25, SecurityMode.NONE)
    assert "smtp.example.com:25" in str(excinfo.value)


@pytest.mark.asyncio
async def test_send_failure_carries_smtp_code():
    transport = SmtpTransport()
    await transport.connect("smtp.example.com", 25, SecurityMode.NONE)
    DummySMTP.instances[0].fail_on = "send"

    with pytest.raises(TransportError) as excinfo:
        await transport.send(make_message(), "noreply@example.com")
    assert excinfo.value.smtp_code == 421
    assert "dest@example.com" in str(excinfo.value)


@pytest.mark.asyncio
async def test_authentication_failure_is_wrapped():
    transport = SmtpTransport()
    await transport.connect("smtp.example.com", 25, SecurityMode.NONE)
    DummySMTP.instances[0].fail_on = "login"

    with pytest.raises(TransportError) as excinfo:
        await transport.authenticate("mailer", "wrong")
    assert excinfo.value.smtp_code == 535


@pytest.mark.asyncio
async def test_send_without_connect_raises():
    with pytest.raises(TransportError):
        await SmtpTransport().send(make_message(), "noreply@example.com")


@pytest.mark.asyncio
async def test_disconnect_failure_closes_connection():
    transport = SmtpTransport()
    await transport.connect("smtp.example.com", 25, SecurityMode.NONE)
    smtp = DummySMTP.instances[0]
    smtp.fail_on = "quit"

    with pytest.raises(TransportError):
        await transport.disconnect()
    assert smtp.closed is True
    assert transport.connected is False


@pytest.mark.asyncio
async def test_close_is_safe_at_any_time():
    transport = SmtpTransport()
    transport.close()

    await transport.connect("smtp.example.com", 25, SecurityMode.NONE)
    smtp = DummySMTP.instances[0]
    transport.close()
    transport.close()
    assert smtp.closed is True
    assert smtp.quit_called is False
