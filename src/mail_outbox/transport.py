# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP transport client used by the delivery loop.

One ``SmtpTransport`` instance carries exactly one delivery attempt: the
loop opens a fresh connection, optionally authenticates, sends a single
message and disconnects. There is no pooling across attempts, so a stale
connection can never leak from one attempt into the next.

TLS behaviour by security mode:
- ``none``: plain SMTP
- ``ssl``: implicit TLS from connect
- ``starttls``: plain connect, mandatory STARTTLS upgrade
- ``starttls_when_available``: STARTTLS only if the server advertises it
- ``auto``: implicit TLS on port 465, otherwise as ``starttls_when_available``

Example:
    A single attempt::

        transport = SmtpTransport(timeout=30)
        await transport.connect("smtp.example.com", 587, SecurityMode.STARTTLS)
        await transport.authenticate("mailer", "secret")
        await transport.send(message, sender="noreply@example.com")
        await transport.disconnect()
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage

import aiosmtplib

from .models import OutboundMessage, SecurityMode


class TransportError(RuntimeError):
    """Raised when connecting, authenticating, sending or disconnecting fails.

    Attributes:
        smtp_code: SMTP reply code reported by the server, if any.
    """

    def __init__(self, message: str, smtp_code: int | None = None):
        super().__init__(message)
        self.smtp_code = smtp_code


def resolve_tls(port: int, security: SecurityMode) -> tuple[bool, bool | None]:
    """Map a security mode to aiosmtplib ``(use_tls, start_tls)`` flags.

    ``start_tls=None`` lets aiosmtplib upgrade only when the server offers it.
    """
    match SecurityMode(security):
        case SecurityMode.NONE:
            return False, False
        case SecurityMode.SSL_ON_CONNECT:
            return True, False
        case SecurityMode.STARTTLS:
            return False, True
        case SecurityMode.STARTTLS_WHEN_AVAILABLE:
            return False, None
        case _:
            if int(port) == 465:
                return True, False
            return False, None


def build_email(message: OutboundMessage, sender: str) -> EmailMessage:
    """Build the MIME message for an outbound message.

    The body is sent as HTML and the ledger id is reused as Message-ID so a
    resent copy can be correlated by the receiver.
    """
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = message.recipient
    msg["Subject"] = message.subject
    domain = sender.rpartition("@")[2].strip(" >") or "localhost"
    msg["Message-ID"] = f"<{message.id}@{domain}>"
    msg.set_content(message.body, subtype="html")
    return msg


def _wrap(action: str, exc: Exception) -> TransportError:
    smtp_code = getattr(exc, "code", None) if isinstance(exc, aiosmtplib.SMTPException) else None
    detail = f"{action} failed: {exc}"
    if smtp_code:
        detail = f"{detail} (SMTP {smtp_code})"
    return TransportError(detail, smtp_code=smtp_code)


_TRANSPORT_ERRORS = (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError, ValueError)


class SmtpTransport:
    """Per-attempt SMTP client built on aiosmtplib.

    Attributes:
        timeout: Timeout in seconds applied to every SMTP command.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._smtp: aiosmtplib.SMTP | None = None

    @property
    def connected(self) -> bool:
        return self._smtp is not None and self._smtp.is_connected

    async def connect(self, host: str, port: int, security: SecurityMode) -> None:
        """Open the connection, negotiating TLS according to ``security``."""
        use_tls, start_tls = resolve_tls(port, security)
        self._smtp = aiosmtplib.SMTP(
            hostname=host,
            port=int(port),
            use_tls=use_tls,
            start_tls=start_tls,
            timeout=self.timeout,
        )
        try:
            await self._smtp.connect()
        except _TRANSPORT_ERRORS as exc:
            raise _wrap(f"Connection to {host}:{port}", exc) from exc

    async def authenticate(self, username: str, password: str | None) -> None:
        """Log in with the configured credentials."""
        if self._smtp is None:
            raise TransportError("Not connected")
        try:
            await self._smtp.login(username, password or "")
        except _TRANSPORT_ERRORS as exc:
            raise _wrap(f"Authentication as {username}", exc) from exc

    async def send(self, message: OutboundMessage, sender: str) -> None:
        """Transmit one message."""
        if self._smtp is None:
            raise TransportError("Not connected")
        try:
            email_msg = build_email(message, sender)
            await self._smtp.send_message(email_msg, sender=sender)
        except _TRANSPORT_ERRORS as exc:
            raise _wrap(f"Sending to {message.recipient}", exc) from exc

    async def disconnect(self) -> None:
        """Close the session politely with QUIT."""
        smtp, self._smtp = self._smtp, None
        if smtp is None or not smtp.is_connected:
            return
        try:
            await smtp.quit()
        except _TRANSPORT_ERRORS as exc:
            smtp.close()
            raise _wrap("Disconnect", exc) from exc

    def close(self) -> None:
        """Drop the connection without QUIT; safe to call at any time."""
        smtp, self._smtp = self._smtp, None
        if smtp is not None and smtp.is_connected:
            smtp.close()
