# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the mail outbox.

Models:
    - MailStatus: Lifecycle status of a delivery record
    - SecurityMode: How the SMTP connection is secured
    - OutboundMessage: A unit of work travelling through the queue
    - DeliveryRecord: A ledger row as returned to callers
    - SmtpSettings: Live-reloadable transport and retry settings
    - ServiceSettings: Process-level settings (storage, HTTP server)
"""

from __future__ import annotations

import os
import threading
import time
import uuid
from email.utils import getaddresses
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

_id_lock = threading.Lock()
_last_id_ms = 0
_id_sequence = 0


def sequential_id() -> str:
    """Return a UUID that sorts after every id generated before it.

    Uses the UUIDv7 layout: 48-bit millisecond timestamp, then a 12-bit
    counter for ids created within the same millisecond, then random bits.
    """
    global _last_id_ms, _id_sequence
    with _id_lock:
        now_ms = time.time_ns() // 1_000_000
        if now_ms > _last_id_ms:
            _last_id_ms, _id_sequence = now_ms, 0
        else:
            _id_sequence += 1
            if _id_sequence > 0xFFF:
                _last_id_ms, _id_sequence = _last_id_ms + 1, 0
        millis, sequence = _last_id_ms, _id_sequence
    random_bits = int.from_bytes(os.urandom(8), "big") & ((1 << 62) - 1)
    value = (millis & ((1 << 48) - 1)) << 80 | 0x7 << 76 | sequence << 64 | 0b10 << 62 | random_bits
    return str(uuid.UUID(int=value))


def validate_mailbox(value: str) -> str:
    """Check that ``value`` is exactly one mailbox.

    Accepts ``user@example.com`` and ``Name <user@example.com>``.

    Raises:
        ValueError: On header injection, lists of addresses or a missing
            local part or domain.
    """
    if not value or len(value) > 320:
        raise ValueError("e-mail address is empty or too long")
    if any(char in value for char in ("\r", "\n", "\0")):
        raise ValueError("e-mail address must not contain line breaks")
    addresses = getaddresses([value])
    if len(addresses) != 1:
        raise ValueError(f"'{value}' is not a single e-mail address")
    address = addresses[0][1]
    local, at, domain = address.rpartition("@")
    if not at or not local or not domain or any(char.isspace() for char in address):
        raise ValueError(f"'{value}' is not a valid e-mail address")
    return value.strip()


class MailStatus(str, Enum):
    """Lifecycle status of a delivery record.

    Attributes:
        IN_PROGRESS: Submitted and not yet delivered (possibly retrying).
        SENT: Terminal success.
        DELETED: Terminal give-up, attempts exhausted.
    """

    IN_PROGRESS = "in_progress"
    SENT = "sent"
    DELETED = "deleted"

    @property
    def is_terminal(self) -> bool:
        return self is not MailStatus.IN_PROGRESS


class SecurityMode(str, Enum):
    """Connection security for the SMTP transport.

    Attributes:
        NONE: Plain SMTP, no encryption.
        AUTO: Implicit TLS on port 465, opportunistic STARTTLS elsewhere.
        SSL_ON_CONNECT: Implicit TLS from the first byte.
        STARTTLS: Plain connection upgraded with STARTTLS (required).
        STARTTLS_WHEN_AVAILABLE: STARTTLS only if the server offers it.
    """

    NONE = "none"
    AUTO = "auto"
    SSL_ON_CONNECT = "ssl"
    STARTTLS = "starttls"
    STARTTLS_WHEN_AVAILABLE = "starttls_when_available"


class OutboundMessage(BaseModel):
    """Message handed from the submission path to the delivery loop.

    The ``id`` is the ledger key; it is generated on submission in creation
    order and reused as-is when a message is rebuilt during recovery. The
    recipient must be a single valid mailbox.
    """

    model_config = ConfigDict(frozen=True)

    id: Annotated[str, Field(default_factory=sequential_id, min_length=1)]
    recipient: str
    subject: str
    body: str

    @field_validator("recipient")
    @classmethod
    def check_recipient(cls, v: str) -> str:
        return validate_mailbox(v)


class DeliveryRecord(BaseModel):
    """One row of the delivery ledger."""

    id: str
    recipient: str
    subject: str
    body: str
    status: MailStatus
    attempt_count: int = 0
    last_error: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class SmtpSettings(BaseModel):
    """Transport and retry settings, re-read before every delivery attempt.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port.
        security: Connection security mode.
        sender: Address used in the From header and as envelope sender.
        username: Optional login; authentication is skipped when empty.
        password: Password for ``username``.
        timeout: Per-command SMTP timeout in seconds.
        max_attempts: Failed attempts after which a message is given up.
        delay_on_error: Pause in seconds after any failed attempt.
        log_delivery_activity: Log every attempt at INFO level.
    """

    model_config = ConfigDict(extra="forbid")

    host: str = "localhost"
    port: Annotated[int, Field(default=25, ge=1, le=65535)]
    security: SecurityMode = SecurityMode.AUTO
    sender: str = "noreply@localhost"
    username: str | None = None
    password: str | None = None
    timeout: Annotated[float, Field(default=30.0, gt=0)]
    max_attempts: Annotated[int, Field(default=5, ge=1)]
    delay_on_error: Annotated[float, Field(default=10.0, ge=0)]
    log_delivery_activity: bool = False

    @field_validator("username", "password")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            return None
        return v

    @field_validator("sender")
    @classmethod
    def check_sender(cls, v: str) -> str:
        return validate_mailbox(v)


class ServiceSettings(BaseModel):
    """Process-level settings read once at startup."""

    model_config = ConfigDict(extra="forbid")

    db_path: str = "/data/mail_outbox.db"
    http_host: str = "0.0.0.0"
    http_port: Annotated[int, Field(default=8000, ge=1, le=65535)]
    api_token: str | None = None
    shutdown_timeout: Annotated[float, Field(default=30.0, ge=0)]
