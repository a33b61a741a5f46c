"""
NotificationDispatcher -- outbound messages to submitters and approvers.

Responsibility:
    Render and send SubmissionConfirmation, ApprovalRequest and
    DecisionNotice messages through a pluggable channel, and keep a log of
    every attempt.

Architecture position:
    Kernel > Services -- imperative shell, outbound adapter.  Channels:
      * SmtpEmailChannel -- email over SMTP (production).
      * LoggingChannel   -- writes messages to the structured log.
      * InMemoryChannel  -- outbox list with injectable failures, for tests.

Invariants enforced:
    - Each ``notify`` call is independent: one recipient's failure never
      prevents or alters another call.
    - Idempotent attempt log: once a (request_id, kind, recipient) message
      has been delivered, repeating it returns the recorded success
      without sending again.  Failed attempts are logged and may be
      re-sent.
    - A repeat issued while the same message is still being sent waits
      for that send instead of starting a second one.

Failure modes:
    - Channels raise NotificationDeliveryError; ``notify`` converts it into
      a failed NotificationAttempt and never raises it.
"""

from __future__ import annotations

import smtplib
import ssl
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from email.message import EmailMessage
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.exceptions import NotificationDeliveryError
from expense_kernel.logging_config import get_logger

logger = get_logger("services.notification_dispatcher")


class NotificationKind(str, Enum):
    SUBMISSION_CONFIRMATION = "SubmissionConfirmation"
    APPROVAL_REQUEST = "ApprovalRequest"
    DECISION_NOTICE = "DecisionNotice"


@dataclass(frozen=True)
class Notification:
    """A rendered message, ready for a channel."""

    kind: NotificationKind
    recipient: str
    subject: str
    body: str
    request_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationAttempt:
    """Outcome of one ``notify`` call."""

    kind: NotificationKind
    recipient: str
    request_id: str
    succeeded: bool
    attempted_at: datetime
    error_code: str | None = None
    error_message: str | None = None
    deduplicated: bool = False


@runtime_checkable
class NotificationChannel(Protocol):
    def send(self, notification: Notification) -> None:
        """Deliver or raise NotificationDeliveryError."""
        ...


_SUBJECTS = {
    NotificationKind.SUBMISSION_CONFIRMATION: "Expense request {request_id} submitted",
    NotificationKind.APPROVAL_REQUEST: (
        "Approval needed: {employee_name} - {expense_type} {amount}"
    ),
    NotificationKind.DECISION_NOTICE: "Expense request {request_id} {status}",
}

_INTROS = {
    NotificationKind.SUBMISSION_CONFIRMATION: (
        "Your expense reimbursement request has been submitted and is "
        "awaiting approval."
    ),
    NotificationKind.APPROVAL_REQUEST: (
        "An expense reimbursement request is waiting for your decision."
    ),
    NotificationKind.DECISION_NOTICE: (
        "A decision has been recorded on your expense reimbursement request."
    ),
}

_BODY_FIELDS = (
    ("Request", "request_id"),
    ("Employee", "employee_name"),
    ("Employee ID", "employee_id"),
    ("Expense type", "expense_type"),
    ("Amount", "amount"),
    ("Bill date", "bill_date"),
    ("Approver", "approver_email"),
    ("Status", "status"),
    ("Comment", "comment"),
)


def render_notification(
    kind: NotificationKind,
    recipient: str,
    payload: Mapping[str, Any],
) -> Notification:
    """Plain-text rendering of a request's fields for one recipient."""
    values = {k: payload.get(k, "") for _, k in _BODY_FIELDS}
    # header text: form input may carry CR/LF
    subject = " ".join(_SUBJECTS[kind].format(**values).split())
    lines = [_INTROS[kind], ""]
    for label, key in _BODY_FIELDS:
        value = payload.get(key)
        if value not in (None, ""):
            lines.append(f"{label}: {value}")
    attachments = payload.get("attachments") or ()
    if attachments:
        lines.append(f"Attachments: {len(attachments)}")
    return Notification(
        kind=kind,
        recipient=recipient,
        subject=subject,
        body="\n".join(lines) + "\n",
        request_id=str(payload.get("request_id", "")),
        payload=dict(payload),
    )


class NotificationDispatcher:
    """Sends notifications through one channel and logs every attempt."""

    def __init__(self, channel: NotificationChannel, clock: Clock | None = None) -> None:
        self._channel = channel
        self._clock = clock or SystemClock()
        self._attempts: list[NotificationAttempt] = []
        self._delivered: dict[tuple[str, NotificationKind, str], NotificationAttempt] = {}
        self._sending: set[tuple[str, NotificationKind, str]] = set()
        self._lock = threading.Condition()

    def notify(
        self,
        kind: NotificationKind | str,
        recipient: str,
        payload: Mapping[str, Any],
    ) -> NotificationAttempt:
        kind = NotificationKind(kind)
        notification = render_notification(kind, recipient, payload)
        key = (notification.request_id, kind, recipient)

        # A repeat of a message that is still being sent waits for that send.
        with self._lock:
            self._lock.wait_for(lambda: key not in self._sending)
            prior = self._delivered.get(key)
            if prior is None:
                self._sending.add(key)
        if prior is not None:
            logger.info(
                "notification_already_delivered",
                extra={
                    "request_id": notification.request_id,
                    "kind": kind.value,
                    "recipient": recipient,
                },
            )
            return replace(prior, deduplicated=True)

        try:
            attempt = self._send(notification)
        finally:
            with self._lock:
                self._sending.discard(key)
                self._lock.notify_all()
        with self._lock:
            self._attempts.append(attempt)
            if attempt.succeeded:
                self._delivered.setdefault(key, attempt)
        return attempt

    def _send(self, notification: Notification) -> NotificationAttempt:
        log_fields = {
            "request_id": notification.request_id,
            "kind": notification.kind.value,
            "recipient": notification.recipient,
        }
        try:
            self._channel.send(notification)
        except NotificationDeliveryError as exc:
            logger.warning("notification_failed", extra={**log_fields, "error": exc.reason})
            return NotificationAttempt(
                kind=notification.kind,
                recipient=notification.recipient,
                request_id=notification.request_id,
                succeeded=False,
                attempted_at=self._clock.now_utc(),
                error_code=exc.code,
                error_message=exc.reason,
            )
        logger.info("notification_sent", extra=log_fields)
        return NotificationAttempt(
            kind=notification.kind,
            recipient=notification.recipient,
            request_id=notification.request_id,
            succeeded=True,
            attempted_at=self._clock.now_utc(),
        )

    def attempts(self, request_id: str | None = None) -> list[NotificationAttempt]:
        with self._lock:
            items = list(self._attempts)
        if request_id is not None:
            items = [a for a in items if a.request_id == request_id]
        return items


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class SmtpEmailChannel:
    """
    Email delivery over SMTP.

    Recipients without an ``@`` are employee ids; they are mapped to
    ``<id>@<employee_email_domain>`` when a domain is configured and are
    undeliverable otherwise.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 10.0,
        employee_email_domain: str | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._sender = sender
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout
        self._employee_email_domain = employee_email_domain

    def resolve_address(self, recipient: str) -> str:
        if "@" in recipient:
            return recipient
        if self._employee_email_domain:
            return f"{recipient}@{self._employee_email_domain}"
        raise NotificationDeliveryError(recipient, "no email address for recipient")

    def send(self, notification: Notification) -> None:
        address = self.resolve_address(notification.recipient)
        message = EmailMessage()
        try:
            message["Subject"] = notification.subject
            message["From"] = self._sender
            message["To"] = address
        except ValueError as exc:
            raise NotificationDeliveryError(address, f"invalid header: {exc}") from exc
        message.set_content(notification.body)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
                if self._use_tls:
                    smtp.starttls(context=ssl.create_default_context())
                if self._username:
                    smtp.login(self._username, self._password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationDeliveryError(address, str(exc)) from exc


class LoggingChannel:
    """Development transport: every message becomes a log line."""

    def send(self, notification: Notification) -> None:
        logger.info(
            "notification_logged",
            extra={
                "kind": notification.kind.value,
                "recipient": notification.recipient,
                "subject": notification.subject,
                "request_id": notification.request_id,
            },
        )


class InMemoryChannel:
    """
    Collects messages in ``outbox``.

    Recipients in ``failing_recipients`` raise NotificationDeliveryError;
    ``delay_seconds`` stalls every send (timeout scenarios).
    """

    def __init__(
        self,
        failing_recipients: Iterable[str] = (),
        delay_seconds: float = 0.0,
    ) -> None:
        self.failing_recipients = set(failing_recipients)
        self.delay_seconds = delay_seconds
        self._outbox: list[Notification] = []
        self._lock = threading.Lock()

    def send(self, notification: Notification) -> None:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if notification.recipient in self.failing_recipients:
            raise NotificationDeliveryError(notification.recipient, "mailbox unavailable")
        with self._lock:
            self._outbox.append(notification)

    @property
    def outbox(self) -> list[Notification]:
        with self._lock:
            return list(self._outbox)

    def sent_to(self, recipient: str) -> list[Notification]:
        return [n for n in self.outbox if n.recipient == recipient]
