"""Tests for notifications (expense_kernel/services/notification_dispatcher.py)."""

import smtplib
import threading
import time
from dataclasses import replace

import pytest

from expense_kernel.exceptions import NotificationDeliveryError
from expense_kernel.services.notification_dispatcher import (
    InMemoryChannel,
    LoggingChannel,
    NotificationDispatcher,
    NotificationKind,
    SmtpEmailChannel,
    render_notification,
)
from tests.conftest import FIXED_NOW

PAYLOAD = {
    "request_id": "REQ-0001",
    "employee_name": "Jane Smith",
    "employee_id": "E-1042",
    "expense_type": "Travel",
    "amount": "150.00",
    "bill_date": "2024-02-25",
    "approver_email": "approver@company.com",
    "status": "Pending",
    "attachments": ["receipts/taxi.pdf"],
    "comment": None,
}


class TestRendering:
    def test_approval_request_subject(self):
        n = render_notification(NotificationKind.APPROVAL_REQUEST, "approver@company.com", PAYLOAD)
        assert n.subject == "Approval needed: Jane Smith - Travel 150.00"
        assert "Amount: 150.00" in n.body
        assert "Attachments: 1" in n.body
        assert "Comment" not in n.body

    def test_decision_notice_carries_status_and_comment(self):
        payload = {**PAYLOAD, "status": "Rejected", "comment": "Missing receipt"}
        n = render_notification(NotificationKind.DECISION_NOTICE, "E-1042", payload)
        assert n.subject == "Expense request REQ-0001 Rejected"
        assert "Comment: Missing receipt" in n.body
        assert n.request_id == "REQ-0001"

    def test_line_breaks_never_reach_the_subject(self):
        payload = {**PAYLOAD, "employee_name": "Jane\r\nBcc: everyone@company.com"}
        n = render_notification(NotificationKind.APPROVAL_REQUEST, "approver@company.com", payload)
        assert n.subject == "Approval needed: Jane Bcc: everyone@company.com - Travel 150.00"


class TestNotificationDispatcher:
    def test_successful_delivery(self, dispatcher, channel):
        attempt = dispatcher.notify(
            NotificationKind.SUBMISSION_CONFIRMATION, "jane@company.com", PAYLOAD,
        )

        assert attempt.succeeded
        assert attempt.attempted_at == FIXED_NOW
        assert attempt.error_code is None
        assert [n.recipient for n in channel.outbox] == ["jane@company.com"]

    def test_kind_may_be_given_by_value(self, dispatcher):
        attempt = dispatcher.notify("ApprovalRequest", "approver@company.com", PAYLOAD)
        assert attempt.kind is NotificationKind.APPROVAL_REQUEST

    def test_failure_is_returned_not_raised(self, deterministic_clock, captured_logs):
        channel = InMemoryChannel(failing_recipients={"approver@company.com"})
        dispatcher = NotificationDispatcher(channel, clock=deterministic_clock)

        attempt = dispatcher.notify(
            NotificationKind.APPROVAL_REQUEST, "approver@company.com", PAYLOAD,
        )

        assert not attempt.succeeded
        assert attempt.error_code == "NOTIFICATION_FAILED"
        assert attempt.error_message == "mailbox unavailable"
        assert channel.outbox == []
        assert any(r["message"] == "notification_failed" for r in captured_logs())

    def test_recipients_are_independent(self, deterministic_clock):
        channel = InMemoryChannel(failing_recipients={"approver@company.com"})
        dispatcher = NotificationDispatcher(channel, clock=deterministic_clock)

        failed = dispatcher.notify(
            NotificationKind.APPROVAL_REQUEST, "approver@company.com", PAYLOAD,
        )
        delivered = dispatcher.notify(
            NotificationKind.SUBMISSION_CONFIRMATION, "jane@company.com", PAYLOAD,
        )

        assert not failed.succeeded
        assert delivered.succeeded
        assert len(channel.sent_to("jane@company.com")) == 1

    def test_delivered_message_is_not_sent_twice(self, dispatcher, channel):
        first = dispatcher.notify(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD)
        second = dispatcher.notify(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD)

        assert first.succeeded and not first.deduplicated
        assert second.succeeded and second.deduplicated
        assert len(channel.outbox) == 1
        assert len(dispatcher.attempts("REQ-0001")) == 1

    def test_failed_message_can_be_resent(self, dispatcher, channel):
        channel.failing_recipients.add("E-1042")
        assert not dispatcher.notify(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD).succeeded

        channel.failing_recipients.clear()
        assert dispatcher.notify(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD).succeeded
        assert [a.succeeded for a in dispatcher.attempts("REQ-0001")] == [False, True]

    def test_repeat_during_a_slow_send_waits_for_it(self, deterministic_clock):
        started = threading.Event()
        release = threading.Event()

        class SlowChannel(InMemoryChannel):
            def send(self, notification):
                started.set()
                release.wait(5)
                super().send(notification)

        channel = SlowChannel()
        dispatcher = NotificationDispatcher(channel, clock=deterministic_clock)
        results = []

        def _notify():
            results.append(
                dispatcher.notify(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD)
            )

        first = threading.Thread(target=_notify)
        first.start()
        assert started.wait(5)
        second = threading.Thread(target=_notify)
        second.start()
        time.sleep(0.1)
        release.set()
        first.join(5)
        second.join(5)

        assert len(channel.outbox) == 1
        assert sorted(r.deduplicated for r in results) == [False, True]
        assert len(dispatcher.attempts("REQ-0001")) == 1

    def test_attempts_filter_by_request(self, dispatcher):
        dispatcher.notify(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD)
        dispatcher.notify(
            NotificationKind.DECISION_NOTICE, "E-1042", {**PAYLOAD, "request_id": "REQ-0002"},
        )
        assert len(dispatcher.attempts()) == 2
        assert [a.request_id for a in dispatcher.attempts("REQ-0002")] == ["REQ-0002"]

    def test_logging_channel_logs_message(self, deterministic_clock, captured_logs):
        dispatcher = NotificationDispatcher(LoggingChannel(), clock=deterministic_clock)
        assert dispatcher.notify(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD).succeeded

        logged = [r for r in captured_logs() if r["message"] == "notification_logged"]
        assert logged[0]["recipient"] == "E-1042"
        assert logged[0]["kind"] == "DecisionNotice"


class FakeSMTP:
    """Records what smtplib.SMTP would have been asked to do."""

    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.calls = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(("login", username, password))

    def send_message(self, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.messages.append(message)


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


class TestSmtpEmailChannel:
    def _channel(self, **kwargs):
        defaults = dict(
            sender="expenses@company.com",
            username="mailer",
            password="secret",
            timeout=5.0,
            employee_email_domain="company.com",
        )
        defaults.update(kwargs)
        return SmtpEmailChannel("smtp.company.com", 587, **defaults)

    def test_sends_over_starttls_with_login(self, fake_smtp):
        notification = render_notification(
            NotificationKind.APPROVAL_REQUEST, "approver@company.com", PAYLOAD,
        )
        self._channel().send(notification)

        smtp = fake_smtp.instances[0]
        assert (smtp.host, smtp.port, smtp.timeout) == ("smtp.company.com", 587, 5.0)
        assert smtp.calls == ["starttls", ("login", "mailer", "secret")]
        message = smtp.messages[0]
        assert message["To"] == "approver@company.com"
        assert message["From"] == "expenses@company.com"
        assert message["Subject"] == notification.subject

    def test_employee_id_is_mapped_to_domain(self, fake_smtp):
        notification = render_notification(NotificationKind.DECISION_NOTICE, "E-1042", PAYLOAD)
        self._channel().send(notification)
        assert fake_smtp.instances[0].messages[0]["To"] == "E-1042@company.com"

    def test_employee_id_without_domain_is_undeliverable(self, fake_smtp):
        channel = self._channel(employee_email_domain=None)
        with pytest.raises(NotificationDeliveryError, match="no email address"):
            channel.resolve_address("E-1042")

    def test_smtp_error_becomes_delivery_error(self, fake_smtp):
        fake_smtp.fail_with = smtplib.SMTPRecipientsRefused({"x@company.com": (550, b"no")})
        notification = render_notification(
            NotificationKind.APPROVAL_REQUEST, "x@company.com", PAYLOAD,
        )
        with pytest.raises(NotificationDeliveryError) as exc_info:
            self._channel().send(notification)
        assert exc_info.value.recipient == "x@company.com"

    def test_no_tls_and_no_login(self, fake_smtp):
        notification = render_notification(
            NotificationKind.APPROVAL_REQUEST, "approver@company.com", PAYLOAD,
        )
        self._channel(use_tls=False, username=None).send(notification)
        assert fake_smtp.instances[0].calls == []

    def test_header_with_line_break_becomes_delivery_error(self, fake_smtp):
        notification = render_notification(
            NotificationKind.APPROVAL_REQUEST, "approver@company.com", PAYLOAD,
        )
        with pytest.raises(NotificationDeliveryError, match="invalid header"):
            self._channel().send(replace(notification, subject="Approval\nBcc: x@evil.com"))
        assert fake_smtp.instances == []

    def test_dispatcher_reports_bad_address_as_failed_attempt(self, fake_smtp, deterministic_clock):
        dispatcher = NotificationDispatcher(self._channel(), clock=deterministic_clock)

        attempt = dispatcher.notify(
            NotificationKind.DECISION_NOTICE, "jane@company.com\nBcc: x@evil.com", PAYLOAD,
        )

        assert not attempt.succeeded
        assert attempt.error_code == "NOTIFICATION_FAILED"
        assert fake_smtp.instances == []
