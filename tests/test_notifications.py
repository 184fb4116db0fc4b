from __future__ import annotations

import unittest
from concurrent.futures import Executor, Future
from unittest.mock import patch

from leaveflow.models import UserRole
from leaveflow.services.email_templates import (
    EmailRecipient,
    NotificationFields,
    NotificationType,
    format_leave_type,
    generate_email_template,
)
from leaveflow.services.notifications import (
    DisabledNotificationSender,
    EmailNotificationSender,
    build_notification_sender,
    fetch_approver_recipients,
    fetch_employee_recipient,
)
from leaveflow.settings import Settings
from tests.sqlite_support import add_team, add_user, make_session


class _InlineExecutor(Executor):
    def submit(self, fn, /, *args, **kwargs):  # type: ignore[no-untyped-def]
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future


def _fields(**overrides) -> NotificationFields:  # type: ignore[no-untyped-def]
    values = {
        "request_id": 7,
        "employee_email": "emp@example.com",
        "employee_name": "Emp <One>",
        "leave_type": "annual",
        "duration": "1d",
        "start_date": "2026-03-02 09:00 UTC",
        "end_date": "2026-03-02 17:00 UTC",
    }
    values.update(overrides)
    return NotificationFields(**values)


class EmailTemplateTests(unittest.TestCase):
    def test_subjects(self) -> None:
        fields = _fields(employee_name="Emp One")
        self.assertEqual(
            generate_email_template(NotificationType.REQUEST_CREATED, fields).subject,
            "New Leave Request - Emp One",
        )
        self.assertEqual(
            generate_email_template(NotificationType.TL_APPROVED_WITH_MANAGER, fields).subject,
            "Leave Request Pending Your Approval - Emp One",
        )
        self.assertEqual(
            generate_email_template(NotificationType.MANAGER_APPROVED_FINAL, fields).subject,
            "Your Leave Request Has Been Approved",
        )
        self.assertEqual(
            generate_email_template(NotificationType.REQUEST_REJECTED, fields).subject,
            "Your Leave Request Was Not Approved",
        )
        self.assertEqual(
            generate_email_template(NotificationType.REQUEST_CANCELLED, fields).subject,
            "Leave Request Cancelled",
        )

    def test_html_escapes_user_content(self) -> None:
        template = generate_email_template(NotificationType.REQUEST_CREATED, _fields(note="<script>x</script>"))
        self.assertIn("Emp &lt;One&gt;", template.html)
        self.assertNotIn("<script>", template.html)

    def test_rejection_without_reason(self) -> None:
        html = generate_email_template(NotificationType.REQUEST_REJECTED, _fields()).html
        self.assertIn("No reason provided", html)

    def test_approval_chain_mentions_team_lead_step(self) -> None:
        html = generate_email_template(
            NotificationType.MANAGER_APPROVED_FINAL,
            _fields(
                approver_name="Boss",
                approver_role="Manager",
                team_lead_approval_date="2026-02-20 10:00 UTC",
            ),
        ).html
        self.assertIn("Team Lead: Approved (2026-02-20 10:00 UTC)", html)
        self.assertIn("Manager: Boss", html)

    def test_format_leave_type(self) -> None:
        self.assertEqual(format_leave_type("annual"), "Annual")
        self.assertEqual(format_leave_type("half_day"), "Half day")


class EmailNotificationSenderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.calls: list[dict] = []
        self.responses: list[dict] = []

    def _post_json(self, *, url: str, payload: dict, timeout_seconds: int) -> dict:
        self.calls.append({"url": url, "payload": payload, "timeout_seconds": timeout_seconds})
        if self.responses:
            return self.responses.pop(0)
        return {"ok": True, "status_code": 200, "message_id": "m-1", "error": None}

    def _sender(self) -> EmailNotificationSender:
        return EmailNotificationSender(
            lambda_url="https://mail.example.com/send",
            api_key="secret",
            from_email="noreply@example.com",
            from_name="OOO Leave Management",
            timeout_seconds=10,
            executor=_InlineExecutor(),
            post_json=self._post_json,
        )

    def test_one_post_per_recipient(self) -> None:
        recipients = [
            EmailRecipient(email="lead@example.com", name="Lead"),
            EmailRecipient(email="boss@example.com", name="Boss"),
            EmailRecipient(email="  ", name="Nobody"),
        ]

        self._sender().send_notification(NotificationType.REQUEST_CREATED, recipients, _fields())

        self.assertEqual(len(self.calls), 2)
        payload = self.calls[0]["payload"]
        self.assertEqual(payload["apiKey"], "secret")
        self.assertEqual(payload["from"], {"email": "noreply@example.com", "name": "OOO Leave Management"})
        self.assertEqual(payload["to"], [{"email": "lead@example.com", "name": "Lead"}])
        self.assertTrue(payload["subject"].startswith("New Leave Request"))
        self.assertEqual(self.calls[0]["timeout_seconds"], 10)
        self.assertEqual(self.calls[1]["payload"]["to"][0]["email"], "boss@example.com")

    def test_failed_recipient_is_logged_and_others_still_sent(self) -> None:
        self.responses = [{"ok": False, "status_code": 502, "message_id": None, "error": "Bad gateway"}]
        recipients = [
            EmailRecipient(email="lead@example.com", name="Lead"),
            EmailRecipient(email="boss@example.com", name="Boss"),
        ]

        with self.assertLogs("leaveflow.notifications", level="ERROR") as logs:
            results = self._sender().deliver(NotificationType.REQUEST_CANCELLED, recipients, _fields())

        self.assertEqual(len(self.calls), 2)
        self.assertEqual([item["ok"] for item in results], [False, True])
        self.assertIn("notification_send_failed", "\n".join(logs.output))

    def test_no_recipients_sends_nothing(self) -> None:
        self._sender().send_notification(NotificationType.REQUEST_CREATED, [], _fields())
        self.assertEqual(self.calls, [])

    def test_build_sender_respects_configuration(self) -> None:
        settings = Settings(email_enabled=True, email_lambda_url="https://mail.example.com", email_api_key="k")
        with patch("leaveflow.services.notifications.is_email_enabled", return_value=False):
            self.assertIsInstance(build_notification_sender(settings), DisabledNotificationSender)
        with patch("leaveflow.services.notifications.is_email_enabled", return_value=True):
            sender = build_notification_sender(settings)
        self.assertIsInstance(sender, EmailNotificationSender)
        self.assertTrue(sender.is_enabled())
        sender.shutdown()


class RecipientLookupTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()

    def tearDown(self) -> None:
        self.db.close()

    def test_approver_recipients(self) -> None:
        team = add_team(self.db, "Platform", lead_uid="lead", manager_uid="boss")
        add_user(self.db, "lead", team=team, role=UserRole.TEAM_LEAD)
        add_user(self.db, "boss", team=team, role=UserRole.MANAGER, email="")

        approvers = fetch_approver_recipients(self.db, team)

        self.assertEqual(approvers["team_lead"], EmailRecipient(email="lead@example.com", name="Lead"))
        self.assertIsNone(approvers["manager"])
        self.assertEqual(fetch_approver_recipients(self.db, None), {"team_lead": None, "manager": None})

    def test_employee_without_email(self) -> None:
        add_user(self.db, "emp", email="")
        with self.assertLogs("leaveflow.notifications", level="WARNING"):
            self.assertIsNone(fetch_employee_recipient(self.db, "emp"))


if __name__ == "__main__":
    unittest.main()
