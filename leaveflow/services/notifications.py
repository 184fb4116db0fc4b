from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Protocol
from urllib import error as urllib_error
from urllib import request as urllib_request

from sqlalchemy import select
from sqlalchemy.orm import Session

from leaveflow.models import Team, UserProfile
from leaveflow.services.email_templates import (
    EmailRecipient,
    NotificationFields,
    NotificationType,
    generate_email_template,
)
from leaveflow.settings import Settings, get_settings, is_email_enabled

logger = logging.getLogger("leaveflow.notifications")

PostJson = Callable[..., dict[str, Any]]


class NotificationSender(Protocol):
    def is_enabled(self) -> bool: ...

    def send_notification(
        self,
        notification_type: NotificationType,
        recipients: Sequence[EmailRecipient],
        fields: NotificationFields,
    ) -> None: ...


def _post_json(
    *,
    url: str,
    payload: dict[str, Any],
    timeout_seconds: int = 10,
) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    request = urllib_request.Request(
        url=url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib_request.urlopen(request, timeout=max(1, timeout_seconds)) as response:
            status_code = int(getattr(response, "status", 200) or 200)
            response_body = response.read(4096).decode("utf-8", errors="ignore")
    except urllib_error.HTTPError as exc:
        error_body = exc.read(512).decode("utf-8", errors="ignore")
        return {
            "ok": False,
            "status_code": int(exc.code),
            "message_id": None,
            "error": _extract_error(error_body) or str(exc),
        }
    except Exception as exc:  # pragma: no cover - network/timeout path
        return {
            "ok": False,
            "status_code": None,
            "message_id": None,
            "error": str(exc),
        }

    parsed = _parse_body(response_body)
    ok = 200 <= status_code < 300 and parsed.get("success", True) is not False
    return {
        "ok": ok,
        "status_code": status_code,
        "message_id": parsed.get("messageId"),
        "error": None if ok else (parsed.get("error") or response_body or "Unknown"),
    }


def _parse_body(raw: str) -> dict[str, Any]:
    try:
        value = json.loads(raw) if raw else {}
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


def _extract_error(raw: str) -> str | None:
    error = _parse_body(raw).get("error")
    return str(error) if error else None


class DisabledNotificationSender:
    def is_enabled(self) -> bool:
        return False

    def send_notification(
        self,
        notification_type: NotificationType,
        recipients: Sequence[EmailRecipient],
        fields: NotificationFields,
    ) -> None:
        logger.debug("notification_skipped_disabled", extra={"notification_type": notification_type.value})


class EmailNotificationSender:
    """Sends leave notifications through the HTTP e-mail proxy.

    ``send_notification`` only schedules the delivery on the executor and
    returns. Each recipient gets its own POST; a failure for one recipient is
    logged and does not stop the others. Nothing is retried.
    """

    def __init__(
        self,
        *,
        lambda_url: str,
        api_key: str,
        from_email: str,
        from_name: str,
        timeout_seconds: int = 10,
        executor: Executor | None = None,
        post_json: PostJson = _post_json,
    ) -> None:
        self._lambda_url = lambda_url
        self._api_key = api_key
        self._from_email = from_email
        self._from_name = from_name
        self._timeout_seconds = timeout_seconds
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="leaveflow-email")
        self._post_json = post_json

    def is_enabled(self) -> bool:
        return True

    def send_notification(
        self,
        notification_type: NotificationType,
        recipients: Sequence[EmailRecipient],
        fields: NotificationFields,
    ) -> None:
        targets = [recipient for recipient in recipients if (recipient.email or "").strip()]
        if not targets:
            logger.warning(
                "notification_no_recipients",
                extra={"notification_type": notification_type.value, "request_id": fields.request_id},
            )
            return
        future = self._executor.submit(self.deliver, notification_type, targets, fields)
        future.add_done_callback(self._log_unexpected_failure)

    def deliver(
        self,
        notification_type: NotificationType,
        recipients: Sequence[EmailRecipient],
        fields: NotificationFields,
    ) -> list[dict[str, Any]]:
        template = generate_email_template(notification_type, fields)
        results: list[dict[str, Any]] = []
        for recipient in recipients:
            result = self._post_json(
                url=self._lambda_url,
                payload={
                    "apiKey": self._api_key,
                    "from": {"email": self._from_email, "name": self._from_name},
                    "to": [{"email": recipient.email, "name": recipient.name}],
                    "subject": template.subject,
                    "html": template.html,
                },
                timeout_seconds=self._timeout_seconds,
            )
            results.append(result)
            if not result.get("ok"):
                logger.error(
                    "notification_send_failed",
                    extra={
                        "notification_type": notification_type.value,
                        "request_id": fields.request_id,
                        "recipient": recipient.email,
                        "status_code": result.get("status_code"),
                        "error": result.get("error"),
                    },
                )

        logger.info(
            "notification_sent",
            extra={
                "notification_type": notification_type.value,
                "request_id": fields.request_id,
                "recipients": len(recipients),
                "delivered": sum(1 for item in results if item.get("ok")),
            },
        )
        return results

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    @staticmethod
    def _log_unexpected_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("notification_delivery_crashed", exc_info=exc)


def build_notification_sender(settings: Settings | None = None) -> NotificationSender:
    settings = settings or get_settings()
    if not is_email_enabled():
        return DisabledNotificationSender()
    return EmailNotificationSender(
        lambda_url=settings.email_lambda_url.strip(),
        api_key=settings.email_api_key.strip(),
        from_email=settings.email_from_email.strip(),
        from_name=settings.email_from_name,
        timeout_seconds=settings.email_timeout_seconds,
        executor=ThreadPoolExecutor(
            max_workers=max(1, settings.notification_workers),
            thread_name_prefix="leaveflow-email",
        ),
    )


def _recipient(profile: UserProfile | None) -> EmailRecipient | None:
    if profile is None or not (profile.email or "").strip():
        return None
    return EmailRecipient(email=profile.email, name=profile.display_name or "Employee")


def fetch_employee_recipient(db: Session, uid: str) -> EmailRecipient | None:
    recipient = _recipient(db.get(UserProfile, uid))
    if recipient is None:
        logger.warning("notification_employee_email_missing", extra={"uid": uid})
    return recipient


def fetch_approver_recipients(db: Session, team: Team | None) -> dict[str, EmailRecipient | None]:
    if team is None:
        return {"team_lead": None, "manager": None}
    uids = [uid for uid in (team.lead_uid, team.manager_uid) if uid]
    profiles: dict[str, UserProfile] = {}
    if uids:
        profiles = {
            profile.uid: profile
            for profile in db.scalars(select(UserProfile).where(UserProfile.uid.in_(uids))).all()
        }
    return {
        "team_lead": _recipient(profiles.get(team.lead_uid)) if team.lead_uid else None,
        "manager": _recipient(profiles.get(team.manager_uid)) if team.manager_uid else None,
    }
