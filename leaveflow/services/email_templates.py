from __future__ import annotations

import enum
from dataclasses import dataclass
from html import escape


class NotificationType(str, enum.Enum):
    REQUEST_CREATED = "REQUEST_CREATED"
    TL_APPROVED_WITH_MANAGER = "TL_APPROVED_WITH_MANAGER"
    TL_APPROVED_FINAL = "TL_APPROVED_FINAL"
    MANAGER_APPROVED_FINAL = "MANAGER_APPROVED_FINAL"
    REQUEST_REJECTED = "REQUEST_REJECTED"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"


@dataclass(frozen=True, slots=True)
class EmailRecipient:
    email: str
    name: str


@dataclass(slots=True)
class NotificationFields:
    request_id: int
    employee_email: str
    employee_name: str
    leave_type: str
    duration: str
    start_date: str
    end_date: str
    note: str | None = None
    approver_name: str | None = None
    approver_role: str | None = None
    approval_date: str | None = None
    rejection_reason: str | None = None
    team_lead_approval_date: str | None = None
    manager_approval_date: str | None = None


@dataclass(frozen=True, slots=True)
class EmailTemplate:
    subject: str
    html: str


_BASE_STYLES = """
<style>
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; }
  .container { max-width: 600px; margin: 0 auto; padding: 20px; }
  .header { background: #2563eb; color: white; padding: 20px; border-radius: 8px 8px 0 0; }
  .content { background: #f9fafb; padding: 30px; border: 1px solid #e5e7eb; }
  .info-row { margin: 10px 0; padding: 8px; background: white; border-radius: 4px; }
  .label { font-weight: 600; color: #6b7280; }
  .chain { background: #f0f9ff; padding: 15px; border-left: 4px solid #2563eb; margin: 15px 0; }
  .footer { text-align: center; padding: 20px; color: #6b7280; font-size: 12px; }
</style>
"""


def format_leave_type(value: str) -> str:
    text = (value or "").replace("_", " ")
    return text[:1].upper() + text[1:]


def _row(label: str, value: str) -> str:
    return f'<div class="info-row"><span class="label">{escape(label)}:</span> <span>{escape(value)}</span></div>'


def _details(fields: NotificationFields) -> str:
    rows = [
        _row("Leave Type", format_leave_type(fields.leave_type)),
        _row("Duration", fields.duration),
        _row("Dates", f"{fields.start_date} → {fields.end_date}"),
    ]
    if fields.note:
        rows.append(_row("Note", fields.note))
    return "\n".join(rows)


def _chain(body: str, *, color: str | None = None) -> str:
    style = f' style="border-left-color: {color};"' if color else ""
    return f'<div class="chain"{style}>{body}</div>'


def _wrap(title: str, body: str) -> str:
    return (
        "<!DOCTYPE html><html><head>"
        f"{_BASE_STYLES}</head><body><div class=\"container\">"
        f'<div class="header"><h1 style="margin: 0;">{escape(title)}</h1></div>'
        f'<div class="content">{body}</div>'
        '<div class="footer">This is an automated notification from OOO Leave Management System.</div>'
        "</div></body></html>"
    )


def _request_created(fields: NotificationFields) -> EmailTemplate:
    body = (
        f"<p><strong>{escape(fields.employee_name)}</strong> has submitted a new leave request:</p>"
        f"{_details(fields)}"
        "<p><strong>Action Required:</strong> Please review and approve or reject this request.</p>"
    )
    return EmailTemplate(
        subject=f"New Leave Request - {fields.employee_name}",
        html=_wrap("New Leave Request", body),
    )


def _tl_approved_with_manager(fields: NotificationFields) -> EmailTemplate:
    approved_at = f" ({escape(fields.team_lead_approval_date)})" if fields.team_lead_approval_date else ""
    body = (
        f"<p><strong>{escape(fields.employee_name)}</strong>'s leave request has been approved by the "
        "Team Lead and now requires your final approval:</p>"
        f"{_details(fields)}"
        + _chain(f"<strong>Team Lead Approval:</strong> {escape(fields.approver_name or 'Unknown')}{approved_at}")
        + "<p><strong>Action Required:</strong> You are the final approver. Please review this request.</p>"
    )
    return EmailTemplate(
        subject=f"Leave Request Pending Your Approval - {fields.employee_name}",
        html=_wrap("Approval Required", body),
    )


def _approved_final(fields: NotificationFields) -> EmailTemplate:
    chain_lines: list[str] = ["<strong>Approval Chain:</strong><br>"]
    if fields.team_lead_approval_date:
        chain_lines.append(f"Team Lead: Approved ({escape(fields.team_lead_approval_date)})<br>")
    role = fields.approver_role or "Approver"
    approved_at = f" ({escape(fields.approval_date)})" if fields.approval_date else ""
    chain_lines.append(f"{escape(role)}: {escape(fields.approver_name or 'Unknown')}{approved_at}<br>")
    chain_lines.append("<strong>Status:</strong> APPROVED (Final)")
    body = (
        "<p>Great news! Your leave request has been approved:</p>"
        f"{_details(fields)}"
        + _chain("".join(chain_lines))
        + "<p>Your leave has been confirmed and deducted from your balance.</p>"
    )
    return EmailTemplate(
        subject="Your Leave Request Has Been Approved",
        html=_wrap("Leave Request Approved", body),
    )


def _rejected(fields: NotificationFields) -> EmailTemplate:
    reason = escape(fields.rejection_reason) if fields.rejection_reason else "No reason provided"
    body = (
        "<p>Your leave request has been declined:</p>"
        f"{_details(fields)}"
        + _chain(
            f"<strong>Declined by:</strong> {escape(fields.approver_name or 'Unknown')}<br>"
            f"<strong>Reason:</strong> {reason}",
            color="#dc2626",
        )
        + "<p>Your leave balance has not been affected.</p>"
        f"<p>If you have questions, please contact {escape(fields.approver_name or 'your manager')} directly.</p>"
    )
    return EmailTemplate(
        subject="Your Leave Request Was Not Approved",
        html=_wrap("Leave Request Declined", body),
    )


def _cancelled(fields: NotificationFields) -> EmailTemplate:
    reason = ""
    if fields.rejection_reason:
        reason = _chain(f"<strong>Reason:</strong> {escape(fields.rejection_reason)}", color="#f59e0b")
    body = (
        f"<p>A leave request from <strong>{escape(fields.employee_name)}</strong> has been cancelled:</p>"
        f"{_details(fields)}{reason}"
        "<p>If this was an approved request, the leave balance has been restored.</p>"
    )
    return EmailTemplate(
        subject="Leave Request Cancelled",
        html=_wrap("Leave Request Cancelled", body),
    )


def generate_email_template(notification_type: NotificationType, fields: NotificationFields) -> EmailTemplate:
    if notification_type == NotificationType.REQUEST_CREATED:
        return _request_created(fields)
    if notification_type == NotificationType.TL_APPROVED_WITH_MANAGER:
        return _tl_approved_with_manager(fields)
    if notification_type in (NotificationType.TL_APPROVED_FINAL, NotificationType.MANAGER_APPROVED_FINAL):
        return _approved_final(fields)
    if notification_type == NotificationType.REQUEST_REJECTED:
        return _rejected(fields)
    if notification_type == NotificationType.REQUEST_CANCELLED:
        return _cancelled(fields)
    raise ValueError(f"Unknown notification type: {notification_type!r}")
