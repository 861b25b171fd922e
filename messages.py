from __future__ import annotations

from datetime import datetime, timezone

from gateway import OutboundGateway, SendOutcome


def _header(brand: str) -> str:
    return f"*{brand} Task* 📚\n"


def _footer(brand: str) -> str:
    return f"\n\n_- {brand} Management System_"


def _format_ts(value: datetime | None) -> str:
    value = value or datetime.now(timezone.utc)
    return value.strftime("%Y-%m-%d %H:%M")


def format_assignment_message(
    brand: str,
    *,
    title: str,
    description: str,
    assigner_name: str,
    priority: str,
    due_date: str | None,
) -> str:
    return (
        _header(brand)
        + "🔔 New Work Assignment\n\n"
        + f"📋 Task: {title}\n"
        + f"📝 Description: {description}\n"
        + f"👤 Assigned by: {assigner_name}\n"
        + f"⚡ Priority: {priority.upper()}\n"
        + f"📅 Due Date: {due_date or 'not set'}\n\n"
        + "Please check your dashboard for more details.\n"
        + 'You can also reply "completed" to this message when done.'
        + _footer(brand)
    )


def format_status_update_message(
    brand: str,
    *,
    title: str,
    updater_name: str,
    status: str,
    updated_at: datetime | None = None,
    updater_label: str = "Updated by",
) -> str:
    return (
        _header(brand)
        + "📊 Work Status Update\n\n"
        + f"📋 Task: {title}\n"
        + f"👤 {updater_label}: {updater_name}\n"
        + f"🔄 Status: {status.upper()}\n"
        + f"📅 Updated: {_format_ts(updated_at)}"
        + _footer(brand)
    )


def format_completion_confirmation(brand: str, *, title: str) -> str:
    return (
        _header(brand)
        + "✅ Task Completed Successfully!\n\n"
        + f"📋 Task: {title}\n"
        + "🎉 Thank you for completing the task!"
        + _footer(brand)
    )


def format_assigner_completion_notice(
    brand: str,
    *,
    title: str,
    completer_name: str,
    completed_at: datetime | None = None,
) -> str:
    return format_status_update_message(
        brand,
        title=title,
        updater_name=completer_name,
        status="completed",
        updated_at=completed_at,
        updater_label="Completed by",
    )


def format_no_pending_tasks(brand: str) -> str:
    return (
        _header(brand)
        + "ℹ️ No pending tasks found for completion.\n\n"
        + "Please check your dashboard for current assignments."
        + _footer(brand)
    )


def notify_assignment(
    gateway: OutboundGateway,
    brand: str,
    *,
    phone: str,
    title: str,
    description: str,
    assigner_name: str,
    priority: str,
    due_date: str | None,
) -> SendOutcome:
    body = format_assignment_message(
        brand,
        title=title,
        description=description,
        assigner_name=assigner_name,
        priority=priority,
        due_date=due_date,
    )
    return gateway.send(phone, body)


def notify_status_update(
    gateway: OutboundGateway,
    brand: str,
    *,
    phone: str,
    title: str,
    updater_name: str,
    status: str,
) -> SendOutcome:
    body = format_status_update_message(brand, title=title, updater_name=updater_name, status=status)
    return gateway.send(phone, body)
