"""Outbound notifications to escrow parties.

Supports two backends:
- SMTP via aiosmtplib (production)
- Log-only (development / testing), which logs the message instead of sending

Set NOTIFICATION_BACKEND=smtp and configure SMTP_* settings for production.
Notifications are fire-and-forget: a delivery failure is logged and never
fails the escrow transition that triggered it.
"""

import logging
from typing import Protocol

from settlement.config import settings
from settlement.models.escrow import Escrow

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, to: str, subject: str, body: str) -> None: ...


class LogNotifier:
    """Development notifier: logs message content instead of sending."""

    async def send(self, to: str, subject: str, body: str) -> None:
        logger.info("NOTIFY to=%s subject=%s\n%s", to, subject, body)


class SmtpNotifier:
    """Production notifier: sends via SMTP."""

    async def send(self, to: str, subject: str, body: str) -> None:
        import aiosmtplib
        from email.message import EmailMessage

        msg = EmailMessage()
        msg["From"] = settings.smtp_from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)

        await aiosmtplib.send(
            msg,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username or None,
            password=settings.smtp_password or None,
            use_tls=settings.smtp_use_tls,
        )


def get_notifier() -> Notifier:
    if settings.notification_backend == "smtp":
        return SmtpNotifier()
    return LogNotifier()


async def send_notification_safely(notifier: Notifier, to: str | None, subject: str, body: str) -> bool:
    """Send, swallowing delivery errors. Returns whether the send succeeded."""
    if not to:
        return False
    try:
        await notifier.send(to, subject, body)
        return True
    except Exception:
        logger.exception("Notification to %s failed (subject=%s)", to, subject)
        return False


async def notify_deposit_instructions(notifier: Notifier, escrow: Escrow) -> bool:
    body = (
        f"Escrow {escrow.reference} for {escrow.property_address} is open.\n\n"
        f"Funding instructions: {escrow.deposit_instructions}\n"
        f"Status: {settings.base_url}/escrows/{escrow.escrow_id}\n"
    )
    return await send_notification_safely(
        notifier, escrow.depositor_email, f"Fund escrow {escrow.reference}", body
    )


async def notify_escrow_closed(notifier: Notifier, escrow: Escrow) -> bool:
    body = (
        f"Escrow {escrow.reference} for {escrow.property_address} has closed.\n\n"
        f"Distributed: {escrow.distributed_total}\n"
        f"Yield returned: {escrow.yield_earned}\n"
    )
    if escrow.needs_reconciliation:
        body += "Some payouts failed and are being followed up manually.\n"
    return await send_notification_safely(
        notifier, escrow.depositor_email, f"Escrow {escrow.reference} closed", body
    )
