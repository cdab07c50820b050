"""Tests for escrow party notifications."""

import logging
import uuid
from decimal import Decimal

import aiosmtplib
import pytest

from settlement.config import settings
from settlement.models.escrow import Escrow
from settlement.services.notifications import (
    LogNotifier,
    SmtpNotifier,
    get_notifier,
    notify_deposit_instructions,
    notify_escrow_closed,
    send_notification_safely,
)
from tests.conftest import RecordingNotifier


class BrokenNotifier:
    async def send(self, to: str, subject: str, body: str) -> None:
        raise ConnectionError("smtp down")


def _escrow(**overrides: object) -> Escrow:
    fields: dict = {
        "escrow_id": uuid.uuid4(),
        "reference": "ESC-2026-00000042",
        "property_address": "742 Evergreen Terrace",
        "depositor_email": "pat@example.com",
        "deposit_instructions": "Wire to Mock Custody Bank, memo va_1",
        "distributed_total": Decimal("500000.00"),
        "yield_earned": Decimal("12.34"),
        "needs_reconciliation": False,
    }
    fields.update(overrides)
    return Escrow(**fields)


@pytest.mark.asyncio
async def test_send_safely_swallows_failures(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.ERROR):
        assert await send_notification_safely(BrokenNotifier(), "a@example.com", "s", "b") is False
    assert "Notification to a@example.com failed" in caplog.text


@pytest.mark.asyncio
async def test_send_safely_skips_missing_recipient() -> None:
    notifier = RecordingNotifier()
    assert await send_notification_safely(notifier, None, "s", "b") is False
    assert await send_notification_safely(notifier, "", "s", "b") is False
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_deposit_instructions_message() -> None:
    notifier = RecordingNotifier()
    escrow = _escrow()
    assert await notify_deposit_instructions(notifier, escrow) is True

    to, subject, body = notifier.sent[0]
    assert to == "pat@example.com"
    assert subject == "Fund escrow ESC-2026-00000042"
    assert "memo va_1" in body
    assert str(escrow.escrow_id) in body


@pytest.mark.asyncio
async def test_closed_message() -> None:
    notifier = RecordingNotifier()
    await notify_escrow_closed(notifier, _escrow())
    _, subject, body = notifier.sent[0]
    assert subject == "Escrow ESC-2026-00000042 closed"
    assert "Distributed: 500000.00" in body
    assert "Yield returned: 12.34" in body
    assert "manually" not in body


@pytest.mark.asyncio
async def test_closed_message_mentions_failed_payouts() -> None:
    notifier = RecordingNotifier()
    await notify_escrow_closed(notifier, _escrow(needs_reconciliation=True))
    assert "followed up manually" in notifier.sent[0][2]


@pytest.mark.asyncio
async def test_log_notifier_logs(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="settlement.services.notifications"):
        await LogNotifier().send("pat@example.com", "Hello", "Body text")
    assert "subject=Hello" in caplog.text


@pytest.mark.asyncio
async def test_smtp_notifier_builds_message(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list = []

    async def fake_send(message, **kwargs):  # type: ignore[no-untyped-def]
        sent.append((message, kwargs))

    monkeypatch.setattr(aiosmtplib, "send", fake_send)
    await SmtpNotifier().send("pat@example.com", "Escrow closed", "Done.")

    message, kwargs = sent[0]
    assert message["To"] == "pat@example.com"
    assert message["Subject"] == "Escrow closed"
    assert message["From"] == settings.smtp_from_address
    assert kwargs["hostname"] == settings.smtp_host
    assert kwargs["username"] is None


def test_get_notifier_by_backend() -> None:
    assert isinstance(get_notifier(), LogNotifier)
    object.__setattr__(settings, "notification_backend", "smtp")
    assert isinstance(get_notifier(), SmtpNotifier)
