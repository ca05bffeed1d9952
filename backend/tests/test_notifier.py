from types import SimpleNamespace

import pytest

from alerts import notifier as notifier_module
from alerts.notifier import Contact, EmailNotifier, LogNotifier, build_notifier

DANA = Contact(role="district_manager", name="Dana District", phone="+15555550200", email="dana@example.com")


class _FakeSendGrid:
    sent: list = []

    def __init__(self, api_key):
        self.api_key = api_key

    def send(self, mail):
        _FakeSendGrid.sent.append(mail)
        return SimpleNamespace(status_code=202)


def test_contact_prefers_phone():
    assert DANA.address == "+15555550200"
    assert Contact(role="store_manager", email="sam@example.com").address == "sam@example.com"


def test_build_notifier_defaults_to_log(monkeypatch):
    monkeypatch.setattr(
        notifier_module,
        "get_settings",
        lambda: SimpleNamespace(notifications_enabled=False, sendgrid_api_key="", alert_from_email="a@b.c"),
    )
    assert isinstance(build_notifier(), LogNotifier)

    monkeypatch.setattr(
        notifier_module,
        "get_settings",
        lambda: SimpleNamespace(notifications_enabled=True, sendgrid_api_key="SG.key", alert_from_email="a@b.c"),
    )
    assert isinstance(build_notifier(), EmailNotifier)


@pytest.mark.asyncio
class TestNotifiers:
    async def test_log_notifier_always_sends(self):
        result = await LogNotifier().send(DANA, "Escalation Level 4", "Traffic down")
        assert result.sent is True
        assert result.channel == "log"

    async def test_email_requires_address(self):
        result = await EmailNotifier("SG.key", "alerts@example.com").send(
            Contact(role="regional_ops", name="Regional Operations"), "subject", "body"
        )
        assert result.sent is False
        assert result.error == "contact has no email address"

    async def test_email_via_sendgrid(self, monkeypatch):
        monkeypatch.setattr(notifier_module.sendgrid, "SendGridAPIClient", _FakeSendGrid)
        _FakeSendGrid.sent = []

        result = await EmailNotifier("SG.key", "alerts@example.com").send(DANA, "Escalation Level 4", "Traffic down")

        assert result.sent is True
        assert result.recipient == "dana@example.com"
        assert len(_FakeSendGrid.sent) == 1

    async def test_email_failure_is_returned(self, monkeypatch):
        class _Broken(_FakeSendGrid):
            def send(self, mail):
                raise RuntimeError("sendgrid unreachable")

        monkeypatch.setattr(notifier_module.sendgrid, "SendGridAPIClient", _Broken)

        result = await EmailNotifier("SG.key", "alerts@example.com").send(DANA, "subject", "body")

        assert result.sent is False
        assert result.error == "sendgrid unreachable"
