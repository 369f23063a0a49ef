"""
Tests for tenant notifications
"""

from tenant_manager.services.notification_service import NotificationEvent, NotificationService


class TestNotificationService:
    """Test rendering and the never-raise contract"""

    async def test_disabled(self):
        assert await NotificationService(enabled=False).send(NotificationEvent.WELCOME, "a@acmecorp.com", {}) is False

    async def test_no_recipient(self):
        assert await NotificationService(enabled=True).send(NotificationEvent.WELCOME, None, {}) is False

    async def test_unknown_event(self):
        assert await NotificationService(enabled=True).send("birthday", "a@acmecorp.com", {}) is False

    async def test_renders_and_sends(self, monkeypatch):
        service = NotificationService(enabled=True)
        sent = []
        monkeypatch.setattr(service, "_send_email", lambda to, subject, body: sent.append((to, subject, body)) or True)

        delivered = await service.send(
            NotificationEvent.EXPIRATION_WARNING,
            "owner@acmecorp.com",
            {"full_name": "Acme <Owner>", "username": "acme01", "modules": ["CRM", "Billing"]},
        )

        assert delivered is True
        to, subject, body = sent[0]
        assert to == "owner@acmecorp.com"
        assert subject == "Your Tenant Manager subscription needs attention"
        assert "<li>CRM</li><li>Billing</li>" in body
        assert "Acme &lt;Owner&gt;" in body

    async def test_smtp_failure_returns_false(self, monkeypatch):
        class BrokenSMTP:
            def __init__(self, *args, **kwargs):
                raise OSError("connection refused")

        monkeypatch.setattr("tenant_manager.services.notification_service.smtplib.SMTP", BrokenSMTP)

        delivered = await NotificationService(enabled=True).send(
            NotificationEvent.WELCOME, "owner@acmecorp.com", {"username": "acme01", "subdomain": "acme01.app.example.com"}
        )

        assert delivered is False
