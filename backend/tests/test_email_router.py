"""
API tests for the email router and the app shell (CORS, health checks,
startup wiring).

The email channel is a MagicMock placed on app.state; auth is overridden
through FastAPI's dependency_overrides.
"""

import inspect
import os

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from unittest.mock import MagicMock, Mock, patch

from app.auth import get_current_user
from app.config import EmailConfig, ImapConfig, SmtpConfig
from app.main import app
from app.models.email import PollResult


def _config(imap: bool = True, smtp: bool = True) -> EmailConfig:
    return EmailConfig(
        smtp=SmtpConfig(host="smtp.example.com", port=587, user="capture@example.com", password="x", secure=False)
        if smtp else None,
        imap=ImapConfig(host="imap.example.com", port=993, user="capture@example.com", password="x")
        if imap else None,
        enabled=imap and smtp,
    )


def _channel(config: EmailConfig) -> MagicMock:
    channel = MagicMock()
    channel.config = config
    channel.status.return_value = {
        "enabled": config.enabled,
        "smtp_configured": config.smtp is not None,
        "imap_configured": config.imap is not None,
        "polling": True,
        "poll_interval": config.poll_interval,
    }
    return channel


@pytest.fixture
def client():
    app.dependency_overrides[get_current_user] = lambda: "user-1"
    yield TestClient(app)
    app.dependency_overrides.clear()
    if hasattr(app.state, "email"):
        del app.state.email


# ---------------------------------------------------------------------------
# /api/email
# ---------------------------------------------------------------------------

class TestStatus:
    def test_reports_channel_state(self, client):
        app.state.email = _channel(_config())

        response = client.get("/api/email/status")

        assert response.status_code == 200
        body = response.json()
        assert body["enabled"] is True
        assert body["polling"] is True
        assert body["poll_interval"] == 60

    def test_503_when_channel_missing(self, client):
        response = client.get("/api/email/status")

        assert response.status_code == 503


class TestInboundAddress:
    def test_returns_routing_address(self, client):
        channel = _channel(_config())
        channel.user_directory.ensure_inbound_code.return_value = "a3f2e1"
        app.state.email = channel

        response = client.get("/api/email/inbound-address")

        assert response.status_code == 200
        assert response.json() == {"inbound_address": "capture+a3f2e1@example.com", "enabled": True}
        channel.user_directory.ensure_inbound_code.assert_called_once_with("user-1")

    def test_null_when_inbound_disabled(self, client):
        app.state.email = _channel(_config(imap=False))

        response = client.get("/api/email/inbound-address")

        assert response.json() == {"inbound_address": None, "enabled": False}

    def test_unknown_user_404(self, client):
        channel = _channel(_config())
        channel.user_directory.ensure_inbound_code.return_value = None
        app.state.email = channel

        assert client.get("/api/email/inbound-address").status_code == 404

    def test_requires_auth(self):
        app.state.email = _channel(_config())
        try:
            response = TestClient(app).get("/api/email/inbound-address")
        finally:
            del app.state.email

        assert response.status_code == 401


class TestPoll:
    def test_runs_one_cycle(self, client):
        channel = _channel(_config())
        channel.service.poll_now.return_value = PollResult(emails_found=2, emails_processed=1, errors=["x"])
        app.state.email = channel

        response = client.post("/api/email/poll")

        assert response.status_code == 200
        assert response.json() == {"emails_found": 2, "emails_processed": 1, "errors": ["x"]}

    def test_503_without_imap(self, client):
        app.state.email = _channel(_config(imap=False))

        assert client.post("/api/email/poll").status_code == 503


# ---------------------------------------------------------------------------
# App shell
# ---------------------------------------------------------------------------

class TestCorsConfiguration:
    def test_includes_localhost_by_default(self):
        from app.main import get_cors_origins

        assert "http://localhost:3000" in get_cors_origins()

    def test_additional_origins_deduped(self):
        with patch.dict(os.environ, {"CORS_ORIGINS": "http://localhost:3000, https://capture.example.com"}):
            from app.main import get_cors_origins
            origins = get_cors_origins()

        assert origins == ["http://localhost:3000", "https://capture.example.com"]


class TestHealthDbEndpoint:
    @pytest.mark.asyncio
    async def test_ok_when_supabase_responds(self):
        mock_client = MagicMock()
        mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = Mock(data=[])

        with patch("app.main.get_supabase_admin", return_value=mock_client):
            from app.main import health_db
            result = await health_db()

        assert result["status"] == "ok"
        mock_client.table.assert_called_once_with("email_threads")

    @pytest.mark.asyncio
    async def test_503_when_query_fails(self):
        mock_client = MagicMock()
        mock_client.table.return_value.select.return_value.limit.return_value.execute.side_effect = Exception("refused")

        with patch("app.main.get_supabase_admin", return_value=mock_client):
            from app.main import health_db
            with pytest.raises(HTTPException) as exc_info:
                await health_db()

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_503_when_unconfigured(self):
        with patch("app.main.get_supabase_admin", return_value=None):
            from app.main import health_db
            with pytest.raises(HTTPException) as exc_info:
                await health_db()

        assert exc_info.value.status_code == 503


class TestStartup:
    def test_lifecycle_starts_and_stops_polling(self):
        channel = _channel(_config())

        with patch("app.main.build_email_channel", return_value=channel):
            with TestClient(app) as client:
                assert client.get("/health").json() == {"status": "ok"}
                channel.service.start_polling.assert_called_once()

        channel.service.stop_polling.assert_called_once()
        del app.state.email

    def test_no_polling_without_imap(self):
        channel = _channel(_config(imap=False))

        with patch("app.main.build_email_channel", return_value=channel):
            with TestClient(app):
                pass

        channel.service.start_polling.assert_not_called()
        del app.state.email

    def test_health_email_reports_both_transports(self):
        channel = _channel(_config())
        channel.smtp_sender.verify.return_value = {"success": True}
        channel.poller.test_connection.return_value = {"success": False, "error": "auth"}

        with patch("app.main.build_email_channel", return_value=channel):
            with TestClient(app) as client:
                body = client.get("/health/email").json()

        assert body == {"smtp": {"success": True}, "imap": {"success": False, "error": "auth"}}
        del app.state.email

    def test_health_email_runs_off_the_event_loop(self):
        from app.main import health_email

        assert not inspect.iscoroutinefunction(health_email)
