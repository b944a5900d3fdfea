"""Unit tests for delivery providers and failover.

Transports are mocked: smtplib classes are injected as factories and the
HTTP providers get a mock requests session.
"""

import smtplib
import socket
from unittest.mock import MagicMock, Mock

import pytest
import requests

from beacon.domain.models import ChannelType
from beacon.providers.base import (
    ChatMessage,
    DeliveryProvider,
    EmailMessage,
    ProviderReceipt,
    WebhookMessage,
)
from beacon.providers.exceptions import (
    InvalidAddressError,
    ProviderAuthError,
    ProviderConfigurationError,
    ProviderTimeoutError,
    ProviderTransportError,
)
from beacon.providers.failover import FailoverController, send_with_failover
from beacon.providers.slack import SlackApiProvider, SlackWebhookProvider
from beacon.providers.smtp import SMTPProvider
from beacon.providers.webhook import WebhookProvider


@pytest.fixture
def email():
    return EmailMessage(to="recipient@example.com", subject="Job failed", text="Body", html="<p>Body</p>")


def make_smtp_provider(port=587, **kwargs):
    smtp = MagicMock()
    factory = Mock(return_value=smtp)
    ssl_factory = Mock(return_value=smtp)
    provider = SMTPProvider(
        name="smtp-primary",
        host="smtp.example.com",
        port=port,
        sender_address="beacon@example.com",
        smtp_factory=factory,
        smtp_ssl_factory=ssl_factory,
        **kwargs,
    )
    return provider, smtp, factory, ssl_factory


def http_session(status_code=200, json_body=None, headers=None, reason="OK"):
    response = Mock(status_code=status_code, reason=reason, headers=headers or {})
    response.json.return_value = json_body if json_body is not None else {}
    session = Mock()
    session.headers = {}
    session.request.return_value = response
    return session


class TestSMTPProvider:
    def test_send_with_starttls_and_login(self, email):
        provider, smtp, factory, ssl_factory = make_smtp_provider(username="beacon", password="secret")

        receipt = provider.send(email)

        factory.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
        ssl_factory.assert_not_called()
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("beacon", "secret")
        smtp.send_message.assert_called_once()
        smtp.quit.assert_called_once()
        assert receipt.provider == "smtp-primary"
        assert receipt.message_id.endswith("@smtp.example.com>")

    def test_message_headers(self, email):
        provider, smtp, _, _ = make_smtp_provider()
        provider.send(email)

        mime = smtp.send_message.call_args[0][0]
        assert mime["Subject"] == "Job failed"
        assert mime["To"] == "recipient@example.com"
        assert mime["From"] == "Beacon <beacon@example.com>"
        assert mime.is_multipart()

    def test_port_465_uses_implicit_tls(self, email):
        provider, smtp, factory, ssl_factory = make_smtp_provider(port=465)
        provider.send(email)

        factory.assert_not_called()
        assert ssl_factory.call_args[0] == ("smtp.example.com", 465)
        smtp.starttls.assert_not_called()

    def test_no_login_without_credentials(self, email):
        provider, smtp, _, _ = make_smtp_provider(use_tls=False)
        provider.send(email)

        smtp.starttls.assert_not_called()
        smtp.login.assert_not_called()

    def test_invalid_address_fails_before_connecting(self):
        provider, _, factory, _ = make_smtp_provider()

        with pytest.raises(InvalidAddressError) as exc_info:
            provider.send(EmailMessage(to="not-an-address", subject="s", text="t"))

        assert exc_info.value.address == "not-an-address"
        factory.assert_not_called()

    @pytest.mark.parametrize(
        "error,expected",
        [
            (smtplib.SMTPAuthenticationError(535, b"bad credentials"), ProviderAuthError),
            (smtplib.SMTPRecipientsRefused({"recipient@example.com": (550, b"no")}), InvalidAddressError),
            (socket.timeout("timed out"), ProviderTimeoutError),
            (smtplib.SMTPServerDisconnected("gone"), ProviderTransportError),
            (ConnectionRefusedError("refused"), ProviderTransportError),
        ],
    )
    def test_errors_are_mapped(self, email, error, expected):
        provider, smtp, _, _ = make_smtp_provider()
        smtp.send_message.side_effect = error

        with pytest.raises(expected) as exc_info:
            provider.send(email)

        assert exc_info.value.provider == "smtp-primary"
        smtp.quit.assert_called_once()

    def test_connection_failure_is_transport_error(self, email):
        provider, _, factory, _ = make_smtp_provider()
        factory.side_effect = OSError("network unreachable")

        with pytest.raises(ProviderTransportError, match="network unreachable"):
            provider.send(email)

    def test_quit_failure_is_ignored(self, email):
        provider, smtp, _, _ = make_smtp_provider()
        smtp.quit.side_effect = smtplib.SMTPServerDisconnected("already closed")

        assert provider.send(email).provider == "smtp-primary"

    def test_requires_host(self):
        with pytest.raises(ProviderConfigurationError):
            SMTPProvider(name="broken", host=" ")


class TestSlackApiProvider:
    def test_posts_to_chat_post_message(self):
        session = http_session(json_body={"ok": True, "ts": "1700000000.000100"})
        provider = SlackApiProvider("slack-api", bot_token="xoxb-token", session=session)

        receipt = provider.send(ChatMessage(channel="#ops", text="Deploy finished"))

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "POST"
        assert kwargs["url"] == "https://slack.com/api/chat.postMessage"
        assert kwargs["headers"] == {"Authorization": "Bearer xoxb-token"}
        assert kwargs["json"] == {"text": "Deploy finished", "channel": "#ops"}
        assert receipt == ProviderReceipt(provider="slack-api", message_id="1700000000.000100")
        assert session.headers["User-Agent"] == "Beacon-Notifications/1.0"

    @pytest.mark.parametrize(
        "error,expected",
        [
            ("invalid_auth", ProviderAuthError),
            ("channel_not_found", InvalidAddressError),
            ("ratelimited", ProviderTransportError),
        ],
    )
    def test_ok_false_is_mapped(self, error, expected):
        session = http_session(json_body={"ok": False, "error": error})
        provider = SlackApiProvider("slack-api", bot_token="xoxb-token", session=session)

        with pytest.raises(expected, match=error):
            provider.send(ChatMessage(channel="#ops", text="hi"))

    def test_non_json_response(self):
        session = http_session()
        session.request.return_value.json.side_effect = ValueError("no json")
        provider = SlackApiProvider("slack-api", bot_token="xoxb-token", session=session)

        with pytest.raises(ProviderTransportError, match="non-JSON"):
            provider.send(ChatMessage(channel="#ops", text="hi"))

    def test_requires_token(self):
        with pytest.raises(ProviderConfigurationError):
            SlackApiProvider("slack-api", bot_token="", session=http_session())


class TestSlackWebhookProvider:
    def test_posts_payload_without_message_id(self):
        session = http_session()
        provider = SlackWebhookProvider(
            "slack-webhook", webhook_url="https://hooks.slack.com/services/T/B/X", session=session
        )

        receipt = provider.send(ChatMessage(channel="#ops", text="hi", blocks=[{"type": "divider"}]))

        kwargs = session.request.call_args.kwargs
        assert kwargs["url"] == "https://hooks.slack.com/services/T/B/X"
        assert kwargs["json"] == {"text": "hi", "blocks": [{"type": "divider"}], "channel": "#ops"}
        assert receipt.message_id is None

    @pytest.mark.parametrize(
        "status,expected",
        [(403, ProviderAuthError), (404, ProviderTransportError), (503, ProviderTransportError)],
    )
    def test_http_errors(self, status, expected):
        session = http_session(status_code=status, reason="Error")
        provider = SlackWebhookProvider("slack-webhook", webhook_url="https://hooks.example.com/x", session=session)

        with pytest.raises(expected) as exc_info:
            provider.send(ChatMessage(channel="#ops", text="hi"))

        if expected is ProviderTransportError:
            assert exc_info.value.status_code == status

    def test_timeout(self):
        session = http_session()
        session.request.side_effect = requests.exceptions.Timeout("slow")
        provider = SlackWebhookProvider("slack-webhook", webhook_url="https://hooks.example.com/x", session=session)

        with pytest.raises(ProviderTimeoutError):
            provider.send(ChatMessage(channel="#ops", text="hi"))

    def test_connection_error(self):
        session = http_session()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        provider = SlackWebhookProvider("slack-webhook", webhook_url="https://hooks.example.com/x", session=session)

        with pytest.raises(ProviderTransportError, match="refused"):
            provider.send(ChatMessage(channel="#ops", text="hi"))


class TestWebhookProvider:
    def test_sends_json_with_custom_method_and_headers(self):
        session = http_session(headers={"X-Request-Id": "req-42"})
        provider = WebhookProvider(session=session)

        receipt = provider.send(
            WebhookMessage(
                url="https://hooks.example.com/beacon",
                body={"id": "notif_1"},
                method="put",
                headers={"X-Signature": "abc"},
            )
        )

        kwargs = session.request.call_args.kwargs
        assert kwargs["method"] == "PUT"
        assert kwargs["headers"] == {"Content-Type": "application/json", "X-Signature": "abc"}
        assert kwargs["json"] == {"id": "notif_1"}
        assert receipt == ProviderReceipt(provider="webhook", message_id="req-42")

    def test_rejects_non_http_url(self):
        provider = WebhookProvider(session=http_session())
        with pytest.raises(InvalidAddressError):
            provider.send(WebhookMessage(url="ftp://example.com", body={}))

    def test_rejects_unsupported_method(self):
        provider = WebhookProvider(session=http_session())
        with pytest.raises(InvalidAddressError, match="method"):
            provider.send(WebhookMessage(url="https://example.com", body={}, method="DELETE"))

    def test_rejects_bad_timeout(self):
        with pytest.raises(ProviderConfigurationError):
            WebhookProvider(timeout=0, session=http_session())


class ScriptedProvider(DeliveryProvider):
    """Provider whose send() results are scripted per call."""

    channel = ChannelType.EMAIL

    def __init__(self, name, results):
        super().__init__(name)
        self.results = list(results)
        self.calls = 0

    def send(self, message):
        self.calls += 1
        result = self.results[min(self.calls, len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return ProviderReceipt(provider=self.name, message_id=result)


class TestFailover:
    def test_falls_back_to_second_provider(self, email):
        a = ScriptedProvider("a", [ProviderTransportError("down", provider="a")])
        b = ScriptedProvider("b", ["msg-b"])
        sleep = Mock()

        outcome = send_with_failover([a, b], email, max_retries=3, base_delay=1.0, sleep=sleep)

        assert outcome.success is True
        assert outcome.provider == "b"
        assert outcome.message_id == "msg-b"
        assert outcome.attempts == 2
        assert outcome.errors == ["a: down"]
        assert (a.calls, b.calls) == (1, 1)
        sleep.assert_not_called()

    def test_first_provider_success_stops_early(self, email):
        a = ScriptedProvider("a", ["msg-a"])
        b = ScriptedProvider("b", ["msg-b"])

        outcome = send_with_failover([a, b], email, sleep=Mock())

        assert outcome.provider == "a"
        assert b.calls == 0

    def test_exhaustion_makes_rounds_with_exponential_backoff(self, email):
        a = ScriptedProvider("a", [ProviderTimeoutError("slow", provider="a")])
        b = ScriptedProvider("b", [ProviderAuthError("denied", provider="b")])
        sleep = Mock()

        outcome = send_with_failover([a, b], email, max_retries=3, base_delay=1.0, sleep=sleep)

        assert outcome.success is False
        assert outcome.attempts == 6
        assert (a.calls, b.calls) == (3, 3)
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]
        assert outcome.error == "All providers failed after 6 attempts: denied"
        assert len(outcome.errors) == 6

    def test_recovers_in_later_round(self, email):
        a = ScriptedProvider("a", [ProviderTransportError("blip"), "msg-a"])
        sleep = Mock()

        outcome = send_with_failover([a], email, max_retries=3, base_delay=0.5, sleep=sleep)

        assert outcome.success is True
        assert outcome.attempts == 2
        sleep.assert_called_once_with(0.5)

    def test_untyped_errors_count_as_failures(self, email):
        a = ScriptedProvider("a", [KeyError("bug")])
        b = ScriptedProvider("b", ["msg-b"])

        outcome = send_with_failover([a, b], email, sleep=Mock())

        assert outcome.success is True
        assert outcome.provider == "b"

    def test_no_providers(self, email):
        outcome = send_with_failover([], email, sleep=Mock())

        assert outcome.success is False
        assert outcome.attempts == 0
        assert outcome.error == "No providers configured for this channel"

    def test_single_round_when_retries_is_zero(self, email):
        a = ScriptedProvider("a", [ProviderTransportError("down")])
        sleep = Mock()

        outcome = send_with_failover([a], email, max_retries=0, sleep=sleep)

        assert outcome.attempts == 1
        sleep.assert_not_called()

    def test_controller_applies_its_policy(self, email):
        a = ScriptedProvider("a", [ProviderTransportError("down")])
        sleep = Mock()
        controller = FailoverController(max_retries=2, base_delay=3.0, sleep=sleep)

        outcome = controller.send([a], email)

        assert outcome.attempts == 2
        sleep.assert_called_once_with(3.0)
