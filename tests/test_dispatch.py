"""Tests for the dispatch building blocks.

Covers:
- Request, recipient and time window models
- Rule matching and priority-ordered rewriting
- Recipient eligibility filtering (categories, severity, quiet hours)
- Channel selection and grouping
- Template rendering and channel message construction
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from beacon.dispatch.exceptions import NoEligibleRecipientsError, NotificationTemplateError
from beacon.dispatch.filtering import RecipientFilter, exclusion_reason
from beacon.dispatch.grouping import group_by_channel, select_channel
from beacon.dispatch.models import DispatchRequest, NotificationRule, TimeWindow
from beacon.dispatch.payloads import (
    build_channel_message,
    build_template_context,
    build_webhook_payload,
)
from beacon.dispatch.rules import RuleEngine, apply_rules, rule_matches
from beacon.dispatch.templates import RenderedContent, TemplateRenderer
from beacon.domain.models import Category, ChannelType, DeliveryFrequency, Severity
from beacon.providers.base import ChatMessage, EmailMessage, WebhookMessage


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def make_request(**overrides):
    data = {
        "id": "notif_1",
        "type": "job_failed",
        "category": "alert",
        "severity": "medium",
        "title": "Nightly cleanup failed",
        "message": "Disk quota exceeded on worker-3",
    }
    data.update(overrides)
    return DispatchRequest(**data)


def make_rule(rule_id="r1", priority=0, conditions=None, **actions):
    return NotificationRule(
        id=rule_id,
        name=rule_id,
        priority=priority,
        conditions=conditions or {},
        actions=actions,
    )


class TestModels:
    def test_severity_ordering(self):
        assert Severity.CRITICAL.at_least(Severity.HIGH)
        assert Severity.MEDIUM.at_least("medium")
        assert not Severity.LOW.at_least(Severity.MEDIUM)

    def test_request_is_frozen(self):
        request = make_request()
        with pytest.raises(ValidationError):
            request.title = "changed"

    def test_request_times_are_normalized_to_utc(self):
        request = make_request(scheduled_for=datetime(2024, 1, 1, 9, 0))
        assert request.scheduled_for == utc(2024, 1, 1, 9, 0)

    def test_deferred_and_expired(self):
        now = utc(2024, 1, 1, 12, 0)
        request = make_request(scheduled_for=now + timedelta(minutes=1), expires_at=now)

        assert request.is_deferred(now) is True
        assert request.is_deferred(now + timedelta(minutes=1)) is False
        assert request.is_expired(now) is True
        assert make_request().is_expired(now) is False

    def test_channel_restriction(self):
        assert make_request().allows(ChannelType.SMS)
        restricted = make_request(channels=["slack"])
        assert restricted.allows(ChannelType.SLACK)
        assert not restricted.allows(ChannelType.EMAIL)

    def test_recipient_addresses(self, recipient_factory):
        recipient = recipient_factory(
            recipient_id=7,
            slack_user_id="U024BE7LH",
            channels={"email": 1, "webhook": 0},
        )
        recipient.preferences.channels[1].config["url"] = "https://hooks.example.com/7"

        assert recipient.id == "7"
        assert recipient.label == "user_7"
        assert recipient.address_for(ChannelType.EMAIL) == "user1@example.com"
        assert recipient.address_for(ChannelType.SLACK) == "U024BE7LH"
        assert recipient.address_for(ChannelType.WEBHOOK) == "https://hooks.example.com/7"
        assert recipient.address_for(ChannelType.SMS) is None

    def test_enabled_channels_sorted_by_priority(self, recipient_factory):
        recipient = recipient_factory(channels={"email": 1, "slack": 5, "webhook": 3})
        recipient.preferences.channels[1].enabled = False

        assert [c.type for c in recipient.preferences.enabled_channels()] == [
            ChannelType.WEBHOOK,
            ChannelType.EMAIL,
        ]

    def test_categories_default_to_all(self, recipient_factory):
        assert set(recipient_factory().preferences.categories) == set(Category)

    def test_rule_requires_an_action(self):
        with pytest.raises(ValidationError, match="at least one action"):
            NotificationRule(id="r", name="r")


class TestTimeWindow:
    def test_daytime_window_is_inclusive(self):
        window = TimeWindow(start="09:00", end="17:00")

        assert window.contains(utc(2024, 1, 1, 9, 0))
        assert window.contains(utc(2024, 1, 1, 17, 0))
        assert not window.contains(utc(2024, 1, 1, 17, 1))
        assert not window.contains(utc(2024, 1, 1, 8, 59))

    def test_overnight_window_wraps_midnight(self):
        window = TimeWindow(start="22:00", end="06:00")

        assert window.contains(utc(2024, 1, 1, 23, 30))
        assert window.contains(utc(2024, 1, 1, 3, 0))
        assert window.contains(utc(2024, 1, 1, 6, 0))
        assert not window.contains(utc(2024, 1, 1, 6, 1))
        assert not window.contains(utc(2024, 1, 1, 12, 0))

    def test_evaluated_in_window_timezone(self):
        window = TimeWindow(start="22:00", end="06:00", timezone="America/New_York")

        # 03:30 UTC is 22:30 in New York during winter
        assert window.contains(utc(2024, 1, 2, 3, 30))
        # 23:30 UTC is 18:30 in New York
        assert not window.contains(utc(2024, 1, 1, 23, 30))

    @pytest.mark.parametrize("start,tz", [("25:00", "UTC"), ("9am", "UTC"), ("09:00", "Moon/Base")])
    def test_invalid_values(self, start, tz):
        with pytest.raises(ValidationError):
            TimeWindow(start=start, end="17:00", timezone=tz)


class TestRules:
    def test_empty_conditions_always_match(self):
        rule = make_rule(channels=["email"])
        assert rule_matches(rule, make_request(), utc(2024, 1, 1))

    def test_category_and_severity_conditions(self):
        rule = make_rule(conditions={"categories": ["alert"], "severities": ["high", "critical"]}, channels=["slack"])

        assert not rule_matches(rule, make_request(), utc(2024, 1, 1))
        assert rule_matches(rule, make_request(severity="high"), utc(2024, 1, 1))
        assert not rule_matches(rule, make_request(category="digest", severity="high"), utc(2024, 1, 1))

    def test_keywords_match_title_or_message_case_insensitively(self):
        rule = make_rule(conditions={"keywords": ["  QUOTA ", "timeout"]}, channels=["slack"])

        assert rule.conditions.keywords == ["quota", "timeout"]
        assert rule_matches(rule, make_request(), utc(2024, 1, 1))
        assert not rule_matches(rule, make_request(message="All good"), utc(2024, 1, 1))

    def test_time_range_condition_uses_evaluation_time(self):
        rule = make_rule(conditions={"time_range": {"start": "22:00", "end": "06:00"}}, delay_minutes=480)

        assert rule_matches(rule, make_request(), utc(2024, 1, 1, 23, 0))
        assert not rule_matches(rule, make_request(), utc(2024, 1, 1, 12, 0))

    def test_apply_returns_new_request(self):
        request = make_request()
        rewritten = apply_rules([make_rule(channels=["slack"])], request, utc(2024, 1, 1))

        assert rewritten.channels == [ChannelType.SLACK]
        assert request.channels is None

    def test_no_match_returns_same_request(self):
        request = make_request()
        rule = make_rule(conditions={"categories": ["digest"]}, channels=["slack"])
        assert apply_rules([rule], request, utc(2024, 1, 1)) is request

    def test_lower_priority_rule_applied_last_wins(self):
        rules = [
            make_rule("high", priority=100, channels=["slack"], template="urgent"),
            make_rule("low", priority=1, channels=["email"]),
        ]

        rewritten = apply_rules(rules, make_request(), utc(2024, 1, 1))

        assert rewritten.channels == [ChannelType.EMAIL]
        assert rewritten.template == "urgent"

    def test_delay_sets_scheduled_for(self):
        now = utc(2024, 1, 1, 23, 0)
        rewritten = apply_rules([make_rule(delay_minutes=30)], make_request(), now)
        assert rewritten.scheduled_for == utc(2024, 1, 1, 23, 30)

    def test_inactive_rules_are_ignored(self):
        rule = make_rule(channels=["slack"]).model_copy(update={"is_active": False})
        assert apply_rules([rule], make_request(), utc(2024, 1, 1)).channels is None

    def test_rule_engine_registry(self):
        engine = RuleEngine([make_rule("a", priority=1, channels=["email"])])
        engine.add_rule(make_rule("b", priority=5, channels=["slack"]))

        assert [r.id for r in engine.list_rules()] == ["b", "a"]
        assert engine.get_rule("a").priority == 1
        assert engine.remove_rule("a") is True
        assert engine.remove_rule("a") is False
        assert engine.apply(make_request(), utc(2024, 1, 1)).channels == [ChannelType.SLACK]

    def test_add_rule_replaces_by_id(self):
        engine = RuleEngine([make_rule("a", channels=["email"])])
        engine.add_rule(make_rule("a", channels=["slack"]))

        assert len(engine.list_rules()) == 1
        assert engine.get_rule("a").actions.channels == [ChannelType.SLACK]


class TestRecipientFilter:
    def test_category_opt_in(self, recipient_factory):
        recipient = recipient_factory(categories=[Category.DIGEST])
        reason = exclusion_reason(make_request(), recipient, utc(2024, 1, 1))
        assert reason == "not opted into category alert"

    def test_minimum_severity(self, recipient_factory):
        recipient = recipient_factory(minimum_severity=Severity.HIGH)
        now = utc(2024, 1, 1)

        assert exclusion_reason(make_request(severity="medium"), recipient, now).startswith("severity medium")
        assert exclusion_reason(make_request(severity="high"), recipient, now) is None
        assert exclusion_reason(make_request(severity="critical"), recipient, now) is None

    def test_quiet_hours_block_non_critical(self, recipient_factory):
        recipient = recipient_factory(quiet_hours=TimeWindow(start="22:00", end="06:00"))
        night = utc(2024, 1, 1, 23, 30)

        assert exclusion_reason(make_request(severity="high"), recipient, night) == "inside quiet hours"
        assert exclusion_reason(make_request(severity="critical"), recipient, night) is None
        assert exclusion_reason(make_request(severity="high"), recipient, utc(2024, 1, 1, 12, 0)) is None

    def test_recipient_without_channels_is_never_eligible(self, recipient_factory):
        recipient = recipient_factory(channels={})
        reason = exclusion_reason(make_request(severity="critical"), recipient, utc(2024, 1, 1))
        assert reason == "no enabled channels"

    def test_preserves_order(self, recipient_factory, clock):
        recipients = [
            recipient_factory("1"),
            recipient_factory("2", categories=[Category.JOB]),
            recipient_factory("3"),
        ]
        eligible = RecipientFilter(clock=clock).filter(make_request(recipients=recipients))
        assert [r.id for r in eligible] == ["1", "3"]

    def test_explicit_candidates_override_request_recipients(self, recipient_factory, clock):
        eligible = RecipientFilter(clock=clock).filter(make_request(), [recipient_factory("9")])
        assert [r.id for r in eligible] == ["9"]

    def test_no_eligible_recipients(self, recipient_factory, clock):
        request = make_request(recipients=[recipient_factory("1", minimum_severity=Severity.CRITICAL)])

        with pytest.raises(NoEligibleRecipientsError) as exc_info:
            RecipientFilter(clock=clock).filter(request)

        assert exc_info.value.reasons == {"1": "severity medium below minimum critical"}


class TestGrouping:
    def test_highest_priority_channel_wins(self, recipient_factory):
        recipient = recipient_factory(channels={"email": 1, "slack": 2})
        assert select_channel(recipient) == ChannelType.SLACK

    def test_allowed_channels_restrict_selection(self, recipient_factory):
        recipient = recipient_factory(channels={"email": 1, "slack": 2})
        assert select_channel(recipient, [ChannelType.EMAIL]) == ChannelType.EMAIL
        assert select_channel(recipient, [ChannelType.WEBHOOK]) is None

    def test_group_by_channel(self, recipient_factory):
        recipients = [
            recipient_factory("1", channels={"email": 1}),
            recipient_factory("2", channels={"slack": 1}),
            recipient_factory("3", channels={"email": 2, "slack": 1}),
            recipient_factory("4", channels={"sms": 1}),
        ]

        groups = group_by_channel(recipients, [ChannelType.EMAIL, ChannelType.SLACK])

        assert {channel: [r.id for r in members] for channel, members in groups.items()} == {
            ChannelType.EMAIL: ["1", "3"],
            ChannelType.SLACK: ["2"],
        }


class TestTemplateRenderer:
    @pytest.fixture
    def renderer(self):
        return TemplateRenderer()

    def test_default_template(self, renderer, recipient_factory):
        request = make_request(severity="high", metadata={"job_id": "job_1"})
        content = renderer.render("default", build_template_context(request, recipient_factory()))

        assert content.subject == "[HIGH] Nightly cleanup failed"
        assert content.text.startswith("Nightly cleanup failed")
        assert "Disk quota exceeded on worker-3" in content.text
        assert "job_id: job_1" in content.text
        assert "<h2" in content.html

    def test_html_is_autoescaped(self, renderer, recipient_factory):
        request = make_request(title="<script>alert(1)</script>")
        content = renderer.render("default", build_template_context(request, recipient_factory()))

        assert "<script>" not in content.html
        assert "&lt;script&gt;" in content.html
        assert "<script>" in content.text

    def test_batch_digest_template(self, renderer):
        content = renderer.render(
            "batch_digest",
            {
                "category": "alert",
                "count": 2,
                "notifications": [
                    {"title": "A", "message": "first", "severity": "low"},
                    {"title": "B", "message": "second", "severity": "medium"},
                ],
            },
        )

        assert content.subject == "2 alert notifications"
        assert "[low] A" in content.text
        assert "[medium] B" in content.text

    def test_missing_template(self, renderer):
        with pytest.raises(NotificationTemplateError, match="Template not found") as exc_info:
            renderer.render("does_not_exist", {})
        assert exc_info.value.template == "does_not_exist"

    def test_missing_variable_fails(self, renderer):
        with pytest.raises(NotificationTemplateError, match="rendering failed"):
            renderer.render("default", {"title": "only a title"})


class TestPayloads:
    def test_template_data_overrides_request_fields(self, recipient_factory):
        request = make_request(template_data={"title": "Custom", "job": "cleanup"})
        context = build_template_context(request, recipient_factory("5"))

        assert context["title"] == "Custom"
        assert context["job"] == "cleanup"
        assert context["category"] == "alert"
        assert context["recipient_id"] == "5"

    def test_webhook_payload(self):
        payload = build_webhook_payload(make_request(metadata={"k": "v"}), utc(2024, 1, 1, 2, 0))

        assert payload == {
            "id": "notif_1",
            "type": "job_failed",
            "category": "alert",
            "severity": "medium",
            "title": "Nightly cleanup failed",
            "message": "Disk quota exceeded on worker-3",
            "timestamp": "2024-01-01T02:00:00.000000Z",
            "metadata": {"k": "v"},
        }

    def test_channel_messages(self, recipient_factory):
        content = RenderedContent(subject="Subject", text="Text", html="<p>Text</p>")
        request = make_request()
        recipient = recipient_factory(channels={"webhook": 1})
        recipient.preferences.channels[0].config.update(
            {"url": "https://hooks.example.com", "method": "PUT", "headers": {"X-Token": 1}}
        )
        now = utc(2024, 1, 1)

        email = build_channel_message(ChannelType.EMAIL, "a@example.com", request, recipient, content, now)
        assert email == EmailMessage(to="a@example.com", subject="Subject", text="Text", html="<p>Text</p>")

        chat = build_channel_message(ChannelType.SLACK, "U1", request, recipient, content, now)
        assert chat == ChatMessage(channel="U1", text="Text")

        hook = build_channel_message(
            ChannelType.WEBHOOK, "https://hooks.example.com", request, recipient, content, now
        )
        assert isinstance(hook, WebhookMessage)
        assert hook.method == "PUT"
        assert hook.headers == {"X-Token": "1"}
        assert hook.body["id"] == "notif_1"

    def test_frequency_enum_from_strings(self, recipient_factory):
        recipient = recipient_factory(frequency="batched")
        assert recipient.preferences.frequency == DeliveryFrequency.BATCHED
