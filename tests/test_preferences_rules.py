"""Tests for quiet hours and channel routing rules."""

from datetime import UTC, datetime, timedelta

import pytest

from herald.core.models import JobKind
from herald.core.payloads import EventType, validate_payload
from herald.core.preferences import NotificationPreferences, QuietHours
from herald.core.rules import RULES, RateLimit, Urgency, decide_channels, get_event_rule
from tests.conftest import START, order_payload, outbid_payload

# 22:00 on Mar 1 in America/Chicago (UTC-6)
QUIET_NIGHT = datetime(2026, 3, 2, 4, 0, tzinfo=UTC)
# 08:00 on Mar 2 in America/Chicago
QUIET_END = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


def _payload(event_type, raw):
    return validate_payload(event_type.value, raw).data


def _ending_soon(threshold):
    return _payload(
        EventType.AUCTION_ENDING_SOON,
        {
            "listing_id": "L1",
            "listing_title": "Vintage Camera",
            "listing_url": "https://example.com/listings/L1",
            "threshold": threshold,
            "ends_at": "2026-03-02T16:00:00Z",
        },
    )


class TestQuietHours:
    def test_daytime_is_not_quiet(self):
        prefs = NotificationPreferences()
        assert not prefs.is_quiet(START)
        assert prefs.quiet_hours_end(START) is None

    def test_window_wraps_past_midnight(self):
        prefs = NotificationPreferences()
        assert prefs.is_quiet(QUIET_NIGHT)
        assert prefs.is_quiet(datetime(2026, 3, 2, 10, 0, tzinfo=UTC))

    def test_end_is_next_local_end_hour(self):
        prefs = NotificationPreferences()
        assert prefs.quiet_hours_end(QUIET_NIGHT) == QUIET_END
        assert prefs.quiet_hours_end(datetime(2026, 3, 2, 10, 0, tzinfo=UTC)) == QUIET_END

    def test_same_day_window(self):
        prefs = NotificationPreferences(
            timezone="UTC", quiet_hours=QuietHours(start_hour=1, end_hour=5)
        )
        assert prefs.is_quiet(datetime(2026, 3, 2, 3, 0, tzinfo=UTC))
        assert not prefs.is_quiet(datetime(2026, 3, 2, 5, 0, tzinfo=UTC))

    def test_disabled_or_empty_window(self):
        off = NotificationPreferences(quiet_hours=QuietHours(enabled=False))
        empty = NotificationPreferences(quiet_hours=QuietHours(start_hour=8, end_hour=8))
        assert not off.is_quiet(QUIET_NIGHT)
        assert not empty.is_quiet(QUIET_NIGHT)

    def test_unknown_timezone_falls_back(self):
        prefs = NotificationPreferences(timezone="Mars/Olympus_Mons")
        assert prefs.quiet_hours_end(QUIET_NIGHT) == QUIET_END

    def test_partial_document_parses_with_defaults(self):
        prefs = NotificationPreferences.model_validate({"channels": {"sms": True}})
        assert prefs.channels.sms and prefs.channels.email
        assert prefs.categories.orders.shipping_updates


class TestRules:
    def test_every_event_type_has_a_rule(self):
        assert set(RULES) == set(EventType)

    def test_every_rule_limits_email(self):
        for rule in RULES.values():
            limit = rule.rate_limit(JobKind.EMAIL)
            assert limit is not None
            assert 0 < limit.per_hour <= limit.per_day

    def test_sms_is_not_limited(self):
        assert RULES[EventType.AUCTION_OUTBID].rate_limit(JobKind.SMS) is None

    def test_ending_soon_refinement_keeps_rate_limits(self):
        rule = get_event_rule(EventType.AUCTION_ENDING_SOON, _ending_soon("2m"))
        assert rule.rate_limit(JobKind.EMAIL) == RateLimit(3, 10)

    @pytest.mark.parametrize(
        ("threshold", "urgency", "immediate"),
        [("2m", Urgency.CRITICAL, True), ("10m", Urgency.HIGH, False), ("24h", Urgency.LOW, False)],
    )
    def test_ending_soon_urgency_follows_threshold(self, threshold, urgency, immediate):
        rule = get_event_rule(EventType.AUCTION_ENDING_SOON, _ending_soon(threshold))
        assert rule.urgency is urgency
        assert rule.immediate is immediate
        assert rule.allow_during_quiet_hours is immediate

    def test_immediate_order_event_has_no_delay(self):
        prefs = NotificationPreferences()
        payload = _payload(EventType.ORDER_DELIVERED, order_payload())
        decision = decide_channels(EventType.ORDER_DELIVERED, payload, prefs, QUIET_NIGHT)
        assert decision.allow
        assert decision.rule.immediate
        assert decision.channel(JobKind.EMAIL).enabled
        assert decision.channel(JobKind.EMAIL).deliver_after_at is None
        assert decision.channel(JobKind.SMS).reason == "not_routed"

    def test_outbid_email_is_delayed(self):
        prefs = NotificationPreferences()
        payload = _payload(EventType.AUCTION_OUTBID, outbid_payload())
        decision = decide_channels(EventType.AUCTION_OUTBID, payload, prefs, START)
        assert decision.channel(JobKind.EMAIL).deliver_after_at == START + timedelta(minutes=5)
        assert decision.channel(JobKind.SMS).reason == "sms_disabled"

    def test_quiet_hours_push_delivery_to_window_end(self):
        prefs = NotificationPreferences.model_validate({"channels": {"sms": True}})
        payload = _payload(EventType.AUCTION_OUTBID, outbid_payload())
        decision = decide_channels(EventType.AUCTION_OUTBID, payload, prefs, QUIET_NIGHT)
        assert decision.channel(JobKind.EMAIL).deliver_after_at == QUIET_END
        assert decision.channel(JobKind.SMS).deliver_after_at == QUIET_END

    def test_disabled_category_suppresses_everything(self):
        prefs = NotificationPreferences.model_validate(
            {"categories": {"orders": {"shipping_updates": False}}}
        )
        payload = _payload(EventType.ORDER_DELIVERED, order_payload())
        decision = decide_channels(EventType.ORDER_DELIVERED, payload, prefs, START)
        assert not decision.allow
        assert not decision.in_app
        assert decision.suppressed_reason
        assert not decision.channel(JobKind.EMAIL).enabled

    def test_all_channels_disabled_keeps_feed_entry(self):
        prefs = NotificationPreferences.model_validate({"channels": {"email": False}})
        payload = _payload(EventType.ORDER_DELIVERED, order_payload())
        decision = decide_channels(EventType.ORDER_DELIVERED, payload, prefs, START)
        assert decision.allow
        assert decision.in_app
        assert not any(c.enabled for c in decision.channels.values())
        assert decision.channel(JobKind.EMAIL).reason == "email_disabled"
