"""Routing rules: which channels an event type uses and when they may deliver."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from herald.core.models import JobKind
from herald.core.payloads import EventType
from herald.core.preferences import NotificationPreferences


class Category(StrEnum):
    AUCTIONS = "auctions"
    ORDERS = "orders"
    ONBOARDING = "onboarding"
    MESSAGES = "messages"
    ADMIN = "admin"


class Urgency(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


EMAIL_ONLY = frozenset({JobKind.EMAIL})
EMAIL_AND_SMS = frozenset({JobKind.EMAIL, JobKind.SMS})


@dataclass(frozen=True)
class RateLimit:
    """Per-user send ceiling on one channel. Zero means no ceiling for that window."""

    per_hour: int = 0
    per_day: int = 0


def email_limit(per_hour: int, per_day: int) -> dict[JobKind, RateLimit]:
    return {JobKind.EMAIL: RateLimit(per_hour, per_day)}


@dataclass(frozen=True)
class EventRule:
    """Delivery policy of one event type.

    Attributes:
        category: Preference category the event belongs to.
        toggle: Attribute of the category preferences that can switch this
            event off, or None if the category has no per-event toggle.
        channels: Channels the event may be delivered on.
        allow_during_quiet_hours: Deliver immediately even in quiet hours.
        email_delay: Minimum delay before the email may be sent.
        immediate: Hand new jobs to the immediate dispatch shortcut.
        rate_limits: Per-user ceilings by channel. Channels without an
            entry are not limited.
    """

    category: Category
    toggle: str | None
    urgency: Urgency = Urgency.NORMAL
    channels: frozenset[JobKind] = EMAIL_ONLY
    allow_during_quiet_hours: bool = True
    email_delay: timedelta = timedelta(0)
    immediate: bool = False
    rate_limits: dict[JobKind, RateLimit] = field(default_factory=dict, hash=False)

    def rate_limit(self, kind: JobKind) -> RateLimit | None:
        return self.rate_limits.get(kind)


RULES: dict[EventType, EventRule] = {
    EventType.AUCTION_OUTBID: EventRule(
        Category.AUCTIONS, "outbid", Urgency.HIGH, EMAIL_AND_SMS,
        allow_during_quiet_hours=False, email_delay=timedelta(minutes=5),
        rate_limits=email_limit(6, 18),
    ),
    EventType.AUCTION_HIGH_BIDDER: EventRule(
        Category.AUCTIONS, "high_bidder",
        allow_during_quiet_hours=False, email_delay=timedelta(minutes=30),
        rate_limits=email_limit(4, 12),
    ),
    EventType.AUCTION_ENDING_SOON: EventRule(
        Category.AUCTIONS, "ending_soon", Urgency.LOW, EMAIL_AND_SMS,
        allow_during_quiet_hours=False, rate_limits=email_limit(3, 10),
    ),
    EventType.AUCTION_WON: EventRule(
        Category.AUCTIONS, "won_lost", Urgency.CRITICAL, EMAIL_AND_SMS, immediate=True,
        rate_limits=email_limit(2, 4),
    ),
    EventType.AUCTION_LOST: EventRule(
        Category.AUCTIONS, "won_lost", rate_limits=email_limit(2, 6)
    ),
    EventType.ORDER_CONFIRMED: EventRule(
        Category.ORDERS, "confirmed", immediate=True, rate_limits=email_limit(4, 10)
    ),
    EventType.ORDER_IN_TRANSIT: EventRule(
        Category.ORDERS, "shipping_updates", immediate=True, rate_limits=email_limit(4, 10)
    ),
    EventType.ORDER_DELIVERED: EventRule(
        Category.ORDERS, "shipping_updates", immediate=True, rate_limits=email_limit(4, 10)
    ),
    EventType.ORDER_DELIVERY_CONFIRMED: EventRule(
        Category.ORDERS, "delivery_confirmed", immediate=True, rate_limits=email_limit(4, 10)
    ),
    EventType.ORDER_DELIVERY_CHECK_IN: EventRule(
        Category.ORDERS, "delivery_check_in", Urgency.LOW, rate_limits=email_limit(2, 4)
    ),
    EventType.ORDER_SLA_APPROACHING: EventRule(
        Category.ORDERS, "sla_reminders", Urgency.HIGH, immediate=True,
        rate_limits=email_limit(4, 10),
    ),
    EventType.ORDER_SLA_OVERDUE: EventRule(
        Category.ORDERS, "sla_reminders", Urgency.CRITICAL, EMAIL_AND_SMS, immediate=True,
        rate_limits=email_limit(4, 10),
    ),
    EventType.PAYOUT_RELEASED: EventRule(
        Category.ORDERS, "payout_released", immediate=True, rate_limits=email_limit(3, 8)
    ),
    # Offers are purchase intent and share the orders lane
    EventType.OFFER_RECEIVED: EventRule(
        Category.ORDERS, None, immediate=True, rate_limits=email_limit(10, 30)
    ),
    EventType.OFFER_ACCEPTED: EventRule(
        Category.ORDERS, None, Urgency.HIGH, EMAIL_AND_SMS, immediate=True,
        rate_limits=email_limit(6, 15),
    ),
    EventType.MESSAGE_RECEIVED: EventRule(
        Category.MESSAGES, "message_received", immediate=True, rate_limits=email_limit(10, 40)
    ),
    EventType.USER_WELCOME: EventRule(
        Category.ONBOARDING, "welcome", Urgency.LOW, rate_limits=email_limit(2, 2)
    ),
    EventType.ADMIN_DISPUTE_OPENED: EventRule(
        Category.ADMIN, "disputes", Urgency.CRITICAL, immediate=True,
        rate_limits=email_limit(30, 200),
    ),
}

_missing = set(EventType) - set(RULES)
if _missing:
    raise RuntimeError(f"Event types without a routing rule: {sorted(_missing)}")

_ENDING_SOON_URGENCY = {
    "2m": Urgency.CRITICAL,
    "10m": Urgency.HIGH,
    "1h": Urgency.NORMAL,
}


def get_event_rule(event_type: EventType, payload: Any = None) -> EventRule:
    """Return the rule for ``event_type``, refined by payload where it matters."""
    rule = RULES[event_type]
    if event_type is EventType.AUCTION_ENDING_SOON:
        urgency = _ENDING_SOON_URGENCY.get(getattr(payload, "threshold", None), Urgency.LOW)
        return replace(
            rule,
            urgency=urgency,
            allow_during_quiet_hours=urgency is Urgency.CRITICAL,
            immediate=urgency is Urgency.CRITICAL,
        )
    return rule


@dataclass
class ChannelDecision:
    enabled: bool
    deliver_after_at: datetime | None = None
    reason: str | None = None


@dataclass
class RuleDecision:
    """Per-recipient outcome of applying a rule to a user's preferences.

    ``in_app`` is the feed entry, written whenever the category is allowed.
    ``allow`` is true if the feed entry or any outbound channel is enabled.
    """

    allow: bool
    rule: EventRule
    channels: dict[JobKind, ChannelDecision] = field(default_factory=dict)
    in_app: bool = False
    suppressed_reason: str | None = None

    def channel(self, kind: JobKind) -> ChannelDecision:
        return self.channels.get(kind, ChannelDecision(enabled=False, reason="not_routed"))


def category_allows(rule: EventRule, prefs: NotificationPreferences) -> bool:
    if rule.toggle is None:
        return True
    group = getattr(prefs.categories, rule.category.value)
    return bool(getattr(group, rule.toggle, True))


def decide_channels(
    event_type: EventType,
    payload: Any,
    prefs: NotificationPreferences,
    now: datetime,
) -> RuleDecision:
    """Decide which channels deliver ``event_type`` to one recipient, and when.

    Quiet hours push ``deliver_after_at`` to the end of the user's quiet
    window unless the rule allows delivery during quiet hours. Email may be
    further delayed by the rule's ``email_delay``.
    """
    rule = get_event_rule(event_type, payload)

    if not category_allows(rule, prefs):
        return RuleDecision(
            allow=False,
            rule=rule,
            channels={
                kind: ChannelDecision(enabled=False, reason="disabled_by_prefs") for kind in JobKind
            },
            suppressed_reason="User preferences disabled this category",
        )

    quiet_end = None if rule.allow_during_quiet_hours else prefs.quiet_hours_end(now)

    channels: dict[JobKind, ChannelDecision] = {}
    for kind in JobKind:
        if kind not in rule.channels:
            channels[kind] = ChannelDecision(enabled=False, reason="not_routed")
            continue
        if not getattr(prefs.channels, kind.value):
            channels[kind] = ChannelDecision(enabled=False, reason=f"{kind.value}_disabled")
            continue
        deliver_after = quiet_end
        if kind is JobKind.EMAIL and rule.email_delay:
            delayed = now + rule.email_delay
            deliver_after = max(deliver_after, delayed) if deliver_after else delayed
        channels[kind] = ChannelDecision(enabled=True, deliver_after_at=deliver_after)

    # The feed entry has no channel preference and follows the category toggle alone
    return RuleDecision(allow=True, rule=rule, channels=channels, in_app=True)
