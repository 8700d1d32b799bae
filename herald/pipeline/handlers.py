"""Per-event-type handlers.

Every ``EventType`` has exactly one handler class. A handler turns an event
payload and a recipient into a ``MessagePlan``: the template to render and
the template payload to render it with. It also maps the payload onto the
recipient's in-app feed entry (``InAppMessage``). The registry is checked
for exhaustiveness at import time.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from herald.core.errors import UnknownEventTypeError
from herald.core.models import Event
from herald.core.payloads import EventType
from herald.pipeline.directory import Contact
from herald.pipeline.templates import TEMPLATES


@dataclass(frozen=True)
class MessagePlan:
    template: str
    template_payload: dict[str, Any]


@dataclass(frozen=True)
class InAppMessage:
    """Feed entry content. ``collapse_key`` replaces the event id as the entry id."""

    type: str
    title: str
    body: str
    link_url: str | None = None
    link_label: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    collapse_key: str | None = None


def format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return f"${amount:,.0f}"
    return f"${amount:,.2f}"


class EventHandler(ABC):
    """Base class for event handlers.

    Subclasses declare the event type they handle and the template they
    render with, and map the typed payload onto the template payload and
    the feed entry.
    """

    handles: ClassVar[EventType]
    template: ClassVar[str]

    @abstractmethod
    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        """Map an event payload onto the template payload for ``recipient``."""
        ...

    @abstractmethod
    def in_app(self, payload: Any) -> InAppMessage:
        """Map an event payload onto the recipient's feed entry."""
        ...

    def build(self, event: Event, recipient: Contact) -> MessagePlan:
        return MessagePlan(self.template, self.template_payload(event.payload, recipient))


class AuctionOutbidHandler(EventHandler):
    handles = EventType.AUCTION_OUTBID
    template = "auction_outbid"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "listing_title": payload.listing_title,
            "listing_url": payload.listing_url,
            "new_bid_amount": payload.new_high_bid_amount,
        }

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "bid_outbid",
            "You were outbid",
            f"Someone placed a higher bid on “{payload.listing_title}”.",
            payload.listing_url,
            "Raise bid",
            {"new_high_bid_amount": payload.new_high_bid_amount},
        )


class AuctionHighBidderHandler(EventHandler):
    handles = EventType.AUCTION_HIGH_BIDDER
    template = "auction_high_bidder"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "listing_title": payload.listing_title,
            "listing_url": payload.listing_url,
            "your_bid_amount": payload.your_bid_amount,
        }

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "auction_high_bidder",
            "You’re winning",
            f"You’re currently the high bidder on “{payload.listing_title}”.",
            payload.listing_url,
            "View auction",
            {
                "current_bid_amount": payload.current_bid_amount,
                "your_bid_amount": payload.your_bid_amount,
            },
        )


class AuctionEndingSoonHandler(EventHandler):
    handles = EventType.AUCTION_ENDING_SOON
    template = "auction_ending_soon"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "listing_title": payload.listing_title,
            "listing_url": payload.listing_url,
            "threshold": payload.threshold,
            "auction_ends_at": payload.ends_at,
        }

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "auction_ending_soon",
            f"Ending soon ({payload.threshold})",
            f"“{payload.listing_title}” is ending soon.",
            payload.listing_url,
            "View auction",
            {
                "threshold": payload.threshold,
                "ends_at": payload.ends_at,
                "current_bid_amount": payload.current_bid_amount,
            },
        )


class AuctionWonHandler(EventHandler):
    handles = EventType.AUCTION_WON
    template = "auction_winner"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "listing_title": payload.listing_title,
            "winning_bid": payload.winning_bid_amount,
            "order_url": payload.checkout_url or payload.listing_url,
        }

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "auction_won",
            "You won!",
            f"You won “{payload.listing_title}”. Complete checkout to secure it.",
            payload.checkout_url or payload.listing_url,
            "Complete checkout",
            {"winning_bid_amount": payload.winning_bid_amount},
        )


class AuctionLostHandler(EventHandler):
    handles = EventType.AUCTION_LOST
    template = "auction_lost"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "listing_title": payload.listing_title,
            "listing_url": payload.listing_url,
        }

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "auction_lost",
            "Auction ended",
            f"“{payload.listing_title}” ended. Keep watching for new listings.",
            payload.listing_url,
            "View listing",
            {"final_bid_amount": payload.final_bid_amount},
        )


class _OrderHandler(EventHandler):
    """Shared mapping for order events; subclasses add their own fields.

    The feed entry is described by class attributes. ``feed_body`` is
    formatted with the payload's fields.
    """

    feed_type: ClassVar[str]
    feed_title: ClassVar[str]
    feed_body: ClassVar[str]
    link_label: ClassVar[str] = "View order"

    def extra(self, payload: Any) -> dict[str, Any]:
        return {}

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "order_id": payload.order_id,
            "listing_title": payload.listing_title,
            "order_url": payload.order_url,
            **self.extra(payload),
        }

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            self.feed_type,
            self.feed_title,
            self.feed_body.format(**payload.model_dump()),
            payload.order_url,
            self.link_label,
            {"listing_id": payload.listing_id, "order_id": payload.order_id, **self.extra(payload)},
        )


class OrderConfirmedHandler(_OrderHandler):
    handles = EventType.ORDER_CONFIRMED
    template = "order_confirmation"
    feed_type = "order_created"
    feed_title = "Order confirmed"
    feed_body = (
        "Payment received for “{listing_title}”. Funds are held securely until "
        "delivery is confirmed."
    )
    link_label = "View timeline"

    def extra(self, payload: Any) -> dict[str, Any]:
        return {"amount": payload.amount}


class OrderInTransitHandler(_OrderHandler):
    handles = EventType.ORDER_IN_TRANSIT
    template = "order_in_transit"
    feed_type = "order_in_transit"
    feed_title = "In transit"
    feed_body = "Your order for “{listing_title}” is in transit."


class OrderDeliveredHandler(_OrderHandler):
    handles = EventType.ORDER_DELIVERED
    template = "order_delivered"
    feed_type = "order_delivered"
    feed_title = "Delivered"
    feed_body = "Your order for “{listing_title}” was delivered."


class OrderDeliveryConfirmedHandler(_OrderHandler):
    handles = EventType.ORDER_DELIVERY_CONFIRMED
    template = "order_delivery_confirmed"
    feed_type = "order_completed"
    feed_title = "Delivery confirmed"
    feed_body = "Delivery confirmed for “{listing_title}”."

    def extra(self, payload: Any) -> dict[str, Any]:
        return {"delivery_date": payload.delivery_date}


class OrderDeliveryCheckInHandler(_OrderHandler):
    handles = EventType.ORDER_DELIVERY_CHECK_IN
    template = "order_delivery_check_in"
    feed_type = "order_delivery_checkin"
    feed_title = "Quick check-in"
    feed_body = "How did “{listing_title}” go? Confirm receipt or report an issue."
    link_label = "Open order"

    def extra(self, payload: Any) -> dict[str, Any]:
        return {"days_since_delivery": payload.days_since_delivery}


class OrderSlaApproachingHandler(_OrderHandler):
    handles = EventType.ORDER_SLA_APPROACHING
    template = "order_sla_approaching"
    feed_type = "order_sla_approaching"
    feed_title = "Delivery deadline approaching"
    feed_body = "{hours_remaining}h left to deliver “{listing_title}”."

    def extra(self, payload: Any) -> dict[str, Any]:
        return {"hours_remaining": payload.hours_remaining, "deadline": payload.deadline}


class OrderSlaOverdueHandler(_OrderHandler):
    handles = EventType.ORDER_SLA_OVERDUE
    template = "order_sla_overdue"
    feed_type = "order_sla_overdue"
    feed_title = "Delivery overdue"
    feed_body = "Delivery of “{listing_title}” is {hours_overdue}h past its deadline."

    def extra(self, payload: Any) -> dict[str, Any]:
        return {"hours_overdue": payload.hours_overdue, "deadline": payload.deadline}


class PayoutReleasedHandler(EventHandler):
    handles = EventType.PAYOUT_RELEASED
    template = "payout_released"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "order_id": payload.order_id,
            "listing_title": payload.listing_title,
            "amount": payload.amount,
            "transfer_id": payload.transfer_id,
            "payout_date": payload.payout_date,
        }

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "payout_released",
            "Payout released",
            f"Your payout of {format_amount(payload.amount)} for “{payload.listing_title}” "
            "was released.",
            metadata={
                "listing_id": payload.listing_id,
                "order_id": payload.order_id,
                "amount": payload.amount,
                "transfer_id": payload.transfer_id,
            },
        )


class _OfferHandler(EventHandler):
    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "listing_title": payload.listing_title,
            "offer_url": payload.offer_url,
            "amount": payload.amount,
        }

    def metadata(self, payload: Any) -> dict[str, Any]:
        return {"listing_id": payload.listing_id, "offer_id": payload.offer_id, "amount": payload.amount}


class OfferReceivedHandler(_OfferHandler):
    handles = EventType.OFFER_RECEIVED
    template = "offer_received"

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "offer_received",
            "New offer received",
            f"You received an offer of {format_amount(payload.amount)} "
            f"on “{payload.listing_title}”.",
            payload.offer_url,
            "Review offer",
            {**self.metadata(payload), "expires_at": payload.expires_at},
        )


class OfferAcceptedHandler(_OfferHandler):
    handles = EventType.OFFER_ACCEPTED
    template = "offer_accepted"

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "offer_accepted",
            "Offer accepted",
            f"Offer accepted for “{payload.listing_title}” at {format_amount(payload.amount)}.",
            payload.offer_url,
            "Next steps",
            self.metadata(payload),
        )


class MessageReceivedHandler(EventHandler):
    handles = EventType.MESSAGE_RECEIVED
    template = "message_received"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "listing_title": payload.listing_title,
            "thread_url": payload.thread_url,
            "sender_role": payload.sender_role,
            "preview": (payload.preview or "")[:280],
        }

    def in_app(self, payload: Any) -> InAppMessage:
        sender = "Buyer" if payload.sender_role == "buyer" else "Seller"
        # One feed entry per thread, updated in place by each new message
        return InAppMessage(
            "message_received",
            "New message",
            f"{sender} messaged you about “{payload.listing_title}”.",
            payload.thread_url,
            "View message",
            {
                "preview": (payload.preview or "")[:280],
                "thread_id": payload.thread_id,
                "listing_id": payload.listing_id,
            },
            collapse_key=f"msg_thread:{payload.thread_id}",
        )


class UserWelcomeHandler(EventHandler):
    handles = EventType.USER_WELCOME
    template = "welcome"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        name = payload.display_name or recipient.name
        return {"recipient_name": name, "dashboard_url": payload.dashboard_url}

    def in_app(self, payload: Any) -> InAppMessage:
        return InAppMessage(
            "user_welcome",
            "Welcome aboard",
            "Your next great deal is one bid away.",
            payload.dashboard_url,
            "Go to dashboard",
        )


class AdminDisputeOpenedHandler(EventHandler):
    handles = EventType.ADMIN_DISPUTE_OPENED
    template = "admin_dispute_opened"

    def template_payload(self, payload: Any, recipient: Contact) -> dict[str, Any]:
        return {
            "recipient_name": recipient.name,
            "order_id": payload.order_id,
            "buyer_id": payload.buyer_id,
            "dispute_type": payload.dispute_type,
            "reason": payload.reason,
            "admin_ops_url": payload.admin_ops_url,
        }

    def in_app(self, payload: Any) -> InAppMessage:
        if payload.listing_title:
            body = f"Dispute opened for “{payload.listing_title}”."
        else:
            body = "A dispute was opened on an order."
        return InAppMessage(
            "admin_dispute_opened",
            "Dispute opened",
            body,
            payload.admin_ops_url,
            "Open admin",
            {
                "order_id": payload.order_id,
                "buyer_id": payload.buyer_id,
                "dispute_type": payload.dispute_type,
                "reason": payload.reason,
            },
        )


HANDLERS: dict[EventType, EventHandler] = {
    handler.handles: handler
    for handler in (
        AuctionOutbidHandler(),
        AuctionHighBidderHandler(),
        AuctionEndingSoonHandler(),
        AuctionWonHandler(),
        AuctionLostHandler(),
        OrderConfirmedHandler(),
        OrderInTransitHandler(),
        OrderDeliveredHandler(),
        OrderDeliveryConfirmedHandler(),
        OrderDeliveryCheckInHandler(),
        OrderSlaApproachingHandler(),
        OrderSlaOverdueHandler(),
        PayoutReleasedHandler(),
        OfferReceivedHandler(),
        OfferAcceptedHandler(),
        MessageReceivedHandler(),
        UserWelcomeHandler(),
        AdminDisputeOpenedHandler(),
    )
}

_missing = set(EventType) - set(HANDLERS)
if _missing:
    raise RuntimeError(f"Event types without a handler: {sorted(_missing)}")

_unknown_templates = {h.template for h in HANDLERS.values()} - set(TEMPLATES)
if _unknown_templates:
    raise RuntimeError(f"Handlers reference unknown templates: {sorted(_unknown_templates)}")


def get_handler(event_type: str) -> EventHandler:
    """Return the handler for ``event_type``.

    Raises:
        UnknownEventTypeError: If the type is not a known ``EventType``.
    """
    try:
        return HANDLERS[EventType(event_type)]
    except ValueError as e:
        raise UnknownEventTypeError(f"no handler for event type {event_type!r}") from e