"""Typed event payloads.

Each event type carries its own payload model; together they form a tagged
union discriminated by the ``type`` field. Payloads are validated once, at
emission, and are immutable afterwards.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal, Union, get_args
from urllib.parse import urlparse

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    Field,
    TypeAdapter,
)
from pydantic import ValidationError as PydanticValidationError

from herald.core.clock import clamp_int


class EventType(StrEnum):
    """Closed set of domain occurrences the pipeline knows how to process."""

    AUCTION_OUTBID = "Auction.Outbid"
    AUCTION_HIGH_BIDDER = "Auction.HighBidder"
    AUCTION_ENDING_SOON = "Auction.EndingSoon"
    AUCTION_WON = "Auction.Won"
    AUCTION_LOST = "Auction.Lost"
    ORDER_CONFIRMED = "Order.Confirmed"
    ORDER_IN_TRANSIT = "Order.InTransit"
    ORDER_DELIVERED = "Order.Delivered"
    ORDER_DELIVERY_CONFIRMED = "Order.DeliveryConfirmed"
    ORDER_DELIVERY_CHECK_IN = "Order.DeliveryCheckIn"
    ORDER_SLA_APPROACHING = "Order.SlaApproaching"
    ORDER_SLA_OVERDUE = "Order.SlaOverdue"
    PAYOUT_RELEASED = "Payout.Released"
    OFFER_RECEIVED = "Offer.Received"
    OFFER_ACCEPTED = "Offer.Accepted"
    MESSAGE_RECEIVED = "Message.Received"
    USER_WELCOME = "User.Welcome"
    ADMIN_DISPUTE_OPENED = "Admin.Order.DisputeOpened"


class EntityType(StrEnum):
    LISTING = "listing"
    ORDER = "order"
    USER = "user"
    MESSAGE_THREAD = "message_thread"
    SYSTEM = "system"


def _check_url(value: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"must be an absolute http(s) URL, got {value!r}")
    return value


Url = Annotated[str, AfterValidator(_check_url)]
NonEmpty = Annotated[str, Field(min_length=1)]
Amount = Annotated[float, Field(ge=0, allow_inf_nan=False)]
# Integers computed from time arithmetic are clamped, never rejected
ClampedInt = Annotated[int, BeforeValidator(clamp_int)]


class _Payload(BaseModel):
    model_config = {"extra": "forbid", "frozen": True}


class _ListingPayload(_Payload):
    listing_id: NonEmpty
    listing_title: NonEmpty
    listing_url: Url


class _OrderPayload(_Payload):
    order_id: NonEmpty
    listing_id: NonEmpty
    listing_title: NonEmpty
    order_url: Url


class AuctionOutbidPayload(_ListingPayload):
    type: Literal["Auction.Outbid"] = "Auction.Outbid"
    new_high_bid_amount: Amount
    ends_at: str | None = None


class AuctionHighBidderPayload(_ListingPayload):
    type: Literal["Auction.HighBidder"] = "Auction.HighBidder"
    your_bid_amount: Amount
    current_bid_amount: Amount
    ends_at: str | None = None


class AuctionEndingSoonPayload(_ListingPayload):
    type: Literal["Auction.EndingSoon"] = "Auction.EndingSoon"
    threshold: Literal["24h", "1h", "10m", "2m"]
    ends_at: NonEmpty
    current_bid_amount: Amount | None = None


class AuctionWonPayload(_ListingPayload):
    type: Literal["Auction.Won"] = "Auction.Won"
    winning_bid_amount: Amount
    ends_at: str | None = None
    checkout_url: Url | None = None


class AuctionLostPayload(_ListingPayload):
    type: Literal["Auction.Lost"] = "Auction.Lost"
    final_bid_amount: Amount | None = None
    ends_at: str | None = None


class OrderConfirmedPayload(_OrderPayload):
    type: Literal["Order.Confirmed"] = "Order.Confirmed"
    amount: Amount
    payment_method: str | None = None


class OrderInTransitPayload(_OrderPayload):
    type: Literal["Order.InTransit"] = "Order.InTransit"


class OrderDeliveredPayload(_OrderPayload):
    type: Literal["Order.Delivered"] = "Order.Delivered"


class OrderDeliveryConfirmedPayload(_OrderPayload):
    type: Literal["Order.DeliveryConfirmed"] = "Order.DeliveryConfirmed"
    delivery_date: NonEmpty


class OrderDeliveryCheckInPayload(_OrderPayload):
    type: Literal["Order.DeliveryCheckIn"] = "Order.DeliveryCheckIn"
    days_since_delivery: ClampedInt


class OrderSlaApproachingPayload(_OrderPayload):
    type: Literal["Order.SlaApproaching"] = "Order.SlaApproaching"
    hours_remaining: ClampedInt
    deadline: NonEmpty


class OrderSlaOverduePayload(_OrderPayload):
    type: Literal["Order.SlaOverdue"] = "Order.SlaOverdue"
    hours_overdue: ClampedInt
    deadline: NonEmpty


class PayoutReleasedPayload(_Payload):
    type: Literal["Payout.Released"] = "Payout.Released"
    order_id: NonEmpty
    listing_id: NonEmpty
    listing_title: NonEmpty
    amount: Amount
    transfer_id: NonEmpty
    payout_date: NonEmpty


class OfferReceivedPayload(_Payload):
    type: Literal["Offer.Received"] = "Offer.Received"
    offer_id: NonEmpty
    listing_id: NonEmpty
    listing_title: NonEmpty
    offer_url: Url
    amount: Amount
    expires_at: str | None = None


class OfferAcceptedPayload(_Payload):
    type: Literal["Offer.Accepted"] = "Offer.Accepted"
    offer_id: NonEmpty
    listing_id: NonEmpty
    listing_title: NonEmpty
    offer_url: Url
    amount: Amount


class MessageReceivedPayload(_ListingPayload):
    type: Literal["Message.Received"] = "Message.Received"
    thread_id: NonEmpty
    thread_url: Url
    sender_role: Literal["buyer", "seller"]
    preview: str | None = None


class UserWelcomePayload(_Payload):
    type: Literal["User.Welcome"] = "User.Welcome"
    user_id: NonEmpty
    display_name: str | None = None
    dashboard_url: Url


class AdminDisputeOpenedPayload(_Payload):
    type: Literal["Admin.Order.DisputeOpened"] = "Admin.Order.DisputeOpened"
    order_id: NonEmpty
    listing_id: str | None = None
    listing_title: str | None = None
    buyer_id: NonEmpty
    dispute_type: Literal["order_dispute", "protected_transaction_dispute"]
    reason: NonEmpty
    admin_ops_url: Url


EventPayload = Annotated[
    Union[
        AuctionOutbidPayload,
        AuctionHighBidderPayload,
        AuctionEndingSoonPayload,
        AuctionWonPayload,
        AuctionLostPayload,
        OrderConfirmedPayload,
        OrderInTransitPayload,
        OrderDeliveredPayload,
        OrderDeliveryConfirmedPayload,
        OrderDeliveryCheckInPayload,
        OrderSlaApproachingPayload,
        OrderSlaOverduePayload,
        PayoutReleasedPayload,
        OfferReceivedPayload,
        OfferAcceptedPayload,
        MessageReceivedPayload,
        UserWelcomePayload,
        AdminDisputeOpenedPayload,
    ],
    Field(discriminator="type"),
]

_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(EventPayload)

PAYLOAD_MODELS: dict[EventType, type[_Payload]] = {
    EventType(model.model_fields["type"].default): model
    for model in get_args(get_args(EventPayload)[0])
}

_missing = set(EventType) - set(PAYLOAD_MODELS)
if _missing:
    raise RuntimeError(f"Event types without a payload model: {sorted(_missing)}")


class ValidationResult(BaseModel):
    """Outcome of validating a raw payload against its event type schema."""

    ok: bool
    data: Any = None
    errors: list[Any] = Field(default_factory=list)


def validate_payload(event_type: str, raw: Any) -> ValidationResult:
    """Validate ``raw`` against the payload schema registered for ``event_type``.

    ``raw`` may be a payload model or a mapping; a mapping without a ``type``
    key is tagged with ``event_type``. A ``type`` that disagrees with
    ``event_type`` is rejected.
    """
    try:
        etype = EventType(event_type)
    except ValueError:
        return ValidationResult(ok=False, errors=[f"unknown event type {event_type!r}"])

    if isinstance(raw, BaseModel):
        raw = raw.model_dump(mode="json")
    if not isinstance(raw, dict):
        return ValidationResult(ok=False, errors=["payload must be a mapping"])

    tagged = {"type": etype.value, **raw}
    if tagged["type"] != etype.value:
        return ValidationResult(
            ok=False,
            errors=[f"payload type {tagged['type']!r} does not match event type {etype.value!r}"],
        )

    try:
        data = _PAYLOAD_ADAPTER.validate_python(tagged)
    except PydanticValidationError as e:
        return ValidationResult(ok=False, errors=e.errors(include_url=False))
    return ValidationResult(ok=True, data=data)


def parse_payload(raw: Any) -> Any:
    """Parse a stored, already-tagged payload back into its model."""
    return _PAYLOAD_ADAPTER.validate_python(raw)
