"""Plain-text message templates.

Each template pairs a pydantic model for its payload with format strings for
the email subject, the email body and an optional SMS body. Template payloads
are validated when a job is built and again when it is claimed.
"""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from herald.core.errors import PermanentDeliveryError
from herald.core.payloads import Amount, ClampedInt, NonEmpty, Url, ValidationResult


class TemplatePayload(BaseModel):
    model_config = {"extra": "forbid"}

    recipient_name: str = "there"


class ListingTemplate(TemplatePayload):
    listing_title: NonEmpty
    listing_url: Url


class OutbidTemplate(ListingTemplate):
    new_bid_amount: Amount


class HighBidderTemplate(ListingTemplate):
    your_bid_amount: Amount


class EndingSoonTemplate(ListingTemplate):
    threshold: str
    auction_ends_at: NonEmpty


class WonTemplate(TemplatePayload):
    listing_title: NonEmpty
    winning_bid: Amount
    order_url: Url


class OrderTemplate(TemplatePayload):
    order_id: NonEmpty
    listing_title: NonEmpty
    order_url: Url


class OrderConfirmationTemplate(OrderTemplate):
    amount: Amount


class DeliveryConfirmedTemplate(OrderTemplate):
    delivery_date: NonEmpty


class DeliveryCheckInTemplate(OrderTemplate):
    days_since_delivery: ClampedInt


class SlaApproachingTemplate(OrderTemplate):
    hours_remaining: ClampedInt
    deadline: NonEmpty


class SlaOverdueTemplate(OrderTemplate):
    hours_overdue: ClampedInt
    deadline: NonEmpty


class PayoutReleasedTemplate(TemplatePayload):
    order_id: NonEmpty
    listing_title: NonEmpty
    amount: Amount
    transfer_id: NonEmpty
    payout_date: NonEmpty


class OfferTemplate(TemplatePayload):
    listing_title: NonEmpty
    offer_url: Url
    amount: Amount


class MessageReceivedTemplate(TemplatePayload):
    listing_title: NonEmpty
    thread_url: Url
    sender_role: Literal["buyer", "seller"]
    preview: str = ""


class WelcomeTemplate(TemplatePayload):
    dashboard_url: Url


class AdminDisputeTemplate(TemplatePayload):
    order_id: NonEmpty
    buyer_id: NonEmpty
    dispute_type: NonEmpty
    reason: NonEmpty
    admin_ops_url: Url


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str


@dataclass(frozen=True)
class Template:
    """A named template: payload model plus format strings."""

    name: str
    model: type[TemplatePayload]
    subject: str
    body: str
    sms: str | None = None

    def validate(self, raw: Any) -> TemplatePayload:
        """Parse ``raw`` into the template's payload model.

        Raises:
            pydantic.ValidationError: If ``raw`` does not fit the model.
        """
        return self.model.model_validate(raw)

    def render(self, raw: Any) -> RenderedMessage:
        fields = self.validate(raw).model_dump()
        return RenderedMessage(self.subject.format_map(fields), self.body.format_map(fields))

    def render_sms(self, raw: Any) -> str:
        fields = self.validate(raw).model_dump()
        return (self.sms or self.subject).format_map(fields)


TEMPLATES: dict[str, Template] = {
    t.name: t
    for t in (
        Template(
            "auction_outbid",
            OutbidTemplate,
            "You've been outbid on {listing_title}",
            "Hi {recipient_name},\n\nSomeone outbid you on {listing_title}. "
            "The new high bid is ${new_bid_amount:,.2f}.\n\nBid again: {listing_url}\n",
            sms="Outbid on {listing_title}: new high bid ${new_bid_amount:,.2f}. {listing_url}",
        ),
        Template(
            "auction_high_bidder",
            HighBidderTemplate,
            "You're the high bidder on {listing_title}",
            "Hi {recipient_name},\n\nYour bid of ${your_bid_amount:,.2f} on {listing_title} "
            "is currently the highest.\n\nWatch the auction: {listing_url}\n",
        ),
        Template(
            "auction_ending_soon",
            EndingSoonTemplate,
            "{listing_title} ends in {threshold}",
            "Hi {recipient_name},\n\nThe auction for {listing_title} ends at "
            "{auction_ends_at}.\n\nView it: {listing_url}\n",
            sms="{listing_title} ends in {threshold}. {listing_url}",
        ),
        Template(
            "auction_winner",
            WonTemplate,
            "You won {listing_title}!",
            "Congratulations {recipient_name},\n\nYou won {listing_title} with a bid of "
            "${winning_bid:,.2f}.\n\nComplete checkout: {order_url}\n",
            sms="You won {listing_title} (${winning_bid:,.2f}). Checkout: {order_url}",
        ),
        Template(
            "auction_lost",
            ListingTemplate,
            "Auction ended: {listing_title}",
            "Hi {recipient_name},\n\nThe auction for {listing_title} has ended and you were "
            "not the winning bidder.\n\nBrowse similar listings: {listing_url}\n",
        ),
        Template(
            "order_confirmation",
            OrderConfirmationTemplate,
            "Order confirmed: {listing_title}",
            "Hi {recipient_name},\n\nYour order {order_id} for {listing_title} "
            "(${amount:,.2f}) is confirmed.\n\nTrack it: {order_url}\n",
        ),
        Template(
            "order_in_transit",
            OrderTemplate,
            "Your order is on its way: {listing_title}",
            "Hi {recipient_name},\n\nOrder {order_id} for {listing_title} is in transit."
            "\n\nTrack it: {order_url}\n",
        ),
        Template(
            "order_delivered",
            OrderTemplate,
            "Delivered: {listing_title}",
            "Hi {recipient_name},\n\nOrder {order_id} for {listing_title} was delivered. "
            "Please confirm receipt.\n\n{order_url}\n",
        ),
        Template(
            "order_delivery_confirmed",
            DeliveryConfirmedTemplate,
            "Delivery confirmed: {listing_title}",
            "Hi {recipient_name},\n\nDelivery of order {order_id} was confirmed on "
            "{delivery_date}.\n\n{order_url}\n",
        ),
        Template(
            "order_delivery_check_in",
            DeliveryCheckInTemplate,
            "How is {listing_title} doing?",
            "Hi {recipient_name},\n\nIt has been {days_since_delivery} days since order "
            "{order_id} was delivered. Let us know how it went.\n\n{order_url}\n",
        ),
        Template(
            "order_sla_approaching",
            SlaApproachingTemplate,
            "Action needed: order {order_id} due in {hours_remaining}h",
            "Hi {recipient_name},\n\nOrder {order_id} for {listing_title} must be handled "
            "within {hours_remaining} hours (deadline {deadline}).\n\n{order_url}\n",
        ),
        Template(
            "order_sla_overdue",
            SlaOverdueTemplate,
            "Overdue: order {order_id}",
            "Hi {recipient_name},\n\nOrder {order_id} for {listing_title} is "
            "{hours_overdue} hours past its deadline ({deadline}).\n\n{order_url}\n",
            sms="Order {order_id} is {hours_overdue}h overdue. {order_url}",
        ),
        Template(
            "payout_released",
            PayoutReleasedTemplate,
            "Payout released for {listing_title}",
            "Hi {recipient_name},\n\nA payout of ${amount:,.2f} for order {order_id} was "
            "released on {payout_date} (transfer {transfer_id}).\n",
        ),
        Template(
            "offer_received",
            OfferTemplate,
            "New offer on {listing_title}",
            "Hi {recipient_name},\n\nYou received an offer of ${amount:,.2f} on "
            "{listing_title}.\n\nReview it: {offer_url}\n",
        ),
        Template(
            "offer_accepted",
            OfferTemplate,
            "Offer accepted: {listing_title}",
            "Hi {recipient_name},\n\nYour offer of ${amount:,.2f} on {listing_title} was "
            "accepted.\n\nComplete the purchase: {offer_url}\n",
            sms="Offer accepted on {listing_title} (${amount:,.2f}). {offer_url}",
        ),
        Template(
            "message_received",
            MessageReceivedTemplate,
            "New message about {listing_title}",
            "Hi {recipient_name},\n\nThe {sender_role} sent you a message about "
            "{listing_title}.\n\n{preview}\n\nReply: {thread_url}\n",
        ),
        Template(
            "welcome",
            WelcomeTemplate,
            "Welcome, {recipient_name}!",
            "Hi {recipient_name},\n\nThanks for joining. Your dashboard is at "
            "{dashboard_url}.\n",
        ),
        Template(
            "admin_dispute_opened",
            AdminDisputeTemplate,
            "Dispute opened on order {order_id}",
            "Hi {recipient_name},\n\nBuyer {buyer_id} opened a {dispute_type} on order "
            "{order_id}: {reason}\n\nReview: {admin_ops_url}\n",
            sms="Dispute on order {order_id}: {reason}. {admin_ops_url}",
        ),
    )
}


def get_template(name: str | None) -> Template:
    """Look up a template by name.

    Raises:
        PermanentDeliveryError: If no template has that name.
    """
    template = TEMPLATES.get(name or "")
    if template is None:
        raise PermanentDeliveryError(f"unknown template {name!r}", code="unknown_template")
    return template


def validate_template_payload(name: str | None, raw: Any) -> ValidationResult:
    """Validate ``raw`` against the payload model of template ``name``."""
    template = TEMPLATES.get(name or "")
    if template is None:
        return ValidationResult(ok=False, errors=[f"unknown template {name!r}"])
    try:
        data = template.validate(raw)
    except PydanticValidationError as e:
        return ValidationResult(ok=False, errors=e.errors(include_url=False))
    return ValidationResult(ok=True, data=data)


def render_template(name: str | None, raw: Any) -> RenderedMessage:
    """Render template ``name`` with ``raw``.

    Raises:
        PermanentDeliveryError: If the template is unknown or the payload
            cannot be rendered.
    """
    template = get_template(name)
    try:
        return template.render(raw)
    except (PydanticValidationError, KeyError, ValueError) as e:
        raise PermanentDeliveryError(
            f"cannot render template {name!r}: {e}", code="render_failed"
        ) from e
