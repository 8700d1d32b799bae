"""Per-user notification preferences and quiet hours."""

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

DEFAULT_TIMEZONE = "America/Chicago"


class QuietHours(BaseModel):
    """Local-time window during which non-urgent deliveries are held back.

    ``start_hour > end_hour`` wraps past midnight; equal hours disable the
    window.
    """

    enabled: bool = True
    start_hour: int = Field(default=21, ge=0, le=23)
    end_hour: int = Field(default=8, ge=0, le=23)


class ChannelPreferences(BaseModel):
    email: bool = True
    sms: bool = False


class AuctionPreferences(BaseModel):
    high_bidder: bool = True
    outbid: bool = True
    ending_soon: bool = True
    won_lost: bool = True


class OrderPreferences(BaseModel):
    confirmed: bool = True
    shipping_updates: bool = True
    delivery_confirmed: bool = True
    delivery_check_in: bool = True
    sla_reminders: bool = True
    payout_released: bool = True


class OnboardingPreferences(BaseModel):
    welcome: bool = True


class MessagePreferences(BaseModel):
    message_received: bool = True


class AdminPreferences(BaseModel):
    disputes: bool = True


class CategoryPreferences(BaseModel):
    auctions: AuctionPreferences = Field(default_factory=AuctionPreferences)
    orders: OrderPreferences = Field(default_factory=OrderPreferences)
    onboarding: OnboardingPreferences = Field(default_factory=OnboardingPreferences)
    messages: MessagePreferences = Field(default_factory=MessagePreferences)
    admin: AdminPreferences = Field(default_factory=AdminPreferences)


class NotificationPreferences(BaseModel):
    """A user's channel toggles, category toggles and quiet hours.

    Every field has a default, so ``NotificationPreferences()`` is the
    preference set of a user who never changed anything and partial
    stored documents parse with the missing parts defaulted.
    """

    model_config = {"extra": "ignore"}

    timezone: str = DEFAULT_TIMEZONE
    quiet_hours: QuietHours = Field(default_factory=QuietHours)
    channels: ChannelPreferences = Field(default_factory=ChannelPreferences)
    categories: CategoryPreferences = Field(default_factory=CategoryPreferences)

    def zone(self) -> ZoneInfo:
        """The user's timezone, falling back to the default for unknown names."""
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return ZoneInfo(DEFAULT_TIMEZONE)

    def is_quiet(self, now: datetime) -> bool:
        qh = self.quiet_hours
        if not qh.enabled or qh.start_hour == qh.end_hour:
            return False
        hour = now.astimezone(self.zone()).hour
        if qh.start_hour > qh.end_hour:
            return hour >= qh.start_hour or hour < qh.end_hour
        return qh.start_hour <= hour < qh.end_hour

    def quiet_hours_end(self, now: datetime) -> datetime | None:
        """Return the next local ``end_hour`` boundary after ``now`` while quiet.

        Returns None when ``now`` is outside quiet hours.
        """
        if not self.is_quiet(now):
            return None
        tz = self.zone()
        local = now.astimezone(tz)
        end = local.replace(hour=self.quiet_hours.end_hour, minute=0, second=0, microsecond=0)
        if end <= local:
            end = end + timedelta(days=1)
        return end.astimezone(UTC)


def default_preferences() -> NotificationPreferences:
    return NotificationPreferences()
