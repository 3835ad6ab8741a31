"""Timezone helpers."""

from datetime import date, datetime, time, tzinfo


def localize(value: datetime, tz: tzinfo) -> datetime:
    """Attach ``tz`` to a naive datetime, or convert an aware one into it."""
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def calendar_day(value: date | datetime, tz: tzinfo) -> date:
    """The local calendar day of an iCal DATE or DATE-TIME value."""
    if isinstance(value, datetime):
        return localize(value, tz).date()
    return value


def at_time_of_day(day: date, time_of_day: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, time_of_day, tzinfo=tz)
