"""Rate selection and booking cost calculation."""

import math
import calendar
from datetime import date, datetime, timedelta

from shared.coins import add_months, booking_months
from shared.models import SeatingTypeName

DURATION_TYPES = ('hourly', 'daily', 'monthly')


def rate_for(seating_type, duration_type):
    """Pick the seating type's rate for ``duration_type``; unknown types use the hourly rate."""
    if duration_type == 'daily':
        return seating_type.daily_rate or 0
    if duration_type == 'monthly':
        return seating_type.monthly_rate or 0
    return seating_type.hourly_rate or 0


def default_duration_type(seating_type):
    if seating_type.is_meeting_room or seating_type.is_hourly:
        return 'hourly'
    if seating_type.name == SeatingTypeName.DAILY_PASS:
        return 'daily'
    return 'monthly'


def duration_units(start, end, duration_type):
    """Number of billable units in ``[start, end)``, rounding up."""
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    if duration_type == 'daily':
        return math.ceil(seconds / 86400)
    if duration_type == 'monthly':
        return booking_months(start, end)
    return math.ceil(seconds / 3600)


def quantity_multiplier(seating_type, quantity):
    multipliers = seating_type.cost_multiplier or {}
    if quantity > 1 and seating_type.name in (SeatingTypeName.HOT_DESK, SeatingTypeName.DEDICATED_DESK):
        return float(multipliers.get(str(quantity), 1.0))
    return 1.0


def quote(seating_type, start, end, quantity=1):
    """Price a booking of ``quantity`` seats of ``seating_type`` for ``[start, end)``."""
    duration_type = default_duration_type(seating_type)
    units = duration_units(start, end, duration_type)
    price = rate_for(seating_type, duration_type) * units * quantity
    price *= quantity_multiplier(seating_type, quantity)
    return {
        'duration_type': duration_type,
        'duration': units,
        'total_price': round(price, 2),
    }


def _as_date(value):
    return value.date() if isinstance(value, datetime) else value


def _month_last_day(d):
    return d.replace(day=calendar.monthrange(d.year, d.month)[1])


def calculate_booking_cost(start_date, end_date, monthly_rate, cancellation_date=None):
    """Cost of a monthly booking with pro-rata partial months.

    Dates are inclusive. With ``cancellation_date``, one month of notice is
    charged and every month segment starting after the notice period is
    refunded.

    :returns: dict with ``total_cost``, ``breakdown`` (list of
              ``{'description', 'amount', 'start'}``) and ``refund_amount``.
    """
    start_date = _as_date(start_date)
    end_date = _as_date(end_date)
    breakdown = []
    cursor = start_date
    while cursor <= end_date:
        month_end = _month_last_day(cursor)
        seg_end = min(month_end, end_date)
        days_in_month = month_end.day
        label = cursor.strftime('%B %Y')
        if cursor.day == 1 and seg_end == month_end:
            amount = float(monthly_rate)
            desc = f"Full month: {label}"
        else:
            days = (seg_end - cursor).days + 1
            amount = monthly_rate / days_in_month * days
            desc = f"Pro-rata for {label} ({cursor.day}-{seg_end.day})"
        breakdown.append({'description': desc, 'amount': round(amount, 2), 'start': cursor.isoformat()})
        cursor = month_end + timedelta(days=1)

    refund = 0.0
    if cancellation_date is not None:
        cancellation_date = _as_date(cancellation_date)
        notice_end = add_months(cancellation_date, 1)
        if notice_end < end_date:
            kept = []
            for item in breakdown:
                if date.fromisoformat(item['start']) > notice_end:
                    refund += item['amount']
                else:
                    kept.append(item)
            breakdown = kept
            breakdown.append({
                'description': f"Cancellation notice: {cancellation_date.isoformat()} (1 month notice)",
                'amount': 0.0,
                'start': cancellation_date.isoformat(),
            })
    total = sum(item['amount'] for item in breakdown)
    return {
        'total_cost': round(total, 2),
        'breakdown': breakdown,
        'refund_amount': round(refund, 2),
    }


__all__ = ['rate_for', 'quote', 'duration_units', 'default_duration_type', 'calculate_booking_cost', 'DURATION_TYPES']
