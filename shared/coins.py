"""Loyalty coin arithmetic.

Booking rewards:

- 10 coins per month of booking (partial months count as a whole month)
- 1 coin per 100 currency units of the booking price
- 5 bonus coins per full block of 3 months

Meeting-room bookings never earn coins.
"""

import calendar
import math

MEETING_BOOKING_TYPES = frozenset({'meeting', 'meeting_room', 'MEETING_ROOM'})

BASE_COINS_PER_MONTH = 10
PRICE_UNIT_PER_COIN = 100
BLOCK_MONTHS = 3
BLOCK_BONUS = 5

ACTIVITY_COINS = {
    'early_payment': 5,
    'referral': 20,
    'extended_booking': 15,
}
PERFECT_ATTENDANCE_PER_MONTH = 10


def add_months(dt, months):
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def booking_months(start, end):
    """Whole calendar months covered by ``[start, end)``, rounding partial months up.

    Never less than 1 for a non-empty interval.
    """
    if end <= start:
        return 0
    months = (end.year - start.year) * 12 + end.month - start.month
    if add_months(start, months) > end:
        months -= 1
    if add_months(start, months) < end:
        months += 1
    return max(1, months)


def calculate_booking_coins(start, end, total_price, booking_type='seat'):
    if booking_type in MEETING_BOOKING_TYPES:
        return 0
    months = booking_months(start, end)
    if months == 0:
        return 0
    coins = months * BASE_COINS_PER_MONTH
    coins += math.floor(max(total_price or 0, 0) / PRICE_UNIT_PER_COIN)
    coins += (months // BLOCK_MONTHS) * BLOCK_BONUS
    return max(0, int(coins))


def calculate_activity_coins(activity_type, months=None):
    if activity_type == 'perfect_attendance':
        return (months or 1) * PERFECT_ATTENDANCE_PER_MONTH
    return ACTIVITY_COINS.get(activity_type, 0)


__all__ = ['booking_months', 'calculate_booking_coins', 'calculate_activity_coins', 'add_months']
