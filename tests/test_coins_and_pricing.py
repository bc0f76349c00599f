import os
import sys
from datetime import date, datetime, timedelta

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['JWT_SECRET'] = 'test-secret'
os.environ['RATE_LIMIT_ENABLED'] = '0'

from shared.coins import booking_months, calculate_activity_coins, calculate_booking_coins
from shared.models import SeatingType
from shared.pricing import calculate_booking_cost, quote, rate_for


def test_one_month_booking_earns_60_coins():
    assert calculate_booking_coins(datetime(2025, 1, 1), datetime(2025, 2, 1), 5000) == 60


def test_three_month_booking_earns_block_bonus():
    assert calculate_booking_coins(datetime(2025, 1, 1), datetime(2025, 4, 1), 15000) == 185


def test_meeting_room_bookings_earn_nothing():
    assert calculate_booking_coins(datetime(2025, 1, 1), datetime(2025, 1, 1, 2), 1000, 'meeting') == 0
    assert calculate_booking_coins(datetime(2025, 1, 1), datetime(2025, 4, 1), 15000, 'MEETING_ROOM') == 0


def test_partial_months_round_up():
    assert booking_months(datetime(2025, 1, 1), datetime(2025, 2, 15)) == 2
    assert booking_months(datetime(2025, 1, 31), datetime(2025, 2, 28)) == 1
    # anything non-empty counts as at least one month
    assert booking_months(datetime(2025, 1, 1), datetime(2025, 1, 2)) == 1
    assert booking_months(datetime(2025, 1, 2), datetime(2025, 1, 1)) == 0


def test_partial_month_coins():
    # 2 months (rounded up) + floor(2550 / 100)
    assert calculate_booking_coins(datetime(2025, 1, 1), datetime(2025, 2, 15), 2550) == 45


def test_activity_coins():
    assert calculate_activity_coins('early_payment') == 5
    assert calculate_activity_coins('referral') == 20
    assert calculate_activity_coins('extended_booking') == 15
    assert calculate_activity_coins('perfect_attendance', months=3) == 30
    assert calculate_activity_coins('unknown') == 0


def _hot_desk(**kw):
    values = dict(name='HOT_DESK', hourly_rate=50, daily_rate=300, monthly_rate=5000)
    values.update(kw)
    return SeatingType(**values)


def test_rate_for_falls_back_to_hourly():
    st = _hot_desk()
    assert rate_for(st, 'monthly') == 5000
    assert rate_for(st, 'daily') == 300
    assert rate_for(st, 'weekly') == 50


def test_quote_monthly_desk():
    q = quote(_hot_desk(), datetime(2025, 1, 1), datetime(2025, 4, 1))
    assert q == {'duration_type': 'monthly', 'duration': 3, 'total_price': 15000}


def test_quote_applies_quantity_multiplier():
    st = _hot_desk(cost_multiplier={'2': 0.9})
    q = quote(st, datetime(2025, 1, 1), datetime(2025, 2, 1), quantity=2)
    assert q['total_price'] == 9000


def test_quote_meeting_room_rounds_hours_up():
    st = SeatingType(name='MEETING_ROOM', hourly_rate=500, is_meeting_room=True)
    start = datetime(2025, 1, 1, 10)
    q = quote(st, start, start + timedelta(minutes=90))
    assert q['duration_type'] == 'hourly'
    assert q['duration'] == 2
    assert q['total_price'] == 1000


def test_quote_daily_pass():
    st = SeatingType(name='DAILY_PASS', daily_rate=300)
    start = datetime(2025, 1, 1, 9)
    q = quote(st, start, start + timedelta(hours=36))
    assert q['duration_type'] == 'daily'
    assert q['total_price'] == 600


def test_cost_breakdown_prorates_first_month():
    res = calculate_booking_cost(date(2025, 1, 15), date(2025, 3, 31), 3100)
    amounts = [item['amount'] for item in res['breakdown']]
    assert amounts == [1700.0, 3100.0, 3100.0]
    assert res['total_cost'] == 7900.0
    assert res['refund_amount'] == 0


def test_cost_breakdown_cancellation_refunds_after_notice():
    res = calculate_booking_cost(date(2025, 1, 1), date(2025, 6, 30), 3000, cancellation_date=date(2025, 2, 10))
    # notice runs to 2025-03-10, so April to June are refunded
    assert res['refund_amount'] == 9000.0
    assert res['total_cost'] == 9000.0
    assert res['breakdown'][-1]['description'].startswith('Cancellation notice')
