import os
import sys
import pytest
from datetime import date, time, timedelta

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['JWT_SECRET'] = 'test-secret'
os.environ['RATE_LIMIT_ENABLED'] = '0'

import shared.reconciliation as reconciliation
from shared.auth import make_token_pair
from shared.db import get_session, reset_tables
from shared.models import (
    AvailabilityStatus, Branch, BookingStatus, Customer, MeetingBooking, Seat,
    SeatBooking, SeatingType, TimeSlot,
)
from shared.rate_limit import reset_rate_limiter
from shared.reconciliation import ReconciliationError, reconcile_expired_bookings
from shared.timeutil import utcnow
from services.bookings_service.app import app as bookings_app
API_PREFIX = f"/api/{os.getenv('API_VERSION','v1')}"
bookings_app.config['TESTING'] = True


@pytest.fixture(autouse=True)
def clean_db():
    reset_tables()
    reset_rate_limiter()
    yield


def seed():
    """Branch with two desks and a meeting room, one customer. Returns ids."""
    s = get_session()
    branch = Branch(name='Central', address='1 Main St', location='Downtown',
                    opening_time=time(9), closing_time=time(18), short_code='CEN')
    desk = SeatingType(name='HOT_DESK', short_code='HD', monthly_rate=5000, hourly_rate=50)
    room_type = SeatingType(name='MEETING_ROOM', short_code='MR', hourly_rate=500,
                            is_meeting_room=True, capacity=6)
    s.add_all([branch, desk, room_type])
    s.flush()
    seats = [
        Seat(branch_id=branch.id, seating_type_id=desk.id, seat_number='1', seat_code='HD1'),
        Seat(branch_id=branch.id, seating_type_id=desk.id, seat_number='2', seat_code='HD2'),
        Seat(branch_id=branch.id, seating_type_id=room_type.id, seat_number='1', seat_code='MR1'),
    ]
    customer = Customer(name='Alice', email='alice@example.com', password_hash='x')
    s.add_all(seats + [customer])
    s.commit()
    ids = {'branch': branch.id, 'desk1': seats[0].id, 'desk2': seats[1].id, 'room': seats[2].id,
           'customer': customer.id}
    s.close()
    return ids


def add_seat_booking(ids, seat_key, start, end, status=BookingStatus.CONFIRMED, seat_status=None):
    s = get_session()
    b = SeatBooking(customer_id=ids['customer'], seat_id=ids[seat_key], start_time=start, end_time=end,
                    total_price=5000, status=status)
    s.add(b)
    if seat_status:
        s.get(Seat, ids[seat_key]).availability_status = seat_status
    s.commit()
    bid = b.id
    s.close()
    return bid


def add_meeting_booking(ids, start, end, status=BookingStatus.CONFIRMED, seat_status=None):
    s = get_session()
    b = MeetingBooking(customer_id=ids['customer'], meeting_room_id=ids['room'], start_time=start,
                       end_time=end, total_price=1000, status=status, num_participants=2)
    s.add(b)
    s.flush()
    s.add(TimeSlot(branch_id=ids['branch'], seat_id=ids['room'], date=start.date(),
                   start_time=start.time(), end_time=end.time(), is_available=False,
                   meeting_booking_id=b.id))
    if seat_status:
        s.get(Seat, ids['room']).availability_status = seat_status
    s.commit()
    bid = b.id
    s.close()
    return bid


def load(model, pk):
    s = get_session()
    obj = s.get(model, pk)
    s.close()
    return obj


def test_expired_bookings_complete_and_free_seats():
    ids = seed()
    now = utcnow()
    seat_bid = add_seat_booking(ids, 'desk1', now - timedelta(days=31), now - timedelta(hours=1),
                                seat_status=AvailabilityStatus.OCCUPIED)
    meet_bid = add_meeting_booking(ids, now - timedelta(hours=3), now - timedelta(hours=2),
                                   status=BookingStatus.PENDING, seat_status=AvailabilityStatus.RESERVED)

    s = get_session()
    result = reconcile_expired_bookings(s)
    s.close()

    assert result['seat_bookings'] == 1
    assert result['meeting_bookings'] == 1
    assert load(SeatBooking, seat_bid).status == BookingStatus.COMPLETED
    assert load(MeetingBooking, meet_bid).status == BookingStatus.COMPLETED
    assert load(Seat, ids['desk1']).availability_status == AvailabilityStatus.AVAILABLE
    assert load(Seat, ids['room']).availability_status == AvailabilityStatus.AVAILABLE
    s = get_session()
    slot = s.query(TimeSlot).one()
    assert slot.is_available is True
    assert slot.meeting_booking_id is None
    s.close()


def test_closed_and_future_bookings_are_untouched():
    ids = seed()
    now = utcnow()
    cancelled = add_seat_booking(ids, 'desk1', now - timedelta(days=40), now - timedelta(days=5),
                                 status=BookingStatus.CANCELLED)
    future = add_seat_booking(ids, 'desk2', now + timedelta(days=1), now + timedelta(days=31))

    s = get_session()
    result = reconcile_expired_bookings(s)
    s.close()

    assert result['seat_bookings'] == 0
    assert load(SeatBooking, cancelled).status == BookingStatus.CANCELLED
    assert load(SeatBooking, future).status == BookingStatus.CONFIRMED
    assert load(Seat, ids['desk2']).availability_status == AvailabilityStatus.AVAILABLE


def test_second_run_changes_nothing():
    ids = seed()
    now = utcnow()
    add_seat_booking(ids, 'desk1', now - timedelta(days=31), now - timedelta(minutes=5),
                     seat_status=AvailabilityStatus.OCCUPIED)
    s = get_session()
    first = reconcile_expired_bookings(s)
    second = reconcile_expired_bookings(s)
    s.close()
    assert first['seat_bookings'] == 1
    assert second == {'seat_bookings': 0, 'meeting_bookings': 0, 'activated': 0}


def test_started_bookings_occupy_their_seats():
    ids = seed()
    now = utcnow()
    add_seat_booking(ids, 'desk1', now - timedelta(hours=1), now + timedelta(days=30))
    add_seat_booking(ids, 'desk2', now - timedelta(hours=1), now + timedelta(days=30), status=BookingStatus.PENDING)
    s = get_session()
    result = reconcile_expired_bookings(s)
    s.close()
    assert result['activated'] == 2
    assert load(Seat, ids['desk1']).availability_status == AvailabilityStatus.OCCUPIED
    assert load(Seat, ids['desk2']).availability_status == AvailabilityStatus.RESERVED


def test_failure_rolls_back_whole_batch(monkeypatch):
    ids = seed()
    now = utcnow()
    b1 = add_seat_booking(ids, 'desk1', now - timedelta(days=31), now - timedelta(hours=2),
                          seat_status=AvailabilityStatus.OCCUPIED)
    b2 = add_seat_booking(ids, 'desk2', now - timedelta(days=31), now - timedelta(hours=1),
                          seat_status=AvailabilityStatus.OCCUPIED)

    real_release = reconciliation.release_seat
    calls = []

    def flaky_release(session, seat_id):
        calls.append(seat_id)
        if len(calls) == 2:
            raise RuntimeError('seat table locked')
        return real_release(session, seat_id)

    monkeypatch.setattr(reconciliation, 'release_seat', flaky_release)
    s = get_session()
    with pytest.raises(ReconciliationError):
        reconcile_expired_bookings(s)
    s.close()

    assert len(calls) == 2
    assert load(SeatBooking, b1).status == BookingStatus.CONFIRMED
    assert load(SeatBooking, b2).status == BookingStatus.CONFIRMED
    assert load(Seat, ids['desk1']).availability_status == AvailabilityStatus.OCCUPIED
    assert load(Seat, ids['desk2']).availability_status == AvailabilityStatus.OCCUPIED

    # a retry after the fault clears completes both
    monkeypatch.setattr(reconciliation, 'release_seat', real_release)
    s = get_session()
    assert reconcile_expired_bookings(s)['seat_bookings'] == 2
    s.close()


# ---------------- Cleanup endpoint ----------------

def _auth(token):
    return {'Authorization': f'Bearer {token}'}


def test_cleanup_endpoint_with_cron_secret(monkeypatch):
    monkeypatch.setenv('CRON_SECRET', 'cron-s3cret')
    ids = seed()
    now = utcnow()
    bid = add_seat_booking(ids, 'desk1', now - timedelta(days=31), now - timedelta(hours=1),
                           seat_status=AvailabilityStatus.OCCUPIED)
    c = bookings_app.test_client()
    r = c.post(f'{API_PREFIX}/bookings/cleanup', headers={'X-Cron-Secret': 'cron-s3cret'})
    assert r.status_code == 200
    assert r.get_json()['seat_bookings'] == 1
    assert load(SeatBooking, bid).status == BookingStatus.COMPLETED


def test_cleanup_endpoint_requires_admin_or_secret(monkeypatch):
    monkeypatch.setenv('CRON_SECRET', 'cron-s3cret')
    c = bookings_app.test_client()
    assert c.post(f'{API_PREFIX}/bookings/cleanup').status_code == 401
    assert c.post(f'{API_PREFIX}/bookings/cleanup', headers={'X-Cron-Secret': 'wrong'}).status_code == 401
    customer = make_token_pair(1, 'customer')['access_token']
    assert c.post(f'{API_PREFIX}/bookings/cleanup', headers=_auth(customer)).status_code == 403
    admin = make_token_pair(1, 'super_admin')['access_token']
    assert c.post(f'{API_PREFIX}/bookings/cleanup', headers=_auth(admin)).status_code == 200


def test_cleanup_endpoint_reports_failure(monkeypatch):
    ids = seed()
    now = utcnow()
    bid = add_seat_booking(ids, 'desk1', now - timedelta(days=31), now - timedelta(hours=1),
                           seat_status=AvailabilityStatus.OCCUPIED)

    def broken(session, seat_id):
        raise RuntimeError('boom')

    monkeypatch.setattr(reconciliation, 'release_seat', broken)
    c = bookings_app.test_client()
    admin = make_token_pair(1, 'super_admin')['access_token']
    r = c.post(f'{API_PREFIX}/bookings/cleanup', headers=_auth(admin))
    assert r.status_code == 500
    assert r.get_json()['error']['code'] == 'cleanup_failed'
    assert load(SeatBooking, bid).status == BookingStatus.CONFIRMED
