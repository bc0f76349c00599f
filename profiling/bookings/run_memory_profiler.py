import os
import sys
from datetime import datetime, time, timedelta

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
from memory_profiler import profile

os.environ.setdefault('DATABASE_URL', 'sqlite://')

from services.bookings_service.app import app as bookings_app, API_PREFIX  # noqa
from shared.auth import make_token_pair
from shared.db import get_session, reset_tables
from shared.models import Branch, Customer, Seat, SeatingType


def bootstrap_fixture_data():
    reset_tables()
    s = get_session()
    branch = Branch(name='Bench', address='1 Bench St', location='Lab',
                    opening_time=time(8), closing_time=time(20), short_code='BEN')
    desk = SeatingType(name='HOT_DESK', short_code='HD', hourly_rate=50, monthly_rate=5000)
    room = SeatingType(name='MEETING_ROOM', short_code='MR', hourly_rate=500, is_meeting_room=True, capacity=8)
    customer = Customer(name='u1', email='u1@example.com', password_hash='x')
    s.add_all([branch, desk, room, customer])
    s.flush()
    s.add_all([
        Seat(branch_id=branch.id, seating_type_id=desk.id, seat_number='1', seat_code='HD1'),
        Seat(branch_id=branch.id, seating_type_id=desk.id, seat_number='2', seat_code='HD2'),
        Seat(branch_id=branch.id, seating_type_id=room.id, seat_number='1', seat_code='MR1'),
    ])
    s.commit()
    ids = {'customer': customer.id, 'desk': desk.id}
    s.close()
    return ids


@profile
def main():
    ids = bootstrap_fixture_data()
    client = bookings_app.test_client()
    headers_admin = {'Authorization': f"Bearer {make_token_pair(1, 'super_admin')['access_token']}"}
    headers_user = {'Authorization': f"Bearer {make_token_pair(ids['customer'], 'customer')['access_token']}"}

    base = datetime(2031, 1, 1, 9)
    client.post(f'{API_PREFIX}/bookings', json={'seat_id': 1, 'start_time': base.isoformat(),
                                                'end_time': (base + timedelta(days=31)).isoformat()}, headers=headers_user)
    client.post(f'{API_PREFIX}/bookings', json={'seat_id': 2, 'customer_id': ids['customer'], 'start_time': base.isoformat(),
                                                'end_time': (base + timedelta(days=62)).isoformat()}, headers=headers_admin)
    client.post(f'{API_PREFIX}/bookings/meeting-room', json={'meeting_room_id': 3, 'start_time': base.isoformat(),
                                                             'end_time': (base + timedelta(hours=2)).isoformat()}, headers=headers_user)
    client.post(f'{API_PREFIX}/bookings/verify', json={'seating_type_id': ids['desk'], 'num_seats': 2,
                                                       'start_time': base.isoformat(),
                                                       'end_time': (base + timedelta(days=31)).isoformat(),
                                                       'duration': 1, 'duration_type': 'monthly'})
    client.get(f'{API_PREFIX}/bookings', headers=headers_admin)
    client.get(f'{API_PREFIX}/bookings/check?seat_id=1&start={base.isoformat()}&end={(base + timedelta(days=1)).isoformat()}')
    client.delete(f'{API_PREFIX}/bookings/seat/1', headers=headers_user)
    client.post(f'{API_PREFIX}/bookings/cleanup', headers=headers_admin)


if __name__ == '__main__':
    main()
