import os
import sys
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
from line_profiler import LineProfiler

os.environ.setdefault('DATABASE_URL', 'sqlite://')

from services.branches_service.app import app as branches_app, API_PREFIX, create_branch, create_seating_type, create_seat, list_seats, create_slots, list_slots  # noqa
from shared.auth import make_token_pair
from shared.availability import generate_time_slots
from shared.db import reset_tables


def unwrap(fn):
    while hasattr(fn, '__wrapped__'):
        fn = fn.__wrapped__
    return fn


def main_flow():
    reset_tables()
    client = branches_app.test_client()
    admin_token = make_token_pair(1, 'super_admin')['access_token']
    headers_admin = {'Authorization': f'Bearer {admin_token}'}

    client.post(f'{API_PREFIX}/branches', json={'name': 'Central', 'address': '1 Main St', 'location': 'Downtown',
                                                'opening_time': '08:00', 'closing_time': '20:00', 'short_code': 'CEN'},
                headers=headers_admin)
    client.post(f'{API_PREFIX}/seating-types', json={'name': 'HOT_DESK', 'short_code': 'HD', 'monthly_rate': 5000},
                headers=headers_admin)
    client.post(f'{API_PREFIX}/seating-types', json={'name': 'MEETING_ROOM', 'short_code': 'MR', 'hourly_rate': 500,
                                                     'capacity': 8}, headers=headers_admin)
    for n in range(1, 21):
        client.post(f'{API_PREFIX}/seats', json={'branch_id': 1, 'seating_type_id': 1, 'seat_number': n},
                    headers=headers_admin)
    for n in range(1, 4):
        client.post(f'{API_PREFIX}/seats', json={'branch_id': 1, 'seating_type_id': 2, 'seat_number': n},
                    headers=headers_admin)
    client.get(f'{API_PREFIX}/seats?branch_id=1&seating_type_code=HD')
    client.post(f'{API_PREFIX}/slots', json={'branch_id': 1, 'date': '2031-01-06'}, headers=headers_admin)
    client.post(f'{API_PREFIX}/slots', json={'branch_id': 1, 'date': '2031-01-06', 'regenerate': True},
                headers=headers_admin)
    client.get(f'{API_PREFIX}/slots?branch_code=CEN&date=2031-01-06')


def profile_main():
    profiler = LineProfiler()
    profiler.add_function(unwrap(create_branch))
    profiler.add_function(unwrap(create_seating_type))
    profiler.add_function(unwrap(create_seat))
    profiler.add_function(unwrap(list_seats))
    profiler.add_function(unwrap(create_slots))
    profiler.add_function(unwrap(list_slots))
    profiler.add_function(generate_time_slots)
    profiler.runcall(main_flow)
    profiler.print_stats()


if __name__ == '__main__':
    profile_main()
