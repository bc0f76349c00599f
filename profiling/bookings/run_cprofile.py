import os
import sys
import cProfile
import pstats
from datetime import time, timedelta

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# in-memory database unless pointed at a real one
os.environ.setdefault('DATABASE_URL', 'sqlite://')

from shared.availability import verify_booking  # noqa: E402
from shared.db import get_session, reset_tables  # noqa: E402
from shared.models import (  # noqa: E402
    AvailabilityStatus, Branch, BookingStatus, Customer, Seat, SeatBooking, SeatingType,
)
from shared.reconciliation import reconcile_expired_bookings  # noqa: E402
from shared.timeutil import utcnow  # noqa: E402

SEATS = 200
BOOKINGS_PER_SEAT = 5


def bootstrap_fixture_data():
    """Seats with a mix of expired, current and future bookings."""
    reset_tables()
    s = get_session()
    branch = Branch(name='Bench', address='1 Bench St', location='Lab',
                    opening_time=time(8), closing_time=time(20), short_code='BEN')
    desk = SeatingType(name='HOT_DESK', short_code='HD', hourly_rate=50, monthly_rate=5000)
    customer = Customer(name='Bench', email='bench@example.com', password_hash='x')
    s.add_all([branch, desk, customer])
    s.flush()
    now = utcnow()
    for n in range(SEATS):
        seat = Seat(branch_id=branch.id, seating_type_id=desk.id, seat_number=str(n), seat_code=f'HD{n}',
                    availability_status=AvailabilityStatus.OCCUPIED)
        s.add(seat)
        s.flush()
        for k in range(BOOKINGS_PER_SEAT):
            start = now + timedelta(days=31 * (k - 3))
            s.add(SeatBooking(customer_id=customer.id, seat_id=seat.id, start_time=start,
                              end_time=start + timedelta(days=30), total_price=5000,
                              status=BookingStatus.CONFIRMED))
    s.commit()
    ids = desk.id
    s.close()
    return ids


def workload():
    desk_id = bootstrap_fixture_data()
    s = get_session()
    now = utcnow()
    verify_booking(s, desk_id, 50, now + timedelta(days=90), now + timedelta(days=120), 1, 'monthly')
    print(reconcile_expired_bookings(s))
    print(reconcile_expired_bookings(s))
    s.close()


def main():
    prof = cProfile.Profile()
    prof.enable()
    workload()
    prof.disable()
    stats = pstats.Stats(prof).strip_dirs().sort_stats('cumulative')
    stats.print_stats(40)


if __name__ == '__main__':
    main()
