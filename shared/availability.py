"""Seat availability queries, time slots and pre-booking verification.

A seat is busy for a window when a PENDING or CONFIRMED seat booking or
meeting booking on it overlaps the window. Intervals are half-open, so
back-to-back bookings do not conflict.
"""

import logging
from datetime import datetime, time, timedelta

from sqlalchemy import and_, or_

from shared.errors import APIError
from shared.models import (
    AvailabilityStatus, BookingStatus, MeetingBooking, Seat, SeatBooking,
    SeatingType, TimeSlot,
)
from shared.pricing import DURATION_TYPES, rate_for
from shared.timeutil import utcnow

logger = logging.getLogger(__name__)

BUSY_STATUSES = (AvailabilityStatus.OCCUPIED, AvailabilityStatus.RESERVED)


def seat_status_for(booking_status):
    if booking_status == BookingStatus.CONFIRMED:
        return AvailabilityStatus.OCCUPIED
    return AvailabilityStatus.RESERVED


def booked_seat_ids(session, seat_ids, start, end, exclude_seat_booking=None, exclude_meeting_booking=None):
    """Ids among ``seat_ids`` that have an open booking overlapping ``[start, end)``."""
    seat_ids = list(seat_ids)
    if not seat_ids:
        return set()
    q1 = session.query(SeatBooking.seat_id).filter(
        SeatBooking.seat_id.in_(seat_ids),
        SeatBooking.status.in_(BookingStatus.OPEN),
        SeatBooking.start_time < end,
        SeatBooking.end_time > start,
    )
    if exclude_seat_booking is not None:
        q1 = q1.filter(SeatBooking.id != exclude_seat_booking)
    q2 = session.query(MeetingBooking.meeting_room_id).filter(
        MeetingBooking.meeting_room_id.in_(seat_ids),
        MeetingBooking.status.in_(BookingStatus.OPEN),
        MeetingBooking.start_time < end,
        MeetingBooking.end_time > start,
    )
    if exclude_meeting_booking is not None:
        q2 = q2.filter(MeetingBooking.id != exclude_meeting_booking)
    return {row[0] for row in q1.all()} | {row[0] for row in q2.all()}


def seat_is_free(session, seat_id, start, end, **exclude):
    return seat_id not in booked_seat_ids(session, [seat_id], start, end, **exclude)


def free_seats(session, seating_type_id, start, end, branch_id=None):
    """Seats of a seating type that are bookable for ``[start, end)``.

    Seats under maintenance are never bookable.
    """
    q = session.query(Seat).filter(
        Seat.seating_type_id == seating_type_id,
        Seat.availability_status != AvailabilityStatus.MAINTENANCE,
    )
    if branch_id is not None:
        q = q.filter(Seat.branch_id == branch_id)
    seats = q.order_by(Seat.id).all()
    busy = booked_seat_ids(session, [s.id for s in seats], start, end)
    return [s for s in seats if s.id not in busy]


def verify_booking(session, seating_type_id, num_seats, start, end, duration, duration_type, branch_id=None):
    """Check whether ``num_seats`` seats of a type can be booked and price them.

    Read-only. The price covers at most the seats actually available.

    :returns: dict with ``available_seats``, ``total_price``, ``can_book`` and ``message``.
    :raises APIError: 400 when the seating type does not exist.
    """
    seating_type = session.get(SeatingType, seating_type_id)
    if seating_type is None:
        raise APIError('invalid seating type', status=400, code='validation_error')
    if duration_type not in DURATION_TYPES:
        duration_type = 'hourly'
    available = len(free_seats(session, seating_type_id, start, end, branch_id=branch_id))
    total_price = rate_for(seating_type, duration_type) * duration * min(num_seats, available)
    can_book = available >= num_seats
    return {
        'seating_type_id': seating_type.id,
        'available_seats': available,
        'total_price': round(total_price, 2),
        'can_book': can_book,
        'message': None if can_book else f"Only {available} seats are available for the selected time period",
    }


def _current_open_statuses(session, seat_id, now):
    rows = session.query(SeatBooking.status).filter(
        SeatBooking.seat_id == seat_id,
        SeatBooking.status.in_(BookingStatus.OPEN),
        SeatBooking.start_time <= now,
        SeatBooking.end_time > now,
    ).all()
    rows += session.query(MeetingBooking.status).filter(
        MeetingBooking.meeting_room_id == seat_id,
        MeetingBooking.status.in_(BookingStatus.OPEN),
        MeetingBooking.start_time <= now,
        MeetingBooking.end_time > now,
    ).all()
    return {r[0] for r in rows}


def sync_seat_status(session, seat, now=None):
    """Align a seat's availability with the open bookings that contain ``now``.

    Seats under maintenance are left alone. Caller commits.
    """
    if seat is None or seat.availability_status == AvailabilityStatus.MAINTENANCE:
        return seat
    now = now or utcnow()
    statuses = _current_open_statuses(session, seat.id, now)
    if BookingStatus.CONFIRMED in statuses:
        seat.availability_status = AvailabilityStatus.OCCUPIED
    elif BookingStatus.PENDING in statuses:
        seat.availability_status = AvailabilityStatus.RESERVED
    else:
        seat.availability_status = AvailabilityStatus.AVAILABLE
    return seat


# ---------------- Time slots ----------------

def _slot_bounds(slot):
    start = datetime.combine(slot.date, slot.start_time)
    end = datetime.combine(slot.date, slot.end_time)
    if end <= start:
        end += timedelta(days=1)
    return start, end


def claim_time_slots(session, seat_id, start, end, seat_booking_id=None, meeting_booking_id=None):
    """Mark free slots of a seat that fall inside ``[start, end)`` as booked."""
    slots = session.query(TimeSlot).filter(
        TimeSlot.seat_id == seat_id,
        TimeSlot.is_available.is_(True),
        TimeSlot.date >= start.date(),
        TimeSlot.date <= end.date(),
    ).all()
    claimed = 0
    for slot in slots:
        s, e = _slot_bounds(slot)
        if s >= start and e <= end:
            slot.is_available = False
            slot.booking_id = seat_booking_id
            slot.meeting_booking_id = meeting_booking_id
            claimed += 1
    return claimed


def release_time_slots(session, seat_booking_id=None, meeting_booking_id=None):
    """Free every slot held by a booking. Returns the number of rows touched."""
    conditions = []
    if seat_booking_id is not None:
        conditions.append(TimeSlot.booking_id == seat_booking_id)
    if meeting_booking_id is not None:
        conditions.append(TimeSlot.meeting_booking_id == meeting_booking_id)
    if not conditions:
        return 0
    return session.query(TimeSlot).filter(or_(*conditions)).update(
        {TimeSlot.is_available: True, TimeSlot.booking_id: None, TimeSlot.meeting_booking_id: None},
        synchronize_session=False,
    )


def generate_time_slots(session, branch, slot_date, regenerate=False):
    """Create slots for every available seat of a branch on ``slot_date``.

    Meeting rooms get hourly slots; other seats get 2-hour blocks, from the
    branch's opening hour up to its closing hour.

    :returns: Number of slots created.
    :raises APIError: 409 when slots exist and ``regenerate`` is false,
                      404 when the branch has no available seats.
    """
    if regenerate:
        session.query(TimeSlot).filter(
            TimeSlot.branch_id == branch.id,
            TimeSlot.date == slot_date,
            TimeSlot.is_available.is_(True),
            and_(TimeSlot.booking_id.is_(None), TimeSlot.meeting_booking_id.is_(None)),
        ).delete(synchronize_session=False)
    existing = session.query(TimeSlot).filter(
        TimeSlot.branch_id == branch.id, TimeSlot.date == slot_date,
    ).count()
    if existing and not regenerate:
        raise APIError('time slots already exist for this branch and date', status=409,
                       code='conflict', extra={'count': existing})
    seats = session.query(Seat).filter(
        Seat.branch_id == branch.id,
        Seat.availability_status == AvailabilityStatus.AVAILABLE,
    ).order_by(Seat.id).all()
    if not seats:
        raise APIError('no available seats found for this branch', status=404, code='not_found')

    open_hour = branch.opening_time.hour
    close_hour = branch.closing_time.hour
    taken = set()
    if regenerate:
        taken = {
            (s.seat_id, s.start_time) for s in session.query(TimeSlot).filter(
                TimeSlot.branch_id == branch.id, TimeSlot.date == slot_date)
        }
    created = 0
    for seat in seats:
        step = 1 if seat.seating_type.is_meeting_room else 2
        for hour in range(open_hour, close_hour, step):
            end_hour = min(hour + step, close_hour)
            if (seat.id, time(hour)) in taken:
                continue
            session.add(TimeSlot(
                branch_id=branch.id,
                seat_id=seat.id,
                date=slot_date,
                start_time=time(hour),
                end_time=time(end_hour) if end_hour < 24 else time(23, 59, 59),
                is_available=True,
            ))
            created += 1
    logger.info("generated %d time slots for branch %s on %s", created, branch.id, slot_date)
    return created


def categorize_slots(slots):
    """Split slots into available / booked / maintenance buckets."""
    out = {'available': [], 'booked': [], 'maintenance': []}
    for slot in slots:
        seat_status = slot.seat.availability_status if slot.seat else None
        if seat_status == AvailabilityStatus.MAINTENANCE:
            out['maintenance'].append(slot)
        elif slot.is_available:
            out['available'].append(slot)
        else:
            out['booked'].append(slot)
    return out


__all__ = [
    'booked_seat_ids', 'seat_is_free', 'free_seats', 'verify_booking',
    'sync_seat_status', 'seat_status_for', 'claim_time_slots',
    'release_time_slots', 'generate_time_slots', 'categorize_slots',
]
