"""Expired-booking reconciliation.

One pass, one transaction:

1. select seat and meeting bookings whose ``end_time`` has passed and whose
   status is still PENDING or CONFIRMED;
2. mark each COMPLETED, set its seat or room AVAILABLE and free its time slots;
3. mark seats of bookings that have started since the last pass as
   OCCUPIED (confirmed) or RESERVED (pending);
4. commit, or roll the whole batch back and re-raise.

Running the pass twice in a row changes nothing the second time.
"""

import logging

from shared.availability import release_time_slots, seat_status_for
from shared.models import AvailabilityStatus, BookingStatus, MeetingBooking, Seat, SeatBooking
from shared.timeutil import utcnow

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Raised when a reconciliation pass fails and was rolled back."""


def release_seat(session, seat_id):
    """Set a seat back to AVAILABLE. Returns the seat, or ``None`` if it is gone."""
    seat = session.get(Seat, seat_id)
    if seat is not None:
        seat.availability_status = AvailabilityStatus.AVAILABLE
    return seat


def _expired(session, model, now):
    return session.query(model).filter(
        model.end_time < now,
        model.status.notin_(BookingStatus.CLOSED),
    ).with_for_update().all()


def _activate_started(session, now):
    """Occupy AVAILABLE seats whose open booking contains ``now``."""
    activated = 0
    started = [
        (b.seat_id, b.status) for b in session.query(SeatBooking).filter(
            SeatBooking.status.in_(BookingStatus.OPEN),
            SeatBooking.start_time <= now,
            SeatBooking.end_time > now,
        )
    ] + [
        (b.meeting_room_id, b.status) for b in session.query(MeetingBooking).filter(
            MeetingBooking.status.in_(BookingStatus.OPEN),
            MeetingBooking.start_time <= now,
            MeetingBooking.end_time > now,
        )
    ]
    for seat_id, status in started:
        seat = session.get(Seat, seat_id)
        if seat is None:
            continue
        wanted = seat_status_for(status)
        if seat.availability_status == AvailabilityStatus.AVAILABLE or (
                seat.availability_status == AvailabilityStatus.RESERVED and wanted == AvailabilityStatus.OCCUPIED):
            seat.availability_status = wanted
            activated += 1
    return activated


def reconcile_expired_bookings(session, now=None):
    """Complete expired bookings and release their seats atomically.

    :param session: SQLAlchemy session; committed on success, rolled back on failure.
    :param now: Reference time (naive UTC); defaults to the current time.
    :returns: dict with ``seat_bookings``, ``meeting_bookings`` and ``activated`` counts.
    :raises ReconciliationError: when any step fails; nothing is persisted.
    """
    now = now or utcnow()
    try:
        seat_bookings = _expired(session, SeatBooking, now)
        meeting_bookings = _expired(session, MeetingBooking, now)

        for booking in seat_bookings:
            booking.status = BookingStatus.COMPLETED
            release_seat(session, booking.seat_id)
            release_time_slots(session, seat_booking_id=booking.id)

        for booking in meeting_bookings:
            booking.status = BookingStatus.COMPLETED
            release_seat(session, booking.meeting_room_id)
            release_time_slots(session, meeting_booking_id=booking.id)

        session.flush()
        activated = _activate_started(session, now)
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.exception("booking reconciliation failed; batch rolled back")
        raise ReconciliationError(str(exc)) from exc

    result = {
        'seat_bookings': len(seat_bookings),
        'meeting_bookings': len(meeting_bookings),
        'activated': activated,
    }
    logger.info("reconciled expired bookings: %s", result)
    return result


__all__ = ['reconcile_expired_bookings', 'release_seat', 'ReconciliationError']
