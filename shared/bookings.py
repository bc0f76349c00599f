"""Booking state changes shared by the bookings and payments services."""

import logging

from shared.availability import release_time_slots, sync_seat_status
from shared.coins import calculate_booking_coins
from shared.errors import APIError
from shared.models import BookingStatus, CoinTransaction, Customer, MeetingBooking, SeatBooking
from shared.pricing import quote
from shared.timeutil import iso

logger = logging.getLogger(__name__)

BOOKING_TYPES = {'seat': SeatBooking, 'meeting': MeetingBooking}


def booking_model(booking_type):
    try:
        return BOOKING_TYPES[booking_type]
    except KeyError:
        raise APIError("booking type must be 'seat' or 'meeting'", status=400, code='validation_error')


def booking_seat(booking):
    return booking.seat if isinstance(booking, SeatBooking) else booking.meeting_room


def booking_to_dict(booking):
    if isinstance(booking, SeatBooking):
        out = {
            'type': 'seat',
            'seat_id': booking.seat_id,
            'quantity': booking.quantity,
            'coins_awarded': booking.coins_awarded,
        }
    else:
        out = {
            'type': 'meeting',
            'meeting_room_id': booking.meeting_room_id,
            'num_participants': booking.num_participants,
            'amenities': booking.amenities,
        }
    seat = booking_seat(booking)
    out.update({
        'id': booking.id,
        'customer_id': booking.customer_id,
        'start_time': iso(booking.start_time),
        'end_time': iso(booking.end_time),
        'total_price': booking.total_price,
        'status': booking.status,
        'seat_code': seat.seat_code if seat else None,
        'branch_id': seat.branch_id if seat else None,
    })
    return out


def credit_coins(session, customer, amount, description, transaction_type='CREDIT', reference_id=None):
    """Add ``amount`` coins to a customer and log the transaction. Caller commits."""
    if amount <= 0:
        return 0
    customer.coins = (customer.coins or 0) + amount
    session.add(CoinTransaction(
        customer_id=customer.id,
        amount=amount,
        transaction_type=transaction_type,
        description=description,
        reference_id=reference_id,
    ))
    return amount


def award_booking_coins(session, booking):
    """Credit loyalty coins for a confirmed seat booking exactly once."""
    if not isinstance(booking, SeatBooking) or booking.coins_awarded:
        return 0
    coins = calculate_booking_coins(booking.start_time, booking.end_time, booking.total_price, 'seat')
    customer = session.get(Customer, booking.customer_id)
    if customer is None or coins <= 0:
        return 0
    credit_coins(session, customer, coins, f"Reward for seat booking #{booking.id}",
                 reference_id=f"seat_booking:{booking.id}")
    booking.coins_awarded = coins
    logger.info("awarded %d coins to customer %s for booking %s", coins, customer.id, booking.id)
    return coins


def booking_price(booking, seating_type, start, end):
    """Price of one booking for ``[start, end)``.

    Seat bookings made in a group keep the group's quantity multiplier and pay
    their share of the group total.
    """
    if isinstance(booking, SeatBooking):
        quantity = booking.quantity or 1
        return round(quote(seating_type, start, end, quantity)['total_price'] / quantity, 2)
    return quote(seating_type, start, end)['total_price']


def adjust_booking_coins(session, booking):
    """Re-derive a confirmed seat booking's reward after its window changed. Caller commits.

    The difference to ``coins_awarded`` is written as an ``ADJUSTMENT``
    transaction; a balance never drops below zero.
    """
    if not isinstance(booking, SeatBooking) or booking.status != BookingStatus.CONFIRMED:
        return 0
    coins = calculate_booking_coins(booking.start_time, booking.end_time, booking.total_price, 'seat')
    delta = coins - (booking.coins_awarded or 0)
    customer = session.get(Customer, booking.customer_id)
    if delta == 0 or customer is None:
        return 0
    customer.coins = max((customer.coins or 0) + delta, 0)
    session.add(CoinTransaction(
        customer_id=customer.id,
        amount=delta,
        transaction_type='ADJUSTMENT',
        description=f"Reward adjusted for seat booking #{booking.id}",
        reference_id=f"seat_booking:{booking.id}",
    ))
    booking.coins_awarded = coins
    logger.info("adjusted coins for booking %s by %d", booking.id, delta)
    return delta


def confirm_booking(session, booking):
    """Move an open booking to CONFIRMED, sync its seat and award coins. Caller commits."""
    if booking.status == BookingStatus.CONFIRMED:
        return booking
    if booking.status != BookingStatus.PENDING:
        raise APIError('cannot confirm a closed booking', status=400, code='invalid_state')
    booking.status = BookingStatus.CONFIRMED
    session.flush()
    sync_seat_status(session, booking_seat(booking))
    award_booking_coins(session, booking)
    return booking


def cancel_booking(session, booking):
    """Cancel an open booking, release its slots and resync its seat. Caller commits."""
    if booking.status not in BookingStatus.OPEN:
        raise APIError('cannot cancel non-open booking', status=400, code='invalid_state')
    booking.status = BookingStatus.CANCELLED
    session.flush()
    if isinstance(booking, SeatBooking):
        release_time_slots(session, seat_booking_id=booking.id)
    else:
        release_time_slots(session, meeting_booking_id=booking.id)
    sync_seat_status(session, booking_seat(booking))
    return booking


__all__ = [
    'booking_model', 'booking_to_dict', 'booking_seat', 'credit_coins',
    'award_booking_coins', 'adjust_booking_coins', 'booking_price',
    'confirm_booking', 'cancel_booking', 'BOOKING_TYPES',
]
