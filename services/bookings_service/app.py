"""Bookings service
-------------------

Seat and meeting-room bookings, availability checks, pre-booking
verification, the expired-booking cleanup sweep, cost breakdowns and
loyalty coins. Uses JWT auth with role checks.
"""

import os
import hmac
import logging
from datetime import timedelta

from flask import Flask, request, jsonify

from shared.auth import (
    ADMIN_ROLES, bearer_token, current_subject_id, decode_token, is_admin,
    require_admin, require_auth, require_customer,
)
from shared.availability import (
    booked_seat_ids, claim_time_slots, free_seats, release_time_slots,
    seat_is_free, sync_seat_status, verify_booking,
)
from shared.bookings import (
    adjust_booking_coins, award_booking_coins, booking_model, booking_price, booking_seat,
    booking_to_dict, cancel_booking as cancel_open_booking, credit_coins,
)
from shared.coins import ACTIVITY_COINS, calculate_activity_coins
from shared.db import init_tables, install_session_teardown, request_session
from shared.errors import APIError, install_error_handlers, not_found, validation_error
from shared.logging_setup import configure_logging
from shared.models import (
    AvailabilityStatus, BookingStatus, CoinTransaction, Customer, MeetingBooking,
    Seat, SeatBooking, SeatingType, SeatingTypeName,
)
from shared.pricing import DURATION_TYPES, calculate_booking_cost, duration_units, quote
from shared.rate_limit import rate_limit
from shared.reconciliation import ReconciliationError, reconcile_expired_bookings
from shared.timeutil import iso, parse_date, parse_naive, utcnow

configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
_raw_ver = os.getenv('API_VERSION', 'v1').strip('/')
API_PREFIX = f"/api/{_raw_ver}" if not _raw_ver.startswith('api/') else f"/{_raw_ver}"
# Avoid DB init during Sphinx autodoc imports
if os.getenv('DOCS_BUILD') != '1':
    init_tables()
install_error_handlers(app)
install_session_teardown(app)

MIN_DURATIONS = {
    SeatingTypeName.HOT_DESK: timedelta(days=30),
    SeatingTypeName.DEDICATED_DESK: timedelta(days=30),
    SeatingTypeName.CUBICLE: timedelta(days=30),
    SeatingTypeName.MEETING_ROOM: timedelta(hours=1),
    SeatingTypeName.DAILY_PASS: timedelta(days=1),
}
# bookings may start slightly in the past to absorb client clock skew
START_GRACE = timedelta(minutes=5)


def _parse_window(data, start_key='start_time', end_key='end_time'):
    """Parse and validate a booking window from request data.

    :returns: ``(start, end)`` as naive UTC datetimes.
    :raises APIError: 400 when missing, unparseable or ``end <= start``.
    """
    start = parse_naive(data.get(start_key))
    end = parse_naive(data.get(end_key))
    if start is None or end is None:
        raise validation_error(f'{start_key} and {end_key} (ISO 8601) required')
    if end <= start:
        raise validation_error(f'{end_key} must be after {start_key}')
    return start, end


def _check_min_duration(seating_type, start, end):
    minimum = MIN_DURATIONS.get(seating_type.name, timedelta(hours=1))
    if end - start < minimum:
        raise validation_error(
            f'minimum booking duration for {seating_type.name} is {_describe(minimum)}',
            extra={'minimum_seconds': int(minimum.total_seconds())},
        )


def _describe(delta):
    if delta >= timedelta(days=30):
        return '1 month'
    if delta >= timedelta(days=1):
        return '1 day'
    return '1 hour'


def _resolve_customer(session, data):
    """Customers book for themselves; admins must name the customer."""
    if is_admin():
        customer_id = data.get('customer_id')
        if not customer_id:
            raise validation_error('customer_id required when booking as admin')
    else:
        customer_id = current_subject_id()
    try:
        customer = session.get(Customer, int(customer_id))
    except (TypeError, ValueError):
        raise validation_error('customer_id must be an integer')
    if customer is None:
        raise not_found('customer')
    return customer


def _as_int(value, field):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise validation_error(f'{field} must be an integer')


def _lock_seat(session, seat_id):
    """Load a seat with a row lock held until commit.

    Overlap checks run after this, so concurrent bookings of one seat
    are serialized.
    """
    return session.query(Seat).filter(Seat.id == seat_id).with_for_update().one_or_none()


def _initial_status():
    return BookingStatus.CONFIRMED if is_admin() else BookingStatus.PENDING


def _load_booking(session, booking_type, booking_id):
    """Fetch a booking the caller may see: owners and admins only."""
    model = booking_model(booking_type)
    booking = session.get(model, booking_id)
    if booking is None:
        raise not_found('booking')
    if not is_admin() and booking.customer_id != current_subject_id():
        raise APIError('forbidden', status=403, code='forbidden')
    return booking


def _finalize(session, bookings):
    """Flush new bookings, claim their slots, sync seats and award coins, then commit."""
    session.flush()
    for booking in bookings:
        if isinstance(booking, SeatBooking):
            claim_time_slots(session, booking.seat_id, booking.start_time, booking.end_time,
                             seat_booking_id=booking.id)
        else:
            claim_time_slots(session, booking.meeting_room_id, booking.start_time, booking.end_time,
                             meeting_booking_id=booking.id)
        sync_seat_status(session, booking_seat(booking))
        if booking.status == BookingStatus.CONFIRMED:
            award_booking_coins(session, booking)
    session.commit()


# ---------------- Bookings ----------------

@app.post(f"{API_PREFIX}/bookings")
@require_auth
@rate_limit(30, 60, key='user')
def create_seat_booking():
    """Book a seat, optionally with extra seats of the same type.

    :request body: JSON with ``seat_id``, ``start_time``, ``end_time`` (ISO);
                   optional ``quantity`` (default 1); admins also pass ``customer_id``.
    :returns: The primary booking, ``additional_bookings`` and the price ``quote``.
    :raises 400: Invalid window, below minimum duration, invalid quantity,
                 or a meeting room seat.
    :raises 401: Missing/invalid token.
    :raises 404: Unknown seat or customer.
    :raises 409: Seat under maintenance, already booked, or not enough seats.
    """
    data = request.get_json() or {}
    if not data.get('seat_id'):
        raise validation_error('seat_id required')
    start, end = _parse_window(data)
    if start < utcnow() - START_GRACE:
        raise validation_error('start_time must not be in the past')
    try:
        quantity = int(data.get('quantity', 1))
    except (TypeError, ValueError):
        raise validation_error('quantity must be an integer')
    if quantity < 1:
        raise validation_error('quantity must be at least 1')

    session = request_session()
    customer = _resolve_customer(session, data)
    seat = _lock_seat(session, _as_int(data['seat_id'], 'seat_id'))
    if seat is None:
        raise not_found('seat')
    seating_type = seat.seating_type
    if seating_type.is_meeting_room:
        raise validation_error('meeting rooms are booked through /bookings/meeting-room')
    if seat.availability_status == AvailabilityStatus.MAINTENANCE:
        raise APIError('seat is under maintenance', status=409, code='seat_unavailable')
    _check_min_duration(seating_type, start, end)
    if seating_type.quantity_options and quantity not in seating_type.quantity_options:
        raise validation_error('invalid quantity', extra={'allowed': seating_type.quantity_options})
    if not seat_is_free(session, seat.id, start, end):
        raise APIError('seat already booked for this period', status=409, code='conflict')

    seats = [seat]
    if quantity > 1:
        extra = [s for s in free_seats(session, seating_type.id, start, end, branch_id=seat.branch_id)
                 if s.id != seat.id]
        if len(extra) < quantity - 1:
            raise APIError(f'only {len(extra) + 1} seats are available for the selected time period',
                           status=409, code='conflict', extra={'available_seats': len(extra) + 1})
        chosen = [s.id for s in extra[:quantity - 1]]
        seats += session.query(Seat).filter(Seat.id.in_(chosen)).order_by(Seat.id).with_for_update().all()
        if booked_seat_ids(session, chosen, start, end):
            raise APIError('seats were booked concurrently, please retry', status=409, code='conflict')

    price = quote(seating_type, start, end, quantity)
    per_seat = round(price['total_price'] / quantity, 2)
    status = _initial_status()
    bookings = [
        SeatBooking(customer_id=customer.id, seat_id=s.id, start_time=start, end_time=end,
                    total_price=per_seat, quantity=quantity, status=status)
        for s in seats
    ]
    session.add_all(bookings)
    _finalize(session, bookings)
    logger.info("customer %s booked seats %s from %s to %s (%s)",
                customer.id, [s.id for s in seats], start, end, status)
    out = booking_to_dict(bookings[0])
    out['additional_bookings'] = [booking_to_dict(b) for b in bookings[1:]]
    out['quote'] = price
    return jsonify(out), 201


@app.post(f"{API_PREFIX}/bookings/meeting-room")
@require_auth
@rate_limit(30, 60, key='user')
def create_meeting_booking():
    """Book a meeting room.

    :request body: JSON with ``meeting_room_id``, ``start_time``, ``end_time``;
                   optional ``num_participants``, ``amenities``; admins pass ``customer_id``.
    :raises 400: Not a meeting room, too many participants or invalid window.
    :raises 404: Unknown room or customer.
    :raises 409: Room under maintenance or already booked.
    """
    data = request.get_json() or {}
    if not data.get('meeting_room_id'):
        raise validation_error('meeting_room_id required')
    start, end = _parse_window(data)
    if start < utcnow() - START_GRACE:
        raise validation_error('start_time must not be in the past')
    try:
        participants = int(data.get('num_participants', 1))
    except (TypeError, ValueError):
        raise validation_error('num_participants must be an integer')
    if participants < 1:
        raise validation_error('num_participants must be at least 1')

    session = request_session()
    customer = _resolve_customer(session, data)
    room = _lock_seat(session, _as_int(data['meeting_room_id'], 'meeting_room_id'))
    if room is None:
        raise not_found('meeting room')
    if not room.seating_type.is_meeting_room:
        raise validation_error('seat is not a meeting room')
    if room.availability_status == AvailabilityStatus.MAINTENANCE:
        raise APIError('meeting room is under maintenance', status=409, code='seat_unavailable')
    _check_min_duration(room.seating_type, start, end)
    capacity = room.capacity or room.seating_type.capacity
    if capacity and participants > capacity:
        raise validation_error(f'meeting room capacity is {capacity}', extra={'capacity': capacity})
    if not seat_is_free(session, room.id, start, end):
        raise APIError('meeting room already booked for this period', status=409, code='conflict')

    price = quote(room.seating_type, start, end)
    booking = MeetingBooking(
        customer_id=customer.id,
        meeting_room_id=room.id,
        start_time=start,
        end_time=end,
        num_participants=participants,
        amenities=data.get('amenities'),
        total_price=price['total_price'],
        status=_initial_status(),
    )
    session.add(booking)
    _finalize(session, [booking])
    logger.info("customer %s booked meeting room %s from %s to %s", customer.id, room.id, start, end)
    out = booking_to_dict(booking)
    out['quote'] = price
    return jsonify(out), 201


@app.get(f"{API_PREFIX}/bookings")
@require_auth
@rate_limit(60, 60, key='user')
def list_bookings():
    """List bookings.

    Admins see all; customers see their own.

    :query type: ``seat``, ``meeting`` or ``all`` (default).
    :query status: Filter by booking status.
    :query customer_id: Admin-only filter.
    :raises 401: Missing/invalid token.
    """
    session = request_session()
    kind = request.args.get('type', 'all')
    if kind not in ('all', 'seat', 'meeting'):
        raise validation_error("type must be 'seat', 'meeting' or 'all'")
    status = request.args.get('status')
    if status and status.upper() not in BookingStatus.OPEN | BookingStatus.CLOSED:
        raise validation_error('invalid status')
    out = []
    for name in ('seat', 'meeting'):
        if kind not in ('all', name):
            continue
        model = booking_model(name)
        q = session.query(model)
        if not is_admin():
            q = q.filter(model.customer_id == current_subject_id())
        elif request.args.get('customer_id', '').isdigit():
            q = q.filter(model.customer_id == int(request.args['customer_id']))
        if status:
            q = q.filter(model.status == status.upper())
        out.extend(q.all())
    out.sort(key=lambda b: (b.start_time, b.id))
    return jsonify([booking_to_dict(b) for b in out])


@app.get(f"{API_PREFIX}/bookings/<booking_type>/<int:booking_id>")
@require_auth
def get_booking(booking_type, booking_id):
    """Get a single seat or meeting booking.

    :raises 403: Caller is not owner/admin.
    :raises 404: Booking not found.
    """
    return jsonify(booking_to_dict(_load_booking(request_session(), booking_type, booking_id)))


@app.patch(f"{API_PREFIX}/bookings/<booking_type>/<int:booking_id>")
@require_auth
@rate_limit(30, 60, key='user')
def reschedule_booking(booking_type, booking_id):
    """Move an open booking to a new window and re-price it.

    Customers may only move PENDING bookings, which are re-priced before
    payment. Confirmed bookings are moved by admins, who may pass
    ``force=true`` to skip the conflict check; their coin reward is adjusted
    to the new window.

    :raises 400: Invalid window, new start in the past, or booking is not open
                 (or confirmed, for customers).
    :raises 403: Caller is not owner/admin.
    :raises 404: Booking not found.
    :raises 409: New window conflicts with another booking or the seat is under maintenance.
    """
    data = request.get_json() or {}
    session = request_session()
    booking = _load_booking(session, booking_type, booking_id)
    if booking.status not in BookingStatus.OPEN:
        raise APIError('cannot modify non-open booking', status=400, code='invalid_state')
    if booking.status == BookingStatus.CONFIRMED and not is_admin():
        raise APIError('confirmed bookings can only be rescheduled by an admin',
                       status=400, code='invalid_state')
    merged = {
        'start_time': data.get('start_time') or iso(booking.start_time),
        'end_time': data.get('end_time') or iso(booking.end_time),
    }
    start, end = _parse_window(merged)
    if start != booking.start_time and start < utcnow() - START_GRACE:
        raise validation_error('start_time must not be in the past')
    seat = _lock_seat(session, booking_seat(booking).id)
    if seat.availability_status == AvailabilityStatus.MAINTENANCE:
        raise APIError('seat is under maintenance', status=409, code='seat_unavailable')
    _check_min_duration(seat.seating_type, start, end)
    force = bool(data.get('force')) and is_admin()
    if not force:
        exclude = ({'exclude_seat_booking': booking.id} if isinstance(booking, SeatBooking)
                   else {'exclude_meeting_booking': booking.id})
        if seat.id in booked_seat_ids(session, [seat.id], start, end, **exclude):
            raise APIError('time slot conflict', status=409, code='conflict')
    booking.start_time = start
    booking.end_time = end
    booking.total_price = booking_price(booking, seat.seating_type, start, end)
    adjust_booking_coins(session, booking)
    if isinstance(booking, SeatBooking):
        release_time_slots(session, seat_booking_id=booking.id)
        session.flush()
        claim_time_slots(session, seat.id, start, end, seat_booking_id=booking.id)
    else:
        release_time_slots(session, meeting_booking_id=booking.id)
        session.flush()
        claim_time_slots(session, seat.id, start, end, meeting_booking_id=booking.id)
    sync_seat_status(session, seat)
    session.commit()
    return jsonify(booking_to_dict(booking))


@app.delete(f"{API_PREFIX}/bookings/<booking_type>/<int:booking_id>")
@require_auth
@rate_limit(30, 60, key='user')
def cancel_booking(booking_type, booking_id):
    """Cancel an open booking and free its seat and slots.

    :raises 400: Booking is not open.
    :raises 403: Caller is not owner/admin.
    :raises 404: Booking not found.
    """
    session = request_session()
    booking = _load_booking(session, booking_type, booking_id)
    cancel_open_booking(session, booking)
    session.commit()
    logger.info("booking %s/%s cancelled", booking_type, booking_id)
    return jsonify(booking_to_dict(booking))


@app.get(f"{API_PREFIX}/bookings/check")
@rate_limit(120, 60, key='ip')
def check_availability():
    """Check if a seat or meeting room is free for a time window.

    :query seat_id: Seat id (int)
    :query start: ISO start time
    :query end: ISO end time
    :returns: JSON with ``available`` boolean.
    :raises 400: Missing/invalid parameters.
    :raises 404: Seat not found.
    """
    seat_id = request.args.get('seat_id')
    if not seat_id or not seat_id.isdigit():
        raise validation_error('seat_id, start, end required')
    start, end = _parse_window(request.args, 'start', 'end')
    session = request_session()
    seat = session.get(Seat, int(seat_id))
    if seat is None:
        raise not_found('seat')
    available = (seat.availability_status != AvailabilityStatus.MAINTENANCE
                 and seat_is_free(session, seat.id, start, end))
    return jsonify({
        'seat_id': seat.id,
        'available': available,
        'availability_status': seat.availability_status,
    })


@app.post(f"{API_PREFIX}/bookings/verify")
@rate_limit(60, 60, key='ip')
def verify():
    """Check whether enough seats of a seating type are free and price them.

    :request body: JSON with ``seating_type_id``, ``num_seats``, ``start_time``,
                   ``end_time``; optional ``duration``, ``duration_type``
                   (hourly, daily or monthly) and ``branch_id``.
    :returns: ``available_seats``, ``total_price``, ``can_book`` and ``message``.
    :raises 400: Invalid input or unknown seating type.
    """
    data = request.get_json() or {}
    start, end = _parse_window(data)
    try:
        seating_type_id = int(data['seating_type_id'])
        num_seats = int(data.get('num_seats', 1))
        branch_id = int(data['branch_id']) if data.get('branch_id') else None
    except (KeyError, TypeError, ValueError):
        raise validation_error('seating_type_id and num_seats must be integers')
    if num_seats < 1:
        raise validation_error('num_seats must be at least 1')
    duration_type = data.get('duration_type') or 'hourly'
    if data.get('duration') is not None:
        try:
            duration = float(data['duration'])
        except (TypeError, ValueError):
            raise validation_error('duration must be a number')
        if duration <= 0:
            raise validation_error('duration must be positive')
    else:
        duration = duration_units(start, end, duration_type if duration_type in DURATION_TYPES else 'hourly')
    result = verify_booking(request_session(), seating_type_id, num_seats, start, end,
                            duration, duration_type, branch_id=branch_id)
    return jsonify(result)


def _authorize_cleanup():
    """Cron callers present ``X-Cron-Secret``; everyone else needs an admin token."""
    secret = os.getenv('CRON_SECRET')
    given = request.headers.get('X-Cron-Secret')
    if secret and given and hmac.compare_digest(secret, given):
        return 'cron'
    info = decode_token(bearer_token(), session=request_session())
    if info.get('role') not in ADMIN_ROLES:
        raise APIError('forbidden', status=403, code='forbidden')
    request._auth = info
    return f"admin:{info['sub']}"


@app.post(f"{API_PREFIX}/bookings/cleanup")
@rate_limit(10, 60, key='ip')
def cleanup_expired():
    """Complete expired bookings and release their seats.

    :returns: Counts of completed ``seat_bookings`` and ``meeting_bookings``
              and of seats ``activated`` for bookings that have started.
    :raises 401: No cron secret and no valid token.
    :raises 403: Token is not an admin token.
    :raises 500: The pass failed and was rolled back; safe to retry.
    """
    caller = _authorize_cleanup()
    try:
        result = reconcile_expired_bookings(request_session())
    except ReconciliationError as exc:
        raise APIError('cleanup failed, no changes were saved', status=500, code='cleanup_failed',
                       extra={'reason': str(exc)})
    logger.info("cleanup triggered by %s: %s", caller, result)
    return jsonify(result)


@app.get(f"{API_PREFIX}/bookings/cost")
@rate_limit(60, 60, key='ip')
def booking_cost():
    """Monthly cost breakdown with pro-rata months and optional cancellation.

    :query start_date: YYYY-MM-DD (inclusive)
    :query end_date: YYYY-MM-DD (inclusive)
    :query monthly_rate: Rate per month, or ``seating_type_id`` to use its monthly rate.
    :query cancellation_date: Optional YYYY-MM-DD.
    :raises 400: Missing or invalid parameters.
    :raises 404: Unknown seating type.
    """
    args = request.args
    start = parse_date(args.get('start_date'))
    end = parse_date(args.get('end_date'))
    if start is None or end is None or end < start:
        raise validation_error('start_date and end_date (YYYY-MM-DD) required, end_date >= start_date')
    if args.get('seating_type_id'):
        seating_type = request_session().get(SeatingType, _as_int(args['seating_type_id'], 'seating_type_id'))
        if seating_type is None:
            raise not_found('seating type')
        rate = seating_type.monthly_rate
    else:
        try:
            rate = float(args['monthly_rate'])
        except (KeyError, ValueError):
            raise validation_error('monthly_rate or seating_type_id required')
    cancellation = None
    if args.get('cancellation_date'):
        cancellation = parse_date(args['cancellation_date'])
        if cancellation is None:
            raise validation_error('cancellation_date must be YYYY-MM-DD')
    return jsonify(calculate_booking_cost(start, end, rate, cancellation_date=cancellation))


# ---------------- Coins ----------------

def _transaction_to_dict(t):
    return {
        'id': t.id,
        'amount': t.amount,
        'transaction_type': t.transaction_type,
        'description': t.description,
        'reference_id': t.reference_id,
        'created_at': iso(t.created_at),
    }


@app.get(f"{API_PREFIX}/coins/balance")
@require_customer
def coin_balance():
    customer = request_session().get(Customer, current_subject_id())
    if customer is None:
        raise not_found('customer')
    return jsonify({'customer_id': customer.id, 'coins': customer.coins})


@app.get(f"{API_PREFIX}/coins/transactions")
@require_customer
def coin_transactions():
    """Coin history, newest first.

    :query limit: Maximum number of rows (default 50, max 200).
    """
    try:
        limit = min(int(request.args.get('limit', 50)), 200)
    except ValueError:
        raise validation_error('limit must be an integer')
    rows = (request_session().query(CoinTransaction)
            .filter(CoinTransaction.customer_id == current_subject_id())
            .order_by(CoinTransaction.id.desc())
            .limit(limit).all())
    return jsonify([_transaction_to_dict(t) for t in rows])


@app.post(f"{API_PREFIX}/coins/spend")
@require_customer
@rate_limit(20, 60, key='user')
def spend_coins():
    """Spend coins from the caller's balance.

    :request body: JSON with ``amount`` (positive int) and optional ``description``.
    :raises 400: Invalid amount or insufficient balance.
    """
    data = request.get_json() or {}
    amount = data.get('amount')
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise validation_error('amount must be a positive integer')
    session = request_session()
    customer = session.get(Customer, current_subject_id())
    if customer is None:
        raise not_found('customer')
    if (customer.coins or 0) < amount:
        raise APIError('insufficient coins', status=400, code='insufficient_coins',
                       extra={'balance': customer.coins})
    customer.coins -= amount
    txn = CoinTransaction(
        customer_id=customer.id,
        amount=-amount,
        transaction_type='PURCHASE',
        description=data.get('description') or 'Coins spent',
        reference_id=data.get('reference_id'),
    )
    session.add(txn)
    session.commit()
    return jsonify({'coins': customer.coins, 'transaction': _transaction_to_dict(txn)})


@app.post(f"{API_PREFIX}/coins/award")
@require_admin
def award_activity_coins():
    """Credit activity coins (early payment, referral, extended booking, perfect attendance).

    :request body: JSON with ``customer_id``, ``activity_type`` and, for
                   ``perfect_attendance``, ``months``.
    :raises 400: Unknown activity type.
    :raises 404: Unknown customer.
    """
    data = request.get_json() or {}
    activity = data.get('activity_type')
    if activity not in ACTIVITY_COINS and activity != 'perfect_attendance':
        raise validation_error('unknown activity_type',
                               extra={'allowed': sorted(ACTIVITY_COINS) + ['perfect_attendance']})
    session = request_session()
    customer_id = data.get('customer_id')
    customer = session.get(Customer, customer_id) if isinstance(customer_id, int) else None
    if customer is None:
        raise not_found('customer')
    amount = calculate_activity_coins(activity, data.get('months'))
    credit_coins(session, customer, amount, f"Activity reward: {activity}",
                 reference_id=data.get('reference_id'))
    session.commit()
    return jsonify({'customer_id': customer.id, 'awarded': amount, 'coins': customer.coins})


if __name__ == '__main__':
    port = int(os.getenv('PORT', 8003))
    app.run(host='0.0.0.0', port=port)
