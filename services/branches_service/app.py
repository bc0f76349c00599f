"""Branches service
-------------------

Branch, seating-type and seat catalogue, seat status changes, and time-slot
generation and listing. Reads are public; writes require an admin token.
"""

import os
import logging

from flask import Flask, request, jsonify
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from shared.auth import require_admin
from shared.availability import categorize_slots, generate_time_slots, sync_seat_status
from shared.db import init_tables, install_session_teardown, request_session
from shared.errors import APIError, install_error_handlers, not_found, validation_error
from shared.logging_setup import configure_logging
from shared.models import (
    AvailabilityStatus, Branch, BookingStatus, MeetingBooking, Seat, SeatBooking,
    SeatingType, SeatingTypeName, TimeSlot,
)
from shared.rate_limit import rate_limit
from shared.timeutil import parse_date, parse_time, utcnow

configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
_raw_ver = os.getenv('API_VERSION', 'v1').strip('/')
API_PREFIX = f"/api/{_raw_ver}" if not _raw_ver.startswith('api/') else f"/{_raw_ver}"
# Avoid DB side effects when building docs with autodoc
if os.getenv('DOCS_BUILD') != '1':
    init_tables()
install_error_handlers(app)
install_session_teardown(app)


def _branch_to_dict(b):
    return {
        'id': b.id,
        'name': b.name,
        'address': b.address,
        'location': b.location,
        'latitude': b.latitude,
        'longitude': b.longitude,
        'opening_time': b.opening_time.strftime('%H:%M') if b.opening_time else None,
        'closing_time': b.closing_time.strftime('%H:%M') if b.closing_time else None,
        'amenities': b.amenities,
        'capacity': b.capacity,
        'short_code': b.short_code,
        'is_active': b.is_active,
    }


def _seating_type_to_dict(t):
    return {
        'id': t.id,
        'name': t.name,
        'description': t.description,
        'hourly_rate': t.hourly_rate,
        'daily_rate': t.daily_rate,
        'weekly_rate': t.weekly_rate,
        'monthly_rate': t.monthly_rate,
        'is_hourly': t.is_hourly,
        'min_booking_duration': t.min_booking_duration,
        'min_seats': t.min_seats,
        'short_code': t.short_code,
        'capacity': t.capacity,
        'is_meeting_room': t.is_meeting_room,
        'is_active': t.is_active,
        'quantity_options': t.quantity_options,
        'cost_multiplier': t.cost_multiplier,
    }


def _seat_to_dict(s):
    return {
        'id': s.id,
        'branch_id': s.branch_id,
        'seating_type_id': s.seating_type_id,
        'seating_type': s.seating_type.name if s.seating_type else None,
        'seat_number': s.seat_number,
        'seat_code': s.seat_code,
        'price': s.price,
        'capacity': s.capacity,
        'availability_status': s.availability_status,
    }


def _slot_to_dict(slot):
    return {
        'id': slot.id,
        'branch_id': slot.branch_id,
        'seat_id': slot.seat_id,
        'seat_code': slot.seat.seat_code if slot.seat else None,
        'date': slot.date.isoformat(),
        'start_time': slot.start_time.strftime('%H:%M'),
        'end_time': slot.end_time.strftime('%H:%M'),
        'is_available': slot.is_available,
        'booking_id': slot.booking_id,
        'meeting_booking_id': slot.meeting_booking_id,
    }


def _find_branch(session, ref):
    """Look up a branch by numeric id or short code."""
    if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
        branch = session.get(Branch, int(ref))
    else:
        branch = session.query(Branch).filter(Branch.short_code == ref).first()
    if branch is None:
        raise not_found('branch')
    return branch


def _find_seating_type(session, ref):
    if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
        st = session.get(SeatingType, int(ref))
    else:
        st = session.query(SeatingType).filter(SeatingType.short_code == ref).first()
    if st is None:
        raise not_found('seating type')
    return st


def _positive_number(value, field, allow_zero=True):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise validation_error(f'{field} must be a number')
    if number < 0 or (number == 0 and not allow_zero):
        raise validation_error(f'{field} must be positive')
    return number


def _commit_or_conflict(session, message):
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise APIError(message, status=409, code='conflict')


# ---------------- Branches ----------------

BRANCH_FIELDS = ('name', 'address', 'location', 'latitude', 'longitude', 'amenities', 'capacity', 'short_code', 'is_active')


def _apply_branch_fields(branch, data):
    for field in BRANCH_FIELDS:
        if field in data:
            setattr(branch, field, data[field])
    for field in ('opening_time', 'closing_time'):
        if field in data:
            value = parse_time(data[field])
            if value is None:
                raise validation_error(f'{field} must be HH:MM')
            setattr(branch, field, value)
    if branch.opening_time and branch.closing_time and branch.closing_time <= branch.opening_time:
        raise validation_error('closing_time must be after opening_time')


@app.post(f"{API_PREFIX}/branches")
@require_admin
@rate_limit(30, 60, key='user')
def create_branch():
    """Create a branch.

    :request body: JSON with ``name``, ``address``, ``location``, ``opening_time``, ``closing_time``;
                   optional ``short_code``, ``latitude``, ``longitude``, ``amenities``, ``capacity``.
    :raises 400: Missing or invalid fields.
    :raises 409: Duplicate short code.
    """
    data = request.get_json() or {}
    missing = [k for k in ('name', 'address', 'location', 'opening_time', 'closing_time') if not data.get(k)]
    if missing:
        raise validation_error(f"missing fields: {', '.join(missing)}")
    session = request_session()
    branch = Branch()
    _apply_branch_fields(branch, data)
    if branch.short_code:
        branch.short_code = branch.short_code.upper()
    session.add(branch)
    _commit_or_conflict(session, 'branch short code already exists')
    logger.info("created branch %s (%s)", branch.id, branch.short_code)
    return jsonify(_branch_to_dict(branch)), 201


@app.get(f"{API_PREFIX}/branches")
def list_branches():
    """List branches.

    :query include_inactive: ``1`` to include inactive branches.
    :query location: Substring match on location.
    """
    q = request_session().query(Branch)
    if request.args.get('include_inactive') != '1':
        q = q.filter(Branch.is_active.is_(True))
    if request.args.get('location'):
        q = q.filter(Branch.location.ilike(f"%{request.args['location']}%"))
    return jsonify([_branch_to_dict(b) for b in q.order_by(Branch.id).all()])


@app.get(f"{API_PREFIX}/branches/<ref>")
def get_branch(ref):
    """Get a branch by id or short code, with its seats grouped by seating type."""
    session = request_session()
    branch = _find_branch(session, ref)
    out = _branch_to_dict(branch)
    grouped = {}
    for seat in sorted(branch.seats, key=lambda s: s.id):
        grouped.setdefault(seat.seating_type.name, []).append(_seat_to_dict(seat))
    out['seats'] = grouped
    return jsonify(out)


@app.patch(f"{API_PREFIX}/branches/<int:branch_id>")
@require_admin
@rate_limit(30, 60, key='user')
def update_branch(branch_id):
    session = request_session()
    branch = session.get(Branch, branch_id)
    if branch is None:
        raise not_found('branch')
    data = request.get_json() or {}
    if not data:
        raise validation_error('no fields provided')
    _apply_branch_fields(branch, data)
    _commit_or_conflict(session, 'branch short code already exists')
    return jsonify(_branch_to_dict(branch))


@app.delete(f"{API_PREFIX}/branches/<int:branch_id>")
@require_admin
def delete_branch(branch_id):
    """Delete a branch. Branches with open bookings are deactivated instead."""
    session = request_session()
    branch = session.get(Branch, branch_id)
    if branch is None:
        raise not_found('branch')
    seat_ids = [s.id for s in branch.seats]
    open_bookings = 0
    if seat_ids:
        open_bookings = session.query(SeatBooking).filter(
            SeatBooking.seat_id.in_(seat_ids), SeatBooking.status.in_(BookingStatus.OPEN)).count()
        open_bookings += session.query(MeetingBooking).filter(
            MeetingBooking.meeting_room_id.in_(seat_ids), MeetingBooking.status.in_(BookingStatus.OPEN)).count()
    if open_bookings:
        branch.is_active = False
        session.commit()
        return jsonify({'detail': 'deactivated', 'id': branch_id, 'open_bookings': open_bookings})
    session.delete(branch)
    session.commit()
    return jsonify({'detail': 'deleted', 'id': branch_id})


@app.get(f"{API_PREFIX}/branches/<int:branch_id>/stats")
@require_admin
def branch_stats(branch_id):
    """Seat counts per availability status and currently open bookings."""
    session = request_session()
    branch = session.get(Branch, branch_id)
    if branch is None:
        raise not_found('branch')
    counts = dict(session.query(Seat.availability_status, func.count(Seat.id))
                  .filter(Seat.branch_id == branch_id)
                  .group_by(Seat.availability_status).all())
    now = utcnow()
    seat_ids = [s.id for s in branch.seats]
    active = 0
    if seat_ids:
        active = session.query(SeatBooking).filter(
            SeatBooking.seat_id.in_(seat_ids), SeatBooking.status.in_(BookingStatus.OPEN),
            SeatBooking.start_time <= now, SeatBooking.end_time > now).count()
        active += session.query(MeetingBooking).filter(
            MeetingBooking.meeting_room_id.in_(seat_ids), MeetingBooking.status.in_(BookingStatus.OPEN),
            MeetingBooking.start_time <= now, MeetingBooking.end_time > now).count()
    return jsonify({
        'branch_id': branch_id,
        'total_seats': sum(counts.values()),
        'seats_by_status': {status: counts.get(status, 0) for status in sorted(AvailabilityStatus.ALL)},
        'active_bookings': active,
    })


# ---------------- Seating types ----------------

RATE_FIELDS = ('hourly_rate', 'daily_rate', 'weekly_rate', 'monthly_rate')


def _apply_seating_type_fields(st, data):
    for field in RATE_FIELDS:
        if field in data:
            setattr(st, field, _positive_number(data[field], field))
    for field in ('description', 'is_hourly', 'is_meeting_room', 'is_active', 'capacity'):
        if field in data:
            setattr(st, field, data[field])
    for field in ('min_booking_duration', 'min_seats'):
        if field in data:
            value = data[field]
            if not isinstance(value, int) or value < 1:
                raise validation_error(f'{field} must be a positive integer')
            setattr(st, field, value)
    if 'short_code' in data and data['short_code']:
        st.short_code = data['short_code'].upper()
    if 'quantity_options' in data:
        opts = data['quantity_options']
        if opts is not None and (not isinstance(opts, list) or not all(isinstance(o, int) and o > 0 for o in opts)):
            raise validation_error('quantity_options must be a list of positive integers')
        st.quantity_options = opts
    if 'cost_multiplier' in data:
        mult = data['cost_multiplier']
        if mult is not None and not isinstance(mult, dict):
            raise validation_error('cost_multiplier must be an object')
        st.cost_multiplier = {str(k): float(v) for k, v in (mult or {}).items()} or None


@app.post(f"{API_PREFIX}/seating-types")
@require_admin
def create_seating_type():
    """Create a seating type.

    :request body: JSON with ``name`` (one of HOT_DESK, DEDICATED_DESK, CUBICLE,
                   MEETING_ROOM, DAILY_PASS) and rates.
    :raises 400: Unknown name or invalid values.
    :raises 409: Name or short code already exists.
    """
    data = request.get_json() or {}
    name = (data.get('name') or '').upper()
    if name not in SeatingTypeName.ALL:
        raise validation_error('invalid seating type name', extra={'allowed': sorted(SeatingTypeName.ALL)})
    st = SeatingType(name=name, is_meeting_room=(name == SeatingTypeName.MEETING_ROOM),
                     is_hourly=(name == SeatingTypeName.MEETING_ROOM))
    _apply_seating_type_fields(st, data)
    session = request_session()
    session.add(st)
    _commit_or_conflict(session, 'seating type already exists')
    return jsonify(_seating_type_to_dict(st)), 201


@app.get(f"{API_PREFIX}/seating-types")
def list_seating_types():
    q = request_session().query(SeatingType)
    if request.args.get('include_inactive') != '1':
        q = q.filter(SeatingType.is_active.is_(True))
    return jsonify([_seating_type_to_dict(t) for t in q.order_by(SeatingType.id).all()])


@app.get(f"{API_PREFIX}/seating-types/<ref>")
def get_seating_type(ref):
    return jsonify(_seating_type_to_dict(_find_seating_type(request_session(), ref)))


@app.patch(f"{API_PREFIX}/seating-types/<int:type_id>")
@require_admin
def update_seating_type(type_id):
    session = request_session()
    st = session.get(SeatingType, type_id)
    if st is None:
        raise not_found('seating type')
    data = request.get_json() or {}
    if not data:
        raise validation_error('no fields provided')
    _apply_seating_type_fields(st, data)
    _commit_or_conflict(session, 'seating type short code already exists')
    return jsonify(_seating_type_to_dict(st))


@app.delete(f"{API_PREFIX}/seating-types/<int:type_id>")
@require_admin
def delete_seating_type(type_id):
    session = request_session()
    st = session.get(SeatingType, type_id)
    if st is None:
        raise not_found('seating type')
    if session.query(Seat.id).filter(Seat.seating_type_id == type_id).first():
        raise APIError('seating type still has seats', status=409, code='conflict')
    session.delete(st)
    session.commit()
    return jsonify({'detail': 'deleted', 'id': type_id})


# ---------------- Seats ----------------

def _seat_code(seating_type, seat_number):
    prefix = seating_type.short_code or seating_type.name[:2]
    return f"{prefix}{seat_number}".upper()


@app.post(f"{API_PREFIX}/seats")
@require_admin
def create_seat():
    """Create a seat.

    :request body: JSON with ``branch_id``, ``seating_type_id``, ``seat_number``;
                   optional ``seat_code`` (derived from the seating type short code
                   when absent), ``price``, ``capacity``.
    :raises 400: Missing fields or unknown branch / seating type.
    :raises 409: Seat code already exists.
    """
    data = request.get_json() or {}
    if not (data.get('branch_id') and data.get('seating_type_id') and data.get('seat_number')):
        raise validation_error('branch_id, seating_type_id, seat_number required')
    session = request_session()
    branch = session.get(Branch, data['branch_id'])
    seating_type = session.get(SeatingType, data['seating_type_id'])
    if branch is None or seating_type is None:
        raise validation_error('unknown branch or seating type')
    seat = Seat(
        branch_id=branch.id,
        seating_type_id=seating_type.id,
        seat_number=str(data['seat_number']),
        seat_code=data.get('seat_code') or _seat_code(seating_type, data['seat_number']),
        price=_positive_number(data.get('price', 0), 'price'),
        capacity=data.get('capacity') or seating_type.capacity,
    )
    session.add(seat)
    _commit_or_conflict(session, 'seat code already exists')
    return jsonify(_seat_to_dict(seat)), 201


@app.get(f"{API_PREFIX}/seats")
def list_seats():
    """List seats.

    :query branch_id: Filter by branch id.
    :query seating_type_id: Filter by seating type id.
    :query seating_type_code: Filter by seating type short code.
    :query status: Filter by availability status.
    """
    session = request_session()
    q = session.query(Seat)
    args = request.args
    try:
        if args.get('branch_id'):
            q = q.filter(Seat.branch_id == int(args['branch_id']))
        if args.get('seating_type_id'):
            q = q.filter(Seat.seating_type_id == int(args['seating_type_id']))
    except ValueError:
        raise validation_error('ids must be integers')
    if args.get('seating_type_code'):
        q = q.filter(Seat.seating_type_id == _find_seating_type(session, args['seating_type_code']).id)
    if args.get('status'):
        status = args['status'].upper()
        if status not in AvailabilityStatus.ALL:
            raise validation_error('invalid status')
        q = q.filter(Seat.availability_status == status)
    return jsonify([_seat_to_dict(s) for s in q.order_by(Seat.id).all()])


@app.get(f"{API_PREFIX}/seats/<int:seat_id>")
def get_seat(seat_id):
    seat = request_session().get(Seat, seat_id)
    if seat is None:
        raise not_found('seat')
    return jsonify(_seat_to_dict(seat))


@app.patch(f"{API_PREFIX}/seats/<int:seat_id>")
@require_admin
def update_seat(seat_id):
    """Update seat number, code, price or capacity."""
    session = request_session()
    seat = session.get(Seat, seat_id)
    if seat is None:
        raise not_found('seat')
    data = request.get_json() or {}
    if not data:
        raise validation_error('no fields provided')
    if data.get('seat_number'):
        seat.seat_number = str(data['seat_number'])
    if data.get('seat_code'):
        seat.seat_code = data['seat_code']
    if 'price' in data:
        seat.price = _positive_number(data['price'], 'price')
    if 'capacity' in data:
        seat.capacity = data['capacity']
    _commit_or_conflict(session, 'seat code already exists')
    return jsonify(_seat_to_dict(seat))


@app.patch(f"{API_PREFIX}/seats/<int:seat_id>/status")
@require_admin
def set_seat_status(seat_id):
    """Put a seat into or out of maintenance.

    Only MAINTENANCE and AVAILABLE may be set by hand; leaving maintenance
    resyncs the seat with its current bookings.

    :raises 400: Unsupported status.
    :raises 404: Seat not found.
    """
    session = request_session()
    seat = session.get(Seat, seat_id)
    if seat is None:
        raise not_found('seat')
    status = ((request.get_json() or {}).get('availability_status') or '').upper()
    if status == AvailabilityStatus.MAINTENANCE:
        seat.availability_status = AvailabilityStatus.MAINTENANCE
    elif status == AvailabilityStatus.AVAILABLE:
        seat.availability_status = AvailabilityStatus.AVAILABLE
        sync_seat_status(session, seat)
    else:
        raise validation_error('availability_status must be MAINTENANCE or AVAILABLE')
    session.commit()
    logger.info("seat %s status set to %s", seat.id, seat.availability_status)
    return jsonify(_seat_to_dict(seat))


@app.delete(f"{API_PREFIX}/seats/<int:seat_id>")
@require_admin
def delete_seat(seat_id):
    session = request_session()
    seat = session.get(Seat, seat_id)
    if seat is None:
        raise not_found('seat')
    has_open = session.query(SeatBooking.id).filter(
        SeatBooking.seat_id == seat_id, SeatBooking.status.in_(BookingStatus.OPEN)).first()
    has_open = has_open or session.query(MeetingBooking.id).filter(
        MeetingBooking.meeting_room_id == seat_id, MeetingBooking.status.in_(BookingStatus.OPEN)).first()
    if has_open:
        raise APIError('seat has open bookings', status=409, code='conflict')
    session.delete(seat)
    session.commit()
    return jsonify({'detail': 'deleted', 'id': seat_id})


# ---------------- Time slots ----------------

@app.post(f"{API_PREFIX}/slots")
@require_admin
def create_slots():
    """Generate time slots for a branch and date.

    :request body: JSON with ``branch_id`` or ``branch_code``, ``date`` (YYYY-MM-DD),
                   optional ``regenerate``.
    :returns: JSON with ``count`` of slots created.
    :raises 400: Missing branch or date.
    :raises 404: Branch not found or no available seats.
    :raises 409: Slots exist and ``regenerate`` is not set.
    """
    data = request.get_json() or {}
    ref = data.get('branch_id') or data.get('branch_code')
    if not ref:
        raise validation_error('branch_id or branch_code required')
    slot_date = parse_date(data.get('date'))
    if slot_date is None:
        raise validation_error('date (YYYY-MM-DD) required')
    session = request_session()
    branch = _find_branch(session, ref)
    count = generate_time_slots(session, branch, slot_date, regenerate=bool(data.get('regenerate')))
    session.commit()
    return jsonify({'branch_id': branch.id, 'date': slot_date.isoformat(), 'count': count}), 201


@app.get(f"{API_PREFIX}/slots")
def list_slots():
    """List a branch's slots for a date, grouped as available / booked / maintenance.

    :query branch_id: Branch id (or ``branch_code``).
    :query date: YYYY-MM-DD, defaults to today.
    :query seat_id: Only slots of this seat.
    :query seating_type_id: Only slots of seats of this type.
    :query availability: ``available``, ``booked`` or ``maintenance`` to empty the other buckets.
    """
    args = request.args
    ref = args.get('branch_id') or args.get('branch_code')
    if not ref:
        raise validation_error('branch_id or branch_code required')
    slot_date = parse_date(args.get('date')) if args.get('date') else utcnow().date()
    if slot_date is None:
        raise validation_error('date must be YYYY-MM-DD')
    session = request_session()
    branch = _find_branch(session, ref)
    q = session.query(TimeSlot).filter(TimeSlot.branch_id == branch.id, TimeSlot.date == slot_date)
    try:
        if args.get('seat_id'):
            q = q.filter(TimeSlot.seat_id == int(args['seat_id']))
        if args.get('seating_type_id'):
            q = q.join(Seat, TimeSlot.seat_id == Seat.id).filter(Seat.seating_type_id == int(args['seating_type_id']))
    except ValueError:
        raise validation_error('ids must be integers')
    slots = q.order_by(TimeSlot.start_time, TimeSlot.seat_id).all()
    buckets = categorize_slots(slots)
    availability = args.get('availability')
    out = {}
    for name, items in buckets.items():
        show = availability in (None, 'all', name)
        out[name] = {'count': len(items), 'slots': [_slot_to_dict(s) for s in items] if show else []}
    return jsonify({
        'date': slot_date.isoformat(),
        'branch_id': branch.id,
        'branch_code': branch.short_code,
        'total_slots': len(slots),
        **out,
    })


if __name__ == '__main__':
    port = int(os.getenv('PORT', 8002))
    app.run(host='0.0.0.0', port=port)
