"""Support service
-------------------

Customer support tickets and their message threads. Customers open and follow
their own tickets; admins triage, assign and close them. Branch admins only
see tickets of their own branch.
"""

import os
import logging

from flask import Flask, request, jsonify

from shared.auth import current_subject_id, is_admin, require_admin, require_auth, require_customer
from shared.bookings import booking_model
from shared.db import init_tables, install_session_teardown, request_session
from shared.errors import APIError, install_error_handlers, not_found, validation_error
from shared.logging_setup import configure_logging
from shared.models import Admin, AdminRole, Branch, SupportTicket, TicketCategory, TicketMessage, TicketStatus
from shared.rate_limit import rate_limit
from shared.timeutil import iso, utcnow

configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
_raw_ver = os.getenv('API_VERSION', 'v1').strip('/')
API_PREFIX = f"/api/{_raw_ver}" if not _raw_ver.startswith('api/') else f"/{_raw_ver}"
if os.getenv('DOCS_BUILD') != '1':
    init_tables()
install_error_handlers(app)
install_session_teardown(app)

MAX_TITLE = 200


def _ticket_to_dict(t, with_messages=False):
    out = {
        'id': t.id,
        'ticket_number': t.ticket_number,
        'customer_id': t.customer_id,
        'branch_id': t.branch_id,
        'booking_id': t.booking_id,
        'booking_type': t.booking_type,
        'title': t.title,
        'category': t.category,
        'description': t.description,
        'status': t.status,
        'assigned_to': t.assigned_to,
        'closed_at': iso(t.closed_at),
        'reopened_at': iso(t.reopened_at),
        'created_at': iso(t.created_at),
    }
    if with_messages:
        out['messages'] = [_message_to_dict(m) for m in t.messages]
    return out


def _message_to_dict(m):
    return {
        'id': m.id,
        'ticket_id': m.ticket_id,
        'sender_type': m.sender_type,
        'sender_id': m.sender_id,
        'message': m.message,
        'created_at': iso(m.created_at),
    }


def _admin_branch_scope():
    """Branch id a branch admin is limited to, or ``None`` for unrestricted callers."""
    if request._auth.get('role') == AdminRole.BRANCH_ADMIN:
        return request._auth.get('branch_id')
    return None


def _load_ticket(session, ticket_id):
    """Fetch a ticket the caller may act on.

    :raises 403: Customer who does not own it, or branch admin of another branch.
    :raises 404: Ticket not found.
    """
    ticket = session.get(SupportTicket, ticket_id)
    if ticket is None:
        raise not_found('ticket')
    if is_admin():
        scope = _admin_branch_scope()
        if scope is not None and ticket.branch_id != scope:
            raise APIError('forbidden', status=403, code='forbidden')
    elif ticket.customer_id != current_subject_id():
        raise APIError('forbidden', status=403, code='forbidden')
    return ticket


def _set_status(ticket, status):
    """Apply a status change and its timestamps."""
    if status == TicketStatus.REOPENED and ticket.status != TicketStatus.CLOSED:
        raise APIError('only closed tickets can be reopened', status=400, code='invalid_state')
    if status == TicketStatus.CLOSED:
        ticket.closed_at = utcnow()
    elif status == TicketStatus.REOPENED:
        ticket.reopened_at = utcnow()
        ticket.closed_at = None
    ticket.status = status


@app.post(f"{API_PREFIX}/support/tickets")
@require_customer
@rate_limit(10, 60, key='user')
def create_ticket():
    """Open a support ticket.

    :request body: JSON with ``branch_id``, ``title``, ``category``, ``description``;
                   optional ``booking_id`` and ``booking_type`` (``seat`` or ``meeting``).
    :returns: The ticket with its ``ticket_number``.
    :raises 400: Missing fields, unknown category or a booking that is not the caller's.
    :raises 404: Unknown branch or booking.
    """
    data = request.get_json() or {}
    missing = [k for k in ('branch_id', 'title', 'category', 'description') if not data.get(k)]
    if missing:
        raise validation_error(f"missing fields: {', '.join(missing)}")
    if data['category'] not in TicketCategory.ALL:
        raise validation_error('invalid category', extra={'allowed': sorted(TicketCategory.ALL)})
    title = str(data['title']).strip()
    if len(title) > MAX_TITLE:
        raise validation_error(f'title must be at most {MAX_TITLE} characters')
    session = request_session()
    branch = session.get(Branch, data['branch_id']) if isinstance(data['branch_id'], int) else None
    if branch is None:
        raise not_found('branch')
    customer_id = current_subject_id()

    booking_type = None
    if data.get('booking_id'):
        booking_type = data.get('booking_type', 'seat')
        booking = session.get(booking_model(booking_type), data['booking_id'])
        if booking is None:
            raise not_found('booking')
        if booking.customer_id != customer_id:
            raise validation_error('booking does not belong to you')

    ticket = SupportTicket(
        customer_id=customer_id,
        branch_id=branch.id,
        booking_id=data.get('booking_id'),
        booking_type=booking_type,
        title=title,
        category=data['category'],
        description=data['description'],
        status=TicketStatus.NEW,
    )
    session.add(ticket)
    session.flush()
    ticket.ticket_number = f"TKT-{branch.short_code or branch.id}-{ticket.id}"
    session.commit()
    logger.info("customer %s opened ticket %s", customer_id, ticket.ticket_number)
    return jsonify(_ticket_to_dict(ticket)), 201


@app.get(f"{API_PREFIX}/support/tickets")
@require_auth
def list_tickets():
    """List tickets.

    Customers see their own; super admins see all; branch admins see their branch.

    :query status: Filter by status.
    :query category: Filter by category.
    :query branch_id: Filter by branch (admins).
    """
    session = request_session()
    q = session.query(SupportTicket)
    args = request.args
    if is_admin():
        scope = _admin_branch_scope()
        if scope is not None:
            q = q.filter(SupportTicket.branch_id == scope)
        elif args.get('branch_id', '').isdigit():
            q = q.filter(SupportTicket.branch_id == int(args['branch_id']))
    else:
        q = q.filter(SupportTicket.customer_id == current_subject_id())
    if args.get('status'):
        if args['status'] not in TicketStatus.ALL:
            raise validation_error('invalid status')
        q = q.filter(SupportTicket.status == args['status'])
    if args.get('category'):
        q = q.filter(SupportTicket.category == args['category'])
    return jsonify([_ticket_to_dict(t) for t in q.order_by(SupportTicket.id.desc()).all()])


@app.get(f"{API_PREFIX}/support/tickets/<int:ticket_id>")
@require_auth
def get_ticket(ticket_id):
    """Get a ticket with its messages."""
    return jsonify(_ticket_to_dict(_load_ticket(request_session(), ticket_id), with_messages=True))


@app.patch(f"{API_PREFIX}/support/tickets/<int:ticket_id>/status")
@require_auth
def change_status(ticket_id):
    """Change a ticket's status.

    Admins may set any status. Customers may only close or reopen their own tickets.
    Closing stamps ``closed_at``; reopening stamps ``reopened_at``.

    :request body: JSON with ``status``.
    :raises 400: Unknown status or reopening a ticket that is not closed.
    :raises 403: Not allowed for this caller.
    """
    status = (request.get_json() or {}).get('status')
    if status not in TicketStatus.ALL:
        raise validation_error('invalid status', extra={'allowed': sorted(TicketStatus.ALL)})
    session = request_session()
    ticket = _load_ticket(session, ticket_id)
    if not is_admin() and status not in (TicketStatus.CLOSED, TicketStatus.REOPENED):
        raise APIError('customers may only close or reopen tickets', status=403, code='forbidden')
    _set_status(ticket, status)
    session.commit()
    logger.info("ticket %s status -> %s", ticket.ticket_number, status)
    return jsonify(_ticket_to_dict(ticket))


@app.post(f"{API_PREFIX}/support/tickets/<int:ticket_id>/assign")
@require_admin
def assign_ticket(ticket_id):
    """Assign a ticket to an admin (the caller when ``admin_id`` is omitted).

    :raises 400: Ticket is closed.
    :raises 404: Ticket or admin not found.
    """
    data = request.get_json() or {}
    session = request_session()
    ticket = _load_ticket(session, ticket_id)
    if ticket.status == TicketStatus.CLOSED:
        raise APIError('cannot assign a closed ticket', status=400, code='invalid_state')
    admin_id = data.get('admin_id') or current_subject_id()
    admin = session.get(Admin, admin_id) if isinstance(admin_id, int) else None
    if admin is None or not admin.is_active:
        raise not_found('admin')
    ticket.assigned_to = admin.id
    if ticket.status in (TicketStatus.NEW, TicketStatus.REOPENED):
        ticket.status = TicketStatus.ASSIGNED
    session.commit()
    return jsonify(_ticket_to_dict(ticket))


@app.get(f"{API_PREFIX}/support/tickets/<int:ticket_id>/messages")
@require_auth
def list_messages(ticket_id):
    ticket = _load_ticket(request_session(), ticket_id)
    return jsonify([_message_to_dict(m) for m in ticket.messages])


@app.post(f"{API_PREFIX}/support/tickets/<int:ticket_id>/messages")
@require_auth
@rate_limit(30, 60, key='user')
def post_message(ticket_id):
    """Add a message to a ticket thread.

    :request body: JSON with ``message``.
    :raises 400: Empty message or the ticket is closed.
    :raises 403: Customer posting on someone else's ticket.
    """
    text = ((request.get_json() or {}).get('message') or '').strip()
    if not text:
        raise validation_error('message required')
    session = request_session()
    ticket = _load_ticket(session, ticket_id)
    if ticket.status == TicketStatus.CLOSED:
        raise APIError('ticket is closed', status=400, code='ticket_closed')
    msg = TicketMessage(
        ticket_id=ticket.id,
        sender_type='admin' if is_admin() else 'customer',
        sender_id=current_subject_id(),
        message=text,
    )
    session.add(msg)
    if is_admin() and ticket.status == TicketStatus.ASSIGNED:
        ticket.status = TicketStatus.IN_PROGRESS
    session.commit()
    return jsonify(_message_to_dict(msg)), 201


if __name__ == '__main__':
    port = int(os.getenv('PORT', 8004))
    app.run(host='0.0.0.0', port=port)
