"""Payments service
-------------------

Creates gateway orders for pending bookings and verifies the gateway's
payment signature. A verified payment confirms its booking, which updates the
seat status and credits loyalty coins.
"""

import os
import logging

from flask import Flask, request, jsonify

from shared.auth import current_subject_id, is_admin, require_auth, require_customer
from shared.bookings import booking_model, booking_to_dict, confirm_booking
from shared.db import init_tables, install_session_teardown, request_session
from shared.errors import APIError, install_error_handlers, not_found, validation_error
from shared.logging_setup import configure_logging
from shared.models import BookingStatus, Payment, PaymentStatus
from shared.payment_gateway import create_order, verify_signature
from shared.rate_limit import rate_limit
from shared.timeutil import iso

configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
_raw_ver = os.getenv('API_VERSION', 'v1').strip('/')
API_PREFIX = f"/api/{_raw_ver}" if not _raw_ver.startswith('api/') else f"/{_raw_ver}"
if os.getenv('DOCS_BUILD') != '1':
    init_tables()
install_error_handlers(app)
install_session_teardown(app)

CURRENCY = os.getenv('PAYMENT_CURRENCY', 'INR')


def _payment_to_dict(p):
    return {
        'id': p.id,
        'customer_id': p.customer_id,
        'booking_id': p.booking_id,
        'booking_type': p.booking_type,
        'amount': p.amount,
        'currency': p.currency,
        'order_id': p.order_id,
        'payment_id': p.payment_id,
        'status': p.status,
        'created_at': iso(p.created_at),
    }


def _load_payment(session, **filters):
    payment = session.query(Payment).filter_by(**filters).first()
    if payment is None:
        raise not_found('payment')
    if not is_admin() and payment.customer_id != current_subject_id():
        raise APIError('forbidden', status=403, code='forbidden')
    return payment


@app.post(f"{API_PREFIX}/payments/orders")
@require_customer
@rate_limit(10, 60, key='user')
def create_payment_order():
    """Create a gateway order for one of the caller's pending bookings.

    :request body: JSON with ``booking_id`` and ``booking_type`` (``seat`` or ``meeting``).
    :returns: The payment record plus ``key_id`` for the client checkout.
    :raises 400: Booking is not pending.
    :raises 403: Booking belongs to another customer.
    :raises 404: Booking not found.
    :raises 502: Gateway rejected the order.
    :raises 503: Gateway unreachable, circuit open or not configured.
    """
    data = request.get_json() or {}
    booking_type = data.get('booking_type', 'seat')
    booking_id = data.get('booking_id')
    if not isinstance(booking_id, int):
        raise validation_error('booking_id required')
    session = request_session()
    booking = session.get(booking_model(booking_type), booking_id)
    if booking is None:
        raise not_found('booking')
    if booking.customer_id != current_subject_id():
        raise APIError('forbidden', status=403, code='forbidden')
    if booking.status != BookingStatus.PENDING:
        raise APIError('booking is not awaiting payment', status=400, code='invalid_state')

    amount_paise = int(round(booking.total_price * 100))
    order = create_order(amount_paise, receipt=f"{booking_type}_{booking.id}", currency=CURRENCY,
                         notes={'customer_id': str(booking.customer_id)})
    payment = Payment(
        customer_id=booking.customer_id,
        booking_id=booking.id,
        booking_type=booking_type,
        amount=booking.total_price,
        currency=CURRENCY,
        order_id=order['id'],
        status=PaymentStatus.PENDING,
    )
    session.add(payment)
    session.commit()
    out = _payment_to_dict(payment)
    out['amount_paise'] = amount_paise
    out['key_id'] = os.getenv('RAZORPAY_KEY_ID')
    return jsonify(out), 201


@app.post(f"{API_PREFIX}/payments/verify")
@require_customer
@rate_limit(20, 60, key='user')
def verify_payment():
    """Verify a gateway payment and confirm its booking.

    :request body: JSON with ``order_id``, ``payment_id`` and ``signature``.
    :returns: The payment and the confirmed booking.
    :raises 400: Bad signature (payment marked FAILED) or booking no longer open.
    :raises 404: Unknown order.
    """
    data = request.get_json() or {}
    order_id = data.get('order_id')
    gateway_payment_id = data.get('payment_id')
    signature = data.get('signature')
    if not (order_id and gateway_payment_id and signature):
        raise validation_error('order_id, payment_id, signature required')
    session = request_session()
    payment = _load_payment(session, order_id=order_id)
    booking = session.get(booking_model(payment.booking_type), payment.booking_id)
    if booking is None:
        raise not_found('booking')
    if payment.status == PaymentStatus.COMPLETED:
        return jsonify({'payment': _payment_to_dict(payment), 'booking': booking_to_dict(booking)})

    if not verify_signature(order_id, gateway_payment_id, signature):
        payment.status = PaymentStatus.FAILED
        payment.payment_id = gateway_payment_id
        session.commit()
        logger.warning("signature mismatch for order %s", order_id)
        raise APIError('payment verification failed', status=400, code='payment_verification_failed')

    confirm_booking(session, booking)
    payment.status = PaymentStatus.COMPLETED
    payment.payment_id = gateway_payment_id
    session.commit()
    logger.info("payment %s verified, booking %s/%s confirmed", gateway_payment_id, payment.booking_type, booking.id)
    return jsonify({'payment': _payment_to_dict(payment), 'booking': booking_to_dict(booking)})


@app.get(f"{API_PREFIX}/payments")
@require_auth
def list_payments():
    """List payments; admins see all, customers their own.

    :query status: Filter by payment status.
    """
    q = request_session().query(Payment)
    if not is_admin():
        q = q.filter(Payment.customer_id == current_subject_id())
    if request.args.get('status'):
        q = q.filter(Payment.status == request.args['status'].upper())
    return jsonify([_payment_to_dict(p) for p in q.order_by(Payment.id.desc()).all()])


@app.get(f"{API_PREFIX}/payments/<int:payment_id>")
@require_auth
def get_payment(payment_id):
    return jsonify(_payment_to_dict(_load_payment(request_session(), id=payment_id)))


if __name__ == '__main__':
    port = int(os.getenv('PORT', 8005))
    app.run(host='0.0.0.0', port=port)
