"""Payment gateway client.

Talks to a Razorpay-compatible REST API over ``requests`` and applies the
shared circuit breaker to every outbound call.

Environment variables:
- ``RAZORPAY_API_URL``: Base URL of the gateway (default: ``https://api.razorpay.com/v1``)
- ``RAZORPAY_KEY_ID``: API key id, sent as basic-auth user
- ``RAZORPAY_KEY_SECRET``: API key secret, also used to verify payment signatures
- ``GATEWAY_TIMEOUT``: Request timeout in seconds (default: ``5``)
"""

import os
import hmac
import hashlib
import logging

import requests
import pybreaker

from shared.errors import APIError
from shared.circuit_breaker import gateway_breaker

logger = logging.getLogger(__name__)

RAZORPAY_API_URL = os.getenv('RAZORPAY_API_URL', 'https://api.razorpay.com/v1').rstrip('/')
RAZORPAY_KEY_ID = os.getenv('RAZORPAY_KEY_ID', '')
RAZORPAY_KEY_SECRET = os.getenv('RAZORPAY_KEY_SECRET', '')
GATEWAY_TIMEOUT = float(os.getenv('GATEWAY_TIMEOUT', '5'))


def _credentials():
    key_id = os.getenv('RAZORPAY_KEY_ID', RAZORPAY_KEY_ID)
    key_secret = os.getenv('RAZORPAY_KEY_SECRET', RAZORPAY_KEY_SECRET)
    if not key_id or not key_secret:
        raise APIError('payment gateway is not configured', status=503, code='service_unavailable')
    return key_id, key_secret


@gateway_breaker
def _http_post(url: str, payload: dict, auth: tuple, timeout: float = GATEWAY_TIMEOUT):
    """POST to the gateway with circuit breaker protection.

    Server-side failures raise so that the breaker counts them.

    :raises requests.RequestException: On low-level failure or a 5xx answer.
    """
    resp = requests.post(url, json=payload, auth=auth, timeout=timeout)
    if resp.status_code >= 500:
        raise requests.HTTPError(f"gateway answered {resp.status_code}", response=resp)
    return resp


def _call(url: str, payload: dict):
    """Call ``_http_post`` and normalize failures to ``APIError(503)``."""
    try:
        return _http_post(url, payload, _credentials())
    except (pybreaker.CircuitBreakerError, requests.RequestException) as exc:
        logger.warning("payment gateway unavailable: %s", exc)
        raise APIError('payment gateway unavailable', status=503, code='service_unavailable')


def create_order(amount_paise: int, receipt: str, currency: str = 'INR', notes: dict | None = None) -> dict:
    """Create a gateway order.

    :param amount_paise: Amount in the smallest currency unit.
    :param receipt: Merchant-side reference, e.g. ``seat_12``.
    :returns: The gateway's order JSON (contains ``id``).
    :raises APIError: 502 when the gateway rejects the order, 503 when unavailable.
    """
    resp = _call(f"{RAZORPAY_API_URL}/orders", {
        'amount': int(amount_paise),
        'currency': currency,
        'receipt': receipt,
        'notes': notes or {},
    })
    if resp.status_code < 200 or resp.status_code >= 300:
        logger.error("gateway rejected order %s: %s", receipt, resp.status_code)
        raise APIError('payment gateway rejected order', status=502, code='gateway_error')
    order = resp.json()
    logger.info("created gateway order %s for %s", order.get('id'), receipt)
    return order


def expected_signature(order_id: str, payment_id: str, secret: str | None = None) -> str:
    if secret is None:
        secret = _credentials()[1]
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """Check the gateway's HMAC-SHA256 signature over ``order_id|payment_id``."""
    if not (order_id and payment_id and signature):
        return False
    return hmac.compare_digest(expected_signature(order_id, payment_id), signature)


__all__ = ['create_order', 'verify_signature', 'expected_signature']
