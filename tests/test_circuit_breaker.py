import os
import sys
import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['JWT_SECRET'] = 'test-secret'
os.environ['RATE_LIMIT_ENABLED'] = '0'

import pybreaker
import requests

import shared.payment_gateway as payment_gateway
from shared.circuit_breaker import ConditionalCircuitBreaker, gateway_breaker
from shared.errors import APIError


@pytest.fixture(autouse=True)
def gateway_env(monkeypatch):
    gateway_breaker.reset()
    monkeypatch.setenv('RAZORPAY_KEY_ID', 'rzp_test_key')
    monkeypatch.setenv('RAZORPAY_KEY_SECRET', 'rzp_test_secret')
    yield
    gateway_breaker.reset()


def test_breaker_opens_after_fail_max():
    breaker = ConditionalCircuitBreaker(fail_max=2, reset_timeout=60, name='TestBreaker')
    calls = []

    @breaker
    def flaky():
        calls.append(1)
        raise ValueError('down')

    with pytest.raises(ValueError):
        flaky()
    # the second failure trips the breaker
    with pytest.raises(pybreaker.CircuitBreakerError):
        flaky()
    # while open the wrapped function is not called at all
    with pytest.raises(pybreaker.CircuitBreakerError):
        flaky()
    assert len(calls) == 2
    breaker.reset()
    with pytest.raises(ValueError):
        flaky()
    assert len(calls) == 3


def test_gateway_outage_opens_circuit(monkeypatch):
    calls = []

    def refused(url, **kw):
        calls.append(url)
        raise requests.ConnectionError('refused')

    monkeypatch.setattr(payment_gateway.requests, 'post', refused)
    for _ in range(gateway_breaker.breaker.fail_max + 2):
        with pytest.raises(APIError) as exc:
            payment_gateway.create_order(1000, 'seat_1')
        assert exc.value.status == 503
    # no further HTTP attempts once the circuit is open
    assert len(calls) == gateway_breaker.breaker.fail_max
    assert gateway_breaker.breaker.current_state == pybreaker.STATE_OPEN


def test_gateway_5xx_counts_as_failure(monkeypatch):
    class Resp:
        status_code = 502

        def json(self):
            return {}

    monkeypatch.setattr(payment_gateway.requests, 'post', lambda url, **kw: Resp())
    with pytest.raises(APIError) as exc:
        payment_gateway.create_order(1000, 'seat_1')
    assert exc.value.code == 'service_unavailable'
    assert gateway_breaker.breaker.fail_counter == 1


def test_signature_verification():
    sig = payment_gateway.expected_signature('order_1', 'pay_1')
    assert payment_gateway.verify_signature('order_1', 'pay_1', sig) is True
    assert payment_gateway.verify_signature('order_1', 'pay_2', sig) is False
    assert payment_gateway.verify_signature('order_1', 'pay_1', '') is False
    other = payment_gateway.expected_signature('order_1', 'pay_1', secret='another')
    assert other != sig
