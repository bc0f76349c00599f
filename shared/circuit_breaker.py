"""Circuit breaker wrapper built on `pybreaker`.

Provides a ConditionalCircuitBreaker decorator that applies circuit breaker
protection to outbound HTTP calls such as the payment gateway.
"""

import os
import logging
import functools

import pybreaker

logger = logging.getLogger(__name__)


class _LogListener(pybreaker.CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning("circuit %s: %s -> %s", cb.name,
                       getattr(old_state, 'name', old_state), getattr(new_state, 'name', new_state))


class ConditionalCircuitBreaker:
    """Decorator style circuit breaker using `pybreaker`."""
    def __init__(self, fail_max=5, reset_timeout=60, name='ServiceBreaker'):
        self.breaker = pybreaker.CircuitBreaker(
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            name=name,
            listeners=[_LogListener()],
        )

    def __call__(self, func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return self.breaker.call(func, *args, **kwargs)
        return wrapper

    def reset(self):
        self.breaker.close()


# Shared breaker for calls to the payment gateway.
gateway_breaker = ConditionalCircuitBreaker(
    fail_max=int(os.getenv('GATEWAY_BREAKER_FAIL_MAX', '5')),
    reset_timeout=int(os.getenv('GATEWAY_BREAKER_RESET_SECONDS', '60')),
    name='PaymentGatewayBreaker',
)

__all__ = ['ConditionalCircuitBreaker', 'gateway_breaker']
