"""JWT issuance, verification and blacklisting.

Access tokens live for ``JWT_EXP_SECONDS`` and refresh tokens for
``JWT_REFRESH_EXP_SECONDS``. Every token carries a ``jti`` so it can be
revoked by writing it to the ``blacklisted_tokens`` table. Refresh tokens are
single use: rotating one blacklists it.
"""

import os
import time
import uuid
import logging
import functools
from datetime import datetime, timezone

import jwt
from flask import request

from shared.db import get_session, request_session
from shared.errors import APIError
from shared.models import AdminRole, BlacklistedToken

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGORITHM = "HS256"
JWT_EXP_SECONDS = int(os.getenv("JWT_EXP_SECONDS", "3600"))
JWT_REFRESH_EXP_SECONDS = int(os.getenv("JWT_REFRESH_EXP_SECONDS", str(7 * 24 * 3600)))

CUSTOMER_ROLE = 'customer'
ADMIN_ROLES = tuple(sorted(AdminRole.ALL))


def _encode(claims: dict, token_type: str, lifetime: int) -> str:
    now = int(time.time())
    payload = dict(claims)
    payload.update({
        'type': token_type,
        'jti': uuid.uuid4().hex,
        'iat': now,
        'exp': now + lifetime,
    })
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def make_token_pair(subject_id: int, role: str, **extra) -> dict:
    """Issue an access/refresh token pair for a customer or admin.

    :param subject_id: Customer or admin id, stored as the ``sub`` claim.
    :param role: ``'customer'`` or one of the admin roles.
    :returns: Dict with ``access_token``, ``refresh_token``, ``token_type`` and ``expires_in``.
    """
    claims = {'sub': str(subject_id), 'role': role}
    claims.update(extra)
    return {
        'access_token': _encode(claims, 'access', JWT_EXP_SECONDS),
        'refresh_token': _encode(claims, 'refresh', JWT_REFRESH_EXP_SECONDS),
        'token_type': 'bearer',
        'expires_in': JWT_EXP_SECONDS,
    }


def is_blacklisted(session, jti: str) -> bool:
    return session.query(BlacklistedToken.id).filter(BlacklistedToken.jti == jti).first() is not None


def decode_token(token: str, expected_type: str = 'access', session=None) -> dict:
    """Decode a JWT and reject it when expired, of the wrong type or revoked.

    :raises APIError: 401 ``invalid_token`` or ``token_revoked``.
    """
    try:
        decoded = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise APIError('token expired', status=401, code='token_expired')
    except jwt.InvalidTokenError:
        raise APIError('invalid token', status=401, code='invalid_token')
    if decoded.get('type') != expected_type or not decoded.get('jti'):
        raise APIError('invalid token', status=401, code='invalid_token')
    own_session = session is None
    session = session or get_session()
    try:
        revoked = is_blacklisted(session, decoded['jti'])
    finally:
        if own_session:
            session.close()
    if revoked:
        raise APIError('token revoked', status=401, code='token_revoked')
    return decoded


def blacklist_token(session, decoded: dict):
    """Record a decoded token as revoked. Caller commits."""
    if is_blacklisted(session, decoded['jti']):
        return
    expires_at = datetime.fromtimestamp(decoded.get('exp', time.time()), tz=timezone.utc).replace(tzinfo=None)
    session.add(BlacklistedToken(
        jti=decoded['jti'],
        token_type=decoded.get('type', 'access'),
        subject=decoded.get('sub'),
        expires_at=expires_at,
    ))
    logger.info("blacklisted %s token for subject %s", decoded.get('type'), decoded.get('sub'))


def rotate_refresh_token(session, refresh_token: str, claims_loader) -> dict:
    """Exchange a refresh token for a new pair and revoke the old one.

    ``claims_loader(decoded)`` must return ``(subject_id, role, extra_claims)``
    for the token's subject, or raise APIError if the subject is gone.
    """
    decoded = decode_token(refresh_token, expected_type='refresh', session=session)
    subject_id, role, extra = claims_loader(decoded)
    blacklist_token(session, decoded)
    session.commit()
    return make_token_pair(subject_id, role, **extra)


def bearer_token():
    auth = request.headers.get('Authorization')
    if not auth or not auth.startswith('Bearer '):
        raise APIError('auth required', status=401, code='auth_required')
    return auth.split(' ', 1)[1]


def _decode_request_token():
    """Decode and validate the JWT from the ``Authorization`` header.

    Expects a header of the form ``Bearer <token>``.
    """
    return decode_token(bearer_token(), session=request_session())


def require_auth(fn):
    """Decorator that requires a valid access token.

    On success, the decoded payload is stored in ``request._auth``.
    """
    @functools.wraps(fn)
    def inner(*a, **kw):
        request._auth = _decode_request_token()
        return fn(*a, **kw)
    return inner


def require_roles(*roles):
    """Decorator that requires the caller's role to be in ``roles``.

    Also validates the JWT and stores payload in ``request._auth``.
    """
    def deco(fn):
        @functools.wraps(fn)
        def inner(*a, **kw):
            info = _decode_request_token()
            if info.get('role') not in roles:
                raise APIError('forbidden', status=403, code='forbidden')
            request._auth = info
            return fn(*a, **kw)
        return inner
    return deco


require_admin = require_roles(*ADMIN_ROLES)
require_customer = require_roles(CUSTOMER_ROLE)


def current_subject_id() -> int:
    return int(request._auth['sub'])


def current_role() -> str:
    return request._auth.get('role')


def is_admin() -> bool:
    return current_role() in ADMIN_ROLES


__all__ = [
    'make_token_pair', 'decode_token', 'blacklist_token', 'rotate_refresh_token',
    'require_auth', 'require_roles', 'require_admin', 'require_customer',
    'current_subject_id', 'current_role', 'is_admin', 'bearer_token',
    'CUSTOMER_ROLE', 'ADMIN_ROLES',
]
