"""Auth service
----------------

Customer registration and login, admin login and management, refresh-token
rotation, logout with token blacklisting, and profile endpoints.
"""

import os
import logging

from flask import Flask, request, jsonify
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash, check_password_hash

from shared.auth import (
    CUSTOMER_ROLE, blacklist_token, bearer_token, current_subject_id,
    decode_token, make_token_pair, require_admin, require_auth, require_customer,
    require_roles, rotate_refresh_token,
)
from shared.db import init_tables, install_session_teardown, request_session
from shared.errors import APIError, install_error_handlers, not_found, validation_error
from shared.logging_setup import configure_logging
from shared.models import Admin, AdminRole, Branch, Customer
from shared.rate_limit import rate_limit
from shared.timeutil import iso, utcnow

configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
_raw_ver = os.getenv('API_VERSION', 'v1').strip('/')
API_PREFIX = f"/api/{_raw_ver}" if not _raw_ver.startswith('api/') else f"/{_raw_ver}"
# Avoid DB side effects during Sphinx autodoc
if os.getenv('DOCS_BUILD') != '1':
    init_tables()
install_error_handlers(app)
install_session_teardown(app)

MIN_PASSWORD_LENGTH = 6

# ---------------- Helper utilities ----------------


def customer_to_json(c):
    """Serialize a customer without password information."""
    return {
        'id': c.id,
        'name': c.name,
        'email': c.email,
        'phone': c.phone,
        'company_name': c.company_name,
        'coins': c.coins,
        'created_at': iso(c.created_at),
    }


def admin_to_json(a):
    return {
        'id': a.id,
        'username': a.username,
        'email': a.email,
        'name': a.name,
        'role': a.role,
        'branch_id': a.branch_id,
        'is_active': a.is_active,
        'last_login': iso(a.last_login),
    }


def _admin_claims(admin):
    return {'username': admin.username, 'branch_id': admin.branch_id}


def _load_claims(decoded):
    """Resolve a refresh token's subject to fresh claims for rotation."""
    session = request_session()
    subject_id = int(decoded['sub'])
    if decoded.get('role') == CUSTOMER_ROLE:
        customer = session.get(Customer, subject_id)
        if customer is None:
            raise APIError('account no longer exists', status=401, code='invalid_token')
        return customer.id, CUSTOMER_ROLE, {'email': customer.email}
    admin = session.get(Admin, subject_id)
    if admin is None or not admin.is_active:
        raise APIError('account no longer exists', status=401, code='invalid_token')
    return admin.id, admin.role, _admin_claims(admin)


def _check_password(password):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise validation_error(f'password must be at least {MIN_PASSWORD_LENGTH} characters')


# ---------------- Customers ----------------

@app.post(f"{API_PREFIX}/auth/register")
@rate_limit(5, 60, key='ip')
def register_customer():
    """Register a new customer and log them in.

    :request body: JSON with ``name``, ``email``, ``password``; optional ``phone``, ``company_name``.
    :returns: Customer JSON plus an access/refresh token pair.
    :raises 400: Missing fields or short password.
    :raises 409: Email already registered.
    """
    data = request.get_json() or {}
    if any(not data.get(k) for k in ('name', 'email', 'password')):
        raise validation_error('name, email, password required')
    _check_password(data['password'])
    session = request_session()
    customer = Customer(
        name=data['name'],
        email=data['email'].strip().lower(),
        phone=data.get('phone'),
        company_name=data.get('company_name'),
        password_hash=generate_password_hash(data['password']),
    )
    session.add(customer)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise APIError('email already registered', status=409, code='conflict')
    logger.info("registered customer %s", customer.id)
    tokens = make_token_pair(customer.id, CUSTOMER_ROLE, email=customer.email)
    return jsonify({'customer': customer_to_json(customer), **tokens}), 201


@app.post(f"{API_PREFIX}/auth/login")
@rate_limit(10, 60, key='ip')
def login_customer():
    """Issue tokens for valid customer credentials.

    :raises 400: Missing credentials.
    :raises 401: Invalid credentials.
    """
    data = request.get_json() or {}
    if not data.get('email') or not data.get('password'):
        raise validation_error('email and password required')
    customer = request_session().query(Customer).filter(
        Customer.email == data['email'].strip().lower()).first()
    if customer is None or not check_password_hash(customer.password_hash, data['password']):
        raise APIError('invalid credentials', status=401, code='invalid_credentials')
    tokens = make_token_pair(customer.id, CUSTOMER_ROLE, email=customer.email)
    return jsonify({'customer': customer_to_json(customer), **tokens})


@app.post(f"{API_PREFIX}/auth/refresh")
@rate_limit(30, 60, key='ip')
def refresh_tokens():
    """Exchange a refresh token for a new token pair.

    The presented refresh token is revoked; presenting it again fails.

    :request body: JSON with ``refresh_token``.
    :raises 400: Missing refresh token.
    :raises 401: Invalid, expired or already used refresh token.
    """
    data = request.get_json() or {}
    token = data.get('refresh_token')
    if not token:
        raise validation_error('refresh_token required')
    tokens = rotate_refresh_token(request_session(), token, _load_claims)
    return jsonify(tokens)


@app.post(f"{API_PREFIX}/auth/logout")
@require_auth
def logout():
    """Revoke the caller's access token and, if given, its refresh token."""
    session = request_session()
    blacklist_token(session, request._auth)
    refresh = (request.get_json(silent=True) or {}).get('refresh_token')
    if refresh:
        try:
            decoded = decode_token(refresh, expected_type='refresh', session=session)
        except APIError:
            decoded = None
        if decoded is not None and decoded.get('sub') == request._auth.get('sub'):
            blacklist_token(session, decoded)
    session.commit()
    return jsonify({'detail': 'logged out'})


@app.get(f"{API_PREFIX}/customers/me")
@require_customer
def get_me():
    customer = request_session().get(Customer, current_subject_id())
    if customer is None:
        raise not_found('customer')
    return jsonify(customer_to_json(customer))


@app.patch(f"{API_PREFIX}/customers/me")
@require_customer
def update_me():
    """Update your own profile.

    Accepts ``name``, ``phone``, ``company_name``, ``email`` and ``password``.

    :raises 400: No valid fields provided.
    :raises 409: Email already in use by another customer.
    """
    session = request_session()
    customer = session.get(Customer, current_subject_id())
    if customer is None:
        raise not_found('customer')
    data = request.get_json() or {}
    changed = False
    for field in ('name', 'phone', 'company_name'):
        if data.get(field):
            setattr(customer, field, data[field])
            changed = True
    if data.get('email') and data['email'].strip().lower() != customer.email:
        customer.email = data['email'].strip().lower()
        changed = True
    if data.get('password'):
        _check_password(data['password'])
        customer.password_hash = generate_password_hash(data['password'])
        changed = True
    if not changed:
        raise validation_error('no valid fields')
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise APIError('email already in use', status=409, code='conflict')
    return jsonify(customer_to_json(customer))


@app.get(f"{API_PREFIX}/customers")
@require_admin
def list_customers():
    rows = request_session().query(Customer).order_by(Customer.id).all()
    return jsonify([customer_to_json(c) for c in rows])


@app.get(f"{API_PREFIX}/customers/<int:customer_id>")
@require_admin
def get_customer(customer_id):
    customer = request_session().get(Customer, customer_id)
    if customer is None:
        raise not_found('customer')
    return jsonify(customer_to_json(customer))


# ---------------- Admins ----------------

@app.post(f"{API_PREFIX}/admins/login")
@rate_limit(10, 60, key='ip')
def login_admin():
    """Issue tokens for an admin by username or email.

    :raises 400: Missing credentials.
    :raises 401: Invalid credentials or deactivated account.
    """
    data = request.get_json() or {}
    ident = data.get('username') or data.get('email')
    if not ident or not data.get('password'):
        raise validation_error('username (or email) and password required')
    session = request_session()
    admin = session.query(Admin).filter((Admin.username == ident) | (Admin.email == ident)).first()
    if admin is None or not admin.is_active or not check_password_hash(admin.password_hash, data['password']):
        raise APIError('invalid credentials', status=401, code='invalid_credentials')
    admin.last_login = utcnow()
    session.commit()
    tokens = make_token_pair(admin.id, admin.role, **_admin_claims(admin))
    return jsonify({'admin': admin_to_json(admin), **tokens})


@app.post(f"{API_PREFIX}/admins")
@rate_limit(10, 60, key='ip')
def create_admin():
    """Create an admin account.

    The first super admin may be created without a token; afterwards a
    super-admin token is required.

    :request body: JSON with ``username``, ``email``, ``name``, ``password``; optional ``role``, ``branch_id``.
    :raises 400: Missing fields, invalid role, or unknown branch.
    :raises 403: Super-admin token required.
    :raises 409: Username or email exists.
    """
    data = request.get_json() or {}
    if any(not data.get(k) for k in ('username', 'email', 'name', 'password')):
        raise validation_error('username, email, name, password required')
    role = data.get('role', AdminRole.BRANCH_ADMIN)
    if role not in AdminRole.ALL:
        raise validation_error('invalid role')
    _check_password(data['password'])
    session = request_session()
    has_super = session.query(Admin.id).filter(Admin.role == AdminRole.SUPER_ADMIN).first() is not None
    if has_super or role != AdminRole.SUPER_ADMIN:
        if not request.headers.get('Authorization'):
            raise APIError('super admin token required', status=403, code='forbidden')
        info = decode_token(bearer_token(), session=session)
        if info.get('role') != AdminRole.SUPER_ADMIN:
            raise APIError('super admin token required', status=403, code='forbidden')
    branch_id = data.get('branch_id')
    if branch_id is not None and (not isinstance(branch_id, int) or session.get(Branch, branch_id) is None):
        raise validation_error('unknown branch')
    admin = Admin(
        username=data['username'],
        email=data['email'].strip().lower(),
        name=data['name'],
        role=role,
        branch_id=branch_id,
        password_hash=generate_password_hash(data['password']),
    )
    session.add(admin)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise APIError('username or email exists', status=409, code='conflict')
    logger.info("created %s admin %s", role, admin.username)
    return jsonify(admin_to_json(admin)), 201


@app.get(f"{API_PREFIX}/admins/verify")
@require_admin
def verify_admin_token():
    """Return the verified claims of the caller's admin token."""
    admin = request_session().get(Admin, current_subject_id())
    if admin is None or not admin.is_active:
        raise APIError('invalid token', status=401, code='invalid_token')
    return jsonify({'valid': True, 'admin': admin_to_json(admin)})


@app.get(f"{API_PREFIX}/admins/me")
@require_admin
def get_admin_me():
    admin = request_session().get(Admin, current_subject_id())
    if admin is None:
        raise not_found('admin')
    return jsonify(admin_to_json(admin))


@app.get(f"{API_PREFIX}/admins")
@require_roles(AdminRole.SUPER_ADMIN)
def list_admins():
    rows = request_session().query(Admin).order_by(Admin.id).all()
    return jsonify([admin_to_json(a) for a in rows])


@app.patch(f"{API_PREFIX}/admins/<int:admin_id>")
@require_roles(AdminRole.SUPER_ADMIN)
def update_admin(admin_id):
    """Super admin updates another admin.

    Accepts ``name``, ``email``, ``password``, ``role``, ``branch_id`` and ``is_active``.

    :raises 400: Invalid role, unknown branch or no fields provided.
    :raises 404: Admin not found.
    :raises 409: Email already in use.
    """
    session = request_session()
    admin = session.get(Admin, admin_id)
    if admin is None:
        raise not_found('admin')
    data = request.get_json() or {}
    if not data:
        raise validation_error('no fields provided')
    if 'role' in data:
        if data['role'] not in AdminRole.ALL:
            raise validation_error('invalid role')
        admin.role = data['role']
    if data.get('name'):
        admin.name = data['name']
    if data.get('email'):
        admin.email = data['email'].strip().lower()
    if data.get('password'):
        _check_password(data['password'])
        admin.password_hash = generate_password_hash(data['password'])
    if 'branch_id' in data:
        if data['branch_id'] is not None and (not isinstance(data['branch_id'], int)
                                           or session.get(Branch, data['branch_id']) is None):
            raise validation_error('unknown branch')
        admin.branch_id = data['branch_id']
    if 'is_active' in data:
        admin.is_active = bool(data['is_active'])
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise APIError('email already in use', status=409, code='conflict')
    return jsonify(admin_to_json(admin))


@app.delete(f"{API_PREFIX}/admins/<int:admin_id>")
@require_roles(AdminRole.SUPER_ADMIN)
def delete_admin(admin_id):
    session = request_session()
    admin = session.get(Admin, admin_id)
    if admin is None:
        raise not_found('admin')
    if admin.id == current_subject_id():
        raise APIError('cannot delete yourself', status=400, code='invalid_state')
    session.delete(admin)
    session.commit()
    return jsonify({'detail': 'deleted', 'id': admin_id})


if __name__ == '__main__':
    port = int(os.getenv('PORT', 8001))
    app.run(host='0.0.0.0', port=port)
