import os
import sys
import pytest
from datetime import time

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['JWT_SECRET'] = 'test-secret'
os.environ['RATE_LIMIT_ENABLED'] = '0'

from shared.db import get_session, reset_tables
from shared.models import Branch
from shared.rate_limit import reset_rate_limiter
from services.auth_service.app import app as auth_app
from services.support_service.app import app as support_app
API_PREFIX = f"/api/{os.getenv('API_VERSION','v1')}"
auth_app.config['TESTING'] = True
support_app.config['TESTING'] = True


@pytest.fixture(autouse=True)
def clean_db():
    reset_tables()
    reset_rate_limiter()
    yield


@pytest.fixture
def client():
    return support_app.test_client()


def _auth(token):
    return {'Authorization': f'Bearer {token}'}


def create_branches():
    s = get_session()
    a = Branch(name='Central', address='1 Main St', location='Downtown',
               opening_time=time(9), closing_time=time(18), short_code='CEN')
    b = Branch(name='Annex', address='2 Side St', location='Uptown',
               opening_time=time(9), closing_time=time(18), short_code='ANX')
    s.add_all([a, b])
    s.commit()
    ids = (a.id, b.id)
    s.close()
    return ids


def create_customer_token(name='alice'):
    c = auth_app.test_client()
    r = c.post(f'{API_PREFIX}/auth/register', json={'name': name, 'email': f'{name}@example.com', 'password': 'Pass123!'})
    assert r.status_code == 201
    return r.get_json()['access_token']


def create_admins(branch_id):
    """Super admin plus a branch admin for ``branch_id``; returns their tokens."""
    c = auth_app.test_client()
    c.post(f'{API_PREFIX}/admins', json={
        'username': 'root', 'email': 'root@example.com', 'name': 'Root', 'password': 'AdminPass123',
        'role': 'super_admin',
    })
    root = c.post(f'{API_PREFIX}/admins/login', json={'username': 'root', 'password': 'AdminPass123'}).get_json()
    c.post(f'{API_PREFIX}/admins', json={
        'username': 'ops', 'email': 'ops@example.com', 'name': 'Ops', 'password': 'OpsPass123',
        'branch_id': branch_id,
    }, headers=_auth(root['access_token']))
    ops = c.post(f'{API_PREFIX}/admins/login', json={'username': 'ops', 'password': 'OpsPass123'}).get_json()
    return root['access_token'], ops['access_token']


def open_ticket(client, tok, branch_id, **extra):
    payload = {'branch_id': branch_id, 'title': 'Wifi down', 'category': 'internet_issue',
               'description': 'No connection on floor 2'}
    payload.update(extra)
    return client.post(f'{API_PREFIX}/support/tickets', json=payload, headers=_auth(tok))


def test_customer_opens_ticket_with_number(client):
    central, _ = create_branches()
    tok = create_customer_token()
    r = open_ticket(client, tok, central)
    assert r.status_code == 201
    body = r.get_json()
    assert body['ticket_number'] == f"TKT-CEN-{body['id']}"
    assert body['status'] == 'new'


def test_ticket_validation(client):
    central, _ = create_branches()
    tok = create_customer_token()
    assert open_ticket(client, tok, central, category='aliens').status_code == 400
    assert open_ticket(client, tok, 999).status_code == 404
    assert open_ticket(client, tok, central, booking_id=42).status_code == 404
    assert client.post(f'{API_PREFIX}/support/tickets', json={'branch_id': central},
                       headers=_auth(tok)).status_code == 400


def test_customers_see_only_their_tickets(client):
    central, _ = create_branches()
    alice = create_customer_token('alice')
    bob = create_customer_token('bob')
    ticket_id = open_ticket(client, alice, central).get_json()['id']
    open_ticket(client, bob, central)
    assert len(client.get(f'{API_PREFIX}/support/tickets', headers=_auth(alice)).get_json()) == 1
    assert client.get(f'{API_PREFIX}/support/tickets/{ticket_id}', headers=_auth(bob)).status_code == 403
    r = client.post(f'{API_PREFIX}/support/tickets/{ticket_id}/messages', json={'message': 'hi'}, headers=_auth(bob))
    assert r.status_code == 403


def test_branch_admin_scope(client):
    central, annex = create_branches()
    root, ops = create_admins(central)
    tok = create_customer_token()
    open_ticket(client, tok, central)
    other = open_ticket(client, tok, annex).get_json()
    assert len(client.get(f'{API_PREFIX}/support/tickets', headers=_auth(root)).get_json()) == 2
    scoped = client.get(f'{API_PREFIX}/support/tickets', headers=_auth(ops)).get_json()
    assert [t['branch_id'] for t in scoped] == [central]
    assert client.get(f"{API_PREFIX}/support/tickets/{other['id']}", headers=_auth(ops)).status_code == 403


def test_assign_message_and_close_flow(client):
    central, _ = create_branches()
    root, _ = create_admins(central)
    tok = create_customer_token()
    ticket_id = open_ticket(client, tok, central).get_json()['id']

    r = client.post(f'{API_PREFIX}/support/tickets/{ticket_id}/assign', json={}, headers=_auth(root))
    assert r.status_code == 200
    assert r.get_json()['status'] == 'assigned'
    assert r.get_json()['assigned_to'] is not None

    msg = client.post(f'{API_PREFIX}/support/tickets/{ticket_id}/messages', json={'message': 'Looking into it'},
                      headers=_auth(root))
    assert msg.status_code == 201
    assert msg.get_json()['sender_type'] == 'admin'
    client.post(f'{API_PREFIX}/support/tickets/{ticket_id}/messages', json={'message': 'Thanks'}, headers=_auth(tok))
    detail = client.get(f'{API_PREFIX}/support/tickets/{ticket_id}', headers=_auth(tok)).get_json()
    assert detail['status'] == 'in_progress'
    assert [m['sender_type'] for m in detail['messages']] == ['admin', 'customer']

    closed = client.patch(f'{API_PREFIX}/support/tickets/{ticket_id}/status', json={'status': 'closed'},
                          headers=_auth(root))
    assert closed.get_json()['closed_at'] is not None
    r = client.post(f'{API_PREFIX}/support/tickets/{ticket_id}/messages', json={'message': 'still broken'},
                    headers=_auth(tok))
    assert r.status_code == 400
    assert r.get_json()['error']['code'] == 'ticket_closed'

    reopened = client.patch(f'{API_PREFIX}/support/tickets/{ticket_id}/status', json={'status': 'reopened'},
                            headers=_auth(tok))
    assert reopened.status_code == 200
    body = reopened.get_json()
    assert body['reopened_at'] is not None
    assert body['closed_at'] is None


def test_status_rules(client):
    central, _ = create_branches()
    root, _ = create_admins(central)
    tok = create_customer_token()
    ticket_id = open_ticket(client, tok, central).get_json()['id']
    url = f'{API_PREFIX}/support/tickets/{ticket_id}/status'
    assert client.patch(url, json={'status': 'in_progress'}, headers=_auth(tok)).status_code == 403
    assert client.patch(url, json={'status': 'reopened'}, headers=_auth(root)).status_code == 400
    assert client.patch(url, json={'status': 'bogus'}, headers=_auth(root)).status_code == 400
    assert client.patch(url, json={'status': 'in_progress'}, headers=_auth(root)).status_code == 200
    filtered = client.get(f'{API_PREFIX}/support/tickets', query_string={'status': 'in_progress'},
                          headers=_auth(root)).get_json()
    assert len(filtered) == 1
