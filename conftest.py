"""Shared pytest fixtures: test environment and an in-memory Supabase."""

import os
import itertools
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

# Set required environment variables before any project module is imported
os.environ.setdefault('SUPABASE_URL', 'http://localhost:54321')
os.environ.setdefault('SUPABASE_SERVICE_ROLE_KEY', 'test_service_key')
os.environ.setdefault('SUPABASE_ANON_KEY', 'test_anon_key')
os.environ.setdefault('STRIPE_SECRET_KEY', 'sk_test_123')
os.environ.setdefault('STRIPE_WEBHOOK_SECRET', 'whsec_test')
os.environ.setdefault('MELISSA_CUSTOMER_ID', 'melissa_test')
os.environ.setdefault('POSTGRID_API_KEY', 'test_sk_postgrid')
os.environ.setdefault('RESEND_API_KEY', 're_test')

import supabase_rest  # noqa: E402

SKIP_PARAMS = ('select', 'order', 'limit', 'offset', 'on_conflict')


def _text(value):
    if value is True:
        return 'true'
    if value is False:
        return 'false'
    if value is None:
        return 'null'
    return str(value)


def _ordered(a, b):
    """Compare numerically when both sides are numbers, otherwise as text."""
    try:
        return float(a), float(b)
    except (TypeError, ValueError):
        return _text(a), _text(b)


def _split_terms(expression):
    return [term for term in expression.strip('()').split(',') if term]


def _matches(row, column, condition):
    negate = condition.startswith('not.')
    if negate:
        condition = condition[len('not.'):]
    op, _, expected = condition.partition('.')
    actual = row.get(column)

    if op == 'eq':
        result = _text(actual) == expected
    elif op == 'neq':
        result = _text(actual) != expected
    elif op == 'is':
        result = _text(actual) == expected
    elif op == 'in':
        result = _text(actual) in _split_terms(expected)
    elif op == 'ilike':
        result = actual is not None and expected.strip('*').lower() in str(actual).lower()
    elif op in ('gte', 'lte', 'gt', 'lt'):
        if actual is None:
            result = False
        else:
            left, right = _ordered(actual, expected)
            result = {
                'gte': left >= right,
                'lte': left <= right,
                'gt': left > right,
                'lt': left < right,
            }[op]
    else:
        raise AssertionError(f'Unsupported filter operator: {op}')

    return not result if negate else result


def _term_matches(row, term):
    column, _, condition = term.partition('.')
    return _matches(row, column, condition)


def _row_matches(row, params):
    for key, value in params.items():
        if key in SKIP_PARAMS:
            continue
        if key == 'or':
            if not any(_term_matches(row, term) for term in _split_terms(value)):
                return False
        elif key == 'and':
            if not all(_term_matches(row, term) for term in _split_terms(value)):
                return False
        elif not _matches(row, key, value):
            return False
    return True


def _sort(rows, order):
    for clause in reversed(order.split(',')):
        column, _, direction = clause.partition('.')
        present = [r for r in rows if r.get(column) is not None]
        missing = [r for r in rows if r.get(column) is None]
        present.sort(key=lambda r: r[column], reverse=direction == 'desc')
        rows = present + missing
    return rows


class FakeSupabase:
    """Dict-backed stand-in for the supabase_rest table helpers."""

    def __init__(self):
        self.tables = {}
        self.users = {}
        self._ids = itertools.count(1)

    def table(self, name):
        return self.tables.setdefault(name, [])

    def seed(self, table, *rows):
        stored = []
        for row in rows:
            stored.append(self._store(table, row))
        return stored[0] if len(stored) == 1 else stored

    def add_user(self, token, user_id, email):
        self.users[token] = {'id': user_id, 'email': email}

    def _store(self, table, data):
        row = dict(data)
        row.setdefault('id', f'{table}-{next(self._ids)}')
        row.setdefault('created_at', datetime.now(timezone.utc).isoformat())
        self.table(table).append(row)
        return row

    # supabase_rest API

    def select_rows(self, table, params=None):
        params = params or {}
        rows = [r for r in self.table(table) if _row_matches(r, params)]
        if params.get('order'):
            rows = _sort(rows, params['order'])
        offset = int(params.get('offset') or 0)
        rows = rows[offset:]
        if params.get('limit'):
            rows = rows[:int(params['limit'])]
        return [dict(r) for r in rows]

    def select_one(self, table, params=None):
        rows = self.select_rows(table, dict(params or {}, limit='1'))
        return rows[0] if rows else None

    def count_rows(self, table, params=None):
        params = {k: v for k, v in (params or {}).items() if k not in ('limit', 'offset')}
        return len(self.select_rows(table, params))

    def insert_row(self, table, data):
        return dict(self._store(table, data))

    def update_rows(self, table, filters, updates):
        updated = []
        for row in self.table(table):
            if _row_matches(row, filters):
                row.update(updates)
                updated.append(dict(row))
        return updated

    def upsert_row(self, table, data, on_conflict):
        for row in self.table(table):
            if row.get(on_conflict) == data.get(on_conflict):
                row.update(data)
                return dict(row)
        return self.insert_row(table, data)

    def delete_rows(self, table, filters):
        kept, deleted = [], []
        for row in self.table(table):
            (deleted if _row_matches(row, filters) else kept).append(row)
        self.tables[table] = kept
        return [dict(r) for r in deleted]

    def get_auth_user(self, access_token):
        return self.users.get(access_token)


@pytest.fixture
def fake_db(monkeypatch):
    fake = FakeSupabase()
    for name in ('select_rows', 'select_one', 'count_rows', 'insert_row',
                 'update_rows', 'upsert_row', 'delete_rows', 'get_auth_user'):
        monkeypatch.setattr(supabase_rest, name, getattr(fake, name))
    return fake


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outgoing email instead of calling Resend."""
    import email_service

    sent = []

    def fake_send(to, subject, html_body, from_address=None, reply_to=None):
        sent.append({'to': to, 'subject': subject, 'html': html_body})
        return {'success': True, 'id': f'email-{len(sent)}', 'message': 'Email sent successfully'}

    monkeypatch.setattr(email_service, 'send_email', fake_send)
    return sent


def make_intent(intent_id='pi_123', status='succeeded', amount=300, charge=None, next_action=None):
    """Minimal PaymentIntent-like object for mocking stripe.PaymentIntent.create."""
    return SimpleNamespace(
        id=intent_id,
        status=status,
        amount=amount,
        currency='usd',
        client_secret=f'{intent_id}_secret',
        next_action=next_action,
        latest_charge=charge if charge is not None else {
            'id': 'ch_123',
            'receipt_url': 'https://pay.stripe.com/receipts/ch_123',
        },
    )


@pytest.fixture
def intent_factory():
    return make_intent
