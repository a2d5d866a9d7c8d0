import json
from types import SimpleNamespace
from unittest import mock

import pytest
import stripe

import stripe_webhook
from errors import AppError, ValidationError


def payment_intent(**overrides):
    intent = {
        'id': 'pi_1',
        'amount': 300,
        'currency': 'usd',
        'customer': 'cus_1',
        'metadata': {
            'user_id': 'user-1',
            'campaign_id': 'camp-1',
            'billing_reason': 'new_mover_addition',
            'new_mover_count': '1',
            'is_test_mode': 'true',
        },
        'latest_charge': {
            'id': 'ch_1',
            'receipt_url': 'https://pay.stripe.com/receipts/ch_1',
            'payment_method_details': {'card': {'brand': 'visa', 'last4': '4242'}},
        },
    }
    intent.update(overrides)
    return intent


def event(event_type, obj):
    return {'id': 'evt_1', 'type': event_type, 'data': {'object': obj}}


@pytest.fixture
def owner(fake_db):
    fake_db.seed('profile', {'user_id': 'user-1', 'email': 'owner@example.com', 'full_name': 'Owner One'})
    return fake_db.seed('campaigns', {'id': 'camp-1', 'user_id': 'user-1', 'payment_status': 'pending'})


# ============================================
# Signature verification
# ============================================

def test_verify_event_requires_signature():
    with pytest.raises(ValidationError, match='Missing signature'):
        stripe_webhook.verify_event(b'{}', None)


def test_verify_event_requires_configured_secret(monkeypatch):
    monkeypatch.setattr(stripe_webhook, 'STRIPE_WEBHOOK_SECRET', None)

    with mock.patch.object(stripe.Webhook, 'construct_event') as construct:
        with pytest.raises(AppError, match='Webhook secret not configured') as excinfo:
            stripe_webhook.verify_event(b'{}', 't=1,v1=abc')

    assert excinfo.value.status_code == 500
    construct.assert_not_called()


def test_verify_event_rejects_bad_signature():
    bad = stripe.SignatureVerificationError('No signatures found', 't=1,v1=abc')
    with mock.patch.object(stripe.Webhook, 'construct_event', side_effect=bad):
        with pytest.raises(ValidationError, match='Webhook Error: No signatures found'):
            stripe_webhook.verify_event(b'{}', 't=1,v1=abc')


def test_verify_event_rejects_bad_payload():
    with mock.patch.object(stripe.Webhook, 'construct_event', side_effect=ValueError('bad json')):
        with pytest.raises(ValidationError, match='Invalid payload'):
            stripe_webhook.verify_event(b'not json', 't=1,v1=abc')


def test_verify_event_returns_plain_event():
    payload = json.dumps(event('payment_intent.succeeded', payment_intent())).encode()
    with mock.patch.object(stripe.Webhook, 'construct_event') as construct:
        result = stripe_webhook.verify_event(payload, 't=1,v1=abc')

    construct.assert_called_once_with(payload, 't=1,v1=abc', stripe_webhook.STRIPE_WEBHOOK_SECRET)
    assert result['type'] == 'payment_intent.succeeded'
    assert result['data']['object']['id'] == 'pi_1'


# ============================================
# payment_intent.succeeded
# ============================================

def test_payment_succeeded_records_transaction_and_marks_campaign_paid(fake_db, owner):
    fake_db.seed('pending_charges', {'campaign_id': 'camp-1', 'processed': False})
    fake_db.seed('pending_charges', {'campaign_id': 'camp-2', 'processed': False})

    assert stripe_webhook.handle_event(event('payment_intent.succeeded', payment_intent())) == {'received': True}

    tx = fake_db.select_one('transactions', {'stripe_payment_intent_id': 'eq.pi_1'})
    assert tx['status'] == 'succeeded'
    assert tx['amount_dollars'] == 3.0
    assert tx['payment_method_brand'] == 'visa'
    assert tx['payment_method_last4'] == '4242'
    assert tx['new_mover_count'] == 1
    assert tx['is_test_mode'] is True

    campaign = fake_db.select_one('campaigns', {'id': 'eq.camp-1'})
    assert campaign['payment_status'] == 'paid'
    assert campaign['payment_intent_id'] == 'pi_1'

    processed = {row['campaign_id']: row['processed'] for row in fake_db.table('pending_charges')}
    assert processed == {'camp-1': True, 'camp-2': False}

    assert fake_db.table('admin_activity_logs')[0]['action_type'] == 'transaction_succeeded'


def test_payment_succeeded_updates_transaction_recorded_by_polling(fake_db, owner):
    fake_db.seed('transactions', {
        'id': 'tx-1',
        'stripe_payment_intent_id': 'pi_1',
        'status': 'processing',
        'metadata': {'postgrid_postcard_id': 'postcard_1'},
    })

    stripe_webhook.handle_payment_succeeded(payment_intent())

    rows = fake_db.table('transactions')
    assert len(rows) == 1
    assert rows[0]['id'] == 'tx-1'
    assert rows[0]['status'] == 'succeeded'
    assert rows[0]['updated_at']


def test_payment_succeeded_retrieves_charge_by_id(fake_db, owner):
    charge = mock.Mock()
    charge.to_dict.return_value = {'id': 'ch_9', 'receipt_url': 'https://receipt/9'}

    with mock.patch.object(stripe.Charge, 'retrieve', return_value=charge) as retrieve:
        stripe_webhook.handle_payment_succeeded(payment_intent(latest_charge='ch_9'))

    retrieve.assert_called_once_with('ch_9')
    tx = fake_db.select_one('transactions', {'stripe_payment_intent_id': 'eq.pi_1'})
    assert tx['stripe_charge_id'] == 'ch_9'
    assert tx['receipt_url'] == 'https://receipt/9'


def test_payment_succeeded_without_campaign(fake_db):
    intent = payment_intent(metadata={'user_id': 'user-1'}, latest_charge=None)

    stripe_webhook.handle_payment_succeeded(intent)

    tx = fake_db.table('transactions')[0]
    assert tx['campaign_id'] is None
    assert tx['billing_reason'] == 'campaign_approval'
    assert tx['stripe_charge_id'] is None


# ============================================
# payment_intent.payment_failed
# ============================================

def test_payment_failed_notifies_owner_and_admin(fake_db, owner, sent_emails, monkeypatch):
    monkeypatch.setattr(stripe_webhook, 'ADMIN_EMAIL', 'admin@example.com')
    intent = payment_intent(
        latest_charge={'id': 'ch_f', 'failure_code': 'card_declined', 'failure_message': 'Your card was declined.'}
    )

    stripe_webhook.handle_event(event('payment_intent.payment_failed', intent))

    tx = fake_db.table('transactions')[0]
    assert tx['status'] == 'failed'
    assert tx['failure_code'] == 'card_declined'
    assert fake_db.select_one('campaigns', {'id': 'eq.camp-1'})['payment_status'] == 'failed'

    note = fake_db.table('notifications')[0]
    assert note['user_id'] == 'user-1'
    assert note['type'] == 'payment_failed'
    assert note['action_url'] == '/settings/billing'
    assert '$3.00' in note['message']

    assert [(e['to'], e['subject']) for e in sent_emails] == [
        ('owner@example.com', 'Payment Failed - Action Required'),
        ('admin@example.com', 'Customer Payment Issue'),
    ]


def test_payment_failed_uses_last_payment_error(fake_db, owner, sent_emails, monkeypatch):
    monkeypatch.setattr(stripe_webhook, 'ADMIN_EMAIL', None)
    intent = payment_intent(
        latest_charge=None,
        last_payment_error={'code': 'expired_card', 'message': 'Your card has expired.'}
    )

    stripe_webhook.handle_payment_failed(intent)

    tx = fake_db.table('transactions')[0]
    assert tx['failure_code'] == 'expired_card'
    assert tx['failure_message'] == 'Your card has expired.'
    assert len(sent_emails) == 1


# ============================================
# payment_intent.requires_action
# ============================================

def test_requires_action_stores_action_url(fake_db, owner, sent_emails):
    intent = payment_intent(next_action={'redirect_to_url': {'url': 'https://hooks.stripe.com/3ds/1'}})

    stripe_webhook.handle_event(event('payment_intent.requires_action', intent))

    campaign = fake_db.select_one('campaigns', {'id': 'eq.camp-1'})
    assert campaign['payment_status'] == 'processing'
    assert campaign['payment_requires_action'] is True
    assert campaign['payment_action_url'] == 'https://hooks.stripe.com/3ds/1'
    assert fake_db.table('transactions')[0]['status'] == 'processing'
    assert fake_db.table('notifications')[0]['action_url'] == 'https://hooks.stripe.com/3ds/1'
    assert sent_emails[0]['subject'] == 'Complete Payment Authentication'


def test_requires_action_without_url_skips_notifications(fake_db, owner, sent_emails):
    stripe_webhook.handle_requires_action(payment_intent())

    assert fake_db.table('notifications') == []
    assert sent_emails == []


# ============================================
# charge.refunded
# ============================================

def test_full_refund_marks_campaign_refunded(fake_db, owner):
    fake_db.seed('transactions', {
        'id': 'tx-1', 'stripe_payment_intent_id': 'pi_1', 'campaign_id': 'camp-1',
        'user_id': 'user-1', 'status': 'succeeded', 'amount_dollars': 3.0,
    })

    stripe_webhook.handle_event(event('charge.refunded', {
        'id': 'ch_1', 'payment_intent': 'pi_1', 'refunded': True, 'amount_refunded': 300,
    }))

    tx = fake_db.select_one('transactions', {'id': 'eq.tx-1'})
    assert tx['status'] == 'refunded'
    assert tx['refund_amount_cents'] == 300
    assert fake_db.select_one('campaigns', {'id': 'eq.camp-1'})['payment_status'] == 'refunded'


def test_partial_refund_leaves_campaign_paid(fake_db, owner):
    fake_db.update_rows('campaigns', {'id': 'eq.camp-1'}, {'payment_status': 'paid'})
    fake_db.seed('transactions', {
        'id': 'tx-1', 'stripe_payment_intent_id': 'pi_1', 'campaign_id': 'camp-1', 'status': 'succeeded',
    })

    stripe_webhook.handle_refund({'id': 'ch_1', 'payment_intent': 'pi_1', 'refunded': False, 'amount_refunded': 100})

    assert fake_db.select_one('transactions', {'id': 'eq.tx-1'})['status'] == 'partially_refunded'
    assert fake_db.select_one('campaigns', {'id': 'eq.camp-1'})['payment_status'] == 'paid'


def test_refund_for_unknown_transaction_is_ignored(fake_db):
    stripe_webhook.handle_refund({'id': 'ch_x', 'payment_intent': 'pi_unknown', 'refunded': True})

    assert fake_db.table('transactions') == []


def test_unhandled_event_type_is_acknowledged(fake_db):
    assert stripe_webhook.handle_event(event('customer.created', SimpleNamespace())) == {'received': True}
