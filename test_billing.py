from datetime import date
from types import SimpleNamespace
from unittest import mock

import pytest
import stripe

import billing
from errors import ValidationError, NotFoundError


@pytest.fixture
def customer(fake_db):
    fake_db.seed('customers', {'id': 'cust-1', 'user_id': 'user-1', 'stripe_customer_id': 'cus_1',
                               'email': 'owner@example.com'})
    fake_db.seed('payment_methods', {
        'id': 'pm-row-1',
        'customer_id': 'cust-1',
        'stripe_payment_method_id': 'pm_1',
        'card_brand': 'visa',
        'card_last4': '4242',
        'card_exp_month': 12,
        'card_exp_year': 2099,
        'is_default': True,
        'created_at': '2026-01-01T00:00:00+00:00',
    })
    return fake_db.select_one('customers', {'id': 'eq.cust-1'})


def intent_body(**overrides):
    body = {'amount': 900, 'customerId': 'cus_1', 'paymentMethodId': 'pm_1'}
    body.update(overrides)
    return body


# ============================================
# create_payment_intent
# ============================================

@pytest.mark.parametrize('amount', [None, 49, True, '900'])
def test_create_payment_intent_rejects_bad_amounts(fake_db, customer, amount):
    with pytest.raises(ValidationError, match='at least \\$0.50'):
        billing.create_payment_intent('user-1', intent_body(amount=amount))


def test_create_payment_intent_requires_ids(fake_db, customer):
    with pytest.raises(ValidationError, match='Customer ID is required'):
        billing.create_payment_intent('user-1', intent_body(customerId=None))
    with pytest.raises(ValidationError, match='Payment method ID is required'):
        billing.create_payment_intent('user-1', intent_body(paymentMethodId=''))


def test_create_payment_intent_checks_ownership(fake_db, customer):
    with pytest.raises(NotFoundError, match='Customer not found or unauthorized'):
        billing.create_payment_intent('someone-else', intent_body())


def test_admin_may_charge_another_users_customer(fake_db, customer, intent_factory):
    with mock.patch.object(stripe.PaymentIntent, 'create', return_value=intent_factory('pi_9', amount=900)):
        result = billing.create_payment_intent('admin-1', intent_body(), is_admin=True)

    assert result['success'] is True
    assert result['paymentIntentId'] == 'pi_9'


def test_caller_metadata_cannot_override_attribution(fake_db, customer, intent_factory):
    fake_db.seed('campaigns', {'id': 'camp-1', 'user_id': 'user-1'})
    body = intent_body(campaignId='camp-1', metadata={
        'user_id': 'victim', 'campaign_id': 'camp-other', 'billing_reason': 'campaign_approval',
    })

    with mock.patch.object(stripe.PaymentIntent, 'create', return_value=intent_factory()) as create:
        billing.create_payment_intent('user-1', body)

    metadata = create.call_args.kwargs['metadata']
    assert metadata['user_id'] == 'user-1'
    assert metadata['campaign_id'] == 'camp-1'
    assert metadata['billing_reason'] == 'campaign_approval'

    with mock.patch.object(stripe.PaymentIntent, 'create', return_value=intent_factory()) as create:
        billing.create_payment_intent('admin-1', intent_body(), is_admin=True)

    assert create.call_args.kwargs['metadata']['user_id'] == 'user-1'


def test_create_payment_intent_rejects_expired_card(fake_db, customer):
    fake_db.update_rows('payment_methods', {'id': 'eq.pm-row-1'}, {'card_exp_year': 2001})

    with pytest.raises(ValidationError, match='expired'):
        billing.create_payment_intent('user-1', intent_body())


def test_create_payment_intent_success(fake_db, customer, intent_factory):
    with mock.patch.object(stripe.PaymentIntent, 'create',
                           return_value=intent_factory('pi_1', amount=900)) as create:
        result = billing.create_payment_intent('user-1', intent_body(amount=900.0, description='Spring'))

    kwargs = create.call_args.kwargs
    assert kwargs['amount'] == 900
    assert kwargs['confirm'] is True
    assert kwargs['off_session'] is True
    assert kwargs['expand'] == ['latest_charge']
    assert kwargs['metadata']['user_id'] == 'user-1'
    assert 'idempotency_key' not in kwargs

    assert result == {
        'success': True,
        'paymentIntentId': 'pi_1',
        'clientSecret': 'pi_1_secret',
        'status': 'succeeded',
        'amount': 900,
        'currency': 'usd',
        'message': 'Payment succeeded',
        'requiresAction': False,
        'actionUrl': None,
        'chargeId': 'ch_123',
        'receiptUrl': 'https://pay.stripe.com/receipts/ch_123',
    }


def test_create_payment_intent_requires_action(fake_db, customer, intent_factory):
    intent = intent_factory(
        'pi_3ds', status='requires_action', charge='ch_pending',
        next_action={'redirect_to_url': {'url': 'https://hooks.stripe.com/3ds'}}
    )
    with mock.patch.object(stripe.PaymentIntent, 'create', return_value=intent):
        result = billing.create_payment_intent('user-1', intent_body())

    assert result['requiresAction'] is True
    assert result['actionUrl'] == 'https://hooks.stripe.com/3ds'
    assert result['chargeId'] == 'ch_pending'
    assert result['receiptUrl'] is None


def test_create_payment_intent_card_error(fake_db, customer):
    declined = stripe.CardError('Your card has insufficient funds.', None, 'insufficient_funds')

    with mock.patch.object(stripe.PaymentIntent, 'create', side_effect=declined):
        result = billing.create_payment_intent('user-1', intent_body())

    assert result['success'] is False
    assert result['errorCode'] == 'insufficient_funds'
    assert result['error'] == billing.CARD_ERROR_MESSAGES['insufficient_funds']


def test_create_payment_intent_api_error(fake_db, customer):
    with mock.patch.object(stripe.PaymentIntent, 'create', side_effect=stripe.APIError('boom')):
        result = billing.create_payment_intent('user-1', intent_body())

    assert result['errorCode'] == 'api_error'
    assert 'temporarily unavailable' in result['error']


# ============================================
# charge_campaign
# ============================================

def test_charge_campaign_uses_default_card(fake_db, customer, intent_factory):
    fake_db.seed('campaigns', {'id': 'camp-1', 'user_id': 'user-1'})

    with mock.patch.object(stripe.PaymentIntent, 'create',
                           return_value=intent_factory('pi_c', amount=1500)) as create:
        result = billing.charge_campaign('camp-1', 1500, {'campaign_name': 'Spring'}, 'user-1')

    kwargs = create.call_args.kwargs
    assert kwargs['payment_method'] == 'pm_1'
    assert kwargs['description'] == 'Spring - Postcard Campaign'
    assert kwargs['metadata']['campaign_id'] == 'camp-1'
    assert kwargs['idempotency_key'].startswith('campaign_camp-1_')
    assert result['paymentIntentId'] == 'pi_c'


def test_charge_campaign_without_card(fake_db, customer):
    fake_db.delete_rows('payment_methods', {'customer_id': 'eq.cust-1'})

    with pytest.raises(ValidationError, match='No payment method on file'):
        billing.charge_campaign('camp-1', 1500, user_id='user-1')


def test_charge_for_postcard_records_processing_status(fake_db, customer, intent_factory):
    campaign = {'id': 'camp-1', 'user_id': 'user-1', 'campaign_name': 'Spring'}

    with mock.patch.object(stripe.PaymentIntent, 'create',
                           return_value=intent_factory('pi_p', status='processing')):
        transaction_id = billing.charge_for_postcard(campaign, 'mover-1', 'K1', 'postcard_1')

    row = fake_db.select_one('transactions', {'id': f'eq.{transaction_id}'})
    assert row['status'] == 'processing'
    assert row['amount_cents'] == 300
    assert row['billing_reason'] == 'new_mover_addition'
    assert row['metadata']['postgrid_postcard_id'] == 'postcard_1'


def test_charge_for_postcard_without_customer_returns_none(fake_db):
    campaign = {'id': 'camp-1', 'user_id': 'nobody'}

    with mock.patch.object(stripe.PaymentIntent, 'create') as create:
        assert billing.charge_for_postcard(campaign, 'mover-1', 'K1', 'postcard_1') is None
    create.assert_not_called()


# ============================================
# Customers and payment methods
# ============================================

def test_create_customer_record_reuses_existing(fake_db, customer):
    with mock.patch.object(stripe.Customer, 'list') as list_customers:
        result = billing.create_customer_record({'id': 'user-1', 'email': 'owner@example.com'})

    list_customers.assert_not_called()
    assert result['stripeCustomerId'] == 'cus_1'
    assert result['message'] == 'Customer already exists'


def test_create_customer_record_links_stripe_customer_by_email(fake_db):
    found = SimpleNamespace(data=[SimpleNamespace(id='cus_found')])

    with mock.patch.object(stripe.Customer, 'list', return_value=found), \
            mock.patch.object(stripe.Customer, 'create') as create:
        result = billing.create_customer_record({'id': 'user-2', 'email': 'new@example.com'})

    create.assert_not_called()
    assert result['stripeCustomerId'] == 'cus_found'
    assert fake_db.select_one('customers', {'user_id': 'eq.user-2'})['stripe_customer_id'] == 'cus_found'


def test_create_customer_record_creates_stripe_customer(fake_db):
    fake_db.seed('profile', {'user_id': 'user-3', 'company_name': 'Acme Realty'})

    with mock.patch.object(stripe.Customer, 'list', return_value=SimpleNamespace(data=[])), \
            mock.patch.object(stripe.Customer, 'create', return_value=SimpleNamespace(id='cus_new')) as create:
        result = billing.create_customer_record({'id': 'user-3', 'email': 'acme@example.com'})

    assert create.call_args.kwargs['name'] == 'Acme Realty'
    assert result['message'] == 'Customer created successfully'


def test_create_customer_record_requires_email(fake_db):
    with pytest.raises(ValidationError):
        billing.create_customer_record({'id': 'user-4', 'email': None})


def setup_intent(status='succeeded', pm_id='pm_new'):
    return SimpleNamespace(status=status, payment_method={
        'id': pm_id,
        'type': 'card',
        'card': {'brand': 'mastercard', 'last4': '4444', 'exp_month': 6, 'exp_year': 2031},
        'billing_details': {'name': 'Jane Doe'},
    })


def test_confirm_setup_intent_first_card_becomes_default(fake_db):
    fake_db.seed('customers', {'id': 'cust-9', 'user_id': 'user-9', 'stripe_customer_id': 'cus_9'})

    with mock.patch.object(stripe.SetupIntent, 'retrieve', return_value=setup_intent()), \
            mock.patch.object(stripe.Customer, 'modify') as modify:
        result = billing.confirm_setup_intent('user-9', 'seti_1')

    assert result['success'] is True
    assert result['paymentMethod']['is_default'] is True
    assert result['paymentMethod']['card_last4'] == '4444'
    modify.assert_called_once_with('cus_9', invoice_settings={'default_payment_method': 'pm_new'})
    assert fake_db.table('admin_activity_logs')[0]['action_type'] == 'payment_method_added'


def test_confirm_setup_intent_additional_card_is_not_default(fake_db, customer):
    with mock.patch.object(stripe.SetupIntent, 'retrieve', return_value=setup_intent()), \
            mock.patch.object(stripe.Customer, 'modify') as modify:
        result = billing.confirm_setup_intent('user-1', 'seti_2')

    assert result['paymentMethod']['is_default'] is False
    modify.assert_not_called()


def test_confirm_setup_intent_not_succeeded(fake_db, customer):
    with mock.patch.object(stripe.SetupIntent, 'retrieve', return_value=setup_intent(status='requires_payment_method')):
        with pytest.raises(ValidationError, match='requires_payment_method'):
            billing.confirm_setup_intent('user-1', 'seti_3')

    assert fake_db.table('admin_activity_logs')[0]['action_type'] == 'payment_method_failed'


def test_remove_default_card_promotes_newest_remaining(fake_db, customer):
    fake_db.seed('payment_methods', {
        'id': 'pm-row-2', 'customer_id': 'cust-1', 'stripe_payment_method_id': 'pm_2',
        'is_default': False, 'created_at': '2026-02-01T00:00:00+00:00',
    })
    fake_db.seed('payment_methods', {
        'id': 'pm-row-3', 'customer_id': 'cust-1', 'stripe_payment_method_id': 'pm_3',
        'is_default': False, 'created_at': '2026-03-01T00:00:00+00:00',
    })

    with mock.patch.object(stripe.PaymentMethod, 'detach') as detach, \
            mock.patch.object(stripe.Customer, 'modify'):
        result = billing.remove_payment_method('user-1', 'pm-row-1')

    assert result == {'success': True}
    detach.assert_called_once_with('pm_1')
    default = billing.get_default_payment_method('cust-1')
    assert default['id'] == 'pm-row-3'


def test_remove_unknown_card(fake_db, customer):
    assert billing.remove_payment_method('user-1', 'missing') == {
        'success': False, 'error': 'Payment method not found'
    }


def test_set_default_payment_method_switches_default(fake_db, customer):
    fake_db.seed('payment_methods', {
        'id': 'pm-row-2', 'customer_id': 'cust-1', 'stripe_payment_method_id': 'pm_2', 'is_default': False,
    })

    with mock.patch.object(stripe.Customer, 'modify', side_effect=stripe.APIError('down')):
        result = billing.set_default_payment_method('user-1', 'pm-row-2')

    assert result == {'success': True}
    assert billing.get_default_payment_method('cust-1')['id'] == 'pm-row-2'
    assert [m['id'] for m in billing.list_payment_methods('user-1')] == ['pm-row-2', 'pm-row-1']


# ============================================
# Helpers
# ============================================

def test_is_card_expired():
    today = date(2026, 6, 15)
    assert billing.is_card_expired({'card_exp_month': 5, 'card_exp_year': 2026}, today) is True
    assert billing.is_card_expired({'card_exp_month': 6, 'card_exp_year': 2026}, today) is False
    assert billing.is_card_expired({'card_exp_month': 1, 'card_exp_year': 2027}, today) is False


def test_user_friendly_payment_error():
    assert 'no payment method on file' in billing.user_friendly_payment_error('Payment method not found')
    assert billing.user_friendly_payment_error('Your card was declined.').startswith('Card was declined')
    assert billing.user_friendly_payment_error(None) == 'Payment failed. Please try again.'
    assert billing.user_friendly_payment_error('Something odd') == 'Something odd'
