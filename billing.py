"""
Stripe billing for MovePost.

Customers and cards are mirrored in Supabase (customers, payment_methods);
every charge creates an off-session PaymentIntent against the customer's
saved card and is recorded in the transactions table.
"""

import os
import time
import logging
from datetime import datetime, timezone, date
from typing import Dict, Any, Optional, List

import stripe

import supabase_rest as db
import postgrid_client
from activity_log import log_activity
from errors import ValidationError, NotFoundError

logger = logging.getLogger(__name__)

STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY')
if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY

PRICE_PER_POSTCARD_CENTS = 300
PRICE_PER_POSTCARD = PRICE_PER_POSTCARD_CENTS / 100
MIN_CHARGE_CENTS = 50

BILLING_REASON_NEW_MOVER = 'new_mover_addition'

CARD_ERROR_MESSAGES = {
    'card_declined': 'Your card was declined. Please try a different payment method.',
    'insufficient_funds': 'Insufficient funds. Please use a different payment method.',
    'expired_card': 'Your card has expired. Please update your payment method.',
    'incorrect_cvc': 'Incorrect CVC code. Please check your card details.',
    'processing_error': 'An error occurred while processing your card. Please try again.',
}

INTENT_STATUS_MESSAGES = {
    'succeeded': 'Payment succeeded',
    'requires_action': 'Payment requires authentication (3D Secure)',
    'requires_source_action': 'Payment requires authentication (3D Secure)',
    'requires_payment_method': 'Payment failed - requires different payment method',
    'processing': 'Payment is processing',
}


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _plain(obj: Any) -> Dict[str, Any]:
    if not obj:
        return {}
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    return dict(obj)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# LOOKUPS
# ============================================================================

def get_customer(user_id: str) -> Optional[Dict[str, Any]]:
    return db.select_one('customers', {'user_id': f'eq.{user_id}'})


def get_default_payment_method(customer_id: str) -> Optional[Dict[str, Any]]:
    return db.select_one('payment_methods', {
        'customer_id': f'eq.{customer_id}',
        'is_default': 'eq.true'
    })


def is_card_expired(payment_method: Dict[str, Any], today: Optional[date] = None) -> bool:
    today = today or datetime.now(timezone.utc).date()
    exp_year = int(payment_method.get('card_exp_year') or 0)
    exp_month = int(payment_method.get('card_exp_month') or 0)
    return exp_year < today.year or (exp_year == today.year and exp_month < today.month)


def is_admin_role(role: Optional[str]) -> bool:
    return role in ('admin', 'super_admin')


# ============================================================================
# PAYMENT INTENTS
# ============================================================================

def _create_intent(amount: int, customer_id: str, payment_method_id: str, description: str,
                   metadata: Dict[str, Any], idempotency_key: Optional[str] = None):
    params = {
        'amount': amount,
        'currency': 'usd',
        'customer': customer_id,
        'payment_method': payment_method_id,
        'off_session': True,
        'confirm': True,
        'error_on_requires_action': False,
        'description': description,
        'metadata': metadata,
        'expand': ['latest_charge'],
    }
    if idempotency_key:
        params['idempotency_key'] = idempotency_key

    return stripe.PaymentIntent.create(**params)


def _latest_charge(payment_intent) -> Any:
    charge = _field(payment_intent, 'latest_charge')
    return None if isinstance(charge, str) else charge


def intent_response(payment_intent) -> Dict[str, Any]:
    """Build the client-facing summary of a created PaymentIntent."""
    status = _field(payment_intent, 'status')
    next_action = _field(payment_intent, 'next_action')
    redirect = _field(next_action, 'redirect_to_url')
    charge = _latest_charge(payment_intent)
    charge_id = _field(charge, 'id') if charge else _field(payment_intent, 'latest_charge')

    return {
        'success': True,
        'paymentIntentId': _field(payment_intent, 'id'),
        'clientSecret': _field(payment_intent, 'client_secret'),
        'status': status,
        'amount': _field(payment_intent, 'amount'),
        'currency': _field(payment_intent, 'currency'),
        'message': INTENT_STATUS_MESSAGES.get(status, f'Payment status: {status}'),
        'requiresAction': status in ('requires_action', 'requires_source_action'),
        'actionUrl': _field(redirect, 'url'),
        'chargeId': charge_id,
        'receiptUrl': _field(charge, 'receipt_url'),
    }


def stripe_error_response(error: stripe.StripeError) -> Dict[str, Any]:
    """Map a Stripe exception to a failure payload with a readable message."""
    details = getattr(error, 'user_message', None) or str(error) or 'Failed to create payment intent'
    error_code = 'unknown_error'
    message = 'An error occurred while processing your payment.'

    if isinstance(error, stripe.CardError):
        error_code = error.code or 'card_error'
        message = CARD_ERROR_MESSAGES.get(error.code, details)
    elif isinstance(error, stripe.InvalidRequestError):
        error_code = 'invalid_request'
        message = 'Invalid payment request. Please contact support.'
    elif isinstance(error, stripe.AuthenticationError):
        error_code = 'authentication_error'
        message = 'Payment authentication failed. Please contact support.'
    elif isinstance(error, stripe.APIError):
        error_code = 'api_error'
        message = 'Payment processing is temporarily unavailable. Please try again later.'

    return {
        'success': False,
        'error': message,
        'errorCode': error_code,
        'errorDetails': details,
    }


def create_payment_intent(user_id: str, body: Dict[str, Any], is_admin: bool = False) -> Dict[str, Any]:
    """
    Charge a saved card off-session.

    Validation problems raise ValidationError / NotFoundError; Stripe
    failures come back as a {'success': False, ...} payload.
    """
    amount = body.get('amount')
    customer_id = body.get('customerId')
    payment_method_id = body.get('paymentMethodId')
    campaign_id = body.get('campaignId')

    if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount < MIN_CHARGE_CENTS:
        raise ValidationError('Amount must be at least $0.50 (50 cents)')
    amount = int(amount)
    if not customer_id:
        raise ValidationError('Customer ID is required')
    if not payment_method_id:
        raise ValidationError('Payment method ID is required')

    customer_filters = {'stripe_customer_id': f'eq.{customer_id}'}
    if not is_admin:
        customer_filters['user_id'] = f'eq.{user_id}'
    customer = db.select_one('customers', customer_filters)
    if not customer:
        raise NotFoundError('Customer not found or unauthorized')

    payment_method = db.select_one('payment_methods', {
        'customer_id': f"eq.{customer['id']}",
        'stripe_payment_method_id': f'eq.{payment_method_id}'
    })
    if not payment_method:
        raise NotFoundError('Payment method not found')
    if is_card_expired(payment_method):
        raise ValidationError('Payment method has expired. Please update your payment method.')

    if campaign_id:
        campaign_filters = {'id': f'eq.{campaign_id}'}
        if not is_admin:
            campaign_filters['user_id'] = f'eq.{user_id}'
        if not db.select_one('campaigns', campaign_filters):
            raise NotFoundError('Campaign not found or unauthorized')

    # The webhook attributes transactions from these keys, so they override caller metadata
    metadata = dict(body.get('metadata') or {})
    metadata.update({
        'user_id': customer.get('user_id') or user_id,
        'campaign_id': campaign_id or '',
        'is_test_mode': str(bool(body.get('isTestMode', False))).lower(),
    })

    logger.info(f"Creating PaymentIntent: amount={amount}, customer={customer_id}, campaign={campaign_id}")

    try:
        payment_intent = _create_intent(
            amount, customer_id, payment_method_id,
            body.get('description') or 'Postcard Campaign Charge',
            metadata,
            body.get('idempotencyKey')
        )
    except stripe.StripeError as e:
        logger.error(f"Error creating payment intent: {str(e)}")
        return stripe_error_response(e)

    logger.info(f"PaymentIntent created: {payment_intent.id} ({payment_intent.status})")
    return intent_response(payment_intent)


def charge_campaign(campaign_id: str, amount_cents: int, metadata: Optional[Dict[str, Any]] = None,
                    user_id: Optional[str] = None) -> Dict[str, Any]:
    """Charge a user's default card for a campaign."""
    metadata = dict(metadata or {})
    logger.info(f"Charging campaign {campaign_id}: ${amount_cents / 100:.2f}")

    customer = get_customer(user_id)
    if not customer:
        raise ValidationError('No customer record found. Please add a payment method first.')

    payment_method = get_default_payment_method(customer['id'])
    if not payment_method:
        raise ValidationError('No payment method on file. Please add a payment method first.')

    campaign_name = metadata.get('campaign_name')
    body = {
        'amount': amount_cents,
        'description': f'{campaign_name} - Postcard Campaign' if campaign_name else 'Postcard Campaign',
        'metadata': dict(metadata, campaign_id=campaign_id, user_id=user_id),
        'customerId': customer['stripe_customer_id'],
        'paymentMethodId': payment_method['stripe_payment_method_id'],
        'campaignId': campaign_id,
        'isTestMode': postgrid_client.is_test_mode(),
        'idempotencyKey': f'campaign_{campaign_id}_{int(time.time() * 1000)}',
    }
    return create_payment_intent(user_id, body, is_admin=True)


def charge_for_postcard(campaign: Dict[str, Any], new_mover_id: str, melissa_address_key: str,
                        postcard_id: str) -> Optional[str]:
    """
    Charge the campaign owner for one mailed postcard.

    Returns the transactions row id, or None if anything went wrong. A
    failed charge never undoes the postcard.
    """
    try:
        logger.info(f"Charging user {campaign['user_id']} for new mover {melissa_address_key}")

        customer = get_customer(campaign['user_id'])
        if not customer:
            logger.error(f"Customer not found for user {campaign['user_id']}")
            return None

        payment_method = get_default_payment_method(customer['id'])
        if not payment_method:
            logger.error(f"Payment method not found for customer {customer['id']}")
            return None

        test_mode = postgrid_client.is_test_mode()
        payment_intent = _create_intent(
            PRICE_PER_POSTCARD_CENTS,
            customer['stripe_customer_id'],
            payment_method['stripe_payment_method_id'],
            f"New Mover Postcard - {campaign.get('campaign_name')}",
            {
                'user_id': campaign['user_id'],
                'campaign_id': campaign['id'],
                'new_mover_id': new_mover_id,
                'melissa_address_key': melissa_address_key,
                'postgrid_postcard_id': postcard_id,
                'billing_reason': BILLING_REASON_NEW_MOVER,
                'is_test_mode': str(test_mode).lower(),
            },
            idempotency_key=f"campaign_{campaign['id']}_mover_{new_mover_id}"
        )
        logger.info(f"PaymentIntent created: {payment_intent.id} ({payment_intent.status})")

        status = payment_intent.status
        if status not in ('succeeded', 'processing'):
            status = 'failed'

        charge = _latest_charge(payment_intent)
        transaction = db.insert_row('transactions', {
            'user_id': campaign['user_id'],
            'campaign_id': campaign['id'],
            'stripe_payment_intent_id': payment_intent.id,
            'stripe_charge_id': _field(charge, 'id'),
            'amount_cents': PRICE_PER_POSTCARD_CENTS,
            'amount_dollars': PRICE_PER_POSTCARD,
            'currency': 'usd',
            'status': status,
            'billing_reason': BILLING_REASON_NEW_MOVER,
            'is_test_mode': test_mode,
            'metadata': {
                'new_mover_id': new_mover_id,
                'melissa_address_key': melissa_address_key,
                'postgrid_postcard_id': postcard_id,
                'campaign_name': campaign.get('campaign_name'),
            },
        })
        logger.info(f"Transaction recorded: {transaction['id']} (${PRICE_PER_POSTCARD:.2f})")
        return transaction['id']

    except stripe.CardError as e:
        logger.error(f"Card error charging for postcard: {e.code} - {str(e)}")
    except stripe.StripeError as e:
        logger.error(f"Stripe error charging for postcard: {str(e)}")
    except Exception as e:
        logger.error(f"Charge failed: {str(e)}")
    return None


# ============================================================================
# CUSTOMERS AND PAYMENT METHODS
# ============================================================================

def create_customer_record(user: Dict[str, Any]) -> Dict[str, Any]:
    """Ensure the user has a Stripe customer mirrored in the customers table."""
    user_id = user['id']
    email = user.get('email')
    if not email:
        raise ValidationError('No email found for user')

    existing = get_customer(user_id)
    if existing and existing.get('stripe_customer_id'):
        logger.info(f"Customer already exists: {existing['stripe_customer_id']}")
        return {
            'success': True,
            'customerId': existing['id'],
            'stripeCustomerId': existing['stripe_customer_id'],
            'message': 'Customer already exists'
        }

    matches = stripe.Customer.list(email=email, limit=1)
    if matches.data:
        logger.info(f"Found existing Stripe customer for {email}")
        stripe_customer = matches.data[0]
    else:
        profile = db.select_one('profile', {'user_id': f'eq.{user_id}'}) or {}
        stripe_customer = stripe.Customer.create(
            email=email,
            name=profile.get('business_name') or profile.get('company_name') or email,
            metadata={
                'source': 'postcard_app',
                'user_id': user_id,
                'created_via': 'onboarding'
            }
        )
        logger.info(f"Stripe customer created: {stripe_customer.id}")

    saved = db.upsert_row('customers', {
        'user_id': user_id,
        'stripe_customer_id': stripe_customer.id,
        'email': email,
        'updated_at': _now()
    }, on_conflict='user_id')

    return {
        'success': True,
        'customerId': saved['id'],
        'stripeCustomerId': stripe_customer.id,
        'message': 'Customer created successfully'
    }


def confirm_setup_intent(user_id: str, setup_intent_id: str) -> Dict[str, Any]:
    """Store the card from a succeeded SetupIntent. The first card becomes default."""
    try:
        if not setup_intent_id:
            raise ValidationError('SetupIntent ID is required')

        setup_intent = stripe.SetupIntent.retrieve(setup_intent_id, expand=['payment_method'])
        if setup_intent.status != 'succeeded':
            raise ValidationError(f'SetupIntent has not succeeded. Current status: {setup_intent.status}')

        customer = get_customer(user_id)
        if not customer:
            raise NotFoundError('Customer not found for this user. Please complete onboarding first.')

        pm = setup_intent.payment_method
        if isinstance(pm, str):
            pm = stripe.PaymentMethod.retrieve(pm)
        card = _field(pm, 'card')

        existing = db.select_rows('payment_methods', {
            'select': 'id',
            'customer_id': f"eq.{customer['id']}"
        })
        is_first = not existing

        saved = db.insert_row('payment_methods', {
            'customer_id': customer['id'],
            'stripe_payment_method_id': _field(pm, 'id'),
            'type': _field(pm, 'type') or 'card',
            'card_brand': _field(card, 'brand') or 'unknown',
            'card_last4': _field(card, 'last4') or '0000',
            'card_exp_month': _field(card, 'exp_month') or 1,
            'card_exp_year': _field(card, 'exp_year') or datetime.now(timezone.utc).year,
            'is_default': is_first,
            'billing_details': _plain(_field(pm, 'billing_details')),
            'created_at': _now(),
            'updated_at': _now()
        })
        logger.info(f"Payment method saved: {saved['id']} (default={is_first})")

        log_activity('payment_method_added', 'payment_method', saved['id'], {
            'card_brand': saved.get('card_brand'),
            'card_last4': saved.get('card_last4'),
            'is_default': is_first,
            'stripe_payment_method_id': _field(pm, 'id'),
        }, user_id=user_id)

        if is_first:
            try:
                stripe.Customer.modify(
                    customer['stripe_customer_id'],
                    invoice_settings={'default_payment_method': _field(pm, 'id')}
                )
            except stripe.StripeError as e:
                logger.warning(f"Could not set Stripe default payment method: {str(e)}")

        return {
            'success': True,
            'paymentMethod': {
                key: saved.get(key) for key in (
                    'id', 'type', 'card_brand', 'card_last4',
                    'card_exp_month', 'card_exp_year', 'is_default'
                )
            }
        }
    except Exception as e:
        log_activity('payment_method_failed', 'payment_method', None, {
            'error': getattr(e, 'message', None) or str(e) or 'Unknown error',
        }, user_id=user_id)
        raise


def list_payment_methods(user_id: str) -> List[Dict[str, Any]]:
    customer = get_customer(user_id)
    if not customer:
        return []
    return db.select_rows('payment_methods', {
        'customer_id': f"eq.{customer['id']}",
        'order': 'is_default.desc,created_at.desc'
    })


def set_default_payment_method(user_id: str, payment_method_id: str) -> Dict[str, Any]:
    customer = get_customer(user_id)
    if not customer:
        return {'success': False, 'error': 'Customer not found'}

    method = db.select_one('payment_methods', {
        'id': f'eq.{payment_method_id}',
        'customer_id': f"eq.{customer['id']}"
    })
    if not method:
        return {'success': False, 'error': 'Payment method not found'}

    try:
        db.update_rows('payment_methods', {'customer_id': f"eq.{customer['id']}"}, {'is_default': False})
        db.update_rows('payment_methods', {'id': f'eq.{payment_method_id}'}, {
            'is_default': True,
            'updated_at': _now()
        })
    except Exception as e:
        logger.error(f"Error setting default payment method: {str(e)}")
        return {'success': False, 'error': str(e)}

    # Best effort
    try:
        stripe.Customer.modify(
            customer['stripe_customer_id'],
            invoice_settings={'default_payment_method': method['stripe_payment_method_id']}
        )
    except stripe.StripeError as e:
        logger.warning(f"Could not update Stripe default payment method: {str(e)}")

    log_activity('payment_method_default_changed', 'payment_method', payment_method_id, {
        'card_brand': method.get('card_brand'),
        'card_last4': method.get('card_last4'),
    }, user_id=user_id)
    return {'success': True}


def remove_payment_method(user_id: str, payment_method_id: str) -> Dict[str, Any]:
    customer = get_customer(user_id)
    if not customer:
        return {'success': False, 'error': 'Customer not found'}

    filters = {'id': f'eq.{payment_method_id}', 'customer_id': f"eq.{customer['id']}"}
    method = db.select_one('payment_methods', filters)
    if not method:
        return {'success': False, 'error': 'Payment method not found'}

    try:
        db.delete_rows('payment_methods', filters)
    except Exception as e:
        logger.error(f"Error deleting payment method: {str(e)}")
        return {'success': False, 'error': str(e)}

    try:
        stripe.PaymentMethod.detach(method['stripe_payment_method_id'])
    except stripe.StripeError as e:
        logger.warning(f"Could not detach payment method in Stripe: {str(e)}")

    log_activity('payment_method_removed', 'payment_method', payment_method_id, {
        'card_brand': method.get('card_brand'),
        'card_last4': method.get('card_last4'),
    }, user_id=user_id)

    # Promote another card when the default was removed
    if not get_default_payment_method(customer['id']):
        remaining = db.select_rows('payment_methods', {
            'select': 'id',
            'customer_id': f"eq.{customer['id']}",
            'order': 'created_at.desc',
            'limit': '1'
        })
        if remaining:
            set_default_payment_method(user_id, remaining[0]['id'])

    return {'success': True}


def user_friendly_payment_error(message: Optional[str]) -> str:
    """Admin-facing wording for common charge failures."""
    if not message:
        return 'Payment failed. Please try again.'

    text = message.lower()
    if 'no payment method' in text or 'payment method not found' in text:
        return 'User has no payment method on file. Please ask them to add a payment method in Settings > Billing.'
    if 'declined' in text:
        return 'Card was declined. Please ask the user to update their payment method.'
    if 'insufficient' in text:
        return 'Insufficient funds. Please ask the user to use a different payment method.'
    if 'expired' in text:
        return 'Card has expired. Please ask the user to update their payment method.'
    if 'unauthorized' in text:
        return 'User is not authorized for this campaign.'
    return message
