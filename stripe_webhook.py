"""
Stripe webhook handling.

The route verifies the signature with verify_event() and passes the plain
event dict to handle_event(). Transaction rows are keyed on the
PaymentIntent id so a charge already recorded by the polling job is
updated rather than duplicated.
"""

import os
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import stripe

import supabase_rest as db
import notifications
import email_service
from activity_log import log_activity
from errors import AppError, ValidationError

logger = logging.getLogger(__name__)

STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET')
ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL')


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def verify_event(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """Check the Stripe-Signature header and return the event as a dict."""
    if not STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise AppError('Webhook secret not configured', 500)
    if not sig_header:
        raise ValidationError('Missing signature')

    try:
        stripe.Webhook.construct_event(payload, sig_header, STRIPE_WEBHOOK_SECRET)
    except ValueError:
        logger.error("Invalid webhook payload")
        raise ValidationError('Invalid payload')
    except stripe.SignatureVerificationError as e:
        logger.error(f"Webhook signature verification failed: {str(e)}")
        raise ValidationError(f'Webhook Error: {str(e)}')

    return json.loads(payload)


def _charge_details(payment_intent: Dict[str, Any]) -> Dict[str, Any]:
    """Latest charge for an intent, retrieving it when only the id is present."""
    charge = payment_intent.get('latest_charge')
    if isinstance(charge, dict):
        return charge
    if not charge:
        legacy = (payment_intent.get('charges') or {}).get('data') or []
        return legacy[0] if legacy else {}

    try:
        return stripe.Charge.retrieve(charge).to_dict()
    except stripe.StripeError as e:
        logger.warning(f"Could not retrieve charge {charge}: {str(e)}")
        return {'id': charge}


def _save_transaction(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    existing = db.select_one('transactions', {
        'stripe_payment_intent_id': f"eq.{data['stripe_payment_intent_id']}"
    })
    if existing:
        updates = {key: value for key, value in data.items() if value is not None}
        updates['updated_at'] = _now()
        rows = db.update_rows('transactions', {'id': f"eq.{existing['id']}"}, updates)
        return rows[0] if rows else existing
    return db.insert_row('transactions', data)


def _intent_context(payment_intent: Dict[str, Any]) -> Dict[str, Any]:
    metadata = payment_intent.get('metadata') or {}
    try:
        new_mover_count = int(metadata.get('new_mover_count') or 0)
    except ValueError:
        new_mover_count = 0

    return {
        'metadata': metadata,
        'campaign_id': metadata.get('campaign_id') or None,
        'user_id': metadata.get('user_id') or None,
        'billing_reason': metadata.get('billing_reason') or 'campaign_approval',
        'new_mover_count': new_mover_count if new_mover_count > 0 else None,
        'is_test_mode': metadata.get('is_test_mode') == 'true',
        'amount_dollars': (payment_intent.get('amount') or 0) / 100,
    }


def _user_profile(user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    return db.select_one('profile', {'select': 'email,full_name', 'user_id': f'eq.{user_id}'})


def handle_payment_succeeded(payment_intent: Dict[str, Any]) -> None:
    ctx = _intent_context(payment_intent)
    charge = _charge_details(payment_intent)
    card = (charge.get('payment_method_details') or {}).get('card') or {}

    transaction = _save_transaction({
        'user_id': ctx['user_id'],
        'campaign_id': ctx['campaign_id'],
        'stripe_payment_intent_id': payment_intent['id'],
        'stripe_charge_id': charge.get('id'),
        'stripe_customer_id': payment_intent.get('customer'),
        'amount_cents': payment_intent.get('amount'),
        'amount_dollars': ctx['amount_dollars'],
        'currency': payment_intent.get('currency'),
        'status': 'succeeded',
        'billing_reason': ctx['billing_reason'],
        'new_mover_count': ctx['new_mover_count'],
        'payment_method_last4': card.get('last4'),
        'payment_method_brand': card.get('brand'),
        'receipt_url': charge.get('receipt_url'),
        'is_test_mode': ctx['is_test_mode'],
        'metadata': ctx['metadata'],
    })
    logger.info(f"Transaction recorded for {payment_intent['id']}: {transaction.get('id')}")

    log_activity('transaction_succeeded', 'transaction', transaction.get('id'), {
        'amount_dollars': ctx['amount_dollars'],
        'billing_reason': ctx['billing_reason'],
        'new_mover_count': ctx['new_mover_count'],
        'campaign_id': ctx['campaign_id'],
        'stripe_payment_intent_id': payment_intent['id'],
        'payment_method_last4': card.get('last4'),
        'payment_method_brand': card.get('brand'),
        'is_test_mode': ctx['is_test_mode'],
    }, user_id=ctx['user_id'])

    if not ctx['campaign_id']:
        return

    try:
        db.update_rows('campaigns', {'id': f"eq.{ctx['campaign_id']}"}, {
            'payment_status': 'paid',
            'payment_intent_id': payment_intent['id'],
            'paid_at': _now(),
            'payment_requires_action': False,
            'payment_action_url': None,
            'updated_at': _now(),
        })
    except Exception as e:
        logger.error(f"Error updating campaign {ctx['campaign_id']}: {str(e)}")

    if ctx['billing_reason'] == 'new_mover_addition':
        try:
            db.update_rows('pending_charges', {
                'campaign_id': f"eq.{ctx['campaign_id']}",
                'processed': 'eq.false'
            }, {
                'processed': True,
                'processed_at': _now(),
                'transaction_id': transaction.get('id'),
            })
        except Exception as e:
            logger.error(f"Error updating pending charges: {str(e)}")


def handle_payment_failed(payment_intent: Dict[str, Any]) -> None:
    ctx = _intent_context(payment_intent)
    charge = _charge_details(payment_intent)
    last_error = payment_intent.get('last_payment_error') or {}
    failure_code = charge.get('failure_code') or last_error.get('code')
    failure_message = charge.get('failure_message') or last_error.get('message')

    try:
        _save_transaction({
            'user_id': ctx['user_id'],
            'campaign_id': ctx['campaign_id'],
            'stripe_payment_intent_id': payment_intent['id'],
            'stripe_charge_id': charge.get('id'),
            'stripe_customer_id': payment_intent.get('customer'),
            'amount_cents': payment_intent.get('amount'),
            'amount_dollars': ctx['amount_dollars'],
            'currency': payment_intent.get('currency'),
            'status': 'failed',
            'billing_reason': ctx['billing_reason'],
            'new_mover_count': ctx['new_mover_count'],
            'failure_code': failure_code,
            'failure_message': failure_message,
            'is_test_mode': ctx['is_test_mode'],
            'metadata': ctx['metadata'],
        })
    except Exception as e:
        logger.error(f"Error recording failed transaction {payment_intent['id']}: {str(e)}")

    log_activity('transaction_failed', 'transaction', None, {
        'amount_dollars': ctx['amount_dollars'],
        'billing_reason': ctx['billing_reason'],
        'new_mover_count': ctx['new_mover_count'],
        'campaign_id': ctx['campaign_id'],
        'stripe_payment_intent_id': payment_intent['id'],
        'failure_code': failure_code,
        'failure_message': failure_message,
        'is_test_mode': ctx['is_test_mode'],
    }, user_id=ctx['user_id'])

    if not ctx['campaign_id']:
        return

    try:
        db.update_rows('campaigns', {'id': f"eq.{ctx['campaign_id']}"}, {
            'payment_status': 'failed',
            'payment_intent_id': payment_intent['id'],
            'updated_at': _now(),
        })
    except Exception as e:
        logger.error(f"Error updating campaign {ctx['campaign_id']} to failed: {str(e)}")

    reason = failure_message or 'Your card could not be charged'
    notifications.create_notification(
        ctx['user_id'],
        notifications.PAYMENT_FAILED,
        'Payment Failed',
        f"We couldn't process your payment of ${ctx['amount_dollars']:.2f}. {reason}",
        '/settings/billing'
    )

    profile = _user_profile(ctx['user_id'])
    if profile and profile.get('email'):
        email_service.send_payment_failed_email(profile['email'], ctx['amount_dollars'], reason)
        if ADMIN_EMAIL:
            email_service.send_admin_payment_issue_email(
                ADMIN_EMAIL, ctx['user_id'], profile.get('full_name') or profile['email'],
                profile['email'], ctx['amount_dollars'], reason
            )


def handle_requires_action(payment_intent: Dict[str, Any]) -> None:
    ctx = _intent_context(payment_intent)
    next_action = payment_intent.get('next_action') or {}
    action_url = (next_action.get('redirect_to_url') or {}).get('url')

    try:
        _save_transaction({
            'user_id': ctx['user_id'],
            'campaign_id': ctx['campaign_id'],
            'stripe_payment_intent_id': payment_intent['id'],
            'stripe_customer_id': payment_intent.get('customer'),
            'amount_cents': payment_intent.get('amount'),
            'amount_dollars': ctx['amount_dollars'],
            'currency': payment_intent.get('currency'),
            'status': 'processing',
            'billing_reason': ctx['billing_reason'],
            'is_test_mode': ctx['is_test_mode'],
            'metadata': ctx['metadata'],
        })
    except Exception as e:
        logger.error(f"Error recording processing transaction {payment_intent['id']}: {str(e)}")

    if not ctx['campaign_id']:
        return

    try:
        db.update_rows('campaigns', {'id': f"eq.{ctx['campaign_id']}"}, {
            'payment_status': 'processing',
            'payment_intent_id': payment_intent['id'],
            'payment_requires_action': True,
            'payment_action_url': action_url,
            'updated_at': _now(),
        })
    except Exception as e:
        logger.error(f"Error updating campaign {ctx['campaign_id']} with required action: {str(e)}")

    if not action_url:
        return

    notifications.create_notification(
        ctx['user_id'],
        notifications.PAYMENT_REQUIRES_ACTION,
        'Payment Authentication Required',
        f"Your bank needs you to confirm a payment of ${ctx['amount_dollars']:.2f}.",
        action_url
    )

    profile = _user_profile(ctx['user_id'])
    if profile and profile.get('email'):
        email_service.send_payment_requires_action_email(profile['email'], ctx['amount_dollars'], action_url)


def handle_refund(charge: Dict[str, Any]) -> None:
    payment_intent_id = charge.get('payment_intent')
    transaction = db.select_one('transactions', {'stripe_payment_intent_id': f'eq.{payment_intent_id}'})
    if not transaction:
        logger.error(f"Transaction not found for refund of {payment_intent_id}")
        return

    refund_status = 'refunded' if charge.get('refunded') else 'partially_refunded'
    refund_amount = charge.get('amount_refunded') or 0

    db.update_rows('transactions', {'id': f"eq.{transaction['id']}"}, {
        'status': refund_status,
        'refunded_at': _now(),
        'refund_amount_cents': refund_amount,
        'updated_at': _now(),
    })

    log_activity('transaction_refunded', 'transaction', transaction['id'], {
        'original_amount_dollars': transaction.get('amount_dollars'),
        'refund_amount_dollars': refund_amount / 100,
        'refund_status': refund_status,
        'campaign_id': transaction.get('campaign_id'),
        'stripe_payment_intent_id': payment_intent_id,
        'stripe_charge_id': charge.get('id'),
    }, user_id=transaction.get('user_id'))

    if transaction.get('campaign_id') and charge.get('refunded'):
        try:
            db.update_rows('campaigns', {'id': f"eq.{transaction['campaign_id']}"}, {
                'payment_status': 'refunded',
                'updated_at': _now(),
            })
        except Exception as e:
            logger.error(f"Error updating campaign refund status: {str(e)}")


def handle_payment_method_attached(payment_method: Dict[str, Any]) -> None:
    logger.info(f"Payment method attached: {payment_method.get('id')} to {payment_method.get('customer')}")


def handle_payment_method_detached(payment_method: Dict[str, Any]) -> None:
    logger.info(f"Payment method detached: {payment_method.get('id')}")


EVENT_HANDLERS = {
    'payment_intent.succeeded': handle_payment_succeeded,
    'payment_intent.payment_failed': handle_payment_failed,
    'payment_intent.requires_action': handle_requires_action,
    'charge.refunded': handle_refund,
    'payment_method.attached': handle_payment_method_attached,
    'payment_method.detached': handle_payment_method_detached,
}


def handle_event(event: Dict[str, Any]) -> Dict[str, Any]:
    event_type = event.get('type')
    logger.info(f"Webhook event type: {event_type}")

    handler = EVENT_HANDLERS.get(event_type)
    if handler:
        handler(event['data']['object'])
    else:
        logger.info(f"Unhandled event type: {event_type}")

    return {'received': True}
