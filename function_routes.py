"""
Endpoints called by the frontend checkout flow, the scheduler and Stripe.
"""

import os
import logging
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify, g

import billing
import email_service
import polling
import stripe_webhook
from auth import require_user
from errors import AppError

logger = logging.getLogger(__name__)

functions_bp = Blueprint('functions', __name__)

CRON_SECRET = os.environ.get('CRON_SECRET')


@functions_bp.route('/functions/create-payment-intent', methods=['POST', 'OPTIONS'])
@require_user
def create_payment_intent():
    body = request.get_json(silent=True) or {}
    try:
        result = billing.create_payment_intent(g.user['id'], body, is_admin=g.is_admin)
    except AppError as e:
        return jsonify({
            'success': False,
            'error': e.message,
            'errorCode': 'validation_error' if e.status_code == 400 else 'not_found',
        }), e.status_code
    except Exception as e:
        logger.error(f"Error creating payment intent: {str(e)}")
        return jsonify({'success': False, 'error': str(e), 'errorCode': 'internal_error'}), 500

    return jsonify(result), 200 if result.get('success') else 400


@functions_bp.route('/functions/confirm-setup-intent', methods=['POST', 'OPTIONS'])
@require_user
def confirm_setup_intent():
    body = request.get_json(silent=True) or {}
    try:
        result = billing.confirm_setup_intent(g.user['id'], body.get('setupIntentId'))
    except AppError as e:
        return jsonify({'success': False, 'error': e.message}), e.status_code
    except Exception as e:
        logger.error(f"Error confirming setup intent: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 400

    return jsonify(result), 200


@functions_bp.route('/functions/create-customer-record', methods=['POST', 'OPTIONS'])
@require_user
def create_customer_record():
    try:
        result = billing.create_customer_record(g.user)
    except AppError as e:
        return jsonify({'success': False, 'error': e.message}), e.status_code
    except Exception as e:
        logger.error(f"Error creating customer record: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500

    return jsonify(result), 200


@functions_bp.route('/functions/send-email', methods=['POST', 'OPTIONS'])
@require_user
def send_email():
    body = request.get_json(silent=True) or {}
    try:
        result = email_service.send_email(
            body.get('to'),
            body.get('subject'),
            body.get('html'),
            from_address=body.get('from'),
            reply_to=body.get('replyTo'),
        )
    except AppError as e:
        return jsonify({'success': False, 'error': e.message}), e.status_code

    return jsonify(result), 200


@functions_bp.route('/functions/poll-melissa-new-movers', methods=['POST', 'GET'])
def poll_melissa_new_movers():
    """Scheduler entry point for the new-mover polling job."""
    if CRON_SECRET and request.headers.get('X-Cron-Secret') != CRON_SECRET:
        logger.warning("Invalid or missing cron secret")
        return jsonify({'error': 'Unauthorized'}), 401

    try:
        result = polling.poll_new_movers()
    except Exception as e:
        message = getattr(e, 'message', None) or str(e)
        logger.error(f"Polling error: {message}")
        return jsonify({
            'success': False,
            'error': message,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }), 500

    return jsonify(result), 200


@functions_bp.route('/webhooks/stripe', methods=['POST'])
def stripe_webhook_endpoint():
    payload = request.get_data()
    try:
        event = stripe_webhook.verify_event(payload, request.headers.get('Stripe-Signature'))
    except AppError as e:
        return jsonify({'error': e.message}), e.status_code

    try:
        result = stripe_webhook.handle_event(event)
    except Exception as e:
        logger.error(f"Webhook handler error: {str(e)}")
        return jsonify({'error': 'Webhook handler failed'}), 500

    return jsonify(result), 200
