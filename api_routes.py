"""
Customer dashboard API: campaigns, notifications, profile, business and
saved cards. Every route requires a signed-in user.
"""

import logging

from flask import Blueprint, request, jsonify, g

import billing
import campaigns
import notifications
import profiles
from auth import require_user
from errors import AppError

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


def _result(result, error_status: int = 400):
    return jsonify(result), 200 if result.get('success') else error_status


# ============================================
# CAMPAIGNS
# ============================================

@api_bp.route('/campaigns', methods=['GET', 'OPTIONS'])
@require_user
def list_campaigns():
    limit = _int_arg('limit', 0) or None
    return jsonify(campaigns.get_campaigns(
        g.user['id'], request.args.get('status'), limit, _int_arg('offset', 0)
    )), 200


@api_bp.route('/campaigns', methods=['POST'])
@require_user
def create_campaign():
    data = request.get_json(silent=True) or {}
    return jsonify(campaigns.create_campaign(g.user['id'], data)), 201


@api_bp.route('/campaigns/drafts', methods=['GET', 'OPTIONS'])
@require_user
def draft_campaigns():
    return jsonify(campaigns.get_draft_campaigns(g.user['id'])), 200


@api_bp.route('/campaigns/stats', methods=['GET', 'OPTIONS'])
@require_user
def campaign_stats():
    return jsonify(campaigns.get_campaign_stats(g.user['id'])), 200


@api_bp.route('/campaigns/analytics', methods=['GET', 'OPTIONS'])
@require_user
def campaign_analytics():
    months = min(max(_int_arg('months', 6), 1), 24)
    return jsonify(campaigns.get_analytics_data(g.user['id'], months)), 200


@api_bp.route('/campaigns/<campaign_id>', methods=['GET', 'OPTIONS'])
@require_user
def get_campaign(campaign_id):
    return jsonify(campaigns.get_campaign(g.user['id'], campaign_id)), 200


@api_bp.route('/campaigns/<campaign_id>', methods=['PATCH', 'PUT'])
@require_user
def update_campaign(campaign_id):
    updates = request.get_json(silent=True) or {}
    return jsonify(campaigns.update_campaign(g.user['id'], campaign_id, updates)), 200


@api_bp.route('/campaigns/<campaign_id>', methods=['DELETE'])
@require_user
def delete_campaign(campaign_id):
    return jsonify(campaigns.delete_campaign(g.user['id'], campaign_id)), 200


@api_bp.route('/campaigns/<campaign_id>/design', methods=['POST', 'OPTIONS'])
@require_user
def save_design(campaign_id):
    data = request.get_json(silent=True) or {}
    if not data.get('designUrl'):
        return jsonify({'error': 'designUrl is required'}), 400
    return jsonify(campaigns.save_campaign_design(
        g.user['id'], campaign_id, data['designUrl'], data.get('previewUrl')
    )), 200


@api_bp.route('/campaigns/<campaign_id>/<action>', methods=['POST', 'OPTIONS'])
@require_user
def campaign_action(campaign_id, action):
    handlers = {
        'launch': campaigns.launch_campaign,
        'pause': campaigns.pause_campaign,
        'complete': campaigns.complete_campaign,
        'duplicate': campaigns.duplicate_campaign,
    }
    handler = handlers.get(action)
    if not handler:
        return jsonify({'error': f'Unknown action: {action}'}), 404
    return jsonify(handler(g.user['id'], campaign_id)), 200


@api_bp.route('/campaigns/<campaign_id>/payment-status', methods=['PATCH', 'OPTIONS'])
@require_user
def update_payment_status(campaign_id):
    data = request.get_json(silent=True) or {}
    if not data.get('paymentStatus'):
        return jsonify({'error': 'paymentStatus is required'}), 400
    return jsonify(campaigns.update_payment_status(
        g.user['id'], campaign_id, data['paymentStatus'], data.get('paymentIntentId')
    )), 200


@api_bp.route('/campaigns/<campaign_id>/new-movers', methods=['POST', 'OPTIONS'])
@require_user
def add_new_movers(campaign_id):
    data = request.get_json(silent=True) or {}
    result = campaigns.add_new_movers_and_schedule_charge(
        g.user['id'], campaign_id,
        data.get('newMovers') or [],
        bool(data.get('chargeImmediately', False))
    )
    return _result(result, 402)


# ============================================
# NOTIFICATIONS
# ============================================

@api_bp.route('/notifications', methods=['GET', 'OPTIONS'])
@require_user
def list_notifications():
    result = notifications.get_notifications(
        g.user['id'],
        limit=_int_arg('limit', 50),
        offset=_int_arg('offset', 0),
        unread_only=request.args.get('unread') == 'true'
    )
    return _result(result, 500)


@api_bp.route('/notifications/unread-count', methods=['GET', 'OPTIONS'])
@require_user
def unread_count():
    return _result(notifications.get_unread_count(g.user['id']), 500)


@api_bp.route('/notifications/read-all', methods=['POST', 'OPTIONS'])
@require_user
def read_all_notifications():
    return _result(notifications.mark_all_as_read(g.user['id']), 500)


@api_bp.route('/notifications/<notification_id>/read', methods=['POST', 'OPTIONS'])
@require_user
def read_notification(notification_id):
    return _result(notifications.mark_as_read(notification_id, g.user['id']), 404)


@api_bp.route('/notifications/<notification_id>', methods=['DELETE'])
@require_user
def delete_notification(notification_id):
    return _result(notifications.delete_notification(notification_id, g.user['id']), 500)


@api_bp.route('/notifications', methods=['DELETE'])
@require_user
def delete_all_notifications():
    return _result(notifications.delete_all_notifications(g.user['id']), 500)


# ============================================
# PROFILE AND BUSINESS
# ============================================

@api_bp.route('/profile', methods=['GET', 'OPTIONS'])
@require_user
def get_profile():
    return _result(profiles.get_user_profile(g.user['id']), 404)


@api_bp.route('/profile', methods=['PATCH', 'PUT'])
@require_user
def update_profile():
    updates = request.get_json(silent=True) or {}
    return _result(profiles.update_user_profile(g.user['id'], updates))


@api_bp.route('/business', methods=['GET', 'OPTIONS'])
@require_user
def get_business():
    company = profiles.get_business(g.user['id'])
    if not company:
        return jsonify({'success': False, 'error': 'Business not found'}), 404
    return jsonify({'success': True, 'company': company}), 200


@api_bp.route('/business', methods=['POST', 'PUT'])
@require_user
def save_business():
    data = request.get_json(silent=True) or {}
    return jsonify(profiles.upsert_business(g.user['id'], data)), 200


# ============================================
# PAYMENT METHODS
# ============================================

@api_bp.route('/payment-methods', methods=['GET', 'OPTIONS'])
@require_user
def list_payment_methods():
    try:
        methods = billing.list_payment_methods(g.user['id'])
    except AppError as e:
        logger.error(f"Error listing payment methods: {e.message}")
        return jsonify({'success': False, 'error': e.message}), e.status_code
    return jsonify({'success': True, 'paymentMethods': methods}), 200


@api_bp.route('/payment-methods/<payment_method_id>/default', methods=['POST', 'OPTIONS'])
@require_user
def set_default_payment_method(payment_method_id):
    return _result(billing.set_default_payment_method(g.user['id'], payment_method_id))


@api_bp.route('/payment-methods/<payment_method_id>', methods=['DELETE'])
@require_user
def remove_payment_method(payment_method_id):
    return _result(billing.remove_payment_method(g.user['id'], payment_method_id))
