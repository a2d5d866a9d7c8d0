"""
Admin dashboard API.

Campaign review (approve / reject / pause / resume / delete), user
moderation, activity logs, transactions and PostGrid management. Every
route requires an admin or super_admin profile.
"""

import logging

from flask import Blueprint, request, jsonify, g, Response

import admin_actions
import admin_queries
import campaigns
import postgrid_client
from auth import require_admin
from errors import AppError

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


def _result(result, error_status: int = 400):
    return jsonify(result), 200 if result.get('success') else error_status


def _body():
    return request.get_json(silent=True) or {}


def _filters(*names):
    return {name: request.args[name] for name in names if request.args.get(name)}


def _test_mode_arg():
    value = request.args.get('is_test_mode')
    if value is None or value == '':
        return None
    return value.lower() in ('true', '1', 'yes')


# ============================================
# CAMPAIGNS
# ============================================

@admin_bp.route('/campaigns', methods=['GET', 'OPTIONS'])
@require_admin
def list_campaigns():
    result = admin_queries.get_all_campaigns(request.args.get('status'), request.args.get('search'))
    return _result(result, 500)


@admin_bp.route('/campaigns/<campaign_id>', methods=['GET', 'OPTIONS'])
@require_admin
def get_campaign(campaign_id):
    return _result(admin_queries.get_campaign_by_id(campaign_id), 404)


@admin_bp.route('/campaigns/<campaign_id>/approve', methods=['POST', 'OPTIONS'])
@require_admin
def approve_campaign(campaign_id):
    return _result(admin_actions.approve_campaign(campaign_id, g.user['id']))


@admin_bp.route('/campaigns/<campaign_id>/reject', methods=['POST', 'OPTIONS'])
@require_admin
def reject_campaign(campaign_id):
    return _result(admin_actions.reject_campaign(campaign_id, g.user['id'], _body().get('reason')))


@admin_bp.route('/campaigns/<campaign_id>/pause', methods=['POST', 'OPTIONS'])
@require_admin
def pause_campaign(campaign_id):
    return _result(admin_actions.pause_campaign(campaign_id, g.user['id'], _body().get('reason')))


@admin_bp.route('/campaigns/<campaign_id>/resume', methods=['POST', 'OPTIONS'])
@require_admin
def resume_campaign(campaign_id):
    return _result(admin_actions.resume_campaign(campaign_id, g.user['id']))


@admin_bp.route('/campaigns/<campaign_id>', methods=['DELETE'])
@require_admin
def delete_campaign(campaign_id):
    return _result(admin_actions.delete_campaign(campaign_id, g.user['id']))


@admin_bp.route('/campaigns/<campaign_id>/provider', methods=['POST', 'OPTIONS'])
@require_admin
def connect_provider(campaign_id):
    return _result(admin_actions.connect_provider(campaign_id, g.user['id'], _body().get('provider')))


@admin_bp.route('/campaigns/<campaign_id>/charge', methods=['POST', 'OPTIONS'])
@require_admin
def charge_campaign(campaign_id):
    """Bill the owner for an approved campaign's postcards."""
    try:
        result = campaigns.charge_campaign_on_approval(campaign_id, g.user['id'])
    except AppError as e:
        return jsonify({'success': False, 'error': e.message}), e.status_code
    return jsonify(result), 200


# ============================================
# USERS
# ============================================

@admin_bp.route('/users', methods=['GET', 'OPTIONS'])
@require_admin
def list_users():
    return _result(admin_queries.get_all_users(request.args.get('search')), 500)


@admin_bp.route('/users/<user_id>', methods=['GET', 'OPTIONS'])
@require_admin
def get_user(user_id):
    return _result(admin_queries.get_user_by_id(user_id), 404)


@admin_bp.route('/users/<user_id>/campaigns', methods=['GET', 'OPTIONS'])
@require_admin
def get_user_campaigns(user_id):
    return _result(admin_queries.get_user_campaigns(user_id), 500)


@admin_bp.route('/users/<user_id>/block', methods=['POST', 'OPTIONS'])
@require_admin
def block_user(user_id):
    if user_id == g.user['id']:
        return jsonify({'success': False, 'error': 'You cannot block your own account'}), 400
    return _result(admin_actions.block_user(user_id, g.user['id'], _body().get('reason')))


@admin_bp.route('/users/<user_id>/unblock', methods=['POST', 'OPTIONS'])
@require_admin
def unblock_user(user_id):
    reason = _body().get('reason') or 'Unblocked by admin'
    return _result(admin_actions.unblock_user(user_id, g.user['id'], reason))


@admin_bp.route('/users/<user_id>', methods=['DELETE'])
@require_admin
def delete_user(user_id):
    if user_id == g.user['id']:
        return jsonify({'success': False, 'error': 'You cannot delete your own account'}), 400
    return _result(admin_actions.delete_user(user_id, g.user['id']))


# ============================================
# DASHBOARD, ACTIVITY, TRANSACTIONS
# ============================================

@admin_bp.route('/stats', methods=['GET', 'OPTIONS'])
@require_admin
def dashboard_stats():
    return _result(admin_queries.get_dashboard_stats(), 500)


@admin_bp.route('/activity', methods=['GET', 'OPTIONS'])
@require_admin
def activity_logs():
    filters = _filters('action_type', 'admin_id', 'user_id', 'date_from', 'date_to', 'search', 'limit')
    return _result(admin_queries.get_activity_logs(filters), 500)


@admin_bp.route('/activity/stats', methods=['GET', 'OPTIONS'])
@require_admin
def activity_stats():
    return _result(admin_queries.get_activity_stats(), 500)


def _transaction_filters():
    filters = _filters('status', 'user_id', 'campaign_id', 'date_from', 'date_to', 'search', 'limit', 'offset')
    test_mode = _test_mode_arg()
    if test_mode is not None:
        filters['is_test_mode'] = test_mode
    return filters


@admin_bp.route('/transactions', methods=['GET', 'OPTIONS'])
@require_admin
def list_transactions():
    return _result(admin_queries.get_transactions(_transaction_filters()), 500)


@admin_bp.route('/transactions/stats', methods=['GET', 'OPTIONS'])
@require_admin
def revenue_stats():
    return _result(admin_queries.get_revenue_stats(_transaction_filters()), 500)


@admin_bp.route('/transactions/export', methods=['GET', 'OPTIONS'])
@require_admin
def export_transactions():
    result = admin_queries.export_transactions_csv(_transaction_filters())
    if not result['success']:
        return jsonify(result), 500
    return Response(
        result['csv'],
        mimetype='text/csv',
        headers={'Content-Disposition': 'attachment; filename=transactions.csv'}
    )


# ============================================
# POSTGRID
# ============================================

@admin_bp.route('/postgrid/status', methods=['GET', 'OPTIONS'])
@require_admin
def postgrid_status():
    return jsonify(postgrid_client.validate_configuration()), 200


@admin_bp.route('/postgrid/postcards', methods=['GET', 'OPTIONS'])
@require_admin
def postgrid_postcards():
    try:
        skip = int(request.args.get('skip', 0))
        limit = int(request.args.get('limit', 10))
    except ValueError:
        return jsonify({'error': 'skip and limit must be integers'}), 400
    return jsonify(postgrid_client.list_postcards(request.args.get('search', ''), skip, limit)), 200


@admin_bp.route('/postgrid/postcards/<postcard_id>', methods=['GET', 'OPTIONS'])
@require_admin
def postgrid_postcard(postcard_id):
    return jsonify(postgrid_client.get_postcard_status(postcard_id)), 200


@admin_bp.route('/postgrid/postcards/<postcard_id>', methods=['DELETE'])
@require_admin
def postgrid_cancel(postcard_id):
    return jsonify(postgrid_client.cancel_postcard(postcard_id)), 200


@admin_bp.route('/postgrid/postcards/<postcard_id>/progress', methods=['POST', 'OPTIONS'])
@require_admin
def postgrid_progress(postcard_id):
    return jsonify(postgrid_client.progress_test_postcard(postcard_id)), 200
