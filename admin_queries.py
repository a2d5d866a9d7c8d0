"""
Read-only queries behind the admin dashboard.
"""

import io
import csv
import logging
from typing import Dict, Any, Optional, List

import supabase_rest as db
from address_formatter import format_address, format_address_short

logger = logging.getLogger(__name__)

CAMPAIGN_SELECT = '*,companies(name,logo_url,website,business_category,location)'

TRANSACTION_CSV_FIELDS = [
    'created_at', 'id', 'user_id', 'campaign_id', 'status', 'billing_reason',
    'amount_dollars', 'currency', 'refund_amount_cents', 'payment_method_brand',
    'payment_method_last4', 'stripe_payment_intent_id', 'is_test_mode',
]


def _profiles_by_user(user_ids: List[str], select: str = 'user_id,email,full_name') -> Dict[str, Dict[str, Any]]:
    ids = sorted({uid for uid in user_ids if uid})
    if not ids:
        return {}
    rows = db.select_rows('profile', {'select': select, 'user_id': db.in_filter(ids)})
    return {row['user_id']: row for row in rows}


def target_audience(campaign: Dict[str, Any]) -> str:
    """Short label describing who a campaign targets."""
    if campaign.get('targeting_type') in ('zip_codes', 'zip'):
        zips = campaign.get('target_zip_codes') or []
        if len(zips) == 1:
            return f'ZIP: {zips[0]}'
        if zips:
            return f'{len(zips)} ZIP codes'
    if campaign.get('target_location'):
        return format_address_short(campaign['target_location']) or 'Not set'
    return 'Not set'


def _decorate_campaign(campaign: Dict[str, Any], profile: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    company = campaign.get('companies') or {}
    decorated = dict(campaign)
    decorated.update({
        'company_name': company.get('name') or 'Unknown Company',
        'company_address': format_address(company.get('location')),
        'user_email': (profile or {}).get('email') or '',
        'user_name': (profile or {}).get('full_name') or 'Unknown User',
        'approval_status': campaign.get('approval_status') or 'pending',
        'budget': campaign.get('total_cost') or 0,
        'target_audience': target_audience(campaign),
    })
    return decorated


def get_all_campaigns(status: Optional[str] = None, search: Optional[str] = None) -> Dict[str, Any]:
    params = {
        'select': CAMPAIGN_SELECT,
        'deleted_at': 'is.null',
        'order': 'created_at.desc',
    }
    if status and status != 'all':
        if status in ('pending', 'pending_approval'):
            params['or'] = '(approval_status.eq.pending,approval_status.is.null)'
        else:
            params['status'] = f'eq.{status}'

    try:
        rows = db.select_rows('campaigns', params)
        profiles = _profiles_by_user([row.get('user_id') for row in rows])
    except Exception as e:
        logger.error(f"Error fetching admin campaigns: {str(e)}")
        return {'success': False, 'error': str(e)}

    campaigns = [_decorate_campaign(row, profiles.get(row.get('user_id'))) for row in rows]

    if search:
        needle = search.lower()
        campaigns = [
            c for c in campaigns
            if needle in (c.get('campaign_name') or '').lower() or needle in c['company_name'].lower()
        ]

    return {'success': True, 'campaigns': campaigns, 'total': len(campaigns)}


def get_campaign_by_id(campaign_id: str) -> Dict[str, Any]:
    try:
        campaign = db.select_one('campaigns', {
            'select': CAMPAIGN_SELECT,
            'id': f'eq.{campaign_id}',
            'deleted_at': 'is.null',
        })
        if not campaign:
            return {'success': False, 'error': 'Campaign not found'}
        profile = db.select_one('profile', {'select': 'email,full_name', 'user_id': f"eq.{campaign.get('user_id')}"})
    except Exception as e:
        logger.error(f"Error fetching campaign {campaign_id}: {str(e)}")
        return {'success': False, 'error': str(e)}

    return {'success': True, 'campaign': _decorate_campaign(campaign, profile)}


def _campaign_stats_by_user(rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    stats = {}
    for row in rows:
        entry = stats.setdefault(row.get('user_id'), {
            'campaigns_count': 0,
            'active_campaigns': 0,
            'total_spent': 0.0,
        })
        entry['campaigns_count'] += 1
        if row.get('status') == 'active':
            entry['active_campaigns'] += 1
        entry['total_spent'] = round(entry['total_spent'] + float(row.get('total_cost') or 0), 2)
    return stats


def _user_summary(profile: Dict[str, Any], stats: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    email = profile.get('email') or ''
    stats = stats or {'campaigns_count': 0, 'active_campaigns': 0, 'total_spent': 0}
    summary = {
        'id': profile['user_id'],
        'email': email,
        'full_name': profile.get('full_name') or (email.split('@')[0] if email else 'Unknown'),
        'role': profile.get('role'),
        'created_at': profile.get('created_at'),
        'is_blocked': bool(profile.get('is_blocked')),
        'blocked_at': profile.get('blocked_at'),
        'block_reason': profile.get('block_reason'),
        'status': 'blocked' if profile.get('is_blocked') else 'active',
    }
    summary.update(stats)
    return summary


def get_all_users(search: Optional[str] = None) -> Dict[str, Any]:
    try:
        campaigns = db.select_rows('campaigns', {
            'select': 'user_id,status,total_cost',
            'deleted_at': 'is.null',
        })
        profiles = db.select_rows('profile', {'deleted_at': 'is.null', 'order': 'created_at.desc'})
    except Exception as e:
        logger.error(f"Error fetching admin users: {str(e)}")
        return {'success': False, 'error': str(e)}

    stats = _campaign_stats_by_user(campaigns)
    users = [_user_summary(p, stats.get(p['user_id'])) for p in profiles]

    if search:
        needle = search.lower()
        users = [u for u in users if needle in u['full_name'].lower() or needle in u['email'].lower()]

    return {'success': True, 'users': users, 'total': len(users)}


def get_user_by_id(user_id: str) -> Dict[str, Any]:
    try:
        profile = db.select_one('profile', {'user_id': f'eq.{user_id}'})
        if not profile:
            return {'success': False, 'error': 'User not found'}
        campaigns = db.select_rows('campaigns', {
            'select': 'user_id,status,total_cost',
            'user_id': f'eq.{user_id}',
            'deleted_at': 'is.null',
        })
    except Exception as e:
        logger.error(f"Error fetching user {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}

    stats = _campaign_stats_by_user(campaigns).get(user_id)
    return {'success': True, 'user': _user_summary(profile, stats)}


def get_user_campaigns(user_id: str) -> Dict[str, Any]:
    try:
        rows = db.select_rows('campaigns', {
            'select': '*,companies(name,logo_url)',
            'user_id': f'eq.{user_id}',
            'deleted_at': 'is.null',
            'order': 'created_at.desc',
        })
    except Exception as e:
        logger.error(f"Error fetching campaigns for user {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}

    campaigns = []
    for row in rows:
        campaign = dict(row)
        campaign['company_name'] = (row.get('companies') or {}).get('name') or 'Unknown Company'
        campaign['zip_codes'] = row.get('target_zip_codes') or []
        campaign['budget'] = row.get('total_cost') or 0
        campaigns.append(campaign)
    return {'success': True, 'campaigns': campaigns}


def get_dashboard_stats() -> Dict[str, Any]:
    try:
        campaigns = db.select_rows('campaigns', {
            'select': 'status,approval_status,postcards_sent,polling_enabled',
            'deleted_at': 'is.null',
        })
        total_users = db.count_rows('profile', {'deleted_at': 'is.null'})
        blocked_users = db.count_rows('profile', {'deleted_at': 'is.null', 'is_blocked': 'eq.true'})
    except Exception as e:
        logger.error(f"Error fetching dashboard stats: {str(e)}")
        return {'success': False, 'error': str(e)}

    stats = {
        'total_campaigns': len(campaigns),
        'pending_campaigns': sum(1 for c in campaigns if (c.get('approval_status') or 'pending') == 'pending'),
        'active_campaigns': sum(1 for c in campaigns if c.get('status') == 'active'),
        'polling_campaigns': sum(1 for c in campaigns if c.get('status') == 'active' and c.get('polling_enabled')),
        'total_postcards_sent': sum(c.get('postcards_sent') or 0 for c in campaigns),
        'total_users': total_users,
        'active_users': total_users - blocked_users,
        'blocked_users': blocked_users,
    }
    return {'success': True, 'stats': stats}


def get_activity_logs(filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Activity logs newest first, with admin name and email attached."""
    filters = filters or {}
    params = {'order': 'created_at.desc'}

    action_type = filters.get('action_type')
    if action_type and action_type != 'all':
        params['action_type'] = f'eq.{action_type}'
    if filters.get('admin_id'):
        params['admin_id'] = f"eq.{filters['admin_id']}"
    if filters.get('user_id'):
        params['user_id'] = f"eq.{filters['user_id']}"
    if filters.get('date_from') and filters.get('date_to'):
        params['and'] = f"(created_at.gte.{filters['date_from']},created_at.lte.{filters['date_to']})"
    elif filters.get('date_from'):
        params['created_at'] = f"gte.{filters['date_from']}"
    elif filters.get('date_to'):
        params['created_at'] = f"lte.{filters['date_to']}"
    if filters.get('search'):
        needle = filters['search'].lower()
        params['or'] = f'(action_type.ilike.*{needle}*,target_type.ilike.*{needle}*)'
    if filters.get('limit'):
        params['limit'] = str(filters['limit'])

    try:
        logs = db.select_rows('admin_activity_logs', params)
        admins = _profiles_by_user([log.get('admin_id') for log in logs])
    except Exception as e:
        logger.error(f"Error fetching activity logs: {str(e)}")
        return {'success': False, 'error': str(e)}

    enriched = []
    for log in logs:
        admin = admins.get(log.get('admin_id')) or {}
        entry = dict(log)
        if log.get('admin_id'):
            entry['admin_name'] = admin.get('full_name') or admin.get('email') or 'Unknown Admin'
            entry['admin_email'] = admin.get('email') or ''
        else:
            entry['admin_name'] = 'System'
            entry['admin_email'] = ''
        enriched.append(entry)

    return {'success': True, 'logs': enriched, 'total': len(enriched)}


def get_activity_stats() -> Dict[str, Any]:
    try:
        rows = db.select_rows('admin_activity_logs', {'select': 'action_type,created_at'})
    except Exception as e:
        logger.error(f"Error fetching activity stats: {str(e)}")
        return {'success': False, 'error': str(e)}

    by_type = {}
    for row in rows:
        by_type[row['action_type']] = by_type.get(row['action_type'], 0) + 1
    return {'success': True, 'stats': {'total_actions': len(rows), 'by_type': by_type}}


def _transaction_params(filters: Dict[str, Any]) -> Dict[str, Any]:
    params = {}
    if filters.get('status'):
        params['status'] = f"eq.{filters['status']}"
    if filters.get('user_id'):
        params['user_id'] = f"eq.{filters['user_id']}"
    if filters.get('campaign_id'):
        params['campaign_id'] = f"eq.{filters['campaign_id']}"
    if filters.get('is_test_mode') is not None:
        params['is_test_mode'] = f"eq.{str(bool(filters['is_test_mode'])).lower()}"
    if filters.get('date_from') and filters.get('date_to'):
        params['and'] = f"(created_at.gte.{filters['date_from']},created_at.lte.{filters['date_to']})"
    elif filters.get('date_from'):
        params['created_at'] = f"gte.{filters['date_from']}"
    elif filters.get('date_to'):
        params['created_at'] = f"lte.{filters['date_to']}"
    return params


def _totals(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    succeeded = [r for r in rows if r.get('status') in ('succeeded', 'partially_refunded')]
    refunded_cents = sum(r.get('refund_amount_cents') or 0 for r in rows)
    gross_cents = sum(r.get('amount_cents') or 0 for r in succeeded)
    return {
        'total_revenue': round(gross_cents / 100, 2),
        'total_refunded': round(refunded_cents / 100, 2),
        'net_revenue': round((gross_cents - refunded_cents) / 100, 2),
        'succeeded_count': len(succeeded),
        'failed_count': sum(1 for r in rows if r.get('status') == 'failed'),
        'processing_count': sum(1 for r in rows if r.get('status') == 'processing'),
        'refunded_count': sum(1 for r in rows if r.get('status') in ('refunded', 'partially_refunded')),
    }


def get_transactions(filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """One page of transactions plus the total count for the filters."""
    filters = filters or {}
    params = _transaction_params(filters)
    limit = int(filters.get('limit') or 50)
    offset = int(filters.get('offset') or 0)

    try:
        page_params = dict(params, order='created_at.desc', limit=str(limit), offset=str(offset))
        rows = db.select_rows('transactions', page_params)
        total = db.count_rows('transactions', params)
        profiles = _profiles_by_user([row.get('user_id') for row in rows])
    except Exception as e:
        logger.error(f"Error fetching transactions: {str(e)}")
        return {'success': False, 'error': str(e)}

    transactions = []
    for row in rows:
        profile = profiles.get(row.get('user_id')) or {}
        tx = dict(row)
        tx['user_email'] = profile.get('email') or ''
        tx['user_name'] = profile.get('full_name') or ''
        transactions.append(tx)

    if filters.get('search'):
        needle = filters['search'].lower()
        transactions = [
            t for t in transactions
            if needle in t['user_email'].lower() or needle in (t.get('stripe_payment_intent_id') or '').lower()
        ]

    return {
        'success': True,
        'transactions': transactions,
        'total': total,
        'totals': _totals(transactions),
    }


def get_revenue_stats(filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        rows = db.select_rows('transactions', dict(
            _transaction_params(filters or {}),
            select='status,amount_cents,refund_amount_cents'
        ))
    except Exception as e:
        logger.error(f"Error fetching revenue stats: {str(e)}")
        return {'success': False, 'error': str(e)}

    stats = _totals(rows)
    stats['transaction_count'] = len(rows)
    return {'success': True, 'stats': stats}


def export_transactions_csv(filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        rows = db.select_rows('transactions', dict(_transaction_params(filters or {}), order='created_at.desc'))
    except Exception as e:
        logger.error(f"Error exporting transactions: {str(e)}")
        return {'success': False, 'error': str(e)}

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=TRANSACTION_CSV_FIELDS, extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow(row)

    return {'success': True, 'csv': buffer.getvalue(), 'count': len(rows)}
