"""
Campaign operations for the customer dashboard.

Functions take the acting user's id explicitly; admins may read and update
any campaign. Failures raise AppError subclasses which the API layer turns
into JSON errors.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

import supabase_rest as db
import billing
import postgrid_client
import email_service
from errors import ValidationError, NotFoundError, ForbiddenError

logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.environ.get('ADMIN_EMAIL')

MONTH_NAMES = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']

# Fields reset when a campaign is duplicated
DUPLICATE_RESET = {
    'status': 'draft',
    'postcards_sent': 0,
    'postcards_delivered': 0,
    'responses': 0,
    'response_rate': 0,
    'payment_status': 'pending',
    'payment_intent_id': None,
    'paid_at': None,
    'launched_at': None,
    'completed_at': None,
}

DUPLICATE_DROP = ('id', 'created_at', 'updated_at', 'deleted_at')

# Columns a campaign owner may change; approval, polling and payment
# columns are written only by admins, the polling job and the Stripe webhook
USER_EDITABLE_FIELDS = (
    'campaign_name',
    'template_id',
    'template_name',
    'postcard_design_url',
    'postcard_preview_url',
    'targeting_type',
    'target_zip_codes',
    'target_location',
    'target_radius',
    'total_recipients',
    'status',
)
USER_STATUSES = ('draft', 'paused')


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_admin(user_id: str) -> bool:
    profile = db.select_one('profile', {'select': 'role', 'user_id': f'eq.{user_id}'})
    return bool(profile) and billing.is_admin_role(profile.get('role'))


def create_campaign(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Create a campaign awaiting admin approval."""
    company = db.select_one('companies', {'select': 'id', 'user_id': f'eq.{user_id}'})

    record = {
        'user_id': user_id,
        'company_id': company['id'] if company else None,
        'campaign_name': data.get('campaign_name') or data.get('name') or 'Untitled Campaign',
        'status': data.get('status') if data.get('status') in USER_STATUSES else 'draft',
        'approval_status': 'pending',
        'template_id': data.get('template_id'),
        'template_name': data.get('template_name'),
        'postcard_design_url': data.get('postcard_design_url'),
        'postcard_preview_url': data.get('postcard_preview_url'),
        'targeting_type': data.get('targeting_type') or 'zip_codes',
        'target_zip_codes': data.get('target_zip_codes') or [],
        'target_location': data.get('target_location'),
        'target_radius': data.get('target_radius'),
        'total_recipients': data.get('total_recipients') or 0,
        'postcards_sent': 0,
        'new_mover_ids': [],
        'price_per_postcard': billing.PRICE_PER_POSTCARD,
        'total_cost': 0,
        'payment_status': 'pending',
        'payment_intent_id': None,
        'postcards_delivered': 0,
        'responses': 0,
        'response_rate': 0,
        'created_at': _now(),
    }

    campaign = db.insert_row('campaigns', record)
    logger.info(f"Campaign created: {campaign['id']} for user {user_id}")

    _notify_admin_new_campaign(user_id, campaign)

    return {'success': True, 'campaign': campaign, 'message': 'Campaign created successfully'}


def _notify_admin_new_campaign(user_id: str, campaign: Dict[str, Any]) -> None:
    if not ADMIN_EMAIL:
        return
    try:
        profile = db.select_one('profile', {'select': 'email,full_name', 'user_id': f'eq.{user_id}'}) or {}
        email_service.send_admin_new_campaign_email(
            ADMIN_EMAIL,
            campaign.get('campaign_name'),
            campaign['id'],
            profile.get('full_name') or 'Unknown',
            profile.get('email') or '',
            campaign.get('created_at')
        )
    except Exception as e:
        logger.warning(f"Failed to notify admin about campaign {campaign['id']}: {str(e)}")


def get_campaigns(user_id: str, status: Optional[str] = None, limit: Optional[int] = None,
                  offset: int = 0) -> Dict[str, Any]:
    params = {
        'user_id': f'eq.{user_id}',
        'deleted_at': 'is.null',
        'order': 'created_at.desc',
    }
    if status:
        params['status'] = f'eq.{status}'
    if limit:
        params['limit'] = str(limit)
    if offset:
        params['offset'] = str(offset)
        params.setdefault('limit', '10')

    rows = db.select_rows('campaigns', params)
    return {'success': True, 'campaigns': rows, 'count': len(rows)}


def get_campaign(user_id: str, campaign_id: str) -> Dict[str, Any]:
    params = {'id': f'eq.{campaign_id}', 'deleted_at': 'is.null'}
    if not _is_admin(user_id):
        params['user_id'] = f'eq.{user_id}'

    campaign = db.select_one('campaigns', params)
    if not campaign:
        raise NotFoundError('Campaign not found')
    return {'success': True, 'campaign': campaign}


def get_draft_campaigns(user_id: str) -> Dict[str, Any]:
    """Drafts newest first; 'campaign' is the most recent one for recovery."""
    rows = db.select_rows('campaigns', {
        'user_id': f'eq.{user_id}',
        'status': 'eq.draft',
        'deleted_at': 'is.null',
        'order': 'created_at.desc',
    })
    return {'success': True, 'campaigns': rows, 'campaign': rows[0] if rows else None}


def _write_campaign(user_id: str, campaign_id: str, changes: Dict[str, Any],
                    is_admin: Optional[bool] = None) -> Dict[str, Any]:
    if is_admin is None:
        is_admin = _is_admin(user_id)

    changes = dict(changes, updated_at=_now())
    filters = {'id': f'eq.{campaign_id}'}
    if not is_admin:
        filters['user_id'] = f'eq.{user_id}'

    rows = db.update_rows('campaigns', filters, changes)
    if not rows:
        raise NotFoundError('Campaign not found')
    return {'success': True, 'campaign': rows[0], 'message': 'Campaign updated successfully'}


def update_campaign(user_id: str, campaign_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Apply caller-supplied changes; non-admins may only touch USER_EDITABLE_FIELDS."""
    is_admin = _is_admin(user_id)

    if is_admin:
        changes = {k: v for k, v in updates.items() if k not in ('id', 'user_id')}
    else:
        changes = {k: v for k, v in updates.items() if k in USER_EDITABLE_FIELDS}
        ignored = sorted(set(updates) - set(changes))
        if ignored:
            logger.warning(f"Ignoring protected campaign fields from user {user_id}: {', '.join(ignored)}")
        if 'status' in changes and changes['status'] not in USER_STATUSES:
            raise ValidationError('Status can only be set to draft or paused')

    if not changes:
        raise ValidationError('No editable fields supplied')

    return _write_campaign(user_id, campaign_id, changes, is_admin)


def save_campaign_design(user_id: str, campaign_id: str, design_url: str,
                         preview_url: Optional[str] = None) -> Dict[str, Any]:
    updates = {'postcard_design_url': design_url}
    if preview_url:
        updates['postcard_preview_url'] = preview_url
    return update_campaign(user_id, campaign_id, updates)


def delete_campaign(user_id: str, campaign_id: str) -> Dict[str, Any]:
    rows = db.update_rows('campaigns', {
        'id': f'eq.{campaign_id}',
        'user_id': f'eq.{user_id}'
    }, {'deleted_at': _now()})
    if not rows:
        raise NotFoundError('Campaign not found')
    return {'success': True, 'message': 'Campaign deleted successfully'}


def launch_campaign(user_id: str, campaign_id: str) -> Dict[str, Any]:
    """Activate an admin-approved campaign. An admin pause is lifted only by an admin resume."""
    campaign = get_campaign(user_id, campaign_id)['campaign']
    if campaign.get('approval_status') != 'approved':
        raise ValidationError('Campaign must be approved by an admin before it can be launched')
    if campaign.get('paused_by') and not _is_admin(user_id):
        raise ValidationError('Campaign was paused by an admin and cannot be relaunched')
    return _write_campaign(user_id, campaign_id, {'status': 'active', 'launched_at': _now()})


def pause_campaign(user_id: str, campaign_id: str) -> Dict[str, Any]:
    return _write_campaign(user_id, campaign_id, {'status': 'paused'})


def complete_campaign(user_id: str, campaign_id: str) -> Dict[str, Any]:
    return _write_campaign(user_id, campaign_id, {'status': 'completed', 'completed_at': _now()})


def duplicate_campaign(user_id: str, campaign_id: str) -> Dict[str, Any]:
    original = get_campaign(user_id, campaign_id)['campaign']

    data = {key: value for key, value in original.items() if key not in DUPLICATE_DROP}
    data.update(DUPLICATE_RESET)
    data['campaign_name'] = f"{original.get('campaign_name')} (Copy)"

    return create_campaign(user_id, data)


def get_campaign_stats(user_id: str) -> Dict[str, Any]:
    rows = db.select_rows('campaigns', {'user_id': f'eq.{user_id}', 'deleted_at': 'is.null'})

    def count_status(status: str) -> int:
        return sum(1 for c in rows if c.get('status') == status)

    stats = {
        'total_campaigns': len(rows),
        'active_campaigns': count_status('active'),
        'completed_campaigns': count_status('completed'),
        'draft_campaigns': count_status('draft'),
        'paused_campaigns': count_status('paused'),
        'total_postcards_sent': sum(c.get('postcards_sent') or 0 for c in rows),
        'total_recipients': sum(c.get('total_recipients') or 0 for c in rows),
        'total_spent': round(sum(float(c.get('total_cost') or 0) for c in rows), 2),
        'avg_response_rate': (
            sum(float(c.get('response_rate') or 0) for c in rows) / len(rows) if rows else 0
        ),
    }
    return {'success': True, 'stats': stats}


def _shift_month(year: int, month: int, delta: int):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def get_analytics_data(user_id: str, months: int = 6, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Postcards sent and campaigns created per month for the last N months."""
    now = now or datetime.now(timezone.utc)
    start_year, start_month = _shift_month(now.year, now.month, -months)
    start = now.replace(year=start_year, month=start_month, day=1, hour=0, minute=0, second=0, microsecond=0)

    rows = db.select_rows('campaigns', {
        'select': 'created_at,postcards_sent,status',
        'user_id': f'eq.{user_id}',
        'deleted_at': 'is.null',
        'created_at': f'gte.{start.isoformat()}',
        'order': 'created_at.asc',
    })

    monthly = {}
    for i in range(months):
        year, month = _shift_month(now.year, now.month, -(months - 1 - i))
        monthly[(year, month)] = {
            'month': MONTH_NAMES[month - 1],
            'year': year,
            'postcards_sent': 0,
            'campaigns': 0,
        }

    for row in rows:
        created = db.parse_timestamp(row['created_at'])
        bucket = monthly.get((created.year, created.month))
        if bucket:
            bucket['postcards_sent'] += row.get('postcards_sent') or 0
            bucket['campaigns'] += 1

    return {'success': True, 'analytics': list(monthly.values())}


def update_payment_status(user_id: str, campaign_id: str, payment_status: str,
                          payment_intent_id: Optional[str] = None) -> Dict[str, Any]:
    """Manual payment-status override. Normally the Stripe webhook sets this."""
    if not _is_admin(user_id):
        raise ForbiddenError('Only admins can change payment status')

    updates = {'payment_status': payment_status}
    if payment_intent_id:
        updates['payment_intent_id'] = payment_intent_id
    if payment_status == 'paid':
        updates['paid_at'] = _now()
    return _write_campaign(user_id, campaign_id, updates, is_admin=True)


def charge_campaign_on_approval(campaign_id: str, approved_by: str) -> Dict[str, Any]:
    """
    Charge the campaign owner for the campaign's postcards at approval time.

    On failure the campaign is marked payment_status=failed and a
    ValidationError carrying an admin-facing message is raised.
    """
    campaign = db.select_one('campaigns', {'id': f'eq.{campaign_id}', 'deleted_at': 'is.null'})
    if not campaign:
        raise NotFoundError('Campaign not found')

    postcard_count = campaign.get('postcards_sent') or campaign.get('total_recipients') or 0
    total_cost = round(postcard_count * billing.PRICE_PER_POSTCARD, 2)
    total_cost_cents = int(round(total_cost * 100))
    filters = {'id': f'eq.{campaign_id}'}

    try:
        if total_cost_cents < billing.MIN_CHARGE_CENTS:
            raise ValidationError('Campaign cost must be at least $0.50')

        result = billing.charge_campaign(campaign_id, total_cost_cents, {
            'campaign_name': campaign.get('campaign_name'),
            'billing_reason': 'campaign_approval',
            'postcard_count': str(postcard_count),
        }, campaign['user_id'])

        if result.get('success') and result.get('status') == 'succeeded':
            db.update_rows('campaigns', filters, {
                'payment_status': 'paid',
                'payment_intent_id': result['paymentIntentId'],
                'paid_at': _now(),
                'approved_by': approved_by,
                'approved_at': _now(),
                'payment_requires_action': False,
                'payment_action_url': None,
                'total_cost': total_cost,
                'updated_at': _now(),
            })
            return {
                'success': True,
                'status': 'succeeded',
                'message': 'Campaign approved and payment successful',
                'transactionId': result['paymentIntentId'],
                'amount': total_cost,
            }

        if result.get('requiresAction'):
            db.update_rows('campaigns', filters, {
                'payment_status': 'processing',
                'payment_intent_id': result['paymentIntentId'],
                'payment_requires_action': True,
                'payment_action_url': result.get('actionUrl'),
                'total_cost': total_cost,
                'updated_at': _now(),
            })
            return {
                'success': True,
                'status': 'requires_action',
                'message': 'Payment requires authentication. User will be notified.',
                'actionUrl': result.get('actionUrl'),
                'transactionId': result['paymentIntentId'],
                'amount': total_cost,
            }

        if result.get('status') == 'processing':
            db.update_rows('campaigns', filters, {
                'payment_status': 'processing',
                'payment_intent_id': result['paymentIntentId'],
                'total_cost': total_cost,
                'updated_at': _now(),
            })
            return {
                'success': True,
                'status': 'processing',
                'message': 'Payment is processing. Will be updated via webhook.',
                'transactionId': result['paymentIntentId'],
                'amount': total_cost,
            }

        raise ValidationError(result.get('error') or 'Payment failed')

    except Exception as e:
        message = getattr(e, 'message', None) or str(e)
        logger.error(f"Error charging campaign {campaign_id} on approval: {message}")
        try:
            db.update_rows('campaigns', filters, {'payment_status': 'failed'})
        except Exception as update_error:
            logger.error(f"Could not mark campaign {campaign_id} payment as failed: {str(update_error)}")
        raise ValidationError(billing.user_friendly_payment_error(message))


def add_new_movers_and_schedule_charge(user_id: str, campaign_id: str, new_movers: List[Dict[str, Any]],
                                       charge_immediately: bool = False) -> Dict[str, Any]:
    """Attach movers to an approved, paid campaign and bill for them now or in the daily batch."""
    campaign = get_campaign(user_id, campaign_id)['campaign']

    if campaign.get('approval_status') != 'approved' or campaign.get('payment_status') != 'paid':
        raise ValidationError('Campaign must be approved and paid before adding new movers')

    count = len(new_movers)
    if count == 0:
        raise ValidationError('No new movers supplied')

    additional_cost = round(count * billing.PRICE_PER_POSTCARD, 2)
    additional_cost_cents = count * billing.PRICE_PER_POSTCARD_CENTS

    db.update_rows('campaigns', {'id': f'eq.{campaign_id}'}, {
        'total_recipients': (campaign.get('total_recipients') or 0) + count,
        'postcards_sent': (campaign.get('postcards_sent') or 0) + count,
        'new_mover_ids': (campaign.get('new_mover_ids') or []) + [m.get('id') for m in new_movers],
        'updated_at': _now(),
    })

    if charge_immediately:
        result = billing.charge_campaign(campaign_id, additional_cost_cents, {
            'campaign_name': campaign.get('campaign_name'),
            'billing_reason': billing.BILLING_REASON_NEW_MOVER,
            'new_mover_count': str(count),
        }, campaign['user_id'])
        return {
            'success': result.get('success', False),
            'charged': bool(result.get('success')),
            'newMoverCount': count,
            'amount': additional_cost,
            'transactionId': result.get('paymentIntentId'),
            'status': result.get('status'),
            'error': result.get('error'),
        }

    db.insert_row('pending_charges', {
        'campaign_id': campaign_id,
        'user_id': campaign['user_id'],
        'new_mover_count': count,
        'amount_cents': additional_cost_cents,
        'amount_dollars': additional_cost,
        'billing_reason': billing.BILLING_REASON_NEW_MOVER,
        'scheduled_for': datetime.now(timezone.utc).date().isoformat(),
        'is_test_mode': postgrid_client.is_test_mode(),
        'metadata': {
            'campaign_name': campaign.get('campaign_name'),
            'added_at': _now(),
        },
    })

    return {
        'success': True,
        'charged': False,
        'scheduled': True,
        'newMoverCount': count,
        'amount': additional_cost,
        'message': 'New movers added. Charge will be processed in the next daily batch.',
    }
