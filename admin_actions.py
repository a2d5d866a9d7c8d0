"""
Admin write operations on campaigns and users.

Every action records an admin_activity_logs row. Campaign and account
changes also notify the owner in-app and by email; those notifications are
best effort and never change the result of the action.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import supabase_rest as db
import notifications
import email_service
from activity_log import log_activity

logger = logging.getLogger(__name__)

PROVIDERS = ('lob', 'postgrid', 'clicksend')


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


def _owner_email(user_id: Optional[str]) -> Optional[str]:
    if not user_id:
        return None
    try:
        profile = db.select_one('profile', {'select': 'email', 'user_id': f'eq.{user_id}'})
    except Exception as e:
        logger.warning(f"Could not look up email for user {user_id}: {str(e)}")
        return None
    return profile.get('email') if profile else None


def _update_campaign(campaign_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    rows = db.update_rows('campaigns', {'id': f'eq.{campaign_id}'}, updates)
    if not rows:
        raise LookupError('Campaign not found')
    return rows[0]


def _campaign_action(campaign_id: str, admin_id: str, updates: Dict[str, Any], action_type: str,
                     extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    try:
        campaign = _update_campaign(campaign_id, updates)
    except Exception as e:
        logger.error(f"Admin {action_type} failed for campaign {campaign_id}: {str(e)}")
        return {'success': False, 'error': getattr(e, 'message', None) or str(e)}

    metadata = {'campaign_name': campaign.get('campaign_name')}
    metadata.update(extra or {})
    log_activity(action_type, 'campaign', campaign_id, metadata, admin_id=admin_id)
    return {'success': True, 'campaign': campaign}


# ============================================
# CAMPAIGN ACTIONS
# ============================================

def approve_campaign(campaign_id: str, admin_id: str) -> Dict[str, Any]:
    """Approve a campaign, make it active and start polling for new movers."""
    approved_at = _now()
    result = _campaign_action(campaign_id, admin_id, {
        'approval_status': 'approved',
        'approved_by': admin_id,
        'approved_at': approved_at,
        'status': 'active',
        'polling_enabled': True,
    }, 'campaign_approved')
    if not result['success']:
        return result

    campaign = result['campaign']
    name = campaign.get('campaign_name')
    notifications.create_notification(
        campaign.get('user_id'), notifications.CAMPAIGN_APPROVED,
        'Campaign Approved',
        f'Your campaign "{name}" has been approved and is now live.',
        f'/campaigns/{campaign_id}'
    )
    email = _owner_email(campaign.get('user_id'))
    if email:
        email_service.send_campaign_approved_email(email, name, campaign_id, approved_at)
    return result


def reject_campaign(campaign_id: str, admin_id: str, reason: str) -> Dict[str, Any]:
    if _blank(reason):
        return {'success': False, 'error': 'Rejection reason is required'}

    result = _campaign_action(campaign_id, admin_id, {
        'approval_status': 'rejected',
        'rejected_by': admin_id,
        'rejected_at': _now(),
        'rejection_reason': reason,
        'status': 'rejected',
        'polling_enabled': False,
    }, 'campaign_rejected', {'reason': reason})
    if not result['success']:
        return result

    campaign = result['campaign']
    name = campaign.get('campaign_name')
    notifications.create_notification(
        campaign.get('user_id'), notifications.CAMPAIGN_REJECTED,
        'Campaign Needs Updates',
        f'Your campaign "{name}" was not approved: {reason}',
        f'/campaigns/{campaign_id}/edit'
    )
    email = _owner_email(campaign.get('user_id'))
    if email:
        email_service.send_campaign_rejected_email(email, name, campaign_id, reason)
    return result


def pause_campaign(campaign_id: str, admin_id: str, reason: str) -> Dict[str, Any]:
    if _blank(reason):
        return {'success': False, 'error': 'Pause reason is required'}

    result = _campaign_action(campaign_id, admin_id, {
        'paused_by': admin_id,
        'paused_at': _now(),
        'pause_reason': reason,
        'status': 'paused',
    }, 'campaign_paused', {'reason': reason})
    if not result['success']:
        return result

    campaign = result['campaign']
    name = campaign.get('campaign_name')
    notifications.create_notification(
        campaign.get('user_id'), notifications.CAMPAIGN_PAUSED,
        'Campaign Paused',
        f'Your campaign "{name}" has been paused: {reason}',
        f'/campaigns/{campaign_id}'
    )
    email = _owner_email(campaign.get('user_id'))
    if email:
        email_service.send_campaign_paused_email(email, name, reason)
    return result


def resume_campaign(campaign_id: str, admin_id: str) -> Dict[str, Any]:
    result = _campaign_action(campaign_id, admin_id, {
        'paused_by': None,
        'paused_at': None,
        'pause_reason': None,
        'status': 'active',
    }, 'campaign_resumed')
    if not result['success']:
        return result

    campaign = result['campaign']
    name = campaign.get('campaign_name')
    notifications.create_notification(
        campaign.get('user_id'), notifications.CAMPAIGN_RESUMED,
        'Campaign Resumed',
        f'Your campaign "{name}" is active again.',
        f'/campaigns/{campaign_id}'
    )
    email = _owner_email(campaign.get('user_id'))
    if email:
        email_service.send_campaign_resumed_email(email, name, campaign_id)
    return result


def delete_campaign(campaign_id: str, admin_id: str) -> Dict[str, Any]:
    return _campaign_action(campaign_id, admin_id, {
        'deleted_at': _now(),
        'polling_enabled': False,
    }, 'campaign_deleted')


def connect_provider(campaign_id: str, admin_id: str, provider: str) -> Dict[str, Any]:
    if provider not in PROVIDERS:
        return {'success': False, 'error': 'Invalid provider'}

    return _campaign_action(campaign_id, admin_id, {
        'provider': provider,
        'provider_connected_at': _now(),
    }, 'provider_connected', {'provider': provider})


# ============================================
# USER ACTIONS
# ============================================

def _update_profile(user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    rows = db.update_rows('profile', {'user_id': f'eq.{user_id}'}, updates)
    if not rows:
        raise LookupError('User not found')
    return rows[0]


def block_user(user_id: str, admin_id: str, reason: str) -> Dict[str, Any]:
    if _blank(reason):
        return {'success': False, 'error': 'Block reason is required'}

    try:
        profile = _update_profile(user_id, {
            'is_blocked': True,
            'blocked_at': _now(),
            'blocked_by': admin_id,
            'block_reason': reason,
        })
        db.insert_row('user_blocks', {
            'user_id': user_id,
            'blocked_by': admin_id,
            'reason': reason,
            'is_active': True,
        })
    except Exception as e:
        logger.error(f"Error blocking user {user_id}: {str(e)}")
        return {'success': False, 'error': getattr(e, 'message', None) or str(e)}

    log_activity('user_blocked', 'user', user_id, {'reason': reason}, admin_id=admin_id)
    notifications.create_notification(
        user_id, notifications.ACCOUNT_BLOCKED,
        'Account Restricted',
        f'Your account has been restricted: {reason}',
    )
    if profile.get('email'):
        email_service.send_user_blocked_email(profile['email'], reason)
    return {'success': True, 'user': profile}


def unblock_user(user_id: str, admin_id: str, unblock_reason: str = 'Unblocked by admin') -> Dict[str, Any]:
    try:
        profile = _update_profile(user_id, {
            'is_blocked': False,
            'blocked_at': None,
            'blocked_by': None,
            'block_reason': None,
        })
        db.update_rows('user_blocks', {
            'user_id': f'eq.{user_id}',
            'is_active': 'eq.true'
        }, {
            'is_active': False,
            'unblocked_at': _now(),
            'unblocked_by': admin_id,
            'unblock_reason': unblock_reason,
        })
    except Exception as e:
        logger.error(f"Error unblocking user {user_id}: {str(e)}")
        return {'success': False, 'error': getattr(e, 'message', None) or str(e)}

    log_activity('user_unblocked', 'user', user_id, {'unblock_reason': unblock_reason}, admin_id=admin_id)
    notifications.create_notification(
        user_id, notifications.ACCOUNT_UNBLOCKED,
        'Account Restored',
        'Your account has been restored. Welcome back!',
        '/dashboard'
    )
    if profile.get('email'):
        email_service.send_user_unblocked_email(profile['email'])
    return {'success': True, 'user': profile}


def delete_user(user_id: str, admin_id: str) -> Dict[str, Any]:
    """Soft delete: the profile is stamped deleted_at and blocked."""
    try:
        profile = _update_profile(user_id, {'deleted_at': _now(), 'is_blocked': True})
    except Exception as e:
        logger.error(f"Error deleting user {user_id}: {str(e)}")
        return {'success': False, 'error': getattr(e, 'message', None) or str(e)}

    log_activity('user_deleted', 'user', user_id, {
        'email': profile.get('email'),
        'full_name': profile.get('full_name'),
    }, admin_id=admin_id)
    return {'success': True, 'user': profile}
