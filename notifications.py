"""
In-app notifications shown in the dashboard bell.

Each function returns a {'success': bool, ...} dict and never raises, so
callers in the admin and webhook flows can treat notifications as best effort.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import supabase_rest as db

logger = logging.getLogger(__name__)

# Notification types
CAMPAIGN_APPROVED = 'campaign_approved'
CAMPAIGN_REJECTED = 'campaign_rejected'
CAMPAIGN_PAUSED = 'campaign_paused'
CAMPAIGN_RESUMED = 'campaign_resumed'
PAYMENT_FAILED = 'payment_failed'
PAYMENT_REQUIRES_ACTION = 'payment_requires_action'
ACCOUNT_BLOCKED = 'account_blocked'
ACCOUNT_UNBLOCKED = 'account_unblocked'


def create_notification(user_id: str, notification_type: str, title: str, message: str,
                        action_url: Optional[str] = None) -> Dict[str, Any]:
    try:
        row = db.insert_row('notifications', {
            'user_id': user_id,
            'type': notification_type,
            'title': title,
            'message': message,
            'action_url': action_url,
            'is_read': False,
        })
        logger.info(f"Notification '{notification_type}' created for user {user_id}")
        return {'success': True, 'notification': row}
    except Exception as e:
        logger.error(f"Error creating notification for user {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}


def get_notifications(user_id: str, limit: int = 50, offset: int = 0,
                      unread_only: bool = False) -> Dict[str, Any]:
    """Newest-first page of a user's notifications plus the total count."""
    filters = {'user_id': f'eq.{user_id}'}
    if unread_only:
        filters['is_read'] = 'eq.false'

    try:
        params = dict(filters)
        params['order'] = 'created_at.desc'
        if limit:
            params['limit'] = str(limit)
            params['offset'] = str(offset)

        rows = db.select_rows('notifications', params)
        total = db.count_rows('notifications', filters)
        return {'success': True, 'notifications': rows, 'count': total}
    except Exception as e:
        logger.error(f"Error fetching notifications for user {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}


def get_unread_count(user_id: str) -> Dict[str, Any]:
    try:
        count = db.count_rows('notifications', {'user_id': f'eq.{user_id}', 'is_read': 'eq.false'})
        return {'success': True, 'count': count or 0}
    except Exception as e:
        logger.error(f"Error fetching unread count for user {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}


def mark_as_read(notification_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    filters = {'id': f'eq.{notification_id}'}
    if user_id:
        filters['user_id'] = f'eq.{user_id}'

    try:
        updated = db.update_rows('notifications', filters, {
            'is_read': True,
            'read_at': datetime.now(timezone.utc).isoformat(),
        })
        if not updated:
            return {'success': False, 'error': 'Notification not found'}
        return {'success': True}
    except Exception as e:
        logger.error(f"Error marking notification {notification_id} as read: {str(e)}")
        return {'success': False, 'error': str(e)}


def mark_all_as_read(user_id: str) -> Dict[str, Any]:
    try:
        updated = db.update_rows(
            'notifications',
            {'user_id': f'eq.{user_id}', 'is_read': 'eq.false'},
            {'is_read': True, 'read_at': datetime.now(timezone.utc).isoformat()}
        )
        return {'success': True, 'updated': len(updated or [])}
    except Exception as e:
        logger.error(f"Error marking all notifications as read for user {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}


def delete_notification(notification_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
    filters = {'id': f'eq.{notification_id}'}
    if user_id:
        filters['user_id'] = f'eq.{user_id}'

    try:
        db.delete_rows('notifications', filters)
        return {'success': True}
    except Exception as e:
        logger.error(f"Error deleting notification {notification_id}: {str(e)}")
        return {'success': False, 'error': str(e)}


def delete_all_notifications(user_id: str) -> Dict[str, Any]:
    try:
        deleted = db.delete_rows('notifications', {'user_id': f'eq.{user_id}'})
        return {'success': True, 'deleted': len(deleted or [])}
    except Exception as e:
        logger.error(f"Error deleting notifications for user {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}
