import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import supabase_rest as db
from errors import ValidationError

logger = logging.getLogger(__name__)

# Client field -> profile column
PROFILE_FIELDS = {
    'phone': 'phone',
    'avatar': 'avatar_url',
    'company': 'company_name',
    'timezone': 'timezone',
    'language': 'language',
    'notifications': 'email_notifications',
    'full_name': 'full_name',
}

COMPANY_FIELDS = (
    'name', 'website', 'phone_number', 'location', 'street_address',
    'business_category', 'industry', 'logo_url', 'logo_icon_url',
    'primary_color', 'secondary_color',
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def serialize_profile(row: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a profile row the way the settings screens expect it."""
    full_name = row.get('full_name') or ''
    parts = full_name.split(' ')
    return {
        'id': row.get('user_id'),
        'firstName': parts[0] if full_name else '',
        'lastName': ' '.join(parts[1:]),
        'email': row.get('email'),
        'full_name': row.get('full_name'),
        'phone': row.get('phone') or '',
        'avatar': row.get('avatar_url') or '',
        'role': row.get('role') or 'user',
        'company': row.get('company_name') or '',
        'timezone': row.get('timezone') or 'UTC',
        'language': row.get('language') or 'en',
        'notifications': row.get('email_notifications') is not False,
        'twoFactorEnabled': bool(row.get('two_factor_enabled')),
        'lastLogin': row.get('last_sign_in_at'),
        'createdAt': row.get('created_at'),
    }


def get_user_profile(user_id: str) -> Dict[str, Any]:
    try:
        row = db.select_one('profile', {'user_id': f'eq.{user_id}'})
    except Exception as e:
        logger.error(f"Error fetching profile for {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}

    if not row:
        return {'success': False, 'error': 'Profile not found'}
    return {'success': True, 'profile': serialize_profile(row)}


def update_user_profile(user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Apply whitelisted profile changes; role and block flags are never writable here."""
    changes = {column: updates[field] for field, column in PROFILE_FIELDS.items() if field in updates}

    first, last = updates.get('firstName'), updates.get('lastName')
    if first and last:
        changes['full_name'] = f'{first} {last}'.strip()

    if not changes:
        return {'success': False, 'error': 'No valid fields to update'}
    changes['updated_at'] = _now()

    try:
        rows = db.update_rows('profile', {'user_id': f'eq.{user_id}'}, changes)
    except Exception as e:
        logger.error(f"Error updating profile for {user_id}: {str(e)}")
        return {'success': False, 'error': str(e)}

    if not rows:
        return {'success': False, 'error': 'Profile not found'}
    return {'success': True, 'profile': serialize_profile(rows[0])}


def get_business(user_id: str) -> Optional[Dict[str, Any]]:
    return db.select_one('companies', {'user_id': f'eq.{user_id}'})


def upsert_business(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationError('Business name is required')

    record = {field: data[field] for field in COMPANY_FIELDS if field in data}
    record['name'] = name
    if data.get('business_category') and 'industry' not in record:
        record['industry'] = data['business_category']
    record['updated_at'] = _now()

    existing = get_business(user_id)
    if existing:
        rows = db.update_rows('companies', {'id': f"eq.{existing['id']}"}, record)
        company = rows[0] if rows else dict(existing, **record)
        logger.info(f"Company {existing['id']} updated for user {user_id}")
    else:
        record['user_id'] = user_id
        company = db.insert_row('companies', record)
        logger.info(f"Company created for user {user_id}")

    return {'success': True, 'company': company}
