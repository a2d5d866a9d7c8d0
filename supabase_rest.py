"""
Supabase REST helpers for MovePost.

Every table read and write goes through PostgREST with the service-role key.
Filters use PostgREST syntax, e.g. {'id': 'eq.123', 'deleted_at': 'is.null'}.
"""

import os
import re
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

import requests

from errors import SupabaseError

# Configure logging
logger = logging.getLogger(__name__)

# Configuration
SUPABASE_URL = os.environ.get('SUPABASE_URL')
SUPABASE_SERVICE_ROLE_KEY = os.environ.get('SUPABASE_SERVICE_ROLE_KEY')
SUPABASE_ANON_KEY = os.environ.get('SUPABASE_ANON_KEY')

# Request timeouts
TIMEOUT = (5, 60)  # (connect, read)


def supabase_headers(prefer: Optional[str] = None) -> Dict[str, str]:
    """Return headers for Supabase API requests."""
    headers = {
        'apikey': SUPABASE_SERVICE_ROLE_KEY,
        'Authorization': f'Bearer {SUPABASE_SERVICE_ROLE_KEY}',
        'Content-Type': 'application/json'
    }
    if prefer:
        headers['Prefer'] = prefer
    return headers


def rest_url(table: str) -> str:
    return f"{SUPABASE_URL}/rest/v1/{table}"


def _check(response: requests.Response, action: str, table: str) -> None:
    if not response.ok:
        logger.error(f"Supabase {action} on {table} failed ({response.status_code}): {response.text[:500]}")
        raise SupabaseError(
            f"Failed to {action} {table}",
            status_code=response.status_code,
            details=response.text[:2000]
        )


def select_rows(table: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Fetch rows from a table."""
    query = {'select': '*'}
    query.update(params or {})

    response = requests.get(rest_url(table), params=query, headers=supabase_headers(), timeout=TIMEOUT)
    _check(response, 'select', table)
    return response.json()


def select_one(table: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Fetch a single row, or None when nothing matches."""
    query = dict(params or {})
    query['limit'] = '1'
    rows = select_rows(table, query)
    return rows[0] if rows else None


def count_rows(table: str, params: Optional[Dict[str, Any]] = None) -> int:
    """Return the exact number of rows matching the filters."""
    query = {'select': 'id'}
    query.update(params or {})
    headers = supabase_headers(prefer='count=exact')
    headers['Range-Unit'] = 'items'
    headers['Range'] = '0-0'

    response = requests.get(rest_url(table), params=query, headers=headers, timeout=TIMEOUT)
    _check(response, 'count', table)

    # Content-Range looks like "0-0/42" or "*/0"
    content_range = response.headers.get('Content-Range', '')
    total = content_range.rsplit('/', 1)[-1] if '/' in content_range else ''
    return int(total) if total.isdigit() else len(response.json())


def insert_row(table: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Insert a row and return it as stored."""
    response = requests.post(
        rest_url(table),
        headers=supabase_headers(prefer='return=representation'),
        json=data,
        timeout=TIMEOUT
    )
    _check(response, 'insert into', table)
    rows = response.json()
    return rows[0] if isinstance(rows, list) and rows else rows


def update_rows(table: str, filters: Dict[str, Any], updates: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Update matching rows and return them."""
    response = requests.patch(
        rest_url(table),
        params=filters,
        headers=supabase_headers(prefer='return=representation'),
        json=updates,
        timeout=TIMEOUT
    )
    _check(response, 'update', table)
    return response.json()


def upsert_row(table: str, data: Dict[str, Any], on_conflict: str) -> Dict[str, Any]:
    """Insert or merge a row on the given conflict column."""
    response = requests.post(
        rest_url(table),
        params={'on_conflict': on_conflict},
        headers=supabase_headers(prefer='resolution=merge-duplicates,return=representation'),
        json=data,
        timeout=TIMEOUT
    )
    _check(response, 'upsert into', table)
    rows = response.json()
    return rows[0] if isinstance(rows, list) and rows else rows


def delete_rows(table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Delete matching rows and return them."""
    response = requests.delete(
        rest_url(table),
        params=filters,
        headers=supabase_headers(prefer='return=representation'),
        timeout=TIMEOUT
    )
    _check(response, 'delete from', table)
    return response.json()


def get_auth_user(access_token: str) -> Optional[Dict[str, Any]]:
    """Resolve a user JWT through Supabase Auth. Returns None if invalid."""
    if not access_token:
        return None

    try:
        response = requests.get(
            f"{SUPABASE_URL}/auth/v1/user",
            headers={
                'apikey': SUPABASE_ANON_KEY or SUPABASE_SERVICE_ROLE_KEY,
                'Authorization': f'Bearer {access_token}'
            },
            timeout=TIMEOUT
        )
    except requests.RequestException as e:
        logger.error(f"Supabase auth lookup failed: {str(e)}")
        return None

    if response.status_code in (401, 403):
        return None
    if not response.ok:
        logger.error(f"Supabase auth lookup failed ({response.status_code}): {response.text[:500]}")
        return None

    user = response.json()
    return user if user and user.get('id') else None


_FRACTION = re.compile(r'\.(\d+)')
_SHORT_OFFSET = re.compile(r'([+-]\d{2})$')


def parse_timestamp(value: Any) -> datetime:
    """Parse a Postgres/ISO-8601 timestamp into an aware UTC datetime.

    Postgres trims trailing zeros from fractional seconds and may emit a
    bare '+00' offset; both are normalized before datetime.fromisoformat.
    """
    text = str(value).strip().replace('Z', '+00:00')
    text = _FRACTION.sub(lambda m: '.' + m.group(1)[:6].ljust(6, '0'), text, count=1)
    text = _SHORT_OFFSET.sub(r'\1:00', text) if 'T' in text or ' ' in text else text

    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def in_filter(values: List[str]) -> str:
    """Build a PostgREST in.(...) filter value."""
    return f"in.({','.join(str(v) for v in values)})"
