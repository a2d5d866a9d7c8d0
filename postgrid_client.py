"""
PostGrid print & mail client.

Sends postcards to new movers and exposes the few management calls the
admin dashboard needs (status, cancel, list, test progression).
"""

import os
import logging
from typing import Dict, Any, Optional, Tuple

import requests

from errors import PostGridError

logger = logging.getLogger(__name__)

POSTGRID_API_URL = os.environ.get('POSTGRID_API_URL', 'https://api.postgrid.com/print-mail/v1')
POSTGRID_API_KEY = os.environ.get('POSTGRID_API_KEY', '')

TIMEOUT = (5, 60)

POSTCARD_SIZE = '6x4'


def is_test_mode() -> bool:
    return POSTGRID_API_KEY.startswith('test_')


def _require_key() -> None:
    if not POSTGRID_API_KEY:
        raise PostGridError('PostGrid API key not configured', 500)


def _headers(json_body: bool = False) -> Dict[str, str]:
    headers = {'x-api-key': POSTGRID_API_KEY}
    if json_body:
        headers['Content-Type'] = 'application/json'
    return headers


def _error_message(response: requests.Response) -> str:
    try:
        error = (response.json() or {}).get('error') or {}
        if isinstance(error, dict) and error.get('message'):
            return error['message']
    except ValueError:
        pass
    return response.reason or str(response.status_code)


def _request(method: str, path: str, **kwargs) -> Dict[str, Any]:
    _require_key()
    try:
        response = requests.request(method, f"{POSTGRID_API_URL}{path}", timeout=TIMEOUT, **kwargs)
    except requests.RequestException as e:
        raise PostGridError(f"PostGrid request failed: {str(e)}")

    if not response.ok:
        message = _error_message(response)
        logger.error(f"PostGrid {method} {path} failed ({response.status_code}): {message}")
        raise PostGridError(f"PostGrid API error: {message}")

    return response.json()


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    """Split a full name into (first, last) with a 'Resident' fallback."""
    parts = (full_name or 'Resident').strip().split()
    first_name = parts[0] if parts else 'Resident'
    last_name = ' '.join(parts[1:])
    return first_name, last_name


def build_postcard_request(recipient: Dict[str, Any], design_url: str,
                           campaign: Dict[str, Any]) -> Dict[str, Any]:
    """Build the PostGrid create-postcard body for one recipient."""
    first_name, last_name = split_name(recipient.get('full_name'))

    to_contact = {
        'firstName': first_name,
        'lastName': last_name,
        'addressLine1': recipient.get('address_line'),
        'city': recipient.get('city'),
        'provinceOrState': recipient.get('state'),
        'postalOrZip': recipient.get('zip_code'),
        'countryCode': 'US',
    }
    if recipient.get('phone_number'):
        to_contact['phoneNumber'] = recipient['phone_number']

    return {
        'to': to_contact,
        'size': POSTCARD_SIZE,
        'pdf': design_url,
        'description': campaign.get('campaign_name') or 'New Mover Campaign',
        'express': False,
        'metadata': {
            'campaign_id': campaign.get('id'),
            'user_id': campaign.get('user_id'),
            'new_mover_id': recipient.get('id'),
            'melissa_address_key': recipient.get('melissa_address_key'),
            'move_effective_date': recipient.get('move_effective_date'),
        },
    }


def send_postcard(recipient: Dict[str, Any], design_url: str,
                  campaign: Dict[str, Any]) -> Dict[str, Any]:
    """Create a postcard for a new mover. Returns PostGrid's postcard object."""
    body = build_postcard_request(recipient, design_url, campaign)
    return _request('POST', '/postcards', headers=_headers(json_body=True), json=body)


def get_postcard_status(postcard_id: str) -> Dict[str, Any]:
    data = _request('GET', f'/postcards/{postcard_id}', headers=_headers())
    return {
        'success': True,
        'status': data.get('status'),
        'sendDate': data.get('sendDate'),
        'url': data.get('url'),
        'data': data,
    }


def cancel_postcard(postcard_id: str) -> Dict[str, Any]:
    """Cancel a postcard that has not been printed yet."""
    data = _request('DELETE', f'/postcards/{postcard_id}', headers=_headers())
    return {'success': True, 'deleted': data.get('deleted'), 'data': data}


def list_postcards(search: str = '', skip: int = 0, limit: int = 10) -> Dict[str, Any]:
    params = {'skip': str(skip), 'limit': str(limit)}
    if search:
        params['search'] = search

    data = _request('GET', '/postcards', headers=_headers(), params=params)
    return {
        'success': True,
        'postcards': data.get('data') or [],
        'totalCount': data.get('totalCount') or 0,
        'data': data,
    }


def progress_test_postcard(postcard_id: str) -> Dict[str, Any]:
    """Advance a test-mode postcard to its next status."""
    _require_key()
    if not is_test_mode():
        raise PostGridError('Progression only works with test mode API keys', 400)

    data = _request('POST', f'/postcards/{postcard_id}/progressions', headers=_headers())
    return {'success': True, 'status': data.get('status'), 'data': data}


def validate_configuration() -> Dict[str, Any]:
    if not POSTGRID_API_KEY:
        return {'valid': False, 'error': 'PostGrid API key not configured'}

    try:
        _request('GET', '/postcards', headers=_headers(), params={'limit': '1'})
    except PostGridError as e:
        return {'valid': False, 'error': e.message}

    return {'valid': True, 'mode': 'test' if is_test_mode() else 'live'}
