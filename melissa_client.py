"""
Melissa NewMovers client.

Looks up residents who recently moved into a set of ZIP codes and maps the
raw records onto rows for the newmover table.
"""

import os
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List

import requests

from errors import MelissaError

logger = logging.getLogger(__name__)

MELISSA_API_URL = 'https://dataretriever.melissadata.net/web/V1/NewMovers/doLookup'
MELISSA_CUSTOMER_ID = os.environ.get('MELISSA_CUSTOMER_ID', '')

TIMEOUT = (5, 60)

# Columns requested from the lookup
MELISSA_COLUMNS = [
    'fullname',
    'melissaaddresskey',
    'AddressLine',
    'MoveEffectiveDate',
    'PhoneNumber',
    'city',
    'PreviousAddressLine',
    'PreviousZIPCode',
    'state'
]

MOVE_DATE_FORMATS = ('%Y%m%d', '%Y-%m-%d', '%m/%d/%Y', '%m/%d/%Y %H:%M:%S')


def fetch_new_movers(zip_codes: List[str], page: int = 1) -> List[Dict[str, Any]]:
    """Fetch one page of new-mover records for the given ZIP codes."""
    body = {
        'customerid': MELISSA_CUSTOMER_ID,
        'includes': {
            'zips': [{'zip': zip_code} for zip_code in zip_codes]
        },
        'columns': MELISSA_COLUMNS,
        'pagination': {'page': page}
    }

    try:
        response = requests.post(
            MELISSA_API_URL,
            headers={
                'Content-Type': 'application/json',
                'Accept': 'application/json'
            },
            json=body,
            timeout=TIMEOUT
        )
    except requests.RequestException as e:
        logger.error(f"Error fetching from Melissa API: {str(e)}")
        raise MelissaError(f"Melissa API request failed: {str(e)}")

    if not response.ok:
        logger.error(f"Melissa API error {response.status_code}: {response.text[:500]}")
        raise MelissaError(f"Melissa API error: {response.reason or response.status_code}")

    data = response.json() or {}
    return data.get('Results') or []


def parse_move_date(value: Any) -> Optional[str]:
    """Normalize a Melissa move date to an ISO-8601 UTC timestamp."""
    if not value:
        return None

    text = str(value).strip()
    parsed = None

    try:
        parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        for fmt in MOVE_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue

    if parsed is None:
        logger.warning(f"Unrecognized MoveEffectiveDate: {text}")
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat()


def _first(record: Dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        if record.get(key):
            return record[key]
    return None


def transform_movers(results: List[Dict[str, Any]], searched_zip: str,
                     campaign_id: str) -> List[Dict[str, Any]]:
    """Map raw Melissa records to newmover rows."""
    discovered_at = datetime.now(timezone.utc).isoformat()

    return [
        {
            'melissa_address_key': _first(mover, 'melissaaddresskey', 'MelissaAddressKey') or '',
            'full_name': _first(mover, 'fullname', 'FullName') or 'Resident',
            'address_line': mover.get('AddressLine') or '',
            'city': _first(mover, 'city', 'City') or '',
            'state': _first(mover, 'state', 'State') or '',
            'zip_code': searched_zip,
            'previous_address_line': mover.get('PreviousAddressLine') or None,
            'previous_zip_code': mover.get('PreviousZIPCode') or None,
            'phone_number': mover.get('PhoneNumber') or None,
            'move_effective_date': parse_move_date(mover.get('MoveEffectiveDate')),
            'campaign_id': campaign_id,
            'discovered_at': discovered_at,
            'postcard_sent': False,
        }
        for mover in results
    ]
