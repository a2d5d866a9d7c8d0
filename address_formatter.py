"""Helpers for displaying addresses stored as JSON text, dicts or plain strings."""

import json
from typing import Any, Dict, Optional, Union

Address = Union[str, Dict[str, Any], None]


def parse_address(address: Address) -> Optional[Union[str, Dict[str, Any]]]:
    if not address:
        return None
    if isinstance(address, dict):
        return address

    try:
        parsed = json.loads(address)
    except (TypeError, ValueError):
        return address
    return parsed if isinstance(parsed, dict) else address


def _street(parsed: Dict[str, Any]) -> Optional[str]:
    return parsed.get('street') or parsed.get('streetAddress')


def _state(parsed: Dict[str, Any]) -> Optional[str]:
    return parsed.get('state') or parsed.get('province')


def _postal(parsed: Dict[str, Any]) -> Optional[str]:
    return parsed.get('postalCode') or parsed.get('zipCode') or parsed.get('zip')


def format_address(address: Address) -> str:
    """Single line: street, city, state, postal code, country."""
    parsed = parse_address(address)
    if not parsed:
        return ''
    if isinstance(parsed, str):
        return parsed

    parts = [_street(parsed), parsed.get('city'), _state(parsed), _postal(parsed), parsed.get('country')]
    return ', '.join(str(p) for p in parts if p)


def format_address_multiline(address: Address) -> str:
    parsed = parse_address(address)
    if not parsed:
        return ''
    if isinstance(parsed, str):
        return parsed

    city_line = ', '.join(str(p) for p in (parsed.get('city'), _state(parsed), _postal(parsed)) if p)
    lines = [_street(parsed), city_line, parsed.get('country')]
    return '\n'.join(str(line) for line in lines if line)


def format_address_short(address: Address) -> str:
    """City, state and country only."""
    parsed = parse_address(address)
    if not parsed:
        return ''
    if isinstance(parsed, str):
        return parsed

    parts = [parsed.get('city'), _state(parsed), parsed.get('country')]
    return ', '.join(str(p) for p in parts if p)
