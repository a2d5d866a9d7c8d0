"""
Bearer-token authentication for API routes.

The Supabase access token from the Authorization header is resolved through
Supabase Auth, then the caller's profile row supplies the role and block
status. Handlers read the result from flask.g.
"""

import logging
from functools import wraps
from typing import Optional

from flask import request, jsonify, g

import supabase_rest as db
from billing import is_admin_role

logger = logging.getLogger(__name__)


def bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def _authenticate():
    """Populate g.user / g.profile / g.is_admin, or return an error response."""
    token = bearer_token()
    if not token:
        return jsonify({'error': 'Missing authorization header'}), 401

    user = db.get_auth_user(token)
    if not user:
        return jsonify({'error': 'Unauthorized'}), 401

    try:
        profile = db.select_one('profile', {
            'select': 'user_id,email,full_name,role,is_blocked,deleted_at',
            'user_id': f"eq.{user['id']}"
        })
    except Exception as e:
        logger.error(f"Profile lookup failed for {user['id']}: {str(e)}")
        return jsonify({'error': 'Failed to load user profile'}), 500

    profile = profile or {}
    if profile.get('is_blocked') or profile.get('deleted_at'):
        logger.warning(f"Blocked user {user['id']} rejected")
        return jsonify({'error': 'Account is blocked'}), 403

    g.user = user
    g.profile = profile
    g.is_admin = is_admin_role(profile.get('role'))
    return None


def require_user(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if request.method == 'OPTIONS':
            return '', 204
        error = _authenticate()
        if error:
            return error
        return f(*args, **kwargs)
    return decorated


def require_admin(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if request.method == 'OPTIONS':
            return '', 204
        error = _authenticate()
        if error:
            return error
        if not g.is_admin:
            logger.warning(f"Non-admin {g.user['id']} denied access to {request.path}")
            return jsonify({'error': 'Admin access required'}), 403
        return f(*args, **kwargs)
    return decorated
