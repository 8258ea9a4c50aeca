"""
Auth Module for Childcare Billing
Owner: CC1
Domain: Auth & Multi-tenancy

Bearer JWTs carry the acting user and their organization. Billing routes
read the organization from the token, never from the request body.
"""

import os
import secrets
import sys
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional

import jwt
from flask import request, jsonify, g

# JWT Configuration
JWT_SECRET = os.environ.get('JWT_SECRET', secrets.token_hex(32))
JWT_ALGORITHM = 'HS256'
JWT_EXPIRY_HOURS = int(os.environ.get('JWT_EXPIRY_HOURS', 168))

ADMIN_ROLE = 'admin'

if 'JWT_SECRET' not in os.environ:
    print("[AUTH] WARNING: JWT_SECRET not set, tokens will not survive a restart", file=sys.stderr)


def generate_jwt(user_id: str, email: str, tenant_id: str = None, role: str = 'owner') -> str:
    """Generate a JWT token for authenticated user."""
    now = datetime.now(timezone.utc)
    payload = {
        'sub': user_id,
        'email': email,
        'tenant_id': tenant_id,
        'role': role,
        'iat': now,
        'exp': now + timedelta(hours=JWT_EXPIRY_HOURS)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_jwt(token: str) -> dict:
    """Verify and decode a JWT token."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        raise ValueError('Token has expired')
    except jwt.InvalidTokenError as e:
        raise ValueError(f'Invalid token: {str(e)}')


def is_admin(actor: Optional[dict]) -> bool:
    return bool(actor) and actor.get('role') == ADMIN_ROLE


def require_jwt(f):
    """Decorator to require JWT authentication."""
    @wraps(f)
    def decorated(*args, **kwargs):
        auth_header = request.headers.get('Authorization', '')

        if not auth_header.startswith('Bearer '):
            return jsonify({'error': 'Authorization header required'}), 401

        token = auth_header[7:]

        try:
            payload = verify_jwt(token)
        except ValueError as e:
            return jsonify({'error': str(e)}), 401

        if not payload.get('tenant_id'):
            return jsonify({'error': 'Token is not associated with an organization'}), 403

        g.current_user = payload
        return f(*args, **kwargs)

    return decorated


def get_request_user() -> Optional[dict]:
    """Decoded token for the current request, without failing when absent.

    Used by hooks that run before any view decorator (plan gating).
    """
    if g.get('current_user'):
        return g.current_user

    auth_header = request.headers.get('Authorization', '')
    if not auth_header.startswith('Bearer '):
        return None
    try:
        return verify_jwt(auth_header[7:])
    except ValueError:
        return None
