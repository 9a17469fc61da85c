import base64
import json
import logging
from typing import Optional

from descope.descope_client import DescopeClient

from config import DESCOPE_JWT_LEEWAY, DESCOPE_JWT_LEEWAY_FALLBACK, DESCOPE_PROJECT_ID
from core.errors import Unauthorized

logger = logging.getLogger(__name__)

_clients: dict = {}


def get_descope_client(leeway: int = DESCOPE_JWT_LEEWAY) -> DescopeClient:
    """Descope client with the given clock-skew leeway, created on first use."""
    client = _clients.get(leeway)
    if client is None:
        client = DescopeClient(project_id=DESCOPE_PROJECT_ID, jwt_validation_leeway=leeway)
        _clients[leeway] = client
        logger.info(f"Descope client initialized with JWT leeway: {leeway}s")
    return client


def decode_jwt_payload(token: str) -> dict:
    """Decode JWT payload without verification for debugging purposes."""
    try:
        parts = token.split('.')
        if len(parts) != 3:
            return {}
        payload = parts[1]
        padding = len(payload) % 4
        if padding:
            payload += '=' * (4 - padding)
        return json.loads(base64.urlsafe_b64decode(payload).decode('utf-8'))
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug(f"Failed to decode JWT payload: {e}")
        return {}


def _user_info_from_session(session) -> dict:
    if not isinstance(session, dict):
        logger.error("Descope session validation failed: session is not a dictionary")
        raise Unauthorized("Invalid session format")

    # Descope returns user info directly in the session, not nested under 'user'
    user_id = session.get('userId') or session.get('sub')
    if not user_id:
        logger.error("Descope JWT validation failed: missing userId in session")
        raise Unauthorized("Invalid token: missing user ID")

    login_ids = session.get('loginIds') if isinstance(session.get('loginIds'), list) else []
    return {
        'userId': user_id,
        'sub': session.get('sub'),
        'loginIds': login_ids,
        'email': session.get('email') or (login_ids[0] if login_ids else None),
        'name': session.get('name'),
        'displayName': session.get('displayName'),
    }


def validate_descope_jwt(token: Optional[str]) -> dict:
    """
    Validate Descope session JWT and return user info.
    In case of time skew issues, retry with a higher leeway.

    Raises:
        Unauthorized: If token validation fails or the user id is missing
    """
    if not token:
        raise Unauthorized("Authorization token missing.")

    logger.debug(f"JWT payload (decoded): {json.dumps(decode_jwt_payload(token), default=str)}")

    try:
        return _user_info_from_session(get_descope_client().validate_session(token))
    except Unauthorized:
        raise
    except Exception as e:
        logger.error(f"Descope JWT validation failed: {e}")

    try:
        logger.info(f"Retrying JWT validation with fallback leeway: {DESCOPE_JWT_LEEWAY_FALLBACK}s")
        session = get_descope_client(DESCOPE_JWT_LEEWAY_FALLBACK).validate_session(token)
        return _user_info_from_session(session)
    except Unauthorized:
        raise
    except Exception as e:
        logger.error(f"High leeway validation also failed: {e}")
        raise Unauthorized("Invalid or expired token")
