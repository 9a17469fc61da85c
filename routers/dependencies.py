import logging
from typing import Optional

from fastapi import Query, Request

from auth import validate_descope_jwt
from core.errors import Unauthorized

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get('authorization') or request.headers.get('Authorization')
    if not auth_header or not auth_header.lower().startswith('bearer '):
        return None
    return auth_header.split(' ', 1)[1].strip()


def get_current_user_id(request: Request) -> str:
    """
    Extracts and validates the Descope JWT from the Authorization header.
    Returns the identity provider's opaque user id.
    """
    token = _bearer_token(request)
    if not token:
        raise Unauthorized("Authorization token missing.")
    user_info = validate_descope_jwt(token)
    request.state.user_id = user_info['userId']
    return user_info['userId']


def get_stream_user_id(request: Request, token: Optional[str] = Query(None)) -> str:
    """Same as get_current_user_id, but EventSource clients may pass ?token= instead of a header."""
    token = _bearer_token(request) or token
    if not token:
        raise Unauthorized("Missing token")
    user_info = validate_descope_jwt(token)
    request.state.user_id = user_info['userId']
    return user_info['userId']
