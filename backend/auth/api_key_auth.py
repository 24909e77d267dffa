"""
API Key Authentication for Harbormaster

Every request authenticates with `Authorization: Bearer hm_<token>`.
Keys are issued by create_user.py and stored as SHA256 hashes only.

SECURITY FEATURES:
- SHA256 key hashing (never stores plaintext)
- Uniform 401 for malformed, unknown and missing keys
- Team memberships resolved per request so revocations apply immediately
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import Header, HTTPException, Request

from database import API_KEY_PREFIX, DatabaseManager, get_database_manager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecurityContext:
    """Identity of the acting user for one request."""
    user_id: int
    username: str
    is_admin: bool
    team_ids: List[int] = field(default_factory=list)


def validate_api_key(api_key: str, client_ip: str, db: DatabaseManager) -> Optional[SecurityContext]:
    """
    Validate API key and return the user's security context.

    Args:
        api_key: Plaintext API key from Authorization header
        client_ip: Client address, for logging only
        db: Database manager

    Returns:
        SecurityContext if valid, None otherwise
    """
    if not api_key or not api_key.startswith(API_KEY_PREFIX):
        logger.warning(f"Invalid API key format from {client_ip}")
        return None

    user = db.get_user_by_api_key(api_key)
    if user is None:
        logger.warning(f"Unknown API key from {client_ip}")
        return None

    return SecurityContext(
        user_id=user.id,
        username=user.username,
        is_admin=user.is_admin,
        team_ids=db.get_user_team_ids(user.id),
    )


async def get_security_context(
    request: Request,
    authorization: str = Header(None),
) -> SecurityContext:
    """
    Authentication dependency for all stack routes.

    Raises:
        HTTPException: 401 if the Authorization header is missing or the key is invalid
    """
    client_ip = request.client.host if request.client else "unknown"

    if authorization:
        if authorization.startswith("Bearer "):
            api_key = authorization[7:]  # Remove "Bearer " prefix

            context = validate_api_key(api_key, client_ip, get_database_manager())
            if context:
                return context
        else:
            logger.warning(f"Invalid Authorization header format from {client_ip}")

    logger.warning(f"Authentication failed from {client_ip}")
    raise HTTPException(
        status_code=401,
        detail="Not authenticated - provide an API key"
    )
