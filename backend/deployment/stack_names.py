"""
Stack name normalization and per-endpoint uniqueness.

The uniqueness check is advisory: the stacks table also carries a unique
constraint on (endpoint_id, lower(name)), so a create that races past this
check still fails when it is persisted.
"""

import logging
import re
from typing import Optional

from database import DatabaseManager

logger = logging.getLogger(__name__)

# docker compose project names allow lowercase letters, digits, hyphens and underscores
_INVALID_NAME_CHARS = re.compile(r'[^-_a-z0-9]+')


def normalize_stack_name(name: str) -> str:
    """
    Convert a user-supplied name to a valid compose project name.

    Examples:
        "My Web-App" -> "myweb-app"
        "API_v2" -> "api_v2"
        "!!!" -> ""
    """
    return _INVALID_NAME_CHARS.sub('', (name or '').lower())


def is_unique_stack_name(
    db: DatabaseManager,
    endpoint_id: int,
    name: str,
    exclude_stack_id: Optional[int] = None,
) -> bool:
    """
    Check that no other stack on the endpoint uses this name.

    Comparison is case-insensitive. The stack with exclude_stack_id is
    ignored so an update can keep (or re-case) its own name.

    Args:
        db: Metadata store
        endpoint_id: Endpoint to scan
        name: Candidate name
        exclude_stack_id: Stack being updated, or None for creates
    """
    candidate = name.lower()
    for stack in db.get_stacks(endpoint_id=endpoint_id):
        if exclude_stack_id is not None and stack.id == exclude_stack_id:
            continue
        if stack.name.lower() == candidate:
            logger.debug(f"Name '{name}' collides with stack {stack.id} on endpoint {endpoint_id}")
            return False
    return True
