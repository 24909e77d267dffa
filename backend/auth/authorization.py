"""
Authorization checks for endpoints, registries and stacks.

Rules:
    - Administrators can do everything
    - Other users need an endpoint authorization (direct or through a team)
      to deploy to an endpoint; an `endpoint_admin` role grants full control
      of that endpoint, including exemption from its security settings
    - Registries are usable by the users and teams listed on them
    - Stacks are visible to the users and teams listed on their resource
      control, or to everyone when it is public
"""

import logging
from typing import List, Optional

from database import (
    DatabaseManager, ENDPOINT_ROLE_ADMIN, Registry, ResourceControl,
)
from auth.api_key_auth import SecurityContext

logger = logging.getLogger(__name__)


def _matching_authorizations(db: DatabaseManager, context: SecurityContext, endpoint_id: int):
    team_ids = set(context.team_ids)
    return [
        authorization
        for authorization in db.get_endpoint_authorizations(endpoint_id)
        if authorization.user_id == context.user_id
        or (authorization.team_id is not None and authorization.team_id in team_ids)
    ]


def has_endpoint_access(db: DatabaseManager, context: SecurityContext, endpoint_id: int) -> bool:
    """True if the user may deploy to the endpoint."""
    if context.is_admin:
        return True
    return bool(_matching_authorizations(db, context, endpoint_id))


def is_admin_or_endpoint_admin(db: DatabaseManager, context: SecurityContext, endpoint_id: int) -> bool:
    """True if the user is an administrator or holds the endpoint_admin role on the endpoint."""
    if context.is_admin:
        return True
    return any(
        authorization.role == ENDPOINT_ROLE_ADMIN
        for authorization in _matching_authorizations(db, context, endpoint_id)
    )


def filter_registries(registries: List[Registry], context: SecurityContext) -> List[Registry]:
    """
    Keep the registries the user may pull from.

    Administrators keep every registry.
    """
    if context.is_admin:
        return list(registries)

    team_ids = set(context.team_ids)
    allowed = []
    for registry in registries:
        if context.user_id in (registry.user_accesses or []):
            allowed.append(registry)
        elif team_ids.intersection(registry.team_accesses or []):
            allowed.append(registry)
    return allowed


def can_access_resource(resource_control: Optional[ResourceControl], context: SecurityContext) -> bool:
    """
    True if the user may see and manage a resource.

    A resource without a resource control is treated as administrators only.
    """
    if context.is_admin:
        return True
    if resource_control is None or resource_control.administrators_only:
        return False
    if resource_control.public:
        return True
    if context.user_id in (resource_control.user_accesses or []):
        return True
    return bool(set(context.team_ids).intersection(resource_control.team_accesses or []))


def new_stack_resource_control(resource_id: str, resource_type: str, context: SecurityContext) -> ResourceControl:
    """
    Ownership record for a newly created resource.

    Administrators get an administrators-only control; other users a private
    control listing only themselves.
    """
    if context.is_admin:
        return ResourceControl(
            resource_id=resource_id,
            type=resource_type,
            user_accesses=[],
            team_accesses=[],
            public=False,
            administrators_only=True,
        )
    return ResourceControl(
        resource_id=resource_id,
        type=resource_type,
        user_accesses=[context.user_id],
        team_accesses=[],
        public=False,
        administrators_only=False,
    )
