"""
Shared pytest fixtures for Harbormaster tests.

Fixtures provided:
- db: Temporary SQLite DatabaseManager, installed as the process-wide instance
- temp_stacks_dir: Stacks directory redirected to tmp_path
- endpoint: Local endpoint with every security setting disallowed
- admin_context / user_context: Security contexts for an administrator and
  a regular user authorized on the endpoint
- mock_compose_manager: ComposeManager mock (no docker CLI calls)
- orchestrator: StackOrchestrator wired to the fixtures above
"""

import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from auth.api_key_auth import SecurityContext
from database import (
    DatabaseManager, Endpoint, EndpointAuthorization, ROLE_ADMIN, ROLE_STANDARD,
    ENDPOINT_ROLE_STANDARD, set_database_manager,
)
from deployment import stack_storage
from deployment.compose_manager import ComposeManager
from deployment.stack_orchestrator import StackOrchestrator


def _add_record(db: DatabaseManager, record):
    """Insert an ORM object and return it (detached, attributes loaded)."""
    with db.get_session() as session:
        session.add(record)
        session.commit()
        return record


@pytest.fixture
def add_record(db):
    """Insert ORM objects into the test database: add_record(Endpoint(...))"""
    return lambda record: _add_record(db, record)


@pytest.fixture
def db(tmp_path):
    """
    Create a temporary SQLite database for testing.

    Installed as the process-wide DatabaseManager for the duration of the test.
    """
    manager = DatabaseManager(str(tmp_path / "harbormaster.db"))
    set_database_manager(manager)
    yield manager
    set_database_manager(None)
    manager.engine.dispose()


@pytest.fixture
def temp_stacks_dir(tmp_path):
    """Redirect stack project directories to a temporary location."""
    stacks_dir = tmp_path / "compose"
    stacks_dir.mkdir()
    with patch.object(stack_storage, 'STACKS_DIR', stacks_dir):
        yield stacks_dir


@pytest.fixture
def endpoint(db):
    return _add_record(db, Endpoint(name="local", url="unix:///var/run/docker.sock"))


@pytest.fixture
def admin_user(db):
    user, api_key = db.create_user("admin", ROLE_ADMIN)
    return user, api_key


@pytest.fixture
def standard_user(db, endpoint):
    """Regular user with a standard authorization on the endpoint."""
    user, api_key = db.create_user("alice", ROLE_STANDARD)
    _add_record(db, EndpointAuthorization(
        endpoint_id=endpoint.id, user_id=user.id, role=ENDPOINT_ROLE_STANDARD
    ))
    return user, api_key


@pytest.fixture
def admin_context(admin_user):
    user, _ = admin_user
    return SecurityContext(user_id=user.id, username=user.username, is_admin=True, team_ids=[])


@pytest.fixture
def user_context(standard_user):
    user, _ = standard_user
    return SecurityContext(user_id=user.id, username=user.username, is_admin=False, team_ids=[])


@pytest.fixture
def mock_compose_manager():
    """ComposeManager whose docker commands all succeed."""
    return MagicMock(spec=ComposeManager)


@pytest.fixture
def orchestrator(db, temp_stacks_dir, mock_compose_manager):
    return StackOrchestrator(db, compose_manager=mock_compose_manager)
