"""
Unit tests for stack name normalization and uniqueness.
"""

import time

import pytest

from database import Endpoint, Stack
from deployment.stack_names import is_unique_stack_name, normalize_stack_name


def _stack(db, stack_id, name, endpoint_id):
    stack = Stack(
        id=stack_id, name=name, endpoint_id=endpoint_id, entry_point="docker-compose.yml",
        project_path=f"/tmp/{stack_id}", env=[], creation_date=int(time.time()),
    )
    return db.create_stack(stack)


class TestNormalizeStackName:
    """Test conversion to compose project names"""

    @pytest.mark.parametrize("raw,expected", [
        ("web", "web"),
        ("Web", "web"),
        ("My Web-App", "myweb-app"),
        ("API_v2", "api_v2"),
        ("app.prod", "appprod"),
        ("!!!", ""),
        ("", ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_stack_name(raw) == expected

    def test_none_is_empty(self):
        assert normalize_stack_name(None) == ""


class TestIsUniqueStackName:
    """Test per-endpoint uniqueness"""

    def test_unique_when_no_stacks(self, db, endpoint):
        assert is_unique_stack_name(db, endpoint.id, "web") is True

    def test_collision_is_case_insensitive(self, db, endpoint):
        """Should treat WEB and web as the same name"""
        _stack(db, 1, "web", endpoint.id)

        assert is_unique_stack_name(db, endpoint.id, "web") is False
        assert is_unique_stack_name(db, endpoint.id, "WEB") is False
        assert is_unique_stack_name(db, endpoint.id, "app") is True

    def test_other_endpoints_do_not_collide(self, db, endpoint, add_record):
        """Should allow the same name on a different endpoint"""
        other = add_record(Endpoint(name="remote", url="tcp://10.0.0.5:2376"))
        _stack(db, 1, "web", other.id)

        assert is_unique_stack_name(db, endpoint.id, "web") is True

    def test_excluded_stack_is_ignored(self, db, endpoint):
        """Should let an update keep its own name"""
        _stack(db, 1, "web", endpoint.id)
        _stack(db, 2, "app", endpoint.id)

        assert is_unique_stack_name(db, endpoint.id, "web", exclude_stack_id=1) is True
        assert is_unique_stack_name(db, endpoint.id, "app", exclude_stack_id=1) is False
