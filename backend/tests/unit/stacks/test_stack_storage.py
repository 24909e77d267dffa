"""
Unit tests for Stack Storage module.

Tests filesystem operations for stack project directories:
- Project path computation (pure, ID based)
- Entry point resolution and traversal prevention
- Byte-for-byte write/read
- Idempotent directory removal
"""

from pathlib import Path

import pytest

from deployment import stack_storage
from deployment.stack_storage import (
    COMPOSE_FILE_DEFAULT_NAME,
    get_stack_project_path,
    read_file_content,
    remove_project_directory,
    resolve_entry_point,
    store_stack_file_from_bytes,
    validate_path_safety,
)


class TestGetStackProjectPath:
    """Test project path computation"""

    def test_path_is_stack_id_under_stacks_dir(self, temp_stacks_dir):
        """Should place each stack in a directory named after its ID"""
        assert get_stack_project_path(7) == temp_stacks_dir / "7"
        assert get_stack_project_path("12") == temp_stacks_dir / "12"

    def test_does_not_touch_filesystem(self, temp_stacks_dir):
        """Should compute the path without creating it"""
        path = get_stack_project_path(3)
        assert not path.exists()

    @pytest.mark.parametrize("folder_id", [0, -1, "abc", "../1", "", "1/2"])
    def test_rejects_invalid_identifiers(self, temp_stacks_dir, folder_id):
        """Should reject anything but a positive integer"""
        with pytest.raises(ValueError, match="Invalid stack folder identifier"):
            get_stack_project_path(folder_id)


class TestResolveEntryPoint:
    """Test entry point resolution"""

    def test_nested_entry_point(self, tmp_path):
        """Should allow sub-directories inside the project"""
        assert resolve_entry_point(tmp_path, "deploy/prod.yml") == tmp_path / "deploy" / "prod.yml"

    def test_rejects_empty(self, tmp_path):
        with pytest.raises(ValueError, match="cannot be empty"):
            resolve_entry_point(tmp_path, "  ")

    def test_rejects_absolute(self, tmp_path):
        with pytest.raises(ValueError, match="relative"):
            resolve_entry_point(tmp_path, "/etc/passwd")

    def test_rejects_traversal(self, tmp_path):
        """Should reject entry points escaping the project directory"""
        with pytest.raises(ValueError, match="escapes"):
            resolve_entry_point(tmp_path, "../../etc/passwd")


class TestValidatePathSafety:
    """Test path traversal prevention"""

    def test_accepts_path_inside_stacks_dir(self, temp_stacks_dir):
        validate_path_safety(temp_stacks_dir / "1")

    def test_rejects_path_outside_stacks_dir(self, temp_stacks_dir, tmp_path):
        with pytest.raises(ValueError, match="escapes"):
            validate_path_safety(tmp_path / "elsewhere")

    def test_rejects_symlink(self, temp_stacks_dir, tmp_path):
        """Should reject symlinks even when they point inside"""
        target = tmp_path / "target"
        target.mkdir()
        link = temp_stacks_dir / "5"
        link.symlink_to(target)

        with pytest.raises(ValueError, match="Symlinks"):
            validate_path_safety(link)


class TestStoreAndRead:
    """Test write/read round trip"""

    @pytest.mark.asyncio
    async def test_store_returns_project_path(self, temp_stacks_dir):
        """Should create the directory and return it"""
        project_path = await store_stack_file_from_bytes(1, COMPOSE_FILE_DEFAULT_NAME, b"services: {}\n")

        assert project_path == temp_stacks_dir / "1"
        assert (project_path / COMPOSE_FILE_DEFAULT_NAME).is_file()

    @pytest.mark.asyncio
    async def test_content_is_stored_verbatim(self, temp_stacks_dir):
        """Should not alter bytes (comments, CRLF, non-UTF-8)"""
        content = b"# comment\r\nservices:\r\n  web:\r\n    image: nginx\r\n\xff"
        project_path = await store_stack_file_from_bytes(2, COMPOSE_FILE_DEFAULT_NAME, content)

        assert await read_file_content(project_path / COMPOSE_FILE_DEFAULT_NAME) == content

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, temp_stacks_dir):
        """Should replace the file atomically"""
        await store_stack_file_from_bytes(3, "stack.yml", b"one")
        project_path = await store_stack_file_from_bytes(3, "stack.yml", b"two")

        assert (project_path / "stack.yml").read_bytes() == b"two"
        assert [p.name for p in project_path.iterdir()] == ["stack.yml"]

    @pytest.mark.asyncio
    async def test_rejects_traversing_entry_point(self, temp_stacks_dir):
        with pytest.raises(ValueError):
            await store_stack_file_from_bytes(4, "../4-evil.yml", b"x")

    @pytest.mark.asyncio
    async def test_read_missing_file_raises(self, temp_stacks_dir):
        with pytest.raises(FileNotFoundError):
            await read_file_content(temp_stacks_dir / "missing.yml")


class TestRemoveProjectDirectory:
    """Test idempotent removal"""

    @pytest.mark.asyncio
    async def test_removes_directory_tree(self, temp_stacks_dir):
        project_path = await store_stack_file_from_bytes(9, "nested/compose.yml", b"x")

        assert await remove_project_directory(project_path) is True
        assert not project_path.exists()

    @pytest.mark.asyncio
    async def test_second_removal_is_noop(self, temp_stacks_dir):
        """Should return False when the directory is already gone"""
        project_path = await store_stack_file_from_bytes(10, COMPOSE_FILE_DEFAULT_NAME, b"x")

        assert await remove_project_directory(project_path) is True
        assert await remove_project_directory(project_path) is False

    @pytest.mark.asyncio
    async def test_refuses_path_outside_stacks_dir(self, temp_stacks_dir, tmp_path):
        """Should never delete outside STACKS_DIR"""
        outside = tmp_path / "outside"
        outside.mkdir()

        with pytest.raises(ValueError, match="escapes"):
            await remove_project_directory(outside)
        assert outside.exists()
