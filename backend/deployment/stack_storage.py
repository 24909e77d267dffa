"""
Filesystem project storage for stacks.

Simple file I/O - no database interaction.

Each stack owns one directory named after its numeric ID under STACKS_DIR.
Stack files are stored and read back byte-for-byte.

All public I/O functions are async to avoid blocking the event loop on slow
storage (NFS, etc.). Uses asyncio.to_thread() for synchronous filesystem
operations.
"""
import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

import aiofiles

from config import paths

logger = logging.getLogger(__name__)

STACKS_DIR = Path(paths.STACKS_DIR)

# Entry point used for inline and uploaded stack files, and for
# repositories when the caller does not name one
COMPOSE_FILE_DEFAULT_NAME = "docker-compose.yml"


def validate_path_safety(path: Path) -> None:
    """
    Ensure path is within STACKS_DIR and not a symlink escape.

    Prevents path traversal attacks like "../../../etc/passwd".
    Also rejects symlinks to prevent TOCTOU race conditions.

    Raises:
        ValueError: If path escapes stacks directory or is a symlink
    """
    if path.is_symlink():
        raise ValueError("Symlinks not allowed in stacks directory")

    resolved = path.resolve()
    stacks_resolved = STACKS_DIR.resolve()
    if not str(resolved).startswith(str(stacks_resolved) + os.sep) and resolved != stacks_resolved:
        raise ValueError("Path escapes stacks directory")


def get_stack_project_path(folder_id: Union[int, str]) -> Path:
    """
    Get the project directory for a stack.

    Pure path computation, no filesystem access. Used to know the cleanup
    target before anything is written or cloned.

    Raises:
        ValueError: If folder_id is not a positive integer identifier
    """
    folder = str(folder_id)
    if not folder.isdigit() or int(folder) <= 0:
        raise ValueError(f"Invalid stack folder identifier: {folder_id!r}")
    return STACKS_DIR / folder


def resolve_entry_point(project_path: Path, entry_point: str) -> Path:
    """
    Join an entry point to its project directory.

    Raises:
        ValueError: If the entry point is empty, absolute, or escapes the project
    """
    if not entry_point or not entry_point.strip():
        raise ValueError("Entry point cannot be empty")
    if os.path.isabs(entry_point):
        raise ValueError("Entry point must be relative to the project directory")

    full_path = Path(project_path) / entry_point
    try:
        full_path.resolve().relative_to(Path(project_path).resolve())
    except ValueError:
        raise ValueError(f"Entry point '{entry_point}' escapes the project directory")
    return full_path


async def _atomic_write_bytes(target_path: Path, content: bytes) -> None:
    """Write content atomically using temp file + rename pattern."""
    fd, temp_path = tempfile.mkstemp(dir=target_path.parent, suffix='.tmp')
    try:
        async with aiofiles.open(fd, 'wb', closefd=True) as f:
            await f.write(content)
        await asyncio.to_thread(Path(temp_path).rename, target_path)
    except Exception:
        await asyncio.to_thread(Path(temp_path).unlink, True)  # missing_ok=True
        raise


async def store_stack_file_from_bytes(
    folder_id: Union[int, str],
    entry_point: str,
    content: bytes,
) -> Path:
    """
    Write a stack file into the stack's project directory.

    Creates the directory (and any sub-directory of the entry point) if needed.

    Args:
        folder_id: Stack identifier owning the directory
        entry_point: File name relative to the project directory
        content: Raw file content, stored verbatim

    Returns:
        Project directory path

    Raises:
        ValueError: If the folder or entry point is invalid
        OSError: If the file cannot be written
    """
    project_path = get_stack_project_path(folder_id)
    file_path = resolve_entry_point(project_path, entry_point)

    await asyncio.to_thread(file_path.parent.mkdir, parents=True, exist_ok=True)
    validate_path_safety(project_path)

    await _atomic_write_bytes(file_path, content)

    logger.debug(f"Stored stack file {entry_point} for stack {folder_id} in {project_path}")
    return project_path


async def read_file_content(path: Union[str, Path]) -> bytes:
    """
    Read a file back verbatim.

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    async with aiofiles.open(path, 'rb') as f:
        return await f.read()


async def remove_project_directory(project_path: Union[str, Path]) -> bool:
    """
    Delete a stack project directory and all contents.

    Idempotent: removing a missing directory is a no-op.

    Returns:
        True if something was deleted, False if the directory was already gone
    """
    path = Path(project_path)

    def _delete() -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        validate_path_safety(path)
        shutil.rmtree(path)
        return True

    deleted = await asyncio.to_thread(_delete)
    if deleted:
        logger.info(f"Removed stack project directory {path}")
    return deleted
