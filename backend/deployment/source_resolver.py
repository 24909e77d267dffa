"""
Stack source resolution.

A stack's files come from exactly one origin:
    - InlineContent: compose file text sent in the request body
    - UploadedBytes: compose file uploaded as multipart form data
    - RepositoryDescriptor: git repository cloned into the project directory

Each variant has its own resolver; resolve_source() dispatches on the
variant's SourceMethod. Every resolver writes into the directory derived
from the stack ID, so the caller always knows what to clean up.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from . import stack_storage
from .errors import StorageError, ValidationError
from .stack_storage import COMPOSE_FILE_DEFAULT_NAME

logger = logging.getLogger(__name__)


class SourceMethod(str, Enum):
    """Origin of a stack's files (the `method` query parameter)."""
    STRING = "string"
    FILE = "file"
    REPOSITORY = "repository"


@dataclass(frozen=True)
class InlineContent:
    content: str
    method = SourceMethod.STRING


@dataclass(frozen=True)
class UploadedBytes:
    content: bytes
    filename: Optional[str] = None
    method = SourceMethod.FILE


@dataclass(frozen=True, repr=False)
class RepositoryDescriptor:
    """
    Repository to clone.

    Attributes:
        url: Repository URL
        reference_name: Branch, tag or refs/* reference; blank = default branch
        authentication: Use basic auth
        username: Basic-auth username (required with authentication)
        password: Basic-auth password or token (required with authentication)
        compose_file_path: Entry point inside the repository
    """
    url: str
    reference_name: Optional[str] = None
    authentication: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    compose_file_path: Optional[str] = None
    method = SourceMethod.REPOSITORY

    @property
    def entry_point(self) -> str:
        if self.compose_file_path and self.compose_file_path.strip():
            return self.compose_file_path.strip()
        return COMPOSE_FILE_DEFAULT_NAME

    def __repr__(self) -> str:
        # Never expose the password in logs or tracebacks
        return (
            f"RepositoryDescriptor(url={self.url!r}, reference_name={self.reference_name!r}, "
            f"authentication={self.authentication}, compose_file_path={self.compose_file_path!r})"
        )


StackSource = Union[InlineContent, UploadedBytes, RepositoryDescriptor]


@dataclass
class ResolvedSource:
    """Where a stack's files ended up."""
    project_path: Path
    entry_point: str


def entry_point_for(source: StackSource) -> str:
    """Entry point a source will produce, known before anything is written."""
    if isinstance(source, RepositoryDescriptor):
        return source.entry_point
    return COMPOSE_FILE_DEFAULT_NAME


async def _resolve_inline(stack_id: int, source: InlineContent) -> ResolvedSource:
    return await _store_bytes(stack_id, source.content.encode('utf-8'))


async def _resolve_upload(stack_id: int, source: UploadedBytes) -> ResolvedSource:
    return await _store_bytes(stack_id, source.content)


async def _store_bytes(stack_id: int, content: bytes) -> ResolvedSource:
    try:
        project_path = await stack_storage.store_stack_file_from_bytes(
            stack_id, COMPOSE_FILE_DEFAULT_NAME, content
        )
    except (OSError, ValueError) as e:
        raise StorageError("Unable to persist Compose file on disk", e)
    return ResolvedSource(project_path=project_path, entry_point=COMPOSE_FILE_DEFAULT_NAME)


async def _resolve_repository(stack_id: int, source: RepositoryDescriptor) -> ResolvedSource:
    from vcs.git_service import GitCloneError, GitNotAvailableError, get_git_service

    project_path = stack_storage.get_stack_project_path(stack_id)
    entry_point = source.entry_point
    try:
        stack_storage.resolve_entry_point(project_path, entry_point)
    except ValueError as e:
        raise ValidationError("Invalid Compose file path in repository", e)

    try:
        await get_git_service().clone(
            source.url,
            project_path,
            reference_name=source.reference_name,
            authentication=source.authentication,
            username=source.username,
            password=source.password,
        )
    except (GitCloneError, GitNotAvailableError, OSError) as e:
        raise StorageError("Unable to clone git repository", e)

    return ResolvedSource(project_path=project_path, entry_point=entry_point)


_RESOLVERS = {
    SourceMethod.STRING: _resolve_inline,
    SourceMethod.FILE: _resolve_upload,
    SourceMethod.REPOSITORY: _resolve_repository,
}


async def resolve_source(stack_id: int, source: StackSource) -> ResolvedSource:
    """
    Materialize a stack's files under its project directory.

    Args:
        stack_id: Identifier of the stack owning the project directory
        source: One of InlineContent, UploadedBytes, RepositoryDescriptor

    Returns:
        ResolvedSource with project path and entry point

    Raises:
        StorageError: If writing or cloning fails
        ValidationError: If the repository entry point is unsafe
    """
    resolver = _RESOLVERS[source.method]
    logger.debug(f"Resolving {source.method.value} source for stack {stack_id}")
    return await resolver(stack_id, source)
