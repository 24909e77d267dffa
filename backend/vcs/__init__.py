"""
Git operations for repository-backed stacks.

This module provides:
- GitService: clone a repository into a stack project directory
- get_git_service(): Singleton accessor
"""
from vcs.git_service import (
    GitService,
    GitCloneError,
    GitNotAvailableError,
    get_git_service,
    parse_reference_name,
)

__all__ = [
    'GitService',
    'GitCloneError',
    'GitNotAvailableError',
    'get_git_service',
    'parse_reference_name',
]
