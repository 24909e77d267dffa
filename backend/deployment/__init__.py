"""
Deployment module for Harbormaster

Deploys compose stacks with name uniqueness checks, security validation,
serialized registry credentials and rollback of partial failures.

Components:
    - source_resolver: Materializes stack files from content, uploads or git
    - stack_storage: Per-stack project directories on disk
    - stack_names: Name normalization and per-endpoint uniqueness
    - security_validator: Endpoint security settings for regular users
    - registry_session: Credential critical section around deployments
    - compose_manager: docker CLI wrapper (compose up/down, login/logout)
    - stack_orchestrator: Create/update/delete flows with rollback
    - stack_routes: API endpoints for stacks
"""

from .errors import (
    StackError,
    ValidationError,
    NotFoundError,
    AccessDeniedError,
    ConflictError,
    StorageError,
    PolicyViolationError,
    DeploymentError,
    PersistenceError,
)
from .state_machine import DeploymentStage, DeploymentStageTracker
from .security_validator import SecuritySettings, SecurityValidator, SecurityViolation
from .source_resolver import (
    SourceMethod,
    InlineContent,
    UploadedBytes,
    RepositoryDescriptor,
)
from .stack_orchestrator import StackOrchestrator, ProjectRollbackGuard

__all__ = [
    "StackError",
    "ValidationError",
    "NotFoundError",
    "AccessDeniedError",
    "ConflictError",
    "StorageError",
    "PolicyViolationError",
    "DeploymentError",
    "PersistenceError",
    "DeploymentStage",
    "DeploymentStageTracker",
    "SecuritySettings",
    "SecurityValidator",
    "SecurityViolation",
    "SourceMethod",
    "InlineContent",
    "UploadedBytes",
    "RepositoryDescriptor",
    "StackOrchestrator",
    "ProjectRollbackGuard",
]
