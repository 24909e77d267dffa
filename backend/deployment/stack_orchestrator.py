"""
Stack deployment orchestrator.

Turns a stack source into a running compose project on an endpoint:

    1. Validate the payload, the endpoint and the user's access to it
    2. Reject a name already used on the endpoint (case-insensitive)
    3. Materialize the files under the stack's project directory
    4. Enforce the endpoint's security settings for regular users
    5. Log in to registries, `docker compose up`, log out (serialized)
    6. Persist the stack and its resource control

Nothing is written to the database until the deployment succeeded. Any
failure after step 3 has started removes the project directory again
(ProjectRollbackGuard), so a failed create leaves no trace on disk.

A failure in step 6 leaves the workload running on the endpoint without a
database record; this is logged at error level.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from database import (
    DatabaseManager, DockerHub, DuplicateObjectError, Endpoint, ObjectNotFoundError,
    Registry, ResourceControl, Stack,
    RESOURCE_TYPE_STACK, STACK_STATUS_ACTIVE, STACK_TYPE_COMPOSE, stack_resource_id,
)
from auth.api_key_auth import SecurityContext
from auth.authorization import (
    can_access_resource, filter_registries, has_endpoint_access,
    is_admin_or_endpoint_admin, new_stack_resource_control,
)
from . import stack_storage
from .compose_interpolation import build_interpolation_environment
from .compose_manager import RESERVED_ENV_PREFIXES, ComposeManager, get_compose_manager
from .errors import (
    AccessDeniedError, ConflictError, DeploymentError, NotFoundError,
    PersistenceError, StorageError, ValidationError,
)
from .registry_session import build_credentials, deploy_stack
from .security_validator import SecuritySettings, SecurityValidator
from .source_resolver import (
    InlineContent, RepositoryDescriptor, StackSource, UploadedBytes,
    entry_point_for, resolve_source,
)
from .stack_names import is_unique_stack_name, normalize_stack_name
from .state_machine import DeploymentStage, DeploymentStageTracker

logger = logging.getLogger(__name__)


@dataclass
class DeploymentConfig:
    """Everything a single deployment needs, gathered once per request."""
    stack: Stack
    endpoint: Endpoint
    context: SecurityContext
    is_admin_or_endpoint_admin: bool
    dockerhub: Optional[DockerHub] = None
    registries: List[Registry] = field(default_factory=list)


class ProjectRollbackGuard:
    """
    Removes a stack's project directory when the guarded block fails.

    Armed on creation; call disarm() once the deployment is persisted.
    Rollback runs at most once and never raises: failures are logged so the
    original error reaches the caller.

    Usage:
        async with ProjectRollbackGuard(project_path, tracker) as guard:
            ...
            guard.disarm()
    """

    def __init__(self, project_path, tracker: Optional[DeploymentStageTracker] = None):
        self.project_path = Path(project_path)
        self.tracker = tracker
        self._armed = True
        self._rolled_back = False

    def disarm(self) -> None:
        self._armed = False

    async def rollback(self) -> None:
        if self._rolled_back:
            return
        self._rolled_back = True
        try:
            await self._undo()
        except Exception as e:
            logger.error(f"Rollback of {self.project_path} failed: {e}")

    async def _undo(self) -> None:
        await stack_storage.remove_project_directory(self.project_path)

    async def __aenter__(self) -> 'ProjectRollbackGuard':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None and self._armed:
            logger.warning(f"Rolling back {self.project_path} after failure: {exc}")
            await self.rollback()
            if self.tracker is not None and self.tracker.can_roll_back:
                self.tracker.advance(DeploymentStage.ROLLED_BACK)
        return False


class StackFileRestoreGuard(ProjectRollbackGuard):
    """
    Puts the previous stack file back when an update fails.

    Set after_restore to a coroutine function to run once the file is back,
    e.g. to restart a project that the update had stopped.
    """

    def __init__(self, project_path, stack_id: int, entry_point: str, previous_content: bytes,
                 tracker: Optional[DeploymentStageTracker] = None):
        super().__init__(project_path, tracker)
        self.stack_id = stack_id
        self.entry_point = entry_point
        self.previous_content = previous_content
        self.after_restore: Optional[Callable[[], Awaitable[None]]] = None

    async def _undo(self) -> None:
        await stack_storage.store_stack_file_from_bytes(self.stack_id, self.entry_point, self.previous_content)
        logger.info(f"Restored previous {self.entry_point} for stack {self.stack_id}")
        if self.after_restore is not None:
            await self.after_restore()


def _stack_response(stack: Stack, resource_control: Optional[ResourceControl]) -> Dict[str, Any]:
    data = stack.to_dict()
    data["resource_control"] = resource_control.to_dict() if resource_control else None
    return data


class StackOrchestrator:
    """Create, update, delete and inspect compose stacks."""

    def __init__(self, db: DatabaseManager, compose_manager: Optional[ComposeManager] = None):
        self.db = db
        self.compose_manager = compose_manager or get_compose_manager()
        self.security_validator = SecurityValidator()

    # ==================== Create ====================

    async def create_compose_stack(
        self,
        context: SecurityContext,
        endpoint_id: int,
        name: str,
        source: StackSource,
        env: Optional[List[Dict[str, str]]] = None,
    ) -> Dict[str, Any]:
        """
        Deploy a new compose stack.

        Returns:
            Stack as a dict, including its resource control

        Raises:
            ValidationError, NotFoundError, AccessDeniedError, ConflictError,
            StorageError, PolicyViolationError, DeploymentError, PersistenceError
        """
        tracker = DeploymentStageTracker(f"stack '{name}' on endpoint {endpoint_id}")

        name = self._validate_name(name)
        env = self._validate_env(env)
        self._validate_source(source)
        endpoint = self._get_accessible_endpoint(context, endpoint_id)

        tracker.advance(DeploymentStage.NAME_CHECKING)
        if not is_unique_stack_name(self.db, endpoint.id, name):
            raise ConflictError(f"A stack with the name '{name}' already exists on this endpoint")

        tracker.advance(DeploymentStage.SOURCE_RESOLVING)
        stack_id = self.db.get_next_identifier("stacks")
        project_path = stack_storage.get_stack_project_path(stack_id)
        stack = Stack(
            id=stack_id,
            name=name,
            type=STACK_TYPE_COMPOSE,
            endpoint_id=endpoint.id,
            entry_point=entry_point_for(source),
            project_path=str(project_path),
            env=env,
            status=STACK_STATUS_ACTIVE,
            creation_date=int(time.time()),
            created_by=context.username,
        )

        async with ProjectRollbackGuard(project_path, tracker) as guard:
            resolved = await resolve_source(stack_id, source)
            stack.project_path = str(resolved.project_path)
            stack.entry_point = resolved.entry_point

            tracker.advance(DeploymentStage.POLICY_CHECKING)
            config = self._build_config(stack, endpoint, context)
            await self._check_policy(config)

            tracker.advance(DeploymentStage.CREDENTIALED_DEPLOYING)
            await self._deploy(config)

            tracker.advance(DeploymentStage.PERSISTING)
            resource_control = new_stack_resource_control(
                stack_resource_id(endpoint.id, name), RESOURCE_TYPE_STACK, context
            )
            self._persist(stack, lambda: self.db.create_stack(stack, resource_control))

            guard.disarm()
            tracker.advance(DeploymentStage.DONE)

        logger.info(f"Stack {stack.name} (id {stack.id}) created on endpoint {endpoint.id} by {context.username}")
        return _stack_response(stack, resource_control)

    # ==================== Update ====================

    async def update_compose_stack(
        self,
        context: SecurityContext,
        stack_id: int,
        endpoint_id: Optional[int],
        content: str,
        env: Optional[List[Dict[str, str]]] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Redeploy an existing stack with new file content and environment.

        An optional new name renames the compose project. The old project is
        taken down before the renamed one is deployed, since both would claim
        the same ports and container names.

        The previous file content is restored if the update fails, and a
        project stopped for a rename is brought back up under its old name.
        """
        stack = self._get_stack(stack_id)
        tracker = DeploymentStageTracker(f"stack '{stack.name}' (id {stack.id})")

        if endpoint_id is not None and endpoint_id != stack.endpoint_id:
            raise NotFoundError("Unable to find a stack with the specified identifier on this endpoint")
        if stack.type != STACK_TYPE_COMPOSE:
            raise ValidationError("Only compose stacks can be updated")
        if not content or not content.strip():
            raise ValidationError("Invalid stack file content")
        env = self._validate_env(env)
        new_name = self._validate_name(name) if name is not None else stack.name

        endpoint = self._get_accessible_endpoint(context, stack.endpoint_id)
        old_resource_id = stack_resource_id(stack.endpoint_id, stack.name)
        resource_control = self.db.get_resource_control(old_resource_id, RESOURCE_TYPE_STACK)
        if not can_access_resource(resource_control, context):
            raise AccessDeniedError("Access denied to resource")

        tracker.advance(DeploymentStage.NAME_CHECKING)
        if not is_unique_stack_name(self.db, endpoint.id, new_name, exclude_stack_id=stack.id):
            raise ConflictError(f"A stack with the name '{new_name}' already exists on this endpoint")

        tracker.advance(DeploymentStage.SOURCE_RESOLVING)
        project_path = Path(stack.project_path)
        try:
            file_path = stack_storage.resolve_entry_point(project_path, stack.entry_point)
            previous_content = await stack_storage.read_file_content(file_path)
        except (OSError, ValueError) as e:
            raise StorageError("Unable to read existing Compose file from disk", e)

        old_project = Stack(
            id=stack.id, name=stack.name, endpoint_id=stack.endpoint_id,
            entry_point=stack.entry_point, project_path=stack.project_path, env=stack.env,
        )
        async with StackFileRestoreGuard(project_path, stack.id, stack.entry_point, previous_content,
                                         tracker) as guard:
            try:
                await stack_storage.store_stack_file_from_bytes(
                    stack.id, stack.entry_point, content.encode('utf-8')
                )
            except (OSError, ValueError) as e:
                raise StorageError("Unable to persist updated Compose file on disk", e)

            stack.name = new_name
            stack.env = env
            stack.update_date = int(time.time())
            stack.updated_by = context.username

            tracker.advance(DeploymentStage.POLICY_CHECKING)
            config = self._build_config(stack, endpoint, context)
            await self._check_policy(config)

            tracker.advance(DeploymentStage.CREDENTIALED_DEPLOYING)
            if old_project.name != new_name:
                guard.after_restore = lambda: self._restore_previous_project(
                    replace(config, stack=old_project), config
                )
                await asyncio.to_thread(self.compose_manager.down, old_project, endpoint)
            await self._deploy(config)

            tracker.advance(DeploymentStage.PERSISTING)
            if resource_control is not None:
                resource_control.resource_id = stack_resource_id(stack.endpoint_id, new_name)
            self._persist(stack, lambda: self.db.update_stack(stack, resource_control))

            guard.disarm()
            tracker.advance(DeploymentStage.DONE)

        logger.info(f"Stack {stack.name} (id {stack.id}) updated by {context.username}")
        return _stack_response(stack, resource_control)

    async def _restore_previous_project(self, previous: DeploymentConfig, renamed: DeploymentConfig) -> None:
        """Best-effort: remove whatever runs under the new name, then redeploy the old project."""
        try:
            await asyncio.to_thread(self.compose_manager.down, renamed.stack, renamed.endpoint)
        except DeploymentError as e:
            logger.warning(f"Could not remove project {renamed.stack.name} after failed rename: {e.details}")

        try:
            await self._deploy(previous)
            logger.info(f"Restarted project {previous.stack.name} after failed rename of stack {previous.stack.id}")
        except DeploymentError as e:
            logger.error(f"Project {previous.stack.name} could not be restarted after failed rename: {e.details}")

    # ==================== Delete ====================

    async def delete_stack(self, context: SecurityContext, stack_id: int, endpoint_id: Optional[int] = None) -> None:
        """
        Stop a stack, then remove its record and project directory.

        Raises:
            NotFoundError, AccessDeniedError, DeploymentError, StorageError
        """
        stack = self._get_stack(stack_id)
        if endpoint_id is not None and endpoint_id != stack.endpoint_id:
            raise NotFoundError("Unable to find a stack with the specified identifier on this endpoint")

        endpoint = self._get_accessible_endpoint(context, stack.endpoint_id)
        resource_control = self.db.get_resource_control(
            stack_resource_id(stack.endpoint_id, stack.name), RESOURCE_TYPE_STACK
        )
        if not can_access_resource(resource_control, context):
            raise AccessDeniedError("Access denied to resource")

        await asyncio.to_thread(self.compose_manager.down, stack, endpoint)

        try:
            self.db.delete_stack(stack.id)
        except SQLAlchemyError as e:
            raise PersistenceError("Unable to remove the stack from the database", e)

        try:
            await stack_storage.remove_project_directory(stack.project_path)
        except (OSError, ValueError) as e:
            raise StorageError("Unable to remove stack files from disk", e)

        logger.info(f"Stack {stack.name} (id {stack.id}) deleted by {context.username}")

    # ==================== Inspect ====================

    def list_stacks(self, context: SecurityContext, endpoint_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Stacks visible to the user, optionally on one endpoint."""
        controls = {
            rc.resource_id: rc for rc in self.db.get_resource_controls(RESOURCE_TYPE_STACK)
        }
        result = []
        for stack in self.db.get_stacks(endpoint_id=endpoint_id):
            resource_control = controls.get(stack_resource_id(stack.endpoint_id, stack.name))
            if can_access_resource(resource_control, context):
                result.append(_stack_response(stack, resource_control))
        return result

    def get_stack(self, context: SecurityContext, stack_id: int) -> Dict[str, Any]:
        stack = self._get_stack(stack_id)
        resource_control = self._get_accessible_resource_control(context, stack)
        return _stack_response(stack, resource_control)

    async def get_stack_file(self, context: SecurityContext, stack_id: int) -> Dict[str, str]:
        """Entry point content of a stack."""
        stack = self._get_stack(stack_id)
        self._get_accessible_resource_control(context, stack)

        try:
            file_path = stack_storage.resolve_entry_point(Path(stack.project_path), stack.entry_point)
            content = await stack_storage.read_file_content(file_path)
        except (OSError, ValueError) as e:
            raise StorageError("Unable to retrieve Compose file from disk", e)
        return {"StackFileContent": content.decode('utf-8', errors='replace')}

    # ==================== Stages ====================

    def _validate_name(self, name: Optional[str]) -> str:
        if not name or not name.strip():
            raise ValidationError("Invalid stack name")
        normalized = normalize_stack_name(name)
        if not normalized:
            raise ValidationError(
                "Invalid stack name. Use lowercase letters, digits, hyphens and underscores"
            )
        return normalized

    def _validate_env(self, env: Optional[List[Dict[str, str]]]) -> List[Dict[str, str]]:
        pairs = []
        for pair in env or []:
            pair_name = pair.get('name') if isinstance(pair, dict) else None
            if not isinstance(pair_name, str) or not pair_name.strip():
                raise ValidationError("Invalid environment variable name")
            if pair_name.strip().upper().startswith(RESERVED_ENV_PREFIXES):
                raise ValidationError(f"Environment variable name {pair_name.strip()} is reserved")
            value = pair.get('value')
            pairs.append({'name': pair_name.strip(), 'value': '' if value is None else str(value)})
        return pairs

    def _validate_source(self, source: StackSource) -> None:
        if isinstance(source, InlineContent):
            if not source.content or not source.content.strip():
                raise ValidationError("Invalid stack file content")
        elif isinstance(source, UploadedBytes):
            if not source.content:
                raise ValidationError("Invalid Compose file. Ensure that the Compose file is uploaded correctly")
        elif isinstance(source, RepositoryDescriptor):
            if not source.url or not source.url.strip():
                raise ValidationError("Invalid repository URL. Must correspond to a valid URL format")
            if source.authentication and (not source.username or not source.password):
                raise ValidationError(
                    "Invalid repository credentials. Username and password must be specified "
                    "when authentication is enabled"
                )
            try:
                stack_storage.resolve_entry_point(stack_storage.STACKS_DIR, source.entry_point)
            except ValueError as e:
                raise ValidationError("Invalid Compose file path in repository", e)
        else:
            raise ValidationError(f"Unsupported stack source: {type(source).__name__}")

    def _get_accessible_endpoint(self, context: SecurityContext, endpoint_id: int) -> Endpoint:
        try:
            endpoint = self.db.get_endpoint(endpoint_id)
        except ObjectNotFoundError as e:
            raise NotFoundError("Unable to find an endpoint with the specified identifier inside the database", e)
        if not has_endpoint_access(self.db, context, endpoint.id):
            raise AccessDeniedError("Permission denied to access endpoint")
        return endpoint

    def _get_stack(self, stack_id: int) -> Stack:
        try:
            return self.db.get_stack(stack_id)
        except ObjectNotFoundError as e:
            raise NotFoundError("Unable to find a stack with the specified identifier inside the database", e)

    def _get_accessible_resource_control(self, context: SecurityContext, stack: Stack) -> Optional[ResourceControl]:
        resource_control = self.db.get_resource_control(
            stack_resource_id(stack.endpoint_id, stack.name), RESOURCE_TYPE_STACK
        )
        if not can_access_resource(resource_control, context):
            raise AccessDeniedError("Access denied to resource")
        return resource_control

    def _build_config(self, stack: Stack, endpoint: Endpoint, context: SecurityContext) -> DeploymentConfig:
        return DeploymentConfig(
            stack=stack,
            endpoint=endpoint,
            context=context,
            is_admin_or_endpoint_admin=is_admin_or_endpoint_admin(self.db, context, endpoint.id),
            dockerhub=self.db.get_dockerhub(),
            registries=filter_registries(self.db.get_registries(), context),
        )

    async def _check_policy(self, config: DeploymentConfig) -> None:
        """
        Enforce the endpoint's security settings for regular users.

        Raises:
            StorageError: If the entry point cannot be read back
            ValidationError: If the stack file cannot be parsed
            PolicyViolationError: If the file uses disallowed directives
        """
        if config.is_admin_or_endpoint_admin:
            return

        settings = SecuritySettings.from_endpoint(config.endpoint)
        if settings.all_allowed:
            return

        stack = config.stack
        try:
            file_path = stack_storage.resolve_entry_point(Path(stack.project_path), stack.entry_point)
            content = await stack_storage.read_file_content(file_path)
        except (OSError, ValueError) as e:
            raise StorageError("Unable to read Compose file from disk", e)

        environment = await asyncio.to_thread(build_interpolation_environment, file_path.parent, stack.env)
        self.security_validator.validate_stack_file(content, settings, environment)

    async def _deploy(self, config: DeploymentConfig) -> None:
        credentials = build_credentials(config.dockerhub, config.registries)
        await asyncio.to_thread(
            deploy_stack, self.compose_manager, config.stack, config.endpoint, credentials
        )

    def _persist(self, stack: Stack, write) -> None:
        """
        Run a metadata write for a stack that is already deployed.

        Raises:
            ConflictError: If another stack took the name meanwhile
            PersistenceError: If the write fails
        """
        try:
            write()
        except DuplicateObjectError as e:
            logger.error(
                f"Stack {stack.name} is running on endpoint {stack.endpoint_id} "
                f"but its name was taken concurrently: {e}"
            )
            raise ConflictError(f"A stack with the name '{stack.name}' already exists on this endpoint", e)
        except SQLAlchemyError as e:
            logger.error(
                f"Stack {stack.name} is running on endpoint {stack.endpoint_id} "
                f"but could not be persisted: {e}"
            )
            raise PersistenceError("Unable to persist the stack inside the database", e)
