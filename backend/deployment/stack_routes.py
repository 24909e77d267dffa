"""
Stacks API routes for Harbormaster

Provides REST endpoints for compose stack deployment:
- Create a stack from inline content, an uploaded file or a git repository
- List, inspect and read the file of stacks visible to the user
- Update (redeploy) and delete stacks

Errors raised by the orchestrator are StackError subclasses; main.py turns
them into {"message": ..., "details": ...} responses.
"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from auth.api_key_auth import SecurityContext, get_security_context
from database import STACK_TYPE_COMPOSE, STACK_TYPE_SWARM, get_database_manager
from deployment.errors import ValidationError
from deployment.source_resolver import (
    InlineContent, RepositoryDescriptor, SourceMethod, UploadedBytes,
)
from deployment.stack_orchestrator import StackOrchestrator

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/stacks", tags=["stacks"])


def get_orchestrator() -> StackOrchestrator:
    return StackOrchestrator(get_database_manager())


# ==================== Request Models ====================

class EnvPair(BaseModel):
    """One environment variable passed to docker compose."""
    name: str = Field(..., min_length=1)
    value: str = ""


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StringStackPayload(_Payload):
    """Create stack from inline compose content."""
    name: str = Field(..., alias="Name", description="Stack name")
    stack_file_content: str = Field(..., alias="StackFileContent", description="Docker Compose YAML content")
    env: List[EnvPair] = Field(default_factory=list, alias="Env")


class RepositoryStackPayload(_Payload):
    """Create stack from a git repository."""
    name: str = Field(..., alias="Name", description="Stack name")
    repository_url: str = Field(..., alias="RepositoryURL")
    repository_reference_name: Optional[str] = Field(
        None, alias="RepositoryReferenceName",
        description="Branch, tag or refs/* reference (default branch when empty)",
    )
    compose_file_path_in_repository: Optional[str] = Field(
        None, alias="ComposeFilePathInRepository",
        description="Compose file path relative to the repository root (default docker-compose.yml)",
    )
    repository_authentication: bool = Field(False, alias="RepositoryAuthentication")
    repository_username: Optional[str] = Field(None, alias="RepositoryUsername")
    repository_password: Optional[str] = Field(None, alias="RepositoryPassword")
    env: List[EnvPair] = Field(default_factory=list, alias="Env")


class UpdateStackPayload(_Payload):
    """Redeploy a stack with new content."""
    stack_file_content: str = Field(..., alias="StackFileContent")
    env: List[EnvPair] = Field(default_factory=list, alias="Env")
    name: Optional[str] = Field(None, alias="Name", description="New stack name (unchanged when omitted)")


def _parse_payload(model, data):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Invalid request payload", e)


async def _read_json(request: Request):
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError("Invalid request payload", e)


def _env_list(pairs: List[EnvPair]) -> List[dict]:
    return [pair.model_dump() for pair in pairs]


async def _read_file_payload(request: Request):
    """Multipart form with Name, file and optional Env (JSON list)."""
    form = await request.form()

    name = form.get("Name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Invalid stack name")

    upload = form.get("file")
    if upload is None or isinstance(upload, str):
        raise ValidationError("Invalid Compose file. Ensure that the Compose file is uploaded correctly")
    content = await upload.read()

    env = []
    raw_env = form.get("Env")
    if raw_env:
        try:
            env = [EnvPair.model_validate(pair) for pair in json.loads(raw_env)]
        except (ValueError, TypeError, PydanticValidationError) as e:
            raise ValidationError("Invalid Env parameter", e)

    return name, UploadedBytes(content=content, filename=upload.filename), _env_list(env)


# ==================== Endpoints ====================

@router.post("")
async def create_stack(
    request: Request,
    method: SourceMethod = Query(..., description="string, file or repository"),
    stack_type: int = Query(STACK_TYPE_COMPOSE, alias="type"),
    endpoint_id: int = Query(..., alias="endpointId"),
    context: SecurityContext = Depends(get_security_context),
    orchestrator: StackOrchestrator = Depends(get_orchestrator),
):
    """
    Deploy a new compose stack.

    The request body depends on `method`: JSON for string and repository,
    multipart form data for file.
    """
    if stack_type == STACK_TYPE_SWARM:
        raise ValidationError("Swarm stacks are not supported")
    if stack_type != STACK_TYPE_COMPOSE:
        raise ValidationError("Invalid stack type. Value must be one of: 1 (Swarm stack) or 2 (Compose stack)")

    if method == SourceMethod.STRING:
        payload = _parse_payload(StringStackPayload, await _read_json(request))
        name = payload.name
        source = InlineContent(content=payload.stack_file_content)
        env = _env_list(payload.env)
    elif method == SourceMethod.REPOSITORY:
        payload = _parse_payload(RepositoryStackPayload, await _read_json(request))
        name = payload.name
        source = RepositoryDescriptor(
            url=payload.repository_url,
            reference_name=payload.repository_reference_name,
            authentication=payload.repository_authentication,
            username=payload.repository_username,
            password=payload.repository_password,
            compose_file_path=payload.compose_file_path_in_repository,
        )
        env = _env_list(payload.env)
    else:
        name, source, env = await _read_file_payload(request)

    logger.info(f"User {context.username} creating stack '{name}' on endpoint {endpoint_id} ({method.value})")
    return await orchestrator.create_compose_stack(context, endpoint_id, name, source, env)


@router.get("")
async def list_stacks(
    endpoint_id: Optional[int] = Query(None, alias="endpointId"),
    context: SecurityContext = Depends(get_security_context),
    orchestrator: StackOrchestrator = Depends(get_orchestrator),
):
    """List stacks visible to the user."""
    return orchestrator.list_stacks(context, endpoint_id)


@router.get("/{stack_id}")
async def get_stack(
    stack_id: int,
    context: SecurityContext = Depends(get_security_context),
    orchestrator: StackOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_stack(context, stack_id)


@router.get("/{stack_id}/file")
async def get_stack_file(
    stack_id: int,
    context: SecurityContext = Depends(get_security_context),
    orchestrator: StackOrchestrator = Depends(get_orchestrator),
):
    """Get the content of the stack's entry point file."""
    return await orchestrator.get_stack_file(context, stack_id)


@router.put("/{stack_id}")
async def update_stack(
    stack_id: int,
    request: Request,
    endpoint_id: Optional[int] = Query(None, alias="endpointId"),
    context: SecurityContext = Depends(get_security_context),
    orchestrator: StackOrchestrator = Depends(get_orchestrator),
):
    """Redeploy a stack with new file content and environment."""
    payload = _parse_payload(UpdateStackPayload, await _read_json(request))
    return await orchestrator.update_compose_stack(
        context,
        stack_id,
        endpoint_id,
        payload.stack_file_content,
        env=_env_list(payload.env),
        name=payload.name,
    )


@router.delete("/{stack_id}", status_code=204)
async def delete_stack(
    stack_id: int,
    endpoint_id: Optional[int] = Query(None, alias="endpointId"),
    context: SecurityContext = Depends(get_security_context),
    orchestrator: StackOrchestrator = Depends(get_orchestrator),
):
    """Stop a stack and remove its files and records."""
    await orchestrator.delete_stack(context, stack_id, endpoint_id)
