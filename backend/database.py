"""
Database models and operations for Harbormaster
Uses SQLite for persistent storage of users, endpoints, registries and stacks
"""

import hashlib
import logging
import os
import secrets
import threading
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import (
    create_engine, Column, String, Integer, BigInteger, Boolean, DateTime, JSON,
    ForeignKey, UniqueConstraint, CheckConstraint, func,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# User roles
ROLE_ADMIN = 1
ROLE_STANDARD = 2

# Stack types and statuses
STACK_TYPE_SWARM = 1
STACK_TYPE_COMPOSE = 2
STACK_STATUS_ACTIVE = 1

# Endpoint authorization roles
ENDPOINT_ROLE_ADMIN = 'endpoint_admin'
ENDPOINT_ROLE_STANDARD = 'standard'

RESOURCE_TYPE_STACK = 'stack'

API_KEY_PREFIX = 'hm_'


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


class ObjectNotFoundError(LookupError):
    """Raised when a requested record does not exist."""
    pass


class DuplicateObjectError(Exception):
    """Raised when a write violates a uniqueness constraint."""
    pass


Base = declarative_base()


class User(Base):
    """User identity and role"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String, nullable=False, unique=True)
    role = Column(Integer, nullable=False, default=ROLE_STANDARD)
    api_key_hash = Column(String, nullable=True, unique=True)  # SHA256 of the plaintext key
    created_at = Column(DateTime, default=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


class Team(Base):
    """Group of users sharing access policies"""
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)


class TeamMembership(Base):
    __tablename__ = "team_memberships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (UniqueConstraint('user_id', 'team_id', name='uq_team_membership'),)


class Endpoint(Base):
    """Docker engine target with its security settings"""
    __tablename__ = "endpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    url = Column(String, nullable=False)  # unix:///var/run/docker.sock, tcp://10.0.0.5:2376
    tls = Column(Boolean, default=False)
    tls_skip_verify = Column(Boolean, default=False)
    tls_ca_cert_path = Column(String, nullable=True)
    tls_cert_path = Column(String, nullable=True)
    tls_key_path = Column(String, nullable=True)
    # Security settings - everything is disallowed for regular users by default
    allow_bind_mounts_for_regular_users = Column(Boolean, default=False, nullable=False)
    allow_privileged_mode_for_regular_users = Column(Boolean, default=False, nullable=False)
    allow_host_namespace_for_regular_users = Column(Boolean, default=False, nullable=False)
    allow_device_mapping_for_regular_users = Column(Boolean, default=False, nullable=False)
    allow_container_capabilities_for_regular_users = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class EndpointAuthorization(Base):
    """Grants a user or a team access to an endpoint"""
    __tablename__ = "endpoint_authorizations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint_id = Column(Integer, ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    team_id = Column(Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=True)
    role = Column(String, nullable=False, default=ENDPOINT_ROLE_STANDARD)

    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL) OR (team_id IS NOT NULL)",
            name='ck_endpoint_authorization_subject'
        ),
    )


class Registry(Base):
    """Private image registry"""
    __tablename__ = "registries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    authentication = Column(Boolean, default=False)
    username = Column(String, nullable=True)
    password_encrypted = Column(String, nullable=True)
    user_accesses = Column(JSON, default=list)  # user IDs allowed to use this registry
    team_accesses = Column(JSON, default=list)  # team IDs allowed to use this registry


class DockerHub(Base):
    """Default registry settings (single row)"""
    __tablename__ = "dockerhub"

    id = Column(Integer, primary_key=True, default=1)
    authentication = Column(Boolean, default=False)
    username = Column(String, nullable=True)
    password_encrypted = Column(String, nullable=True)


class Stack(Base):
    """Deployed compose stack"""
    __tablename__ = "stacks"

    id = Column(Integer, primary_key=True, autoincrement=False)  # allocated via get_next_identifier()
    name = Column(String, nullable=False)
    name_key = Column(String, nullable=False)  # lowercased name for case-insensitive uniqueness
    type = Column(Integer, nullable=False, default=STACK_TYPE_COMPOSE)
    endpoint_id = Column(Integer, ForeignKey("endpoints.id", ondelete="CASCADE"), nullable=False)
    entry_point = Column(String, nullable=False)
    project_path = Column(String, nullable=False)
    env = Column(JSON, default=list)  # ordered [{"name": ..., "value": ...}]
    status = Column(Integer, nullable=False, default=STACK_STATUS_ACTIVE)
    creation_date = Column(BigInteger, nullable=False)
    created_by = Column(String, nullable=True)
    update_date = Column(BigInteger, nullable=True)
    updated_by = Column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint('endpoint_id', 'name_key', name='uq_stack_endpoint_name'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "endpoint_id": self.endpoint_id,
            "entry_point": self.entry_point,
            "project_path": self.project_path,
            "env": list(self.env or []),
            "status": self.status,
            "creation_date": self.creation_date,
            "created_by": self.created_by,
            "update_date": self.update_date,
            "updated_by": self.updated_by,
        }


class ResourceControl(Base):
    """Ownership record for a deployed resource"""
    __tablename__ = "resource_controls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    resource_id = Column(String, nullable=False)
    type = Column(String, nullable=False)
    user_accesses = Column(JSON, default=list)
    team_accesses = Column(JSON, default=list)
    public = Column(Boolean, default=False)
    administrators_only = Column(Boolean, default=False)

    __table_args__ = (
        UniqueConstraint('resource_id', 'type', name='uq_resource_control'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "type": self.type,
            "user_accesses": list(self.user_accesses or []),
            "team_accesses": list(self.team_accesses or []),
            "public": bool(self.public),
            "administrators_only": bool(self.administrators_only),
        }


class IdentifierCounter(Base):
    """Last allocated identifier per object kind"""
    __tablename__ = "identifier_counters"

    kind = Column(String, primary_key=True)
    last_id = Column(Integer, nullable=False, default=0)


def stack_resource_id(endpoint_id: int, name: str) -> str:
    """Resource control identifier for a stack: '<endpoint_id>_<name>'."""
    return f"{endpoint_id}_{name}"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


class DatabaseManager:
    """
    Metadata store for Harbormaster.

    Thread-safe: identifier allocation is serialized with a process lock and
    committed in its own transaction, so two concurrent creates never receive
    the same stack ID.
    """

    def __init__(self, db_path: str = "data/harbormaster.db"):
        self.db_path = db_path

        if db_path != ":memory:":
            data_dir = os.path.dirname(db_path)
            if data_dir:
                os.makedirs(data_dir, exist_ok=True)
            url = f"sqlite:///{db_path}"
        else:
            url = "sqlite://"

        # Note: SQLite doesn't support pool_timeout/pool_recycle, but timeout in connect_args works
        self.engine = create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": 20
            },
            poolclass=StaticPool,
            echo=False
        )

        # expire_on_commit=False keeps returned objects readable after the session closes
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        Base.metadata.create_all(bind=self.engine)

        self._identifier_lock = threading.Lock()

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    # Identifier allocation
    def get_next_identifier(self, kind: str = "stacks") -> int:
        """
        Allocate the next identifier for an object kind.

        Never returns an ID lower than or equal to one already stored in
        the stacks table, even if the counter row was lost.
        """
        with self._identifier_lock:
            with self.get_session() as session:
                counter = session.get(IdentifierCounter, kind)
                if counter is None:
                    counter = IdentifierCounter(kind=kind, last_id=0)
                    session.add(counter)

                current_max = 0
                if kind == "stacks":
                    current_max = session.query(func.max(Stack.id)).scalar() or 0

                counter.last_id = max(counter.last_id or 0, current_max) + 1
                session.commit()
                return counter.last_id

    # Stack operations
    def get_stacks(self, endpoint_id: Optional[int] = None) -> List[Stack]:
        """Get stacks, optionally restricted to one endpoint, ordered by ID"""
        with self.get_session() as session:
            query = session.query(Stack)
            if endpoint_id is not None:
                query = query.filter(Stack.endpoint_id == endpoint_id)
            return query.order_by(Stack.id).all()

    def get_stack(self, stack_id: int) -> Stack:
        with self.get_session() as session:
            stack = session.get(Stack, stack_id)
            if stack is None:
                raise ObjectNotFoundError(f"Stack {stack_id} not found")
            return stack

    def create_stack(self, stack: Stack, resource_control: Optional[ResourceControl] = None) -> Stack:
        """
        Persist a stack and its resource control in one transaction.

        Raises:
            DuplicateObjectError: If the name is already taken on the endpoint
        """
        stack.name_key = stack.name.lower()
        with self.get_session() as session:
            try:
                session.add(stack)
                if resource_control is not None:
                    session.add(resource_control)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateObjectError(
                    f"Stack '{stack.name}' already exists on endpoint {stack.endpoint_id}"
                ) from e
            logger.info(f"Persisted stack {stack.id} ({stack.name}) on endpoint {stack.endpoint_id}")
            return stack

    def update_stack(self, stack: Stack, resource_control: Optional[ResourceControl] = None) -> Stack:
        """
        Persist changes of an existing stack.

        Raises:
            DuplicateObjectError: If a rename collides with another stack
        """
        stack.name_key = stack.name.lower()
        with self.get_session() as session:
            try:
                merged = session.merge(stack)
                if resource_control is not None:
                    session.merge(resource_control)
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateObjectError(
                    f"Stack '{stack.name}' already exists on endpoint {stack.endpoint_id}"
                ) from e
            return merged

    def delete_stack(self, stack_id: int) -> None:
        """Delete a stack and its resource control"""
        with self.get_session() as session:
            stack = session.get(Stack, stack_id)
            if stack is None:
                raise ObjectNotFoundError(f"Stack {stack_id} not found")
            session.query(ResourceControl).filter(
                ResourceControl.resource_id == stack_resource_id(stack.endpoint_id, stack.name),
                ResourceControl.type == RESOURCE_TYPE_STACK,
            ).delete()
            session.delete(stack)
            session.commit()
            logger.info(f"Deleted stack {stack_id} from database")

    # Resource control operations
    def get_resource_control(self, resource_id: str, resource_type: str) -> Optional[ResourceControl]:
        with self.get_session() as session:
            return session.query(ResourceControl).filter(
                ResourceControl.resource_id == resource_id,
                ResourceControl.type == resource_type,
            ).first()

    def get_resource_controls(self, resource_type: Optional[str] = None) -> List[ResourceControl]:
        with self.get_session() as session:
            query = session.query(ResourceControl)
            if resource_type is not None:
                query = query.filter(ResourceControl.type == resource_type)
            return query.all()

    # User operations
    def get_user(self, user_id: int) -> User:
        with self.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise ObjectNotFoundError(f"User {user_id} not found")
            return user

    def get_user_by_api_key(self, api_key: str) -> Optional[User]:
        key_hash = hash_api_key(api_key)
        with self.get_session() as session:
            return session.query(User).filter(User.api_key_hash == key_hash).first()

    def get_user_team_ids(self, user_id: int) -> List[int]:
        with self.get_session() as session:
            rows = session.query(TeamMembership.team_id).filter(
                TeamMembership.user_id == user_id
            ).all()
            return [team_id for (team_id,) in rows]

    def create_user(self, username: str, role: int = ROLE_STANDARD) -> Tuple[User, str]:
        """
        Create a user with a fresh API key.

        Returns:
            Tuple of (user, plaintext_api_key). The plaintext key is not stored.
        """
        api_key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
        with self.get_session() as session:
            user = User(username=username, role=role, api_key_hash=hash_api_key(api_key))
            session.add(user)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateObjectError(f"User '{username}' already exists") from e
            logger.info(f"Created user {username} (role {role})")
            return user, api_key

    def list_users(self) -> List[str]:
        """Get all usernames, ordered by ID"""
        with self.get_session() as session:
            return [username for (username,) in session.query(User.username).order_by(User.id).all()]

    # Endpoint operations
    def grant_endpoint_access(self, endpoint_id: int, user_id: int,
                              role: str = ENDPOINT_ROLE_STANDARD) -> EndpointAuthorization:
        """
        Authorize a user on an endpoint.

        Raises:
            ObjectNotFoundError: If the endpoint does not exist
        """
        with self.get_session() as session:
            if session.get(Endpoint, endpoint_id) is None:
                raise ObjectNotFoundError(f"Endpoint {endpoint_id} not found")
            authorization = EndpointAuthorization(endpoint_id=endpoint_id, user_id=user_id, role=role)
            session.add(authorization)
            session.commit()
            logger.info(f"Granted user {user_id} {role} access to endpoint {endpoint_id}")
            return authorization

    def get_endpoint(self, endpoint_id: int) -> Endpoint:
        with self.get_session() as session:
            endpoint = session.get(Endpoint, endpoint_id)
            if endpoint is None:
                raise ObjectNotFoundError(f"Endpoint {endpoint_id} not found")
            return endpoint

    def get_endpoint_authorizations(self, endpoint_id: int) -> List[EndpointAuthorization]:
        with self.get_session() as session:
            return session.query(EndpointAuthorization).filter(
                EndpointAuthorization.endpoint_id == endpoint_id
            ).all()

    # Registry operations
    def get_registries(self) -> List[Registry]:
        with self.get_session() as session:
            return session.query(Registry).order_by(Registry.id).all()

    def get_dockerhub(self) -> DockerHub:
        """Get default registry settings, creating the row on first access"""
        with self.get_session() as session:
            dockerhub = session.get(DockerHub, 1)
            if dockerhub is None:
                dockerhub = DockerHub(id=1, authentication=False)
                session.add(dockerhub)
                session.commit()
            return dockerhub


# Singleton instance with thread-safe initialization
_database_manager: Optional[DatabaseManager] = None
_database_manager_lock = threading.Lock()


def get_database_manager() -> DatabaseManager:
    """
    Get or create the process-wide DatabaseManager.

    Thread-safe using double-checked locking pattern.
    """
    global _database_manager

    if _database_manager is not None:
        return _database_manager

    with _database_manager_lock:
        if _database_manager is None:
            from config.settings import AppConfig
            _database_manager = DatabaseManager(AppConfig.DATABASE_PATH)
        return _database_manager


def set_database_manager(db: Optional[DatabaseManager]) -> None:
    """Replace the process-wide DatabaseManager (used at startup and in tests)."""
    global _database_manager
    with _database_manager_lock:
        _database_manager = db
