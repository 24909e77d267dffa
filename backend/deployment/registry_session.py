"""
Serialized registry credential handling for deployments.

`docker login` writes credentials into the shared DOCKER_CONFIG directory and
`docker compose up` reads them from there when pulling images. Two concurrent
deployments would overwrite or remove each other's credentials, so the whole
login -> deploy -> logout sequence runs while holding one process-wide lock.

Login is best-effort: a registry that rejects the credentials is logged and
skipped, and the deployment still runs (public images need no login).
Logout is attempted for every registry that was logged in, whatever the
outcome of the deployment.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from utils.encryption import decrypt_password
from .compose_manager import ComposeManager
from .errors import DeploymentError

logger = logging.getLogger(__name__)

# Guards the shared DOCKER_CONFIG credential store
credential_lock = threading.Lock()


@dataclass(repr=False)
class RegistryCredential:
    """
    Decrypted login for one registry.

    Attributes:
        server: Registry address; empty for Docker Hub
        username: Login username
        password: Plaintext password, only held for the session
        name: Display name used in logs
    """
    server: str
    username: str
    password: str
    name: str = ""

    def __repr__(self) -> str:
        return f"RegistryCredential(server={self.server!r}, username={self.username!r})"

    @property
    def label(self) -> str:
        return self.name or self.server or "Docker Hub"


def build_credentials(dockerhub, registries) -> List[RegistryCredential]:
    """
    Collect logins for Docker Hub and every registry using authentication.

    Entries whose password cannot be decrypted are logged and skipped.

    Args:
        dockerhub: DockerHub settings row (may be None)
        registries: Registries already filtered for the acting user
    """
    credentials = []

    if dockerhub is not None and dockerhub.authentication:
        credential = _decrypt_credential('', dockerhub.username, dockerhub.password_encrypted, 'Docker Hub')
        if credential:
            credentials.append(credential)

    for registry in registries:
        if not registry.authentication:
            continue
        credential = _decrypt_credential(
            registry.url, registry.username, registry.password_encrypted, registry.name
        )
        if credential:
            credentials.append(credential)

    return credentials


def _decrypt_credential(server: str, username: Optional[str], encrypted: Optional[str],
                        name: str) -> Optional[RegistryCredential]:
    if not username or not encrypted:
        logger.warning(f"Registry '{name}' has authentication enabled but no credentials stored")
        return None
    try:
        password = decrypt_password(encrypted)
    except ValueError as e:
        logger.error(f"Skipping registry '{name}': {e}")
        return None
    return RegistryCredential(server=server, username=username, password=password, name=name)


class RegistrySession:
    """
    Login/logout bookkeeping for one deployment.

    Must be used while holding credential_lock; see run_with_credentials().
    """

    def __init__(self, manager: ComposeManager, endpoint, credentials: List[RegistryCredential]):
        self.manager = manager
        self.endpoint = endpoint
        self.credentials = credentials
        self.logged_in: List[RegistryCredential] = []

    def login(self) -> None:
        """Log in to every registry, continuing past failures."""
        for credential in self.credentials:
            try:
                self.manager.login(self.endpoint, credential.server, credential.username, credential.password)
            except DeploymentError as e:
                logger.warning(f"Registry login to {credential.label} failed: {e.details}")
                continue
            self.logged_in.append(credential)
            logger.debug(f"Logged in to {credential.label}")

    def logout(self) -> List[str]:
        """
        Log out of every registry that was logged in.

        Returns:
            Error messages for logouts that failed (empty on success)
        """
        errors = []
        for credential in self.logged_in:
            try:
                self.manager.logout(self.endpoint, credential.server)
            except DeploymentError as e:
                logger.error(f"Registry logout from {credential.label} failed: {e.details}")
                errors.append(f"logout from {credential.label} failed: {e.details}")
        self.logged_in = []
        return errors


def run_with_credentials(
    manager: ComposeManager,
    endpoint,
    credentials: List[RegistryCredential],
    action: Callable[[], None],
) -> None:
    """
    Run a deployment action inside the credential critical section.

    Blocking; call through asyncio.to_thread from async code.

    Raises:
        DeploymentError: If the action fails (logout failures attached as
            secondary errors), or if the action succeeded but a logout failed
    """
    with credential_lock:
        session = RegistrySession(manager, endpoint, credentials)
        session.login()

        try:
            action()
        except DeploymentError as e:
            e.secondary_errors.extend(session.logout())
            raise
        except Exception as e:
            raise DeploymentError("Deployment failed", e, secondary_errors=session.logout()) from e

        logout_errors = session.logout()
        if logout_errors:
            raise DeploymentError(
                "Unable to log out of container registries after deployment",
                RuntimeError("; ".join(logout_errors)),
            )


def deploy_stack(manager: ComposeManager, stack, endpoint, credentials: List[RegistryCredential]) -> None:
    """`docker compose up` for a stack with registry credentials in place."""
    run_with_credentials(manager, endpoint, credentials, lambda: manager.up(stack, endpoint))
