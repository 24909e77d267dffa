"""
Docker CLI wrapper for compose deployments and registry logins.

Runs `docker compose` against an endpoint's engine. Every command shares one
DOCKER_CONFIG directory, which is where `docker login` stores credentials and
where `docker compose up` reads them when pulling images. Callers that log in
must hold the credential lock in deployment.registry_session.

All methods are synchronous; they are called from a worker thread
(asyncio.to_thread) so the event loop is never blocked.

Security:
    - Registry passwords are passed on stdin, never on the command line
    - Command output is sanitized before it is logged or raised
"""

import logging
import os
import re
import subprocess
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import DeploymentError

logger = logging.getLogger(__name__)

# Variables that steer the docker CLI itself; stack env pairs may not set them
RESERVED_ENV_PREFIXES = ('DOCKER_', 'COMPOSE_')


def _sanitize_output(text: str, secrets: Iterable[str] = ()) -> str:
    """
    Remove credentials from docker CLI output.

    Strips user:password@ from URLs and replaces any known secret values.
    """
    result = re.sub(r'(https?://|tcp://|ssh://)[^\s/@]+@', r'\1', text or '')
    for secret in secrets:
        if secret:
            result = result.replace(secret, '***')
    return result.strip()


class ComposeManager:
    """
    Deploys compose stacks onto endpoints using the docker CLI.

    Args:
        docker_binary: docker executable (defaults to AppConfig.DOCKER_BINARY)
        config_dir: Shared DOCKER_CONFIG directory (defaults to AppConfig.DOCKER_CONFIG_DIR)
        timeout: Per-command timeout in seconds for compose (defaults to AppConfig.COMPOSE_TIMEOUT)
        login_timeout: Timeout for login/logout (defaults to AppConfig.REGISTRY_LOGIN_TIMEOUT)
    """

    def __init__(
        self,
        docker_binary: Optional[str] = None,
        config_dir: Optional[str] = None,
        timeout: Optional[int] = None,
        login_timeout: Optional[int] = None,
    ):
        from config.settings import AppConfig

        self.docker_binary = docker_binary or AppConfig.DOCKER_BINARY
        self.config_dir = str(config_dir or AppConfig.DOCKER_CONFIG_DIR)
        self.timeout = timeout or AppConfig.COMPOSE_TIMEOUT
        self.login_timeout = login_timeout or AppConfig.REGISTRY_LOGIN_TIMEOUT

    def build_host_args(self, endpoint) -> List[str]:
        """
        Global docker flags that target the endpoint's engine.

        Examples:
            unix:///var/run/docker.sock -> ["--host", "unix:///var/run/docker.sock"]
            tcp://10.0.0.5:2376 with TLS -> ["--host", "tcp://10.0.0.5:2376",
                "--tlsverify", "--tlscacert", ..., "--tlscert", ..., "--tlskey", ...]
        """
        args = []
        if endpoint.url:
            args.extend(['--host', endpoint.url])

        if endpoint.tls:
            args.append('--tls' if endpoint.tls_skip_verify else '--tlsverify')
            if endpoint.tls_ca_cert_path and not endpoint.tls_skip_verify:
                args.extend(['--tlscacert', endpoint.tls_ca_cert_path])
            if endpoint.tls_cert_path:
                args.extend(['--tlscert', endpoint.tls_cert_path])
            if endpoint.tls_key_path:
                args.extend(['--tlskey', endpoint.tls_key_path])

        return args

    def build_environment(self, stack=None) -> Dict[str, str]:
        """
        Process environment for docker commands, with the stack's env pairs merged in.

        Pairs named like reserved docker variables are skipped, and
        DOCKER_CONFIG always points at the shared config directory.
        """
        env = dict(os.environ)
        if stack is not None:
            for pair in stack.env or []:
                name = pair.get('name')
                if not name:
                    continue
                if name.upper().startswith(RESERVED_ENV_PREFIXES):
                    logger.warning(f"Ignoring reserved environment variable {name} for stack {stack.name}")
                    continue
                env[name] = str(pair.get('value') or '')
        env['DOCKER_CONFIG'] = self.config_dir
        return env

    def up(self, stack, endpoint) -> None:
        """
        Start or update a stack (`docker compose up -d --remove-orphans`).

        Raises:
            DeploymentError: If the command fails or times out
        """
        args = self._compose_args(stack, endpoint) + ['up', '-d', '--remove-orphans']
        logger.info(f"Deploying stack {stack.name} to endpoint {endpoint.id}")
        self._run(args, action="Deploy", cwd=stack.project_path, env=self.build_environment(stack),
                  timeout=self.timeout)
        logger.info(f"Stack {stack.name} deployed to endpoint {endpoint.id}")

    def down(self, stack, endpoint) -> None:
        """
        Stop and remove a stack's containers and networks.

        Raises:
            DeploymentError: If the command fails or times out
        """
        args = self._compose_args(stack, endpoint) + ['down', '--remove-orphans']
        logger.info(f"Removing stack {stack.name} from endpoint {endpoint.id}")
        self._run(args, action="Remove", cwd=stack.project_path, env=self.build_environment(stack),
                  timeout=self.timeout)

    def login(self, endpoint, server: Optional[str], username: str, password: str) -> None:
        """
        Store registry credentials in the shared DOCKER_CONFIG.

        An empty server logs in to Docker Hub.

        Raises:
            DeploymentError: If the login is rejected
        """
        args = self.build_host_args(endpoint) + ['login', '--username', username, '--password-stdin']
        if server:
            args.append(server)
        self._run(args, action=f"Login to {server or 'Docker Hub'}", input=password,
                  env=self.build_environment(), timeout=self.login_timeout, secrets=(password,))

    def logout(self, endpoint, server: Optional[str]) -> None:
        """
        Remove registry credentials from the shared DOCKER_CONFIG.

        Raises:
            DeploymentError: If the logout fails
        """
        args = self.build_host_args(endpoint) + ['logout']
        if server:
            args.append(server)
        self._run(args, action=f"Logout from {server or 'Docker Hub'}",
                  env=self.build_environment(), timeout=self.login_timeout)

    def _compose_args(self, stack, endpoint) -> List[str]:
        return self.build_host_args(endpoint) + [
            'compose', '-p', stack.name, '-f', stack.entry_point,
        ]

    def _run(
        self,
        args: List[str],
        action: str,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        input: Optional[str] = None,
        timeout: int = 300,
        secrets: Iterable[str] = (),
    ) -> subprocess.CompletedProcess:
        """Run docker and raise DeploymentError with sanitized output on failure."""
        Path(self.config_dir).mkdir(parents=True, exist_ok=True)
        try:
            result = subprocess.run(
                [self.docker_binary] + args,
                cwd=cwd,
                env=env,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise DeploymentError(f"{action} failed", RuntimeError(f"timed out after {timeout} seconds")) from e
        except OSError as e:
            raise DeploymentError(f"{action} failed", e) from e

        if result.returncode != 0:
            output = _sanitize_output(result.stderr or result.stdout, secrets)
            logger.error(f"{action} failed (exit {result.returncode}): {output}")
            raise DeploymentError(f"{action} failed", RuntimeError(output or f"exit code {result.returncode}"))
        return result


# Singleton instance with thread-safe initialization
_compose_manager: Optional[ComposeManager] = None
_compose_manager_lock = threading.Lock()


def get_compose_manager() -> ComposeManager:
    """
    Get or create the singleton ComposeManager.

    Thread-safe using double-checked locking pattern.
    """
    global _compose_manager

    if _compose_manager is not None:
        return _compose_manager

    with _compose_manager_lock:
        if _compose_manager is None:
            _compose_manager = ComposeManager()
        return _compose_manager
