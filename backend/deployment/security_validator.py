"""
Endpoint security policy enforcement for stack files.

Regular users may only deploy directives the target endpoint allows.
Five independent permissions are checked per service:
- Bind mounts (host paths mounted into containers)
- Privileged mode
- Host namespaces (pid, ipc or network_mode set to host)
- Device mappings
- Added Linux capabilities

Administrators and endpoint administrators are never checked; the caller
decides whether to invoke the validator.

Usage:
    settings = SecuritySettings.from_endpoint(endpoint)
    validator = SecurityValidator()
    validator.validate_stack_file(content, settings, environment)  # raises PolicyViolationError

Variables are interpolated before any check, so `privileged: ${PRIV}` is
judged by the value compose would use. A value that still holds an unresolved
variable is treated as if it used the directive.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union
import logging
import os

from .compose_interpolation import interpolate
from .compose_validator import ComposeValidator, ComposeValidationError
from .errors import PolicyViolationError, ValidationError

logger = logging.getLogger(__name__)

# Prefixes that make a short-syntax volume source a host path ($ is a variable left unresolved)
_HOST_PATH_PREFIXES = ('/', '.', '~', '$')

_HOST_NAMESPACE_KEYS = ('pid', 'ipc', 'network_mode')

# Strings compose converts to true for boolean keys
_TRUE_STRINGS = ('true', 'yes', 'y', 'on', '1')


@dataclass(frozen=True)
class SecuritySettings:
    """Per-endpoint permissions granted to regular users."""
    allow_bind_mounts: bool = False
    allow_privileged_mode: bool = False
    allow_host_namespace: bool = False
    allow_device_mapping: bool = False
    allow_container_capabilities: bool = False

    @classmethod
    def from_endpoint(cls, endpoint) -> 'SecuritySettings':
        return cls(
            allow_bind_mounts=bool(endpoint.allow_bind_mounts_for_regular_users),
            allow_privileged_mode=bool(endpoint.allow_privileged_mode_for_regular_users),
            allow_host_namespace=bool(endpoint.allow_host_namespace_for_regular_users),
            allow_device_mapping=bool(endpoint.allow_device_mapping_for_regular_users),
            allow_container_capabilities=bool(endpoint.allow_container_capabilities_for_regular_users),
        )

    @property
    def all_allowed(self) -> bool:
        return (
            self.allow_bind_mounts
            and self.allow_privileged_mode
            and self.allow_host_namespace
            and self.allow_device_mapping
            and self.allow_container_capabilities
        )


@dataclass
class SecurityViolation:
    """
    A directive used in a service that the endpoint disallows.

    Attributes:
        service: Compose service name
        field: Compose key that triggered the violation
        message: Name of the violated policy
    """
    service: str
    field: str
    message: str


class SecurityValidator:
    """Checks parsed compose services against SecuritySettings."""

    BIND_MOUNT_MESSAGE = "bind-mount disabled for non administrator users"
    PRIVILEGED_MESSAGE = "privileged mode disabled for non administrator users"
    HOST_NAMESPACE_MESSAGE = "host namespace disabled for non administrator users"
    DEVICE_MESSAGE = "device mapping disabled for non administrator users"
    CAPABILITIES_MESSAGE = "container capabilities disabled for non administrator users"

    def __init__(self):
        self.compose_validator = ComposeValidator()

    def validate_stack_file(
        self,
        content: Union[str, bytes],
        settings: SecuritySettings,
        environment: Optional[Mapping[str, str]] = None,
    ) -> None:
        """
        Reject stack content that uses disallowed directives.

        Args:
            content: Compose file content
            settings: Endpoint permissions for regular users
            environment: Variables to interpolate with (defaults to the process environment)

        Raises:
            ValidationError: If the content cannot be parsed
            PolicyViolationError: Naming every violated policy
        """
        try:
            compose_data = self.compose_validator.load(content)
            compose_data = interpolate(compose_data, os.environ if environment is None else environment)
        except ComposeValidationError as e:
            raise ValidationError("Invalid stack file", e)

        violations = self.find_violations(compose_data, settings)
        if violations:
            policies = []
            for violation in violations:
                if violation.message not in policies:
                    policies.append(violation.message)
            logger.warning(
                "Stack file rejected by endpoint security settings: "
                + "; ".join(f"{v.service}.{v.field}" for v in violations)
            )
            raise PolicyViolationError("; ".join(policies), violations=violations)

    def find_violations(
        self,
        compose_data: Dict[str, Any],
        settings: SecuritySettings,
    ) -> List[SecurityViolation]:
        """Collect violations across all services, in file order."""
        violations = []
        services = compose_data.get('services') or {}
        if not isinstance(services, dict):
            return violations

        for service_name, service in services.items():
            if not isinstance(service, dict):
                continue

            if not settings.allow_bind_mounts:
                violations.extend(self._check_bind_mounts(service_name, service))
            if not settings.allow_privileged_mode:
                violations.extend(self._check_privileged(service_name, service))
            if not settings.allow_host_namespace:
                violations.extend(self._check_host_namespace(service_name, service))
            if not settings.allow_device_mapping:
                violations.extend(self._check_devices(service_name, service))
            if not settings.allow_container_capabilities:
                violations.extend(self._check_capabilities(service_name, service))

        return violations

    def _check_bind_mounts(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        """Check for host paths mounted into the service."""
        volumes = service.get('volumes') or []
        if not isinstance(volumes, list):
            return []

        for volume in volumes:
            if self._is_bind_mount(volume):
                return [SecurityViolation(service_name, 'volumes', self.BIND_MOUNT_MESSAGE)]
        return []

    @staticmethod
    def _is_bind_mount(volume: Any) -> bool:
        # Long syntax: {"type": "bind", "source": ..., "target": ...}
        if isinstance(volume, dict):
            volume_type = volume.get('type')
            return volume_type == 'bind' or _is_unresolved(volume_type)

        # Short syntax: "source:target[:mode]"; a lone path is an anonymous volume
        if isinstance(volume, str):
            parts = volume.split(':')
            if len(parts) < 2:
                return False
            return parts[0].startswith(_HOST_PATH_PREFIXES)

        return False

    def _check_privileged(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        value = service.get('privileged')
        if isinstance(value, str):
            value = value.strip().lower() in _TRUE_STRINGS or _is_unresolved(value)
        if value is True:
            return [SecurityViolation(service_name, 'privileged', self.PRIVILEGED_MESSAGE)]
        return []

    def _check_host_namespace(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        violations = []
        for key in _HOST_NAMESPACE_KEYS:
            value = service.get(key)
            if isinstance(value, str) and (value.strip().lower() == 'host' or _is_unresolved(value)):
                violations.append(SecurityViolation(service_name, key, self.HOST_NAMESPACE_MESSAGE))
        return violations

    def _check_devices(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        if service.get('devices'):
            return [SecurityViolation(service_name, 'devices', self.DEVICE_MESSAGE)]
        return []

    def _check_capabilities(self, service_name: str, service: Dict[str, Any]) -> List[SecurityViolation]:
        if service.get('cap_add'):
            return [SecurityViolation(service_name, 'cap_add', self.CAPABILITIES_MESSAGE)]
        return []


def _is_unresolved(value: Any) -> bool:
    return isinstance(value, str) and '$' in value

