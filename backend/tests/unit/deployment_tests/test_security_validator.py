"""
Unit tests for endpoint security policy enforcement.

Tests verify:
- Each disallowed directive is detected (short and long volume syntax)
- Allowed categories are not checked
- Variables are interpolated before directives are judged
- All violations are reported together
- Unsafe or unparseable YAML is a validation error
"""

from types import SimpleNamespace

import pytest

from deployment.errors import PolicyViolationError, ValidationError
from deployment.security_validator import (
    SecuritySettings,
    SecurityValidator,
)

RESTRICTED = SecuritySettings()
PERMISSIVE = SecuritySettings(True, True, True, True, True)

STACK_ENVIRONMENT = {
    "HOME": "/home/deploy",
    "PWD": "/srv/app",
    "PRIV": "true",
    "NOT_PRIV": "false",
    "NM": "host",
    "DEV": "/dev/ttyUSB0",
    "CAP": "NET_ADMIN",
    "EMPTY": "",
}


def _validate(content, settings, environment=None):
    SecurityValidator().validate_stack_file(content, settings, environment)


def _compose(service_yaml: str) -> str:
    lines = "\n".join(f"    {line}" for line in service_yaml.strip().splitlines())
    return f"services:\n  web:\n    image: nginx\n{lines}\n"


class TestSecuritySettings:
    """Test settings construction"""

    def test_defaults_disallow_everything(self):
        assert RESTRICTED.all_allowed is False
        assert RESTRICTED.allow_privileged_mode is False

    def test_all_allowed(self):
        assert PERMISSIVE.all_allowed is True
        assert SecuritySettings(True, True, True, True, False).all_allowed is False

    def test_from_endpoint(self):
        endpoint = SimpleNamespace(
            allow_bind_mounts_for_regular_users=True,
            allow_privileged_mode_for_regular_users=False,
            allow_host_namespace_for_regular_users=None,
            allow_device_mapping_for_regular_users=True,
            allow_container_capabilities_for_regular_users=False,
        )
        settings = SecuritySettings.from_endpoint(endpoint)

        assert settings == SecuritySettings(
            allow_bind_mounts=True,
            allow_privileged_mode=False,
            allow_host_namespace=False,
            allow_device_mapping=True,
            allow_container_capabilities=False,
        )


class TestDirectiveDetection:
    """Test each policy category"""

    @pytest.mark.parametrize("directive,message", [
        ("privileged: true", "privileged mode disabled for non administrator users"),
        ("volumes:\n  - /var/run/docker.sock:/var/run/docker.sock", "bind-mount disabled for non administrator users"),
        ("volumes:\n  - ./data:/data:ro", "bind-mount disabled for non administrator users"),
        ("volumes:\n  - ~/cache:/cache", "bind-mount disabled for non administrator users"),
        ("volumes:\n  - type: bind\n    source: /srv\n    target: /srv", "bind-mount disabled for non administrator users"),
        ("pid: host", "host namespace disabled for non administrator users"),
        ("ipc: host", "host namespace disabled for non administrator users"),
        ("network_mode: host", "host namespace disabled for non administrator users"),
        ("devices:\n  - /dev/ttyUSB0:/dev/ttyUSB0", "device mapping disabled for non administrator users"),
        ("cap_add:\n  - NET_ADMIN", "container capabilities disabled for non administrator users"),
    ])
    def test_directive_rejected_when_disallowed(self, directive, message):
        with pytest.raises(PolicyViolationError) as exc_info:
            _validate(_compose(directive), RESTRICTED)

        assert exc_info.value.message == message
        assert exc_info.value.status_code == 400

    @pytest.mark.parametrize("directive", [
        "privileged: true",
        "volumes:\n  - /srv:/srv",
        "network_mode: host",
        "devices:\n  - /dev/fuse",
        "cap_add:\n  - SYS_ADMIN",
    ])
    def test_directive_accepted_when_allowed(self, directive):
        _validate(_compose(directive), PERMISSIVE)

    @pytest.mark.parametrize("directive", [
        "volumes:\n  - data:/var/lib/data",
        "volumes:\n  - /var/lib/anonymous",
        "volumes:\n  - type: volume\n    source: data\n    target: /data",
        "privileged: false",
        "network_mode: bridge",
        "pid: service:db",
        "devices: []",
        "cap_drop:\n  - ALL",
    ])
    def test_harmless_directives_pass_restricted(self, directive):
        _validate(_compose(directive), RESTRICTED)

    def test_only_disallowed_categories_checked(self):
        """Should allow bind mounts when only privileged mode is restricted"""
        settings = SecuritySettings(allow_bind_mounts=True)
        _validate(_compose("volumes:\n  - /srv:/srv"), settings)

        with pytest.raises(PolicyViolationError):
            _validate(_compose("privileged: true"), settings)


class TestVariableInterpolation:
    """Test that directives are judged after variables are interpolated"""

    @pytest.mark.parametrize("directive,message", [
        ('volumes:\n  - "${HOME}:/data"', "bind-mount disabled for non administrator users"),
        ('volumes:\n  - "$PWD:/app"', "bind-mount disabled for non administrator users"),
        ('volumes:\n  - "${PWD}/etc:/etc:ro"', "bind-mount disabled for non administrator users"),
        ('volumes:\n  - "${DATA_DIR:-/srv/data}:/data"', "bind-mount disabled for non administrator users"),
        ('volumes:\n  - type: "${MOUNT_TYPE:-bind}"\n    source: /srv\n    target: /srv',
         "bind-mount disabled for non administrator users"),
        ("privileged: ${PRIV}", "privileged mode disabled for non administrator users"),
        ("privileged: ${UNSET_PRIV:-true}", "privileged mode disabled for non administrator users"),
        ("network_mode: ${NM}", "host namespace disabled for non administrator users"),
        ("pid: $NM", "host namespace disabled for non administrator users"),
        ("ipc: ${IPC_MODE:-host}", "host namespace disabled for non administrator users"),
        ('devices:\n  - "${DEV}:${DEV}"', "device mapping disabled for non administrator users"),
        ("cap_add:\n  - ${CAP}", "container capabilities disabled for non administrator users"),
    ])
    def test_interpolated_directive_rejected(self, directive, message):
        with pytest.raises(PolicyViolationError) as exc_info:
            _validate(_compose(directive), RESTRICTED, STACK_ENVIRONMENT)

        assert exc_info.value.message == message

    @pytest.mark.parametrize("directive,field", [
        ('volumes:\n  - "${UNKNOWN_DIR}:/data"', "volumes"),
        ('volumes:\n  - "$$HOME:/data"', "volumes"),
        ("privileged: ${UNKNOWN_FLAG}", "privileged"),
        ("network_mode: ${UNKNOWN_MODE}", "network_mode"),
    ])
    def test_unresolved_variable_treated_as_directive(self, directive, field):
        with pytest.raises(PolicyViolationError) as exc_info:
            _validate(_compose(directive), RESTRICTED, STACK_ENVIRONMENT)

        assert [v.field for v in exc_info.value.violations] == [field]

    @pytest.mark.parametrize("directive", [
        "privileged: ${NOT_PRIV}",
        "privileged: ${UNSET_PRIV:-false}",
        "network_mode: ${UNSET_MODE:-bridge}",
        'volumes:\n  - "${VOLUME_NAME:-data}:/data"',
        'volumes:\n  - "${EMPTY:-cache}:/cache"',
        "cap_add: ${EMPTY:+[NET_ADMIN]}",
    ])
    def test_interpolated_harmless_values_pass(self, directive):
        _validate(_compose(directive), RESTRICTED, STACK_ENVIRONMENT)

    def test_process_environment_used_by_default(self, monkeypatch):
        monkeypatch.setenv("PRIV", "yes")

        with pytest.raises(PolicyViolationError):
            _validate(_compose("privileged: ${PRIV}"), RESTRICTED)

    def test_required_variable_missing_is_validation_error(self):
        with pytest.raises(ValidationError, match="Invalid stack file"):
            _validate(_compose("labels:\n  - version=${TAG:?set a tag}"), RESTRICTED, STACK_ENVIRONMENT)


class TestViolationReporting:
    """Test aggregated reporting"""

    def test_all_violations_named(self):
        content = (
            "services:\n"
            "  web:\n"
            "    image: nginx\n"
            "    privileged: true\n"
            "    network_mode: host\n"
            "  worker:\n"
            "    image: busybox\n"
            "    volumes:\n"
            "      - /etc:/host-etc\n"
            "    cap_add: [NET_ADMIN]\n"
        )

        with pytest.raises(PolicyViolationError) as exc_info:
            _validate(content, RESTRICTED)

        error = exc_info.value
        assert "privileged mode disabled" in error.message
        assert "host namespace disabled" in error.message
        assert "bind-mount disabled" in error.message
        assert "container capabilities disabled" in error.message
        assert {(v.service, v.field) for v in error.violations} == {
            ("web", "privileged"), ("web", "network_mode"), ("worker", "volumes"), ("worker", "cap_add"),
        }

    def test_same_policy_named_once(self):
        content = (
            "services:\n"
            "  a:\n    image: x\n    privileged: true\n"
            "  b:\n    image: y\n    privileged: true\n"
        )
        with pytest.raises(PolicyViolationError) as exc_info:
            _validate(content, RESTRICTED)

        assert exc_info.value.message == "privileged mode disabled for non administrator users"
        assert len(exc_info.value.violations) == 2


class TestParsing:
    """Test YAML handling"""

    def test_accepts_bytes(self):
        _validate(b"services:\n  web:\n    image: nginx\n", RESTRICTED)

    def test_file_without_services_passes(self):
        _validate("version: '3.8'\n", RESTRICTED)

    def test_service_without_config_passes(self):
        _validate("services:\n  web:\n", RESTRICTED)

    def test_invalid_yaml_is_validation_error(self):
        with pytest.raises(ValidationError, match="Invalid stack file"):
            _validate("services: [unclosed", RESTRICTED)

    def test_non_mapping_is_validation_error(self):
        with pytest.raises(ValidationError):
            _validate("- just\n- a list\n", RESTRICTED)

    def test_python_tags_rejected(self):
        content = "services: !!python/object/apply:os.system ['id']\n"
        with pytest.raises(ValidationError) as exc_info:
            SecurityValidator().validate_stack_file(content, PERMISSIVE)

        assert "Unsafe YAML tag" in exc_info.value.details

    def test_non_utf8_is_validation_error(self):
        with pytest.raises(ValidationError):
            _validate(b"services:\n  web:\n    image: \xff\xfe\n", RESTRICTED)
