"""
Unit tests for compose variable interpolation.

Tests verify:
- Each substitution form behaves like docker compose
- Unset variables without a default are left as written
- The .env file, process environment and stack env pairs are layered in order
"""

import pytest

from deployment.compose_interpolation import (
    InterpolationError,
    build_interpolation_environment,
    interpolate,
    interpolate_string,
)

ENVIRONMENT = {"HOME": "/home/deploy", "TAG": "1.25", "EMPTY": ""}


class TestInterpolateString:

    @pytest.mark.parametrize("value,expected", [
        ("$HOME/data", "/home/deploy/data"),
        ("${HOME}/data", "/home/deploy/data"),
        ("nginx:${TAG}", "nginx:1.25"),
        ("${MISSING:-fallback}", "fallback"),
        ("${EMPTY:-fallback}", "fallback"),
        ("${EMPTY-fallback}", ""),
        ("${MISSING-fallback}", "fallback"),
        ("${TAG:+set}", "set"),
        ("${EMPTY:+set}", ""),
        ("${EMPTY+set}", "set"),
        ("${MISSING+set}", ""),
        ("${MISSING:-${HOME}}", "/home/deploy"),
        ("$$HOME", "$HOME"),
        ("cost: 5$", "cost: 5$"),
        ("no variables", "no variables"),
    ])
    def test_substitution(self, value, expected):
        assert interpolate_string(value, ENVIRONMENT) == expected

    @pytest.mark.parametrize("value", ["${MISSING}", "$MISSING", "${MISSING}/etc", "${unclosed"])
    def test_unresolved_left_as_written(self, value):
        assert interpolate_string(value, ENVIRONMENT) == value

    def test_required_variable_present(self):
        assert interpolate_string("${TAG:?tag required}", ENVIRONMENT) == "1.25"

    @pytest.mark.parametrize("value", ["${MISSING:?tag required}", "${EMPTY:?tag required}", "${MISSING?x}"])
    def test_required_variable_missing(self, value):
        with pytest.raises(InterpolationError, match="Required variable"):
            interpolate_string(value, ENVIRONMENT)


class TestInterpolateDocument:

    def test_nested_values_interpolated_keys_untouched(self):
        document = {
            "services": {
                "${TAG}": {"image": "nginx:${TAG}", "volumes": ["${HOME}:/data"], "privileged": True},
            },
        }

        result = interpolate(document, ENVIRONMENT)

        assert result == {
            "services": {
                "${TAG}": {"image": "nginx:1.25", "volumes": ["/home/deploy:/data"], "privileged": True},
            },
        }


class TestBuildInterpolationEnvironment:

    def test_layers_in_order(self, tmp_path):
        (tmp_path / ".env").write_text("FROM_FILE=file\nOVERRIDDEN=file\nPAIR=file\n")

        environment = build_interpolation_environment(
            tmp_path,
            [{"name": "PAIR", "value": "pair"}],
            base_environment={"OVERRIDDEN": "process", "PAIR": "process"},
        )

        assert environment == {"FROM_FILE": "file", "OVERRIDDEN": "process", "PAIR": "pair"}

    def test_without_env_file(self, tmp_path):
        environment = build_interpolation_environment(tmp_path, None, base_environment={"A": "1"})
        assert environment == {"A": "1"}

    def test_defaults_to_process_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STACK_TEST_VARIABLE", "from-process")

        environment = build_interpolation_environment(tmp_path)

        assert environment["STACK_TEST_VARIABLE"] == "from-process"

    def test_empty_pair_value(self, tmp_path):
        environment = build_interpolation_environment(tmp_path, [{"name": "A", "value": None}], base_environment={})
        assert environment == {"A": ""}
