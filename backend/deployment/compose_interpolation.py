"""
Compose variable interpolation.

Resolves $VAR, ${VAR} and the ${VAR:-default} family the way `docker compose`
does, so the security policy sees the values compose will actually deploy.

Supported forms:
    $VAR, ${VAR}          value of VAR
    ${VAR:-word}          word if VAR is unset or empty
    ${VAR-word}           word if VAR is unset
    ${VAR:?message}       error if VAR is unset or empty
    ${VAR?message}        error if VAR is unset
    ${VAR:+word}          word if VAR is set and not empty, else ""
    ${VAR+word}           word if VAR is set, else ""
    $$                    a literal $

A variable that is unset and has no default is left as written, so callers
can recognise values that could not be resolved.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values

from .compose_validator import ComposeValidationError

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_EXPRESSION_RE = re.compile(r'([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-?+])(.*))?$', re.DOTALL)

ENV_FILE_NAME = '.env'


class InterpolationError(ComposeValidationError):
    """Raised for ${VAR:?message} when VAR has no value."""
    pass


def build_interpolation_environment(
    project_dir,
    env_pairs: Optional[List[Dict[str, str]]] = None,
    base_environment: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Variables compose resolves a stack file against.

    The project's .env file is the lowest layer, the process environment
    overrides it, and the stack's own env pairs override both.
    """
    environment: Dict[str, str] = {}

    env_file = Path(project_dir) / ENV_FILE_NAME
    if env_file.is_file():
        values = dotenv_values(env_file)
        environment.update({name: value for name, value in values.items() if value is not None})
        logger.debug(f"Loaded {len(values)} variables from {env_file}")

    environment.update(os.environ if base_environment is None else base_environment)

    for pair in env_pairs or []:
        name = pair.get('name')
        if name:
            environment[name] = str(pair.get('value') or '')
    return environment


def interpolate(data: Any, environment: Mapping[str, str]) -> Any:
    """Interpolate every string value in a loaded compose document. Keys are left alone."""
    if isinstance(data, dict):
        return {key: interpolate(value, environment) for key, value in data.items()}
    if isinstance(data, list):
        return [interpolate(item, environment) for item in data]
    if isinstance(data, str):
        return interpolate_string(data, environment)
    return data


def interpolate_string(value: str, environment: Mapping[str, str]) -> str:
    """
    Interpolate one string.

    Raises:
        InterpolationError: If a ${VAR:?message} variable has no value
    """
    result = []
    i = 0
    while i < len(value):
        char = value[i]
        if char != '$':
            result.append(char)
            i += 1
            continue

        following = value[i + 1:i + 2]
        if following == '$':
            result.append('$')
            i += 2
        elif following == '{':
            end = _closing_brace(value, i + 2)
            if end == -1:
                result.append(value[i:])
                break
            result.append(_substitute(value[i + 2:end], value[i:end + 1], environment))
            i = end + 1
        else:
            match = _NAME_RE.match(value, i + 1)
            if match:
                name = match.group(0)
                result.append(environment[name] if name in environment else value[i:match.end()])
                i = match.end()
            else:
                result.append('$')
                i += 1

    return ''.join(result)


def _closing_brace(value: str, start: int) -> int:
    """Index of the brace closing a ${ opened just before start, or -1."""
    depth = 1
    for index in range(start, len(value)):
        if value[index] == '{':
            depth += 1
        elif value[index] == '}':
            depth -= 1
            if depth == 0:
                return index
    return -1


def _substitute(expression: str, original: str, environment: Mapping[str, str]) -> str:
    match = _EXPRESSION_RE.match(expression)
    if not match:
        # compose rejects these; keep the text so it stays recognisable
        return original

    name, operator, word = match.groups()
    value = environment.get(name)
    is_set = value is not None
    has_value = bool(value)

    if operator is None:
        return value if is_set else original

    if operator in (':-', '-'):
        use_default = not has_value if operator == ':-' else not is_set
        return interpolate_string(word, environment) if use_default else value

    if operator in (':?', '?'):
        missing = not has_value if operator == ':?' else not is_set
        if missing:
            raise InterpolationError(f"Required variable {name} is missing a value: {word}")
        return value

    present = has_value if operator == ':+' else is_set
    return interpolate_string(word, environment) if present else ''
