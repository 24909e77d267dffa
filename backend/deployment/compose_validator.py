"""
Docker Compose YAML loading with safety checks.

Harbormaster never interprets the compose file beyond what the security
policy needs; docker compose itself handles all structural validation.
"""

from typing import Union

import yaml


class ComposeValidationError(Exception):
    """Raised when compose file cannot be safely parsed"""
    pass


class ComposeValidator:
    """
    Safety checks for Docker Compose files.

    Only loads YAML after rejecting tags that could construct Python objects.
    """

    # Dangerous YAML tags that could execute code
    DANGEROUS_TAGS = [
        '!!python/object',
        '!!python/name',
        '!!python/module',
        '!!python/object/apply',
        '!!python/object/new',
    ]

    def validate_yaml_safety(self, compose_yaml: str) -> None:
        """
        Validate YAML doesn't contain dangerous tags.

        Raises:
            ComposeValidationError: If unsafe tags found
        """
        for tag in self.DANGEROUS_TAGS:
            if tag in compose_yaml:
                raise ComposeValidationError(
                    f"Unsafe YAML tag detected: {tag}. This could execute arbitrary code."
                )

    def load(self, content: Union[str, bytes]) -> dict:
        """
        Safely parse compose content into a dict.

        Raises:
            ComposeValidationError: If content is not UTF-8, not valid YAML,
                or not a YAML mapping
        """
        if isinstance(content, bytes):
            try:
                content = content.decode('utf-8')
            except UnicodeDecodeError:
                raise ComposeValidationError("Compose file must be UTF-8 text")

        self.validate_yaml_safety(content)

        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise ComposeValidationError(f"Invalid YAML syntax: {e}")

        if not isinstance(data, dict):
            raise ComposeValidationError("Compose file must be a YAML object")

        return data
