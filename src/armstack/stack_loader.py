"""Stack definition loading with validation.

A definition names a stack, its template (inline or a file next to the
definition) and its parameters and tags. All file reads enforce size limits.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .config import (
    MAX_DEFINITION_FILE_SIZE_BYTES,
    MAX_STACK_NAME_LENGTH,
    MAX_TEMPLATE_FILE_SIZE_BYTES,
)
from .models import Stack, check_stack_name
from .state import CREATED_TAG, INTENT_TAG

logger = logging.getLogger(__name__)

RESERVED_TAGS = frozenset({INTENT_TAG, CREATED_TAG})


class StackLoadError(Exception):
    """Raised when a stack definition cannot be loaded or fails validation."""

    pass


class StackDefinition(BaseModel):
    """Desired state of one stack as written by a user."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=MAX_STACK_NAME_LENGTH)]
    template: dict[str, Any] | None = None
    template_file: str | None = Field(default=None, alias="templateFile")
    parameters: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return check_stack_name(v)

    @model_validator(mode="after")
    def check_template_source(self) -> StackDefinition:
        if (self.template is None) == (self.template_file is None):
            raise ValueError("exactly one of 'template' or 'templateFile' is required")
        reserved = RESERVED_TAGS & set(self.tags)
        if reserved:
            raise ValueError(f"tags {sorted(reserved)} are managed by armstack")
        return self

    def to_stack(self) -> Stack:
        """Build an unpersisted Stack; template_file must be resolved first."""
        return Stack(
            name=self.name,
            template=self.template,
            parameters=dict(self.parameters),
            tags=dict(self.tags),
        )


def _read_limited(path: Path, limit: int, what: str) -> str:
    if not path.exists():
        raise StackLoadError(f"{what} not found: {path}")
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise StackLoadError(f"Failed to stat {what.lower()} {path}: {e}") from e
    if file_size > limit:
        raise StackLoadError(f"{what} exceeds maximum size of {limit} bytes: {path}")
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise StackLoadError(f"Failed to read {what.lower()} {path}: {e}") from e


def _format_validation_errors(path: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "(root)"
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def load_template_file(path: Path) -> dict[str, Any]:
    """Load a JSON or YAML template.

    Raises:
        StackLoadError: If the file is missing, too large or not a mapping.
    """
    content = _read_limited(path, MAX_TEMPLATE_FILE_SIZE_BYTES, "Template file")
    try:
        if path.suffix.lower() == ".json":
            template = json.loads(content)
        else:
            template = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise StackLoadError(f"Invalid template in {path}: {e}") from e
    if not isinstance(template, dict):
        raise StackLoadError(f"Template must be a mapping: {path}")
    return template


def load_stack_definition(path: Path) -> StackDefinition:
    """Load and validate a stack definition from YAML.

    Both a flat document and a Kubernetes-style wrapper (``apiVersion``,
    ``kind``, ``spec``) are accepted. A relative ``templateFile`` is resolved
    against the definition's directory and loaded into ``template``.

    Args:
        path: Definition file.

    Returns:
        Validated definition with its template loaded.

    Raises:
        StackLoadError: If the definition cannot be loaded or is invalid.
    """
    content = _read_limited(path, MAX_DEFINITION_FILE_SIZE_BYTES, "Stack definition")
    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise StackLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise StackLoadError(f"Stack definition must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec", {})
        if not isinstance(data, dict):
            raise StackLoadError(f"Spec section must be a mapping: {path}")
        name = (raw_data.get("metadata") or {}).get("name")
        if name and "name" not in data:
            data = {**data, "name": name}
    else:
        data = raw_data

    try:
        definition = StackDefinition.model_validate(data)
    except ValidationError as e:
        raise StackLoadError(_format_validation_errors(path, e)) from e

    if definition.template_file is not None:
        template_path = Path(definition.template_file)
        if not template_path.is_absolute():
            template_path = path.parent / template_path
        definition = definition.model_copy(update={"template": load_template_file(template_path)})

    logger.info("Loaded stack definition '%s' from %s", definition.name, path)
    return definition
