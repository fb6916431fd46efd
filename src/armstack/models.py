"""Pydantic models for stacks and their derived collections.

Resources and events are value collections: they are rebuilt wholesale on
every reload and never patched in place.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .config import MAX_STACK_NAME_LENGTH
from .state import CREATED_TAG, Intent, StackState

STACK_NAME_CHARACTERS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.()"
)


def check_stack_name(name: str) -> str:
    """Resource group naming rules; the stack name is the group name."""
    if not set(name) <= STACK_NAME_CHARACTERS:
        raise ValueError("name may only contain alphanumerics, '-', '_', '.', '(' and ')'")
    if name.endswith("."):
        raise ValueError("name cannot end with '.'")
    return name

# =============================================================================
# Stack collections
# =============================================================================


class StackOutput(BaseModel):
    """One deployment output."""

    key: str
    value: Any = None


class Event(BaseModel):
    """One deployment operation, as reported by the provider."""

    model_config = {"extra": "ignore"}

    id: str
    resource_id: str | None = None
    resource_name: str | None = None
    resource_state: StackState = StackState.UNKNOWN
    resource_status: str | None = None
    resource_status_reason: str | None = None
    time: datetime | None = None


class Resource(BaseModel):
    """A declared resource joined with its first matching event."""

    model_config = {"extra": "ignore"}

    id: str
    type: str | None = None
    name: str | None = None
    logical_id: str | None = None
    state: StackState = StackState.UNKNOWN
    status: str = StackState.UNKNOWN.value
    status_reason: str | None = None
    updated: datetime | None = None


# =============================================================================
# Stack
# =============================================================================


class Stack(BaseModel):
    """A named, templated collection of resources managed as one unit.

    A stack without an id has not been persisted; only stack_save acts on
    it.
    """

    model_config = {"extra": "ignore"}

    id: str | None = None
    name: Annotated[str, Field(min_length=1, max_length=MAX_STACK_NAME_LENGTH)]
    template: dict[str, Any] | None = None
    template_url: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    outputs: list[StackOutput] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)
    state: StackState = StackState.UNKNOWN
    status: str | None = None
    created: datetime | None = None
    custom: dict[str, Any] = Field(default_factory=dict)
    resources: list[Resource] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return check_stack_name(v)

    @property
    def persisted(self) -> bool:
        return bool(self.id)

    @property
    def intent(self) -> Intent | None:
        return Intent.from_tags(self.tags)

    @property
    def created_tag(self) -> str | None:
        return self.tags.get(CREATED_TAG)

    def output(self, key: str) -> Any:
        """Value of the named output, or None."""
        for item in self.outputs:
            if item.key == key:
                return item.value
        return None


# =============================================================================
# Storage
# =============================================================================


class BlobInfo(BaseModel):
    """Listing entry for one blob."""

    container: str
    name: str
    size: int = 0
    etag: str | None = None
    content_type: str | None = None
    updated: str | None = None

    @property
    def id(self) -> str:
        return f"{self.container}/{self.name}"
