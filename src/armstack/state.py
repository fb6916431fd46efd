"""Lifecycle state derivation.

The provider reports one generic provisioning status for a deployment and
does not distinguish an update from a create. The intent this client
records in the stack's tags at save/destroy time is combined with the
mapped status by derive_state().
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum


class StackState(str, Enum):
    """Caller-visible lifecycle states."""

    CREATE_IN_PROGRESS = "create_in_progress"
    CREATE_COMPLETE = "create_complete"
    CREATE_FAILED = "create_failed"
    UPDATE_IN_PROGRESS = "update_in_progress"
    UPDATE_COMPLETE = "update_complete"
    UPDATE_FAILED = "update_failed"
    DELETE_IN_PROGRESS = "delete_in_progress"
    DELETE_COMPLETE = "delete_complete"
    DELETE_FAILED = "delete_failed"
    UNKNOWN = "unknown"


class Intent(str, Enum):
    """Last lifecycle operation requested by this client."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_tags(cls, tags: Mapping[str, str] | None) -> Intent | None:
        """Read the intent tag, ignoring missing or foreign values."""
        if not tags:
            return None
        value = tags.get(INTENT_TAG)
        try:
            return cls(value) if value else None
        except ValueError:
            return None


# Tag keys written by this client
INTENT_TAG = "state"
CREATED_TAG = "created"

STATUS_MAP: dict[str, StackState] = {
    "Failed": StackState.CREATE_FAILED,
    "Canceled": StackState.CREATE_FAILED,
    "Succeeded": StackState.CREATE_COMPLETE,
    "Deleting": StackState.DELETE_IN_PROGRESS,
    "Deleted": StackState.DELETE_COMPLETE,
}

_CREATE_PREFIX = "create_"


def status_to_state(status: str | None) -> StackState:
    """Map a raw provisioning status; anything unmapped is in progress."""
    if status is None:
        return StackState.CREATE_IN_PROGRESS
    return STATUS_MAP.get(status, StackState.CREATE_IN_PROGRESS)


def derive_state(status: str | None, intent: Intent | None) -> StackState:
    """Combine a raw provisioning status with the recorded intent.

    Only a ``create_*`` state is rewritten, and only for an update or
    delete intent: ``Succeeded`` under intent ``update`` becomes
    ``update_complete``. ``delete_*`` states are never rewritten.
    """
    state = status_to_state(status)
    if intent is None or intent is Intent.CREATE:
        return state
    if not state.value.startswith(_CREATE_PREFIX):
        return state
    return StackState(f"{intent.value}_{state.value[len(_CREATE_PREFIX):]}")
