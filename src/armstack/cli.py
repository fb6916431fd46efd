"""armstack command line.

Usage:
    armstack list                   # Stacks managed by armstack
    armstack show NAME              # One stack with outputs
    armstack apply stack.yaml       # Create or update from a definition
    armstack destroy NAME           # Request deletion
    armstack events NAME --follow   # Stream deployment operations
    armstack resources NAME         # Declared resources and their state
    armstack validate stack.yaml    # Provider-side template validation
    armstack template NAME          # Print the current template
    armstack url CONTAINER KEY      # Mint a read-only blob URL

Credentials are read from the environment (see Credentials.from_env).
"""

from __future__ import annotations

import functools
import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from pydantic import ValidationError

from .config import Config, ConfigurationError
from .models import Stack
from .oauth import AuthenticationFailure
from .reconciler import DeploymentReconciler
from .stack_loader import StackDefinition, StackLoadError, load_stack_definition
from .state import CREATED_TAG, INTENT_TAG, StackState
from .storage import BlobStorage
from .transport import RequestError, Transport

F = TypeVar("F", bound=Callable[..., Any])

# Polling bounds for --follow
DEFAULT_FOLLOW_INTERVAL_SECONDS = 10
MIN_FOLLOW_INTERVAL_SECONDS = 1
MAX_FOLLOW_INTERVAL_SECONDS = 300

TERMINAL_STATES = frozenset(
    state
    for state in StackState
    if state.value.endswith(("_complete", "_failed"))
)

# Fields omitted from `show`; they have their own commands
SHOW_EXCLUDE = {"template", "custom", "resources", "events"}


def handle_errors(func: F) -> F:
    """Surface expected failures as click errors instead of tracebacks."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except (ConfigurationError, StackLoadError) as e:
            raise click.ClickException(str(e)) from e
        except AuthenticationFailure as e:
            raise click.ClickException(f"Authentication failed: {e.message}") from e
        except RequestError as e:
            raise click.ClickException(f"{e.method} {e.path} returned {e.status}: {e.body}") from e
        except ValidationError as e:
            raise click.ClickException(str(e)) from e

    return wrapper  # type: ignore[return-value]


def get_config(ctx: click.Context) -> Config:
    if "config" not in ctx.obj:
        ctx.obj["config"] = Config.from_env()
    return ctx.obj["config"]


def get_reconciler(ctx: click.Context) -> DeploymentReconciler:
    if "reconciler" not in ctx.obj:
        ctx.obj["reconciler"] = DeploymentReconciler(get_config(ctx))
    return ctx.obj["reconciler"]


def get_storage(ctx: click.Context) -> BlobStorage:
    if "storage" not in ctx.obj:
        config = get_config(ctx)
        ctx.obj["storage"] = BlobStorage(
            config.credentials, Transport(timeout_seconds=config.request_timeout_seconds)
        )
    return ctx.obj["storage"]


def require_stack(reconciler: DeploymentReconciler, name: str) -> Stack:
    stack = reconciler.stack_get(name)
    if stack is None:
        raise click.ClickException(f"Stack '{name}' not found")
    return stack


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def stack_from_definition(reconciler: DeploymentReconciler, definition: StackDefinition) -> Stack:
    """Existing stack updated with the definition, or a new unpersisted one."""
    existing = reconciler.stack_get(definition.name)
    if existing is None:
        return definition.to_stack()
    managed = {k: v for k, v in existing.tags.items() if k in (INTENT_TAG, CREATED_TAG)}
    existing.template = definition.template
    existing.parameters = dict(definition.parameters)
    existing.tags = {**definition.tags, **managed}
    return existing


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="armstack")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Manage resource-group deployments as stacks."""
    ctx.ensure_object(dict)
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


# =============================================================================
# Stack Commands
# =============================================================================


@cli.command(name="list")
@click.pass_context
@handle_errors
def list_stacks(ctx: click.Context) -> None:
    """List stacks managed by armstack."""
    for stack in get_reconciler(ctx).stack_all():
        click.echo(f"{stack.name}\t{stack.state.value}\t{stack.status or '-'}")


@cli.command()
@click.argument("name")
@click.pass_context
@handle_errors
def show(ctx: click.Context, name: str) -> None:
    """Show one stack."""
    stack = require_stack(get_reconciler(ctx), name)
    echo_json(stack.model_dump(mode="json", exclude=SHOW_EXCLUDE))


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@handle_errors
def apply(ctx: click.Context, definition_file: Path) -> None:
    """Create or update a stack from a definition file."""
    reconciler = get_reconciler(ctx)
    definition = load_stack_definition(definition_file)
    stack = reconciler.stack_save(stack_from_definition(reconciler, definition))
    click.secho(f"{stack.name}: {stack.state.value}", fg="green")


@cli.command()
@click.argument("name")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation.")
@click.pass_context
@handle_errors
def destroy(ctx: click.Context, name: str, yes: bool) -> None:
    """Delete a stack and its resource group."""
    reconciler = get_reconciler(ctx)
    stack = require_stack(reconciler, name)
    if not yes:
        click.confirm(f"Delete stack '{name}' and all of its resources?", abort=True)
    reconciler.stack_destroy(stack)
    click.secho(f"{stack.name}: {stack.state.value}", fg="yellow")


@cli.command()
@click.argument("name")
@click.option("--follow", is_flag=True, help="Keep printing new events until the stack settles.")
@click.option(
    "--interval",
    type=click.IntRange(MIN_FOLLOW_INTERVAL_SECONDS, MAX_FOLLOW_INTERVAL_SECONDS),
    default=DEFAULT_FOLLOW_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between polls with --follow.",
)
@click.pass_context
@handle_errors
def events(ctx: click.Context, name: str, follow: bool, interval: int) -> None:
    """Print deployment operations for a stack."""
    reconciler = get_reconciler(ctx)
    stack = require_stack(reconciler, name)
    batch = reconciler.event_all(stack)
    while True:
        for event in batch:
            click.echo(
                f"{event.time.isoformat() if event.time else '-'}\t"
                f"{event.resource_name or '-'}\t{event.resource_status or '-'}\t"
                f"{event.resource_status_reason or ''}".rstrip()
            )
        if not follow or stack.state in TERMINAL_STATES:
            return
        time.sleep(interval)
        reconciler.stack_reload(stack)
        had_events = bool(stack.events)
        batch = reconciler.event_all_new(stack)
        if had_events:
            stack.events = [*stack.events, *batch]


@cli.command()
@click.argument("name")
@click.pass_context
@handle_errors
def resources(ctx: click.Context, name: str) -> None:
    """List declared resources with their reported state."""
    reconciler = get_reconciler(ctx)
    stack = require_stack(reconciler, name)
    for resource in reconciler.resource_all(stack):
        click.echo(f"{resource.name or '-'}\t{resource.type or '-'}\t{resource.state.value}")


@cli.command()
@click.argument("definition_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
@handle_errors
def validate(ctx: click.Context, definition_file: Path) -> None:
    """Validate a definition's template and parameters with the provider."""
    reconciler = get_reconciler(ctx)
    definition = load_stack_definition(definition_file)
    message = reconciler.stack_template_validate(stack_from_definition(reconciler, definition))
    if message is not None:
        raise click.ClickException(f"Validation failed: {message}")
    click.secho(f"{definition.name}: valid", fg="green")


@cli.command()
@click.argument("name")
@click.pass_context
@handle_errors
def template(ctx: click.Context, name: str) -> None:
    """Print the stack's current template."""
    reconciler = get_reconciler(ctx)
    echo_json(reconciler.stack_template_load(require_stack(reconciler, name)))


# =============================================================================
# Storage Commands
# =============================================================================


@cli.command()
@click.argument("container")
@click.argument("key")
@click.option("--timeout", type=click.IntRange(min=1), help="URL lifetime in seconds.")
@click.pass_context
@handle_errors
def url(ctx: click.Context, container: str, key: str, timeout: int | None) -> None:
    """Mint a read-only URL for a blob."""
    lifetime = timeout or get_config(ctx).template_url_timeout_seconds
    click.echo(get_storage(ctx).blob_url(container, key, lifetime))
