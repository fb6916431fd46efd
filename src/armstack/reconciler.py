"""Deployment lifecycle reconciliation.

A stack maps onto one resource group holding one deployment of the same
name. The provider provisions asynchronously and reports a single generic
status, so this module:

1. Records the requested intent (create/update/delete) in the resource
   group's tags at save/destroy time.
2. Re-reads the resource group and deployment on reload and combines the
   provisioning status with the recorded intent (see state.derive_state).
3. Resolves a 404 on the deployment locally: under intent ``create`` the
   deployment has not materialized yet, otherwise it is gone.
4. Derives resources by joining the deployment's declared dependencies
   with its operation history.

Nothing here retries or polls; callers poll by reloading.

KNOWN GAP: template externalization and deployment creation are separate,
non-transactional calls. A failure between them leaves the template blob
behind; it is overwritten by the next save of the same stack name.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from .config import (
    DEPLOYMENT_API_VERSION,
    MAX_INLINE_TEMPLATE_BYTES,
    Config,
    ConfigurationError,
    ServiceConfig,
)
from .dispatcher import RequestDispatcher
from .models import Event, Resource, Stack, StackOutput
from .oauth import Clock, TokenManager, utc_now
from .pagination import dig
from .state import CREATED_TAG, INTENT_TAG, Intent, StackState, derive_state, status_to_state
from .storage import BlobStorage
from .template_store import TemplateStore, template_size
from .transport import RequestError, Transport

logger = logging.getLogger(__name__)

# Full declarative replace: resources absent from the template are deleted
DEPLOYMENT_MODE = "Complete"

DEPLOYMENT_PROVIDER_PATH = "providers/microsoft.resources/deployments"

_DEPLOYMENT_SUFFIX = re.compile(r"/providers/microsoft\.resources/deployments/[^/]+/?$", re.I)
_FRACTION = re.compile(r"(\.\d{6})\d+")

# Statuses recorded when a 404 is resolved from intent
PENDING_STATUS = "Accepted"
DELETED_STATUS = "Deleted"


def stack_id_from_deployment_id(deployment_id: str) -> str:
    """Strip the deployment-specific suffix from a deployment resource id."""
    return _DEPLOYMENT_SUFFIX.sub("", deployment_id)


def wrap_parameters(parameters: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Wrap plain parameter values in the provider's value envelope."""
    return {name: {"value": value} for name, value in parameters.items()}


def unwrap_value(item: Any) -> Any:
    if isinstance(item, Mapping) and "value" in item:
        return item["value"]
    return item


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse provider timestamps (ISO 8601, up to 7 fractional digits)."""
    if not value:
        return None
    normalized = _FRACTION.sub(r"\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        logger.debug("Unparseable provider timestamp", extra={"value": value})
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class DeploymentReconciler:
    """Creates, observes and destroys resource-group deployments."""

    def __init__(
        self,
        config: Config,
        transport: Transport | None = None,
        *,
        template_store: TemplateStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            config: Client configuration.
            transport: HTTP transport (a requests-backed one by default).
            template_store: Template externalization target. Built from the
                blob credentials when omitted and those are present.
            clock: Time source for tokens, signatures and created tags.
        """
        credentials = config.credentials
        self._config = config
        self._clock = clock or utc_now
        self._transport = transport or Transport(timeout_seconds=config.request_timeout_seconds)
        self._token_manager = TokenManager(credentials, self._transport, clock=self._clock)
        self._api = RequestDispatcher(
            credentials.resource,
            self._transport,
            service=ServiceConfig(
                api_version=DEPLOYMENT_API_VERSION,
                root_path=f"/subscriptions/{credentials.subscription_id}/resourcegroups",
            ),
            token_manager=self._token_manager,
            clock=self._clock,
        )
        if template_store is None and credentials.has_blob_storage:
            template_store = TemplateStore(
                BlobStorage(credentials, self._transport, clock=self._clock),
                credentials.root_orchestration_container,
                config.template_url_timeout_seconds,
            )
        self._template_store = template_store

    @property
    def config(self) -> Config:
        return self._config

    @property
    def token_manager(self) -> TokenManager:
        return self._token_manager

    @property
    def template_store(self) -> TemplateStore | None:
        return self._template_store

    def retryable_allowed(self, error: BaseException) -> bool:
        """Whether a caller may retry after error.

        Only request errors qualify, and only in debug mode.
        """
        return self._config.debug and isinstance(error, RequestError)

    # =========================================================================
    # Paths and payloads
    # =========================================================================

    def stack_id_for(self, name: str) -> str:
        return f"/subscriptions/{self._config.credentials.subscription_id}/resourceGroups/{name}"

    @staticmethod
    def deployment_path(name: str) -> str:
        return f"{name}/{DEPLOYMENT_PROVIDER_PATH}/{name}"

    def _deployment_body(self, stack: Stack, template_url: str | None) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "mode": DEPLOYMENT_MODE,
            "parameters": wrap_parameters(stack.parameters),
        }
        if template_url:
            properties["templateLink"] = {"uri": template_url}
        elif stack.template is not None:
            properties["template"] = stack.template
        else:
            raise ValueError(f"Stack '{stack.name}' has no template")
        return {"properties": properties}

    def _store_template(self, stack: Stack) -> str | None:
        """Externalize the template when required.

        Returns:
            URL of the stored template, or None to send it inline.

        Raises:
            ConfigurationError: If an oversized template has nowhere to go.
        """
        if stack.template is None:
            if stack.template_url and self._template_store is not None:
                # Re-mint the read URL; the previous one may have expired
                return self._template_store.url(stack)
            return stack.template_url

        store = self._template_store
        if store is not None and store.should_externalize(
            stack.template, self._config.always_externalize_templates
        ):
            return store.save(stack)
        if template_size(stack.template) > MAX_INLINE_TEMPLATE_BYTES:
            raise ConfigurationError(
                f"Template for stack '{stack.name}' exceeds {MAX_INLINE_TEMPLATE_BYTES} bytes "
                "and no blob storage is configured"
            )
        return None

    # =========================================================================
    # Stack lifecycle
    # =========================================================================

    def stack_save(self, stack: Stack) -> Stack:
        """Create or update the stack's deployment.

        The template is externalized first; the resource group and
        deployment calls are only issued once that has succeeded.

        Raises:
            RequestError: If a provider call fails.
            ConfigurationError: If the template cannot be delivered.
        """
        template_url = self._store_template(stack)

        intent = Intent.UPDATE if stack.persisted else Intent.CREATE
        tags = dict(stack.tags)
        tags[INTENT_TAG] = intent.value
        if intent is Intent.CREATE or CREATED_TAG not in tags:
            tags[CREATED_TAG] = self._clock().strftime("%Y-%m-%dT%H:%M:%SZ")

        body = self._deployment_body(stack, template_url)
        try:
            if intent is Intent.CREATE:
                self._api.request(
                    "PUT",
                    stack.name,
                    json={"location": self._config.credentials.region, "tags": tags},
                    expects=(200, 201),
                )
            else:
                self._api.request("PATCH", stack.name, json={"tags": tags}, expects=(200,))
            response = self._api.request(
                "PUT",
                self.deployment_path(stack.name),
                json=body,
                expects=(200, 201),
            )
        except RequestError as e:
            if template_url and stack.template is not None:
                logger.warning(
                    "Deployment request failed after template was stored",
                    extra={"stack": stack.name, "status": e.status},
                )
            raise

        result = response.body if isinstance(response.body, dict) else {}
        deployment_id = result.get("id") or f"{self.stack_id_for(stack.name)}/{DEPLOYMENT_PROVIDER_PATH}/{stack.name}"
        stack.id = stack_id_from_deployment_id(deployment_id)
        stack.name = stack.id.rstrip("/").rsplit("/", 1)[-1]
        stack.tags = tags
        stack.created = parse_timestamp(tags.get(CREATED_TAG))
        if template_url:
            stack.template_url = template_url
            if self._template_store is not None:
                stack.template = None

        status = dig(result, "properties", "provisioningState")
        stack.status = status
        stack.state = derive_state(status, intent)
        stack.custom = result

        logger.info(
            "Stack saved",
            extra={
                "stack": stack.name,
                "intent": intent.value,
                "status": status,
                "template_externalized": bool(template_url),
            },
        )
        return stack

    def stack_reload(self, stack: Stack) -> Stack:
        """Refresh state from the provider; no-op for unpersisted stacks."""
        if not stack.persisted:
            return stack
        return self.fetch_single_stack(stack)

    def fetch_single_stack(
        self,
        stack: Stack,
        group: Mapping[str, Any] | None = None,
    ) -> Stack:
        """Load one stack's resource group metadata and deployment.

        Args:
            stack: Persisted stack to refresh in place.
            group: Resource group entry already fetched by a bulk listing.
        """
        if group is None:
            group = self._find_resource_group(stack)
        if group is not None:
            stack.tags = dict(group.get("tags") or {})
        stack.created = parse_timestamp(stack.tags.get(CREATED_TAG))
        intent = Intent.from_tags(stack.tags)

        try:
            response = self._api.request("GET", self.deployment_path(stack.name))
        except RequestError as e:
            if e.status != 404:
                raise
            return self._resolve_missing_deployment(stack, intent)

        self._load_deployment(stack, response.body, intent)
        return stack

    def _resolve_missing_deployment(self, stack: Stack, intent: Intent | None) -> Stack:
        # The provider cannot tell "not yet created" from "already deleted"
        if intent is Intent.CREATE:
            stack.status = PENDING_STATUS
            stack.state = StackState.CREATE_IN_PROGRESS
        else:
            stack.status = DELETED_STATUS
            stack.state = StackState.DELETE_COMPLETE
            stack.resources = []
            stack.events = []
        stack.custom = {}
        logger.debug(
            "Deployment not found, resolved from intent",
            extra={
                "stack": stack.name,
                "intent": intent.value if intent else None,
                "state": stack.state.value,
            },
        )
        return stack

    def _load_deployment(self, stack: Stack, body: Any, intent: Intent | None) -> None:
        document = body if isinstance(body, dict) else {}
        properties = document.get("properties") or {}
        if document.get("id"):
            stack.id = stack_id_from_deployment_id(document["id"])
        status = properties.get("provisioningState")
        stack.parameters = {
            name: unwrap_value(item) for name, item in (properties.get("parameters") or {}).items()
        }
        stack.outputs = [
            StackOutput(key=name, value=unwrap_value(item))
            for name, item in (properties.get("outputs") or {}).items()
        ]
        stack.template_url = dig(properties, "templateLink", "uri") or stack.template_url
        stack.status = status
        stack.state = derive_state(status, intent)
        stack.custom = document

    def _list_resource_groups(self) -> list[dict[str, Any]]:
        response = self._api.request("GET")
        body = response.body if isinstance(response.body, dict) else {}
        return list(body.get("value") or [])

    def _find_resource_group(self, stack: Stack) -> dict[str, Any] | None:
        stack_id = (stack.id or "").lower()
        name = stack.name.lower()
        for group in self._list_resource_groups():
            if (group.get("id") or "").lower() == stack_id or (group.get("name") or "").lower() == name:
                return group
        return None

    def stack_destroy(self, stack: Stack) -> bool:
        """Request deletion of the stack.

        Records intent ``delete``, removes the externalized template, then
        deletes the deployment and the resource group. Both deletes are
        asynchronous; this returns once both are accepted.

        Returns:
            False if the stack was never persisted, True otherwise.
        """
        if not stack.persisted:
            return False

        tags = dict(stack.tags)
        tags[INTENT_TAG] = Intent.DELETE.value
        self._api.request("PATCH", stack.name, json={"tags": tags}, expects=(200,))
        stack.tags = tags

        if self._template_store is not None:
            self._template_store.delete(stack)

        self._api.request("DELETE", self.deployment_path(stack.name), expects=(200, 202, 204))
        self._api.request("DELETE", stack.name, expects=(200, 202))

        stack.status = "Deleting"
        stack.state = StackState.DELETE_IN_PROGRESS
        logger.info("Stack deletion accepted", extra={"stack": stack.name})
        return True

    def stack_get(self, ident: str) -> Stack | None:
        """Fetch one stack by name or resource group id."""
        name = ident.rstrip("/").rsplit("/", 1)[-1]
        stack_id = ident if ident.startswith("/") else self.stack_id_for(name)
        stack = Stack(id=stack_id, name=name)
        self.stack_reload(stack)
        if stack.state is StackState.DELETE_COMPLETE:
            return None
        return stack

    def stack_all(self) -> list[Stack]:
        """All stacks managed by this client (groups carrying an intent tag)."""
        stacks = []
        for group in self._list_resource_groups():
            tags = dict(group.get("tags") or {})
            if Intent.from_tags(tags) is None or not group.get("name"):
                continue
            stack = Stack(id=group.get("id"), name=group["name"], tags=tags)
            self.fetch_single_stack(stack, group=group)
            stacks.append(stack)
        return stacks

    # =========================================================================
    # Templates
    # =========================================================================

    def stack_template_load(self, stack: Stack) -> dict[str, Any]:
        """Return the stack template, wherever it currently lives."""
        if stack.template is not None:
            return stack.template
        if not stack.persisted:
            return {}
        if self._template_store is not None:
            try:
                return self._template_store.load(stack)
            except RequestError as e:
                if e.status != 404:
                    raise
        response = self._api.request("POST", f"{self.deployment_path(stack.name)}/exportTemplate")
        body = response.body if isinstance(response.body, dict) else {}
        return body.get("template") or {}

    def stack_template_validate(self, stack: Stack) -> str | None:
        """Validate the template and parameters with the provider.

        Returns:
            None if valid, otherwise ``"{code} - {message}"``.
        """
        template_url = None
        if stack.template is None:
            template_url = stack.template_url
            if template_url and self._template_store is not None:
                template_url = self._template_store.url(stack)
        body = self._deployment_body(stack, template_url)
        try:
            response = self._api.request(
                "POST",
                f"{self.deployment_path(stack.name)}/validate",
                json=body,
                expects=(200,),
            )
        except RequestError as e:
            if e.status >= 500:
                raise
            return self._validation_message(e.body, e.status)

        result = response.body if isinstance(response.body, dict) else {}
        if result.get("error"):
            return self._validation_message(result, response.status)
        return None

    @staticmethod
    def _validation_message(body: Any, status: int) -> str:
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return f"{error.get('code', status)} - {error.get('message', '')}".rstrip()
        return f"{status} - {body}".rstrip()

    # =========================================================================
    # Events and resources
    # =========================================================================

    def event_all(self, stack: Stack, since_event_id: str | None = None) -> list[Event]:
        """Operations recorded for the stack's deployment, in provider order.

        With since_event_id, only the events after that one are returned
        and stack.events is left alone; otherwise stack.events is rebuilt.
        The operations endpoint is unavailable while a deletion is in
        progress, so that state yields an empty list and clears stack.events.
        """
        if not stack.persisted:
            return []
        if stack.state is StackState.DELETE_IN_PROGRESS:
            if since_event_id is None:
                stack.events = []
            return []
        try:
            response = self._api.request("GET", f"{self.deployment_path(stack.name)}/operations")
        except RequestError as e:
            if e.status != 404:
                raise
            return []

        body = response.body if isinstance(response.body, dict) else {}
        events = [self._event_from_operation(op) for op in body.get("value") or []]

        if since_event_id is None:
            stack.events = events
            return events
        index = next((i for i, event in enumerate(events) if event.id == since_event_id), None)
        return events if index is None else events[index + 1 :]

    @staticmethod
    def _event_from_operation(operation: Mapping[str, Any]) -> Event:
        properties = operation.get("properties") or {}
        status = properties.get("provisioningState")
        return Event(
            id=str(operation.get("operationId") or operation.get("id") or ""),
            resource_id=dig(properties, "targetResource", "id"),
            resource_name=dig(properties, "targetResource", "resourceName"),
            resource_state=status_to_state(status),
            resource_status=status,
            resource_status_reason=properties.get("statusCode"),
            time=parse_timestamp(properties.get("timestamp")),
        )

    def event_all_new(self, stack: Stack) -> list[Event]:
        """Events newer than the last one already held in stack.events."""
        if not stack.events:
            return self.event_all(stack)
        return self.event_all(stack, stack.events[-1].id)

    def event_reload(self, stack: Stack, event: Event) -> Event | None:
        self.event_all(stack)
        return next((e for e in stack.events if e.id == event.id), None)

    def resource_all(self, stack: Stack) -> list[Resource]:
        """Derive resources from the deployment's declared dependencies.

        Each declared resource is joined with the first matching operation
        in provider order; resources without one are reported as unknown.
        """
        if not stack.persisted:
            return []
        events = self.event_all(stack)
        resources = []
        for declared in self._declared_resources(stack):
            event = self._first_event(events, declared.get("id"))
            resources.append(
                Resource(
                    id=declared.get("id") or "",
                    type=declared.get("resourceType"),
                    name=declared.get("resourceName"),
                    logical_id=declared.get("resourceName"),
                    state=event.resource_state if event else StackState.UNKNOWN,
                    status=(event.resource_status if event else None) or StackState.UNKNOWN.value,
                    status_reason=event.resource_status_reason if event else None,
                    updated=event.time if event else None,
                )
            )
        stack.resources = resources
        return resources

    @staticmethod
    def _declared_resources(stack: Stack) -> list[dict[str, Any]]:
        dependencies = dig(stack.custom, "properties", "dependencies", default=None) or []
        return [dependency for dependency in dependencies if isinstance(dependency, dict)]

    @staticmethod
    def _first_event(events: list[Event], resource_id: str | None) -> Event | None:
        if not resource_id:
            return None
        return next((event for event in events if event.resource_id == resource_id), None)

    def resource_reload(self, stack: Stack, resource: Resource) -> Resource | None:
        self.resource_all(stack)
        return next((r for r in stack.resources if r.id == resource.id), None)
