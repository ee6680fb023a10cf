"""
Copyright 2025 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

import logging
import traceback
from collections import defaultdict
from collections.abc import Iterator, Sequence
from typing import Any, Optional, TypeVar

import converge
from converge import const
from converge.data.model import AttributeStateChange, LogLine
from converge.resources import Resource
from converge.util import json_encode

LOGGER = logging.getLogger(__name__)
RESOURCE_ACTION_LOGGER = logging.getLogger(const.NAME_RESOURCE_ACTION_LOGGER)

# Registering a handler for this resource type makes it the fallback for every type without a handler of its own
ANY_RESOURCE_TYPE = "*"

T_HANDLER = TypeVar("T_HANDLER", bound=type["CRUDHandler"])


class provider:  # noqa: N801
    """
    Register the decorated CRUDHandler subclass as the handler of a resource type.

    :param resource_type: The type of the resource this handler provides an implementation for, for example `aws_vpc`.
                          Use "*" to register a fallback handler for all types.
    :param name: Selects this handler when a type has more than one.
    :param registry: The registry to add the handler to, the global registry when not set.
    """

    def __init__(self, resource_type: str, name: str, registry: Optional["HandlerRegistry"] = None) -> None:
        self._resource_type = resource_type
        self._name = name
        self._registry = registry

    def __call__(self, handler_class: T_HANDLER) -> T_HANDLER:
        """
        The wrapping
        """
        registry = self._registry if self._registry is not None else HandlerRegistry.get_default()
        registry.add_provider(self._resource_type, self._name, handler_class)
        return handler_class


class SkipResource(Exception):
    """
    Raised by a handler when the resource can not be handled now. The node ends as skipped, not as failed.
    """


class ResourcePurged(Exception):
    """
    If the :func:`~converge.handler.CRUDHandler.read_resource` method raises this exception, the live object does not
    exist.
    """


class InvalidOperation(Exception):
    """
    A handler reported something that contradicts what it reported before, e.g. both a create and a delete.
    """


class TransientError(Exception):
    """
    A handler raises this exception when the operation failed in a way that may succeed when it is retried, for example
    a rate limit or a timeout. The executor retries the resource with a backoff.
    """


class HandlerNotAvailableException(Exception):
    """
    No registered handler accepts the resource.
    """


class HandlerContext:
    """
    Passed to every handler method during one operation on a resource. It collects the outcome: the status, the
    reported changes, the provider id, computed attributes and log lines.
    """

    def __init__(self, resource: Resource) -> None:
        self._resource = resource
        self._cache: dict[str, Any] = {}

        self._change = const.Change.nochange
        self._changes: dict[str, AttributeStateChange] = {}

        self._status: Optional[const.ResourceState] = None
        self._logs: list[LogLine] = []
        self._failure: Optional[BaseException] = None
        self.logger: logging.Logger = RESOURCE_ACTION_LOGGER

        self._provider_id: Optional[str] = resource.provider_id
        self._computed: dict[str, object] = {}

    @property
    def status(self) -> Optional[const.ResourceState]:
        return self._status

    @property
    def logs(self) -> list[LogLine]:
        return self._logs

    @property
    def failure(self) -> Optional[BaseException]:
        """The exception that made this handler operation fail"""
        return self._failure

    def set_status(self, status: const.ResourceState) -> None:
        """
        Set the status of the handler operation.
        """
        self._status = status

    def set_failure(self, failure: BaseException) -> None:
        self._failure = failure

    def get(self, name: str) -> Any:
        return self._cache[name]

    def set(self, name: str, value: Any) -> None:
        self._cache[name] = value

    def set_provider_id(self, provider_id: str) -> None:
        """
        Report the identifier the provider assigned to the live object. Other resources can reference it as `id`.
        """
        self._provider_id = provider_id

    @property
    def provider_id(self) -> Optional[str]:
        return self._provider_id

    def set_computed(self, name: str, value: object) -> None:
        """
        Report the value of an attribute that is only known after apply, for example an endpoint.
        """
        self._computed[name] = value

    @property
    def computed(self) -> dict[str, object]:
        return self._computed

    def _set_change(self, change: const.Change) -> None:
        if self._change is not const.Change.nochange:
            raise InvalidOperation(f"Unable to set {change} operation, {self._change} already set.")
        self._change = change

    def set_created(self) -> None:
        self._set_change(const.Change.created)

    def set_purged(self) -> None:
        self._set_change(const.Change.purged)

    def set_updated(self) -> None:
        self._set_change(const.Change.updated)

    @property
    def changed(self) -> bool:
        return self._change is not const.Change.nochange

    @property
    def change(self) -> const.Change:
        return self._change

    def add_change(self, name: str, desired: object, current: object = None) -> None:
        """
        Report a change of a field. This field is added to the set of updated fields

        :param name: The name of the field that was updated
        :param desired: The desired value to which the field was updated (or should be updated)
        :param current: The value of the field before it was updated
        """
        self._changes[name] = AttributeStateChange(current=current, desired=desired)

    @property
    def changes(self) -> dict[str, AttributeStateChange]:
        return self._changes

    def log_msg(self, level: int, msg: str, args: Sequence[object], kwargs: dict[str, object]) -> None:
        if len(args) > 0:
            raise Exception("Args not supported")
        if "exc_info" in kwargs:
            exc_info = kwargs.pop("exc_info")
            kwargs["traceback"] = traceback.format_exc()
        else:
            exc_info = False

        for k, v in dict(kwargs).items():
            try:
                json_encode(v)
            except TypeError:
                if converge.RUNNING_TESTS:
                    # Fail the test when the value is not serializable
                    raise Exception(f"Failed to serialize argument for log message {k}={v}")
                kwargs[k] = str(v)

        log = LogLine.log(level, msg, **kwargs)
        self.logger.log(level, "resource %s: %s", self._resource.id, log.msg, exc_info=exc_info)
        self._logs.append(log)

    def debug(self, msg: str, *args: object, **kwargs: object) -> None:
        """
        Log 'msg % kwargs' with severity 'DEBUG'. Keyword arguments should be JSON serializable.

        ``ctx.debug("Created %(name)s", name="vpc-1")``
        """
        self.log_msg(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: object, **kwargs: object) -> None:
        self.log_msg(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: object, **kwargs: object) -> None:
        self.log_msg(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: object, **kwargs: object) -> None:
        self.log_msg(logging.ERROR, msg, args, kwargs)

    def exception(self, msg: str, *args: object, exc_info: bool = True, **kwargs: object) -> None:
        """
        Log at ERROR level with the traceback of the exception being handled.
        """
        self.error(msg, *args, exc_info=exc_info, **kwargs)


class CRUDHandler:
    """
    A baseclass for handlers of a resource type. It requires CRUD methods to be implemented: create, read, update and
    delete. New handlers are registered with the :func:`~converge.handler.provider` decorator.

    :cvar replace_on: Attributes that can not be changed in place, changing them replaces the resource
    :cvar computed: Attributes the provider sets, they are only known after apply
    """

    replace_on: frozenset[str] = frozenset()
    computed: frozenset[str] = frozenset()

    def available(self, resource: Resource) -> bool:
        """
        A handler can refuse a resource, the registry then tries the other handlers of the type.
        """
        return True

    def close(self) -> None:
        pass

    def pre(self, ctx: HandlerContext, resource: Resource) -> None:
        """
        Called before every operation on a resource, e.g. to open a session.
        """

    def post(self, ctx: HandlerContext, resource: Resource) -> None:
        """
        Called after every operation, also when it failed.
        """

    def read_resource(self, ctx: HandlerContext, resource: Resource) -> None:
        """
        Read the live object into the given resource: overwrite its attributes with the live values.

        :param ctx: Keeps what the read discovered for the create, update or delete that follows, e.g. an API handle.
        :param resource: A copy of the desired state, with the provider id when it is known.
        :raise SkipResource: The resource can not be handled now
        :raise ResourcePurged: The live object does not exist
        """

    def create_resource(self, ctx: HandlerContext, resource: Resource) -> None:
        """
        Create the live object. Report the identifier of the new
        object with ctx.set_provider_id and the attributes only known now with ctx.set_computed.

        :param ctx: Holds what read_resource discovered
        :param resource: The desired state
        """

    def delete_resource(self, ctx: HandlerContext, resource: Resource) -> None:
        """
        Delete the live object.

        :param ctx: Holds what read_resource discovered
        :param resource: The desired resource state, with the provider id of the live object.
        """

    def update_resource(self, ctx: HandlerContext, changes: dict[str, dict[str, Any]], resource: Resource) -> None:
        """
        Change the live object in place.

        :param ctx: Holds what read_resource discovered
        :param changes: A map of resource attributes that should be changed. Each value is a dict with the current and
                        the desired value.
        :param resource: The desired state
        """

    def calculate_diff(self, ctx: HandlerContext, current: Resource, desired: Resource) -> dict[str, dict[str, Any]]:
        """
        Compare the live and the desired attributes. Computed attributes and attributes without a desired value are
        left out.

        :return: A dict with key the name of the field and value another dict with "current" and "desired" as keys for
                 fields that require changes.
        """
        changes = {}
        for field, desired_value in desired.attributes.items():
            if field in self.computed or desired_value is None:
                continue
            current_value = current.attributes.get(field)
            if current_value != desired_value:
                changes[field] = {"current": current_value, "desired": desired_value}
        return changes

    def check_resource(self, ctx: HandlerContext, resource: Resource) -> Optional[Resource]:
        """
        Read the live state of a resource without changing it.

        :return: A clone of the given resource with the live attributes, None when it does not exist.
        """
        current = resource.clone(purged=False)
        try:
            self.read_resource(ctx, current)
        except ResourcePurged:
            return None
        if ctx.provider_id is not None:
            current.provider_id = ctx.provider_id
        return current

    def execute(self, ctx: HandlerContext, resource: Resource, force_create: bool = False) -> None:
        """
        Bring the live object in the state of the given resource: read it, compare and then create, update or delete it.
        Running it again after it succeeded, or after it was interrupted, does not make duplicate changes.

        Errors are not raised, the status of the context is set to failed and the error is kept in ctx.failure.

        :param ctx: Context object to report changes, logs, the provider id and computed attributes.
        :param resource: The desired state. When resource.purged is set, the desired state is that it does not exist.
        :param force_create: Create a new object without reading, used to replace an object that still exists.
        """
        try:
            self.pre(ctx, resource)

            # read into a clone marked as existing, read_resource raises ResourcePurged when it is not
            desired = resource
            current = desired.clone(purged=False)
            changes: dict[str, dict[str, Any]] = {}
            try:
                if force_create:
                    raise ResourcePurged()
                ctx.debug("Calling read_resource")
                self.read_resource(ctx, current)
                if not desired.purged:
                    changes = self.calculate_diff(ctx, current, desired)
                else:
                    changes["purged"] = dict(desired=True, current=False)
            except ResourcePurged:
                if not desired.purged:
                    changes["purged"] = dict(desired=False, current=True)

            for field, values in changes.items():
                ctx.add_change(field, desired=values["desired"], current=values["current"])

            if "purged" in changes:
                if not changes["purged"]["desired"]:
                    ctx.debug("Calling create_resource")
                    self.create_resource(ctx, desired)
                else:
                    ctx.debug("Calling delete_resource")
                    self.delete_resource(ctx, desired)

            elif len(changes) > 0:
                ctx.debug("Calling update_resource", changes=changes)
                self.update_resource(ctx, dict(changes), desired)

            ctx.set_status(const.ResourceState.deployed)

        except SkipResource as e:
            ctx.set_status(const.ResourceState.skipped)
            ctx.warning(msg="Resource %(resource_id)s was skipped: %(reason)s", resource_id=str(resource.id), reason=str(e))

        except TransientError as e:
            ctx.set_status(const.ResourceState.failed)
            ctx.set_failure(e)
            ctx.warning(
                "A transient error occurred during deployment of %(resource_id)s (exception: %(exception)s)",
                resource_id=str(resource.id),
                exception=f"{e.__class__.__name__}('{e}')",
            )

        except Exception as e:
            ctx.set_status(const.ResourceState.failed)
            ctx.set_failure(e)
            ctx.exception(
                "An error occurred during deployment of %(resource_id)s (exception: %(exception)s)",
                resource_id=str(resource.id),
                exception=f"{e.__class__.__name__}('{e}')",
            )
        finally:
            try:
                self.post(ctx, resource)
            except Exception as e:
                ctx.exception(
                    "An error occurred after deployment of %(resource_id)s (exception: %(exception)s)",
                    resource_id=str(resource.id),
                    exception=f"{e.__class__.__name__}('{e}')",
                )


class HandlerRegistry:
    """
    Keeps the handlers per resource type
    """

    _default: Optional["HandlerRegistry"] = None

    def __init__(self) -> None:
        self._handlers: dict[str, dict[str, type[CRUDHandler]]] = defaultdict(dict)

    @classmethod
    def get_default(cls) -> "HandlerRegistry":
        """
        The registry the provider decorator adds to by default
        """
        if cls._default is None:
            cls._default = HandlerRegistry()
        return cls._default

    @classmethod
    def reset_default(cls) -> None:
        cls._default = None

    def add_provider(self, resource_type: str, name: str, provider: type[CRUDHandler]) -> None:
        """
        Register a new provider

        :param resource_type: the name of the resource type this handler applies to
        :param name: the name of the handler itself
        :param provider: the handler class
        """
        if name in self._handlers[resource_type]:
            LOGGER.debug("Replacing provider %s for %s", name, resource_type)
        self._handlers[resource_type][name] = provider

    def get_providers(self) -> Iterator[tuple[str, type[CRUDHandler]]]:
        """Return an iterator over resource type, handler definition"""
        for resource_type, handler_map in self._handlers.items():
            for handler_class in handler_map.values():
                yield (resource_type, handler_class)

    def get_provider_class(self, resource_type: str, name: Optional[str] = None) -> Optional[type[CRUDHandler]]:
        """
        Return the class of the handler for the given type. When a type has more than one handler, the name selects one.
        Types without a handler of their own get the fallback handler, if one is registered.
        """
        for candidate in (resource_type, ANY_RESOURCE_TYPE):
            handlers = self._handlers.get(candidate)
            if not handlers:
                continue
            if name is not None:
                return handlers.get(name)
            return next(iter(handlers.values()))
        return None

    def get_provider(self, resource: Resource) -> CRUDHandler:
        """
        Return a provider to handle the given resource

        :raises HandlerNotAvailableException: There is no handler, or more than one, that is available for this resource.
        """
        resource_type = resource.id.resource_type
        handlers = self._handlers.get(resource_type) or self._handlers.get(ANY_RESOURCE_TYPE) or {}

        available = []
        for handler_class in handlers.values():
            h = handler_class()
            if h.available(resource):
                available.append(h)
            else:
                h.close()

        if len(available) > 1:
            for h in available:
                h.close()
            raise HandlerNotAvailableException("More than one handler selected for resource %s" % resource.id)

        elif len(available) == 1:
            return available[0]

        raise HandlerNotAvailableException("No resource handler registered for resource of type %s" % resource_type)

    def replace_on(self, resource_type: str) -> frozenset[str]:
        handler_class = self.get_provider_class(resource_type)
        return handler_class.replace_on if handler_class is not None else frozenset()

    def computed(self, resource_type: str) -> frozenset[str]:
        handler_class = self.get_provider_class(resource_type)
        return handler_class.computed if handler_class is not None else frozenset()

    def has_handler(self, resource_type: str) -> bool:
        return self.get_provider_class(resource_type) is not None


def get_registry() -> HandlerRegistry:
    return HandlerRegistry.get_default()

