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

import pytest

from converge import const
from converge.handler import (
    CRUDHandler,
    HandlerContext,
    HandlerNotAvailableException,
    HandlerRegistry,
    InvalidOperation,
    ResourcePurged,
    SkipResource,
    TransientError,
    get_registry,
    provider,
)
from converge.resources import Id, Resource


class Memory(CRUDHandler):
    """
    A handler that keeps one object per resource id in a class level dict
    """

    objects: dict[str, dict] = {}
    replace_on = frozenset({"zone"})
    computed = frozenset({"endpoint"})

    def read_resource(self, ctx, resource):
        key = str(resource.id)
        if key not in self.objects:
            raise ResourcePurged()
        resource.attributes = dict(self.objects[key])
        ctx.set_provider_id(f"mem-{resource.id.name}")

    def create_resource(self, ctx, resource):
        self.objects[str(resource.id)] = dict(resource.attributes)
        ctx.set_provider_id(f"mem-{resource.id.name}")
        ctx.set_computed("endpoint", f"{resource.id.name}.example.com")
        ctx.set_created()

    def update_resource(self, ctx, changes, resource):
        self.objects[str(resource.id)].update({name: change["desired"] for name, change in changes.items()})
        ctx.set_updated()

    def delete_resource(self, ctx, resource):
        del self.objects[str(resource.id)]
        ctx.set_purged()


@pytest.fixture
def memory():
    Memory.objects = {}
    return Memory()


def resource(name="a", purged=False, **attributes):
    return Resource(Id("mem", name), attributes, purged=purged)


def test_execute_create_update_delete(memory):
    ctx = HandlerContext(resource())
    memory.execute(ctx, resource(size=1))
    assert ctx.status is const.ResourceState.deployed
    assert ctx.change is const.Change.created
    assert ctx.provider_id == "mem-a"
    assert ctx.computed == {"endpoint": "a.example.com"}
    assert ctx.changes["purged"].desired is False
    assert Memory.objects == {"mem.a": {"size": 1}}

    # running it again changes nothing
    ctx = HandlerContext(resource())
    memory.execute(ctx, resource(size=1))
    assert ctx.status is const.ResourceState.deployed
    assert not ctx.changed

    ctx = HandlerContext(resource())
    memory.execute(ctx, resource(size=2))
    assert ctx.change is const.Change.updated
    assert ctx.changes["size"].current == 1
    assert ctx.changes["size"].desired == 2

    ctx = HandlerContext(resource())
    memory.execute(ctx, resource(size=2, purged=True))
    assert ctx.change is const.Change.purged
    assert Memory.objects == {}

    # deleting what does not exist succeeds without changes
    ctx = HandlerContext(resource())
    memory.execute(ctx, resource(size=2, purged=True))
    assert ctx.status is const.ResourceState.deployed
    assert not ctx.changed


def test_force_create(memory):
    Memory.objects["mem.a"] = {"size": 1}
    ctx = HandlerContext(resource())
    memory.execute(ctx, resource(size=1), force_create=True)
    assert ctx.change is const.Change.created


def test_check_resource(memory):
    assert memory.check_resource(HandlerContext(resource()), resource(size=1)) is None
    Memory.objects["mem.a"] = {"size": 5}
    current = memory.check_resource(HandlerContext(resource()), resource(size=1))
    assert current.attributes == {"size": 5}
    assert current.provider_id == "mem-a"


@pytest.mark.parametrize(
    "error, state",
    [
        (SkipResource("later"), const.ResourceState.skipped),
        (TransientError("throttled"), const.ResourceState.failed),
        (ValueError("bad value"), const.ResourceState.failed),
    ],
)
def test_execute_errors(memory, error, state):
    class Failing(Memory):
        def read_resource(self, ctx, resource):
            raise error

    ctx = HandlerContext(resource())
    Failing().execute(ctx, resource(size=1))
    assert ctx.status is state
    if state is const.ResourceState.failed:
        assert ctx.failure is error
    else:
        assert ctx.failure is None
    assert ctx.logs[-1].level in (const.LogLevel.WARNING, const.LogLevel.ERROR)


def test_context_logging(caplog):
    caplog.set_level(logging.DEBUG)
    ctx = HandlerContext(resource())
    ctx.info("Created %(name)s in %(zone)s", name="vpc-1", zone="a")
    ctx.debug("Plain message")
    try:
        raise RuntimeError("oops")
    except RuntimeError:
        ctx.exception("Failed %(name)s", name="vpc-1")

    assert [line.msg for line in ctx.logs] == ["Created vpc-1 in a", "Plain message", "Failed vpc-1"]
    assert ctx.logs[0].level is const.LogLevel.INFO
    assert "RuntimeError: oops" in ctx.logs[2].kwargs["traceback"]
    assert "resource mem.a: Created vpc-1 in a" in caplog.text
    with pytest.raises(Exception):
        ctx.info("positional %s", "not supported")


def test_context_change_once():
    ctx = HandlerContext(resource())
    ctx.set_created()
    with pytest.raises(InvalidOperation):
        ctx.set_updated()


def test_registry():
    registry = HandlerRegistry()
    assert not registry.has_handler("mem")
    with pytest.raises(HandlerNotAvailableException):
        registry.get_provider(resource())

    registry.add_provider("mem", "memory", Memory)
    assert registry.get_provider_class("mem") is Memory
    assert registry.replace_on("mem") == {"zone"}
    assert registry.computed("mem") == {"endpoint"}
    assert registry.replace_on("other") == frozenset()
    assert isinstance(registry.get_provider(resource()), Memory)

    class Fallback(CRUDHandler):
        pass

    registry.add_provider("*", "fallback", Fallback)
    assert registry.get_provider_class("other") is Fallback
    assert registry.get_provider_class("mem") is Memory
    assert registry.get_provider_class("mem", "fallback") is None

    class Unavailable(Memory):
        def available(self, resource):
            return False

    registry.add_provider("mem", "memory", Unavailable)
    with pytest.raises(HandlerNotAvailableException, match="No resource handler registered"):
        registry.get_provider(resource())

    registry.add_provider("mem", "memory", Memory)
    registry.add_provider("mem", "second", Memory)
    with pytest.raises(HandlerNotAvailableException, match="More than one handler"):
        registry.get_provider(resource())


def test_provider_decorator():
    registry = HandlerRegistry()

    @provider("mem", name="decorated", registry=registry)
    class Decorated(Memory):
        pass

    assert registry.get_provider_class("mem") is Decorated
    assert get_registry().get_provider_class("mem") is not Decorated

    @provider("mem_default", name="decorated")
    class Default(Memory):
        pass

    assert get_registry().get_provider_class("mem_default") is Default
