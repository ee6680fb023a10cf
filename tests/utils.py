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
import threading
import time
from collections.abc import Mapping
from typing import Any, Optional

from converge.data.model import ApplyReport, Plan
from converge.deploy.executor import Executor
from converge.diff import compute_plan
from converge.graph import ResourceGraph, parse_graph
from converge.handler import CRUDHandler, HandlerContext, HandlerRegistry, ResourcePurged, SkipResource, TransientError
from converge.resources import Resource
from converge.state import StateRecorder, StateStore


class FakeCloud:
    """
    An in-memory cloud. Objects are keyed on their provider id. Failures and delays can be injected per resource id.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.operations: list[tuple[str, str]] = []
        self.lock = threading.Lock()
        self.counter = 0

        self.delay = 0.0
        self.active = 0
        self.max_active = 0

        # resource id -> number of transient failures left
        self.transient: dict[str, int] = {}
        self.failing: set[str] = set()
        self.skipping: set[str] = set()
        # resource ids of which read_resource fails
        self.unreadable: set[str] = set()
        # resource ids that block in pre until the event is set
        self.blocking: dict[str, threading.Event] = {}
        self.started: dict[str, threading.Event] = {}

    def begin(self, resource: Resource) -> None:
        rid = str(resource.id)
        with self.lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if rid in self.started:
            self.started[rid].set()
        if rid in self.blocking:
            self.blocking[rid].wait(5)
        if self.delay:
            time.sleep(self.delay)
        with self.lock:
            if self.transient.get(rid, 0) > 0:
                self.transient[rid] -= 1
                raise TransientError("rate limit exceeded")
        if rid in self.failing:
            raise RuntimeError(f"{rid} is broken")
        if rid in self.skipping:
            raise SkipResource("not ready")

    def end(self) -> None:
        with self.lock:
            self.active -= 1

    def by_name(self, rid: str) -> list[dict[str, Any]]:
        return [obj for obj in self.objects.values() if obj["rid"] == rid]

    def new_id(self, resource: Resource) -> str:
        with self.lock:
            self.counter += 1
            return f"{resource.id.resource_type}-{self.counter}"


def make_cloud_handler(cloud: FakeCloud) -> type[CRUDHandler]:
    class CloudHandler(CRUDHandler):
        replace_on = frozenset({"region"})
        computed = frozenset({"arn"})

        def pre(self, ctx: HandlerContext, resource: Resource) -> None:
            cloud.begin(resource)

        def post(self, ctx: HandlerContext, resource: Resource) -> None:
            cloud.end()

        def read_resource(self, ctx: HandlerContext, resource: Resource) -> None:
            if str(resource.id) in cloud.unreadable:
                raise RuntimeError(f"{resource.id} can not be read")
            if resource.provider_id is None or resource.provider_id not in cloud.objects:
                raise ResourcePurged()
            obj = cloud.objects[resource.provider_id]
            resource.attributes = dict(obj["attributes"])
            ctx.set_provider_id(resource.provider_id)
            ctx.set_computed("arn", obj["arn"])

        def create_resource(self, ctx: HandlerContext, resource: Resource) -> None:
            provider_id = cloud.new_id(resource)
            cloud.objects[provider_id] = {
                "rid": str(resource.id),
                "attributes": dict(resource.attributes),
                "arn": f"arn:{provider_id}",
            }
            cloud.operations.append(("create", str(resource.id)))
            ctx.set_provider_id(provider_id)
            ctx.set_computed("arn", f"arn:{provider_id}")
            ctx.set_created()

        def update_resource(self, ctx: HandlerContext, changes: dict[str, dict[str, Any]], resource: Resource) -> None:
            cloud.objects[ctx.provider_id]["attributes"] = dict(resource.attributes)
            cloud.operations.append(("update", str(resource.id)))
            ctx.set_updated()

        def delete_resource(self, ctx: HandlerContext, resource: Resource) -> None:
            del cloud.objects[ctx.provider_id]
            cloud.operations.append(("delete", str(resource.id)))
            ctx.set_purged()

    return CloudHandler


def make_graph(text: str, variables: Optional[Mapping[str, object]] = None) -> ResourceGraph:
    graph = parse_graph(text, variables)
    graph.validate()
    return graph


def make_plan(graph: ResourceGraph, store: StateStore, registry: HandlerRegistry, destroy: bool = False) -> Plan:
    return compute_plan(graph, store.load(), registry, destroy=destroy)


def make_executor(store: StateStore, registry: HandlerRegistry, **kwargs: Any) -> Executor:
    kwargs.setdefault("retry_backoff", 0)
    kwargs.setdefault("retry_max_backoff", 0)
    return Executor(registry, StateRecorder(store), **kwargs)


async def apply(
    text: str,
    store: StateStore,
    registry: HandlerRegistry,
    variables: Optional[Mapping[str, object]] = None,
    destroy: bool = False,
    **kwargs: Any,
) -> tuple[Plan, ApplyReport]:
    """
    Plan and apply a declaration against the store
    """
    graph = make_graph(text, variables)
    plan = make_plan(graph, store, registry, destroy=destroy)
    report = await make_executor(store, registry, **kwargs).apply(plan, graph)
    return plan, report


def no_error_in_logs(caplog, levels=[logging.ERROR]):
    for logger_name, log_level, message in caplog.record_tuples:
        assert log_level not in levels, f"{logger_name} {log_level} {message}"


def log_contains(caplog, loggerpart, level, msg):
    close = []
    for logger_name, log_level, message in caplog.record_tuples:
        if msg in message:
            if loggerpart in logger_name and level == log_level:
                return
            else:
                close.append((logger_name, log_level, message))
    if close:
        print("found nearly matching log entry")
        for logger_name, log_level, message in close:
            print(logger_name, log_level, message)
        print("------------")

    assert False


def log_doesnt_contain(caplog, loggerpart, level, msg):
    for logger_name, log_level, message in caplog.record_tuples:
        if loggerpart in logger_name and level == log_level and msg in message:
            assert False
