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

import asyncio
import datetime
import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from converge import config, const
from converge.data.model import ApplyReport, AttributeStateChange, OutputValue, Plan, RefreshReport, StateSnapshot
from converge.deploy.executor import Executor
from converge.diff import compute_plan
from converge.graph import ResourceGraph, load_graph, parse_variable_values
from converge.handler import HandlerContext, HandlerRegistry
from converge.resources import Id, Resource
from converge.state import StateRecorder, StateStore
from converge.types import ResourceIdStr
from converge.util import join_threadpools, make_attribute_hash

LOGGER = logging.getLogger(__name__)


class Reconciler:
    """
    Brings live infrastructure in line with a declaration: load the declaration, compute a plan against the state and
    apply it.

    :param store: Where the state is kept
    :param registry: The handlers for the resource types
    """

    def __init__(self, store: StateStore, registry: Optional[HandlerRegistry] = None) -> None:
        self.store = store
        self.registry = registry if registry is not None else HandlerRegistry.get_default()

    def load(self, path: str, variables: Optional[Mapping[str, object]] = None) -> ResourceGraph:
        """
        Load the declaration at the given path and build its graph. The graph is checked for cycles.

        :raises DeclarationError: The declaration is not valid
        :raises CycleError: The graph has a cycle
        """
        graph = load_graph(path, variables)
        graph.validate()
        for resource_type in sorted({node.resource_type for node in graph}):
            if not self.registry.has_handler(resource_type):
                LOGGER.warning("No handler is registered for resource type %s", resource_type)
        return graph

    def load_with_raw_variables(self, path: str, variables: Mapping[str, str]) -> ResourceGraph:
        return self.load(path, parse_variable_values(variables))

    def snapshot(self) -> StateSnapshot:
        return self.store.load()

    def plan(self, graph: ResourceGraph, destroy: bool = False) -> Plan:
        """
        :raises CycleError: The graph has a cycle
        :raises PlanError: No valid plan exists
        """
        return compute_plan(graph, self.store.load(), self.registry, destroy=destroy)

    async def apply(
        self,
        plan: Plan,
        graph: ResourceGraph,
        *,
        parallelism: Optional[int] = None,
        fail_fast: Optional[bool] = None,
    ) -> ApplyReport:
        """
        Apply a plan while holding the state lock.

        :raises StateLockedError: Another process is applying
        :raises StalePlanError: The state changed since the plan was computed
        """
        with self.store.lock():
            recorder = StateRecorder(self.store)
            executor = Executor(self.registry, recorder, parallelism=parallelism, fail_fast=fail_fast)
            return await executor.apply(plan, graph)

    async def refresh(self, parallelism: Optional[int] = None) -> RefreshReport:
        """
        Read every resource in the state through its handler. Attributes that drifted are updated in the state, resources
        the provider reports as gone are removed from it.

        :raises StateLockedError: Another process is applying
        """
        limit = parallelism if parallelism is not None else config.executor_parallelism.get()
        report = RefreshReport()
        with self.store.lock():
            snapshot = self.store.load()
            threadpool = ThreadPoolExecutor(max_workers=limit, thread_name_prefix="converge-refresh")
            semaphore = asyncio.Semaphore(limit)
            loop = asyncio.get_running_loop()

            async def read(rid: ResourceIdStr) -> tuple[ResourceIdStr, HandlerContext, Optional[Resource]]:
                record = snapshot.resources[rid]
                resource = Resource(
                    Id.parse_id(rid), record.attributes, provider_id=record.provider_id, computed=record.computed
                )
                handler = self.registry.get_provider(resource)
                ctx = HandlerContext(resource)
                async with semaphore:
                    try:
                        current = await loop.run_in_executor(threadpool, handler.check_resource, ctx, resource)
                    finally:
                        handler.close()
                return rid, ctx, current

            try:
                outcomes = await asyncio.gather(*(read(rid) for rid in snapshot.sorted_ids()), return_exceptions=True)
            finally:
                await join_threadpools([threadpool])

            changed = False
            for rid, outcome in zip(snapshot.sorted_ids(), outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    LOGGER.error("Unable to refresh %s: %s", rid, outcome)
                    report.errors[rid] = f"{outcome.__class__.__name__}: {outcome}"
                    continue
                _, ctx, current = outcome
                if current is None:
                    LOGGER.info("%s no longer exists, removing it from the state", rid)
                    report.purged.append(rid)
                    changed = True
                    continue
                changed |= self._record_drift(snapshot, rid, ctx, current, report)

            for rid in report.purged:
                del snapshot.resources[rid]
            if changed:
                self.store.save(snapshot)
        return report

    @staticmethod
    def _record_drift(
        snapshot: StateSnapshot, rid: ResourceIdStr, ctx: HandlerContext, current: Resource, report: RefreshReport
    ) -> bool:
        record = snapshot.resources[rid]
        drift = {
            name: AttributeStateChange(current=current.attributes.get(name), desired=value)
            for name, value in record.attributes.items()
            if current.attributes.get(name) != value
        }
        computed = {**record.computed, **ctx.computed}
        provider_id = current.provider_id if current.provider_id is not None else record.provider_id
        if not drift and computed == record.computed and provider_id == record.provider_id:
            return False
        if drift:
            LOGGER.info("%s drifted: %s", rid, ", ".join(sorted(drift)))
            report.drifted[rid] = drift
        attributes = {name: current.attributes.get(name) for name in record.attributes}
        record.attributes = attributes
        record.computed = computed
        record.provider_id = provider_id
        record.attribute_hash = make_attribute_hash(rid, attributes)
        record.updated = datetime.datetime.now().astimezone()
        return True

    def outputs(self, include_sensitive: bool = True) -> dict[str, OutputValue]:
        """
        The outputs as recorded after the last apply
        """
        outputs = self.store.load().outputs
        if include_sensitive:
            return outputs
        return {
            name: OutputValue(value=const.SENSITIVE_VALUE_DISPLAY, sensitive=True) if value.sensitive else value
            for name, value in outputs.items()
        }
