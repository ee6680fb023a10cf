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
import copy
import datetime
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union

from converge import config, const
from converge.data.model import ApplyReport, NodeResult, OutputValue, Plan, StateSnapshot
from converge.deploy.tasks import NodeProgress, Task, task_for
from converge.diff import StalePlanError
from converge.graph import ResourceGraph
from converge.handler import CRUDHandler, HandlerContext, HandlerNotAvailableException, HandlerRegistry, TransientError
from converge.references import Reference, ReferenceResolutionError, Unknown, VariableReference, contains_unknown, resolve_value
from converge.resources import Id, Resource
from converge.state import StateRecorder
from converge.types import ResourceIdStr
from converge.util import compute_backoff, join_threadpools

LOGGER = logging.getLogger(__name__)


class Executor:
    """
    Applies a plan: every node is applied as soon as the nodes it waits for are done, with at most `parallelism` nodes
    at the same time. The state is persisted after every node that completed.

    :param registry: The handlers to apply resources with
    :param recorder: Holds the state snapshot the plan was computed from
    :param parallelism: Maximum number of nodes applied at the same time
    :param retry_attempts: How many times a node is retried after a TransientError
    :param retry_backoff: Delay before the first retry, doubled for every next retry
    :param retry_max_backoff: Maximum delay between retries
    :param fail_fast: Stop starting new nodes after the first failure
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        recorder: StateRecorder,
        *,
        parallelism: Optional[int] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        retry_max_backoff: Optional[float] = None,
        fail_fast: Optional[bool] = None,
    ) -> None:
        self.registry = registry
        self.recorder = recorder
        self.parallelism = parallelism if parallelism is not None else config.executor_parallelism.get()
        self.retry_attempts = retry_attempts if retry_attempts is not None else config.executor_retry_attempts.get()
        self.retry_backoff = retry_backoff if retry_backoff is not None else config.executor_retry_backoff.get()
        self.retry_max_backoff = (
            retry_max_backoff if retry_max_backoff is not None else config.executor_retry_max_backoff.get()
        )
        self.fail_fast = fail_fast if fail_fast is not None else config.executor_fail_fast.get()

        # Set during apply
        self._graph: Optional[ResourceGraph] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._threadpool: Optional[ThreadPoolExecutor] = None
        self._running: dict[ResourceIdStr, asyncio.Task[const.ResourceState]] = {}
        self._stopping = False
        self._cancelled = False

    @property
    def graph(self) -> ResourceGraph:
        assert self._graph is not None, "Only available during apply"
        return self._graph

    @property
    def snapshot(self) -> StateSnapshot:
        return self.recorder.snapshot

    def cancel(self) -> None:
        """
        Cancel the apply: no new nodes are started and the nodes in flight are aborted.
        """
        LOGGER.warning("Cancelling apply, %d nodes in flight", len(self._running))
        self._stopping = True
        self._cancelled = True
        for task in self._running.values():
            task.cancel()

    def check_fresh(self, plan: Plan, graph: Optional[ResourceGraph] = None) -> None:
        """
        :param graph: The graph the plan will be applied with, it must be the one the plan was computed for
        :raises StalePlanError: The state or the graph changed since the plan was computed
        """
        if graph is not None and plan.graph_fingerprint is not None and plan.graph_fingerprint != graph.fingerprint():
            raise StalePlanError("The declaration changed since the plan was computed, compute a new plan")
        if plan.state_serial == 0 and self.snapshot.serial == 0 and not self.snapshot.resources:
            # a state that was never saved gets a new lineage on every load, it continues the one of the plan
            self.snapshot.lineage = plan.state_lineage
            return
        if plan.state_lineage != self.snapshot.lineage:
            raise StalePlanError(
                f"The plan was computed for state lineage {plan.state_lineage}, the state has lineage {self.snapshot.lineage}"
            )
        if plan.state_serial != self.snapshot.serial:
            raise StalePlanError(
                f"The state changed since the plan was computed (serial {plan.state_serial}, now {self.snapshot.serial}),"
                " compute a new plan"
            )

    def waits_for(self, plan: Plan) -> dict[ResourceIdStr, set[ResourceIdStr]]:
        """
        For every change in the plan, the changes that must be finished before it can start.

        A create, update, replace or unchanged node waits for the nodes it requires. A delete waits for every resource
        that required it according to the state.
        """
        planned = {change.resource_id for change in plan.changes}
        recorded_provides: dict[ResourceIdStr, set[ResourceIdStr]] = {}
        for rid, requires in self.snapshot.requires_mapping().items():
            for req in requires:
                recorded_provides.setdefault(req, set()).add(rid)

        result: dict[ResourceIdStr, set[ResourceIdStr]] = {}
        for change in plan.changes:
            rid = change.resource_id
            if change.action is const.ChangeAction.delete:
                result[rid] = {dependent for dependent in recorded_provides.get(rid, set()) if dependent in planned}
            else:
                result[rid] = {req for req in self.graph.requires_of(rid) if req in planned}
        return result

    async def apply(self, plan: Plan, graph: ResourceGraph) -> ApplyReport:
        """
        Apply the plan.

        :raises StalePlanError: The state or the graph changed since the plan was computed
        :raises asyncio.CancelledError: The task running the apply was cancelled. The state reflects the nodes that
            completed.
        """
        self.check_fresh(plan, graph)
        self._graph = graph
        self._semaphore = asyncio.Semaphore(self.parallelism)
        self._threadpool = ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="converge-handler")
        self._stopping = False
        self._cancelled = False

        waits = self.waits_for(plan)
        done: dict[ResourceIdStr, asyncio.Future[const.ResourceState]] = {
            change.resource_id: asyncio.get_running_loop().create_future() for change in plan.changes
        }
        results: dict[ResourceIdStr, NodeResult] = {}

        LOGGER.info("Applying plan: %s", plan.summary_line())
        try:
            for change in plan.changes:
                task = task_for(change.resource_id, change.action)
                self._running[change.resource_id] = asyncio.create_task(
                    self._run_node(task, waits[change.resource_id], done, results),
                    name=f"converge-node-{change.resource_id}",
                )
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        except asyncio.CancelledError:
            self._stopping = True
            self._cancelled = True
            for task in self._running.values():
                task.cancel()
            # let the nodes record their final state
            await asyncio.gather(*self._running.values(), return_exceptions=True)
            raise
        finally:
            self._running = {}
            await join_threadpools([self._threadpool])

        for change in plan.changes:
            if change.resource_id not in results:
                results[change.resource_id] = NodeResult(
                    resource_id=change.resource_id, action=change.action, state=const.ResourceState.cancelled
                )

        outputs = self.snapshot.outputs if self._cancelled else self.record_outputs(plan)
        report = ApplyReport(
            results=[results[change.resource_id] for change in plan.changes],
            outputs=outputs,
            cancelled=self._cancelled,
        )
        LOGGER.info(
            "Apply finished: %d deployed, %d failed, %d skipped, %d cancelled",
            report.count(const.ResourceState.deployed),
            report.count(const.ResourceState.failed),
            report.count(const.ResourceState.skipped) + report.count(const.ResourceState.skipped_for_dependency),
            report.count(const.ResourceState.cancelled),
        )
        return report

    async def _run_node(
        self,
        task: Task,
        waits: set[ResourceIdStr],
        done: dict[ResourceIdStr, "asyncio.Future[const.ResourceState]"],
        results: dict[ResourceIdStr, NodeResult],
    ) -> const.ResourceState:
        rid = task.resource
        progress = NodeProgress()
        state = const.ResourceState.cancelled
        started: Optional[datetime.datetime] = None
        try:
            for dep in sorted(waits):
                dep_state = await asyncio.shield(done[dep])
                if dep_state is const.ResourceState.cancelled:
                    return state
                if dep_state is not const.ResourceState.deployed:
                    LOGGER.info("Skipping %s because %s is %s", rid, dep, dep_state)
                    progress.error = f"{dep} is {dep_state}"
                    state = const.ResourceState.skipped_for_dependency
                    return state

            if self._stopping:
                return state
            assert self._semaphore is not None
            async with self._semaphore:
                if self._stopping:
                    return state
                started = datetime.datetime.now().astimezone()
                LOGGER.info("Applying %s (%s)", rid, task.action)
                try:
                    state = await task.execute(self, progress)
                except (ReferenceResolutionError, HandlerNotAvailableException) as e:
                    LOGGER.error("Unable to apply %s: %s", rid, e)
                    progress.error = f"{e.__class__.__name__}: {e}"
                    state = const.ResourceState.failed
                except Exception as e:
                    LOGGER.exception("Unexpected error while applying %s", rid)
                    progress.error = f"{e.__class__.__name__}: {e}"
                    state = const.ResourceState.failed

            if state is const.ResourceState.failed:
                LOGGER.error("Failed to apply %s: %s", rid, progress.error)
                if self.fail_fast and not self._stopping:
                    LOGGER.warning("Not starting new nodes after the failure of %s", rid)
                    self._stopping = True
            else:
                LOGGER.info("%s is %s", rid, state)
            return state
        finally:
            results[rid] = NodeResult(
                resource_id=rid,
                action=task.action,
                state=state,
                attempts=progress.attempts,
                changes=progress.changes,
                messages=progress.messages,
                error=progress.error,
                started=started,
                finished=datetime.datetime.now().astimezone() if started is not None else None,
            )
            if not done[rid].done():
                done[rid].set_result(state)

    async def run_handler(self, resource: Resource, progress: NodeProgress, force_create: bool = False) -> HandlerContext:
        """
        Run the handler for a resource in the thread pool, retrying it while it fails with a TransientError.

        :raises HandlerNotAvailableException: No handler for this resource
        :return: The context of the last attempt
        """
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            handler = self.registry.get_provider(resource)
            ctx = HandlerContext(resource)
            try:
                await loop.run_in_executor(self._threadpool, self._execute, handler, ctx, resource, force_create)
            finally:
                progress.add_context(ctx)
            if not isinstance(ctx.failure, TransientError) or attempt >= self.retry_attempts or self._cancelled:
                return ctx
            attempt += 1
            delay = compute_backoff(attempt, self.retry_backoff, self.retry_max_backoff)
            LOGGER.info(
                "Retrying %s in %.2fs after transient error (attempt %d of %d): %s",
                resource.id,
                delay,
                attempt,
                self.retry_attempts,
                ctx.failure,
            )
            await asyncio.sleep(delay)

    @staticmethod
    def _execute(handler: CRUDHandler, ctx: HandlerContext, resource: Resource, force_create: bool) -> None:
        try:
            handler.execute(ctx, resource, force_create=force_create)
        finally:
            handler.close()

    def _resolve_reference(self, ref: Union[Reference, VariableReference]) -> object:
        if isinstance(ref, VariableReference):
            return self.graph.variables[ref.name]
        record = self.snapshot.get(ref.target.resource_str())
        if record is None:
            raise ReferenceResolutionError(f"{ref.target} is not in the state")
        return record.lookup(ref.path)

    def desired_resource(self, resource_id: ResourceIdStr, fresh: bool = False) -> Resource:
        """
        The resource with its attributes resolved against the state as it is now.

        :param fresh: For a new object: do not carry the provider id and computed attributes of the recorded one
        :raises ReferenceResolutionError: A referenced attribute does not exist
        """
        node = self.graph.nodes[resource_id]
        record = self.snapshot.get(resource_id)
        attributes = resolve_value(node.attributes, self._resolve_reference)
        assert isinstance(attributes, dict)
        if contains_unknown(attributes):
            raise ReferenceResolutionError(f"{resource_id} still has attribute values that are not known")
        if record is not None and not fresh:
            # ignored attributes keep the value they were applied with
            for name in node.lifecycle.ignore_changes:
                if name in record.attributes:
                    attributes[name] = copy.deepcopy(record.attributes[name])
                else:
                    attributes.pop(name, None)
            return Resource(node.id, attributes, provider_id=record.provider_id, computed=record.computed)
        return Resource(node.id, attributes)

    def recorded_resource(self, resource_id: ResourceIdStr) -> Resource:
        """
        The resource as it was last applied, marked to be purged
        """
        record = self.snapshot.resources[resource_id]
        return Resource(
            Id.parse_id(resource_id),
            record.attributes,
            provider_id=record.provider_id,
            computed=record.computed,
            purged=True,
        )

    def record_applied(self, resource: Resource, ctx: HandlerContext) -> None:
        rid = resource.id.resource_str()
        node = self.graph.nodes[rid]
        computed = {**resource.computed, **ctx.computed}
        self.recorder.record_applied(
            resource.id,
            resource.attributes,
            ctx.provider_id if ctx.provider_id is not None else resource.provider_id,
            computed,
            sorted(self.graph.requires_of(rid)),
            node.lifecycle.prevent_destroy,
        )

    def resolve_outputs(self, plan: Plan) -> dict[str, OutputValue]:
        """
        Resolve the outputs against the state. An output that can not be resolved keeps its previous value.
        """
        if plan.destroy:
            return {}
        result: dict[str, OutputValue] = {}
        for name, output in sorted(self.graph.outputs.items()):
            try:
                value = resolve_value(output.value, self._resolve_reference)
            except ReferenceResolutionError as e:
                LOGGER.warning("Unable to resolve output %s: %s", name, e)
                if name in self.snapshot.outputs:
                    result[name] = self.snapshot.outputs[name]
                continue
            if isinstance(value, Unknown):
                continue
            result[name] = OutputValue(value=value, sensitive=output.sensitive)
        return result

    def record_outputs(self, plan: Plan) -> dict[str, OutputValue]:
        outputs = self.resolve_outputs(plan)
        self.recorder.record_outputs(outputs)
        return outputs
