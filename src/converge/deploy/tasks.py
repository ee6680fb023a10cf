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

import abc
import dataclasses
import logging
import typing
from dataclasses import dataclass
from typing import Optional

from converge import const
from converge.data.model import AttributeStateChange, LogLine
from converge.handler import HandlerContext
from converge.resources import Id
from converge.types import ResourceIdStr

if typing.TYPE_CHECKING:
    from converge.deploy.executor import Executor

LOGGER = logging.getLogger(__name__)


@dataclass
class NodeProgress:
    """
    What happened so far while applying a single node, over all handler calls and retries
    """

    attempts: int = 0
    changes: dict[str, AttributeStateChange] = dataclasses.field(default_factory=dict)
    messages: list[LogLine] = dataclasses.field(default_factory=list)
    error: Optional[str] = None

    def add_context(self, ctx: HandlerContext) -> None:
        self.attempts += 1
        self.changes.update(ctx.changes)
        self.messages.extend(ctx.logs)
        self.error = f"{ctx.failure.__class__.__name__}: {ctx.failure}" if ctx.failure is not None else None


@dataclass(frozen=True, kw_only=True)
class Task(abc.ABC):
    """
    The work to apply the planned change of a single resource.
    Closely coupled with converge.deploy.executor.Executor, which provides the handler calls and state recording.
    """

    resource: ResourceIdStr

    id: Id = dataclasses.field(init=False, compare=False, hash=False)

    def __post_init__(self) -> None:
        # use object.__setattr__ because this is a frozen dataclass, see dataclasses docs
        object.__setattr__(self, "id", Id.parse_id(self.resource))

    @property
    @abc.abstractmethod
    def action(self) -> const.ChangeAction:
        pass

    @abc.abstractmethod
    async def execute(self, executor: "Executor", progress: NodeProgress) -> const.ResourceState:
        """
        Apply the change. Failures of the handler are reported through the returned state and the progress, other
        exceptions are raised.
        """


class Keep(Task):
    """
    The resource is unchanged. Only the dependency information in the state is brought up to date.
    """

    @property
    def action(self) -> const.ChangeAction:
        return const.ChangeAction.nochange

    async def execute(self, executor: "Executor", progress: NodeProgress) -> const.ResourceState:
        node = executor.graph.nodes[self.resource]
        executor.recorder.record_requires(
            self.resource, sorted(executor.graph.requires_of(self.resource)), node.lifecycle.prevent_destroy
        )
        return const.ResourceState.deployed


class Create(Task):
    @property
    def action(self) -> const.ChangeAction:
        return const.ChangeAction.create

    async def execute(self, executor: "Executor", progress: NodeProgress) -> const.ResourceState:
        resource = executor.desired_resource(self.resource)
        ctx = await executor.run_handler(resource, progress)
        if ctx.status is const.ResourceState.deployed:
            executor.record_applied(resource, ctx)
        return _final_state(ctx)


class Update(Create):
    @property
    def action(self) -> const.ChangeAction:
        return const.ChangeAction.update


class Delete(Task):
    @property
    def action(self) -> const.ChangeAction:
        return const.ChangeAction.delete

    async def execute(self, executor: "Executor", progress: NodeProgress) -> const.ResourceState:
        resource = executor.recorded_resource(self.resource)
        ctx = await executor.run_handler(resource, progress)
        if ctx.status is const.ResourceState.deployed:
            executor.recorder.record_deleted(self.resource)
        return _final_state(ctx)


class Replace(Task):
    """
    Delete the live object and create a new one. With create_before_destroy the new object is created first.
    """

    @property
    def action(self) -> const.ChangeAction:
        return const.ChangeAction.replace

    async def execute(self, executor: "Executor", progress: NodeProgress) -> const.ResourceState:
        node = executor.graph.nodes[self.resource]
        old = executor.recorded_resource(self.resource)

        if node.lifecycle.create_before_destroy:
            new = executor.desired_resource(self.resource, fresh=True)
            ctx = await executor.run_handler(new, progress, force_create=True)
            if ctx.status is not const.ResourceState.deployed:
                return _final_state(ctx)
            executor.record_applied(new, ctx)
            ctx = await executor.run_handler(old, progress)
            return _final_state(ctx)

        ctx = await executor.run_handler(old, progress)
        if ctx.status is not const.ResourceState.deployed:
            return _final_state(ctx)
        executor.recorder.record_deleted(self.resource)
        new = executor.desired_resource(self.resource, fresh=True)
        ctx = await executor.run_handler(new, progress)
        if ctx.status is const.ResourceState.deployed:
            executor.record_applied(new, ctx)
        return _final_state(ctx)


def _final_state(ctx: HandlerContext) -> const.ResourceState:
    if ctx.status is None:
        return const.ResourceState.failed
    return ctx.status


TASK_FOR_ACTION: dict[const.ChangeAction, type[Task]] = {
    const.ChangeAction.create: Create,
    const.ChangeAction.update: Update,
    const.ChangeAction.replace: Replace,
    const.ChangeAction.delete: Delete,
    const.ChangeAction.nochange: Keep,
}


def task_for(resource: ResourceIdStr, action: const.ChangeAction) -> Task:
    return TASK_FOR_ACTION[action](resource=resource)
