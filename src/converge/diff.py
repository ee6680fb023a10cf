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
from collections.abc import Sequence
from typing import Optional, Union

from converge import const, resolver
from converge.data.model import AttributeDiff, OutputChange, Plan, ResourceChange, ResourceRecord, StateSnapshot
from converge.graph import ResourceGraph, ResourceNode
from converge.handler import HandlerRegistry
from converge.references import (
    Reference,
    ReferenceResolutionError,
    Unknown,
    VariableReference,
    contains_unknown,
    resolve_value,
    unparse_value,
)
from converge.types import ResourceIdStr
from converge.util import json_encode

LOGGER = logging.getLogger(__name__)


class PlanError(Exception):
    """
    No valid plan exists, e.g. because it would destroy a protected resource. Carries every problem found.
    """

    def __init__(self, problems: Sequence[str]) -> None:
        self.problems = list(problems)
        if len(self.problems) == 1:
            message = f"Unable to plan: {self.problems[0]}"
        else:
            message = "Unable to plan, %d problems found:\n%s" % (
                len(self.problems),
                "\n".join(f"  - {problem}" for problem in self.problems),
            )
        super().__init__(message)


class StalePlanError(PlanError):
    """
    The state or the declaration changed after the plan was computed
    """

    def __init__(self, message: str) -> None:
        super().__init__([message])


def compare_form(value: object) -> str:
    """
    A stable string form of a value, used to show and compare attribute values
    """
    value = unparse_value(value)
    if isinstance(value, str):
        return value
    return json_encode(value, indent=2)


def attribute_diff(from_value: object, to_value: object, forces_replacement: bool = False) -> AttributeDiff:
    unknown = contains_unknown(to_value)
    return AttributeDiff(
        from_value=from_value,
        to_value=unparse_value(to_value) if unknown else to_value,
        from_value_compare=compare_form(from_value),
        to_value_compare=compare_form(to_value),
        unknown=unknown,
        forces_replacement=forces_replacement,
    )


class _Planner:
    """
    Walks the graph in creation order, so every referenced resource is planned before the resources that reference it.
    """

    def __init__(self, graph: ResourceGraph, snapshot: StateSnapshot, registry: HandlerRegistry) -> None:
        self.graph = graph
        self.snapshot = snapshot
        self.registry = registry
        self.planned: dict[ResourceIdStr, ResourceChange] = {}
        self.desired: dict[ResourceIdStr, dict[str, object]] = {}
        self.problems: list[str] = []

    def resolve_reference(self, ref: Union[Reference, VariableReference]) -> object:
        if isinstance(ref, VariableReference):
            # variables are substituted when the graph is built
            return self.graph.variables[ref.name]
        target = ref.target.resource_str()
        change = self.planned[target]
        if change.action in (const.ChangeAction.create, const.ChangeAction.replace):
            return Unknown(ref)

        root = ref.path.root
        record = self.snapshot.resources[target]
        computed = self.registry.computed(ref.target.resource_type)
        if root == const.PROVIDER_ID_ATTRIBUTE and record.provider_id is not None:
            return record.lookup(ref.path)
        ignored = root in self.graph.nodes[target].lifecycle.ignore_changes
        if ignored and root in record.attributes:
            # ignored attributes keep the value they were applied with
            return record.lookup(ref.path)
        if change.action is const.ChangeAction.update and (root in computed or root in change.attributes):
            return Unknown(ref)
        desired = self.desired[target]
        if root in desired and not ignored:
            return ref.path.get(desired)
        if root in record.computed:
            return ref.path.get(record.computed)
        if root in computed:
            return Unknown(ref)
        raise ReferenceResolutionError(f"{target} has no attribute {root}")

    def resolve(self, location: str, value: object) -> object:
        try:
            return resolve_value(value, self.resolve_reference)
        except ReferenceResolutionError as e:
            self.problems.append(f"{location}: {e}")
            return None

    def plan_node(self, node: ResourceNode) -> ResourceChange:
        rid = node.resource_id
        record = self.snapshot.get(rid)
        desired = self.resolve(rid, node.attributes)
        assert isinstance(desired, dict)
        self.desired[rid] = desired
        requires = sorted(self.graph.requires_of(rid))

        if record is None:
            return ResourceChange(
                resource_id=rid,
                action=const.ChangeAction.create,
                attributes={name: attribute_diff(None, value) for name, value in sorted(desired.items())},
                requires=requires,
            )

        replace_on = self.registry.replace_on(node.resource_type)
        ignored = set(node.lifecycle.ignore_changes)
        diffs: dict[str, AttributeDiff] = {}
        for name in sorted(set(desired.keys()) | set(record.attributes.keys())):
            if name in ignored:
                continue
            from_value = record.attributes.get(name)
            to_value = desired.get(name)
            if contains_unknown(to_value) or from_value != to_value:
                diffs[name] = attribute_diff(from_value, to_value, name in replace_on)

        if record.tainted:
            action = const.ChangeAction.replace
            reason: Optional[str] = "the resource is tainted"
        elif any(diff.forces_replacement for diff in diffs.values()):
            action = const.ChangeAction.replace
            reason = "changing %s forces replacement" % ", ".join(
                name for name, diff in diffs.items() if diff.forces_replacement
            )
        elif diffs:
            action = const.ChangeAction.update
            reason = None
        else:
            action = const.ChangeAction.nochange
            reason = None

        if action is const.ChangeAction.replace and (node.lifecycle.prevent_destroy or record.prevent_destroy):
            self.problems.append(f"{rid} has lifecycle.prevent_destroy set, but the plan replaces it ({reason})")

        return ResourceChange(resource_id=rid, action=action, attributes=diffs, reason=reason, requires=requires)

    def plan_delete(self, record: ResourceRecord, destroy: bool) -> ResourceChange:
        rid = record.resource_id
        node = self.graph.get(rid)
        if record.prevent_destroy or (node is not None and node.lifecycle.prevent_destroy):
            self.problems.append(f"{rid} has lifecycle.prevent_destroy set, but the plan deletes it")
        return ResourceChange(
            resource_id=rid,
            action=const.ChangeAction.delete,
            attributes={name: attribute_diff(value, None) for name, value in sorted(record.attributes.items())},
            reason="destroy requested" if destroy else "no longer declared",
            requires=sorted(record.requires),
        )

    def plan_outputs(self, destroy: bool) -> list[OutputChange]:
        result: list[OutputChange] = []
        names = set(self.snapshot.outputs.keys()) | (set() if destroy else set(self.graph.outputs.keys()))
        for name in sorted(names):
            previous = self.snapshot.outputs.get(name)
            output = None if destroy else self.graph.outputs.get(name)
            if output is None:
                assert previous is not None
                result.append(
                    OutputChange(
                        name=name,
                        action=const.ChangeAction.delete,
                        from_value=previous.value,
                        sensitive=previous.sensitive,
                    )
                )
                continue
            value = self.resolve(f"output {name}", output.value)
            unknown = contains_unknown(value)
            if previous is None:
                action = const.ChangeAction.create
            elif unknown or previous.value != value:
                action = const.ChangeAction.update
            else:
                action = const.ChangeAction.nochange
            result.append(
                OutputChange(
                    name=name,
                    action=action,
                    from_value=previous.value if previous is not None else None,
                    to_value=unparse_value(value) if unknown else value,
                    unknown=unknown,
                    sensitive=output.sensitive,
                )
            )
        return result


def compute_plan(
    graph: ResourceGraph,
    snapshot: StateSnapshot,
    registry: HandlerRegistry,
    *,
    destroy: bool = False,
) -> Plan:
    """
    Compare the declared graph with the state snapshot and produce the change-set.

    :param graph: The desired state
    :param snapshot: The last applied state
    :param registry: The handlers, they decide which attributes force replacement and which are computed
    :param destroy: Plan the deletion of everything in the snapshot instead
    :raises CycleError: The graph has a cycle
    :raises PlanError: A reference can not be resolved or a protected resource would be destroyed
    """
    order = graph.creation_order()
    planner = _Planner(graph, snapshot, registry)

    changes: list[ResourceChange] = []
    if not destroy:
        for rid in order:
            change = planner.plan_node(graph.nodes[rid])
            planner.planned[rid] = change
            changes.append(change)

    to_delete = {rid for rid in snapshot.resources if destroy or rid not in graph}
    for rid in resolver.destruction_order(snapshot.requires_mapping()):
        if rid in to_delete:
            changes.append(planner.plan_delete(snapshot.resources[rid], destroy))

    output_changes = planner.plan_outputs(destroy)

    if planner.problems:
        raise PlanError(planner.problems)

    plan = Plan(
        changes=changes,
        output_changes=output_changes,
        destroy=destroy,
        state_serial=snapshot.serial,
        state_lineage=snapshot.lineage,
        graph_fingerprint=graph.fingerprint(),
    )
    LOGGER.debug("Computed plan for state serial %d: %s", snapshot.serial, plan.summary_line())
    return plan
