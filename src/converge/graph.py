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

import dataclasses
import logging
from collections.abc import Iterator, Mapping, Set
from typing import Optional

import yaml

from converge import resolver
from converge.declaration import (
    Declaration,
    DeclarationError,
    DeclarationProblem,
    LifecycleOptions,
    OutputDeclaration,
    load_declaration,
    parse_declaration,
)
from converge.references import (
    AttributePath,
    Reference,
    VariableReference,
    collect_references,
    contains_reference,
    substitute_variables,
)
from converge.resources import Id
from converge.types import ResourceIdStr
from converge.util import make_attribute_hash
from converge.util.collections import RequiresProvidesMapping

LOGGER = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class ReferenceEdge:
    """
    A dependency of the source node on the target node. The source can not be applied before the target is.

    :param source: The node that holds the reference
    :param target: The node that is referenced
    :param source_path: The attribute of the source the reference is in. None for an explicit depends_on.
    :param target_path: The attribute of the target that is referenced. None for an explicit depends_on.
    """

    source: ResourceIdStr
    target: ResourceIdStr
    source_path: Optional[AttributePath] = None
    target_path: Optional[AttributePath] = None

    @property
    def explicit(self) -> bool:
        return self.source_path is None

    def __str__(self) -> str:
        if self.explicit:
            return f"{self.source} -> {self.target}"
        return f"{self.source}.{self.source_path} -> {self.target}.{self.target_path}"


class ResourceNode:
    """
    A declared resource in the graph. Variables are substituted, references to other resources are kept.
    """

    def __init__(
        self,
        id: Id,
        attributes: Mapping[str, object],
        depends_on: Set[ResourceIdStr] = frozenset(),
        lifecycle: Optional[LifecycleOptions] = None,
        source: str = "<string>",
    ) -> None:
        self.id = id
        self.attributes: dict[str, object] = dict(attributes)
        self.depends_on: frozenset[ResourceIdStr] = frozenset(depends_on)
        self.lifecycle = lifecycle if lifecycle is not None else LifecycleOptions()
        self.source = source

    @property
    def resource_id(self) -> ResourceIdStr:
        return self.id.resource_str()

    @property
    def resource_type(self) -> str:
        return self.id.resource_type

    def edges(self) -> list[ReferenceEdge]:
        """
        All outgoing edges of this node: one per reference, one per explicit dependency
        """
        result = [
            ReferenceEdge(self.resource_id, ref.target.resource_str(), path, ref.path)
            for path, ref in collect_references(self.attributes)
            if isinstance(ref, Reference)
        ]
        result.extend(ReferenceEdge(self.resource_id, dep) for dep in sorted(self.depends_on))
        return result

    def has_references(self) -> bool:
        return contains_reference(self.attributes)

    def __repr__(self) -> str:
        return f"ResourceNode({self.resource_id})"


class OutputNode:
    def __init__(self, name: str, value: object, description: Optional[str] = None, sensitive: bool = False) -> None:
        self.name = name
        self.value = value
        self.description = description
        self.sensitive = sensitive

    def requires(self) -> set[ResourceIdStr]:
        return {ref.target.resource_str() for _, ref in collect_references(self.value) if isinstance(ref, Reference)}


class ResourceGraph:
    """
    The desired state as a directed graph of resource nodes. An edge from a to b means a requires b.
    """

    def __init__(
        self,
        nodes: Mapping[ResourceIdStr, ResourceNode],
        outputs: Optional[Mapping[str, OutputNode]] = None,
        variables: Optional[Mapping[str, object]] = None,
    ) -> None:
        self.nodes: dict[ResourceIdStr, ResourceNode] = dict(nodes)
        self.outputs: dict[str, OutputNode] = dict(outputs or {})
        self.variables: dict[str, object] = dict(variables or {})
        self.edges: list[ReferenceEdge] = [edge for rid in sorted(self.nodes) for edge in self.nodes[rid].edges()]
        self.requires = RequiresProvidesMapping()
        for rid in self.nodes:
            self.requires[rid] = set()
        for edge in self.edges:
            self.requires.add(edge.source, edge.target)

    @property
    def provides(self) -> Mapping[str, Set[str]]:
        return self.requires.provides_view()

    def requires_of(self, resource_id: ResourceIdStr) -> set[ResourceIdStr]:
        return {ResourceIdStr(rid) for rid in self.requires.get(resource_id, set())}

    def provides_of(self, resource_id: ResourceIdStr) -> set[ResourceIdStr]:
        return {ResourceIdStr(rid) for rid in self.requires.get_reverse(resource_id, set()) or set()}

    def edges_from(self, resource_id: ResourceIdStr) -> list[ReferenceEdge]:
        return [edge for edge in self.edges if edge.source == resource_id]

    def creation_order(self) -> list[ResourceIdStr]:
        """
        :raises CycleError: The graph has one or more cycles
        """
        return [ResourceIdStr(rid) for rid in resolver.creation_order(self.requires.requires_view())]

    def generations(self) -> list[list[ResourceIdStr]]:
        return [[ResourceIdStr(rid) for rid in wave] for wave in resolver.generations(self.requires.requires_view())]

    def validate(self) -> None:
        """
        :raises CycleError: The graph has one or more cycles
        """
        resolver.check_acyclic(self.requires.requires_view())

    def fingerprint(self) -> str:
        """
        A hash over everything a plan is computed from: the nodes with their attributes, dependencies and lifecycle
        options, the outputs and the variable values.
        """
        content = {
            "resources": {
                rid: {"attributes": node.attributes, "depends_on": node.depends_on, "lifecycle": node.lifecycle}
                for rid, node in self.nodes.items()
            },
            "outputs": {name: {"value": output.value, "sensitive": output.sensitive} for name, output in self.outputs.items()},
            "variables": self.variables,
        }
        return make_attribute_hash("graph", content)

    def to_dot(self) -> str:
        dot = "digraph G {\n"
        for rid in sorted(self.nodes):
            dot += '\t"%s";\n' % rid
            for req in sorted(self.requires[rid]):
                dot += '\t"%s" -> "%s";\n' % (rid, req)
        dot += "}\n"
        return dot

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self.nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, resource_id: ResourceIdStr) -> Optional[ResourceNode]:
        return self.nodes.get(resource_id)


def parse_variable_values(values: Mapping[str, str]) -> dict[str, object]:
    """
    Values given on the command line are YAML scalars: `--var count=3` yields an int.
    """
    result: dict[str, object] = {}
    for name, raw in values.items():
        try:
            result[name] = yaml.safe_load(raw) if raw != "" else ""
        except yaml.YAMLError:
            result[name] = raw
    return result


def _resolve_variables(
    declaration: Declaration, values: Mapping[str, object], problems: list[DeclarationProblem]
) -> dict[str, object]:
    result: dict[str, object] = {}
    for name in sorted(values.keys() - declaration.variables.keys()):
        problems.append(DeclarationProblem("<variables>", f"var.{name}", "a value was given for an undeclared variable"))
    for name, variable in sorted(declaration.variables.items()):
        if name in values:
            result[name] = values[name]
        elif variable.has_default:
            result[name] = variable.default
        else:
            problems.append(DeclarationProblem(variable.source, f"variables.{name}", "no value given and no default"))
    return result


def _check_references(
    location: str,
    source: str,
    value: object,
    declaration: Declaration,
    problems: list[DeclarationProblem],
) -> None:
    for path, ref in collect_references(value):
        where = f"{location}.{path}" if path else location
        if isinstance(ref, VariableReference):
            if ref.name not in declaration.variables:
                problems.append(DeclarationProblem(source, where, f"reference to undeclared variable {ref}"))
        elif ref.target.resource_str() not in declaration.resources:
            problems.append(DeclarationProblem(source, where, f"reference to undeclared resource {ref.target} in {ref}"))


def build_graph(declaration: Declaration, variables: Optional[Mapping[str, object]] = None) -> ResourceGraph:
    """
    Build the resource graph for a declaration.

    :param declaration: The parsed declaration
    :param variables: Values for input variables, these take precedence over the declared defaults
    :raises DeclarationError: A reference or dependency can not be resolved or a variable has no value.
        All such problems are reported together.
    """
    problems: list[DeclarationProblem] = []
    values = _resolve_variables(declaration, variables or {}, problems)

    for rid, resource in sorted(declaration.resources.items()):
        location = f"resources.{rid}"
        for name, value in resource.attributes.items():
            _check_references(f"{location}.{name}", resource.source, value, declaration, problems)
        for dep in resource.depends_on:
            if dep not in declaration.resources:
                problems.append(
                    DeclarationProblem(resource.source, f"{location}.depends_on", f"dependency on undeclared resource {dep}")
                )
    for name, output in sorted(declaration.outputs.items()):
        _check_references(f"outputs.{name}", output.source, output.value, declaration, problems)

    if problems:
        raise DeclarationError(problems)

    nodes: dict[ResourceIdStr, ResourceNode] = {}
    for rid, resource in declaration.resources.items():
        attributes = substitute_variables(resource.attributes, values)
        assert isinstance(attributes, dict)
        nodes[rid] = ResourceNode(
            resource.id,
            attributes,
            depends_on=set(resource.depends_on),
            lifecycle=resource.lifecycle,
            source=resource.source,
        )
    outputs = {name: _output_node(output, values) for name, output in declaration.outputs.items()}
    graph = ResourceGraph(nodes, outputs, values)
    LOGGER.debug("Built graph with %d nodes and %d edges", len(graph.nodes), len(graph.edges))
    return graph


def _output_node(output: OutputDeclaration, values: Mapping[str, object]) -> OutputNode:
    return OutputNode(
        output.name,
        substitute_variables(output.value, values),
        description=output.description,
        sensitive=output.sensitive,
    )


def parse_graph(text: str, variables: Optional[Mapping[str, object]] = None, source: str = "<string>") -> ResourceGraph:
    """
    Parse declaration text straight into a graph
    """
    return build_graph(parse_declaration(text, source), variables)


def load_graph(path: str, variables: Optional[Mapping[str, object]] = None) -> ResourceGraph:
    return build_graph(load_declaration(path), variables)
