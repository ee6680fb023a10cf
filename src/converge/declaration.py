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
import glob
import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from typing import Optional

import pydantic
import yaml

from converge import const
from converge.references import ReferenceSyntaxError, parse_value
from converge.resources import NAME_REGEX, Id, ResourceException
from converge.types import BaseModel, ResourceIdStr

LOGGER = logging.getLogger(__name__)

TOP_LEVEL_KEYS = frozenset({"variables", "resources", "outputs"})


@dataclasses.dataclass(frozen=True)
class DeclarationProblem:
    source: str
    location: str
    message: str

    def __str__(self) -> str:
        if self.location:
            return f"{self.source}: {self.location}: {self.message}"
        return f"{self.source}: {self.message}"


class DeclarationError(Exception):
    """
    The declaration is not valid. Carries every problem that was found, not just the first one.
    """

    def __init__(self, problems: Sequence[DeclarationProblem]) -> None:
        self.problems: list[DeclarationProblem] = list(problems)
        super().__init__(self.format())

    def format(self) -> str:
        if len(self.problems) == 1:
            return f"Invalid declaration: {self.problems[0]}"
        return "Invalid declaration, %d problems found:\n%s" % (
            len(self.problems),
            "\n".join(f"  - {problem}" for problem in self.problems),
        )


class LifecycleOptions(BaseModel):
    """
    :param prevent_destroy: Planning a delete or replacement of this resource is an error
    :param ignore_changes: Top level attributes of which changes are not planned
    :param create_before_destroy: On replacement, create the new object before deleting the old one
    """

    model_config = pydantic.ConfigDict(extra="forbid")

    prevent_destroy: bool = False
    ignore_changes: list[str] = []
    create_before_destroy: bool = False


class VariableDeclaration(BaseModel):
    model_config = pydantic.ConfigDict(extra="forbid")

    name: str
    default: Optional[object] = None
    has_default: bool = False
    description: Optional[str] = None
    sensitive: bool = False
    source: str = "<string>"


class ResourceDeclaration(BaseModel):
    """
    A single resource as written in the declaration. Attribute values are parsed: references are
    converge.references objects.
    """

    resource_id: ResourceIdStr
    attributes: dict[str, object] = {}
    depends_on: list[ResourceIdStr] = []
    lifecycle: LifecycleOptions = LifecycleOptions()
    source: str = "<string>"

    @property
    def id(self) -> Id:
        return Id.parse_id(self.resource_id)


class OutputDeclaration(BaseModel):
    name: str
    value: Optional[object] = None
    description: Optional[str] = None
    sensitive: bool = False
    source: str = "<string>"


class Declaration(BaseModel):
    """
    The desired state of one revision, possibly merged from multiple files
    """

    variables: dict[str, VariableDeclaration] = {}
    resources: dict[ResourceIdStr, ResourceDeclaration] = {}
    outputs: dict[str, OutputDeclaration] = {}
    sources: list[str] = []

    def merge(self, other: "Declaration") -> "Declaration":
        """
        Merge two declarations into a new one.

        :raises DeclarationError: A variable, resource or output is declared in both.
        """
        problems: list[DeclarationProblem] = []

        def check(kind: str, mine: Mapping[str, object], theirs: Mapping[str, object]) -> None:
            for key in sorted(mine.keys() & theirs.keys()):
                first = getattr(mine[key], "source", "")
                second = getattr(theirs[key], "source", "")
                problems.append(DeclarationProblem(second, f"{kind} {key}", f"already declared in {first}"))

        check("variable", self.variables, other.variables)
        check("resource", self.resources, other.resources)
        check("output", self.outputs, other.outputs)
        if problems:
            raise DeclarationError(problems)
        return Declaration(
            variables={**self.variables, **other.variables},
            resources={**self.resources, **other.resources},
            outputs={**self.outputs, **other.outputs},
            sources=self.sources + other.sources,
        )


def _format_validation_error(error: pydantic.ValidationError) -> Iterable[tuple[str, str]]:
    for detail in error.errors():
        yield ".".join(str(part) for part in detail["loc"]), detail["msg"]


class _Parser:
    """
    Turns one YAML document into a Declaration, collecting problems on the way.
    """

    def __init__(self, source: str) -> None:
        self.source = source
        self.problems: list[DeclarationProblem] = []

    def problem(self, location: str, message: str) -> None:
        self.problems.append(DeclarationProblem(self.source, location, message))

    def parse(self, text: str) -> Declaration:
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            location = f"line {mark.line + 1}, column {mark.column + 1}" if mark is not None else ""
            problem = getattr(e, "problem", None) or str(e)
            self.problem(location, f"invalid YAML: {problem}")
            raise DeclarationError(self.problems)

        if document is None:
            return Declaration(sources=[self.source])
        if not isinstance(document, dict):
            self.problem("", f"expected a mapping at the top level, got {type(document).__name__}")
            raise DeclarationError(self.problems)

        for key in sorted(set(document.keys()) - TOP_LEVEL_KEYS, key=str):
            self.problem(str(key), f"unknown top level key, expected one of {', '.join(sorted(TOP_LEVEL_KEYS))}")

        variables = self.parse_variables(document.get("variables"))
        resources = self.parse_resources(document.get("resources"))
        outputs = self.parse_outputs(document.get("outputs"))

        if self.problems:
            raise DeclarationError(self.problems)
        return Declaration(variables=variables, resources=resources, outputs=outputs, sources=[self.source])

    def mapping(self, location: str, value: object) -> dict[object, object]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            self.problem(location, f"expected a mapping, got {type(value).__name__}")
            return {}
        return value

    def parse_attribute_value(self, location: str, value: object) -> object:
        try:
            return parse_value(value)
        except ReferenceSyntaxError as e:
            self.problem(location, str(e))
            return None

    def parse_variables(self, raw: object) -> dict[str, VariableDeclaration]:
        result: dict[str, VariableDeclaration] = {}
        for name, body in self.mapping("variables", raw).items():
            location = f"variables.{name}"
            if not isinstance(name, str) or not NAME_REGEX.match(name):
                self.problem(location, "invalid variable name")
                continue
            fields = self.mapping(location, body)
            unknown = sorted(set(fields.keys()) - {"default", "description", "sensitive"}, key=str)
            if unknown:
                self.problem(location, f"unknown keys {', '.join(str(k) for k in unknown)}")
                continue
            try:
                result[name] = VariableDeclaration(
                    name=name,
                    default=fields.get("default"),
                    has_default="default" in fields,
                    description=fields.get("description"),
                    sensitive=fields.get("sensitive", False),
                    source=self.source,
                )
            except pydantic.ValidationError as e:
                for loc, msg in _format_validation_error(e):
                    self.problem(f"{location}.{loc}", msg)
        return result

    def parse_lifecycle(self, location: str, raw: object) -> LifecycleOptions:
        fields = self.mapping(location, raw)
        try:
            return LifecycleOptions.model_validate(fields)
        except pydantic.ValidationError as e:
            for loc, msg in _format_validation_error(e):
                self.problem(f"{location}.{loc}", msg)
            return LifecycleOptions()

    def parse_depends_on(self, location: str, raw: object) -> list[ResourceIdStr]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            self.problem(location, f"expected a list of resource ids, got {type(raw).__name__}")
            return []
        result: list[ResourceIdStr] = []
        for index, item in enumerate(raw):
            if not isinstance(item, str) or not Id.is_resource_id(item):
                self.problem(f"{location}[{index}]", f"invalid resource id {item!r}, expected <type>.<name>")
                continue
            result.append(ResourceIdStr(item))
        return result

    def parse_resources(self, raw: object) -> dict[ResourceIdStr, ResourceDeclaration]:
        result: dict[ResourceIdStr, ResourceDeclaration] = {}
        for resource_type, instances in self.mapping("resources", raw).items():
            for name, body in self.mapping(f"resources.{resource_type}", instances).items():
                location = f"resources.{resource_type}.{name}"
                try:
                    rid = Id(str(resource_type), str(name))
                except ResourceException as e:
                    self.problem(location, str(e))
                    continue
                fields = self.mapping(location, body)

                attributes: dict[str, object] = {}
                for key, value in fields.items():
                    if key in const.META_ATTRIBUTES:
                        continue
                    if not isinstance(key, str):
                        self.problem(f"{location}.{key}", "attribute names must be strings")
                        continue
                    attributes[key] = self.parse_attribute_value(f"{location}.{key}", value)

                result[rid.resource_str()] = ResourceDeclaration(
                    resource_id=rid.resource_str(),
                    attributes=attributes,
                    depends_on=self.parse_depends_on(
                        f"{location}.{const.META_DEPENDS_ON}", fields.get(const.META_DEPENDS_ON)
                    ),
                    lifecycle=self.parse_lifecycle(f"{location}.{const.META_LIFECYCLE}", fields.get(const.META_LIFECYCLE)),
                    source=self.source,
                )
        return result

    def parse_outputs(self, raw: object) -> dict[str, OutputDeclaration]:
        result: dict[str, OutputDeclaration] = {}
        for name, body in self.mapping("outputs", raw).items():
            location = f"outputs.{name}"
            if not isinstance(name, str) or not NAME_REGEX.match(name):
                self.problem(location, "invalid output name")
                continue
            fields = self.mapping(location, body)
            if "value" not in fields:
                self.problem(location, "an output requires a value")
                continue
            unknown = sorted(set(fields.keys()) - {"value", "description", "sensitive"}, key=str)
            if unknown:
                self.problem(location, f"unknown keys {', '.join(str(k) for k in unknown)}")
                continue
            try:
                result[name] = OutputDeclaration(
                    name=name,
                    value=self.parse_attribute_value(f"{location}.value", fields["value"]),
                    description=fields.get("description"),
                    sensitive=fields.get("sensitive", False),
                    source=self.source,
                )
            except pydantic.ValidationError as e:
                for loc, msg in _format_validation_error(e):
                    self.problem(f"{location}.{loc}", msg)
        return result


def parse_declaration(text: str, source: str = "<string>") -> Declaration:
    """
    Parse a single declaration document.

    :param text: The YAML text
    :param source: Where the text comes from, used in error messages
    :raises DeclarationError: The document is not a valid declaration.
    """
    return _Parser(source).parse(text)


def declaration_files(path: str) -> list[str]:
    """
    The files that make up the declaration at the given path: the path itself, or the YAML files in the directory.
    """
    if os.path.isdir(path):
        files = glob.glob(os.path.join(path, "*.yaml")) + glob.glob(os.path.join(path, "*.yml"))
        return sorted(files)
    return [path]


def load_declaration(path: str) -> Declaration:
    """
    Load the declaration from a file or from all YAML files in a directory.

    :raises DeclarationError: A file can not be read or parsed, or files declare the same object.
    """
    if not os.path.exists(path):
        raise DeclarationError([DeclarationProblem(path, "", "no such file or directory")])

    problems: list[DeclarationProblem] = []
    result = Declaration()
    for file in declaration_files(path):
        LOGGER.debug("Loading declaration from %s", file)
        try:
            with open(file, encoding="utf-8") as fh:
                text = fh.read()
            result = result.merge(parse_declaration(text, file))
        except DeclarationError as e:
            problems.extend(e.problems)
        except OSError as e:
            problems.append(DeclarationProblem(file, "", f"could not read file: {e.strerror}"))
        except UnicodeDecodeError as e:
            problems.append(DeclarationProblem(file, "", f"not valid UTF-8: {e.reason} at byte {e.start}"))
    if problems:
        raise DeclarationError(problems)
    return result
