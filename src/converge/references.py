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
import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Optional, Union

from converge import const
from converge.resources import Id, ResourceException

# A step in an attribute path is either a mapping key or a list index
PathStep = Union[str, int]

PATTERN_INTERPOLATION = re.compile(r"\$\$\{|\$\{([^}]*)\}")
PATTERN_ROOT_SEGMENT = re.compile(r"^([A-Za-z_][A-Za-z0-9_-]*)")
PATTERN_PATH_STEP = re.compile(r'\.([A-Za-z0-9_-]+)|\[(\d+)\]|\["([^"]*)"\]')


class ReferenceSyntaxError(ValueError):
    """
    A reference expression could not be parsed
    """


class ReferenceResolutionError(LookupError):
    """
    A reference points to an attribute that does not exist on its target
    """


class Unknown:
    """
    Placeholder for a value that is only known after the resource it depends on has been applied
    """

    def __init__(self, source: Optional["Reference"] = None) -> None:
        self.source = source

    def __repr__(self) -> str:
        if self.source is None:
            return "Unknown()"
        return f"Unknown({self.source})"

    def __str__(self) -> str:
        return const.UNKNOWN_VALUE_DISPLAY


@dataclass(frozen=True)
class AttributePath:
    """
    A path into a nested attribute value, e.g. `tags.Name` or `subnets[0].id`
    """

    steps: tuple[PathStep, ...] = ()

    @classmethod
    def parse(cls, value: str) -> "AttributePath":
        """
        Parse a path of the form `key.key[0]["key.with.dots"]`. The first step may omit the leading dot.
        """
        if value == "":
            return AttributePath()
        text = value if value.startswith((".", "[")) else "." + value
        steps: list[PathStep] = []
        position = 0
        while position < len(text):
            match = PATTERN_PATH_STEP.match(text, position)
            if match is None:
                raise ReferenceSyntaxError(f"Invalid attribute path {value!r} at position {max(position - 1, 0)}")
            key, index, quoted = match.groups()
            if index is not None:
                steps.append(int(index))
            elif quoted is not None:
                steps.append(quoted)
            else:
                steps.append(key)
            position = match.end()
        return AttributePath(tuple(steps))

    def __truediv__(self, step: PathStep) -> "AttributePath":
        return AttributePath(self.steps + (step,))

    def __bool__(self) -> bool:
        return bool(self.steps)

    @property
    def root(self) -> Optional[str]:
        """The top level attribute this path starts in"""
        if not self.steps or not isinstance(self.steps[0], str):
            return None
        return self.steps[0]

    def tail(self) -> "AttributePath":
        return AttributePath(self.steps[1:])

    def get(self, container: object) -> object:
        """
        Navigate the given container along this path.

        :raises ReferenceResolutionError: The path does not exist in the container.
        """
        current = container
        for step in self.steps:
            if isinstance(current, Unknown):
                return current
            if isinstance(step, int):
                if not isinstance(current, Sequence) or isinstance(current, str):
                    raise ReferenceResolutionError(f"Can not index {type(current).__name__} with [{step}] in path {self}")
                if step >= len(current):
                    raise ReferenceResolutionError(f"Index {step} out of range in path {self}")
                current = current[step]
            else:
                if not isinstance(current, Mapping):
                    raise ReferenceResolutionError(f"Can not get key {step!r} of {type(current).__name__} in path {self}")
                if step not in current:
                    raise ReferenceResolutionError(f"Key {step!r} not found in path {self}")
                current = current[step]
        return current

    def __str__(self) -> str:
        out = []
        for step in self.steps:
            if isinstance(step, int):
                out.append(f"[{step}]")
            elif re.fullmatch(r"[A-Za-z0-9_-]+", step):
                out.append(f".{step}")
            else:
                out.append(f'["{step}"]')
        return "".join(out).lstrip(".")


class ReferenceLike(abc.ABC):
    """
    Base class for the values in a declaration that are not literals
    """

    @abc.abstractmethod
    def expression(self) -> str:
        """Return this reference in declaration syntax"""

    def __str__(self) -> str:
        return self.expression()


@dataclass(frozen=True)
class Reference(ReferenceLike):
    """
    A reference to an attribute of another resource: ${<type>.<name>.<path>}
    """

    target: Id
    path: AttributePath

    def expression(self) -> str:
        return "${%s.%s}" % (self.target, self.path)


@dataclass(frozen=True)
class VariableReference(ReferenceLike):
    """
    A reference to an input variable: ${var.<name>}
    """

    name: str

    def expression(self) -> str:
        return "${%s.%s}" % (const.VARIABLE_NAMESPACE, self.name)


@dataclass(frozen=True)
class Interpolation(ReferenceLike):
    """
    A string with one or more references embedded in literal text
    """

    parts: tuple[Union[str, Reference, VariableReference], ...] = dataclasses.field(default=())

    def expression(self) -> str:
        return "".join(part.replace("${", "$${") if isinstance(part, str) else part.expression() for part in self.parts)


def parse_expression(expression: str) -> Union[Reference, VariableReference]:
    """
    Parse the content of a ${...} block
    """
    text = expression.strip()
    root = PATTERN_ROOT_SEGMENT.match(text)
    if root is None:
        raise ReferenceSyntaxError(f"Invalid reference ${{{expression}}}")
    if root.group(1) == const.VARIABLE_NAMESPACE:
        rest = AttributePath.parse(text[root.end() :])
        if len(rest.steps) != 1 or not isinstance(rest.steps[0], str):
            raise ReferenceSyntaxError(f"Invalid variable reference ${{{expression}}}, expected ${{var.<name>}}")
        return VariableReference(rest.steps[0])

    path = AttributePath.parse(text[root.end() :])
    if len(path.steps) < 2 or not isinstance(path.steps[0], str) or not isinstance(path.steps[1], str):
        raise ReferenceSyntaxError(f"Invalid reference ${{{expression}}}, expected ${{<type>.<name>.<attribute>}}")
    try:
        target = Id(root.group(1), path.steps[0])
    except ResourceException as e:
        raise ReferenceSyntaxError(f"Invalid reference ${{{expression}}}: {e}") from e
    return Reference(target, AttributePath(path.steps[1:]))


def parse_string(value: str) -> Union[str, Reference, VariableReference, Interpolation]:
    """
    Parse a string from a declaration. A string that consists of exactly one reference becomes that reference, a string
    with embedded references becomes an Interpolation and any other string is returned unmodified (with `$${` unescaped).
    """
    if "${" not in value:
        return value
    parts: list[Union[str, Reference, VariableReference]] = []
    literal: list[str] = []
    position = 0
    for match in PATTERN_INTERPOLATION.finditer(value):
        literal.append(value[position : match.start()])
        position = match.end()
        if match.group(0) == "$${":
            literal.append("${")
            continue
        if literal and "".join(literal):
            parts.append("".join(literal))
        literal = []
        parts.append(parse_expression(match.group(1)))
    remainder = value[position:]
    if "${" in remainder:
        raise ReferenceSyntaxError(f"Unterminated reference in {value!r}")
    literal.append(remainder)
    if "".join(literal):
        parts.append("".join(literal))

    if not any(isinstance(part, ReferenceLike) for part in parts):
        return "".join(str(part) for part in parts)
    if len(parts) == 1:
        return parts[0]
    return Interpolation(tuple(parts))


def parse_value(value: object) -> object:
    """
    Replace every string in a (nested) declaration value by its parsed form.
    """
    if isinstance(value, str):
        return parse_string(value)
    if isinstance(value, list):
        return [parse_value(v) for v in value]
    if isinstance(value, dict):
        return {k: parse_value(v) for k, v in value.items()}
    return value


def collect_references(
    value: object, path: AttributePath = AttributePath()
) -> Iterator[tuple[AttributePath, Union[Reference, VariableReference]]]:
    """
    Yield every reference in a parsed value, together with the path of the attribute it was found in.
    """
    if isinstance(value, (Reference, VariableReference)):
        yield path, value
    elif isinstance(value, Interpolation):
        for part in value.parts:
            if isinstance(part, (Reference, VariableReference)):
                yield path, part
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from collect_references(item, path / index)
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from collect_references(item, path / key)


def _render(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def resolve_value(value: object, resolver: Callable[[Union[Reference, VariableReference]], object]) -> object:
    """
    Substitute every reference in a parsed value with the value the resolver returns for it.

    An interpolation of which one of the parts is unknown becomes unknown as a whole.
    """
    if isinstance(value, (Reference, VariableReference)):
        return resolver(value)
    if isinstance(value, Interpolation):
        rendered: list[str] = []
        for part in value.parts:
            if isinstance(part, str):
                rendered.append(part)
                continue
            resolved = resolver(part)
            if isinstance(resolved, Unknown):
                return resolved
            rendered.append(_render(resolved))
        return "".join(rendered)
    if isinstance(value, list):
        return [resolve_value(v, resolver) for v in value]
    if isinstance(value, dict):
        return {k: resolve_value(v, resolver) for k, v in value.items()}
    return value


def contains_unknown(value: object) -> bool:
    if isinstance(value, Unknown):
        return True
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    return False


def contains_reference(value: object) -> bool:
    return next(iter(collect_references(value)), None) is not None


def unparse_value(value: object) -> object:
    """
    Turn a parsed value back into its declaration form, e.g. for display.
    """
    if isinstance(value, ReferenceLike):
        return value.expression()
    if isinstance(value, Unknown):
        return str(value)
    if isinstance(value, list):
        return [unparse_value(v) for v in value]
    if isinstance(value, dict):
        return {k: unparse_value(v) for k, v in value.items()}
    return value


def substitute_variables(value: object, variables: Mapping[str, object]) -> object:
    """
    Replace every variable reference in a parsed value by the value of the variable. References to resources are kept.
    The caller validates that every referenced variable is present.
    """
    if isinstance(value, VariableReference):
        return variables[value.name]
    if isinstance(value, Interpolation):
        parts: list[Union[str, Reference, VariableReference]] = []
        for part in value.parts:
            if isinstance(part, VariableReference):
                part = _render(variables[part.name])
            if isinstance(part, str) and parts and isinstance(parts[-1], str):
                parts[-1] = parts[-1] + part
            elif part != "":
                parts.append(part)
        if not any(isinstance(part, Reference) for part in parts):
            return "".join(str(part) for part in parts)
        return Interpolation(tuple(parts))
    if isinstance(value, list):
        return [substitute_variables(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: substitute_variables(v, variables) for k, v in value.items()}
    return value
