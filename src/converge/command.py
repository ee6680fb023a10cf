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

import argparse
from collections import abc
from dataclasses import dataclass, field
from typing import Callable, Optional

from converge import const

FunctionType = Callable[[argparse.Namespace], None]
ParserConfigType = Callable[[argparse.ArgumentParser, abc.Sequence[argparse.ArgumentParser]], None]


class CLIException(Exception):
    """
    A command failed. The entry point prints the message, when there is one, and exits with the given code.
    """

    def __init__(self, *args: str, exitcode: int = const.EXIT_ERROR) -> None:
        self.exitcode = exitcode
        super().__init__(*args)


class ShowUsageException(Exception):
    """
    The arguments of a command are not valid: print the message and the usage
    """


@dataclass(frozen=True)
class CommandSpec:
    name: str
    function: FunctionType
    help: str
    parser_config: Optional[ParserConfigType] = None
    aliases: abc.Sequence[str] = field(default_factory=list)
    add_verbose_flag: bool = True


class Commander:
    """
    The registry of the commands of the `converge` command line, filled by the @command decorator
    """

    _commands: dict[str, CommandSpec] = {}

    @classmethod
    def add(cls, spec: CommandSpec) -> None:
        if spec.name in cls._commands:
            raise Exception("Command %s already registered" % spec.name)
        cls._commands[spec.name] = spec

    @classmethod
    def commands(cls) -> dict[str, CommandSpec]:
        return dict(sorted(cls._commands.items()))


class command:  # noqa: N801
    """
    Register the decorated function as a command. It gets the parsed arguments.

    :param parser_config: Adds the arguments of the command to its subparser
    :param add_verbose_flag: Add the -v option to the subparser of the command
    """

    def __init__(
        self,
        name: str,
        help_msg: str,
        parser_config: Optional[ParserConfigType] = None,
        aliases: abc.Sequence[str] = (),
        add_verbose_flag: bool = True,
    ) -> None:
        self.name = name
        self.help = help_msg
        self.parser_config = parser_config
        self.aliases = list(aliases)
        self.add_verbose_flag = add_verbose_flag

    def __call__(self, function: FunctionType) -> FunctionType:
        Commander.add(
            CommandSpec(
                name=self.name,
                function=function,
                help=self.help,
                parser_config=self.parser_config,
                aliases=self.aliases,
                add_verbose_flag=self.add_verbose_flag,
            )
        )
        return function
