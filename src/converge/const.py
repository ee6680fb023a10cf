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

import enum
from enum import Enum, StrEnum


class ResourceState(StrEnum):
    """
    The outcome of applying a single node.
    """

    deployed = enum.auto()
    failed = enum.auto()
    skipped = enum.auto()  # The handler raised SkipResource
    skipped_for_dependency = enum.auto()  # A node this one depends on did not deploy
    cancelled = enum.auto()  # The apply was cancelled or stopped before this node finished


SUCCESS_STATES = frozenset({ResourceState.deployed, ResourceState.skipped})


class Change(StrEnum):
    """
    The change a handler reports it made to the live resource.
    """

    nochange = enum.auto()
    created = enum.auto()
    purged = enum.auto()
    updated = enum.auto()


class ChangeAction(StrEnum):
    """
    The action the differ plans for a node.
    """

    create = enum.auto()
    update = enum.auto()
    replace = enum.auto()
    delete = enum.auto()
    nochange = enum.auto()

    def is_destructive(self) -> bool:
        return self in (ChangeAction.delete, ChangeAction.replace)

    @property
    def symbol(self) -> str:
        return {
            ChangeAction.create: "+",
            ChangeAction.update: "~",
            ChangeAction.replace: "-/+",
            ChangeAction.delete: "-",
            ChangeAction.nochange: " ",
        }[self]


class LogLevel(str, Enum):
    """
    Log levels used for the per resource action log lines
    """

    CRITICAL = "CRITICAL"
    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    DEBUG = "DEBUG"
    TRACE = "TRACE"

    @property
    def to_int(self) -> int:
        return LOG_LEVEL_AS_INT[self]


LOG_LEVEL_TRACE = 3

LOG_LEVEL_AS_INT = {
    LogLevel.CRITICAL: 50,
    LogLevel.ERROR: 40,
    LogLevel.WARNING: 30,
    LogLevel.INFO: 20,
    LogLevel.DEBUG: 10,
    LogLevel.TRACE: LOG_LEVEL_TRACE,
}

INT_TO_LOG_LEVEL = {v: k for k, v in LOG_LEVEL_AS_INT.items()}

# Name of the logger that receives the log lines of individual resource actions
NAME_RESOURCE_ACTION_LOGGER = "converge.resource_action"

# Force colored console output, even when not attached to a tty
ENVIRON_FORCE_TTY = "CONVERGE_FORCE_TTY"

# Version of the on-disk state format
STATE_FORMAT_VERSION = 1

# Keys with a special meaning inside a resource declaration
META_DEPENDS_ON = "depends_on"
META_LIFECYCLE = "lifecycle"
META_ATTRIBUTES = frozenset({META_DEPENDS_ON, META_LIFECYCLE})

# Namespace of input variables in references: ${var.name}
VARIABLE_NAMESPACE = "var"

# Attribute under which the provider assigned identifier can be referenced: ${type.name.id}
PROVIDER_ID_ATTRIBUTE = "id"

# Shown instead of a value that is only known after apply
UNKNOWN_VALUE_DISPLAY = "(known after apply)"

# Shown instead of the value of a sensitive output
SENSITIVE_VALUE_DISPLAY = "(sensitive)"

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PLAN_HAS_CHANGES = 2
