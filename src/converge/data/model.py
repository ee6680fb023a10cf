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

import datetime
import logging
import uuid
from collections import abc
from typing import ClassVar, Optional, Union

from pydantic import ConfigDict, Field, field_validator

from converge import const
from converge.references import AttributePath, ReferenceResolutionError
from converge.types import BaseModel, JsonType, ResourceIdStr, ResourceType


class LogLine(BaseModel):
    """
    A log line emitted while applying a single resource.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(use_enum_values=False)

    level: const.LogLevel
    msg: str
    kwargs: JsonType = {}
    timestamp: datetime.datetime

    @field_validator("level", mode="before")
    @classmethod
    def validate_log_level(cls, value: object) -> const.LogLevel:
        """
        Accept both the name of the level and the python logging int for it.
        """
        if isinstance(value, int) and value in const.INT_TO_LOG_LEVEL:
            return const.INT_TO_LOG_LEVEL[value]
        try:
            return const.LogLevel(value)
        except ValueError:
            valid = ", ".join(f"'{level.value}' | {level.to_int}" for level in const.LogLevel)
            raise ValueError(f"Input should be one of {valid}")

    @property
    def log_level(self) -> const.LogLevel:
        return self.level

    def write_to_logger(self, logger: logging.Logger) -> None:
        logger.log(self.level.to_int, self.msg)

    @classmethod
    def log(
        cls,
        level: Union[int, const.LogLevel],
        msg: str,
        timestamp: Optional[datetime.datetime] = None,
        **kwargs: object,
    ) -> "LogLine":
        if timestamp is None:
            timestamp = datetime.datetime.now().astimezone()

        log_line = msg % kwargs if kwargs else msg
        return cls(level=level, msg=log_line, kwargs=kwargs, timestamp=timestamp)


class AttributeStateChange(BaseModel):
    """
    A change a handler reported for an attribute of the live object
    """

    current: Optional[object] = None
    desired: Optional[object] = None


class AttributeDiff(BaseModel):
    """
    :param from_value: The recorded value of the attribute
    :param to_value: The desired value of the attribute. Parts that are only known after apply are in their display form.
    :param from_value_compare: A stringified, diff-friendly form of the 'from_value' field
    :param to_value_compare: A stringified, diff-friendly form of the 'to_value' field
    :param unknown: The desired value is only known after apply
    :param forces_replacement: Changing this attribute requires the resource to be replaced
    """

    from_value: Optional[object] = None
    to_value: Optional[object] = None
    from_value_compare: str
    to_value_compare: str
    unknown: bool = False
    forces_replacement: bool = False


class ResourceChange(BaseModel):
    """
    The planned action for a single resource.

    :param resource_id: The id of the resource
    :param action: What will be done to the resource
    :param attributes: The attributes that differ between the state snapshot and the desired state
    :param reason: Human readable explanation of why this action was chosen
    :param requires: The resources this resource requires. For deletes: the requires as recorded in the state.
    """

    resource_id: ResourceIdStr
    action: const.ChangeAction
    attributes: dict[str, AttributeDiff] = {}
    reason: Optional[str] = None
    requires: list[ResourceIdStr] = []


class OutputChange(BaseModel):
    """
    The planned change of a named output
    """

    name: str
    action: const.ChangeAction
    from_value: Optional[object] = None
    to_value: Optional[object] = None
    unknown: bool = False
    sensitive: bool = False


class ResourceRecord(BaseModel):
    """
    What the state snapshot knows about an applied resource.

    :param resource_id: The id of the resource
    :param attributes: The resolved attributes as they were last applied
    :param provider_id: The identifier the provider assigned to the live object
    :param computed: Attributes the provider reported, e.g. an endpoint
    :param requires: The resources this resource required when it was applied. Used to order its deletion.
    :param attribute_hash: Hash over the applied attributes
    :param tainted: The resource must be replaced on the next apply
    :param prevent_destroy: The declaration forbade destroying this resource
    :param updated: When this record was last written
    """

    resource_id: ResourceIdStr
    resource_type: ResourceType
    name: str
    attributes: dict[str, object] = {}
    provider_id: Optional[str] = None
    computed: dict[str, object] = {}
    requires: list[ResourceIdStr] = []
    attribute_hash: str
    tainted: bool = False
    prevent_destroy: bool = False
    updated: datetime.datetime = Field(default_factory=lambda: datetime.datetime.now().astimezone())

    def lookup(self, path: AttributePath) -> object:
        """
        Get the value a reference with the given attribute path resolves to. The provider id is available as `id`, then
        the applied attributes are searched and finally the computed ones.

        :raises ReferenceResolutionError: The attribute does not exist on this resource.
        """
        root = path.root
        if root is None:
            raise ReferenceResolutionError(f"Invalid attribute path {path} for {self.resource_id}")
        if root == const.PROVIDER_ID_ATTRIBUTE and self.provider_id is not None:
            return path.tail().get(self.provider_id) if path.tail() else self.provider_id
        if root in self.attributes:
            return path.get(self.attributes)
        if root in self.computed:
            return path.get(self.computed)
        raise ReferenceResolutionError(f"{self.resource_id} has no attribute {root}")


class OutputValue(BaseModel):
    value: Optional[object] = None
    sensitive: bool = False


class StateSnapshot(BaseModel):
    """
    The last known applied state.

    :param format_version: The version of this format
    :param serial: Incremented on every write of the snapshot
    :param lineage: Identifies a chain of snapshots. A plan can only be applied to the lineage it was created for.
    :param resources: The applied resources
    :param outputs: The outputs as resolved after the last apply
    """

    format_version: int = const.STATE_FORMAT_VERSION
    serial: int = 0
    lineage: uuid.UUID = Field(default_factory=uuid.uuid4)
    resources: dict[ResourceIdStr, ResourceRecord] = {}
    outputs: dict[str, OutputValue] = {}

    def get(self, resource_id: ResourceIdStr) -> Optional[ResourceRecord]:
        return self.resources.get(resource_id)

    def requires_mapping(self) -> dict[ResourceIdStr, set[ResourceIdStr]]:
        """
        The requires relation as recorded in the snapshot, restricted to resources in the snapshot.
        """
        return {
            rid: {req for req in record.requires if req in self.resources} for rid, record in self.resources.items()
        }

    def sorted_ids(self) -> abc.Sequence[ResourceIdStr]:
        return sorted(self.resources.keys())


class Plan(BaseModel):
    """
    The change-set that brings the applied state in line with the declaration.

    :param changes: One change per resource: first all non-deletes in creation order, then the deletes in destruction order
    :param output_changes: The changes to the outputs, sorted on name
    :param destroy: This plan destroys everything in the state
    :param state_serial: The serial of the snapshot this plan was computed from
    :param state_lineage: The lineage of the snapshot this plan was computed from
    :param graph_fingerprint: The fingerprint of the resource graph this plan was computed for
    """

    changes: list[ResourceChange] = []
    output_changes: list[OutputChange] = []
    destroy: bool = False
    state_serial: int = 0
    state_lineage: uuid.UUID
    graph_fingerprint: Optional[str] = None
    created: datetime.datetime = Field(default_factory=lambda: datetime.datetime.now().astimezone())

    def get(self, resource_id: ResourceIdStr) -> Optional[ResourceChange]:
        for change in self.changes:
            if change.resource_id == resource_id:
                return change
        return None

    def has_changes(self) -> bool:
        return any(change.action is not const.ChangeAction.nochange for change in self.changes) or any(
            change.action is not const.ChangeAction.nochange for change in self.output_changes
        )

    def summary(self) -> dict[const.ChangeAction, int]:
        result = {action: 0 for action in const.ChangeAction}
        for change in self.changes:
            result[change.action] += 1
        return result

    def summary_line(self) -> str:
        counts = self.summary()
        return "Plan: %d to create, %d to update, %d to replace, %d to delete, %d unchanged." % (
            counts[const.ChangeAction.create],
            counts[const.ChangeAction.update],
            counts[const.ChangeAction.replace],
            counts[const.ChangeAction.delete],
            counts[const.ChangeAction.nochange],
        )


class NodeResult(BaseModel):
    """
    The outcome of applying the change of a single resource

    :param attempts: The number of handler calls, including retries
    :param changes: The changes the handler reported
    :param messages: The log lines of all attempts
    :param error: Description of the error that made this node fail
    """

    resource_id: ResourceIdStr
    action: const.ChangeAction
    state: const.ResourceState
    attempts: int = 0
    changes: dict[str, AttributeStateChange] = {}
    messages: list[LogLine] = []
    error: Optional[str] = None
    started: Optional[datetime.datetime] = None
    finished: Optional[datetime.datetime] = None


class ApplyReport(BaseModel):
    """
    The outcome of applying a plan. Results are in the order of the plan.
    """

    results: list[NodeResult] = []
    outputs: dict[str, OutputValue] = {}
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(result.state in const.SUCCESS_STATES for result in self.results)

    def get(self, resource_id: ResourceIdStr) -> Optional[NodeResult]:
        for result in self.results:
            if result.resource_id == resource_id:
                return result
        return None

    def count(self, state: const.ResourceState) -> int:
        return sum(1 for result in self.results if result.state is state)

    def failed(self) -> list[NodeResult]:
        return [result for result in self.results if result.state is const.ResourceState.failed]


class RefreshReport(BaseModel):
    """
    :param drifted: Per resource, the attributes of which the live value differs from the recorded one
    :param purged: Resources that no longer exist and were removed from the state
    :param errors: Resources that could not be read, with the error
    """

    drifted: dict[ResourceIdStr, dict[str, AttributeStateChange]] = {}
    purged: list[ResourceIdStr] = []
    errors: dict[ResourceIdStr, str] = {}
