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

# This file defines named type definitions for the converge code base

import datetime
from collections.abc import Mapping, Sequence
from typing import NewType, Union

import pydantic

PrimitiveTypes = Union[str, int, float, bool, None]
JsonType = dict[str, object]
SimpleTypes = Union[PrimitiveTypes, Sequence[object], Mapping[str, object]]
ReturnTypes = Union[PrimitiveTypes, list[object], dict[str, object]]

ResourceIdStr = NewType("ResourceIdStr", str)
"""
The string form of a resource id: <type>.<name>, e.g. aws_vpc.main
"""

ResourceType = NewType("ResourceType", str)
"""
The type of a resource, e.g. aws_vpc
"""


def api_boundary_datetime_normalizer(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    else:
        return value


class DateTimeNormalizerModel(pydantic.BaseModel):
    """
    A model that normalizes all datetime values to be timezone aware. Assumes that all naive timestamps represent UTC times.
    """

    @pydantic.field_validator("*", mode="after")
    @classmethod
    def validator_timezone_aware_timestamps(cls: type, value: object) -> object:
        """
        Ensure that all datetime times are timezone aware.
        """
        if isinstance(value, datetime.datetime):
            return api_boundary_datetime_normalizer(value)
        else:
            return value


class BaseModel(DateTimeNormalizerModel):
    """
    Base class for all data objects in converge
    """
