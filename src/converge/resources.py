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

import copy
import logging
import re
from collections.abc import Mapping
from typing import Optional, cast

from converge import const
from converge.types import ResourceIdStr, ResourceType

LOGGER = logging.getLogger(__name__)

TYPE_PATTERN = r"[a-z][a-z0-9_]*"
NAME_PATTERN = r"[A-Za-z_][A-Za-z0-9_-]*"

PARSE_ID_REGEX = re.compile(rf"^(?P<type>{TYPE_PATTERN})\.(?P<name>{NAME_PATTERN})$")
TYPE_REGEX = re.compile(rf"^{TYPE_PATTERN}$")
NAME_REGEX = re.compile(rf"^{NAME_PATTERN}$")


class ResourceException(Exception):
    pass


class Id:
    """
    A unique id that identifies a declared resource: its type and its logical name
    """

    def __init__(self, resource_type: str, name: str) -> None:
        """
        :attr resource_type: The resource type, as understood by the provider. For example `aws_vpc`.
        :attr name: The logical name of the resource, unique within its type.
        """
        if not TYPE_REGEX.match(resource_type):
            raise ResourceException(f"Invalid resource type {resource_type!r}")
        if not NAME_REGEX.match(name):
            raise ResourceException(f"Invalid resource name {name!r}")
        if resource_type == const.VARIABLE_NAMESPACE:
            raise ResourceException(f"{const.VARIABLE_NAMESPACE!r} is reserved for input variables")
        self._resource_type = resource_type
        self._name = name

    @property
    def resource_type(self) -> ResourceType:
        return ResourceType(self._resource_type)

    @property
    def name(self) -> str:
        return self._name

    def to_dict(self) -> dict[str, str]:
        return {"resource_type": self._resource_type, "name": self._name}

    def resource_str(self) -> ResourceIdStr:
        """
        String representation for this resource id with the following format:
            <type>.<name>

        :return: Returns a :py:class:`converge.types.ResourceIdStr`
        """
        return cast(ResourceIdStr, f"{self._resource_type}.{self._name}")

    def __str__(self) -> str:
        return self.resource_str()

    def __repr__(self) -> str:
        return f"Id({self._resource_type!r}, {self._name!r})"

    def __hash__(self) -> int:
        return hash(str(self))

    def __eq__(self, other: object) -> bool:
        return str(self) == str(other) and type(self) is type(other)

    def __lt__(self, other: "Id") -> bool:
        return str(self) < str(other)

    @classmethod
    def parse_id(cls, resource_id: str) -> "Id":
        """
        Parse the resource id and return the type and the logical name.
        """
        result = PARSE_ID_REGEX.search(resource_id)

        if result is None:
            raise ValueError("Invalid id for resource %s" % resource_id)

        return Id(result.group("type"), result.group("name"))

    @classmethod
    def is_resource_id(cls, value: str) -> bool:
        """
        Check whether the given value is a resource id
        """
        result = PARSE_ID_REGEX.search(value)
        return result is not None and result.group("type") != const.VARIABLE_NAMESPACE


class Resource:
    """
    The view a handler gets on a single resource: its id, the fully resolved desired attributes and what is known about
    the live object (the provider assigned id and computed attributes).

    :param id: The id of the resource
    :param attributes: The resolved attributes. They contain no references or unknown values anymore.
    :param provider_id: The identifier the provider assigned when the object was created, None if it is not known.
    :param computed: Attributes reported by the provider, e.g. an endpoint or an ARN.
    :param purged: True iff the desired state of this resource is that it does not exist.
    """

    def __init__(
        self,
        id: Id,
        attributes: Mapping[str, object],
        *,
        provider_id: Optional[str] = None,
        computed: Optional[Mapping[str, object]] = None,
        purged: bool = False,
    ) -> None:
        self.id = id
        self.attributes: dict[str, object] = dict(attributes)
        self.provider_id = provider_id
        self.computed: dict[str, object] = dict(computed or {})
        self.purged = purged

    def __getattr__(self, name: str) -> object:
        # only called when normal attribute lookup fails
        attributes = self.__dict__.get("attributes")
        if attributes is not None and name in attributes:
            return attributes[name]
        raise AttributeError(f"Resource {self.__dict__.get('id')} has no attribute {name}")

    def get(self, name: str, default: object = None) -> object:
        return self.attributes.get(name, default)

    def clone(self, **kwargs: object) -> "Resource":
        """
        Create a deep copy of this resource. Keyword arguments override the attributes of the copy.
        """
        res = Resource(
            self.id,
            copy.deepcopy(self.attributes),
            provider_id=self.provider_id,
            computed=copy.deepcopy(self.computed),
            purged=self.purged,
        )
        for name, value in kwargs.items():
            if name in ("provider_id", "purged"):
                setattr(res, name, value)
            else:
                res.attributes[name] = value
        return res

    def __str__(self) -> str:
        return str(self.id)

    def __repr__(self) -> str:
        return f"Resource({self.id!r}, {self.attributes!r}, provider_id={self.provider_id!r}, purged={self.purged})"
