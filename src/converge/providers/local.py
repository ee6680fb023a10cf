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
import json
import logging
import os
import uuid
from typing import Any, Optional

from converge import config
from converge.handler import ANY_RESOURCE_TYPE, CRUDHandler, HandlerContext, ResourcePurged, provider
from converge.resources import Resource
from converge.util import atomic_write

LOGGER = logging.getLogger(__name__)


@provider(ANY_RESOURCE_TYPE, name="local")
class LocalHandler(CRUDHandler):
    """
    Keeps every resource as a JSON document in a local directory: <root>/<type>/<provider id>.json.
    Serves any resource type, so a declaration can be applied without a cloud account.
    """

    replace_on = frozenset({"region", "availability_zone"})
    computed = frozenset({"arn", "created_at"})

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = root if root is not None else config.local_provider_root.get()

    def _type_dir(self, resource: Resource) -> str:
        return os.path.join(self.root, resource.id.resource_type)

    def _path(self, resource: Resource, provider_id: str) -> str:
        return os.path.join(self._type_dir(resource), provider_id + ".json")

    def _find_by_name(self, resource: Resource) -> Optional[dict[str, Any]]:
        """
        Find an object created for this resource of which the provider id was never recorded
        """
        directory = self._type_dir(resource)
        if not os.path.isdir(directory):
            return None
        for file in sorted(os.listdir(directory)):
            if not file.endswith(".json"):
                continue
            document = self._load(os.path.join(directory, file))
            if document is not None and document.get("name") == resource.id.name:
                return document
        return None

    @staticmethod
    def _load(path: str) -> Optional[dict[str, Any]]:
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None

    def read_resource(self, ctx: HandlerContext, resource: Resource) -> None:
        if resource.provider_id is not None:
            document = self._load(self._path(resource, resource.provider_id))
        else:
            document = self._find_by_name(resource)
        if document is None:
            raise ResourcePurged()

        ctx.set("document", document)
        ctx.set_provider_id(document["id"])
        resource.provider_id = document["id"]
        resource.attributes = dict(document["attributes"])
        for name, value in document.get("computed", {}).items():
            ctx.set_computed(name, value)

    def _write(self, resource: Resource, document: dict[str, Any]) -> None:
        atomic_write(self._path(resource, document["id"]), json.dumps(document, indent=2, sort_keys=True, default=str))

    def create_resource(self, ctx: HandlerContext, resource: Resource) -> None:
        provider_id = "%s-%s" % (resource.id.resource_type.replace("_", "-"), uuid.uuid4().hex[:12])
        computed = {
            "arn": f"local:{resource.id.resource_type}:{provider_id}",
            "created_at": datetime.datetime.now().astimezone().isoformat(),
        }
        self._write(
            resource, {"id": provider_id, "name": resource.id.name, "attributes": resource.attributes, "computed": computed}
        )
        ctx.set_provider_id(provider_id)
        for name, value in computed.items():
            ctx.set_computed(name, value)
        ctx.set_created()
        ctx.info("Created %(resource_id)s as %(provider_id)s", resource_id=str(resource.id), provider_id=provider_id)

    def update_resource(self, ctx: HandlerContext, changes: dict[str, dict[str, Any]], resource: Resource) -> None:
        document = dict(ctx.get("document"))
        document["attributes"] = resource.attributes
        self._write(resource, document)
        ctx.set_updated()
        ctx.info("Updated %(fields)s of %(resource_id)s", fields=sorted(changes), resource_id=str(resource.id))

    def delete_resource(self, ctx: HandlerContext, resource: Resource) -> None:
        document = ctx.get("document")
        try:
            os.unlink(self._path(resource, document["id"]))
        except FileNotFoundError:
            LOGGER.debug("%s was already removed", document["id"])
        ctx.set_purged()
        ctx.info("Deleted %(resource_id)s (%(provider_id)s)", resource_id=str(resource.id), provider_id=document["id"])
