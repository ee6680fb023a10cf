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

import json
import os

from converge import config, const
from converge.handler import HandlerContext, HandlerRegistry
from converge.providers.local import LocalHandler
from converge.resources import Id, Resource
from utils import apply, make_graph, make_plan

DECLARATION = """
resources:
  bucket:
    logs:
      region: eu-west-1
      acl: private
  bucket_policy:
    logs:
      bucket: ${bucket.logs.id}
      bucket_arn: ${bucket.logs.arn}
"""


def stored(root, resource_type):
    directory = os.path.join(root, resource_type)
    documents = []
    for file in sorted(os.listdir(directory)):
        with open(os.path.join(directory, file), encoding="utf-8") as fh:
            documents.append(json.load(fh))
    return documents


async def test_apply_with_local_provider(store, tmp_path):
    registry = HandlerRegistry.get_default()
    _, report = await apply(DECLARATION, store, registry)
    assert report.success

    root = str(tmp_path / ".converge-local")
    (bucket,) = stored(root, "bucket")
    assert bucket["name"] == "logs"
    assert bucket["attributes"] == {"region": "eu-west-1", "acl": "private"}
    assert bucket["computed"]["arn"] == f"local:bucket:{bucket['id']}"
    assert bucket["id"].startswith("bucket-")

    (policy,) = stored(root, "bucket_policy")
    assert policy["id"].startswith("bucket-policy-")
    assert policy["attributes"] == {"bucket": bucket["id"], "bucket_arn": bucket["computed"]["arn"]}

    record = store.load().resources["bucket.logs"]
    assert record.provider_id == bucket["id"]
    assert set(record.computed) == {"arn", "created_at"}

    plan = make_plan(make_graph(DECLARATION), store, registry)
    assert not plan.has_changes()


async def test_update_and_replace(store, tmp_path):
    config.local_provider_root.set(str(tmp_path / "cloud"))
    registry = HandlerRegistry.get_default()
    await apply(DECLARATION, store, registry)
    (first,) = stored(str(tmp_path / "cloud"), "bucket")

    _, report = await apply(DECLARATION.replace("acl: private", "acl: public-read"), store, registry)
    assert report.get("bucket.logs").action is const.ChangeAction.update
    (bucket,) = stored(str(tmp_path / "cloud"), "bucket")
    assert bucket["id"] == first["id"]
    assert bucket["attributes"]["acl"] == "public-read"

    # region is one of the attributes that can not be changed in place
    plan, report = await apply(DECLARATION.replace("eu-west-1", "us-east-1"), store, registry)
    assert plan.get("bucket.logs").action is const.ChangeAction.replace
    assert report.success
    (bucket,) = stored(str(tmp_path / "cloud"), "bucket")
    assert bucket["id"] != first["id"]
    assert bucket["attributes"]["region"] == "us-east-1"
    (policy,) = stored(str(tmp_path / "cloud"), "bucket_policy")
    assert policy["attributes"]["bucket"] == bucket["id"]


async def test_destroy_removes_files(store, tmp_path):
    registry = HandlerRegistry.get_default()
    await apply(DECLARATION, store, registry)
    _, report = await apply(DECLARATION, store, registry, destroy=True)
    assert report.success
    root = str(tmp_path / ".converge-local")
    assert os.listdir(os.path.join(root, "bucket")) == []
    assert os.listdir(os.path.join(root, "bucket_policy")) == []


def test_object_is_found_by_name(tmp_path):
    handler = LocalHandler(root=str(tmp_path))
    resource = Resource(Id("queue", "jobs"), {"visibility_timeout": 30})
    ctx = HandlerContext(resource)
    handler.execute(ctx, resource)
    assert ctx.status is const.ResourceState.deployed
    assert ctx.change is const.Change.created
    provider_id = ctx.provider_id

    # the provider id of the first run was never recorded
    ctx = HandlerContext(resource)
    handler.execute(ctx, resource)
    assert ctx.status is const.ResourceState.deployed
    assert ctx.change is const.Change.nochange
    assert ctx.provider_id == provider_id
    assert len(os.listdir(tmp_path / "queue")) == 1


def test_delete_of_missing_object(tmp_path):
    handler = LocalHandler(root=str(tmp_path))
    resource = Resource(Id("queue", "jobs"), {}, provider_id="queue-123", purged=True)
    ctx = HandlerContext(resource)
    handler.execute(ctx, resource)
    assert ctx.status is const.ResourceState.deployed
    assert not ctx.changed
