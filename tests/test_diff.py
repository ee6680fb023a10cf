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

import pytest

from converge import const
from converge.diff import PlanError, compute_plan
from converge.graph import parse_graph
from converge.handler import HandlerRegistry
from converge.state import set_tainted
from utils import apply, make_graph, make_plan

BASE = """
variables:
  region:
    default: eu-west-1
  cidr:
    default: 10.0.0.0/16
resources:
  vpc:
    main:
      region: ${var.region}
      cidr: ${var.cidr}
  subnet:
    a:
      vpc_id: ${vpc.main.id}
      vpc_cidr: ${vpc.main.cidr}
  instance:
    web:
      subnet_id: ${subnet.a.id}
      size: small
outputs:
  vpc_arn:
    value: ${vpc.main.arn}
"""


def actions(plan):
    return {change.resource_id: change.action for change in plan.changes}


def test_plan_create(store, registry):
    plan = make_plan(make_graph(BASE), store, registry)
    assert [change.resource_id for change in plan.changes] == ["vpc.main", "subnet.a", "instance.web"]
    assert set(actions(plan).values()) == {const.ChangeAction.create}
    assert plan.summary_line() == "Plan: 3 to create, 0 to update, 0 to replace, 0 to delete, 0 unchanged."

    subnet = plan.get("subnet.a")
    assert subnet.requires == ["vpc.main"]
    assert subnet.attributes["vpc_id"].unknown
    assert subnet.attributes["vpc_id"].to_value_compare == const.UNKNOWN_VALUE_DISPLAY
    assert plan.get("vpc.main").attributes["cidr"].to_value == "10.0.0.0/16"

    (output,) = plan.output_changes
    assert output.action is const.ChangeAction.create
    assert output.unknown
    assert plan.has_changes()


async def test_plan_no_changes(store, registry):
    await apply(BASE, store, registry)
    plan = make_plan(make_graph(BASE), store, registry)
    assert set(actions(plan).values()) == {const.ChangeAction.nochange}
    assert not plan.has_changes()
    assert plan.state_serial == store.load().serial
    assert plan.state_lineage == store.load().lineage


async def test_plan_update_propagates_unknown(store, registry):
    await apply(BASE, store, registry)
    plan = make_plan(make_graph(BASE, {"cidr": "10.1.0.0/16"}), store, registry)
    assert actions(plan) == {
        "vpc.main": const.ChangeAction.update,
        "subnet.a": const.ChangeAction.update,
        "instance.web": const.ChangeAction.nochange,
    }
    cidr = plan.get("vpc.main").attributes["cidr"]
    assert (cidr.from_value, cidr.to_value) == ("10.0.0.0/16", "10.1.0.0/16")
    assert not cidr.forces_replacement
    # the subnet references the changing attribute, its provider id stays known
    assert set(plan.get("subnet.a").attributes) == {"vpc_cidr"}
    assert plan.get("subnet.a").attributes["vpc_cidr"].unknown


async def test_plan_replace(store, registry):
    await apply(BASE, store, registry)
    plan = make_plan(make_graph(BASE, {"region": "us-east-1"}), store, registry)
    assert actions(plan) == {
        "vpc.main": const.ChangeAction.replace,
        "subnet.a": const.ChangeAction.update,
        "instance.web": const.ChangeAction.nochange,
    }
    vpc = plan.get("vpc.main")
    assert vpc.attributes["region"].forces_replacement
    assert vpc.reason == "changing region forces replacement"
    assert set(plan.get("subnet.a").attributes) == {"vpc_id", "vpc_cidr"}


async def test_plan_tainted(store, registry):
    await apply(BASE, store, registry)
    snapshot = store.load()
    set_tainted(snapshot, "instance.web", True)
    store.save(snapshot)

    plan = make_plan(make_graph(BASE), store, registry)
    assert plan.get("instance.web").action is const.ChangeAction.replace
    assert plan.get("instance.web").reason == "the resource is tainted"
    assert plan.get("instance.web").attributes == {}


async def test_plan_delete(store, registry):
    await apply(BASE, store, registry)
    smaller = """
resources:
  vpc:
    main:
      region: eu-west-1
      cidr: 10.0.0.0/16
"""
    plan = make_plan(make_graph(smaller), store, registry)
    assert [(change.resource_id, change.action) for change in plan.changes] == [
        ("vpc.main", const.ChangeAction.nochange),
        ("instance.web", const.ChangeAction.delete),
        ("subnet.a", const.ChangeAction.delete),
    ]
    assert plan.get("instance.web").reason == "no longer declared"
    assert plan.get("subnet.a").requires == ["vpc.main"]
    (output,) = plan.output_changes
    assert output.action is const.ChangeAction.delete


async def test_plan_destroy(store, registry):
    await apply(BASE, store, registry)
    plan = make_plan(make_graph(BASE), store, registry, destroy=True)
    assert [(change.resource_id, change.action) for change in plan.changes] == [
        ("instance.web", const.ChangeAction.delete),
        ("subnet.a", const.ChangeAction.delete),
        ("vpc.main", const.ChangeAction.delete),
    ]
    assert plan.destroy
    assert [change.action for change in plan.output_changes] == [const.ChangeAction.delete]


async def test_prevent_destroy(store, registry):
    protected = BASE.replace("      size: small", "      size: small\n      lifecycle:\n        prevent_destroy: true")
    await apply(protected, store, registry)

    with pytest.raises(PlanError, match="instance.web has lifecycle.prevent_destroy set, but the plan deletes it"):
        make_plan(make_graph(protected), store, registry, destroy=True)

    # the protection is recorded, removing the resource from the declaration does not lift it
    without = BASE.split("  instance:")[0] + "outputs:\n  vpc_arn:\n    value: ${vpc.main.arn}\n"
    with pytest.raises(PlanError):
        make_plan(make_graph(without), store, registry)

    tainted = store.load()
    set_tainted(tainted, "instance.web", True)
    store.save(tainted)
    with pytest.raises(PlanError, match="but the plan replaces it"):
        make_plan(make_graph(protected), store, registry)


async def test_ignore_changes(store, registry):
    ignoring = BASE.replace("      size: small", "      size: small\n      lifecycle:\n        ignore_changes: [size]")
    await apply(ignoring, store, registry)
    plan = make_plan(make_graph(ignoring.replace("size: small", "size: large")), store, registry)
    assert plan.get("instance.web").action is const.ChangeAction.nochange


TAGGED = """
resources:
  bucket:
    logs:
      tags:
        team: a
      lifecycle:
        ignore_changes: [tags]
  trail:
    audit:
      bucket_tags: ${bucket.logs.tags}
"""


async def test_reference_to_ignored_attribute(store, registry):
    """
    A reference to an ignored attribute resolves to the applied value, the same value apply uses
    """
    await apply(TAGGED, store, registry)
    retagged = TAGGED.replace("team: a", "team: b")
    plan = make_plan(make_graph(retagged), store, registry)
    assert set(actions(plan).values()) == {const.ChangeAction.nochange}
    assert not plan.has_changes()

    await apply(retagged, store, registry)
    assert store.load().resources["trail.audit"].attributes == {"bucket_tags": {"team": "a"}}
    assert not make_plan(make_graph(retagged), store, registry).has_changes()


async def test_reference_to_missing_attribute(store, registry):
    await apply(BASE, store, registry)
    broken = BASE.replace("size: small", "size: ${vpc.main.nonexistent}")
    with pytest.raises(PlanError, match="vpc.main has no attribute nonexistent"):
        make_plan(make_graph(broken), store, registry)


async def test_reference_to_computed(store, registry):
    await apply(BASE, store, registry)
    extended = BASE.replace("size: small", "size: small\n      vpc_arn: ${vpc.main.arn}")
    plan = make_plan(make_graph(extended), store, registry)
    web = plan.get("instance.web")
    assert web.action is const.ChangeAction.update
    assert web.attributes["vpc_arn"].to_value == store.load().resources["vpc.main"].computed["arn"]


def test_plan_without_handler(store):
    plan = compute_plan(parse_graph(BASE), store.load(), HandlerRegistry())
    assert set(actions(plan).values()) == {const.ChangeAction.create}
