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

import logging

import pytest

from converge import const
from converge.data.model import AttributeStateChange
from converge.handler import HandlerRegistry
from converge.reconciler import Reconciler
from converge.state import StateLockedError
from utils import log_contains

NETWORK = """
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
  instance:
    web:
      subnet_id: ${subnet.a.id}
outputs:
  vpc_id:
    value: ${vpc.main.id}
  url:
    value: http://${instance.web.id}.example.com
    sensitive: true
"""


@pytest.fixture
def reconciler(store, registry, tmp_path) -> Reconciler:
    (tmp_path / "network.yaml").write_text(NETWORK)
    return Reconciler(store, registry)


async def deploy(reconciler: Reconciler, variables=None):
    graph = reconciler.load_with_raw_variables("network.yaml", variables or {})
    plan = reconciler.plan(graph)
    return plan, await reconciler.apply(plan, graph)


async def test_plan_and_apply(reconciler, store, cloud):
    plan, report = await deploy(reconciler)
    assert plan.summary()[const.ChangeAction.create] == 3
    assert report.success
    assert sorted(reconciler.snapshot().resources) == ["instance.web", "subnet.a", "vpc.main"]

    plan, _ = await deploy(reconciler)
    assert not plan.has_changes()

    plan, report = await deploy(reconciler, {"cidr": "10.9.0.0/16"})
    assert plan.get("vpc.main").action is const.ChangeAction.update
    assert report.success
    assert cloud.objects["vpc-1"]["attributes"]["cidr"] == "10.9.0.0/16"


async def test_destroy(reconciler, store, cloud):
    await deploy(reconciler)
    graph = reconciler.load("network.yaml")
    plan = reconciler.plan(graph, destroy=True)
    assert plan.summary()[const.ChangeAction.delete] == 3
    report = await reconciler.apply(plan, graph)
    assert report.success
    assert cloud.objects == {}
    assert reconciler.snapshot().resources == {}
    assert reconciler.outputs() == {}


async def test_apply_holds_the_lock(reconciler, store):
    graph = reconciler.load("network.yaml")
    plan = reconciler.plan(graph)
    with store.lock():
        with pytest.raises(StateLockedError):
            await reconciler.apply(plan, graph)
    assert store.load().resources == {}


async def test_outputs(reconciler):
    await deploy(reconciler)
    outputs = reconciler.outputs()
    assert outputs["vpc_id"].value == "vpc-1"
    assert outputs["url"].value == "http://instance-3.example.com"
    assert outputs["url"].sensitive

    masked = reconciler.outputs(include_sensitive=False)
    assert masked["vpc_id"].value == "vpc-1"
    assert masked["url"].value == const.SENSITIVE_VALUE_DISPLAY


def test_load_warns_about_missing_handlers(store, tmp_path, caplog):
    caplog.set_level(logging.INFO)
    (tmp_path / "network.yaml").write_text(NETWORK)
    reconciler = Reconciler(store, HandlerRegistry())
    graph = reconciler.load("network.yaml")
    assert len(graph) == 3
    log_contains(caplog, "converge.reconciler", logging.WARNING, "No handler is registered for resource type vpc")


async def test_refresh_records_drift(reconciler, store, cloud):
    await deploy(reconciler)
    saves = store.saves
    cloud.objects["vpc-1"]["attributes"]["cidr"] = "10.1.0.0/16"

    report = await reconciler.refresh()
    assert report.drifted == {"vpc.main": {"cidr": AttributeStateChange(current="10.1.0.0/16", desired="10.0.0.0/16")}}
    assert report.purged == []
    assert report.errors == {}
    assert store.saves == saves + 1
    assert store.load().resources["vpc.main"].attributes["cidr"] == "10.1.0.0/16"

    # the next plan puts the declared value back
    graph = reconciler.load("network.yaml")
    plan = reconciler.plan(graph)
    change = plan.get("vpc.main")
    assert change.action is const.ChangeAction.update
    assert set(change.attributes) == {"cidr"}


async def test_refresh_without_drift_does_not_save(reconciler, store):
    await deploy(reconciler)
    saves = store.saves
    report = await reconciler.refresh()
    assert report.drifted == {}
    assert report.purged == []
    assert store.saves == saves


async def test_refresh_removes_purged_resources(reconciler, store, cloud):
    await deploy(reconciler)
    del cloud.objects["instance-3"]

    report = await reconciler.refresh()
    assert report.purged == ["instance.web"]
    assert "instance.web" not in store.load().resources

    graph = reconciler.load("network.yaml")
    plan = reconciler.plan(graph)
    assert plan.get("instance.web").action is const.ChangeAction.create


async def test_refresh_keeps_records_it_can_not_read(reconciler, store, cloud):
    await deploy(reconciler)
    cloud.unreadable.add("subnet.a")
    cloud.objects["vpc-1"]["attributes"]["cidr"] = "10.1.0.0/16"

    report = await reconciler.refresh(parallelism=1)
    assert report.errors["subnet.a"] == "RuntimeError: subnet.a can not be read"
    assert "vpc.main" in report.drifted
    assert "subnet.a" in store.load().resources
