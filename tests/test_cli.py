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

import pytest
from click.testing import CliRunner

from converge import const
from converge.data.model import OutputValue, ResourceRecord, StateSnapshot
from converge.main import cmd
from converge.state import FileStateStore
from converge.util import make_attribute_hash


def record(rid, attributes, provider_id, requires=()):
    resource_type, name = rid.split(".")
    return ResourceRecord(
        resource_id=rid,
        resource_type=resource_type,
        name=name,
        attributes=attributes,
        provider_id=provider_id,
        computed={"arn": f"arn:{provider_id}"},
        requires=list(requires),
        attribute_hash=make_attribute_hash(rid, attributes),
    )


@pytest.fixture
def state_file(tmp_path) -> str:
    path = str(tmp_path / "converge.state.json")
    snapshot = StateSnapshot(
        resources={
            "vpc.main": record("vpc.main", {"cidr": "10.0.0.0/16"}, "vpc-1"),
            "subnet.a": record("subnet.a", {"vpc_id": "vpc-1"}, "subnet-2", requires=["vpc.main"]),
        },
        outputs={
            "vpc_id": OutputValue(value="vpc-1"),
            "password": OutputValue(value="hunter2", sensitive=True),
        },
    )
    FileStateStore(path).save(snapshot)
    return path


def run(state_file, *args):
    runner = CliRunner()
    return runner.invoke(cmd, ["--state", state_file, *args], env={"COLUMNS": "250"})


def test_state_list(state_file):
    result = run(state_file, "state", "list")
    assert result.exit_code == 0, result.output
    assert "vpc.main" in result.output
    assert "subnet-2" in result.output
    assert "serial 1" in result.output


def test_state_show(state_file):
    result = run(state_file, "state", "show", "subnet.a")
    assert result.exit_code == 0, result.output
    assert "subnet-2" in result.output
    assert "vpc_id" in result.output
    assert "arn (computed)" in result.output

    result = run(state_file, "state", "show", "subnet.a", "--json")
    assert result.exit_code == 0, result.output
    shown = json.loads(result.output)
    assert shown["provider_id"] == "subnet-2"
    assert shown["requires"] == ["vpc.main"]


def test_state_show_unknown(state_file):
    result = run(state_file, "state", "show", "vpc.other")
    assert result.exit_code == 1
    assert "vpc.other is not in the state" in result.output

    result = run(state_file, "state", "show", "not-an-id")
    assert result.exit_code == 2
    assert "is not a resource id" in result.output


def test_state_rm(state_file):
    result = run(state_file, "state", "rm", "subnet.a")
    assert result.exit_code == 0, result.output
    assert "Removed subnet.a from the state" in result.output

    snapshot = FileStateStore(state_file).load()
    assert list(snapshot.resources) == ["vpc.main"]
    assert snapshot.serial == 2
    assert os.path.exists(state_file + ".backup")
    assert not os.path.exists(state_file + ".lock")

    result = run(state_file, "state", "rm", "subnet.a")
    assert result.exit_code == 1


def test_taint_and_untaint(state_file):
    result = run(state_file, "state", "taint", "vpc.main")
    assert result.exit_code == 0, result.output
    assert FileStateStore(state_file).load().resources["vpc.main"].tainted

    result = run(state_file, "state", "untaint", "vpc.main")
    assert result.exit_code == 0, result.output
    assert not FileStateStore(state_file).load().resources["vpc.main"].tainted

    result = run(state_file, "state", "taint", "vpc.other")
    assert result.exit_code == 1


def test_locked_state(state_file):
    with open(state_file + ".lock", "w") as fh:
        fh.write("1\n")
    result = run(state_file, "state", "taint", "vpc.main")
    assert result.exit_code == 1
    assert "locked" in result.output
    assert not FileStateStore(state_file).load().resources["vpc.main"].tainted


def test_broken_state_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    result = run(str(path), "state", "list")
    assert result.exit_code == 1
    assert "is not valid JSON" in result.output


def test_output(state_file):
    result = run(state_file, "output")
    assert result.exit_code == 0, result.output
    assert "vpc-1" in result.output
    assert "hunter2" not in result.output
    assert const.SENSITIVE_VALUE_DISPLAY in result.output

    result = run(state_file, "output", "--show-sensitive")
    assert "hunter2" in result.output


def test_config_list(state_file, monkeypatch):
    monkeypatch.setenv("CONVERGE_EXECUTOR_PARALLELISM", "7")
    result = run(state_file, "config", "list")
    assert result.exit_code == 0, result.output
    line = next(line for line in result.output.splitlines() if "executor.parallelism" in line)
    assert "CONVERGE_EXECUTOR_PARALLELISM" in line
    assert "7 (set)" in line
