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

from converge.declaration import DeclarationError
from converge.graph import parse_graph, parse_variable_values
from converge.references import Reference
from converge.resolver import CycleError

NETWORK = """
variables:
  env:
    default: dev
resources:
  aws_vpc:
    main:
      name: ${var.env}-vpc
  aws_subnet:
    a:
      vpc_id: ${aws_vpc.main.id}
    b:
      vpc_id: ${aws_vpc.main.id}
  aws_instance:
    web:
      subnets: ["${aws_subnet.a.id}", "${aws_subnet.b.id}"]
      name: web-${var.env}
  aws_s3_bucket:
    logs:
      depends_on: [aws_instance.web]
outputs:
  web:
    value: ${aws_instance.web.id}
"""


def test_build_graph():
    graph = parse_graph(NETWORK, {"env": "prod"})
    assert len(graph) == 5
    assert graph.requires_of("aws_instance.web") == {"aws_subnet.a", "aws_subnet.b"}
    assert graph.provides_of("aws_vpc.main") == {"aws_subnet.a", "aws_subnet.b"}
    assert graph.requires_of("aws_s3_bucket.logs") == {"aws_instance.web"}

    # variables are substituted, references to resources are kept
    assert graph.nodes["aws_vpc.main"].attributes == {"name": "prod-vpc"}
    assert graph.nodes["aws_instance.web"].attributes["name"] == "web-prod"
    assert isinstance(graph.nodes["aws_subnet.a"].attributes["vpc_id"], Reference)
    assert graph.outputs["web"].requires() == {"aws_instance.web"}

    edges = {str(edge) for edge in graph.edges_from("aws_instance.web")}
    assert edges == {"aws_instance.web.subnets[0] -> aws_subnet.a.id", "aws_instance.web.subnets[1] -> aws_subnet.b.id"}
    explicit = graph.edges_from("aws_s3_bucket.logs")
    assert len(explicit) == 1 and explicit[0].explicit


def test_creation_order():
    graph = parse_graph(NETWORK)
    assert graph.creation_order() == [
        "aws_vpc.main",
        "aws_subnet.a",
        "aws_subnet.b",
        "aws_instance.web",
        "aws_s3_bucket.logs",
    ]
    assert graph.generations() == [
        ["aws_vpc.main"],
        ["aws_subnet.a", "aws_subnet.b"],
        ["aws_instance.web"],
        ["aws_s3_bucket.logs"],
    ]


def test_to_dot():
    graph = parse_graph(NETWORK)
    dot = graph.to_dot()
    assert dot.startswith("digraph G {\n")
    assert '\t"aws_subnet.a" -> "aws_vpc.main";\n' in dot


def test_cycle():
    graph = parse_graph(
        """
resources:
  a:
    one:
      x: ${b.two.id}
  b:
    two:
      x: ${a.one.id}
  c:
    self:
      depends_on: [c.self]
"""
    )
    with pytest.raises(CycleError) as e:
        graph.validate()
    assert e.value.cycles == [["a.one", "b.two"], ["c.self"]]
    assert "a.one -> b.two -> a.one" in str(e.value)
    assert "c.self depends on itself" in str(e.value)


def test_unresolved_references():
    with pytest.raises(DeclarationError) as e:
        parse_graph(
            """
variables:
  required: {}
resources:
  aws_instance:
    web:
      subnet: ${aws_subnet.missing.id}
      size: ${var.undeclared}
      depends_on: [aws_vpc.missing]
outputs:
  url:
    value: ${aws_lb.missing.dns}
""",
            {"extra": "1"},
        )
    messages = sorted(problem.message for problem in e.value.problems)
    assert messages == [
        "a value was given for an undeclared variable",
        "dependency on undeclared resource aws_vpc.missing",
        "no value given and no default",
        "reference to undeclared resource aws_lb.missing in ${aws_lb.missing.dns}",
        "reference to undeclared resource aws_subnet.missing in ${aws_subnet.missing.id}",
        "reference to undeclared variable ${var.undeclared}",
    ]


def test_parse_variable_values():
    assert parse_variable_values({"count": "3", "enabled": "true", "name": "web", "empty": "", "list": "[a"}) == {
        "count": 3,
        "enabled": True,
        "name": "web",
        "empty": "",
        "list": "[a",
    }
