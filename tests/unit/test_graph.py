"""Tests for the ResourceGraph — nodes, reference edges, dangling references."""

from __future__ import annotations

import pytest

from strataform.core.graph import ResourceGraph
from strataform.errors import ParseError, ResourceReferenceError


@pytest.fixture
def web_graph(make_document) -> ResourceGraph:
    return ResourceGraph(make_document({
        "variable": {"port": {"default": 80}},
        "data": {"test_lookup": {"image": {"name": "ubuntu"}}},
        "resource": {"test_thing": {
            "lc": {"value": "${data.test_lookup.image.value}"},
            "asg": {"ref": "${test_thing.lc.id}", "label": "port-${var.port}"},
            "lb": {},
            "listener": {"ref": "${test_thing.lb.arn}", "label": "${test_thing.asg.id}"},
        }},
        "output": {"dns": {"value": "${test_thing.lb.arn}"}},
    }))


class TestResourceGraph:
    def test_nodes_in_declaration_order(self, web_graph: ResourceGraph):
        assert web_graph.addresses == [
            "data.test_lookup.image",
            "test_thing.lc",
            "test_thing.asg",
            "test_thing.lb",
            "test_thing.listener",
        ]
        assert len(web_graph) == 5
        assert "test_thing.lb" in web_graph

    def test_direct_dependencies(self, web_graph: ResourceGraph):
        assert web_graph.dependencies("test_thing.asg") == ["test_thing.lc"]
        assert web_graph.dependencies("test_thing.listener") == ["test_thing.lb", "test_thing.asg"]
        assert web_graph.dependencies("test_thing.lb") == []

    def test_variable_references_are_not_edges(self, web_graph: ResourceGraph):
        refs = web_graph.references("test_thing.asg")
        assert {r.kind for r in refs} == {"resource", "var"}
        assert ("test_thing.asg", "var.port") not in web_graph.edges()

    def test_dependents_and_transitive_dependents(self, web_graph: ResourceGraph):
        assert web_graph.dependents("test_thing.lc") == ["test_thing.asg"]
        assert set(web_graph.transitive_dependents("data.test_lookup.image")) == {
            "test_thing.lc", "test_thing.asg", "test_thing.listener",
        }

    def test_ancestors(self, web_graph: ResourceGraph):
        assert set(web_graph.ancestors("test_thing.listener")) == {
            "test_thing.lb", "test_thing.asg", "test_thing.lc", "data.test_lookup.image",
        }

    def test_output_references(self, web_graph: ResourceGraph):
        assert [r.target for r in web_graph.output_references("dns")] == ["test_thing.lb"]

    def test_depends_on_adds_edge(self, make_document):
        graph = ResourceGraph(make_document({
            "resource": {"test_thing": {
                "a": {},
                "b": {"depends_on": ["test_thing.a"]},
            }},
        }))
        assert graph.dependencies("test_thing.b") == ["test_thing.a"]


class TestDanglingReferences:
    def test_unknown_resource(self, make_document):
        doc = make_document({"resource": {"test_thing": {"a": {"ref": "${test_thing.missing.id}"}}}})
        with pytest.raises(ResourceReferenceError) as excinfo:
            ResourceGraph(doc)
        assert excinfo.value.address == "test_thing.a"
        assert excinfo.value.expression == "test_thing.missing.id"

    def test_unknown_variable(self, make_document):
        doc = make_document({"resource": {"test_thing": {"a": {"label": "${var.nope}"}}}})
        with pytest.raises(ResourceReferenceError, match="var.nope"):
            ResourceGraph(doc)

    def test_unknown_data_source_in_output(self, make_document):
        doc = make_document({"output": {"x": {"value": "${data.test_lookup.none.value}"}}})
        with pytest.raises(ResourceReferenceError) as excinfo:
            ResourceGraph(doc)
        assert excinfo.value.address == "output.x"

    def test_depends_on_must_name_a_resource(self, make_document):
        doc = make_document({
            "variable": {"v": {"default": 1}},
            "resource": {"test_thing": {"a": {"depends_on": ["var.v"]}}},
        })
        with pytest.raises(ParseError, match="depends_on"):
            ResourceGraph(doc)
