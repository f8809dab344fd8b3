"""Tests for reconciler.graph module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from reconciler.errors import GraphError, ParseError, ReferenceError
from providers.file import FileProvider
from providers.registry import ProviderRegistry
from providers.virtual import VirtualProvider
from reconciler.graph import build_graph, find_cycle, topological_sort


CHAIN = """
name: chain
resources:
  - type: fake
    name: c
    attributes:
      value: ${fake.b.id}
  - type: fake
    name: a
  - type: fake
    name: b
    attributes:
      value: ${fake.a.arn}
"""


class TestTopologicalSort:
    """Tests for topological_sort()."""

    def test_producers_first(self):
        deps = {'c': {'b'}, 'b': {'a'}, 'a': set()}
        assert topological_sort(['c', 'b', 'a'], deps) == ['a', 'b', 'c']

    def test_lexical_tie_break(self):
        deps = {'z': set(), 'm': set(), 'a': set()}
        assert topological_sort(['z', 'm', 'a'], deps) == ['a', 'm', 'z']

    def test_stable_for_identical_input(self):
        deps = {'d': {'a', 'b'}, 'c': {'a'}, 'b': set(), 'a': set()}
        first = topological_sort(['d', 'c', 'b', 'a'], deps)
        for _ in range(5):
            assert topological_sort(['d', 'c', 'b', 'a'], deps) == first

    def test_ignores_producers_outside_ids(self):
        assert topological_sort(['b'], {'b': {'gone'}}) == ['b']

    def test_cycle_raises(self):
        with pytest.raises(GraphError) as exc_info:
            topological_sort(['a', 'b'], {'a': {'b'}, 'b': {'a'}})
        assert set(exc_info.value.cycle) == {'a', 'b'}


class TestFindCycle:
    """Tests for find_cycle()."""

    def test_no_cycle(self):
        assert find_cycle(['a', 'b'], {'b': {'a'}}) is None

    def test_cycle_in_order(self):
        deps = {'a': {'c'}, 'b': {'a'}, 'c': {'b'}, 'd': {'a'}}
        cycle = find_cycle(['a', 'b', 'c', 'd'], deps)
        assert sorted(cycle) == ['a', 'b', 'c']
        # Each member is a producer of the next
        for i, node in enumerate(cycle):
            consumer = cycle[(i + 1) % len(cycle)]
            assert node in deps[consumer]


class TestResourceGraph:
    """Tests for ResourceGraph construction and traversal."""

    def test_edges_from_references(self, registry):
        graph = build_graph(CHAIN, registry)
        assert graph.edges() == [('fake.a', 'fake.b'), ('fake.b', 'fake.c')]
        assert graph.dependencies('fake.b') == {'fake.a'}
        assert graph.dependents('fake.b') == {'fake.c'}

    def test_topological_order(self, registry):
        graph = build_graph(CHAIN, registry)
        assert graph.topological_order() == ['fake.a', 'fake.b', 'fake.c']
        assert graph.reverse_topological_order() == ['fake.c', 'fake.b', 'fake.a']

    def test_independent_nodes_ordered_by_id(self, registry):
        graph = build_graph("""
name: flat
resources:
  - {type: virtual, name: zeta}
  - {type: fake, name: beta}
  - {type: fake, name: alpha}
""", registry)
        assert graph.topological_order() == ['fake.alpha', 'fake.beta', 'virtual.zeta']

    def test_depends_on_adds_edge(self, registry):
        graph = build_graph("""
name: dep
resources:
  - {type: fake, name: app, depends_on: [virtual.net]}
  - {type: virtual, name: net}
""", registry)
        assert graph.edges() == [('virtual.net', 'fake.app')]

    def test_template_reference_adds_edge(self, registry):
        graph = build_graph("""
name: tpl
resources:
  - {type: fake, name: a}
  - type: fake
    name: b
    attributes:
      label: "b-on-${fake.a.id}"
""", registry)
        assert graph.dependencies('fake.b') == {'fake.a'}

    def test_node_contents(self, registry):
        graph = build_graph(CHAIN, registry)
        node = graph.get_node('fake.b')
        assert node.type == 'fake'
        assert node.name == 'b'
        assert 'value' in node.attributes
        assert 'fake.b' in graph
        assert len(graph) == 3

    def test_unknown_type(self, registry):
        with pytest.raises(ReferenceError, match="Unknown resource type 'cloud'"):
            build_graph("name: x\nresources:\n  - {type: cloud, name: a}\n", registry)

    def test_reference_to_undeclared_node(self, registry):
        with pytest.raises(ReferenceError, match="undeclared resource 'fake.ghost'") as exc_info:
            build_graph("""
name: x
resources:
  - type: fake
    name: a
    attributes:
      value: ${fake.ghost.id}
""", registry)
        assert exc_info.value.resource_id == 'fake.a'
        assert exc_info.value.phase == 'plan'

    def test_reference_to_missing_attribute(self):
        registry = ProviderRegistry([FileProvider(), VirtualProvider()])
        with pytest.raises(ReferenceError, match="has no attribute 'owner'") as exc_info:
            build_graph("""
name: x
resources:
  - type: file
    name: motd
    attributes:
      path: /tmp/motd
  - type: virtual
    name: v
    attributes:
      owner: ${file.motd.owner}
""", registry)
        assert exc_info.value.resource_id == 'virtual.v'

    def test_reference_to_computed_attribute_allowed(self, registry):
        graph = build_graph("""
name: x
resources:
  - {type: fake, name: a}
  - type: fake
    name: b
    attributes:
      value: ${fake.a.arn}
""", registry)
        assert graph.dependencies('fake.b') == {'fake.a'}

    def test_depends_on_undeclared(self, registry):
        with pytest.raises(ReferenceError):
            build_graph("name: x\nresources:\n  - {type: fake, name: a, depends_on: [fake.zz]}\n", registry)

    def test_output_reference_checked(self, registry):
        with pytest.raises(ReferenceError, match='fake.missing'):
            build_graph("""
name: x
resources:
  - {type: fake, name: a}
outputs:
  bad: ${fake.missing.id}
""", registry)

    def test_schema_violation_is_parse_error(self, registry):
        with pytest.raises(ParseError, match="must be number"):
            build_graph("""
name: x
resources:
  - type: fake
    name: a
    attributes:
      size: big
""", registry)

    def test_computed_attribute_cannot_be_set(self, registry):
        with pytest.raises(ParseError, match='computed'):
            build_graph("""
name: x
resources:
  - type: fake
    name: a
    attributes:
      arn: preset
""", registry)

    def test_cycle_detected(self, registry):
        with pytest.raises(GraphError) as exc_info:
            build_graph("""
name: loop
resources:
  - type: fake
    name: a
    attributes:
      value: ${fake.b.id}
  - type: fake
    name: b
    attributes:
      value: ${fake.a.id}
""", registry)
        assert set(exc_info.value.cycle) == {'fake.a', 'fake.b'}
        assert 'Dependency cycle detected' in str(exc_info.value)

    def test_self_reference_is_cycle(self, registry):
        with pytest.raises(GraphError):
            build_graph("""
name: self
resources:
  - type: fake
    name: a
    attributes:
      value: ${fake.a.arn}
""", registry)

    def test_outputs_kept(self, registry):
        graph = build_graph(CHAIN + "outputs:\n  last: ${fake.c.id}\n", registry)
        assert set(graph.outputs) == {'last'}
