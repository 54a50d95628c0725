"""Tests for Trellis data models."""

from __future__ import annotations

from datetime import datetime

import pytest

from trellis.src.models import (
    Edge,
    ForestSnapshot,
    Node,
    NodeKind,
    NodeRef,
    RelationKind,
    can_contain,
    can_relate,
    sibling_sort_key,
)
from trellis.tests.factories import contains, make_node

# ===================================================================
# Kinds and rules
# ===================================================================


class TestNodeKind:
    """Tests for NodeKind."""

    def test_values(self):
        assert NodeKind.ROOT.value == "root"
        assert NodeKind.EXTERNAL_DOC.value == "external_doc"

    def test_display_name(self):
        assert NodeKind.BRANCH.display_name == "Branch"
        assert NodeKind.EXTERNAL_DOC.display_name == "ExternalDoc"

    def test_from_string(self):
        assert NodeKind("leaf") is NodeKind.LEAF


class TestContainmentRules:
    """Tests for can_contain and can_relate."""

    @pytest.mark.parametrize(
        ("parent", "child", "allowed"),
        [
            (NodeKind.ROOT, NodeKind.BRANCH, True),
            (NodeKind.BRANCH, NodeKind.BRANCH, True),
            (NodeKind.BRANCH, NodeKind.LEAF, True),
            (NodeKind.ROOT, NodeKind.LEAF, False),
            (NodeKind.LEAF, NodeKind.BRANCH, False),
            (NodeKind.BRANCH, NodeKind.ROOT, False),
            (NodeKind.CITATION, NodeKind.LEAF, False),
        ],
    )
    def test_can_contain(self, parent, child, allowed):
        assert can_contain(parent, child) is allowed

    def test_cites_leaf_to_citation_only(self):
        assert can_relate(RelationKind.CITES, NodeKind.LEAF, NodeKind.CITATION)
        assert not can_relate(RelationKind.CITES, NodeKind.BRANCH, NodeKind.CITATION)

    def test_references_from_branch_or_document(self):
        assert can_relate(RelationKind.REFERENCES, NodeKind.BRANCH, NodeKind.CITATION)
        assert can_relate(RelationKind.REFERENCES, NodeKind.EXTERNAL_DOC, NodeKind.CITATION)
        assert not can_relate(RelationKind.REFERENCES, NodeKind.LEAF, NodeKind.CITATION)

    def test_linked_from_citation_to_document(self):
        assert can_relate(RelationKind.LINKED_FROM, NodeKind.CITATION, NodeKind.EXTERNAL_DOC)
        assert not can_relate(RelationKind.LINKED_FROM, NodeKind.EXTERNAL_DOC, NodeKind.CITATION)

    def test_contains_delegates_to_containment(self):
        assert can_relate(RelationKind.CONTAINS, NodeKind.ROOT, NodeKind.BRANCH)
        assert not can_relate(RelationKind.CONTAINS, NodeKind.ROOT, NodeKind.LEAF)


# ===================================================================
# NodeRef
# ===================================================================


class TestNodeRef:
    """Tests for tagged node references."""

    def test_parse(self):
        ref = NodeRef.parse("branch:node_abc")
        assert ref == NodeRef(NodeKind.BRANCH, "node_abc")

    def test_str_round_trip(self):
        assert str(NodeRef(NodeKind.EXTERNAL_DOC, "x1")) == "external_doc:x1"

    def test_id_may_contain_colons(self):
        assert NodeRef.parse("leaf:a:b").id == "a:b"

    @pytest.mark.parametrize("text", ["branch", "branch:", "planet:x1", ""])
    def test_malformed(self, text):
        with pytest.raises(ValueError):
            NodeRef.parse(text)

    def test_node_ref_property(self):
        node = make_node("n1", NodeKind.LEAF)
        assert node.ref == NodeRef(NodeKind.LEAF, "n1")


# ===================================================================
# Node / Edge
# ===================================================================


class TestNode:
    """Tests for the Node dataclass."""

    def test_generate_id_prefix(self):
        node_id = Node.generate_id()
        assert node_id.startswith("node_")
        assert len(node_id) == len("node_") + 12

    def test_generate_id_unique(self):
        assert len({Node.generate_id() for _ in range(100)}) == 100

    def test_kind_coerced_from_string(self):
        node = Node(id="n1", kind="branch")  # type: ignore[arg-type]
        assert node.kind is NodeKind.BRANCH

    def test_to_dict(self):
        node = make_node("n1", NodeKind.BRANCH, "Intro", rank=2)
        data = node.to_dict()
        assert data["kind"] == "branch"
        assert data["rank"] == 2
        assert data["created_at"] == "2024-05-01T09:00:00"

    def test_from_dict_defaults(self):
        node = Node.from_dict(
            {"id": "n1", "kind": "citation", "created_at": "2024-05-01T09:00:00"}
        )
        assert node.title == ""
        assert node.rank is None
        assert node.updated_at == datetime(2024, 5, 1, 9, 0, 0)


class TestEdge:
    """Tests for the Edge dataclass."""

    def test_from_dict(self):
        edge = Edge.from_dict(
            {
                "source_id": "a",
                "target_id": "b",
                "kind": "cites",
                "created_at": "2024-05-01T09:00:00",
            }
        )
        assert edge.kind is RelationKind.CITES
        assert edge.properties == {}


# ===================================================================
# Ordering key
# ===================================================================


class TestSiblingSortKey:
    """Tests for the traversal sort key."""

    def test_leaves_before_branches(self):
        leaf = make_node("z", NodeKind.LEAF, rank=5)
        branch = make_node("a", NodeKind.BRANCH, rank=1)
        assert sorted([branch, leaf], key=sibling_sort_key) == [leaf, branch]

    def test_rank_then_unranked_then_id(self):
        nodes = [
            make_node("u2", NodeKind.BRANCH),
            make_node("r2", NodeKind.BRANCH, rank=2),
            make_node("u1", NodeKind.BRANCH),
            make_node("r1", NodeKind.BRANCH, rank=1),
        ]
        assert [n.id for n in sorted(nodes, key=sibling_sort_key)] == ["r1", "r2", "u1", "u2"]

    def test_other_kinds_last(self):
        doc = make_node("a", NodeKind.EXTERNAL_DOC)
        branch = make_node("b", NodeKind.BRANCH)
        assert sorted([doc, branch], key=sibling_sort_key)[0] is branch


# ===================================================================
# ForestSnapshot
# ===================================================================


class TestForestSnapshot:
    """Tests for ForestSnapshot queries."""

    def test_root_by_id(self, paper_snapshot):
        assert paper_snapshot.root is not None
        assert paper_snapshot.root.id == "root"

    def test_root_id_not_a_root(self):
        snapshot = ForestSnapshot(root_id="b", nodes={"b": make_node("b", NodeKind.BRANCH)})
        assert snapshot.root is None

    def test_root_autodetect_earliest(self):
        late = make_node("r1", NodeKind.ROOT, minutes=5)
        early = make_node("r2", NodeKind.ROOT, minutes=1)
        snapshot = ForestSnapshot(root_id=None, nodes={"r1": late, "r2": early})
        assert snapshot.root is early

    def test_no_root(self):
        assert ForestSnapshot(root_id=None).root is None

    def test_ordered_children(self, paper_snapshot):
        ids = [n.id for n in paper_snapshot.ordered_children("root")]
        assert ids == ["intro", "methods", "loose"]

    def test_targets_and_sources(self, paper_snapshot):
        assert [n.id for n in paper_snapshot.targets("p1", RelationKind.CITES)] == ["q1"]
        assert [n.id for n in paper_snapshot.sources("q1", RelationKind.CITES)] == ["p1"]
        assert paper_snapshot.targets("p1", RelationKind.CONTAINS) == []

    def test_edges_to_missing_nodes_ignored(self):
        snapshot = ForestSnapshot(
            root_id="r",
            nodes={"r": make_node("r", NodeKind.ROOT)},
            edges=[contains("r", "ghost")],
        )
        assert snapshot.ordered_children("r") == []

    def test_dict_round_trip(self, paper_snapshot):
        restored = ForestSnapshot.from_dict(paper_snapshot.to_dict())
        assert restored.root_id == "root"
        assert restored.nodes == paper_snapshot.nodes
        assert [n.id for n in restored.ordered_children("methods")] == ["data", "models"]
