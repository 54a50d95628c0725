"""Tests for the SQLite graph store."""

from __future__ import annotations

import pytest

from trellis.src.errors import InvariantViolationError, NodeNotFoundError, StoreUnavailableError
from trellis.src.models import NodeKind, RankedChild, RelationKind
from trellis.src.storage import GraphStore, SQLiteGraphStore
from trellis.tests.factories import ranks_of

# ===================================================================
# Lifecycle
# ===================================================================


class TestStoreLifecycle:
    """Tests for opening, schema and context management."""

    def test_satisfies_protocol(self, memory_store):
        assert isinstance(memory_store, GraphStore)

    def test_schema_idempotent(self, memory_store):
        memory_store.initialize_schema()
        assert memory_store.ping()

    def test_context_manager_closes(self, tmp_path):
        with SQLiteGraphStore(tmp_path / "outline.db") as store:
            store.initialize_schema()
            store.create_node(NodeKind.ROOT, "Thesis")
        assert not store.ping()

    def test_file_store_persists(self, tmp_path):
        path = tmp_path / "outline.db"
        with SQLiteGraphStore(path) as store:
            store.initialize_schema()
            root = store.create_node(NodeKind.ROOT, "Thesis")
        with SQLiteGraphStore(path) as reopened:
            fetched = reopened.get_node(root.id)
        assert fetched is not None
        assert fetched.title == "Thesis"

    def test_missing_directory_unavailable(self, tmp_path):
        with pytest.raises(StoreUnavailableError):
            SQLiteGraphStore(tmp_path / "nope" / "outline.db")


# ===================================================================
# Nodes and edges
# ===================================================================


class TestNodes:
    """Tests for node CRUD."""

    def test_create_and_get(self, memory_store):
        node = memory_store.create_node(
            NodeKind.EXTERNAL_DOC, "Smith 2020", properties={"importance": 3}
        )
        fetched = memory_store.get_node(node.id)
        assert fetched is not None
        assert fetched.kind is NodeKind.EXTERNAL_DOC
        assert fetched.properties == {"importance": 3}
        assert fetched.rank is None

    def test_get_missing(self, memory_store):
        assert memory_store.get_node("node_missing") is None

    def test_update_does_not_touch_rank(self, memory_store):
        node = memory_store.create_node(NodeKind.BRANCH, "Old", rank=3)
        node.title = "New"
        node.rank = 99
        memory_store.update_node(node)
        fetched = memory_store.get_node(node.id)
        assert fetched is not None
        assert fetched.title == "New"
        assert fetched.rank == 3

    def test_update_missing_raises(self, memory_store):
        node = memory_store.create_node(NodeKind.BRANCH, "X")
        memory_store.delete_subtree(node.id)
        with pytest.raises(NodeNotFoundError):
            memory_store.update_node(node)

    def test_list_roots_only_roots(self, memory_store):
        first = memory_store.create_node(NodeKind.ROOT, "One")
        memory_store.create_node(NodeKind.BRANCH, "Not a root")
        second = memory_store.create_node(NodeKind.ROOT, "Two")
        assert {r.id for r in memory_store.list_roots()} == {first.id, second.id}


class TestEdges:
    """Tests for edge creation and constraints."""

    def test_create_and_parent(self, memory_store):
        root = memory_store.create_node(NodeKind.ROOT, "R")
        branch = memory_store.create_node(NodeKind.BRANCH, "B", rank=1)
        memory_store.create_edge(root.id, branch.id, RelationKind.CONTAINS)
        parent = memory_store.get_parent(branch.id)
        assert parent is not None and parent.id == root.id
        assert memory_store.get_parent(root.id) is None

    def test_missing_endpoint(self, memory_store):
        root = memory_store.create_node(NodeKind.ROOT, "R")
        with pytest.raises(NodeNotFoundError):
            memory_store.create_edge(root.id, "node_ghost", RelationKind.CONTAINS)

    def test_single_parent_enforced(self, memory_store):
        a = memory_store.create_node(NodeKind.BRANCH, "A")
        b = memory_store.create_node(NodeKind.BRANCH, "B")
        child = memory_store.create_node(NodeKind.LEAF, "C")
        memory_store.create_edge(a.id, child.id, RelationKind.CONTAINS)
        with pytest.raises(InvariantViolationError):
            memory_store.create_edge(b.id, child.id, RelationKind.CONTAINS)

    def test_second_non_contains_edge_allowed(self, memory_store):
        leaf_a = memory_store.create_node(NodeKind.LEAF, "A")
        leaf_b = memory_store.create_node(NodeKind.LEAF, "B")
        quote = memory_store.create_node(NodeKind.CITATION, body="q")
        memory_store.create_edge(leaf_a.id, quote.id, RelationKind.CITES)
        memory_store.create_edge(leaf_b.id, quote.id, RelationKind.CITES)
        assert len(memory_store.get_edges(quote.id)) == 2

    def test_duplicate_edge_rejected(self, memory_store):
        leaf = memory_store.create_node(NodeKind.LEAF, "A")
        quote = memory_store.create_node(NodeKind.CITATION, body="q")
        memory_store.create_edge(leaf.id, quote.id, RelationKind.CITES)
        with pytest.raises(InvariantViolationError):
            memory_store.create_edge(leaf.id, quote.id, RelationKind.CITES)

    def test_delete_edge(self, memory_store):
        leaf = memory_store.create_node(NodeKind.LEAF, "A")
        quote = memory_store.create_node(NodeKind.CITATION, body="q")
        memory_store.create_edge(leaf.id, quote.id, RelationKind.CITES)
        assert memory_store.delete_edge(leaf.id, quote.id, RelationKind.CITES)
        assert not memory_store.delete_edge(leaf.id, quote.id, RelationKind.CITES)


# ===================================================================
# Structure
# ===================================================================


def _tree(store: SQLiteGraphStore) -> dict[str, str]:
    """Root -> A -> (A1 -> leaf cites quote), plus B."""
    root = store.create_node(NodeKind.ROOT, "R")
    a = store.create_node(NodeKind.BRANCH, "A", rank=1)
    b = store.create_node(NodeKind.BRANCH, "B", rank=2)
    a1 = store.create_node(NodeKind.BRANCH, "A1", rank=1)
    leaf = store.create_node(NodeKind.LEAF, "L", rank=1)
    quote = store.create_node(NodeKind.CITATION, body="q")
    doc = store.create_node(NodeKind.EXTERNAL_DOC, "Doc")
    store.create_edge(root.id, a.id, RelationKind.CONTAINS)
    store.create_edge(root.id, b.id, RelationKind.CONTAINS)
    store.create_edge(a.id, a1.id, RelationKind.CONTAINS)
    store.create_edge(a1.id, leaf.id, RelationKind.CONTAINS)
    store.create_edge(leaf.id, quote.id, RelationKind.CITES)
    store.create_edge(doc.id, quote.id, RelationKind.REFERENCES)
    return {
        "root": root.id,
        "a": a.id,
        "b": b.id,
        "a1": a1.id,
        "leaf": leaf.id,
        "quote": quote.id,
        "doc": doc.id,
    }


class TestStructure:
    """Tests for subtree deletion, sibling reads and rank writes."""

    def test_delete_subtree_removes_descendants(self, memory_store):
        ids = _tree(memory_store)
        deleted = memory_store.delete_subtree(ids["a"])
        assert set(deleted) == {ids["a"], ids["a1"], ids["leaf"]}
        assert memory_store.get_node(ids["a1"]) is None
        assert memory_store.get_node(ids["b"]) is not None

    def test_delete_subtree_keeps_citations(self, memory_store):
        ids = _tree(memory_store)
        memory_store.delete_subtree(ids["a"])
        assert memory_store.get_node(ids["quote"]) is not None
        kinds = {e.kind for e in memory_store.get_edges(ids["quote"])}
        assert kinds == {RelationKind.REFERENCES}

    def test_delete_subtree_unknown(self, memory_store):
        assert memory_store.delete_subtree("node_missing") == []

    def test_read_children_filters_kind(self, memory_store):
        ids = _tree(memory_store)
        assert ranks_of(memory_store, ids["root"], NodeKind.BRANCH) == [
            (ids["a"], 1),
            (ids["b"], 2),
        ]
        assert ranks_of(memory_store, ids["root"], NodeKind.LEAF) == []

    def test_write_ranks_batch(self, memory_store):
        ids = _tree(memory_store)
        memory_store.write_ranks(
            ids["root"],
            NodeKind.BRANCH,
            [RankedChild(ids["a"], 2), RankedChild(ids["b"], 1)],
        )
        assert ranks_of(memory_store, ids["root"], NodeKind.BRANCH) == [
            (ids["b"], 1),
            (ids["a"], 2),
        ]

    def test_write_ranks_rejects_strangers(self, memory_store):
        ids = _tree(memory_store)
        with pytest.raises(InvariantViolationError):
            memory_store.write_ranks(
                ids["root"],
                NodeKind.BRANCH,
                [RankedChild(ids["a"], 2), RankedChild(ids["a1"], 1)],
            )
        # Nothing from the rejected batch was written.
        assert ranks_of(memory_store, ids["root"], NodeKind.BRANCH)[0] == (ids["a"], 1)

    def test_is_ancestor(self, memory_store):
        ids = _tree(memory_store)
        assert memory_store.is_ancestor(ids["a"], ids["leaf"])
        assert memory_store.is_ancestor(ids["a"], ids["a"])
        assert not memory_store.is_ancestor(ids["b"], ids["leaf"])
        assert not memory_store.is_ancestor(ids["leaf"], ids["a"])

    def test_clear_rank(self, memory_store):
        ids = _tree(memory_store)
        memory_store.clear_rank(ids["b"])
        node = memory_store.get_node(ids["b"])
        assert node is not None and node.rank is None


# ===================================================================
# Transactions
# ===================================================================


class TestTransactions:
    """Tests for all-or-nothing transactions."""

    def test_rollback_on_error(self, memory_store):
        with pytest.raises(RuntimeError):
            with memory_store.transaction():
                memory_store.create_node(NodeKind.ROOT, "Doomed")
                raise RuntimeError("abort")
        assert memory_store.list_roots() == []

    def test_nested_joins_outer(self, memory_store):
        with pytest.raises(RuntimeError):
            with memory_store.transaction():
                with memory_store.transaction():
                    memory_store.create_node(NodeKind.ROOT, "Inner")
                raise RuntimeError("outer fails")
        assert memory_store.list_roots() == []

    def test_commit(self, memory_store):
        with memory_store.transaction():
            memory_store.create_node(NodeKind.ROOT, "Kept")
        assert [r.title for r in memory_store.list_roots()] == ["Kept"]


# ===================================================================
# Snapshots
# ===================================================================


class TestReadSnapshot:
    """Tests for read_snapshot."""

    def test_includes_reachable_and_linked_documents(self, memory_store):
        ids = _tree(memory_store)
        snapshot = memory_store.read_snapshot(ids["root"])
        assert set(snapshot.nodes) == set(ids.values())
        assert [n.id for n in snapshot.sources(ids["quote"], RelationKind.REFERENCES)] == [
            ids["doc"]
        ]

    def test_excludes_other_outlines(self, memory_store):
        ids = _tree(memory_store)
        other = memory_store.create_node(NodeKind.ROOT, "Other")
        stray = memory_store.create_node(NodeKind.BRANCH, "Stray", rank=1)
        memory_store.create_edge(other.id, stray.id, RelationKind.CONTAINS)
        snapshot = memory_store.read_snapshot(ids["root"])
        assert other.id not in snapshot.nodes
        assert stray.id not in snapshot.nodes

    def test_subtree_snapshot(self, memory_store):
        ids = _tree(memory_store)
        snapshot = memory_store.read_snapshot(ids["a"])
        assert ids["root"] not in snapshot.nodes
        assert ids["leaf"] in snapshot.nodes

    def test_unknown_root(self, memory_store):
        with pytest.raises(NodeNotFoundError):
            memory_store.read_snapshot("node_missing")
