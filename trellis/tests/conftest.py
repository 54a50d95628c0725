"""Shared fixtures for Trellis tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from trellis.src.models import ForestSnapshot, NodeKind, RelationKind
from trellis.src.ordering import OutlineEngine
from trellis.src.storage import SQLiteGraphStore
from trellis.tests.factories import SeededOutline, contains, edge, make_node


@pytest.fixture
def memory_store() -> Iterator[SQLiteGraphStore]:
    """In-memory SQLiteGraphStore with schema initialized."""
    store = SQLiteGraphStore(":memory:")
    store.initialize_schema()
    yield store
    store.close()


@pytest.fixture
def engine(memory_store: SQLiteGraphStore) -> OutlineEngine:
    """OutlineEngine over the in-memory store that never sleeps on retry."""
    return OutlineEngine(memory_store, sleep_func=lambda _: None)


@pytest.fixture
def seeded(engine: OutlineEngine) -> SeededOutline:
    """Root 'Thesis' with four ranked sections A..D."""
    root = engine.create_root("Thesis")
    ids = [engine.insert_child(root.id, NodeKind.BRANCH, title) for title in "ABCD"]
    return SeededOutline(root.id, *ids)


@pytest.fixture
def paper_snapshot() -> ForestSnapshot:
    """A small paper outline built by hand (no store).

    Thesis
      1. Intro            (leaf p1 "Motivation", cites q1 linked to doc1)
      2. Methods
         2.1. Data        (leaf p2 with a two-line body)
         2.2. Models
      (unranked branch "Loose")
    """
    nodes = [
        make_node("root", NodeKind.ROOT, "Thesis"),
        make_node("intro", NodeKind.BRANCH, "Intro", rank=1),
        make_node("methods", NodeKind.BRANCH, "Methods", rank=2),
        make_node("data", NodeKind.BRANCH, "Data", rank=1),
        make_node("models", NodeKind.BRANCH, "Models", rank=2),
        make_node("loose", NodeKind.BRANCH, "Loose"),
        make_node("p1", NodeKind.LEAF, "Motivation", rank=1),
        make_node("p2", NodeKind.LEAF, "Sources", rank=1, body="First line\nSecond line"),
        make_node("q1", NodeKind.CITATION, body="Quoted passage"),
        make_node("doc1", NodeKind.EXTERNAL_DOC, "Smith 2020"),
    ]
    edges = [
        contains("root", "intro"),
        contains("root", "methods"),
        contains("root", "loose"),
        contains("methods", "data"),
        contains("methods", "models"),
        contains("intro", "p1"),
        contains("data", "p2"),
        edge("p1", "q1", RelationKind.CITES),
        edge("q1", "doc1", RelationKind.LINKED_FROM),
    ]
    return ForestSnapshot(root_id="root", nodes={n.id: n for n in nodes}, edges=edges)
