"""Builders shared by the Trellis tests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from trellis.src.models import Edge, Node, NodeKind, RelationKind
from trellis.src.storage import SQLiteGraphStore

BASE_TIME = datetime(2024, 5, 1, 9, 0, 0)


@dataclass
class SeededOutline:
    """IDs of the seeded outline: a root holding sections A, B, C and D."""

    root: str
    a: str
    b: str
    c: str
    d: str

    @property
    def sections(self) -> list[str]:
        return [self.a, self.b, self.c, self.d]


def ranks_of(store: SQLiteGraphStore, parent_id: str, kind: NodeKind) -> list[tuple[str, int | None]]:
    """(id, rank) pairs of a sibling group in rank order."""
    return [(c.id, c.rank) for c in store.read_children(parent_id, kind)]


def make_node(
    node_id: str,
    kind: NodeKind,
    title: str = "",
    rank: int | None = None,
    body: str = "",
    minutes: int = 0,
) -> Node:
    """Node with a deterministic timestamp."""
    when = BASE_TIME + timedelta(minutes=minutes)
    return Node(
        id=node_id,
        kind=kind,
        title=title,
        rank=rank,
        body=body,
        created_at=when,
        updated_at=when,
    )


def contains(parent: str, child: str) -> Edge:
    return Edge(parent, child, RelationKind.CONTAINS, created_at=BASE_TIME)


def edge(source: str, target: str, kind: RelationKind) -> Edge:
    return Edge(source, target, kind, created_at=BASE_TIME)
