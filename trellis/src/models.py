"""Trellis outline data models.

Defines the node and relation kinds of the outline forest, the
containment rules that decide which kinds may be nested inside which,
tagged node references, and the immutable forest snapshot consumed by
the numbering and linearization passes. All models use dataclasses
with dict serialization and UUID-based ID generation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class NodeKind(str, Enum):
    """Kind of an outline node."""

    ROOT = "root"
    BRANCH = "branch"
    LEAF = "leaf"
    CITATION = "citation"
    EXTERNAL_DOC = "external_doc"

    @property
    def display_name(self) -> str:
        """Human-readable kind name (e.g. ``ExternalDoc``)."""
        return "".join(part.capitalize() for part in self.value.split("_"))


class RelationKind(str, Enum):
    """Kind of a directed edge between two nodes."""

    CONTAINS = "contains"
    CITES = "cites"
    REFERENCES = "references"
    LINKED_FROM = "linked_from"


# Parent kind -> kinds it may hold through a Contains edge.
CONTAINMENT_RULES: dict[NodeKind, frozenset[NodeKind]] = {
    NodeKind.ROOT: frozenset({NodeKind.BRANCH}),
    NodeKind.BRANCH: frozenset({NodeKind.BRANCH, NodeKind.LEAF}),
}

# Non-hierarchical relation -> (allowed source kinds, allowed target kinds).
RELATION_RULES: dict[RelationKind, tuple[frozenset[NodeKind], frozenset[NodeKind]]] = {
    RelationKind.CITES: (
        frozenset({NodeKind.LEAF}),
        frozenset({NodeKind.CITATION}),
    ),
    RelationKind.REFERENCES: (
        frozenset({NodeKind.BRANCH, NodeKind.EXTERNAL_DOC}),
        frozenset({NodeKind.CITATION}),
    ),
    RelationKind.LINKED_FROM: (
        frozenset({NodeKind.CITATION}),
        frozenset({NodeKind.EXTERNAL_DOC}),
    ),
}


def can_contain(parent_kind: NodeKind, child_kind: NodeKind) -> bool:
    """Return True when *parent_kind* may hold *child_kind* via Contains."""
    return child_kind in CONTAINMENT_RULES.get(parent_kind, frozenset())


def can_relate(relation: RelationKind, source_kind: NodeKind, target_kind: NodeKind) -> bool:
    """Return True when a non-hierarchical edge is valid for the endpoints."""
    if relation == RelationKind.CONTAINS:
        return can_contain(source_kind, target_kind)
    sources, targets = RELATION_RULES[relation]
    return source_kind in sources and target_kind in targets


@dataclass(frozen=True)
class NodeRef:
    """Tagged reference to a node: its kind plus its opaque ID.

    Built once at the store boundary so that call sites dispatch on
    ``kind`` instead of re-parsing composite identifiers. The wire form
    is ``"<kind>:<id>"``.
    """

    kind: NodeKind
    id: str

    @classmethod
    def parse(cls, text: str) -> NodeRef:
        """Parse the ``"<kind>:<id>"`` wire form.

        Raises:
            ValueError: If the text has no separator, an unknown kind,
                or an empty ID.
        """
        kind_text, sep, node_id = text.partition(":")
        if not sep or not node_id:
            raise ValueError(f"Malformed node reference: {text!r}")
        return cls(kind=NodeKind(kind_text), id=node_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass
class Node:
    """A node of the outline forest.

    Attributes:
        id: Unique identifier (prefixed with 'node_').
        kind: Node kind.
        title: Display title (Branch name, Leaf statement, document title).
        rank: 1-based position in its sibling group, or None when the
            node is not part of an ordered group.
        body: Free text (the quoted passage of a Citation).
        properties: Free-form extra fields (e.g. an ExternalDoc's importance).
        created_at: Creation timestamp.
        updated_at: Last modification timestamp.
    """

    id: str
    kind: NodeKind
    title: str = ""
    rank: int | None = None
    body: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if isinstance(self.kind, str):
            self.kind = NodeKind(self.kind)

    @staticmethod
    def generate_id() -> str:
        """Generate a unique node ID."""
        return f"node_{uuid.uuid4().hex[:12]}"

    @property
    def ref(self) -> NodeRef:
        """Tagged reference to this node."""
        return NodeRef(kind=self.kind, id=self.id)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "title": self.title,
            "rank": self.rank,
            "body": self.body,
            "properties": dict(self.properties),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        """Deserialize from dictionary."""
        return cls(
            id=data["id"],
            kind=NodeKind(data["kind"]),
            title=data.get("title", ""),
            rank=data.get("rank"),
            body=data.get("body", ""),
            properties=dict(data.get("properties", {})),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at", data["created_at"])),
        )


@dataclass
class Edge:
    """A directed, typed edge between two nodes."""

    source_id: str
    target_id: str
    kind: RelationKind
    properties: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        if isinstance(self.kind, str):
            self.kind = RelationKind(self.kind)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "kind": self.kind.value,
            "properties": dict(self.properties),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Edge:
        """Deserialize from dictionary."""
        return cls(
            source_id=data["source_id"],
            target_id=data["target_id"],
            kind=RelationKind(data["kind"]),
            properties=dict(data.get("properties", {})),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass(frozen=True)
class RankedChild:
    """A (node ID, rank) pair as read from or written to a sibling group."""

    id: str
    rank: int | None


# Leaves (a section's own body) come before sub-branches; anything
# else sorts last. Within a kind: rank ascending, unranked last, then ID.
_KIND_ORDER: dict[NodeKind, int] = {NodeKind.LEAF: 0, NodeKind.BRANCH: 1}


def sibling_sort_key(node: Node) -> tuple[int, bool, int, str]:
    """Sort key shared by the numbering and linearization traversals."""
    return (
        _KIND_ORDER.get(node.kind, 2),
        node.rank is None,
        node.rank or 0,
        node.id,
    )


@dataclass
class ForestSnapshot:
    """A consistent, read-only view of one outline and its neighborhood.

    Holds every node reachable from the root through Contains and Cites
    edges, the external documents that reference those citations, and
    all edges among them. Numbering and linearization never mutate it.

    Attributes:
        root_id: ID of the outline's Root, or None to auto-detect.
        nodes: Mapping of node ID to node.
        edges: All edges between nodes in the snapshot.
    """

    root_id: str | None
    nodes: dict[str, Node] = field(default_factory=dict)
    edges: list[Edge] = field(default_factory=list)
    _outgoing: dict[str, list[Edge]] = field(default_factory=dict, init=False, repr=False, compare=False)
    _incoming: dict[str, list[Edge]] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for edge in self.edges:
            self._outgoing.setdefault(edge.source_id, []).append(edge)
            self._incoming.setdefault(edge.target_id, []).append(edge)

    @property
    def root(self) -> Node | None:
        """The Root node, or None when the snapshot has none.

        When ``root_id`` is unset, the earliest-created Root wins.
        """
        if self.root_id is not None:
            node = self.nodes.get(self.root_id)
            if node is not None and node.kind == NodeKind.ROOT:
                return node
            return None
        roots = [n for n in self.nodes.values() if n.kind == NodeKind.ROOT]
        if not roots:
            return None
        return min(roots, key=lambda n: (n.created_at, n.id))

    def get(self, node_id: str) -> Node | None:
        """Return the node with *node_id*, or None."""
        return self.nodes.get(node_id)

    def targets(self, node_id: str, relation: RelationKind) -> list[Node]:
        """Nodes reached from *node_id* by outgoing *relation* edges."""
        return [
            self.nodes[e.target_id]
            for e in self._outgoing.get(node_id, [])
            if e.kind == relation and e.target_id in self.nodes
        ]

    def sources(self, node_id: str, relation: RelationKind) -> list[Node]:
        """Nodes pointing at *node_id* through incoming *relation* edges."""
        return [
            self.nodes[e.source_id]
            for e in self._incoming.get(node_id, [])
            if e.kind == relation and e.source_id in self.nodes
        ]

    def ordered_children(self, node_id: str) -> list[Node]:
        """Contains children of *node_id* in traversal order."""
        return sorted(self.targets(node_id, RelationKind.CONTAINS), key=sibling_sort_key)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "root_id": self.root_id,
            "nodes": [n.to_dict() for n in sorted(self.nodes.values(), key=lambda n: n.id)],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ForestSnapshot:
        """Deserialize from dictionary."""
        nodes = [Node.from_dict(n) for n in data.get("nodes", [])]
        return cls(
            root_id=data.get("root_id"),
            nodes={n.id: n for n in nodes},
            edges=[Edge.from_dict(e) for e in data.get("edges", [])],
        )
