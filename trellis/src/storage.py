"""Graph store abstraction and its SQLite-backed implementation.

The ordering engine talks to the store only through the ``GraphStore``
protocol: labeled nodes, labeled edges, sibling reads, one atomic
rank batch write, and snapshot reads. ``SQLiteGraphStore`` keeps nodes
and edges in two tables and enforces "at most one incoming Contains
edge" with a partial unique index.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from trellis.src.errors import (
    InvariantViolationError,
    NodeNotFoundError,
    StoreUnavailableError,
)
from trellis.src.models import (
    Edge,
    ForestSnapshot,
    Node,
    NodeKind,
    RankedChild,
    RelationKind,
)

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS nodes (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    rank INTEGER,
    body TEXT NOT NULL DEFAULT '',
    properties_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS edges (
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    properties_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    PRIMARY KEY (source_id, target_id, kind),
    FOREIGN KEY (source_id) REFERENCES nodes(id) ON DELETE CASCADE,
    FOREIGN KEY (target_id) REFERENCES nodes(id) ON DELETE CASCADE
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_edges_single_parent
    ON edges(target_id) WHERE kind = 'contains';
CREATE INDEX IF NOT EXISTS idx_edges_source
    ON edges(source_id, kind);
CREATE INDEX IF NOT EXISTS idx_nodes_kind
    ON nodes(kind);
"""

_SUBTREE_SQL = """
WITH RECURSIVE subtree(id) AS (
    SELECT ?
    UNION
    SELECT e.target_id FROM edges e
    JOIN subtree s ON e.source_id = s.id
    WHERE e.kind = 'contains'
)
SELECT id FROM subtree
"""

# Everything reachable from the root through Contains and Cites edges.
_REACHABLE_SQL = """
WITH RECURSIVE reachable(id) AS (
    SELECT ?
    UNION
    SELECT e.target_id FROM edges e
    JOIN reachable r ON e.source_id = r.id
    WHERE e.kind IN ('contains', 'cites')
)
SELECT id FROM reachable
"""


@runtime_checkable
class GraphStore(Protocol):
    """Operations the ordering engine needs from a labeled graph store."""

    def transaction(self) -> Any:
        """Context manager making the enclosed calls one unit of failure."""
        ...

    def create_node(
        self,
        kind: NodeKind,
        title: str = "",
        *,
        rank: int | None = None,
        body: str = "",
        properties: dict[str, Any] | None = None,
    ) -> Node:
        """Create a node and return it with its assigned ID."""
        ...

    def get_node(self, node_id: str) -> Node | None:
        """Fetch a node by ID."""
        ...

    def update_node(self, node: Node) -> Node:
        """Persist title, body and properties of an existing node."""
        ...

    def create_edge(
        self,
        source_id: str,
        target_id: str,
        kind: RelationKind,
        properties: dict[str, Any] | None = None,
    ) -> Edge:
        """Create a directed edge."""
        ...

    def delete_edge(self, source_id: str, target_id: str, kind: RelationKind) -> bool:
        """Delete one edge; return False if it did not exist."""
        ...

    def get_parent(self, node_id: str) -> Node | None:
        """Return the source of the node's incoming Contains edge."""
        ...

    def get_edges(self, node_id: str) -> list[Edge]:
        """All edges touching *node_id*."""
        ...

    def is_ancestor(self, ancestor_id: str, node_id: str) -> bool:
        """Return True when *ancestor_id* is *node_id* or contains it."""
        ...

    def clear_rank(self, node_id: str) -> None:
        """Reset a node's rank after it left its sibling group."""
        ...

    def delete_subtree(self, root_id: str) -> list[str]:
        """Delete a node, its Contains descendants and all touching edges."""
        ...

    def read_children(self, parent_id: str, kind: NodeKind) -> list[RankedChild]:
        """Contains children of *parent_id* with *kind*, ordered by rank."""
        ...

    def write_ranks(
        self, parent_id: str, kind: NodeKind, assignments: Sequence[RankedChild]
    ) -> None:
        """Write a batch of ranks for one sibling group atomically."""
        ...

    def read_snapshot(self, root_id: str) -> ForestSnapshot:
        """Read a consistent snapshot of the outline rooted at *root_id*."""
        ...

    def list_roots(self) -> list[Node]:
        """All Root nodes, oldest first."""
        ...


class SQLiteGraphStore:
    """SQLite-backed labeled graph store.

    Write transactions open with ``BEGIN IMMEDIATE`` so two stores on the
    same database file serialize their read-modify-write cycles. Within
    one store, a re-entrant lock serializes threads sharing the
    connection.

    Args:
        db_path: Path to SQLite database file, or ':memory:' for in-memory.
        timeout: Seconds to wait on a locked database before giving up.

    Example::

        with SQLiteGraphStore("outline.db") as store:
            store.initialize_schema()
            root = store.create_node(NodeKind.ROOT, "Thesis")
    """

    def __init__(self, db_path: str | Path = ":memory:", timeout: float = 5.0) -> None:
        self._db_path = str(db_path)
        try:
            self._conn = sqlite3.connect(
                self._db_path,
                timeout=timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"Cannot open graph store at {self._db_path}") from exc
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

    def __enter__(self) -> SQLiteGraphStore:
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Close the database connection."""
        self.close()

    @property
    def db_path(self) -> str:
        """Database location this store was opened with."""
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def initialize_schema(self) -> None:
        """Create all tables and indexes if they don't exist."""
        with self._lock:
            try:
                self._conn.executescript(_SCHEMA_SQL)
            except sqlite3.Error as exc:
                raise StoreUnavailableError("Schema initialization failed") from exc

    def ping(self) -> bool:
        """Return True when the connection answers a trivial query."""
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed calls as one all-or-nothing transaction.

        Nested use joins the outer transaction. Any exception rolls the
        whole transaction back and is re-raised.

        Raises:
            StoreUnavailableError: If the transaction cannot begin or commit.
        """
        with self._lock:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise StoreUnavailableError(f"Cannot begin transaction: {exc}") from exc

            self._depth = 1
            try:
                yield
            except BaseException:
                self._depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._depth = 0
            try:
                self._conn.execute("COMMIT")
            except sqlite3.OperationalError as exc:
                self._conn.execute("ROLLBACK")
                raise StoreUnavailableError(f"Commit failed: {exc}") from exc

    # ---------------------------------------------------------------
    # Nodes
    # ---------------------------------------------------------------

    def create_node(
        self,
        kind: NodeKind,
        title: str = "",
        *,
        rank: int | None = None,
        body: str = "",
        properties: dict[str, Any] | None = None,
    ) -> Node:
        """Insert a new node.

        Args:
            kind: Node kind.
            title: Display title.
            rank: Rank within its sibling group, if any.
            body: Free text body.
            properties: Extra fields stored as JSON.

        Returns:
            The inserted node.
        """
        node = Node(
            id=Node.generate_id(),
            kind=kind,
            title=title,
            rank=rank,
            body=body,
            properties=dict(properties or {}),
        )
        with self.transaction():
            self._execute(
                "INSERT INTO nodes (id, kind, title, rank, body, properties_json, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    node.id,
                    node.kind.value,
                    node.title,
                    node.rank,
                    node.body,
                    json.dumps(node.properties),
                    node.created_at.isoformat(),
                    node.updated_at.isoformat(),
                ),
            )
        return node

    def get_node(self, node_id: str) -> Node | None:
        """Fetch a node by ID.

        Returns:
            Node or None if not found.
        """
        row = self._execute("SELECT * FROM nodes WHERE id = ?", (node_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_node(row)

    def update_node(self, node: Node) -> Node:
        """Update title, body and properties of an existing node.

        Rank is deliberately not written here; ranks change only through
        ``write_ranks``.

        Raises:
            NodeNotFoundError: If the node does not exist.
        """
        node.updated_at = datetime.now()
        with self.transaction():
            cursor = self._execute(
                "UPDATE nodes SET title = ?, body = ?, properties_json = ?, updated_at = ? "
                "WHERE id = ?",
                (
                    node.title,
                    node.body,
                    json.dumps(node.properties),
                    node.updated_at.isoformat(),
                    node.id,
                ),
            )
            if cursor.rowcount == 0:
                raise NodeNotFoundError(node.id)
        return node

    def list_roots(self) -> list[Node]:
        """All Root nodes, oldest first."""
        rows = self._execute(
            "SELECT * FROM nodes WHERE kind = ? ORDER BY created_at, id",
            (NodeKind.ROOT.value,),
        ).fetchall()
        return [self._row_to_node(r) for r in rows]

    # ---------------------------------------------------------------
    # Edges
    # ---------------------------------------------------------------

    def create_edge(
        self,
        source_id: str,
        target_id: str,
        kind: RelationKind,
        properties: dict[str, Any] | None = None,
    ) -> Edge:
        """Insert a directed edge.

        Raises:
            NodeNotFoundError: If either endpoint does not exist.
            InvariantViolationError: If the edge duplicates an existing one
                or would give the target a second Contains parent.
        """
        edge = Edge(
            source_id=source_id,
            target_id=target_id,
            kind=kind,
            properties=dict(properties or {}),
        )
        with self.transaction():
            for endpoint in (source_id, target_id):
                if self.get_node(endpoint) is None:
                    raise NodeNotFoundError(endpoint)
            try:
                self._conn.execute(
                    "INSERT INTO edges (source_id, target_id, kind, properties_json, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (
                        edge.source_id,
                        edge.target_id,
                        edge.kind.value,
                        json.dumps(edge.properties),
                        edge.created_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise InvariantViolationError(
                    f"Edge rejected {source_id} -{kind.value}-> {target_id}: {exc}"
                ) from exc
            except sqlite3.OperationalError as exc:
                raise StoreUnavailableError(str(exc)) from exc
        return edge

    def delete_edge(self, source_id: str, target_id: str, kind: RelationKind) -> bool:
        """Delete one edge.

        Returns:
            True if deleted, False if not found.
        """
        with self.transaction():
            cursor = self._execute(
                "DELETE FROM edges WHERE source_id = ? AND target_id = ? AND kind = ?",
                (source_id, target_id, kind.value),
            )
        return cursor.rowcount > 0

    def get_parent(self, node_id: str) -> Node | None:
        """Return the node's Contains parent, or None for roots and orphans."""
        row = self._execute(
            "SELECT n.* FROM edges e JOIN nodes n ON n.id = e.source_id "
            "WHERE e.target_id = ? AND e.kind = ?",
            (node_id, RelationKind.CONTAINS.value),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_node(row)

    def get_edges(self, node_id: str) -> list[Edge]:
        """All edges touching *node_id* in either direction."""
        rows = self._execute(
            "SELECT * FROM edges WHERE source_id = ? OR target_id = ? "
            "ORDER BY created_at, source_id, target_id",
            (node_id, node_id),
        ).fetchall()
        return [self._row_to_edge(r) for r in rows]

    # ---------------------------------------------------------------
    # Structure
    # ---------------------------------------------------------------

    def delete_subtree(self, root_id: str) -> list[str]:
        """Delete a node and its Contains descendants.

        Edges touching any deleted node (hierarchical, citation and
        backlink edges) are removed by the foreign-key cascade. Cited
        Citation nodes themselves survive; they belong to their source
        documents.

        Returns:
            IDs of the deleted nodes, empty if *root_id* was unknown.
        """
        with self.transaction():
            if self.get_node(root_id) is None:
                return []
            ids = [row[0] for row in self._execute(_SUBTREE_SQL, (root_id,)).fetchall()]
            self._conn.executemany("DELETE FROM nodes WHERE id = ?", [(i,) for i in ids])
        logger.debug("Deleted subtree of %s (%d nodes)", root_id, len(ids))
        return ids

    def read_children(self, parent_id: str, kind: NodeKind) -> list[RankedChild]:
        """Contains children of *parent_id* having *kind*.

        Returns:
            Children ordered by rank (unranked last), then ID.
        """
        rows = self._execute(
            "SELECT n.id, n.rank FROM edges e JOIN nodes n ON n.id = e.target_id "
            "WHERE e.source_id = ? AND e.kind = ? AND n.kind = ? "
            "ORDER BY n.rank IS NULL, n.rank, n.id",
            (parent_id, RelationKind.CONTAINS.value, kind.value),
        ).fetchall()
        return [RankedChild(id=r["id"], rank=r["rank"]) for r in rows]

    def write_ranks(
        self, parent_id: str, kind: NodeKind, assignments: Sequence[RankedChild]
    ) -> None:
        """Write a batch of ranks for one sibling group in one transaction.

        Every assigned node must currently be a *kind* child of
        *parent_id*; otherwise nothing is written.

        Raises:
            InvariantViolationError: If an assignment names a node outside
                the sibling group.
        """
        if not assignments:
            return
        with self.transaction():
            members = {c.id for c in self.read_children(parent_id, kind)}
            strangers = [a.id for a in assignments if a.id not in members]
            if strangers:
                raise InvariantViolationError(
                    f"Nodes {strangers} are not {kind.value} children of {parent_id}"
                )
            now = datetime.now().isoformat()
            self._conn.executemany(
                "UPDATE nodes SET rank = ?, updated_at = ? WHERE id = ?",
                [(a.rank, now, a.id) for a in assignments],
            )

    def clear_rank(self, node_id: str) -> None:
        """Reset a node's rank to NULL (the node left its sibling group)."""
        with self.transaction():
            self._execute(
                "UPDATE nodes SET rank = NULL, updated_at = ? WHERE id = ?",
                (datetime.now().isoformat(), node_id),
            )

    def is_ancestor(self, ancestor_id: str, node_id: str) -> bool:
        """Return True when *ancestor_id* is *node_id* or contains it."""
        ids = {row[0] for row in self._execute(_SUBTREE_SQL, (ancestor_id,)).fetchall()}
        return node_id in ids

    def read_snapshot(self, root_id: str) -> ForestSnapshot:
        """Read the outline rooted at *root_id* in one transaction.

        Includes nodes reachable through Contains and Cites, external
        documents linked to the reached citations (References into or
        LinkedFrom out of them), and every edge among the collected nodes.

        Raises:
            NodeNotFoundError: If *root_id* does not exist.
        """
        with self.transaction():
            if self.get_node(root_id) is None:
                raise NodeNotFoundError(root_id)
            ids = {row[0] for row in self._execute(_REACHABLE_SQL, (root_id,)).fetchall()}

            citation_ids = [
                row[0]
                for row in self._execute(
                    f"SELECT id FROM nodes WHERE kind = ? AND id IN ({_placeholders(ids)})",
                    (NodeKind.CITATION.value, *ids),
                ).fetchall()
            ]
            if citation_ids:
                marks = _placeholders(citation_ids)
                linked = self._execute(
                    f"SELECT source_id AS id FROM edges WHERE kind = ? AND target_id IN ({marks}) "
                    f"UNION SELECT target_id AS id FROM edges WHERE kind = ? AND source_id IN ({marks})",
                    (
                        RelationKind.REFERENCES.value,
                        *citation_ids,
                        RelationKind.LINKED_FROM.value,
                        *citation_ids,
                    ),
                ).fetchall()
                ids.update(row[0] for row in linked)

            marks = _placeholders(ids)
            node_rows = self._execute(
                f"SELECT * FROM nodes WHERE id IN ({marks})", tuple(ids)
            ).fetchall()
            edge_rows = self._execute(
                f"SELECT * FROM edges WHERE source_id IN ({marks}) AND target_id IN ({marks}) "
                "ORDER BY created_at, source_id, target_id",
                (*ids, *ids),
            ).fetchall()

        nodes = [self._row_to_node(r) for r in node_rows]
        return ForestSnapshot(
            root_id=root_id,
            nodes={n.id: n for n in nodes},
            edges=[self._row_to_edge(r) for r in edge_rows],
        )

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Execute one statement, mapping driver failures to store errors."""
        with self._lock:
            try:
                return self._conn.execute(sql, params)
            except sqlite3.IntegrityError as exc:
                raise InvariantViolationError(str(exc)) from exc
            except sqlite3.Error as exc:
                raise StoreUnavailableError(str(exc)) from exc

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> Node:
        return Node(
            id=row["id"],
            kind=NodeKind(row["kind"]),
            title=row["title"],
            rank=row["rank"],
            body=row["body"],
            properties=json.loads(row["properties_json"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_edge(row: sqlite3.Row) -> Edge:
        return Edge(
            source_id=row["source_id"],
            target_id=row["target_id"],
            kind=RelationKind(row["kind"]),
            properties=json.loads(row["properties_json"] or "{}"),
            created_at=datetime.fromisoformat(row["created_at"]),
        )


def _placeholders(values: Any) -> str:
    """Return ``?, ?, ...`` with one marker per value."""
    return ", ".join("?" for _ in values)
