"""Ordering engine for ranked sibling groups.

Every structural mutation of the outline goes through ``OutlineEngine``:
inserting a child, moving a node inside its sibling group, deleting a
subtree, and attaching edges (including re-parenting through a Contains
edge). Each operation runs as one store transaction under the lock of
every sibling group it touches, and verifies before committing that the
affected groups still hold exactly the ranks ``1..n``.

Example::

    engine = OutlineEngine(store)
    root = engine.create_root("Thesis")
    intro = engine.insert_child(root.id, NodeKind.BRANCH, "Introduction")
    engine.reorder(intro, 1)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any, TypeVar

from shared.hardening import RetriesExhaustedError, RetryConfig, retry_with_backoff
from trellis.src.errors import (
    CycleDetectedError,
    InvariantViolationError,
    NodeNotFoundError,
    ParentNotFoundError,
    RankOutOfRangeError,
    StoreUnavailableError,
    UnsupportedChildKindError,
)
from trellis.src.models import (
    Edge,
    Node,
    NodeKind,
    RankedChild,
    RelationKind,
    can_contain,
    can_relate,
)
from trellis.src.storage import GraphStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

GroupKey = tuple[str, NodeKind]

# How often a node's parent may change under us before giving up.
_MAX_RELOCK_ATTEMPTS = 5


def default_retry_config() -> RetryConfig:
    """Retry policy used when the engine is built without one."""
    return RetryConfig(
        max_attempts=3,
        base_delay=0.05,
        max_delay=1.0,
        retryable_exceptions=(StoreUnavailableError,),
    )


# ---------------------------------------------------------------------------
# Rank arithmetic (pure)
# ---------------------------------------------------------------------------


def shift_ranks(
    siblings: Sequence[RankedChild], node_id: str, old_rank: int, new_rank: int
) -> list[RankedChild]:
    """Compute the rank batch that moves *node_id* from *old_rank* to *new_rank*.

    Moving down (old < new) pulls every sibling in ``(old, new]`` up by
    one; moving up (old > new) pushes every sibling in ``[new, old)``
    down by one. Siblings outside the window are not part of the batch.

    Returns:
        Only the assignments that change, the moved node last.
    """
    batch: list[RankedChild] = []
    if old_rank == new_rank:
        return batch
    for child in siblings:
        if child.id == node_id or child.rank is None:
            continue
        if old_rank < new_rank and old_rank < child.rank <= new_rank:
            batch.append(RankedChild(id=child.id, rank=child.rank - 1))
        elif old_rank > new_rank and new_rank <= child.rank < old_rank:
            batch.append(RankedChild(id=child.id, rank=child.rank + 1))
    batch.append(RankedChild(id=node_id, rank=new_rank))
    return batch


def compact_ranks(siblings: Sequence[RankedChild], removed_rank: int) -> list[RankedChild]:
    """Close the gap left by a sibling that held *removed_rank*."""
    return [
        RankedChild(id=child.id, rank=child.rank - 1)
        for child in siblings
        if child.rank is not None and child.rank > removed_rank
    ]


def is_contiguous(siblings: Sequence[RankedChild]) -> bool:
    """Return True when the ranks are exactly ``1..n`` without duplicates."""
    ranks = sorted(c.rank for c in siblings if c.rank is not None)
    return len(ranks) == len(siblings) and ranks == list(range(1, len(siblings) + 1))


# ---------------------------------------------------------------------------
# Sibling group locks
# ---------------------------------------------------------------------------


class SiblingLockRegistry:
    """Application-level mutexes keyed by ``(parent_id, child_kind)``.

    Operations touching several groups acquire them in sorted key order
    so that two movers crossing between the same groups cannot deadlock.

    Args:
        timeout: Seconds to wait for a group lock, or None to wait forever.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[GroupKey, threading.RLock] = {}

    def lock_for(self, parent_id: str, kind: NodeKind) -> threading.RLock:
        """Return (creating on first use) the lock of one sibling group."""
        with self._guard:
            return self._locks.setdefault((parent_id, kind), threading.RLock())

    @contextmanager
    def hold(self, *keys: GroupKey) -> Iterator[None]:
        """Hold the locks of all given groups for the enclosed block.

        Raises:
            StoreUnavailableError: If a lock is not acquired within the timeout.
        """
        ordered = sorted(set(keys), key=lambda k: (k[0], k[1].value))
        acquired: list[threading.RLock] = []
        try:
            for parent_id, kind in ordered:
                lock = self.lock_for(parent_id, kind)
                wait = -1 if self._timeout is None else self._timeout
                if not lock.acquire(timeout=wait):
                    raise StoreUnavailableError(
                        f"Timed out waiting for sibling group {parent_id}/{kind.value}"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class OutlineEngine:
    """Invariant-preserving structural operations over a ``GraphStore``.

    The engine keeps no authoritative state between calls: every
    operation re-reads the sibling group it needs, computes the new
    ranks, writes them as one batch, and verifies the group before the
    transaction commits. Transient store failures are retried according
    to *retry*; every other error aborts the transaction untouched.

    Args:
        store: Backing graph store.
        locks: Shared lock registry; pass the same registry to every
            engine that works on the same store.
        retry: Retry policy for ``StoreUnavailableError``.
        sleep_func: Injectable sleep used between retries.
    """

    def __init__(
        self,
        store: GraphStore,
        locks: SiblingLockRegistry | None = None,
        retry: RetryConfig | None = None,
        sleep_func: Callable[[float], None] | None = None,
    ) -> None:
        self._store = store
        self._locks = locks or SiblingLockRegistry()
        self._retry = retry or default_retry_config()
        self._sleep = sleep_func

    @property
    def store(self) -> GraphStore:
        """The backing graph store."""
        return self._store

    # ---------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------

    def create_root(self, title: str) -> Node:
        """Create a new outline Root."""
        node = self._run("create_root", self._store.create_node, NodeKind.ROOT, title)
        logger.info("Created root %s (%r)", node.id, title)
        return node

    def create_node(
        self,
        kind: NodeKind,
        title: str,
        body: str = "",
        properties: dict[str, Any] | None = None,
    ) -> Node:
        """Create a node outside any sibling group (rank stays None).

        Used for citations, external documents and orphan branches that
        are attached later.
        """
        node = self._run(
            "create_node",
            lambda: self._store.create_node(kind, title, body=body, properties=properties),
        )
        logger.info("Created detached %s %s", kind.value, node.id)
        return node

    def insert_child(
        self,
        parent_id: str,
        child_kind: NodeKind,
        title: str,
        body: str = "",
        properties: dict[str, Any] | None = None,
    ) -> str:
        """Create a node at the end of the parent's *child_kind* group.

        Returns:
            ID of the new node.

        Raises:
            ParentNotFoundError: If the parent does not exist.
            UnsupportedChildKindError: If the parent kind cannot hold *child_kind*.
        """
        return self._run(
            "insert_child",
            self._insert_child,
            parent_id,
            child_kind,
            title,
            body,
            properties,
        )

    def _insert_child(
        self,
        parent_id: str,
        child_kind: NodeKind,
        title: str,
        body: str,
        properties: dict[str, Any] | None,
    ) -> str:
        with self._locks.hold((parent_id, child_kind)):
            with self._store.transaction():
                parent = self._store.get_node(parent_id)
                if parent is None:
                    raise ParentNotFoundError(parent_id)
                if not can_contain(parent.kind, child_kind):
                    raise UnsupportedChildKindError(
                        f"A {parent.kind.value} cannot contain a {child_kind.value}"
                    )
                siblings = self._store.read_children(parent_id, child_kind)
                rank = len(siblings) + 1
                node = self._store.create_node(
                    child_kind, title, rank=rank, body=body, properties=properties
                )
                self._store.create_edge(parent_id, node.id, RelationKind.CONTAINS)
                self._verify(parent_id, child_kind)
        logger.info("Inserted %s %s under %s at rank %d", child_kind.value, node.id, parent_id, rank)
        return node.id

    # ---------------------------------------------------------------
    # Reorder
    # ---------------------------------------------------------------

    def reorder(self, node_id: str, new_rank: int) -> list[RankedChild]:
        """Move a node to *new_rank* inside its sibling group.

        Returns:
            The sibling group after the move, ordered by rank.

        Raises:
            NodeNotFoundError: If the node does not exist.
            RankOutOfRangeError: If *new_rank* is outside ``1..n`` (an
                orphan has ``n == 0``).
        """
        return self._run("reorder", self._reorder, node_id, new_rank)

    def _reorder(self, node_id: str, new_rank: int) -> list[RankedChild]:
        with self._locked_group(node_id) as (node, parent):
            if node is None:
                raise NodeNotFoundError(node_id)
            if parent is None:
                raise RankOutOfRangeError(node_id, new_rank, 0)
            siblings = self._store.read_children(parent.id, node.kind)
            if not 1 <= new_rank <= len(siblings):
                raise RankOutOfRangeError(node_id, new_rank, len(siblings))
            old_rank = next(c.rank for c in siblings if c.id == node_id)
            if old_rank is None:
                raise InvariantViolationError(f"Node {node_id} has no rank under {parent.id}")
            if old_rank == new_rank:
                return siblings
            batch = shift_ranks(siblings, node_id, old_rank, new_rank)
            self._store.write_ranks(parent.id, node.kind, batch)
            result = self._verify(parent.id, node.kind)
        logger.info("Reordered %s from rank %d to %d", node_id, old_rank, new_rank)
        return result

    # ---------------------------------------------------------------
    # Delete
    # ---------------------------------------------------------------

    def delete_node(self, node_id: str) -> list[str]:
        """Delete a node with its subtree and compact its former siblings.

        Unknown IDs are treated as already deleted.

        Returns:
            IDs of the deleted nodes (empty for an unknown ID).
        """
        return self._run("delete_node", self._delete_node, node_id)

    def _delete_node(self, node_id: str) -> list[str]:
        with self._locked_group(node_id) as (node, parent):
            if node is None:
                logger.debug("Delete of unknown node %s ignored", node_id)
                return []
            deleted = self._store.delete_subtree(node_id)
            if parent is not None and node.rank is not None:
                siblings = self._store.read_children(parent.id, node.kind)
                self._store.write_ranks(parent.id, node.kind, compact_ranks(siblings, node.rank))
                self._verify(parent.id, node.kind)
        logger.info("Deleted %s and %d descendant(s)", node_id, len(deleted) - 1)
        return deleted

    # ---------------------------------------------------------------
    # Attach / detach
    # ---------------------------------------------------------------

    def attach(self, source_id: str, target_id: str, relation: RelationKind) -> Edge:
        """Create an edge from *source_id* to *target_id*.

        Non-hierarchical relations are created directly (attaching an
        existing edge again returns it unchanged). A Contains edge
        re-parents *target_id*: it is appended to the end of the source's
        sibling group, and its former group, if any, is compacted in the
        same transaction.

        Raises:
            ParentNotFoundError: If the Contains source does not exist.
            NodeNotFoundError: If any other endpoint does not exist.
            UnsupportedChildKindError: If the relation is invalid for the
                endpoint kinds.
            CycleDetectedError: If the target contains the source.
        """
        if relation == RelationKind.CONTAINS:
            return self._run("attach", self._attach_child, source_id, target_id)
        return self._run("attach", self._attach_relation, source_id, target_id, relation)

    def move(self, node_id: str, new_parent_id: str) -> Edge:
        """Re-parent *node_id* to the end of *new_parent_id*'s sibling group."""
        return self.attach(new_parent_id, node_id, RelationKind.CONTAINS)

    def _attach_relation(self, source_id: str, target_id: str, relation: RelationKind) -> Edge:
        with self._store.transaction():
            source = self._require(source_id)
            target = self._require(target_id)
            if not can_relate(relation, source.kind, target.kind):
                raise UnsupportedChildKindError(
                    f"{relation.value} is not valid from {source.kind.value} "
                    f"to {target.kind.value}"
                )
            for edge in self._store.get_edges(source_id):
                if edge.target_id == target_id and edge.kind == relation:
                    return edge
            edge = self._store.create_edge(source_id, target_id, relation)
        logger.info("Attached %s -%s-> %s", source_id, relation.value, target_id)
        return edge

    def _attach_child(self, parent_id: str, child_id: str) -> Edge:
        parent = self._store.get_node(parent_id)
        if parent is None:
            raise ParentNotFoundError(parent_id)
        child = self._require(child_id)
        if not can_contain(parent.kind, child.kind):
            raise UnsupportedChildKindError(
                f"A {parent.kind.value} cannot contain a {child.kind.value}"
            )
        old_parent = self._store.get_parent(child_id)
        keys: list[GroupKey] = [(parent_id, child.kind)]
        if old_parent is not None:
            keys.append((old_parent.id, child.kind))

        with self._locks.hold(*keys):
            with self._store.transaction():
                current = self._store.get_parent(child_id)
                if _node_id(current) != _node_id(old_parent):
                    raise InvariantViolationError(f"Node {child_id} moved concurrently")
                if self._store.is_ancestor(child_id, parent_id):
                    raise CycleDetectedError(
                        f"Attaching {child_id} under {parent_id} would create a cycle"
                    )
                child = self._require(child_id)
                if old_parent is not None and old_parent.id == parent_id:
                    return next(
                        e
                        for e in self._store.get_edges(child_id)
                        if e.kind == RelationKind.CONTAINS and e.target_id == child_id
                    )
                if old_parent is not None:
                    self._store.delete_edge(old_parent.id, child_id, RelationKind.CONTAINS)
                    if child.rank is not None:
                        remaining = self._store.read_children(old_parent.id, child.kind)
                        self._store.write_ranks(
                            old_parent.id, child.kind, compact_ranks(remaining, child.rank)
                        )
                    self._verify(old_parent.id, child.kind)

                siblings = self._store.read_children(parent_id, child.kind)
                edge = self._store.create_edge(parent_id, child_id, RelationKind.CONTAINS)
                rank = len(siblings) + 1
                self._store.write_ranks(parent_id, child.kind, [RankedChild(child_id, rank)])
                self._verify(parent_id, child.kind)

        logger.info(
            "Attached %s under %s at rank %d (previous parent: %s)",
            child_id,
            parent_id,
            rank,
            _node_id(old_parent),
        )
        return edge

    def detach(self, source_id: str, target_id: str, relation: RelationKind) -> bool:
        """Remove one edge.

        Detaching a Contains edge turns the target into an orphan: its
        rank is cleared and its former siblings are compacted.

        Returns:
            True if an edge was removed, False if none existed.
        """
        return self._run("detach", self._detach, source_id, target_id, relation)

    def _detach(self, source_id: str, target_id: str, relation: RelationKind) -> bool:
        if relation != RelationKind.CONTAINS:
            removed = self._store.delete_edge(source_id, target_id, relation)
            if removed:
                logger.info("Detached %s -%s-> %s", source_id, relation.value, target_id)
            return removed

        with self._locked_group(target_id) as (node, parent):
            if node is None or parent is None or parent.id != source_id:
                return False
            self._store.delete_edge(source_id, target_id, RelationKind.CONTAINS)
            self._store.clear_rank(target_id)
            if node.rank is not None:
                siblings = self._store.read_children(source_id, node.kind)
                self._store.write_ranks(source_id, node.kind, compact_ranks(siblings, node.rank))
            self._verify(source_id, node.kind)
        logger.info("Detached %s from %s", target_id, source_id)
        return True

    # ---------------------------------------------------------------
    # Rename / repair
    # ---------------------------------------------------------------

    def rename(self, node_id: str, title: str | None = None, body: str | None = None) -> Node:
        """Change a node's title and/or body. Ranks are not touched.

        Raises:
            NodeNotFoundError: If the node does not exist.
        """
        return self._run("rename", self._rename, node_id, title, body)

    def _rename(self, node_id: str, title: str | None, body: str | None) -> Node:
        with self._store.transaction():
            node = self._require(node_id)
            if title is not None:
                node.title = title
            if body is not None:
                node.body = body
            self._store.update_node(node)
        logger.info("Renamed %s", node_id)
        return node

    def repair_ranks(self, parent_id: str, kind: NodeKind) -> list[RankedChild]:
        """Renumber a damaged sibling group to ``1..n`` keeping its order.

        Unranked children are placed after ranked ones, by ID.

        Raises:
            ParentNotFoundError: If the parent does not exist.
        """
        return self._run("repair_ranks", self._repair_ranks, parent_id, kind)

    def _repair_ranks(self, parent_id: str, kind: NodeKind) -> list[RankedChild]:
        with self._locks.hold((parent_id, kind)):
            with self._store.transaction():
                if self._store.get_node(parent_id) is None:
                    raise ParentNotFoundError(parent_id)
                siblings = self._store.read_children(parent_id, kind)
                batch = [
                    RankedChild(id=child.id, rank=index)
                    for index, child in enumerate(siblings, start=1)
                    if child.rank != index
                ]
                self._store.write_ranks(parent_id, kind, batch)
                result = self._verify(parent_id, kind)
        if batch:
            logger.warning("Repaired %d rank(s) under %s/%s", len(batch), parent_id, kind.value)
        return result

    def verify_group(self, parent_id: str, kind: NodeKind) -> list[RankedChild]:
        """Read a sibling group and check that its ranks are ``1..n``.

        Raises:
            InvariantViolationError: If the group is not contiguous.
        """
        return self._verify(parent_id, kind)

    # ---------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------

    def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        """Invoke *func* with the retry policy, keeping errors typed."""
        try:
            return retry_with_backoff(func, self._retry, *args, sleep_func=self._sleep)
        except RetriesExhaustedError as exc:
            raise StoreUnavailableError(
                f"{operation} failed after {exc.attempts} attempts: {exc.last_error}"
            ) from exc.last_error

    def _require(self, node_id: str) -> Node:
        node = self._store.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def _verify(self, parent_id: str, kind: NodeKind) -> list[RankedChild]:
        siblings = self._store.read_children(parent_id, kind)
        if not is_contiguous(siblings):
            ranks = [c.rank for c in siblings]
            raise InvariantViolationError(
                f"Ranks under {parent_id}/{kind.value} are not contiguous: {ranks}"
            )
        return siblings

    @contextmanager
    def _locked_group(self, node_id: str) -> Iterator[tuple[Node | None, Node | None]]:
        """Lock the sibling group of *node_id* and open a transaction.

        Yields ``(node, parent)`` read inside the transaction, or
        ``(None, None)`` when the node does not exist. The parent is read
        once to pick the lock and again under it; if the node moved in
        between, the lock is released and the read repeated.
        """
        for _ in range(_MAX_RELOCK_ATTEMPTS):
            node = self._store.get_node(node_id)
            if node is None:
                yield None, None
                return
            parent = self._store.get_parent(node_id)
            key = (parent.id if parent is not None else f"orphan:{node_id}", node.kind)
            with self._locks.hold(key):
                with self._store.transaction():
                    current_node = self._store.get_node(node_id)
                    current_parent = self._store.get_parent(node_id)
                    if current_node is None:
                        yield None, None
                        return
                    if _node_id(current_parent) == _node_id(parent):
                        yield current_node, current_parent
                        return
            logger.debug("Parent of %s changed while locking; retrying", node_id)
        raise InvariantViolationError(f"Parent of {node_id} kept changing")


def _node_id(node: Node | None) -> str | None:
    return node.id if node is not None else None
