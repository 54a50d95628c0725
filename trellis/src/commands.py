"""Structural mutations as command objects.

Each command is an immutable description of one engine call. An
``OutlineSession`` applies commands to one outline and re-runs the
numbering pass afterwards, reporting only the labels that changed.

Example::

    session = OutlineSession(engine, root_id)
    result = session.execute(Reorder(node_id=section_id, new_rank=1))
    for node_id, label in result.changed_labels.items():
        canvas.set_label(node_id, label)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from trellis.src.errors import NodeNotFoundError
from trellis.src.models import ForestSnapshot, NodeKind, RelationKind
from trellis.src.numbering import (
    DEFAULT_NUMBERED_KINDS,
    NumberingDiff,
    compute_numbers,
    diff_numbers,
    find_duplicate_labels,
)
from trellis.src.ordering import OutlineEngine

logger = logging.getLogger(__name__)


class Command(Protocol):
    """Anything that can run itself against an engine."""

    def apply(self, engine: OutlineEngine) -> Any: ...


@dataclass(frozen=True)
class CreateRoot:
    title: str

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.create_root(self.title)


@dataclass(frozen=True)
class CreateNode:
    """Create a node outside any sibling group (citation, document, orphan)."""

    kind: NodeKind
    title: str
    body: str = ""
    properties: dict[str, Any] = field(default_factory=dict)

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.create_node(self.kind, self.title, self.body, dict(self.properties))


@dataclass(frozen=True)
class InsertChild:
    parent_id: str
    child_kind: NodeKind
    title: str
    body: str = ""

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.insert_child(self.parent_id, self.child_kind, self.title, self.body)


@dataclass(frozen=True)
class Reorder:
    node_id: str
    new_rank: int

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.reorder(self.node_id, self.new_rank)


@dataclass(frozen=True)
class DeleteNode:
    node_id: str

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.delete_node(self.node_id)


@dataclass(frozen=True)
class Attach:
    source_id: str
    target_id: str
    relation: RelationKind

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.attach(self.source_id, self.target_id, self.relation)


@dataclass(frozen=True)
class Detach:
    source_id: str
    target_id: str
    relation: RelationKind

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.detach(self.source_id, self.target_id, self.relation)


@dataclass(frozen=True)
class Rename:
    node_id: str
    title: str | None = None
    body: str | None = None

    def apply(self, engine: OutlineEngine) -> Any:
        return engine.rename(self.node_id, self.title, self.body)


@dataclass
class CommandResult:
    """Outcome of one command.

    Attributes:
        value: Whatever the engine call returned.
        changed_labels: Node ID -> label for new or relabelled nodes.
        removed_labels: IDs whose label disappeared.
        duplicate_labels: Labels held by more than one node; non-empty
            only when a sibling group has damaged ranks.
    """

    value: Any
    changed_labels: dict[str, str] = field(default_factory=dict)
    removed_labels: list[str] = field(default_factory=list)
    duplicate_labels: dict[str, list[str]] = field(default_factory=dict)

    @property
    def labels_changed(self) -> bool:
        return bool(self.changed_labels or self.removed_labels)


class OutlineSession:
    """Apply commands to one outline and keep its numbering current.

    The session caches only the last computed labels, never ranks: every
    command re-reads a fresh snapshot from the store after it runs.

    Args:
        engine: Engine performing the mutations.
        root_id: Root of the outline, or None to adopt the first root
            created through this session.
        numbered_kinds: Kinds that receive display labels.
        on_labels: Called with each non-empty label diff.
    """

    def __init__(
        self,
        engine: OutlineEngine,
        root_id: str | None = None,
        numbered_kinds: frozenset[NodeKind] = DEFAULT_NUMBERED_KINDS,
        on_labels: Callable[[NumberingDiff], None] | None = None,
    ) -> None:
        self._engine = engine
        self._root_id = root_id
        self._numbered_kinds = numbered_kinds
        self._on_labels = on_labels
        self._lock = threading.Lock()
        self._labels: dict[str, str] = self._compute() if root_id is not None else {}

    @property
    def root_id(self) -> str | None:
        return self._root_id

    @property
    def labels(self) -> dict[str, str]:
        """Labels as of the last executed command."""
        return dict(self._labels)

    def snapshot(self) -> ForestSnapshot | None:
        """Fresh snapshot of the session's outline, or None if it is gone."""
        if self._root_id is None:
            return None
        try:
            return self._engine.store.read_snapshot(self._root_id)
        except NodeNotFoundError:
            return None

    def execute(self, command: Command) -> CommandResult:
        """Apply *command*, then renumber and diff against the last labels.

        Engine errors propagate unchanged and leave the cached labels
        as they were.
        """
        with self._lock:
            value = command.apply(self._engine)
            if self._root_id is None and isinstance(command, CreateRoot):
                self._root_id = value.id
            new_labels = self._compute()
            diff = diff_numbers(self._labels, new_labels)
            self._labels = new_labels

        logger.debug(
            "%s: %d label(s) changed, %d removed",
            type(command).__name__,
            len(diff.changed),
            len(diff.removed),
        )
        duplicates = find_duplicate_labels(new_labels)
        if duplicates:
            logger.warning(
                "Outline %s has duplicate labels %s; run repair_ranks on the affected groups",
                self._root_id,
                sorted(duplicates),
            )
        if not diff.is_empty and self._on_labels is not None:
            self._on_labels(diff)
        return CommandResult(
            value=value,
            changed_labels=diff.changed,
            removed_labels=diff.removed,
            duplicate_labels=duplicates,
        )

    def _compute(self) -> dict[str, str]:
        snapshot = self.snapshot()
        if snapshot is None:
            return {}
        return compute_numbers(snapshot, self._numbered_kinds)
