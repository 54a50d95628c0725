"""Dot-decimal display numbering for an outline snapshot.

Labels are derived, never stored as truth: the first section under the
root is ``1.``, its second sub-section ``1.2.``, and so on. The pass
reads ranks only, so two runs over the same snapshot always agree and
a label changes exactly when the rank path leading to it changes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from trellis.src.models import ForestSnapshot, Node, NodeKind, RelationKind

logger = logging.getLogger(__name__)

DEFAULT_NUMBERED_KINDS: frozenset[NodeKind] = frozenset({NodeKind.BRANCH})


def compute_numbers(
    snapshot: ForestSnapshot,
    numbered_kinds: Iterable[NodeKind] = DEFAULT_NUMBERED_KINDS,
) -> dict[str, str]:
    """Assign a display label to every numbered node reachable from the root.

    Only Contains edges are followed. At each node, the children of a
    numbered kind that carry a rank are visited in ``(rank, id)`` order
    and labelled ``parent_label + "<rank>."`` (the root's label is the
    empty string). Unranked nodes, and everything below them, get no
    label. Each node is visited at most once, so malformed input with
    cycles terminates.

    Args:
        snapshot: Outline snapshot to number.
        numbered_kinds: Node kinds that receive labels.

    Returns:
        Mapping of node ID to label; empty when the snapshot has no root.
    """
    kinds = frozenset(numbered_kinds)
    root = snapshot.root
    if root is None:
        return {}

    labels: dict[str, str] = {}
    visited: set[str] = {root.id}
    stack: list[tuple[Node, str]] = [(root, "")]
    while stack:
        node, prefix = stack.pop()
        children = [
            child
            for child in snapshot.targets(node.id, RelationKind.CONTAINS)
            if child.kind in kinds and child.rank is not None
        ]
        children.sort(key=lambda c: (c.rank, c.id))
        # Reversed so the stack pops children in rank order.
        for child in reversed(children):
            if child.id in visited:
                logger.warning("Skipping %s: reached twice while numbering", child.id)
                continue
            visited.add(child.id)
            label = f"{prefix}{child.rank}."
            labels[child.id] = label
            stack.append((child, label))
    return labels


@dataclass
class NumberingDiff:
    """Label changes between two numbering passes.

    Attributes:
        changed: Node ID -> new label, for new or relabelled nodes.
        removed: IDs that had a label before and have none now.
    """

    changed: dict[str, str] = field(default_factory=dict)
    removed: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.changed and not self.removed

    def to_dict(self) -> dict[str, object]:
        """Serialize to dictionary."""
        return {"changed": dict(self.changed), "removed": list(self.removed)}


def diff_numbers(old: dict[str, str], new: dict[str, str]) -> NumberingDiff:
    """Compare two numberings so label sinks only write what changed."""
    changed = {node_id: label for node_id, label in new.items() if old.get(node_id) != label}
    removed = sorted(node_id for node_id in old if node_id not in new)
    return NumberingDiff(changed=changed, removed=removed)


def find_duplicate_labels(labels: dict[str, str]) -> dict[str, list[str]]:
    """Return labels held by more than one node (a sign of damaged ranks)."""
    holders: dict[str, list[str]] = {}
    for node_id, label in labels.items():
        holders.setdefault(label, []).append(node_id)
    return {label: sorted(ids) for label, ids in holders.items() if len(ids) > 1}
