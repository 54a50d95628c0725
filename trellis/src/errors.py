"""Typed errors raised by the Trellis ordering engine and graph store.

Every error carries a stable machine-readable ``code`` and a
``retryable`` flag. Callers surface retryable failures to the user as
"try again" and leave the previously displayed outline untouched.
"""

from __future__ import annotations

from typing import ClassVar


class OutlineError(Exception):
    """Base class for all outline errors."""

    code: ClassVar[str] = "outline_error"
    retryable: ClassVar[bool] = False


class ParentNotFoundError(OutlineError):
    """Raised when the parent of an insert or attach does not exist."""

    code: ClassVar[str] = "parent_not_found"

    def __init__(self, parent_id: str) -> None:
        self.parent_id = parent_id
        super().__init__(f"Parent node not found: {parent_id}")


class NodeNotFoundError(OutlineError):
    """Raised when an operation targets a node that does not exist."""

    code: ClassVar[str] = "node_not_found"

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class UnsupportedChildKindError(OutlineError):
    """Raised when a kind (or relation) is not valid for its endpoints."""

    code: ClassVar[str] = "unsupported_child_kind"


class RankOutOfRangeError(OutlineError):
    """Raised when a requested rank lies outside ``1..n``."""

    code: ClassVar[str] = "rank_out_of_range"

    def __init__(self, node_id: str, rank: int, sibling_count: int) -> None:
        self.node_id = node_id
        self.rank = rank
        self.sibling_count = sibling_count
        super().__init__(
            f"Rank {rank} out of range for {node_id}: "
            f"expected 1..{sibling_count}"
        )


class CycleDetectedError(OutlineError):
    """Raised when a containment edge would make a node its own ancestor."""

    code: ClassVar[str] = "cycle_detected"


class StoreUnavailableError(OutlineError):
    """Raised on transport or transaction failure in the backing store."""

    code: ClassVar[str] = "store_unavailable"
    retryable: ClassVar[bool] = True


class InvariantViolationError(OutlineError):
    """Raised when a read-back shows a non-contiguous or duplicated rank set."""

    code: ClassVar[str] = "invariant_violation"
    retryable: ClassVar[bool] = True
