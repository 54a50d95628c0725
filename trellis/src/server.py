"""FastAPI router for the Trellis outline service.

Exposes REST endpoints for outline roots, nodes, edges, sibling
reordering, numbering, linearized blocks and document export. Designed
to be mounted at /api/trellis/ by the parent application.

All endpoint functions are synchronous (not async) because the
underlying SQLiteGraphStore uses synchronous SQLite calls. FastAPI runs
sync handlers in a thread pool automatically; the ordering engine's
sibling locks serialize concurrent edits of the same group.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException, Response
from pydantic import BaseModel, Field

from shared.hardening import ErrorFormatter, InputValidator, SystemHealthChecker, ValidationError
from trellis.src.config import TrellisConfig
from trellis.src.errors import (
    CycleDetectedError,
    InvariantViolationError,
    NodeNotFoundError,
    OutlineError,
    ParentNotFoundError,
    RankOutOfRangeError,
    StoreUnavailableError,
    UnsupportedChildKindError,
)
from trellis.src.exporters import ExporterRegistry, export_filename
from trellis.src.linearizer import LinearizerConfig, escape_plain, linearize
from trellis.src.models import Node, NodeKind, NodeRef, RelationKind
from trellis.src.numbering import compute_numbers
from trellis.src.ordering import OutlineEngine, SiblingLockRegistry
from trellis.src.storage import SQLiteGraphStore

logger = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Module-level service objects (initialized by init_trellis_storage)
# ---------------------------------------------------------------------------

_store: SQLiteGraphStore | None = None
_engine: OutlineEngine | None = None
_linearizer_config: LinearizerConfig = LinearizerConfig()
_health: SystemHealthChecker = SystemHealthChecker()
_validator = InputValidator()
_formatter = ErrorFormatter()

_STATUS_BY_ERROR: dict[type[OutlineError], int] = {
    NodeNotFoundError: 404,
    ParentNotFoundError: 404,
    UnsupportedChildKindError: 422,
    CycleDetectedError: 422,
    RankOutOfRangeError: 422,
    InvariantViolationError: 409,
    StoreUnavailableError: 503,
}


def init_trellis_storage(
    db_path: str | Path = ":memory:",
    config: TrellisConfig | None = None,
) -> SQLiteGraphStore:
    """Initialize the graph store, the ordering engine and health probes.

    Call this once at application startup before any requests are served.

    Args:
        db_path: Path to SQLite database file, or ':memory:'.
        config: Service configuration; defaults are used when None.

    Returns:
        The initialized SQLiteGraphStore instance.
    """
    global _store, _engine, _linearizer_config, _health

    cfg = config or TrellisConfig(db_path=str(db_path))
    if _store is not None:
        _store.close()
    _store = SQLiteGraphStore(db_path)
    _store.initialize_schema()
    _engine = OutlineEngine(
        _store,
        locks=SiblingLockRegistry(timeout=cfg.lock_timeout_seconds),
        retry=cfg.retry,
    )
    _linearizer_config = cfg.linearizer_config()
    _health = SystemHealthChecker({"graph_store": _store.ping})
    logger.info("Trellis storage initialized at %s", db_path)
    return _store


def get_engine() -> OutlineEngine:
    """Return the initialized OutlineEngine or raise.

    Raises:
        HTTPException: If storage has not been initialized.
    """
    if _engine is None:
        raise HTTPException(
            status_code=500,
            detail="Trellis storage not initialized",
        )
    return _engine


def _http_error(exc: OutlineError) -> HTTPException:
    """Translate a typed outline error into an HTTPException."""
    status = _STATUS_BY_ERROR.get(type(exc), 500)
    if isinstance(exc, StoreUnavailableError):
        friendly = _formatter.format_storage_error(exc)
    else:
        friendly = _formatter.format_ordering_error(exc)
    logger.info("Request failed with %s: %s", friendly.error_code, friendly.technical_detail)
    return HTTPException(status_code=status, detail=friendly.to_dict())


def _validation_error(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=str(exc))


def _node_payload(node: Node) -> dict[str, Any]:
    payload = node.to_dict()
    payload["ref"] = str(node.ref)
    return payload


def _require_node(engine: OutlineEngine, node_id: str) -> Node:
    node = engine.store.get_node(node_id)
    if node is None:
        raise _http_error(NodeNotFoundError(node_id))
    return node


def _resolve_ref(engine: OutlineEngine, text: str) -> Node:
    """Parse a ``kind:id`` reference and check it against the stored node."""
    try:
        ref = NodeRef.parse(text)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    node = _require_node(engine, ref.id)
    if node.kind != ref.kind:
        raise HTTPException(
            status_code=422,
            detail=f"Node {ref.id} is a {node.kind.value}, not a {ref.kind.value}",
        )
    return node


# ---------------------------------------------------------------------------
# Pydantic request models
# ---------------------------------------------------------------------------


class RootCreate(BaseModel):
    """Request body for creating an outline root."""

    title: str = Field(..., min_length=1, max_length=500)


class NodeCreate(BaseModel):
    """Request body for creating a node outside any sibling group."""

    kind: NodeKind
    title: str = Field(default="", max_length=500)
    body: str = Field(default="", max_length=20_000)
    properties: dict[str, Any] = Field(default_factory=dict)


class ChildCreate(BaseModel):
    """Request body for inserting a child at the end of its group."""

    kind: NodeKind
    title: str = Field(..., min_length=1, max_length=500)
    body: str = Field(default="", max_length=20_000)


class NodeUpdate(BaseModel):
    """Request body for renaming a node."""

    title: str | None = Field(default=None, max_length=500)
    body: str | None = Field(default=None, max_length=20_000)


class RankUpdate(BaseModel):
    """Request body for moving a node inside its sibling group."""

    rank: int


class EdgeRequest(BaseModel):
    """Request body naming one edge by tagged node references."""

    source: str = Field(..., description="Source node as '<kind>:<id>'")
    target: str = Field(..., description="Target node as '<kind>:<id>'")
    relation: RelationKind


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health")
def health_check() -> dict[str, Any]:
    """Return Trellis service health status.

    Returns:
        Dict with status, version, storage availability and probe results.
    """
    checks = _health.check_all()
    return {
        "status": _health.overall_status() if _store is not None else "error",
        "service": "trellis",
        "version": "0.1.0",
        "storage_initialized": _store is not None,
        "checks": [c.to_dict() for c in checks],
    }


# ---------------------------------------------------------------------------
# Roots and nodes
# ---------------------------------------------------------------------------


@router.get("/roots")
def list_roots() -> dict[str, Any]:
    """List all outline roots, oldest first."""
    engine = get_engine()
    try:
        return {"roots": [_node_payload(n) for n in engine.store.list_roots()]}
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.post("/roots", status_code=201)
def create_root(body: RootCreate) -> dict[str, Any]:
    """Create a new outline root."""
    engine = get_engine()
    try:
        title = _validator.validate_title(body.title)
        return _node_payload(engine.create_root(title))
    except ValidationError as exc:
        raise _validation_error(exc) from exc
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.post("/nodes", status_code=201)
def create_node(body: NodeCreate) -> dict[str, Any]:
    """Create a citation, external document or orphan node."""
    engine = get_engine()
    if body.kind == NodeKind.ROOT:
        raise HTTPException(status_code=422, detail="Use POST /roots to create a root")
    try:
        title = _validator.validate_title(body.title) if body.title else ""
        text = _validator.validate_body(body.body)
        node = engine.create_node(body.kind, title, text, body.properties)
        return _node_payload(node)
    except ValidationError as exc:
        raise _validation_error(exc) from exc
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.get("/nodes/{node_id}")
def get_node(node_id: str) -> dict[str, Any]:
    """Get a single node by ID."""
    engine = get_engine()
    try:
        return _node_payload(_require_node(engine, node_id))
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.post("/nodes/{parent_id}/children", status_code=201)
def insert_child(parent_id: str, body: ChildCreate) -> dict[str, Any]:
    """Insert a new node at the end of the parent's sibling group."""
    engine = get_engine()
    try:
        title = _validator.validate_title(body.title)
        text = _validator.validate_body(body.body)
        node_id = engine.insert_child(parent_id, body.kind, title, text)
        return _node_payload(_require_node(engine, node_id))
    except ValidationError as exc:
        raise _validation_error(exc) from exc
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.patch("/nodes/{node_id}")
def rename_node(node_id: str, body: NodeUpdate) -> dict[str, Any]:
    """Change a node's title and/or body."""
    engine = get_engine()
    try:
        title = _validator.validate_title(body.title) if body.title is not None else None
        text = _validator.validate_body(body.body) if body.body is not None else None
        return _node_payload(engine.rename(node_id, title, text))
    except ValidationError as exc:
        raise _validation_error(exc) from exc
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.put("/nodes/{node_id}/rank")
def reorder_node(node_id: str, body: RankUpdate) -> dict[str, Any]:
    """Move a node to a new rank inside its sibling group."""
    engine = get_engine()
    try:
        siblings = engine.reorder(node_id, body.rank)
        return {"siblings": [{"id": c.id, "rank": c.rank} for c in siblings]}
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.delete("/nodes/{node_id}")
def delete_node(node_id: str) -> dict[str, Any]:
    """Delete a node and its subtree. Unknown IDs delete nothing."""
    engine = get_engine()
    try:
        return {"deleted": engine.delete_node(node_id)}
    except OutlineError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------


@router.post("/edges", status_code=201)
def attach_edge(body: EdgeRequest) -> dict[str, Any]:
    """Create an edge; a Contains edge moves the target under the source."""
    engine = get_engine()
    try:
        source = _resolve_ref(engine, body.source)
        target = _resolve_ref(engine, body.target)
        edge = engine.attach(source.id, target.id, body.relation)
        return edge.to_dict()
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.post("/edges/detach")
def detach_edge(body: EdgeRequest) -> dict[str, Any]:
    """Remove an edge; detaching a Contains edge orphans the target."""
    engine = get_engine()
    try:
        source = _resolve_ref(engine, body.source)
        target = _resolve_ref(engine, body.target)
        return {"detached": engine.detach(source.id, target.id, body.relation)}
    except OutlineError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Outline views
# ---------------------------------------------------------------------------


@router.get("/outlines/{root_id}")
def get_outline(root_id: str) -> dict[str, Any]:
    """Return the outline snapshot together with its display numbers."""
    engine = get_engine()
    try:
        snapshot = engine.store.read_snapshot(root_id)
        data = snapshot.to_dict()
        data["numbering"] = compute_numbers(snapshot, _linearizer_config.numbered_kinds)
        return data
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.get("/outlines/{root_id}/numbers")
def get_numbers(root_id: str) -> dict[str, Any]:
    """Return the display numbers of an outline."""
    engine = get_engine()
    try:
        snapshot = engine.store.read_snapshot(root_id)
        return {"numbering": compute_numbers(snapshot, _linearizer_config.numbered_kinds)}
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.get("/outlines/{root_id}/blocks")
def get_blocks(root_id: str) -> dict[str, Any]:
    """Return the linearized outline as unescaped blocks."""
    engine = get_engine()
    try:
        snapshot = engine.store.read_snapshot(root_id)
        numbering = compute_numbers(snapshot, _linearizer_config.numbered_kinds)
        blocks = linearize(snapshot, numbering, escape=escape_plain, config=_linearizer_config)
        return {"blocks": [b.to_dict() for b in blocks]}
    except OutlineError as exc:
        raise _http_error(exc) from exc


@router.get("/outlines/{root_id}/export")
def export_outline(root_id: str, format: str = "rtf") -> Response:
    """Export an outline as a downloadable document.

    Args:
        root_id: Root of the outline to export.
        format: Exporter name (rtf, json or text).
    """
    engine = get_engine()
    try:
        exporter = ExporterRegistry.require(format)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        snapshot = engine.store.read_snapshot(root_id)
        numbering = compute_numbers(snapshot, _linearizer_config.numbered_kinds)
        content = exporter.render(snapshot, numbering, _linearizer_config)
    except OutlineError as exc:
        if isinstance(exc, NodeNotFoundError):
            raise _http_error(exc) from exc
        friendly = _formatter.format_export_error(exc)
        raise HTTPException(
            status_code=_STATUS_BY_ERROR.get(type(exc), 500), detail=friendly.to_dict()
        ) from exc

    root = snapshot.root
    filename = export_filename(root.title if root else "", root_id, exporter.FILE_EXTENSION)
    logger.info("Exported outline %s as %s", root_id, format)
    return Response(
        content=content,
        media_type=exporter.MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
