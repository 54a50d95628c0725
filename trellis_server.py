"""Trellis backend server.

Mounts the Trellis outline router under a FastAPI application. The
router is mounted lazily so that a storage failure at startup does not
prevent the server from starting -- the health endpoint then reports
why the outline service is unavailable.

Usage::

    # Development (auto-reload)
    uvicorn trellis_server:app --reload --port 8420

    # Or run directly, optionally with a JSON config file
    python trellis_server.py [config.json]
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trellis.src.config import TrellisConfig, load_config

logger = logging.getLogger("trellis")

_config: TrellisConfig = TrellisConfig()

# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Trellis API",
    description=(
        "Backend for Trellis: ranked outlines, display numbering "
        "and document export."
    ),
    version="0.1.0",
)

# ---------------------------------------------------------------------------
# CORS -- allow local canvas dev server origins
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=_config.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Service loading state
# ---------------------------------------------------------------------------

_service_status: dict[str, Any] = {"loaded": False, "error": None}


def _mount_trellis(config: TrellisConfig) -> None:
    """Mount the Trellis router at ``/api/trellis/``.

    Initializes the graph store at ``config.db_path``, creating its
    parent directory when needed.
    """
    try:
        from trellis.src.server import init_trellis_storage, router as trellis_router

        if config.db_path != ":memory:":
            Path(config.db_path).parent.mkdir(parents=True, exist_ok=True)
        init_trellis_storage(config.db_path, config)

        app.include_router(trellis_router, prefix="/api/trellis", tags=["trellis"])
        _service_status["loaded"] = True
        logger.info("Trellis router mounted at /api/trellis/")
    except Exception as exc:
        _service_status["error"] = str(exc)
        logger.warning("Trellis router failed to load: %s", exc)


@app.get("/api/health")
async def unified_health() -> dict[str, Any]:
    """Return overall server health.

    Returns:
        Dictionary with status ("ok" or "error") and the service state.
    """
    return {
        "status": "ok" if _service_status["loaded"] else "error",
        "version": "0.1.0",
        "service": _service_status,
    }


_mount_trellis(_config)


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------


def run_server(config: TrellisConfig | None = None) -> None:
    """Start the Trellis server via uvicorn.

    Args:
        config: Service configuration. When given, the store mounted at
            import is replaced by one built from it.
    """
    import uvicorn

    cfg = config or _config
    if config is not None:
        from trellis.src.server import init_trellis_storage

        if cfg.db_path != ":memory:":
            Path(cfg.db_path).parent.mkdir(parents=True, exist_ok=True)
        init_trellis_storage(cfg.db_path, cfg)
    uvicorn.run(app, host=cfg.host, port=cfg.port)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    run_server(load_config(sys.argv[1]) if len(sys.argv) > 1 else None)
