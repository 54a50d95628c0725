"""Concurrent edits of one outline through a file-backed store.

Each worker thread opens its own connection to the same database file,
so these tests exercise both the shared sibling locks and SQLite's
``BEGIN IMMEDIATE`` serialization.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from trellis.src.models import NodeKind
from trellis.src.numbering import compute_numbers, find_duplicate_labels
from trellis.src.ordering import OutlineEngine, SiblingLockRegistry, is_contiguous
from trellis.src.storage import SQLiteGraphStore

WORKERS = 4
OPS_PER_WORKER = 15


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "outline.db"
    with SQLiteGraphStore(path) as store:
        store.initialize_schema()
    return path


@pytest.fixture
def open_stores(db_path: Path) -> Iterator[Callable[[], SQLiteGraphStore]]:
    """Factory for extra connections; all are closed after the test."""
    opened: list[SQLiteGraphStore] = []

    def _open() -> SQLiteGraphStore:
        store = SQLiteGraphStore(db_path, timeout=10.0)
        opened.append(store)
        return store

    yield _open
    for store in opened:
        store.close()


def _run_workers(target: Callable[[int], None]) -> list[BaseException]:
    errors: list[BaseException] = []

    def wrapped(index: int) -> None:
        try:
            target(index)
        except BaseException as exc:  # noqa: BLE001 - collected and asserted below
            errors.append(exc)

    threads = [threading.Thread(target=wrapped, args=(i,)) for i in range(WORKERS)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return errors


class TestConcurrentEdits:
    """Rank contiguity survives interleaved writers."""

    @pytest.mark.parametrize("shared_locks", [True, False])
    def test_concurrent_inserts_and_reorders(
        self,
        open_stores: Callable[[], SQLiteGraphStore],
        shared_locks: bool,
    ) -> None:
        setup = OutlineEngine(open_stores())
        root = setup.create_root("Shared")
        seeds = [setup.insert_child(root.id, NodeKind.BRANCH, f"s{i}") for i in range(4)]
        registry = SiblingLockRegistry(timeout=30.0)

        def worker(index: int) -> None:
            rng = random.Random(index)
            engine = OutlineEngine(
                open_stores(),
                locks=registry if shared_locks else SiblingLockRegistry(timeout=30.0),
                sleep_func=lambda _: None,
            )
            for step in range(OPS_PER_WORKER):
                if rng.random() < 0.4:
                    engine.insert_child(root.id, NodeKind.BRANCH, f"w{index}-{step}")
                else:
                    count = len(engine.store.read_children(root.id, NodeKind.BRANCH))
                    engine.reorder(rng.choice(seeds), rng.randint(1, count))

        errors = _run_workers(worker)
        assert errors == []

        check = open_stores()
        group = check.read_children(root.id, NodeKind.BRANCH)
        assert is_contiguous(group)
        assert set(seeds) <= {c.id for c in group}
        labels = compute_numbers(check.read_snapshot(root.id))
        assert find_duplicate_labels(labels) == {}
        assert len(labels) == len(group)

    def test_concurrent_deletes_compact(self, open_stores: Callable[[], SQLiteGraphStore]) -> None:
        setup = OutlineEngine(open_stores())
        root = setup.create_root("Shrinking")
        ids = [setup.insert_child(root.id, NodeKind.BRANCH, f"n{i}") for i in range(WORKERS * 3)]
        registry = SiblingLockRegistry(timeout=30.0)

        def worker(index: int) -> None:
            engine = OutlineEngine(open_stores(), locks=registry, sleep_func=lambda _: None)
            for node_id in ids[index::WORKERS][:2]:
                engine.delete_node(node_id)

        assert _run_workers(worker) == []
        group = open_stores().read_children(root.id, NodeKind.BRANCH)
        assert len(group) == WORKERS
        assert is_contiguous(group)
