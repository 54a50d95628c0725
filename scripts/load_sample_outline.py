"""
Load a sample outline into a Trellis database and export it.

Builds a small paper outline (sections, paragraphs, cited passages and
their source documents), prints its numbering, and writes an RTF
export next to the database.

Usage::

    python scripts/load_sample_outline.py [data/trellis/sample.db]
"""

from __future__ import annotations

import sys
from pathlib import Path

from trellis.src.exporters import ExporterRegistry, export_filename
from trellis.src.models import NodeKind, RelationKind
from trellis.src.numbering import compute_numbers
from trellis.src.ordering import OutlineEngine
from trellis.src.storage import SQLiteGraphStore

SAMPLE_SECTIONS: list[tuple[str, list[str]]] = [
    ("Introduction", ["Fatigue cracks start at fastener holes."]),
    ("Related Work", []),
    ("Method", ["Specimens were loaded to 80% of yield."]),
    ("Results", []),
]


def seed_sample_outline(engine: OutlineEngine) -> str:
    """Create the sample outline and return its root ID."""
    root = engine.create_root("Crack Growth in Riveted Joints")
    doc = engine.create_node(
        NodeKind.EXTERNAL_DOC, "Schijve 2009", properties={"importance": 3}
    )

    for title, paragraphs in SAMPLE_SECTIONS:
        section = engine.insert_child(root.id, NodeKind.BRANCH, title)
        for statement in paragraphs:
            leaf = engine.insert_child(section, NodeKind.LEAF, statement)
            quote = engine.create_node(
                NodeKind.CITATION,
                "",
                body="Most fatigue failures in aircraft\nstart at joints.",
            )
            engine.attach(leaf, quote.id, RelationKind.CITES)
            engine.attach(quote.id, doc.id, RelationKind.LINKED_FROM)

    method = engine.store.read_children(root.id, NodeKind.BRANCH)[2].id
    engine.insert_child(method, NodeKind.BRANCH, "Specimens")
    engine.insert_child(method, NodeKind.BRANCH, "Loading")
    return root.id


def main(db_path: Path) -> Path:
    """Seed *db_path*, print the numbering and write an RTF export."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with SQLiteGraphStore(db_path) as store:
        store.initialize_schema()
        engine = OutlineEngine(store)
        root_id = seed_sample_outline(engine)
        snapshot = store.read_snapshot(root_id)

    numbering = compute_numbers(snapshot)
    for node_id, label in sorted(numbering.items(), key=lambda item: item[1]):
        print(f"  {label:<8} {snapshot.nodes[node_id].title}")

    exporter = ExporterRegistry.require("rtf")
    root = snapshot.root
    name = export_filename(root.title if root else "", root_id, exporter.FILE_EXTENSION)
    out = exporter.export(
        snapshot, numbering, db_path.parent / name, base_directory=db_path.parent
    )
    print(f"Exported: {out}")
    return out


if __name__ == "__main__":
    target = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("data/trellis/sample.db")
    main(target)
