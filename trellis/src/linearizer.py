"""Depth-first linearization of an outline into formatted blocks.

The linearizer walks the snapshot in the same order the numbering pass
uses and produces one ``Block`` per output line. Blocks carry escaped
text plus layout hints; turning them into bytes is the exporters' job.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from trellis.src.models import ForestSnapshot, Node, NodeKind, RelationKind

logger = logging.getLogger(__name__)

Escaper = Callable[[str], str]


def escape_rtf(text: str) -> str:
    """Escape text for an RTF body.

    Backslash and braces get a backslash; every non-ASCII character is
    written as ``\\uN?`` with N the signed 16-bit UTF-16 code unit, so
    characters outside the BMP become a surrogate pair of escapes.
    """
    out: list[str] = []
    for char in text:
        if char in "\\{}":
            out.append("\\" + char)
        elif ord(char) < 128:
            out.append(char)
        else:
            encoded = char.encode("utf-16-le")
            for i in range(0, len(encoded), 2):
                unit = int.from_bytes(encoded[i : i + 2], "little")
                if unit > 32767:
                    unit -= 65536
                out.append(f"\\u{unit}?")
    return "".join(out)


def escape_plain(text: str) -> str:
    """Identity escaper for plain-text and JSON output."""
    return text


@dataclass(frozen=True)
class StyleHints:
    """Layout hints for one block.

    ``font_size`` is in RTF half-points (24 is 12pt); None means the
    document default.
    """

    centered: bool = False
    bold: bool = False
    italic: bool = False
    font_size: int | None = None
    hanging_indent: bool = False
    label_bold: bool = False
    label_italic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "centered": self.centered,
            "bold": self.bold,
            "italic": self.italic,
            "font_size": self.font_size,
            "hanging_indent": self.hanging_indent,
            "label_bold": self.label_bold,
            "label_italic": self.label_italic,
        }


@dataclass
class Block:
    """One formatted output line.

    Attributes:
        text: Escaped line text.
        indent_level: Indentation steps from the left margin.
        style_hints: How the line should look.
        node_id: Node this line was produced from.
        kind: Kind of that node.
        label: Escaped lead-in ("1.2.", "Paragraph 3:"), or None.
        annotation: Escaped trailing note (source document), or None.
        continuation: True for the second and later lines of one node.
    """

    text: str
    indent_level: int
    style_hints: StyleHints
    node_id: str
    kind: NodeKind
    label: str | None = None
    annotation: str | None = None
    continuation: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "text": self.text,
            "indent_level": self.indent_level,
            "style_hints": self.style_hints.to_dict(),
            "node_id": self.node_id,
            "kind": self.kind.value,
            "label": self.label,
            "annotation": self.annotation,
            "continuation": self.continuation,
        }


@dataclass
class LinearizerConfig:
    """Label words and size hints used by ``linearize``."""

    leaf_label: str = "Paragraph"
    citation_label: str = "Reference"
    source_label: str = "Source"
    root_font_size: int = 32
    fallback_font_size: int = 20
    numbered_kinds: tuple[NodeKind, ...] = field(default=(NodeKind.BRANCH,))

    def to_dict(self) -> dict[str, Any]:
        return {
            "leaf_label": self.leaf_label,
            "citation_label": self.citation_label,
            "source_label": self.source_label,
            "root_font_size": self.root_font_size,
            "fallback_font_size": self.fallback_font_size,
            "numbered_kinds": [k.value for k in self.numbered_kinds],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinearizerConfig:
        defaults = cls()
        return cls(
            leaf_label=data.get("leaf_label", defaults.leaf_label),
            citation_label=data.get("citation_label", defaults.citation_label),
            source_label=data.get("source_label", defaults.source_label),
            root_font_size=data.get("root_font_size", defaults.root_font_size),
            fallback_font_size=data.get("fallback_font_size", defaults.fallback_font_size),
            numbered_kinds=tuple(
                NodeKind(k) for k in data.get("numbered_kinds", [NodeKind.BRANCH.value])
            ),
        )


def linearize(
    snapshot: ForestSnapshot,
    numbering: dict[str, str],
    escape: Escaper = escape_rtf,
    config: LinearizerConfig | None = None,
) -> list[Block]:
    """Flatten an outline into blocks in depth-first pre-order.

    Children are visited in the order given by
    ``ForestSnapshot.ordered_children``: leaves, then branches, each by
    rank. A Leaf's cited passages follow the Leaf directly. Malformed
    input never raises: unknown kinds get a fallback block, and nodes
    reached twice are emitted once.

    Args:
        snapshot: Outline snapshot.
        numbering: Labels from ``compute_numbers`` for the same snapshot.
        escape: Escaper applied to every piece of text.
        config: Label words and size hints.

    Returns:
        Blocks in document order; empty when the snapshot has no root.
    """
    return _Linearizer(snapshot, numbering, escape, config or LinearizerConfig()).run()


class _Linearizer:
    def __init__(
        self,
        snapshot: ForestSnapshot,
        numbering: dict[str, str],
        escape: Escaper,
        config: LinearizerConfig,
    ) -> None:
        self._snapshot = snapshot
        self._numbering = numbering
        self._escape = escape
        self._config = config
        self._visited: set[str] = set()
        self._blocks: list[Block] = []

    def run(self) -> list[Block]:
        root = self._snapshot.root
        if root is None:
            return []
        self._visited.add(root.id)
        self._blocks.append(
            Block(
                text=self._escape(root.title),
                indent_level=0,
                style_hints=StyleHints(
                    centered=True, bold=True, font_size=self._config.root_font_size
                ),
                node_id=root.id,
                kind=root.kind,
            )
        )
        self._visit_children(root, depth=0, indent=0)
        return self._blocks

    def _visit_children(self, parent: Node, depth: int, indent: int) -> None:
        # (node, depth, parent indent, leaves of its sibling group)
        stack: list[tuple[Node, int, int, list[Node]]] = []
        self._push_children(stack, parent, depth, indent)
        while stack:
            child, child_depth, parent_indent, leaves = stack.pop()
            if child.id in self._visited:
                logger.warning("Skipping %s: reached twice while linearizing", child.id)
                continue
            self._visited.add(child.id)
            if child.kind == NodeKind.BRANCH:
                branch_indent = max(child_depth - 1, 0)
                self._emit_branch(child, branch_indent)
                self._push_children(stack, child, child_depth, branch_indent)
            elif child.kind == NodeKind.LEAF:
                ordinal = child.rank if child.rank is not None else leaves.index(child) + 1
                self._emit_leaf(child, parent_indent + 1, ordinal)
            else:
                fallback_indent = max(child_depth - 1, 0)
                self._emit_fallback(child, fallback_indent)
                self._push_children(stack, child, child_depth, fallback_indent)

    def _push_children(
        self,
        stack: list[tuple[Node, int, int, list[Node]]],
        parent: Node,
        depth: int,
        indent: int,
    ) -> None:
        children = self._snapshot.ordered_children(parent.id)
        leaves = [c for c in children if c.kind == NodeKind.LEAF]
        for child in reversed(children):
            stack.append((child, depth + 1, indent, leaves))

    # ---------------------------------------------------------------

    def _emit_branch(self, node: Node, indent: int) -> None:
        label = self._numbering.get(node.id)
        self._blocks.append(
            Block(
                text=self._escape(node.title),
                indent_level=indent,
                style_hints=StyleHints(bold=True, hanging_indent=True),
                node_id=node.id,
                kind=node.kind,
                label=self._escape(label) if label is not None else None,
            )
        )

    def _emit_leaf(self, node: Node, indent: int, ordinal: int) -> None:
        label = f"{self._config.leaf_label} {ordinal}:"
        self._emit_lines(node, indent, label, StyleHints(label_bold=True), annotation=None)

        citations = self._snapshot.targets(node.id, RelationKind.CITES)
        citations.sort(key=lambda c: (c.rank is None, c.rank or 0, c.id))
        for position, citation in enumerate(citations, start=1):
            if citation.id in self._visited:
                continue
            self._visited.add(citation.id)
            ordinal = citation.rank if citation.rank is not None else position
            self._emit_lines(
                citation,
                indent + 1,
                f"{self._config.citation_label} {ordinal}:",
                StyleHints(label_italic=True),
                annotation=self._source_annotation(citation),
            )

    def _emit_fallback(self, node: Node, indent: int) -> None:
        self._blocks.append(
            Block(
                text=f"({self._escape(node.kind.display_name)}: {self._escape(node.title)})",
                indent_level=indent,
                style_hints=StyleHints(italic=True, font_size=self._config.fallback_font_size),
                node_id=node.id,
                kind=node.kind,
            )
        )

    def _emit_lines(
        self,
        node: Node,
        indent: int,
        label: str,
        hints: StyleHints,
        annotation: str | None,
    ) -> None:
        lines = _text_lines(node)
        for index, line in enumerate(lines):
            last = index == len(lines) - 1
            self._blocks.append(
                Block(
                    text=self._escape(line),
                    indent_level=indent,
                    style_hints=hints,
                    node_id=node.id,
                    kind=node.kind,
                    label=self._escape(label) if index == 0 else None,
                    annotation=annotation if last else None,
                    continuation=index > 0,
                )
            )

    def _source_annotation(self, citation: Node) -> str | None:
        docs = {
            doc.id: doc
            for doc in (
                self._snapshot.sources(citation.id, RelationKind.REFERENCES)
                + self._snapshot.targets(citation.id, RelationKind.LINKED_FROM)
            )
            if doc.kind == NodeKind.EXTERNAL_DOC
        }
        if not docs:
            return None
        titles = "; ".join(
            self._escape(doc.title) for doc in sorted(docs.values(), key=lambda d: (d.title, d.id))
        )
        return f"({self._escape(self._config.source_label)}: {titles})"


def _text_lines(node: Node) -> list[str]:
    """Title line followed by body lines; never empty."""
    lines = [node.title] if node.title else []
    if node.body:
        lines.extend(node.body.replace("\r\n", "\n").replace("\r", "\n").split("\n"))
    return lines or [""]
