"""
Outline exporters.

Every exporter turns a snapshot plus its numbering into one document.
Exporters register themselves with the ExporterRegistry and are looked
up by name ("rtf", "json", "text").
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

from shared.hardening import InputValidator
from trellis.src.linearizer import (
    Block,
    LinearizerConfig,
    escape_plain,
    escape_rtf,
    linearize,
)
from trellis.src.models import ForestSnapshot

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-z0-9_.-]", re.IGNORECASE)


def export_filename(title: str, fallback_id: str, extension: str) -> str:
    """Download name for an exported outline, e.g. ``export-my_thesis.rtf``.

    Characters outside ``[a-z0-9_.-]`` become ``_`` and the result is
    lowercased. An empty title falls back to *fallback_id*.
    """
    name = f"export-{title or fallback_id}{extension}"
    return _UNSAFE_FILENAME_CHARS.sub("_", name).lower()


class BaseExporter(ABC):
    """
    Abstract base class for outline exporters.

    Subclasses implement ``render``; writing to disk is shared.
    """

    EXPORTER_NAME: ClassVar[str] = "base"
    FILE_EXTENSION: ClassVar[str] = ""
    MEDIA_TYPE: ClassVar[str] = "application/octet-stream"

    @abstractmethod
    def render(
        self,
        snapshot: ForestSnapshot,
        numbering: dict[str, str],
        config: LinearizerConfig | None = None,
    ) -> str:
        """
        Render an outline to a string.

        Args:
            snapshot: Outline snapshot
            numbering: Labels computed for the same snapshot
            config: Label words and size hints

        Returns:
            The complete document
        """

    def export(
        self,
        snapshot: ForestSnapshot,
        numbering: dict[str, str],
        path: Path,
        config: LinearizerConfig | None = None,
        base_directory: Path | None = None,
    ) -> Path:
        """
        Render an outline and write it to *path*.

        Returns:
            Path to exported file (extension corrected if needed)

        Raises:
            ValidationError: If *path* contains traversal sequences or
                falls outside *base_directory*.
        """
        path = InputValidator().validate_export_path(
            self._ensure_extension(Path(path)),
            allowed_extensions=(self.FILE_EXTENSION,),
            base_directory=base_directory,
        )
        content = self.render(snapshot, numbering, config)
        # newline="" keeps the renderer's own line endings (RTF uses CRLF).
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        logger.info("Exported %s outline to %s", self.EXPORTER_NAME, path)
        return path

    def _ensure_extension(self, path: Path) -> Path:
        """Ensure the path has the correct extension."""
        if path.suffix.lower() != self.FILE_EXTENSION.lower():
            return path.with_suffix(self.FILE_EXTENSION)
        return path


class ExporterRegistry:
    """Registry of available exporters."""

    _exporters: ClassVar[dict[str, type[BaseExporter]]] = {}

    @classmethod
    def register(cls, exporter_class: type[BaseExporter]) -> type[BaseExporter]:
        """Register an exporter class."""
        cls._exporters[exporter_class.EXPORTER_NAME] = exporter_class
        return exporter_class

    @classmethod
    def get_exporter(cls, name: str) -> BaseExporter | None:
        """Get an exporter by name."""
        exporter_class = cls._exporters.get(name)
        if exporter_class:
            return exporter_class()
        return None

    @classmethod
    def available_exporters(cls) -> list[str]:
        """Get list of available exporter names."""
        return sorted(cls._exporters)

    @classmethod
    def require(cls, name: str) -> BaseExporter:
        """Get an exporter by name or raise ValueError listing the known ones."""
        exporter = cls.get_exporter(name)
        if exporter is None:
            available = ", ".join(cls.available_exporters())
            raise ValueError(f"Unknown export format: {name}. Available: {available}")
        return exporter


# ---------------------------------------------------------------------------
# RTF
# ---------------------------------------------------------------------------

_RTF_HEADER = (
    "{\\rtf1\\ansi\\deff0\\nouicompat",
    "{\\fonttbl{\\f0\\fnil\\fcharset0 Arial;}}",
    "{\\colortbl ;\\red0\\green0\\blue0;}",
    "\\pard\\sa200\\sl276\\slmult1\\f0\\fs24",
)
_RTF_PARAGRAPH = "\\pard\\sa200\\sl276\\slmult1\\f0\\fs24"
_RTF_INDENT_TWIPS = 720
_RTF_HANGING_TWIPS = -360


@ExporterRegistry.register
class RTFExporter(BaseExporter):
    """
    Export an outline as a Rich Text Format document.

    One ``\\pard`` paragraph per block, lines joined with CRLF.
    """

    EXPORTER_NAME: ClassVar[str] = "rtf"
    FILE_EXTENSION: ClassVar[str] = ".rtf"
    MEDIA_TYPE: ClassVar[str] = "application/rtf"

    def render(
        self,
        snapshot: ForestSnapshot,
        numbering: dict[str, str],
        config: LinearizerConfig | None = None,
    ) -> str:
        blocks = linearize(snapshot, numbering, escape=escape_rtf, config=config)
        lines = list(_RTF_HEADER)
        lines.extend(self._paragraph(block) for block in blocks)
        lines.append("}")
        return "\r\n".join(lines)

    def _paragraph(self, block: Block) -> str:
        hints = block.style_hints
        controls = [_RTF_PARAGRAPH]
        if hints.centered:
            controls.append("\\qc")
        else:
            controls.append(f"\\li{block.indent_level * _RTF_INDENT_TWIPS}")
            if hints.hanging_indent:
                controls.append(f"\\fi{_RTF_HANGING_TWIPS}")
        if hints.font_size is not None:
            controls.append(f"\\fs{hints.font_size}")
        if hints.bold:
            controls.append("\\b")
        if hints.italic:
            controls.append("\\i")

        content = ""
        if block.label is not None:
            if hints.label_bold:
                content += f"{{\\b {block.label} }}"
            elif hints.label_italic:
                content += f"{{\\i {block.label} }}"
            else:
                content += f"{block.label} "
        content += block.text
        if block.annotation:
            content += f" {block.annotation}"
        return f"{''.join(controls)} {content}\\par"


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------


@ExporterRegistry.register
class TextExporter(BaseExporter):
    """Export an outline as indented plain text, two spaces per level."""

    EXPORTER_NAME: ClassVar[str] = "text"
    FILE_EXTENSION: ClassVar[str] = ".txt"
    MEDIA_TYPE: ClassVar[str] = "text/plain; charset=utf-8"

    def render(
        self,
        snapshot: ForestSnapshot,
        numbering: dict[str, str],
        config: LinearizerConfig | None = None,
    ) -> str:
        blocks = linearize(snapshot, numbering, escape=escape_plain, config=config)
        lines = []
        for block in blocks:
            parts = [block.label] if block.label else []
            if block.text:
                parts.append(block.text)
            if block.annotation:
                parts.append(block.annotation)
            lines.append("  " * block.indent_level + " ".join(parts))
        return "\n".join(lines) + "\n" if lines else ""


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


@ExporterRegistry.register
class JSONExporter(BaseExporter):
    """
    Export an outline as JSON with blocks, numbering and metadata.

    Suitable for debugging or custom integrations.
    """

    EXPORTER_NAME: ClassVar[str] = "json"
    FILE_EXTENSION: ClassVar[str] = ".json"
    MEDIA_TYPE: ClassVar[str] = "application/json"

    def render(
        self,
        snapshot: ForestSnapshot,
        numbering: dict[str, str],
        config: LinearizerConfig | None = None,
    ) -> str:
        blocks = linearize(snapshot, numbering, escape=escape_plain, config=config)
        export_data = {
            "version": EXPORT_VERSION,
            "exported_at": datetime.now().isoformat(),
            "exporter": "trellis",
            "outline": self._outline_to_dict(snapshot),
            "numbering": dict(sorted(numbering.items())),
            "blocks": [b.to_dict() for b in blocks],
        }
        return json.dumps(export_data, indent=2, ensure_ascii=False)

    def _outline_to_dict(self, snapshot: ForestSnapshot) -> dict[str, Any]:
        root = snapshot.root
        return {
            "root_id": root.id if root is not None else None,
            "title": root.title if root is not None else "",
            "node_count": len(snapshot.nodes),
            "edge_count": len(snapshot.edges),
        }
