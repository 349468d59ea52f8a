"""Plain-text extraction for uploaded documents."""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

_FRONT_MATTER = re.compile(r"\A---\s*\n.*?\n---\s*\n", flags=re.DOTALL)


class TextExtractor(Protocol):
    """Supplies ``extracted_text`` for a stored document record."""

    def extract(self, document: Mapping[str, Any]) -> str | None:
        """Return plain text, or ``None`` when nothing can be extracted."""


class Parser(ABC):
    """Turns one file format into plain text."""

    extensions: tuple[str, ...] = ()

    @abstractmethod
    def parse(self, path: Path) -> str:
        """Read ``path`` and return its text content."""


class TextParser(Parser):
    extensions = (".txt", ".log", ".csv")

    def parse(self, path: Path) -> str:
        return path.read_text(encoding="utf-8", errors="replace")


class MarkdownParser(Parser):
    """Markdown minus YAML front matter and heading hashes."""

    extensions = (".md", ".markdown")

    def parse(self, path: Path) -> str:
        text = _FRONT_MATTER.sub("", path.read_text(encoding="utf-8", errors="replace"))
        return re.sub(r"^#{1,6}\s+", "", text, flags=re.MULTILINE)


class JsonParser(Parser):
    """Flattens JSON string values so they become searchable text."""

    extensions = (".json",)

    def parse(self, path: Path) -> str:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
        return "\n".join(_json_strings(payload))


def _json_strings(payload: Any) -> list[str]:
    if isinstance(payload, str):
        return [payload]
    if isinstance(payload, dict):
        return [text for key in sorted(payload) for text in _json_strings(payload[key])]
    if isinstance(payload, list):
        return [text for item in payload for text in _json_strings(item)]
    return []


class FileTextExtractor:
    """Maps a document's ``file_path`` suffix to a parser."""

    def __init__(self, parsers: list[Parser] | None = None) -> None:
        self._parsers: dict[str, Parser] = {}
        for parser in parsers or [TextParser(), MarkdownParser(), JsonParser()]:
            self.register(parser)

    def register(self, parser: Parser) -> None:
        for extension in parser.extensions:
            self._parsers[extension.lower()] = parser

    def extract(self, document: Mapping[str, Any]) -> str | None:
        raw_path = document.get("file_path")
        if not raw_path:
            return None
        path = Path(str(raw_path))
        parser = self._parsers.get(path.suffix.lower())
        if parser is None:
            logger.debug("No parser for %s (document %s)", path.suffix, document.get("id"))
            return None
        try:
            return parser.parse(path)
        except (OSError, ValueError) as exc:
            logger.warning("Text extraction failed for %s: %s", path, exc)
            return None
