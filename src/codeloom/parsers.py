# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Snippet extraction capability.

Language-aware parsers plug in through `CodeParser`. The built-in
`WholeFileParser` is the fallback: it emits a file as one snippet, or as
consecutive line windows when the file is long.
"""

from __future__ import annotations

import logging

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from pathlib import Path
from types import MappingProxyType

from codeloom.core.snippets import CodeSnippet


logger = logging.getLogger(__name__)

LANGUAGE_BY_SUFFIX: MappingProxyType[str, str] = MappingProxyType({
    ".c": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cs": "csharp",
    ".go": "go",
    ".h": "c",
    ".hpp": "cpp",
    ".java": "java",
    ".js": "javascript",
    ".jsx": "javascript",
    ".kt": "kotlin",
    ".md": "markdown",
    ".php": "php",
    ".py": "python",
    ".rb": "ruby",
    ".rs": "rust",
    ".scala": "scala",
    ".sh": "bash",
    ".sql": "sql",
    ".swift": "swift",
    ".toml": "toml",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".yaml": "yaml",
    ".yml": "yaml",
})


class CodeParser(ABC):
    """Abstract snippet extractor."""

    @abstractmethod
    def supports_file(self, path: Path) -> bool:
        """Whether this parser can handle `path`."""

    @abstractmethod
    def parse_file(self, path: Path) -> list[CodeSnippet]:
        """Extract snippets from `path`. May raise on unreadable or malformed input."""


def _looks_binary(sample: bytes) -> bool:
    return b"\x00" in sample


class WholeFileParser(CodeParser):
    """Emit each text file as whole-file snippets of at most `max_lines` lines."""

    def __init__(self, *, max_lines: int = 120, suffixes: Iterable[str] | None = None) -> None:
        self.max_lines = max_lines
        self.suffixes = frozenset(s.lower() for s in suffixes) if suffixes else None

    def supports_file(self, path: Path) -> bool:
        return self.suffixes is None or path.suffix.lower() in self.suffixes

    def parse_file(self, path: Path) -> list[CodeSnippet]:
        raw = path.read_bytes()
        if _looks_binary(raw[:8192]):
            logger.debug("Skipping binary file %s", path)
            return []
        text = raw.decode("utf-8", errors="replace")
        if not text.strip():
            return []
        lines = text.splitlines()
        language = LANGUAGE_BY_SUFFIX.get(path.suffix.lower())
        snippets: list[CodeSnippet] = []
        for start in range(0, len(lines), self.max_lines):
            window = lines[start : start + self.max_lines]
            code = "\n".join(window)
            if not code.strip():
                continue
            snippets.append(
                CodeSnippet(
                    file_path=str(path),
                    code=code,
                    start_line=start + 1,
                    end_line=start + len(window),
                    language=language,
                    kind="file",
                )
            )
        return snippets


class ParserRegistry:
    """Ordered parser lookup; the first parser that supports a file wins."""

    def __init__(self, parsers: Sequence[CodeParser] | None = None) -> None:
        self._parsers: list[CodeParser] = list(parsers or [WholeFileParser()])

    def register(self, parser: CodeParser, *, first: bool = True) -> None:
        if first:
            self._parsers.insert(0, parser)
        else:
            self._parsers.append(parser)

    def parser_for(self, path: Path) -> CodeParser | None:
        return next((p for p in self._parsers if p.supports_file(path)), None)

    def parse(self, path: Path) -> list[CodeSnippet]:
        """Parse `path` with the first supporting parser.

        Parse failures are contained: they are logged and yield no snippets, so
        one malformed file never fails the indexing run around it.
        """
        if (parser := self.parser_for(path)) is None:
            logger.debug("No parser supports %s", path)
            return []
        try:
            return parser.parse_file(path)
        except FileNotFoundError:
            raise
        except Exception:
            logger.warning("Failed to parse %s, indexing it without snippets", path, exc_info=True)
            return []


__all__ = ("LANGUAGE_BY_SUFFIX", "CodeParser", "ParserRegistry", "WholeFileParser")
