# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0
"""Code snippets extracted by parsers and stored as vector payloads."""

from __future__ import annotations

import hashlib

from typing import Any
from uuid import NAMESPACE_URL, uuid5

from pydantic import Field, NonNegativeInt

from codeloom.common.paths import normalize_path
from codeloom.core.models import FROZEN_BASEDMODEL_CONFIG, BasedModel


class CodeSnippet(BasedModel):
    """A unit of source code with its location metadata."""

    model_config = FROZEN_BASEDMODEL_CONFIG

    file_path: str
    code: str
    start_line: NonNegativeInt = 1
    end_line: NonNegativeInt = 1
    namespace: str | None = None
    class_name: str | None = None
    member_name: str | None = None
    language: str | None = None
    kind: str = Field(default="file", description="function, method, class or file")

    @property
    def content_digest(self) -> str:
        return hashlib.sha256(self.code.encode("utf-8")).hexdigest()

    def point_id(self, library_id: str) -> str:
        """Deterministic vector id, so re-running a step overwrites instead of duplicating."""
        key = "|".join((
            library_id,
            normalize_path(self.file_path),
            str(self.start_line),
            str(self.end_line),
            self.content_digest,
        ))
        return str(uuid5(NAMESPACE_URL, key))

    def embedding_text(self) -> str:
        """Text sent to the embedding provider, prefixed with its location."""
        location = ".".join(
            part for part in (self.namespace, self.class_name, self.member_name) if part
        )
        header = f"{self.file_path}:{self.start_line}-{self.end_line}"
        return f"{header} {location}\n{self.code}" if location else f"{header}\n{self.code}"

    def to_payload(self, *, library_id: str, degraded: bool = False) -> dict[str, Any]:
        return {
            "library_id": library_id,
            "file_path": normalize_path(self.file_path),
            "display_path": self.file_path,
            "namespace": self.namespace,
            "class_name": self.class_name,
            "member_name": self.member_name,
            "code": self.code,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language,
            "kind": self.kind,
            "degraded": degraded,
        }


__all__ = ("CodeSnippet",)
