"""Extractor interface and schema-file discovery.

Language front-ends (TypeScript, OpenAPI, ...) implement :class:`Extractor`;
the crawler only ever talks to this interface.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .config import SKIP_DIRS
from .errors import ExtractionFailure
from .models import ArtifactRecord

logger = logging.getLogger(__name__)

# Filename patterns that mark a file as a schema-like artifact source.
# Matched case-insensitively against the file's basename.
DEFAULT_SCHEMA_PATTERNS: List[str] = [
    "*.dto.ts",
    "*.schema.ts",
    "*.interface.ts",
    "*dto.ts",
    "*schema.ts",
    "*interface.ts",
    "*.schema.json",
    "*.openapi.json",
    "*.openapi.yaml",
    "*.openapi.yml",
    "*.swagger.json",
    "*.swagger.yaml",
    "*.swagger.yml",
]

_ID_UNSAFE = re.compile(r"[^A-Za-z0-9:/_.\-]")


class Extractor(ABC):
    """Turns one file's content into artifact records."""

    @abstractmethod
    def supports(self, file_path: str) -> bool:
        """Return True if this extractor understands *file_path*."""
        ...

    @abstractmethod
    def extract(self, file_path: str, content: str) -> List[ArtifactRecord]:
        """Parse *content* (of repository-relative *file_path*) into records.

        May raise any exception; the crawler treats it as an extraction
        failure for this file only.
        """
        ...


class ExtractorRegistry(Extractor):
    """Dispatch to the first registered extractor that supports a file."""

    def __init__(self, extractors: Optional[Sequence[Extractor]] = None) -> None:
        self._extractors: List[Extractor] = list(extractors or [])

    def register(self, extractor: Extractor) -> None:
        self._extractors.append(extractor)

    def supports(self, file_path: str) -> bool:
        return self._pick(file_path) is not None

    def extract(self, file_path: str, content: str) -> List[ArtifactRecord]:
        extractor = self._pick(file_path)
        if extractor is None:
            raise ExtractionFailure(file_path, "no extractor registered for this file type")
        return extractor.extract(file_path, content)

    def _pick(self, file_path: str) -> Optional[Extractor]:
        for extractor in self._extractors:
            if extractor.supports(file_path):
                return extractor
        return None


def default_extractor() -> ExtractorRegistry:
    """Registry with the bundled TypeScript and OpenAPI/JSON-Schema extractors."""
    from .openapi_extractor import OpenAPIExtractor
    from .typescript_extractor import TypeScriptExtractor

    return ExtractorRegistry([TypeScriptExtractor(), OpenAPIExtractor()])


# ---------------------------------------------------------------------------
# File discovery
# ---------------------------------------------------------------------------

def is_schema_file(file_path: str, patterns: Optional[Iterable[str]] = None) -> bool:
    name = file_path.replace("\\", "/").rsplit("/", 1)[-1].lower()
    return any(fnmatch.fnmatchcase(name, p.lower()) for p in (patterns or DEFAULT_SCHEMA_PATTERNS))


def find_schema_files(root: Path, patterns: Optional[Iterable[str]] = None) -> List[str]:
    """Return repository-relative POSIX paths of all schema-like files under *root*."""
    patterns = list(patterns or DEFAULT_SCHEMA_PATTERNS)
    found: List[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for filename in filenames:
            if not is_schema_file(filename, patterns):
                continue
            rel = Path(dirpath, filename).relative_to(root).as_posix()
            found.append(rel)
    return sorted(found)


def compute_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def artifact_id(file_path: str, name: str) -> str:
    """Stable artifact id ``<relative-path>:<declared-name>``."""
    return _ID_UNSAFE.sub("_", f"{file_path}:{name}")
