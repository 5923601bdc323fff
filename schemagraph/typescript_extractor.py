"""TypeScript artifact extractor built on Tree-sitter.

Recognised top-level declarations (optionally wrapped in ``export``):

- ``interface X { ... }`` and ``type X = { ... }``  ->  ``schema``
- ``class X { ... }``                               ->  ``dto``
- ``enum X { ... }``                                ->  ``enum``

A ``/** ... @intent <text> */`` comment directly above a declaration becomes
its intent. Relative ``import`` statements become import targets of every
artifact in the file.
"""

from __future__ import annotations

import logging
import posixpath
import re
from typing import Any, Dict, List, Optional

from .extractor import Extractor, artifact_id
from .models import ArtifactRecord, Property

logger = logging.getLogger(__name__)

_INTENT = re.compile(r"@intent\s+(.+)")
_SUPPORTED_SUFFIXES = (".ts", ".tsx")
_PRIVATE_MODIFIERS = {"private", "protected"}


class TypeScriptExtractor(Extractor):
    """Extracts schema-like declarations from ``.ts`` / ``.tsx`` files."""

    def __init__(self) -> None:
        self._parsers: Dict[str, Any] = {}
        self._init_parsers()

    def _init_parsers(self) -> None:
        try:
            from tree_sitter import Language, Parser as TSParser  # type: ignore[import-untyped]
            import tree_sitter_typescript as tsts  # type: ignore[import-untyped]
        except ImportError:
            logger.warning(
                "tree-sitter-typescript is not installed -- "
                "TypeScript extraction unavailable. "
                "Install with: pip install tree-sitter tree-sitter-typescript"
            )
            return

        try:
            self._parsers[".ts"] = TSParser(Language(tsts.language_typescript()))
            self._parsers[".tsx"] = TSParser(Language(tsts.language_tsx()))
        except Exception as exc:
            logger.warning("Could not load tree-sitter grammar for TypeScript: %s", exc)
            self._parsers.clear()

    @property
    def available(self) -> bool:
        return bool(self._parsers)

    def supports(self, file_path: str) -> bool:
        return self._parser_for(file_path) is not None

    def _parser_for(self, file_path: str) -> Optional[Any]:
        lowered = file_path.lower()
        if lowered.endswith(".tsx"):
            return self._parsers.get(".tsx")
        if lowered.endswith(".ts"):
            return self._parsers.get(".ts")
        return None

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract(self, file_path: str, content: str) -> List[ArtifactRecord]:
        parser = self._parser_for(file_path)
        if parser is None:
            raise ValueError(f"TypeScript grammar unavailable for {file_path}")

        tree = parser.parse(content.encode("utf-8"))
        root = tree.root_node

        imports = self._collect_imports(root, file_path)
        records: List[ArtifactRecord] = []

        for child in root.named_children:
            decl = child
            if child.type == "export_statement":
                decl = child.child_by_field_name("declaration")
                if decl is None:
                    continue

            record = self._declaration_to_record(decl, file_path, _intent_for(child))
            if record is None:
                continue
            record.import_targets = list(imports)
            records.append(record)

        logger.debug("Extracted %d artifact(s) from %s", len(records), file_path)
        return records

    def _declaration_to_record(
        self,
        decl: Any,
        file_path: str,
        intent: Optional[str],
    ) -> Optional[ArtifactRecord]:
        name_node = decl.child_by_field_name("name")
        if name_node is None:
            return None
        name = _text(name_node)

        if decl.type == "interface_declaration":
            kind, properties, metadata = "schema", _members(decl.child_by_field_name("body")), {"kind": "interface"}
        elif decl.type == "type_alias_declaration":
            value = decl.child_by_field_name("value")
            if value is None or value.type != "object_type":
                return None
            kind, properties, metadata = "schema", _members(value), {"kind": "type"}
        elif decl.type in ("class_declaration", "abstract_class_declaration"):
            kind, properties, metadata = "dto", _members(decl.child_by_field_name("body")), {"kind": "class"}
        elif decl.type == "enum_declaration":
            properties = _enum_members(decl.child_by_field_name("body"))
            kind, metadata = "enum", {"kind": "enum", "values": [p.name for p in properties]}
        else:
            return None

        return ArtifactRecord(
            id=artifact_id(file_path, name),
            kind=kind,
            name=name,
            file_path=file_path,
            properties=properties,
            intent=intent,
            metadata=metadata,
        )

    @staticmethod
    def _collect_imports(root: Any, file_path: str) -> List[str]:
        base_dir = posixpath.dirname(file_path)
        targets: List[str] = []
        for child in root.named_children:
            if child.type != "import_statement":
                continue
            source = child.child_by_field_name("source")
            if source is None:
                continue
            spec = _text(source).strip("'\"`")
            if not spec.startswith("."):
                continue
            resolved = posixpath.normpath(posixpath.join(base_dir, spec))
            if resolved not in targets:
                targets.append(resolved)
        return targets


# ===================================================================
# Helpers
# ===================================================================

def _text(node: Any) -> str:
    return node.text.decode("utf-8")


def _intent_for(node: Any) -> Optional[str]:
    """Read ``@intent`` from the JSDoc block immediately above *node*."""
    comment = node.prev_named_sibling
    if comment is None or comment.type != "comment":
        return None
    text = _text(comment)
    if not text.startswith("/**"):
        return None
    body = text[3:-2] if text.endswith("*/") else text[3:]
    for line in body.splitlines():
        match = _INTENT.search(line.strip().lstrip("*").strip())
        if match:
            return match.group(1).strip()
    return None


def _members(body: Any) -> List[Property]:
    if body is None:
        return []
    properties: List[Property] = []
    for member in body.named_children:
        if member.type not in ("property_signature", "public_field_definition"):
            continue
        if any(c.type == "accessibility_modifier" and _text(c) in _PRIVATE_MODIFIERS for c in member.children):
            continue
        name_node = member.child_by_field_name("name")
        if name_node is None:
            continue
        type_node = member.child_by_field_name("type")
        declared = _text(type_node).lstrip(":").strip() if type_node is not None else "any"
        optional = any(c.type == "?" for c in member.children)
        properties.append(Property(_text(name_node), declared or "any", not optional))
    return properties


def _enum_members(body: Any) -> List[Property]:
    if body is None:
        return []
    members: List[Property] = []
    for member in body.named_children:
        if member.type == "enum_assignment":
            name_node = member.child_by_field_name("name")
            if name_node is None and member.named_children:
                name_node = member.named_children[0]
            value_node = member.child_by_field_name("value")
            if name_node is None:
                continue
            members.append(Property(_text(name_node), _text(value_node) if value_node is not None else "auto"))
        elif member.type in ("property_identifier", "string"):
            members.append(Property(_text(member).strip("'\""), "auto"))
    return members
