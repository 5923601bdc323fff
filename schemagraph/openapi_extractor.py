"""OpenAPI / Swagger / JSON-Schema artifact extractor.

- ``components.schemas`` (OpenAPI 3) and ``definitions`` (Swagger 2)  ->  ``schema``
- every operation under ``paths``                                       ->  ``api-operation``
- a standalone JSON Schema document plus its ``definitions``/``$defs``   ->  ``schema``

``$ref`` pointers become import targets; ``x-intent`` (or ``description``)
becomes the intent.
"""

from __future__ import annotations

import json
import logging
import posixpath
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml

from .extractor import Extractor, artifact_id
from .models import ArtifactRecord, Property

logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")


class OpenAPIExtractor(Extractor):
    """Extracts schemas and operations from JSON/YAML API descriptions."""

    def supports(self, file_path: str) -> bool:
        return file_path.lower().endswith((".json", ".yaml", ".yml"))

    def extract(self, file_path: str, content: str) -> List[ArtifactRecord]:
        document = self._load(file_path, content)
        if not isinstance(document, dict):
            raise ValueError(f"{file_path}: expected a mapping at the document root")

        if "openapi" in document or "swagger" in document:
            records = self._extract_api(file_path, document)
        else:
            records = self._extract_json_schema(file_path, document)
        logger.debug("Extracted %d artifact(s) from %s", len(records), file_path)
        return records

    @staticmethod
    def _load(file_path: str, content: str) -> Any:
        if file_path.lower().endswith(".json"):
            return json.loads(content)
        return yaml.safe_load(content)

    # ------------------------------------------------------------------
    # OpenAPI / Swagger
    # ------------------------------------------------------------------

    def _extract_api(self, file_path: str, document: Dict[str, Any]) -> List[ArtifactRecord]:
        records: List[ArtifactRecord] = []

        schemas = (document.get("components") or {}).get("schemas") or document.get("definitions") or {}
        for name, schema in schemas.items():
            if isinstance(schema, dict):
                records.append(self._schema_record(file_path, str(name), schema))

        for path, item in (document.get("paths") or {}).items():
            if not isinstance(item, dict):
                continue
            shared_params = item.get("parameters") or []
            for method in HTTP_METHODS:
                operation = item.get(method)
                if isinstance(operation, dict):
                    records.append(self._operation_record(file_path, method, str(path), operation, shared_params))
        return records

    def _operation_record(
        self,
        file_path: str,
        method: str,
        path: str,
        operation: Dict[str, Any],
        shared_params: List[Any],
    ) -> ArtifactRecord:
        name = operation.get("operationId") or f"{method.upper()} {path}"
        properties: List[Property] = []

        for param in list(shared_params) + list(operation.get("parameters") or []):
            if not isinstance(param, dict):
                continue
            if "$ref" in param:
                ref_name = param["$ref"].rsplit("/", 1)[-1]
                properties.append(Property(f"param:{ref_name}", "ref", True))
                continue
            location = param.get("in", "query")
            declared = _type_of(param.get("schema") or param)
            properties.append(Property(
                f"{location}:{param.get('name', '?')}",
                declared,
                bool(param.get("required", location == "path")),
            ))

        body = operation.get("requestBody")
        if isinstance(body, dict):
            media = _first_media_schema(body.get("content") or {})
            properties.append(Property("body", _type_of(media) if media else "any", bool(body.get("required", False))))

        for code, response in sorted((operation.get("responses") or {}).items(), key=lambda kv: str(kv[0])):
            if not isinstance(response, dict):
                continue
            media = _first_media_schema(response.get("content") or {}) or response.get("schema")
            properties.append(Property(f"response:{code}", _type_of(media) if media else "none", False))

        return ArtifactRecord(
            id=artifact_id(file_path, name),
            kind="api-operation",
            name=name,
            file_path=file_path,
            properties=properties,
            intent=_intent(operation, "summary"),
            import_targets=_ref_targets(file_path, operation),
            metadata={"method": method.upper(), "path": path},
        )

    # ------------------------------------------------------------------
    # JSON Schema
    # ------------------------------------------------------------------

    def _extract_json_schema(self, file_path: str, document: Dict[str, Any]) -> List[ArtifactRecord]:
        records: List[ArtifactRecord] = []
        if "properties" in document or "type" in document or "title" in document:
            stem = posixpath.basename(file_path).split(".", 1)[0]
            records.append(self._schema_record(file_path, str(document.get("title") or stem), document, nested=False))
        for section in ("definitions", "$defs"):
            for name, schema in (document.get(section) or {}).items():
                if isinstance(schema, dict):
                    records.append(self._schema_record(file_path, str(name), schema))
        return records

    def _schema_record(
        self,
        file_path: str,
        name: str,
        schema: Dict[str, Any],
        nested: bool = True,
    ) -> ArtifactRecord:
        properties: List[Property] = []
        for prop_name, prop_schema, required in _object_properties(schema):
            properties.append(Property(prop_name, _type_of(prop_schema), required))

        # The top-level document owns its definitions; do not follow them
        # when collecting the document's own references.
        scope = schema if nested else {k: v for k, v in schema.items() if k not in ("definitions", "$defs")}
        targets = [t for t in _ref_targets(file_path, scope) if t != artifact_id(file_path, name)]

        metadata: Dict[str, Any] = {"kind": "json-schema" if not nested else "component"}
        if "enum" in schema:
            metadata["values"] = list(schema["enum"])

        return ArtifactRecord(
            id=artifact_id(file_path, name),
            kind="schema",
            name=name,
            file_path=file_path,
            properties=properties,
            intent=_intent(schema, "description"),
            import_targets=targets,
            metadata=metadata,
        )


# ===================================================================
# Helpers
# ===================================================================

def _intent(node: Dict[str, Any], fallback_key: str) -> Optional[str]:
    value = node.get("x-intent") or node.get(fallback_key) or node.get("description")
    return str(value).strip() if value else None


def _object_properties(schema: Dict[str, Any]) -> Iterator[Tuple[str, Any, bool]]:
    required = set(schema.get("required") or [])
    for name, prop in (schema.get("properties") or {}).items():
        yield str(name), prop, name in required
    for part in schema.get("allOf") or []:
        if isinstance(part, dict) and "$ref" not in part:
            yield from _object_properties(part)


def _type_of(schema: Any) -> str:
    if not isinstance(schema, dict):
        return "any"
    if "$ref" in schema:
        return str(schema["$ref"]).rsplit("/", 1)[-1]
    declared = schema.get("type")
    if declared == "array":
        return f"{_type_of(schema.get('items'))}[]"
    if isinstance(declared, list):
        return " | ".join(str(t) for t in declared)
    for combinator in ("oneOf", "anyOf"):
        if combinator in schema:
            return " | ".join(_type_of(s) for s in schema[combinator])
    if "enum" in schema and not declared:
        return "enum"
    if declared:
        fmt = schema.get("format")
        return f"{declared}({fmt})" if fmt else str(declared)
    return "any"


def _first_media_schema(content: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for media in content.values():
        if isinstance(media, dict) and isinstance(media.get("schema"), dict):
            return media["schema"]
    return None


def _walk_refs(node: Any) -> Iterator[str]:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str):
            yield ref
        for value in node.values():
            yield from _walk_refs(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk_refs(item)


def _ref_targets(file_path: str, node: Any) -> List[str]:
    """Turn every ``$ref`` under *node* into an import target.

    ``#/.../Name`` points into this file (``<file>:Name``); ``other.json``
    points at a whole file; ``other.json#/.../Name`` at one of its artifacts.
    """
    base_dir = posixpath.dirname(file_path)
    targets: List[str] = []
    for ref in _walk_refs(node):
        location, _, fragment = ref.partition("#")
        name = fragment.rstrip("/").rsplit("/", 1)[-1] if fragment else ""
        if not location:
            target = artifact_id(file_path, name) if name else ""
        elif "://" in location:
            continue
        else:
            resolved = posixpath.normpath(posixpath.join(base_dir, location))
            target = artifact_id(resolved, name) if name else resolved
        if target and target not in targets:
            targets.append(target)
    return targets
