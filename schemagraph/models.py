"""Core data models used by the graph, diff, and analysis layers.

Field names on the Python side are snake_case; ``to_dict`` emits the stable
camelCase names used in the persisted graph file and JSON reports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULT_EDGE_CONFIDENCE

ARTIFACT_KINDS = ("schema", "dto", "enum", "api-operation")
EDGE_USES = "uses"

STATUS_VERIFIED = "verified"
STATUS_CHANGED = "changed"
STATUS_DRIFTED = "drifted"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Property:
    name: str
    declared_type: str
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "declaredType": self.declared_type, "required": self.required}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Property":
        return cls(
            name=payload["name"],
            declared_type=payload.get("declaredType", "any"),
            required=bool(payload.get("required", True)),
        )


@dataclass
class ArtifactRecord:
    """One declared artifact as reported by an extractor.

    ``import_targets`` holds repository-relative file paths or fully
    qualified artifact ids; the graph engine turns them into edges.
    ``import_confidence`` optionally overrides the default edge confidence
    per target.
    """

    id: str
    kind: str
    name: str
    file_path: str
    properties: List[Property] = field(default_factory=list)
    intent: Optional[str] = None
    import_targets: List[str] = field(default_factory=list)
    import_confidence: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.kind not in ARTIFACT_KINDS:
            raise ValueError(f"Unknown artifact kind '{self.kind}' for {self.id}")


@dataclass
class ArtifactNode:
    id: str
    kind: str
    name: str
    file_path: str
    content_hash: str
    properties: List[Property] = field(default_factory=list)
    intent: Optional[str] = None
    import_targets: List[str] = field(default_factory=list)
    import_confidence: Dict[str, float] = field(default_factory=dict)
    last_modified: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(
        cls,
        record: ArtifactRecord,
        content_hash: str,
        last_modified: Optional[str] = None,
    ) -> "ArtifactNode":
        return cls(
            id=record.id,
            kind=record.kind,
            name=record.name,
            file_path=record.file_path,
            content_hash=content_hash,
            properties=list(record.properties),
            intent=record.intent or None,
            import_targets=list(record.import_targets),
            import_confidence=dict(record.import_confidence),
            last_modified=last_modified or utc_now(),
            metadata=dict(record.metadata),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "filePath": self.file_path,
            "contentHash": self.content_hash,
            "properties": [p.to_dict() for p in self.properties],
            "intent": self.intent,
            "importTargets": list(self.import_targets),
            "importConfidence": dict(self.import_confidence),
            "lastModified": self.last_modified,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ArtifactNode":
        return cls(
            id=payload["id"],
            kind=payload["kind"],
            name=payload.get("name") or payload["id"].rsplit(":", 1)[-1],
            file_path=payload["filePath"],
            content_hash=payload.get("contentHash", ""),
            properties=[Property.from_dict(p) for p in payload.get("properties", [])],
            intent=payload.get("intent") or None,
            import_targets=list(payload.get("importTargets", [])),
            import_confidence=dict(payload.get("importConfidence", {})),
            last_modified=payload.get("lastModified", ""),
            metadata=dict(payload.get("metadata", {})),
        )


@dataclass(frozen=True)
class DependencyEdge:
    """``source`` uses ``target``.

    ``confidence`` is the extraction-time certainty of the dependency, not a
    runtime probability.
    """

    source: str
    target: str
    kind: str = EDGE_USES
    confidence: float = DEFAULT_EDGE_CONFIDENCE

    def __post_init__(self) -> None:
        if not 0.0 < self.confidence <= 1.0:
            raise ValueError(f"Edge confidence must be in (0, 1], got {self.confidence}")

    @property
    def key(self) -> tuple:
        return (self.source, self.target)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "kind": self.kind,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DependencyEdge":
        return cls(
            source=payload["source"],
            target=payload["target"],
            kind=payload.get("kind", EDGE_USES),
            confidence=float(payload.get("confidence", DEFAULT_EDGE_CONFIDENCE)),
        )


@dataclass(frozen=True)
class VerificationRef:
    """Opaque reference handed back by an external timestamping backend."""

    backend: str
    id: str
    link: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"backend": self.backend, "id": self.id, "link": self.link}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "VerificationRef":
        return cls(backend=payload["backend"], id=payload["id"], link=payload.get("link", ""))


@dataclass(frozen=True)
class FingerprintRecord:
    id: str
    content_hash: str
    file_path: str
    verification_ref: Optional[VerificationRef] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "contentHash": self.content_hash,
            "filePath": self.file_path,
            "verificationRef": self.verification_ref.to_dict() if self.verification_ref else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "FingerprintRecord":
        ref = payload.get("verificationRef")
        return cls(
            id=payload["id"],
            content_hash=payload["contentHash"],
            file_path=payload.get("filePath", ""),
            verification_ref=VerificationRef.from_dict(ref) if ref else None,
        )


@dataclass
class CrawlSummary:
    added: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: int = 0
    failed: List[str] = field(default_factory=list)
    statuses: Dict[str, str] = field(default_factory=dict)
    node_count: int = 0
    edge_count: int = 0
    dangling_count: int = 0
    duration_ms: float = 0.0
    cancelled: bool = False

    def status_counts(self) -> Dict[str, int]:
        counts = {STATUS_VERIFIED: 0, STATUS_CHANGED: 0, STATUS_DRIFTED: 0}
        for status in self.statuses.values():
            counts[status] = counts.get(status, 0) + 1
        return counts


@dataclass(frozen=True)
class SchemaChange:
    kind: str
    description: str
    breaking: bool
    property_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "description": self.description,
            "breaking": self.breaking,
            "property": self.property_name,
        }


@dataclass(frozen=True)
class SchemaDiff:
    node_id: str
    name: str
    kind: str
    change_type: str
    breaking: bool
    changes: Tuple[SchemaChange, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "name": self.name,
            "kind": self.kind,
            "changeType": self.change_type,
            "breaking": self.breaking,
            "changes": [c.to_dict() for c in self.changes],
        }


@dataclass(frozen=True)
class IntentDrift:
    node_id: str
    old_intent: Optional[str]
    new_intent: Optional[str]
    similarity: float
    is_drift: bool
    severity: str
    explanation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "oldIntent": self.old_intent,
            "newIntent": self.new_intent,
            "similarity": round(self.similarity, 4),
            "isDrift": self.is_drift,
            "severity": self.severity,
            "explanation": self.explanation,
        }


@dataclass(frozen=True)
class ImpactEntry:
    node_id: str
    distance: int
    confidence: float
    via: Optional[str] = None


@dataclass
class ImpactReport:
    root: str
    max_depth: int
    downstream: List[ImpactEntry] = field(default_factory=list)

    @property
    def impacted_ids(self) -> List[str]:
        return [entry.node_id for entry in self.downstream]


@dataclass(frozen=True)
class ProvenanceEntry:
    node_id: str
    relationship: str
    distance: int
    confidence: float
    intent: Optional[str] = None
    kind: Optional[str] = None
    resolved: bool = True
    via: Optional[str] = None


@dataclass
class ProvenanceReport:
    node: ArtifactNode
    upstream: List[ProvenanceEntry] = field(default_factory=list)


@dataclass
class ComparisonResult:
    mode: str
    base_commit: str
    head_commit: str
    diffs: List[SchemaDiff] = field(default_factory=list)
    files_changed: List[str] = field(default_factory=list)
    intent_drifts: List[IntentDrift] = field(default_factory=list)
    states: List[str] = field(default_factory=list)

    @property
    def has_breaking(self) -> bool:
        return any(d.breaking for d in self.diffs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": utc_now(),
            "mode": self.mode,
            "baseCommit": self.base_commit,
            "headCommit": self.head_commit,
            "diffs": [d.to_dict() for d in self.diffs],
            "intentDrifts": [d.to_dict() for d in self.intent_drifts],
            "filesChanged": list(self.files_changed),
        }
