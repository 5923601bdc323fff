"""Graph engine: owns artifact nodes and their derived dependency edges."""

from __future__ import annotations

import logging
import posixpath
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .config import DEFAULT_EDGE_CONFIDENCE
from .errors import GraphInvariantError
from .models import EDGE_USES, ArtifactNode, CrawlSummary, DependencyEdge
from .storage import GraphStore

logger = logging.getLogger(__name__)

_SOURCE_SUFFIXES = (".d.ts", ".tsx", ".ts", ".json", ".yaml", ".yml")


def path_key(path: str) -> str:
    """Normalise a file path or import target so the two can be matched.

    ``./user.dto``, ``user.dto.ts`` and ``user.dto.ts:UserDto`` all map to
    ``user.dto``.
    """
    path = path.split(":", 1)[0].replace("\\", "/")
    path = posixpath.normpath(path) if path else path
    for suffix in _SOURCE_SUFFIXES:
        if path.endswith(suffix):
            return path[: -len(suffix)]
    return path


class GraphEngine:
    """In-memory artifact graph persisted through a :class:`GraphStore`.

    Edges are never edited directly: they are derived from each node's
    ``import_targets`` whenever the node is added or modified. An edge may
    point at a target that is not a node (a dangling dependency); an edge
    whose *source* is not a node is an invariant violation.

    Mutations and multi-step reads hold :attr:`lock`; analyzers take it for
    the duration of a traversal.
    """

    def __init__(self, store: Optional[GraphStore] = None) -> None:
        self.store = store or GraphStore.in_memory()
        self.lock = threading.RLock()
        self._nodes: Dict[str, ArtifactNode] = {}
        self._edges: Dict[tuple, DependencyEdge] = {}
        self._out: Dict[str, List[DependencyEdge]] = {}
        self._in: Dict[str, List[DependencyEdge]] = {}
        self.reload()

    @classmethod
    def from_snapshot(cls, snapshot_file: Path, store: Optional[GraphStore] = None) -> "GraphEngine":
        """Build an engine from an exported JSON graph file."""
        store = store or GraphStore.in_memory()
        store.import_snapshot(snapshot_file)
        return cls(store)

    def reload(self) -> None:
        """Re-read nodes and edges from the store, dropping in-memory state."""
        with self.lock:
            self._nodes = {n.id: n for n in self.store.load_nodes()}
            self._edges = {e.key: e for e in self.store.load_edges()}
            self._check_sources(self._nodes, self._edges)
            self._rebuild_indexes()

    def export_snapshot(self, output_file: Path) -> None:
        with self.lock:
            self.store.export_snapshot(output_file)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def apply_crawl_result(
        self,
        added: Iterable[ArtifactNode] = (),
        modified: Iterable[ArtifactNode] = (),
        removed: Iterable[str] = (),
    ) -> CrawlSummary:
        """Apply one crawl's worth of changes and persist them atomically.

        Added and modified nodes replace any previous node wholesale and get
        their outbound edges recomputed. Removed ids lose their node and
        every edge they appear in; their importers are re-resolved so an import
        that matched them by path becomes a dangling edge again. Nodes that
        import a file touched by this batch are re-resolved so that
        previously dangling targets pick up newly declared artifacts.
        """
        added = sorted(added, key=lambda n: n.id)
        modified = sorted(modified, key=lambda n: n.id)
        changed = sorted(added + modified, key=lambda n: n.id)
        removed_ids = sorted(set(removed))

        changed_ids = [n.id for n in changed]
        if len(changed_ids) != len(set(changed_ids)):
            dupes = sorted({i for i in changed_ids if changed_ids.count(i) > 1})
            raise GraphInvariantError(f"Duplicate artifact ids in one crawl result: {dupes}")
        overlap = set(changed_ids) & set(removed_ids)
        if overlap:
            raise GraphInvariantError(f"Artifacts both updated and removed: {sorted(overlap)}")

        with self.lock:
            nodes = dict(self._nodes)
            known_removed = [node_id for node_id in removed_ids if node_id in nodes]
            for node_id in set(removed_ids) - set(known_removed):
                logger.debug("Ignoring removal of unknown artifact %s", node_id)
            removed_set = set(known_removed)

            for node_id in known_removed:
                del nodes[node_id]
            for node in changed:
                nodes[node.id] = node

            edges = {
                key: edge
                for key, edge in self._edges.items()
                if edge.source not in removed_set and edge.target not in removed_set
            }

            touched = {path_key(n.file_path) for n in changed}
            recompute: Set[str] = set(changed_ids)
            # Importers of removed ids fall back to their raw target.
            for edge in self._edges.values():
                if edge.target in removed_set and edge.source not in removed_set:
                    recompute.add(edge.source)
            for node_id, node in nodes.items():
                if node_id in recompute:
                    continue
                if any(path_key(t) in touched for t in node.import_targets):
                    recompute.add(node_id)

            file_index = _file_index(nodes.values())
            edges = {key: edge for key, edge in edges.items() if key[0] not in recompute}
            new_edges: List[DependencyEdge] = []
            for node_id in sorted(recompute):
                for edge in self._derive_edges(nodes[node_id], nodes, file_index, removed_set):
                    edges[edge.key] = edge
                    new_edges.append(edge)

            self._check_sources(nodes, edges)

            with self.store.transaction():
                self.store.delete_edges_touching(known_removed)
                self.store.delete_nodes(known_removed)
                self.store.upsert_nodes(changed)
                self.store.delete_edges_from(sorted(recompute))
                self.store.insert_edges(new_edges)

            self._nodes = nodes
            self._edges = edges
            self._rebuild_indexes()

            logger.info(
                "Applied crawl result: +%d ~%d -%d (%d nodes, %d edges)",
                len(added), len(modified), len(known_removed), len(nodes), len(edges),
            )
            return CrawlSummary(
                added=[n.id for n in added],
                modified=[n.id for n in modified],
                removed=known_removed,
                node_count=len(nodes),
                edge_count=len(edges),
                dangling_count=len(self._dangling()),
            )

    def _derive_edges(
        self,
        node: ArtifactNode,
        nodes: Dict[str, ArtifactNode],
        file_index: Dict[str, List[str]],
        excluded: Set[str],
    ) -> List[DependencyEdge]:
        derived: Dict[str, DependencyEdge] = {}
        for target in node.import_targets:
            confidence = node.import_confidence.get(target, DEFAULT_EDGE_CONFIDENCE)
            for resolved in _resolve_target(target, nodes, file_index):
                if resolved == node.id or resolved in excluded:
                    continue
                # Same ordered pair seen twice: last write wins.
                derived[resolved] = DependencyEdge(
                    source=node.id, target=resolved, kind=EDGE_USES, confidence=confidence,
                )
        return [derived[k] for k in sorted(derived)]

    @staticmethod
    def _check_sources(nodes: Dict[str, ArtifactNode], edges: Dict[tuple, DependencyEdge]) -> None:
        for edge in edges.values():
            if edge.source not in nodes:
                raise GraphInvariantError(f"Edge {edge.source} -> {edge.target} has no source node")
            if edge.source == edge.target:
                raise GraphInvariantError(f"Self-edge on {edge.source}")

    def _rebuild_indexes(self) -> None:
        out: Dict[str, List[DependencyEdge]] = {}
        inc: Dict[str, List[DependencyEdge]] = {}
        for key in sorted(self._edges):
            edge = self._edges[key]
            out.setdefault(edge.source, []).append(edge)
            inc.setdefault(edge.target, []).append(edge)
        for bucket in inc.values():
            bucket.sort(key=lambda e: e.source)
        self._out = out
        self._in = inc

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_node(self, node_id: str) -> Optional[ArtifactNode]:
        return self._nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def out_edges(self, node_id: str) -> List[DependencyEdge]:
        return list(self._out.get(node_id, ()))

    def in_edges(self, node_id: str) -> List[DependencyEdge]:
        return list(self._in.get(node_id, ()))

    def all_nodes(self) -> List[ArtifactNode]:
        with self.lock:
            return [self._nodes[k] for k in sorted(self._nodes)]

    def all_edges(self) -> List[DependencyEdge]:
        with self.lock:
            return [self._edges[k] for k in sorted(self._edges)]

    def node_ids(self) -> List[str]:
        return sorted(self._nodes)

    def nodes_for_file(self, file_path: str) -> List[ArtifactNode]:
        with self.lock:
            return [n for n in self.all_nodes() if n.file_path == file_path]

    def dangling_edges(self) -> List[DependencyEdge]:
        """Edges whose target is not a known artifact."""
        with self.lock:
            return self._dangling()

    def _dangling(self) -> List[DependencyEdge]:
        return [self._edges[k] for k in sorted(self._edges) if self._edges[k].target not in self._nodes]

    def snapshot(self) -> Dict[str, ArtifactNode]:
        """Point-in-time id -> node mapping for the diff engine."""
        with self.lock:
            return dict(self._nodes)

    def intents(self) -> Dict[str, Optional[str]]:
        with self.lock:
            return {node_id: node.intent for node_id, node in self._nodes.items()}

    def stats(self) -> Dict[str, int]:
        with self.lock:
            return {
                "nodes": len(self._nodes),
                "edges": len(self._edges),
                "dangling": len(self._dangling()),
            }

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes


# ===================================================================
# Helpers
# ===================================================================

def _file_index(nodes: Iterable[ArtifactNode]) -> Dict[str, List[str]]:
    index: Dict[str, List[str]] = {}
    for node in nodes:
        key = path_key(node.file_path)
        index.setdefault(key, []).append(node.id)
        if key.endswith("/index"):
            index.setdefault(key[: -len("/index")], []).append(node.id)
    for ids in index.values():
        ids.sort()
    return index


def _resolve_target(target: str, nodes: Dict[str, ArtifactNode], file_index: Dict[str, List[str]]) -> List[str]:
    """Map an import target to artifact ids, or keep it as a dangling target."""
    if target in nodes:
        return [target]
    if ":" not in target:
        ids = file_index.get(path_key(target))
        if ids:
            return list(ids)
    return [target]
