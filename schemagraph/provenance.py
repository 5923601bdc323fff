"""Upstream provenance: what an artifact depends on, and why."""

from __future__ import annotations

import logging
from collections import deque
from typing import List, Optional

from .errors import NodeNotFound
from .graph import GraphEngine
from .models import ProvenanceEntry, ProvenanceReport

logger = logging.getLogger(__name__)


class ProvenanceAnalyzer:
    """Walks outbound edges to explain where an artifact's shape comes from.

    Direct dependencies are always reported first. With ``transitive=True``
    the walk continues breadth-first through the upstream artifacts.
    Targets that are not in the graph are reported with ``resolved=False``
    and are not expanded further.
    """

    def __init__(self, engine: GraphEngine):
        self.engine = engine

    def analyze(
        self,
        node_id: str,
        transitive: bool = False,
        max_depth: Optional[int] = None,
    ) -> ProvenanceReport:
        """Collect the upstream dependencies of *node_id*.

        Args:
            node_id: Artifact to explain
            transitive: Follow dependencies of dependencies
            max_depth: Hop limit for the transitive walk (unbounded if None)

        Returns:
            ProvenanceReport with entries ordered by distance, then id

        Raises:
            NodeNotFound: if *node_id* is not in the graph
        """
        with self.engine.lock:
            node = self.engine.get_node(node_id)
            if node is None:
                raise NodeNotFound(node_id)

            limit = max_depth if transitive else 1
            seen = {node_id}
            queue = deque([(node_id, 0, 1.0)])
            upstream: List[ProvenanceEntry] = []

            while queue:
                current, depth, confidence = queue.popleft()
                if limit is not None and depth >= limit:
                    continue
                for edge in self.engine.out_edges(current):
                    target = edge.target
                    if target in seen:
                        continue
                    seen.add(target)
                    upstream_node = self.engine.get_node(target)
                    path_confidence = confidence * edge.confidence
                    upstream.append(ProvenanceEntry(
                        node_id=target,
                        relationship=edge.kind,
                        distance=depth + 1,
                        confidence=path_confidence,
                        intent=upstream_node.intent if upstream_node else None,
                        kind=upstream_node.kind if upstream_node else None,
                        resolved=upstream_node is not None,
                        via=None if current == node_id else current,
                    ))
                    if upstream_node is not None:
                        queue.append((target, depth + 1, path_confidence))

        upstream.sort(key=lambda e: (e.distance, e.node_id))
        logger.debug("Provenance of %s: %d upstream artifact(s)", node_id, len(upstream))
        return ProvenanceReport(node=node, upstream=upstream)


def format_provenance_report(report: ProvenanceReport) -> str:
    node = report.node
    lines: List[str] = [f"{node.kind} {node.name} ({node.id})"]
    if node.intent:
        lines.append(f"  intent: {node.intent}")
    if not report.upstream:
        lines.append("  (no upstream dependencies)")
        return "\n".join(lines)

    lines.append("  depends on:")
    for entry in report.upstream:
        indent = "    " * entry.distance
        status = "" if entry.resolved else " [unresolved]"
        lines.append(f"{indent}{entry.relationship} -> {entry.node_id}{status}")
        if entry.intent:
            lines.append(f"{indent}  why: {entry.intent}")
    return "\n".join(lines)
