"""Downstream impact analysis over the artifact graph."""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, List, Optional

from .config import DEFAULT_MAX_DEPTH
from .errors import NodeNotFound
from .graph import GraphEngine
from .models import ImpactEntry, ImpactReport

logger = logging.getLogger(__name__)


class ImpactAnalyzer:
    """Answers "if this artifact changes, what else is affected?".

    An edge ``A uses B`` means a change to ``B`` impacts ``A``, so the
    traversal walks inbound edges. Each node is visited once, at the
    distance it was first discovered; confidence is the product of the
    edge confidences along that first path.
    """

    def __init__(self, engine: GraphEngine):
        self.engine = engine

    def analyze(self, root_id: str, max_depth: int = DEFAULT_MAX_DEPTH) -> ImpactReport:
        """Breadth-first impact walk from *root_id*.

        Args:
            root_id: Artifact id whose change is being assessed
            max_depth: Maximum number of hops to follow

        Returns:
            ImpactReport with downstream entries ordered by distance, then id

        Raises:
            NodeNotFound: if *root_id* is not in the graph
        """
        if max_depth < 0:
            raise ValueError("max_depth must be >= 0")

        with self.engine.lock:
            if not self.engine.has_node(root_id):
                raise NodeNotFound(root_id)

            seen = {root_id}
            queue = deque([(root_id, 0, 1.0)])
            downstream: List[ImpactEntry] = []

            while queue:
                current, depth, confidence = queue.popleft()
                if depth >= max_depth:
                    continue
                for edge in self.engine.in_edges(current):
                    nxt = edge.source
                    if nxt in seen:
                        continue
                    seen.add(nxt)
                    path_confidence = confidence * edge.confidence
                    downstream.append(ImpactEntry(
                        node_id=nxt,
                        distance=depth + 1,
                        confidence=path_confidence,
                        via=current,
                    ))
                    queue.append((nxt, depth + 1, path_confidence))

        downstream.sort(key=lambda e: (e.distance, e.node_id))
        logger.debug("Impact of %s: %d artifact(s) within %d hop(s)", root_id, len(downstream), max_depth)
        return ImpactReport(root=root_id, max_depth=max_depth, downstream=downstream)

    def format_report(self, report: ImpactReport) -> str:
        """Render an impact report as an indented ASCII tree."""
        children: Dict[Optional[str], List[ImpactEntry]] = {}
        for entry in report.downstream:
            children.setdefault(entry.via, []).append(entry)

        root = self.engine.get_node(report.root)
        label = f"{root.name} ({report.root})" if root else report.root
        lines: List[str] = [label]
        if not report.downstream:
            lines.append("  (no downstream dependents)")
            return "\n".join(lines)

        def walk(parent: str, depth: int) -> None:
            for entry in sorted(children.get(parent, []), key=lambda e: e.node_id):
                node = self.engine.get_node(entry.node_id)
                name = node.name if node else entry.node_id
                prefix = "  " * depth
                lines.append(f"{prefix}|- used by -> {name} [{entry.node_id}] conf={entry.confidence:.2f}")
                walk(entry.node_id, depth + 1)

        walk(report.root, 1)
        return "\n".join(lines)
